"""
Base class and type contracts for the crawl engines.
Every engine MUST inherit from CrawlEngine and implement run() and failure_result().

Design principles:
- Engines are stateless per call: all state comes from the domain argument
- Engines are independent: no engine imports another
- Engines never raise for expected failures; they return structured results
- execute() converts anything unexpected into the engine's failure result
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Generic, TypeVar

import structlog
from pydantic import BaseModel, Field



# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class SiteStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"
    BLOCKED = "blocked"     # robots.txt refuses us


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"  # terminal
    FAILED = "failed"        # terminal


NON_TERMINAL_STATUSES = (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value)
TERMINAL_STATUSES = (QueueStatus.COMPLETED.value, QueueStatus.FAILED.value)


class QueueResult(str, Enum):
    """Result code recorded on a completed queue item."""
    COMPLETED = "completed"
    NOT_WORDPRESS = "not_wordpress"
    ROBOTS_DISALLOWED = "robots_txt_disallowed"


class Strategy(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"


class DetectionMethod(str, Enum):
    REST_API = "rest_api"
    HTML_SIGNATURES = "html_signatures"


class OutcomeKind(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


# Detector error markers
ERROR_FETCH_FAILED = "fetch_failed"
ERROR_ROBOTS_DISALLOWED = "robots_txt_disallowed"
ERROR_ANALYSIS_FAILED = "analysis_failed"


# ─────────────────────────────────────────────
# Core data types
# ─────────────────────────────────────────────

class DetectionResult(BaseModel):
    """Output of the WordPress detector for one domain."""
    domain: str
    is_wordpress: bool = False
    theme_name: str | None = None
    plugin_count: int = 0
    plugin_evidence: list[str] = Field(default_factory=list)
    error: str | None = None

    # Audit detail
    robots_allowed: bool = True
    status_code: int | None = None
    detection_method: DetectionMethod | None = None
    signatures_matched: list[str] = Field(default_factory=list)

    @property
    def robots_disallowed(self) -> bool:
        return self.error == ERROR_ROBOTS_DISALLOWED


class PerformanceMetrics(BaseModel):
    """Normalized PageSpeed Insights result for one strategy."""
    strategy: Strategy
    psi_score: int | None = Field(default=None, ge=0, le=100)
    lcp_ms: int | None = None     # Largest Contentful Paint
    cls: float | None = None      # Cumulative Layout Shift (ratio)
    tbt_ms: int | None = None     # Total Blocking Time
    fcp_ms: int | None = None     # First Contentful Paint
    si_ms: int | None = None      # Speed Index
    tti_ms: int | None = None     # Time to Interactive
    lighthouse_version: str | None = None
    fetch_time: str | None = None
    final_url: str | None = None


class PerformanceReport(BaseModel):
    """Desktop + mobile metrics and their combined score."""
    domain: str
    desktop: PerformanceMetrics | None = None
    mobile: PerformanceMetrics | None = None
    combined_score: int | None = None

    @property
    def primary(self) -> PerformanceMetrics | None:
        """Metrics used for the snapshot's timing columns (desktop preferred)."""
        if self.desktop is not None and self.desktop.psi_score is not None:
            return self.desktop
        if self.mobile is not None and self.mobile.psi_score is not None:
            return self.mobile
        return self.desktop or self.mobile


class CrawlOutcome(BaseModel):
    """
    Tagged result of analysing a domain:
      OK(detection)       -> persist and rank
      SKIPPED(reason)     -> terminal success, nothing to rank
      FAILED(error)       -> retry/backoff
    """
    kind: OutcomeKind
    detection: DetectionResult
    reason: str | None = None

    @classmethod
    def classify(cls, detection: DetectionResult, analyze_all_sites: bool = False) -> "CrawlOutcome":
        if detection.robots_disallowed:
            return cls(kind=OutcomeKind.SKIPPED, detection=detection, reason=QueueResult.ROBOTS_DISALLOWED.value)
        if detection.error:
            return cls(kind=OutcomeKind.FAILED, detection=detection, reason=detection.error)
        if not detection.is_wordpress and not analyze_all_sites:
            return cls(kind=OutcomeKind.SKIPPED, detection=detection, reason=QueueResult.NOT_WORDPRESS.value)
        return cls(kind=OutcomeKind.OK, detection=detection)


class RankedSite(BaseModel):
    """Input row and output row of a ranking pass."""
    site_id: Any
    domain: str
    psi_score: int | None = None
    plugin_count: int | None = None
    efficiency_score: float = 0.0
    global_rank: int = 0


# ─────────────────────────────────────────────
# Base Engine
# ─────────────────────────────────────────────

ResultT = TypeVar("ResultT")


class CrawlEngine(ABC, Generic[ResultT]):
    """
    Abstract base class for engines that analyse a single domain.

    All engines MUST:
    1. Implement run(domain, **options) -> ResultT
    2. Implement failure_result(domain, exc) -> ResultT for unexpected errors
    3. Keep no per-domain state on self between calls
    """

    ENGINE_NAME: str = "base"

    def __init__(self):
        self.logger = structlog.get_logger(self.__class__.__name__)

    @abstractmethod
    async def run(self, domain: str, **options: Any) -> ResultT:
        ...

    @abstractmethod
    def failure_result(self, domain: str, exc: Exception) -> ResultT:
        ...

    async def execute(self, domain: str, **options: Any) -> ResultT:
        """
        Wrapper around run() that adds timing, logging, and error handling.
        Call this instead of run() directly.
        """
        start = time.perf_counter()
        self.logger.debug("Engine starting", engine=self.ENGINE_NAME, domain=domain, **options)

        try:
            result = await self.run(domain, **options)
            elapsed = (time.perf_counter() - start) * 1000
            self.logger.info(
                "Engine complete",
                engine=self.ENGINE_NAME,
                domain=domain,
                elapsed_ms=round(elapsed, 2),
            )
            return result

        except Exception as exc:
            elapsed = (time.perf_counter() - start) * 1000
            self.logger.error(
                "Engine failed",
                engine=self.ENGINE_NAME,
                domain=domain,
                error=str(exc),
                elapsed_ms=round(elapsed, 2),
                exc_info=True,
            )
            return self.failure_result(domain, exc)
