"""
WordPress fingerprint tables and the pure functions that apply them.

Nothing in this module performs I/O: every function takes text already fetched
by the detector, so the signature set is testable on its own.
"""

from __future__ import annotations

import html
import json
import re
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Signature:
    name: str
    needle: str   # matched case-insensitively as a plain substring
    # Signatures whose needles contain one another share a group, so a single
    # asset URL cannot satisfy the distinct-match rule by itself
    group: str = ""

    @property
    def evidence_group(self) -> str:
        return self.group or self.name


# A page is WordPress only when at least MIN_SIGNATURE_MATCHES distinct
# signature groups are present; one hit alone is too weak.
MIN_SIGNATURE_MATCHES = 2

WORDPRESS_SIGNATURES: tuple[Signature, ...] = (
    Signature("wp_content_path", "/wp-content/", group="wp_content"),
    Signature("wp_includes_path", "/wp-includes/"),
    Signature("wp_emoji_script", "wp-emoji-release.min.js"),
    Signature("rest_api_link", "wp-json"),
    Signature("generator_meta", 'meta name="generator" content="wordpress'),
    Signature("wp_class_prefix", 'class="wp-', group="wp_class"),
    Signature("wp_id_prefix", 'id="wp-'),
    Signature("block_class_prefix", "wp-block-", group="wp_class"),
    Signature("wpforms", "wpforms"),
    Signature("themes_path", "wp-content/themes/", group="wp_content"),
    Signature("plugins_path", "wp-content/plugins/", group="wp_content"),
)

_GROUP_BY_NAME = {sig.name: sig.evidence_group for sig in WORDPRESS_SIGNATURES}


# REST index keys that only a WordPress /wp-json/ root document carries together
REST_API_KEYS = frozenset({"name", "description", "namespaces"})

PLUGIN_PATH_RE = re.compile(r"/wp-content/plugins/([^/\s'\"?]+)/", re.IGNORECASE)
THEME_PATH_RE = re.compile(r"/wp-content/themes/([^/\s'\"?]+)/", re.IGNORECASE)

PLUGIN_SLUG_STOPLIST = frozenset({"wp-content", "plugins", "admin", "includes"})
MIN_PLUGIN_SLUG_LENGTH = 2


# ─────────────────────────────────────────────
# Classification
# ─────────────────────────────────────────────

def match_signatures(page_html: str) -> list[str]:
    """Names of the distinct signatures found in the page, in table order."""
    if not page_html:
        return []
    haystack = page_html.lower()
    return [sig.name for sig in WORDPRESS_SIGNATURES if sig.needle.lower() in haystack]


def count_signature_groups(matched: list[str]) -> int:
    """Distinct evidence groups among matched signature names."""
    return len({_GROUP_BY_NAME.get(name, name) for name in matched})


def is_wordpress_html(page_html: str) -> bool:
    return count_signature_groups(match_signatures(page_html)) >= MIN_SIGNATURE_MATCHES


def is_wordpress_api_payload(content_type: str, body: str) -> bool:
    """True for a JSON object response carrying a WordPress REST index key."""
    if "application/json" not in (content_type or "").lower():
        return False
    try:
        data: Any = json.loads(body)
    except ValueError:
        return False
    return isinstance(data, dict) and bool(REST_API_KEYS & data.keys())


# ─────────────────────────────────────────────
# robots.txt
# ─────────────────────────────────────────────

def robots_disallows_root(robots_txt: str) -> bool:
    """
    True when the `User-agent: *` group disallows the whole site.
    An empty Disallow value counts as disallowing the root too.
    """
    current_agent = ""
    for raw_line in robots_txt.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line:
            continue
        lowered = line.lower()
        if lowered.startswith("user-agent:"):
            current_agent = line[len("user-agent:"):].strip().lower()
        elif current_agent == "*" and lowered.startswith("disallow:"):
            path = line[len("disallow:"):].strip()
            if path in ("/", ""):
                return True
    return False


# ─────────────────────────────────────────────
# Plugins / theme
# ─────────────────────────────────────────────

def _evidence_url(fragment: str, page_html: str) -> str:
    """Widen a matched plugin path to the full asset URL it appears in."""
    escaped = re.escape(fragment)
    patterns = (
        re.compile(r"(https?://[^\s'\"]+" + escaped + r"[^\s'\">]*)", re.IGNORECASE),
        re.compile(r"([^\s'\"]+" + escaped + r"[^\s'\">]*)", re.IGNORECASE),
    )
    for pattern in patterns:
        found = pattern.search(page_html)
        if found:
            url = html.unescape(found.group(1))
            url = re.sub(r"['\"><].*$", "", url)
            if url:
                return url
    return fragment


def estimate_plugins(page_html: str, max_evidence: int = 20) -> tuple[int, list[str]]:
    """
    Count distinct plugin slugs referenced under /wp-content/plugins/<slug>/.

    Returns:
        (plugin_count, evidence) where evidence holds at most `max_evidence`
        unique asset URLs, one per newly seen slug.
    """
    if not page_html:
        return 0, []

    slugs: set[str] = set()
    evidence: list[str] = []

    for match in PLUGIN_PATH_RE.finditer(page_html):
        slug = match.group(1).lower()
        if slug in PLUGIN_SLUG_STOPLIST or len(slug) < MIN_PLUGIN_SLUG_LENGTH:
            continue
        if slug in slugs:
            continue
        slugs.add(slug)

        if len(evidence) < max_evidence:
            url = _evidence_url(match.group(0), page_html)
            if url not in evidence:
                evidence.append(url)

    return len(slugs), evidence


def detect_theme(page_html: str) -> str | None:
    """Human readable name of the first theme referenced in the page."""
    if not page_html:
        return None
    match = THEME_PATH_RE.search(page_html)
    if not match:
        return None
    name = match.group(1).lower().replace("-", " ").replace("_", " ")
    return " ".join(word[:1].upper() + word[1:] for word in name.split(" "))
