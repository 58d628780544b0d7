"""
Domain normalization and validation.

normalize_domain() is the deduplication key for sites, queue items and
submissions, so it must stay pure: same input, same output, no I/O.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

import idna

MAX_DOMAIN_LENGTH = 253
MAX_LABEL_LENGTH = 63

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.\-]*://", re.IGNORECASE)
_LABEL_RE = re.compile(r"^[a-z0-9-]+$", re.IGNORECASE)


class InvalidDomainError(ValueError):
    """Raised when an input cannot be turned into a valid domain."""

    def __init__(self, reason: str, raw: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.raw = raw


def _extract_host(raw: str) -> str:
    if _SCHEME_RE.match(raw):
        target = raw
    else:
        # Bare domain: make urlsplit treat it as a network location
        target = "//" + raw
    try:
        parts = urlsplit(target)
        host = parts.hostname or ""
    except ValueError:
        # Unbalanced IPv6 brackets or an invalid port
        return ""
    return host


def validate_domain(domain: str) -> None:
    """Raise InvalidDomainError unless domain is a well-formed ASCII hostname."""
    if not domain:
        raise InvalidDomainError("Domain is empty", domain)
    if len(domain) > MAX_DOMAIN_LENGTH:
        raise InvalidDomainError(f"Domain exceeds {MAX_DOMAIN_LENGTH} characters", domain)
    if "." not in domain:
        raise InvalidDomainError("Domain must contain at least one dot", domain)

    for label in domain.split("."):
        if not label:
            raise InvalidDomainError("Domain contains an empty label", domain)
        if len(label) > MAX_LABEL_LENGTH:
            raise InvalidDomainError(f"Label '{label[:16]}...' exceeds {MAX_LABEL_LENGTH} characters", domain)
        if label.startswith("-") or label.endswith("-"):
            raise InvalidDomainError(f"Label '{label}' starts or ends with a hyphen", domain)
        if not _LABEL_RE.match(label):
            raise InvalidDomainError(f"Label '{label}' contains invalid characters", domain)


def is_valid_domain(domain: str) -> bool:
    try:
        validate_domain(domain)
    except InvalidDomainError:
        return False
    return True


def normalize_domain(raw: str) -> str:
    """
    Canonicalize a URL or bare domain into a lowercase ASCII hostname.

    "HTTPS://WWW.Example.COM/path" -> "example.com"

    Raises:
        InvalidDomainError: when the input has no usable host or fails validation
    """
    value = (raw or "").strip()
    if not value:
        raise InvalidDomainError("Domain is empty", raw)

    host = _extract_host(value).lower().rstrip(".")
    if not host:
        raise InvalidDomainError("No host found in input", raw)

    if not host.isascii():
        try:
            host = idna.encode(host, uts46=True).decode("ascii")
        except idna.IDNAError as exc:
            raise InvalidDomainError(f"Internationalized domain is not convertible: {exc}", raw) from exc

    while host.startswith("www."):
        host = host[4:]

    validate_domain(host)
    return host


def try_normalize_domain(raw: str) -> str | None:
    """Like normalize_domain() but returns None instead of raising."""
    try:
        return normalize_domain(raw)
    except InvalidDomainError:
        return None


def base_urls(domain: str) -> list[str]:
    """Origins to try for a domain, HTTPS first."""
    return [f"https://{domain}", f"http://{domain}"]


def matches_blocklist(domain: str, patterns: list[str]) -> bool:
    """
    Hostname patterns match the host itself and its subdomains, so "test.com"
    blocks "a.test.com" but not "latest.com". A pattern ending in "." is an
    address prefix ("192.168.").
    """
    for pattern in patterns:
        if pattern.endswith("."):
            if domain.startswith(pattern):
                return True
        elif domain == pattern or domain.endswith("." + pattern):
            return True
    return False
