"""Shared utility functions used across VentureClone modules."""
from __future__ import annotations

import ipaddress
import json
import math
import re
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit

_MISSING = object()

_PROTOCOL_RE = re.compile(r"^https?://", re.IGNORECASE)
_DOLLAR_RE = re.compile(r"\$([0-9,]+)")
_NUMBER_RE = re.compile(r"(\d+)")

MAX_URL_LENGTH = 2048


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def json_dump(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def round_half_up(value: float) -> int:
    """Round halves upwards (``round()`` would round them to even)."""
    return math.floor(value + 0.5)


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------


def normalize_url(url: str) -> str:
    """Trim *url* and prepend ``https://`` unless it already has an http(s) scheme.

    The existing scheme is kept as typed (``HTTP://x`` stays ``HTTP://x``).
    Other schemes are not recognised, so ``ftp://x`` becomes ``https://ftp://x``
    and is rejected later by :func:`sanitize_url`.
    """
    trimmed = (url or "").strip()
    if _PROTOCOL_RE.match(trimmed):
        return trimmed
    return f"https://{trimmed}"


def _is_private_host(hostname: str) -> bool:
    host = hostname.lower().strip("[]")
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_unspecified


def sanitize_url(url: str) -> str:
    """Validate an http(s) URL pointing at a public host. Raises ValueError if invalid."""
    trimmed = (url or "").strip()
    if not trimmed or len(trimmed) > MAX_URL_LENGTH:
        raise ValueError("Invalid URL: must be between 1 and 2048 characters")
    parts = urlsplit(trimmed)
    if parts.scheme.lower() not in ("http", "https"):
        raise ValueError(f"Invalid URL: unsupported protocol {parts.scheme or '(none)'!r}")
    hostname = parts.hostname or ""
    if not hostname or "." not in hostname and hostname != "localhost":
        raise ValueError("Invalid URL: missing or malformed host")
    if _is_private_host(hostname):
        raise ValueError("Invalid URL: private or local addresses are not allowed")
    return trimmed


def is_valid_http_url(url: Any) -> bool:
    if not isinstance(url, str):
        return False
    parts = urlsplit(url.strip())
    return parts.scheme.lower() in ("http", "https") and bool(parts.netloc)


def url_origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


# ---------------------------------------------------------------------------
# Money and time strings ("$30,000-$75,000", "3 months")
# ---------------------------------------------------------------------------


def first_dollar_amount(text: str | None, default: int) -> int:
    """Return the first ``$N`` amount in *text*, or *default*."""
    m = _DOLLAR_RE.search(text or "")
    if m and m.group(1).replace(",", ""):
        return int(m.group(1).replace(",", ""))
    return default


def parse_time_to_weeks(text: str | None, default: int = 24) -> int:
    """Convert "6 weeks" / "3 months" / "1 year" to weeks. Unknown units give *default*."""
    lower = (text or "").lower()
    m = _NUMBER_RE.search(lower)
    if not m:
        return default
    value = int(m.group(1))
    if "week" in lower:
        return value
    if "month" in lower:
        return value * 4
    if "year" in lower:
        return value * 52
    return default


def format_weeks(weeks: int) -> str:
    if weeks < 4:
        return f"{weeks} weeks"
    months = round_half_up(weeks / 4)
    if months < 12:
        return f"{months} months"
    years, remaining = divmod(months, 12)
    label = f"{years} year{'s' if years > 1 else ''}"
    return label if remaining == 0 else f"{label} {remaining} months"


def mask_secret(secret: str) -> str:
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}...{secret[-4:]}"
