"""Failure classification that drives retry and circuit-breaker decisions."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass

_RETRY_AFTER_RE = re.compile(r"retry[- ]?after[:\s]*(\d+)", re.IGNORECASE)

_RATE_LIMIT_MARKERS = ("too many requests", "rate limit", "quota", "throttl")
_TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout", "econnreset")
_NETWORK_MARKERS = (
    "network",
    "enotfound",
    "econnrefused",
    "connection refused",
    "connection_error",
    "fetch failed",
    "socket hang up",
    "name or service not known",
)
_SERVER_MARKERS = ("service unavailable", "internal server error", "bad gateway")
_PERMANENT_MARKERS = ("invalid api key", "unauthorized", "forbidden")

# Status codes only count when no other digit touches them ("40000" is not "400").
_RATE_LIMIT_CODE_RE = re.compile(r"(?<!\d)429(?!\d)")
_SERVER_CODE_RE = re.compile(r"(?<!\d)50[023](?!\d)")
_PERMANENT_CODE_RE = re.compile(r"(?<!\d)40[013](?!\d)")
PERMANENT_STATUS_CODES = frozenset({400, 401, 403})


@dataclass(frozen=True)
class ErrorClassification:
    is_rate_limit: bool
    is_timeout: bool
    is_network_error: bool
    is_transient: bool
    is_permanent: bool
    retry_after_seconds: int | None
    should_retry: bool


def _error_text(exc: BaseException) -> str:
    parts = [str(exc)]
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        parts.append(str(status_code))
    error_code = getattr(exc, "error_code", None)
    if isinstance(error_code, str):
        parts.append(error_code)
    return " ".join(parts).lower()


def _retry_after(exc: BaseException, text: str) -> int | None:
    explicit = getattr(exc, "retry_after", None)
    if isinstance(explicit, int) and explicit > 0:
        return explicit
    match = _RETRY_AFTER_RE.search(text)
    if match is None:
        return None
    return int(match.group(1))


def _is_permanent(exc: BaseException, text: str, codes_text: str) -> bool:
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return status_code in PERMANENT_STATUS_CODES
    return any(marker in text for marker in _PERMANENT_MARKERS) or bool(_PERMANENT_CODE_RE.search(codes_text))


def classify_error(exc: BaseException) -> ErrorClassification:
    text = _error_text(exc)
    codes_text = _RETRY_AFTER_RE.sub(" ", text)

    is_rate_limit = any(marker in text for marker in _RATE_LIMIT_MARKERS) or bool(
        _RATE_LIMIT_CODE_RE.search(codes_text)
    )
    is_timeout = isinstance(exc, (TimeoutError, asyncio.TimeoutError)) or any(
        marker in text for marker in _TIMEOUT_MARKERS
    )
    is_network_error = isinstance(exc, ConnectionError) or any(marker in text for marker in _NETWORK_MARKERS)
    is_transient = (
        is_rate_limit
        or is_timeout
        or is_network_error
        or any(marker in text for marker in _SERVER_MARKERS)
        or bool(_SERVER_CODE_RE.search(codes_text))
    )
    is_permanent = _is_permanent(exc, text, codes_text)

    return ErrorClassification(
        is_rate_limit=is_rate_limit,
        is_timeout=is_timeout,
        is_network_error=is_network_error,
        is_transient=is_transient,
        is_permanent=is_permanent,
        retry_after_seconds=_retry_after(exc, text),
        should_retry=is_transient and not is_permanent,
    )
