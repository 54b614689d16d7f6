"""Provider-side error mapping.

Remote failures are classified once, here, into ``RateLimitError``,
``OverloadedError`` or plain ``APIError`` with status and retry metadata
attached, so the retry machinery never has to re-parse SDK exceptions.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

import httpx

from castor._http import OVERLOADED_STATUS_CODES, RATE_LIMITED_STATUS_CODES
from castor.backoff import FailureKind, classify_message, hint_from_message
from castor.errors import APIError, OverloadedError, RateLimitError, _walk_exception_chain


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def _extract_retry_info_seconds(exc: BaseException) -> float | None:
    """Read ``retryDelay`` from a Google ``RetryInfo`` entry in ``exc.details``.

    The SDK's ``APIError`` keeps the parsed JSON body shaped like::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}
    """
    details: Any = getattr(exc, "details", None)
    if not isinstance(details, dict):
        return None
    error: Any = details.get("error", details)
    detail_list: Any = error.get("details") if isinstance(error, dict) else None
    if not isinstance(detail_list, list):
        return None
    for entry in detail_list:
        if not isinstance(entry, dict):
            continue
        at_type = entry.get("@type", "")
        if not isinstance(at_type, str) or "RetryInfo" not in at_type:
            continue
        delay_raw = entry.get("retryDelay")
        if isinstance(delay_raw, str):
            m = _PROTO_DURATION_RE.match(delay_raw)
            if m:
                return float(m.group(1))
    return None


def _retry_after_header(exc: BaseException) -> float | None:
    response = getattr(exc, "response", None)
    headers: Any = getattr(response, "headers", None)
    if headers is None or not hasattr(headers, "get"):
        return None
    raw = headers.get("Retry-After")
    if not isinstance(raw, str):
        return None
    try:
        seconds = float(raw.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a retry delay in seconds.

    Checked per exception: a ``retry_after`` attribute, the ``Retry-After``
    header, Google ``RetryInfo`` details. The message text is the last resort.
    """
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)
        header = _retry_after_header(e)
        if header is not None:
            return header
        retry_info = _extract_retry_info_seconds(e)
        if retry_info is not None:
            return retry_info
    return None


def _is_network_error(exc: BaseException) -> bool:
    return any(
        isinstance(e, (httpx.TimeoutException, httpx.TransportError))
        for e in _walk_exception_chain(exc)
    )


def _hint_for(status_code: int | None, cause: str, *, network: bool) -> str | None:
    lowered = cause.lower()
    if status_code in {401, 403} or (
        status_code == 400 and ("api key" in lowered or "api_key" in lowered)
    ):
        return "Check credentials (set GEMINI_API_KEYS or Config.api_keys)."
    if status_code in RATE_LIMITED_STATUS_CODES:
        return "Add more API keys to GEMINI_API_KEYS to spread the quota."
    if network:
        return "Network error reaching the API; check connectivity and retry."
    return None


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    message: str | None = None,
) -> APIError:
    """Map a provider SDK exception onto the typed APIError hierarchy."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already wrapped: fill in missing context only.
    if isinstance(exc, APIError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        return exc

    cause = str(exc)
    status_code = extract_status_code(exc)
    retry_after_s = extract_retry_after_s(exc)

    if status_code in RATE_LIMITED_STATUS_CODES:
        kind = FailureKind.RATE_LIMITED
    elif status_code in OVERLOADED_STATUS_CODES:
        kind = FailureKind.OVERLOADED
    elif status_code is None:
        kind = classify_message(cause)
    else:
        kind = FailureKind.OTHER

    if retry_after_s is None and kind is FailureKind.OVERLOADED:
        retry_after_s = hint_from_message(cause)

    err_cls: type[APIError] = APIError
    if kind is FailureKind.RATE_LIMITED:
        err_cls = RateLimitError
    elif kind is FailureKind.OVERLOADED:
        err_cls = OverloadedError

    msg = message or f"{provider} {phase} failed"
    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    return err_cls(
        f"{msg}{status_note}: {cause}" if cause else f"{msg}{status_note}",
        hint=_hint_for(status_code, cause, network=_is_network_error(exc)),
        status_code=status_code,
        retry_after_s=retry_after_s,
        provider=provider,
        phase=phase,
    )
