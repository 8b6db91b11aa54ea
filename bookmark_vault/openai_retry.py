from __future__ import annotations

from typing import Any, Mapping

import openai

_RETRYABLE_STATUS = (408, 409, 429)


def _extract_headers(obj: Any) -> Mapping[str, Any]:
    headers = getattr(obj, "headers", None)
    if headers is None:
        return {}

    if isinstance(headers, Mapping):
        return headers

    # httpx.Headers is iterable over items; try coercion.
    try:
        return dict(headers)
    except (TypeError, ValueError):
        return {}


def _parse_retry_after(headers: Mapping[str, Any]) -> float | None:
    if not headers:
        return None

    val: Any = None
    for key in ("retry-after", "Retry-After"):
        val = headers.get(key)
        if val is not None:
            break

    if val is None:
        return None

    try:
        return float(str(val).strip())
    except ValueError:
        return None


def _extract_status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "http_status", "status"):
        val = getattr(exc, attr, None)
        if val is None:
            continue
        try:
            return int(val)
        except (TypeError, ValueError):
            continue
    return None


def _is_retryable_status(code: int | None) -> bool:
    return code in _RETRYABLE_STATUS or (isinstance(code, int) and code >= 500)


def is_retryable_openai_exception(exc: BaseException) -> tuple[bool, float | None, str | None]:
    """
    Retry policy for the embeddings endpoint:
    - connection/timeout errors
    - HTTP 408, 409, 429
    - HTTP 5xx
    """
    retry_after = _parse_retry_after(_extract_headers(getattr(exc, "response", None)))

    if isinstance(exc, openai.APITimeoutError):
        return True, retry_after, "timeout"

    if isinstance(exc, openai.APIConnectionError):
        return True, retry_after, "connection_error"

    if isinstance(exc, openai.RateLimitError):
        code = getattr(exc, "code", None)
        if code == "insufficient_quota":
            return False, None, "insufficient_quota"
        return True, retry_after, "rate_limited"

    code = _extract_status_code(exc)
    if isinstance(exc, openai.APIStatusError):
        if _is_retryable_status(code):
            return True, retry_after, f"http_{code}"
        return False, None, f"http_{code}"

    # Non-SDK errors that still carry an HTTP status (e.g. from a proxy client).
    if _is_retryable_status(code):
        return True, retry_after, f"http_{code}"

    return False, None, None
