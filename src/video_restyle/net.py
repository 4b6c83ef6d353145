# pyright: standard

"""Shared networking helpers for backend submissions with optional backoff."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Iterable
from urllib.parse import urlsplit

import httpx

__all__ = [
    "BackoffError",
    "DEFAULT_CONNECT_TIMEOUT",
    "DEFAULT_HTTP_TIMEOUT",
    "DEFAULT_READ_TIMEOUT",
    "RETRY_STATUS",
    "httpx_post_json_with_backoff",
    "log_backoff_attempt",
    "redact_url_for_logs",
]

logger = logging.getLogger(__name__)

RETRY_STATUS = frozenset({429, 500, 502, 503, 504})
"""HTTP status codes treated as transient and eligible for backoff."""

DEFAULT_CONNECT_TIMEOUT = 10.0
"""Standard connect timeout (seconds) for outbound HTTP calls."""

DEFAULT_READ_TIMEOUT = 30.0
"""Standard read timeout (seconds) for outbound HTTP calls."""

DEFAULT_HTTP_TIMEOUT = httpx.Timeout(
    DEFAULT_READ_TIMEOUT,
    connect=DEFAULT_CONNECT_TIMEOUT,
    read=DEFAULT_READ_TIMEOUT,
)
"""Default per-request timeout matching the project connect/read guidelines."""


class BackoffError(RuntimeError):
    """Raised when network retries are exhausted."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def log_backoff_attempt(host: str, attempt: int, delay: float) -> None:
    """Emit a concise log entry describing the next retry window."""

    logger.info("POST %s retry #%d scheduled in %.2f s", host, attempt, delay)


async def httpx_post_json_with_backoff(
    client: httpx.AsyncClient,
    url: str,
    payload: Mapping[str, Any],
    *,
    retries: int = 0,
    initial_backoff: float = 0.5,
    max_backoff: float = 4.0,
    retry_status: Iterable[int] | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    timeout: float | httpx.Timeout | None = None,
) -> httpx.Response:
    """POST ``payload`` as JSON, retrying transient status codes with exponential backoff.

    Any non-success status that survives the retry budget raises
    :class:`BackoffError`; transport errors from the final attempt propagate
    unchanged. Timeouts default to :data:`DEFAULT_HTTP_TIMEOUT`.
    """

    retry_codes = frozenset(retry_status) if retry_status else RETRY_STATUS
    backoff = max(0.1, initial_backoff)
    upper_backoff = max(0.1, max_backoff)
    sleep_impl = sleep or asyncio.sleep
    last_network_error: httpx.RequestError | None = None
    last_response: httpx.Response | None = None
    max_attempts = max(0, retries) + 1
    host_label = redact_url_for_logs(url)
    effective_timeout = timeout if timeout is not None else DEFAULT_HTTP_TIMEOUT

    for attempt_index in range(max_attempts):
        try:
            response = await client.post(url, json=dict(payload), timeout=effective_timeout)
        except httpx.RequestError as exc:
            last_network_error = exc
            last_response = None
            delay = backoff
        else:
            status = response.status_code
            if status in retry_codes:
                last_response = response
                delay = _retry_delay_from_response(response, backoff, upper_backoff)
            elif status >= 400:
                raise BackoffError(f"Request failed with status {status}", status_code=status)
            else:
                logger.debug(
                    "POST %s completed after %d attempt%s",
                    host_label,
                    attempt_index + 1,
                    "" if attempt_index == 0 else "s",
                )
                return response

        if attempt_index >= max_attempts - 1:
            break

        log_backoff_attempt(host_label, attempt_index + 1, delay)
        await sleep_impl(delay)
        backoff = min(backoff * 2, upper_backoff)

    if last_response is not None:
        raise BackoffError(
            f"Request failed with status {last_response.status_code}",
            status_code=last_response.status_code,
        )
    if last_network_error is not None:
        raise last_network_error
    raise BackoffError("Request failed before receiving a response")


def redact_url_for_logs(url: str) -> str:
    """Return a safe identifier for URLs when logging endpoints."""

    try:
        parsed = urlsplit(url)
    except (ValueError, AttributeError):
        return "url"
    if parsed.netloc:
        if parsed.hostname:
            if parsed.port:
                return f"{parsed.hostname}:{parsed.port}"
            return parsed.hostname
        return parsed.netloc
    return parsed.path or "url"


def _retry_delay_from_response(response: httpx.Response, fallback: float, cap: float) -> float:
    """Compute the delay for the next retry using Retry-After when available."""

    retry_after = response.headers.get("Retry-After")
    if retry_after:
        try:
            delay = float(retry_after)
        except ValueError:
            delay = fallback
    else:
        delay = fallback
    return max(0.1, min(delay, cap))
