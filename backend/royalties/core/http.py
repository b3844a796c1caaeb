"""Retrying httpx helper shared by the report feed, rate and platform clients."""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from typing import Any

import httpx
from loguru import logger

from royalties.errors import ExternalError

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


def _should_retry(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return False


def request_with_retry(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    attempts: int,
    backoff: Sequence[float],
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> httpx.Response:
    """Issue ``method url`` and retry transient failures.

    Non-retryable responses and exhausted retries surface as
    :class:`ExternalError`, carrying the status code when there was one.
    """

    last_exc: Exception | None = None
    for attempt in range(1, max(attempts, 1) + 1):
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPError as exc:
            last_exc = exc
            if not _should_retry(exc) or attempt >= attempts:
                break
            delay = backoff[min(attempt - 1, len(backoff) - 1)] if backoff else 0.0
            logger.warning(
                "{} {} failed (attempt {}/{}): {}. Retrying in {:.1f}s",
                method,
                url,
                attempt,
                attempts,
                exc,
                delay,
            )
            sleep(delay)

    status_code = None
    if isinstance(last_exc, httpx.HTTPStatusError):
        status_code = last_exc.response.status_code
    raise ExternalError(
        f"{method} {url} failed: {last_exc}",
        retriable=last_exc is not None and _should_retry(last_exc),
        url=url,
        status_code=status_code,
    ) from last_exc


__all__ = ["RETRYABLE_STATUS_CODES", "request_with_retry"]
