"""Retry/backoff driver for failed turns."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from oi.errors import ApiError, OiError, StreamError

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_BACKOFF_BASE = 0.1  # seconds
_TERMINAL_STATUS = frozenset({400, 401, 403, 404})


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * 2 ** attempt``, no jitter."""

    max_retries: int = 5
    base_delay: float = _BACKOFF_BASE

    def delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)


def is_retryable(error: BaseException) -> bool:
    """Only mid-stream failures are retried; setup problems never are."""
    if isinstance(error, ApiError) and error.status_code in _TERMINAL_STATUS:
        return False
    return isinstance(error, StreamError)


def is_model_missing(error: BaseException) -> bool:
    return isinstance(error, ApiError) and error.status_code == 404


async def retry_turn(
    attempt: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    fallback: Callable[[OiError], bool] | None = None,
    on_retry: Callable[[int, float, OiError], Awaitable[None]] | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> T:
    """Run *attempt* until it succeeds or the retry budget is spent.

    *fallback* gets the first chance at every failure; returning True means
    it changed something (e.g. switched to a fallback model) and the turn is
    resubmitted at once without spending a retry.  The last error is
    re-raised once ``policy.max_retries`` retries have failed, or as soon
    as *should_stop* reports that the caller has given up on the turn.
    """
    retries = 0
    while True:
        try:
            return await attempt()
        except OiError as e:
            if should_stop is not None and should_stop():
                raise
            if fallback is not None and fallback(e):
                _logger.warning("Retrying with fallback model after: %s", e)
                continue
            if not is_retryable(e):
                raise
            retries += 1
            if retries > policy.max_retries:
                _logger.debug("Giving up after %d retries", policy.max_retries)
                raise
            wait = policy.delay(retries)
            _logger.warning(
                "Turn failed (retry %d/%d in %.1fs): %s",
                retries, policy.max_retries, wait, e,
            )
            if on_retry is not None:
                await on_retry(retries, wait, e)
            await asyncio.sleep(wait)
            if should_stop is not None and should_stop():
                _logger.debug("Retry abandoned after backoff: turn was stopped")
                raise
