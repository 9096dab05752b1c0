"""Optimistic-concurrency retry combinator."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from kart_timing.exceptions import ConcurrencyConflictError, VersionConflictError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_optimistic_retry(
    operation: Callable[[int], T],
    *,
    max_attempts: int = 3,
    backoff: float = 0.1,
    sleep: Callable[[float], None] = time.sleep,
    retry_on: tuple[type[Exception], ...] = (VersionConflictError,),
) -> T:
    """Run ``operation(attempt)`` until it stops raising a conflict.

    *operation* must redo its whole load-modify-save unit on every call and
    must not cause side effects before its final write.  After a conflict on
    attempt ``n`` the combinator waits ``n * backoff`` seconds.

    Raises
    ------
    ConcurrencyConflictError
        After *max_attempts* conflicting attempts.  Retryable by the caller.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_exc: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return operation(attempt)
        except retry_on as exc:
            last_exc = exc
            if attempt == max_attempts:
                break
            wait = attempt * backoff
            _logger.warning(
                "Write conflict (%s), retrying in %.0f ms (attempt %d/%d)",
                exc, wait * 1000, attempt, max_attempts,
            )
            sleep(wait)

    raise ConcurrencyConflictError(
        f"gave up after {max_attempts} conflicting attempts: {last_exc}",
        attempts=max_attempts,
    ) from last_exc
