"""Tests for with_optimistic_retry."""

from __future__ import annotations

import pytest

from kart_timing.exceptions import ConcurrencyConflictError, VersionConflictError
from kart_timing.sessions.retry import with_optimistic_retry


def test_returns_first_success_without_sleeping():
    sleeps = []
    assert with_optimistic_retry(lambda n: n * 10, sleep=sleeps.append) == 10
    assert sleeps == []


def test_retries_conflicts_with_linear_backoff():
    sleeps = []
    attempts = []

    def op(n):
        attempts.append(n)
        if n < 3:
            raise VersionConflictError("stale")
        return "ok"

    assert with_optimistic_retry(op, max_attempts=3, backoff=0.1, sleep=sleeps.append) == "ok"
    assert attempts == [1, 2, 3]
    assert sleeps == pytest.approx([0.1, 0.2])


def test_exhaustion_raises_retryable_error():
    def op(n):
        raise VersionConflictError("stale")

    with pytest.raises(ConcurrencyConflictError) as exc_info:
        with_optimistic_retry(op, max_attempts=3, sleep=lambda s: None)
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.__cause__, VersionConflictError)


def test_other_errors_propagate_immediately():
    attempts = []

    def op(n):
        attempts.append(n)
        raise KeyError("boom")

    with pytest.raises(KeyError):
        with_optimistic_retry(op, sleep=lambda s: None)
    assert attempts == [1]


def test_rejects_zero_attempts():
    with pytest.raises(ValueError):
        with_optimistic_retry(lambda n: n, max_attempts=0)
