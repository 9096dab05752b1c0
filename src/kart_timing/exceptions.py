"""Exception hierarchy for kart_timing."""

from __future__ import annotations


class KartTimingError(Exception):
    """Base exception for all kart_timing errors."""


class InvalidPayloadError(KartTimingError):
    """A timing payload could not be interpreted as a snapshot batch."""


class StorageError(KartTimingError):
    """The backing store is unreachable or failed outside of a known conflict."""


class DuplicateSessionError(StorageError):
    """Two writers raced to create the same session document.

    The aggregator treats this as benign: the peer's document holds (or will
    hold) equivalent data.
    """

    def __init__(self, message: str, *, session_id: str = "") -> None:
        self.session_id = session_id
        super().__init__(message)


class VersionConflictError(StorageError):
    """The stored document changed between load and save."""

    def __init__(
        self,
        message: str,
        *,
        session_id: str = "",
        expected_version: int | None = None,
    ) -> None:
        self.session_id = session_id
        self.expected_version = expected_version
        super().__init__(message)


class ConcurrencyConflictError(KartTimingError):
    """Optimistic retries were exhausted.

    Retryable: redelivering the same snapshot repeats the whole operation.
    """

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


class AccountNotFoundError(KartTimingError):
    """A manual bind referenced an account the registry does not know."""

    def __init__(self, message: str, *, account_id: str = "") -> None:
        self.account_id = account_id
        super().__init__(message)
