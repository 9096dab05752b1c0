"""SessionAggregator: the single writer of race-session documents.

Every mutation is a small load-modify-save unit run through
:func:`~kart_timing.sessions.retry.with_optimistic_retry`.  Nothing is
written until the final save, so a conflicting attempt can simply be thrown
away and redone against the fresh document.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date

from kart_timing.exceptions import DuplicateSessionError, VersionConflictError
from kart_timing.sessions.naming import SessionMeta
from kart_timing.sessions.retry import with_optimistic_retry
from kart_timing.timing.models import Lap, RaceSession, SessionType, Snapshot
from kart_timing.timing.storage import TimingStorage

_logger = logging.getLogger(__name__)

_CONFLICTS = (VersionConflictError, DuplicateSessionError)


class AppendStatus(str, enum.Enum):
    APPENDED = "appended"
    DUPLICATE_LAP = "duplicate_lap"


@dataclass(frozen=True)
class AppendResult:
    status: AppendStatus
    session_id: str
    driver_name: str
    lap_number: int
    attempts: int
    created_session: bool = False
    total_laps: int = 0
    total_drivers: int = 0

    @property
    def appended(self) -> bool:
        return self.status is AppendStatus.APPENDED


class SessionAggregator:
    """Appends laps to session documents under optimistic concurrency.

    Parameters
    ----------
    storage:
        The session document store.
    max_attempts:
        Load-modify-save attempts before a :class:`ConcurrencyConflictError`.
    backoff:
        Base backoff in seconds (attempt ``n`` waits ``n * backoff``).
    sleep:
        Injectable for tests.
    """

    def __init__(
        self,
        storage: TimingStorage,
        max_attempts: int = 3,
        backoff: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._storage = storage
        self._max_attempts = max_attempts
        self._backoff = backoff
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def append_lap(
        self,
        meta: SessionMeta,
        driver_name: str,
        driver_fields: Snapshot,
        lap: Lap,
    ) -> AppendResult:
        """Append *lap* to *driver_name* in the session described by *meta*.

        A lap number the driver already has is skipped (``DUPLICATE_LAP``);
        this is the final dedup gate regardless of what the differencer said.
        If another writer creates the session first, this writer's creation is
        abandoned and the lap is applied to the peer's document instead.

        Raises
        ------
        ConcurrencyConflictError
            Retries exhausted; redelivery of the snapshot is safe.
        StorageError
            The store is unreachable.
        """

        def attempt(n: int) -> AppendResult:
            session, is_new = self._load_or_new(meta)
            driver = session.get_or_add_driver(driver_name)
            if driver.has_lap(lap.lap_number):
                _logger.info(
                    "%s: lap %d for %r already recorded, skipping",
                    meta.session_id, lap.lap_number, driver_name,
                )
                return AppendResult(
                    status=AppendStatus.DUPLICATE_LAP,
                    session_id=meta.session_id,
                    driver_name=driver_name,
                    lap_number=lap.lap_number,
                    attempts=n,
                    total_laps=session.total_laps,
                    total_drivers=session.total_drivers,
                )

            driver.add_lap(lap)
            driver.apply_snapshot(driver_fields)
            session.recalculate_totals()
            self._save(session, is_new)
            _logger.info(
                "%s: %r lap %d (%d ms) recorded, %d laps for driver",
                meta.session_id, driver_name, lap.lap_number, lap.time, driver.total_laps,
            )
            return AppendResult(
                status=AppendStatus.APPENDED,
                session_id=meta.session_id,
                driver_name=driver_name,
                lap_number=lap.lap_number,
                attempts=n,
                created_session=is_new,
                total_laps=session.total_laps,
                total_drivers=session.total_drivers,
            )

        return self._retry(attempt)

    def update_live_fields(self, session_id: str, snapshot: Snapshot) -> bool:
        """Refresh position and gap of an existing driver without adding a lap.

        Returns False (and writes nothing) if the session or driver is unknown
        or nothing changed.
        """

        def attempt(_: int) -> bool:
            session = self._storage.load_session(session_id)
            if session is None:
                return False
            driver = session.find_driver(snapshot.name)
            if driver is None:
                return False
            if (driver.final_position, driver.gap_to_leader) == (snapshot.position, snapshot.gap):
                return False
            driver.final_position = snapshot.position
            driver.gap_to_leader = snapshot.gap
            if snapshot.position > 0 and (
                driver.best_position == 0 or snapshot.position < driver.best_position
            ):
                driver.best_position = snapshot.position
            self._storage.update_session(session)
            return True

        return self._retry(attempt)

    def replace_lap(self, session_id: str, driver_name: str, lap: Lap) -> bool:
        """Correct a lap: remove the stored lap with the same number and insert *lap*.

        Returns False if the session or driver does not exist.
        """

        def attempt(_: int) -> bool:
            session = self._storage.load_session(session_id)
            if session is None:
                return False
            driver = session.find_driver(driver_name)
            if driver is None:
                return False
            driver.remove_lap(lap.lap_number)
            driver.add_lap(lap)
            session.recalculate_totals()
            self._storage.update_session(session)
            _logger.info("%s: lap %d for %r replaced", session_id, lap.lap_number, driver_name)
            return True

        return self._retry(attempt)

    def remove_lap(self, session_id: str, driver_name: str, lap_number: int) -> bool:
        """Delete one lap.  Returns False if there was nothing to delete."""

        def attempt(_: int) -> bool:
            session = self._storage.load_session(session_id)
            if session is None:
                return False
            driver = session.find_driver(driver_name)
            if driver is None or not driver.remove_lap(lap_number):
                return False
            session.recalculate_totals()
            self._storage.update_session(session)
            return True

        return self._retry(attempt)

    def get_session(self, session_id: str) -> RaceSession | None:
        return self._storage.load_session(session_id)

    def list_sessions(
        self,
        session_day: date | None = None,
        session_type: SessionType | None = None,
        limit: int = 50,
    ) -> list[dict]:
        """Session documents, newest first."""
        return self._storage.list_sessions(session_day, session_type, limit)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _retry(self, operation):
        return with_optimistic_retry(
            operation,
            max_attempts=self._max_attempts,
            backoff=self._backoff,
            sleep=self._sleep,
            retry_on=_CONFLICTS,
        )

    def _load_or_new(self, meta: SessionMeta) -> tuple[RaceSession, bool]:
        session = self._storage.load_session(meta.session_id)
        if session is not None:
            return session, False
        return (
            RaceSession(
                session_id=meta.session_id,
                session_name=meta.session_name,
                session_date=meta.session_date,
                session_type=meta.session_type,
            ),
            True,
        )

    def _save(self, session: RaceSession, is_new: bool) -> None:
        if not is_new:
            self._storage.update_session(session)
            return
        try:
            self._storage.insert_session(session)
        except DuplicateSessionError:
            _logger.info(
                "%s: created concurrently by another writer, reapplying to its document",
                session.session_id,
            )
            raise
        _logger.info("%s: new %s session created", session.session_id, session.session_type.value)
