"""SnapshotDifferencer: decides whether a snapshot is a newly completed lap.

The state here is an optimisation for spotting lap transitions, not a source
of truth: if it is lost the aggregator's lap-number check still rejects
duplicates, so the worst case is one redundant "first sighting".
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from kart_timing.timing.models import Snapshot

_logger = logging.getLogger(__name__)


def should_record_lap(current: Snapshot, previous: Snapshot | None) -> bool:
    """True on a first sighting or when the cumulative lap count went up.

    Position or time changes without a lap increment never produce a lap.
    """
    if previous is None:
        return True
    return current.lap_count > previous.lap_count


@dataclass(frozen=True)
class LapTransition:
    """Outcome of :meth:`SnapshotDifferencer.claim` for one driver."""

    session_id: str
    current: Snapshot
    previous: Snapshot | None
    is_new_lap: bool

    @property
    def first_sighting(self) -> bool:
        return self.previous is None


class _SessionState:
    __slots__ = ("lock", "drivers", "identities")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.drivers: dict[str, Snapshot] = {}
        self.identities: dict[str, int] = {}


class SnapshotDifferencer:
    """Per-session, per-driver "last seen" snapshots.

    Each session has its own lock, so deciding "new lap" and recording the
    snapshot for one driver is atomic even when deliveries for the same
    session are handled on several threads.

    Parameters
    ----------
    ttl_seconds:
        All state is dropped once it is older than this (checked on access).
    clock:
        Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 24 * 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._sessions: dict[str, _SessionState] = {}
        self._registry_lock = threading.Lock()
        self._started = clock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def claim(self, session_id: str, current: Snapshot) -> LapTransition:
        """Compare *current* with the last snapshot and store it as the new last.

        If the caller then fails to persist a new lap it must :meth:`release`
        the transition, otherwise a redelivery would be seen as "no change".
        """
        state = self._session(session_id)
        with state.lock:
            previous = state.drivers.get(current.name)
            is_new = should_record_lap(current, previous)
            if previous is not None and current.lap_count < previous.lap_count:
                # Late redelivery of an older reading; keep the newer state.
                _logger.debug(
                    "%s: stale snapshot for %r (lap %d < %d)",
                    session_id, current.name, current.lap_count, previous.lap_count,
                )
            else:
                state.drivers[current.name] = current
        if is_new:
            _logger.debug(
                "%s: %r new lap %d (first sighting: %s)",
                session_id, current.name, current.lap_count, previous is None,
            )
        return LapTransition(
            session_id=session_id, current=current, previous=previous, is_new_lap=is_new
        )

    def release(self, transition: LapTransition) -> None:
        """Undo a :meth:`claim` whose lap could not be persisted.

        The slot is restored unless a higher lap count has been claimed since.
        A redelivery of the same lap that arrived in the meantime does not
        count: it saw "no change" and never persisted the lap either.
        """
        state = self._sessions.get(transition.session_id)
        if state is None:
            return
        name = transition.current.name
        with state.lock:
            held = state.drivers.get(name)
            if held is None or held.lap_count > transition.current.lap_count:
                return
            if transition.previous is None:
                state.drivers.pop(name, None)
            else:
                state.drivers[name] = transition.previous

    def last_seen(self, session_id: str, driver_name: str) -> Snapshot | None:
        state = self._sessions.get(session_id)
        if state is None:
            return None
        with state.lock:
            return state.drivers.get(driver_name)

    def remember_identity(self, session_id: str, driver_name: str, identity_id: int) -> None:
        state = self._session(session_id)
        with state.lock:
            state.identities[driver_name] = identity_id

    def identity_for(self, session_id: str, driver_name: str) -> int | None:
        state = self._sessions.get(session_id)
        if state is None:
            return None
        with state.lock:
            return state.identities.get(driver_name)

    def clear(self) -> None:
        """Forget every session."""
        with self._registry_lock:
            self._sessions.clear()
            self._started = self._clock()
        _logger.info("Cleared snapshot differencer state")

    def clear_if_stale(self) -> bool:
        """Drop all state once it is older than the TTL.  Returns True if cleared."""
        if self._clock() - self._started < self._ttl:
            return False
        self.clear()
        return True

    def session_count(self) -> int:
        with self._registry_lock:
            return len(self._sessions)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _session(self, session_id: str) -> _SessionState:
        with self._registry_lock:
            state = self._sessions.get(session_id)
            if state is None:
                state = _SessionState()
                self._sessions[session_id] = state
            return state
