"""IngestionService: runs one timing payload through the whole pipeline.

parse -> differencer -> resolver (first sighting, best-effort) ->
aggregator -> leaderboards (fire-and-forget).  Also serves the read side of
the HTTP API.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

from kart_timing.config import PipelineConfig
from kart_timing.exceptions import ConcurrencyConflictError, StorageError
from kart_timing.identity.models import DriverIdentity, Resolution
from kart_timing.identity.registry import DriverRegistry, SqliteDriverRegistry
from kart_timing.identity.resolver import IdentityResolver
from kart_timing.records.leaderboard import (
    BestRecord,
    BestRecordBoard,
    BoardKind,
    Period,
    RecordContext,
)
from kart_timing.sessions.aggregator import SessionAggregator
from kart_timing.sessions.differencer import SnapshotDifferencer
from kart_timing.sessions.naming import SessionMeta, session_meta_for, venue_now
from kart_timing.timing.models import Lap, RaceSession, SessionType, Snapshot
from kart_timing.timing.parser import RejectedEntry, SnapshotParser
from kart_timing.timing.storage import TimingStorage

_logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Per-batch counters.  ``failed`` drivers are safe to redeliver."""

    session_id: str
    session_name: str
    session_type: SessionType
    recorded: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    rejected: list[RejectedEntry] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    resolutions: dict[str, Resolution] = field(default_factory=dict)


class IngestionService:
    """Wires the pipeline components together.

    Parameters
    ----------
    storage:
        Shared SQLite storage.
    config:
        Pipeline settings.
    registry:
        Account lookup; defaults to the ``accounts`` table of *storage*.
    clock:
        Returns an aware "now"; converted to venue time per batch.
    sleep:
        Passed to the aggregator's retry loop (tests inject a no-op).
    """

    def __init__(
        self,
        storage: TimingStorage,
        config: PipelineConfig | None = None,
        registry: DriverRegistry | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.storage = storage
        self._clock = clock
        self.parser = SnapshotParser()
        self.differencer = SnapshotDifferencer(ttl_seconds=self.config.state_ttl_hours * 3600)

        retry_kwargs: dict[str, Any] = {}
        if sleep is not None:
            retry_kwargs["sleep"] = sleep
        self.aggregator = SessionAggregator(
            storage,
            max_attempts=self.config.max_save_attempts,
            backoff=self.config.retry_backoff_s,
            **retry_kwargs,
        )
        self.resolver = IdentityResolver(
            storage,
            registry or SqliteDriverRegistry(storage),
            min_score=self.config.fuzzy_min_score,
            clock=clock,
        )
        self.driver_board = BestRecordBoard(
            storage,
            BoardKind.DRIVER,
            self.config.driver_board_size,
            self.config.min_lap_time_ms,
            self.config.max_lap_time_ms,
            clock=clock,
        )
        self.kart_board = BestRecordBoard(
            storage,
            BoardKind.KART,
            self.config.kart_board_size,
            self.config.min_lap_time_ms,
            self.config.max_lap_time_ms,
            clock=clock,
        )

    @classmethod
    def from_config(cls, config: PipelineConfig) -> IngestionService:
        return cls(TimingStorage(config.db_path), config)

    def close(self) -> None:
        self.storage.close()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def process_batch(self, raw: Any, received_at: datetime | None = None) -> BatchResult:
        """Ingest one payload.

        Every driver is processed independently; a failure for one never
        stops the others.

        Raises
        ------
        InvalidPayloadError
            The payload has no session name or driver list.
        StorageError
            At least one driver could not be processed because the store is
            unreachable (after all other drivers were attempted).
        ConcurrencyConflictError
            At least one driver exhausted its optimistic retries; redelivering
            the payload is safe.
        """
        self.differencer.clear_if_stale()
        batch = self.parser.parse_batch(raw)
        at = venue_now(self.config.venue_timezone, received_at or self._clock())
        meta = session_meta_for(batch.session_name, at)
        result = BatchResult(
            session_id=meta.session_id,
            session_name=meta.session_name,
            session_type=meta.session_type,
            rejected=list(batch.rejected),
        )

        storage_failures: list[StorageError] = []
        conflicts: list[ConcurrencyConflictError] = []
        for snapshot in batch.snapshots:
            try:
                self._process_driver(meta, snapshot, at, result)
            except StorageError as exc:
                _logger.error("%s: storage failure for %r: %s", meta.session_id, snapshot.name, exc)
                result.failed.append(snapshot.name)
                storage_failures.append(exc)
            except ConcurrencyConflictError as exc:
                _logger.warning("%s: %r not saved: %s", meta.session_id, snapshot.name, exc)
                result.failed.append(snapshot.name)
                conflicts.append(exc)
            except Exception:
                _logger.exception("%s: failed to process %r", meta.session_id, snapshot.name)
                result.failed.append(snapshot.name)

        _logger.info(
            "%s: batch done, %d recorded, %d duplicate, %d updated, %d rejected, %d failed",
            meta.session_id, len(result.recorded), len(result.duplicates),
            len(result.updated), len(result.rejected), len(result.failed),
        )
        if storage_failures:
            raise StorageError(
                f"{len(storage_failures)} driver(s) of {meta.session_id!r} not stored: "
                f"{storage_failures[0]}"
            ) from storage_failures[0]
        if conflicts:
            raise ConcurrencyConflictError(
                f"{len(conflicts)} driver(s) of {meta.session_id!r} not saved: {conflicts[0]}",
                attempts=conflicts[0].attempts,
            ) from conflicts[0]
        return result

    def _process_driver(
        self, meta: SessionMeta, snapshot: Snapshot, at: datetime, result: BatchResult
    ) -> None:
        transition = self.differencer.claim(meta.session_id, snapshot)

        # A released first sighting comes back as a first sighting; its
        # identity is already known and the session already counted.
        if transition.first_sighting and self.differencer.identity_for(
            meta.session_id, snapshot.name
        ) is None:
            resolution = self.resolver.resolve_safely(snapshot.name, snapshot.person_id)
            result.resolutions[snapshot.name] = resolution
            if resolution.identity_id is not None:
                self.differencer.remember_identity(
                    meta.session_id, snapshot.name, resolution.identity_id
                )

        if not transition.is_new_lap or snapshot.lap_count < 1:
            if self.aggregator.update_live_fields(meta.session_id, snapshot):
                result.updated.append(snapshot.name)
            else:
                result.unchanged.append(snapshot.name)
            return

        lap = Lap.from_snapshot(snapshot, at)
        try:
            outcome = self.aggregator.append_lap(meta, snapshot.name, snapshot, lap)
        except Exception:
            self.differencer.release(transition)
            raise

        if not outcome.appended:
            result.duplicates.append(snapshot.name)
            return
        result.recorded.append(snapshot.name)
        self._after_append(meta, snapshot, lap)

    def _after_append(self, meta: SessionMeta, snapshot: Snapshot, lap: Lap) -> None:
        identity_id = self.differencer.identity_for(meta.session_id, snapshot.name)
        if identity_id is not None:
            try:
                self.resolver.record_laps(identity_id, 1)
            except Exception:
                _logger.exception("Could not update lap count of identity %d", identity_id)

        context = RecordContext(
            driver_name=snapshot.name,
            kart_number=snapshot.kart,
            session_id=meta.session_id,
            session_name=meta.session_name,
            session_date=meta.session_date,
        )
        boards = [(self.driver_board, snapshot.name)]
        if snapshot.kart > 0:
            boards.append((self.kart_board, snapshot.kart))
        for board, key in boards:
            try:
                board.consider_record(key, lap.time, context)
            except Exception:
                _logger.exception("%s board update failed for %s", board.kind.value, key)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> RaceSession | None:
        return self.aggregator.get_session(session_id)

    def list_sessions(
        self,
        session_day: date | None = None,
        session_type: SessionType | None = None,
        limit: int = 50,
    ) -> list[dict]:
        return self.aggregator.list_sessions(session_day, session_type, limit)

    def get_identity(self, identity_id: int) -> DriverIdentity | None:
        return self.resolver.store.get(identity_id)

    def driver_stats(self, account_id: str) -> dict:
        return self.resolver.driver_stats(account_id)

    def manual_bind(
        self,
        display_name: str,
        account_id: str,
        person_id: str | None = None,
        verified_by: str | None = None,
    ) -> Resolution:
        return self.resolver.manual_bind(display_name, account_id, person_id, verified_by)

    def records(self, kind: BoardKind, period: Period = Period.ALLTIME) -> list[BestRecord]:
        board = self.driver_board if kind is BoardKind.DRIVER else self.kart_board
        now = venue_now(self.config.venue_timezone, self._clock())
        return board.top(since=period.start(now))
