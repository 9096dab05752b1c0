"""Best-record leaderboards: bounded top-N best-lap tables.

Two boards share one implementation: per driver (keyed by display name) and
per kart (keyed by kart number).  A record is only ever replaced by a
strictly faster lap.  When a board is full, a newcomer must beat the slowest
entry, which is then evicted.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta

from kart_timing.timing.storage import TimingStorage

_logger = logging.getLogger(__name__)


class BoardKind(str, enum.Enum):
    DRIVER = "driver"
    KART = "kart"

    @property
    def table(self) -> str:
        return "best_driver_times" if self is BoardKind.DRIVER else "best_kart_times"


class Period(str, enum.Enum):
    """Look-back windows offered to leaderboard readers."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    ALLTIME = "alltime"

    def start(self, now: datetime) -> datetime | None:
        """Earliest session date included for this period (None = no limit)."""
        if self is Period.DAY:
            return now.replace(hour=0, minute=0, second=0, microsecond=0)
        if self is Period.WEEK:
            return now - timedelta(days=7)
        if self is Period.MONTH:
            return now - timedelta(days=30)
        return None


@dataclass(frozen=True)
class RecordContext:
    """Where a candidate lap came from."""

    driver_name: str
    kart_number: int
    session_id: str
    session_name: str
    session_date: datetime

    @property
    def session_time(self) -> str:
        return self.session_date.strftime("%H:%M")


@dataclass(frozen=True)
class BestRecord:
    key: str
    position: int
    best_time: int
    driver_name: str
    kart_number: int
    session_id: str
    session_name: str
    session_date: datetime
    session_time: str
    last_updated: datetime

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "position": self.position,
            "bestTime": self.best_time,
            "formattedTime": format_lap_time(self.best_time),
            "driverName": self.driver_name,
            "kartNumber": self.kart_number,
            "sessionId": self.session_id,
            "sessionName": self.session_name,
            "sessionDate": self.session_date.isoformat(),
            "sessionTime": self.session_time,
            "lastUpdated": self.last_updated.isoformat(),
        }


@dataclass(frozen=True)
class RecordUpdate:
    updated: bool
    reason: str
    position: int | None = None
    evicted: str | None = None


def format_lap_time(ms: int) -> str:
    """``38500`` -> ``"0:38.500"``."""
    if ms <= 0:
        return "--:--.---"
    minutes, rest = divmod(int(ms), 60_000)
    seconds, millis = divmod(rest, 1000)
    return f"{minutes}:{seconds:02d}.{millis:03d}"


class BestRecordBoard:
    """One bounded leaderboard stored in its own table.

    Parameters
    ----------
    storage:
        Shared storage; every update runs in one write transaction.
    kind:
        Driver or kart board.
    capacity:
        Maximum number of entries kept.
    min_lap_time_ms / max_lap_time_ms:
        Candidates outside this window are ignored (pit laps, sensor glitches).
    """

    def __init__(
        self,
        storage: TimingStorage,
        kind: BoardKind,
        capacity: int,
        min_lap_time_ms: int = 35_000,
        max_lap_time_ms: int = 120_000,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._storage = storage
        self._kind = kind
        self._capacity = capacity
        self._min = min_lap_time_ms
        self._max = max_lap_time_ms
        self._clock = clock

    @property
    def kind(self) -> BoardKind:
        return self._kind

    @property
    def capacity(self) -> int:
        return self._capacity

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def consider_record(self, key: str | int, candidate_time: int, context: RecordContext) -> RecordUpdate:
        """Upsert-if-better *candidate_time* for *key*."""
        key = str(key)
        if candidate_time <= 0 or not (self._min <= candidate_time <= self._max):
            return RecordUpdate(updated=False, reason="out_of_range")

        table = self._kind.table
        evicted = None
        with self._storage.transaction() as conn, self._storage.errors(f"update {table}"):
            row = conn.execute(
                f"SELECT best_time FROM {table} WHERE record_key = ?", (key,)
            ).fetchone()
            if row is not None and candidate_time >= row["best_time"]:
                return RecordUpdate(updated=False, reason="not_better")

            if row is None:
                count = conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()["n"]
                if count >= self._capacity:
                    worst = conn.execute(
                        f"SELECT record_key, best_time FROM {table} "
                        "ORDER BY best_time DESC, last_updated DESC LIMIT 1"
                    ).fetchone()
                    if candidate_time >= worst["best_time"]:
                        return RecordUpdate(updated=False, reason="board_full")
                    conn.execute(f"DELETE FROM {table} WHERE record_key = ?", (worst["record_key"],))
                    evicted = worst["record_key"]

            conn.execute(
                f"INSERT INTO {table} (record_key, position, best_time, driver_name, kart_number, "
                "session_id, session_name, session_date, session_time, last_updated) "
                "VALUES (?, 0, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(record_key) DO UPDATE SET best_time = excluded.best_time, "
                "driver_name = excluded.driver_name, kart_number = excluded.kart_number, "
                "session_id = excluded.session_id, session_name = excluded.session_name, "
                "session_date = excluded.session_date, session_time = excluded.session_time, "
                "last_updated = excluded.last_updated",
                (
                    key,
                    candidate_time,
                    context.driver_name,
                    context.kart_number,
                    context.session_id,
                    context.session_name,
                    context.session_date.isoformat(),
                    context.session_time,
                    self._clock().isoformat(),
                ),
            )
            position = self._rerank(conn, key)

        _logger.info(
            "New %s record for %s: %s (position %d%s)",
            self._kind.value, key, format_lap_time(candidate_time), position,
            f", evicted {evicted}" if evicted else "",
        )
        return RecordUpdate(updated=True, reason="improved", position=position, evicted=evicted)

    def top(self, since: datetime | None = None) -> list[BestRecord]:
        """Board entries in rank order, optionally only sessions on/after *since*.

        A filtered list is renumbered 1..n.
        """
        with self._storage.errors(f"read {self._kind.table}"):
            rows = self._storage.connection().execute(
                f"SELECT * FROM {self._kind.table} ORDER BY position"
            ).fetchall()
        records = [_row_to_record(r) for r in rows]
        if since is not None:
            kept = [r for r in records if r.session_date >= since]
            records = [replace(r, position=i) for i, r in enumerate(kept, start=1)]
        return records

    def get(self, key: str | int) -> BestRecord | None:
        with self._storage.errors(f"read {self._kind.table}"):
            row = self._storage.connection().execute(
                f"SELECT * FROM {self._kind.table} WHERE record_key = ?", (str(key),)
            ).fetchone()
        return _row_to_record(row) if row else None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _rerank(self, conn, key: str) -> int:
        table = self._kind.table
        keys = [
            r["record_key"]
            for r in conn.execute(
                f"SELECT record_key FROM {table} ORDER BY best_time ASC, last_updated ASC"
            ).fetchall()
        ]
        conn.executemany(
            f"UPDATE {table} SET position = ? WHERE record_key = ?",
            [(i, k) for i, k in enumerate(keys, start=1)],
        )
        return keys.index(key) + 1


def _row_to_record(row) -> BestRecord:
    return BestRecord(
        key=row["record_key"],
        position=row["position"],
        best_time=row["best_time"],
        driver_name=row["driver_name"],
        kart_number=row["kart_number"],
        session_id=row["session_id"],
        session_name=row["session_name"],
        session_date=datetime.fromisoformat(row["session_date"]),
        session_time=row["session_time"],
        last_updated=datetime.fromisoformat(row["last_updated"]),
    )
