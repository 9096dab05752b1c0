"""Timing data models.

``Snapshot`` is the validated, ephemeral reading for one driver.  ``Lap``,
``DriverInRace`` and ``RaceSession`` make up the persisted session document;
their ``to_dict`` output uses the camelCase field names that reporting
collaborators read.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime


class SessionType(str, enum.Enum):
    CLASSIFICATION = "clasificacion"
    RACE = "carrera"
    PRACTICE = "practica"
    OTHER = "otro"


@dataclass(frozen=True)
class Snapshot:
    """One timing-system sample for one driver at one instant.

    Times are in milliseconds; ``0`` means the timing system has no value yet.
    """

    name: str
    position: int
    kart: int
    lap_count: int
    best_time: int
    last_time: int
    avg_time: int
    gap: str
    person_id: str | None = None

    @property
    def is_personal_best(self) -> bool:
        """True when the lap just completed is the driver's best so far."""
        return self.last_time > 0 and self.best_time == self.last_time


@dataclass(frozen=True)
class Lap:
    """One completed lap.  Never patched; corrections replace the whole entry."""

    lap_number: int
    time: int
    position: int
    timestamp: datetime
    gap_to_leader: str = ""
    is_personal_best: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot, timestamp: datetime) -> Lap:
        return cls(
            lap_number=snapshot.lap_count,
            time=snapshot.last_time,
            position=snapshot.position,
            timestamp=timestamp,
            gap_to_leader=snapshot.gap,
            is_personal_best=snapshot.is_personal_best,
        )

    def to_dict(self) -> dict:
        return {
            "lapNumber": self.lap_number,
            "time": self.time,
            "position": self.position,
            "timestamp": self.timestamp.isoformat(),
            "gapToLeader": self.gap_to_leader,
            "isPersonalBest": self.is_personal_best,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Lap:
        return cls(
            lap_number=int(d["lapNumber"]),
            time=int(d["time"]),
            position=int(d["position"]),
            timestamp=datetime.fromisoformat(d["timestamp"]),
            gap_to_leader=d.get("gapToLeader") or "",
            is_personal_best=bool(d.get("isPersonalBest", False)),
        )


@dataclass
class DriverInRace:
    """One driver's presence within one session.

    ``driver_name`` is the join key inside the session.  ``laps`` is kept
    sorted by ``lap_number`` and never holds two laps with the same number.
    """

    driver_name: str
    kart_number: int = 0
    final_position: int = 0
    best_position: int = 0
    best_time: int = 0
    last_time: int = 0
    average_time: int = 0
    gap_to_leader: str = ""
    laps: list[Lap] = field(default_factory=list)

    @property
    def total_laps(self) -> int:
        return len(self.laps)

    @property
    def max_lap_number(self) -> int:
        return self.laps[-1].lap_number if self.laps else 0

    def has_lap(self, lap_number: int) -> bool:
        return any(lap.lap_number == lap_number for lap in self.laps)

    def add_lap(self, lap: Lap) -> bool:
        """Insert *lap* keeping laps ordered.  Returns False on a duplicate number."""
        if self.has_lap(lap.lap_number):
            return False
        self.laps.append(lap)
        self.laps.sort(key=lambda lp: lp.lap_number)
        return True

    def remove_lap(self, lap_number: int) -> bool:
        before = len(self.laps)
        self.laps = [lap for lap in self.laps if lap.lap_number != lap_number]
        return len(self.laps) != before

    def apply_snapshot(self, snapshot: Snapshot) -> None:
        """Copy the timing system's own aggregates onto this entry."""
        self.kart_number = snapshot.kart
        self.final_position = snapshot.position
        if snapshot.position > 0 and (
            self.best_position == 0 or snapshot.position < self.best_position
        ):
            self.best_position = snapshot.position
        self.best_time = snapshot.best_time
        self.last_time = snapshot.last_time
        self.average_time = snapshot.avg_time
        self.gap_to_leader = snapshot.gap

    def to_dict(self) -> dict:
        return {
            "driverName": self.driver_name,
            "kartNumber": self.kart_number,
            "finalPosition": self.final_position,
            "bestPosition": self.best_position,
            "totalLaps": self.total_laps,
            "bestTime": self.best_time,
            "lastTime": self.last_time,
            "averageTime": self.average_time,
            "gapToLeader": self.gap_to_leader,
            "laps": [lap.to_dict() for lap in self.laps],
        }

    @classmethod
    def from_dict(cls, d: dict) -> DriverInRace:
        laps = sorted(
            (Lap.from_dict(lap) for lap in d.get("laps", [])),
            key=lambda lp: lp.lap_number,
        )
        return cls(
            driver_name=d["driverName"],
            kart_number=int(d.get("kartNumber", 0)),
            final_position=int(d.get("finalPosition", 0)),
            best_position=int(d.get("bestPosition", 0)),
            best_time=int(d.get("bestTime", 0)),
            last_time=int(d.get("lastTime", 0)),
            average_time=int(d.get("averageTime", 0)),
            gap_to_leader=d.get("gapToLeader") or "",
            laps=laps,
        )


@dataclass
class RaceSession:
    """One timed session at the venue: a single persisted document.

    ``version`` is the optimistic-concurrency token read with the document;
    it is not part of the document body.
    """

    session_id: str
    session_name: str
    session_date: datetime
    session_type: SessionType
    drivers: list[DriverInRace] = field(default_factory=list)
    total_drivers: int = 0
    total_laps: int = 0
    processed: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0

    def find_driver(self, driver_name: str) -> DriverInRace | None:
        for driver in self.drivers:
            if driver.driver_name == driver_name:
                return driver
        return None

    def get_or_add_driver(self, driver_name: str) -> DriverInRace:
        driver = self.find_driver(driver_name)
        if driver is None:
            driver = DriverInRace(driver_name=driver_name)
            self.drivers.append(driver)
        return driver

    def recalculate_totals(self) -> None:
        """Driver count, max lap count across drivers; reopen the session."""
        self.total_drivers = len(self.drivers)
        self.total_laps = max((d.max_lap_number for d in self.drivers), default=0)
        self.processed = False

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "sessionName": self.session_name,
            "sessionDate": self.session_date.isoformat(),
            "sessionType": self.session_type.value,
            "drivers": [d.to_dict() for d in self.drivers],
            "totalDrivers": self.total_drivers,
            "totalLaps": self.total_laps,
            "processed": self.processed,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, d: dict, version: int = 0) -> RaceSession:
        created = d.get("createdAt")
        updated = d.get("updatedAt")
        return cls(
            session_id=d["sessionId"],
            session_name=d["sessionName"],
            session_date=datetime.fromisoformat(d["sessionDate"]),
            session_type=SessionType(d.get("sessionType", SessionType.OTHER.value)),
            drivers=[DriverInRace.from_dict(x) for x in d.get("drivers", [])],
            total_drivers=int(d.get("totalDrivers", 0)),
            total_laps=int(d.get("totalLaps", 0)),
            processed=bool(d.get("processed", False)),
            created_at=datetime.fromisoformat(created) if created else None,
            updated_at=datetime.fromisoformat(updated) if updated else None,
            version=version,
        )
