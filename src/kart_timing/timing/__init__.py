"""Timing data: snapshots, session documents and their storage.

Public API
----------
Snapshot        - one validated timing reading for one driver
Lap             - one completed lap
DriverInRace    - a driver's laps and summary within a session
RaceSession     - the persisted session document
SessionType     - clasificacion / carrera / practica / otro
SnapshotParser  - raw payload → ParsedBatch of Snapshots
TimingStorage   - SQLite persistence
"""

from kart_timing.timing.models import DriverInRace, Lap, RaceSession, SessionType, Snapshot
from kart_timing.timing.parser import ParsedBatch, RejectedEntry, SnapshotParser
from kart_timing.timing.storage import TimingStorage

__all__ = [
    "DriverInRace",
    "Lap",
    "ParsedBatch",
    "RaceSession",
    "RejectedEntry",
    "SessionType",
    "Snapshot",
    "SnapshotParser",
    "TimingStorage",
]
