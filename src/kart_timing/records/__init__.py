"""Best-lap leaderboards per driver and per kart."""

from kart_timing.records.leaderboard import (
    BestRecord,
    BestRecordBoard,
    BoardKind,
    Period,
    RecordContext,
    RecordUpdate,
    format_lap_time,
)

__all__ = [
    "BestRecord",
    "BestRecordBoard",
    "BoardKind",
    "Period",
    "RecordContext",
    "RecordUpdate",
    "format_lap_time",
]
