"""Lap detection and race-session aggregation."""

from kart_timing.sessions.aggregator import AppendResult, AppendStatus, SessionAggregator
from kart_timing.sessions.differencer import LapTransition, SnapshotDifferencer, should_record_lap
from kart_timing.sessions.naming import (
    SessionMeta,
    classify_session,
    make_session_id,
    session_meta_for,
    venue_now,
)
from kart_timing.sessions.retry import with_optimistic_retry

__all__ = [
    "AppendResult",
    "AppendStatus",
    "LapTransition",
    "SessionAggregator",
    "SessionMeta",
    "SnapshotDifferencer",
    "classify_session",
    "make_session_id",
    "session_meta_for",
    "should_record_lap",
    "venue_now",
    "with_optimistic_retry",
]
