"""Deterministic session identity and classification."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo

from kart_timing.timing.models import SessionType

# Categories that run on other layouts or classes; their "races" don't count
# as main races.
_NON_MAIN_RACE_KEYWORDS = (
    "f1", "k 1", "k 2", "k 3", "k1", "k2", "k3",
    "gt", "mujeres", "women", "junior",
)


@dataclass(frozen=True)
class SessionMeta:
    """Everything the aggregator needs to create a session document."""

    session_id: str
    session_name: str
    session_date: datetime
    session_type: SessionType


def make_session_id(session_name: str, session_date: datetime) -> str:
    """Return ``"<name>_<Www Mmm DD YYYY>"``; identical for any time on the same day."""
    return f"{session_name}_{session_date.strftime('%a %b %d %Y')}"


def classify_session(session_name: str) -> SessionType:
    """Derive the session type from its display name."""
    name = session_name.lower()

    if "clasificacion" in name or "qualifying" in name:
        return SessionType.CLASSIFICATION

    if "carrera" in name or "race" in name:
        if any(keyword in name for keyword in _NON_MAIN_RACE_KEYWORDS):
            return SessionType.OTHER
        return SessionType.RACE

    if "practica" in name or "practice" in name:
        return SessionType.PRACTICE

    return SessionType.OTHER


def venue_now(timezone: str, now: datetime | None = None) -> datetime:
    """Current time at the venue (or *now* converted to the venue zone)."""
    zone = ZoneInfo(timezone)
    if now is None:
        return datetime.now(zone)
    if now.tzinfo is None:
        return now.replace(tzinfo=zone)
    return now.astimezone(zone)


def session_meta_for(session_name: str, at: datetime) -> SessionMeta:
    """Build :class:`SessionMeta` for *session_name* observed at venue time *at*."""
    return SessionMeta(
        session_id=make_session_id(session_name, at),
        session_name=session_name,
        session_date=at,
        session_type=classify_session(session_name),
    )
