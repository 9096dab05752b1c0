"""Tests for TimingStorage: session documents under optimistic concurrency."""

from __future__ import annotations

import sqlite3
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from kart_timing.exceptions import DuplicateSessionError, StorageError, VersionConflictError
from kart_timing.timing.models import RaceSession, SessionType
from kart_timing.timing.storage import TimingStorage

CLT = timezone(timedelta(hours=-3))


def make_session(session_id: str = "Carrera_Sat Mar 08 2025", **overrides) -> RaceSession:
    defaults = dict(
        session_id=session_id,
        session_name="Carrera",
        session_date=datetime(2025, 3, 8, 15, 0, tzinfo=CLT),
        session_type=SessionType.RACE,
    )
    defaults.update(overrides)
    return RaceSession(**defaults)


# ---------------------------------------------------------------------------
# insert / load
# ---------------------------------------------------------------------------


def test_insert_then_load(storage):
    session = make_session()
    session.get_or_add_driver("Ana")
    session.recalculate_totals()
    assert storage.insert_session(session) == 1

    loaded = storage.load_session(session.session_id)
    assert loaded.version == 1
    assert loaded.drivers[0].driver_name == "Ana"
    assert loaded.created_at is not None


def test_load_missing_returns_none(storage):
    assert storage.load_session("nope") is None


def test_insert_duplicate_raises(storage):
    storage.insert_session(make_session())
    with pytest.raises(DuplicateSessionError) as exc_info:
        storage.insert_session(make_session())
    assert exc_info.value.session_id == "Carrera_Sat Mar 08 2025"


# ---------------------------------------------------------------------------
# update (compare-and-swap on version)
# ---------------------------------------------------------------------------


def test_update_bumps_version(storage):
    storage.insert_session(make_session())
    loaded = storage.load_session("Carrera_Sat Mar 08 2025")
    loaded.get_or_add_driver("Luis")
    assert storage.update_session(loaded) == 2
    assert storage.load_session(loaded.session_id).version == 2


def test_stale_update_raises_version_conflict(storage):
    storage.insert_session(make_session())
    first = storage.load_session("Carrera_Sat Mar 08 2025")
    second = storage.load_session("Carrera_Sat Mar 08 2025")

    first.get_or_add_driver("Ana")
    storage.update_session(first)

    second.get_or_add_driver("Luis")
    with pytest.raises(VersionConflictError) as exc_info:
        storage.update_session(second)
    assert exc_info.value.expected_version == 1

    stored = storage.load_session("Carrera_Sat Mar 08 2025")
    assert [d.driver_name for d in stored.drivers] == ["Ana"]


# ---------------------------------------------------------------------------
# listing
# ---------------------------------------------------------------------------


def test_list_sessions_filters(storage):
    storage.insert_session(make_session())
    storage.insert_session(
        make_session(
            "Practica_Sat Mar 08 2025", session_name="Practica", session_type=SessionType.PRACTICE
        )
    )
    storage.insert_session(
        make_session("Carrera_Sun Mar 09 2025", session_date=datetime(2025, 3, 9, 12, tzinfo=CLT))
    )

    assert len(storage.list_sessions()) == 3
    day = storage.list_sessions(session_day=date(2025, 3, 8))
    assert {d["sessionId"] for d in day} == {"Carrera_Sat Mar 08 2025", "Practica_Sat Mar 08 2025"}
    races = storage.list_sessions(session_type=SessionType.RACE)
    assert [d["sessionId"] for d in races] == ["Carrera_Sun Mar 09 2025", "Carrera_Sat Mar 08 2025"]


# ---------------------------------------------------------------------------
# errors / transactions
# ---------------------------------------------------------------------------


def test_sqlite_error_becomes_storage_error(storage):
    with pytest.raises(StorageError):
        with storage.errors("boom"):
            raise sqlite3.OperationalError("database is locked")


def test_unopenable_database_raises_storage_error(tmp_path):
    with patch("kart_timing.timing.storage.sqlite3.connect", side_effect=sqlite3.OperationalError("no")):
        with pytest.raises(StorageError):
            TimingStorage(str(tmp_path / "x.db"))


def test_transaction_rolls_back_on_error(storage):
    with pytest.raises(RuntimeError):
        with storage.transaction() as conn:
            conn.execute(
                "INSERT INTO accounts (account_id, first_name) VALUES ('a1', 'Diego')"
            )
            raise RuntimeError("abort")
    row = storage.connection().execute("SELECT COUNT(*) AS n FROM accounts").fetchone()
    assert row["n"] == 0


def test_nested_transaction_joins_outer(storage):
    with storage.transaction() as outer:
        outer.execute("INSERT INTO accounts (account_id, first_name) VALUES ('a1', 'Diego')")
        with storage.transaction() as inner:
            inner.execute("INSERT INTO accounts (account_id, first_name) VALUES ('a2', 'Ana')")
    row = storage.connection().execute("SELECT COUNT(*) AS n FROM accounts").fetchone()
    assert row["n"] == 2
