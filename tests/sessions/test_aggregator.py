"""Tests for SessionAggregator: appends under optimistic concurrency."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from kart_timing.exceptions import ConcurrencyConflictError, VersionConflictError
from kart_timing.sessions.aggregator import AppendStatus, SessionAggregator
from kart_timing.sessions.naming import session_meta_for
from kart_timing.timing.models import Lap, Snapshot
from kart_timing.timing.storage import TimingStorage

CLT = timezone(timedelta(hours=-3))
AT = datetime(2025, 3, 8, 15, 0, tzinfo=CLT)
META = session_meta_for("Carrera Final", AT)


def snap(name: str = "Juan Perez", lap_count: int = 4, **overrides) -> Snapshot:
    defaults = dict(
        name=name,
        position=2,
        kart=7,
        lap_count=lap_count,
        best_time=40100,
        last_time=41230,
        avg_time=41800,
        gap="+1.2",
    )
    defaults.update(overrides)
    return Snapshot(**defaults)


def append(agg: SessionAggregator, s: Snapshot):
    return agg.append_lap(META, s.name, s, Lap.from_snapshot(s, AT))


@pytest.fixture
def aggregator(storage):
    return SessionAggregator(storage, sleep=lambda s: None)


# ---------------------------------------------------------------------------
# append_lap
# ---------------------------------------------------------------------------


def test_first_append_creates_session(aggregator):
    result = append(aggregator, snap())
    assert result.status is AppendStatus.APPENDED
    assert result.created_session
    assert result.attempts == 1

    session = aggregator.get_session(META.session_id)
    driver = session.find_driver("Juan Perez")
    assert [lap.lap_number for lap in driver.laps] == [4]
    assert driver.last_time == 41230
    assert driver.kart_number == 7
    assert session.total_drivers == 1
    assert session.total_laps == 4
    assert session.processed is False


def test_redelivered_lap_is_skipped(aggregator):
    append(aggregator, snap())
    result = append(aggregator, snap())
    assert result.status is AppendStatus.DUPLICATE_LAP
    assert not result.appended
    driver = aggregator.get_session(META.session_id).find_driver("Juan Perez")
    assert [lap.lap_number for lap in driver.laps] == [4]


def test_out_of_order_laps_end_sorted(aggregator):
    for n in (3, 1, 2):
        append(aggregator, snap(lap_count=n))
    driver = aggregator.get_session(META.session_id).find_driver("Juan Perez")
    assert [lap.lap_number for lap in driver.laps] == [1, 2, 3]


def test_conflict_on_first_save_is_retried(storage):
    """A version conflict on attempt 1 is reloaded and reapplied; lap stored once."""
    aggregator = SessionAggregator(storage, sleep=lambda s: None)
    append(aggregator, snap(lap_count=3))

    real_update = storage.update_session
    calls = []

    def flaky_update(session):
        calls.append(session.version)
        if len(calls) == 1:
            raise VersionConflictError("stale", session_id=session.session_id)
        return real_update(session)

    with patch.object(storage, "update_session", side_effect=flaky_update):
        result = append(aggregator, snap(lap_count=4))

    assert result.appended
    assert result.attempts == 2
    driver = aggregator.get_session(META.session_id).find_driver("Juan Perez")
    assert [lap.lap_number for lap in driver.laps] == [3, 4]


def test_exhausted_retries_raise(storage):
    sleeps = []
    aggregator = SessionAggregator(storage, max_attempts=3, backoff=0.1, sleep=sleeps.append)
    append(aggregator, snap(lap_count=3))

    with patch.object(storage, "update_session", side_effect=VersionConflictError("stale")):
        with pytest.raises(ConcurrencyConflictError):
            append(aggregator, snap(lap_count=4))
    assert sleeps == pytest.approx([0.1, 0.2])


def test_duplicate_creation_reapplies_to_peer_document(storage):
    """Losing the create race still records the lap on the winner's document."""
    aggregator = SessionAggregator(storage, sleep=lambda s: None)
    real_load = storage.load_session
    loads = []

    def racing_load(session_id):
        loads.append(session_id)
        if len(loads) == 1:
            # A peer creates the session between our load and our insert.
            peer = SessionAggregator(TimingStorage(storage.db_path), sleep=lambda s: None)
            append(peer, snap(name="Ana", lap_count=1))
            return None
        return real_load(session_id)

    with patch.object(storage, "load_session", side_effect=racing_load):
        result = append(aggregator, snap(lap_count=1))

    assert result.appended
    assert result.attempts == 2
    session = aggregator.get_session(META.session_id)
    assert {d.driver_name for d in session.drivers} == {"Ana", "Juan Perez"}


def test_concurrent_writers_keep_both_laps(db_path):
    """Ana and Luis appended from separate threads both land in the document."""
    TimingStorage(db_path).close()
    barrier = threading.Barrier(2)
    errors = []

    def worker(name):
        storage = TimingStorage(db_path)
        aggregator = SessionAggregator(storage, max_attempts=10, backoff=0.01)
        try:
            barrier.wait()
            for lap in range(1, 4):
                append(aggregator, snap(name=name, lap_count=lap))
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)
        finally:
            storage.close()

    threads = [threading.Thread(target=worker, args=(n,)) for n in ("Ana", "Luis")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    storage = TimingStorage(db_path)
    session = storage.load_session(META.session_id)
    storage.close()
    assert session.total_drivers == 2
    assert session.total_laps == 3
    for name in ("Ana", "Luis"):
        assert [lap.lap_number for lap in session.find_driver(name).laps] == [1, 2, 3]


# ---------------------------------------------------------------------------
# live fields / corrections / listing
# ---------------------------------------------------------------------------


def test_update_live_fields(aggregator):
    append(aggregator, snap(position=3))
    assert aggregator.update_live_fields(META.session_id, snap(position=1, gap=""))
    driver = aggregator.get_session(META.session_id).find_driver("Juan Perez")
    assert driver.final_position == 1
    assert driver.best_position == 1
    assert driver.total_laps == 1


def test_update_live_fields_noop_cases(aggregator):
    assert not aggregator.update_live_fields(META.session_id, snap())
    append(aggregator, snap())
    assert not aggregator.update_live_fields(META.session_id, snap(name="Nobody"))
    assert not aggregator.update_live_fields(META.session_id, snap())


def test_replace_lap(aggregator):
    append(aggregator, snap(lap_count=4, last_time=41230))
    corrected = Lap(lap_number=4, time=40999, position=2, timestamp=AT)
    assert aggregator.replace_lap(META.session_id, "Juan Perez", corrected)
    laps = aggregator.get_session(META.session_id).find_driver("Juan Perez").laps
    assert [(lap.lap_number, lap.time) for lap in laps] == [(4, 40999)]


def test_remove_lap_recalculates_totals(aggregator):
    append(aggregator, snap(lap_count=1))
    append(aggregator, snap(lap_count=2))
    assert aggregator.remove_lap(META.session_id, "Juan Perez", 2)
    assert not aggregator.remove_lap(META.session_id, "Juan Perez", 2)
    assert aggregator.get_session(META.session_id).total_laps == 1


def test_list_sessions(aggregator):
    append(aggregator, snap())
    docs = aggregator.list_sessions()
    assert [d["sessionId"] for d in docs] == [META.session_id]
    assert docs[0]["sessionType"] == "carrera"
