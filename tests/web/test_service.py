"""IngestionService: the end-to-end pipeline on a temporary database."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from kart_timing.exceptions import ConcurrencyConflictError, InvalidPayloadError, StorageError
from kart_timing.identity.models import ConfidenceTier, MatchMethod
from kart_timing.records.leaderboard import BoardKind, Period
from kart_timing.sessions.differencer import SnapshotDifferencer

SESSION_ID = "Carrera Final_Sat Mar 08 2025"


def entry(name: str, lap: int, last: int = 41230, **overrides) -> dict:
    d = {"N": name, "P": 1, "K": 7, "L": lap, "B": last, "T": last, "A": last, "G": ""}
    d.update(overrides)
    return d


def payload(*entries: dict, name: str = "Carrera Final") -> dict:
    return {"N": name, "D": list(entries)}


def laps_of(service, driver: str) -> list[int]:
    session = service.get_session(SESSION_ID)
    return [lap.lap_number for lap in session.find_driver(driver).laps]


# ---------------------------------------------------------------------------
# Lap capture / idempotence
# ---------------------------------------------------------------------------


def test_new_lap_recorded_once_on_redelivery(service):
    service.process_batch(payload(entry("Juan Perez", 3, last=41900)))
    first = service.process_batch(payload(entry("Juan Perez", 4)))
    again = service.process_batch(payload(entry("Juan Perez", 4)))

    assert first.recorded == ["Juan Perez"]
    assert again.recorded == []
    assert again.unchanged == ["Juan Perez"]
    assert laps_of(service, "Juan Perez") == [3, 4]
    lap4 = service.get_session(SESSION_ID).find_driver("Juan Perez").laps[-1]
    assert lap4.time == 41230


def test_redelivery_after_state_loss_is_deduplicated(service):
    service.process_batch(payload(entry("Juan Perez", 4)))
    service.differencer = SnapshotDifferencer()
    result = service.process_batch(payload(entry("Juan Perez", 4)))
    assert result.duplicates == ["Juan Perez"]
    assert laps_of(service, "Juan Perez") == [4]


def test_position_change_updates_live_fields_only(service):
    service.process_batch(payload(entry("Ana", 2, P=3)))
    result = service.process_batch(payload(entry("Ana", 2, P=1, G="-0.3")))
    assert result.updated == ["Ana"]
    driver = service.get_session(SESSION_ID).find_driver("Ana")
    assert driver.final_position == 1
    assert driver.gap_to_leader == "-0.3"
    assert driver.total_laps == 1


def test_driver_without_completed_lap_is_not_recorded(service):
    result = service.process_batch(payload(entry("Ana", 0, last=0)))
    assert result.recorded == []
    assert service.get_session(SESSION_ID) is None
    result = service.process_batch(payload(entry("Ana", 1)))
    assert result.recorded == ["Ana"]


def test_session_document_totals(service):
    service.process_batch(payload(entry("Ana", 1), entry("Luis", 1)))
    service.process_batch(payload(entry("Ana", 2), entry("Luis", 1)))
    session = service.get_session(SESSION_ID)
    assert session.total_drivers == 2
    assert session.total_laps == 2
    assert session.session_type.value == "carrera"
    assert session.session_date.utcoffset().total_seconds() == -3 * 3600


def test_rejected_entries_are_reported(service):
    result = service.process_batch(payload(entry("Ana", 1), {"P": 2}, "junk"))
    assert result.recorded == ["Ana"]
    assert [r.index for r in result.rejected] == [1, 2]


def test_invalid_payload_raises(service):
    with pytest.raises(InvalidPayloadError):
        service.process_batch({"D": []})


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------


def test_exhausted_retries_raised_after_other_drivers(service):
    real_append = service.aggregator.append_lap

    def flaky(meta, name, fields, lap):
        if name == "Luis":
            raise ConcurrencyConflictError("gave up", attempts=3)
        return real_append(meta, name, fields, lap)

    with patch.object(service.aggregator, "append_lap", side_effect=flaky):
        with pytest.raises(ConcurrencyConflictError) as err:
            service.process_batch(payload(entry("Ana", 1), entry("Luis", 1)))
    assert err.value.attempts == 3
    assert laps_of(service, "Ana") == [1]
    assert service.get_session(SESSION_ID).find_driver("Luis") is None

    retry = service.process_batch(payload(entry("Ana", 1), entry("Luis", 1)))
    assert retry.recorded == ["Luis"]
    assert laps_of(service, "Luis") == [1]


def test_storage_failure_raised_after_other_drivers(service):
    real_append = service.aggregator.append_lap

    def broken(meta, name, fields, lap):
        if name == "Ana":
            raise StorageError("disk gone")
        return real_append(meta, name, fields, lap)

    with patch.object(service.aggregator, "append_lap", side_effect=broken):
        with pytest.raises(StorageError):
            service.process_batch(payload(entry("Ana", 1), entry("Luis", 1)))
    assert laps_of(service, "Luis") == [1]

    result = service.process_batch(payload(entry("Ana", 1), entry("Luis", 1)))
    assert result.recorded == ["Ana"]


def test_failed_lap_survives_overlapping_redelivery(service):
    service.process_batch(payload(entry("Juan Perez", 3)))

    def overlapped_then_fail(meta, name, fields, lap):
        # the same lap arrives again while this write is still in flight
        service.process_batch(payload(entry("Juan Perez", 4)))
        raise StorageError("disk gone")

    with patch.object(service.aggregator, "append_lap", side_effect=overlapped_then_fail):
        with pytest.raises(StorageError):
            service.process_batch(payload(entry("Juan Perez", 4)))
    assert laps_of(service, "Juan Perez") == [3]

    result = service.process_batch(payload(entry("Juan Perez", 4)))
    assert result.recorded == ["Juan Perez"]
    assert laps_of(service, "Juan Perez") == [3, 4]


def test_leaderboard_failure_does_not_fail_lap(service):
    with patch.object(service.kart_board, "consider_record", side_effect=RuntimeError("boom")):
        result = service.process_batch(payload(entry("Ana", 1, last=38500)))
    assert result.recorded == ["Ana"]
    assert service.driver_board.get("Ana").best_time == 38500


def test_stale_state_is_cleared_each_batch(service):
    with patch.object(service.differencer, "clear_if_stale") as clear:
        service.process_batch(payload(entry("Ana", 1)))
    clear.assert_called_once()


# ---------------------------------------------------------------------------
# Identity resolution
# ---------------------------------------------------------------------------


def test_resolver_runs_on_first_sighting_only(service):
    with patch.object(service.resolver, "resolve_safely", wraps=service.resolver.resolve_safely) as spy:
        service.process_batch(payload(entry("Diego Soto", 1)))
        service.process_batch(payload(entry("Diego Soto", 2)))
        service.process_batch(payload(entry("Diego Soto", 2)))
    assert spy.call_count == 1


def test_exact_and_partial_names_resolve_differently(service):
    result = service.process_batch(payload(entry("Diego Soto", 1), entry("Diego", 1)))
    exact = result.resolutions["Diego Soto"]
    alone = result.resolutions["Diego"]
    assert exact.tier is ConfidenceTier.HIGH
    assert exact.method is MatchMethod.EXACT_MATCH
    assert alone.tier is not ConfidenceTier.HIGH


def test_identity_lap_counter_follows_recorded_laps(service):
    service.process_batch(payload(entry("Juan Perez", 1)))
    service.process_batch(payload(entry("Juan Perez", 2)))
    service.process_batch(payload(entry("Juan Perez", 2)))
    stats = service.driver_stats("acc_juan")
    assert stats["totalLaps"] == 2
    assert stats["totalSessions"] == 1


def test_failed_first_lap_counts_session_once(service):
    with patch.object(service.aggregator, "append_lap", side_effect=StorageError("disk gone")):
        with pytest.raises(StorageError):
            service.process_batch(payload(entry("Juan Perez", 1)))
    identity_id = service.differencer.identity_for(SESSION_ID, "Juan Perez")
    assert identity_id is not None

    result = service.process_batch(payload(entry("Juan Perez", 1)))
    assert result.recorded == ["Juan Perez"]
    assert service.differencer.identity_for(SESSION_ID, "Juan Perez") == identity_id

    identity = service.get_identity(identity_id)
    assert identity.total_sessions == 1
    assert identity.total_laps == 1
    assert [v.session_count for v in identity.name_history] == [1]


def test_resolver_failure_does_not_block_lap(service):
    with patch.object(service.resolver, "resolve", side_effect=StorageError("down")):
        result = service.process_batch(payload(entry("Ana", 1)))
    assert result.recorded == ["Ana"]
    assert result.resolutions["Ana"].method is MatchMethod.UNRESOLVED


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def test_records_follow_laps(service):
    service.process_batch(payload(entry("Ana", 1, last=38500, K=7)))
    service.process_batch(payload(entry("Ana", 2, last=39000, K=7)))
    service.process_batch(payload(entry("Ana", 3, last=38000, K=7)))
    karts = service.records(BoardKind.KART, Period.DAY)
    assert [(r.key, r.best_time) for r in karts] == [("7", 38000)]
    drivers = service.records(BoardKind.DRIVER)
    assert drivers[0].driver_name == "Ana"
    assert drivers[0].session_time == "15:00"


def test_unnumbered_kart_skips_kart_board(service):
    result = service.process_batch(payload(entry("Ana", 1, last=38500, K=0)))
    assert result.recorded == ["Ana"]
    assert service.records(BoardKind.KART) == []
    assert service.driver_board.get("Ana").best_time == 38500
