"""Shared fixtures: a file-backed TimingStorage per test."""

from __future__ import annotations

import pytest

from kart_timing.timing.storage import TimingStorage


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "kart_timing_test.db")


@pytest.fixture
def storage(db_path):
    s = TimingStorage(db_path)
    yield s
    s.close()
