"""Tests for PipelineConfig."""

from __future__ import annotations

import dataclasses

import pytest

from kart_timing.config import PipelineConfig


def test_defaults():
    cfg = PipelineConfig()
    assert cfg.venue_timezone == "America/Santiago"
    assert cfg.max_save_attempts == 3
    assert cfg.retry_backoff_s == 0.1
    assert cfg.fuzzy_min_score == 0.85
    assert (cfg.driver_board_size, cfg.kart_board_size) == (10, 20)
    assert (cfg.min_lap_time_ms, cfg.max_lap_time_ms) == (35_000, 120_000)
    assert cfg.state_ttl_hours == 24.0


def test_from_env_reads_and_converts(monkeypatch):
    monkeypatch.setenv("KART_TIMING_DB", "/data/karts.db")
    monkeypatch.setenv("KART_TIMING_SAVE_ATTEMPTS", "5")
    monkeypatch.setenv("KART_TIMING_FUZZY_MIN_SCORE", "0.9")
    cfg = PipelineConfig.from_env()
    assert cfg.db_path == "/data/karts.db"
    assert cfg.max_save_attempts == 5
    assert cfg.fuzzy_min_score == 0.9


def test_overrides_beat_environment(monkeypatch):
    monkeypatch.setenv("KART_TIMING_DB", "/data/karts.db")
    cfg = PipelineConfig.from_env(db_path=":memory:")
    assert cfg.db_path == ":memory:"


def test_config_is_frozen():
    with pytest.raises(dataclasses.FrozenInstanceError):
        PipelineConfig().db_path = "x"
