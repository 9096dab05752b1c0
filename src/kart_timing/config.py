"""Pipeline configuration for kart_timing."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

# env variable -> (field name, converter)
_ENV_CONFIG_MAP: dict[str, tuple[str, Any]] = {
    "KART_TIMING_DB": ("db_path", str),
    "KART_TIMING_TZ": ("venue_timezone", str),
    "KART_TIMING_SAVE_ATTEMPTS": ("max_save_attempts", int),
    "KART_TIMING_RETRY_BACKOFF_S": ("retry_backoff_s", float),
    "KART_TIMING_FUZZY_MIN_SCORE": ("fuzzy_min_score", float),
    "KART_TIMING_DRIVER_BOARD_SIZE": ("driver_board_size", int),
    "KART_TIMING_KART_BOARD_SIZE": ("kart_board_size", int),
    "KART_TIMING_MIN_LAP_MS": ("min_lap_time_ms", int),
    "KART_TIMING_MAX_LAP_MS": ("max_lap_time_ms", int),
    "KART_TIMING_STATE_TTL_HOURS": ("state_ttl_hours", float),
}


@dataclasses.dataclass(frozen=True)
class PipelineConfig:
    """Ingestion pipeline configuration.

    Parameters
    ----------
    db_path : str
        SQLite file holding sessions, identities, registry and records.
    venue_timezone : str
        IANA zone used to derive the calendar date of a session.
    max_save_attempts : int
        Optimistic-concurrency attempts per append before giving up.
    retry_backoff_s : float
        Base backoff; attempt ``n`` waits ``n * retry_backoff_s``.
    fuzzy_min_score : float
        Minimum scorer output for a historical fuzzy match to be accepted.
    driver_board_size, kart_board_size : int
        Capacity of the best-record leaderboards.
    min_lap_time_ms, max_lap_time_ms : int
        Lap times outside this window never reach the leaderboards.
    state_ttl_hours : float
        Age after which the differencer's in-memory state is dropped.
    """

    db_path: str = "kart_timing.db"
    venue_timezone: str = "America/Santiago"
    max_save_attempts: int = 3
    retry_backoff_s: float = 0.1
    fuzzy_min_score: float = 0.85
    driver_board_size: int = 10
    kart_board_size: int = 20
    min_lap_time_ms: int = 35_000
    max_lap_time_ms: int = 120_000
    state_ttl_hours: float = 24.0

    @classmethod
    def from_env(cls, **overrides: Any) -> PipelineConfig:
        """Create configuration from ``KART_TIMING_*`` environment variables.

        Explicit keyword arguments take precedence over the environment.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}
        for env_key, (field_name, convert) in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = convert(val)
        config_kwargs.update(overrides)
        return cls(**config_kwargs)
