"""SnapshotParser: validates loose timing payloads into :class:`Snapshot` records.

This is the ingestion boundary: nothing downstream sees a raw dict.  A payload
is ``{"sessionName": ..., "drivers": [...]}`` or the timing system's short form
``{"N": ..., "D": [...]}``.  Driver entries accept either long field names or
the single-letter keys (``N P K L B T A G``).  Entries that fail validation are
dropped and reported; they never abort the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from kart_timing.exceptions import InvalidPayloadError
from kart_timing.timing.models import Snapshot

_logger = logging.getLogger(__name__)

# Placeholder values the timing screen shows before a time exists.
_SENTINELS = frozenset({"", "--", "--:--.---", "NaN", "nan"})


def _blank_to_zero(value: Any) -> Any:
    if value is None:
        return 0
    if isinstance(value, str) and value.strip() in _SENTINELS:
        return 0
    return value


class DriverEntry(BaseModel):
    """One driver entry of a timing payload, as received."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    name: str = Field(min_length=1, validation_alias=AliasChoices("name", "N"))
    position: int = Field(ge=1, validation_alias=AliasChoices("position", "P"))
    kart: int = Field(default=0, ge=0, validation_alias=AliasChoices("kart", "K"))
    lap_count: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("lapCount", "lap_count", "L")
    )
    best_time: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("bestTime", "best_time", "B")
    )
    last_time: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("lastTime", "last_time", "T")
    )
    avg_time: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("avgTime", "avg_time", "A")
    )
    gap: str = Field(default="", validation_alias=AliasChoices("gap", "G"))
    person_id: str | None = Field(
        default=None, validation_alias=AliasChoices("personId", "person_id")
    )

    @field_validator("kart", "lap_count", "best_time", "last_time", "avg_time", mode="before")
    @classmethod
    def _numeric_placeholders(cls, value: Any) -> Any:
        value = _blank_to_zero(value)
        if isinstance(value, float):
            return int(value)
        return value

    @field_validator("gap", mode="before")
    @classmethod
    def _gap_as_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("person_id", mode="before")
    @classmethod
    def _person_id_as_text(cls, value: Any) -> str | None:
        if value is None or str(value).strip() == "":
            return None
        return str(value).strip()

    def to_snapshot(self) -> Snapshot:
        return Snapshot(
            name=self.name,
            position=self.position,
            kart=self.kart,
            lap_count=self.lap_count,
            best_time=self.best_time,
            last_time=self.last_time,
            avg_time=self.avg_time,
            gap=self.gap,
            person_id=self.person_id,
        )


@dataclass
class RejectedEntry:
    index: int
    reason: str


@dataclass
class ParsedBatch:
    """A validated payload: the session name plus one snapshot per good entry."""

    session_name: str
    snapshots: list[Snapshot] = field(default_factory=list)
    rejected: list[RejectedEntry] = field(default_factory=list)


class SnapshotParser:
    """Parses a raw timing payload into a :class:`ParsedBatch`."""

    def parse_batch(self, raw: Any) -> ParsedBatch:
        """Validate *raw*.

        Raises
        ------
        InvalidPayloadError
            If the payload has no session name or no driver list.  Individual
            bad entries are reported in ``rejected`` instead.
        """
        if not isinstance(raw, dict):
            raise InvalidPayloadError("payload must be a JSON object")

        session_name = raw.get("sessionName", raw.get("N"))
        if not isinstance(session_name, str) or not session_name.strip():
            raise InvalidPayloadError("payload has no session name")

        entries = raw.get("drivers", raw.get("D"))
        if not isinstance(entries, list):
            raise InvalidPayloadError("payload has no driver list")

        batch = ParsedBatch(session_name=session_name.strip())
        for index, entry in enumerate(entries):
            try:
                batch.snapshots.append(self.parse_entry(entry, index))
            except (ValidationError, TypeError) as exc:
                reason = _first_error(exc)
                _logger.warning(
                    "Skipping driver entry %d of %r: %s", index, batch.session_name, reason
                )
                batch.rejected.append(RejectedEntry(index=index, reason=reason))
        return batch

    def parse_entry(self, entry: Any, index: int = 0) -> Snapshot:
        """Validate one driver entry.  A missing position defaults to list order."""
        if not isinstance(entry, dict):
            raise TypeError(f"driver entry must be an object, got {type(entry).__name__}")
        data = dict(entry)
        if _blank_to_zero(data.get("position", data.get("P"))) in (0, None):
            data.pop("P", None)
            data["position"] = index + 1
        return DriverEntry.model_validate(data).to_snapshot()


def _first_error(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        err = exc.errors()[0]
        loc = ".".join(str(part) for part in err.get("loc", ()))
        return f"{loc}: {err.get('msg', 'invalid')}" if loc else err.get("msg", "invalid")
    return str(exc)
