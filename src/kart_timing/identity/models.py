"""Identity data models."""

from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field
from datetime import datetime


class ConfidenceTier(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class LinkingStatus(str, enum.Enum):
    UNLINKED = "unlinked"
    PENDING = "pending"
    LINKED = "linked"
    MANUAL = "manual"


class NameConfidence(str, enum.Enum):
    """How a name variant came to be attached to an identity."""

    CONFIRMED = "confirmed"
    LIKELY = "likely"
    POSSIBLE = "possible"

    @property
    def tier(self) -> ConfidenceTier:
        return _NAME_TO_TIER[self]


_NAME_TO_TIER = {
    NameConfidence.CONFIRMED: ConfidenceTier.HIGH,
    NameConfidence.LIKELY: ConfidenceTier.MEDIUM,
    NameConfidence.POSSIBLE: ConfidenceTier.LOW,
}


class NameSource(str, enum.Enum):
    TIMING_STREAM = "timing_stream"
    REGISTRY = "registry"
    MANUAL_ENTRY = "manual_entry"


class MatchMethod(str, enum.Enum):
    MANUAL = "manual"
    PERSON_ID = "person_id"
    EXACT_MATCH = "exact_match"
    KNOWN_VARIANT = "known_variant"
    FUZZY_MATCH = "fuzzy_match"
    NEW_IDENTITY = "new_identity"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class Account:
    """A registered driver account, as the registration side stores it."""

    account_id: str
    first_name: str
    last_name: str = ""
    alias: str = ""
    person_id: str | None = None
    email: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class NameVariant:
    """One entry of an identity's append-only name history."""

    name: str
    first_seen: datetime
    last_seen: datetime
    session_count: int = 1
    confidence: NameConfidence = NameConfidence.POSSIBLE
    source: NameSource = NameSource.TIMING_STREAM

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "firstSeen": self.first_seen.isoformat(),
            "lastSeen": self.last_seen.isoformat(),
            "sessionCount": self.session_count,
            "confidence": self.confidence.value,
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> NameVariant:
        return cls(
            name=d["name"],
            first_seen=datetime.fromisoformat(d["firstSeen"]),
            last_seen=datetime.fromisoformat(d["lastSeen"]),
            session_count=int(d.get("sessionCount", 1)),
            confidence=NameConfidence(d.get("confidence", NameConfidence.POSSIBLE.value)),
            source=NameSource(d.get("source", NameSource.TIMING_STREAM.value)),
        )


@dataclass
class DriverIdentity:
    """A cross-session driver identity.  Never deleted."""

    primary_name: str
    name_history: list[NameVariant] = field(default_factory=list)
    id: int | None = None
    person_id: str | None = None
    account_id: str | None = None
    total_sessions: int = 0
    total_laps: int = 0
    first_race_date: datetime | None = None
    last_race_date: datetime | None = None
    linking_status: LinkingStatus = LinkingStatus.UNLINKED
    confidence: int = 0
    manually_verified: bool = False
    verified_by: str | None = None
    verification_date: datetime | None = None

    def find_variant(self, name: str) -> NameVariant | None:
        key = name_key(name)
        for variant in self.name_history:
            if name_key(variant.name) == key:
                return variant
        return None

    def record_sighting(
        self,
        name: str,
        seen_at: datetime,
        confidence: NameConfidence,
        source: NameSource = NameSource.TIMING_STREAM,
    ) -> NameVariant:
        """Bump an existing variant or append a new one; never removes history."""
        variant = self.find_variant(name)
        if variant is not None:
            variant.last_seen = seen_at
            variant.session_count += 1
        else:
            variant = NameVariant(
                name=name,
                first_seen=seen_at,
                last_seen=seen_at,
                confidence=confidence,
                source=source,
            )
            self.name_history.append(variant)
        self.total_sessions += 1
        if self.first_race_date is None:
            self.first_race_date = seen_at
        self.last_race_date = seen_at
        return variant

    def to_dict(self) -> dict:
        d = dataclasses.asdict(self)
        d["name_history"] = [v.to_dict() for v in self.name_history]
        d["linking_status"] = self.linking_status.value
        for key in ("first_race_date", "last_race_date", "verification_date"):
            value = getattr(self, key)
            d[key] = value.isoformat() if value else None
        return d


@dataclass(frozen=True)
class Resolution:
    """What the resolver concluded for one display name."""

    display_name: str
    tier: ConfidenceTier
    method: MatchMethod
    identity_id: int | None = None
    account_id: str | None = None
    person_id: str | None = None

    @property
    def resolved(self) -> bool:
        return self.identity_id is not None


def name_key(name: str) -> str:
    """Case- and whitespace-insensitive comparison key for a display name."""
    return " ".join(name.split()).casefold()


def split_name(display_name: str) -> tuple[str, str]:
    """``"Juan Carlos Perez"`` -> ``("Juan", "Carlos Perez")``; one token -> ``(name, "")``."""
    parts = display_name.split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])
