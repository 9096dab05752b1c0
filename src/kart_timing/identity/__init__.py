"""Driver identity resolution.

Public API
----------
IdentityResolver       - display name → Resolution with confidence tier
IdentityStore          - driver identity persistence
SqliteDriverRegistry   - read-only account lookup
InMemoryDriverRegistry - fixed account list
SequenceMatcherScorer  - default fuzzy name scorer
"""

from kart_timing.identity.models import (
    Account,
    ConfidenceTier,
    DriverIdentity,
    LinkingStatus,
    MatchMethod,
    NameConfidence,
    NameSource,
    NameVariant,
    Resolution,
)
from kart_timing.identity.registry import (
    DriverRegistry,
    InMemoryDriverRegistry,
    SqliteDriverRegistry,
)
from kart_timing.identity.resolver import IdentityResolver
from kart_timing.identity.scorer import NameScorer, SequenceMatcherScorer
from kart_timing.identity.store import IdentityStore

__all__ = [
    "Account",
    "ConfidenceTier",
    "DriverIdentity",
    "DriverRegistry",
    "IdentityResolver",
    "IdentityStore",
    "InMemoryDriverRegistry",
    "LinkingStatus",
    "MatchMethod",
    "NameConfidence",
    "NameScorer",
    "NameSource",
    "NameVariant",
    "Resolution",
    "SequenceMatcherScorer",
    "SqliteDriverRegistry",
]
