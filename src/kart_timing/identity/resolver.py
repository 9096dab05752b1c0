"""IdentityResolver: maps ephemeral display names to stable driver identities.

Tiers, in decreasing trust:

0. a manually verified identity already carrying the name (sticky);
1. external person id (identity or registered account);
2. exact registry match on first / last / alias;
3. an identity that already holds the name as a variant;
4. historical fuzzy match through a pluggable :class:`NameScorer`;
5. a fresh identity.

Resolution is called once per driver per session (first sighting) and is
best-effort: :meth:`IdentityResolver.resolve_safely` never raises.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from kart_timing.exceptions import AccountNotFoundError
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
    split_name,
)
from kart_timing.identity.registry import DriverRegistry
from kart_timing.identity.scorer import NameScorer, SequenceMatcherScorer
from kart_timing.identity.store import IdentityStore
from kart_timing.timing.storage import TimingStorage

_logger = logging.getLogger(__name__)

# Confidence scores (0-100) stored on the identity.
_SCORE_MANUAL = 100
_SCORE_PERSON_ID = 95
_SCORE_EXACT = 90
_SCORE_NEW_WITH_PERSON_ID = 50
_SCORE_NEW = 20


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IdentityResolver:
    """Resolve display names against the registry and the identity store.

    Parameters
    ----------
    storage:
        Shared storage; each resolution runs in one write transaction so two
        deliveries cannot create duplicate identities for the same name.
    registry:
        Read-only account lookup.
    scorer:
        Name similarity for the fuzzy tier.
    min_score:
        Minimum fuzzy score for a match.
    clock:
        Returns "now" as an aware datetime.
    """

    def __init__(
        self,
        storage: TimingStorage,
        registry: DriverRegistry,
        scorer: NameScorer | None = None,
        min_score: float = 0.85,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._storage = storage
        self._store = IdentityStore(storage)
        self._registry = registry
        self._scorer = scorer or SequenceMatcherScorer()
        self._min_score = min_score
        self._clock = clock

    @property
    def store(self) -> IdentityStore:
        return self._store

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(self, display_name: str, person_id: str | None = None) -> Resolution:
        """Resolve *display_name* and record the sighting on the chosen identity.

        Raises
        ------
        StorageError
            The identity store is unreachable.  Use :meth:`resolve_safely`
            on the ingestion path.
        """
        display_name = " ".join(display_name.split())
        seen_at = self._clock()
        with self._storage.transaction():
            resolution = (
                self._manual(display_name, seen_at)
                or (self._by_person_id(display_name, person_id, seen_at) if person_id else None)
                or self._by_registry(display_name, seen_at)
                or self._by_known_variant(display_name, seen_at)
                or self._by_fuzzy(display_name, seen_at)
                or self._create(display_name, person_id, seen_at)
            )
        _logger.info(
            "Resolved %r -> identity %s (%s, %s)",
            display_name, resolution.identity_id, resolution.method.value, resolution.tier.value,
        )
        return resolution

    def resolve_safely(self, display_name: str, person_id: str | None = None) -> Resolution:
        """Like :meth:`resolve`, but any failure degrades to an unresolved result."""
        try:
            return self.resolve(display_name, person_id)
        except Exception:
            _logger.exception("Identity resolution failed for %r, continuing unresolved", display_name)
            return Resolution(
                display_name=display_name,
                tier=ConfidenceTier.LOW,
                method=MatchMethod.UNRESOLVED,
                person_id=person_id,
            )

    def manual_bind(
        self,
        display_name: str,
        account_id: str,
        person_id: str | None = None,
        verified_by: str | None = None,
    ) -> Resolution:
        """Bind *display_name* to *account_id* with full confidence.

        The target identity is, in order: the one already linked to the
        account, the one already holding the name, or a new one.  The binding
        is sticky: later automatic resolution of the name returns it.

        Raises
        ------
        AccountNotFoundError
            *account_id* is not registered.
        """
        account = self._registry.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"account {account_id!r} not found", account_id=account_id)

        display_name = " ".join(display_name.split())
        now = self._clock()
        with self._storage.transaction():
            identity = self._store.find_by_account(account_id)
            if identity is None:
                identity = next(
                    (i for i in self._store.find_by_variant(display_name) if i.account_id is None),
                    None,
                )
            is_new = identity is None
            if is_new:
                identity = DriverIdentity(primary_name=display_name)

            variant = identity.find_variant(display_name)
            if variant is None:
                identity.name_history.append(
                    NameVariant(
                        name=display_name,
                        first_seen=now,
                        last_seen=now,
                        session_count=0,
                        confidence=NameConfidence.CONFIRMED,
                        source=NameSource.MANUAL_ENTRY,
                    )
                )
            else:
                variant.confidence = NameConfidence.CONFIRMED
                variant.source = NameSource.MANUAL_ENTRY

            pid = person_id or account.person_id
            if pid and identity.person_id is None and self._store.find_by_person_id(pid) is None:
                identity.person_id = pid
            identity.account_id = account.account_id
            identity.linking_status = LinkingStatus.MANUAL
            identity.confidence = _SCORE_MANUAL
            identity.manually_verified = True
            identity.verified_by = verified_by
            identity.verification_date = now

            if is_new:
                self._store.insert(identity)
            else:
                self._store.save(identity)

        _logger.info(
            "Manually bound %r to account %s (identity %d, by %s)",
            display_name, account_id, identity.id, verified_by or "unknown",
        )
        return Resolution(
            display_name=display_name,
            tier=ConfidenceTier.HIGH,
            method=MatchMethod.MANUAL,
            identity_id=identity.id,
            account_id=identity.account_id,
            person_id=identity.person_id,
        )

    def driver_stats(self, account_id: str) -> dict:
        """Summary of the identity linked to *account_id* (zeros if none)."""
        identity = self._store.find_by_account(account_id)
        if identity is None:
            return {
                "accountId": account_id,
                "totalSessions": 0,
                "totalLaps": 0,
                "firstRace": None,
                "lastRace": None,
                "namesUsed": [],
                "linkingStatus": None,
                "confidence": 0,
                "personId": None,
            }
        return {
            "accountId": account_id,
            "identityId": identity.id,
            "totalSessions": identity.total_sessions,
            "totalLaps": identity.total_laps,
            "firstRace": identity.first_race_date.isoformat() if identity.first_race_date else None,
            "lastRace": identity.last_race_date.isoformat() if identity.last_race_date else None,
            "namesUsed": [v.name for v in identity.name_history],
            "linkingStatus": identity.linking_status.value,
            "confidence": identity.confidence,
            "personId": identity.person_id,
        }

    def record_laps(self, identity_id: int, count: int = 1) -> None:
        self._store.add_laps(identity_id, count)

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    def _manual(self, name: str, seen_at: datetime) -> Resolution | None:
        for identity in self._store.find_by_variant(name):
            if identity.manually_verified:
                return self._touch(
                    identity, name, seen_at, ConfidenceTier.HIGH, MatchMethod.MANUAL,
                    NameConfidence.CONFIRMED,
                )
        return None

    def _by_person_id(self, name: str, person_id: str, seen_at: datetime) -> Resolution | None:
        identity = self._store.find_by_person_id(person_id)
        if identity is not None:
            return self._touch(
                identity, name, seen_at, ConfidenceTier.HIGH, MatchMethod.PERSON_ID,
                NameConfidence.CONFIRMED,
            )

        account = self._registry.find_by_person_id(person_id)
        if account is None:
            return None
        identity = self._store.find_by_account(account.account_id)
        if identity is not None:
            if identity.person_id is None:
                identity.person_id = person_id
            return self._touch(
                identity, name, seen_at, ConfidenceTier.HIGH, MatchMethod.PERSON_ID,
                NameConfidence.CONFIRMED,
            )
        return self._link_new(account, name, person_id, seen_at, _SCORE_PERSON_ID, MatchMethod.PERSON_ID)

    def _by_registry(self, name: str, seen_at: datetime) -> Resolution | None:
        first, last = split_name(name)
        if not first:
            return None
        account = self._registry.find_by_name_parts(first, last, alias=name)
        if account is None:
            return None
        identity = self._store.find_by_account(account.account_id)
        if identity is not None:
            return self._touch(
                identity, name, seen_at, ConfidenceTier.HIGH, MatchMethod.EXACT_MATCH,
                NameConfidence.CONFIRMED,
            )
        return self._link_new(
            account, name, account.person_id, seen_at, _SCORE_EXACT, MatchMethod.EXACT_MATCH
        )

    def _by_known_variant(self, name: str, seen_at: datetime) -> Resolution | None:
        holders = self._store.find_by_variant(name)
        if not holders:
            return None
        identity = holders[0]
        variant = identity.find_variant(name)
        return self._touch(
            identity, name, seen_at, variant.confidence.tier, MatchMethod.KNOWN_VARIANT,
            variant.confidence,
        )

    def _by_fuzzy(self, name: str, seen_at: datetime) -> Resolution | None:
        best: DriverIdentity | None = None
        best_score = 0.0
        for identity in self._store.all_identities():
            for variant in identity.name_history:
                score = self._scorer.score(name, variant.name)
                if score > best_score:
                    best, best_score = identity, score
        if best is None or best_score < self._min_score:
            return None
        _logger.info("Fuzzy match %r -> identity %d (score %.2f)", name, best.id, best_score)
        return self._touch(
            best, name, seen_at, ConfidenceTier.MEDIUM, MatchMethod.FUZZY_MATCH,
            NameConfidence.LIKELY,
        )

    def _create(self, name: str, person_id: str | None, seen_at: datetime) -> Resolution:
        identity = DriverIdentity(
            primary_name=name,
            person_id=person_id,
            linking_status=LinkingStatus.PENDING if person_id else LinkingStatus.UNLINKED,
            confidence=_SCORE_NEW_WITH_PERSON_ID if person_id else _SCORE_NEW,
        )
        identity.record_sighting(name, seen_at, NameConfidence.POSSIBLE)
        self._store.insert(identity)
        return self._resolution(identity, name, ConfidenceTier.LOW, MatchMethod.NEW_IDENTITY)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _link_new(
        self,
        account: Account,
        name: str,
        person_id: str | None,
        seen_at: datetime,
        score: int,
        method: MatchMethod,
    ) -> Resolution:
        if person_id and self._store.find_by_person_id(person_id) is not None:
            person_id = None
        identity = DriverIdentity(
            primary_name=account.full_name or name,
            person_id=person_id,
            account_id=account.account_id,
            linking_status=LinkingStatus.LINKED,
            confidence=score,
        )
        identity.record_sighting(name, seen_at, NameConfidence.CONFIRMED, NameSource.REGISTRY)
        self._store.insert(identity)
        return self._resolution(identity, name, ConfidenceTier.HIGH, method)

    def _touch(
        self,
        identity: DriverIdentity,
        name: str,
        seen_at: datetime,
        tier: ConfidenceTier,
        method: MatchMethod,
        confidence: NameConfidence,
    ) -> Resolution:
        identity.record_sighting(name, seen_at, confidence)
        self._store.save(identity)
        return self._resolution(identity, name, tier, method)

    @staticmethod
    def _resolution(
        identity: DriverIdentity, name: str, tier: ConfidenceTier, method: MatchMethod
    ) -> Resolution:
        return Resolution(
            display_name=name,
            tier=tier,
            method=method,
            identity_id=identity.id,
            account_id=identity.account_id,
            person_id=identity.person_id,
        )
