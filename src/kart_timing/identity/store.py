"""IdentityStore: persistence of driver identities and their name history.

``name_history`` is kept as a JSON list on the identity row; the
``identity_name_variants`` table mirrors it as normalized keys so a
"who has used this name before" lookup is an index hit.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

from kart_timing.identity.models import DriverIdentity, LinkingStatus, NameVariant, name_key
from kart_timing.timing.storage import TimingStorage

_logger = logging.getLogger(__name__)

_COLUMNS = (
    "person_id", "account_id", "primary_name", "name_history",
    "total_sessions", "total_laps", "first_race_date", "last_race_date",
    "linking_status", "confidence", "manually_verified", "verified_by",
    "verification_date",
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class IdentityStore:
    """CRUD over ``driver_identities``.  Identities are never deleted."""

    def __init__(self, storage: TimingStorage) -> None:
        self._storage = storage

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, identity_id: int) -> DriverIdentity | None:
        return self._one("SELECT * FROM driver_identities WHERE id = ?", (identity_id,))

    def find_by_person_id(self, person_id: str) -> DriverIdentity | None:
        return self._one("SELECT * FROM driver_identities WHERE person_id = ?", (person_id,))

    def find_by_account(self, account_id: str) -> DriverIdentity | None:
        return self._one("SELECT * FROM driver_identities WHERE account_id = ?", (account_id,))

    def find_by_variant(self, name: str) -> list[DriverIdentity]:
        """Identities whose name history contains *name* (case-insensitive)."""
        with self._storage.errors("identity variant lookup"):
            rows = self._storage.connection().execute(
                "SELECT i.* FROM driver_identities i "
                "JOIN identity_name_variants v ON v.identity_id = i.id "
                "WHERE v.name_key = ? ORDER BY i.id",
                (name_key(name),),
            ).fetchall()
        return [_row_to_identity(r) for r in rows]

    def all_identities(self) -> list[DriverIdentity]:
        with self._storage.errors("list identities"):
            rows = self._storage.connection().execute(
                "SELECT * FROM driver_identities ORDER BY id"
            ).fetchall()
        return [_row_to_identity(r) for r in rows]

    def count(self) -> int:
        with self._storage.errors("count identities"):
            row = self._storage.connection().execute(
                "SELECT COUNT(*) AS n FROM driver_identities"
            ).fetchone()
        return row["n"]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, identity: DriverIdentity) -> int:
        """Persist a new identity and return its id (also set on *identity*)."""
        now = datetime.now(UTC).isoformat()
        values = self._values(identity)
        with self._storage.transaction() as conn, self._storage.errors("insert identity"):
            cursor = conn.execute(
                f"INSERT INTO driver_identities ({', '.join(_COLUMNS)}, created_at, updated_at) "
                f"VALUES ({', '.join('?' for _ in _COLUMNS)}, ?, ?)",
                (*values, now, now),
            )
            identity.id = cursor.lastrowid
            self._sync_variants(conn, identity)
        _logger.info("Created identity %d for %r", identity.id, identity.primary_name)
        return identity.id

    def save(self, identity: DriverIdentity) -> None:
        """Overwrite a stored identity."""
        if identity.id is None:
            raise ValueError("identity has not been inserted")
        now = datetime.now(UTC).isoformat()
        assignments = ", ".join(f"{c} = ?" for c in _COLUMNS)
        with self._storage.transaction() as conn, self._storage.errors("save identity"):
            conn.execute(
                f"UPDATE driver_identities SET {assignments}, updated_at = ? WHERE id = ?",
                (*self._values(identity), now, identity.id),
            )
            self._sync_variants(conn, identity)

    def add_laps(self, identity_id: int, count: int) -> None:
        """Atomically add *count* to an identity's lifetime lap total."""
        if count <= 0:
            return
        with self._storage.errors("add identity laps"):
            self._storage.connection().execute(
                "UPDATE driver_identities SET total_laps = total_laps + ?, updated_at = ? "
                "WHERE id = ?",
                (count, datetime.now(UTC).isoformat(), identity_id),
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _one(self, sql: str, params: tuple) -> DriverIdentity | None:
        with self._storage.errors("identity lookup"):
            row = self._storage.connection().execute(sql, params).fetchone()
        return _row_to_identity(row) if row else None

    @staticmethod
    def _values(identity: DriverIdentity) -> tuple:
        return (
            identity.person_id,
            identity.account_id,
            identity.primary_name,
            json.dumps([v.to_dict() for v in identity.name_history]),
            identity.total_sessions,
            identity.total_laps,
            _iso(identity.first_race_date),
            _iso(identity.last_race_date),
            identity.linking_status.value,
            identity.confidence,
            int(identity.manually_verified),
            identity.verified_by,
            _iso(identity.verification_date),
        )

    @staticmethod
    def _sync_variants(conn, identity: DriverIdentity) -> None:
        conn.executemany(
            "INSERT OR IGNORE INTO identity_name_variants (identity_id, name_key) VALUES (?, ?)",
            [(identity.id, name_key(v.name)) for v in identity.name_history],
        )


def _row_to_identity(row) -> DriverIdentity:
    return DriverIdentity(
        id=row["id"],
        person_id=row["person_id"],
        account_id=row["account_id"],
        primary_name=row["primary_name"],
        name_history=[NameVariant.from_dict(v) for v in json.loads(row["name_history"])],
        total_sessions=row["total_sessions"],
        total_laps=row["total_laps"],
        first_race_date=_parse(row["first_race_date"]),
        last_race_date=_parse(row["last_race_date"]),
        linking_status=LinkingStatus(row["linking_status"]),
        confidence=row["confidence"],
        manually_verified=bool(row["manually_verified"]),
        verified_by=row["verified_by"],
        verification_date=_parse(row["verification_date"]),
    )
