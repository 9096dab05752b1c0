"""Driver registry lookup: read-only view of registered accounts.

Accounts are written by the registration side; the resolver only queries
them.  Two implementations share the same matching rule:
:class:`SqliteDriverRegistry` reads the ``accounts`` table and
:class:`InMemoryDriverRegistry` holds a fixed list (tests, replays).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from kart_timing.identity.models import Account, name_key
from kart_timing.timing.storage import TimingStorage

_logger = logging.getLogger(__name__)


class DriverRegistry(Protocol):
    """Structural interface the resolver depends on."""

    def find_by_name_parts(
        self, first_name: str, last_name: str, alias: str | None = None
    ) -> Account | None: ...

    def find_by_person_id(self, person_id: str) -> Account | None: ...

    def get_account(self, account_id: str) -> Account | None: ...


def account_matches(account: Account, first_name: str, last_name: str, alias: str | None) -> bool:
    """Strict first/last/alias consistency check.

    - first name must match exactly (case-insensitive);
    - with a last name it must match exactly, without one the account must
      have no last name either;
    - an alias on file must equal the full display name (*alias*), the first
      name or the last name; no alias on file never blocks the match.
    """
    if name_key(account.first_name) != name_key(first_name):
        return False

    if last_name:
        if name_key(account.last_name or "") != name_key(last_name):
            return False
    elif (account.last_name or "").strip():
        return False

    if not (account.alias or "").strip():
        return True
    candidates = {name_key(first_name)}
    if last_name:
        candidates.add(name_key(last_name))
    if alias:
        candidates.add(name_key(alias))
    return name_key(account.alias) in candidates


def _single(matches: list[Account], first_name: str, last_name: str) -> Account | None:
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        _logger.warning(
            "Ambiguous registry match for %r %r: %d accounts, not binding",
            first_name, last_name, len(matches),
        )
    return None


class InMemoryDriverRegistry:
    """Registry over a fixed collection of accounts."""

    def __init__(self, accounts: Iterable[Account] = ()) -> None:
        self._accounts = list(accounts)

    def find_by_name_parts(
        self, first_name: str, last_name: str, alias: str | None = None
    ) -> Account | None:
        matches = [a for a in self._accounts if account_matches(a, first_name, last_name, alias)]
        return _single(matches, first_name, last_name)

    def find_by_person_id(self, person_id: str) -> Account | None:
        for account in self._accounts:
            if account.person_id and account.person_id == person_id:
                return account
        return None

    def get_account(self, account_id: str) -> Account | None:
        for account in self._accounts:
            if account.account_id == account_id:
                return account
        return None


class SqliteDriverRegistry:
    """Registry reading the ``accounts`` table of a :class:`TimingStorage`."""

    def __init__(self, storage: TimingStorage) -> None:
        self._storage = storage

    def find_by_name_parts(
        self, first_name: str, last_name: str, alias: str | None = None
    ) -> Account | None:
        with self._storage.errors("registry name lookup"):
            rows = self._storage.connection().execute(
                "SELECT * FROM accounts WHERE first_name = ? COLLATE NOCASE",
                (first_name,),
            ).fetchall()
        matches = [
            acc
            for acc in (_row_to_account(r) for r in rows)
            if account_matches(acc, first_name, last_name, alias)
        ]
        return _single(matches, first_name, last_name)

    def find_by_person_id(self, person_id: str) -> Account | None:
        with self._storage.errors("registry person id lookup"):
            row = self._storage.connection().execute(
                "SELECT * FROM accounts WHERE person_id = ?", (person_id,)
            ).fetchone()
        return _row_to_account(row) if row else None

    def get_account(self, account_id: str) -> Account | None:
        with self._storage.errors("registry account lookup"):
            row = self._storage.connection().execute(
                "SELECT * FROM accounts WHERE account_id = ?", (account_id,)
            ).fetchone()
        return _row_to_account(row) if row else None


def _row_to_account(row) -> Account:
    return Account(
        account_id=row["account_id"],
        first_name=row["first_name"],
        last_name=row["last_name"] or "",
        alias=row["alias"] or "",
        person_id=row["person_id"],
        email=row["email"] or "",
    )
