"""TimingStorage: SQLite persistence for race sessions and the shared schema.

Schema design notes:
  - ``race_sessions`` stores each session as one JSON document plus a
    ``version`` column.  Writes compare-and-swap on ``version`` (optimistic
    concurrency); the UNIQUE ``session_id`` is the backstop when two writers
    race to create the same session.
  - ``session_day`` / ``session_type`` are copied out of the document so the
    listing queries don't need ``json_extract``.
  - ``accounts`` is owned by the registration side; this package only reads it.
  - ``driver_identities`` + ``identity_name_variants`` back the identity
    resolver; ``best_driver_times`` / ``best_kart_times`` back the leaderboards.
  - One connection per thread, autocommit mode; multi-statement units use
    :meth:`TimingStorage.transaction` (``BEGIN IMMEDIATE``).
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from datetime import UTC, date, datetime

from kart_timing.exceptions import DuplicateSessionError, StorageError, VersionConflictError
from kart_timing.timing.models import RaceSession, SessionType

_logger = logging.getLogger(__name__)

_DDL = """
PRAGMA journal_mode = WAL;
PRAGMA synchronous  = NORMAL;

CREATE TABLE IF NOT EXISTS race_sessions (
    idx          INTEGER PRIMARY KEY,
    session_id   TEXT    NOT NULL UNIQUE,
    session_name TEXT    NOT NULL,
    session_day  TEXT    NOT NULL,
    session_type TEXT    NOT NULL,
    document     TEXT    NOT NULL,
    version      INTEGER NOT NULL DEFAULT 1,
    created_at   TEXT    NOT NULL,
    updated_at   TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_day_type
    ON race_sessions (session_day, session_type);

CREATE TABLE IF NOT EXISTS accounts (
    account_id TEXT PRIMARY KEY,
    first_name TEXT NOT NULL,
    last_name  TEXT,
    alias      TEXT,
    person_id  TEXT,
    email      TEXT
);

CREATE INDEX IF NOT EXISTS idx_accounts_first_name
    ON accounts (first_name COLLATE NOCASE);

CREATE TABLE IF NOT EXISTS driver_identities (
    id                INTEGER PRIMARY KEY,
    person_id         TEXT UNIQUE,
    account_id        TEXT UNIQUE,
    primary_name      TEXT    NOT NULL,
    name_history      TEXT    NOT NULL,
    total_sessions    INTEGER NOT NULL DEFAULT 0,
    total_laps        INTEGER NOT NULL DEFAULT 0,
    first_race_date   TEXT,
    last_race_date    TEXT,
    linking_status    TEXT    NOT NULL DEFAULT 'unlinked',
    confidence        INTEGER NOT NULL DEFAULT 0,
    manually_verified INTEGER NOT NULL DEFAULT 0,
    verified_by       TEXT,
    verification_date TEXT,
    created_at        TEXT    NOT NULL,
    updated_at        TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS identity_name_variants (
    identity_id INTEGER NOT NULL,
    name_key    TEXT    NOT NULL,
    UNIQUE (identity_id, name_key)
);

CREATE INDEX IF NOT EXISTS idx_variants_name_key
    ON identity_name_variants (name_key);

CREATE TABLE IF NOT EXISTS best_driver_times (
    record_key   TEXT    PRIMARY KEY,
    position     INTEGER NOT NULL,
    best_time    INTEGER NOT NULL,
    driver_name  TEXT    NOT NULL,
    kart_number  INTEGER NOT NULL,
    session_id   TEXT    NOT NULL,
    session_name TEXT    NOT NULL,
    session_date TEXT    NOT NULL,
    session_time TEXT    NOT NULL,
    last_updated TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS best_kart_times (
    record_key   TEXT    PRIMARY KEY,
    position     INTEGER NOT NULL,
    best_time    INTEGER NOT NULL,
    driver_name  TEXT    NOT NULL,
    kart_number  INTEGER NOT NULL,
    session_id   TEXT    NOT NULL,
    session_name TEXT    NOT NULL,
    session_date TEXT    NOT NULL,
    session_time TEXT    NOT NULL,
    last_updated TEXT    NOT NULL
)
"""

_SELECT_SESSION = "SELECT document, version FROM race_sessions WHERE session_id = ?"

_INSERT_SESSION = """
INSERT INTO race_sessions (
    session_id, session_name, session_day, session_type,
    document, version, created_at, updated_at
) VALUES (?, ?, ?, ?, ?, 1, ?, ?)
"""

_UPDATE_SESSION = """
UPDATE race_sessions
SET    document = ?, version = version + 1, updated_at = ?
WHERE  session_id = ? AND version = ?
"""


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TimingStorage:
    """SQLite-backed store shared by the aggregator, resolver and leaderboards.

    Parameters
    ----------
    db_path:
        Path to the SQLite file.  Each thread gets its own connection, so an
        in-memory database is only visible to the thread that created it;
        use a file path when more than one thread writes.
    timeout:
        Seconds a connection waits on a locked database before failing.
    """

    def __init__(self, db_path: str = "kart_timing.db", timeout: float = 5.0) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._lock = threading.Lock()
        conn = self._conn()
        with self.errors("initialise schema"):
            for stmt in _DDL.strip().split(";"):
                stmt = stmt.strip()
                if stmt:
                    conn.execute(stmt)

    @property
    def db_path(self) -> str:
        return self._db_path

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def connection(self) -> sqlite3.Connection:
        """Return this thread's connection (opened on first use)."""
        return self._conn()

    @contextlib.contextmanager
    def errors(self, action: str) -> Iterator[None]:
        """Translate unexpected ``sqlite3`` failures into :class:`StorageError`."""
        try:
            yield
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            _logger.error("Storage failure during %s: %s", action, exc)
            raise StorageError(f"{action} failed: {exc}") from exc

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block under ``BEGIN IMMEDIATE``; nested use joins the outer block."""
        conn = self._conn()
        depth = getattr(self._local, "depth", 0)
        if depth:
            self._local.depth = depth + 1
            try:
                yield conn
            finally:
                self._local.depth = depth
            return

        with self.errors("begin transaction"):
            conn.execute("BEGIN IMMEDIATE")
        self._local.depth = 1
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            with self.errors("commit"):
                conn.commit()
        finally:
            self._local.depth = 0

    # ------------------------------------------------------------------
    # Race sessions
    # ------------------------------------------------------------------

    def load_session(self, session_id: str) -> RaceSession | None:
        """Return the stored session with its version token, or None."""
        with self.errors(f"load session {session_id!r}"):
            row = self._conn().execute(_SELECT_SESSION, (session_id,)).fetchone()
        if row is None:
            return None
        return RaceSession.from_dict(json.loads(row["document"]), version=row["version"])

    def insert_session(self, session: RaceSession) -> int:
        """Create the session document.  Returns the new version (1).

        Raises
        ------
        DuplicateSessionError
            If another writer created the same ``session_id`` first.
        """
        now = _utcnow()
        session.created_at = session.created_at or now
        session.updated_at = now
        try:
            with self.errors(f"insert session {session.session_id!r}"):
                self._conn().execute(
                    _INSERT_SESSION,
                    (
                        session.session_id,
                        session.session_name,
                        session.session_date.date().isoformat(),
                        session.session_type.value,
                        json.dumps(session.to_dict()),
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateSessionError(
                f"session {session.session_id!r} already exists",
                session_id=session.session_id,
            ) from exc
        session.version = 1
        return session.version

    def update_session(self, session: RaceSession) -> int:
        """Write *session* if its stored version still equals ``session.version``.

        Returns the new version.

        Raises
        ------
        VersionConflictError
            If another writer saved the document since it was loaded.
        """
        now = _utcnow()
        session.updated_at = now
        with self.errors(f"update session {session.session_id!r}"):
            cursor = self._conn().execute(
                _UPDATE_SESSION,
                (
                    json.dumps(session.to_dict()),
                    now.isoformat(),
                    session.session_id,
                    session.version,
                ),
            )
        if cursor.rowcount == 0:
            raise VersionConflictError(
                f"session {session.session_id!r} changed since version {session.version}",
                session_id=session.session_id,
                expected_version=session.version,
            )
        session.version += 1
        return session.version

    def list_sessions(
        self,
        session_day: date | None = None,
        session_type: SessionType | None = None,
        limit: int = 50,
    ) -> list[dict]:
        """Return session documents, newest first, optionally filtered."""
        clauses: list[str] = []
        params: list = []
        if session_day is not None:
            clauses.append("session_day = ?")
            params.append(session_day.isoformat())
        if session_type is not None:
            clauses.append("session_type = ?")
            params.append(session_type.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self.errors("list sessions"):
            rows = self._conn().execute(
                f"SELECT document FROM race_sessions {where} "
                "ORDER BY session_day DESC, idx DESC LIMIT ?",
                params,
            ).fetchall()
        return [json.loads(r["document"]) for r in rows]

    def close(self) -> None:
        """Close every connection opened by this storage."""
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    self._db_path,
                    timeout=self._timeout,
                    isolation_level=None,
                    check_same_thread=False,
                )
            except sqlite3.Error as exc:
                raise StorageError(f"cannot open {self._db_path!r}: {exc}") from exc
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return conn
