"""SQLite storage for the posting engine.

A thin layer over :mod:`sqlite3`: it owns the schema, records its version in
``schema_meta`` and hands out configured connections. Writes happen inside
:meth:`LocalDatabase.unit_of_work`, which opens an explicit ``BEGIN
IMMEDIATE`` transaction; :func:`savepoint` nests a row-level scope inside it.

The slot invariant lives in the schema: a partial unique index allows at most
one ``active`` posting per ``(session, school, group, visit)``.

Example::

    >>> db = LocalDatabase(Path("postings.db"))  # doctest: +SKIP
    >>> db.initialize()  # doctest: +SKIP
    >>> with db.unit_of_work() as conn:  # doctest: +SKIP
    ...     conn.execute("SELECT COUNT(*) FROM postings").fetchone()[0]
"""
from __future__ import annotations

import logging
import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from tp_posting.infra.errors import DatabaseOperationError, SchemaVersionMismatchError

_SCHEMA_VERSION = 1
_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

logger = logging.getLogger(__name__)

__all__ = [
    "SCHEMA_VERSION",
    "LocalDatabase",
    "configure_connection",
    "savepoint",
    "utc_now_iso",
]

SCHEMA_VERSION = _SCHEMA_VERSION


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime(_ISO_FORMAT)


def _set_pragma(conn: sqlite3.Connection, name: str, value: str) -> None:
    if name not in {"foreign_keys", "journal_mode", "synchronous", "busy_timeout"}:
        raise ValueError(f"Unsupported PRAGMA: {name}")
    conn.execute(f"PRAGMA {name} = {value};")


def configure_connection(conn: sqlite3.Connection) -> sqlite3.Connection:
    """Apply the shared PRAGMAs and the row factory to ``conn``.

    Example::

        >>> connection = configure_connection(sqlite3.connect(":memory:"))
        >>> connection.execute("PRAGMA foreign_keys;").fetchone()[0]
        1
    """

    conn.row_factory = sqlite3.Row
    _set_pragma(conn, "foreign_keys", "ON")
    _set_pragma(conn, "journal_mode", "WAL")
    _set_pragma(conn, "synchronous", "NORMAL")
    _set_pragma(conn, "busy_timeout", "5000")
    return conn


@contextmanager
def savepoint(conn: sqlite3.Connection, name: str) -> Iterator[None]:
    """Nested scope inside an open transaction.

    On any exception the work since the savepoint is rolled back and the
    exception propagates; the enclosing transaction stays open.
    """

    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid savepoint name: {name!r}")
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield
    except BaseException:
        conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        conn.execute(f"RELEASE SAVEPOINT {name}")
        raise
    conn.execute(f"RELEASE SAVEPOINT {name}")


class LocalDatabase:
    """Connection factory and schema owner."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def _open_connection(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: transactions are opened explicitly
        conn = sqlite3.connect(self.path, isolation_level=None)
        return configure_connection(conn)

    def connect(self) -> sqlite3.Connection:
        return self._open_connection()

    def initialize(self) -> None:
        """Create the schema and check its version; safe to call repeatedly."""

        # executescript() commits any open transaction, so DDL runs in autocommit
        conn = self._open_connection()
        try:
            self._ensure_schema_meta_table(conn)
            existing_version = self._get_schema_version(conn)
            if existing_version is None:
                self._ensure_schema(conn)
                self._ensure_schema_meta_row(conn, version=_SCHEMA_VERSION)
            elif existing_version != _SCHEMA_VERSION:
                relation = "newer" if existing_version > _SCHEMA_VERSION else "older"
                raise SchemaVersionMismatchError(
                    expected_version=_SCHEMA_VERSION,
                    actual_version=existing_version,
                    message=f"Database schema is {relation} than this build",
                )
            self._ensure_schema(conn)
            self._validate_schema_version(conn)
        except sqlite3.Error as exc:
            raise DatabaseOperationError(f"Could not prepare database at {self.path}") from exc
        finally:
            conn.close()
        logger.debug("Local DB schema ensured at %s", self.path)

    @contextmanager
    def unit_of_work(self) -> Iterator[sqlite3.Connection]:
        """One write transaction: committed on success, rolled back on any exception."""

        conn = self._open_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            if conn.in_transaction:
                conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def read_only(self) -> Iterator[sqlite3.Connection]:
        conn = self._open_connection()
        try:
            yield conn
        finally:
            conn.close()

    # ----------------------------------------------------------------- schema
    @staticmethod
    def _ensure_schema(conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                inside_distance_threshold_km REAL,
                dsa_enabled INTEGER,
                dsa_min_distance_km REAL,
                dsa_max_distance_km REAL,
                dsa_percentage REAL CHECK (dsa_percentage IS NULL OR (dsa_percentage BETWEEN 0 AND 100)),
                max_supervision_visits INTEGER CHECK (max_supervision_visits IS NULL OR max_supervision_visits >= 1),
                max_postings_per_supervisor INTEGER
            );

            CREATE TABLE IF NOT EXISTS ranks (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                local_running_allowance REAL NOT NULL DEFAULT 0,
                transport_per_km REAL NOT NULL DEFAULT 0,
                dsa REAL NOT NULL DEFAULT 0,
                dta REAL NOT NULL DEFAULT 0,
                tetfund REAL NOT NULL DEFAULT 0,
                other_allowances TEXT NOT NULL DEFAULT '{}',
                priority_number INTEGER NOT NULL DEFAULT 99
            );

            CREATE TABLE IF NOT EXISTS supervisors (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                rank_id INTEGER REFERENCES ranks(id),
                faculty_id INTEGER,
                is_dean INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS schools (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                distance_km REAL NOT NULL DEFAULT 0 CHECK (distance_km >= 0),
                route_id INTEGER,
                lga TEXT
            );

            CREATE TABLE IF NOT EXISTS school_groups (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL REFERENCES sessions(id),
                school_id INTEGER NOT NULL REFERENCES schools(id),
                group_number INTEGER NOT NULL CHECK (group_number >= 1),
                student_count INTEGER NOT NULL DEFAULT 0,
                UNIQUE (session_id, school_id, group_number)
            );

            CREATE TABLE IF NOT EXISTS merged_groups (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL REFERENCES sessions(id),
                primary_school_id INTEGER NOT NULL REFERENCES schools(id),
                primary_group_number INTEGER NOT NULL,
                secondary_school_id INTEGER NOT NULL REFERENCES schools(id),
                secondary_group_number INTEGER NOT NULL,
                UNIQUE (session_id, secondary_school_id, secondary_group_number)
            );

            CREATE TABLE IF NOT EXISTS auto_posting_batches (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL REFERENCES sessions(id),
                initiated_by INTEGER,
                criteria TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL DEFAULT 'processing'
                    CHECK (status IN ('processing', 'completed', 'failed', 'rolled_back')),
                total_postings_created INTEGER NOT NULL DEFAULT 0,
                total_supervisors_posted INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                rolled_back_at TEXT
            );

            CREATE TABLE IF NOT EXISTS postings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL REFERENCES sessions(id),
                supervisor_id INTEGER NOT NULL REFERENCES supervisors(id),
                school_id INTEGER NOT NULL REFERENCES schools(id),
                group_number INTEGER NOT NULL,
                visit_number INTEGER NOT NULL CHECK (visit_number >= 1),
                distance_km REAL NOT NULL DEFAULT 0,
                is_primary INTEGER NOT NULL DEFAULT 1,
                merged_with_posting_id INTEGER REFERENCES postings(id),
                rank_id INTEGER REFERENCES ranks(id),
                local_running REAL NOT NULL DEFAULT 0,
                transport REAL NOT NULL DEFAULT 0,
                dsa REAL NOT NULL DEFAULT 0,
                dta REAL NOT NULL DEFAULT 0,
                tetfund REAL NOT NULL DEFAULT 0,
                other REAL NOT NULL DEFAULT 0,
                per_visit_total REAL NOT NULL DEFAULT 0,
                grand_total REAL NOT NULL DEFAULT 0,
                visit_count INTEGER NOT NULL DEFAULT 1,
                category TEXT NOT NULL CHECK (category IN ('INSIDE', 'OUTSIDE')),
                rationale TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'cancelled')),
                posting_type TEXT NOT NULL DEFAULT 'multiposting',
                posted_by INTEGER,
                created_by_dean_id INTEGER,
                auto_posting_batch_id INTEGER REFERENCES auto_posting_batches(id),
                created_at TEXT NOT NULL,
                cancelled_at TEXT,
                CHECK (dsa = 0 OR dta = 0)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS ux_postings_active_slot
            ON postings(session_id, school_id, group_number, visit_number)
            WHERE status = 'active';

            CREATE INDEX IF NOT EXISTS idx_postings_supervisor_session
            ON postings(supervisor_id, session_id, status);

            CREATE INDEX IF NOT EXISTS idx_postings_merged_with
            ON postings(merged_with_posting_id);

            CREATE INDEX IF NOT EXISTS idx_postings_batch
            ON postings(auto_posting_batch_id);

            CREATE TABLE IF NOT EXISTS dean_allocations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id INTEGER NOT NULL REFERENCES sessions(id),
                dean_user_id INTEGER NOT NULL REFERENCES supervisors(id),
                faculty_id INTEGER,
                allocated_postings INTEGER NOT NULL CHECK (allocated_postings >= 0),
                used_postings INTEGER NOT NULL DEFAULT 0
                    CHECK (used_postings >= 0 AND used_postings <= allocated_postings),
                notes TEXT,
                allocated_by INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (session_id, dean_user_id)
            );
            """
        )

    @staticmethod
    def _ensure_schema_meta_table(conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_meta (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                schema_version INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )

    @staticmethod
    def _ensure_schema_meta_row(conn: sqlite3.Connection, *, version: int) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO schema_meta (id, schema_version, created_at) VALUES (1, ?, ?)",
            (version, utc_now_iso()),
        )

    @staticmethod
    def _get_schema_version(conn: sqlite3.Connection) -> int | None:
        row = conn.execute("SELECT schema_version FROM schema_meta WHERE id = 1").fetchone()
        return int(row[0]) if row is not None else None

    @staticmethod
    def _validate_schema_version(conn: sqlite3.Connection) -> None:
        actual = LocalDatabase._get_schema_version(conn)
        if actual is None:
            raise SchemaVersionMismatchError(
                expected_version=_SCHEMA_VERSION,
                actual_version=-1,
                message="Schema version row is missing",
            )
        if actual != _SCHEMA_VERSION:
            raise SchemaVersionMismatchError(
                expected_version=_SCHEMA_VERSION,
                actual_version=actual,
                message="Database schema version does not match this build",
            )
