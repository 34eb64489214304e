"""SQLite connection handling and versioned schema migrations.

The applied schema version lives in ``PRAGMA user_version``. Each migration
is tagged with the version it introduces and runs at most once, inside a
transaction, when a store is opened.
"""

from __future__ import annotations

import logging
import pathlib
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Generator, List, Union

from myr.errors import StoreError

logger = logging.getLogger(__name__)


def connect(path: Union[str, pathlib.Path]) -> sqlite3.Connection:
    """Open a store connection with explicit transaction control."""
    p = pathlib.Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(p), isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection, immediate: bool = False) -> Generator[sqlite3.Connection, None, None]:
    """Run a block atomically; joins the enclosing transaction when nested.

    ``immediate`` takes the write lock up front, which serializes
    read-increment-write sequences across processes.
    """
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------


_FTS_COLUMNS = (
    "id, cycle_intent, cycle_context, question_answered, evidence, "
    "what_changes_next, what_was_falsified, domain_tags"
)


def _v1_base_schema(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS myr_reports (
            id TEXT PRIMARY KEY,
            timestamp TEXT NOT NULL,
            agent_id TEXT NOT NULL,
            node_id TEXT NOT NULL,
            session_ref TEXT,

            cycle_intent TEXT NOT NULL,
            domain_tags TEXT NOT NULL,
            cycle_context TEXT,

            yield_type TEXT NOT NULL CHECK(yield_type IN ('technique','insight','falsification','pattern')),
            question_answered TEXT NOT NULL,
            evidence TEXT NOT NULL,
            what_changes_next TEXT NOT NULL,
            what_was_falsified TEXT,
            transferable_to TEXT,
            confidence REAL NOT NULL DEFAULT 0.7,

            jordan_rating INTEGER,
            jordan_notes TEXT,
            verified_at TEXT,

            signed_by TEXT,
            shared_with TEXT,
            synthesis_id TEXT,

            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    conn.execute(f"""
        CREATE VIRTUAL TABLE IF NOT EXISTS myr_fts USING fts5(
            {_FTS_COLUMNS},
            content=myr_reports,
            content_rowid=rowid
        )
    """)
    conn.execute(f"""
        CREATE TRIGGER IF NOT EXISTS myr_fts_insert AFTER INSERT ON myr_reports BEGIN
            INSERT INTO myr_fts(rowid, {_FTS_COLUMNS})
            VALUES (new.rowid, new.id, new.cycle_intent, new.cycle_context, new.question_answered,
                    new.evidence, new.what_changes_next, new.what_was_falsified, new.domain_tags);
        END
    """)
    conn.execute(f"""
        CREATE TRIGGER IF NOT EXISTS myr_fts_delete AFTER DELETE ON myr_reports BEGIN
            INSERT INTO myr_fts(myr_fts, rowid, {_FTS_COLUMNS})
            VALUES ('delete', old.rowid, old.id, old.cycle_intent, old.cycle_context, old.question_answered,
                    old.evidence, old.what_changes_next, old.what_was_falsified, old.domain_tags);
        END
    """)
    conn.execute(f"""
        CREATE TRIGGER IF NOT EXISTS myr_fts_update AFTER UPDATE ON myr_reports BEGIN
            INSERT INTO myr_fts(myr_fts, rowid, {_FTS_COLUMNS})
            VALUES ('delete', old.rowid, old.id, old.cycle_intent, old.cycle_context, old.question_answered,
                    old.evidence, old.what_changes_next, old.what_was_falsified, old.domain_tags);
            INSERT INTO myr_fts(rowid, {_FTS_COLUMNS})
            VALUES (new.rowid, new.id, new.cycle_intent, new.cycle_context, new.question_answered,
                    new.evidence, new.what_changes_next, new.what_was_falsified, new.domain_tags);
        END
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS myr_peers (
            node_id TEXT PRIMARY KEY,
            node_name TEXT,
            public_key TEXT NOT NULL,
            public_key_format TEXT DEFAULT 'pem',
            added_at TEXT NOT NULL,
            last_import_at TEXT,
            myr_count INTEGER DEFAULT 0
        )
    """)


def _v2_provenance_columns(conn: sqlite3.Connection) -> None:
    for col, typedef in (
        ("imported_from", "TEXT"),
        ("signed_artifact", "TEXT"),
        ("import_verified", "INTEGER DEFAULT 0"),
        ("auto_draft", "INTEGER DEFAULT 0"),
        ("source_memory_id", "INTEGER"),
    ):
        conn.execute(f"ALTER TABLE myr_reports ADD COLUMN {col} {typedef}")


def _v3_operator_columns(conn: sqlite3.Connection) -> None:
    conn.execute("ALTER TABLE myr_reports RENAME COLUMN jordan_rating TO operator_rating")
    conn.execute("ALTER TABLE myr_reports RENAME COLUMN jordan_notes TO operator_notes")


def _v4_export_indexes(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE INDEX IF NOT EXISTS idx_myr_reports_created_at ON myr_reports(created_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_myr_reports_imported_from ON myr_reports(imported_from)")


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    apply: Callable[[sqlite3.Connection], None]


MIGRATIONS: List[Migration] = [
    Migration(1, "base schema", _v1_base_schema),
    Migration(2, "provenance columns", _v2_provenance_columns),
    Migration(3, "rename jordan_* to operator_*", _v3_operator_columns),
    Migration(4, "export selection indexes", _v4_export_indexes),
]

SCHEMA_VERSION = MIGRATIONS[-1].version


def schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version").fetchone()[0])


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(f"PRAGMA user_version = {int(version)}")


def _columns(conn: sqlite3.Connection, table: str) -> List[str]:
    return [row["name"] for row in conn.execute(f"PRAGMA table_info({table})")]


def _adopt_unversioned_store(conn: sqlite3.Connection) -> int:
    """Determine the baseline of a store written before versioning existed.

    Runs once per store: afterwards ``user_version`` is authoritative.
    """
    cols = _columns(conn, "myr_reports")
    if not cols:
        return 0

    _v1_base_schema(conn)
    version = 1
    if "operator_rating" in cols:
        # created with operator_* columns but before the provenance columns
        if "imported_from" not in cols:
            _v2_provenance_columns(conn)
        version = 3
    elif "imported_from" in cols:
        version = 2

    logger.info(
        "Adopted unversioned store",
        extra={"context": {"baseline_version": version}},
    )
    return version


def apply_migrations(conn: sqlite3.Connection) -> List[int]:
    """Bring the schema up to ``SCHEMA_VERSION``; returns versions applied."""
    applied: List[int] = []
    with transaction(conn, immediate=True):
        current = schema_version(conn)
        if current == 0:
            current = _adopt_unversioned_store(conn)
            _set_schema_version(conn, current)

        if current > SCHEMA_VERSION:
            raise StoreError(
                f"Store schema version {current} is newer than this tool ({SCHEMA_VERSION})"
            )

        for migration in MIGRATIONS:
            if migration.version <= current:
                continue
            migration.apply(conn)
            _set_schema_version(conn, migration.version)
            applied.append(migration.version)
            logger.debug(
                "Applied migration",
                extra={"context": {"version": migration.version, "name": migration.name}},
            )
    return applied
