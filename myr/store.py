"""SQLite-backed record store of one node.

Opening a store brings its schema to the current version and rewrites any
legacy record ids, so every caller sees node-qualified ids only.
"""

from __future__ import annotations

import json
import logging
import pathlib
import sqlite3
from datetime import date
from typing import Iterable, List, Optional, Union

from myr.core import now_iso8601
from myr.db import apply_migrations, connect, transaction
from myr.errors import RecordNotFound, StoreError
from myr.ids import migrate_legacy_ids, next_record_id
from myr.models import Record, RecordDraft

logger = logging.getLogger(__name__)

_INSERT_COLUMNS = (
    "id", "timestamp", "agent_id", "node_id", "session_ref",
    "cycle_intent", "domain_tags", "cycle_context",
    "yield_type", "question_answered", "evidence", "what_changes_next",
    "what_was_falsified", "transferable_to", "confidence",
    "operator_rating", "operator_notes", "verified_at",
    "signed_by", "imported_from", "signed_artifact", "import_verified",
    "auto_draft", "source_memory_id",
    "created_at", "updated_at",
)


def _row_values(record: Record) -> tuple:
    return (
        record.id, record.timestamp, record.agent_id, record.node_id, record.session_ref,
        record.cycle_intent, json.dumps(list(record.domain_tags)), record.cycle_context,
        record.yield_type, record.question_answered, record.evidence, record.what_changes_next,
        record.what_was_falsified,
        json.dumps(list(record.transferable_to)) if record.transferable_to else None,
        float(record.confidence),
        record.verification.operator_rating, record.verification.operator_notes,
        record.verification.verified_at,
        record.signed_by, record.imported_from or None, record.signed_artifact,
        1 if record.import_verified else 0,
        1 if record.auto_draft else 0, record.source_memory_id,
        record.created_at, record.updated_at,
    )


class RecordStore:
    """Records of one node plus its peer table, in one SQLite file."""

    def __init__(self, conn: sqlite3.Connection, node_id: str):
        self._conn = conn
        self.node_id = node_id
        self.migrated_ids = 0

    @classmethod
    def open(cls, path: Union[str, pathlib.Path], node_id: str) -> "RecordStore":
        if not node_id:
            raise StoreError("A node_id is required to open a record store")
        conn = connect(path)
        try:
            applied = apply_migrations(conn)
            store = cls(conn, node_id)
            store.migrated_ids = migrate_legacy_ids(conn, node_id)
        except Exception:
            conn.close()
            raise
        if applied:
            logger.info("Store schema migrated", extra={"context": {"path": str(path), "versions": applied}})
        return store

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "RecordStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- writes -------------------------------------------------------------

    def create_record(self, draft: RecordDraft, today: Optional[date] = None) -> Record:
        """Allocate the next id and insert ``draft`` under one write lock."""
        draft.validate()
        now = now_iso8601()
        with transaction(self._conn, immediate=True):
            record_id = next_record_id(self._conn, self.node_id, today)
            record = Record(
                id=record_id,
                timestamp=now,
                agent_id=draft.agent_id,
                node_id=self.node_id,
                session_ref=draft.session_ref,
                cycle_intent=draft.intent,
                domain_tags=list(draft.domain_tags),
                cycle_context=draft.context,
                yield_type=draft.yield_type,
                question_answered=draft.question_answered,
                evidence=draft.evidence,
                what_changes_next=draft.what_changes_next,
                what_was_falsified=draft.what_was_falsified,
                transferable_to=list(draft.transferable_to),
                confidence=float(draft.confidence),
                auto_draft=draft.auto_draft,
                source_memory_id=draft.source_memory_id,
                created_at=now,
                updated_at=now,
            )
            self.insert_record(record)
        logger.debug("Created record", extra={"context": {"id": record_id}})
        return record

    def insert_record(self, record: Record) -> None:
        placeholders = ", ".join("?" for _ in _INSERT_COLUMNS)
        try:
            self._conn.execute(
                f"INSERT INTO myr_reports ({', '.join(_INSERT_COLUMNS)}) VALUES ({placeholders})",
                _row_values(record),
            )
        except sqlite3.IntegrityError as ex:
            raise StoreError(f"Cannot insert {record.id}: {ex}") from ex

    def rate_record(
        self,
        record_id: str,
        rating: int,
        notes: Optional[str] = None,
        now: Optional[str] = None,
    ) -> Record:
        """Store the operator's verification of a local record."""
        if not 1 <= int(rating) <= 5:
            raise ValueError(f"rating must be within 1-5, got {rating}")
        record = self.require(record_id)
        if record.is_imported:
            raise StoreError(
                f"{record_id} was imported from {record.imported_from}; "
                "only the authoring node rates its records"
            )
        stamp = now or now_iso8601()
        with transaction(self._conn):
            self._conn.execute(
                "UPDATE myr_reports SET operator_rating = ?, operator_notes = ?, "
                "verified_at = ?, updated_at = ? WHERE id = ?",
                (int(rating), notes or None, stamp, stamp, record_id),
            )
        return self.require(record_id)

    def cache_signed_artifact(self, record_id: str, artifact_json: str, signed_by: str) -> None:
        with transaction(self._conn):
            cur = self._conn.execute(
                "UPDATE myr_reports SET signed_artifact = ?, signed_by = ?, updated_at = ? WHERE id = ?",
                (artifact_json, signed_by, now_iso8601(), record_id),
            )
        if cur.rowcount == 0:
            raise RecordNotFound(record_id)

    # -- reads --------------------------------------------------------------

    def get(self, record_id: str) -> Optional[Record]:
        row = self._conn.execute("SELECT * FROM myr_reports WHERE id = ?", (record_id,)).fetchone()
        return Record.from_row(row) if row else None

    def require(self, record_id: str) -> Record:
        record = self.get(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    def exists(self, record_id: str) -> bool:
        row = self._conn.execute("SELECT 1 FROM myr_reports WHERE id = ?", (record_id,)).fetchone()
        return row is not None

    def count(self, imported: Optional[bool] = None) -> int:
        sql = "SELECT COUNT(*) FROM myr_reports"
        if imported is True:
            sql += " WHERE imported_from IS NOT NULL AND imported_from != ''"
        elif imported is False:
            sql += " WHERE imported_from IS NULL OR imported_from = ''"
        return int(self._conn.execute(sql).fetchone()[0])

    def list_unsigned_local(self) -> List[Record]:
        rows = self._conn.execute(
            "SELECT * FROM myr_reports "
            "WHERE signed_artifact IS NULL AND (imported_from IS NULL OR imported_from = '') "
            "ORDER BY created_at, id"
        )
        return [Record.from_row(r) for r in rows]

    def select_local(self, ids: Iterable[str]) -> List[Record]:
        """Local records by id, in the order given. Unknown ids raise."""
        out: List[Record] = []
        for record_id in ids:
            record = self.require(record_id)
            if record.is_imported:
                logger.debug("Skipping imported record", extra={"context": {"id": record_id}})
                continue
            out.append(record)
        return out

    def select_rated(self, min_rating: int = 3, since: Optional[date] = None) -> List[Record]:
        """Local records rated at least ``min_rating``, optionally created on/after ``since``."""
        sql = (
            "SELECT * FROM myr_reports "
            "WHERE operator_rating >= ? AND (imported_from IS NULL OR imported_from = '')"
        )
        params: list = [int(min_rating)]
        if since is not None:
            sql += " AND created_at >= ?"
            params.append(since.isoformat())
        sql += " ORDER BY created_at, id"
        return [Record.from_row(r) for r in self._conn.execute(sql, params)]
