"""Record identifiers.

Current scheme: ``{node_id}-{YYYYMMDD}-{seq}``, ``seq`` zero-padded to three
digits and monotonically increasing per node per UTC day. Node-qualified ids
let merged stores address every record without a central allocator.

Legacy scheme: ``myr-{YYYY}-{MM}-{DD}-{seq}`` (no node qualifier), rewritten
once to the current scheme when a store is opened. Records imported from
peers keep the id their author signed.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional

from myr.core import utc_today
from myr.db import transaction
from myr.errors import StoreError

logger = logging.getLogger(__name__)

SEQ_WIDTH = 3

RECORD_ID_RE = re.compile(r"^(?P<node_id>.+)-(?P<day>\d{8})-(?P<seq>\d{3,})$")
LEGACY_ID_RE = re.compile(r"^myr-(?P<y>\d{4})-(?P<m>\d{2})-(?P<d>\d{2})-(?P<seq>\d{3})$")


@dataclass(frozen=True)
class RecordId:
    node_id: str
    day: date
    seq: int

    def __str__(self) -> str:
        return format_record_id(self.node_id, self.day, self.seq)


def format_record_id(node_id: str, day: date, seq: int) -> str:
    if seq < 1:
        raise ValueError("sequence numbers start at 1")
    return f"{node_id}-{day:%Y%m%d}-{seq:0{SEQ_WIDTH}d}"


def parse_record_id(record_id: str) -> Optional[RecordId]:
    m = RECORD_ID_RE.match(str(record_id or ""))
    if not m:
        return None
    try:
        day = datetime.strptime(m.group("day"), "%Y%m%d").date()
    except ValueError:
        return None
    return RecordId(node_id=m.group("node_id"), day=day, seq=int(m.group("seq")))


def is_legacy_id(record_id: str) -> bool:
    return bool(LEGACY_ID_RE.match(str(record_id or "")))


def legacy_to_current(legacy_id: str, node_id: str) -> Optional[str]:
    """``myr-2024-03-01-002`` -> ``<node_id>-20240301-002``."""
    m = LEGACY_ID_RE.match(str(legacy_id or ""))
    if not m:
        return None
    return f"{node_id}-{m.group('y')}{m.group('m')}{m.group('d')}-{m.group('seq')}"


def day_prefix(node_id: str, day: date) -> str:
    return f"{node_id}-{day:%Y%m%d}-"


def next_sequence(existing_ids: Iterable[str], prefix: str) -> int:
    """Numeric maximum of the suffixes under ``prefix``, plus one.

    Compared numerically rather than lexicographically so the sequence keeps
    growing past 999 records a day.
    """
    highest = 0
    for rid in existing_ids:
        if not rid.startswith(prefix):
            continue
        suffix = rid[len(prefix):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest + 1


def next_record_id(conn: sqlite3.Connection, node_id: str, today: Optional[date] = None) -> str:
    """Allocate the next id for ``node_id`` on ``today`` (UTC).

    Callers that insert the allocated id must hold a write transaction
    around both steps (see ``RecordStore.create_record``).
    """
    day = today or utc_today()
    prefix = day_prefix(node_id, day)
    rows = conn.execute(
        "SELECT id FROM myr_reports WHERE substr(id, 1, ?) = ?",
        (len(prefix), prefix),
    )
    seq = next_sequence((row["id"] for row in rows), prefix)
    return format_record_id(node_id, day, seq)


def migrate_legacy_ids(conn: sqlite3.Connection, node_id: str) -> int:
    """Rewrite every local legacy id to the node-qualified scheme, all or nothing.

    The FTS copy of each id follows through the update trigger; the index is
    rebuilt afterwards so it is consistent even if a row-level update was
    not applied by the indexing engine. Returns the number of migrated rows
    (0 when nothing is left to migrate).
    """
    rows = conn.execute(
        "SELECT id FROM myr_reports WHERE id LIKE 'myr-%' "
        "AND (imported_from IS NULL OR imported_from = '')"
    ).fetchall()
    pairs = []
    for row in rows:
        new_id = legacy_to_current(row["id"], node_id)
        if new_id is not None:
            pairs.append((row["id"], new_id))

    if not pairs:
        return 0

    try:
        with transaction(conn, immediate=True):
            for old_id, new_id in pairs:
                conn.execute(
                    "UPDATE myr_reports SET id = ?, node_id = ? WHERE id = ?",
                    (new_id, node_id, old_id),
                )
    except sqlite3.IntegrityError as ex:
        raise StoreError(
            f"Legacy id migration aborted, no ids were changed: {ex}"
        ) from ex

    conn.execute("INSERT INTO myr_fts(myr_fts) VALUES('rebuild')")

    logger.info(
        "Migrated legacy record ids",
        extra={"context": {"count": len(pairs), "node_id": node_id}},
    )
    return len(pairs)
