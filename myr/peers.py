"""myr.peers

Peer trust store: the first public key seen for a peer node_id is bound to it
(trust on first use). Later artifacts from that node_id must present the same
key; anything else is a rotation or an impersonation and is never resolved
automatically. Rebinding takes an explicit ``remove`` by the operator.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from myr.core import now_iso8601
from myr.db import transaction
from myr.errors import KeyBindingMismatch
from myr.keys import fingerprint, public_key_from_pem, public_key_to_pem, same_key

logger = logging.getLogger(__name__)


class Binding(Enum):
    FIRST_BINDING = "first_binding"
    CONFIRMED = "confirmed"
    MISMATCH = "mismatch"


@dataclass
class PeerEntry:
    node_id: str
    public_key: str
    added_at: str
    node_name: str = ""
    public_key_format: str = "pem"
    last_import_at: Optional[str] = None
    myr_count: int = 0

    @property
    def key(self) -> Ed25519PublicKey:
        return public_key_from_pem(self.public_key, source=f"peer {self.node_id}")

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.key)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PeerEntry":
        return cls(
            node_id=row["node_id"],
            node_name=row["node_name"] or "",
            public_key=row["public_key"],
            public_key_format=row["public_key_format"] or "pem",
            added_at=row["added_at"],
            last_import_at=row["last_import_at"],
            myr_count=int(row["myr_count"] or 0),
        )


class PeerTrustStore:
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def get(self, node_id: str) -> Optional[PeerEntry]:
        row = self._conn.execute("SELECT * FROM myr_peers WHERE node_id = ?", (node_id,)).fetchone()
        return PeerEntry.from_row(row) if row else None

    def resolve_key(self, node_id: str) -> Optional[Ed25519PublicKey]:
        entry = self.get(node_id)
        return entry.key if entry else None

    def check_binding(self, node_id: str, key: Ed25519PublicKey) -> Binding:
        """Classify ``key`` against the stored binding without changing anything."""
        bound = self.resolve_key(node_id)
        if bound is None:
            return Binding.FIRST_BINDING
        return Binding.CONFIRMED if same_key(bound, key) else Binding.MISMATCH

    def bind_or_check(self, node_id: str, key: Ed25519PublicKey, node_name: str = "") -> Binding:
        """Bind ``key`` on first sight, confirm it afterwards.

        Raises ``KeyBindingMismatch`` when the peer is bound to another key.
        """
        entry = self.get(node_id)
        if entry is None:
            with transaction(self._conn):
                self._conn.execute(
                    "INSERT INTO myr_peers (node_id, node_name, public_key, public_key_format, added_at, myr_count) "
                    "VALUES (?, ?, ?, 'pem', ?, 0)",
                    (node_id, node_name or node_id, public_key_to_pem(key), now_iso8601()),
                )
            logger.info(
                "Bound peer key",
                extra={"context": {"peer": node_id, "fingerprint": fingerprint(key)}},
            )
            return Binding.FIRST_BINDING

        if same_key(entry.key, key):
            return Binding.CONFIRMED
        raise KeyBindingMismatch(node_id, entry.fingerprint, fingerprint(key))

    def record_import(self, node_id: str) -> None:
        with transaction(self._conn):
            self._conn.execute(
                "UPDATE myr_peers SET myr_count = myr_count + 1, last_import_at = ? WHERE node_id = ?",
                (now_iso8601(), node_id),
            )

    def list_peers(self) -> List[PeerEntry]:
        rows = self._conn.execute("SELECT * FROM myr_peers ORDER BY node_id")
        return [PeerEntry.from_row(r) for r in rows]

    def remove(self, node_id: str) -> bool:
        """Drop a binding; the next import from ``node_id`` binds afresh."""
        with transaction(self._conn):
            cur = self._conn.execute("DELETE FROM myr_peers WHERE node_id = ?", (node_id,))
        removed = cur.rowcount > 0
        if removed:
            logger.warning("Removed peer binding", extra={"context": {"peer": node_id}})
        return removed
