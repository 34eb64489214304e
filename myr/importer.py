"""myr.importer

Verifies a peer's export file and merges the accepted records.

Stages, per batch:

1. identity preflight over every artifact; any claim on our own node_id
   aborts the batch before anything is written;
2. per artifact, in input order: id check, self-signer check, legacy id
   and provenance checks (the payload's node_id and id qualifier must name
   the signer), duplicate skip, key resolution, key binding check,
   signature verification, embedded-key check, payload parsing, then one
   transaction that binds or confirms the peer key, inserts the record and
   bumps the peer counters.

Per-artifact failures are outcomes in the ``ImportReport``. A key binding
mismatch is fatal: it raises ``KeyBindingMismatch`` with the partial report
attached as ``.report``; records accepted before it stay committed.
"""

from __future__ import annotations

import json
import logging
import pathlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional, Union

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from myr.core import load_json, now_iso8601
from myr.db import transaction
from myr.errors import ArtifactFileError, EnvelopeError, KeyBindingMismatch, KeyMaterialError, Reason
from myr.identity import NodeIdentity, preflight
from myr.ids import is_legacy_id, parse_record_id
from myr.keys import fingerprint, load_public_key_file, public_key_from_b64, public_key_path, same_key
from myr.models import Record, claimed_record_id, claimed_signer
from myr.observability import timed_operation
from myr.peers import Binding, PeerTrustStore
from myr.store import RecordStore
from myr.verify import verify_envelope

logger = logging.getLogger(__name__)


class Outcome(Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    SKIPPED = "skipped"


@dataclass
class ImportOutcome:
    record_id: Optional[str]
    outcome: Outcome
    reason: Optional[Reason] = None
    detail: str = ""
    signer: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.record_id,
            "outcome": self.outcome.value,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
            "signer": self.signer,
        }


@dataclass
class ImportReport:
    outcomes: List[ImportOutcome] = field(default_factory=list)

    def _count(self, outcome: Outcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome == outcome)

    @property
    def accepted(self) -> int:
        return self._count(Outcome.ACCEPTED)

    @property
    def rejected(self) -> int:
        return self._count(Outcome.REJECTED)

    @property
    def skipped(self) -> int:
        return self._count(Outcome.SKIPPED)

    def add(self, outcome: ImportOutcome) -> None:
        self.outcomes.append(outcome)
        logger.debug("Import outcome", extra={"context": outcome.to_dict()})

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "rejected": self.rejected,
            "skipped": self.skipped,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }

    def lines(self) -> List[str]:
        out = [
            "Import summary:",
            f"  Accepted: {self.accepted}",
            f"  Rejected: {self.rejected}",
            f"  Skipped:  {self.skipped}",
        ]
        details = [o for o in self.outcomes if o.outcome != Outcome.ACCEPTED]
        if details:
            out.append("Details:")
            for o in details:
                code = o.reason.value if o.reason else o.outcome.value
                out.append(f"  [{o.record_id or 'unknown'}] {code}: {o.detail}")
        return out


def load_artifacts(path: Union[str, pathlib.Path]) -> List[Any]:
    """Read an export file: a JSON array of envelopes, or a single envelope."""
    p = pathlib.Path(path)
    if not p.exists():
        raise ArtifactFileError(f"File not found: {p}")
    try:
        data = load_json(p)
    except (OSError, UnicodeDecodeError, ValueError) as ex:
        raise ArtifactFileError(f"Failed to parse {p}: {ex}") from ex
    return data if isinstance(data, list) else [data]


def _resolve_key(
    signer: str,
    peers: PeerTrustStore,
    peer_key: Optional[Ed25519PublicKey],
    keys_dir: Optional[pathlib.Path],
) -> Optional[Ed25519PublicKey]:
    if peer_key is not None:
        return peer_key
    key = peers.resolve_key(signer)
    if key is not None:
        return key
    if keys_dir is not None:
        candidate = public_key_path(keys_dir, signer)
        if candidate.exists():
            return load_public_key_file(candidate)
    return None


def _embedded_key(artifact: dict) -> Optional[Ed25519PublicKey]:
    sig = artifact.get("signature")
    if not isinstance(sig, dict) or not sig.get("public_key"):
        return None
    try:
        return public_key_from_b64(sig["public_key"], source="embedded public key")
    except KeyMaterialError:
        return None


def _foreign_claim(artifact: dict, record_id: str, signer: str) -> Optional[str]:
    """Why the payload does not belong to ``signer``, or None when it does."""
    claimed_node = artifact["payload"].get("node_id")
    if claimed_node != signer:
        return f"payload.node_id {claimed_node!r} differs from signer {signer}"
    parsed = parse_record_id(record_id)
    if parsed is None:
        return f"id {record_id} is not a node-qualified record id"
    if parsed.node_id != signer:
        return f"id {record_id} belongs to node {parsed.node_id}, signed by {signer}"
    return None


def _check_bound_key(
    signer: str,
    peers: PeerTrustStore,
    presented: Iterable[Optional[Ed25519PublicKey]],
) -> None:
    """Every key the artifact or operator presents must equal the bound key."""
    for key in presented:
        if key is not None and peers.check_binding(signer, key) == Binding.MISMATCH:
            bound = peers.resolve_key(signer)
            raise KeyBindingMismatch(signer, fingerprint(bound), fingerprint(key))


@timed_operation(logger, "import")
def import_artifacts(
    store: RecordStore,
    peers: PeerTrustStore,
    identity: NodeIdentity,
    artifacts: List[Any],
    peer_key: Optional[Ed25519PublicKey] = None,
    keys_dir: Optional[pathlib.Path] = None,
) -> ImportReport:
    artifacts = list(artifacts)
    try:
        local_key = identity.public_key()
    except KeyMaterialError:
        local_key = None
    preflight(artifacts, identity, local_key)

    report = ImportReport()
    for artifact in artifacts:
        try:
            _import_one(store, peers, identity, artifact, report, peer_key, keys_dir)
        except KeyBindingMismatch as ex:
            ex.report = report  # type: ignore[attr-defined]
            logger.error(
                "Key binding mismatch, import aborted",
                extra={
                    "error_code": "key_binding_mismatch",
                    "context": {"peer": ex.node_id, "accepted_before_abort": report.accepted},
                },
            )
            raise

    logger.info(
        "Import finished",
        extra={"context": {"accepted": report.accepted, "rejected": report.rejected, "skipped": report.skipped}},
    )
    return report


def _import_one(
    store: RecordStore,
    peers: PeerTrustStore,
    identity: NodeIdentity,
    artifact: Any,
    report: ImportReport,
    peer_key: Optional[Ed25519PublicKey],
    keys_dir: Optional[pathlib.Path],
) -> None:
    record_id = claimed_record_id(artifact)
    signer, _ = claimed_signer(artifact)

    def reject(reason: Reason, detail: str) -> None:
        report.add(ImportOutcome(record_id, Outcome.REJECTED, reason, detail, signer))

    if record_id is None:
        reject(Reason.MISSING_ID, "missing payload.id")
        return
    if signer == identity.node_id:
        reject(Reason.SELF_SIGNED, f"signer node_id matches our own ({identity.node_id})")
        return
    if is_legacy_id(record_id):
        reject(Reason.LEGACY_ID, f"legacy id {record_id}, the author must re-sign it under a node-qualified id")
        return
    if signer is not None:
        problem = _foreign_claim(artifact, record_id, signer)
        if problem:
            reject(Reason.SIGNER_MISMATCH, problem)
            return
    if store.exists(record_id):
        report.add(ImportOutcome(record_id, Outcome.SKIPPED, Reason.DUPLICATE, "already exists", signer))
        return
    if signer is None:
        reject(Reason.INVALID_SIGNATURE_METADATA, "signature.node_id missing")
        return

    try:
        key = _resolve_key(signer, peers, peer_key, keys_dir)
    except KeyMaterialError as ex:
        reject(Reason.UNKNOWN_KEY, str(ex))
        return
    if key is None:
        reject(Reason.UNKNOWN_KEY, f"no public key found for node {signer}, use --peer-key")
        return

    embedded = _embedded_key(artifact)
    _check_bound_key(signer, peers, (peer_key, embedded))

    result = verify_envelope(artifact, key)
    if not result.ok:
        reject(result.reason or Reason.BAD_SIGNATURE, result.detail)
        return

    if embedded is not None and not same_key(embedded, key):
        reject(
            Reason.EMBEDDED_KEY_MISMATCH,
            f"embedded key {fingerprint(embedded)} differs from resolved key {fingerprint(key)}",
        )
        return

    try:
        record = Record.from_payload(
            artifact["payload"],
            imported_from=signer,
            signed_artifact=json.dumps(artifact, ensure_ascii=False),
            now=now_iso8601(),
        )
    except EnvelopeError as ex:
        reject(ex.reason, str(ex))
        return

    with transaction(store.conn, immediate=True):
        peers.bind_or_check(signer, key)
        store.insert_record(record)
        peers.record_import(signer)

    report.add(ImportOutcome(record_id, Outcome.ACCEPTED, None, "verified", signer))
