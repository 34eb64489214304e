"""myr.signing

Turns local records into signed artifact envelopes.

Profile / invariants:
- Signing input is the canonical JSON bytes of ``payload`` (see
  ``myr.core.canonical_json_bytes``); Ed25519 signs those bytes directly,
  there is no separate digest step.
- The payload embeds the operator verification as it stands *at signing
  time*. A later rating change does not alter an already cached envelope;
  only an explicit re-sign recomputes it ("what you sign is what ships").
- Imported records are never signed locally.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from myr.core import canonical_json_bytes, now_rfc3339
from myr.keys import NodeKeypair
from myr.models import ArtifactEnvelope, Record, SignatureBlock
from myr.schema import SIGNATURE_ALGORITHM

if TYPE_CHECKING:
    from myr.identity import NodeIdentity
    from myr.store import RecordStore

logger = logging.getLogger(__name__)


def build_payload(record: Record) -> Dict[str, Any]:
    """Project a record onto the signed payload shape."""
    return {
        "id": record.id,
        "timestamp": record.timestamp,
        "agent_id": record.agent_id,
        "node_id": record.node_id,
        "session_ref": record.session_ref or None,
        "cycle": {
            "intent": record.cycle_intent,
            "domain_tags": list(record.domain_tags),
            "context": record.cycle_context or None,
        },
        "yield": {
            "type": record.yield_type,
            "question_answered": record.question_answered,
            "evidence": record.evidence,
            "what_changes_next": record.what_changes_next,
            "what_was_falsified": record.what_was_falsified or None,
            "transferable_to": list(record.transferable_to),
            "confidence": record.confidence,
        },
        "verification": record.verification.to_payload(),
    }


def signing_input(payload: Dict[str, Any]) -> bytes:
    """Canonical signing input for MYR envelopes."""
    return canonical_json_bytes(payload)


def sign_payload(
    payload: Dict[str, Any],
    keypair: NodeKeypair,
    identity: "NodeIdentity",
    signed_at: Optional[str] = None,
) -> Dict[str, Any]:
    """Sign ``payload`` and assemble the wire envelope.

    ``signed_at`` defaults to ``now_rfc3339()`` which respects
    SOURCE_DATE_EPOCH.
    """
    sig = keypair.private_key.sign(signing_input(payload))
    envelope = ArtifactEnvelope(
        payload=payload,
        signature=SignatureBlock(
            algorithm=SIGNATURE_ALGORITHM,
            node_id=identity.node_id,
            node_uuid=identity.node_uuid,
            public_key=keypair.public_b64,
            signed_at=signed_at or now_rfc3339(),
            value=base64.b64encode(sig).decode("ascii"),
        ),
    )
    return envelope.to_dict()


def sign_record(
    store: "RecordStore",
    record: Record,
    keypair: NodeKeypair,
    identity: "NodeIdentity",
) -> Dict[str, Any]:
    """Sign ``record`` from its current state and cache the envelope.

    Always recomputes: an existing cached envelope is overwritten.
    """
    if record.is_imported:
        raise ValueError(
            f"{record.id} was imported from {record.imported_from}; "
            "a node never re-signs a peer's record"
        )
    envelope = sign_payload(build_payload(record), keypair, identity)
    store.cache_signed_artifact(record.id, json.dumps(envelope, ensure_ascii=False), identity.node_id)
    logger.info("Signed record", extra={"context": {"id": record.id}})
    return envelope


def sign_unsigned(
    store: "RecordStore",
    keypair: NodeKeypair,
    identity: "NodeIdentity",
) -> List[str]:
    """Sign every local record that has no cached envelope yet."""
    signed: List[str] = []
    for record in store.list_unsigned_local():
        sign_record(store, record, keypair, identity)
        signed.append(record.id)
    return signed
