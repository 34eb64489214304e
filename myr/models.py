"""Typed data structures for records and artifact envelopes.

Everything that crosses a trust boundary (a row read from the store, an
envelope read from a peer's file) is turned into one of these dataclasses
before the rest of the stack touches it. Construction from untyped JSON
raises ``EnvelopeError`` with a stable ``Reason`` code.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from myr.errors import EnvelopeError, Reason
from myr.schema import (
    ARTIFACT_TYPE,
    ARTIFACT_VERSION,
    SIGNATURE_ALGORITHM,
    YIELD_TYPES,
    validate_against_schema,
)

DEFAULT_CONFIDENCE = 0.7
DEFAULT_AGENT = "polemarch"


def _json_list(text: Optional[str]) -> List[str]:
    if not text:
        return []
    try:
        value = json.loads(text)
    except ValueError:
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


@dataclass
class Verification:
    """Operator verification captured at signing time."""
    operator_rating: Optional[int] = None
    operator_notes: Optional[str] = None
    verified_at: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "operator_rating": self.operator_rating,
            "operator_notes": self.operator_notes or None,
            "verified_at": self.verified_at or None,
        }

    @classmethod
    def from_payload(cls, data: Optional[Dict[str, Any]]) -> "Verification":
        data = data or {}
        # payloads signed before the operator_* rename carry jordan_* keys
        rating = data.get("operator_rating", data.get("jordan_rating"))
        notes = data.get("operator_notes", data.get("jordan_notes"))
        return cls(
            operator_rating=int(rating) if rating is not None else None,
            operator_notes=notes or None,
            verified_at=data.get("verified_at") or None,
        )


@dataclass
class RecordDraft:
    """Input of the capture collaborator; the store allocates the id."""
    intent: str
    yield_type: str
    question_answered: str
    evidence: str
    what_changes_next: str
    what_was_falsified: Optional[str] = None
    domain_tags: List[str] = field(default_factory=list)
    context: Optional[str] = None
    confidence: float = DEFAULT_CONFIDENCE
    agent_id: str = DEFAULT_AGENT
    session_ref: Optional[str] = None
    transferable_to: List[str] = field(default_factory=list)
    auto_draft: bool = False
    source_memory_id: Optional[int] = None

    def validate(self) -> None:
        missing = [
            name for name in ("intent", "yield_type", "question_answered", "evidence", "what_changes_next")
            if not str(getattr(self, name) or "").strip()
        ]
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")
        if self.yield_type not in YIELD_TYPES:
            raise ValueError(
                f"Invalid type: {self.yield_type}. Must be one of {', '.join(YIELD_TYPES)}."
            )
        if not 0.0 <= float(self.confidence) <= 1.0:
            raise ValueError(f"confidence must be within 0-1, got {self.confidence}")


@dataclass
class Record:
    id: str
    timestamp: str
    agent_id: str
    node_id: str
    cycle_intent: str
    yield_type: str
    question_answered: str
    evidence: str
    what_changes_next: str
    created_at: str
    updated_at: str
    session_ref: Optional[str] = None
    domain_tags: List[str] = field(default_factory=list)
    cycle_context: Optional[str] = None
    what_was_falsified: Optional[str] = None
    transferable_to: List[str] = field(default_factory=list)
    confidence: float = DEFAULT_CONFIDENCE
    verification: Verification = field(default_factory=Verification)
    signed_by: Optional[str] = None
    imported_from: Optional[str] = None
    signed_artifact: Optional[str] = None
    import_verified: bool = False
    auto_draft: bool = False
    source_memory_id: Optional[int] = None

    @property
    def is_imported(self) -> bool:
        return bool(self.imported_from)

    @property
    def cached_envelope(self) -> Optional[Dict[str, Any]]:
        if not self.signed_artifact:
            return None
        return json.loads(self.signed_artifact)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Record":
        keys = row.keys()
        return cls(
            id=row["id"],
            timestamp=row["timestamp"],
            agent_id=row["agent_id"],
            node_id=row["node_id"],
            session_ref=row["session_ref"],
            cycle_intent=row["cycle_intent"],
            domain_tags=_json_list(row["domain_tags"]),
            cycle_context=row["cycle_context"],
            yield_type=row["yield_type"],
            question_answered=row["question_answered"],
            evidence=row["evidence"],
            what_changes_next=row["what_changes_next"],
            what_was_falsified=row["what_was_falsified"],
            transferable_to=_json_list(row["transferable_to"]),
            confidence=row["confidence"],
            verification=Verification(
                operator_rating=row["operator_rating"],
                operator_notes=row["operator_notes"],
                verified_at=row["verified_at"],
            ),
            signed_by=row["signed_by"],
            imported_from=row["imported_from"] or None,
            signed_artifact=row["signed_artifact"],
            import_verified=bool(row["import_verified"]),
            auto_draft=bool(row["auto_draft"]) if "auto_draft" in keys else False,
            source_memory_id=row["source_memory_id"] if "source_memory_id" in keys else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def from_payload(
        cls,
        payload: Dict[str, Any],
        *,
        imported_from: str,
        signed_artifact: str,
        now: str,
    ) -> "Record":
        """Build the local copy of a verified peer record."""
        errors = validate_against_schema(payload, "payload")
        if errors:
            raise EnvelopeError(Reason.MALFORMED_PAYLOAD, "; ".join(errors))

        cycle = payload.get("cycle") or {}
        y = payload.get("yield") or {}
        confidence = y.get("confidence")
        return cls(
            id=payload["id"],
            timestamp=payload["timestamp"],
            agent_id=payload.get("agent_id") or DEFAULT_AGENT,
            node_id=payload["node_id"],
            session_ref=payload.get("session_ref") or None,
            cycle_intent=cycle["intent"],
            domain_tags=list(cycle.get("domain_tags") or []),
            cycle_context=cycle.get("context") or None,
            yield_type=y["type"],
            question_answered=y["question_answered"],
            evidence=y["evidence"],
            what_changes_next=y["what_changes_next"],
            what_was_falsified=y.get("what_was_falsified") or None,
            transferable_to=list(y.get("transferable_to") or []),
            confidence=DEFAULT_CONFIDENCE if confidence is None else float(confidence),
            verification=Verification.from_payload(payload.get("verification")),
            signed_by=imported_from,
            imported_from=imported_from,
            signed_artifact=signed_artifact,
            import_verified=True,
            created_at=now,
            updated_at=now,
        )


@dataclass(frozen=True)
class SignatureBlock:
    algorithm: str
    node_id: str
    public_key: str
    signed_at: str
    value: str
    node_uuid: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "algorithm": self.algorithm,
            "node_id": self.node_id,
        }
        if self.node_uuid:
            d["node_uuid"] = self.node_uuid
        d.update({
            "public_key": self.public_key,
            "signed_at": self.signed_at,
            "value": self.value,
        })
        return d


@dataclass
class ArtifactEnvelope:
    """One signed record as it travels between nodes."""
    payload: Dict[str, Any]
    signature: SignatureBlock
    version: str = ARTIFACT_VERSION
    artifact_type: str = ARTIFACT_TYPE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "artifact_type": self.artifact_type,
            "payload": self.payload,
            "signature": self.signature.to_dict(),
        }

    @classmethod
    def from_dict(cls, obj: Any) -> "ArtifactEnvelope":
        """Structural and signature-block checks, in verification order.

        Raises ``EnvelopeError`` carrying the first failing check's reason.
        """
        if not isinstance(obj, dict):
            raise EnvelopeError(Reason.MALFORMED_ENVELOPE, "artifact is not a JSON object")
        if obj.get("version") != ARTIFACT_VERSION:
            raise EnvelopeError(
                Reason.UNSUPPORTED_VERSION,
                f"unsupported artifact version {obj.get('version')!r}",
            )
        if obj.get("artifact_type") != ARTIFACT_TYPE:
            raise EnvelopeError(
                Reason.WRONG_ARTIFACT_TYPE,
                f"artifact_type must be {ARTIFACT_TYPE!r}, got {obj.get('artifact_type')!r}",
            )
        payload = obj.get("payload")
        sig = obj.get("signature")
        if not isinstance(payload, dict) or not isinstance(sig, dict):
            raise EnvelopeError(Reason.MALFORMED_ENVELOPE, "missing payload or signature")

        if sig.get("algorithm") != SIGNATURE_ALGORITHM:
            raise EnvelopeError(
                Reason.UNSUPPORTED_ALGORITHM,
                f"unsupported signature algorithm {sig.get('algorithm')!r}",
            )
        if not sig.get("value") or not sig.get("node_id"):
            raise EnvelopeError(Reason.INVALID_SIGNATURE_METADATA, "invalid signature metadata")

        errors = validate_against_schema(sig, "signature")
        if errors:
            raise EnvelopeError(Reason.INVALID_SIGNATURE_METADATA, "; ".join(errors))

        return cls(
            payload=payload,
            signature=SignatureBlock(
                algorithm=sig["algorithm"],
                node_id=sig["node_id"],
                node_uuid=sig.get("node_uuid") or None,
                public_key=sig["public_key"],
                signed_at=sig["signed_at"],
                value=sig["value"],
            ),
            version=obj["version"],
            artifact_type=obj["artifact_type"],
        )


def claimed_signer(obj: Any) -> Tuple[Optional[str], Optional[str]]:
    """``(node_id, node_uuid)`` an untyped artifact claims, ``(None, None)`` if unreadable."""
    if not isinstance(obj, dict):
        return None, None
    sig = obj.get("signature")
    if not isinstance(sig, dict):
        return None, None
    node_id = sig.get("node_id")
    node_uuid = sig.get("node_uuid")
    return (
        node_id if isinstance(node_id, str) and node_id else None,
        node_uuid if isinstance(node_uuid, str) and node_uuid else None,
    )


def claimed_record_id(obj: Any) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    payload = obj.get("payload")
    if not isinstance(payload, dict):
        return None
    rid = payload.get("id")
    return rid if isinstance(rid, str) and rid else None
