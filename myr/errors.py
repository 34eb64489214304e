"""Error taxonomy for the MYR exchange stack.

Three families:

- configuration errors (``ConfigError``, ``KeyMaterialError``) block every
  operation until fixed;
- batch-level security aborts (``SecurityAbort`` subclasses) stop a whole
  import run and carry a distinct process exit code each;
- per-record rejections are *not* exceptions: they are ``Reason`` codes
  recorded in the import tally.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_SELF_ORIGIN = 3
EXIT_LABEL_COLLISION = 4
EXIT_KEY_MISMATCH = 5


class Reason(str, Enum):
    """Stable machine-readable reason codes for per-record outcomes."""

    MALFORMED_ENVELOPE = "malformed_envelope"
    UNSUPPORTED_VERSION = "unsupported_version"
    WRONG_ARTIFACT_TYPE = "wrong_artifact_type"
    UNSUPPORTED_ALGORITHM = "unsupported_algorithm"
    INVALID_SIGNATURE_METADATA = "invalid_signature_metadata"
    BAD_SIGNATURE = "bad_signature"
    MISSING_ID = "missing_id"
    SELF_SIGNED = "self_signed"
    DUPLICATE = "duplicate"
    UNKNOWN_KEY = "unknown_key"
    EMBEDDED_KEY_MISMATCH = "embedded_key_mismatch"
    MALFORMED_PAYLOAD = "malformed_payload"
    LEGACY_ID = "legacy_id"
    SIGNER_MISMATCH = "signer_mismatch"


class MyrError(Exception):
    """Base class for every error raised by the stack."""

    exit_code: int = EXIT_FAILURE


class ConfigError(MyrError):
    """Configuration error (missing or invalid node settings)."""


class KeyMaterialError(MyrError):
    """Key files missing, unreadable or not Ed25519."""


class StoreError(MyrError):
    """Record store failure."""


class RecordNotFound(StoreError):
    def __init__(self, record_id: str):
        super().__init__(f"MYR not found: {record_id}")
        self.record_id = record_id


class ArtifactFileError(MyrError):
    """An export file could not be read or parsed."""


class EnvelopeError(MyrError):
    """A wire structure failed typed validation."""

    def __init__(self, reason: Reason, message: str):
        super().__init__(message)
        self.reason = reason


class SecurityAbort(MyrError):
    """Fatal, whole-run abort raised at a trust boundary."""

    remediation: str = ""

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        if remediation is not None:
            self.remediation = remediation


class SelfOriginEcho(SecurityAbort):
    exit_code = EXIT_SELF_ORIGIN
    remediation = (
        "This file carries your own node_id and node_uuid: it is one of your "
        "own exports. You cannot import your own artifacts."
    )


class LabelCollision(SecurityAbort):
    exit_code = EXIT_LABEL_COLLISION

    def __init__(self, node_id: str, claimed_uuid: Optional[str] = None):
        shown = claimed_uuid or "absent"
        super().__init__(
            f"Identity collision: incoming artifacts claim node_id {node_id!r} "
            f"(node_uuid {shown}), which is this node's own node_id."
        )
        self.node_id = node_id
        self.claimed_uuid = claimed_uuid
        self.remediation = (
            f"Two independently configured nodes both use the label {node_id!r}. "
            "Ask the peer to choose a unique node_id, re-run keygen and re-export. "
            "Emergency override: re-run the import with this node's id temporarily "
            "changed (e.g. MYR_NODE_ID=<temporary-id>) and verify the peer's key "
            "fingerprint out-of-band before trusting the result."
        )


class KeyBindingMismatch(SecurityAbort):
    exit_code = EXIT_KEY_MISMATCH

    def __init__(self, node_id: str, bound_fingerprint: str, observed_fingerprint: str):
        super().__init__(
            f"Key binding mismatch for peer {node_id!r}: bound key {bound_fingerprint}, "
            f"artifact presents {observed_fingerprint}."
        )
        self.node_id = node_id
        self.bound_fingerprint = bound_fingerprint
        self.observed_fingerprint = observed_fingerprint
        self.remediation = (
            f"Peer {node_id!r} is already bound to a different public key. This is "
            "either a key rotation or an impersonation attempt. Confirm the new key "
            "fingerprint with the peer out-of-band, then remove the binding with "
            f"`myr peers remove {node_id}` and re-import."
        )
