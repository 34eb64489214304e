"""myr.verify

Checks an artifact envelope against a resolved public key.

Verification order, each step with its own reason code:

(a) structure: version, artifact type, payload + signature present
(b) signature block: algorithm, claimed node id and signature value
(c) cryptography: the payload is re-canonicalized *as received* and the
    Ed25519 signature is checked over those bytes, so pretty-printing or key
    reordering in transit never invalidates a genuine artifact

The verifier never raises and never mutates its input; the caller decides
what a failure means for the batch.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from myr.errors import EnvelopeError, Reason
from myr.models import ArtifactEnvelope
from myr.signing import signing_input


@dataclass
class VerifyResult:
    ok: bool
    reason: Optional[Reason] = None
    detail: str = ""
    envelope: Optional[ArtifactEnvelope] = None

    def __bool__(self) -> bool:
        return self.ok


def _fail(reason: Reason, detail: str) -> VerifyResult:
    return VerifyResult(ok=False, reason=reason, detail=detail)


def verify_envelope(artifact: Any, public_key: Ed25519PublicKey) -> VerifyResult:
    """Verify one untyped artifact against ``public_key``."""
    try:
        envelope = ArtifactEnvelope.from_dict(artifact)
    except EnvelopeError as ex:
        return _fail(ex.reason, str(ex))

    try:
        sig = base64.b64decode(envelope.signature.value, validate=True)
    except (binascii.Error, ValueError):
        return _fail(Reason.BAD_SIGNATURE, "signature value is not valid base64")
    if len(sig) != 64:
        return _fail(Reason.BAD_SIGNATURE, f"Ed25519 signature must be 64 bytes, got {len(sig)}")

    try:
        msg = signing_input(envelope.payload)
    except (TypeError, ValueError) as ex:
        return _fail(Reason.MALFORMED_ENVELOPE, f"payload cannot be canonicalized: {ex}")

    try:
        public_key.verify(sig, msg)
    except InvalidSignature:
        return _fail(Reason.BAD_SIGNATURE, "Ed25519 signature verification failed")

    return VerifyResult(ok=True, envelope=envelope)
