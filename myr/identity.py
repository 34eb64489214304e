"""Node identity and the import preflight guard.

A node is known to peers by its human-chosen ``node_id`` label, its random
``node_uuid`` and the fingerprint of its public key. The label alone is not
unique: the preflight below tells an echo of our own export apart from a
second node that happens to use the same label.
"""

from __future__ import annotations

import logging
import pathlib
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from myr.config import MyrConfig
from myr.errors import KeyMaterialError, LabelCollision, SelfOriginEcho
from myr.keys import fingerprint, load_public_key_file, public_key_from_b64, public_key_path, same_key
from myr.models import claimed_signer

logger = logging.getLogger(__name__)


def generate_node_uuid() -> str:
    return str(uuid.uuid4())


def short_uuid(value: Optional[str]) -> str:
    return value[:8] if value else "unknown"


@dataclass(frozen=True)
class NodeIdentity:
    node_id: str
    keys_dir: pathlib.Path
    node_uuid: Optional[str] = None
    node_name: str = ""

    @classmethod
    def from_config(cls, cfg: MyrConfig) -> "NodeIdentity":
        cfg.require_valid()
        return cls(
            node_id=cfg.get("node_id"),
            node_uuid=cfg.get("node_uuid") or None,
            node_name=cfg.get("node_name") or "",
            keys_dir=cfg.path("keys_path"),
        )

    @property
    def public_key_path(self) -> pathlib.Path:
        return public_key_path(self.keys_dir, self.node_id)

    def public_key(self) -> Optional[Ed25519PublicKey]:
        """This node's public key, or None before keygen."""
        if not self.public_key_path.exists():
            return None
        return load_public_key_file(self.public_key_path)


def identity_card(identity: NodeIdentity) -> Dict[str, Any]:
    """What an operator shares with peers before exchanging files."""
    try:
        pub = identity.public_key()
    except KeyMaterialError:
        pub = None
    fp = fingerprint(pub) if pub is not None else None
    return {
        "node_id": identity.node_id,
        "node_name": identity.node_name,
        "node_uuid": identity.node_uuid,
        "key_fingerprint": fp,
        "card": f"{identity.node_id} / {short_uuid(identity.node_uuid)} / {fp or 'n/a'}",
    }


def _embedded_key(artifact: Any) -> Optional[Ed25519PublicKey]:
    sig = artifact.get("signature") if isinstance(artifact, dict) else None
    if not isinstance(sig, dict) or not sig.get("public_key"):
        return None
    try:
        return public_key_from_b64(sig["public_key"])
    except KeyMaterialError:
        return None


def preflight(
    artifacts: Iterable[Any],
    identity: NodeIdentity,
    local_key: Optional[Ed25519PublicKey] = None,
) -> None:
    """Abort the whole batch if any artifact claims this node's label.

    An artifact claiming our ``node_id`` together with our ``node_uuid`` (or
    embedding our own public key) is one of our own exports coming back:
    ``SelfOriginEcho``. Any other claim on our ``node_id`` is a second node
    using the same label: ``LabelCollision``. Unreadable artifacts are left to
    the per-artifact stage.
    """
    collision_uuid: Optional[str] = None
    collision = False
    for artifact in artifacts:
        node_id, node_uuid = claimed_signer(artifact)
        if node_id is None or node_id != identity.node_id:
            continue

        if identity.node_uuid and node_uuid == identity.node_uuid:
            raise SelfOriginEcho(
                f"Artifacts in this batch were signed by this node ({identity.node_id} / "
                f"{short_uuid(identity.node_uuid)})."
            )
        if local_key is not None:
            embedded = _embedded_key(artifact)
            if embedded is not None and same_key(embedded, local_key):
                raise SelfOriginEcho(
                    f"Artifacts in this batch embed this node's own public key ({fingerprint(local_key)})."
                )
        if not collision:
            collision = True
            collision_uuid = node_uuid

    if collision:
        raise LabelCollision(identity.node_id, collision_uuid)
