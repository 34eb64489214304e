"""myr.keys

Ed25519 key material for MYR nodes.

Profile / invariants:
- one keypair per node, stored as ``<node_id>.private.pem`` (PKCS#8) and
  ``<node_id>.public.pem`` (SubjectPublicKeyInfo)
- the public key travels inside envelopes as base64 of the DER SPKI bytes, a
  self-describing encoding any peer can load without knowing the algorithm
- keys are compared on their raw 32-byte encoding, never on PEM text
"""

from __future__ import annotations

import base64
import binascii
import pathlib
from dataclasses import dataclass
from typing import Tuple, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from myr.core import sha256_bytes
from myr.errors import KeyMaterialError


PathLike = Union[str, pathlib.Path]


def private_key_path(keys_dir: PathLike, node_id: str) -> pathlib.Path:
    return pathlib.Path(keys_dir) / f"{node_id}.private.pem"


def public_key_path(keys_dir: PathLike, node_id: str) -> pathlib.Path:
    return pathlib.Path(keys_dir) / f"{node_id}.public.pem"


# ---------------------------------------------------------------------------
# Encodings
# ---------------------------------------------------------------------------


def raw_public_bytes(pub: Ed25519PublicKey) -> bytes:
    return pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def public_key_to_pem(pub: Ed25519PublicKey) -> str:
    return pub.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def public_key_to_b64(pub: Ed25519PublicKey) -> str:
    """Base64 of the DER SubjectPublicKeyInfo (envelope ``public_key``)."""
    der = pub.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode("ascii")


def _require_ed25519(key: object, source: str) -> Ed25519PublicKey:
    if not isinstance(key, Ed25519PublicKey):
        raise KeyMaterialError(f"{source}: not an Ed25519 public key")
    return key


def public_key_from_pem(pem: Union[str, bytes], source: str = "public key") -> Ed25519PublicKey:
    data = pem.encode("ascii") if isinstance(pem, str) else pem
    try:
        key = serialization.load_pem_public_key(data)
    except (ValueError, TypeError, UnsupportedAlgorithm) as ex:
        raise KeyMaterialError(f"{source}: invalid PEM public key ({ex})") from ex
    return _require_ed25519(key, source)


def public_key_from_b64(value: str, source: str = "public key") -> Ed25519PublicKey:
    """Load the envelope encoding (base64 DER SPKI)."""
    try:
        der = base64.b64decode(str(value or ""), validate=True)
    except (binascii.Error, ValueError) as ex:
        raise KeyMaterialError(f"{source}: public key is not valid base64") from ex
    try:
        key = serialization.load_der_public_key(der)
    except (ValueError, TypeError, UnsupportedAlgorithm) as ex:
        raise KeyMaterialError(f"{source}: invalid DER public key ({ex})") from ex
    return _require_ed25519(key, source)


def same_key(a: Ed25519PublicKey, b: Ed25519PublicKey) -> bool:
    return raw_public_bytes(a) == raw_public_bytes(b)


def fingerprint(pub: Ed25519PublicKey) -> str:
    """Short operator-facing fingerprint, ``SHA256:<16 hex>…`` over the DER SPKI."""
    der = pub.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return "SHA256:" + sha256_bytes(der)[:16] + "…"


# ---------------------------------------------------------------------------
# Keypair files
# ---------------------------------------------------------------------------


@dataclass
class NodeKeypair:
    private_key: Ed25519PrivateKey
    public_key: Ed25519PublicKey

    @property
    def public_b64(self) -> str:
        return public_key_to_b64(self.public_key)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.public_key)


def generate_keypair() -> NodeKeypair:
    priv = Ed25519PrivateKey.generate()
    return NodeKeypair(private_key=priv, public_key=priv.public_key())


def write_keypair(
    keys_dir: PathLike,
    node_id: str,
    keypair: NodeKeypair,
    *,
    overwrite: bool = False,
) -> Tuple[pathlib.Path, pathlib.Path]:
    """Persist a keypair as PEM files. Refuses to clobber without ``overwrite``."""
    priv_path = private_key_path(keys_dir, node_id)
    pub_path = public_key_path(keys_dir, node_id)
    if priv_path.exists() and not overwrite:
        raise KeyMaterialError(f"Keypair already exists at {priv_path} (use --force to overwrite)")

    priv_path.parent.mkdir(parents=True, exist_ok=True)
    priv_pem = keypair.private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    priv_path.write_bytes(priv_pem)
    try:
        priv_path.chmod(0o600)
    except OSError:
        pass
    pub_path.write_text(public_key_to_pem(keypair.public_key), encoding="utf-8")
    return priv_path, pub_path


def load_public_key_file(path: PathLike) -> Ed25519PublicKey:
    p = pathlib.Path(path)
    if not p.exists():
        raise KeyMaterialError(f"Public key not found: {p}")
    return public_key_from_pem(p.read_bytes(), source=str(p))


def load_keypair(keys_dir: PathLike, node_id: str) -> NodeKeypair:
    """Load this node's keypair and check the two halves belong together."""
    priv_path = private_key_path(keys_dir, node_id)
    if not priv_path.exists():
        raise KeyMaterialError(f"Private key not found: {priv_path}. Run `myr keygen` first.")
    try:
        priv = serialization.load_pem_private_key(priv_path.read_bytes(), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as ex:
        raise KeyMaterialError(f"{priv_path}: invalid private key ({ex})") from ex
    if not isinstance(priv, Ed25519PrivateKey):
        raise KeyMaterialError(f"{priv_path}: not an Ed25519 private key")

    pub = load_public_key_file(public_key_path(keys_dir, node_id))
    if not same_key(priv.public_key(), pub):
        raise KeyMaterialError(
            f"Public key file for {node_id} does not match the private key"
        )
    return NodeKeypair(private_key=priv, public_key=pub)
