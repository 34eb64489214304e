import os
import pathlib

import pytest

from myr.errors import KeyMaterialError
from myr.keys import (
    fingerprint,
    generate_keypair,
    load_keypair,
    load_public_key_file,
    private_key_path,
    public_key_from_b64,
    public_key_from_pem,
    public_key_path,
    public_key_to_pem,
    same_key,
    write_keypair,
)


def test_keypair_files_round_trip(tmp_path: pathlib.Path) -> None:
    kp = generate_keypair()
    priv, pub = write_keypair(tmp_path / "keys", "alice", kp)

    assert priv == private_key_path(tmp_path / "keys", "alice")
    assert pub.name == "alice.public.pem"
    assert "BEGIN PRIVATE KEY" in priv.read_text()
    assert "BEGIN PUBLIC KEY" in pub.read_text()
    if os.name == "posix":
        assert priv.stat().st_mode & 0o777 == 0o600

    loaded = load_keypair(tmp_path / "keys", "alice")
    assert same_key(loaded.public_key, kp.public_key)


def test_write_keypair_refuses_to_overwrite(tmp_path: pathlib.Path) -> None:
    write_keypair(tmp_path, "alice", generate_keypair())
    with pytest.raises(KeyMaterialError, match="already exists"):
        write_keypair(tmp_path, "alice", generate_keypair())
    write_keypair(tmp_path, "alice", generate_keypair(), overwrite=True)


def test_load_keypair_detects_mismatched_halves(tmp_path: pathlib.Path) -> None:
    write_keypair(tmp_path, "alice", generate_keypair())
    other = generate_keypair()
    public_key_path(tmp_path, "alice").write_text(public_key_to_pem(other.public_key))
    with pytest.raises(KeyMaterialError, match="does not match"):
        load_keypair(tmp_path, "alice")


def test_missing_key_files_raise(tmp_path: pathlib.Path) -> None:
    with pytest.raises(KeyMaterialError, match="keygen"):
        load_keypair(tmp_path, "nobody")
    with pytest.raises(KeyMaterialError):
        load_public_key_file(tmp_path / "nobody.public.pem")


def test_envelope_encoding_matches_pem_key() -> None:
    kp = generate_keypair()
    from_b64 = public_key_from_b64(kp.public_b64)
    from_pem = public_key_from_pem(public_key_to_pem(kp.public_key))
    assert same_key(from_b64, from_pem)
    assert not same_key(from_b64, generate_keypair().public_key)


def test_invalid_encodings_raise_key_material_error() -> None:
    with pytest.raises(KeyMaterialError):
        public_key_from_b64("!!not base64!!")
    with pytest.raises(KeyMaterialError):
        public_key_from_b64("AAAA")
    with pytest.raises(KeyMaterialError):
        public_key_from_pem("-----BEGIN PUBLIC KEY-----\nxyz\n-----END PUBLIC KEY-----\n")


def test_fingerprint_format() -> None:
    kp = generate_keypair()
    fp = fingerprint(kp.public_key)
    assert fp.startswith("SHA256:")
    assert fp.endswith("…")
    assert len(fp) == len("SHA256:") + 16 + 1
    assert fp == kp.fingerprint
