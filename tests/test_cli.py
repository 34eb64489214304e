"""End-to-end runs of the ``myr`` command through ``main(argv)``."""

import json
import pathlib
import shutil

import pytest
import yaml

from myr.cli import main
from myr.errors import (
    EXIT_FAILURE,
    EXIT_KEY_MISMATCH,
    EXIT_LABEL_COLLISION,
    EXIT_OK,
    EXIT_SELF_ORIGIN,
    EXIT_USAGE,
)
from myr.store import RecordStore

from conftest import sample_draft


def _node(tmp_path: pathlib.Path, name: str, node_id: str = "") -> pathlib.Path:
    root = tmp_path / name
    root.mkdir()
    conf = root / "myr.yaml"
    conf.write_text(
        yaml.safe_dump({
            "node_id": node_id or name,
            "db_path": "./db/myr.db",
            "keys_path": "./keys",
            "export_path": "./exports",
        }),
        encoding="utf-8",
    )
    assert main(["--config", str(conf), "keygen"]) == EXIT_OK
    return conf


def _run(conf: pathlib.Path, *argv: str) -> int:
    return main(["--config", str(conf), *argv])


def _add_records(conf: pathlib.Path, n: int = 1, rating: int = 4):
    node_id = yaml.safe_load(conf.read_text())["node_id"]
    ids = []
    with RecordStore.open(conf.parent / "db" / "myr.db", node_id) as store:
        for _ in range(n):
            ids.append(store.create_record(sample_draft()).id)
    for rid in ids:
        assert _run(conf, "rate", "--id", rid, "--rating", str(rating)) == EXIT_OK
    return ids


def _export(conf: pathlib.Path) -> pathlib.Path:
    out = conf.parent / "exports"
    if out.exists():
        shutil.rmtree(out)
    assert _run(conf, "export", "--all") == EXIT_OK
    files = sorted(out.glob("*.myr.json"))
    assert len(files) == 1
    return files[0]


def _share_key(src: pathlib.Path, dst: pathlib.Path) -> None:
    for pem in (src.parent / "keys").glob("*.public.pem"):
        shutil.copy(pem, dst.parent / "keys" / pem.name)


def _count(conf: pathlib.Path) -> int:
    node_id = yaml.safe_load(conf.read_text())["node_id"]
    with RecordStore.open(conf.parent / "db" / "myr.db", node_id) as store:
        return store.count()


def test_keygen_writes_keys_and_uuid_once(tmp_path, capsys) -> None:
    conf = _node(tmp_path, "alice")
    assert (conf.parent / "keys" / "alice.private.pem").exists()
    assert (conf.parent / "keys" / "alice.public.pem").exists()
    node_uuid = yaml.safe_load(conf.read_text())["node_uuid"]
    assert node_uuid

    assert _run(conf, "keygen") == EXIT_FAILURE
    assert "already exists" in capsys.readouterr().err

    assert _run(conf, "keygen", "--force") == EXIT_OK
    assert yaml.safe_load(conf.read_text())["node_uuid"] == node_uuid


def test_missing_node_id_fails_fast(tmp_path, capsys) -> None:
    conf = tmp_path / "myr.yaml"
    conf.write_text("db_path: ./db/myr.db\n", encoding="utf-8")
    assert _run(conf, "identity") == EXIT_FAILURE
    assert "node_id" in capsys.readouterr().err
    assert not (tmp_path / "db").exists()


def test_usage_errors_exit_2(tmp_path) -> None:
    conf = _node(tmp_path, "alice")
    with pytest.raises(SystemExit) as ei:
        _run(conf, "rate", "--id", "x", "--rating", "9")
    assert ei.value.code == EXIT_USAGE
    with pytest.raises(SystemExit) as ei:
        _run(conf, "export", "--since", "yesterday")
    assert ei.value.code == EXIT_USAGE
    with pytest.raises(SystemExit) as ei:
        _run(conf, "sign")
    assert ei.value.code == EXIT_USAGE


def test_identity_card(tmp_path, capsys) -> None:
    conf = _node(tmp_path, "alice")
    capsys.readouterr()
    assert _run(conf, "identity", "--json") == EXIT_OK
    card = json.loads(capsys.readouterr().out)
    assert card["node_id"] == "alice"
    assert card["key_fingerprint"].startswith("SHA256:")


def test_sign_single_record_to_file(tmp_path) -> None:
    conf = _node(tmp_path, "alice")
    (rid,) = _add_records(conf)
    out = tmp_path / "one.json"
    assert _run(conf, "sign", "--id", rid, "--out", str(out)) == EXIT_OK
    envelope = json.loads(out.read_text(encoding="utf-8"))
    assert envelope["payload"]["id"] == rid
    assert _run(conf, "sign", "--id", "alice-20990101-001") == EXIT_FAILURE


def test_sign_all(tmp_path, capsys) -> None:
    conf = _node(tmp_path, "alice")
    _add_records(conf, n=2)
    capsys.readouterr()
    assert _run(conf, "sign", "--all") == EXIT_OK
    assert "Signed 2 record(s)" in capsys.readouterr().out
    assert _run(conf, "sign", "--all") == EXIT_OK
    assert "Signed 0 record(s)" in capsys.readouterr().out


def test_exchange_between_two_nodes(tmp_path, capsys) -> None:
    alice = _node(tmp_path, "alice")
    bob = _node(tmp_path, "bob")
    _add_records(alice, n=2)
    export = _export(alice)
    _share_key(alice, bob)

    assert _run(bob, "import", "--file", str(export)) == EXIT_OK
    assert "Accepted: 2" in capsys.readouterr().out
    assert _count(bob) == 2

    assert _run(bob, "import", "--file", str(export), "--json") == EXIT_OK
    report = json.loads(capsys.readouterr().out)
    assert (report["accepted"], report["skipped"]) == (0, 2)
    assert _count(bob) == 2

    assert _run(bob, "peers", "list", "--json") == EXIT_OK
    peers = json.loads(capsys.readouterr().out)
    assert [p["node_id"] for p in peers] == ["alice"]
    assert peers[0]["myr_count"] == 2


def test_import_with_explicit_peer_key(tmp_path, capsys) -> None:
    alice = _node(tmp_path, "alice")
    bob = _node(tmp_path, "bob")
    _add_records(alice)
    export = _export(alice)
    key = alice.parent / "keys" / "alice.public.pem"
    assert _run(bob, "import", "--file", str(export), "--peer-key", str(key)) == EXIT_OK
    assert "Accepted: 1" in capsys.readouterr().out


def test_importing_own_export_is_self_origin(tmp_path, capsys) -> None:
    alice = _node(tmp_path, "alice")
    _add_records(alice)
    export = _export(alice)
    before = _count(alice)

    assert _run(alice, "import", "--file", str(export)) == EXIT_SELF_ORIGIN
    assert "ABORT" in capsys.readouterr().err
    assert _count(alice) == before


def test_label_collision_exit_code(tmp_path, capsys) -> None:
    alice = _node(tmp_path, "alice")
    other = _node(tmp_path, "other-alice", node_id="alice")
    _add_records(other)
    export = _export(other)

    assert _run(alice, "import", "--file", str(export)) == EXIT_LABEL_COLLISION
    err = capsys.readouterr().err
    assert "MYR_NODE_ID" in err
    assert _count(alice) == 0


def test_key_binding_mismatch_exit_code_and_rebind(tmp_path, capsys) -> None:
    alice = _node(tmp_path, "alice")
    impostor = _node(tmp_path, "impostor", node_id="alice")
    bob = _node(tmp_path, "bob")
    _add_records(alice)
    _share_key(alice, bob)
    assert _run(bob, "import", "--file", str(_export(alice))) == EXIT_OK

    # the impostor's second record has an id bob has not seen yet
    _add_records(impostor, n=2)
    forged = _export(impostor)
    capsys.readouterr()
    assert _run(bob, "import", "--file", str(forged)) == EXIT_KEY_MISMATCH
    captured = capsys.readouterr()
    assert "Skipped:  1" in captured.out
    assert "myr peers remove alice" in captured.err
    assert _count(bob) == 1

    assert _run(bob, "peers", "remove", "alice") == EXIT_OK
    assert _run(bob, "peers", "remove", "alice") == EXIT_FAILURE
    key = impostor.parent / "keys" / "alice.public.pem"
    assert _run(bob, "import", "--file", str(forged), "--peer-key", str(key)) == EXIT_OK
    assert _count(bob) == 2


def test_rate_refuses_imported_record(tmp_path, capsys) -> None:
    alice = _node(tmp_path, "alice")
    bob = _node(tmp_path, "bob")
    (rid,) = _add_records(alice)
    _share_key(alice, bob)
    assert _run(bob, "import", "--file", str(_export(alice))) == EXIT_OK
    assert _run(bob, "rate", "--id", rid, "--rating", "1") == EXIT_FAILURE
    assert "imported" in capsys.readouterr().err


def test_export_since_and_ids(tmp_path, capsys) -> None:
    alice = _node(tmp_path, "alice")
    ids = _add_records(alice, n=2)
    out_dir = tmp_path / "out"
    assert _run(alice, "export", "--ids", ids[1], "--out-dir", str(out_dir)) == EXIT_OK
    (path,) = out_dir.glob("*-alice.myr.json")
    assert [e["payload"]["id"] for e in json.loads(path.read_text())] == [ids[1]]

    capsys.readouterr()
    assert _run(alice, "export", "--since", "2999-01-01") == EXIT_OK
    assert "No records match" in capsys.readouterr().out


def test_unreadable_import_file(tmp_path, capsys) -> None:
    bob = _node(tmp_path, "bob")
    broken = tmp_path / "broken.myr.json"
    broken.write_text("[{", encoding="utf-8")
    assert _run(bob, "import", "--file", str(broken)) == EXIT_FAILURE
    assert _run(bob, "import", "--file", str(tmp_path / "absent.json")) == EXIT_FAILURE


def test_json_log_format(tmp_path, capsys) -> None:
    alice = _node(tmp_path, "alice")
    capsys.readouterr()
    assert main(["--config", str(alice), "--log-level", "info", "--log-format", "json", "sign", "--all"]) == EXIT_OK
    lines = [ln for ln in capsys.readouterr().err.splitlines() if ln.strip()]
    events = [json.loads(ln) for ln in lines]
    assert all(e["logger"].startswith("myr") for e in events)
    assert all(e["run_id"].startswith("run-") for e in events)


def test_bare_file_name_is_found_in_import_path(tmp_path, capsys) -> None:
    alice = _node(tmp_path, "alice")
    bob = _node(tmp_path, "bob")
    _add_records(alice)
    export = _export(alice)
    _share_key(alice, bob)
    inbox = bob.parent / "imports"
    inbox.mkdir()
    shutil.copy(export, inbox / export.name)

    assert _run(bob, "import", "--file", export.name) == EXIT_OK
    assert "Accepted: 1" in capsys.readouterr().out


@pytest.mark.parametrize("env_var, value", [
    ("MYR_LOG_LEVEL", "verbose"),
    ("MYR_LOG_FORMAT", "xml"),
])
def test_invalid_logging_settings_are_config_errors(tmp_path, capsys, monkeypatch, env_var, value) -> None:
    alice = _node(tmp_path, "alice")
    capsys.readouterr()
    monkeypatch.setenv(env_var, value)

    assert _run(alice, "identity") == EXIT_FAILURE
    assert "Invalid configuration" in capsys.readouterr().err


def test_logging_flags_take_over_from_invalid_environment(tmp_path, capsys, monkeypatch) -> None:
    alice = _node(tmp_path, "alice")
    monkeypatch.setenv("MYR_LOG_LEVEL", "verbose")
    assert _run(alice, "--log-level", "info", "identity") == EXIT_OK
