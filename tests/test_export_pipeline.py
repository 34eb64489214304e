import json
from datetime import date, datetime, timezone

from myr.exporter import export_filename, export_records, select_for_export
from myr.importer import import_artifacts
from myr.signing import sign_record
from myr.verify import verify_envelope


NOW = datetime(2025, 1, 1, 12, 30, 5, tzinfo=timezone.utc)


def _export(node, records, out_dir):
    return export_records(node.store, records, node.keypair, node.identity, out_dir, now=NOW)


def test_export_file_name_and_content(alice, tmp_path) -> None:
    a = alice.rated(4)
    b = alice.rated(5)
    result = _export(alice, select_for_export(alice.store), tmp_path / "exports")

    assert result.path == tmp_path / "exports" / "20250101-123005-alice.myr.json"
    assert result.record_ids == [a.id, b.id]
    assert result.newly_signed == [a.id, b.id]

    envelopes = json.loads(result.path.read_text(encoding="utf-8"))
    assert [e["payload"]["id"] for e in envelopes] == [a.id, b.id]
    for env in envelopes:
        assert verify_envelope(env, alice.keypair.public_key).ok
    # human readable on disk
    assert result.path.read_text(encoding="utf-8").startswith("[\n  {")


def test_reexport_reuses_cached_envelope_verbatim(alice, tmp_path, monkeypatch) -> None:
    record = alice.rated(4)
    monkeypatch.setenv("SOURCE_DATE_EPOCH", "1735732800")
    first = _export(alice, [record], tmp_path / "one")

    monkeypatch.setenv("SOURCE_DATE_EPOCH", "1767268800")
    again = _export(alice, [alice.store.require(record.id)], tmp_path / "two")

    assert again.newly_signed == []
    assert json.loads(first.path.read_text()) == json.loads(again.path.read_text())


def test_selection_by_rating_and_since(alice, monkeypatch) -> None:
    monkeypatch.setenv("SOURCE_DATE_EPOCH", "1704067200")  # 2024-01-01
    old = alice.rated(5)
    monkeypatch.setenv("SOURCE_DATE_EPOCH", "1735732800")  # 2025-01-01
    low = alice.rated(2)
    new = alice.rated(3)

    assert [r.id for r in select_for_export(alice.store)] == [old.id, new.id]
    assert [r.id for r in select_for_export(alice.store, min_rating=1)] == [old.id, low.id, new.id]
    assert [r.id for r in select_for_export(alice.store, since=date(2024, 6, 1))] == [new.id]
    assert [r.id for r in select_for_export(alice.store, ids=[low.id])] == [low.id]


def test_imported_records_are_never_exported(alice, bob, tmp_path) -> None:
    env = sign_record(alice.store, alice.rated(5), alice.keypair, alice.identity)
    import_artifacts(bob.store, bob.peers, bob.identity, [env], peer_key=alice.keypair.public_key)
    own = bob.rated(4)

    assert [r.id for r in select_for_export(bob.store, min_rating=1)] == [own.id]
    assert [r.id for r in select_for_export(bob.store, ids=[env["payload"]["id"], own.id])] == [own.id]

    # even when handed an imported record directly
    imported = bob.store.require(env["payload"]["id"])
    result = _export(bob, [imported, own], tmp_path)
    assert result.record_ids == [own.id]


def test_empty_selection_writes_nothing(alice, tmp_path) -> None:
    alice.draft()
    result = _export(alice, select_for_export(alice.store), tmp_path / "exports")
    assert result.path is None
    assert result.count == 0
    assert not (tmp_path / "exports").exists()


def test_export_filename() -> None:
    assert export_filename("n1", NOW) == "20250101-123005-n1.myr.json"
