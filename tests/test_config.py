import pathlib

import pytest
import yaml

from myr.config import MyrConfig, load_config, persist_node_uuid
from myr.errors import ConfigError
from myr.identity import NodeIdentity


def _write(path: pathlib.Path, data) -> pathlib.Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_defaults_without_file(tmp_path) -> None:
    cfg = load_config()
    assert cfg.source_path is None
    assert cfg.get("node_id") is None
    assert cfg.get("db_path") == "./db/myr.db"
    assert cfg.get("log_format") == "text"


def test_node_id_is_required() -> None:
    cfg = MyrConfig()
    errors = cfg.validate()
    assert any(e.startswith("node_id: not configured") for e in errors)
    with pytest.raises(ConfigError, match="node_id"):
        cfg.require_valid()
    with pytest.raises(ConfigError):
        NodeIdentity.from_config(cfg)


def test_yaml_file_and_relative_paths(tmp_path) -> None:
    conf_dir = tmp_path / "node"
    conf_dir.mkdir()
    path = _write(conf_dir / "myr.yaml", {"node_id": "alice", "keys_path": "./k", "unknown_key": 1})
    cfg = load_config(path)
    assert cfg.get("node_id") == "alice"
    assert cfg.path("keys_path") == (conf_dir / "k").resolve()
    assert cfg.require_valid() is cfg


def test_implicit_myr_yaml_in_cwd(tmp_path) -> None:
    _write(tmp_path / "myr.yaml", {"node_id": "cwd-node"})
    assert load_config().get("node_id") == "cwd-node"


def test_environment_overrides_file(tmp_path, monkeypatch) -> None:
    path = _write(tmp_path / "myr.yaml", {"node_id": "alice", "db_path": "a.db"})
    monkeypatch.setenv("MYR_NODE_ID", "alice-tmp")
    monkeypatch.setenv("MYR_DB_PATH", str(tmp_path / "other.db"))
    cfg = load_config(path)
    assert cfg.get("node_id") == "alice-tmp"
    assert cfg.path("db_path") == (tmp_path / "other.db").resolve()


def test_myr_config_env_selects_file(tmp_path, monkeypatch) -> None:
    path = _write(tmp_path / "elsewhere.yaml", {"node_id": "from-env-file"})
    monkeypatch.setenv("MYR_CONFIG", str(path))
    assert load_config().get("node_id") == "from-env-file"


@pytest.mark.parametrize(
    "data",
    [
        {"node_id": "has space"},
        {"node_id": "-leading-dash"},
        {"node_id": "alice", "log_level": "loud"},
        {"node_id": "alice", "node_uuid": "not-a-uuid"},
    ],
)
def test_invalid_values_are_rejected(tmp_path, data) -> None:
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path / "myr.yaml", data))


def test_invalid_env_value_reported_by_validate(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("MYR_NODE_ID", "bad label!")
    errors = load_config().validate()
    assert any(e.startswith("node_id: invalid value") for e in errors)


def test_missing_or_malformed_file(tmp_path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.yaml")
    bad = tmp_path / "bad.yaml"
    bad.write_text("node_id: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError, match="Malformed"):
        load_config(bad)
    listing = tmp_path / "list.yaml"
    listing.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(listing)


def test_persist_node_uuid_is_write_once(tmp_path) -> None:
    path = _write(tmp_path / "myr.yaml", {"node_id": "alice", "node_name": "Alice"})
    cfg = load_config(path)
    uuid = "0f8fad5b-d9cb-469f-a165-70867728950e"
    persist_node_uuid(cfg, uuid)

    on_disk = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert on_disk == {"node_id": "alice", "node_name": "Alice", "node_uuid": uuid}
    assert load_config(path).get("node_uuid") == uuid

    with pytest.raises(ConfigError, match="immutable"):
        persist_node_uuid(cfg, "7c9e6679-7425-40de-944b-e07fc1f90ae7")
