import logging
import pathlib
import sys
from dataclasses import dataclass
from typing import Callable, Dict

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import myr`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from myr.identity import NodeIdentity, generate_node_uuid  # noqa: E402
from myr.keys import NodeKeypair, generate_keypair, write_keypair  # noqa: E402
from myr.models import RecordDraft  # noqa: E402
from myr.peers import PeerTrustStore  # noqa: E402
from myr.store import RecordStore  # noqa: E402


_MYR_ENV = (
    "MYR_CONFIG", "MYR_NODE_ID", "MYR_NODE_NAME", "MYR_DB_PATH", "MYR_KEYS_PATH",
    "MYR_EXPORT_PATH", "MYR_IMPORT_PATH", "MYR_LOG_LEVEL", "MYR_LOG_FORMAT",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> None:
    """No test sees the developer's MYR_* settings or ./myr.yaml."""
    for name in _MYR_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture(autouse=True)
def _reset_myr_logging():
    """Undo `configure_logging` calls made by CLI tests."""
    yield
    logger = logging.getLogger("myr")
    for h in list(logger.handlers):
        if getattr(h, "_myr_handler", False):
            logger.removeHandler(h)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def fixed_time(monkeypatch: pytest.MonkeyPatch) -> int:
    """Pin signing timestamps (2025-01-01T12:00:00Z)."""
    epoch = 1735732800
    monkeypatch.setenv("SOURCE_DATE_EPOCH", str(epoch))
    return epoch


def sample_draft(**overrides) -> RecordDraft:
    fields = dict(
        intent="Reduce flaky retries in the ingest worker",
        yield_type="technique",
        question_answered="Does jittered backoff stop thundering-herd retries?",
        evidence="Retry storms dropped from 14/day to 0 over a week",
        what_changes_next="Apply jittered backoff to every queue consumer",
        domain_tags=["ops", "queues"],
        confidence=0.8,
    )
    fields.update(overrides)
    return RecordDraft(**fields)


@dataclass
class Node:
    """One simulated node: identity, keys and an open store."""
    identity: NodeIdentity
    keypair: NodeKeypair
    store: RecordStore
    root: pathlib.Path

    @property
    def node_id(self) -> str:
        return self.identity.node_id

    @property
    def peers(self) -> PeerTrustStore:
        return PeerTrustStore(self.store.conn)

    def draft(self, **overrides):
        return self.store.create_record(sample_draft(**overrides))

    def rated(self, rating: int = 4, **overrides):
        record = self.draft(**overrides)
        return self.store.rate_record(record.id, rating, "checked")


@pytest.fixture
def make_node(tmp_path: pathlib.Path) -> Callable[..., Node]:
    """Factory: ``make_node("alice")`` -> Node with its own directory, keys and store."""
    opened: Dict[str, Node] = {}

    def factory(node_id: str, node_uuid: str = "", with_uuid: bool = True) -> Node:
        root = tmp_path / "nodes" / f"{node_id}-{len(opened)}"
        keys_dir = root / "keys"
        keypair = generate_keypair()
        write_keypair(keys_dir, node_id, keypair)
        identity = NodeIdentity(
            node_id=node_id,
            node_uuid=(node_uuid or generate_node_uuid()) if with_uuid else None,
            keys_dir=keys_dir,
        )
        store = RecordStore.open(root / "db" / "myr.db", node_id)
        node = Node(identity=identity, keypair=keypair, store=store, root=root)
        opened[str(root)] = node
        return node

    yield factory

    for node in opened.values():
        node.store.close()


@pytest.fixture
def alice(make_node) -> Node:
    return make_node("alice")


@pytest.fixture
def bob(make_node) -> Node:
    return make_node("bob")
