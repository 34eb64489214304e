"""MYR Exchange v0.1.0

Signed exchange of Methodological Yield Reports (MYRs) between independent
nodes.

Architecture:
    myr/
    ├── __init__.py       # Package entry, version, public API
    ├── core.py           # Primitives: canonical JSON, sha256, JSON/YAML, timestamps
    ├── errors.py         # Exception taxonomy, reason codes, exit codes
    ├── observability.py  # Structured logging
    ├── config.py         # Node configuration (myr.yaml + MYR_* environment)
    ├── keys.py           # Ed25519 key files, encodings, fingerprints
    ├── schema.py         # JSON Schema for envelopes and payloads
    ├── models.py         # Record / envelope dataclasses
    ├── signing.py        # Record -> signed envelope
    ├── verify.py         # Envelope verification with reason codes
    ├── db.py             # SQLite connection + versioned migrations
    ├── ids.py            # Node-qualified record ids, legacy id migration
    ├── store.py          # Record store
    ├── peers.py          # Peer key bindings (trust on first use)
    ├── identity.py       # Node identity card, import preflight guard
    ├── importer.py       # Import pipeline
    ├── exporter.py       # Export pipeline
    ├── drafting.py       # Detached best-effort drafting tasks
    └── cli.py            # Command-line interface

Nodes exchange JSON files out-of-band; there is no network transport.
"""

__version__ = "0.1.0"

from myr.core import (
    canonicalize,
    canonical_json_bytes,
    sha256_bytes,
    load_json,
    load_yaml,
)

from myr.errors import (
    MyrError,
    ConfigError,
    KeyMaterialError,
    StoreError,
    SecurityAbort,
    SelfOriginEcho,
    LabelCollision,
    KeyBindingMismatch,
    Reason,
)

__all__ = [
    "__version__",
    "canonicalize",
    "canonical_json_bytes",
    "sha256_bytes",
    "load_json",
    "load_yaml",
    "MyrError",
    "ConfigError",
    "KeyMaterialError",
    "StoreError",
    "SecurityAbort",
    "SelfOriginEcho",
    "LabelCollision",
    "KeyBindingMismatch",
    "Reason",
]
