"""Core primitives for the MYR exchange stack.

This module provides the foundational utilities used throughout the stack:
- Canonical JSON serialization (the signing wire contract)
- Cryptographic hashing (SHA-256)
- YAML/JSON loading with consistent encoding
- Timestamp helpers

Design principles:
- Pure functions where possible
- No global mutable state
- Explicit error handling
"""

from __future__ import annotations

import hashlib
import json
import math
import os
import pathlib
from datetime import date, datetime, timezone
from typing import Any

import yaml


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Canonical bytes
# ---------------------------------------------------------------------------


def canonicalize(value: Any) -> Any:
    """Return a copy of ``value`` with object keys sorted at every depth.

    Lists keep their element order (objects nested inside lists are sorted
    too). Scalars and ``None`` pass through unchanged, so the function is
    idempotent and independent of the original key insertion order.
    """
    if isinstance(value, dict):
        return {str(k): canonicalize(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    return value


def es_number(value: float) -> str:
    """Format a finite number the way ECMAScript ``Number.prototype.toString`` does.

    Python's ``repr`` already yields the shortest round-tripping digits; only
    the placement of the decimal point and the exponent notation differ
    (``1e-07`` vs ``1e-7``, ``1e+16`` vs ``10000000000000000``).
    """
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    mantissa, _, exp = repr(abs(value)).partition("e")
    int_part, _, frac_part = mantissa.partition(".")
    digits = int_part + frac_part
    n = len(int_part) + (int(exp) if exp else 0)
    stripped = digits.lstrip("0")
    n -= len(digits) - len(stripped)
    digits = stripped.rstrip("0")
    k = len(digits)

    if k <= n <= 21:
        return sign + digits + "0" * (n - k)
    if 0 < n <= 21:
        return sign + digits[:n] + "." + digits[n:]
    if -6 < n <= 0:
        return sign + "0." + "0" * -n + digits
    e = n - 1
    exp_str = ("+" if e >= 0 else "-") + str(abs(e))
    if k == 1:
        return sign + digits + "e" + exp_str
    return sign + digits[0] + "." + digits[1:] + "e" + exp_str


def _encode(value: Any, path: str) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, int):
        return str(value) if abs(value) < 10 ** 21 else es_number(float(value))
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Non-finite number not allowed in canonical JSON at {path}")
        return es_number(value)
    if isinstance(value, dict):
        items = (
            f"{json.dumps(k, ensure_ascii=False)}:{_encode(v, f'{path}.{k}')}"
            for k, v in value.items()
        )
        return "{" + ",".join(items) + "}"
    if isinstance(value, list):
        return "[" + ",".join(_encode(v, f"{path}[{i}]") for i, v in enumerate(value)) + "]"
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable at {path}")


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to the canonical signable byte string.

    Properties:
    - Keys sorted lexicographically at every depth
    - No whitespace
    - UTF-8 encoded, non-ASCII kept literal
    - Numbers written as ECMAScript ``JSON.stringify`` writes them (``1.0``
      -> ``1``, ``1e-7`` -> ``1e-7``), NaN/Infinity rejected

    Signers and verifiers on every node MUST produce identical bytes for
    semantically identical payloads; this convention is part of the wire
    format.
    """
    return _encode(canonicalize(obj), "$").encode("utf-8")


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def _now() -> datetime:
    sde = os.environ.get("SOURCE_DATE_EPOCH")
    if sde is not None and str(sde).strip() != "":
        try:
            epoch = int(str(sde).strip(), 10)
        except ValueError as ex:
            raise ValueError("SOURCE_DATE_EPOCH must be an integer (seconds)") from ex
        return datetime.fromtimestamp(epoch, tz=timezone.utc)
    return datetime.now(timezone.utc)


def now_rfc3339() -> str:
    """RFC3339 timestamp (seconds, ``Z``) used for ``signed_at``.

    For reproducible runs set ``SOURCE_DATE_EPOCH`` (seconds since the Unix
    epoch). When unset, uses the current wall clock.
    """
    return _now().replace(microsecond=0).isoformat().replace("+00:00", "Z")


def now_iso8601() -> str:
    """Return current UTC time in ISO8601 format with milliseconds."""
    return _now().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_today() -> date:
    """Current UTC calendar date."""
    return _now().date()


def utc_now() -> datetime:
    return _now()


def parse_day(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` date argument."""
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    except ValueError as ex:
        raise ValueError(f"Expected a date like 2025-01-31, got {value!r}") from ex
