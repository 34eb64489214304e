"""JSON Schemas for the MYR wire format.

The envelope and its payload are validated at the deserialization boundary
with cached Draft 2020-12 validators; error messages carry the JSON path of
the offending member so rejection reasons are actionable.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List

from jsonschema import Draft202012Validator

ARTIFACT_VERSION = "1"
ARTIFACT_TYPE = "myr"
SIGNATURE_ALGORITHM = "Ed25519"

YIELD_TYPES = ("technique", "insight", "falsification", "pattern")

_NULLABLE_STRING = {"type": ["string", "null"]}

SIGNATURE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "$id": "https://schemas.myr.dev/signature.schema.json",
    "type": "object",
    "required": ["algorithm", "node_id", "public_key", "signed_at", "value"],
    "properties": {
        "algorithm": {"const": SIGNATURE_ALGORITHM},
        "node_id": {"type": "string", "minLength": 1},
        "node_uuid": _NULLABLE_STRING,
        "public_key": {"type": "string", "minLength": 1},
        "signed_at": {"type": "string", "minLength": 1},
        "value": {"type": "string", "minLength": 1},
    },
}

PAYLOAD_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "$id": "https://schemas.myr.dev/payload.schema.json",
    "type": "object",
    "required": ["id", "timestamp", "node_id", "cycle", "yield"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "timestamp": {"type": "string"},
        "agent_id": _NULLABLE_STRING,
        "node_id": {"type": "string", "minLength": 1},
        "session_ref": _NULLABLE_STRING,
        "cycle": {
            "type": "object",
            "required": ["intent"],
            "properties": {
                "intent": {"type": "string", "minLength": 1},
                "domain_tags": {"type": "array", "items": {"type": "string"}},
                "context": _NULLABLE_STRING,
            },
        },
        "yield": {
            "type": "object",
            "required": ["type", "question_answered", "evidence", "what_changes_next"],
            "properties": {
                "type": {"enum": list(YIELD_TYPES)},
                "question_answered": {"type": "string"},
                "evidence": {"type": "string"},
                "what_changes_next": {"type": "string"},
                "what_was_falsified": _NULLABLE_STRING,
                "transferable_to": {"type": "array", "items": {"type": "string"}},
                "confidence": {"type": ["number", "null"], "minimum": 0, "maximum": 1},
            },
        },
        "verification": {
            "type": ["object", "null"],
            "properties": {
                "operator_rating": {"type": ["integer", "null"], "minimum": 1, "maximum": 5},
                "jordan_rating": {"type": ["integer", "null"], "minimum": 1, "maximum": 5},
                "operator_notes": _NULLABLE_STRING,
                "jordan_notes": _NULLABLE_STRING,
                "verified_at": _NULLABLE_STRING,
            },
        },
    },
}


@lru_cache(maxsize=None)
def _validator(name: str) -> Draft202012Validator:
    schema = {"signature": SIGNATURE_SCHEMA, "payload": PAYLOAD_SCHEMA}[name]
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def validate_against_schema(obj: Any, name: str) -> List[str]:
    """Validate ``obj`` against a named schema (``signature`` or ``payload``).

    Returns:
        List of validation error messages (empty if valid)
    """
    validator = _validator(name)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(obj), key=lambda e: e.json_path)
    ]
