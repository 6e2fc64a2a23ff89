"""
Fact Hash Generator

Deterministic, stable hashing for immutable fact snapshots.
The same structure always produces the same digest, whatever the order in
which its mapping keys were inserted.

Canonical form:
- mappings: keys sorted lexicographically at every level
- sequences: original order (order is meaningful for arrays)
- primitives: JSON text (strings escaped, floats keep their repr)
- datetimes/dates: ISO-8601 strings, Enum members: their value,
  Decimal: its string form, dataclasses / pydantic models: their field dicts
"""
import hashlib
import json
import math
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


def canonicalize(obj: Any) -> str:
    """Serialize `obj` to its canonical string form."""
    if obj is None or isinstance(obj, (bool, int, str)):
        return json.dumps(obj, ensure_ascii=False)

    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise TypeError("NaN and Infinity have no canonical form")
        return json.dumps(obj)

    if isinstance(obj, Enum):
        return canonicalize(obj.value)

    if isinstance(obj, (datetime, date)):
        return json.dumps(obj.isoformat())

    if isinstance(obj, Decimal):
        return json.dumps(str(obj))

    if isinstance(obj, dict):
        for key in obj:
            if not isinstance(key, str):
                raise TypeError(f"Mapping keys must be strings, got {type(key).__name__}")
        parts = [
            json.dumps(key, ensure_ascii=False) + ":" + canonicalize(obj[key])
            for key in sorted(obj)
        ]
        return "{" + ",".join(parts) + "}"

    if isinstance(obj, (list, tuple)):
        return "[" + ",".join(canonicalize(item) for item in obj) + "]"

    if is_dataclass(obj) and not isinstance(obj, type):
        return canonicalize(asdict(obj))

    if hasattr(obj, "model_dump"):
        return canonicalize(obj.model_dump(mode="json"))

    raise TypeError(f"Cannot canonicalize value of type {type(obj).__name__}")


def compute_fact_hash(payload: Any) -> str:
    """
    Compute the SHA-256 hex digest of a fact payload.

    Example:
        compute_fact_hash({
            "loanId": "loan-123",
            "readinessScore": 72,
            "readinessBand": "AMBER",
            "blockingIssues": [],
            "factVersion": 1,
        })
    """
    canonical = canonicalize(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compute_explanation_key_hash(
    fact_hash: str,
    audience: str,
    verbosity: str,
    explain_version: int = 1,
    provider: str = "demo",
) -> str:
    """Digest of an explanation cache key, used to correlate audit and log lines."""
    return compute_fact_hash({
        "factHash": fact_hash,
        "audience": audience,
        "verbosity": verbosity,
        "explainVersion": explain_version,
        "provider": provider,
    })
