from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping, Optional


def _normalize(obj: Any) -> Any:
    # Sets have no stable iteration order across processes
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=lambda v: json.dumps(v, sort_keys=True, default=_normalize))
    raise TypeError(f"Object of type {type(obj).__name__} cannot be fingerprinted")


def _canonical_json(template: str, parameters: Optional[Mapping[str, Any]]) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    payload = {"template": template, "parameters": dict(parameters or {})}
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=_normalize).encode("utf-8")


def compute_hash(template: str, parameters: Optional[Mapping[str, Any]] = None) -> str:
    """Content fingerprint of a template and its parameters (hex SHA-256).

    Parameter order does not affect the result. Compared against a target's or
    binding's `last_committed_hash` to decide whether redeployment is needed.
    """
    return hashlib.sha256(_canonical_json(template, parameters)).hexdigest()


def has_changed(
    previous_hash: Optional[str],
    template: str,
    parameters: Optional[Mapping[str, Any]] = None,
) -> bool:
    if not previous_hash:
        return True
    return previous_hash != compute_hash(template, parameters)
