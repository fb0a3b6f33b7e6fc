"""Canonical payload hashing for anchored records.

A payload's content hash is the SHA-256 of its canonical JSON form:

- top-level metadata keys (anything starting with ``_``, e.g. ``_hash``,
  ``_dataHash``, ``_timestamp``, ``_sequence``) are dropped,
- object keys are sorted recursively,
- output is compact (no whitespace) UTF-8 without ASCII escaping,
- integral floats serialize as integers and other floats use the shortest
  round-trip digits in the producing SDK's notation (``0.00001``, ``1e-7``,
  never ``1e-05``).

The same procedure must produce the same digest for the same logical
content wherever it runs, so it never depends on dict ordering or locale.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from typing import Any, Dict, Mapping

SHA256_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
ZERO_HASH_RE = re.compile(r"^(0x)?0+$")

METADATA_PREFIX = "_"


def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def normalize_hash(value: str) -> str:
    """Lower-case a hex digest and drop any ``0x`` prefix, for comparison only."""
    value = value.strip().lower()
    return value[2:] if value.startswith("0x") else value


def hashes_equal(a: Any, b: Any) -> bool:
    if not isinstance(a, str) or not isinstance(b, str) or not a or not b:
        return False
    return normalize_hash(a) == normalize_hash(b)


def is_zero_hash(value: Any) -> bool:
    """True for the all-zero placeholder that marks a chain origin."""
    return isinstance(value, str) and bool(ZERO_HASH_RE.match(value.strip()))


def _coerce_json_types(obj: Any) -> Any:
    """Coerce Python objects into the JSON subset used for hashing.

    - Integral floats become ints (``2.0`` hashes like ``2``).
    - NaN and infinities are rejected; they have no JSON form.
    - Tuples become lists, keys become strings.
    """
    if obj is None or isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError("NaN and infinite numbers cannot be canonicalized")
        return int(obj) if obj.is_integer() else obj
    if isinstance(obj, (list, tuple)):
        return [_coerce_json_types(x) for x in obj]
    if isinstance(obj, Mapping):
        return {str(k): _coerce_json_types(v) for k, v in obj.items()}
    raise TypeError(f"Unsupported type in payload: {type(obj).__name__}")


def strip_metadata(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``payload`` without its volatile metadata keys."""
    return {k: v for k, v in payload.items() if not str(k).startswith(METADATA_PREFIX)}


def _format_float(x: float) -> str:
    """Shortest round-trip form, switching to exponent notation below 1e-6."""
    mantissa, _, exponent = repr(abs(x)).partition("e")
    whole, _, fraction = mantissa.partition(".")
    combined = whole + fraction
    digits = combined.lstrip("0")
    point = len(whole) + int(exponent or 0) - (len(combined) - len(digits))
    digits = digits.rstrip("0")

    if len(digits) <= point <= 21:
        text = digits + "0" * (point - len(digits))
    elif 0 < point <= 21:
        text = f"{digits[:point]}.{digits[point:]}"
    elif -6 < point <= 0:
        text = "0." + "0" * -point + digits
    else:
        e = point - 1
        text = digits[0] + (f".{digits[1:]}" if len(digits) > 1 else "") + f"e{'+' if e > 0 else '-'}{abs(e)}"
    return "-" + text if x < 0 else text


def _encode(obj: Any) -> str:
    if isinstance(obj, float):
        return _format_float(obj)
    if isinstance(obj, list):
        return "[" + ",".join(_encode(x) for x in obj) + "]"
    if isinstance(obj, dict):
        return "{" + ",".join(f"{json.dumps(k, ensure_ascii=False)}:{_encode(obj[k])}" for k in sorted(obj)) + "}"
    return json.dumps(obj, ensure_ascii=False)


def canonicalize(obj: Any) -> bytes:
    return _encode(_coerce_json_types(obj)).encode("utf-8")


def payload_hash(payload: Mapping[str, Any]) -> str:
    """Content hash of a payload, excluding its metadata keys."""
    return sha256_bytes(canonicalize(strip_metadata(payload)))


def content_equal(a: Mapping[str, Any], b: Mapping[str, Any]) -> bool:
    """Compare two payloads by content, ignoring metadata keys."""
    return canonicalize(strip_metadata(a)) == canonicalize(strip_metadata(b))
