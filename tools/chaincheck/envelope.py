"""Response envelope handling.

Witness network responses arrive either bare or wrapped one level deep as
``{"data": {...}}``. A created-but-not-finished query additionally carries
a derived handle (``queryHash`` or ``hash``) that the caller polls with.
Unwrapping happens in exactly one place and exactly once.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

HANDLE_KEYS = ("queryHash", "hash")


def is_empty_body(body: Any) -> bool:
    """True for bodies that count as "no answer": None, blank text, {} or []."""
    if body is None:
        return True
    if isinstance(body, str):
        return not body.strip()
    if isinstance(body, (dict, list, tuple)):
        return len(body) == 0
    return False


@dataclass(frozen=True)
class ResponseEnvelope:
    """A response body after its single unwrap step."""
    value: Any
    handle: Optional[str] = None
    wrapped: bool = False

    @classmethod
    def unwrap(cls, body: Any) -> "ResponseEnvelope":
        wrapped = False
        value = body
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            value = body["data"]
            wrapped = True

        handle = None
        if isinstance(value, dict):
            for key in HANDLE_KEYS:
                candidate = value.get(key)
                if isinstance(candidate, str) and candidate.strip():
                    handle = candidate.strip()
                    break

        return cls(value=value, handle=handle, wrapped=wrapped)

    @property
    def is_empty(self) -> bool:
        return is_empty_body(self.value)
