"""
Content store access.

Off-chain copies of anchored payloads live in a content-addressed store
(the archivist). Lookups go by payload hash; deployments expose the lookup
under several equivalent paths, so the HTTP store runs them through an
``EndpointCascade``.

A lookup answers either a bare payload, a list of payloads, or a
``{"data": ...}`` wrapper around either. ``extract_payload`` turns all of
them into the single payload that was asked for.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from tools.chaincheck.hashing import hashes_equal, normalize_hash
from tools.chaincheck.observability import ChainCheckLayer, get_logger
from tools.chaincheck.resilience import Deadline, EndpointCascade, EndpointRequest, RequestTransport

logger = get_logger("content_store", ChainCheckLayer.CONTENT)


@runtime_checkable
class ContentStore(Protocol):
    """Read-only payload lookup by content hash."""

    def get_payload_by_hash(self, payload_hash: str, deadline: Optional[Deadline] = None) -> Optional[Dict[str, Any]]:
        ...


def extract_payload(
    body: Any,
    payload_hash: str,
    schema: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    Pick the requested payload out of a store response.

    Preference order inside a list: an item whose ``_hash`` equals the
    requested hash, then the first item with the wanted ``schema``, then
    the first item. A dict that names a ``schema`` is a payload, even when
    it has a ``data`` field of its own.
    """
    value = body
    if isinstance(value, dict) and "schema" not in value and "data" in value:
        value = value["data"]

    if isinstance(value, dict):
        return value if value else None
    if not isinstance(value, list):
        return None

    items = [item for item in value if isinstance(item, dict)]
    # A tuple response is [boundWitness, payloads]; flatten one level.
    for item in value:
        if isinstance(item, list):
            items.extend(p for p in item if isinstance(p, dict))

    for item in items:
        if hashes_equal(item.get("_hash"), payload_hash):
            return item
    if schema is not None:
        for item in items:
            if item.get("schema") == schema:
                return item
    return items[0] if items else None


class HttpContentStore:
    """
    Content store over HTTP.

    Tries each configured path template in order; ``disabled`` makes every
    lookup answer None without touching the network.
    """

    def __init__(
        self,
        transport: RequestTransport,
        payload_paths: Sequence[str],
        timeout_seconds: float = 10.0,
        schema: Optional[str] = None,
        disabled: bool = False,
    ):
        self.cascade = EndpointCascade(transport, name="content_store.lookup")
        self.payload_paths = list(payload_paths)
        self.timeout_seconds = timeout_seconds
        self.schema = schema
        self.disabled = disabled

    def candidates(self, payload_hash: str) -> List[EndpointRequest]:
        return [
            EndpointRequest(
                method="GET",
                url=path.format(hash=payload_hash),
                timeout=self.timeout_seconds,
            )
            for path in self.payload_paths
        ]

    def get_payload_by_hash(self, payload_hash: str, deadline: Optional[Deadline] = None) -> Optional[Dict[str, Any]]:
        if self.disabled:
            logger.debug("Content store disabled", payload_hash=payload_hash)
            return None

        outcome = self.cascade.run(
            self.candidates(payload_hash),
            deadline=deadline,
            accept=lambda body: extract_payload(body, payload_hash, self.schema) is not None,
        )
        if outcome.exhausted:
            logger.info("Payload not available", payload_hash=payload_hash)
            return None
        return extract_payload(outcome.value, payload_hash, self.schema)


class InMemoryContentStore:
    """Dictionary-backed content store keyed by normalized payload hash."""

    def __init__(self, payloads: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._payloads: Dict[str, Dict[str, Any]] = {}
        for key, payload in (payloads or {}).items():
            self.put(key, payload)

    def put(self, payload_hash: str, payload: Mapping[str, Any]) -> None:
        self._payloads[normalize_hash(payload_hash)] = dict(payload)

    def get_payload_by_hash(self, payload_hash: str, deadline: Optional[Deadline] = None) -> Optional[Dict[str, Any]]:
        payload = self._payloads.get(normalize_hash(payload_hash))
        return dict(payload) if payload is not None else None

