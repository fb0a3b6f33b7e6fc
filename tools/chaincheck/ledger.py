"""
Ledger read access.

The engine only ever reads the ledger. Records are bound witnesses: they
name the signing ``addresses``, an address-indexed ``previous_hashes``
back-link list, the ``payload_hashes``/``payload_schemas`` they commit to,
and the ``nbf``/``exp`` block window they are valid for.

Two readers implement the ``LedgerReader`` protocol:

- ``JsonRpcLedgerReader`` talks JSON-RPC 2.0 to a ledger viewer over httpx.
- ``InMemoryLedger`` holds records and blocks in dictionaries, for tests
  and offline tooling.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, runtime_checkable

import httpx
from jsonschema import Draft202012Validator

from tools.chaincheck.hashing import normalize_hash, payload_hash
from tools.chaincheck.observability import ChainCheckLayer, get_logger
from tools.chaincheck.resilience import Deadline, is_expired, remaining_or

logger = get_logger("ledger", ChainCheckLayer.LEDGER)

MAX_TRANSACTIONS_PER_BLOCK = 100


class LedgerReadError(Exception):
    """The ledger could not be read (transport failure or RPC error)."""

    def __init__(self, message: str, method: str = "", code: Optional[int] = None):
        self.method = method
        self.code = code
        super().__init__(message)


# =============================================================================
# RECORD MODEL
# =============================================================================

_HEX_OR_NULL = {"anyOf": [{"type": "string"}, {"type": "null"}]}

RECORD_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["addresses", "previous_hashes", "payload_hashes", "payload_schemas"],
    "properties": {
        "addresses": {"type": "array", "items": {"type": "string"}},
        "previous_hashes": {"type": "array", "items": _HEX_OR_NULL},
        "payload_hashes": {"type": "array", "items": {"type": "string"}},
        "payload_schemas": {"type": "array", "items": {"type": "string"}},
        "nbf": {"type": "integer", "minimum": 0},
        "exp": {"type": "integer", "minimum": 0},
        "block": {"type": "integer", "minimum": 0},
        "blockNumber": {"type": "integer", "minimum": 0},
        "$signatures": {"type": "array"},
    },
}

_record_validator = Draft202012Validator(RECORD_SCHEMA)


def record_errors(raw: Mapping[str, Any]) -> List[str]:
    """Structural problems with a raw ledger record, as readable strings."""
    errors = []
    for err in sorted(_record_validator.iter_errors(raw), key=lambda e: list(e.path)):
        where = "/".join(str(p) for p in err.path) or "<root>"
        errors.append(f"{where}: {err.message}")
    return errors


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.lower().startswith("0x") else int(value)
        except ValueError:
            return None
    return None


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


@dataclass
class LedgerRecord:
    """A ledger-anchored record (bound witness) and the payloads it carries."""
    hash: str
    raw: Dict[str, Any]
    payloads: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_rpc(cls, result: Any, requested_hash: str = "") -> Optional["LedgerRecord"]:
        """
        Build from a viewer result: ``[record, payloads]`` or a bare record.

        The record's own ``_hash``/``hash`` wins over the requested hash;
        when neither is present the content hash is computed.
        """
        payloads: List[Dict[str, Any]] = []
        raw: Any = result
        if isinstance(result, (list, tuple)):
            if not result:
                return None
            raw = result[0]
            if len(result) > 1 and isinstance(result[1], list):
                payloads = [p for p in result[1] if isinstance(p, dict)]
        if not isinstance(raw, dict) or not raw:
            return None

        record_hash = raw.get("_hash") or raw.get("hash") or requested_hash or payload_hash(raw)
        return cls(hash=str(record_hash), raw=dict(raw), payloads=payloads)

    @property
    def addresses(self) -> List[str]:
        return _str_list(self.raw.get("addresses"))

    @property
    def previous_hashes(self) -> List[Optional[str]]:
        value = self.raw.get("previous_hashes")
        if not isinstance(value, list):
            return []
        return [v if isinstance(v, str) else None for v in value]

    @property
    def payload_hashes(self) -> List[str]:
        return _str_list(self.raw.get("payload_hashes"))

    @property
    def payload_schemas(self) -> List[str]:
        return _str_list(self.raw.get("payload_schemas"))

    @property
    def signatures(self) -> List[Any]:
        value = self.raw.get("$signatures", self.raw.get("_signatures"))
        return list(value) if isinstance(value, list) else []

    @property
    def nbf(self) -> Optional[int]:
        return _int_or_none(self.raw.get("nbf"))

    @property
    def exp(self) -> Optional[int]:
        return _int_or_none(self.raw.get("exp"))

    @property
    def embedded_block(self) -> Optional[int]:
        """The ``block``/``blockNumber`` field, if the record carries one."""
        for key in ("block", "blockNumber"):
            value = _int_or_none(self.raw.get(key))
            if value is not None:
                return value
        return None

    @property
    def has_back_links(self) -> bool:
        return isinstance(self.raw.get("previous_hashes"), list) and isinstance(self.raw.get("addresses"), list)

    def address_index(self, tracking_address: Optional[str]) -> Tuple[int, bool]:
        """
        Index of ``tracking_address`` in ``addresses`` (case-insensitive).

        Returns ``(index, found)``; falls back to ``(0, False)``.
        """
        if tracking_address:
            wanted = tracking_address.lower()
            for i, address in enumerate(self.addresses):
                if address.lower() == wanted:
                    return i, True
        return 0, False

    def back_link(self, tracking_address: Optional[str] = None) -> Optional[str]:
        """The previous hash for the tracked address (first address by default)."""
        index, _ = self.address_index(tracking_address)
        previous = self.previous_hashes
        if index >= len(previous):
            return None
        return previous[index]

    def payload_hash_for_schema(self, schema: str) -> Optional[str]:
        """The committed payload hash at the position of ``schema``."""
        schemas = self.payload_schemas
        hashes = self.payload_hashes
        if schema not in schemas:
            return None
        index = schemas.index(schema)
        return hashes[index] if index < len(hashes) else None

    def payload_for_schema(self, schema: str) -> Optional[Dict[str, Any]]:
        for payload in self.payloads:
            if payload.get("schema") == schema:
                return payload
        return None

    def validate(self) -> List[str]:
        return record_errors(self.raw)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "addresses": self.addresses,
            "previous_hashes": self.previous_hashes,
            "payload_hashes": self.payload_hashes,
            "payload_schemas": self.payload_schemas,
            "signatures": self.signatures,
            "nbf": self.nbf,
            "exp": self.exp,
            "block": self.embedded_block,
        }


@dataclass
class LedgerBlock:
    """A block and the hashes of the transactions it committed."""
    number: int
    transaction_hashes: List[str] = field(default_factory=list)
    hash: Optional[str] = None

    def contains(self, tx_hash: str) -> bool:
        wanted = normalize_hash(tx_hash)
        return any(normalize_hash(h) == wanted for h in self.transaction_hashes)


def _transaction_hash(tx: Any) -> Optional[str]:
    """Hash of a block transaction given as a hash, ``[record, payloads]`` or a bare record."""
    if isinstance(tx, str):
        return tx or None
    record = LedgerRecord.from_rpc(tx)
    return record.hash if record is not None else None


# =============================================================================
# READER PROTOCOL
# =============================================================================


@runtime_checkable
class LedgerReader(Protocol):
    """
    Read-only view of the ledger.

    Readers may additionally provide
    ``block_number_for_transaction(tx_hash, deadline=None) -> Optional[int]``
    when the backend supports a direct lookup; callers look it up with
    ``getattr``. A reader must not run past ``deadline``.
    """

    def get_transaction_by_hash(self, tx_hash: str, deadline: Optional[Deadline] = None) -> Optional[LedgerRecord]:
        ...

    def get_block_by_number(self, number: int, deadline: Optional[Deadline] = None) -> Optional[LedgerBlock]:
        ...

    def current_block_number(self, deadline: Optional[Deadline] = None) -> Optional[int]:
        ...


class JsonRpcLedgerReader:
    """
    Ledger reader over JSON-RPC 2.0.

    Method names are ``<prefix><name>``, e.g. ``xyoViewer_transactionByHash``.
    Transport failures, RPC errors and an expired deadline raise
    ``LedgerReadError``; a ``null`` result means "not found" and returns
    None. Each request's timeout is clamped to the deadline.
    """

    def __init__(
        self,
        rpc_url: str,
        method_prefix: str = "xyoViewer_",
        timeout_seconds: float = 30.0,
        headers: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.rpc_url = rpc_url
        self.method_prefix = method_prefix
        self.timeout_seconds = timeout_seconds
        self._ids = itertools.count(1)
        self._client = httpx.Client(
            headers={"Content-Type": "application/json", **dict(headers or {})},
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    def call(self, name: str, params: Sequence[Any], deadline: Optional[Deadline] = None) -> Any:
        method = f"{self.method_prefix}{name}"
        if is_expired(deadline):
            raise LedgerReadError(f"{method} not sent: deadline reached", method=method)
        request = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        timeout = httpx.Timeout(remaining_or(deadline, self.timeout_seconds))
        try:
            response = self._client.post(self.rpc_url, json=request, timeout=timeout)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise LedgerReadError(f"{method} failed: {e}", method=method) from e
        except ValueError as e:
            raise LedgerReadError(f"{method} returned a non-JSON body", method=method) from e

        if not isinstance(body, dict):
            raise LedgerReadError(f"{method} returned a malformed response", method=method)
        error = body.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", error) if isinstance(error, dict) else error
            raise LedgerReadError(f"{method} error: {message}", method=method, code=code)
        return body.get("result")

    def get_transaction_by_hash(self, tx_hash: str, deadline: Optional[Deadline] = None) -> Optional[LedgerRecord]:
        result = self.call("transactionByHash", [tx_hash], deadline)
        if result is None:
            return None
        record = LedgerRecord.from_rpc(result, tx_hash)
        if record is None:
            logger.debug("Transaction not found", tx_hash=tx_hash)
        return record

    def get_block_by_number(self, number: int, deadline: Optional[Deadline] = None) -> Optional[LedgerBlock]:
        result = self.call("blockByNumber", [number], deadline)
        if result is None:
            return None

        block: Any = result
        transactions: Optional[List[Any]] = None
        if isinstance(result, (list, tuple)) and result:
            block = result[0]
            if len(result) > 1 and isinstance(result[1], list):
                transactions = result[1]

        block_hash = (block.get("_hash") or block.get("hash")) if isinstance(block, dict) else None
        if transactions is None:
            transactions = self._transactions_by_index(number, deadline)

        hashes = [h for h in (_transaction_hash(tx) for tx in transactions) if h]
        return LedgerBlock(number=number, transaction_hashes=hashes, hash=block_hash)

    def _transactions_by_index(self, number: int, deadline: Optional[Deadline] = None) -> List[Any]:
        """
        Enumerate a block's transactions one index at a time.

        Raises ``LedgerReadError`` when the deadline cuts the enumeration
        short, so a partial block is never mistaken for a complete one.
        """
        transactions = []
        for index in range(MAX_TRANSACTIONS_PER_BLOCK):
            try:
                tx = self.call("transactionByBlockNumberAndIndex", [number, index], deadline)
            except LedgerReadError:
                if is_expired(deadline):
                    raise
                break
            if not tx:
                break
            transactions.append(tx)
        return transactions

    def current_block_number(self, deadline: Optional[Deadline] = None) -> Optional[int]:
        return _int_or_none(self.call("currentBlockNumber", [], deadline))

    def close(self) -> None:
        self._client.close()


class InMemoryLedger:
    """
    Dictionary-backed ledger.

    ``add_record`` stores a raw record (optionally committed to a block);
    ``direct_lookup`` exposes ``block_number_for_transaction``.
    """

    def __init__(self, current_block: Optional[int] = None, direct_lookup: bool = False):
        self._records: Dict[str, LedgerRecord] = {}
        self._blocks: Dict[int, LedgerBlock] = {}
        self._current_block = current_block
        self.reads: List[str] = []
        if direct_lookup:
            self.block_number_for_transaction = self._block_number_for_transaction

    def add_record(
        self,
        tx_hash: str,
        raw: Mapping[str, Any],
        payloads: Sequence[Mapping[str, Any]] = (),
        block: Optional[int] = None,
    ) -> LedgerRecord:
        record = LedgerRecord(hash=tx_hash, raw=dict(raw), payloads=[dict(p) for p in payloads])
        self._records[normalize_hash(tx_hash)] = record
        if block is not None:
            self._blocks.setdefault(block, LedgerBlock(number=block)).transaction_hashes.append(tx_hash)
        return record

    def add_block(self, number: int, transaction_hashes: Sequence[str] = ()) -> LedgerBlock:
        block = self._blocks.setdefault(number, LedgerBlock(number=number))
        block.transaction_hashes.extend(transaction_hashes)
        return block

    def set_current_block(self, number: Optional[int]) -> None:
        self._current_block = number

    def get_transaction_by_hash(self, tx_hash: str, deadline: Optional[Deadline] = None) -> Optional[LedgerRecord]:
        self.reads.append(tx_hash)
        return self._records.get(normalize_hash(tx_hash))

    def get_block_by_number(self, number: int, deadline: Optional[Deadline] = None) -> Optional[LedgerBlock]:
        return self._blocks.get(number)

    def current_block_number(self, deadline: Optional[Deadline] = None) -> Optional[int]:
        return self._current_block

    def _block_number_for_transaction(self, tx_hash: str, deadline: Optional[Deadline] = None) -> Optional[int]:
        for number, block in sorted(self._blocks.items()):
            if block.contains(tx_hash):
                return number
        return None
