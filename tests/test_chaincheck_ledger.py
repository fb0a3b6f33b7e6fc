"""
Tests for ledger records and the JSON-RPC ledger reader.
"""

import json

import httpx
import pytest

from tools.chaincheck.hashing import payload_hash
from tools.chaincheck.ledger import (
    InMemoryLedger,
    JsonRpcLedgerReader,
    LedgerReader,
    LedgerReadError,
    LedgerRecord,
    record_errors,
)
from tools.chaincheck.resilience import Deadline

RPC_URL = "http://ledger.test/rpc"


# =============================================================================
# FIXTURES
# =============================================================================


def rpc_reader(results, calls=None):
    """Reader whose viewer answers ``results[method](params)``."""

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if calls is not None:
            calls.append((payload["method"], payload["params"]))
        answer = results.get(payload["method"])
        if isinstance(answer, httpx.Response):
            return answer
        if callable(answer):
            answer = answer(payload["params"])
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": answer})

    return JsonRpcLedgerReader(RPC_URL, transport=httpx.MockTransport(handler))


RAW = {
    "_hash": "abc",
    "addresses": ["0xA1", "0xB2"],
    "previous_hashes": ["def", None],
    "payload_hashes": ["11" * 32, "22" * 32],
    "payload_schemas": ["network.xyo.location", "network.xyo.chaincheck"],
    "nbf": 10,
    "exp": "0x14",
    "$signatures": ["sig1", "sig2"],
}


# =============================================================================
# RECORD MODEL
# =============================================================================


class TestLedgerRecord:
    """Parsing viewer results into records."""

    def test_from_tuple_result(self):
        payload = {"schema": "network.xyo.chaincheck", "data": {"latitude": 1.0, "longitude": 2.0}}
        record = LedgerRecord.from_rpc([RAW, [payload, "junk"]], "requested")

        assert record.hash == "abc"
        assert record.payloads == [payload]
        assert record.payload_for_schema("network.xyo.chaincheck") == payload

    def test_fields(self):
        record = LedgerRecord.from_rpc(RAW)

        assert record.addresses == ["0xA1", "0xB2"]
        assert record.previous_hashes == ["def", None]
        assert record.nbf == 10
        assert record.exp == 20
        assert record.signatures == ["sig1", "sig2"]
        assert record.embedded_block is None
        assert record.has_back_links

    def test_back_link_by_address(self):
        record = LedgerRecord.from_rpc(RAW)
        assert record.back_link() == "def"
        assert record.back_link("0xb2") is None
        assert record.back_link("0xunknown") == "def"

    def test_payload_hash_for_schema(self):
        record = LedgerRecord.from_rpc(RAW)
        assert record.payload_hash_for_schema("network.xyo.chaincheck") == "22" * 32
        assert record.payload_hash_for_schema("network.xyo.other") is None

    def test_hash_falls_back_to_requested_then_content(self):
        bare = {k: v for k, v in RAW.items() if k != "_hash"}
        assert LedgerRecord.from_rpc(bare, "req").hash == "req"
        assert LedgerRecord.from_rpc(bare).hash == payload_hash(bare)

    @pytest.mark.parametrize("result", [[], {}, "text", [None]])
    def test_empty_results(self, result):
        assert LedgerRecord.from_rpc(result) is None

    def test_valid_record_has_no_errors(self):
        assert record_errors({k: v for k, v in RAW.items() if k != "exp"}) == []

    def test_structural_errors_reported(self):
        errors = record_errors({"addresses": "0xA1", "previous_hashes": [], "payload_hashes": []})
        assert any(e.startswith("addresses:") for e in errors)
        assert any("payload_schemas" in e for e in errors)


# =============================================================================
# JSON-RPC READER
# =============================================================================


class TestJsonRpcLedgerReader:
    """JSON-RPC 2.0 calls against a mocked viewer."""

    def test_transaction_by_hash(self):
        calls = []
        reader = rpc_reader({"xyoViewer_transactionByHash": [RAW, []]}, calls)

        record = reader.get_transaction_by_hash("abc")

        assert record.addresses == ["0xA1", "0xB2"]
        assert calls == [("xyoViewer_transactionByHash", ["abc"])]

    def test_null_result_is_not_found(self):
        reader = rpc_reader({"xyoViewer_transactionByHash": None})
        assert reader.get_transaction_by_hash("abc") is None

    def test_rpc_error_raises(self):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "jsonrpc": "2.0", "id": body["id"], "error": {"code": -32601, "message": "Method not found"},
            })

        reader = JsonRpcLedgerReader(RPC_URL, transport=httpx.MockTransport(handler))
        with pytest.raises(LedgerReadError) as exc:
            reader.get_transaction_by_hash("abc")
        assert exc.value.code == -32601
        assert exc.value.method == "xyoViewer_transactionByHash"

    def test_http_failure_raises(self):
        reader = JsonRpcLedgerReader(RPC_URL, transport=httpx.MockTransport(lambda r: httpx.Response(502)))
        with pytest.raises(LedgerReadError):
            reader.current_block_number()

    def test_non_json_raises(self):
        reader = JsonRpcLedgerReader(
            RPC_URL, transport=httpx.MockTransport(lambda r: httpx.Response(200, content=b"oops")),
        )
        with pytest.raises(LedgerReadError):
            reader.current_block_number()

    def test_current_block_number_accepts_hex(self):
        assert rpc_reader({"xyoViewer_currentBlockNumber": "0x1f"}).current_block_number() == 31
        assert rpc_reader({"xyoViewer_currentBlockNumber": 42}).current_block_number() == 42

    def test_block_with_transactions(self):
        reader = rpc_reader({"xyoViewer_blockByNumber": [{"_hash": "blk7"}, [[RAW, []], "0xdef"]]})

        block = reader.get_block_by_number(7)

        assert block.number == 7
        assert block.hash == "blk7"
        assert block.transaction_hashes == ["abc", "0xdef"]
        assert block.contains("0xABC")

    def test_block_transactions_enumerated_by_index(self):
        calls = []
        reader = rpc_reader({
            "xyoViewer_blockByNumber": {"_hash": "blk7"},
            "xyoViewer_transactionByBlockNumberAndIndex": lambda params: [RAW, []] if params[1] == 0 else None,
        }, calls)

        block = reader.get_block_by_number(7)

        assert block.transaction_hashes == ["abc"]
        assert [c[0] for c in calls].count("xyoViewer_transactionByBlockNumberAndIndex") == 2

    def test_missing_block(self):
        assert rpc_reader({"xyoViewer_blockByNumber": None}).get_block_by_number(7) is None

    def test_custom_method_prefix(self):
        calls = []

        def handler(request):
            body = json.loads(request.content)
            calls.append(body["method"])
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": 3})

        reader = JsonRpcLedgerReader(RPC_URL, method_prefix="viewer_", transport=httpx.MockTransport(handler))
        reader.current_block_number()
        assert calls == ["viewer_currentBlockNumber"]

class ManualClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestLedgerDeadline:
    """Ledger reads never run past the caller's deadline."""

    def test_timeout_clamped_to_remaining_time(self):
        seen = []

        def handler(request):
            seen.append(request.extensions["timeout"]["read"])
            body = json.loads(request.content)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": 5})

        reader = JsonRpcLedgerReader(RPC_URL, timeout_seconds=30.0, transport=httpx.MockTransport(handler))
        reader.current_block_number(deadline=Deadline(2.5, clock=ManualClock()))
        reader.current_block_number()

        assert seen == [2.5, 30.0]

    def test_expired_deadline_sends_nothing(self):
        calls = []
        reader = rpc_reader({"xyoViewer_transactionByHash": [RAW, []]}, calls)
        clock = ManualClock()
        deadline = Deadline(1.0, clock=clock)
        clock.now += 5

        with pytest.raises(LedgerReadError, match="deadline reached"):
            reader.get_transaction_by_hash("abc", deadline=deadline)
        assert calls == []

    def test_index_enumeration_stops_at_deadline(self):
        clock = ManualClock()
        deadline = Deadline(3.0, clock=clock)
        calls = []

        def by_index(params):
            clock.now += 1
            return [dict(RAW, _hash=f"tx{params[1]}"), []]

        reader = rpc_reader({
            "xyoViewer_blockByNumber": {"_hash": "blk7"},
            "xyoViewer_transactionByBlockNumberAndIndex": by_index,
        }, calls)

        with pytest.raises(LedgerReadError):
            reader.get_block_by_number(7, deadline=deadline)
        assert [c[0] for c in calls].count("xyoViewer_transactionByBlockNumberAndIndex") == 3


class TestInMemoryLedger:
    """The dictionary-backed reader satisfies the protocol."""

    def test_is_a_ledger_reader(self):
        assert isinstance(InMemoryLedger(), LedgerReader)

    def test_lookup_normalizes_hash(self):
        ledger = InMemoryLedger()
        ledger.add_record("0xABC", RAW)
        assert ledger.get_transaction_by_hash("abc") is not None

    def test_direct_lookup_only_when_enabled(self):
        assert not hasattr(InMemoryLedger(), "block_number_for_transaction")
        ledger = InMemoryLedger(direct_lookup=True)
        ledger.add_record("tx", RAW, block=9)
        assert ledger.block_number_for_transaction("tx") == 9
