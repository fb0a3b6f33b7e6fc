"""
Tests for the resilience layer: deadlines, the endpoint cascade, the
create/poll query bridge, response envelopes and the HTTP transport.
"""

import httpx
import pytest

from tools.chaincheck.envelope import ResponseEnvelope, is_empty_body
from tools.chaincheck.observability import ChainCheckLayer, get_tracer
from tools.chaincheck.resilience import (
    AttemptOutcome,
    Deadline,
    EndpointCascade,
    EndpointRequest,
    Fallback,
    QueryBridge,
)
from tools.chaincheck.transport import HttpTransport, TransportError, api_key_headers


# =============================================================================
# FIXTURES
# =============================================================================


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def get(url, timeout=10.0):
    return EndpointRequest(method="GET", url=url, timeout=timeout)


# =============================================================================
# DEADLINE
# =============================================================================


class TestDeadline:
    """Deadlines clamp timeouts and expire."""

    def test_clamp_and_expiry(self):
        clock = FakeClock()
        deadline = Deadline(5.0, clock=clock)
        assert deadline.clamp(10.0) == 5.0
        assert deadline.clamp(2.0) == 2.0
        clock.now += 5.0
        assert deadline.expired
        assert deadline.remaining() == 0.0


# =============================================================================
# ENDPOINT CASCADE
# =============================================================================


class TestEndpointCascade:
    """First success wins; failures and empties fall through."""

    def test_third_candidate_wins_and_fourth_is_never_called(self, scripted):
        transport = scripted({
            ("GET", "/a"): TransportError("connection refused"),
            ("GET", "/b"): TransportError("HTTP 503", status_code=503),
            ("GET", "/c"): {"ok": 1},
            ("GET", "/d"): {"never": 1},
        })
        outcome = EndpointCascade(transport).run([get("/a"), get("/b"), get("/c"), get("/d")])

        assert outcome.value == {"ok": 1}
        assert outcome.winner.url == "/c"
        assert not outcome.exhausted
        assert transport.urls == ["/a", "/b", "/c"]
        assert [a.outcome for a in outcome.trace.attempts] == [
            AttemptOutcome.TRANSPORT_ERROR,
            AttemptOutcome.HTTP_ERROR,
            AttemptOutcome.SUCCESS,
        ]
        assert outcome.trace.attempts[1].status_code == 503

    @pytest.mark.parametrize("empty", [None, "", "   ", {}, []])
    def test_empty_bodies_count_as_failure(self, scripted, empty):
        transport = scripted({("GET", "/a"): empty, ("GET", "/b"): [{"node": 1}]})
        outcome = EndpointCascade(transport).run([get("/a"), get("/b")])

        assert outcome.value == [{"node": 1}]
        assert outcome.trace.attempts[0].outcome is AttemptOutcome.EMPTY

    def test_rejected_body_falls_through(self, scripted):
        transport = scripted({("GET", "/a"): {"wrong": True}, ("GET", "/b"): {"right": True}})
        outcome = EndpointCascade(transport, accept=lambda body: "right" in body).run([get("/a"), get("/b")])

        assert outcome.value == {"right": True}
        assert outcome.trace.attempts[0].outcome is AttemptOutcome.REJECTED

    def test_exhaustion_is_reported_not_raised(self, scripted):
        transport = scripted()
        outcome = EndpointCascade(transport).run([get("/a"), get("/b")])

        assert outcome.exhausted
        assert outcome.value is None
        assert outcome.trace.attempted == 2

    def test_each_candidate_tried_once(self, scripted):
        transport = scripted()
        EndpointCascade(transport).run([get("/a"), get("/b"), get("/c")])
        assert transport.urls == ["/a", "/b", "/c"]

    def test_expired_deadline_skips_remaining_candidates(self, scripted):
        clock = FakeClock()
        deadline = Deadline(5.0, clock=clock)

        def slow_failure(body):
            clock.now += 10.0
            raise TransportError("timed out")

        transport = scripted({("GET", "/a"): slow_failure, ("GET", "/b"): {"ok": 1}})
        outcome = EndpointCascade(transport).run([get("/a"), get("/b")], deadline=deadline)

        assert outcome.exhausted
        assert transport.urls == ["/a"]
        assert outcome.trace.attempts[1].outcome is AttemptOutcome.SKIPPED
        assert outcome.trace.attempted == 1

    def test_timeout_clamped_to_deadline(self, scripted):
        transport = scripted({("GET", "/a"): {"ok": 1}})
        EndpointCascade(transport).run([get("/a", timeout=10.0)], deadline=Deadline(3.0, clock=FakeClock()))
        assert transport.calls[0][3] == 3.0

    def test_attempts_recorded_on_active_span(self, scripted):
        transport = scripted({("GET", "/b"): {"ok": 1}})
        with get_tracer().span("test", ChainCheckLayer.CASCADE) as span:
            EndpointCascade(transport, name="lookup").run([get("/a"), get("/b")])
        assert [e["name"] for e in span.events] == ["lookup.attempt", "lookup.attempt"]
        assert span.events[1]["attributes"]["outcome"] == "success"

    def test_trace_to_dict(self, scripted):
        transport = scripted()
        d = EndpointCascade(transport).run([get("/a")]).trace.to_dict()
        assert d["attempted"] == 1
        assert d["attempts"][0]["url"] == "/a"
        assert d["attempts"][0]["status_code"] == 404


# =============================================================================
# QUERY BRIDGE
# =============================================================================


def post(url, body=None):
    return EndpointRequest(method="POST", url=url, timeout=10.0, json_body=body or {"q": 1})


class TestQueryBridge:
    """Submit once, poll once by handle, fall back to the submission body."""

    def test_polls_once_by_handle(self, scripted):
        sleeps = []
        transport = scripted({
            ("POST", "/location/query"): {"data": {"queryHash": "qh1", "status": "created"}},
            ("GET", "/location/query/qh1"): {"data": {"results": [{"address": "n1"}]}},
        })
        bridge = QueryBridge(EndpointCascade(transport), sleep=sleeps.append)
        result = bridge.submit_and_resolve([post("/location/query")])

        assert result.handle == "qh1"
        assert result.polled is True
        assert result.value == {"results": [{"address": "n1"}]}
        assert sleeps == [0.5]
        assert transport.urls == ["/location/query", "/location/query/qh1"]

    def test_later_submission_path_wins(self, scripted):
        transport = scripted({
            ("POST", "/query"): {"hash": "h2"},
            ("GET", "/location/query/h2"): [{"address": "n1"}],
        })
        bridge = QueryBridge(EndpointCascade(transport), sleep=lambda s: None)
        result = bridge.submit_and_resolve([post("/location/query"), post("/api/location/query"), post("/query")])

        assert result.value == [{"address": "n1"}]
        assert result.trace.attempted == 4

    def test_failed_poll_falls_back_to_submission(self, scripted):
        transport = scripted({("POST", "/location/query"): {"queryHash": "qh1", "nodeCount": 2}})
        bridge = QueryBridge(EndpointCascade(transport), sleep=lambda s: None)
        result = bridge.submit_and_resolve([post("/location/query")])

        assert result.polled is False
        assert result.value == {"queryHash": "qh1", "nodeCount": 2}
        assert result.found

    def test_empty_poll_falls_back_to_submission(self, scripted):
        transport = scripted({
            ("POST", "/location/query"): {"data": {"queryHash": "qh1"}},
            ("GET", "/location/query/qh1"): {"data": {}},
        })
        bridge = QueryBridge(EndpointCascade(transport), sleep=lambda s: None)
        result = bridge.submit_and_resolve([post("/location/query")])

        assert result.polled is False
        assert result.value == {"queryHash": "qh1"}

    def test_no_handle_means_no_poll(self, scripted):
        sleeps = []
        transport = scripted({("POST", "/location/query"): {"data": {"results": [{"address": "n1"}]}}})
        bridge = QueryBridge(EndpointCascade(transport), sleep=sleeps.append)
        result = bridge.submit_and_resolve([post("/location/query")])

        assert result.handle is None
        assert result.value == {"results": [{"address": "n1"}]}
        assert sleeps == []
        assert transport.urls == ["/location/query"]

    def test_failed_submission_is_not_found(self, scripted):
        bridge = QueryBridge(EndpointCascade(scripted()), sleep=lambda s: None)
        result = bridge.submit_and_resolve([post("/location/query")])
        assert not result.found
        assert result.trace.attempted == 1

    def test_poll_delay_clamped_to_deadline(self, scripted):
        clock = FakeClock()
        sleeps = []

        def sleep(seconds):
            sleeps.append(seconds)
            clock.now += seconds

        transport = scripted({("POST", "/q"): {"queryHash": "qh1"}})
        bridge = QueryBridge(EndpointCascade(transport), poll_delay=5.0, sleep=sleep)
        result = bridge.submit_and_resolve([post("/q")], deadline=Deadline(2.0, clock=clock))

        assert sleeps == [2.0]
        assert transport.urls == ["/q"]
        assert result.value == {"queryHash": "qh1"}


# =============================================================================
# ENVELOPE
# =============================================================================


class TestResponseEnvelope:
    """One unwrap step, handle detection and emptiness."""

    def test_unwraps_data_object_once(self):
        env = ResponseEnvelope.unwrap({"data": {"data": {"x": 1}}})
        assert env.wrapped
        assert env.value == {"data": {"x": 1}}

    def test_list_data_is_not_unwrapped(self):
        body = {"data": [1, 2]}
        assert ResponseEnvelope.unwrap(body).value is body

    def test_handle_prefers_query_hash(self):
        assert ResponseEnvelope.unwrap({"queryHash": "a", "hash": "b"}).handle == "a"
        assert ResponseEnvelope.unwrap({"data": {"hash": "b"}}).handle == "b"
        assert ResponseEnvelope.unwrap({"hash": "  "}).handle is None

    @pytest.mark.parametrize("body,empty", [
        (None, True), ("", True), ({}, True), ([], True),
        (0, False), ({"a": 1}, False), ("x", False),
    ])
    def test_is_empty_body(self, body, empty):
        assert is_empty_body(body) is empty


# =============================================================================
# FALLBACK
# =============================================================================


class TestFallback:
    """Unexpected exceptions become fallback values."""

    def test_execute_returns_fallback_value(self):
        fb = Fallback(fallback_value=[], name="walk")

        def boom():
            raise RuntimeError("boom")

        assert fb.execute(boom) == []
        assert fb.fallback_count == 1

    def test_fallback_func_receives_exception(self):
        fb = Fallback(fallback_func=lambda e: f"handled {e}")

        @fb
        def boom():
            raise KeyError("k")

        assert boom() == "handled 'k'"

    def test_success_passes_through(self):
        assert Fallback(fallback_value=0).execute(lambda: 42) == 42


# =============================================================================
# HTTP TRANSPORT
# =============================================================================


class TestHttpTransport:
    """httpx-backed transport with MockTransport."""

    def test_decodes_json_and_joins_base_url(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"ok": True})

        transport = HttpTransport("http://witness.test/", transport=httpx.MockTransport(handler))
        assert transport.get("location/query/abc") == {"ok": True}
        assert seen == ["http://witness.test/location/query/abc"]

    def test_non_2xx_raises_with_status(self):
        transport = HttpTransport(
            "http://witness.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        with pytest.raises(TransportError) as exc:
            transport.get("/x")
        assert exc.value.status_code == 503

    def test_connection_failure_raises_without_status(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        transport = HttpTransport("http://witness.test", transport=httpx.MockTransport(handler))
        with pytest.raises(TransportError) as exc:
            transport.post("/x", {"a": 1})
        assert exc.value.status_code is None

    def test_empty_body_is_none(self):
        transport = HttpTransport(
            "http://witness.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"")),
        )
        assert transport.get("/x") is None

    def test_non_json_body_raises(self):
        transport = HttpTransport(
            "http://witness.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"<html>")),
        )
        with pytest.raises(TransportError):
            transport.get("/x")

    def test_api_key_header(self):
        seen = []

        def handler(request):
            seen.append(request.headers.get("x-api-key"))
            return httpx.Response(200, json=[1])

        transport = HttpTransport(
            "http://witness.test",
            headers=api_key_headers("secret"),
            transport=httpx.MockTransport(handler),
        )
        transport.get("/x")
        assert seen == ["secret"]
        assert api_key_headers("") == {}
