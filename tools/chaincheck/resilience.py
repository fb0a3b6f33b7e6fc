"""
CHAINCHECK Resilience Patterns

Fault-tolerance building blocks for talking to services that may be
unreachable, partially deployed, or slow.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                       RESILIENCE PATTERNS                                │
    │                                                                          │
    │  Deadline            Endpoint Cascade      Query Bridge      Fallback    │
    │  ├─ Monotonic        ├─ Ordered candidates ├─ Submit once    ├─ Value    │
    │  ├─ Clamp timeouts   ├─ First success wins ├─ Derived handle ├─ Function │
    │  └─ Early stop       ├─ No retries         ├─ One fixed poll └─ Logging  │
    │                      └─ Diagnostic trace   └─ Submit fallback            │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Bounded Latency: every call has an explicit timeout, clamped to what
    is left of the caller's deadline.

    Exhaustion, Not Exceptions: a cascade that runs out of candidates
    reports it in its outcome. Transport failures never escape.

    Diagnostics Beside Results: the trace of attempts travels with the
    result but never changes it.

Usage
─────

    cascade = EndpointCascade(transport)
    outcome = cascade.run([
        EndpointRequest("GET", "/location/query/abc", timeout=10.0),
        EndpointRequest("GET", "/api/location/query/abc", timeout=10.0),
    ], deadline=Deadline(15.0))
    if not outcome.exhausted:
        use(outcome.value)
"""

from __future__ import annotations

import functools
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, Protocol, Sequence, Tuple, TypeVar

from tools.chaincheck.envelope import ResponseEnvelope, is_empty_body
from tools.chaincheck.observability import ChainCheckLayer, get_logger, get_tracer
from tools.chaincheck.transport import TransportError

T = TypeVar("T")

logger = get_logger("cascade", ChainCheckLayer.CASCADE)


class RequestTransport(Protocol):
    """Anything that can issue one JSON request (see ``HttpTransport``)."""

    def request(
        self,
        method: str,
        path_or_url: str,
        json_body: Any = None,
        timeout: Optional[float] = None,
    ) -> Any:
        ...


# ════════════════════════════════════════════════════════════════════════════
# DEADLINE
# ════════════════════════════════════════════════════════════════════════════


class Deadline:
    """
    A point in monotonic time by which an operation must finish.

    Example:
        deadline = Deadline(15.0)
        transport.get(url, timeout=deadline.clamp(10.0))
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.seconds = seconds
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def clamp(self, timeout: float) -> float:
        """Shrink ``timeout`` so it does not run past the deadline."""
        return min(timeout, self.remaining())


def remaining_or(deadline: Optional[Deadline], timeout: float) -> float:
    return deadline.clamp(timeout) if deadline is not None else timeout


def is_expired(deadline: Optional[Deadline]) -> bool:
    return deadline is not None and deadline.expired


# ════════════════════════════════════════════════════════════════════════════
# ENDPOINT CASCADE
# ════════════════════════════════════════════════════════════════════════════


class AttemptOutcome(Enum):
    """What happened to one candidate."""
    SUCCESS = "success"
    TRANSPORT_ERROR = "transport_error"
    HTTP_ERROR = "http_error"
    EMPTY = "empty"
    REJECTED = "rejected"
    SKIPPED = "skipped"


_ANSWERED = (AttemptOutcome.SUCCESS, AttemptOutcome.EMPTY, AttemptOutcome.REJECTED)


@dataclass(frozen=True)
class EndpointRequest:
    """One candidate in a cascade."""
    method: str
    url: str
    timeout: float
    json_body: Any = None
    label: str = ""


@dataclass
class CandidateAttempt:
    """Diagnostic record of one candidate attempt."""
    method: str
    url: str
    outcome: AttemptOutcome
    elapsed_ms: float = 0.0
    status_code: Optional[int] = None
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "method": self.method,
            "url": self.url,
            "outcome": self.outcome.value,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }
        if self.status_code is not None:
            d["status_code"] = self.status_code
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class CascadeTrace:
    """Ordered record of every attempt made by a cascade."""
    attempts: List[CandidateAttempt] = field(default_factory=list)

    def record(self, attempt: CandidateAttempt) -> None:
        self.attempts.append(attempt)

    def extend(self, other: "CascadeTrace") -> None:
        self.attempts.extend(other.attempts)

    @property
    def attempted(self) -> int:
        return sum(1 for a in self.attempts if a.outcome is not AttemptOutcome.SKIPPED)

    @property
    def answered(self) -> bool:
        """True when some endpoint replied 2xx, even with nothing usable."""
        return any(a.outcome in _ANSWERED for a in self.attempts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "attempts": [a.to_dict() for a in self.attempts],
        }


@dataclass
class CascadeOutcome:
    """Result of running a cascade: the winning body, or exhaustion."""
    value: Any = None
    winner: Optional[EndpointRequest] = None
    trace: CascadeTrace = field(default_factory=CascadeTrace)

    @property
    def exhausted(self) -> bool:
        return self.winner is None


class EndpointCascade:
    """
    Try an ordered list of equivalent endpoints until one answers.

    A candidate fails on a transport error, a non-2xx status, an empty
    body (None, blank, {} or []), or a body the ``accept`` predicate
    rejects. Each candidate is tried at most once. Once the deadline
    expires, remaining candidates are recorded as skipped.
    """

    def __init__(
        self,
        transport: RequestTransport,
        accept: Optional[Callable[[Any], bool]] = None,
        name: str = "cascade",
    ):
        self.transport = transport
        self.accept = accept
        self.name = name

    def run(
        self,
        candidates: Sequence[EndpointRequest],
        deadline: Optional[Deadline] = None,
        accept: Optional[Callable[[Any], bool]] = None,
    ) -> CascadeOutcome:
        accept = accept or self.accept
        outcome = CascadeOutcome()
        span = get_tracer().current_span()

        for candidate in candidates:
            if is_expired(deadline):
                outcome.trace.record(CandidateAttempt(
                    method=candidate.method,
                    url=candidate.url,
                    outcome=AttemptOutcome.SKIPPED,
                    error="deadline expired",
                ))
                continue

            attempt, body = self._attempt(candidate, deadline, accept)
            outcome.trace.record(attempt)
            if span is not None:
                span.record_event(f"{self.name}.attempt", **attempt.to_dict())

            if attempt.outcome is AttemptOutcome.SUCCESS:
                outcome.value = body
                outcome.winner = candidate
                logger.debug(
                    "Endpoint answered",
                    operation=self.name,
                    url=candidate.url,
                    attempts=outcome.trace.attempted,
                )
                return outcome

        logger.warning(
            "All endpoints failed",
            operation=self.name,
            candidates=len(candidates),
            attempted=outcome.trace.attempted,
        )
        return outcome

    def _attempt(
        self,
        candidate: EndpointRequest,
        deadline: Optional[Deadline],
        accept: Optional[Callable[[Any], bool]],
    ) -> Tuple[CandidateAttempt, Any]:
        start = time.monotonic()
        timeout = remaining_or(deadline, candidate.timeout)

        def finish(result: AttemptOutcome, status: Optional[int] = None, error: str = "") -> CandidateAttempt:
            return CandidateAttempt(
                method=candidate.method,
                url=candidate.url,
                outcome=result,
                elapsed_ms=(time.monotonic() - start) * 1000,
                status_code=status,
                error=error,
            )

        try:
            body = self.transport.request(
                candidate.method,
                candidate.url,
                json_body=candidate.json_body,
                timeout=timeout,
            )
        except TransportError as e:
            kind = AttemptOutcome.HTTP_ERROR if e.status_code is not None else AttemptOutcome.TRANSPORT_ERROR
            logger.debug("Endpoint failed", operation=self.name, url=candidate.url, error=str(e))
            return finish(kind, e.status_code, str(e)), None

        if is_empty_body(body):
            return finish(AttemptOutcome.EMPTY, 200, "empty body"), None
        if accept is not None and not accept(body):
            return finish(AttemptOutcome.REJECTED, 200, "body rejected"), None
        return finish(AttemptOutcome.SUCCESS, 200), body


# ════════════════════════════════════════════════════════════════════════════
# CREATE / POLL BRIDGE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class BridgeResult:
    """Final body of a submit-then-poll exchange."""
    value: Any = None
    handle: Optional[str] = None
    polled: bool = False
    trace: CascadeTrace = field(default_factory=CascadeTrace)

    @property
    def found(self) -> bool:
        return not is_empty_body(self.value)


class QueryBridge:
    """
    Adapt a create-then-fetch query API to a single call.

    The submission goes through an ``EndpointCascade``. If the unwrapped
    submission body carries a handle, the bridge waits ``poll_delay``
    once and issues exactly one GET for the result. A failed or empty
    poll falls back to the submission body. ``accept`` filters submission
    bodies only.
    """

    def __init__(
        self,
        cascade: EndpointCascade,
        result_path: str = "/location/query/{handle}",
        poll_delay: float = 0.5,
        poll_timeout: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cascade = cascade
        self.result_path = result_path
        self.poll_delay = poll_delay
        self.poll_timeout = poll_timeout
        self._sleep = sleep

    def submit_and_resolve(
        self,
        candidates: Sequence[EndpointRequest],
        deadline: Optional[Deadline] = None,
        accept: Optional[Callable[[Any], bool]] = None,
    ) -> BridgeResult:
        submitted = self.cascade.run(candidates, deadline=deadline, accept=accept)
        result = BridgeResult(trace=submitted.trace)
        if submitted.exhausted:
            return result

        envelope = ResponseEnvelope.unwrap(submitted.value)
        result.value = envelope.value
        result.handle = envelope.handle
        if envelope.handle is None:
            return result

        delay = remaining_or(deadline, self.poll_delay)
        if delay > 0:
            self._sleep(delay)
        if is_expired(deadline):
            logger.debug("Deadline reached before poll", operation="poll", handle=envelope.handle)
            return result

        poll = EndpointRequest(
            method="GET",
            url=self.result_path.format(handle=envelope.handle),
            timeout=self.poll_timeout,
            label="poll",
        )
        polled = self.cascade.run([poll], deadline=deadline)
        result.trace.extend(polled.trace)
        if not polled.exhausted:
            unwrapped = ResponseEnvelope.unwrap(polled.value)
            if not unwrapped.is_empty:
                result.value = unwrapped.value
                result.polled = True
        return result


# ════════════════════════════════════════════════════════════════════════════
# FALLBACK
# ════════════════════════════════════════════════════════════════════════════


class Fallback(Generic[T]):
    """
    Convert unexpected failures into a structured fallback result.

    Used at the engine boundary so callers always get a result object.

    Example:
        fallback = Fallback(fallback_func=lambda: [], name="walk")

        @fallback
        def walk():
            return walker.walk(proof_id, 5)
    """

    def __init__(
        self,
        fallback_value: Optional[T] = None,
        fallback_func: Optional[Callable[[Exception], T]] = None,
        exceptions: tuple = (Exception,),
        name: str = "operation",
    ):
        self.fallback_value = fallback_value
        self.fallback_func = fallback_func
        self.exceptions = exceptions
        self.name = name
        self._fallback_count = 0
        self._lock = threading.Lock()

    @property
    def fallback_count(self) -> int:
        with self._lock:
            return self._fallback_count

    def execute(self, func: Callable[[], T]) -> T:
        try:
            return func()
        except self.exceptions as e:
            with self._lock:
                self._fallback_count += 1
            logger.error(
                f"{self.name} failed unexpectedly, returning fallback",
                error_code="UNEXPECTED",
                exc_info=True,
                operation=self.name,
            )
            if self.fallback_func:
                return self.fallback_func(e)
            return self.fallback_value  # type: ignore

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper


__all__ = [
    "AttemptOutcome",
    "BridgeResult",
    "CandidateAttempt",
    "CascadeOutcome",
    "CascadeTrace",
    "Deadline",
    "EndpointCascade",
    "EndpointRequest",
    "Fallback",
    "QueryBridge",
    "RequestTransport",
]
