"""
Witness network client and location verifier.

Verification runs through a fixed ladder, stopping at the first rung that
produces real evidence:

    1. Query the witness network by record hash (GET, one path at a time,
       polling any query handle). A path whose answer names no nodes
       hands over to the next. Accepted only when it scores as verified.
    2. Submit a location/time-range query (POST, path cascade), then poll
       once by the returned handle.
    3. Opt-in: derive corroboration from the anchored ledger record
       itself. Its signing addresses are the witnesses and its anchored
       payload carries the observed location.
    4. Synthesize a degraded result.

An exhausted network, or one that names no nodes, always ends at rung 4
unless rung 3 finds signed addresses. The feature flag ``witness.disabled``
skips straight to rung 4.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from tools.chaincheck.degraded import DegradedModeSynthesizer
from tools.chaincheck.envelope import ResponseEnvelope
from tools.chaincheck.ledger import LedgerReadError, LedgerReader
from tools.chaincheck.observability import ChainCheckLayer, get_logger
from tools.chaincheck.resilience import (
    BridgeResult,
    CascadeTrace,
    Deadline,
    EndpointCascade,
    EndpointRequest,
    QueryBridge,
    RequestTransport,
)
from tools.chaincheck.scoring import DEFAULT_POLICY, GeoPoint, ScoringPolicy, match_location, score
from tools.chaincheck.verification import NodeType, VerificationResult, VerificationSource, WitnessNode

logger = get_logger("witness", ChainCheckLayer.WITNESS)

LOCATION_WITNESS_SCHEMA = "network.xyo.location"
RANGE_QUERY_SCHEMA = "network.xyo.location.range.query"
NODE_LIST_KEYS = ("results", "data", "witnesses", "nodes")


def to_datetime(value: Any) -> Optional[datetime]:
    """
    Interpret a claimed timestamp.

    Accepts datetimes, ISO-8601 strings, and epoch numbers (milliseconds
    when larger than 10^12, seconds otherwise).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if abs(value) > 1e12 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return to_datetime(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# =============================================================================
# RESPONSE INTERPRETATION
# =============================================================================


@dataclass
class WitnessObservation:
    """What a witness network answer says, independent of its wire shape."""
    node_count: int = 0
    nodes: List[WitnessNode] = field(default_factory=list)
    observed_location: Optional[GeoPoint] = None


def _node_from_item(item: Any, index: int) -> WitnessNode:
    if not isinstance(item, dict):
        return WitnessNode(address=f"witness-{index}")
    address = item.get("address") or item.get("_hash") or item.get("hash") or f"witness-{index}"
    try:
        node_type = NodeType(item.get("type", NodeType.SENTINEL.value))
    except ValueError:
        node_type = NodeType.SENTINEL
    location = GeoPoint.from_mapping(item.get("location")) or GeoPoint.from_mapping(item)
    return WitnessNode(
        address=str(address),
        node_type=node_type,
        approximate_location=location,
        corroborated=item.get("verified", True) is not False,
    )


def interpret_response(body: Any) -> WitnessObservation:
    """
    Count corroborating nodes in a witness answer.

    A list answer has one node per item. An object answer counts its
    ``results``/``data``/``witnesses``/``nodes`` list, or an explicit
    integer ``nodeCount``. The observed location is the object's own
    coordinates, or those of the first item.
    """
    value = ResponseEnvelope.unwrap(body).value

    if isinstance(value, list):
        items = value
        location = GeoPoint.from_mapping(items[0]) if items and isinstance(items[0], dict) else None
        return WitnessObservation(
            node_count=len(items),
            nodes=[_node_from_item(item, i) for i, item in enumerate(items)],
            observed_location=location,
        )

    if not isinstance(value, dict):
        return WitnessObservation()

    location = GeoPoint.from_mapping(value) or GeoPoint.from_mapping(value.get("location"))
    for key in NODE_LIST_KEYS:
        items = value.get(key)
        if isinstance(items, list):
            if location is None and items and isinstance(items[0], dict):
                location = GeoPoint.from_mapping(items[0])
            return WitnessObservation(
                node_count=len(items),
                nodes=[_node_from_item(item, i) for i, item in enumerate(items)],
                observed_location=location,
            )

    count = value.get("nodeCount")
    if isinstance(count, int) and not isinstance(count, bool) and count > 0:
        return WitnessObservation(node_count=count, observed_location=location)
    return WitnessObservation(observed_location=location)


def _names_nodes_or_handle(body: Any) -> bool:
    return ResponseEnvelope.unwrap(body).handle is not None or interpret_response(body).node_count > 0


# =============================================================================
# WITNESS NETWORK CLIENT
# =============================================================================


class WitnessNetworkClient:
    """Issues witness queries through the endpoint cascade and query bridge."""

    def __init__(
        self,
        transport: RequestTransport,
        hash_query_paths: Sequence[str],
        location_query_paths: Sequence[str],
        result_path: str = "/location/query/{handle}",
        timeout_seconds: float = 10.0,
        poll_delay_seconds: float = 0.5,
        poll_timeout_seconds: float = 5.0,
        query_window_seconds: int = 3600,
        archive: str = "chaincheck",
        archivist_url: str = "",
        sleep: Any = None,
    ):
        self.hash_query_paths = list(hash_query_paths)
        self.location_query_paths = list(location_query_paths)
        self.timeout_seconds = timeout_seconds
        self.query_window_seconds = query_window_seconds
        self.archive = archive
        self.archivist_url = archivist_url
        self.cascade = EndpointCascade(transport, name="witness.query")
        bridge_kwargs: Dict[str, Any] = {}
        if sleep is not None:
            bridge_kwargs["sleep"] = sleep
        self.bridge = QueryBridge(
            self.cascade,
            result_path=result_path,
            poll_delay=poll_delay_seconds,
            poll_timeout=poll_timeout_seconds,
            **bridge_kwargs,
        )

    def query_by_hash(self, proof_id: str, deadline: Optional[Deadline] = None) -> BridgeResult:
        """
        Try each hash path until one names witness nodes.

        A path answering with a query handle is polled once. A path whose
        answer, polled or direct, names no nodes hands over to the next.
        """
        trace = CascadeTrace()
        for path in self.hash_query_paths:
            candidate = EndpointRequest(method="GET", url=path.format(hash=proof_id), timeout=self.timeout_seconds)
            result = self.bridge.submit_and_resolve([candidate], deadline=deadline, accept=_names_nodes_or_handle)
            trace.extend(result.trace)
            if result.found and interpret_response(result.value).node_count > 0:
                result.trace = trace
                return result
        return BridgeResult(trace=trace)

    def location_query_body(self, claimed_at: datetime) -> Dict[str, Any]:
        window = timedelta(seconds=self.query_window_seconds)
        archivist = {"apiDomain": self.archivist_url}
        return {
            "query": {
                "schema": LOCATION_WITNESS_SCHEMA,
                "startTime": _iso(claimed_at - window),
                "stopTime": _iso(claimed_at + window),
            },
            "resultArchive": self.archive,
            "resultArchivist": archivist,
            "schema": RANGE_QUERY_SCHEMA,
            "sourceArchive": self.archive,
            "sourceArchivist": archivist,
        }

    def query_by_location(self, claimed_at: datetime, deadline: Optional[Deadline] = None) -> BridgeResult:
        body = self.location_query_body(claimed_at)
        candidates = [
            EndpointRequest(method="POST", url=path, timeout=self.timeout_seconds, json_body=body)
            for path in self.location_query_paths
        ]
        return self.bridge.submit_and_resolve(candidates, deadline=deadline)


# =============================================================================
# LOCATION VERIFIER
# =============================================================================


class LocationVerifier:
    """
    Produces a ``VerificationResult`` for a proof and an optional claim.

    Never raises for upstream failures: every failure path ends in the
    degraded synthesizer, or in a signed ledger-derived result when
    ``ledger_corroboration`` is on.
    """

    def __init__(
        self,
        witness: Optional[WitnessNetworkClient],
        synthesizer: DegradedModeSynthesizer,
        ledger: Optional[LedgerReader] = None,
        disabled: bool = False,
        ledger_corroboration: bool = False,
        match_radius_meters: float = 100.0,
        anchored_schema: str = "network.xyo.chaincheck",
        policy: ScoringPolicy = DEFAULT_POLICY,
    ):
        self.witness = witness
        self.synthesizer = synthesizer
        self.ledger = ledger
        self.disabled = disabled
        self.ledger_corroboration = ledger_corroboration
        self.match_radius_meters = match_radius_meters
        self.anchored_schema = anchored_schema
        self.policy = policy

    def verify(
        self,
        proof_id: str,
        claimed_location: Optional[GeoPoint] = None,
        claimed_timestamp: Any = None,
        deadline: Optional[Deadline] = None,
    ) -> VerificationResult:
        if self.disabled or self.witness is None:
            return self.synthesizer.synthesize(
                claimed_location,
                claimed_timestamp,
                chain_context=proof_id,
                reason="witness network disabled",
            )

        trace = CascadeTrace()
        best: Optional[VerificationResult] = None

        by_hash = self.witness.query_by_hash(proof_id, deadline)
        trace.extend(by_hash.trace)
        if by_hash.found:
            result = self._observed(by_hash.value, claimed_location, proof_id, "hash", trace)
            if result.verified:
                return result
            best = result
            logger.info("Hash query not conclusive, trying location query", proof_id=proof_id)

        claimed_at = to_datetime(claimed_timestamp)
        if claimed_at is not None:
            by_location = self.witness.query_by_location(claimed_at, deadline)
            trace.extend(by_location.trace)
            if by_location.found:
                result = self._observed(by_location.value, claimed_location, proof_id, "location", trace)
                if result.node_count > 0:
                    return result

        if best is not None:
            return best

        if self.ledger_corroboration:
            from_ledger = self.from_ledger(proof_id, claimed_location, trace, deadline)
            if from_ledger is not None:
                return from_ledger

        reason = "no witness nodes reported" if trace.answered else "witness network exhausted"
        return self.synthesizer.synthesize(
            claimed_location,
            claimed_timestamp,
            chain_context=proof_id,
            reason=reason,
            diagnostics={"cascade": trace.to_dict()},
        )

    def _observed(
        self,
        body: Any,
        claimed_location: Optional[GeoPoint],
        proof_id: str,
        query: str,
        trace: CascadeTrace,
    ) -> VerificationResult:
        observation = interpret_response(body)
        location_match, distance = match_location(
            claimed_location, observation.observed_location, self.match_radius_meters
        )
        consensus = score(observation.node_count, location_match, self.policy)
        return VerificationResult.from_score(
            consensus,
            VerificationSource.WITNESS_NETWORK,
            distance_meters=distance,
            observed_location=observation.observed_location,
            witness_nodes=observation.nodes,
            source_detail={
                "query": query,
                "proof_id": proof_id,
                "response": body,
                "cascade": trace.to_dict(),
            },
        )

    def from_ledger(
        self,
        proof_id: str,
        claimed_location: Optional[GeoPoint],
        trace: Optional[CascadeTrace] = None,
        deadline: Optional[Deadline] = None,
    ) -> Optional[VerificationResult]:
        """
        Corroborate from the anchored record.

        Signing addresses count as witnesses only when every address has
        a signature. None when there is no ledger, no record, or no signed
        address to count.
        """
        if self.ledger is None:
            return None
        try:
            record = self.ledger.get_transaction_by_hash(proof_id, deadline=deadline)
        except LedgerReadError as e:
            logger.warning("Ledger unavailable for corroboration", proof_id=proof_id, error=str(e))
            return None
        if record is None:
            return None

        addresses = record.addresses
        signatures = record.signatures
        signatures_valid = len(signatures) > 0 and len(signatures) >= len(addresses)
        if not addresses or not signatures_valid:
            logger.info(
                "Ledger record has no signed addresses to corroborate",
                proof_id=proof_id,
                addresses=len(addresses),
                signatures=len(signatures),
            )
            return None

        observed = None
        anchored = record.payload_for_schema(self.anchored_schema)
        if anchored is not None:
            observed = GeoPoint.from_mapping(anchored.get("data"))

        nodes = [
            WitnessNode(
                address=address,
                node_type=NodeType.BRIDGE if i == 0 else NodeType.SENTINEL,
                corroborated=True,
            )
            for i, address in enumerate(addresses)
        ]
        location_match, distance = match_location(claimed_location, observed, self.match_radius_meters)
        consensus = score(len(addresses), location_match, self.policy)

        logger.info("Derived verification from ledger record", proof_id=proof_id, addresses=len(addresses))
        detail: Dict[str, Any] = {
            "proof_id": proof_id,
            "addresses": addresses,
            "signature_count": len(signatures),
        }
        if trace is not None:
            detail["cascade"] = trace.to_dict()
        return VerificationResult.from_score(
            consensus,
            VerificationSource.LEDGER,
            distance_meters=distance,
            observed_location=observed,
            witness_nodes=nodes,
            source_detail=detail,
        )
