"""
CHAINCHECK Proof Verification Engine

The read-only verification core of the delivery-tracking product. Four
operations are exposed upward; each returns a structured result and none
raises for upstream failures.

    ┌─────────────────────────────────────────────────────────────────┐
    │                    ProofVerificationEngine                       │
    │  verify_location  walk_provenance_chain  locate_commit_block     │
    │  detect_tampering                      describe_record           │
    └──────┬─────────────────┬──────────────────┬──────────────┬──────┘
           │                 │                  │              │
    ┌──────▼──────┐   ┌──────▼──────┐   ┌───────▼─────┐  ┌─────▼──────┐
    │  Location   │   │   Chain     │   │   Block     │  │  Tamper    │
    │  Verifier   │   │   Walker    │   │   Locator   │  │  Detector  │
    └──┬───────┬──┘   └──────┬──────┘   └───────┬─────┘  └──┬──────┬──┘
       │       │             │                  │           │      │
    witness  degraded ───────┴── LedgerReader ──┴───────────┘   content
    network  synthesizer                                        store

Collaborators are built once by ``create_engine`` from configuration and
injected; the engine itself holds no mutable state. The HTTP clients it
owns are released by ``close()`` or by leaving a ``with`` block.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import httpx

from tools.chaincheck.chain import ChainLink, ChainWalker
from tools.chaincheck.config import ChainCheckConfig, get_config
from tools.chaincheck.content_store import ContentStore, HttpContentStore
from tools.chaincheck.degraded import DegradedModeSynthesizer
from tools.chaincheck.ledger import JsonRpcLedgerReader, LedgerReadError, LedgerReader
from tools.chaincheck.locator import BlockLocation, BlockLocator, unknown
from tools.chaincheck.observability import (
    ChainCheckLayer,
    get_correlation_id,
    get_logger,
    get_tracer,
    timed_operation,
)
from tools.chaincheck.resilience import Deadline, Fallback
from tools.chaincheck.scoring import GeoPoint
from tools.chaincheck.tamper import TamperDetector, TamperVerdict, Verdict
from tools.chaincheck.transport import HttpTransport, api_key_headers
from tools.chaincheck.verification import VerificationResult
from tools.chaincheck.witness import LocationVerifier, WitnessNetworkClient

logger = get_logger("engine", ChainCheckLayer.ENGINE)

ClaimedLocation = Union[GeoPoint, Mapping[str, Any], Tuple[float, float], None]


def as_geopoint(value: ClaimedLocation) -> Optional[GeoPoint]:
    """Accept a GeoPoint, a ``{latitude, longitude}`` mapping or a ``(lat, lon)`` pair."""
    if value is None or isinstance(value, GeoPoint):
        return value
    if isinstance(value, Mapping):
        point = GeoPoint.from_mapping(dict(value))
        if point is None:
            raise ValueError(f"Invalid location: {dict(value)!r}")
        return point
    if isinstance(value, (tuple, list)) and len(value) == 2:
        return GeoPoint(float(value[0]), float(value[1]))
    raise ValueError(f"Invalid location: {value!r}")


class ProofVerificationEngine:
    """Facade over the verifier, walker, locator and tamper detector."""

    def __init__(
        self,
        verifier: LocationVerifier,
        walker: ChainWalker,
        locator: BlockLocator,
        detector: TamperDetector,
        ledger: LedgerReader,
        default_chain_depth: int = 5,
        resources: Sequence[Any] = (),
    ):
        self.verifier = verifier
        self.walker = walker
        self.locator = locator
        self.detector = detector
        self.ledger = ledger
        self.default_chain_depth = default_chain_depth
        self._resources = list(resources)

    def close(self) -> None:
        """Close the HTTP clients built for this engine."""
        while self._resources:
            self._resources.pop().close()

    def __enter__(self) -> "ProofVerificationEngine":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @timed_operation(logger, "verify_location")
    def verify_location(
        self,
        proof_id: str,
        claimed_location: ClaimedLocation = None,
        claimed_timestamp: Any = None,
        deadline: Optional[Deadline] = None,
    ) -> VerificationResult:
        """
        Corroborate a claimed location/time for an anchored proof.

        Always returns a result; ``is_degraded`` marks synthesized ones.
        """
        def degraded(error: Exception) -> VerificationResult:
            return self.verifier.synthesizer.synthesize(
                None,
                claimed_timestamp,
                chain_context=proof_id,
                reason=f"verification failed: {error}",
            )

        def run() -> VerificationResult:
            point = as_geopoint(claimed_location)
            with get_tracer().span("verify_location", ChainCheckLayer.ENGINE, proof_id=proof_id) as span:
                result = self.verifier.verify(proof_id, point, claimed_timestamp, deadline)
                span.set_attribute("is_degraded", result.is_degraded)
                span.set_attribute("confidence", result.confidence_percent)
                result.source_detail.setdefault("correlation_id", get_correlation_id())
                return result

        return Fallback(fallback_func=degraded, name="verify_location").execute(run)

    @timed_operation(logger, "walk_provenance_chain")
    def walk_provenance_chain(
        self,
        proof_id: str,
        max_depth: Optional[int] = None,
        tracking_address: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[ChainLink]:
        """Provenance chain newest-first; partial when the ledger runs out."""
        depth = self.default_chain_depth if max_depth is None else max_depth

        def run() -> List[ChainLink]:
            with get_tracer().span("walk_provenance_chain", ChainCheckLayer.ENGINE, proof_id=proof_id) as span:
                links = self.walker.walk(proof_id, depth, tracking_address, deadline)
                span.set_attribute("links", len(links))
                return links

        return Fallback(fallback_func=lambda e: [], name="walk_provenance_chain").execute(run)

    @timed_operation(logger, "locate_commit_block")
    def locate_commit_block(self, tx_hash: str, deadline: Optional[Deadline] = None) -> BlockLocation:
        def run() -> BlockLocation:
            with get_tracer().span("locate_commit_block", ChainCheckLayer.ENGINE, tx_hash=tx_hash) as span:
                location = self.locator.locate(tx_hash, deadline)
                span.set_attribute("status", location.status.value)
                return location

        return Fallback(
            fallback_func=lambda e: unknown(f"locate failed: {e}"),
            name="locate_commit_block",
        ).execute(run)

    @timed_operation(logger, "detect_tampering")
    def detect_tampering(
        self,
        proof_id: str,
        locally_held_record: Optional[Mapping[str, Any]] = None,
        deadline: Optional[Deadline] = None,
    ) -> TamperVerdict:
        def run() -> TamperVerdict:
            with get_tracer().span("detect_tampering", ChainCheckLayer.ENGINE, proof_id=proof_id) as span:
                verdict = self.detector.detect(proof_id, locally_held_record, deadline)
                span.set_attribute("verdict", verdict.verdict.value)
                return verdict

        return Fallback(
            fallback_func=lambda e: TamperVerdict(
                verdict=Verdict.INCONCLUSIVE,
                explanation=f"tamper check failed: {e}",
                proof_id=proof_id,
            ),
            name="detect_tampering",
        ).execute(run)

    def describe_record(self, proof_id: str) -> Dict[str, Any]:
        """Cryptographic details of an anchored record, with structural problems listed."""
        try:
            record = self.ledger.get_transaction_by_hash(proof_id)
        except LedgerReadError as e:
            return {"found": False, "proof_id": proof_id, "error": str(e)}
        if record is None:
            return {"found": False, "proof_id": proof_id}
        details = record.to_dict()
        details.update({"found": True, "proof_id": proof_id, "errors": record.validate()})
        return details


def create_engine(
    config: Optional[ChainCheckConfig] = None,
    http_transport: Optional[httpx.BaseTransport] = None,
    ledger: Optional[LedgerReader] = None,
    content_store: Optional[ContentStore] = None,
    sleep: Any = None,
) -> ProofVerificationEngine:
    """
    Build an engine from configuration.

    ``http_transport`` replaces the network for every HTTP collaborator
    (tests pass an ``httpx.MockTransport``). ``ledger`` and
    ``content_store`` replace the configured collaborators outright and
    stay owned by the caller.
    """
    config = config or get_config()
    witness_cfg = config.witness
    ledger_cfg = config.ledger
    store_cfg = config.content_store
    radius = config.verification.location_match_radius_meters.get()
    anchored_schema = store_cfg.anchored_schema.get()
    headers = api_key_headers(witness_cfg.api_key.get())
    resources: List[Any] = []

    if ledger is None:
        ledger = JsonRpcLedgerReader(
            ledger_cfg.rpc_url.get(),
            method_prefix=ledger_cfg.method_prefix.get(),
            timeout_seconds=ledger_cfg.timeout_seconds.get(),
            transport=http_transport,
        )
        resources.append(ledger)

    if content_store is None:
        store_transport = HttpTransport(
            store_cfg.base_url.get(),
            headers=headers,
            timeout_seconds=store_cfg.timeout_seconds.get(),
            transport=http_transport,
        )
        resources.append(store_transport)
        content_store = HttpContentStore(
            store_transport,
            payload_paths=store_cfg.payload_paths.get(),
            timeout_seconds=store_cfg.timeout_seconds.get(),
            schema=anchored_schema,
            disabled=store_cfg.disabled.get(),
        )

    witness = None
    if not witness_cfg.disabled.get():
        witness_transport = HttpTransport(
            witness_cfg.base_url.get(),
            headers=headers,
            timeout_seconds=witness_cfg.timeout_seconds.get(),
            transport=http_transport,
        )
        resources.append(witness_transport)
        witness = WitnessNetworkClient(
            witness_transport,
            hash_query_paths=witness_cfg.hash_query_paths.get(),
            location_query_paths=witness_cfg.location_query_paths.get(),
            result_path=witness_cfg.result_path.get(),
            timeout_seconds=witness_cfg.timeout_seconds.get(),
            poll_delay_seconds=witness_cfg.poll_delay_seconds.get(),
            poll_timeout_seconds=witness_cfg.poll_timeout_seconds.get(),
            query_window_seconds=witness_cfg.query_window_seconds.get(),
            archive=witness_cfg.archive.get(),
            archivist_url=witness_cfg.archivist_url.get(),
            sleep=sleep,
        )

    synthesizer = DegradedModeSynthesizer(match_radius_meters=radius)
    verifier = LocationVerifier(
        witness,
        synthesizer,
        ledger=ledger,
        disabled=witness_cfg.disabled.get(),
        ledger_corroboration=config.verification.ledger_corroboration.get(),
        match_radius_meters=radius,
        anchored_schema=anchored_schema,
    )
    return ProofVerificationEngine(
        verifier=verifier,
        walker=ChainWalker(ledger),
        locator=BlockLocator(ledger, max_scan_blocks=ledger_cfg.max_scan_blocks.get()),
        detector=TamperDetector(ledger, content_store, anchored_schema=anchored_schema),
        ledger=ledger,
        default_chain_depth=ledger_cfg.default_chain_depth.get(),
        resources=resources,
    )
