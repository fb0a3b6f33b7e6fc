"""
Degraded-mode synthesis.

When no real witness evidence can be obtained (the witness network is
switched off, every endpoint failed, or the answer named no nodes), the
engine still returns a result of the normal shape, built from a seed
derived from the claim itself:

    seed       = sha256("<lat>,<lon>,<timestamp>[,<context>]")
    node_count = 3 + (first seed byte % 5)                      # 3..7
    node i     = 0x + sha256("<lat>,<lon>,<i>")[:40], sentinel/bridge alternating
    jitter     = random.Random(seed), +/- 0.0005 degrees per node

The same claim always yields the same nodes, confidence and tier. Scoring
goes through ``scoring.score`` exactly as for observed results, and every
result is marked ``is_degraded=True``.
"""

from __future__ import annotations

import hashlib
import random
from typing import Any, Dict, List, Optional

from tools.chaincheck.observability import ChainCheckLayer, get_logger
from tools.chaincheck.scoring import DEFAULT_POLICY, GeoPoint, ScoringPolicy, match_location, score
from tools.chaincheck.verification import NodeType, VerificationResult, VerificationSource, WitnessNode

logger = get_logger("degraded", ChainCheckLayer.WITNESS)

MIN_SYNTHETIC_NODES = 3
SYNTHETIC_NODE_SPREAD = 5
JITTER_DEGREES = 0.001


def _fmt(value: Any) -> str:
    """Render numbers the way the claim was written (``12.0`` -> ``12``)."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return "" if value is None else str(value)


class DegradedModeSynthesizer:
    """Builds deterministic, clearly-flagged stand-in verification results."""

    def __init__(
        self,
        match_radius_meters: float = 100.0,
        policy: ScoringPolicy = DEFAULT_POLICY,
    ):
        self.match_radius_meters = match_radius_meters
        self.policy = policy

    def seed_for(
        self,
        claimed_location: Optional[GeoPoint],
        claimed_timestamp: Any = None,
        chain_context: Optional[str] = None,
    ) -> str:
        lat = _fmt(claimed_location.latitude) if claimed_location else ""
        lon = _fmt(claimed_location.longitude) if claimed_location else ""
        parts = [lat, lon, _fmt(claimed_timestamp)]
        if chain_context:
            parts.append(chain_context)
        return hashlib.sha256(",".join(parts).encode("utf-8")).hexdigest()

    def synthesize(
        self,
        claimed_location: Optional[GeoPoint] = None,
        claimed_timestamp: Any = None,
        chain_context: Optional[str] = None,
        reason: str = "witness network unavailable",
        diagnostics: Optional[Dict[str, Any]] = None,
    ) -> VerificationResult:
        seed = self.seed_for(claimed_location, claimed_timestamp, chain_context)
        node_count = MIN_SYNTHETIC_NODES + int(seed[:2], 16) % SYNTHETIC_NODE_SPREAD
        rng = random.Random(seed)

        nodes = self._nodes(claimed_location, node_count, rng)
        observed = self._centroid(nodes)
        location_match, distance = match_location(claimed_location, observed, self.match_radius_meters)
        consensus = score(node_count, location_match, self.policy)

        logger.warning(
            "Returning synthesized verification",
            operation="synthesize",
            reason=reason,
            node_count=node_count,
            confidence=consensus.confidence_percent,
        )

        detail: Dict[str, Any] = {"degradation_reason": reason, "seed": seed}
        if chain_context:
            detail["proof_id"] = chain_context
        if diagnostics:
            detail.update(diagnostics)

        return VerificationResult.from_score(
            consensus,
            VerificationSource.DEGRADED,
            distance_meters=distance,
            observed_location=observed,
            witness_nodes=nodes,
            source_detail=detail,
        )

    def _nodes(
        self,
        claimed_location: Optional[GeoPoint],
        node_count: int,
        rng: random.Random,
    ) -> List[WitnessNode]:
        lat = _fmt(claimed_location.latitude) if claimed_location else ""
        lon = _fmt(claimed_location.longitude) if claimed_location else ""
        nodes = []
        for i in range(node_count):
            address = "0x" + hashlib.sha256(f"{lat},{lon},{i}".encode("utf-8")).hexdigest()[:40]
            location = None
            if claimed_location is not None:
                location = GeoPoint(
                    latitude=max(-90.0, min(90.0, claimed_location.latitude + (rng.random() - 0.5) * JITTER_DEGREES)),
                    longitude=max(-180.0, min(180.0, claimed_location.longitude + (rng.random() - 0.5) * JITTER_DEGREES)),
                )
            nodes.append(WitnessNode(
                address=address,
                node_type=NodeType.SENTINEL if i % 2 == 0 else NodeType.BRIDGE,
                approximate_location=location,
                corroborated=True,
            ))
        return nodes

    @staticmethod
    def _centroid(nodes: List[WitnessNode]) -> Optional[GeoPoint]:
        points = [n.approximate_location for n in nodes if n.approximate_location is not None]
        if not points:
            return None
        return GeoPoint(
            latitude=sum(p.latitude for p in points) / len(points),
            longitude=sum(p.longitude for p in points) / len(points),
        )
