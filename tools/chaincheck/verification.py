"""Location verification results.

``VerificationResult`` is what every verification path returns, whether
the evidence came from the witness network, from the anchored ledger
record, or was synthesized in degraded mode. ``is_degraded`` and the
rendered ``label`` keep synthesized results distinguishable from observed
ones in every serialization.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from tools.chaincheck.scoring import ConsensusScore, ConsensusTier, GeoPoint


class NodeType(Enum):
    """Witness relay class."""
    SENTINEL = "sentinel"   # relay-type-A
    BRIDGE = "bridge"       # relay-type-B


class VerificationSource(Enum):
    """Where a result's evidence came from."""
    WITNESS_NETWORK = "witness-network"
    LEDGER = "ledger"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class WitnessNode:
    """A network participant that corroborated (or was synthesized to corroborate) a claim."""
    address: str
    node_type: NodeType = NodeType.SENTINEL
    approximate_location: Optional[GeoPoint] = None
    corroborated: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "type": self.node_type.value,
            "location": self.approximate_location.to_dict() if self.approximate_location else None,
            "corroborated": self.corroborated,
        }


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class VerificationResult:
    """Outcome of verifying a claimed location/time against independent witnesses."""
    verified: bool
    confidence_percent: int
    node_count: int
    consensus_tier: ConsensusTier
    is_degraded: bool
    source: VerificationSource
    location_match: Optional[bool] = None
    distance_from_claimed_meters: Optional[float] = None
    observed_location: Optional[GeoPoint] = None
    witness_nodes: List[WitnessNode] = field(default_factory=list)
    source_detail: Dict[str, Any] = field(default_factory=dict)
    checked_at: str = field(default_factory=_utc_now)

    @classmethod
    def from_score(
        cls,
        consensus: ConsensusScore,
        source: VerificationSource,
        distance_meters: Optional[float] = None,
        observed_location: Optional[GeoPoint] = None,
        witness_nodes: Optional[List[WitnessNode]] = None,
        source_detail: Optional[Dict[str, Any]] = None,
    ) -> "VerificationResult":
        return cls(
            verified=consensus.verified,
            confidence_percent=consensus.confidence_percent,
            node_count=consensus.node_count,
            consensus_tier=consensus.consensus_tier,
            is_degraded=source is VerificationSource.DEGRADED,
            source=source,
            location_match=consensus.location_match,
            distance_from_claimed_meters=distance_meters,
            observed_location=observed_location,
            witness_nodes=list(witness_nodes or []),
            source_detail=dict(source_detail or {}),
        )

    @property
    def label(self) -> str:
        if self.is_degraded:
            return "DEGRADED (synthesized)"
        return "VERIFIED" if self.verified else "UNVERIFIED"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "verified": self.verified,
            "is_degraded": self.is_degraded,
            "source": self.source.value,
            "confidence_percent": self.confidence_percent,
            "node_count": self.node_count,
            "consensus_tier": self.consensus_tier.value,
            "location_match": self.location_match,
            "distance_from_claimed_meters": (
                round(self.distance_from_claimed_meters, 2)
                if self.distance_from_claimed_meters is not None else None
            ),
            "observed_location": self.observed_location.to_dict() if self.observed_location else None,
            "witness_nodes": [n.to_dict() for n in self.witness_nodes],
            "source_detail": self.source_detail,
            "checked_at": self.checked_at,
        }
