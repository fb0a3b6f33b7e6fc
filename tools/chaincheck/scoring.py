"""
Consensus scoring.

Maps the number of corroborating witness nodes (and, when a claimed
location was supplied, whether it matched) to a confidence percentage,
a consensus tier and a verified flag. Real and synthesized results are
scored by the same function, so a degraded result can never look more
certain than a real one with the same node count.

    nodes >= 5  ->  95%   high
    nodes >= 3  ->  85%   medium
    nodes >= 1  ->  70%   medium
    nodes == 0  ->  50%   low
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

EARTH_RADIUS_METERS = 6_371_000.0


class ConsensusTier(Enum):
    """Qualitative bucket derived from confidence."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")

    @classmethod
    def from_mapping(cls, data: Any) -> Optional["GeoPoint"]:
        """Build from ``{latitude, longitude}`` (or ``lat``/``lon``); None if absent or invalid."""
        if not isinstance(data, dict):
            return None
        lat = data.get("latitude", data.get("lat"))
        lon = data.get("longitude", data.get("lon", data.get("lng")))
        if isinstance(lat, bool) or isinstance(lon, bool):
            return None
        try:
            return cls(float(lat), float(lon))
        except (TypeError, ValueError):
            return None

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


def haversine_meters(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two points in meters."""
    d_lat = math.radians(b.latitude - a.latitude)
    d_lon = math.radians(b.longitude - a.longitude)
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def match_location(
    claimed: Optional[GeoPoint],
    observed: Optional[GeoPoint],
    radius_meters: float,
) -> Tuple[Optional[bool], Optional[float]]:
    """
    Compare a claimed location with an observed one.

    Returns ``(location_match, distance_meters)``. Both are None when
    there was nothing to compare.
    """
    if claimed is None or observed is None:
        return None, None
    distance = haversine_meters(claimed, observed)
    return distance <= radius_meters, distance


@dataclass(frozen=True)
class ScoringPolicy:
    """Node-count and confidence thresholds. Ordered from strictest to loosest."""
    node_thresholds: Tuple[Tuple[int, int], ...] = ((5, 95), (3, 85), (1, 70))
    floor_confidence: int = 50
    high_confidence: int = 90
    medium_confidence: int = 70
    verified_confidence: int = 70

    def confidence_for(self, node_count: int) -> int:
        for minimum, confidence in self.node_thresholds:
            if node_count >= minimum:
                return confidence
        return self.floor_confidence

    def tier_for(self, confidence: int) -> ConsensusTier:
        if confidence >= self.high_confidence:
            return ConsensusTier.HIGH
        if confidence >= self.medium_confidence:
            return ConsensusTier.MEDIUM
        return ConsensusTier.LOW


DEFAULT_POLICY = ScoringPolicy()


@dataclass(frozen=True)
class ConsensusScore:
    """Outcome of scoring a witness response."""
    node_count: int
    confidence_percent: int
    consensus_tier: ConsensusTier
    verified: bool
    location_match: Optional[bool] = None
    reasons: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_count": self.node_count,
            "confidence_percent": self.confidence_percent,
            "consensus_tier": self.consensus_tier.value,
            "verified": self.verified,
            "location_match": self.location_match,
            "reasons": list(self.reasons),
        }


def score(
    node_count: int,
    location_match: Optional[bool] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> ConsensusScore:
    """
    Score a node count.

    ``location_match`` is None when no claimed location was supplied; in
    that case it does not affect ``verified``. Pure: same inputs, same
    output.
    """
    node_count = max(0, int(node_count))
    confidence = policy.confidence_for(node_count)
    tier = policy.tier_for(confidence)

    reasons = []
    if node_count == 0:
        reasons.append("no corroborating witness nodes")
    if confidence < policy.verified_confidence:
        reasons.append(f"confidence {confidence}% below {policy.verified_confidence}%")
    if location_match is False:
        reasons.append("claimed location outside match radius")

    verified = node_count > 0 and confidence >= policy.verified_confidence and location_match is not False
    return ConsensusScore(
        node_count=node_count,
        confidence_percent=confidence,
        consensus_tier=tier,
        verified=verified,
        location_match=location_match,
        reasons=tuple(reasons),
    )
