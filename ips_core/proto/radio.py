"""
Radio Anchor Schemas.

Static anchor configuration (beacons / access points at surveyed
positions) and the per-update distance estimate derived from RSSI.
"""

from dataclasses import dataclass
from typing import Tuple
import math
import sys


@dataclass(frozen=True)
class AnchorFix:
    """
    Radio anchor at a known 2D position.

    Attributes:
        anchor_id: Anchor identifier (MAC address or BSSID)
        position: (x, y) in the map frame (m)
        tx_power_dbm: Calibrated RSSI at 1 m (dBm)
    """

    anchor_id: str
    position: Tuple[float, float]
    tx_power_dbm: float = -59.0

    def __post_init__(self):
        """Reject malformed configuration."""
        if not self.anchor_id:
            raise ValueError("Anchor ID cannot be empty")

        if len(self.position) != 2 or not all(math.isfinite(c) for c in self.position):
            raise ValueError(f"Anchor {self.anchor_id}: invalid position {self.position}")

        if not math.isfinite(self.tx_power_dbm):
            raise ValueError(f"Anchor {self.anchor_id}: invalid tx power {self.tx_power_dbm}")

    @property
    def x(self) -> float:
        return self.position[0]

    @property
    def y(self) -> float:
        return self.position[1]


@dataclass(frozen=True)
class DistanceEstimate:
    """
    Distance to one anchor with a confidence score.

    Attributes:
        distance_m: Estimated distance (m); float max when there is no signal
        confidence: Combined confidence (0-1)
        variance_score: RSSI stability sub-score (0-1)
        strength_score: Absolute signal strength sub-score (0-1)
        recency_score: Measurement age sub-score (0-1)
    """

    distance_m: float
    confidence: float
    variance_score: float = 0.0
    strength_score: float = 0.0
    recency_score: float = 0.0

    def __post_init__(self):
        """Clamp scores into [0, 1]."""
        for name in ('confidence', 'variance_score', 'strength_score', 'recency_score'):
            value = getattr(self, name)
            if math.isnan(value):
                value = 0.0
            object.__setattr__(self, name, min(1.0, max(0.0, value)))

    @property
    def has_signal(self) -> bool:
        return self.distance_m < sys.float_info.max and self.confidence > 0.0

    @classmethod
    def no_signal(cls) -> "DistanceEstimate":
        """Estimate for an anchor that is not heard at all."""
        return cls(distance_m=sys.float_info.max, confidence=0.0)
