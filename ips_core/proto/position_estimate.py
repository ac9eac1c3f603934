"""
Position Estimate Output Schema.

Defines the position-with-uncertainty type shared by the trilateration
solver (absolute fixes) and the fusion engine (authoritative output).

A distinguished invalid value (x=NaN, y=NaN, accuracy=+inf, confidence=0)
stands for "no usable estimate" and flows through every consumer instead
of an exception.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
from enum import Enum
import math


class PositionSource(Enum):
    """Producer of a position estimate."""

    RADIO = "radio"                 # Trilateration from beacons / access points
    MOTION = "motion"               # Relative motion only (PDR / visual)
    FUSION = "fusion"               # FusionEngine output
    GROUND_TRUTH = "ground_truth"   # Survey / test reference
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class PositionEstimate:
    """
    2D position estimate with uncertainty.

    Attributes:
        x: X coordinate in the map frame (m)
        y: Y coordinate in the map frame (m)
        accuracy_m: 1-sigma horizontal accuracy (m), +inf when invalid
        confidence: Confidence (0-1, higher is better)
        source: Producer of this estimate
        timestamp_ns: Time of the estimate (monotonic ns)

        # Optional uncertainty
        covariance: (sigma_x, sigma_y, sigma_theta); sigma_theta may be None

        # Optional solver diagnostics
        num_anchors_used: Anchors contributing to a radio fix
        residual_m: Weighted RMS range residual (m)
        geometry_dop: Geometric dilution of precision of the anchor layout
    """

    x: float
    y: float
    accuracy_m: float
    confidence: float
    source: PositionSource = PositionSource.UNKNOWN
    timestamp_ns: int = 0

    covariance: Optional[Tuple[float, float, Optional[float]]] = None
    num_anchors_used: int = 0
    residual_m: Optional[float] = None
    geometry_dop: Optional[float] = None

    def __post_init__(self):
        """Clamp confidence into [0, 1]."""
        confidence = self.confidence
        if math.isnan(confidence):
            confidence = 0.0
        object.__setattr__(self, 'confidence', min(1.0, max(0.0, confidence)))

        if self.accuracy_m < 0:
            raise ValueError(f"Accuracy cannot be negative: {self.accuracy_m}")

    @property
    def is_valid(self) -> bool:
        """True unless this is the invalid sentinel."""
        return (
            not math.isnan(self.x) and
            not math.isnan(self.y) and
            self.accuracy_m < math.inf
        )

    @property
    def position(self) -> Tuple[float, float]:
        """(x, y) in meters."""
        return (self.x, self.y)

    def distance_to(self, other: "PositionEstimate") -> float:
        """Euclidean distance to another estimate (NaN if either is invalid)."""
        if not (self.is_valid and other.is_valid):
            return math.nan
        return math.hypot(self.x - other.x, self.y - other.y)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging / serialization."""
        return {
            'x': self.x,
            'y': self.y,
            'accuracy_m': self.accuracy_m,
            'confidence': self.confidence,
            'source': self.source.name,
            'timestamp_ns': self.timestamp_ns,
            'covariance': self.covariance,
            'num_anchors_used': self.num_anchors_used,
            'residual_m': self.residual_m,
            'geometry_dop': self.geometry_dop,
            'is_valid': self.is_valid,
        }


def create_invalid(timestamp_ns: int = 0) -> PositionEstimate:
    """
    Create the invalid ("no fix") position estimate.

    Args:
        timestamp_ns: Time at which the estimate was requested

    Returns:
        PositionEstimate with NaN position, infinite accuracy, zero confidence
    """
    return PositionEstimate(
        x=math.nan,
        y=math.nan,
        accuracy_m=math.inf,
        confidence=0.0,
        source=PositionSource.UNKNOWN,
        timestamp_ns=timestamp_ns,
    )


def is_valid(estimate: Optional[PositionEstimate]) -> bool:
    """Validity predicate that also accepts None (no estimate at all)."""
    return estimate is not None and estimate.is_valid
