"""
Relative Motion and PDR Event Schemas.

MotionDelta feeds the fusion engine's predict step; StepEvent and
HeadingState are the outputs of the PDR front end and double as the
diagnostic values exposed to collaborators.
"""

from dataclasses import dataclass
from typing import Optional
from enum import Enum
import math


class MotionSource(Enum):
    """Origin of a relative motion sample."""

    PDR = "pdr"
    VISUAL = "visual"


class HeadingSource(Enum):
    """Sensor that dominated the latest heading update."""

    GYROSCOPE = "gyroscope"
    MAGNETOMETER = "magnetometer"
    ROTATION_VECTOR = "rotation_vector"


class HeadingAccuracy(Enum):
    """Coarse heading quality band."""

    LOW = 0       # Gyroscope only or cold start
    MEDIUM = 1    # Gyroscope with magnetometer corrections
    HIGH = 2      # Rotation vector or converged Kalman estimate


@dataclass(frozen=True)
class MotionDelta:
    """
    Relative motion sample in the unicycle model.

    Attributes:
        velocity_mps: Forward speed (m/s)
        angular_velocity_rps: Turn rate (rad/s, counter-clockwise positive)
        timestamp_ns: Time the sample was produced
        source: PDR or visual tracking
        duration_s: Interval the sample covers (s); a PDR step sets its
            step period, None means "until the next tick"
    """

    velocity_mps: float
    angular_velocity_rps: float
    timestamp_ns: int = 0
    source: MotionSource = MotionSource.PDR
    duration_s: Optional[float] = None

    @property
    def is_valid(self) -> bool:
        if self.duration_s is not None and not (math.isfinite(self.duration_s) and self.duration_s > 0):
            return False
        return math.isfinite(self.velocity_mps) and math.isfinite(self.angular_velocity_rps)

    @property
    def is_straight(self) -> bool:
        """True for motion without rotation."""
        return abs(self.angular_velocity_rps) < 1e-4


@dataclass(frozen=True)
class StepEvent:
    """
    Result of feeding one acceleration sample to a step detector.

    Attributes:
        step_detected: True if this sample completed an accepted step
        step_count: Running step count after this sample
        timestamp_ns: Sample time
        filtered_magnitude: Acceleration magnitude after smoothing
        peak_valley_height: Height of the accepted step (0 otherwise)
        peak_magnitude: Peak magnitude of the accepted step (0 otherwise)
    """

    step_detected: bool
    step_count: int
    timestamp_ns: int
    filtered_magnitude: float = 0.0
    peak_valley_height: float = 0.0
    peak_magnitude: float = 0.0


@dataclass(frozen=True)
class HeadingState:
    """
    Heading estimate.

    Attributes:
        heading_deg: Heading in degrees, [0, 360), 0 = north, clockwise
        source: Sensor behind the latest update
        accuracy: Quality band
        timestamp_ns: Time of the update
        heading_rate_dps: Heading rate (deg/s), Kalman variant only
        variance: Heading variance (rad^2), Kalman variant only
        gyro_heading_change_deg: Gyroscope contribution of this update
    """

    heading_deg: float
    source: HeadingSource = HeadingSource.GYROSCOPE
    accuracy: HeadingAccuracy = HeadingAccuracy.LOW
    timestamp_ns: int = 0
    heading_rate_dps: Optional[float] = None
    variance: Optional[float] = None
    gyro_heading_change_deg: float = 0.0

    def __post_init__(self):
        """Keep heading inside [0, 360)."""
        heading = self.heading_deg % 360.0
        if heading >= 360.0:
            heading = 0.0
        object.__setattr__(self, 'heading_deg', heading)

    @property
    def heading_rad(self) -> float:
        return math.radians(self.heading_deg)
