"""
Sensor Reading Schemas.

Timestamped scalar and vector readings consumed by the estimation core.
Readings are immutable once created and are owned by the producing feed
(radio scanner, inertial sampler); estimators only read them.

Timestamps are monotonic nanoseconds, matching the platform sensor clock.
"""

from dataclasses import dataclass
from typing import Optional, Union
import math

import numpy as np


NANOS_PER_MILLI = 1_000_000
NANOS_PER_SECOND = 1_000_000_000


@dataclass(frozen=True)
class Vector3:
    """3-axis sensor value (accelerometer, gyroscope or magnetometer)."""

    x: float
    y: float
    z: float

    def magnitude(self) -> float:
        """Euclidean norm of the vector."""
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)

    def as_array(self) -> np.ndarray:
        """Vector as a float numpy array."""
        return np.array([self.x, self.y, self.z], dtype=float)

    @property
    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in (self.x, self.y, self.z))


@dataclass(frozen=True)
class RotationVector:
    """
    Orientation quaternion as reported by a fused rotation-vector sensor.

    Attributes:
        x, y, z: Vector part of the unit quaternion
        w: Scalar part; derived from the vector part when not reported
    """

    x: float
    y: float
    z: float
    w: Optional[float] = None

    @property
    def scalar(self) -> float:
        """Scalar component, computed as sqrt(1 - |v|^2) when absent."""
        if self.w is not None:
            return self.w
        remainder = 1.0 - self.x * self.x - self.y * self.y - self.z * self.z
        return math.sqrt(remainder) if remainder > 0 else 0.0


@dataclass(frozen=True)
class Reading:
    """
    Timestamped sensor reading.

    Attributes:
        value: Scalar (RSSI in dBm) or vector (Vector3 / RotationVector)
        timestamp_ns: Monotonic timestamp in nanoseconds
    """

    value: Union[float, Vector3, RotationVector]
    timestamp_ns: int

    def __post_init__(self):
        """Validate timestamp."""
        if self.timestamp_ns < 0:
            raise ValueError(f"Timestamp cannot be negative: {self.timestamp_ns}")

    @property
    def timestamp_ms(self) -> float:
        """Timestamp in milliseconds."""
        return self.timestamp_ns / NANOS_PER_MILLI

    @property
    def timestamp_s(self) -> float:
        """Timestamp in seconds."""
        return self.timestamp_ns / NANOS_PER_SECOND

    @property
    def is_scalar(self) -> bool:
        return isinstance(self.value, (int, float))

    def magnitude(self) -> float:
        """Absolute value for scalars, vector norm for Vector3."""
        if isinstance(self.value, Vector3):
            return self.value.magnitude()
        if isinstance(self.value, RotationVector):
            raise TypeError("Rotation vector readings have no magnitude")
        return abs(float(self.value))

    def age_ms(self, now_ns: int) -> float:
        """Age of the reading relative to now_ns (ms, never negative)."""
        return max(0.0, (now_ns - self.timestamp_ns) / NANOS_PER_MILLI)


@dataclass(frozen=True)
class InertialSample:
    """
    One tick of the inertial feed.

    Only the accelerometer is mandatory; heading estimators degrade to
    gyroscope-only or absolute-only operation when the others are absent.
    """

    accelerometer: Reading
    gyroscope: Optional[Reading] = None
    magnetometer: Optional[Reading] = None
    rotation_vector: Optional[Reading] = None

    @property
    def timestamp_ns(self) -> int:
        """Reference timestamp (gyroscope when present)."""
        if self.gyroscope is not None:
            return self.gyroscope.timestamp_ns
        return self.accelerometer.timestamp_ns


def vector_reading(x: float, y: float, z: float, timestamp_ns: int) -> Reading:
    """Convenience constructor for a Vector3 reading."""
    return Reading(Vector3(x, y, z), timestamp_ns)


def rssi_reading(rssi_dbm: float, timestamp_ns: int) -> Reading:
    """Convenience constructor for a scalar RSSI reading."""
    return Reading(float(rssi_dbm), timestamp_ns)
