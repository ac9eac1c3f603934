"""
Heading Estimation Strategies.

Two interchangeable estimators behind the HeadingEstimator interface:

- ComplementaryHeadingEstimator: gyroscope integration blended with an
  absolute reference using fixed weights.
- KalmanHeadingEstimator: scalar Kalman filter over (heading, heading rate)
  with adaptive noise and innovation-gated corrections.

Absolute references, in order of preference: rotation vector, then
accelerometer + magnetometer (tilt-compensated compass).

The strategy is chosen when the pipeline is constructed; both are
resettable to a cold start.
"""

from abc import ABC, abstractmethod
from typing import Optional, Tuple
from dataclasses import dataclass
import logging
import math

from ips_core.proto.readings import InertialSample, Vector3, RotationVector, NANOS_PER_SECOND
from ips_core.proto.motion import HeadingState, HeadingSource, HeadingAccuracy
from ips_core.pdr.orientation import (
    RADIANS_TO_DEGREES,
    normalize_heading,
    heading_difference,
    wrap_angle_rad,
    heading_from_rotation_vector,
    heading_from_magnetometer,
)
from ips_core.metrics import get_metrics


logger = logging.getLogger(__name__)


def absolute_reference(sample: InertialSample) -> Tuple[Optional[float], Optional[HeadingSource]]:
    """
    Best available absolute heading in a sample.

    Returns:
        (heading_deg, source), or (None, None) when the sample carries no
        usable absolute reference
    """
    if sample.rotation_vector is not None and isinstance(sample.rotation_vector.value, RotationVector):
        return heading_from_rotation_vector(sample.rotation_vector.value), HeadingSource.ROTATION_VECTOR

    if sample.magnetometer is not None and isinstance(sample.magnetometer.value, Vector3):
        if isinstance(sample.accelerometer.value, Vector3):
            heading = heading_from_magnetometer(sample.accelerometer.value, sample.magnetometer.value)
            if heading is not None:
                return heading, HeadingSource.MAGNETOMETER

    return None, None


def _gyro_z(sample: InertialSample) -> Optional[float]:
    if sample.gyroscope is None or not isinstance(sample.gyroscope.value, Vector3):
        return None
    z = sample.gyroscope.value.z
    return z if math.isfinite(z) else None


class HeadingEstimator(ABC):
    """Common interface of the heading strategies."""

    def __init__(self):
        self._current: Optional[HeadingState] = None
        self._last_timestamp_ns: Optional[int] = None

    @property
    def current(self) -> Optional[HeadingState]:
        """Latest heading state, None before the first update."""
        return self._current

    def is_initialized(self) -> bool:
        return self._last_timestamp_ns is not None

    @abstractmethod
    def update(self, sample: InertialSample) -> HeadingState:
        """Advance the estimate with one inertial sample."""

    def reset(self):
        """Return to cold start."""
        self._current = None
        self._last_timestamp_ns = None

    def _elapsed_s(self, timestamp_ns: int) -> float:
        dt = (timestamp_ns - self._last_timestamp_ns) / NANOS_PER_SECOND
        self._last_timestamp_ns = timestamp_ns
        return max(0.0, dt)


class ComplementaryHeadingEstimator(HeadingEstimator):
    """
    Complementary filter heading estimator.

    Each update integrates the gyroscope z rate (weighted by gyro_weight)
    and pulls the result toward the absolute reference by (1 - alpha) of
    the shortest angular difference.

    Usage:
        estimator = ComplementaryHeadingEstimator()
        state = estimator.update(sample)
        print(f"Heading {state.heading_deg:.1f} deg ({state.source.name})")
    """

    def __init__(self, gyro_weight: float = 0.98, complementary_alpha: float = 0.98):
        super().__init__()
        if not 0 <= gyro_weight <= 1:
            raise ValueError(f"gyro_weight must be in [0, 1]: {gyro_weight}")
        if not 0 <= complementary_alpha <= 1:
            raise ValueError(f"complementary_alpha must be in [0, 1]: {complementary_alpha}")

        self.gyro_weight = gyro_weight
        self.complementary_alpha = complementary_alpha
        self._heading_deg = 0.0

    def update(self, sample: InertialSample) -> HeadingState:
        timestamp_ns = sample.timestamp_ns
        absolute, source = absolute_reference(sample)

        if not self.is_initialized():
            self._last_timestamp_ns = timestamp_ns
            self._heading_deg = absolute if absolute is not None else 0.0
            logger.debug(f"Initial heading {self._heading_deg:.1f} deg from {source}")
            self._current = HeadingState(
                heading_deg=self._heading_deg,
                source=source or HeadingSource.GYROSCOPE,
                accuracy=HeadingAccuracy.LOW,
                timestamp_ns=timestamp_ns,
            )
            return self._current

        dt = self._elapsed_s(timestamp_ns)
        gyro_z = _gyro_z(sample)

        # Positive z rotation is counter-clockwise, heading grows clockwise
        gyro_change = -gyro_z * dt * RADIANS_TO_DEGREES if gyro_z is not None else 0.0
        self._heading_deg = normalize_heading(self._heading_deg + gyro_change * self.gyro_weight)

        if absolute is not None:
            diff = heading_difference(self._heading_deg, absolute)
            self._heading_deg = normalize_heading(
                self._heading_deg + diff * (1.0 - self.complementary_alpha)
            )
            accuracy = (
                HeadingAccuracy.HIGH if source == HeadingSource.ROTATION_VECTOR
                else HeadingAccuracy.MEDIUM
            )
        else:
            source = HeadingSource.GYROSCOPE
            accuracy = HeadingAccuracy.MEDIUM

        self._current = HeadingState(
            heading_deg=self._heading_deg,
            source=source,
            accuracy=accuracy,
            timestamp_ns=timestamp_ns,
            gyro_heading_change_deg=gyro_change,
        )
        return self._current

    def reset(self):
        super().reset()
        self._heading_deg = 0.0


@dataclass
class KalmanHeadingConfig:
    """
    Configuration for the Kalman heading filter.

    Attributes:
        gyro_noise: Gyroscope noise added to the heading variance per update (rad^2)
        magnetometer_noise: Compass measurement noise (rad^2)
        rot_vector_noise: Rotation vector measurement noise (rad^2, lower = more trust)
        process_noise: Heading process noise (rad^2/s^2)
        initial_variance: Cold-start heading variance (rad^2)
        max_dt_s: Upper bound on the integration step (s)
        innovation_gate_rad: Innovations beyond this get half the Kalman gain
        adaptive_noise: Scale noises with motion intensity and magnetic disturbance
        min_variance: Variance floor (rad^2)
    """

    gyro_noise: float = 0.01
    magnetometer_noise: float = 0.05
    rot_vector_noise: float = 0.01
    process_noise: float = 0.001
    initial_variance: float = 10.0
    max_dt_s: float = 0.1
    innovation_gate_rad: float = 0.5
    adaptive_noise: bool = True
    min_variance: float = 1e-6

    def __post_init__(self):
        """Validate configuration."""
        for name in ('gyro_noise', 'magnetometer_noise', 'rot_vector_noise', 'process_noise'):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
        if self.initial_variance <= 0:
            raise ValueError(f"initial_variance must be positive: {self.initial_variance}")
        if self.max_dt_s <= 0:
            raise ValueError(f"max_dt_s must be positive: {self.max_dt_s}")
        if self.min_variance <= 0:
            raise ValueError(f"min_variance must be positive: {self.min_variance}")


class KalmanHeadingEstimator(HeadingEstimator):
    """
    Kalman filter heading estimator.

    State: heading (rad) and heading rate (rad/s), each with a scalar
    variance. Predict integrates the measured gyroscope rate; correct
    applies a scalar update from the absolute reference when available.

    Usage:
        estimator = KalmanHeadingEstimator(KalmanHeadingConfig())
        state = estimator.update(sample)

        if state.accuracy == HeadingAccuracy.HIGH:
            print(f"Heading {state.heading_deg:.1f} deg, var {state.variance:.4f}")
    """

    def __init__(self, config: Optional[KalmanHeadingConfig] = None):
        super().__init__()
        self.config = config or KalmanHeadingConfig()
        self.metrics = get_metrics()
        self._init_state()

    def _init_state(self):
        self._heading_rad = 0.0
        self._rate = 0.0
        self._variance = self.config.initial_variance
        self._rate_variance = self.config.initial_variance

        self._gyro_noise = self.config.gyro_noise
        self._magnetometer_noise = self.config.magnetometer_noise
        self._process_noise = self.config.process_noise
        self._disturbance_level = 0.0
        self._last_magnetometer: Optional[Vector3] = None

    @property
    def variance(self) -> float:
        return self._variance

    @property
    def heading_rate_rps(self) -> float:
        return self._rate

    def update(self, sample: InertialSample) -> HeadingState:
        timestamp_ns = sample.timestamp_ns
        absolute, source = absolute_reference(sample)

        if not self.is_initialized():
            self._last_timestamp_ns = timestamp_ns
            if absolute is not None:
                self._heading_rad = math.radians(absolute)
            logger.debug(f"Initial Kalman heading {math.degrees(self._heading_rad):.1f} deg from {source}")
            self._current = self._state(timestamp_ns, source or HeadingSource.GYROSCOPE, HeadingAccuracy.LOW)
            return self._current

        dt = min(self._elapsed_s(timestamp_ns), self.config.max_dt_s)

        if self.config.adaptive_noise:
            self._adapt_noise(sample)

        # Predict
        gyro_z = _gyro_z(sample)
        rate = -gyro_z if gyro_z is not None else 0.0
        self._heading_rad = wrap_angle_rad(self._heading_rad + rate * dt)
        self._rate = rate
        self._variance += dt * dt * self._process_noise + self._gyro_noise
        self._rate_variance += self._process_noise

        # Correct
        if absolute is not None:
            noise = (
                self.config.rot_vector_noise if source == HeadingSource.ROTATION_VECTOR
                else self._magnetometer_noise
            )
            innovation = wrap_angle_rad(math.radians(absolute) - self._heading_rad)
            gain = self._variance / (self._variance + noise) if self._variance + noise > 0 else 0.0
            if abs(innovation) > self.config.innovation_gate_rad:
                # Suspiciously large jump, likely magnetic disturbance
                gain *= 0.5

            self._heading_rad = wrap_angle_rad(self._heading_rad + gain * innovation)
            self._variance = (1.0 - gain) * self._variance
            logger.debug(f"Kalman heading correction: innovation={innovation:.3f} gain={gain:.3f}")
        else:
            source = HeadingSource.GYROSCOPE

        self._variance = max(self._variance, self.config.min_variance)
        self.metrics.record_histogram('heading_variance', self._variance)

        accuracy = self._accuracy_from_variance(self._variance)
        if absolute is None and accuracy == HeadingAccuracy.HIGH:
            accuracy = HeadingAccuracy.MEDIUM

        self._current = self._state(timestamp_ns, source, accuracy)
        return self._current

    def _adapt_noise(self, sample: InertialSample):
        """Scale noise parameters with rotation intensity and magnetic disturbance."""
        gyro_magnitude = 0.0
        if sample.gyroscope is not None and isinstance(sample.gyroscope.value, Vector3):
            gyro_magnitude = sample.gyroscope.value.magnitude()

        base = self.config
        if gyro_magnitude > 1.0:
            self._gyro_noise = base.gyro_noise * 3.0
        elif gyro_magnitude > 0.5:
            self._gyro_noise = base.gyro_noise * 1.5
        else:
            self._gyro_noise = base.gyro_noise

        if gyro_magnitude < 0.1:
            self._process_noise = base.process_noise * 0.5
        elif gyro_magnitude < 0.3:
            self._process_noise = base.process_noise
        elif gyro_magnitude < 0.7:
            self._process_noise = base.process_noise * 2.0
        else:
            self._process_noise = base.process_noise * 5.0

        if sample.magnetometer is not None and isinstance(sample.magnetometer.value, Vector3):
            field = sample.magnetometer.value
            if self._last_magnetometer is not None:
                change = (
                    abs(field.x - self._last_magnetometer.x) +
                    abs(field.y - self._last_magnetometer.y) +
                    abs(field.z - self._last_magnetometer.z)
                )
                self._disturbance_level = 0.9 * self._disturbance_level + 0.1 * change

                if self._disturbance_level > 5.0:
                    self._magnetometer_noise = base.magnetometer_noise * 4.0
                elif self._disturbance_level > 2.0:
                    self._magnetometer_noise = base.magnetometer_noise * 2.0
                else:
                    self._magnetometer_noise = base.magnetometer_noise
            self._last_magnetometer = field

    @staticmethod
    def _accuracy_from_variance(variance: float) -> HeadingAccuracy:
        if variance < 0.01:
            return HeadingAccuracy.HIGH
        if variance < 0.1:
            return HeadingAccuracy.MEDIUM
        return HeadingAccuracy.LOW

    def _state(self, timestamp_ns: int, source: HeadingSource, accuracy: HeadingAccuracy) -> HeadingState:
        return HeadingState(
            heading_deg=normalize_heading(math.degrees(self._heading_rad)),
            source=source,
            accuracy=accuracy,
            timestamp_ns=timestamp_ns,
            heading_rate_dps=self._rate * RADIANS_TO_DEGREES,
            variance=self._variance,
        )

    def reset(self):
        super().reset()
        self._init_state()
