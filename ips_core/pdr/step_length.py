"""
Step Length Estimator.

Height-based step model scaled by step vigor and cadence:

    length = 0.4 * height * accel_factor * freq_factor * calibration

    accel_factor = clamp(sqrt(peak_accel) / 3, 0.7, 1.3)
    freq_factor  = clamp(step_frequency / 2, 0.7, 1.3)

The result is averaged over the last few steps and bounded to a
plausible fraction of the user's height.
"""

from collections import deque
from typing import Optional
from dataclasses import dataclass
import math

from ips_core.proto.readings import NANOS_PER_SECOND
from ips_core.proto.motion import StepEvent


@dataclass
class StepLengthConfig:
    """
    Attributes:
        user_height_m: User height (m)
        calibration_factor: Per-user multiplier from calibration walks
        history: Number of recent steps averaged
        min_height_fraction: Lower bound as a fraction of height
        max_height_fraction: Upper bound as a fraction of height
    """

    user_height_m: float = 1.70
    calibration_factor: float = 1.0
    history: int = 5
    min_height_fraction: float = 0.25
    max_height_fraction: float = 0.65

    def __post_init__(self):
        """Validate configuration."""
        if self.user_height_m <= 0:
            raise ValueError(f"user_height_m must be positive: {self.user_height_m}")
        if self.calibration_factor <= 0:
            raise ValueError(f"calibration_factor must be positive: {self.calibration_factor}")
        if self.history < 1:
            raise ValueError(f"history must be at least 1: {self.history}")
        if not 0 < self.min_height_fraction <= self.max_height_fraction:
            raise ValueError("Height fractions must satisfy 0 < min <= max")


class StepLengthEstimator:
    """
    Usage:
        estimator = StepLengthEstimator(StepLengthConfig(user_height_m=1.80))
        if event.step_detected:
            length_m = estimator.estimate(event)
    """

    def __init__(self, config: Optional[StepLengthConfig] = None):
        self.config = config or StepLengthConfig()
        self._recent = deque(maxlen=self.config.history)
        self._last_step_ns: Optional[int] = None
        self._step_frequency_hz = 0.0

    @property
    def step_frequency_hz(self) -> float:
        return self._step_frequency_hz

    @property
    def base_length_m(self) -> float:
        return 0.4 * self.config.user_height_m

    def estimate(self, event: StepEvent) -> float:
        """Step length (m) for a detected step."""
        if self._last_step_ns is not None and event.timestamp_ns > self._last_step_ns:
            self._step_frequency_hz = NANOS_PER_SECOND / (event.timestamp_ns - self._last_step_ns)
        self._last_step_ns = event.timestamp_ns

        accel = event.peak_magnitude or event.filtered_magnitude
        accel_factor = _clamp(math.sqrt(max(0.0, accel)) / 3.0, 0.7, 1.3)
        freq_factor = (
            _clamp(self._step_frequency_hz / 2.0, 0.7, 1.3) if self._step_frequency_hz > 0 else 1.0
        )

        length = self.base_length_m * accel_factor * freq_factor * self.config.calibration_factor
        self._recent.append(length)
        average = sum(self._recent) / len(self._recent)

        height = self.config.user_height_m
        return _clamp(
            average,
            self.config.min_height_fraction * height,
            self.config.max_height_fraction * height,
        )

    def reset(self):
        self._recent.clear()
        self._last_step_ns = None
        self._step_frequency_hz = 0.0


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))
