"""
Peak/Valley Step Detector.

State machine over accelerometer magnitude samples. A step cycle is
valley -> peak -> valley:

- a sample below the valley threshold opens a cycle (the opening valley),
- a sample above the peak threshold after that is tracked as the peak,
- the next sample below the valley threshold closes the cycle.

The step is emitted on the closing sample when the peak rises at least
min_peak_valley_height above the opening valley, the peak-to-closing-valley
time is plausible for a foot strike, and the time since the previous
accepted step is inside [min_step_interval_ms, max_step_interval_ms].
The closing valley opens the next cycle.

The advanced variant also requires gyroscope activity during the cycle,
rejecting acceleration-only patterns such as vehicle vibration.
"""

from typing import Optional
from dataclasses import dataclass, replace
from enum import Enum
import logging
import math

from ips_core.proto.readings import Reading, InertialSample
from ips_core.proto.motion import StepEvent
from ips_core.metrics import get_metrics


logger = logging.getLogger(__name__)


class StepPhase(Enum):
    """Position within the current valley -> peak -> valley cycle."""

    ASCENDING = "ascending"     # Opening valley seen, waiting for a peak
    DESCENDING = "descending"   # Peak seen, waiting for the closing valley


@dataclass
class StepDetectorConfig:
    """
    Configuration for step detection.

    Attributes:
        peak_threshold: Magnitude above which a sample counts as a peak (m/s^2)
        valley_threshold: Magnitude below which a sample counts as a valley (m/s^2)
        min_peak_valley_height: Minimum peak rise above the opening valley (m/s^2)
        min_step_interval_ms: Minimum time between accepted steps (ms)
        max_step_interval_ms: Maximum time between accepted steps (ms)
        min_peak_duration_ms: Minimum peak to closing valley time (ms)
        max_peak_duration_ms: Maximum peak to closing valley time (ms)
        filter_alpha: Low-pass weight of the newest sample (1.0 = unfiltered)
    """

    peak_threshold: float = 10.5
    valley_threshold: float = 9.5
    min_peak_valley_height: float = 0.7
    min_step_interval_ms: float = 250.0
    max_step_interval_ms: float = 2000.0
    min_peak_duration_ms: float = 60.0
    max_peak_duration_ms: float = 1000.0
    filter_alpha: float = 1.0

    def __post_init__(self):
        """Validate configuration."""
        if self.peak_threshold <= self.valley_threshold:
            raise ValueError(
                f"peak_threshold ({self.peak_threshold}) must exceed "
                f"valley_threshold ({self.valley_threshold})"
            )
        if self.min_peak_valley_height < 0:
            raise ValueError("min_peak_valley_height cannot be negative")
        if not 0 <= self.min_step_interval_ms <= self.max_step_interval_ms:
            raise ValueError("Step interval bounds must satisfy 0 <= min <= max")
        if not 0 <= self.min_peak_duration_ms <= self.max_peak_duration_ms:
            raise ValueError("Peak duration bounds must satisfy 0 <= min <= max")
        if not 0 < self.filter_alpha <= 1:
            raise ValueError(f"filter_alpha must be in (0, 1]: {self.filter_alpha}")


@dataclass
class StepDetectorState:
    """
    Mutable detector state.

    Attributes:
        last_value: Last filtered magnitude
        is_ascending: True while waiting for a peak
        valley_value: Opening valley magnitude of the current cycle
        last_valley_timestamp_ms: Time of the opening valley
        peak_value: Peak magnitude of the current cycle
        last_peak_timestamp_ms: Time of the peak
        last_step_timestamp_ms: Time of the last accepted step
        step_count: Accepted steps since the last reset
    """

    last_value: Optional[float] = None
    is_ascending: bool = True
    valley_value: Optional[float] = None
    last_valley_timestamp_ms: Optional[float] = None
    peak_value: Optional[float] = None
    last_peak_timestamp_ms: Optional[float] = None
    last_step_timestamp_ms: Optional[float] = None
    step_count: int = 0

    @property
    def phase(self) -> StepPhase:
        return StepPhase.ASCENDING if self.is_ascending else StepPhase.DESCENDING


class StepDetector:
    """
    Acceleration peak/valley step detector.

    Usage:
        detector = StepDetector(config)

        for reading in accelerometer_readings:
            event = detector.process(reading)
            if event.step_detected:
                print(f"Step {event.step_count} at {event.timestamp_ns}")
    """

    def __init__(self, config: Optional[StepDetectorConfig] = None):
        self.config = config or StepDetectorConfig()
        self.metrics = get_metrics()
        self._state = StepDetectorState()

    @property
    def step_count(self) -> int:
        return self._state.step_count

    @property
    def state(self) -> StepDetectorState:
        """Copy of the current detector state."""
        return replace(self._state)

    @property
    def last_step_timestamp_ms(self) -> Optional[float]:
        return self._state.last_step_timestamp_ms

    def reset(self):
        """Clear all transient state; configuration is kept."""
        self._state = StepDetectorState()
        self._on_reset()

    def process(self, reading: Reading) -> StepEvent:
        """
        Feed one accelerometer reading.

        Args:
            reading: Accelerometer reading (Vector3) or precomputed magnitude

        Returns:
            StepEvent for this sample
        """
        magnitude = reading.magnitude()
        timestamp_ms = reading.timestamp_ms

        if not math.isfinite(magnitude):
            logger.debug("Ignoring non-finite acceleration sample")
            return self._event(False, reading.timestamp_ns, 0.0)

        state = self._state
        if state.last_value is None:
            filtered = magnitude
        else:
            alpha = self.config.filter_alpha
            filtered = alpha * magnitude + (1.0 - alpha) * state.last_value
        state.last_value = filtered

        height = 0.0
        peak = 0.0
        detected = False

        if filtered < self.config.valley_threshold:
            if not state.is_ascending:
                # Closing valley of a full cycle
                peak = state.peak_value
                height = peak - state.valley_value
                detected = self._evaluate_cycle(height, timestamp_ms)
                self._open_cycle(filtered, timestamp_ms)
            elif state.valley_value is None or filtered < state.valley_value:
                self._open_cycle(filtered, timestamp_ms)

        elif filtered > self.config.peak_threshold and state.valley_value is not None:
            if state.is_ascending or filtered > state.peak_value:
                state.peak_value = filtered
                state.last_peak_timestamp_ms = timestamp_ms
            state.is_ascending = False

        if not detected:
            height = peak = 0.0
        return self._event(detected, reading.timestamp_ns, filtered, height, peak)

    def _open_cycle(self, valley: float, timestamp_ms: float):
        state = self._state
        state.valley_value = valley
        state.last_valley_timestamp_ms = timestamp_ms
        state.peak_value = None
        state.last_peak_timestamp_ms = None
        state.is_ascending = True
        self._on_cycle_opened()

    def _evaluate_cycle(self, height: float, timestamp_ms: float) -> bool:
        """Apply height, timing and corroboration checks to a closed cycle."""
        config = self.config
        state = self._state

        if height < config.min_peak_valley_height:
            return self._reject(f"peak-valley height {height:.2f} below minimum")

        peak_duration = timestamp_ms - state.last_peak_timestamp_ms
        if not config.min_peak_duration_ms <= peak_duration <= config.max_peak_duration_ms:
            return self._reject(f"peak duration {peak_duration:.0f} ms out of range")

        if state.last_step_timestamp_ms is not None:
            interval = timestamp_ms - state.last_step_timestamp_ms
            if interval < config.min_step_interval_ms:
                return self._reject(f"step interval {interval:.0f} ms too short")
            if interval > config.max_step_interval_ms:
                # Walking resumed after a pause; the next cycle starts a new rhythm
                state.last_step_timestamp_ms = None
                return self._reject(f"step interval {interval:.0f} ms too long")

        if not self._corroborate():
            return self._reject("step not corroborated by gyroscope")

        state.step_count += 1
        state.last_step_timestamp_ms = timestamp_ms
        self.metrics.increment('steps_detected')
        logger.debug(f"Step {state.step_count} detected (height {height:.2f})")
        return True

    def _reject(self, reason: str) -> bool:
        self.metrics.increment_drop('step_rejected')
        logger.debug(f"Step rejected: {reason}")
        return False

    def _event(
        self, detected: bool, timestamp_ns: int, filtered: float,
        height: float = 0.0, peak: float = 0.0,
    ) -> StepEvent:
        return StepEvent(
            step_detected=detected,
            step_count=self._state.step_count,
            timestamp_ns=timestamp_ns,
            filtered_magnitude=filtered,
            peak_valley_height=height,
            peak_magnitude=peak,
        )

    # Hooks for the advanced variant
    def _corroborate(self) -> bool:
        return True

    def _on_cycle_opened(self):
        pass

    def _on_reset(self):
        pass


@dataclass
class AdvancedStepDetectorConfig(StepDetectorConfig):
    """
    Step detection with gyroscope corroboration.

    Attributes:
        gyro_threshold: Minimum peak angular rate magnitude during the cycle (rad/s)
        require_gyro_corroboration: Reject steps when no gyroscope data
            arrived during the cycle (devices without a gyroscope should
            set this to False)
    """

    gyro_threshold: float = 0.2
    require_gyro_corroboration: bool = True

    def __post_init__(self):
        super().__post_init__()
        if self.gyro_threshold < 0:
            raise ValueError(f"gyro_threshold cannot be negative: {self.gyro_threshold}")


class AdvancedStepDetector(StepDetector):
    """
    Step detector that also requires rotation during the step cycle.

    Usage:
        detector = AdvancedStepDetector(AdvancedStepDetectorConfig())
        event = detector.process(accel_reading, gyro_reading)

        # Or with a full inertial sample
        event = detector.process_sample(sample)
    """

    def __init__(self, config: Optional[AdvancedStepDetectorConfig] = None):
        super().__init__(config or AdvancedStepDetectorConfig())
        self._current_rate: Optional[float] = None
        self._max_gyro: Optional[float] = None

    def process(self, reading: Reading, gyroscope: Optional[Reading] = None) -> StepEvent:
        """
        Feed one accelerometer reading with the concurrent gyroscope reading.

        Args:
            reading: Accelerometer reading
            gyroscope: Gyroscope reading (None when unavailable)
        """
        self._current_rate = None
        if gyroscope is not None:
            rate = gyroscope.magnitude()
            if math.isfinite(rate):
                self._current_rate = rate
                self._max_gyro = rate if self._max_gyro is None else max(self._max_gyro, rate)

        return super().process(reading)

    def process_sample(self, sample: InertialSample) -> StepEvent:
        return self.process(sample.accelerometer, sample.gyroscope)

    @property
    def max_gyro_in_cycle(self) -> Optional[float]:
        return self._max_gyro

    def _corroborate(self) -> bool:
        if self._max_gyro is None:
            return not self.config.require_gyro_corroboration
        return self._max_gyro >= self.config.gyro_threshold

    def _on_cycle_opened(self):
        # Gyro activity is collected per cycle, starting at the opening valley
        self._max_gyro = self._current_rate

    def _on_reset(self):
        self._current_rate = None
        self._max_gyro = None
