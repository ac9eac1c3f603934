"""
Fusion Engine (Extended Kalman Filter).

Fuses relative motion (PDR steps or visual tracking) with absolute radio
fixes into the single authoritative position estimate.

State: [x, y, theta]
- x, y: Position in the map frame (m)
- theta: Direction of travel (rad, counter-clockwise from +x)

Predict uses a unicycle model driven by a MotionDelta (v, w); update is a
linear position measurement from a trilateration fix. A periodic or
distance-triggered drift correction re-anchors the state toward the fix.

The filter state is owned by the engine and guarded by a re-entrant lock:
predict, update and reset are serialized.

Reference: Thrun et al., Probabilistic Robotics, Table 3.3 (EKF), 5.3 (velocity motion model)
"""

from typing import Optional
from dataclasses import dataclass
import logging
import math
import threading

import numpy as np

from ips_core.proto.motion import MotionDelta
from ips_core.proto.position_estimate import (
    PositionEstimate,
    PositionSource,
    create_invalid,
    is_valid,
)
from ips_core.proto.readings import NANOS_PER_SECOND
from ips_core.pdr.orientation import wrap_angle_rad
from ips_core.metrics import get_metrics


logger = logging.getLogger(__name__)


@dataclass
class FusionConfig:
    """
    Configuration for the fusion EKF.

    Attributes:
        position_process_noise: Position noise density (m^2 per s per unit speed factor)
        heading_process_noise: Heading noise density (rad^2 per s)
        straight_line_heading_damping: Heading noise multiplier while not turning
        straight_line_threshold_rps: |w| below which motion counts as straight (rad/s)
        initial_heading_variance: Heading variance at initialization (rad^2)
        min_fix_confidence: Fixes below this confidence leave the state untouched
        min_measurement_confidence: Confidence floor used to scale measurement noise
        drift_correction_threshold_m: Fix distance that triggers re-anchoring (m)
        drift_correction_factor: Fraction of the fix offset applied when re-anchoring
        drift_correction_interval_s: Re-anchor at least this often with valid fixes (s)
        drift_min_confidence: Fixes below this confidence never re-anchor the state
        drift_max_accuracy_m: Fixes less accurate than this never re-anchor the state (m)
        drift_covariance_inflation: Position covariance multiplier after re-anchoring
        max_invalid_duration_s: Discard the state after this long without a valid fix (s)
        max_position_variance: Upper clamp on position variances (m^2)
        min_variance: Lower clamp on all variances
    """

    position_process_noise: float = 0.05
    heading_process_noise: float = 0.02
    straight_line_heading_damping: float = 0.1
    straight_line_threshold_rps: float = 1e-4
    initial_heading_variance: float = 1.0
    min_fix_confidence: float = 0.05
    min_measurement_confidence: float = 0.1
    drift_correction_threshold_m: float = 5.0
    drift_correction_factor: float = 0.3
    drift_correction_interval_s: float = 10.0
    drift_min_confidence: float = 0.5
    drift_max_accuracy_m: float = 10.0
    drift_covariance_inflation: float = 1.5
    max_invalid_duration_s: float = 30.0
    max_position_variance: float = 1e4
    min_variance: float = 1e-6

    def __post_init__(self):
        """Validate configuration."""
        if self.position_process_noise < 0 or self.heading_process_noise < 0:
            raise ValueError("Process noise cannot be negative")
        if not 0 <= self.straight_line_heading_damping <= 1:
            raise ValueError("straight_line_heading_damping must be in [0, 1]")
        if not 0 <= self.drift_correction_factor <= 1:
            raise ValueError("drift_correction_factor must be in [0, 1]")
        if not 0 <= self.drift_min_confidence <= 1:
            raise ValueError("drift_min_confidence must be in [0, 1]")
        if self.drift_max_accuracy_m <= 0:
            raise ValueError("drift_max_accuracy_m must be positive")
        if not 0 < self.min_measurement_confidence <= 1:
            raise ValueError("min_measurement_confidence must be in (0, 1]")
        if self.min_variance <= 0 or self.max_position_variance <= self.min_variance:
            raise ValueError("Variance bounds must satisfy 0 < min_variance < max_position_variance")
        if self.max_invalid_duration_s <= 0:
            raise ValueError("max_invalid_duration_s must be positive")


class FusionEngine:
    """
    EKF fusing relative motion with absolute fixes.

    Usage:
        engine = FusionEngine(FusionConfig())

        # First valid fix initializes the filter
        estimate = engine.update(fix)

        # Each tick
        engine.predict(motion_delta, dt_s, motion_confidence=0.8)
        estimate = engine.update(trilateration.solve(fixes, now_ns))

        if estimate.is_valid:
            print(f"({estimate.x:.2f}, {estimate.y:.2f}) +/- {estimate.accuracy_m:.2f} m")
    """

    def __init__(self, config: Optional[FusionConfig] = None):
        """
        Initialize fusion engine (uninitialized until the first valid fix).

        Args:
            config: Filter configuration (uses defaults if None)
        """
        self.config = config or FusionConfig()
        self.metrics = get_metrics()
        self._lock = threading.RLock()
        self._clear()

    def _clear(self):
        # State: [x, y, theta]
        self._state: Optional[np.ndarray] = None

        # Covariance: 3x3
        self._covariance: Optional[np.ndarray] = None

        self._timestamp_ns = 0
        self._last_valid_fix_ns: Optional[int] = None
        self._last_drift_correction_ns: Optional[int] = None
        self._needs_reset = False

    def is_initialized(self) -> bool:
        """Check if the filter holds a state."""
        with self._lock:
            return self._state is not None

    @property
    def needs_reset(self) -> bool:
        """True after an unrecoverable numerical failure, until reset()."""
        with self._lock:
            return self._needs_reset

    @property
    def heading_rad(self) -> Optional[float]:
        """Filter heading theta (rad), None when uninitialized."""
        with self._lock:
            if self._state is None:
                return None
            return float(self._state[2])

    @property
    def covariance(self) -> Optional[np.ndarray]:
        """Copy of the 3x3 covariance."""
        with self._lock:
            return None if self._covariance is None else self._covariance.copy()

    def reset(self):
        """Discard the filter state; the next valid fix re-initializes."""
        with self._lock:
            self._clear()
        self.metrics.increment('fusion_resets')
        logger.info("Fusion engine reset")

    def set_heading(self, theta_rad: float, variance: Optional[float] = None):
        """
        Align the filter heading with an external heading reference.

        Args:
            theta_rad: Heading (rad, counter-clockwise from +x)
            variance: New heading variance (keeps the current one if None)
        """
        if not math.isfinite(theta_rad):
            return
        with self._lock:
            if self._state is None:
                return
            self._state[2] = wrap_angle_rad(theta_rad)
            if variance is not None:
                self._covariance[2, :] = 0.0
                self._covariance[:, 2] = 0.0
                self._covariance[2, 2] = max(variance, self.config.min_variance)

    def predict(self, motion: Optional[MotionDelta], dt_s: float, motion_confidence: float = 1.0) -> bool:
        """
        Advance the state with a relative motion sample.

        Args:
            motion: Velocity / angular velocity sample
            dt_s: Time step (s)
            motion_confidence: Trust in the motion sample (0-1); lower
                confidence injects more process noise

        Returns:
            True if the state was advanced
        """
        with self._lock:
            if self._state is None or self._needs_reset:
                return False

            if motion is None or not motion.is_valid:
                self.metrics.increment_drop('invalid_motion')
                return False

            if not (math.isfinite(dt_s) and dt_s > 0):
                return False

            v = motion.velocity_mps
            w = motion.angular_velocity_rps
            x, y, theta = self._state
            straight = abs(w) < self.config.straight_line_threshold_rps

            G = np.eye(3)
            if straight:
                x_new = x + v * dt_s * math.cos(theta)
                y_new = y + v * dt_s * math.sin(theta)
                theta_new = theta
                G[0, 2] = -v * dt_s * math.sin(theta)
                G[1, 2] = v * dt_s * math.cos(theta)
            else:
                r = v / w
                theta_new = theta + w * dt_s
                x_new = x + r * (math.sin(theta_new) - math.sin(theta))
                y_new = y + r * (math.cos(theta) - math.cos(theta_new))
                G[0, 2] = r * (math.cos(theta_new) - math.cos(theta))
                G[1, 2] = r * (math.sin(theta_new) - math.sin(theta))

            confidence = min(1.0, max(0.05, motion_confidence)) if math.isfinite(motion_confidence) else 0.05
            scale = dt_s * (1.0 + 2.0 * abs(v)) / confidence

            heading_noise = self.config.heading_process_noise * scale
            if straight:
                heading_noise *= self.config.straight_line_heading_damping

            Q = np.diag([
                self.config.position_process_noise * scale,
                self.config.position_process_noise * scale,
                heading_noise,
            ])

            self._state = np.array([x_new, y_new, wrap_angle_rad(theta_new)])
            self._covariance = G @ self._covariance @ G.T + Q

            if motion.timestamp_ns > 0:
                self._timestamp_ns = motion.timestamp_ns

            self.metrics.increment('fusion_predictions')
            return self._guard()

    def update(self, fix: Optional[PositionEstimate]) -> PositionEstimate:
        """
        Correct the state with an absolute fix.

        Args:
            fix: Trilateration estimate (may be invalid)

        Returns:
            Current fused estimate (source FUSION), or the invalid estimate

        Notes:
            - Uninitialized + valid fix -> initialize from the fix
            - Uninitialized + invalid fix -> invalid
            - Invalid or low-confidence fix -> state unchanged, discarded
              after max_invalid_duration_s without a usable fix
            - Only confident, accurate fixes trigger drift correction
        """
        with self._lock:
            timestamp_ns = fix.timestamp_ns if fix is not None else self._timestamp_ns

            if self._needs_reset:
                return create_invalid(timestamp_ns)

            if not is_valid(fix):
                self.metrics.increment_drop('invalid_fix')
                if self._state is None:
                    return create_invalid(timestamp_ns)
                return self._hold(timestamp_ns)

            if self._state is None:
                self._initialize(fix)
                return self._current_position()

            if fix.confidence < self.config.min_fix_confidence:
                self.metrics.increment_drop('low_confidence_fix')
                logger.debug(f"Ignoring fix with confidence {fix.confidence:.3f}")
                return self._hold(timestamp_ns)

            self._correct(fix)
            self._drift_correction(fix)
            self._last_valid_fix_ns = fix.timestamp_ns
            self._timestamp_ns = max(self._timestamp_ns, fix.timestamp_ns)

            self.metrics.increment('fusion_updates')
            if not self._guard():
                return create_invalid(timestamp_ns)
            return self._current_position()

    def current_position(self) -> PositionEstimate:
        """Snapshot of the fused estimate, or the invalid estimate."""
        with self._lock:
            if self._state is None or self._needs_reset:
                return create_invalid(self._timestamp_ns)
            return self._current_position()

    def _initialize(self, fix: PositionEstimate):
        """Initialize state and covariance from the first valid fix."""
        variance = min(
            self.config.max_position_variance,
            max(self.config.min_variance, fix.accuracy_m ** 2),
        )
        self._state = np.array([fix.x, fix.y, 0.0])
        self._covariance = np.diag([variance, variance, self.config.initial_heading_variance])
        self._timestamp_ns = fix.timestamp_ns
        self._last_valid_fix_ns = fix.timestamp_ns
        self._last_drift_correction_ns = fix.timestamp_ns

        self.metrics.increment('fusion_initializations')
        logger.info(f"Fusion engine initialized at ({fix.x:.2f}, {fix.y:.2f}) +/- {fix.accuracy_m:.2f} m")

    def _correct(self, fix: PositionEstimate):
        """Kalman position update (Joseph form)."""
        confidence = min(1.0, max(self.config.min_measurement_confidence, fix.confidence))
        sigma = max(fix.accuracy_m, math.sqrt(self.config.min_variance)) / confidence
        R = np.eye(2) * sigma ** 2

        H = np.array([
            [1.0, 0.0, 0.0],
            [0.0, 1.0, 0.0],
        ])

        z = np.array([fix.x, fix.y])
        y = z - H @ self._state
        S = H @ self._covariance @ H.T + R
        K = self._covariance @ H.T @ np.linalg.inv(S)

        self._state = self._state + K @ y
        self._state[2] = wrap_angle_rad(self._state[2])

        I_KH = np.eye(3) - K @ H
        self._covariance = I_KH @ self._covariance @ I_KH.T + K @ R @ K.T

        innovation_m = float(np.linalg.norm(y))
        self.metrics.record_histogram('fusion_innovation_m', innovation_m)
        logger.debug(f"Fusion update: innovation {innovation_m:.2f} m, sigma {sigma:.2f} m")

    def _drift_correction(self, fix: PositionEstimate):
        """Pull the state toward a trusted fix when it drifted away or periodically."""
        if (fix.confidence < self.config.drift_min_confidence or
                fix.accuracy_m > self.config.drift_max_accuracy_m):
            return

        offset = np.array([fix.x, fix.y]) - self._state[:2]
        distance = float(np.linalg.norm(offset))

        interval_due = (
            self._last_drift_correction_ns is not None and
            (fix.timestamp_ns - self._last_drift_correction_ns) / NANOS_PER_SECOND
            >= self.config.drift_correction_interval_s
        )

        if distance <= self.config.drift_correction_threshold_m and not interval_due:
            return

        self._state[:2] = self._state[:2] + self.config.drift_correction_factor * offset
        self._covariance[:2, :2] *= self.config.drift_covariance_inflation
        self._last_drift_correction_ns = fix.timestamp_ns

        self.metrics.increment('fusion_drift_corrections')
        logger.debug(f"Drift correction applied ({distance:.2f} m from fix)")

    def _hold(self, timestamp_ns: int) -> PositionEstimate:
        """Keep the state through a missing fix, or discard it after a long outage."""
        if self._invalid_for_too_long(timestamp_ns):
            logger.warning(
                f"No usable fix for more than {self.config.max_invalid_duration_s:.0f} s, "
                f"discarding filter state"
            )
            self._clear()
            self.metrics.increment('fusion_resets')
            return create_invalid(timestamp_ns)
        return self._current_position()

    def _invalid_for_too_long(self, timestamp_ns: int) -> bool:
        if self._last_valid_fix_ns is None:
            return False
        elapsed_s = (timestamp_ns - self._last_valid_fix_ns) / NANOS_PER_SECOND
        return elapsed_s > self.config.max_invalid_duration_s

    def _guard(self) -> bool:
        """
        Keep the covariance symmetric positive definite and bounded.

        Returns:
            False if the state became non-finite (engine then needs reset)
        """
        P = self._covariance
        if not (np.all(np.isfinite(self._state)) and np.all(np.isfinite(P))):
            self._needs_reset = True
            self.metrics.increment_drop('numerical_instability')
            logger.error("Non-finite fusion state, engine needs reset")
            return False

        P = 0.5 * (P + P.T)

        min_eig = float(np.min(np.linalg.eigvalsh(P)))
        if min_eig < self.config.min_variance:
            P = P + np.eye(3) * (self.config.min_variance - min_eig)

        diag = np.diag(P).copy()
        diag[:2] = np.clip(diag[:2], self.config.min_variance, self.config.max_position_variance)
        diag[2] = max(diag[2], self.config.min_variance)
        P[np.diag_indices(3)] = diag

        self._covariance = P
        return True

    def _current_position(self) -> PositionEstimate:
        P = self._covariance
        sigma_x = math.sqrt(P[0, 0])
        sigma_y = math.sqrt(P[1, 1])
        sigma_theta = math.sqrt(P[2, 2])
        accuracy_m = math.sqrt(P[0, 0] + P[1, 1])
        confidence = min(1.0, max(0.1, 0.9 * math.exp(-accuracy_m / 3.0)))

        return PositionEstimate(
            x=float(self._state[0]),
            y=float(self._state[1]),
            accuracy_m=accuracy_m,
            confidence=confidence,
            source=PositionSource.FUSION,
            timestamp_ns=self._timestamp_ns,
            covariance=(sigma_x, sigma_y, sigma_theta),
        )
