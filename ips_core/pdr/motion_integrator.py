"""
PDR Motion Integrator.

Turns detected steps (length + heading) into MotionDelta samples for the
fusion engine's predict step, and passes through relative motion supplied
by visual tracking.

Frames:
- Compass heading: degrees, 0 = north (+y), 90 = east (+x), clockwise.
- Filter heading (theta): radians, counter-clockwise from +x.
  theta = pi/2 - heading.
"""

from typing import Optional, Tuple
from dataclasses import dataclass
import logging
import math

from ips_core.proto.readings import NANOS_PER_SECOND
from ips_core.proto.motion import MotionDelta, MotionSource, StepEvent, HeadingState
from ips_core.pdr.orientation import heading_difference, wrap_angle_rad
from ips_core.metrics import get_metrics


logger = logging.getLogger(__name__)


def heading_to_theta(heading_deg: float) -> float:
    """Compass heading (deg, clockwise from north) to filter theta (rad)."""
    return wrap_angle_rad(math.radians(90.0 - heading_deg))


@dataclass
class MotionIntegratorConfig:
    """
    Attributes:
        default_step_period_s: Period assumed for the first step after a pause (s)
        min_step_period_s: Lower clamp on the measured step period (s)
        max_step_period_s: Upper clamp; also the idle timeout (s)
    """

    default_step_period_s: float = 0.5
    min_step_period_s: float = 0.25
    max_step_period_s: float = 2.0

    def __post_init__(self):
        """Validate configuration."""
        if not 0 < self.min_step_period_s <= self.max_step_period_s:
            raise ValueError("Step period bounds must satisfy 0 < min <= max")
        if not self.min_step_period_s <= self.default_step_period_s <= self.max_step_period_s:
            raise ValueError("default_step_period_s must lie within the step period bounds")


class MotionIntegrator:
    """
    Step + heading to relative motion.

    Usage:
        integrator = MotionIntegrator()

        if event.step_detected:
            length = step_length.estimate(event)
            delta = integrator.on_step(event, length, heading_estimator.current)
            engine.predict(delta, dt_s)

        dx, dy = integrator.displacement
    """

    def __init__(self, config: Optional[MotionIntegratorConfig] = None):
        self.config = config or MotionIntegratorConfig()
        self.metrics = get_metrics()
        self.reset()

    @property
    def displacement(self) -> Tuple[float, float]:
        """Accumulated PDR displacement (dx, dy) in the map frame (m)."""
        return (self._dx, self._dy)

    @property
    def distance_travelled_m(self) -> float:
        return self._distance_m

    @property
    def last_step_timestamp_ns(self) -> Optional[int]:
        return self._last_step_ns

    def on_step(
        self,
        event: StepEvent,
        step_length_m: float,
        heading: Optional[HeadingState],
    ) -> Optional[MotionDelta]:
        """
        Convert a detected step into a motion delta.

        Returns:
            MotionDelta, or None when the event is not a step or the inputs
            are unusable
        """
        if not event.step_detected:
            return None

        if not (math.isfinite(step_length_m) and step_length_m >= 0):
            self.metrics.increment_drop('invalid_motion')
            logger.warning(f"Ignoring step with invalid length {step_length_m}")
            return None

        if self._last_step_ns is None:
            period_s = self.config.default_step_period_s
        else:
            period_s = (event.timestamp_ns - self._last_step_ns) / NANOS_PER_SECOND
            period_s = min(self.config.max_step_period_s, max(self.config.min_step_period_s, period_s))
        self._last_step_ns = event.timestamp_ns

        heading_deg = heading.heading_deg if heading is not None else self._last_heading_deg
        if heading_deg is None:
            heading_deg = 0.0

        turn_deg = 0.0
        if self._last_heading_deg is not None:
            turn_deg = heading_difference(self._last_heading_deg, heading_deg)
        self._last_heading_deg = heading_deg

        heading_rad = math.radians(heading_deg)
        self._dx += step_length_m * math.sin(heading_rad)
        self._dy += step_length_m * math.cos(heading_rad)
        self._distance_m += step_length_m

        # Clockwise compass turn is a negative (clockwise) filter rotation
        delta = MotionDelta(
            velocity_mps=step_length_m / period_s,
            angular_velocity_rps=-math.radians(turn_deg) / period_s,
            timestamp_ns=event.timestamp_ns,
            source=MotionSource.PDR,
            duration_s=period_s,
        )
        logger.debug(
            f"PDR step: {step_length_m:.2f} m at {heading_deg:.1f} deg, "
            f"v={delta.velocity_mps:.2f} m/s w={delta.angular_velocity_rps:.3f} rad/s"
        )
        return delta

    def accept_external(self, delta: Optional[MotionDelta]) -> Optional[MotionDelta]:
        """Validate an externally supplied (visual) motion delta."""
        if delta is None:
            return None
        if not delta.is_valid:
            self.metrics.increment_drop('invalid_motion')
            logger.warning(f"Ignoring non-finite {delta.source.name} motion delta")
            return None
        return delta

    def idle_delta(self, now_ns: int) -> Optional[MotionDelta]:
        """
        Zero-velocity delta once no step has been seen for the idle timeout.

        Returns:
            Stationary MotionDelta, or None while still walking
        """
        if self._last_step_ns is not None:
            idle_s = (now_ns - self._last_step_ns) / NANOS_PER_SECOND
            if idle_s <= self.config.max_step_period_s:
                return None
        return MotionDelta(0.0, 0.0, now_ns, MotionSource.PDR)

    def reset(self):
        self._last_step_ns: Optional[int] = None
        self._last_heading_deg: Optional[float] = None
        self._dx = 0.0
        self._dy = 0.0
        self._distance_m = 0.0
