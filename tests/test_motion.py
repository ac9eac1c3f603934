"""
Unit tests for step length and motion integration.

Tests cover:
- Height-based step length with vigor and cadence factors
- Step length bounds and averaging
- Step + heading to MotionDelta conversion and frame conventions
- Idle detection and external (visual) motion validation
"""

import math

import pytest

from ips_core.pdr import (
    MotionIntegrator,
    MotionIntegratorConfig,
    StepLengthConfig,
    StepLengthEstimator,
    heading_to_theta,
)
from ips_core.proto import HeadingState, MotionDelta, MotionSource, StepEvent, NANOS_PER_SECOND


def step(timestamp_s: float, peak: float = 9.0, count: int = 1) -> StepEvent:
    return StepEvent(
        step_detected=True,
        step_count=count,
        timestamp_ns=int(timestamp_s * NANOS_PER_SECOND),
        filtered_magnitude=8.5,
        peak_valley_height=2.0,
        peak_magnitude=peak,
    )


class TestStepLength:
    """Tests for the step length model."""

    def test_nominal_step(self):
        """Test 0.4 x height for a nominal step."""
        estimator = StepLengthEstimator()

        # sqrt(9) / 3 = 1, no cadence yet
        assert estimator.estimate(step(0.0, peak=9.0)) == pytest.approx(0.68)

    def test_nominal_cadence(self):
        """Test that a 2 Hz cadence keeps the nominal length."""
        estimator = StepLengthEstimator()
        estimator.estimate(step(0.0))

        assert estimator.estimate(step(0.5)) == pytest.approx(0.68)
        assert estimator.step_frequency_hz == pytest.approx(2.0)

    def test_height_scales_length(self):
        """Test that taller users take longer steps."""
        short = StepLengthEstimator(StepLengthConfig(user_height_m=1.55))
        tall = StepLengthEstimator(StepLengthConfig(user_height_m=1.90))

        assert tall.estimate(step(0.0)) > short.estimate(step(0.0))

    def test_vigorous_fast_steps_bounded(self):
        """Test the upper bound on step length."""
        estimator = StepLengthEstimator()

        for i in range(6):
            length = estimator.estimate(step(i * 0.25, peak=40.0))

        assert length <= 0.65 * 1.70 + 1e-9

    def test_weak_slow_steps_bounded(self):
        """Test the lower bound with a small calibration factor."""
        estimator = StepLengthEstimator(StepLengthConfig(calibration_factor=0.3))

        for i in range(6):
            length = estimator.estimate(step(i * 2.0, peak=1.0))

        assert length == pytest.approx(0.25 * 1.70)

    def test_calibration_factor(self):
        """Test that calibration scales the length."""
        estimator = StepLengthEstimator(StepLengthConfig(calibration_factor=1.1))

        assert estimator.estimate(step(0.0)) == pytest.approx(0.68 * 1.1)

    def test_reset(self):
        """Test that reset forgets cadence and history."""
        estimator = StepLengthEstimator()
        estimator.estimate(step(0.0))
        estimator.estimate(step(0.5))

        estimator.reset()

        assert estimator.step_frequency_hz == 0.0
        assert estimator.estimate(step(10.0)) == pytest.approx(0.68)

    def test_invalid_config(self):
        """Test that a non-positive height raises ValueError."""
        with pytest.raises(ValueError):
            StepLengthConfig(user_height_m=0.0)


class TestFrames:
    """Tests for compass to filter heading conversion."""

    @pytest.mark.parametrize("heading,theta", [
        (0.0, math.pi / 2),
        (90.0, 0.0),
        (180.0, -math.pi / 2),
        (45.0, math.pi / 4),
    ])
    def test_heading_to_theta(self, heading, theta):
        """Test that north is +y and east is +x."""
        assert heading_to_theta(heading) == pytest.approx(theta)


class TestMotionIntegrator:
    """Tests for step to MotionDelta conversion."""

    def test_first_step_uses_default_period(self):
        """Test velocity of the first step."""
        integrator = MotionIntegrator()

        delta = integrator.on_step(step(1.0), 0.7, HeadingState(90.0))

        assert delta.velocity_mps == pytest.approx(0.7 / 0.5)
        assert delta.angular_velocity_rps == 0.0
        assert delta.source == MotionSource.PDR
        assert delta.duration_s == pytest.approx(0.5)
        assert integrator.displacement == pytest.approx((0.7, 0.0))

    def test_turn_produces_clockwise_rotation(self):
        """Test that a right turn gives negative angular velocity."""
        integrator = MotionIntegrator()
        integrator.on_step(step(1.0), 0.7, HeadingState(0.0))

        delta = integrator.on_step(step(1.5), 0.7, HeadingState(90.0))

        assert delta.velocity_mps == pytest.approx(0.7 / 0.5)
        assert delta.angular_velocity_rps == pytest.approx(-math.radians(90.0) / 0.5)

    def test_displacement_accumulates(self):
        """Test dead-reckoned displacement of a square walk."""
        integrator = MotionIntegrator()
        for i, heading in enumerate((0.0, 90.0, 180.0, 270.0)):
            integrator.on_step(step(i * 0.5), 1.0, HeadingState(heading))

        dx, dy = integrator.displacement
        assert dx == pytest.approx(0.0, abs=1e-9)
        assert dy == pytest.approx(0.0, abs=1e-9)
        assert integrator.distance_travelled_m == pytest.approx(4.0)

    def test_step_period_clamped(self):
        """Test that a long pause does not collapse the velocity."""
        integrator = MotionIntegrator()
        integrator.on_step(step(0.0), 0.7, HeadingState(0.0))

        delta = integrator.on_step(step(10.0), 0.7, HeadingState(0.0))

        assert delta.velocity_mps == pytest.approx(0.7 / 2.0)
        assert delta.velocity_mps * delta.duration_s == pytest.approx(0.7)

    def test_non_step_ignored(self):
        """Test that events without a step produce nothing."""
        event = StepEvent(step_detected=False, step_count=0, timestamp_ns=0)
        assert MotionIntegrator().on_step(event, 0.7, None) is None

    def test_invalid_length_dropped(self, clean_metrics):
        """Test that a non-finite length is counted and ignored."""
        integrator = MotionIntegrator()

        assert integrator.on_step(step(0.0), math.nan, HeadingState(0.0)) is None
        assert clean_metrics.get_drop_count('invalid_motion') == 1

    def test_missing_heading_keeps_last(self):
        """Test that a step without heading reuses the previous heading."""
        integrator = MotionIntegrator()
        integrator.on_step(step(0.0), 1.0, HeadingState(90.0))
        integrator.on_step(step(0.5), 1.0, None)

        assert integrator.displacement == pytest.approx((2.0, 0.0))

    def test_idle_detection(self):
        """Test zero motion before walking and after the idle timeout."""
        integrator = MotionIntegrator()

        idle = integrator.idle_delta(0)
        assert idle.velocity_mps == 0.0 and idle.angular_velocity_rps == 0.0

        integrator.on_step(step(1.0), 0.7, HeadingState(0.0))
        assert integrator.idle_delta(int(2.0 * NANOS_PER_SECOND)) is None
        assert integrator.idle_delta(int(3.5 * NANOS_PER_SECOND)) is not None

    def test_accept_external(self, clean_metrics):
        """Test validation of visual motion."""
        integrator = MotionIntegrator()
        visual = MotionDelta(1.0, 0.1, source=MotionSource.VISUAL)

        assert integrator.accept_external(visual) is visual
        assert integrator.accept_external(None) is None
        assert integrator.accept_external(MotionDelta(math.inf, 0.0)) is None
        assert integrator.accept_external(MotionDelta(1.0, 0.0, duration_s=0.0)) is None
        assert clean_metrics.get_drop_count('invalid_motion') == 2

    def test_reset(self):
        """Test that reset clears displacement and timing."""
        integrator = MotionIntegrator()
        integrator.on_step(step(0.0), 0.7, HeadingState(45.0))

        integrator.reset()

        assert integrator.displacement == (0.0, 0.0)
        assert integrator.last_step_timestamp_ns is None

    def test_invalid_config(self):
        """Test that an out-of-range default period raises ValueError."""
        with pytest.raises(ValueError):
            MotionIntegratorConfig(default_step_period_s=5.0)
