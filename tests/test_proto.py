"""
Unit tests for the shared value types.

Tests cover:
- Reading validation and conversions
- InertialSample reference timestamp
- PositionEstimate clamping and the invalid sentinel
- AnchorFix validation and DistanceEstimate scores
- HeadingState normalization
"""

import math
import sys

import pytest

from ips_core.proto import (
    AnchorFix,
    DistanceEstimate,
    HeadingState,
    InertialSample,
    MotionDelta,
    PositionEstimate,
    PositionSource,
    Reading,
    RotationVector,
    Vector3,
    create_invalid,
    is_valid,
    rssi_reading,
    vector_reading,
)


class TestReading:
    """Tests for timestamped readings."""

    def test_negative_timestamp_rejected(self):
        """Test that negative timestamps raise ValueError."""
        with pytest.raises(ValueError):
            Reading(-60.0, -1)

    def test_timestamp_conversions(self):
        """Test ms / s views of the nanosecond timestamp."""
        reading = rssi_reading(-60, 1_500_000_000)

        assert reading.timestamp_ms == 1500.0
        assert reading.timestamp_s == 1.5
        assert reading.is_scalar

    def test_vector_magnitude(self):
        """Test magnitude of a vector reading."""
        reading = vector_reading(3.0, 4.0, 0.0, 0)
        assert reading.magnitude() == pytest.approx(5.0)
        assert not reading.is_scalar

    def test_rotation_vector_has_no_magnitude(self):
        """Test that rotation vector readings refuse magnitude()."""
        reading = Reading(RotationVector(0.0, 0.0, 0.0, 1.0), 0)
        with pytest.raises(TypeError):
            reading.magnitude()

    def test_age_never_negative(self):
        """Test age relative to an earlier clock."""
        reading = rssi_reading(-60, 2_000_000)
        assert reading.age_ms(5_000_000) == pytest.approx(3.0)
        assert reading.age_ms(0) == 0.0

    def test_rotation_vector_scalar_derived(self):
        """Test that the scalar part is derived when not reported."""
        rotation = RotationVector(0.0, 0.0, 0.6)
        assert rotation.scalar == pytest.approx(0.8)

    def test_inertial_timestamp_prefers_gyroscope(self):
        """Test InertialSample reference timestamp."""
        accel = vector_reading(0, 0, 9.81, 100)
        gyro = vector_reading(0, 0, 0, 200)

        assert InertialSample(accel, gyro).timestamp_ns == 200
        assert InertialSample(accel).timestamp_ns == 100


class TestPositionEstimate:
    """Tests for position estimates and the invalid sentinel."""

    def test_confidence_clamped(self):
        """Test that confidence is clamped into [0, 1]."""
        high = PositionEstimate(1.0, 2.0, 1.0, 1.7)
        low = PositionEstimate(1.0, 2.0, 1.0, -0.3)
        nan = PositionEstimate(1.0, 2.0, 1.0, math.nan)

        assert high.confidence == 1.0
        assert low.confidence == 0.0
        assert nan.confidence == 0.0

    def test_negative_accuracy_rejected(self):
        """Test that a negative accuracy raises ValueError."""
        with pytest.raises(ValueError):
            PositionEstimate(0.0, 0.0, -1.0, 0.5)

    def test_invalid_sentinel(self):
        """Test the distinguished invalid estimate."""
        invalid = create_invalid(42)

        assert not invalid.is_valid
        assert math.isnan(invalid.x) and math.isnan(invalid.y)
        assert invalid.accuracy_m == math.inf
        assert invalid.confidence == 0.0
        assert invalid.timestamp_ns == 42

    def test_is_valid_predicate(self):
        """Test the module-level validity predicate."""
        assert not is_valid(None)
        assert not is_valid(create_invalid())
        assert is_valid(PositionEstimate(0.0, 0.0, 1.0, 0.5))

    def test_distance_to(self):
        """Test distance between estimates."""
        a = PositionEstimate(0.0, 0.0, 1.0, 0.5)
        b = PositionEstimate(3.0, 4.0, 1.0, 0.5)

        assert a.distance_to(b) == pytest.approx(5.0)
        assert math.isnan(a.distance_to(create_invalid()))

    def test_to_dict(self):
        """Test dictionary conversion."""
        estimate = PositionEstimate(1.0, 2.0, 0.5, 0.8, source=PositionSource.RADIO, num_anchors_used=3)
        data = estimate.to_dict()

        assert data['x'] == 1.0
        assert data['source'] == 'RADIO'
        assert data['num_anchors_used'] == 3
        assert data['is_valid'] is True


class TestRadioTypes:
    """Tests for anchor configuration and distance estimates."""

    def test_anchor_fix_accessors(self):
        """Test AnchorFix coordinate accessors."""
        anchor = AnchorFix("AA:BB", (3.0, 4.0), -62.0)
        assert anchor.x == 3.0
        assert anchor.y == 4.0

    @pytest.mark.parametrize("anchor_id,position,tx_power", [
        ("", (0.0, 0.0), -59.0),
        ("a", (math.nan, 0.0), -59.0),
        ("a", (0.0, 0.0, 1.0), -59.0),
        ("a", (0.0, 0.0), math.inf),
    ])
    def test_anchor_fix_validation(self, anchor_id, position, tx_power):
        """Test that malformed anchors raise ValueError."""
        with pytest.raises(ValueError):
            AnchorFix(anchor_id, position, tx_power)

    def test_no_signal_estimate(self):
        """Test the no-signal distance estimate."""
        estimate = DistanceEstimate.no_signal()

        assert estimate.distance_m == sys.float_info.max
        assert estimate.confidence == 0.0
        assert not estimate.has_signal

    def test_scores_clamped(self):
        """Test that confidence and sub-scores are clamped."""
        estimate = DistanceEstimate(2.0, 1.4, variance_score=-1.0, strength_score=2.0)

        assert estimate.confidence == 1.0
        assert estimate.variance_score == 0.0
        assert estimate.strength_score == 1.0
        assert estimate.has_signal


class TestMotionTypes:
    """Tests for motion and heading types."""

    def test_motion_delta_validity(self):
        """Test MotionDelta predicates."""
        assert MotionDelta(1.0, 0.0).is_valid
        assert MotionDelta(1.0, 0.0).is_straight
        assert not MotionDelta(math.nan, 0.0).is_valid
        assert not MotionDelta(1.0, 0.5).is_straight

    @pytest.mark.parametrize("raw,expected", [
        (-90.0, 270.0),
        (360.0, 0.0),
        (725.0, 5.0),
        (45.0, 45.0),
    ])
    def test_heading_state_normalized(self, raw, expected):
        """Test that HeadingState keeps headings in [0, 360)."""
        assert HeadingState(raw).heading_deg == pytest.approx(expected)

    def test_vector3_helpers(self):
        """Test Vector3 conversions."""
        vector = Vector3(1.0, 2.0, 2.0)

        assert vector.magnitude() == pytest.approx(3.0)
        assert vector.as_array().tolist() == [1.0, 2.0, 2.0]
        assert vector.is_finite
        assert not Vector3(math.inf, 0.0, 0.0).is_finite
