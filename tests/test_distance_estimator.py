"""
Unit tests for RSSI ranging.

Tests cover:
- RssiHistory ring buffer behaviour
- Path loss conversion and confidence sub-scores
- Per-anchor records and the anchor table (unknown anchors, staleness)
- Known-distance calibration of tx power and path loss exponent
"""

import math

import pytest

from ips_core.localization import (
    AnchorRecord,
    AnchorTable,
    DistanceEstimator,
    DistanceEstimatorConfig,
    RssiHistory,
    calibrate_tx_power,
    estimate_path_loss_exponent,
)
from ips_core.proto import AnchorFix, rssi_reading, NANOS_PER_SECOND
from tests.conftest import rssi_for_distance


class TestRssiHistory:
    """Tests for the fixed-capacity RSSI buffer."""

    def test_empty_history(self):
        """Test statistics of an empty buffer."""
        history = RssiHistory()

        assert len(history) == 0
        assert history.mean() is None
        assert history.variance() is None
        assert history.latest() is None

    def test_variance_needs_two_samples(self):
        """Test that variance is unknown with a single sample."""
        history = RssiHistory()
        history.push(-60.0)

        assert history.mean() == -60.0
        assert history.variance() is None

        history.push(-64.0)
        assert history.mean() == pytest.approx(-62.0)
        assert history.variance() == pytest.approx(4.0)

    def test_oldest_evicted_when_full(self):
        """Test that pushing into a full buffer drops the oldest sample."""
        history = RssiHistory(capacity=3)
        for value in (-50.0, -60.0, -70.0, -80.0):
            history.push(value)

        assert history.is_full
        assert len(history) == 3
        assert history.values() == [-60.0, -70.0, -80.0]
        assert history.latest() == -80.0
        assert history.mean() == pytest.approx(-70.0)

    def test_clear(self):
        """Test that clear empties the buffer."""
        history = RssiHistory()
        history.push(-60.0)
        history.clear()

        assert len(history) == 0
        assert history.values() == []

    def test_invalid_capacity(self):
        """Test that a zero capacity raises ValueError."""
        with pytest.raises(ValueError):
            RssiHistory(capacity=0)


class TestDistanceEstimation:
    """Tests for the path loss conversion."""

    def test_reference_power_is_one_meter(self):
        """Test that RSSI equal to the calibrated power maps to 1 m."""
        estimator = DistanceEstimator()
        estimate = estimator.estimate(-59.0, tx_power_dbm=-59.0)

        assert estimate.distance_m == pytest.approx(1.0)

    def test_distance_monotonic_in_rssi(self):
        """Test that weaker signals map to larger distances."""
        estimator = DistanceEstimator()
        distances = [
            estimator.estimate(rssi, tx_power_dbm=-59.0).distance_m
            for rssi in (-55.0, -60.0, -70.0, -80.0, -90.0)
        ]

        assert distances == sorted(distances)
        assert len(set(distances)) == len(distances)

    def test_path_loss_inversion(self):
        """Test that the conversion inverts the path loss model."""
        estimator = DistanceEstimator()
        rssi = rssi_for_distance(7.5)

        assert estimator.estimate(rssi, tx_power_dbm=-59.0).distance_m == pytest.approx(7.5)

    def test_exponent_override(self):
        """Test a per-call path loss exponent."""
        estimator = DistanceEstimator()
        rssi = rssi_for_distance(4.0, exponent=3.0)

        estimate = estimator.estimate(rssi, tx_power_dbm=-59.0, path_loss_exponent=3.0)
        assert estimate.distance_m == pytest.approx(4.0)

    @pytest.mark.parametrize("rssi", [0.0, math.nan, math.inf])
    def test_unusable_rssi_is_no_signal(self, rssi):
        """Test that the sentinel and non-finite inputs give no signal."""
        estimate = DistanceEstimator().estimate(rssi, tx_power_dbm=-59.0)
        assert not estimate.has_signal

    def test_non_positive_exponent_is_no_signal(self):
        """Test that a bad exponent gives no signal instead of raising."""
        estimate = DistanceEstimator().estimate(-60.0, -59.0, path_loss_exponent=0.0)
        assert not estimate.has_signal

    def test_confidence_weights(self):
        """Test the weighted combination of sub-scores."""
        estimator = DistanceEstimator()
        estimate = estimator.estimate(-75.0, -59.0, rssi_variance=0.0, age_ms=0.0)

        # variance 1.0, strength (-75 + 100) / 50 = 0.5, recency 1.0
        assert estimate.variance_score == pytest.approx(1.0)
        assert estimate.strength_score == pytest.approx(0.5)
        assert estimate.recency_score == pytest.approx(1.0)
        assert estimate.confidence == pytest.approx(0.5 + 0.15 + 0.2)

    def test_confidence_bounded(self):
        """Test that confidence stays in [0, 1] across the input space."""
        estimator = DistanceEstimator()
        for rssi in (-120.0, -100.0, -70.0, -40.0, -10.0):
            for variance in (None, 0.0, 50.0, 1e6):
                for age_ms in (0.0, 2500.0, 1e9):
                    estimate = estimator.estimate(rssi, -59.0, rssi_variance=variance, age_ms=age_ms)
                    assert 0.0 <= estimate.confidence <= 1.0

    def test_unknown_variance_scores_zero(self):
        """Test that a single-sample window gets no stability credit."""
        assert DistanceEstimator().variance_score(None) == 0.0

    def test_recency_decays_to_zero(self):
        """Test the recency score over the staleness timeout."""
        estimator = DistanceEstimator(DistanceEstimatorConfig(staleness_timeout_ms=1000.0))

        assert estimator.recency_score(0.0) == 1.0
        assert estimator.recency_score(500.0) == pytest.approx(0.5)
        assert estimator.recency_score(5000.0) == 0.0

    def test_config_validation(self):
        """Test that invalid configuration raises ValueError."""
        with pytest.raises(ValueError):
            DistanceEstimatorConfig(path_loss_exponent=0.0)
        with pytest.raises(ValueError):
            DistanceEstimatorConfig(strength_min_dbm=-50.0, strength_max_dbm=-100.0)


class TestAnchorRecord:
    """Tests for per-anchor tracking records."""

    def test_update_appends_and_estimates(self):
        """Test that update feeds the moving average."""
        estimator = DistanceEstimator()
        record = AnchorRecord(AnchorFix("a", (0.0, 0.0), -59.0))

        estimator.update(record, rssi_reading(-59.0, 0))
        estimate = estimator.update(record, rssi_reading(-59.0, 1000))

        assert record.sample_count == 2
        assert record.filtered_rssi == pytest.approx(-59.0)
        assert estimate.distance_m == pytest.approx(1.0)
        assert estimate.variance_score == pytest.approx(1.0)

    def test_no_signal_not_buffered(self, clean_metrics):
        """Test that the 0 dBm sentinel is counted but not averaged."""
        estimator = DistanceEstimator()
        record = AnchorRecord(AnchorFix("a", (0.0, 0.0)))

        estimator.update(record, rssi_reading(-65.0, 0))
        estimate = estimator.update(record, rssi_reading(0.0, 1000))

        assert not estimate.has_signal
        assert record.sample_count == 1
        assert record.last_rssi == 0.0
        assert clean_metrics.get_drop_count('no_signal') == 1


class TestAnchorTable:
    """Tests for the configured anchor table."""

    def test_duplicate_anchor_ids_rejected(self):
        """Test that duplicate IDs raise ValueError."""
        with pytest.raises(ValueError):
            AnchorTable([AnchorFix("a", (0.0, 0.0)), AnchorFix("a", (1.0, 1.0))])

    def test_unknown_anchor_dropped(self, anchors, clean_metrics):
        """Test that samples from unconfigured anchors are counted and ignored."""
        table = AnchorTable(anchors)

        assert table.ingest("rogue", rssi_reading(-60.0, 0)) is None
        assert clean_metrics.get_drop_count('unknown_anchor') == 1
        assert table.estimates(0) == []

    def test_estimates_only_heard_anchors(self, anchors):
        """Test that never-heard anchors are left out."""
        table = AnchorTable(anchors)
        table.ingest("beacon-0", rssi_reading(-65.0, 0))
        table.ingest("beacon-1", rssi_reading(-70.0, 0))

        fixes = table.estimates(0)

        assert [anchor.anchor_id for anchor, _ in fixes] == ["beacon-0", "beacon-1"]
        assert all(estimate.has_signal for _, estimate in fixes)

    def test_stale_anchor_confidence_decays(self, anchors):
        """Test that an older reading carries less confidence."""
        table = AnchorTable(anchors)
        table.ingest("beacon-0", rssi_reading(-65.0, 0))

        fresh = table.estimates(0)[0][1]
        old = table.estimates(4 * NANOS_PER_SECOND)[0][1]

        assert old.confidence < fresh.confidence
        assert old.distance_m == pytest.approx(fresh.distance_m)

    def test_very_stale_anchor_excluded(self, anchors, clean_metrics):
        """Test that anchors silent for twice the timeout are dropped."""
        table = AnchorTable(anchors)
        table.ingest("beacon-0", rssi_reading(-65.0, 0))

        assert len(table.estimates(6 * NANOS_PER_SECOND)) == 1
        assert table.estimates(11 * NANOS_PER_SECOND) == []
        assert clean_metrics.get_drop_count('stale') == 1

    def test_clear_forgets_history(self, anchors):
        """Test that clear keeps anchors but forgets readings."""
        table = AnchorTable(anchors)
        table.ingest("beacon-0", rssi_reading(-65.0, 0))
        table.clear()

        assert len(table) == 3
        assert "beacon-0" in table
        assert table.estimates(0) == []


class TestCalibration:
    """Tests for known-distance calibration."""

    def test_tx_power_at_one_meter(self):
        """Test that the 1 m power is the mean RSSI."""
        assert calibrate_tx_power([-59.0, -61.0, -60.0]) == pytest.approx(-60.0)

    def test_tx_power_from_history(self):
        history = RssiHistory(capacity=4)
        for rssi in (-58.0, -62.0, -61.0, -59.0):
            history.push(rssi)

        assert calibrate_tx_power(history) == pytest.approx(-60.0)

    def test_tx_power_at_distance(self):
        """Test that calibrated power ranges back to the recording distance."""
        tx_power = calibrate_tx_power([-72.0, -70.0, -71.0], distance_m=4.0, path_loss_exponent=2.5)

        assert tx_power == pytest.approx(-71.0 + 25.0 * math.log10(4.0))
        distance = DistanceEstimator().estimate(-71.0, tx_power, path_loss_exponent=2.5).distance_m
        assert distance == pytest.approx(4.0)

    def test_no_signal_samples_ignored(self):
        assert calibrate_tx_power([0.0, -60.0, 0.0, -62.0]) == pytest.approx(-61.0)

    def test_path_loss_exponent(self):
        """Test recovery of n from RSSI at 10 m."""
        assert estimate_path_loss_exponent([-80.0, -78.0], tx_power_dbm=-59.0, distance_m=10.0) == pytest.approx(2.0)

    def test_path_loss_exponent_matches_model(self):
        """Test that n from RSSI generated at 3 m with n=2 is 2."""
        samples = [rssi_for_distance(3.0)] * 5

        assert estimate_path_loss_exponent(samples, -59.0, 3.0) == pytest.approx(2.0)

    @pytest.mark.parametrize("mean_rssi,expected", [
        (-59.5, 1.5),
        (-120.0, 4.0),
    ])
    def test_path_loss_exponent_clamped(self, mean_rssi, expected):
        """Test that implausible exponents are clamped to [1.5, 4.0]."""
        assert estimate_path_loss_exponent([mean_rssi], -59.0, 10.0) == pytest.approx(expected)

    @pytest.mark.parametrize("samples,distance", [
        ([], 1.0),
        ([0.0, 0.0], 1.0),
        ([-60.0], 0.0),
        ([-60.0], -2.0),
        ([-60.0], math.nan),
    ])
    def test_tx_power_invalid_input(self, samples, distance):
        """Test that missing samples or a bad distance raise ValueError."""
        with pytest.raises(ValueError):
            calibrate_tx_power(samples, distance_m=distance)

    @pytest.mark.parametrize("samples,distance", [
        ([], 5.0),
        ([-70.0], 1.0),
        ([-70.0], 0.0),
    ])
    def test_path_loss_exponent_invalid_input(self, samples, distance):
        with pytest.raises(ValueError):
            estimate_path_loss_exponent(samples, -59.0, distance)
