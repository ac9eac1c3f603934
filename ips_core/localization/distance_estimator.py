"""
RSSI Distance Estimator.

Converts a filtered RSSI reading plus an anchor's calibrated 1 m power into
a distance (log-distance path-loss law) and a confidence score built from
three sub-scores:

    confidence = 0.5 * variance_score + 0.3 * strength_score + 0.2 * recency_score

Per-anchor tracking records own the RSSI ring buffer; the estimator itself
is stateless. calibrate_tx_power and estimate_path_loss_exponent invert the
same law for RSSI recorded at a known distance.

Reference: Log-distance path loss model, d = 10 ^ ((P_1m - RSSI) / (10 n))
"""

from typing import Dict, List, Optional, Tuple, Iterable, Union
from dataclasses import dataclass
import logging
import math
import threading

import numpy as np

from ips_core.proto.readings import Reading, NANOS_PER_MILLI
from ips_core.proto.radio import AnchorFix, DistanceEstimate
from ips_core.localization.rssi_history import RssiHistory, DEFAULT_CAPACITY
from ips_core.metrics import get_metrics


logger = logging.getLogger(__name__)

NO_SIGNAL_RSSI = 0.0

DEFAULT_PATH_LOSS_EXPONENT = 2.0
MIN_PATH_LOSS_EXPONENT = 1.5
MAX_PATH_LOSS_EXPONENT = 4.0


@dataclass
class DistanceEstimatorConfig:
    """
    Configuration for RSSI distance estimation.

    Attributes:
        path_loss_exponent: Environmental decay constant (2.0 free space, up to ~4 indoors)
        staleness_timeout_ms: Age at which the recency score reaches 0 (ms)
        strength_min_dbm: RSSI mapped to strength score 0
        strength_max_dbm: RSSI mapped to strength score 1
        variance_scale: RSSI variance (dBm^2) mapped to variance score 0
        variance_weight: Weight of the stability sub-score
        strength_weight: Weight of the signal strength sub-score
        recency_weight: Weight of the recency sub-score
        history_capacity: RSSI samples kept per anchor
    """

    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT
    staleness_timeout_ms: float = 5000.0
    strength_min_dbm: float = -100.0
    strength_max_dbm: float = -50.0
    variance_scale: float = 100.0
    variance_weight: float = 0.5
    strength_weight: float = 0.3
    recency_weight: float = 0.2
    history_capacity: int = DEFAULT_CAPACITY

    def __post_init__(self):
        """Validate configuration."""
        if not self.path_loss_exponent > 0:
            raise ValueError(f"Path loss exponent must be positive: {self.path_loss_exponent}")
        if self.staleness_timeout_ms <= 0:
            raise ValueError(f"Staleness timeout must be positive: {self.staleness_timeout_ms}")
        if self.strength_max_dbm <= self.strength_min_dbm:
            raise ValueError("strength_max_dbm must be greater than strength_min_dbm")
        if self.variance_scale <= 0:
            raise ValueError(f"Variance scale must be positive: {self.variance_scale}")
        if self.history_capacity < 2:
            raise ValueError(f"History capacity must be at least 2: {self.history_capacity}")


class AnchorRecord:
    """
    Tracking record for one anchor.

    Owns the anchor's RSSI history. Radio producers append through
    add_sample(); the tick reads a consistent snapshot through the same
    lock, so the two never see a half-updated record.
    """

    def __init__(self, anchor: AnchorFix, history_capacity: int = DEFAULT_CAPACITY):
        self.anchor = anchor
        self._history = RssiHistory(history_capacity)
        self._lock = threading.Lock()
        self._last_rssi: Optional[float] = None
        self._last_seen_ns: Optional[int] = None

    @property
    def anchor_id(self) -> str:
        return self.anchor.anchor_id

    def add_sample(self, reading: Reading) -> bool:
        """
        Record a raw RSSI reading.

        The no-signal sentinel (0 dBm) is not appended to the history but
        is remembered as the latest reading.

        Returns:
            True if the sample entered the history
        """
        rssi = float(reading.value)
        with self._lock:
            self._last_rssi = rssi
            self._last_seen_ns = reading.timestamp_ns
            if rssi == NO_SIGNAL_RSSI or not math.isfinite(rssi):
                return False
            self._history.push(rssi)
            return True

    def snapshot(self) -> Tuple[Optional[float], Optional[float], Optional[float], Optional[int]]:
        """(filtered_rssi, rssi_variance, last_rssi, last_seen_ns) under the lock."""
        with self._lock:
            return (
                self._history.mean(),
                self._history.variance(),
                self._last_rssi,
                self._last_seen_ns,
            )

    @property
    def filtered_rssi(self) -> Optional[float]:
        with self._lock:
            return self._history.mean()

    @property
    def rssi_variance(self) -> Optional[float]:
        with self._lock:
            return self._history.variance()

    @property
    def last_rssi(self) -> Optional[float]:
        return self._last_rssi

    @property
    def last_seen_ns(self) -> Optional[int]:
        return self._last_seen_ns

    @property
    def sample_count(self) -> int:
        with self._lock:
            return len(self._history)

    def clear(self):
        with self._lock:
            self._history.clear()
            self._last_rssi = None
            self._last_seen_ns = None


class DistanceEstimator:
    """
    Stateless RSSI to distance + confidence converter.

    Usage:
        estimator = DistanceEstimator(config)

        # Pure conversion
        est = estimator.estimate(-65.0, tx_power_dbm=-59.0)

        # With per-anchor tracking (appends to the record's history)
        est = estimator.update(record, reading, now_ns)
        if est.has_signal:
            print(f"{est.distance_m:.1f} m @ {est.confidence:.2f}")
    """

    def __init__(self, config: Optional[DistanceEstimatorConfig] = None):
        self.config = config or DistanceEstimatorConfig()
        self.metrics = get_metrics()

    def estimate(
        self,
        filtered_rssi: float,
        tx_power_dbm: float,
        path_loss_exponent: Optional[float] = None,
        rssi_variance: Optional[float] = None,
        age_ms: float = 0.0,
    ) -> DistanceEstimate:
        """
        Convert filtered RSSI into distance and confidence.

        Args:
            filtered_rssi: Moving-average RSSI (dBm); 0 means no signal
            tx_power_dbm: Calibrated RSSI at 1 m (dBm)
            path_loss_exponent: Override of the configured exponent
            rssi_variance: Variance of the RSSI window, None with < 2 samples
            age_ms: Age of the newest sample (ms)

        Returns:
            DistanceEstimate; the no-signal estimate for sentinel or
            non-finite inputs
        """
        n = self.config.path_loss_exponent if path_loss_exponent is None else path_loss_exponent

        if filtered_rssi == NO_SIGNAL_RSSI:
            return DistanceEstimate.no_signal()

        if not (math.isfinite(filtered_rssi) and math.isfinite(tx_power_dbm)):
            return DistanceEstimate.no_signal()

        if not (math.isfinite(n) and n > 0):
            logger.warning(f"Rejecting non-positive path loss exponent {n}")
            return DistanceEstimate.no_signal()

        exponent = (tx_power_dbm - filtered_rssi) / (10.0 * n)
        try:
            distance_m = math.pow(10.0, exponent)
        except OverflowError:
            return DistanceEstimate.no_signal()

        variance_score = self.variance_score(rssi_variance)
        strength_score = self.strength_score(filtered_rssi)
        recency_score = self.recency_score(age_ms)

        confidence = (
            self.config.variance_weight * variance_score +
            self.config.strength_weight * strength_score +
            self.config.recency_weight * recency_score
        )

        return DistanceEstimate(
            distance_m=distance_m,
            confidence=confidence,
            variance_score=variance_score,
            strength_score=strength_score,
            recency_score=recency_score,
        )

    def variance_score(self, rssi_variance: Optional[float]) -> float:
        """Stability score; 0 when the variance is unknown."""
        if rssi_variance is None or not math.isfinite(rssi_variance):
            return 0.0
        return _clamp01(1.0 - rssi_variance / self.config.variance_scale)

    def strength_score(self, rssi_dbm: float) -> float:
        """Linear score over the configured dBm band."""
        span = self.config.strength_max_dbm - self.config.strength_min_dbm
        return _clamp01((rssi_dbm - self.config.strength_min_dbm) / span)

    def recency_score(self, age_ms: float) -> float:
        """1 for a fresh sample, 0 at or beyond the staleness timeout."""
        if not math.isfinite(age_ms):
            return 0.0
        return 1.0 - min(1.0, max(0.0, age_ms) / self.config.staleness_timeout_ms)

    def update(self, record: AnchorRecord, reading: Reading, now_ns: Optional[int] = None) -> DistanceEstimate:
        """
        Append a raw reading to the anchor's history and re-estimate.

        Args:
            record: Anchor tracking record (mutated)
            reading: Raw RSSI reading
            now_ns: Evaluation time (defaults to the reading's timestamp)

        Returns:
            DistanceEstimate from the updated moving average
        """
        if float(reading.value) == NO_SIGNAL_RSSI:
            record.add_sample(reading)
            self.metrics.increment_drop('no_signal')
            return DistanceEstimate.no_signal()

        record.add_sample(reading)
        return self.estimate_record(record, reading.timestamp_ns if now_ns is None else now_ns)

    def estimate_record(self, record: AnchorRecord, now_ns: int) -> DistanceEstimate:
        """Estimate from a record's current history without modifying it."""
        filtered, variance, last_rssi, last_seen_ns = record.snapshot()

        if filtered is None or last_seen_ns is None or last_rssi == NO_SIGNAL_RSSI:
            return DistanceEstimate.no_signal()

        age_ms = max(0.0, (now_ns - last_seen_ns) / NANOS_PER_MILLI)
        return self.estimate(
            filtered,
            record.anchor.tx_power_dbm,
            rssi_variance=variance,
            age_ms=age_ms,
        )


class AnchorTable:
    """
    Configured anchors and their tracking records.

    Usage:
        table = AnchorTable(anchors, estimator)
        table.ingest("AA:BB:CC:DD:EE:01", rssi_reading(-62, t_ns))

        fixes = table.estimates(now_ns)   # [(AnchorFix, DistanceEstimate), ...]
        estimate = solver.solve(fixes)
    """

    def __init__(self, anchors: Iterable[AnchorFix], estimator: Optional[DistanceEstimator] = None):
        """
        Build the table from static configuration.

        Raises:
            ValueError: On duplicate anchor IDs
        """
        self.estimator = estimator or DistanceEstimator()
        self.metrics = get_metrics()
        self._records: Dict[str, AnchorRecord] = {}

        for anchor in anchors:
            if anchor.anchor_id in self._records:
                raise ValueError(f"Duplicate anchor ID: {anchor.anchor_id}")
            self._records[anchor.anchor_id] = AnchorRecord(
                anchor, self.estimator.config.history_capacity
            )

        logger.info(f"Anchor table initialized with {len(self._records)} anchors")

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, anchor_id: str) -> bool:
        return anchor_id in self._records

    def get(self, anchor_id: str) -> Optional[AnchorRecord]:
        return self._records.get(anchor_id)

    @property
    def anchor_ids(self) -> List[str]:
        return sorted(self._records)

    def ingest(self, anchor_id: str, reading: Reading) -> Optional[DistanceEstimate]:
        """
        Feed one radio sample.

        Returns:
            Updated DistanceEstimate, None for unknown anchors
        """
        record = self._records.get(anchor_id)
        if record is None:
            self.metrics.increment_drop('unknown_anchor')
            logger.debug(f"Ignoring sample from unknown anchor {anchor_id}")
            return None

        self.metrics.increment('radio_samples')
        return self.estimator.update(record, reading)

    def estimates(self, now_ns: int) -> List[Tuple[AnchorFix, DistanceEstimate]]:
        """
        Current distance estimates for all heard anchors.

        Stale anchors keep participating with decaying confidence; anchors
        silent for more than twice the staleness timeout are left out.
        """
        stale_limit_ns = 2.0 * self.estimator.config.staleness_timeout_ms * NANOS_PER_MILLI
        result = []

        for anchor_id in sorted(self._records):
            record = self._records[anchor_id]
            last_seen_ns = record.last_seen_ns
            if last_seen_ns is None:
                continue

            if now_ns - last_seen_ns > stale_limit_ns:
                self.metrics.increment_drop('stale')
                continue

            estimate = self.estimator.estimate_record(record, now_ns)
            if estimate.has_signal:
                result.append((record.anchor, estimate))

        return result

    def clear(self):
        """Forget all RSSI history, keep the configured anchors."""
        for record in self._records.values():
            record.clear()


def _mean_rssi(samples: Union[RssiHistory, Iterable[float]]) -> float:
    values = samples.values() if isinstance(samples, RssiHistory) else list(samples)
    rssi = np.asarray(values, dtype=float)
    rssi = rssi[np.isfinite(rssi) & (rssi != NO_SIGNAL_RSSI)]
    if rssi.size == 0:
        raise ValueError("No usable RSSI samples for calibration")
    return float(np.mean(rssi))


def calibrate_tx_power(
    samples: Union[RssiHistory, Iterable[float]],
    distance_m: float = 1.0,
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> float:
    """
    Calibrated 1 m power of an anchor from RSSI recorded at a known distance.

    Inverts the path-loss law: P_1m = mean(RSSI) + 10 * n * log10(d).
    Recorded at 1 m this is simply the mean RSSI.

    Args:
        samples: RssiHistory or raw RSSI values (dBm); 0 (no signal) is ignored
        distance_m: Distance between tag and anchor while recording (m)
        path_loss_exponent: Environment exponent n

    Returns:
        tx_power_dbm for the anchor configuration

    Raises:
        ValueError: No usable samples, or non-positive distance / exponent
    """
    if not (math.isfinite(distance_m) and distance_m > 0):
        raise ValueError(f"Calibration distance must be positive: {distance_m}")
    if not (math.isfinite(path_loss_exponent) and path_loss_exponent > 0):
        raise ValueError(f"Path loss exponent must be positive: {path_loss_exponent}")

    mean_rssi = _mean_rssi(samples)
    tx_power_dbm = mean_rssi + 10.0 * path_loss_exponent * math.log10(distance_m)
    logger.info(f"Calibrated tx power {tx_power_dbm:.1f} dBm (mean RSSI {mean_rssi:.1f} dBm at {distance_m:.2f} m)")
    return tx_power_dbm


def estimate_path_loss_exponent(
    samples: Union[RssiHistory, Iterable[float]],
    tx_power_dbm: float,
    distance_m: float,
) -> float:
    """
    Path loss exponent from RSSI recorded at a known distance.

    n = (P_1m - mean(RSSI)) / (10 * log10(d)), clamped to
    [MIN_PATH_LOSS_EXPONENT, MAX_PATH_LOSS_EXPONENT].

    Raises:
        ValueError: No usable samples, or a distance that is not positive
            or is 1 m (log10(1) = 0 leaves n undetermined)
    """
    if not (math.isfinite(distance_m) and distance_m > 0):
        raise ValueError(f"Calibration distance must be positive: {distance_m}")
    if math.isclose(distance_m, 1.0):
        raise ValueError("Path loss exponent cannot be estimated at the 1 m reference distance")

    mean_rssi = _mean_rssi(samples)
    exponent = (tx_power_dbm - mean_rssi) / (10.0 * math.log10(distance_m))
    clamped = min(MAX_PATH_LOSS_EXPONENT, max(MIN_PATH_LOSS_EXPONENT, exponent))
    if clamped != exponent:
        logger.warning(f"Path loss exponent {exponent:.2f} clamped to {clamped:.2f}")
    return clamped


def _clamp01(value: float) -> float:
    return min(1.0, max(0.0, value))
