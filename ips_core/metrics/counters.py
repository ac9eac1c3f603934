"""
Pipeline diagnostics: counters, drop reasons and histograms.

Every estimator stage (radio, pdr, fusion) reports into one thread-safe
collector. Discarded or degraded inputs are counted under a reason code
instead of raising, so a "no fix" on the consumer side can always be
traced back to the stage that dropped it.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

import numpy as np


logger = logging.getLogger(__name__)

STAGES = ('radio', 'pdr', 'fusion')

DEFAULT_HISTOGRAM_CAPACITY = 5000


@dataclass
class CounterSnapshot:
    """Point-in-time copy of the collector."""

    timestamp: float
    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]

    def total_dropped(self) -> int:
        return sum(self.drop_reasons.values())

    def drops_for_stage(self, stage: str) -> Dict[str, int]:
        """Non-zero drop counts of one pipeline stage."""
        return {
            reason: count
            for reason, count in self.drop_reasons.items()
            if count and MetricsCollector.stage_of(reason) == stage
        }

    def drop_rate(self, total_inputs: int) -> float:
        """Dropped inputs as a percentage of total_inputs."""
        if total_inputs == 0:
            return 0.0
        return 100.0 * self.total_dropped() / total_inputs

    def fix_rate(self) -> float:
        """Share of ticks that produced a trilateration fix (0-1)."""
        ticks = self.counters.get('ticks', 0)
        if ticks == 0:
            return 0.0
        return self.counters.get('trilateration_fixes', 0) / ticks


class MetricsCollector:
    """
    Thread-safe diagnostics shared by all estimator stages.

    Usage:
        metrics = MetricsCollector()
        metrics.increment('radio_samples')
        metrics.increment_drop('stale')
        metrics.record_histogram('trilateration_gdop', 1.4)

        snapshot = metrics.snapshot()
        print(snapshot.drops_for_stage('radio'))
    """

    # Counters reported even when zero, grouped by stage
    STANDARD_COUNTERS = {
        'radio': ('radio_samples', 'trilateration_attempts', 'trilateration_fixes'),
        'pdr': ('inertial_samples', 'visual_samples', 'steps_detected'),
        'fusion': ('ticks', 'fusion_initializations', 'fusion_predictions',
                   'fusion_updates', 'fusion_drift_corrections', 'fusion_resets'),
    }

    # Drop reason code -> (stage, description)
    DROP_REASONS = {
        'no_signal': ('radio', 'RSSI sentinel 0, anchor not heard'),
        'unknown_anchor': ('radio', 'Sample from an unconfigured anchor'),
        'stale': ('radio', 'Anchor silent for more than twice the staleness timeout'),
        'insufficient_anchors': ('radio', 'Fewer usable anchors than the solver minimum'),
        'degenerate_geometry': ('radio', 'Ill-conditioned anchor geometry'),
        'solver_failed': ('radio', 'Trilateration did not converge'),
        'step_rejected': ('pdr', 'Step candidate failed timing or corroboration'),
        'invalid_motion': ('pdr', 'Non-finite motion delta'),
        'feed_overwrite': ('pdr', 'Producer feed full or slot overwritten before consumption'),
        'invalid_fix': ('fusion', 'Invalid absolute fix offered to fusion'),
        'low_confidence_fix': ('fusion', 'Fix confidence below the fusion floor'),
        'numerical_instability': ('fusion', 'Non-finite filter state or covariance'),
    }

    def __init__(self, histogram_capacity: int = DEFAULT_HISTOGRAM_CAPACITY):
        """
        Args:
            histogram_capacity: Most recent samples kept per histogram
        """
        self.histogram_capacity = histogram_capacity
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._drop_reasons: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, Deque[float]] = {}
        self._start_time = time.monotonic()
        self._seed()

    @classmethod
    def stage_of(cls, reason: str) -> Optional[str]:
        """Stage a drop reason belongs to (None for unknown codes)."""
        entry = cls.DROP_REASONS.get(reason)
        return entry[0] if entry else None

    def _seed(self):
        with self._lock:
            for names in self.STANDARD_COUNTERS.values():
                for name in names:
                    self._counters.setdefault(name, 0)
            for reason in self.DROP_REASONS:
                self._drop_reasons.setdefault(reason, 0)

    def increment(self, counter_name: str, value: int = 1):
        with self._lock:
            self._counters[counter_name] += value

    def increment_drop(self, reason: str, value: int = 1):
        """
        Count dropped inputs under a reason code.

        Unknown codes are still counted, with a warning.
        """
        if reason not in self.DROP_REASONS:
            logger.warning(f"Unknown drop reason '{reason}'")

        with self._lock:
            self._drop_reasons[reason] += value
            self._counters['inputs_dropped'] += value

    def get_counter(self, counter_name: str) -> int:
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_drop_count(self, reason: str) -> int:
        with self._lock:
            return self._drop_reasons.get(reason, 0)

    def record_histogram(self, histogram_name: str, value: float):
        """Append a sample; the oldest is evicted beyond histogram_capacity."""
        with self._lock:
            samples = self._histograms.get(histogram_name)
            if samples is None:
                samples = deque(maxlen=self.histogram_capacity)
                self._histograms[histogram_name] = samples
            samples.append(float(value))

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Summary statistics of one histogram.

        Returns:
            Dict with count, min, max, mean, std, p50, p95, p99;
            None if nothing was recorded
        """
        with self._lock:
            samples = self._histograms.get(histogram_name)
            if not samples:
                return None
            values = np.fromiter(samples, dtype=float, count=len(samples))

        p50, p95, p99 = np.percentile(values, [50, 95, 99])
        return {
            'count': int(values.size),
            'min': float(values.min()),
            'max': float(values.max()),
            'mean': float(values.mean()),
            'std': float(values.std()),
            'p50': float(p50),
            'p95': float(p95),
            'p99': float(p99),
        }

    def snapshot(self) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(
                timestamp=time.time(),
                counters=dict(self._counters),
                drop_reasons=dict(self._drop_reasons),
                histograms={name: list(samples) for name, samples in self._histograms.items()},
            )

    def reset(self):
        """Zero every counter and forget histograms."""
        with self._lock:
            self._counters.clear()
            self._drop_reasons.clear()
            self._histograms.clear()
            self._start_time = time.monotonic()
        self._seed()

    def get_uptime(self) -> float:
        """Seconds since construction or the last reset."""
        return time.monotonic() - self._start_time

    def format_summary(self) -> str:
        """Per-stage text report."""
        snapshot = self.snapshot()
        reported = set()

        lines = [
            "=" * 70,
            f"  POSITIONING METRICS (uptime: {self.get_uptime():.1f}s, "
            f"fix rate: {100.0 * snapshot.fix_rate():.1f}%)",
            "=" * 70,
        ]

        for stage in STAGES:
            lines.append(f"{stage.upper()}:")
            for name in self.STANDARD_COUNTERS[stage]:
                lines.append(f"  {name:30s}: {snapshot.counters.get(name, 0):8d}")
                reported.add(name)
            for reason, count in sorted(snapshot.drops_for_stage(stage).items()):
                lines.append(f"  drop:{reason:25s}: {count:8d}")

        extra = sorted(
            name for name, value in snapshot.counters.items()
            if name not in reported and name != 'inputs_dropped' and value
        )
        if extra:
            lines.append("OTHER:")
            lines.extend(f"  {name:30s}: {snapshot.counters[name]:8d}" for name in extra)

        lines.append(f"  {'inputs_dropped':30s}: {snapshot.total_dropped():8d}")

        if snapshot.histograms:
            lines.append("HISTOGRAMS:")
            for name in sorted(snapshot.histograms):
                stats = self.get_histogram_stats(name)
                if stats:
                    lines.append(
                        f"  {name}: n={stats['count']} mean={stats['mean']:.3f} "
                        f"p50={stats['p50']:.3f} p95={stats['p95']:.3f} max={stats['max']:.3f}"
                    )

        lines.append("=" * 70)
        return "\n".join(lines)

    def print_summary(self):
        """Log the per-stage report at INFO level."""
        logger.info(f"\n{self.format_summary()}")
