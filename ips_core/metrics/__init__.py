"""
Metrics Module: Per-stage diagnostics shared by every estimator.

- Counters per stage (radio, pdr, fusion)
- Drop reason codes, so that no input disappears silently
- Bounded histograms (trilateration_gdop, fusion_innovation_m, heading_variance)

Components grab the process-wide collector once at construction:

    from ips_core.metrics import get_metrics

    self.metrics = get_metrics()
    self.metrics.increment_drop('stale')
"""

import threading

from .counters import MetricsCollector, CounterSnapshot, STAGES

_collector = None
_collector_lock = threading.Lock()


def get_metrics() -> MetricsCollector:
    """Process-wide collector, created on first use."""
    global _collector
    with _collector_lock:
        if _collector is None:
            _collector = MetricsCollector()
        return _collector


def reset_metrics():
    """
    Replace the process-wide collector.

    Components constructed earlier keep their reference to the old
    collector; call get_metrics().reset() to zero values in place.
    """
    global _collector
    with _collector_lock:
        _collector = MetricsCollector()


__all__ = ['MetricsCollector', 'CounterSnapshot', 'STAGES', 'get_metrics', 'reset_metrics']
