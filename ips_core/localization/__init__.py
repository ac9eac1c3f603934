"""
Localization Module: RSSI ranging and absolute fixes.

Key classes:
- RssiHistory: Fixed-capacity RSSI ring buffer per anchor
- DistanceEstimator: RSSI -> distance + confidence (log-distance path loss)
- calibrate_tx_power / estimate_path_loss_exponent: Known-distance calibration
- AnchorRecord / AnchorTable: Per-anchor tracking records
- TrilaterationSolver: Weighted Levenberg-Marquardt trilateration with GDOP
"""

from .rssi_history import RssiHistory
from .distance_estimator import (
    DistanceEstimator,
    DistanceEstimatorConfig,
    AnchorRecord,
    AnchorTable,
    calibrate_tx_power,
    estimate_path_loss_exponent,
)
from .trilateration import (
    TrilaterationSolver,
    TrilaterationConfig,
)

__all__ = [
    'RssiHistory',
    'DistanceEstimator',
    'DistanceEstimatorConfig',
    'AnchorRecord',
    'AnchorTable',
    'calibrate_tx_power',
    'estimate_path_loss_exponent',
    'TrilaterationSolver',
    'TrilaterationConfig',
]
