"""
Indoor positioning configuration.

Module-level dictionaries with the default tuning of every estimator.
build_pipeline_config() maps them (plus optional overrides) onto the
dataclass configs consumed by ips_core.
"""

import copy
from typing import Dict, Optional

from ips_core.localization import DistanceEstimatorConfig, TrilaterationConfig
from ips_core.pdr import (
    StepDetectorConfig,
    AdvancedStepDetectorConfig,
    KalmanHeadingConfig,
    StepLengthConfig,
    MotionIntegratorConfig,
)
from ips_core.fusion import FusionConfig, PipelineConfig

# Logging
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}

# Estimator tuning
POSITIONING_CONFIG = {
    "pipeline": {
        "heading_strategy": "complementary",   # "complementary" or "kalman"
        "advanced_step_detection": False,
        "gyro_weight": 0.98,
        "complementary_alpha": 0.98,
        "pdr_motion_confidence": 0.6,
        "visual_motion_confidence": 0.9,
        "inertial_queue_capacity": 512,
    },
    "distance": {
        "path_loss_exponent": 2.0,         # 2.0 free space, 2.5-4.0 indoors
        "staleness_timeout_ms": 5000.0,
        "strength_min_dbm": -100.0,
        "strength_max_dbm": -50.0,
        "variance_scale": 100.0,
    },
    "trilateration": {
        "min_anchors": 3,
        "min_confidence": 0.1,
        "max_iterations": 50,
        "convergence_tol_m": 1e-4,
        "max_condition_number": 1e8,
        "max_distance_m": 100.0,
        "range_sigma_floor_m": 0.5,
    },
    "step_detector": {
        "peak_threshold": 10.5,
        "valley_threshold": 9.5,
        "min_peak_valley_height": 0.7,
        "min_step_interval_ms": 250.0,
        "max_step_interval_ms": 2000.0,
    },
    "advanced_step_detector": {
        "gyro_threshold": 0.2,
        "require_gyro_corroboration": True,   # False for devices without a gyroscope
    },
    "kalman_heading": {
        "gyro_noise": 0.01,
        "magnetometer_noise": 0.05,
        "rot_vector_noise": 0.01,
        "process_noise": 0.001,
    },
    "step_length": {
        "user_height_m": 1.70,
        "calibration_factor": 1.0,
    },
    "motion": {
        "default_step_period_s": 0.5,
    },
    "fusion": {
        "position_process_noise": 0.05,
        "heading_process_noise": 0.02,
        "min_fix_confidence": 0.05,
        "drift_correction_threshold_m": 5.0,
        "drift_correction_factor": 0.3,
        "drift_correction_interval_s": 10.0,
        "drift_min_confidence": 0.5,
        "drift_max_accuracy_m": 10.0,
        "max_invalid_duration_s": 30.0,
    },
}

# Sensor log replay
REPLAY_CONFIG = {
    "tick_interval_ms": 100,         # Synthetic tick rate when the log has no tick events
    "print_interval": 10,            # Print every Nth fused estimate
    "summary": True,                 # Log metrics summary at the end
}

# Demo anchor layout (used when no anchor file is given)
DEFAULT_ANCHORS = [
    {"id": "beacon-0", "x": 0.0, "y": 0.0, "tx_power": -59.0},
    {"id": "beacon-1", "x": 10.0, "y": 0.0, "tx_power": -59.0},
    {"id": "beacon-2", "x": 5.0, "y": 8.66, "tx_power": -59.0},
]


def _merge(base: Dict, overrides: Optional[Dict]) -> Dict:
    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_pipeline_config(overrides: Optional[Dict] = None) -> PipelineConfig:
    """
    Build a PipelineConfig from POSITIONING_CONFIG.

    Args:
        overrides: Nested dict with the same layout as POSITIONING_CONFIG

    Returns:
        PipelineConfig

    Raises:
        ValueError: On invalid values (validated by the dataclasses)
    """
    settings = _merge(POSITIONING_CONFIG, overrides)
    pipeline = settings["pipeline"]

    if pipeline.get("advanced_step_detection"):
        step_detector = AdvancedStepDetectorConfig(
            **settings["step_detector"], **settings["advanced_step_detector"]
        )
    else:
        step_detector = StepDetectorConfig(**settings["step_detector"])

    return PipelineConfig(
        **pipeline,
        distance=DistanceEstimatorConfig(**settings["distance"]),
        trilateration=TrilaterationConfig(**settings["trilateration"]),
        step_detector=step_detector,
        kalman_heading=KalmanHeadingConfig(**settings["kalman_heading"]),
        step_length=StepLengthConfig(**settings["step_length"]),
        motion=MotionIntegratorConfig(**settings["motion"]),
        fusion=FusionConfig(**settings["fusion"]),
    )
