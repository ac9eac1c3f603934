"""
PDR Module: Pedestrian dead reckoning front end.

Key classes:
- StepDetector / AdvancedStepDetector: Peak/valley step detection
- ComplementaryHeadingEstimator / KalmanHeadingEstimator: Heading strategies
- StepLengthEstimator: Height, vigor and cadence based step length
- MotionIntegrator: Steps + heading -> MotionDelta
"""

from .step_detector import (
    StepDetector,
    StepDetectorConfig,
    StepDetectorState,
    StepPhase,
    AdvancedStepDetector,
    AdvancedStepDetectorConfig,
)
from .orientation import (
    normalize_heading,
    heading_difference,
    wrap_angle_rad,
    heading_from_rotation_vector,
    heading_from_magnetometer,
)
from .heading_estimator import (
    HeadingEstimator,
    ComplementaryHeadingEstimator,
    KalmanHeadingEstimator,
    KalmanHeadingConfig,
)
from .step_length import StepLengthEstimator, StepLengthConfig
from .motion_integrator import (
    MotionIntegrator,
    MotionIntegratorConfig,
    heading_to_theta,
)

__all__ = [
    # Steps
    'StepDetector',
    'StepDetectorConfig',
    'StepDetectorState',
    'StepPhase',
    'AdvancedStepDetector',
    'AdvancedStepDetectorConfig',
    # Orientation
    'normalize_heading',
    'heading_difference',
    'wrap_angle_rad',
    'heading_from_rotation_vector',
    'heading_from_magnetometer',
    # Heading
    'HeadingEstimator',
    'ComplementaryHeadingEstimator',
    'KalmanHeadingEstimator',
    'KalmanHeadingConfig',
    # Motion
    'StepLengthEstimator',
    'StepLengthConfig',
    'MotionIntegrator',
    'MotionIntegratorConfig',
    'heading_to_theta',
]
