"""
Protocol Module: Immutable value types shared by every estimator.

All communication between components goes through these types; none of
them carries mutable state.
"""

from .readings import (
    Reading,
    Vector3,
    RotationVector,
    InertialSample,
    vector_reading,
    rssi_reading,
    NANOS_PER_MILLI,
    NANOS_PER_SECOND,
)
from .position_estimate import (
    PositionEstimate,
    PositionSource,
    create_invalid,
    is_valid,
)
from .radio import (
    AnchorFix,
    DistanceEstimate,
)
from .motion import (
    MotionDelta,
    MotionSource,
    StepEvent,
    HeadingState,
    HeadingSource,
    HeadingAccuracy,
)

__all__ = [
    # Readings
    'Reading',
    'Vector3',
    'RotationVector',
    'InertialSample',
    'vector_reading',
    'rssi_reading',
    'NANOS_PER_MILLI',
    'NANOS_PER_SECOND',
    # Position
    'PositionEstimate',
    'PositionSource',
    'create_invalid',
    'is_valid',
    # Radio
    'AnchorFix',
    'DistanceEstimate',
    # Motion / PDR
    'MotionDelta',
    'MotionSource',
    'StepEvent',
    'HeadingState',
    'HeadingSource',
    'HeadingAccuracy',
]
