"""
Pytest configuration and shared fixtures for indoor positioning tests.

This module provides reusable anchor layouts, sensor reading factories and
synthetic walking / RSSI traces for the estimator and pipeline tests.
"""

import sys
import math
from pathlib import Path
from typing import List, Tuple

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from ips_core.metrics import get_metrics
from ips_core.proto import (
    AnchorFix,
    DistanceEstimate,
    InertialSample,
    Reading,
    RotationVector,
    Vector3,
    vector_reading,
    NANOS_PER_MILLI,
)


# =============================================================================
# Metrics
# =============================================================================


@pytest.fixture(autouse=True)
def clean_metrics():
    """
    Reset the global metrics collector around every test.

    Components cache the collector at construction, so the singleton is
    cleared in place rather than replaced.
    """
    get_metrics().reset()
    yield get_metrics()
    get_metrics().reset()


# =============================================================================
# Anchor Configuration Fixtures
# =============================================================================


@pytest.fixture
def anchors() -> List[AnchorFix]:
    """
    Standard anchor layout for positioning tests.

    Equilateral triangle with 10 m sides:
    - beacon-0 at origin
    - beacon-1 at (10, 0)
    - beacon-2 at (5, 8.66)

    Returns:
        List of AnchorFix with -59 dBm calibrated power.
    """
    return [
        AnchorFix("beacon-0", (0.0, 0.0), -59.0),
        AnchorFix("beacon-1", (10.0, 0.0), -59.0),
        AnchorFix("beacon-2", (5.0, 8.66), -59.0),
    ]


@pytest.fixture
def clustered_anchors() -> List[AnchorFix]:
    """
    Anchors bunched together, far from the test tag at (4, 3).

    Returns:
        List of AnchorFix with poor geometry for tags outside the cluster.
    """
    return [
        AnchorFix("near-0", (0.0, 0.0)),
        AnchorFix("near-1", (2.0, 0.0)),
        AnchorFix("near-2", (1.0, 1.5)),
    ]


@pytest.fixture
def collinear_anchors() -> List[AnchorFix]:
    """Three anchors on the x axis."""
    return [
        AnchorFix("line-0", (0.0, 0.0)),
        AnchorFix("line-1", (5.0, 0.0)),
        AnchorFix("line-2", (10.0, 0.0)),
    ]


# =============================================================================
# Helper Functions
# =============================================================================


def calculate_distance_2d(p1: Tuple[float, float], p2: Tuple[float, float]) -> float:
    """
    Calculate Euclidean distance between two 2D points.

    Args:
        p1: First point (x, y).
        p2: Second point (x, y).

    Returns:
        Distance in the same units as input.
    """
    return math.hypot(p1[0] - p2[0], p1[1] - p2[1])


def rssi_for_distance(distance_m: float, tx_power_dbm: float = -59.0, exponent: float = 2.0) -> float:
    """
    Invert the log-distance path loss model.

    Args:
        distance_m: True distance to the anchor (m).
        tx_power_dbm: Calibrated RSSI at 1 m.
        exponent: Path loss exponent.

    Returns:
        RSSI (dBm) that maps back to distance_m.
    """
    return tx_power_dbm - 10.0 * exponent * math.log10(distance_m)


def exact_fixes(anchors: List[AnchorFix], tag: Tuple[float, float], confidence: float = 0.9):
    """
    (AnchorFix, DistanceEstimate) pairs with exact ranges to a tag.

    Args:
        anchors: Anchor layout.
        tag: True tag position (x, y).
        confidence: Confidence assigned to every range.

    Returns:
        List suitable for TrilaterationSolver.solve().
    """
    return [
        (anchor, DistanceEstimate(calculate_distance_2d(anchor.position, tag), confidence))
        for anchor in anchors
    ]


def accel_reading(magnitude: float, timestamp_ms: float) -> Reading:
    """Accelerometer reading with the given magnitude along z."""
    return vector_reading(0.0, 0.0, magnitude, int(timestamp_ms * NANOS_PER_MILLI))


def walking_magnitudes(steps: int, period_ms: float = 500.0) -> List[Tuple[float, float]]:
    """
    Synthetic walking trace as (timestamp_ms, magnitude) pairs.

    Each cycle is valley (9.0) -> peak (11.0) 100 ms later -> plateau
    (10.0) until the next valley, so every closing valley after the first
    completes one step with a 400 ms peak duration.

    Args:
        steps: Number of steps the trace should produce.
        period_ms: Time between steps.

    Returns:
        List of (timestamp_ms, magnitude).
    """
    trace = []
    for k in range(steps):
        base = k * period_ms
        trace.append((base, 9.0))
        trace.append((base + 100.0, 11.0))
        trace.append((base + 200.0, 10.0))
        trace.append((base + period_ms - 100.0, 10.0))
    trace.append((steps * period_ms, 9.0))
    return trace


def inertial_sample(
    timestamp_ms: float,
    magnitude: float = 9.81,
    gyro_z: float = 0.0,
    rotation: RotationVector = None,
    magnetometer: Vector3 = None,
) -> InertialSample:
    """
    Build an InertialSample.

    Args:
        timestamp_ms: Sample time.
        magnitude: Accelerometer magnitude along z.
        gyro_z: Gyroscope z rate (rad/s).
        rotation: Optional rotation vector.
        magnetometer: Optional magnetometer field.

    Returns:
        InertialSample with every reading at the same timestamp.
    """
    t_ns = int(timestamp_ms * NANOS_PER_MILLI)
    return InertialSample(
        accelerometer=vector_reading(0.0, 0.0, magnitude, t_ns),
        gyroscope=vector_reading(0.0, 0.0, gyro_z, t_ns),
        magnetometer=Reading(magnetometer, t_ns) if magnetometer is not None else None,
        rotation_vector=Reading(rotation, t_ns) if rotation is not None else None,
    )


def heading_rotation(heading_deg: float) -> RotationVector:
    """Rotation vector of a flat device pointing at the given compass heading."""
    half = math.radians(-heading_deg) / 2.0
    return RotationVector(0.0, 0.0, math.sin(half), math.cos(half))
