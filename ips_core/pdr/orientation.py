"""
Absolute heading references and angle helpers.

Headings are degrees in [0, 360), 0 = magnetic north, increasing
clockwise (90 = east), in the Android device frame convention
(x right, y forward, z out of the screen).

Reference: Android SensorManager.getRotationMatrix / getOrientation
"""

from typing import Optional
import math

import numpy as np

from ips_core.proto.readings import Vector3, RotationVector


RADIANS_TO_DEGREES = 57.2957795

# Below this |E x A| the field is parallel to gravity (free fall / magnetic pole)
MIN_HORIZONTAL_FIELD = 0.1


def normalize_heading(heading_deg: float) -> float:
    """Wrap a heading into [0, 360)."""
    result = math.fmod(heading_deg, 360.0)
    if result < 0:
        result += 360.0
    if result >= 360.0:
        result = 0.0
    return result


def heading_difference(from_deg: float, to_deg: float) -> float:
    """Shortest signed rotation from from_deg to to_deg, in (-180, 180]."""
    diff = math.fmod(to_deg - from_deg, 360.0)
    if diff > 180.0:
        diff -= 360.0
    elif diff <= -180.0:
        diff += 360.0
    return diff


def wrap_angle_rad(angle: float) -> float:
    """Wrap an angle into (-pi, pi]."""
    wrapped = math.fmod(angle + math.pi, 2.0 * math.pi)
    if wrapped <= 0:
        wrapped += 2.0 * math.pi
    return wrapped - math.pi


def heading_from_rotation_vector(rotation: RotationVector) -> float:
    """
    Azimuth of a rotation-vector quaternion.

    Equivalent to getRotationMatrixFromVector followed by getOrientation:
    azimuth = atan2(R[0][1], R[1][1]).
    """
    x, y, z, w = rotation.x, rotation.y, rotation.z, rotation.scalar
    r01 = 2.0 * x * y - 2.0 * z * w
    r11 = 1.0 - 2.0 * x * x - 2.0 * z * z
    return normalize_heading(math.degrees(math.atan2(r01, r11)))


def heading_from_magnetometer(accelerometer: Vector3, magnetometer: Vector3) -> Optional[float]:
    """
    Tilt-compensated compass heading.

    Args:
        accelerometer: Gravity direction (device frame)
        magnetometer: Geomagnetic field (device frame)

    Returns:
        Heading in degrees, or None when the geometry is degenerate
        (no gravity, or field parallel to gravity)
    """
    gravity = accelerometer.as_array()
    field = magnetometer.as_array()

    if not (np.all(np.isfinite(gravity)) and np.all(np.isfinite(field))):
        return None

    east = np.cross(field, gravity)
    norm_east = np.linalg.norm(east)
    if norm_east < MIN_HORIZONTAL_FIELD:
        return None

    norm_gravity = np.linalg.norm(gravity)
    if norm_gravity == 0:
        return None

    east = east / norm_east
    gravity = gravity / norm_gravity
    north = np.cross(gravity, east)

    return normalize_heading(math.degrees(math.atan2(east[1], north[1])))
