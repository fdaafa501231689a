"""
Angle-axis rotation helpers

``angle_axis_rotate_point`` is written against the generic scalar helpers in
``jet`` so it works for numpy floats and for Jets alike. The matrix
conversions are plain float utilities backed by OpenCV's Rodrigues formula.
"""

import cv2
import numpy as np
from typing import List, Sequence

from .jet import cos, sin, sqrt

# Below this squared angle the first order expansion is used
_SMALL_ANGLE_SQ = np.finfo(np.float64).eps


def angle_axis_rotate_point(angle_axis: Sequence, point: Sequence) -> List:
    """Rotate ``point`` by the rotation encoded in ``angle_axis``

    Args:
        angle_axis: 3 scalars; direction is the axis, norm is the angle
        point: 3 scalars

    Returns:
        Rotated point as a list of 3 scalars of the input type
    """
    theta2 = (angle_axis[0] * angle_axis[0]
              + angle_axis[1] * angle_axis[1]
              + angle_axis[2] * angle_axis[2])

    if theta2 > _SMALL_ANGLE_SQ:
        # Rodrigues' formula
        theta = sqrt(theta2)
        costheta = cos(theta)
        sintheta = sin(theta)
        theta_inverse = 1.0 / theta

        w = [angle_axis[0] * theta_inverse,
             angle_axis[1] * theta_inverse,
             angle_axis[2] * theta_inverse]

        w_cross_pt = _cross(w, point)
        tmp = (w[0] * point[0] + w[1] * point[1] + w[2] * point[2]) * (1.0 - costheta)

        return [point[i] * costheta + w_cross_pt[i] * sintheta + w[i] * tmp
                for i in range(3)]

    # Near zero: R = I + [w]_x keeps the derivatives exact at the identity
    w_cross_pt = _cross(angle_axis, point)
    return [point[i] + w_cross_pt[i] for i in range(3)]


def _cross(a: Sequence, b: Sequence) -> List:
    return [a[1] * b[2] - a[2] * b[1],
            a[2] * b[0] - a[0] * b[2],
            a[0] * b[1] - a[1] * b[0]]


def angle_axis_to_rotation_matrix(angle_axis: np.ndarray) -> np.ndarray:
    """Convert an angle-axis vector to a 3x3 rotation matrix"""
    rvec = np.asarray(angle_axis, dtype=np.float64).reshape(3, 1)
    R, _ = cv2.Rodrigues(rvec)
    return R


def rotation_matrix_to_angle_axis(R: np.ndarray) -> np.ndarray:
    """Convert a 3x3 rotation matrix to an angle-axis vector"""
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3):
        raise ValueError(f"Rotation matrix must be 3x3, got {R.shape}")
    rvec, _ = cv2.Rodrigues(R)
    return rvec.reshape(3)
