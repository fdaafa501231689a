"""
Pinhole camera model and reprojection residual

The camera is parameterized using 7 parameters: 3 for the angle-axis
rotation, 3 for the translation and 1 for the focal length. The principal
point is assumed to be at the image center, so observations are expected to
be given relative to it.
"""

import logging
import numpy as np
from typing import Callable, List, Optional, Sequence

from .jet import as_scalars, scalar_part
from .rotation import angle_axis_rotate_point

logger = logging.getLogger(__name__)

CAMERA_BLOCK_SIZE = 7
POINT_BLOCK_SIZE = 3
NUM_RESIDUALS = 2

# Depth magnitude below which a projection is reported as degenerate
DEGENERATE_DEPTH = 1e-12

# trace_hook(camera_values, predicted_xy, observed_xy)
TraceHook = Callable[[np.ndarray, np.ndarray, np.ndarray], None]


def project_point(camera: Sequence, point: Sequence) -> List:
    """Project a world point through the camera, returns predicted (x, y)"""
    camera = as_scalars(camera)
    point = as_scalars(point)

    # camera[0,1,2] are the angle-axis rotation
    p = angle_axis_rotate_point(camera[0:3], point)

    # camera[3,4,5] are the translation
    p = [p[0] + camera[3], p[1] + camera[4], p[2] + camera[5]]

    if abs(scalar_part(p[2])) < DEGENERATE_DEPTH:
        logger.debug(f"Degenerate geometry: point depth {scalar_part(p[2]):.3e} in camera frame")

    # Homogeneous to euclidean; no guard, a zero depth yields an inf residual
    with np.errstate(divide="ignore", invalid="ignore"):
        xp = p[0] / p[2]
        yp = p[1] / p[2]

    focal = camera[6]
    return [focal * xp, focal * yp]


class PinholeReprojectionError:
    """Reprojection residual of one observation

    Callable with a camera block and a point block of any supported scalar
    type (numpy floats or Jets); returns the two residual components.
    """

    def __init__(self, observed_x: float, observed_y: float,
                 trace_hook: Optional[TraceHook] = None):
        self.observed_x = float(observed_x)
        self.observed_y = float(observed_y)
        self.trace_hook = trace_hook

    @property
    def observed(self) -> np.ndarray:
        return np.array([self.observed_x, self.observed_y])

    def __call__(self, camera: Sequence, point: Sequence) -> List:
        predicted = project_point(camera, point)

        if self.trace_hook is not None:
            self.trace_hook(
                np.array([scalar_part(c) for c in camera]),
                np.array([scalar_part(predicted[0]), scalar_part(predicted[1])]),
                self.observed,
            )

        # The error is the difference between the predicted and observed position
        return [predicted[0] - self.observed_x, predicted[1] - self.observed_y]

    def __repr__(self) -> str:
        return f"PinholeReprojectionError(observed=({self.observed_x}, {self.observed_y}))"
