"""
Synthetic multi-view datasets for bundle adjustment

Cameras are placed on a ring around a cube of random points, all looking
at the origin with a small random jitter, and the points are projected
through each camera to build exact observations.
"""

import logging
import numpy as np
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ..core.camera_model import TraceHook
from ..core.problem import BAProblem
from ..core.rotation import rotation_matrix_to_angle_axis

logger = logging.getLogger(__name__)


@dataclass
class NViewDatasetConfig:
    """Intrinsics and placement of the camera ring"""

    # Intrinsics
    fx: float = 1000.0
    fy: float = 1000.0
    cx: float = 500.0
    cy: float = 500.0

    # Distance of the cameras from the origin
    dist: float = 1.5

    # Random perturbation of the viewing direction
    jitter_amount: float = 0.01

    def __post_init__(self):
        if self.fx <= 0 or self.fy <= 0:
            raise ValueError(f"Focal lengths must be positive, got ({self.fx}, {self.fy})")
        if self.dist <= 0:
            raise ValueError(f"dist must be positive, got {self.dist}")
        if self.jitter_amount < 0:
            raise ValueError(f"jitter_amount must be non-negative, got {self.jitter_amount}")

    @property
    def K(self) -> np.ndarray:
        return np.array([[self.fx, 0.0, self.cx],
                         [0.0, self.fy, self.cy],
                         [0.0, 0.0, 1.0]])


@dataclass
class NViewDataSet:
    """Ground truth cameras, points and their projections"""

    K: List[np.ndarray] = field(default_factory=list)  # (3, 3) per view
    R: List[np.ndarray] = field(default_factory=list)  # (3, 3) per view
    t: List[np.ndarray] = field(default_factory=list)  # (3,) per view
    C: List[np.ndarray] = field(default_factory=list)  # (3,) camera centers
    X: np.ndarray = field(default_factory=lambda: np.zeros((3, 0)))  # (3, P) points
    x: List[np.ndarray] = field(default_factory=list)  # (2, P) projections per view

    @property
    def num_views(self) -> int:
        return len(self.K)

    @property
    def num_points(self) -> int:
        return self.X.shape[1]

    def projection_matrix(self, view: int) -> np.ndarray:
        """P = K [R | t]"""
        return self.K[view] @ np.hstack([self.R[view], self.t[view].reshape(3, 1)])


def look_at(direction: np.ndarray, up: Sequence[float] = (0.0, 1.0, 0.0)) -> np.ndarray:
    """Rotation whose rows are the camera axes for a given viewing direction"""
    zc = np.asarray(direction, dtype=np.float64)
    zc = zc / np.linalg.norm(zc)
    xc = np.cross(np.asarray(up, dtype=np.float64), zc)
    xc = xc / np.linalg.norm(xc)
    yc = np.cross(zc, xc)
    return np.vstack([xc, yc, zc])


def project(P: np.ndarray, X: np.ndarray) -> np.ndarray:
    """Project (3, N) points with a 3x4 matrix, returns (2, N) pixels"""
    Xh = np.vstack([X, np.ones((1, X.shape[1]))])
    x = P @ Xh
    return x[:2] / x[2]


def n_realistic_cameras_ring(nviews: int, npoints: int,
                             config: Optional[NViewDatasetConfig] = None,
                             seed: Optional[int] = None) -> NViewDataSet:
    """Generate cameras on a ring looking at a cloud of points

    Args:
        nviews: Number of cameras
        npoints: Number of points, uniform in [-0.6, 0.6]^3
        config: Intrinsics and ring geometry
        seed: Random seed for points and jitter

    Returns:
        NViewDataSet with exact projections
    """
    if nviews <= 0 or npoints < 0:
        raise ValueError(f"Need at least one view and non-negative points, got {nviews}, {npoints}")

    config = config or NViewDatasetConfig()
    rng = np.random.default_rng(seed)

    dataset = NViewDataSet()
    dataset.X = rng.uniform(-0.6, 0.6, size=(3, npoints))

    K = config.K
    for i in range(nviews):
        theta = i * 2.0 * np.pi / nviews
        camera_center = config.dist * np.array([np.sin(theta), 0.0, np.cos(theta)])

        jitter = config.jitter_amount * rng.uniform(-1.0, 1.0, size=3)
        lookdir = -camera_center + jitter / np.linalg.norm(camera_center)

        R = look_at(lookdir)
        t = -R @ camera_center

        dataset.K.append(K.copy())
        dataset.R.append(R)
        dataset.t.append(t)
        dataset.C.append(camera_center)
        dataset.x.append(project(dataset.projection_matrix(i), dataset.X))

    logger.debug(f"Generated ring dataset: {nviews} views, {npoints} points, dist {config.dist}")
    return dataset


def add_pixel_noise(dataset: NViewDataSet, sigma: float,
                    seed: Optional[int] = None) -> NViewDataSet:
    """Add Gaussian noise to the projections in place; returns the dataset"""
    if sigma < 0:
        raise ValueError(f"sigma must be non-negative, got {sigma}")
    if sigma == 0:
        return dataset
    rng = np.random.default_rng(seed)
    for i in range(dataset.num_views):
        dataset.x[i] = dataset.x[i] + rng.normal(0.0, sigma, size=dataset.x[i].shape)
    return dataset


def problem_from_dataset(dataset: NViewDataSet,
                         principal_point: Sequence[float] = (500.0, 500.0),
                         trace_hook: Optional[TraceHook] = None) -> BAProblem:
    """Build a bundle adjustment problem observing every point in every view

    Cameras are initialized from the dataset's ground truth (angle-axis of R,
    t and the focal length K[0, 0]); observations are the projections minus
    the principal point.
    """
    problem = BAProblem(dataset.num_views, dataset.num_points, trace_hook=trace_hook)
    ppx, ppy = principal_point

    # Collect the image of point i in each frame
    for i in range(dataset.num_points):
        for j in range(dataset.num_views):
            pt = dataset.x[j][:, i]
            problem.add_observation(j, i, (pt[0] - ppx, pt[1] - ppy))

    for j in range(dataset.num_views):
        angle_axis = rotation_matrix_to_angle_axis(dataset.R[j])
        focal = dataset.K[j][0, 0]
        problem.set_camera_block(j, np.concatenate([angle_axis, dataset.t[j], [focal]]))

    for i in range(dataset.num_points):
        problem.set_point_block(i, dataset.X[:, i])

    logger.info(f"Built problem with {problem.num_cameras} cameras, {problem.num_points} points, "
                f"{problem.num_observations} observations")
    return problem


def perturb_problem(problem: BAProblem, relative_noise: float,
                    seed: Optional[int] = None, perturb_points: bool = False) -> BAProblem:
    """Scale parameters by (1 + u), u uniform in [-relative_noise, relative_noise]

    Camera blocks are always perturbed, point blocks only when
    ``perturb_points`` is set. The problem is modified in place.
    """
    if relative_noise < 0:
        raise ValueError(f"relative_noise must be non-negative, got {relative_noise}")
    rng = np.random.default_rng(seed)

    cameras = problem.camera_parameters
    cameras *= 1.0 + rng.uniform(-relative_noise, relative_noise, size=cameras.shape)
    if perturb_points:
        points = problem.point_parameters
        points *= 1.0 + rng.uniform(-relative_noise, relative_noise, size=points.shape)

    logger.debug(f"Perturbed problem parameters by up to {relative_noise:.2%}")
    return problem
