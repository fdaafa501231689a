"""
Bundle adjustment problem: parameter store and residual blocks

The problem owns two parameter arrays, one row per camera block (7 values)
and one row per point block (3 values). Residual blocks only reference blocks
by index; the minimizer updates the arrays in place, so views handed out by
``mutable_camera_block`` / ``mutable_point_block`` stay valid for the whole
run.
"""

import logging
import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .autodiff import AutoDiffCostFunction
from .camera_model import (
    CAMERA_BLOCK_SIZE,
    NUM_RESIDUALS,
    POINT_BLOCK_SIZE,
    PinholeReprojectionError,
    TraceHook,
)

logger = logging.getLogger(__name__)


class InvalidIndexError(IndexError):
    """Camera or point index outside the declared range"""


@dataclass(frozen=True)
class ParameterBlock:
    """Writable view of one parameter block in the problem's store"""

    kind: str  # "camera" or "point"
    index: int
    values: np.ndarray

    @property
    def size(self) -> int:
        return self.values.shape[0]


@dataclass(frozen=True)
class ResidualBlock:
    """One observation: cost function bound to a camera and a point block"""

    camera_index: int
    point_index: int
    cost_function: AutoDiffCostFunction

    @property
    def observed(self) -> np.ndarray:
        return self.cost_function.functor.observed


def _check_index(index, count: int, kind: str) -> int:
    if isinstance(index, (bool, np.bool_)) or not isinstance(index, (int, np.integer)):
        raise InvalidIndexError(f"{kind} index must be an integer, got {index!r}")
    if index < 0 or index >= count:
        raise InvalidIndexError(f"{kind} index {index} out of range [0, {count})")
    return int(index)


class BAProblem:
    """Bundle adjustment problem over cameras and points"""

    def __init__(self, num_cameras: int, num_points: int,
                 trace_hook: Optional[TraceHook] = None):
        if num_cameras < 0 or num_points < 0:
            raise ValueError(
                f"Counts must be non-negative, got {num_cameras} cameras and {num_points} points"
            )

        self._cameras = np.zeros((num_cameras, CAMERA_BLOCK_SIZE), dtype=np.float64)
        self._points = np.zeros((num_points, POINT_BLOCK_SIZE), dtype=np.float64)
        self._residual_blocks: List[ResidualBlock] = []
        self.trace_hook = trace_hook

    # Sizes

    @property
    def num_cameras(self) -> int:
        return self._cameras.shape[0]

    @property
    def num_points(self) -> int:
        return self._points.shape[0]

    @property
    def num_observations(self) -> int:
        return len(self._residual_blocks)

    @property
    def num_residuals(self) -> int:
        return NUM_RESIDUALS * self.num_observations

    @property
    def num_parameters(self) -> int:
        return self._cameras.size + self._points.size

    # Parameter store

    @property
    def camera_parameters(self) -> np.ndarray:
        """All camera blocks, shape (num_cameras, 7); modified in place by the solver"""
        return self._cameras

    @property
    def point_parameters(self) -> np.ndarray:
        """All point blocks, shape (num_points, 3); modified in place by the solver"""
        return self._points

    def mutable_camera_block(self, index: int) -> ParameterBlock:
        index = _check_index(index, self.num_cameras, "camera")
        return ParameterBlock("camera", index, self._cameras[index])

    def mutable_point_block(self, index: int) -> ParameterBlock:
        index = _check_index(index, self.num_points, "point")
        return ParameterBlock("point", index, self._points[index])

    def set_camera_block(self, index: int, values: Sequence[float]):
        block = self.mutable_camera_block(index)
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (CAMERA_BLOCK_SIZE,):
            raise ValueError(f"Camera block needs {CAMERA_BLOCK_SIZE} values, got shape {values.shape}")
        block.values[:] = values

    def set_point_block(self, index: int, values: Sequence[float]):
        block = self.mutable_point_block(index)
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (POINT_BLOCK_SIZE,):
            raise ValueError(f"Point block needs {POINT_BLOCK_SIZE} values, got shape {values.shape}")
        block.values[:] = values

    def parameter_vector(self) -> np.ndarray:
        """Flattened copy of all parameters, cameras first"""
        return np.concatenate([self._cameras.ravel(), self._points.ravel()])

    # Residual blocks

    def add_observation(self, camera_index: int, point_index: int,
                        observed_xy: Sequence[float]) -> ResidualBlock:
        """Register the observation of a point in a camera

        Args:
            camera_index: Index of the observing camera
            point_index: Index of the observed point
            observed_xy: Observed pixel minus the principal point

        Returns:
            The residual block created for this observation
        """
        camera_index = _check_index(camera_index, self.num_cameras, "camera")
        point_index = _check_index(point_index, self.num_points, "point")

        observed = np.asarray(observed_xy, dtype=np.float64)
        if observed.shape != (2,):
            raise ValueError(f"Observation must have 2 coordinates, got shape {observed.shape}")

        # Each residual block takes a camera and a point as input and outputs
        # a 2 dimensional residual
        cost_function = AutoDiffCostFunction(
            PinholeReprojectionError(observed[0], observed[1], trace_hook=self.trace_hook),
            NUM_RESIDUALS,
            (CAMERA_BLOCK_SIZE, POINT_BLOCK_SIZE),
        )
        block = ResidualBlock(camera_index, point_index, cost_function)
        self._residual_blocks.append(block)
        return block

    @property
    def residual_blocks(self) -> List[ResidualBlock]:
        return list(self._residual_blocks)

    @property
    def camera_indices(self) -> np.ndarray:
        return np.array([b.camera_index for b in self._residual_blocks], dtype=np.int64)

    @property
    def point_indices(self) -> np.ndarray:
        return np.array([b.point_index for b in self._residual_blocks], dtype=np.int64)

    @property
    def observations(self) -> np.ndarray:
        if not self._residual_blocks:
            return np.zeros((0, 2), dtype=np.float64)
        return np.stack([b.observed for b in self._residual_blocks])

    def __repr__(self) -> str:
        return (f"BAProblem(cameras={self.num_cameras}, points={self.num_points}, "
                f"observations={self.num_observations})")
