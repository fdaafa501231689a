"""
Forward-mode automatic differentiation of residual functors

``AutoDiffCostFunction`` wraps a functor that is generic over its scalar
type. Values are obtained by calling it with numpy floats; Jacobians by
calling it with Jets whose derivative vectors span all parameters of all
blocks, one unit vector per parameter.
"""

import numpy as np
from typing import Callable, List, Optional, Sequence, Tuple

from .jet import Jet, derivative_part, scalar_part


class AutoDiffCostFunction:
    """Cost function with exact Jacobians computed from a generic functor"""

    def __init__(self, functor: Callable, num_residuals: int = 2,
                 parameter_block_sizes: Sequence[int] = (7, 3)):
        if num_residuals <= 0:
            raise ValueError(f"num_residuals must be positive, got {num_residuals}")
        if len(parameter_block_sizes) == 0 or any(s <= 0 for s in parameter_block_sizes):
            raise ValueError(f"Invalid parameter block sizes: {parameter_block_sizes}")

        self.functor = functor
        self.num_residuals = num_residuals
        self.parameter_block_sizes = tuple(int(s) for s in parameter_block_sizes)
        self.num_parameters = sum(self.parameter_block_sizes)

        self._offsets = np.concatenate([[0], np.cumsum(self.parameter_block_sizes)])

    def _as_blocks(self, parameters: Sequence[np.ndarray]) -> List[np.ndarray]:
        if len(parameters) != len(self.parameter_block_sizes):
            raise ValueError(
                f"Expected {len(self.parameter_block_sizes)} parameter blocks, got {len(parameters)}"
            )
        blocks = []
        for block, size in zip(parameters, self.parameter_block_sizes):
            block = np.asarray(block, dtype=np.float64)
            if block.shape != (size,):
                raise ValueError(f"Parameter block has shape {block.shape}, expected ({size},)")
            blocks.append(block)
        return blocks

    def residuals(self, *parameters: np.ndarray) -> np.ndarray:
        """Value-only evaluation"""
        blocks = self._as_blocks(parameters)
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            values = self.functor(*blocks)
        return np.array([scalar_part(r) for r in values], dtype=np.float64)

    def evaluate(self, *parameters: np.ndarray,
                 compute_jacobians: bool = True) -> Tuple[np.ndarray, Optional[List[np.ndarray]]]:
        """Evaluate residuals and, optionally, one Jacobian per parameter block

        Returns:
            residuals of shape (num_residuals,) and a list with one
            (num_residuals, block_size) matrix per block (None when
            ``compute_jacobians`` is False)
        """
        if not compute_jacobians:
            return self.residuals(*parameters), None

        blocks = self._as_blocks(parameters)
        n = self.num_parameters

        jet_blocks = []
        for block_idx, block in enumerate(blocks):
            offset = self._offsets[block_idx]
            jet_blocks.append([Jet.variable(value, offset + i, n) for i, value in enumerate(block)])

        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            values = self.functor(*jet_blocks)

        if len(values) != self.num_residuals:
            raise ValueError(f"Functor returned {len(values)} residuals, expected {self.num_residuals}")

        residuals = np.array([scalar_part(r) for r in values], dtype=np.float64)
        full_jacobian = np.stack([derivative_part(r, n) for r in values])

        jacobians = [
            full_jacobian[:, self._offsets[k]:self._offsets[k + 1]].copy()
            for k in range(len(self.parameter_block_sizes))
        ]
        return residuals, jacobians
