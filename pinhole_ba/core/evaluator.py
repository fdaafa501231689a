"""
Parallel residual and Jacobian evaluation

Residual blocks are independent, so they are split into contiguous chunks and
evaluated on a thread pool. Each chunk writes its own slice of preallocated
arrays and the cost is reduced afterwards over the full array in a fixed
order, which keeps the result bit-identical for any number of threads.
"""

import logging
import numpy as np
import psutil
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .camera_model import CAMERA_BLOCK_SIZE, NUM_RESIDUALS, POINT_BLOCK_SIZE
from .problem import BAProblem

logger = logging.getLogger(__name__)

MAX_WORKERS = 8


def default_num_threads() -> int:
    """Hardware concurrency, capped like the rest of the pipeline"""
    return max(1, min(psutil.cpu_count() or 1, MAX_WORKERS))


@dataclass
class EvaluationResult:
    """Residuals (and Jacobians) of all residual blocks at one parameter state"""

    cost: float
    residuals: np.ndarray  # (N, 2)
    camera_jacobians: Optional[np.ndarray] = None  # (N, 2, 7)
    point_jacobians: Optional[np.ndarray] = None  # (N, 2, 3)

    @property
    def is_finite(self) -> bool:
        return bool(np.isfinite(self.cost))


class ResidualEvaluator:
    """Evaluates every residual block of a problem on a worker pool

    Use as a context manager so the pool lives for the whole run.
    """

    def __init__(self, problem: BAProblem, num_threads: Optional[int] = None):
        self.problem = problem
        self.blocks = problem.residual_blocks
        self.camera_indices = problem.camera_indices
        self.point_indices = problem.point_indices

        requested = num_threads if num_threads is not None else default_num_threads()
        self.num_threads = max(1, min(requested, max(1, len(self.blocks))))
        self._chunks = self._make_chunks(len(self.blocks), self.num_threads)
        self._executor: Optional[ThreadPoolExecutor] = None

        logger.debug(f"Residual evaluator: {len(self.blocks)} blocks, "
                     f"{self.num_threads} threads, {len(self._chunks)} chunks")

    @staticmethod
    def _make_chunks(num_blocks: int, num_threads: int) -> List[Tuple[int, int]]:
        if num_blocks == 0:
            return []
        bounds = np.linspace(0, num_blocks, num_threads + 1).astype(int)
        return [(int(s), int(e)) for s, e in zip(bounds[:-1], bounds[1:]) if e > s]

    def __enter__(self) -> "ResidualEvaluator":
        if self.num_threads > 1:
            self._executor = ThreadPoolExecutor(max_workers=self.num_threads)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def evaluate(self, cameras: Optional[np.ndarray] = None,
                 points: Optional[np.ndarray] = None,
                 compute_jacobians: bool = True) -> EvaluationResult:
        """Evaluate all residual blocks

        Args:
            cameras: Camera parameters (C, 7); defaults to the problem's store
            points: Point parameters (P, 3); defaults to the problem's store
            compute_jacobians: Also compute per-block Jacobians
        """
        cameras = self.problem.camera_parameters if cameras is None else cameras
        points = self.problem.point_parameters if points is None else points

        n = len(self.blocks)
        residuals = np.zeros((n, NUM_RESIDUALS), dtype=np.float64)
        camera_jac = point_jac = None
        if compute_jacobians:
            camera_jac = np.zeros((n, NUM_RESIDUALS, CAMERA_BLOCK_SIZE), dtype=np.float64)
            point_jac = np.zeros((n, NUM_RESIDUALS, POINT_BLOCK_SIZE), dtype=np.float64)

        def run_chunk(start: int, end: int):
            for i in range(start, end):
                block = self.blocks[i]
                r, jacobians = block.cost_function.evaluate(
                    cameras[block.camera_index],
                    points[block.point_index],
                    compute_jacobians=compute_jacobians,
                )
                residuals[i] = r
                if compute_jacobians:
                    camera_jac[i] = jacobians[0]
                    point_jac[i] = jacobians[1]

        if self._executor is None or len(self._chunks) <= 1:
            for start, end in self._chunks:
                run_chunk(start, end)
        else:
            futures = [self._executor.submit(run_chunk, start, end) for start, end in self._chunks]
            for future in as_completed(futures):
                future.result()

        # Fixed order reduction over the assembled array
        with np.errstate(over="ignore", invalid="ignore"):
            cost = 0.5 * float(np.sum(residuals * residuals))

        return EvaluationResult(cost, residuals, camera_jac, point_jac)

    def cost(self, cameras: Optional[np.ndarray] = None,
             points: Optional[np.ndarray] = None) -> float:
        return self.evaluate(cameras, points, compute_jacobians=False).cost
