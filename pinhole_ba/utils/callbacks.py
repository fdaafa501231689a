"""
Iteration callbacks and evaluation tracing

Callbacks are plain callables registered in ``SolverOptions.callbacks``; the
minimizer calls each one with the ``IterationSummary`` of every iteration and
stops when one of them returns something other than SOLVER_CONTINUE.
"""

import logging
import threading
import numpy as np
from typing import Optional

from tqdm import tqdm

from ..core.minimizer import CallbackReturnType, IterationSummary

logger = logging.getLogger(__name__)


class LoggingCallback:
    """Logs one progress line per iteration"""

    HEADER = (f"{'iter':>4} {'cost':>14} {'cost_change':>12} {'|gradient|':>10} "
              f"{'|step|':>10} {'tr_ratio':>10} {'tr_radius':>10} {'iter_time':>10} {'total_time':>10}")

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def __call__(self, summary: IterationSummary) -> CallbackReturnType:
        if summary.iteration == 0:
            logger.log(self.level, self.HEADER)
        logger.log(
            self.level,
            f"{summary.iteration:>4} {summary.cost:>14.6e} {summary.cost_change:>12.2e} "
            f"{summary.gradient_max_norm:>10.2e} {summary.step_norm:>10.2e} "
            f"{summary.relative_decrease:>10.2e} {summary.trust_region_radius:>10.2e} "
            f"{summary.iteration_time_in_seconds:>10.2e} {summary.cumulative_time_in_seconds:>10.2e}"
        )
        return CallbackReturnType.SOLVER_CONTINUE


class TqdmProgressCallback:
    """Progress bar over the iteration budget"""

    def __init__(self, max_num_iterations: int, desc: str = "Bundle adjustment"):
        self.pbar = tqdm(total=max_num_iterations, desc=desc, unit="iter")

    def __call__(self, summary: IterationSummary) -> CallbackReturnType:
        if summary.iteration > 0:
            self.pbar.update(1)
        self.pbar.set_postfix(cost=f"{summary.cost:.4e}", radius=f"{summary.trust_region_radius:.1e}")
        return CallbackReturnType.SOLVER_CONTINUE

    def close(self):
        self.pbar.close()

    def __enter__(self) -> "TqdmProgressCallback":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class EvaluationTraceLogger:
    """Trace hook logging every residual evaluation at DEBUG level

    Pass an instance as ``trace_hook`` when building a problem. Evaluations
    run on worker threads, so the call counter is guarded by a lock.
    """

    def __init__(self, max_logged: Optional[int] = None):
        self.max_logged = max_logged
        self.num_calls = 0
        self._lock = threading.Lock()

    def __call__(self, camera: np.ndarray, predicted: np.ndarray, observed: np.ndarray):
        with self._lock:
            self.num_calls += 1
            count = self.num_calls
        if self.max_logged is not None and count > self.max_logged:
            return
        logger.debug(f"camera {np.array2string(camera, precision=6)} "
                     f"predicted ({predicted[0]:.6f}, {predicted[1]:.6f}) "
                     f"observed ({observed[0]:.6f}, {observed[1]:.6f})")
