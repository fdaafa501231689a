"""
Core bundle adjustment components
"""

from .jet import Jet
from .camera_model import PinholeReprojectionError, project_point
from .autodiff import AutoDiffCostFunction
from .problem import BAProblem, InvalidIndexError, ParameterBlock, ResidualBlock
from .config import LinearSolverConfig, SolverOptions, TrustRegionConfig
from .evaluator import EvaluationResult, ResidualEvaluator
from .minimizer import (
    CallbackReturnType,
    IterationSummary,
    LevenbergMarquardtMinimizer,
    MinimizerState,
    SolverSummary,
    TerminationType,
    solve,
)

from .schur_solver import (
    BlockNormalEquations,
    BlockStructure,
    DenseNormalCholeskySolver,
    LinearSolver,
    LinearSolverSummary,
    SchurComplementSolver,
    build_normal_equations,
    create_linear_solver,
)

# Sparse Cholesky backend - optional
from .schur_solver import SUITESPARSE_AVAILABLE


# Convenience functions for direct usage
def build_problem(cameras, points, observations, trace_hook=None):
    """Build a problem from initial parameters and (camera, point, x, y) rows"""
    problem = BAProblem(len(cameras), len(points), trace_hook=trace_hook)
    for i, camera in enumerate(cameras):
        problem.set_camera_block(i, camera)
    for j, point in enumerate(points):
        problem.set_point_block(j, point)
    for camera_index, point_index, x, y in observations:
        problem.add_observation(int(camera_index), int(point_index), (x, y))
    return problem


def bundle_adjust(problem, config=None):
    """Refine a problem in place with options given as a dict or SolverOptions"""
    if isinstance(config, SolverOptions):
        options = config
    else:
        options = SolverOptions.from_dict(config or {})
    return solve(options, problem)


__all__ = [
    # Core classes
    "Jet",
    "PinholeReprojectionError",
    "AutoDiffCostFunction",
    "BAProblem",
    "InvalidIndexError",
    "ParameterBlock",
    "ResidualBlock",
    "LinearSolverConfig",
    "TrustRegionConfig",
    "SolverOptions",
    "EvaluationResult",
    "ResidualEvaluator",
    "BlockStructure",
    "BlockNormalEquations",
    "LinearSolver",
    "LinearSolverSummary",
    "SchurComplementSolver",
    "DenseNormalCholeskySolver",
    "LevenbergMarquardtMinimizer",
    "MinimizerState",
    "TerminationType",
    "CallbackReturnType",
    "IterationSummary",
    "SolverSummary",
    "SUITESPARSE_AVAILABLE",
    # Convenience functions
    "project_point",
    "build_normal_equations",
    "create_linear_solver",
    "solve",
    "build_problem",
    "bundle_adjust",
]
