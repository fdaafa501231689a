"""
Pinhole Bundle Adjustment Package
Levenberg-Marquardt bundle adjustment with automatic differentiation and
Schur complement linear solvers
"""

__version__ = "0.1.0"


# Lazy imports - only import when actually used
def __getattr__(name):
    """Lazy import for module attributes"""

    if name == "run_bundle_adjustment":
        from ba_pipeline import run_bundle_adjustment
        return run_bundle_adjustment

    # Core components
    if name == "BAProblem":
        from .core.problem import BAProblem
        return BAProblem
    elif name == "SolverOptions":
        from .core.config import SolverOptions
        return SolverOptions
    elif name == "LevenbergMarquardtMinimizer":
        from .core.minimizer import LevenbergMarquardtMinimizer
        return LevenbergMarquardtMinimizer
    elif name == "SolverSummary":
        from .core.minimizer import SolverSummary
        return SolverSummary
    elif name == "TerminationType":
        from .core.minimizer import TerminationType
        return TerminationType
    elif name == "solve":
        from .core.minimizer import solve
        return solve
    # Utilities (lighter imports)
    elif name == "n_realistic_cameras_ring":
        from .utils.synthetic import n_realistic_cameras_ring
        return n_realistic_cameras_ring
    elif name == "problem_from_dataset":
        from .utils.synthetic import problem_from_dataset
        return problem_from_dataset
    elif name == "save_solver_report":
        from .utils.io_utils import save_solver_report
        return save_solver_report
    elif name == "save_reconstruction":
        from .utils.io_utils import save_reconstruction
        return save_reconstruction
    elif name == "LoggingCallback":
        from .utils.callbacks import LoggingCallback
        return LoggingCallback

    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    # Main pipeline
    "run_bundle_adjustment",

    # Core components
    "BAProblem",
    "SolverOptions",
    "LevenbergMarquardtMinimizer",
    "SolverSummary",
    "TerminationType",
    "solve",

    # Utilities
    "n_realistic_cameras_ring",
    "problem_from_dataset",
    "save_solver_report",
    "save_reconstruction",
    "LoggingCallback",
]
