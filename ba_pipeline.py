#!/usr/bin/env python3
"""
Bundle adjustment on a synthetic camera ring
Generates a ring of cameras around random points, builds the reprojection
problem and refines it with Levenberg-Marquardt
"""

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

from pinhole_ba.core.config import LinearSolverConfig, SolverOptions, TrustRegionConfig
from pinhole_ba.core.minimizer import solve
from pinhole_ba.utils.callbacks import EvaluationTraceLogger, LoggingCallback, TqdmProgressCallback
from pinhole_ba.utils.io_utils import save_reconstruction, save_solver_report
from pinhole_ba.utils.synthetic import (
    NViewDatasetConfig,
    add_pixel_noise,
    n_realistic_cameras_ring,
    perturb_problem,
    problem_from_dataset,
)

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Pinhole bundle adjustment on a synthetic camera ring")

    # Dataset
    parser.add_argument("--num_views", type=int, default=3, help="Number of cameras on the ring")
    parser.add_argument("--num_points", type=int, default=6, help="Number of 3D points")
    parser.add_argument(
        "--pixel_noise", type=float, default=0.0, help="Std. dev. of Gaussian noise added to observations (pixels)"
    )
    parser.add_argument(
        "--perturbation",
        type=float,
        default=0.0,
        help="Relative perturbation of the initial camera parameters (0.01 = 1%%)",
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed")

    # Solver
    parser.add_argument(
        "--linear_solver",
        type=str,
        default="sparse_schur",
        choices=["sparse_schur", "dense_schur", "dense_normal_cholesky"],
        help="Linear solver used at each iteration",
    )
    parser.add_argument(
        "--sparse_library",
        type=str,
        default="suite_sparse",
        choices=["suite_sparse", "scipy"],
        help="Sparse factorization backend for sparse_schur",
    )
    parser.add_argument("--max_iterations", type=int, default=50, help="Maximum number of iterations")
    parser.add_argument("--max_time", type=float, default=1e6, help="Maximum solver time in seconds")
    parser.add_argument(
        "--num_threads", type=int, default=None, help="Worker threads for residual evaluation (default: auto)"
    )

    # Output
    parser.add_argument("--progress", action="store_true", help="Show a progress bar")
    parser.add_argument(
        "--trace_evaluations", action="store_true", help="Log every residual evaluation (DEBUG level)"
    )
    parser.add_argument("--output_dir", type=str, default=None, help="Directory for the log and JSON reports")
    parser.add_argument(
        "--log_level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level"
    )

    return parser.parse_args(argv)


def setup_logging(output_dir: Optional[str] = None, level: str = "INFO"):
    """Setup logging configuration"""
    handlers = [logging.StreamHandler(sys.stdout)]
    if output_dir:
        log_file = Path(output_dir) / "ba_pipeline.log"
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def build_solver_options(**kwargs) -> SolverOptions:
    """Solver options from the command line values"""
    return SolverOptions(
        linear_solver=LinearSolverConfig(
            linear_solver_type=kwargs.get("linear_solver", "sparse_schur"),
            sparse_linear_algebra_library=kwargs.get("sparse_library", "suite_sparse"),
        ),
        trust_region=TrustRegionConfig(
            max_num_iterations=kwargs.get("max_iterations", 50),
            max_solver_time_in_seconds=kwargs.get("max_time", 1e6),
        ),
        num_threads=kwargs.get("num_threads"),
        log_level=kwargs.get("log_level", "INFO"),
    )


def run_bundle_adjustment(**kwargs) -> Dict[str, Any]:
    """Generate a dataset, build the problem and solve it - Main API function

    Accepts the command line options as keyword arguments; missing ones take
    the command line defaults.
    """
    num_views = kwargs.get("num_views", 3)
    num_points = kwargs.get("num_points", 6)
    seed = kwargs.get("seed")
    output_dir = kwargs.get("output_dir")

    start_time = time.time()

    # Stage 1: synthetic scene
    logger.info(f"Stage 1: Generating ring dataset ({num_views} views, {num_points} points)...")
    dataset = n_realistic_cameras_ring(num_views, num_points, NViewDatasetConfig(), seed=seed)
    add_pixel_noise(dataset, kwargs.get("pixel_noise", 0.0), seed=None if seed is None else seed + 1)

    # Stage 2: problem
    logger.info("Stage 2: Building bundle adjustment problem...")
    trace_hook = EvaluationTraceLogger() if kwargs.get("trace_evaluations", False) else None
    problem = problem_from_dataset(dataset, principal_point=(500.0, 500.0), trace_hook=trace_hook)
    perturbation = kwargs.get("perturbation", 0.0)
    if perturbation > 0:
        perturb_problem(problem, perturbation, seed=None if seed is None else seed + 2)

    # Stage 3: solve
    options = kwargs.get("options") or build_solver_options(**kwargs)
    options.callbacks.append(LoggingCallback())

    progress = TqdmProgressCallback(options.trust_region.max_num_iterations) if kwargs.get("progress") else None
    if progress is not None:
        options.callbacks.append(progress)

    logger.info("Stage 3: Solving...")
    try:
        summary = solve(options, problem)
    finally:
        if progress is not None:
            progress.close()

    logger.info("\n" + summary.full_report())

    # Stage 4: reports
    if output_dir:
        output_path = Path(output_dir)
        save_solver_report(summary, output_path / "solver_report.json")
        save_reconstruction(problem, output_path / "reconstruction.json")
        logger.info(f"Results saved to: {output_path}")

    total_time = time.time() - start_time
    logger.info(f"Total time: {total_time:.2f}s")

    return {
        "summary": summary,
        "problem": problem,
        "dataset": dataset,
        "options": options,
        "total_time": total_time,
    }


def main(argv=None):
    """Main entry point for command line usage"""
    args = parse_args(argv)
    options = build_solver_options(**vars(args))
    setup_logging(args.output_dir, options.log_level)

    result = run_bundle_adjustment(options=options, **vars(args))
    return 0 if result["summary"].is_solution_usable() else 1


if __name__ == "__main__":
    sys.exit(main())
