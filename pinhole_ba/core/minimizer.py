"""
Levenberg-Marquardt trust region minimizer

Each iteration linearizes the residuals, solves the damped normal equations
with the structured linear solver, evaluates the cost at the candidate point
and accepts or rejects the step from the ratio of actual to predicted cost
decrease. The damping is 1 / trust region radius: it shrinks after good
steps and grows after bad or invalid ones.

The problem's parameter store is updated in place on every accepted step and
is left at the last accepted state when the run stops for any reason.
"""

import logging
import time
import numpy as np
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import SolverOptions
from .evaluator import EvaluationResult, ResidualEvaluator
from .problem import BAProblem
from .schur_solver import (
    BlockNormalEquations,
    BlockStructure,
    build_normal_equations,
    create_linear_solver,
)

logger = logging.getLogger(__name__)


class MinimizerState(Enum):
    EVALUATING = "evaluating"
    STEP_PROPOSED = "step_proposed"
    STEP_ACCEPTED = "step_accepted"
    STEP_REJECTED = "step_rejected"
    CONVERGED = "converged"
    FAILED = "failed"


class TerminationType(Enum):
    CONVERGENCE = "convergence"
    NO_CONVERGENCE = "no_convergence"  # iteration or time budget exhausted
    FAILURE = "failure"  # retry budget exhausted or numerical failure
    USER_SUCCESS = "user_success"
    USER_FAILURE = "user_failure"


class CallbackReturnType(Enum):
    SOLVER_CONTINUE = "continue"
    SOLVER_ABORT = "abort"
    SOLVER_TERMINATE_SUCCESSFULLY = "terminate_successfully"


@dataclass
class IterationSummary:
    """State of the minimizer after one iteration"""

    iteration: int
    state: MinimizerState
    cost: float
    cost_change: float = 0.0
    gradient_max_norm: float = 0.0
    step_norm: float = 0.0
    relative_decrease: float = 0.0
    trust_region_radius: float = 0.0
    step_is_valid: bool = True
    step_is_successful: bool = False
    linear_solver_message: str = ""
    iteration_time_in_seconds: float = 0.0
    cumulative_time_in_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = dict(self.__dict__)
        d["state"] = self.state.value
        return d


@dataclass
class SolverSummary:
    """Run report of one bundle adjustment solve"""

    num_cameras: int = 0
    num_points: int = 0
    num_observations: int = 0
    num_parameters: int = 0
    num_residuals: int = 0
    linear_solver_type: str = ""
    num_threads: int = 1
    initial_cost: float = float("nan")
    final_cost: float = float("nan")
    iterations: List[IterationSummary] = field(default_factory=list)
    termination_type: TerminationType = TerminationType.FAILURE
    final_state: MinimizerState = MinimizerState.FAILED
    message: str = ""
    total_time_in_seconds: float = 0.0
    minimizer_time_in_seconds: float = 0.0
    linear_solver_time_in_seconds: float = 0.0
    evaluation_time_in_seconds: float = 0.0

    @property
    def num_successful_steps(self) -> int:
        return sum(1 for it in self.iterations[1:] if it.step_is_successful)

    @property
    def num_unsuccessful_steps(self) -> int:
        return sum(1 for it in self.iterations[1:] if not it.step_is_successful)

    @property
    def num_invalid_steps(self) -> int:
        return sum(1 for it in self.iterations[1:] if not it.step_is_valid)

    @property
    def num_iterations(self) -> int:
        return max(0, len(self.iterations) - 1)

    def cost_trace(self) -> List[float]:
        return [it.cost for it in self.iterations]

    def is_solution_usable(self) -> bool:
        return self.termination_type in (
            TerminationType.CONVERGENCE,
            TerminationType.NO_CONVERGENCE,
            TerminationType.USER_SUCCESS,
        )

    def brief_report(self) -> str:
        return (f"Bundle adjustment: initial cost {self.initial_cost:.6e}, "
                f"final cost {self.final_cost:.6e}, {self.num_iterations} iterations, "
                f"termination: {self.termination_type.value.upper()}")

    def full_report(self) -> str:
        lines = [
            "Solver Summary",
            "",
            f"{'Cameras':<30}{self.num_cameras:>12}",
            f"{'Points':<30}{self.num_points:>12}",
            f"{'Observations':<30}{self.num_observations:>12}",
            f"{'Parameters':<30}{self.num_parameters:>12}",
            f"{'Residuals':<30}{self.num_residuals:>12}",
            "",
            f"{'Minimizer':<30}{'LEVENBERG_MARQUARDT':>30}",
            f"{'Linear solver':<30}{self.linear_solver_type:>30}",
            f"{'Threads':<30}{self.num_threads:>12}",
            "",
            "Cost:",
            f"{'Initial':<30}{self.initial_cost:>20.6e}",
            f"{'Final':<30}{self.final_cost:>20.6e}",
            f"{'Change':<30}{self.initial_cost - self.final_cost:>20.6e}",
            "",
            f"{'Successful steps':<30}{self.num_successful_steps:>12}",
            f"{'Unsuccessful steps':<30}{self.num_unsuccessful_steps:>12}",
            f"{'Invalid steps':<30}{self.num_invalid_steps:>12}",
            "",
            "Time (in seconds):",
            f"{'  Residual evaluation':<30}{self.evaluation_time_in_seconds:>12.4f}",
            f"{'  Linear solver':<30}{self.linear_solver_time_in_seconds:>12.4f}",
            f"{'Minimizer':<30}{self.minimizer_time_in_seconds:>12.4f}",
            f"{'Total':<30}{self.total_time_in_seconds:>12.4f}",
            "",
            f"Termination: {self.termination_type.value.upper()} ({self.message})",
        ]
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "num_cameras": self.num_cameras,
            "num_points": self.num_points,
            "num_observations": self.num_observations,
            "num_parameters": self.num_parameters,
            "num_residuals": self.num_residuals,
            "linear_solver_type": self.linear_solver_type,
            "num_threads": self.num_threads,
            "initial_cost": self.initial_cost,
            "final_cost": self.final_cost,
            "num_iterations": self.num_iterations,
            "num_successful_steps": self.num_successful_steps,
            "num_unsuccessful_steps": self.num_unsuccessful_steps,
            "num_invalid_steps": self.num_invalid_steps,
            "termination_type": self.termination_type.value,
            "final_state": self.final_state.value,
            "message": self.message,
            "total_time_in_seconds": self.total_time_in_seconds,
            "cost_trace": self.cost_trace(),
            "iterations": [it.to_dict() for it in self.iterations],
        }


@dataclass
class _Linearization:
    evaluation: EvaluationResult
    normal_equations: BlockNormalEquations  # unscaled, for the gradient
    scaled: BlockNormalEquations  # what the linear solver sees
    camera_scale: np.ndarray
    point_scale: np.ndarray


class LevenbergMarquardtMinimizer:
    """Trust region minimizer with the Levenberg-Marquardt strategy"""

    def __init__(self, options: Optional[SolverOptions] = None):
        self.options = options or SolverOptions()
        self.state = MinimizerState.EVALUATING

    def minimize(self, problem: BAProblem) -> SolverSummary:
        """Refine the problem's parameters in place and return the run report"""
        start_time = time.time()
        tr = self.options.trust_region

        structure = BlockStructure.from_problem(problem)
        linear_solver = create_linear_solver(self.options.linear_solver)

        summary = SolverSummary(
            num_cameras=problem.num_cameras,
            num_points=problem.num_points,
            num_observations=problem.num_observations,
            num_parameters=problem.num_parameters,
            num_residuals=problem.num_residuals,
            linear_solver_type=linear_solver.name,
        )

        logger.info(f"Starting bundle adjustment: {problem.num_cameras} cameras, "
                    f"{problem.num_points} points, {problem.num_observations} observations, "
                    f"linear solver {linear_solver.name}")

        cameras = problem.camera_parameters
        points = problem.point_parameters

        with ResidualEvaluator(problem, self.options.num_threads) as evaluator:
            summary.num_threads = evaluator.num_threads

            self.state = MinimizerState.EVALUATING
            t0 = time.time()
            lin = self._linearize(structure, evaluator.evaluate(compute_jacobians=True))
            summary.evaluation_time_in_seconds += time.time() - t0

            cost = lin.evaluation.cost
            summary.initial_cost = cost
            summary.final_cost = cost

            if not lin.evaluation.is_finite or not np.all(np.isfinite(lin.normal_equations.gradient())):
                return self._finish(summary, start_time, TerminationType.FAILURE,
                                    "Residuals or Jacobians are not finite at the initial point")

            radius = tr.initial_trust_region_radius
            decrease_factor = 2.0
            gradient_max_norm = lin.normal_equations.gradient_max_norm()

            initial = IterationSummary(
                iteration=0,
                state=MinimizerState.EVALUATING,
                cost=cost,
                gradient_max_norm=gradient_max_norm,
                trust_region_radius=radius,
                step_is_successful=True,
                cumulative_time_in_seconds=time.time() - start_time,
            )
            summary.iterations.append(initial)
            stop = self._run_callbacks(summary, initial, start_time)
            if stop is not None:
                return stop

            if gradient_max_norm <= tr.gradient_tolerance:
                return self._finish(summary, start_time, TerminationType.CONVERGENCE,
                                    f"Gradient tolerance reached. Gradient max norm: "
                                    f"{gradient_max_norm:.3e} <= {tr.gradient_tolerance:.3e}")

            iteration = 0
            consecutive_invalid = 0
            consecutive_rejected = 0

            while True:
                if iteration >= tr.max_num_iterations:
                    return self._finish(summary, start_time, TerminationType.NO_CONVERGENCE,
                                        f"Maximum number of iterations reached ({tr.max_num_iterations})")
                if time.time() - start_time >= tr.max_solver_time_in_seconds:
                    return self._finish(summary, start_time, TerminationType.NO_CONVERGENCE,
                                        f"Maximum solver time reached ({tr.max_solver_time_in_seconds}s)")

                iteration += 1
                iteration_start = time.time()

                # Propose a step from the damped linear model
                self.state = MinimizerState.STEP_PROPOSED
                camera_diag, point_diag = lin.scaled.diagonal()
                camera_damping = np.clip(camera_diag, tr.min_lm_diagonal, tr.max_lm_diagonal) / radius
                point_damping = np.clip(point_diag, tr.min_lm_diagonal, tr.max_lm_diagonal) / radius

                t0 = time.time()
                solve = linear_solver.solve(lin.scaled, camera_damping, point_damping)
                summary.linear_solver_time_in_seconds += time.time() - t0

                invalid_reason = None if solve.success else solve.message
                step_norm = 0.0

                if invalid_reason is None:
                    camera_step = solve.camera_step * lin.camera_scale
                    point_step = solve.point_step * lin.point_scale

                    model_cost_change = self._model_cost_change(structure, lin.evaluation,
                                                                camera_step, point_step)
                    step_norm = float(np.sqrt(np.sum(camera_step ** 2) + np.sum(point_step ** 2)))
                    x_norm = float(np.sqrt(np.sum(cameras ** 2) + np.sum(points ** 2)))

                    if step_norm <= tr.parameter_tolerance * (x_norm + tr.parameter_tolerance):
                        self.state = MinimizerState.CONVERGED
                        record = IterationSummary(
                            iteration=iteration,
                            state=MinimizerState.CONVERGED,
                            cost=cost,
                            gradient_max_norm=gradient_max_norm,
                            step_norm=step_norm,
                            trust_region_radius=radius,
                            linear_solver_message=solve.message,
                            iteration_time_in_seconds=time.time() - iteration_start,
                            cumulative_time_in_seconds=time.time() - start_time,
                        )
                        summary.iterations.append(record)

                        stop = self._run_callbacks(summary, record, start_time)
                        if stop is not None:
                            return stop
                        return self._finish(summary, start_time, TerminationType.CONVERGENCE,
                                            f"Parameter tolerance reached. Relative step norm: "
                                            f"{step_norm / (x_norm + tr.parameter_tolerance):.3e} <= "
                                            f"{tr.parameter_tolerance:.3e}")

                    # Evaluate the candidate point
                    t0 = time.time()
                    new_cost = evaluator.cost(cameras + camera_step, points + point_step)
                    summary.evaluation_time_in_seconds += time.time() - t0

                    if not np.isfinite(new_cost):
                        invalid_reason = f"Cost is not finite at the candidate point ({new_cost})"

                if invalid_reason is not None:
                    # Invalid step: increase damping and retry from the same point
                    consecutive_invalid += 1
                    radius /= decrease_factor
                    decrease_factor *= 2.0
                    self.state = MinimizerState.STEP_REJECTED
                    record = IterationSummary(
                        iteration=iteration,
                        state=MinimizerState.STEP_REJECTED,
                        cost=cost,
                        gradient_max_norm=gradient_max_norm,
                        step_norm=step_norm,
                        trust_region_radius=radius,
                        step_is_valid=False,
                        linear_solver_message=solve.message,
                        iteration_time_in_seconds=time.time() - iteration_start,
                        cumulative_time_in_seconds=time.time() - start_time,
                    )
                    summary.iterations.append(record)
                    logger.debug(f"Iteration {iteration}: invalid step ({invalid_reason})")

                    stop = self._run_callbacks(summary, record, start_time)
                    if stop is not None:
                        return stop
                    if consecutive_invalid > tr.max_num_consecutive_invalid_steps:
                        return self._finish(summary, start_time, TerminationType.FAILURE,
                                            f"Number of consecutive invalid steps more than "
                                            f"{tr.max_num_consecutive_invalid_steps}: {invalid_reason}")
                    continue

                consecutive_invalid = 0
                relative_decrease = 0.0
                if model_cost_change > 0:
                    relative_decrease = (cost - new_cost) / model_cost_change
                step_is_successful = bool(model_cost_change > 0
                                          and relative_decrease > tr.min_relative_decrease)

                previous_cost = cost
                if step_is_successful:
                    self.state = MinimizerState.STEP_ACCEPTED
                    cameras += camera_step
                    points += point_step

                    t0 = time.time()
                    lin = self._linearize(structure, evaluator.evaluate(compute_jacobians=True))
                    summary.evaluation_time_in_seconds += time.time() - t0

                    cost = lin.evaluation.cost
                    gradient_max_norm = lin.normal_equations.gradient_max_norm()
                    radius = min(tr.max_trust_region_radius,
                                 radius / max(1.0 / 3.0, 1.0 - (2.0 * relative_decrease - 1.0) ** 3))
                    decrease_factor = 2.0
                    consecutive_rejected = 0
                else:
                    self.state = MinimizerState.STEP_REJECTED
                    radius /= decrease_factor
                    decrease_factor *= 2.0
                    consecutive_rejected += 1

                record = IterationSummary(
                    iteration=iteration,
                    state=self.state,
                    cost=cost,
                    cost_change=previous_cost - cost,
                    gradient_max_norm=gradient_max_norm,
                    step_norm=step_norm,
                    relative_decrease=float(relative_decrease),
                    trust_region_radius=radius,
                    step_is_successful=step_is_successful,
                    linear_solver_message=solve.message,
                    iteration_time_in_seconds=time.time() - iteration_start,
                    cumulative_time_in_seconds=time.time() - start_time,
                )
                summary.iterations.append(record)
                summary.final_cost = cost
                logger.debug(f"Iteration {iteration}: {self.state.value}, cost {cost:.6e}, "
                             f"rho {relative_decrease:.3e}, radius {radius:.3e}")

                stop = self._run_callbacks(summary, record, start_time)
                if stop is not None:
                    return stop

                if step_is_successful:
                    if abs(previous_cost - cost) <= tr.function_tolerance * previous_cost:
                        return self._finish(summary, start_time, TerminationType.CONVERGENCE,
                                            f"Function tolerance reached. |cost_change|/cost: "
                                            f"{abs(previous_cost - cost) / previous_cost:.3e} <= "
                                            f"{tr.function_tolerance:.3e}")
                    if gradient_max_norm <= tr.gradient_tolerance:
                        return self._finish(summary, start_time, TerminationType.CONVERGENCE,
                                            f"Gradient tolerance reached. Gradient max norm: "
                                            f"{gradient_max_norm:.3e} <= {tr.gradient_tolerance:.3e}")
                elif consecutive_rejected > tr.max_num_consecutive_rejected_steps:
                    return self._finish(summary, start_time, TerminationType.FAILURE,
                                        f"Number of consecutive rejected steps more than "
                                        f"{tr.max_num_consecutive_rejected_steps}")

    def _linearize(self, structure: BlockStructure, evaluation: EvaluationResult) -> _Linearization:
        neq = build_normal_equations(structure, evaluation.camera_jacobians,
                                     evaluation.point_jacobians, evaluation.residuals)
        if self.options.trust_region.jacobi_scaling:
            camera_diag, point_diag = neq.diagonal()
            camera_scale = 1.0 / (1.0 + np.sqrt(camera_diag))
            point_scale = 1.0 / (1.0 + np.sqrt(point_diag))
            scaled = neq.scaled(camera_scale, point_scale)
        else:
            camera_scale = np.ones((structure.num_cameras, 7))
            point_scale = np.ones((structure.num_points, 3))
            scaled = neq
        return _Linearization(evaluation, neq, scaled, camera_scale, point_scale)

    @staticmethod
    def _model_cost_change(structure: BlockStructure, evaluation: EvaluationResult,
                           camera_step: np.ndarray, point_step: np.ndarray) -> float:
        """Cost decrease predicted by the linear model: -(J d) . (r + J d / 2)"""
        model_residuals = (
            np.einsum("nri,ni->nr", evaluation.camera_jacobians, camera_step[structure.camera_indices])
            + np.einsum("nri,ni->nr", evaluation.point_jacobians, point_step[structure.point_indices])
        )
        return float(-np.sum(model_residuals * (evaluation.residuals + model_residuals / 2.0)))

    def _run_callbacks(self, summary: SolverSummary, record: IterationSummary,
                       start_time: float) -> Optional[SolverSummary]:
        for callback in self.options.callbacks:
            result = callback(record)
            if result is None or result == CallbackReturnType.SOLVER_CONTINUE:
                continue
            if result == CallbackReturnType.SOLVER_TERMINATE_SUCCESSFULLY:
                return self._finish(summary, start_time, TerminationType.USER_SUCCESS,
                                    "User callback returned SOLVER_TERMINATE_SUCCESSFULLY")
            if result == CallbackReturnType.SOLVER_ABORT:
                return self._finish(summary, start_time, TerminationType.USER_FAILURE,
                                    "User callback returned SOLVER_ABORT")
            raise ValueError(f"Invalid callback return value: {result!r}")
        return None

    def _finish(self, summary: SolverSummary, start_time: float,
                termination_type: TerminationType, message: str) -> SolverSummary:
        summary.termination_type = termination_type
        summary.message = message
        if summary.iterations:
            summary.final_cost = summary.iterations[-1].cost
        if termination_type in (TerminationType.CONVERGENCE, TerminationType.USER_SUCCESS):
            self.state = MinimizerState.CONVERGED
        else:
            self.state = MinimizerState.FAILED
        summary.final_state = self.state
        summary.minimizer_time_in_seconds = time.time() - start_time
        summary.total_time_in_seconds = summary.minimizer_time_in_seconds

        log = logger.info if summary.final_state == MinimizerState.CONVERGED else logger.warning
        log(f"Bundle adjustment finished: {termination_type.value} ({message}); "
            f"cost {summary.initial_cost:.6e} -> {summary.final_cost:.6e} "
            f"in {summary.num_iterations} iterations")
        return summary


def solve(options: SolverOptions, problem: BAProblem) -> SolverSummary:
    """Run bundle adjustment on ``problem`` with ``options``"""
    start_time = time.time()
    summary = LevenbergMarquardtMinimizer(options).minimize(problem)
    summary.total_time_in_seconds = time.time() - start_time
    return summary
