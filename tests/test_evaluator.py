"""
Unit tests for parallel residual evaluation
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pinhole_ba.core.evaluator import ResidualEvaluator, default_num_threads
from pinhole_ba.core.problem import BAProblem
from pinhole_ba.utils.synthetic import (
    add_pixel_noise,
    n_realistic_cameras_ring,
    perturb_problem,
    problem_from_dataset,
)


@pytest.fixture
def noisy_problem():
    dataset = n_realistic_cameras_ring(5, 20, seed=3)
    add_pixel_noise(dataset, 0.5, seed=4)
    problem = problem_from_dataset(dataset)
    return perturb_problem(problem, 0.01, seed=5)


class TestResidualEvaluator:
    """Test residual and Jacobian evaluation"""

    def test_cost_is_half_squared_norm(self, noisy_problem):
        """cost = 0.5 * sum(r^2) over all residual blocks"""
        with ResidualEvaluator(noisy_problem, num_threads=1) as evaluator:
            result = evaluator.evaluate()

        assert result.residuals.shape == (100, 2)
        assert result.camera_jacobians.shape == (100, 2, 7)
        assert result.point_jacobians.shape == (100, 2, 3)
        assert result.cost == pytest.approx(0.5 * np.sum(result.residuals ** 2))
        assert result.is_finite

    def test_matches_per_block_evaluation(self, noisy_problem):
        """Assembled arrays hold each block's own residuals"""
        with ResidualEvaluator(noisy_problem, num_threads=2) as evaluator:
            result = evaluator.evaluate()

        block = noisy_problem.residual_blocks[7]
        r, (J_cam, J_pt) = block.cost_function.evaluate(
            noisy_problem.camera_parameters[block.camera_index],
            noisy_problem.point_parameters[block.point_index],
        )
        np.testing.assert_array_equal(result.residuals[7], r)
        np.testing.assert_array_equal(result.camera_jacobians[7], J_cam)
        np.testing.assert_array_equal(result.point_jacobians[7], J_pt)

    def test_cost_identical_across_thread_counts(self, noisy_problem):
        """The total cost is bit-identical for any number of threads"""
        costs = []
        jacobians = []
        for num_threads in [1, 2, 3, 8]:
            with ResidualEvaluator(noisy_problem, num_threads=num_threads) as evaluator:
                result = evaluator.evaluate()
            costs.append(result.cost)
            jacobians.append(result.camera_jacobians)

        assert all(c == costs[0] for c in costs)
        for J in jacobians[1:]:
            np.testing.assert_array_equal(J, jacobians[0])

    def test_value_only_cost(self, noisy_problem):
        """cost() agrees with the full evaluation and skips Jacobians"""
        with ResidualEvaluator(noisy_problem, num_threads=4) as evaluator:
            full = evaluator.evaluate()
            value_only = evaluator.evaluate(compute_jacobians=False)
            assert evaluator.cost() == full.cost

        assert value_only.camera_jacobians is None
        assert value_only.cost == full.cost

    def test_candidate_parameters(self, noisy_problem):
        """Evaluating other parameters leaves the store untouched"""
        cameras = noisy_problem.camera_parameters.copy()
        with ResidualEvaluator(noisy_problem, num_threads=2) as evaluator:
            base = evaluator.cost()
            moved = evaluator.cost(cameras * 1.1, noisy_problem.point_parameters)

        assert moved != base
        np.testing.assert_array_equal(noisy_problem.camera_parameters, cameras)

    def test_thread_count_clamped(self):
        """More threads than observations is clamped"""
        problem = BAProblem(1, 1)
        problem.set_camera_block(0, [0.0, 0.0, 0.0, 0.0, 0.0, 5.0, 1000.0])
        problem.add_observation(0, 0, (0.0, 0.0))
        evaluator = ResidualEvaluator(problem, num_threads=8)
        assert evaluator.num_threads == 1
        assert evaluator.cost() == 0.0
        evaluator.close()

    def test_empty_problem(self):
        """No observations means zero cost"""
        with ResidualEvaluator(BAProblem(2, 2)) as evaluator:
            result = evaluator.evaluate()
        assert result.cost == 0.0
        assert result.residuals.shape == (0, 2)

    def test_default_num_threads(self):
        """Hardware concurrency capped at 8"""
        assert 1 <= default_num_threads() <= 8
