"""
Unit tests for the rotation, camera model and auto-diff cost function
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pinhole_ba.core.autodiff import AutoDiffCostFunction
from pinhole_ba.core.camera_model import PinholeReprojectionError, project_point
from pinhole_ba.core.rotation import (
    angle_axis_rotate_point,
    angle_axis_to_rotation_matrix,
    rotation_matrix_to_angle_axis,
)


def numeric_jacobians(cost_function, camera, point, h=1e-6):
    """Central finite differences of the residuals"""
    params = np.concatenate([camera, point])
    n = len(params)
    J = np.zeros((2, n))
    for k in range(n):
        step = h * max(1.0, abs(params[k]))
        plus = params.copy()
        minus = params.copy()
        plus[k] += step
        minus[k] -= step
        r_plus = cost_function.residuals(plus[:7], plus[7:])
        r_minus = cost_function.residuals(minus[:7], minus[7:])
        J[:, k] = (r_plus - r_minus) / (2 * step)
    return J[:, :7], J[:, 7:]


class TestRotation:
    """Test the angle-axis rotation"""

    def test_matches_rotation_matrix(self):
        """Rotating a point agrees with the OpenCV rotation matrix"""
        rng = np.random.default_rng(0)
        for _ in range(10):
            aa = rng.uniform(-2.0, 2.0, size=3)
            p = rng.uniform(-1.0, 1.0, size=3)
            R = angle_axis_to_rotation_matrix(aa)
            rotated = np.array(angle_axis_rotate_point(aa, p), dtype=np.float64)
            np.testing.assert_allclose(rotated, R @ p, atol=1e-12)

    def test_zero_rotation_is_identity(self):
        """Zero angle-axis leaves the point unchanged"""
        p = np.array([0.3, -0.2, 1.5])
        rotated = angle_axis_rotate_point(np.zeros(3), p)
        np.testing.assert_array_equal(np.array(rotated, dtype=np.float64), p)

    def test_small_angle_branch(self):
        """Tiny angles use the first order form and stay accurate"""
        aa = np.array([1e-10, -2e-10, 0.0])
        p = np.array([1.0, 2.0, 3.0])
        rotated = np.array(angle_axis_rotate_point(aa, p), dtype=np.float64)
        np.testing.assert_allclose(rotated, p + np.cross(aa, p), atol=1e-15)

    def test_matrix_round_trip(self):
        """Matrix to angle-axis inverts angle-axis to matrix"""
        aa = np.array([0.2, -0.4, 0.1])
        np.testing.assert_allclose(rotation_matrix_to_angle_axis(angle_axis_to_rotation_matrix(aa)), aa,
                                   atol=1e-10)

        with pytest.raises(ValueError):
            rotation_matrix_to_angle_axis(np.eye(4))


class TestPinholeReprojectionError:
    """Test the reprojection residual"""

    def test_projection(self):
        """Identity rotation, translation along z"""
        camera = np.array([0.0, 0.0, 0.0, 0.0, 0.0, 5.0, 1000.0])
        point = np.array([0.1, 0.2, 0.0])
        predicted = project_point(camera, point)
        assert predicted[0] == pytest.approx(20.0)
        assert predicted[1] == pytest.approx(40.0)

    def test_residual_is_predicted_minus_observed(self):
        """Residual sign convention"""
        camera = np.array([0.0, 0.0, 0.0, 0.0, 0.0, 5.0, 1000.0])
        point = np.array([0.1, 0.2, 0.0])
        functor = PinholeReprojectionError(25.0, 30.0)
        rx, ry = functor(camera, point)
        assert rx == pytest.approx(-5.0)
        assert ry == pytest.approx(10.0)

    def test_trace_hook(self):
        """The trace hook sees the camera, prediction and observation"""
        calls = []
        functor = PinholeReprojectionError(
            1.0, 2.0, trace_hook=lambda cam, pred, obs: calls.append((cam, pred, obs))
        )
        camera = np.array([0.0, 0.0, 0.0, 0.0, 0.0, 5.0, 1000.0])
        functor(camera, np.array([0.1, 0.2, 0.0]))

        assert len(calls) == 1
        cam, pred, obs = calls[0]
        np.testing.assert_array_equal(cam, camera)
        np.testing.assert_allclose(pred, [20.0, 40.0])
        np.testing.assert_array_equal(obs, [1.0, 2.0])

    def test_degenerate_depth_gives_non_finite_residual(self):
        """A point on the camera plane does not raise"""
        cost_function = AutoDiffCostFunction(PinholeReprojectionError(0.0, 0.0))
        camera = np.array([0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 1000.0])
        residuals = cost_function.residuals(camera, np.array([1.0, 1.0, 0.0]))
        assert not np.all(np.isfinite(residuals))

    def test_zero_depth_with_python_lists(self):
        """Plain float sequences follow IEEE division as well"""
        residuals = PinholeReprojectionError(0.0, 0.0)([0, 0, 0, 0, 0, 0, 1000.0], [1.0, 1.0, 0.0])
        assert np.isinf(residuals[0]) and np.isinf(residuals[1])

        x, y = project_point([0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 1000.0], [0.5, -0.25, 2.0])
        assert x == pytest.approx(250.0)
        assert y == pytest.approx(-125.0)


class TestAutoDiffCostFunction:
    """Test Jacobians computed with Jets"""

    def test_jacobian_matches_finite_differences(self):
        """Exact Jacobians agree with central differences"""
        cost_function = AutoDiffCostFunction(PinholeReprojectionError(12.0, -7.0), 2, (7, 3))
        camera = np.array([0.1, -0.2, 0.05, 0.1, 0.2, 3.0, 800.0])
        point = np.array([0.3, -0.1, 0.5])

        residuals, (J_cam, J_pt) = cost_function.evaluate(camera, point)
        num_cam, num_pt = numeric_jacobians(cost_function, camera, point)

        assert J_cam.shape == (2, 7)
        assert J_pt.shape == (2, 3)
        np.testing.assert_allclose(residuals, cost_function.residuals(camera, point))
        np.testing.assert_allclose(J_cam, num_cam, rtol=1e-6, atol=1e-5)
        np.testing.assert_allclose(J_pt, num_pt, rtol=1e-6, atol=1e-5)

    def test_jacobian_at_zero_rotation(self):
        """Derivatives stay exact on the small angle branch"""
        cost_function = AutoDiffCostFunction(PinholeReprojectionError(0.0, 0.0), 2, (7, 3))
        camera = np.array([0.0, 0.0, 0.0, 0.0, 0.0, 4.0, 1000.0])
        point = np.array([0.2, -0.3, 0.1])

        _, (J_cam, J_pt) = cost_function.evaluate(camera, point)
        num_cam, num_pt = numeric_jacobians(cost_function, camera, point)

        np.testing.assert_allclose(J_cam, num_cam, rtol=1e-6, atol=1e-5)
        np.testing.assert_allclose(J_pt, num_pt, rtol=1e-6, atol=1e-5)

    def test_value_only_evaluation(self):
        """No Jacobians are returned when not requested"""
        cost_function = AutoDiffCostFunction(PinholeReprojectionError(0.0, 0.0))
        residuals, jacobians = cost_function.evaluate(
            np.array([0.0, 0.0, 0.0, 0.0, 0.0, 4.0, 1000.0]), np.zeros(3), compute_jacobians=False
        )
        assert jacobians is None
        np.testing.assert_allclose(residuals, [0.0, 0.0])

    def test_block_shape_validation(self):
        """Wrong block sizes are rejected"""
        cost_function = AutoDiffCostFunction(PinholeReprojectionError(0.0, 0.0))
        with pytest.raises(ValueError):
            cost_function.evaluate(np.zeros(6), np.zeros(3))
        with pytest.raises(ValueError):
            cost_function.evaluate(np.zeros(7))
        with pytest.raises(ValueError):
            AutoDiffCostFunction(PinholeReprojectionError(0.0, 0.0), 0)
