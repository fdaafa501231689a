"""
Unit tests for the block normal equations and linear solvers
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pinhole_ba.core import schur_solver
from pinhole_ba.core.config import LinearSolverConfig
from pinhole_ba.core.schur_solver import (
    BlockStructure,
    DenseNormalCholeskySolver,
    SchurComplementSolver,
    build_normal_equations,
    create_linear_solver,
    resolve_linear_solver,
)


def random_system(num_cameras=3, num_points=5, seed=0, duplicate=True):
    """Random Jacobians over a fully observed scene"""
    rng = np.random.default_rng(seed)
    cam_idx, pt_idx = [], []
    for p in range(num_points):
        for c in range(num_cameras):
            cam_idx.append(c)
            pt_idx.append(p)
    if duplicate:
        # Same pair observed twice
        cam_idx.append(0)
        pt_idx.append(0)
    cam_idx = np.array(cam_idx)
    pt_idx = np.array(pt_idx)
    n = len(cam_idx)

    structure = BlockStructure.from_indices(num_cameras, num_points, cam_idx, pt_idx)
    Jc = rng.normal(size=(n, 2, 7))
    Jp = rng.normal(size=(n, 2, 3))
    r = rng.normal(size=(n, 2))
    return structure, Jc, Jp, r


def dense_jacobian(structure, Jc, Jp):
    n = len(structure.camera_indices)
    n_c = 7 * structure.num_cameras
    J = np.zeros((2 * n, n_c + 3 * structure.num_points))
    for i, (c, p) in enumerate(zip(structure.camera_indices, structure.point_indices)):
        J[2 * i:2 * i + 2, 7 * c:7 * c + 7] = Jc[i]
        J[2 * i:2 * i + 2, n_c + 3 * p:n_c + 3 * p + 3] = Jp[i]
    return J


class TestBlockNormalEquations:
    """Test normal equation assembly"""

    def test_structure(self):
        """Distinct pairs and Schur pair-of-pairs"""
        structure, _, _, _ = random_system(3, 5)
        assert len(structure.pair_cameras) == 15
        assert len(structure.observation_pairs) == 16
        assert structure.observation_pairs[-1] == structure.observation_pairs[0]
        # Every point is seen by 3 cameras
        assert len(structure.schur_left) == 5 * 3 * 3

    def test_matches_dense_assembly(self):
        """Block normal equations equal J^T J and J^T r"""
        structure, Jc, Jp, r = random_system()
        neq = build_normal_equations(structure, Jc, Jp, r)
        J = dense_jacobian(structure, Jc, Jp)

        np.testing.assert_allclose(neq.to_dense(), J.T @ J, atol=1e-10)
        np.testing.assert_allclose(neq.gradient(), J.T @ r.ravel(), atol=1e-10)
        assert neq.gradient_max_norm() == pytest.approx(np.max(np.abs(J.T @ r.ravel())))

    def test_scaled(self):
        """Scaling the blocks equals assembling from scaled Jacobians"""
        structure, Jc, Jp, r = random_system()
        rng = np.random.default_rng(1)
        camera_scale = rng.uniform(0.1, 1.0, size=(3, 7))
        point_scale = rng.uniform(0.1, 1.0, size=(5, 3))

        neq = build_normal_equations(structure, Jc, Jp, r).scaled(camera_scale, point_scale)
        expected = build_normal_equations(
            structure,
            Jc * camera_scale[structure.camera_indices][:, None, :],
            Jp * point_scale[structure.point_indices][:, None, :],
            r,
        )
        np.testing.assert_allclose(neq.to_dense(), expected.to_dense(), atol=1e-10)
        np.testing.assert_allclose(neq.gradient(), expected.gradient(), atol=1e-10)


class TestSchurComplementSolver:
    """Test the Schur complement solution against the full system"""

    @pytest.mark.parametrize("backend", ["dense", "scipy"])
    def test_matches_dense_solution(self, backend):
        """Schur elimination gives the same step as the full damped system"""
        structure, Jc, Jp, r = random_system()
        neq = build_normal_equations(structure, Jc, Jp, r)
        camera_damping = np.full((3, 7), 0.5)
        point_damping = np.full((5, 3), 0.25)

        H = neq.to_dense()
        H[np.diag_indices_from(H)] += np.concatenate([camera_damping.ravel(), point_damping.ravel()])
        expected = np.linalg.solve(H, -neq.gradient())

        result = SchurComplementSolver(backend).solve(neq, camera_damping, point_damping)
        assert result.success
        step = np.concatenate([result.camera_step.ravel(), result.point_step.ravel()])
        np.testing.assert_allclose(step, expected, rtol=1e-8, atol=1e-10)

        reference = DenseNormalCholeskySolver().solve(neq, camera_damping, point_damping)
        assert reference.success
        np.testing.assert_allclose(reference.camera_step, result.camera_step, rtol=1e-8, atol=1e-10)
        np.testing.assert_allclose(reference.point_step, result.point_step, rtol=1e-8, atol=1e-10)

    def test_suite_sparse_backend(self):
        """CHOLMOD backend agrees with the dense Schur solver"""
        pytest.importorskip("sksparse.cholmod")
        structure, Jc, Jp, r = random_system()
        neq = build_normal_equations(structure, Jc, Jp, r)
        camera_damping = np.full((3, 7), 0.5)
        point_damping = np.full((5, 3), 0.25)

        dense = SchurComplementSolver("dense").solve(neq, camera_damping, point_damping)
        sparse = SchurComplementSolver("suite_sparse").solve(neq, camera_damping, point_damping)
        assert sparse.success
        np.testing.assert_allclose(sparse.camera_step, dense.camera_step, rtol=1e-8, atol=1e-10)

    @pytest.mark.parametrize(
        "solver", [SchurComplementSolver("dense"), SchurComplementSolver("scipy"), DenseNormalCholeskySolver()]
    )
    def test_failure_is_reported(self, solver):
        """A non positive definite system yields success=False, not an exception"""
        structure, Jc, Jp, r = random_system()
        neq = build_normal_equations(structure, Jc, Jp, r)
        camera_damping = np.full((3, 7), 0.5)
        point_damping = np.full((5, 3), -1e6)

        result = solver.solve(neq, camera_damping, point_damping)
        assert not result.success
        assert result.message

    @pytest.mark.parametrize(
        "solver", [SchurComplementSolver("dense"), SchurComplementSolver("scipy"), DenseNormalCholeskySolver()]
    )
    def test_indefinite_reduced_system_is_reported(self, solver):
        """Every backend rejects a reduced camera system that is not positive definite"""
        structure, Jc, Jp, r = random_system()
        neq = build_normal_equations(structure, Jc, Jp, r)
        camera_damping = np.full((3, 7), -1e4)
        point_damping = np.full((5, 3), 0.25)

        result = solver.solve(neq, camera_damping, point_damping)
        assert not result.success
        assert "positive definite" in result.message

    def test_scipy_backend_matches_dense_on_definiteness(self):
        """SciPy and dense Schur agree on success for a range of camera damping"""
        structure, Jc, Jp, r = random_system(seed=3)
        neq = build_normal_equations(structure, Jc, Jp, r)
        point_damping = np.full((5, 3), 0.25)
        for value in [1.0, 1e-3, -1e2]:
            camera_damping = np.full((3, 7), value)
            dense = SchurComplementSolver("dense").solve(neq, camera_damping, point_damping)
            sparse = SchurComplementSolver("scipy").solve(neq, camera_damping, point_damping)
            assert sparse.success == dense.success

    def test_singular_system_is_reported(self):
        """Zero Jacobians without damping cannot be factored"""
        structure, Jc, Jp, r = random_system()
        neq = build_normal_equations(structure, np.zeros_like(Jc), np.zeros_like(Jp), r)
        result = SchurComplementSolver("scipy").solve(neq, np.zeros((3, 7)), np.zeros((5, 3)))
        assert not result.success


class TestSolverSelection:
    """Test linear solver resolution"""

    def test_fallback_without_suite_sparse(self, monkeypatch):
        """suite_sparse falls back to SciPy when scikit-sparse is missing"""
        monkeypatch.setattr(schur_solver, "SUITESPARSE_AVAILABLE", False)
        config = LinearSolverConfig("sparse_schur", "suite_sparse")
        assert resolve_linear_solver(config) == ("sparse_schur", "scipy")
        assert create_linear_solver(config).backend == "scipy"

    def test_dense_types(self):
        """Dense solver types ignore the sparse library"""
        assert isinstance(create_linear_solver(LinearSolverConfig("dense_schur")), SchurComplementSolver)
        assert isinstance(
            create_linear_solver(LinearSolverConfig("dense_normal_cholesky")), DenseNormalCholeskySolver
        )
        assert resolve_linear_solver(LinearSolverConfig("dense_schur")) == ("dense_schur", None)

    def test_invalid_config(self):
        """Unknown solver names are rejected"""
        with pytest.raises(ValueError):
            LinearSolverConfig("cgnr")
        with pytest.raises(ValueError):
            LinearSolverConfig("sparse_schur", "cx_sparse")
        with pytest.raises(ValueError):
            SchurComplementSolver("eigen")
