"""
Block-sparse normal equations and Schur complement solvers

The damped Gauss-Newton system of bundle adjustment has the block form

    [ U   W ] [dc]   [-g_c]
    [ W^T V ] [dp] = [-g_p]

where U is block diagonal over cameras (7x7), V is block diagonal over
points (3x3) and W couples a camera and a point only when the camera observes
the point. Eliminating the points gives the reduced camera system

    S dc = b,   S = U - W V^-1 W^T,   b = -g_c + W V^-1 g_p

which is factored by Cholesky (dense or sparse). Point steps are recovered by
back-substitution: dp = V^-1 (-g_p - W^T dc).

Factorization failures are reported through ``LinearSolverSummary`` so the
minimizer can reject the step and increase the damping.
"""

import logging
import numpy as np
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

import scipy.linalg
from scipy.sparse import coo_matrix
from scipy.sparse.linalg import splu

from .camera_model import CAMERA_BLOCK_SIZE, POINT_BLOCK_SIZE
from .config import LinearSolverConfig

logger = logging.getLogger(__name__)

# Sparse Cholesky backend - optional import
try:
    from sksparse.cholmod import cholesky as cholmod_cholesky, CholmodError
    SUITESPARSE_AVAILABLE = True
except ImportError:
    SUITESPARSE_AVAILABLE = False
    cholmod_cholesky = None
    CholmodError = None

_CAM = CAMERA_BLOCK_SIZE
_PT = POINT_BLOCK_SIZE


class FactorizationError(RuntimeError):
    """Raised internally when a factorization or solve breaks down"""


@dataclass
class BlockStructure:
    """Sparsity pattern of the normal equations, fixed for a problem"""

    num_cameras: int
    num_points: int
    camera_indices: np.ndarray  # (N,) camera of each observation
    point_indices: np.ndarray  # (N,) point of each observation
    pair_cameras: np.ndarray  # (K,) camera of each distinct camera/point pair
    pair_points: np.ndarray  # (K,) point of each distinct pair
    observation_pairs: np.ndarray  # (N,) pair index of each observation
    schur_left: np.ndarray  # (M,) pair indices (a, b) sharing a point,
    schur_right: np.ndarray  # contributing -W_a V^-1 W_b^T to S

    @classmethod
    def from_indices(cls, num_cameras: int, num_points: int,
                     camera_indices: np.ndarray, point_indices: np.ndarray) -> "BlockStructure":
        camera_indices = np.asarray(camera_indices, dtype=np.int64)
        point_indices = np.asarray(point_indices, dtype=np.int64)

        keys = camera_indices * max(num_points, 1) + point_indices
        unique_keys, observation_pairs = np.unique(keys, return_inverse=True)
        observation_pairs = observation_pairs.reshape(-1)
        pair_cameras = unique_keys // max(num_points, 1)
        pair_points = unique_keys % max(num_points, 1)

        pairs_by_point = [[] for _ in range(num_points)]
        for k, p in enumerate(pair_points):
            pairs_by_point[p].append(k)

        left, right = [], []
        for group in pairs_by_point:
            for a in group:
                for b in group:
                    left.append(a)
                    right.append(b)

        return cls(
            num_cameras=num_cameras,
            num_points=num_points,
            camera_indices=camera_indices,
            point_indices=point_indices,
            pair_cameras=pair_cameras.astype(np.int64),
            pair_points=pair_points.astype(np.int64),
            observation_pairs=observation_pairs.astype(np.int64),
            schur_left=np.asarray(left, dtype=np.int64),
            schur_right=np.asarray(right, dtype=np.int64),
        )

    @classmethod
    def from_problem(cls, problem) -> "BlockStructure":
        return cls.from_indices(problem.num_cameras, problem.num_points,
                                problem.camera_indices, problem.point_indices)

    @property
    def num_camera_parameters(self) -> int:
        return _CAM * self.num_cameras

    @property
    def num_point_parameters(self) -> int:
        return _PT * self.num_points


@dataclass
class BlockNormalEquations:
    """J^T J and J^T r stored by blocks"""

    structure: BlockStructure
    camera_blocks: np.ndarray  # U, (C, 7, 7)
    point_blocks: np.ndarray  # V, (P, 3, 3)
    off_diagonal: np.ndarray  # W, (K, 7, 3), one block per pair
    camera_gradient: np.ndarray  # g_c, (C, 7)
    point_gradient: np.ndarray  # g_p, (P, 3)

    def diagonal(self) -> Tuple[np.ndarray, np.ndarray]:
        """Diagonal of J^T J split into camera (C, 7) and point (P, 3) parts"""
        cam = np.diagonal(self.camera_blocks, axis1=1, axis2=2).copy()
        pt = np.diagonal(self.point_blocks, axis1=1, axis2=2).copy()
        return cam, pt

    def scaled(self, camera_scale: np.ndarray, point_scale: np.ndarray) -> "BlockNormalEquations":
        """Normal equations of J * diag(scale), scales shaped (C, 7) and (P, 3)"""
        s = self.structure
        pair_c = camera_scale[s.pair_cameras]
        pair_p = point_scale[s.pair_points]
        return BlockNormalEquations(
            structure=s,
            camera_blocks=self.camera_blocks * camera_scale[:, :, None] * camera_scale[:, None, :],
            point_blocks=self.point_blocks * point_scale[:, :, None] * point_scale[:, None, :],
            off_diagonal=self.off_diagonal * pair_c[:, :, None] * pair_p[:, None, :],
            camera_gradient=self.camera_gradient * camera_scale,
            point_gradient=self.point_gradient * point_scale,
        )

    def gradient(self) -> np.ndarray:
        return np.concatenate([self.camera_gradient.ravel(), self.point_gradient.ravel()])

    def gradient_max_norm(self) -> float:
        g = self.gradient()
        return float(np.max(np.abs(g))) if g.size else 0.0

    def to_dense(self) -> np.ndarray:
        """Full J^T J as a dense matrix, cameras first"""
        s = self.structure
        n_c = s.num_camera_parameters
        n = n_c + s.num_point_parameters
        H = np.zeros((n, n), dtype=np.float64)

        for c in range(s.num_cameras):
            H[_CAM * c:_CAM * (c + 1), _CAM * c:_CAM * (c + 1)] = self.camera_blocks[c]
        for p in range(s.num_points):
            o = n_c + _PT * p
            H[o:o + _PT, o:o + _PT] = self.point_blocks[p]
        for k, (c, p) in enumerate(zip(s.pair_cameras, s.pair_points)):
            o = n_c + _PT * p
            H[_CAM * c:_CAM * (c + 1), o:o + _PT] = self.off_diagonal[k]
            H[o:o + _PT, _CAM * c:_CAM * (c + 1)] = self.off_diagonal[k].T
        return H


def build_normal_equations(structure: BlockStructure,
                           camera_jacobians: np.ndarray,
                           point_jacobians: np.ndarray,
                           residuals: np.ndarray) -> BlockNormalEquations:
    """Accumulate per-observation Jacobians into block normal equations

    Args:
        structure: Block sparsity pattern
        camera_jacobians: (N, 2, 7)
        point_jacobians: (N, 2, 3)
        residuals: (N, 2)
    """
    U = np.zeros((structure.num_cameras, _CAM, _CAM), dtype=np.float64)
    V = np.zeros((structure.num_points, _PT, _PT), dtype=np.float64)
    W = np.zeros((len(structure.pair_cameras), _CAM, _PT), dtype=np.float64)
    g_c = np.zeros((structure.num_cameras, _CAM), dtype=np.float64)
    g_p = np.zeros((structure.num_points, _PT), dtype=np.float64)

    if len(residuals):
        Jc, Jp, r = camera_jacobians, point_jacobians, residuals
        np.add.at(U, structure.camera_indices, np.einsum("nri,nrj->nij", Jc, Jc))
        np.add.at(V, structure.point_indices, np.einsum("nri,nrj->nij", Jp, Jp))
        np.add.at(W, structure.observation_pairs, np.einsum("nri,nrj->nij", Jc, Jp))
        np.add.at(g_c, structure.camera_indices, np.einsum("nri,nr->ni", Jc, r))
        np.add.at(g_p, structure.point_indices, np.einsum("nri,nr->ni", Jp, r))

    return BlockNormalEquations(structure, U, V, W, g_c, g_p)


@dataclass
class LinearSolverSummary:
    """Outcome of one linear solve"""

    success: bool
    camera_step: Optional[np.ndarray] = None  # (C, 7)
    point_step: Optional[np.ndarray] = None  # (P, 3)
    message: str = ""

    @classmethod
    def failure(cls, message: str) -> "LinearSolverSummary":
        return cls(success=False, message=message)


def _add_to_block_diagonal(blocks: np.ndarray, damping: np.ndarray) -> np.ndarray:
    damped = blocks.copy()
    d = np.arange(blocks.shape[1])
    damped[:, d, d] += damping
    return damped


def _check_finite(x: np.ndarray, what: str):
    if not np.all(np.isfinite(x)):
        raise FactorizationError(f"Non-finite values in {what}")


class LinearSolver(ABC):
    """Solves the damped normal equations for a camera and a point step"""

    name = "base"

    @abstractmethod
    def solve(self, normal_equations: BlockNormalEquations,
              camera_damping: np.ndarray,
              point_damping: np.ndarray) -> LinearSolverSummary:
        """
        Solve (J^T J + diag(damping)) step = -J^T r

        Args:
            normal_equations: Block normal equations at the current state
            camera_damping: Values added to the diagonal of U, shape (C, 7)
            point_damping: Values added to the diagonal of V, shape (P, 3)

        Returns:
            LinearSolverSummary; ``success`` is False when factorization fails
        """


class SchurComplementSolver(LinearSolver):
    """Eliminates the point blocks and factors the reduced camera system"""

    BACKENDS = ("dense", "suite_sparse", "scipy")

    def __init__(self, backend: str = "dense"):
        if backend not in self.BACKENDS:
            raise ValueError(f"Unknown Schur backend: {backend}")
        if backend == "suite_sparse" and not SUITESPARSE_AVAILABLE:
            raise ValueError("suite_sparse backend requested but scikit-sparse is not installed")
        self.backend = backend
        self.name = "dense_schur" if backend == "dense" else f"sparse_schur ({backend})"

    def solve(self, normal_equations: BlockNormalEquations,
              camera_damping: np.ndarray,
              point_damping: np.ndarray) -> LinearSolverSummary:
        s = normal_equations.structure
        U = _add_to_block_diagonal(normal_equations.camera_blocks, camera_damping)
        V = _add_to_block_diagonal(normal_equations.point_blocks, point_damping)
        W = normal_equations.off_diagonal
        g_c = normal_equations.camera_gradient
        g_p = normal_equations.point_gradient

        try:
            with np.errstate(all="ignore"):
                # Eliminate points: each V_p is a small SPD block
                try:
                    np.linalg.cholesky(V)
                except np.linalg.LinAlgError as e:
                    raise FactorizationError(f"Point block not positive definite: {e}")
                V_inv = np.linalg.inv(V)
                _check_finite(V_inv, "point block inverse")

                Y = np.einsum("kij,kjl->kil", W, V_inv[s.pair_points])

                b = -g_c.copy()
                np.add.at(b, s.pair_cameras, np.einsum("kij,kj->ki", Y, g_p[s.pair_points]))

                contributions = np.einsum("mij,mlj->mil", Y[s.schur_left], W[s.schur_right])
                rows = s.pair_cameras[s.schur_left]
                cols = s.pair_cameras[s.schur_right]

                if self.backend == "dense":
                    camera_step = self._solve_dense(U, contributions, rows, cols, b)
                else:
                    camera_step = self._solve_sparse(U, contributions, rows, cols, b)

                # Back-substitute for the points
                t = -g_p.copy()
                np.add.at(t, s.pair_points,
                          -np.einsum("kij,ki->kj", W, camera_step[s.pair_cameras]))
                point_step = np.einsum("pij,pj->pi", V_inv, t)
                _check_finite(point_step, "point step")

        except FactorizationError as e:
            logger.debug(f"{self.name} failed: {e}")
            return LinearSolverSummary.failure(str(e))

        return LinearSolverSummary(True, camera_step, point_step, f"{self.name} ok")

    @staticmethod
    def _reduced_dense(U, contributions, rows, cols) -> np.ndarray:
        C = U.shape[0]
        S4 = np.zeros((C, C, _CAM, _CAM), dtype=np.float64)
        S4[np.arange(C), np.arange(C)] += U
        np.add.at(S4, (rows, cols), -contributions)
        S = S4.transpose(0, 2, 1, 3).reshape(_CAM * C, _CAM * C)
        return 0.5 * (S + S.T)

    @staticmethod
    def _reduced_sparse(U, contributions, rows, cols):
        C = U.shape[0]
        block_rows = np.concatenate([np.arange(C), rows])
        block_cols = np.concatenate([np.arange(C), cols])
        values = np.concatenate([U, -contributions])

        shape = (len(block_rows), _CAM, _CAM)
        r = np.broadcast_to((_CAM * block_rows)[:, None, None] + np.arange(_CAM)[None, :, None], shape)
        c = np.broadcast_to((_CAM * block_cols)[:, None, None] + np.arange(_CAM)[None, None, :], shape)

        # Duplicate entries are summed by the conversion
        S = coo_matrix((values.ravel(), (r.ravel(), c.ravel())),
                       shape=(_CAM * C, _CAM * C)).tocsc()
        return (0.5 * (S + S.T)).tocsc()

    def _solve_dense(self, U, contributions, rows, cols, b) -> np.ndarray:
        C = U.shape[0]
        if C == 0:
            return np.zeros((0, _CAM))
        S = self._reduced_dense(U, contributions, rows, cols)
        _check_finite(S, "reduced camera system")
        try:
            factor = scipy.linalg.cho_factor(S, lower=True, check_finite=False)
        except np.linalg.LinAlgError as e:
            raise FactorizationError(f"Reduced camera system not positive definite: {e}")
        x = scipy.linalg.cho_solve(factor, b.ravel(), check_finite=False)
        _check_finite(x, "camera step")
        return x.reshape(C, _CAM)

    def _solve_sparse(self, U, contributions, rows, cols, b) -> np.ndarray:
        C = U.shape[0]
        if C == 0:
            return np.zeros((0, _CAM))
        S = self._reduced_sparse(U, contributions, rows, cols)
        _check_finite(S.data, "reduced camera system")

        if self.backend == "suite_sparse":
            try:
                factor = cholmod_cholesky(S)
                x = factor(b.ravel())
            except CholmodError as e:
                raise FactorizationError(f"CHOLMOD factorization failed: {e}")
        else:
            # Diagonal pivots only: on a symmetric matrix the pivots are those of
            # LDL^T, all positive exactly when S is positive definite
            try:
                lu = splu(S, permc_spec="MMD_AT_PLUS_A", diag_pivot_thresh=0.0,
                          options={"SymmetricMode": True})
            except RuntimeError as e:
                raise FactorizationError(f"SuperLU factorization failed: {e}")
            if not np.array_equal(lu.perm_r, lu.perm_c) or not np.all(lu.U.diagonal() > 0):
                raise FactorizationError("Reduced camera system not positive definite (SuperLU pivots)")
            x = lu.solve(b.ravel())

        x = np.asarray(x, dtype=np.float64).reshape(-1)
        _check_finite(x, "camera step")
        return x.reshape(C, _CAM)


class DenseNormalCholeskySolver(LinearSolver):
    """Factors the full damped system without eliminating points"""

    name = "dense_normal_cholesky"

    def solve(self, normal_equations: BlockNormalEquations,
              camera_damping: np.ndarray,
              point_damping: np.ndarray) -> LinearSolverSummary:
        s = normal_equations.structure
        n_c = s.num_camera_parameters
        H = normal_equations.to_dense()
        H[np.diag_indices_from(H)] += np.concatenate([camera_damping.ravel(), point_damping.ravel()])
        rhs = -normal_equations.gradient()

        if H.shape[0] == 0:
            return LinearSolverSummary(True, np.zeros((0, _CAM)), np.zeros((0, _PT)), f"{self.name} ok")

        try:
            with np.errstate(all="ignore"):
                _check_finite(H, "normal equations")
                try:
                    factor = scipy.linalg.cho_factor(H, lower=True, check_finite=False)
                except np.linalg.LinAlgError as e:
                    raise FactorizationError(f"Normal equations not positive definite: {e}")
                x = scipy.linalg.cho_solve(factor, rhs, check_finite=False)
                _check_finite(x, "step")
        except FactorizationError as e:
            logger.debug(f"{self.name} failed: {e}")
            return LinearSolverSummary.failure(str(e))

        return LinearSolverSummary(
            True,
            x[:n_c].reshape(s.num_cameras, _CAM),
            x[n_c:].reshape(s.num_points, _PT),
            f"{self.name} ok",
        )


def resolve_linear_solver(config: LinearSolverConfig) -> Tuple[str, Optional[str]]:
    """Pick the linear solver actually used given the installed backends

    The requested sparse library is used when available, otherwise SciPy's
    SuperLU restricted to diagonal pivoting, which ships with SciPy and
    rejects systems that are not positive definite like a Cholesky would.

    Returns:
        (linear_solver_type, sparse_library or None)
    """
    solver_type = config.linear_solver_type
    if solver_type != "sparse_schur":
        return solver_type, None

    library = config.sparse_linear_algebra_library
    if library == "suite_sparse" and not SUITESPARSE_AVAILABLE:
        logger.warning("SuiteSparse (scikit-sparse) not available, falling back to SciPy SuperLU")
        library = "scipy"

    return solver_type, library


def create_linear_solver(config: LinearSolverConfig) -> LinearSolver:
    solver_type, library = resolve_linear_solver(config)
    if solver_type == "dense_normal_cholesky":
        return DenseNormalCholeskySolver()
    if solver_type == "dense_schur":
        return SchurComplementSolver("dense")
    return SchurComplementSolver(library)
