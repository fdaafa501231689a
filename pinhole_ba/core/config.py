"""
Configuration management for the bundle adjustment solver

Uses dataclasses for type safety and validation.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

LINEAR_SOLVER_TYPES = ("sparse_schur", "dense_schur", "dense_normal_cholesky")
SPARSE_LIBRARIES = ("suite_sparse", "scipy")


@dataclass
class LinearSolverConfig:
    """Configuration for the linear solver used at each iteration"""

    # "sparse_schur", "dense_schur" or "dense_normal_cholesky"
    linear_solver_type: str = "sparse_schur"

    # Backend for sparse_schur: "suite_sparse" (CHOLMOD) or "scipy" (SuperLU)
    sparse_linear_algebra_library: str = "suite_sparse"

    def __post_init__(self):
        if self.linear_solver_type not in LINEAR_SOLVER_TYPES:
            raise ValueError(f"Invalid linear_solver_type: {self.linear_solver_type}")
        if self.sparse_linear_algebra_library not in SPARSE_LIBRARIES:
            raise ValueError(
                f"Invalid sparse_linear_algebra_library: {self.sparse_linear_algebra_library}"
            )


@dataclass
class TrustRegionConfig:
    """Levenberg-Marquardt trust region parameters and termination criteria"""

    # Iteration and time budgets
    max_num_iterations: int = 50
    max_solver_time_in_seconds: float = 1e6

    # Convergence tolerances
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8

    # Trust region radius
    initial_trust_region_radius: float = 1e4
    max_trust_region_radius: float = 1e16

    # Step acceptance threshold on the gain ratio
    min_relative_decrease: float = 1e-3

    # Clamp range of the Levenberg-Marquardt diagonal
    min_lm_diagonal: float = 1e-6
    max_lm_diagonal: float = 1e32

    # Retry budgets
    max_num_consecutive_invalid_steps: int = 5
    max_num_consecutive_rejected_steps: int = 20

    # Scale Jacobian columns by 1 / (1 + column norm)
    jacobi_scaling: bool = True

    def __post_init__(self):
        if self.max_num_iterations < 0:
            raise ValueError(f"max_num_iterations must be >= 0, got {self.max_num_iterations}")
        if self.max_solver_time_in_seconds <= 0:
            raise ValueError(
                f"max_solver_time_in_seconds must be positive, got {self.max_solver_time_in_seconds}"
            )
        for name in ("function_tolerance", "gradient_tolerance", "parameter_tolerance"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative, got {getattr(self, name)}")
        if not (0 < self.initial_trust_region_radius <= self.max_trust_region_radius):
            raise ValueError(
                f"Trust region radius must satisfy 0 < initial ({self.initial_trust_region_radius}) "
                f"<= max ({self.max_trust_region_radius})"
            )
        if not (0.0 <= self.min_relative_decrease < 1.0):
            raise ValueError(f"min_relative_decrease must be in [0, 1), got {self.min_relative_decrease}")
        if not (0 < self.min_lm_diagonal <= self.max_lm_diagonal):
            raise ValueError(
                f"LM diagonal range invalid: [{self.min_lm_diagonal}, {self.max_lm_diagonal}]"
            )
        if self.max_num_consecutive_invalid_steps < 0 or self.max_num_consecutive_rejected_steps < 0:
            raise ValueError("Retry budgets must be non-negative")


@dataclass
class SolverOptions:
    """Main configuration for a bundle adjustment run"""

    # Sub-configurations
    linear_solver: LinearSolverConfig = field(default_factory=LinearSolverConfig)
    trust_region: TrustRegionConfig = field(default_factory=TrustRegionConfig)

    # Worker threads for residual evaluation (None = hardware concurrency, capped at 8)
    num_threads: Optional[int] = None

    # Called once per iteration with the IterationSummary
    callbacks: List[Callable] = field(default_factory=list)

    # Logging level used by the command line entry point
    log_level: str = "INFO"

    def __post_init__(self):
        if self.num_threads is not None and self.num_threads < 1:
            raise ValueError(f"num_threads must be >= 1, got {self.num_threads}")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ValueError(f"Invalid log_level: {self.log_level}")

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "SolverOptions":
        """Create options from a dictionary (for CLI/JSON loading)"""
        config_dict = dict(config_dict)
        linear_solver = LinearSolverConfig(**config_dict.pop("linear_solver", {}))
        trust_region = TrustRegionConfig(**config_dict.pop("trust_region", {}))

        return cls(
            linear_solver=linear_solver,
            trust_region=trust_region,
            **config_dict
        )

    def to_dict(self) -> Dict[str, Any]:
        """Export options to a dictionary (callbacks are not serialized)"""
        return {
            "linear_solver": dict(self.linear_solver.__dict__),
            "trust_region": dict(self.trust_region.__dict__),
            "num_threads": self.num_threads,
            "log_level": self.log_level,
        }
