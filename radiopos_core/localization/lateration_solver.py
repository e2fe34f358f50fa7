"""
Lateration Solver (linear + nonlinear).

Computes a position from distances to known reference positions.

Linear solvers eliminate the quadratic term by working on squared-distance
equations:

- inhomogeneous: subtract the first equation from the rest,
      2 (p_i - p_0)^T x = |p_i|^2 - |p_0|^2 - d_i^2 + d_0^2
  and solve by least squares for x directly.
- homogeneous: each equation becomes a row of
      [-2 p_i^T, 1, |p_i|^2 - d_i^2] . [x, |x|^2, 1]^T = 0
  whose null space (smallest right singular vector) is dehomogenized by its
  last component.

The nonlinear solver runs Levenberg-Marquardt on

    sum_i (|x - p_i| - d_i)^2 / sigma_i^2

seeded by the linear solution, a caller-supplied position or the centroid,
and can return inv(J^T W J) as the position covariance.
"""

from typing import List, Optional, Sequence, Tuple
from dataclasses import dataclass
import numpy as np

from radiopos_core.proto.measurement import Measurement
from radiopos_core.localization.errors import NumericalError
from radiopos_core.metrics import get_metrics


@dataclass(frozen=True)
class LaterationSolverConfig:
    """
    Configuration for lateration solver.

    Attributes:
        max_iterations: Maximum Levenberg-Marquardt iterations
        convergence_tol: Stop when the step norm falls below this (m)
        initial_damping: Initial Levenberg-Marquardt damping factor
        max_damping: Give up shrinking the step past this damping
        rank_tol: Relative singular value below which a system is singular
        default_distance_std: Std used for unweighted solves (m)
    """

    max_iterations: int = 100
    convergence_tol: float = 1e-10
    initial_damping: float = 1e-3
    max_damping: float = 1e10
    rank_tol: float = 1e-10
    default_distance_std: float = 1.0

    def __post_init__(self):
        """Validate configuration."""
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1: {self.max_iterations}")
        if self.convergence_tol <= 0:
            raise ValueError(f"convergence_tol must be positive: {self.convergence_tol}")
        if self.initial_damping <= 0 or self.max_damping <= self.initial_damping:
            raise ValueError("Damping must satisfy 0 < initial_damping < max_damping")
        if self.rank_tol <= 0:
            raise ValueError(f"rank_tol must be positive: {self.rank_tol}")
        if self.default_distance_std <= 0:
            raise ValueError(
                f"default_distance_std must be positive: {self.default_distance_std}"
            )


@dataclass
class LaterationResult:
    """
    Result of a lateration solve.

    Attributes:
        position: Estimated position
        covariance: Position covariance (dim x dim), if requested
        chi_sq: Weighted sum of squared residuals at the solution
        iterations: Nonlinear iterations used (0 for linear-only solves)
    """

    position: np.ndarray
    covariance: Optional[np.ndarray] = None
    chi_sq: float = 0.0
    iterations: int = 0


def range_residuals(
    position: np.ndarray,
    positions: np.ndarray,
    distances: np.ndarray,
) -> np.ndarray:
    """Absolute range errors |‖x - p_i‖ - d_i| of every measurement."""
    predicted = np.linalg.norm(positions - position[None, :], axis=1)
    return np.abs(predicted - distances)


def unpack_measurements(
    measurements: Sequence[Measurement],
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Split measurements into arrays.

    Returns:
        Tuple of (positions (n x dim), distances (n,), stds (n,))

    Raises:
        ValueError: if measurements are empty or mix dimensions
    """
    if not measurements:
        raise ValueError("At least one measurement is required")

    dims = measurements[0].num_dimensions
    if any(m.num_dimensions != dims for m in measurements):
        raise ValueError("All measurements must have the same dimension")

    positions = np.array([m.position for m in measurements], dtype=np.float64)
    distances = np.array([m.distance_m for m in measurements], dtype=np.float64)
    stds = np.array([m.distance_std_m for m in measurements], dtype=np.float64)
    return positions, distances, stds


class LaterationSolver:
    """
    Solve a position from reference positions and distances.

    Usage:
        solver = LaterationSolver()
        result = solver.solve(measurements, compute_covariance=True)
        print(result.position, result.covariance)
    """

    def __init__(self, config: Optional[LaterationSolverConfig] = None):
        """
        Initialize lateration solver.

        Args:
            config: Solver configuration (uses defaults if None)
        """
        self.config = config or LaterationSolverConfig()
        self.metrics = get_metrics()

    def solve(
        self,
        measurements: Sequence[Measurement],
        use_linear: bool = True,
        homogeneous: bool = False,
        initial_position: Optional[Sequence[float]] = None,
        refine: bool = True,
        compute_covariance: bool = False,
    ) -> LaterationResult:
        """
        Solve position from measurements.

        Args:
            measurements: At least dim + 1 measurements (dim with a seed and
                the linear path disabled)
            use_linear: Compute a closed-form linear solution first
            homogeneous: Use the homogeneous linear formulation
            initial_position: Seed for the nonlinear solver when the linear
                path is disabled
            refine: Refine with the nonlinear solver
            compute_covariance: Return position covariance

        Returns:
            LaterationResult

        Raises:
            ValueError: if there are too few measurements
            NumericalError: if the system is singular
        """
        positions, distances, stds = unpack_measurements(measurements)
        self.metrics.increment('lateration_solves')

        try:
            position = None
            if use_linear:
                position = self.solve_linear(positions, distances, homogeneous)
            elif initial_position is not None:
                position = np.asarray(initial_position, dtype=np.float64)

            if refine or position is None:
                return self.solve_nonlinear(
                    positions, distances, stds,
                    initial_position=position,
                    compute_covariance=compute_covariance,
                )

            covariance = None
            if compute_covariance:
                covariance = self._covariance(position, positions, stds)
            residuals = range_residuals(position, positions, distances)
            chi_sq = float(np.sum((residuals / stds) ** 2))
            return LaterationResult(position=position, covariance=covariance, chi_sq=chi_sq)

        except NumericalError:
            self.metrics.increment('lateration_failures')
            raise

    def solve_linear(
        self,
        positions: np.ndarray,
        distances: np.ndarray,
        homogeneous: bool = False,
    ) -> np.ndarray:
        """
        Closed-form least-squares position.

        Raises:
            ValueError: if fewer than dim + 1 references are given
            NumericalError: if reference geometry is degenerate
        """
        positions = np.asarray(positions, dtype=np.float64)
        distances = np.asarray(distances, dtype=np.float64)
        n, dims = positions.shape
        if n < dims + 1:
            raise ValueError(
                f"Linear lateration needs at least {dims + 1} references, got {n}"
            )

        if homogeneous:
            return self._solve_homogeneous(positions, distances)
        return self._solve_inhomogeneous(positions, distances)

    def _solve_inhomogeneous(self, positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
        dims = positions.shape[1]
        p0 = positions[0]
        d0 = distances[0]

        A = 2.0 * (positions[1:] - p0)
        b = (
            np.sum(positions[1:] ** 2, axis=1) - np.dot(p0, p0)
            - distances[1:] ** 2 + d0 ** 2
        )

        singular_values = np.linalg.svd(A, compute_uv=False)
        if singular_values[0] <= 0 or singular_values[dims - 1] < self.config.rank_tol * singular_values[0]:
            raise NumericalError("Degenerate reference geometry (rank-deficient system)")

        solution, *_ = np.linalg.lstsq(A, b, rcond=None)
        return solution

    def _solve_homogeneous(self, positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
        n, dims = positions.shape

        A = np.zeros((n, dims + 2))
        A[:, :dims] = -2.0 * positions
        A[:, dims] = 1.0
        A[:, dims + 1] = np.sum(positions ** 2, axis=1) - distances ** 2

        # Normalize rows to improve conditioning
        row_norms = np.linalg.norm(A, axis=1)
        row_norms[row_norms == 0] = 1.0
        A = A / row_norms[:, None]

        _, singular_values, vt = np.linalg.svd(A, full_matrices=True)
        # dims + 1 independent rows are needed for a one-dimensional null space
        if len(singular_values) < dims + 1 or (
            singular_values[dims] < self.config.rank_tol * singular_values[0]
        ):
            raise NumericalError("Degenerate reference geometry (rank-deficient system)")

        h = vt[-1]
        scale = h[dims + 1]
        if abs(scale) < self.config.rank_tol:
            raise NumericalError("Homogeneous solution at infinity")

        return h[:dims] / scale

    def solve_nonlinear(
        self,
        positions: np.ndarray,
        distances: np.ndarray,
        stds: Optional[np.ndarray] = None,
        initial_position: Optional[np.ndarray] = None,
        compute_covariance: bool = False,
    ) -> LaterationResult:
        """
        Weighted Levenberg-Marquardt refinement.

        Args:
            positions: Reference positions (n x dim)
            distances: Distances (n,)
            stds: Distance standard deviations (n,), unit weights if None
            initial_position: Seed; linear solution or centroid if None
            compute_covariance: Return inv(J^T W J) at the solution

        Raises:
            ValueError: if fewer than dim references are given
            NumericalError: if the normal equations are singular
        """
        positions = np.asarray(positions, dtype=np.float64)
        distances = np.asarray(distances, dtype=np.float64)
        n, dims = positions.shape
        if n < dims:
            raise ValueError(
                f"Nonlinear lateration needs at least {dims} references, got {n}"
            )

        if stds is None:
            stds = np.full(n, self.config.default_distance_std)
        weights = 1.0 / np.asarray(stds, dtype=np.float64) ** 2

        if initial_position is not None:
            x = np.array(initial_position, dtype=np.float64)
        else:
            x = None
            if n >= dims + 1:
                try:
                    x = self.solve_linear(positions, distances)
                except NumericalError:
                    x = None
            if x is None:
                x = positions.mean(axis=0)

        if x.shape != (dims,):
            raise ValueError(f"Initial position must have {dims} coordinates")

        damping = self.config.initial_damping
        cost = self._cost(x, positions, distances, weights)
        iteration = 0
        for iteration in range(1, self.config.max_iterations + 1):
            J, r = self._jacobian_and_residuals(x, positions, distances)
            JTW = J.T * weights
            JTJ = JTW @ J
            JTr = JTW @ r

            step_accepted = False
            while damping <= self.config.max_damping:
                lhs = JTJ + damping * np.diag(np.maximum(np.diag(JTJ), 1e-12))
                try:
                    delta = np.linalg.solve(lhs, -JTr)
                except np.linalg.LinAlgError:
                    damping *= 10.0
                    continue

                candidate = x + delta
                candidate_cost = self._cost(candidate, positions, distances, weights)
                if candidate_cost <= cost:
                    x = candidate
                    cost = candidate_cost
                    damping = max(damping / 10.0, 1e-12)
                    step_accepted = True
                    break
                damping *= 10.0

            if not step_accepted:
                # No descent direction left: at a (local) minimum
                break

            if np.linalg.norm(delta) < self.config.convergence_tol * (1.0 + np.linalg.norm(x)):
                break

        if not np.all(np.isfinite(x)):
            raise NumericalError("Nonlinear lateration diverged")

        covariance = None
        if compute_covariance:
            covariance = self._covariance(x, positions, np.sqrt(1.0 / weights))

        return LaterationResult(
            position=x,
            covariance=covariance,
            chi_sq=float(cost),
            iterations=iteration,
        )

    @staticmethod
    def _jacobian_and_residuals(
        x: np.ndarray,
        positions: np.ndarray,
        distances: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        diff = x[None, :] - positions
        predicted = np.linalg.norm(diff, axis=1)
        residuals = predicted - distances

        jacobian = np.zeros_like(diff)
        valid = predicted > 1e-12
        jacobian[valid] = diff[valid] / predicted[valid, None]
        return jacobian, residuals

    @staticmethod
    def _cost(
        x: np.ndarray,
        positions: np.ndarray,
        distances: np.ndarray,
        weights: np.ndarray,
    ) -> float:
        predicted = np.linalg.norm(positions - x[None, :], axis=1)
        return float(np.sum(weights * (predicted - distances) ** 2))

    def _covariance(
        self,
        x: np.ndarray,
        positions: np.ndarray,
        stds: np.ndarray,
    ) -> np.ndarray:
        """inv(J^T W J) at x."""
        J, _ = self._jacobian_and_residuals(x, positions, np.zeros(len(positions)))
        weights = 1.0 / np.asarray(stds, dtype=np.float64) ** 2
        information = (J.T * weights) @ J

        singular_values = np.linalg.svd(information, compute_uv=False)
        if singular_values[0] <= 0 or singular_values[-1] < self.config.rank_tol * singular_values[0]:
            raise NumericalError("Singular information matrix, covariance undefined")
        return np.linalg.inv(information)


def solve_lateration(
    measurements: List[Measurement],
    **kwargs,
) -> LaterationResult:
    """Solve with a default-configured LaterationSolver."""
    return LaterationSolver().solve(measurements, **kwargs)
