"""
Dipole position solvers.
Levenberg-Marquardt over (x, y, M) from a closed-form seed, plus a scipy
least-squares variant of the same residual model.
"""

import json
import logging
import math
from typing import Dict, Iterable, Optional, Tuple

import numpy as np
from scipy.optimize import least_squares

from misogate.datatypes.datatypes import COORD_MAX, COORD_MIN, PositionEstimate, SensorLayout
from ..errors import InsufficientDataError
from .model import dipole_field, dipole_jacobian, unit_dipole_fields

logger = logging.getLogger(__name__)

# Search bounds are wider than the valid 0-1000 area so the solver can overshoot
THETA_POS_MIN = -100.0
THETA_POS_MAX = 1100.0
THETA_M_MIN = 100.0

START_OFFSET = 0.1
SEED_GRID_STEP = 50.0
SINGULAR_TOLERANCE = 1e-12

# Marquardt damping lambda * diag(J^T J), adapted per step
INITIAL_LAMBDA = 1e-3
LAMBDA_UP = 10.0
LAMBDA_DOWN = 0.1
LAMBDA_MIN = 1e-9
LAMBDA_MAX = 1e6

# Squared residual allowed for a converged fit, as a fraction of the squared measured field
RESIDUAL_TOLERANCE = 0.05


def solve_3x3(A: np.ndarray, b: np.ndarray) -> Optional[np.ndarray]:
    """
    Solve Ax = b by cofactor inversion.

    Returns:
        Solution vector, or None if A is numerically singular
    """
    det = (
        A[0, 0] * (A[1, 1] * A[2, 2] - A[1, 2] * A[2, 1])
        - A[0, 1] * (A[1, 0] * A[2, 2] - A[1, 2] * A[2, 0])
        + A[0, 2] * (A[1, 0] * A[2, 1] - A[1, 1] * A[2, 0])
    )

    # Relative to the diagonal so the test is independent of parameter scaling
    diag_scale = abs(A[0, 0] * A[1, 1] * A[2, 2])
    if diag_scale == 0.0 or not math.isfinite(det) or abs(det) <= SINGULAR_TOLERANCE * diag_scale:
        return None

    inv = np.empty((3, 3))
    inv[0, 0] = A[1, 1] * A[2, 2] - A[1, 2] * A[2, 1]
    inv[0, 1] = A[0, 2] * A[2, 1] - A[0, 1] * A[2, 2]
    inv[0, 2] = A[0, 1] * A[1, 2] - A[0, 2] * A[1, 1]
    inv[1, 0] = A[1, 2] * A[2, 0] - A[1, 0] * A[2, 2]
    inv[1, 1] = A[0, 0] * A[2, 2] - A[0, 2] * A[2, 0]
    inv[1, 2] = A[0, 2] * A[1, 0] - A[0, 0] * A[1, 2]
    inv[2, 0] = A[1, 0] * A[2, 1] - A[1, 1] * A[2, 0]
    inv[2, 1] = A[0, 1] * A[2, 0] - A[0, 0] * A[2, 1]
    inv[2, 2] = A[0, 0] * A[1, 1] - A[0, 1] * A[1, 0]
    inv /= det

    return inv @ b


def fit_moment(
    layout: SensorLayout,
    nodes: Dict[int, np.ndarray],
    xs: np.ndarray,
    ys: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Best moment and squared error for each candidate magnet position.

    The field is linear in M, so for a fixed (x, y) the least-squares M is
    sum(u . b) / sum(u . u) with u the field of a unit moment.

    Returns:
        (M, error) arrays, one entry per candidate
    """
    xs = np.atleast_1d(np.asarray(xs, dtype=float))
    ys = np.atleast_1d(np.asarray(ys, dtype=float))
    z0 = layout.magnet_height_z0
    m_hat = layout.m_hat

    units = []
    num = np.zeros_like(xs)
    den = np.zeros_like(xs)
    for nid, measured in nodes.items():
        U = unit_dipole_fields(xs, ys, layout.get_position(nid), z0, m_hat)
        units.append((U, measured))
        num += U @ measured
        den += np.einsum('ij,ij->i', U, U)

    M = np.divide(num, den, out=np.full_like(xs, THETA_M_MIN), where=den > 0.0)
    M = np.maximum(M, THETA_M_MIN)

    error = np.zeros_like(xs)
    for U, measured in units:
        r = measured - M[:, None] * U
        error += np.einsum('ij,ij->i', r, r)

    return M, error


def seed_theta(
    layout: SensorLayout,
    nodes: Dict[int, np.ndarray],
    guesses: Iterable[Tuple[float, float]] = ()
) -> np.ndarray:
    """
    Starting (x, y, M) with the lowest residual among the guesses, the
    strongest node's position + 0.1, and a coarse grid over the area.
    Ties go to the earlier candidate.
    """
    xs = [float(x) for x, _ in guesses]
    ys = [float(y) for _, y in guesses]

    strongest = max(nodes, key=lambda nid: float(np.dot(nodes[nid], nodes[nid])))
    pos = layout.get_position(strongest)
    xs.append(pos[0] + START_OFFSET)
    ys.append(pos[1] + START_OFFSET)

    grid = np.arange(COORD_MIN, COORD_MAX + SEED_GRID_STEP / 2, SEED_GRID_STEP)
    gx, gy = np.meshgrid(grid, grid)
    xs = np.concatenate([xs, gx.ravel()])
    ys = np.concatenate([ys, gy.ravel()])

    M, error = fit_moment(layout, nodes, xs, ys)
    best = int(np.argmin(error))
    return DipoleSolver._clamp(np.array([xs[best], ys[best], M[best]]))


def _usable_nodes(layout: SensorLayout, fields: Dict[int, np.ndarray]) -> Dict[int, np.ndarray]:
    nodes = {
        nid: np.asarray(vec, dtype=float)
        for nid, vec in fields.items()
        if nid in layout.positions
    }
    if len(nodes) < 2:
        raise InsufficientDataError(
            f"Dipole estimation needs at least 2 nodes, got {len(nodes)}"
        )
    return nodes


class DipoleSolver:
    """
    Nonlinear least-squares fit of a point dipole to the magnet-only fields.
    Keeps the last converged estimate as a warm-start candidate for the next solve.
    """

    def __init__(
        self,
        layout: SensorLayout,
        max_iterations: int = 20,
        convergence_threshold: float = 0.1,
        damping_factor: float = INITIAL_LAMBDA,
        residual_tolerance: float = RESIDUAL_TOLERANCE
    ):
        """
        Initialize the solver.

        Args:
            layout: Sensor positions and magnet geometry
            max_iterations: Hard cap on iterations, rejected steps included
            convergence_threshold: Position step size that counts as converged
            damping_factor: Initial Marquardt lambda
            residual_tolerance: Largest squared residual, relative to the squared
                measured field, that a converged fit may leave
        """
        self.layout = layout
        self.max_iterations = max_iterations
        self.convergence_threshold = convergence_threshold
        self.damping_factor = damping_factor
        self.residual_tolerance = residual_tolerance
        self.last_estimate: Optional[PositionEstimate] = None

    def reset(self):
        """Forget the warm start."""
        self.last_estimate = None

    def initial_theta(
        self,
        fields: Dict[int, np.ndarray],
        initial_guess: Optional[PositionEstimate] = None
    ) -> np.ndarray:
        """Starting (x, y, M): converged guesses compete with the cold-start seeds."""
        nodes = _usable_nodes(self.layout, fields)
        guesses = [
            (guess.x, guess.y)
            for guess in (initial_guess, self.last_estimate)
            if guess is not None and guess.converged
        ]
        return seed_theta(self.layout, nodes, guesses)

    def solve(
        self,
        fields: Dict[int, np.ndarray],
        initial_guess: Optional[PositionEstimate] = None
    ) -> PositionEstimate:
        """
        Estimate the magnet position from baseline-subtracted fields.

        A step is taken only if it lowers the squared error; otherwise lambda
        grows and the step is retried. The solve converges when the position
        step falls below the threshold (after at least 3 iterations) or no
        damped step improves the fit, and in both cases only if the residual
        is within tolerance.

        Args:
            fields: node_id -> magnet-only field, nodes with a valid baseline only
            initial_guess: Optional starting point, considered when it is converged

        Returns:
            PositionEstimate with solver diagnostics (unclamped)

        Raises:
            InsufficientDataError: If fewer than 2 nodes are usable
        """
        nodes = _usable_nodes(self.layout, fields)
        signal = sum(float(np.dot(vec, vec)) for vec in nodes.values())

        theta = self.initial_theta(nodes, initial_guess)
        JtJ, Jtr, total_error = self._normal_equations(theta, nodes)
        lam = self.damping_factor
        stop_reason = None
        iterations = 0

        for iteration in range(self.max_iterations):
            iterations = iteration + 1

            delta = self._damped_step(JtJ, Jtr, lam)
            if delta is None:
                logger.warning(json.dumps({
                    "event": "gn_singular",
                    "iteration": iteration
                }))
                stop_reason = "singular"
                break

            candidate = self._clamp(theta + delta)
            candidate_error = self._total_error(candidate, nodes)
            pos_change = math.hypot(candidate[0] - theta[0], candidate[1] - theta[1])

            # A small step only means convergence when damping did not shrink it
            lightly_damped = lam <= 1.0

            improved = candidate_error < total_error
            if improved:
                theta, total_error = candidate, candidate_error
                lam = max(lam * LAMBDA_DOWN, LAMBDA_MIN)
            else:
                lam *= LAMBDA_UP

            if (improved or lightly_damped) and pos_change < self.convergence_threshold and iteration > 2:
                stop_reason = "step"
                break
            if not improved and lam > LAMBDA_MAX:
                stop_reason = "stalled"
                break

            if improved:
                JtJ, Jtr, _ = self._normal_equations(theta, nodes)

        fits = total_error <= self.residual_tolerance * signal
        converged = stop_reason in ("step", "stalled") and fits

        if stop_reason == "stalled" and not fits:
            logger.warning(json.dumps({
                "event": "gn_diverging",
                "iteration": iterations,
                "error": total_error,
                "signal": signal
            }))

        estimate = PositionEstimate(
            x=float(theta[0]),
            y=float(theta[1]),
            method="dipole",
            M=float(theta[2]),
            error=float(total_error),
            iterations=iterations,
            converged=converged
        )

        if converged:
            self.last_estimate = estimate

        logger.debug(json.dumps({
            "event": "gn_result",
            "x": estimate.x,
            "y": estimate.y,
            "M": estimate.M,
            "error": estimate.error,
            "iterations": iterations,
            "converged": converged,
            "stop": stop_reason
        }))

        return estimate

    @staticmethod
    def _damped_step(JtJ: np.ndarray, Jtr: np.ndarray, lam: float) -> Optional[np.ndarray]:
        """Solve (J^T J + lam * diag(J^T J)) delta = J^T r in diagonally scaled form."""
        A = JtJ.copy()
        A[np.diag_indices(3)] *= 1.0 + lam

        scale = np.sqrt(np.diag(A))
        if not np.all(np.isfinite(scale)) or np.any(scale == 0.0):
            return None

        step = solve_3x3(A / np.outer(scale, scale), Jtr / scale)
        if step is None:
            return None
        return step / scale

    def _total_error(self, theta: np.ndarray, nodes: Dict[int, np.ndarray]) -> float:
        z0 = self.layout.magnet_height_z0
        m_hat = self.layout.m_hat
        total_error = 0.0
        for nid, measured in nodes.items():
            r = measured - dipole_field(theta[0], theta[1], theta[2], self.layout.get_position(nid), z0, m_hat)
            total_error += float(np.dot(r, r))
        return total_error

    def _normal_equations(self, theta: np.ndarray, nodes: Dict[int, np.ndarray]):
        """Accumulate J^T J, J^T r and the squared error over all nodes."""
        JtJ = np.zeros((3, 3))
        Jtr = np.zeros(3)
        total_error = 0.0
        z0 = self.layout.magnet_height_z0
        m_hat = self.layout.m_hat

        for nid, measured in nodes.items():
            sensor = self.layout.get_position(nid)
            model = dipole_field(theta[0], theta[1], theta[2], sensor, z0, m_hat)
            r = measured - model
            total_error += float(np.dot(r, r))

            J = dipole_jacobian(theta[0], theta[1], theta[2], sensor, z0, m_hat)
            JtJ += J.T @ J
            Jtr += J.T @ r

        return JtJ, Jtr, total_error

    @staticmethod
    def _clamp(theta: np.ndarray) -> np.ndarray:
        theta = theta.copy()
        theta[0] = min(max(theta[0], THETA_POS_MIN), THETA_POS_MAX)
        theta[1] = min(max(theta[1], THETA_POS_MIN), THETA_POS_MAX)
        theta[2] = max(theta[2], THETA_M_MIN)
        return theta


class DipoleLeastSquaresSolver:
    """
    Same residual model solved with scipy's trust-region least squares.
    Slower than the hand-rolled solver but useful as a cross-check.
    """

    def __init__(
        self,
        layout: SensorLayout,
        max_evaluations: int = 200,
        convergence_threshold: float = 1e-10
    ):
        self.layout = layout
        self.max_evaluations = max_evaluations
        self.convergence_threshold = convergence_threshold

    def solve(
        self,
        fields: Dict[int, np.ndarray],
        initial_guess: Optional[PositionEstimate] = None
    ) -> PositionEstimate:
        """
        Fit (x, y, M) to the measured fields.

        Raises:
            InsufficientDataError: If fewer than 2 nodes are usable
        """
        nodes = _usable_nodes(self.layout, fields)
        z0 = self.layout.magnet_height_z0
        m_hat = self.layout.m_hat
        node_ids = sorted(nodes)

        guesses = [(initial_guess.x, initial_guess.y)] if initial_guess is not None else []
        x0 = seed_theta(self.layout, nodes, guesses)

        def residuals(theta):
            """Stacked measured - model field for all nodes."""
            errs = []
            for nid in node_ids:
                model = dipole_field(theta[0], theta[1], theta[2], self.layout.get_position(nid), z0, m_hat)
                errs.append(nodes[nid] - model)
            return np.concatenate(errs)

        result = least_squares(
            residuals,
            x0,
            method='trf',
            bounds=(
                [THETA_POS_MIN, THETA_POS_MIN, THETA_M_MIN],
                [THETA_POS_MAX, THETA_POS_MAX, np.inf]
            ),
            x_scale='jac',
            max_nfev=self.max_evaluations,
            ftol=self.convergence_threshold
        )

        return PositionEstimate(
            x=float(result.x[0]),
            y=float(result.x[1]),
            method="dipole_lsq",
            M=float(result.x[2]),
            error=float(2.0 * result.cost),
            iterations=int(result.nfev),
            converged=bool(result.success)
        )
