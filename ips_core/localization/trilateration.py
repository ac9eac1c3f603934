"""
Weighted Trilateration Solver.

Solves a 2D position from three or more anchors with per-anchor distance
and confidence by weighted nonlinear least squares:

    minimize  sum_i w_i * ((x - x_i)^2 + (y - y_i)^2 - d_i^2)^2

with w_i the anchor confidences normalized to sum to the anchor count.
The problem is solved with a damped Gauss-Newton (Levenberg-Marquardt)
iteration started from the confidence-weighted anchor centroid.

Reported uncertainty is GDOP * sigma_range, so weak anchor geometry
inflates accuracy_m instead of producing an over-confident fix.

Reference: Levenberg-Marquardt, Numerical Recipes 15.5
"""

from typing import List, Optional, Tuple
from dataclasses import dataclass
import logging
import math

import numpy as np

from ips_core.proto.radio import AnchorFix, DistanceEstimate
from ips_core.proto.position_estimate import PositionEstimate, PositionSource, create_invalid
from ips_core.metrics import get_metrics


logger = logging.getLogger(__name__)


@dataclass
class TrilaterationConfig:
    """
    Configuration for the trilateration solver.

    Attributes:
        min_anchors: Minimum usable anchors for a fix
        min_confidence: Anchors below this confidence are ignored
        max_iterations: Iteration bound for Levenberg-Marquardt
        convergence_tol_m: Step size at which the solve is converged (m)
        initial_damping: Initial LM damping factor (lambda)
        max_condition_number: Normal matrix condition limit (collinear anchors)
        max_distance_m: Distances beyond this are treated as unusable (m)
        range_sigma_floor_m: Lower bound on the 1-sigma range error (m)
        confidence_scale_m: Accuracy at which fix confidence decays by 1/e (m)
    """

    min_anchors: int = 3
    min_confidence: float = 0.1
    max_iterations: int = 50
    convergence_tol_m: float = 1e-4
    initial_damping: float = 1e-2
    max_condition_number: float = 1e8
    max_distance_m: float = 100.0
    range_sigma_floor_m: float = 0.5
    confidence_scale_m: float = 10.0

    def __post_init__(self):
        """Validate configuration."""
        if self.min_anchors < 3:
            raise ValueError(f"2D trilateration needs at least 3 anchors: {self.min_anchors}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be positive: {self.max_iterations}")
        if self.range_sigma_floor_m <= 0:
            raise ValueError(f"range_sigma_floor_m must be positive: {self.range_sigma_floor_m}")


class TrilaterationSolver:
    """
    Solve a 2D absolute fix from anchor distances.

    Usage:
        solver = TrilaterationSolver(config)

        fixes = anchor_table.estimates(now_ns)   # [(AnchorFix, DistanceEstimate)]
        estimate = solver.solve(fixes, timestamp_ns=now_ns)

        if estimate.is_valid:
            print(f"Fix: ({estimate.x:.2f}, {estimate.y:.2f}) +/- {estimate.accuracy_m:.2f} m")
    """

    def __init__(self, config: Optional[TrilaterationConfig] = None):
        """
        Initialize solver.

        Args:
            config: Solver configuration (uses defaults if None)
        """
        self.config = config or TrilaterationConfig()
        self.metrics = get_metrics()

    def solve(
        self,
        anchor_fixes: List[Tuple[AnchorFix, DistanceEstimate]],
        timestamp_ns: int = 0,
    ) -> PositionEstimate:
        """
        Solve position from anchors with distance estimates.

        Args:
            anchor_fixes: (AnchorFix, DistanceEstimate) pairs
            timestamp_ns: Timestamp assigned to the estimate

        Returns:
            PositionEstimate with source RADIO, or the invalid estimate

        Notes:
            - Fewer than min_anchors usable anchors -> invalid
            - Collinear / ill-conditioned geometry -> invalid
            - Non-convergence or non-finite result -> invalid
        """
        self.metrics.increment('trilateration_attempts')

        usable = [
            (anchor, est) for anchor, est in anchor_fixes
            if est.confidence >= self.config.min_confidence
            and math.isfinite(est.distance_m)
            and 0.0 <= est.distance_m <= self.config.max_distance_m
        ]

        if len(usable) < self.config.min_anchors:
            self.metrics.increment_drop('insufficient_anchors')
            logger.debug(
                f"Trilateration needs {self.config.min_anchors} anchors, have {len(usable)} usable"
            )
            return create_invalid(timestamp_ns)

        anchors = np.array([anchor.position for anchor, _ in usable], dtype=float)
        distances = np.array([est.distance_m for _, est in usable], dtype=float)
        confidences = np.array([est.confidence for _, est in usable], dtype=float)
        weights = confidences * len(confidences) / confidences.sum()

        try:
            solution = self._solve_lm(anchors, distances, weights)
        except np.linalg.LinAlgError as e:
            self.metrics.increment_drop('degenerate_geometry')
            logger.warning(f"Trilateration linear algebra failure: {e}")
            return create_invalid(timestamp_ns)

        if solution is None:
            return create_invalid(timestamp_ns)

        position, iterations = solution

        uncertainty = self._compute_uncertainty(position, anchors, distances, weights)
        if uncertainty is None:
            self.metrics.increment_drop('degenerate_geometry')
            logger.warning("Degenerate anchor geometry, no fix")
            return create_invalid(timestamp_ns)

        gdop, sigma_range, residual_rms, sigma_x, sigma_y = uncertainty
        accuracy_m = gdop * sigma_range

        if not (math.isfinite(accuracy_m) and np.all(np.isfinite(position))):
            self.metrics.increment_drop('solver_failed')
            return create_invalid(timestamp_ns)

        confidence = float(np.mean(confidences)) * math.exp(
            -accuracy_m / self.config.confidence_scale_m
        )

        self.metrics.increment('trilateration_fixes')
        self.metrics.record_histogram('trilateration_iterations', iterations)
        self.metrics.record_histogram('trilateration_gdop', gdop)
        self.metrics.record_histogram('trilateration_residual_m', residual_rms)

        return PositionEstimate(
            x=float(position[0]),
            y=float(position[1]),
            accuracy_m=float(accuracy_m),
            confidence=confidence,
            source=PositionSource.RADIO,
            timestamp_ns=timestamp_ns,
            covariance=(float(sigma_x), float(sigma_y), None),
            num_anchors_used=len(usable),
            residual_m=float(residual_rms),
            geometry_dop=float(gdop),
        )

    def _solve_lm(
        self,
        anchors: np.ndarray,
        distances: np.ndarray,
        weights: np.ndarray,
    ) -> Optional[Tuple[np.ndarray, int]]:
        """
        Levenberg-Marquardt on the squared-range residuals.

        Returns:
            (position, iterations), or None when the normal matrix is
            ill-conditioned or the iteration does not converge
        """
        x = (weights[:, None] * anchors).sum(axis=0) / weights.sum()
        damping = self.config.initial_damping
        cost = self._cost(x, anchors, distances, weights)

        for iteration in range(1, self.config.max_iterations + 1):
            diff = x - anchors
            residuals = (diff ** 2).sum(axis=1) - distances ** 2
            jacobian = 2.0 * diff

            JTWJ = jacobian.T @ (weights[:, None] * jacobian)
            JTWr = jacobian.T @ (weights * residuals)

            if not np.all(np.isfinite(JTWJ)) or np.linalg.cond(JTWJ) > self.config.max_condition_number:
                self.metrics.increment_drop('degenerate_geometry')
                logger.warning("Ill-conditioned trilateration normal matrix")
                return None

            # Inner loop: raise damping until the step reduces cost
            while True:
                augmented = JTWJ + damping * np.diag(np.diag(JTWJ))
                delta = np.linalg.solve(augmented, -JTWr)
                candidate = x + delta
                candidate_cost = self._cost(candidate, anchors, distances, weights)

                if candidate_cost <= cost:
                    x = candidate
                    cost = candidate_cost
                    damping = max(damping / 10.0, 1e-12)
                    break

                damping *= 10.0
                if damping > 1e12:
                    # No descent direction left: at a minimum
                    return x, iteration

            if np.linalg.norm(delta) < self.config.convergence_tol_m:
                return x, iteration

        self.metrics.increment_drop('solver_failed')
        logger.warning(f"Trilateration did not converge in {self.config.max_iterations} iterations")
        return None

    @staticmethod
    def _cost(x: np.ndarray, anchors: np.ndarray, distances: np.ndarray, weights: np.ndarray) -> float:
        residuals = ((x - anchors) ** 2).sum(axis=1) - distances ** 2
        return float((weights * residuals ** 2).sum())

    def _compute_uncertainty(
        self,
        position: np.ndarray,
        anchors: np.ndarray,
        distances: np.ndarray,
        weights: np.ndarray,
    ) -> Optional[Tuple[float, float, float, float, float]]:
        """
        Geometric dilution of precision and range error at the solution.

        Returns:
            (gdop, sigma_range_m, residual_rms_m, sigma_x_m, sigma_y_m), or
            None for singular geometry
        """
        diff = position - anchors
        ranges = np.linalg.norm(diff, axis=1)

        # Unit line-of-sight vectors; an anchor at the solution contributes nothing
        H = np.zeros_like(diff)
        nonzero = ranges > 1e-6
        H[nonzero] = diff[nonzero] / ranges[nonzero, None]

        HTWH = H.T @ (weights[:, None] * H)
        if np.linalg.cond(HTWH) > self.config.max_condition_number:
            return None

        Q = np.linalg.inv(HTWH)
        gdop = math.sqrt(max(0.0, float(np.trace(Q))))

        range_residuals = ranges - distances
        residual_rms = math.sqrt(float((weights * range_residuals ** 2).sum() / weights.sum()))
        sigma_range = max(self.config.range_sigma_floor_m, residual_rms)

        sigma_x = math.sqrt(max(0.0, float(Q[0, 0]))) * sigma_range
        sigma_y = math.sqrt(max(0.0, float(Q[1, 1]))) * sigma_range

        return gdop, sigma_range, residual_rms, sigma_x, sigma_y
