"""Per-point correlation pipeline.

One call to :meth:`CorrelationPipeline.run` takes a single locally held
point through the stages below and records exactly one outcome into the
active field view before returning:

1. motion gate
2. initial guess (path file, field values, phase correlation or neighbor)
3. skip-solve short-circuit
4. initial-gamma gate
5. optimize (gradient-based and/or simplex, with composite retry)
6. final-gamma gate
7. path-distance gate
8. success recording

Failures are data: each stage records a status and returns. Exceptions
from the objective are converted to the matching ``*_BY_EXCEPTION`` status
and never reach the scheduler.
"""

import logging
from typing import TYPE_CHECKING, Optional, Tuple

import numpy as np

from dicflow.core.fields import (
    FieldName,
    InitializationMethod,
    OptimizationMethod,
    PointOutcome,
    ProjectionMethod,
    StatusFlag,
    new_deformation,
)
from dicflow.pipeline.initializers import InitialGuess, select_initializer

if TYPE_CHECKING:
    from dicflow.pipeline.objective import Objective
    from dicflow.pipeline.scheduler import CorrelationScheduler

__all__ = ['CorrelationPipeline']

logger = logging.getLogger(__name__)

FAST = "fast"
ROBUST = "robust"

# first solver, fallback solver
_SOLVER_ORDER = {
    OptimizationMethod.GRADIENT_BASED: (FAST, None),
    OptimizationMethod.SIMPLEX: (ROBUST, None),
    OptimizationMethod.GRADIENT_BASED_THEN_SIMPLEX: (FAST, ROBUST),
    OptimizationMethod.SIMPLEX_THEN_GRADIENT_BASED: (ROBUST, FAST),
}


class CorrelationPipeline:
    """Runs the staged correlation of one point against the scheduler's state.

    Parameters
    ----------
    scheduler : CorrelationScheduler
        Engine that owns the images, the field views and the per-point
        collaborators (motion detectors, path initializers).
    """

    def __init__(self, scheduler: "CorrelationScheduler"):
        self.scheduler = scheduler
        self.config = scheduler.config

    def run(self, objective: "Objective") -> PointOutcome:
        gid = objective.point_id
        try:
            return self._run(objective)
        except Exception:
            # metric evaluations outside the guarded stages
            logger.debug("[RANK %d] Point %d: correlation raised", self.scheduler.rank, gid, exc_info=True)
            self.scheduler.record_failed_step(gid, StatusFlag.CORRELATION_FAILED_BY_EXCEPTION, -1)
            return PointOutcome.OPTIMIZE_FAILED

    def _initial_guess(self, objective: "Objective", deformation: np.ndarray) -> InitialGuess:
        deformation[:] = 0.0
        path_init = self.scheduler.path_initializer(objective.point_id)
        if path_init is not None:
            return path_init.initial_guess(self.scheduler, objective, deformation)
        initializer = select_initializer(self.config.initialization.method, self.scheduler.frame)
        return initializer.initial_guess(self.scheduler, objective, deformation)

    @staticmethod
    def _solve(objective: "Objective", solver: str, deformation: np.ndarray) -> Tuple[StatusFlag, int]:
        try:
            if solver == FAST:
                status, iterations = objective.compute_update_fast(deformation)
            else:
                status, iterations = objective.compute_update_robust(deformation)
        except Exception:
            logger.debug("Point %d: %s solve raised", objective.point_id, solver, exc_info=True)
            return StatusFlag.CORRELATION_FAILED_BY_EXCEPTION, -1
        return StatusFlag(status), int(iterations)

    def _run(self, objective: "Objective") -> PointOutcome:
        s = self.scheduler
        cfg = self.config
        thresholds = cfg.thresholds
        gid = objective.point_id
        logger.debug("[RANK %d] POINT %d (%.2f, %.2f)", s.rank, gid,
                     s.local_field_value(gid, FieldName.COORDINATE_X),
                     s.local_field_value(gid, FieldName.COORDINATE_Y))

        # 1. motion gate: only match, status and iterations change
        if not s.motion_detected(gid):
            logger.debug("Point %d skipping frame due to no motion", gid)
            s.set_local_field_value(gid, FieldName.MATCH, 0.0)
            s.set_local_field_value(gid, FieldName.STATUS_FLAG, int(StatusFlag.FRAME_SKIPPED_DUE_TO_NO_MOTION))
            s.set_local_field_value(gid, FieldName.ITERATIONS, 0)
            return PointOutcome.SKIPPED_NO_MOTION

        # 2. initial guess
        num_iterations = -1
        deformation = new_deformation()
        try:
            guess = self._initial_guess(objective, deformation)
        except Exception:
            logger.debug("Point %d initialization raised", gid, exc_info=True)
            s.record_failed_step(gid, StatusFlag.INITIALIZE_FAILED_BY_EXCEPTION, num_iterations)
            return PointOutcome.INITIALIZE_FAILED
        init_status = StatusFlag(guess.status)
        if init_status == StatusFlag.INITIALIZE_FAILED:
            s.record_failed_step(gid, init_status, num_iterations)
            return PointOutcome.INITIALIZE_FAILED
        initial_gamma: Optional[float] = guess.gamma

        # 3. skip-solve requested for this point
        if cfg.subsets.skip_solve.get(gid, False):
            logger.debug("Point %d solve skipped as requested", gid)
            sigma = objective.sigma(deformation)
            if initial_gamma is None:
                initial_gamma = objective.gamma(deformation)
            s.record_step(gid, deformation, sigma, 0.0, initial_gamma, StatusFlag.FRAME_SKIPPED, num_iterations)
            return PointOutcome.SOLVE_SKIPPED

        # 4. initial-gamma gate
        if thresholds.initial_gamma is not None:
            if initial_gamma is None:
                initial_gamma = objective.gamma(deformation)
            if initial_gamma > thresholds.initial_gamma:
                logger.debug("Point %d initial gamma FAILS threshold test, gamma: %.6f (threshold: %.6f)",
                             gid, initial_gamma, thresholds.initial_gamma)
                s.record_failed_step(gid, StatusFlag.INITIALIZE_FAILED, num_iterations)
                return PointOutcome.GAMMA_GATE_FAILED

        # 5. optimize
        first, fallback = _SOLVER_ORDER[OptimizationMethod(cfg.solver.optimization_method)]
        if thresholds.skip_solve_gamma is not None and initial_gamma is None:
            initial_gamma = objective.gamma(deformation)
        if thresholds.skip_solve_gamma is not None and initial_gamma < thresholds.skip_solve_gamma:
            logger.debug("Point %d initial guess already below skip-solve gamma %.6f",
                         gid, thresholds.skip_solve_gamma)
            corr_status, num_iterations = StatusFlag.CORRELATION_SUCCESSFUL, 0
        else:
            corr_status, num_iterations = self._solve(objective, first, deformation)
            if corr_status != StatusFlag.CORRELATION_SUCCESSFUL and fallback is not None:
                logger.debug("Point %d %s solve failed (%s), retrying with %s",
                             gid, first, corr_status.name, fallback)
                try:
                    retry = self._initial_guess(objective, deformation)
                except Exception:
                    logger.debug("Point %d re-initialization raised", gid, exc_info=True)
                    s.record_failed_step(gid, StatusFlag.INITIALIZE_FAILED_BY_EXCEPTION, num_iterations)
                    return PointOutcome.INITIALIZE_FAILED
                init_status = StatusFlag(retry.status)
                if init_status == StatusFlag.INITIALIZE_FAILED:
                    s.record_failed_step(gid, init_status, num_iterations)
                    return PointOutcome.INITIALIZE_FAILED
                corr_status, num_iterations = self._solve(objective, fallback, deformation)
        if corr_status != StatusFlag.CORRELATION_SUCCESSFUL:
            s.record_failed_step(gid, corr_status, num_iterations)
            return PointOutcome.OPTIMIZE_FAILED

        # 6. final-gamma gate
        gamma = objective.gamma(deformation)
        sigma = objective.sigma(deformation)
        if thresholds.final_gamma is not None and gamma > thresholds.final_gamma:
            logger.debug("Point %d final gamma FAILS threshold test, gamma: %.6f (threshold: %.6f)",
                         gid, gamma, thresholds.final_gamma)
            if cfg.initialization.method == InitializationMethod.USE_PHASE_CORRELATION:
                # keep the phase correlation guess for the next frame
                s.add_local_field_value(gid, FieldName.DISPLACEMENT_X, s.phase_cor_u_x)
                s.add_local_field_value(gid, FieldName.DISPLACEMENT_Y, s.phase_cor_u_y)
            s.record_failed_step(gid, StatusFlag.FRAME_FAILED_DUE_TO_HIGH_GAMMA, num_iterations)
            return PointOutcome.GAMMA_GATE_FAILED

        # 7. path-distance gate
        path_init = s.path_initializer(gid)
        if thresholds.path_distance is not None and path_init is not None:
            _, distance = path_init.closest_triad(
                deformation[int(FieldName.DISPLACEMENT_X)],
                deformation[int(FieldName.DISPLACEMENT_Y)],
                deformation[int(FieldName.ROTATION_Z)],
            )
            logger.debug("Point %d path distance: %.6f", gid, distance)
            if distance > thresholds.path_distance:
                s.record_failed_step(gid, StatusFlag.FRAME_FAILED_DUE_TO_HIGH_PATH_DISTANCE, num_iterations)
                return PointOutcome.PATH_GATE_FAILED

        # 8. success
        if cfg.solver.projection_method == ProjectionMethod.VELOCITY_BASED:
            s.save_off_fields(gid)
        s.record_step(gid, deformation, sigma, 0.0, gamma, init_status, num_iterations)
        if cfg.subsets.use_subset_evolution and s.frame > 1:
            logger.debug("[RANK %d] Evolving point %d using newly exposed pixels", s.rank, gid)
            objective.subset.turn_on_previously_obstructed_pixels()
        return PointOutcome.SUCCESS
