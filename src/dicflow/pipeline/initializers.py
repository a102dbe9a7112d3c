"""Initial guess strategies.

Each strategy fills a zeroed deformation vector for one point and reports
a status. Strategies are registered by initialization method and selected
per frame with :func:`select_initializer`; a point with a path file uses
its own :class:`PathInitializer` instead.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Optional, Tuple

import numpy as np
from scipy.spatial import cKDTree

from dicflow.core.fields import FieldName, InitializationMethod, StatusFlag

if TYPE_CHECKING:
    from dicflow.pipeline.objective import Objective
    from dicflow.pipeline.scheduler import CorrelationScheduler

__all__ = [
    'InitialGuess',
    'Initializer',
    'FieldValueInitializer',
    'NeighborValueInitializer',
    'PhaseCorrelationInitializer',
    'PathTrajectory',
    'PathInitializer',
    'INITIALIZERS',
    'register_initializer',
    'select_initializer',
]

logger = logging.getLogger(__name__)


@dataclass
class InitialGuess:
    """Status of an initialization plus the gamma it measured, if any."""
    status: StatusFlag
    gamma: Optional[float] = None


class Initializer(ABC):
    """Fills ``deformation`` for ``objective``'s point."""

    @abstractmethod
    def initial_guess(self, scheduler: "CorrelationScheduler", objective: "Objective",
                      deformation: np.ndarray) -> InitialGuess:
        ...


INITIALIZERS: Dict[str, Initializer] = {}


def register_initializer(name: str) -> Callable[[type], type]:
    """Class decorator adding one instance of the strategy under ``name``."""
    def decorator(cls: type) -> type:
        INITIALIZERS[name] = cls()
        return cls
    return decorator


@register_initializer("field_values")
class FieldValueInitializer(Initializer):
    """Reuse the point's solution from the previous frame."""

    def initial_guess(self, scheduler, objective, deformation):
        return InitialGuess(objective.initialize_from_previous_frame(deformation))


@register_initializer("neighbor_values")
class NeighborValueInitializer(Initializer):
    """Reuse the solution of the point's (already solved) neighbor."""

    def initial_guess(self, scheduler, objective, deformation):
        return InitialGuess(objective.initialize_from_neighbor(deformation))


@register_initializer("phase_correlation")
class PhaseCorrelationInitializer(Initializer):
    """Whole-image phase correlation offset added to the previous solution."""

    def initial_guess(self, scheduler, objective, deformation):
        gid = objective.point_id
        deformation[int(FieldName.DISPLACEMENT_X)] = (
            scheduler.phase_cor_u_x + scheduler.local_field_value(gid, FieldName.DISPLACEMENT_X))
        deformation[int(FieldName.DISPLACEMENT_Y)] = (
            scheduler.phase_cor_u_y + scheduler.local_field_value(gid, FieldName.DISPLACEMENT_Y))
        deformation[int(FieldName.ROTATION_Z)] = scheduler.local_field_value(gid, FieldName.ROTATION_Z)
        return InitialGuess(StatusFlag.INITIALIZE_SUCCESSFUL)


def select_initializer(method: str, frame: int) -> Initializer:
    """Strategy used by ``method`` on ``frame``.

    ``use_neighbor_values_first_step_only`` seeds from neighbors on the
    first frame and from the previous solution afterwards.
    """
    if method == InitializationMethod.USE_FIELD_VALUES or (
            method == InitializationMethod.USE_NEIGHBOR_VALUES_FIRST_STEP_ONLY and frame > 0):
        return INITIALIZERS["field_values"]
    if method == InitializationMethod.USE_PHASE_CORRELATION:
        return INITIALIZERS["phase_correlation"]
    return INITIALIZERS["neighbor_values"]


class PathTrajectory:
    """Expected trajectory of a point as ``(u, v, theta)`` triads.

    Parameters
    ----------
    triads : array-like (n, 3)
        Displacement x, displacement y and rotation of each waypoint.
    """

    def __init__(self, triads):
        triads = np.asarray(triads, dtype=np.float64)
        if triads.ndim != 2 or triads.shape[1] != 3 or len(triads) == 0:
            raise ValueError(f"Path triads must have shape (n, 3) with n > 0, got {triads.shape}")
        self.triads = triads
        self._tree = cKDTree(triads)

    @classmethod
    def from_file(cls, path) -> "PathTrajectory":
        """Load whitespace or comma delimited ``u v theta`` rows; ``#`` starts a comment."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Path file not found: {path}")
        text = path.read_text()
        delimiter = "," if "," in text else None
        triads = np.loadtxt(path, delimiter=delimiter, comments="#", ndmin=2)
        logger.debug("Loaded %d path triads from %s", len(triads), path)
        return cls(triads)

    def __len__(self) -> int:
        return len(self.triads)

    def closest_triad(self, u: float, v: float, theta: float) -> Tuple[int, float]:
        """Index of the nearest waypoint and the distance to it."""
        distance, index = self._tree.query([u, v, theta])
        return int(index), float(distance)

    def nearest(self, u: float, v: float, theta: float, k: int) -> np.ndarray:
        """Indices of the ``k`` nearest waypoints, closest first."""
        k = min(k, len(self.triads))
        _, indices = self._tree.query([u, v, theta], k=k)
        return np.atleast_1d(indices)


class PathInitializer(Initializer):
    """Initial guess from the best-matching waypoint of a path file.

    The global search evaluates gamma at every waypoint; the local search
    only evaluates the ``num_neighbors`` waypoints nearest the previous
    solution.
    """

    def __init__(self, trajectory: PathTrajectory, num_neighbors: int = 6):
        self.trajectory = trajectory
        self.num_neighbors = num_neighbors

    def closest_triad(self, u: float, v: float, theta: float) -> Tuple[int, float]:
        return self.trajectory.closest_triad(u, v, theta)

    def _best(self, objective, deformation, indices) -> Optional[float]:
        """Copy the triad with the lowest finite gamma into ``deformation``.

        Returns None, leaving ``deformation`` untouched, when no triad scores.
        """
        best_gamma = np.inf
        best = None
        trial = np.zeros_like(deformation)
        for index in indices:
            u, v, theta = self.trajectory.triads[index]
            trial[:] = 0.0
            trial[int(FieldName.DISPLACEMENT_X)] = u
            trial[int(FieldName.DISPLACEMENT_Y)] = v
            trial[int(FieldName.ROTATION_Z)] = theta
            gamma = objective.gamma(trial)
            if np.isfinite(gamma) and gamma < best_gamma:
                best_gamma = gamma
                best = trial.copy()
        if best is None:
            return None
        deformation[:] = best
        return float(best_gamma)

    def initial_guess(self, scheduler, objective, deformation):
        gid = objective.point_id
        global_search = (scheduler.frame == 0
                         or scheduler.local_field_value(gid, FieldName.SIGMA) == -1.0)
        if global_search:
            indices = range(len(self.trajectory))
        else:
            indices = self.trajectory.nearest(
                scheduler.local_field_value(gid, FieldName.DISPLACEMENT_X),
                scheduler.local_field_value(gid, FieldName.DISPLACEMENT_Y),
                scheduler.local_field_value(gid, FieldName.ROTATION_Z),
                self.num_neighbors,
            )
        gamma = self._best(objective, deformation, indices)
        if gamma is None:
            logger.debug("Point %d path search found no triad with a finite gamma", gid)
            return InitialGuess(StatusFlag.INITIALIZE_FAILED)
        logger.debug("Point %d path %s search: gamma %.6f", gid,
                     "global" if global_search else "local", gamma)
        return InitialGuess(StatusFlag.INITIALIZE_SUCCESSFUL, gamma)
