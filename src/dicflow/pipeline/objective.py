"""Correlation objective interface.

The objective owns the pixel-level correlation math for one point: the
similarity metrics and the two optimizers. The engine only calls the
methods below; concrete objectives are supplied by the caller through an
``objective_factory(scheduler, point_id)`` (an Objective subclass works as
its own factory).

The two initialization methods have default implementations that read the
scheduler's active field view, since they only need field values.
"""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Tuple

import numpy as np

from dicflow.core.fields import DEFORMATION_FIELDS, FieldName, ProjectionMethod, StatusFlag

if TYPE_CHECKING:
    from dicflow.core.subset import Subset
    from dicflow.pipeline.scheduler import CorrelationScheduler

__all__ = ['Objective']

logger = logging.getLogger(__name__)


class Objective(ABC):
    """Base class for per-point correlation objectives.

    Parameters
    ----------
    scheduler : CorrelationScheduler
        Engine holding the images and field stores.
    point_id : int
        Global id of the point this objective correlates.
    """

    def __init__(self, scheduler: "CorrelationScheduler", point_id: int):
        self.scheduler = scheduler
        self.point_id = int(point_id)

    @property
    def subset(self) -> "Subset":
        return self.scheduler.subset(self.point_id)

    def initialize_from_previous_frame(self, deformation: np.ndarray) -> StatusFlag:
        """Seed ``deformation`` with this point's last solution.

        With velocity-based projection the displacement is extrapolated
        from the last two frames.
        """
        scheduler = self.scheduler
        for i, name in enumerate(DEFORMATION_FIELDS):
            deformation[i] = scheduler.local_field_value(self.point_id, name)
        if scheduler.config.solver.projection_method == ProjectionMethod.VELOCITY_BASED:
            for name in (FieldName.DISPLACEMENT_X, FieldName.DISPLACEMENT_Y):
                prev = scheduler.local_field_value(self.point_id, name, previous=True)
                deformation[int(name)] += deformation[int(name)] - prev
        return StatusFlag.INITIALIZE_USING_PREVIOUS_FRAME_SUCCESSFUL

    def initialize_from_neighbor(self, deformation: np.ndarray) -> StatusFlag:
        """Seed ``deformation`` with the already-solved neighbor's values.

        Seeds (neighbor id -1) fall back to their own previous solution.
        The neighbor must be held by the active view, which the seed map
        guarantees for points of one seed chain.
        """
        scheduler = self.scheduler
        neighbor = int(scheduler.local_field_value(self.point_id, FieldName.NEIGHBOR_ID))
        if neighbor == -1:
            return self.initialize_from_previous_frame(deformation)
        if not scheduler.is_local(neighbor):
            logger.debug("Point %d: neighbor %d is not local", self.point_id, neighbor)
            return StatusFlag.INITIALIZE_FAILED
        for i, name in enumerate(DEFORMATION_FIELDS):
            deformation[i] = scheduler.local_field_value(neighbor, name)
        if scheduler.local_field_value(neighbor, FieldName.SIGMA) == -1.0:
            return StatusFlag.INITIALIZE_USING_NEIGHBOR_VALUE_SUCCESSFUL
        return StatusFlag.INITIALIZE_USING_CONVERGED_NEIGHBOR_SUCCESSFUL

    @abstractmethod
    def gamma(self, deformation: np.ndarray) -> float:
        """Mismatch metric at ``deformation`` (lower is better)."""
        ...

    @abstractmethod
    def sigma(self, deformation: np.ndarray) -> float:
        """Displacement uncertainty at ``deformation``."""
        ...

    @abstractmethod
    def compute_update_fast(self, deformation: np.ndarray) -> Tuple[StatusFlag, int]:
        """Gradient-based solve; updates ``deformation`` in place."""
        ...

    @abstractmethod
    def compute_update_robust(self, deformation: np.ndarray) -> Tuple[StatusFlag, int]:
        """Simplex solve; updates ``deformation`` in place."""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(point_id={self.point_id})"
