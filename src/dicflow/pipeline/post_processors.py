"""Post-processors run on the replicated field view after every frame.

Post-processors are registered by name and created in the order the
configuration lists them; later ones may read fields earlier ones wrote.
"""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Dict, List

import numpy as np

from dicflow.core.fields import FieldName

if TYPE_CHECKING:
    from dicflow.pipeline.scheduler import CorrelationScheduler

__all__ = [
    'PostProcessor',
    'DisplacementMagnitude',
    'POST_PROCESSORS',
    'register_post_processor',
    'create_post_processor',
]

logger = logging.getLogger(__name__)


class PostProcessor(ABC):
    """Derived per-point quantities computed from the all-view.

    Subclasses declare ``field_names`` and fill ``self.values`` in
    :meth:`execute`.
    """

    field_names: List[str] = []

    def __init__(self, scheduler: "CorrelationScheduler"):
        self.scheduler = scheduler
        self.values: Dict[str, np.ndarray] = {}

    def initialize(self) -> None:
        """Allocate one zeroed array per field once the point count is known."""
        n = self.scheduler.num_points
        self.values = {name: np.zeros(n, dtype=np.float64) for name in self.field_names}

    def pre_execution_tasks(self) -> None:
        """Hook run once before the first frame is correlated."""
        return None

    @abstractmethod
    def execute(self) -> None:
        ...

    def field_value(self, point_id: int, name: str) -> float:
        if name not in self.values:
            raise KeyError(f"{type(self).__name__} has no field {name!r}")
        return float(self.values[name][point_id])


POST_PROCESSORS: Dict[str, type] = {}


def register_post_processor(name: str) -> Callable[[type], type]:
    def decorator(cls: type) -> type:
        POST_PROCESSORS[name] = cls
        return cls
    return decorator


def create_post_processor(name: str, scheduler: "CorrelationScheduler") -> PostProcessor:
    """Instantiate the post-processor registered as ``name``.

    Raises
    ------
    ValueError
        If no post-processor is registered under ``name``.
    """
    key = name.lower().strip()
    if key not in POST_PROCESSORS:
        raise ValueError(
            f"Unknown post-processor {name!r}. Available: {sorted(POST_PROCESSORS)}"
        )
    return POST_PROCESSORS[key](scheduler)


@register_post_processor("displacement_magnitude")
class DisplacementMagnitude(PostProcessor):
    """Euclidean norm of the displacement of every point."""

    field_names = ["DISPLACEMENT_MAGNITUDE"]

    def execute(self) -> None:
        fields = self.scheduler.all_fields
        u = fields.column(FieldName.DISPLACEMENT_X)
        v = fields.column(FieldName.DISPLACEMENT_Y)
        magnitude = self.values["DISPLACEMENT_MAGNITUDE"]
        magnitude[fields.ids] = np.hypot(u, v)
        logger.debug("Displacement magnitude: max %.4f", float(magnitude.max()) if len(magnitude) else 0.0)
