"""Obstruction masks between overlapping points.

Before a blocked point is correlated, the pixels covered by its blockers'
current (deformed, skin-scaled) shapes are collected into the point's
blocked set and its own pixels that land there are switched off.
"""

import logging
from typing import Dict, List, Mapping, Sequence, Set

from dicflow.contracts import require
from dicflow.core.field_store import FieldStore
from dicflow.core.fields import FieldName
from dicflow.core.subset import Pixel

__all__ = ['ObstructionManager']

logger = logging.getLogger(__name__)


class ObstructionManager:
    """Refreshes blocked-pixel sets from the blockers' latest solutions.

    Parameters
    ----------
    obstructing_ids : mapping
        Point id -> ids of the points that block it.
    skin_factor : float
        Scale applied to each blocker's shape about its centroid.
    """

    def __init__(self, obstructing_ids: Mapping[int, Sequence[int]], skin_factor: float = 1.0):
        self.obstructing_ids: Dict[int, List[int]] = {
            int(gid): [int(b) for b in blockers] for gid, blockers in obstructing_ids.items()
        }
        self.skin_factor = skin_factor

    def is_blocked(self, point_id: int) -> bool:
        return bool(self.obstructing_ids.get(point_id))

    def blockers(self, point_id: int) -> List[int]:
        return list(self.obstructing_ids.get(point_id, []))

    def update_blocked_pixels(self, point_id: int, objectives: Mapping[int, object],
                              fields: FieldStore) -> int:
        """Rebuild ``point_id``'s blocked set; returns how many pixels were switched off.

        Parameters
        ----------
        point_id : int
            Blocked point about to be correlated.
        objectives : mapping
            Point id -> objective for every local point.
        fields : FieldStore
            Active field view holding the blockers' solutions.
        """
        require(point_id in objectives,
                f"Obstruction contract violated: point {point_id} has no local objective")
        subset = objectives[point_id].subset
        blocked: Set[Pixel] = set()
        for blocker in self.obstructing_ids.get(point_id, []):
            require(
                blocker in objectives and blocker in fields,
                f"Obstruction contract violated: blocker {blocker} of point {point_id} is not local"
            )
            deformation = fields.deformation(blocker)
            cx = fields.get(blocker, FieldName.COORDINATE_X)
            cy = fields.get(blocker, FieldName.COORDINATE_Y)
            blocked |= objectives[blocker].subset.deformed_shapes(deformation, cx, cy, self.skin_factor)
        subset.pixels_blocked_by_other_subsets = blocked
        num_off = subset.turn_off_obstructed_pixels(fields.deformation(point_id))
        logger.debug("Point %d: %d blocked pixels, %d own pixels switched off",
                     point_id, len(blocked), num_off)
        return num_off
