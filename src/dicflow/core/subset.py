"""Subset shape and pixel-activity mask.

A Subset is the patch of reference pixels tracked for one point. Besides
its shape it carries the set of pixels currently hidden by other subsets,
which the obstruction manager refreshes before the point is correlated.

A pixel hidden once stays inactive: its reference data no longer matches
what the deformed image shows. Only subset evolution re-adopts it, and
only in a frame where nothing covers it.
"""

import logging
from typing import Iterable, Set, Tuple

import numpy as np

from dicflow.core.fields import FieldName

__all__ = ['Subset', 'Pixel']

logger = logging.getLogger(__name__)

Pixel = Tuple[int, int]


class Subset:
    """Reference patch around a centroid.

    Parameters
    ----------
    centroid_x, centroid_y : float
        Reference position of the point.
    pixel_x, pixel_y : array-like of int
        Absolute reference coordinates of every pixel in the patch.
    """

    def __init__(self, centroid_x: float, centroid_y: float, pixel_x, pixel_y):
        self.centroid_x = float(centroid_x)
        self.centroid_y = float(centroid_y)
        self.pixel_x = np.asarray(pixel_x, dtype=np.int64)
        self.pixel_y = np.asarray(pixel_y, dtype=np.int64)
        if self.pixel_x.shape != self.pixel_y.shape or self.pixel_x.ndim != 1:
            raise ValueError("Subset pixel_x and pixel_y must be 1D arrays of equal length")
        if len(self.pixel_x) == 0:
            raise ValueError("Subset must contain at least one pixel")
        self.is_active = np.ones(len(self.pixel_x), dtype=bool)
        # pixels hidden at some point in the run and not re-adopted yet
        self.previously_obstructed = np.zeros(len(self.pixel_x), dtype=bool)
        self.is_deactivated_this_step = np.zeros(len(self.pixel_x), dtype=bool)
        self.pixels_blocked_by_other_subsets: Set[Pixel] = set()

    @classmethod
    def square(cls, centroid_x: int, centroid_y: int, size: int) -> "Subset":
        """Square patch of ``size`` x ``size`` pixels around the centroid."""
        if size <= 0:
            raise ValueError(f"Subset size must be positive, got {size}")
        half = size // 2
        offsets = np.arange(-half, size - half)
        ox, oy = np.meshgrid(offsets, offsets)
        return cls(centroid_x, centroid_y, centroid_x + ox.ravel(), centroid_y + oy.ravel())

    @classmethod
    def from_pixels(cls, centroid_x: float, centroid_y: float, pixels: Iterable[Pixel]) -> "Subset":
        """Conformal patch from explicit ``(x, y)`` pixel coordinates."""
        pixels = list(pixels)
        if not pixels:
            raise ValueError("Conformal subset needs at least one pixel")
        xs, ys = zip(*pixels)
        return cls(centroid_x, centroid_y, xs, ys)

    @property
    def num_pixels(self) -> int:
        return len(self.pixel_x)

    @property
    def num_active_pixels(self) -> int:
        return int(self.is_active.sum())

    def _deformed_coordinates(self, deformation, cx: float, cy: float, skin_factor: float = 1.0):
        u = deformation[int(FieldName.DISPLACEMENT_X)]
        v = deformation[int(FieldName.DISPLACEMENT_Y)]
        theta = deformation[int(FieldName.ROTATION_Z)]
        ex = deformation[int(FieldName.NORMAL_STRAIN_X)]
        ey = deformation[int(FieldName.NORMAL_STRAIN_Y)]
        gxy = deformation[int(FieldName.SHEAR_STRAIN_XY)]

        dx = (self.pixel_x - self.centroid_x) * skin_factor
        dy = (self.pixel_y - self.centroid_y) * skin_factor
        sx = (1.0 + ex) * dx + gxy * dy
        sy = (1.0 + ey) * dy + gxy * dx
        cos_t, sin_t = np.cos(theta), np.sin(theta)
        x = cos_t * sx - sin_t * sy + u + cx
        y = sin_t * sx + cos_t * sy + v + cy
        return np.rint(x).astype(np.int64), np.rint(y).astype(np.int64)

    def deformed_shapes(self, deformation, cx: float, cy: float, skin_factor: float = 1.0) -> Set[Pixel]:
        """Integer pixels covered by this patch once deformed.

        The patch is scaled about its centroid by ``skin_factor``, strained,
        rotated, translated by the displacement and re-centered at
        ``(cx, cy)``.
        """
        xs, ys = self._deformed_coordinates(deformation, cx, cy, skin_factor)
        return set(zip(xs.tolist(), ys.tolist()))

    def turn_off_obstructed_pixels(self, deformation) -> int:
        """Deactivate pixels whose deformed location is blocked; returns how many.

        The blocked mask of this step replaces the previous one; pixels
        deactivated in earlier steps stay inactive.
        """
        self.is_deactivated_this_step[:] = False
        if not self.pixels_blocked_by_other_subsets:
            return 0
        xs, ys = self._deformed_coordinates(deformation, self.centroid_x, self.centroid_y)
        blocked = np.fromiter(
            ((x, y) in self.pixels_blocked_by_other_subsets for x, y in zip(xs.tolist(), ys.tolist())),
            dtype=bool, count=len(xs)
        )
        self.is_deactivated_this_step[:] = blocked
        self.is_active[blocked] = False
        self.previously_obstructed |= blocked
        return int(blocked.sum())

    def turn_on_previously_obstructed_pixels(self) -> int:
        """Re-activate hidden pixels that are exposed in this step; returns how many.

        Pixels still blocked this step keep their obstruction history.
        """
        exposed = self.previously_obstructed & ~self.is_deactivated_this_step
        self.is_active[exposed] = True
        self.previously_obstructed[exposed] = False
        return int(exposed.sum())

    def __repr__(self) -> str:
        return (f"Subset(centroid=({self.centroid_x}, {self.centroid_y}), "
                f"pixels={self.num_pixels}, active={self.num_active_pixels})")
