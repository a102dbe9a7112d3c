"""Motion test on a window of the deformed image.

A point with a motion window is only correlated when the window content
changed since the previous frame. Several points may share one window; the
test runs once per frame and later callers get the cached result.
"""

import logging
from typing import Optional

import numpy as np

from dicflow.core.image import Image

__all__ = ['MotionDetector']

logger = logging.getLogger(__name__)


class MotionDetector:
    """Mean absolute intensity change over a rectangular window.

    Parameters
    ----------
    origin_x, origin_y : int
        Upper-left pixel of the window.
    width, height : int
        Window size in pixels.
    tol : float
        Motion is reported when the mean absolute change exceeds ``tol``.
    """

    def __init__(self, origin_x: int, origin_y: int, width: int, height: int, tol: float):
        if width <= 0 or height <= 0:
            raise ValueError(f"Motion window must have positive size, got {width}x{height}")
        self.origin_x = origin_x
        self.origin_y = origin_y
        self.width = width
        self.height = height
        self.tol = tol
        self._prev_window: Optional[np.ndarray] = None
        self._tested = False
        self._result = True

    def reset(self) -> None:
        """Allow one new test; called at the start of every frame."""
        self._tested = False

    def _window(self, image: Image) -> np.ndarray:
        window = image.intensities[self.origin_y:self.origin_y + self.height,
                                   self.origin_x:self.origin_x + self.width]
        if window.shape != (self.height, self.width):
            raise ValueError(
                f"Motion window ({self.origin_x}, {self.origin_y}, {self.width}x{self.height}) "
                f"does not fit in a {image.width}x{image.height} image"
            )
        return window

    def motion_detected(self, image: Image) -> bool:
        if self._tested:
            return self._result
        window = self._window(image)
        if self._prev_window is None:
            # nothing to compare against on the first test
            result = True
        else:
            diff = float(np.mean(np.abs(window - self._prev_window)))
            logger.debug("Motion window diff %.4f (tol %.4f)", diff, self.tol)
            result = diff > self.tol
        self._prev_window = window.copy()
        self._tested = True
        self._result = result
        return result

    def __repr__(self) -> str:
        return (f"MotionDetector(origin=({self.origin_x}, {self.origin_y}), "
                f"size={self.width}x{self.height}, tol={self.tol})")
