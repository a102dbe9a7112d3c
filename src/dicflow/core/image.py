"""Numpy-backed image provider.

The scheduler treats images as opaque read sources: size, intensities,
optional gradients and fixed-angle rotation. Whole-image phase correlation
lives here too since it only needs two intensity arrays.
"""

import logging
from typing import Optional, Tuple

import numpy as np
from scipy import fft

__all__ = ['Image', 'phase_correlate_x_y', 'VALID_ROTATIONS']

logger = logging.getLogger(__name__)

VALID_ROTATIONS = (0, 90, 180, 270)


class Image:
    """Grayscale image with lazily computed gradients.

    Parameters
    ----------
    intensities : array-like (H, W)
        Pixel intensities; stored as float64.
    file_name : str, optional
        Source name, kept for reports.
    compute_gradients : bool, optional
        Compute gradients on construction.
    """

    def __init__(self, intensities, file_name: str = "", compute_gradients: bool = False):
        arr = np.asarray(intensities, dtype=np.float64)
        if arr.ndim != 2:
            raise ValueError(f"Image intensities must be 2D, got {arr.ndim} dims")
        if arr.shape[0] <= 0 or arr.shape[1] <= 0:
            raise ValueError(f"Image must be non-empty, got shape {arr.shape}")
        self.intensities = arr
        self.file_name = file_name
        self.grad_x: Optional[np.ndarray] = None
        self.grad_y: Optional[np.ndarray] = None
        if compute_gradients:
            self.compute_gradients()

    @property
    def width(self) -> int:
        return self.intensities.shape[1]

    @property
    def height(self) -> int:
        return self.intensities.shape[0]

    @property
    def has_gradients(self) -> bool:
        return self.grad_x is not None

    def compute_gradients(self) -> None:
        """Central-difference gradients (one-sided at the borders)."""
        self.grad_y, self.grad_x = np.gradient(self.intensities)

    def intensity(self, x: int, y: int) -> float:
        return float(self.intensities[y, x])

    def apply_rotation(self, degrees: int) -> "Image":
        """New image rotated clockwise by 0, 90, 180 or 270 degrees."""
        if degrees not in VALID_ROTATIONS:
            raise ValueError(f"Image rotation must be one of {VALID_ROTATIONS}, got {degrees}")
        if degrees == 0:
            return self
        rotated = Image(np.rot90(self.intensities, k=-(degrees // 90)).copy(), self.file_name)
        if self.has_gradients:
            rotated.compute_gradients()
        return rotated

    def __repr__(self) -> str:
        return f"Image({self.width}x{self.height}, file_name={self.file_name!r})"


def phase_correlate_x_y(prev_img: Image, def_img: Image) -> Tuple[float, float]:
    """Whole-image translation of ``def_img`` relative to ``prev_img``.

    Returns
    -------
    (u_x, u_y) : tuple of float
        Integer-pixel displacement estimate (signed, wrapped to half size).
    """
    if prev_img.intensities.shape != def_img.intensities.shape:
        raise ValueError("Phase correlation requires images of the same size")
    f_prev = fft.fft2(prev_img.intensities)
    f_def = fft.fft2(def_img.intensities)
    cross = f_def * np.conj(f_prev)
    magnitude = np.abs(cross)
    magnitude[magnitude == 0.0] = 1.0
    surface = np.real(fft.ifft2(cross / magnitude))
    peak_y, peak_x = np.unravel_index(np.argmax(surface), surface.shape)
    height, width = surface.shape
    u_x = peak_x - width if peak_x > width // 2 else peak_x
    u_y = peak_y - height if peak_y > height // 2 else peak_y
    return float(u_x), float(u_y)
