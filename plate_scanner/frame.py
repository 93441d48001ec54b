"""
frame.py — Immutable camera frames.

A Frame wraps a numpy image that nobody is allowed to write to.  The
camera thread overwrites its own buffer on every tick, so a Frame always
holds a private copy, flagged read-only.  Every processing stage builds
new arrays instead of editing the pixels in place.
"""

import time
from dataclasses import dataclass, field

import numpy as np

from .results import BoundingBox


@dataclass(frozen=True, eq=False)
class Frame:
    """A single captured image.

    Attributes:
        pixels:    H×W×3 BGR (or H×W greyscale) uint8 array, read-only.
        timestamp: Unix time of capture.
        source:    Where it came from, e.g. "opencv:0" or a file path.
    """

    pixels: np.ndarray
    timestamp: float = field(default_factory=time.time)
    source: str = ""

    @classmethod
    def from_array(cls, image: np.ndarray, timestamp: float = None,
                   source: str = "") -> "Frame":
        """Copy *image* into a new read-only Frame."""
        if image is None or image.size == 0:
            raise ValueError("Cannot build a Frame from an empty image")
        pixels = np.array(image, dtype=np.uint8, copy=True)
        pixels.setflags(write=False)
        return cls(
            pixels=pixels,
            timestamp=time.time() if timestamp is None else timestamp,
            source=source,
        )

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def copy_pixels(self) -> np.ndarray:
        """Return a writable copy of the pixel buffer."""
        return self.pixels.copy()

    def crop(self, box: BoundingBox) -> np.ndarray:
        """Return a writable copy of the region under *box* (clamped)."""
        b = box.clamp(self.width, self.height)
        return self.pixels[b.y : b.y2, b.x : b.x2].copy()
