"""
Frames & Regions
================

Small value types shared by every stage of the pipeline, plus a thin
OpenCV-backed frame source used by the command line tool.

  • ``Frame``  – immutable RGBA pixel buffer with a timestamp (seconds).
  • ``Region`` – integer rectangle in frame coordinates.
  • ``VideoFrameSource`` – samples a video file every *interval* seconds
    of video time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator

import cv2
import numpy as np

log = logging.getLogger(__name__)


# ── Value types ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Frame:
    """A single RGBA video frame."""
    pixels: np.ndarray           # (H, W, 4) uint8, RGBA
    timestamp: float = 0.0       # seconds

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 4:
            raise ValueError(
                f"Expected an (H, W, 4) RGBA buffer, got shape {self.pixels.shape}"
            )

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @classmethod
    def from_bgr(cls, image: np.ndarray, timestamp: float = 0.0) -> "Frame":
        """Build a frame from an OpenCV BGR (or grayscale) image."""
        if image.ndim == 2:
            rgba = cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
        else:
            rgba = cv2.cvtColor(image, cv2.COLOR_BGR2RGBA)
        return cls(pixels=rgba, timestamp=timestamp)


@dataclass(frozen=True)
class Region:
    """Axis-aligned integer rectangle ``(x, y, width, height)``."""
    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    def fits_within(self, width: int, height: int) -> bool:
        """True if the rectangle lies fully inside a ``width×height`` frame."""
        return (
            self.x >= 0 and self.y >= 0
            and self.width > 0 and self.height > 0
            and self.x + self.width <= width
            and self.y + self.height <= height
        )

    def as_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


def crop_frame(frame: Frame, region: Region) -> np.ndarray:
    """Return the RGBA pixels of *region*, clamped to the frame (≥ 1×1)."""
    x = max(0, int(region.x))
    y = max(0, int(region.y))
    x = min(x, frame.width - 1)
    y = min(y, frame.height - 1)
    width = max(1, min(int(region.width), frame.width - x))
    height = max(1, min(int(region.height), frame.height - y))
    return frame.pixels[y:y + height, x:x + width]


# ── Video source ───────────────────────────────────────────────────────

class VideoFrameSource:
    """Yield frames from a video file at a fixed capture interval.

    Parameters
    ----------
    path : str | Path
        Any file or URL ``cv2.VideoCapture`` can open.
    interval : float
        Seconds of video time between two emitted frames.
    """

    def __init__(self, path: str | Path, interval: float = 1.5) -> None:
        self.path = str(path)
        self.interval = float(interval)

    def frames(self) -> Iterator[Frame]:
        cap = cv2.VideoCapture(self.path)
        if not cap.isOpened():
            raise IOError(f"Could not open video: {self.path}")

        log.info("Capturing %s every %.1fs", self.path, self.interval)
        next_at = 0.0
        try:
            while True:
                ok, image = cap.read()
                if not ok:
                    break
                position = cap.get(cv2.CAP_PROP_POS_MSEC) / 1000.0
                if position + 1e-6 < next_at:
                    continue
                next_at = position + self.interval
                yield Frame.from_bgr(image, timestamp=position)
        finally:
            cap.release()
