"""
Markerless Frame Pipeline - frame preprocessing for detection

Frames reach the tracker as RGBA rasters at camera resolution. Before
detection they are:
- Downsampled to the processing resolution (fewer pixels, faster ORB)
- Converted to single-channel grayscale

Also provides a small rolling FPS/latency monitor for the demo loop.
"""

import time
from typing import List, Optional, Tuple

import cv2
import numpy as np


class FrameProcessor:
    """Utility class for frame conversion and resolution scaling."""

    @staticmethod
    def to_grayscale(frame: np.ndarray, dst: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Convert an RGBA, RGB or gray frame to a single-channel raster.

        Single-channel input is passed through (H x W x 1 is squeezed).

        Args:
            frame: Input raster
            dst: Optional buffer to reuse for the conversion

        Raises:
            ValueError: For channel counts other than 1, 3 or 4
        """
        if frame.ndim == 2:
            return frame
        channels = frame.shape[2]
        if channels == 1:
            return frame[:, :, 0]
        if dst is not None and dst.shape != frame.shape[:2]:
            dst = None
        if channels == 4:
            return cv2.cvtColor(frame, cv2.COLOR_RGBA2GRAY, dst=dst)
        if channels == 3:
            return cv2.cvtColor(frame, cv2.COLOR_RGB2GRAY, dst=dst)
        raise ValueError(f"Unsupported channel count: {channels}")

    @staticmethod
    def processing_size(width: int, height: int, factor: float) -> Tuple[int, int]:
        """Processing resolution (width, height) for a downsample factor."""
        return max(1, int(round(width * factor))), max(1, int(round(height * factor)))

    @staticmethod
    def downsample(frame: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
        """
        Resize a frame to the processing resolution.

        Args:
            frame: Input raster
            size: Target (width, height)
        """
        h, w = frame.shape[:2]
        if (w, h) == tuple(size):
            return frame
        interpolation = cv2.INTER_AREA if size[0] < w else cv2.INTER_LINEAR
        return cv2.resize(frame, tuple(size), interpolation=interpolation)

    @staticmethod
    def bgr_to_rgba(frame: np.ndarray) -> np.ndarray:
        """Convert an OpenCV capture frame (BGR) to the RGBA layout the tracker expects."""
        if frame.ndim == 2:
            return cv2.cvtColor(frame, cv2.COLOR_GRAY2RGBA)
        if frame.shape[2] == 4:
            return cv2.cvtColor(frame, cv2.COLOR_BGRA2RGBA)
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGBA)


class PerformanceMonitor:
    """Rolling FPS and latency numbers."""

    HISTORY = 30

    def __init__(self):
        self._last_time = time.perf_counter()
        self._fps_history: List[float] = []
        self._avg_fps = 0.0
        self._latency_ms = 0.0

    def update(self, latency_ms: float = 0.0):
        now = time.perf_counter()
        dt = now - self._last_time
        self._last_time = now

        if dt > 0:
            self._fps_history.append(1.0 / dt)
            if len(self._fps_history) > self.HISTORY:
                self._fps_history.pop(0)
            self._avg_fps = sum(self._fps_history) / len(self._fps_history)

        self._latency_ms = latency_ms

    @property
    def fps(self) -> float:
        return self._avg_fps

    @property
    def latency_ms(self) -> float:
        return self._latency_ms
