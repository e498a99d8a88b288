"""Synthetic reference images and camera frames for detection tests."""

from typing import Optional, Tuple

import cv2
import numpy as np

from markerless import TargetBinding


FRAME_WIDTH = 640
FRAME_HEIGHT = 480
FOCAL = 600.0
BACKGROUND = 127

PATTERN_SIZE = 240
PHYSICAL_SIZE = 0.2

# Unit square spanning PATTERN_SIZE pixels at focal length FOCAL
EXPECTED_DEPTH = FOCAL / PATTERN_SIZE


def make_pattern(seed: int = 0, size: int = PATTERN_SIZE, cells: int = 20) -> np.ndarray:
    """Random block texture (RGBA) with plenty of distinctive corners."""
    rng = np.random.default_rng(seed)
    blocks = rng.integers(0, 256, size=(cells, cells), dtype=np.uint8)
    gray = cv2.resize(blocks, (size, size), interpolation=cv2.INTER_NEAREST)
    return cv2.cvtColor(gray, cv2.COLOR_GRAY2RGBA)


def blank_frame(width: int = FRAME_WIDTH, height: int = FRAME_HEIGHT) -> np.ndarray:
    frame = np.full((height, width, 4), BACKGROUND, dtype=np.uint8)
    frame[:, :, 3] = 255
    return frame


def make_frame(
    pattern: np.ndarray,
    offset: Tuple[int, int] = (0, 0),
    angle: float = 0.0,
    frame: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Paste a pattern into a frame, centered plus offset, optionally rotated
    about the frame center by angle degrees.
    """
    frame = blank_frame() if frame is None else frame.copy()
    h, w = pattern.shape[:2]
    fh, fw = frame.shape[:2]
    x0 = (fw - w) // 2 + offset[0]
    y0 = (fh - h) // 2 + offset[1]
    frame[y0:y0 + h, x0:x0 + w] = pattern

    if angle:
        rotation = cv2.getRotationMatrix2D((fw / 2.0, fh / 2.0), angle, 1.0)
        frame = cv2.warpAffine(
            frame, rotation, (fw, fh),
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=(BACKGROUND, BACKGROUND, BACKGROUND, 255)
        )
    return frame


def expected_corners(
    size: int = PATTERN_SIZE,
    offset: Tuple[int, int] = (0, 0),
    angle: float = 0.0
) -> np.ndarray:
    """Pixel corners (TL, TR, BR, BL) of a pattern placed by make_frame."""
    x0 = (FRAME_WIDTH - size) // 2 + offset[0]
    y0 = (FRAME_HEIGHT - size) // 2 + offset[1]
    corners = np.array([
        [x0, y0],
        [x0 + size, y0],
        [x0 + size, y0 + size],
        [x0, y0 + size],
    ], dtype=np.float64)

    if angle:
        rotation = cv2.getRotationMatrix2D((FRAME_WIDTH / 2.0, FRAME_HEIGHT / 2.0), angle, 1.0)
        corners = np.hstack([corners, np.ones((4, 1))]) @ rotation.T
    return corners


class RecordingBinding(TargetBinding):
    """Binding that remembers every call."""

    def __init__(self, bounds=None):
        self.poses = []
        self.visibility = []
        self.stabilized = []
        self.bounds = bounds

    def set_pose(self, target_id, position, rotation, scale):
        self.poses.append((target_id, np.array(position), np.array(rotation), scale))

    def set_visible(self, target_id, visible):
        self.visibility.append((target_id, visible))

    def on_stabilized(self, target_id):
        self.stabilized.append(target_id)

    def get_bounds(self, target_id):
        return self.bounds

    @property
    def visible(self):
        return self.visibility[-1][1] if self.visibility else None
