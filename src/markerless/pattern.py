"""
Markerless Pattern - the immutable identity of a tracked image

A Pattern is built ONCE from a reference raster and never changes:
1. ORB keypoints + binary descriptors (up to 1000, rotation/scale invariant)
2. The 4 image corners in pattern pixel space
3. The same 4 corners on a unit square in the XY plane (Z=0)

The 2D/3D corner pairs are what solvePnP later uses to lift a detected
contour into a camera-space pose. The unit square is why recovered depth
has to be scaled by the target's physical size afterwards.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .frame_pipeline import FrameProcessor


logger = logging.getLogger("PatternBuilder")


class PatternBuildError(ValueError):
    """Raised when a reference image cannot be turned into a Pattern."""


class FeatureExtractor:
    """
    ORB keypoint detector and descriptor extractor.

    Shared by pattern building and live-frame processing so both sides
    produce comparable descriptors.
    """

    MAX_FEATURES = 1000

    def __init__(self, max_features: int = MAX_FEATURES):
        self.max_features = max_features
        self._orb = cv2.ORB_create(nfeatures=max_features)

    def extract(self, gray: Optional[np.ndarray]) -> Optional[Tuple[List[cv2.KeyPoint], np.ndarray]]:
        """
        Detect keypoints and compute descriptors on a grayscale raster.

        Args:
            gray: Single-channel image (H x W or H x W x 1)

        Returns:
            (keypoints, descriptors) or None if no features could be extracted
        """
        if gray is None or gray.size == 0 or gray.dtype != np.uint8:
            return None
        if gray.ndim == 3 and gray.shape[2] == 1:
            gray = gray[:, :, 0]
        if gray.ndim != 2:
            return None

        keypoints = self._orb.detect(gray, None)
        if not keypoints:
            return None

        # compute() may drop keypoints too close to the border
        keypoints, descriptors = self._orb.compute(gray, keypoints)
        if not keypoints or descriptors is None:
            return None

        return list(keypoints), descriptors


@dataclass(frozen=True, eq=False)
class Pattern:
    """
    Feature and geometry representation of one planar reference image.

    points2d and points3d are ordered top-left, top-right, bottom-right,
    bottom-left.
    """
    pattern_id: str
    size: Tuple[int, int]  # (width, height)
    frame: np.ndarray
    gray: np.ndarray
    keypoints: Tuple[cv2.KeyPoint, ...]
    descriptors: np.ndarray
    points2d: np.ndarray  # 4 x 2, pattern pixel space
    points3d: np.ndarray  # 4 x 3, unit square centered at origin
    physical_size: float = 1.0

    @property
    def keypoint_count(self) -> int:
        return len(self.keypoints)


def pattern_corners_2d(width: int, height: int) -> np.ndarray:
    """Corners of a width x height image in pixel coordinates."""
    return np.array([
        [0, 0],
        [width, 0],
        [width, height],
        [0, height],
    ], dtype=np.float32)


def pattern_corners_3d() -> np.ndarray:
    """Corners of the unit square on the XY plane."""
    return np.array([
        [-0.5, -0.5, 0.0],
        [+0.5, -0.5, 0.0],
        [+0.5, +0.5, 0.0],
        [-0.5, +0.5, 0.0],
    ], dtype=np.float32)


def build_pattern(
    image: Optional[np.ndarray],
    pattern_id: str,
    physical_size: float = 1.0,
    extractor: Optional[FeatureExtractor] = None
) -> Pattern:
    """
    Build a Pattern from a reference raster.

    Args:
        image: Reference image (RGBA, RGB or grayscale)
        pattern_id: Identifier the pattern will be registered under
        physical_size: Real-world edge length of the printed image in meters
        extractor: Feature extractor to use (a fresh ORB extractor by default)

    Returns:
        The immutable Pattern

    Raises:
        PatternBuildError: If the image is missing, is not an 8-bit gray, RGB
            or RGBA raster, or yields no keypoints
    """
    if image is None or image.size == 0:
        raise PatternBuildError(f"Pattern {pattern_id}: reference image is missing")
    if image.dtype != np.uint8:
        raise PatternBuildError(
            f"Pattern {pattern_id}: reference image must be 8-bit, got {image.dtype}"
        )
    if image.ndim not in (2, 3) or (image.ndim == 3 and image.shape[2] not in (1, 3, 4)):
        raise PatternBuildError(
            f"Pattern {pattern_id}: unsupported image shape {image.shape}, "
            f"expected 1, 3 or 4 channels"
        )

    extractor = extractor or FeatureExtractor()

    h, w = image.shape[:2]
    try:
        gray = FrameProcessor.to_grayscale(image).copy()
    except (ValueError, cv2.error) as e:
        raise PatternBuildError(f"Pattern {pattern_id}: cannot convert to grayscale ({e})") from e

    try:
        features = extractor.extract(gray)
    except cv2.error as e:
        raise PatternBuildError(f"Pattern {pattern_id}: feature extraction failed ({e})") from e
    if features is None:
        raise PatternBuildError(f"Pattern {pattern_id}: insufficient keypoints in reference image")
    keypoints, descriptors = features

    pattern = Pattern(
        pattern_id=pattern_id,
        size=(w, h),
        frame=image.copy(),
        gray=gray,
        keypoints=tuple(keypoints),
        descriptors=descriptors,
        points2d=pattern_corners_2d(w, h),
        points3d=pattern_corners_3d(),
        physical_size=physical_size,
    )

    logger.debug(f"Pattern {pattern_id} built: {w}x{h}, {pattern.keypoint_count} keypoints")
    return pattern
