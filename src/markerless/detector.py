"""
Markerless Detector - multi-pattern detection with a geometric lock

Per frame, for every registered pattern:
1. Match frame ORB descriptors against the pattern (Hamming brute force)
2. Filter with the nearest-neighbour ratio test (best/second < 1/1.5)
3. Fit a pattern -> frame homography with RANSAC
4. STRICTNESS: at least 8 matches in and 8 inliers out
5. Optionally refine: warp the frame into pattern space, match again,
   fit again and compose with the rough homography
6. Project the pattern corners through the final homography

A pattern that fails any step is simply absent from the frame's result.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .frame_pipeline import FrameProcessor
from .pattern import FeatureExtractor, Pattern, PatternBuildError, build_pattern


MIN_RATIO = 1.0 / 1.5
MIN_MATCHES = 8
RANSAC_MAX_ITERS = 2000
RANSAC_CONFIDENCE = 0.955


@dataclass
class TrackingResult:
    """Detection of one pattern in one frame (processing resolution)."""
    pattern_id: str
    homography: np.ndarray  # 3 x 3, pattern -> frame
    contour: np.ndarray  # 4 x 2, same corner order as Pattern.points2d
    inlier_count: int
    pose3d: Optional[np.ndarray] = None  # 4 x 4 camera-space transform


def ratio_test(knn_matches: Sequence[Sequence[cv2.DMatch]], min_ratio: float = MIN_RATIO) -> List[cv2.DMatch]:
    """
    Keep the best match of each pair when it is clearly better than the runner-up.

    A pair passes only if best / second is strictly below min_ratio. Pairs
    with fewer than two candidates, or a zero second distance, never pass.
    """
    good = []
    for pair in knn_matches:
        if len(pair) < 2:
            continue
        best, second = pair[0], pair[1]
        if second.distance <= 0:
            continue
        if best.distance / second.distance < min_ratio:
            good.append(best)
    return good


def refine_matches_with_homography(
    query_keypoints: Sequence[cv2.KeyPoint],
    train_keypoints: Sequence[cv2.KeyPoint],
    matches: Sequence[cv2.DMatch],
    reprojection_threshold: float = 3.0
) -> Optional[Tuple[np.ndarray, List[cv2.DMatch]]]:
    """
    Fit a train -> query homography and keep only its inliers.

    Args:
        query_keypoints: Keypoints of the frame (match queryIdx side)
        train_keypoints: Keypoints of the pattern (match trainIdx side)
        matches: Candidate correspondences
        reprojection_threshold: RANSAC threshold in pixels

    Returns:
        (homography, inlier_matches) or None if the fit is not trusted
    """
    if len(matches) < MIN_MATCHES:
        return None

    src_pts = np.float32([
        train_keypoints[m.trainIdx].pt for m in matches
    ]).reshape(-1, 1, 2)

    dst_pts = np.float32([
        query_keypoints[m.queryIdx].pt for m in matches
    ]).reshape(-1, 1, 2)

    try:
        H, mask = cv2.findHomography(
            src_pts, dst_pts, cv2.RANSAC, reprojection_threshold,
            maxIters=RANSAC_MAX_ITERS, confidence=RANSAC_CONFIDENCE
        )
    except cv2.error:
        return None

    if H is None or mask is None:
        return None

    inliers = [m for m, keep in zip(matches, mask.ravel()) if keep]
    if len(inliers) < MIN_MATCHES:
        return None

    return H, inliers


class PatternMatchingResources:
    """Trained matcher and scratch buffers owned by one registered pattern."""

    def __init__(self, pattern: Pattern):
        self.pattern = pattern
        self.matcher = cv2.BFMatcher(cv2.NORM_HAMMING)
        self.matcher.add([pattern.descriptors.copy()])
        self.matcher.train()

        self.matches: List[cv2.DMatch] = []
        self.knn_matches: List[Sequence[cv2.DMatch]] = []
        self.warped_img: Optional[np.ndarray] = None
        self.rough_homography: Optional[np.ndarray] = None
        self.refined_homography: Optional[np.ndarray] = None

    def release(self):
        self.matcher.clear()
        self.matches = []
        self.knn_matches = []
        self.warped_img = None
        self.rough_homography = None
        self.refined_homography = None


class PatternMatcherRegistry:
    """
    Pattern id -> PatternMatchingResources.

    Each pattern gets its own trained matcher; re-registering an id
    releases the old resources first.
    """

    def __init__(self):
        self._resources: Dict[str, PatternMatchingResources] = {}
        self.logger = logging.getLogger("PatternMatcherRegistry")

    def register(self, pattern: Pattern, pattern_id: str) -> PatternMatchingResources:
        previous = self._resources.pop(pattern_id, None)
        if previous is not None:
            previous.release()
            self.logger.debug(f"Replaced matcher for pattern {pattern_id}")

        resources = PatternMatchingResources(pattern)
        self._resources[pattern_id] = resources
        self.logger.debug(
            f"Registered pattern {pattern_id} ({pattern.keypoint_count} descriptors)"
        )
        return resources

    def unregister(self, pattern_id: str) -> bool:
        resources = self._resources.pop(pattern_id, None)
        if resources is None:
            return False
        resources.release()
        self.logger.debug(f"Unregistered pattern {pattern_id}")
        return True

    def get(self, pattern_id: str) -> Optional[PatternMatchingResources]:
        return self._resources.get(pattern_id)

    def items(self) -> Iterator[Tuple[str, PatternMatchingResources]]:
        return iter(list(self._resources.items()))

    @property
    def pattern_ids(self) -> List[str]:
        return list(self._resources.keys())

    def release(self):
        for resources in self._resources.values():
            resources.release()
        self._resources.clear()

    def __contains__(self, pattern_id: str) -> bool:
        return pattern_id in self._resources

    def __len__(self) -> int:
        return len(self._resources)


class MultiPatternDetector:
    """
    Detects any number of registered patterns in a frame.

    Features are extracted from the frame once and shared by all patterns.
    """

    MIN_MATCHES = MIN_MATCHES
    MIN_RATIO = MIN_RATIO
    RANSAC_MAX_ITERS = RANSAC_MAX_ITERS
    RANSAC_CONFIDENCE = RANSAC_CONFIDENCE

    def __init__(
        self,
        enable_ratio_test: bool = True,
        enable_homography_refinement: bool = True,
        homography_reprojection_threshold: float = 3.0,
        extractor: Optional[FeatureExtractor] = None
    ):
        self.enable_ratio_test = enable_ratio_test
        self.enable_homography_refinement = enable_homography_refinement
        self.homography_reprojection_threshold = homography_reprojection_threshold

        self.extractor = extractor or FeatureExtractor()
        self.registry = PatternMatcherRegistry()
        self.logger = logging.getLogger("MultiPatternDetector")

        self._gray: Optional[np.ndarray] = None

    # === REGISTRATION ===

    def build_pattern_from_image(
        self,
        image: Optional[np.ndarray],
        pattern_id: str,
        physical_size: float = 1.0
    ) -> Pattern:
        """Build a Pattern with this detector's extractor (raises PatternBuildError)."""
        return build_pattern(image, pattern_id, physical_size, extractor=self.extractor)

    def register_pattern(self, pattern: Pattern, pattern_id: Optional[str] = None):
        self.registry.register(pattern, pattern_id or pattern.pattern_id)

    def build_and_register_pattern(
        self,
        image: Optional[np.ndarray],
        pattern_id: str,
        physical_size: float = 1.0
    ) -> Optional[Pattern]:
        """
        Build a pattern and register it in one step.

        Returns:
            The registered Pattern, or None if it could not be built
        """
        try:
            pattern = self.build_pattern_from_image(image, pattern_id, physical_size)
        except PatternBuildError as e:
            self.logger.error(str(e))
            return None

        self.register_pattern(pattern, pattern_id)
        return pattern

    def unregister_pattern(self, pattern_id: str) -> bool:
        return self.registry.unregister(pattern_id)

    @property
    def pattern_count(self) -> int:
        return len(self.registry)

    def release(self):
        self.registry.release()
        self._gray = None

    # === DETECTION ===

    def _to_gray(self, frame: np.ndarray) -> np.ndarray:
        if frame.ndim == 3 and frame.shape[2] in (3, 4):
            self._gray = FrameProcessor.to_grayscale(frame, dst=self._gray)
            return self._gray
        return FrameProcessor.to_grayscale(frame)

    def _match(self, resources: PatternMatchingResources, descriptors: np.ndarray) -> List[cv2.DMatch]:
        try:
            if self.enable_ratio_test:
                resources.knn_matches = resources.matcher.knnMatch(descriptors, k=2)
                resources.matches = ratio_test(resources.knn_matches, self.MIN_RATIO)
            else:
                resources.matches = list(resources.matcher.match(descriptors))
        except cv2.error:
            resources.matches = []
        return resources.matches

    def _refine(
        self,
        gray: np.ndarray,
        resources: PatternMatchingResources,
        rough: np.ndarray
    ) -> Optional[Tuple[np.ndarray, int]]:
        pattern = resources.pattern
        width, height = pattern.size

        # Reuse the warp buffer while it still fits
        dst = resources.warped_img
        if dst is not None and (dst.shape != (height, width) or dst.dtype != gray.dtype):
            dst = None

        try:
            resources.warped_img = cv2.warpPerspective(
                gray, rough, pattern.size, dst=dst,
                flags=cv2.WARP_INVERSE_MAP | cv2.INTER_CUBIC
            )
        except cv2.error:
            return None

        features = self.extractor.extract(resources.warped_img)
        if features is None:
            return None
        warped_keypoints, warped_descriptors = features

        matches = self._match(resources, warped_descriptors)
        fit = refine_matches_with_homography(
            warped_keypoints, pattern.keypoints, matches,
            self.homography_reprojection_threshold
        )
        if fit is None:
            return None

        refined, inliers = fit
        resources.refined_homography = refined
        return rough @ refined, len(inliers)

    def _detect_pattern(
        self,
        pattern_id: str,
        resources: PatternMatchingResources,
        gray: np.ndarray,
        keypoints: Sequence[cv2.KeyPoint],
        descriptors: np.ndarray
    ) -> Optional[TrackingResult]:
        pattern = resources.pattern

        matches = self._match(resources, descriptors)
        fit = refine_matches_with_homography(
            keypoints, pattern.keypoints, matches,
            self.homography_reprojection_threshold
        )
        if fit is None:
            self.logger.debug(f"Pattern {pattern_id}: {len(matches)} matches, no homography")
            return None

        homography, inliers = fit
        inlier_count = len(inliers)
        resources.rough_homography = homography

        if self.enable_homography_refinement:
            refined = self._refine(gray, resources, homography)
            if refined is None:
                self.logger.debug(f"Pattern {pattern_id}: refinement failed")
                return None
            homography, inlier_count = refined

        try:
            contour = cv2.perspectiveTransform(
                pattern.points2d.reshape(-1, 1, 2), homography
            ).reshape(-1, 2)
        except cv2.error:
            return None

        return TrackingResult(
            pattern_id=pattern_id,
            homography=homography,
            contour=contour,
            inlier_count=inlier_count,
        )

    def detect(self, frame: np.ndarray) -> Dict[str, TrackingResult]:
        """
        Detect every registered pattern in a frame.

        Args:
            frame: RGBA, RGB or grayscale raster

        Returns:
            pattern_id -> TrackingResult for the patterns found
        """
        results: Dict[str, TrackingResult] = {}
        if len(self.registry) == 0 or frame is None or frame.size == 0:
            return results

        try:
            gray = self._to_gray(frame)
        except (ValueError, cv2.error) as e:
            self.logger.warning(f"Skipping frame {frame.shape} {frame.dtype}: {e}")
            return results

        features = self.extractor.extract(gray)
        if features is None:
            return results
        keypoints, descriptors = features

        for pattern_id, resources in self.registry.items():
            result = self._detect_pattern(pattern_id, resources, gray, keypoints, descriptors)
            if result is not None:
                results[pattern_id] = result

        if results:
            self.logger.debug(f"Detected {sorted(results)} ({len(keypoints)} frame keypoints)")
        return results
