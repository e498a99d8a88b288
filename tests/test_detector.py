"""Tests for matching, homography verification and multi-pattern detection."""

import logging

import cv2
import numpy as np
import pytest

from markerless import (
    FeatureExtractor,
    MultiPatternDetector,
    PatternMatcherRegistry,
    build_pattern,
    ratio_test,
    refine_matches_with_homography,
)

from synthetic import blank_frame, expected_corners, make_frame


def _grid_keypoints(count, spacing=20.0):
    cols = int(np.ceil(np.sqrt(count)))
    return [
        cv2.KeyPoint(float(10 + (i % cols) * spacing), float(10 + (i // cols) * spacing), 7.0)
        for i in range(count)
    ]


def _shifted(keypoints, dx=35.0, dy=-12.0, scale=1.5):
    return [cv2.KeyPoint(kp.pt[0] * scale + dx, kp.pt[1] * scale + dy, kp.size) for kp in keypoints]


def _identity_matches(count):
    return [cv2.DMatch(i, i, 10.0) for i in range(count)]


class _BlindAfterFirstCall(FeatureExtractor):
    """Extracts the live frame normally and finds nothing in anything after it."""

    def __init__(self):
        super().__init__()
        self.calls = 0

    def extract(self, gray):
        self.calls += 1
        if self.calls > 1:
            return None
        return super().extract(gray)


class TestRatioTest:
    """Tests for the nearest-neighbour ratio filter."""

    def test_clear_winner_kept(self):
        pair = (cv2.DMatch(0, 0, 10.0), cv2.DMatch(0, 1, 30.0))
        assert ratio_test([pair]) == [pair[0]]

    def test_exact_boundary_rejected(self):
        # 2 / 3 == 1 / 1.5, comparison is strict
        pair = (cv2.DMatch(0, 0, 2.0), cv2.DMatch(0, 1, 3.0))
        assert ratio_test([pair]) == []

    def test_just_below_boundary_kept(self):
        pair = (cv2.DMatch(0, 0, 1.99), cv2.DMatch(0, 1, 3.0))
        assert len(ratio_test([pair])) == 1

    def test_ambiguous_rejected(self):
        pair = (cv2.DMatch(0, 0, 20.0), cv2.DMatch(0, 1, 21.0))
        assert ratio_test([pair]) == []

    def test_zero_second_distance_rejected(self):
        pair = (cv2.DMatch(0, 0, 0.0), cv2.DMatch(0, 1, 0.0))
        assert ratio_test([pair]) == []

    def test_single_candidate_rejected(self):
        assert ratio_test([(cv2.DMatch(0, 0, 1.0),)]) == []

    def test_custom_ratio(self):
        pair = (cv2.DMatch(0, 0, 8.0), cv2.DMatch(0, 1, 10.0))
        assert ratio_test([pair], min_ratio=0.9) == [pair[0]]


class TestHomographyVerification:
    """Tests for the 8 match / 8 inlier geometric lock."""

    def test_consistent_matches_accepted(self):
        train = _grid_keypoints(20)
        query = _shifted(train)

        fit = refine_matches_with_homography(query, train, _identity_matches(20))

        assert fit is not None
        H, inliers = fit
        assert len(inliers) == 20
        expected = np.array([[1.5, 0, 35.0], [0, 1.5, -12.0], [0, 0, 1.0]])
        np.testing.assert_allclose(H / H[2, 2], expected, atol=1e-3)

    def test_too_few_matches_rejected(self):
        train = _grid_keypoints(7)
        query = _shifted(train)

        assert refine_matches_with_homography(query, train, _identity_matches(7)) is None

    def test_too_few_inliers_rejected(self):
        # 7 consistent matches plus 7 scattered outliers
        train = _grid_keypoints(14)
        query = _shifted(train)
        rng = np.random.default_rng(3)
        for i in range(7, 14):
            x, y = rng.uniform(300, 900, size=2)
            query[i] = cv2.KeyPoint(float(x), float(y), 7.0)

        assert refine_matches_with_homography(query, train, _identity_matches(14)) is None

    def test_outliers_dropped_from_inliers(self):
        train = _grid_keypoints(24)
        query = _shifted(train)
        query[0] = cv2.KeyPoint(900.0, 900.0, 7.0)
        query[5] = cv2.KeyPoint(-400.0, 650.0, 7.0)

        fit = refine_matches_with_homography(query, train, _identity_matches(24))

        assert fit is not None
        _, inliers = fit
        kept = {m.queryIdx for m in inliers}
        assert 0 not in kept and 5 not in kept
        assert len(inliers) == 22


class TestPatternMatcherRegistry:
    """Tests for per-pattern matcher bookkeeping."""

    def test_register_and_unregister(self, pattern_image):
        registry = PatternMatcherRegistry()
        pattern = build_pattern(pattern_image, "a")

        registry.register(pattern, "a")
        assert "a" in registry
        assert len(registry) == 1
        assert registry.pattern_ids == ["a"]

        assert registry.unregister("a") is True
        assert "a" not in registry
        assert registry.unregister("a") is False

    def test_reregister_replaces_resources(self, pattern_image):
        registry = PatternMatcherRegistry()
        pattern = build_pattern(pattern_image, "a")

        first = registry.register(pattern, "a")
        second = registry.register(pattern, "a")

        assert len(registry) == 1
        assert registry.get("a") is second
        assert first is not second
        assert first.matcher is not second.matcher

    def test_matchers_not_shared(self, pattern_image, other_pattern_image):
        registry = PatternMatcherRegistry()
        a = registry.register(build_pattern(pattern_image, "a"), "a")
        b = registry.register(build_pattern(other_pattern_image, "b"), "b")

        assert a.matcher is not b.matcher
        registry.release()
        assert len(registry) == 0


class TestMultiPatternDetector:
    """Tests for detection on synthetic frames."""

    def test_exact_copy_detected(self, pattern_image):
        detector = MultiPatternDetector()
        detector.build_and_register_pattern(pattern_image, "poster")

        results = detector.detect(make_frame(pattern_image))

        assert list(results) == ["poster"]
        result = results["poster"]
        assert result.inlier_count >= 8
        assert result.homography.shape == (3, 3)
        np.testing.assert_allclose(result.contour, expected_corners(), atol=2.0)

    def test_rotated_copy_detected(self, pattern_image):
        detector = MultiPatternDetector()
        detector.build_and_register_pattern(pattern_image, "poster")

        results = detector.detect(make_frame(pattern_image, angle=30.0))

        assert "poster" in results
        np.testing.assert_allclose(results["poster"].contour, expected_corners(angle=30.0), atol=3.0)

    def test_grayscale_frame(self, pattern_image):
        detector = MultiPatternDetector()
        detector.build_and_register_pattern(pattern_image, "poster")

        gray = cv2.cvtColor(make_frame(pattern_image), cv2.COLOR_RGBA2GRAY)

        assert "poster" in detector.detect(gray)

    def test_without_ratio_test_or_refinement(self, pattern_image):
        detector = MultiPatternDetector(enable_ratio_test=False, enable_homography_refinement=False)
        detector.build_and_register_pattern(pattern_image, "poster")

        results = detector.detect(make_frame(pattern_image))

        assert "poster" in results
        np.testing.assert_allclose(results["poster"].contour, expected_corners(), atol=2.0)

    def test_failed_refinement_drops_pattern(self, pattern_image):
        pattern = build_pattern(pattern_image, "poster")
        frame = make_frame(pattern_image)

        detector = MultiPatternDetector(extractor=_BlindAfterFirstCall())
        detector.register_pattern(pattern)

        assert detector.detect(frame) == {}
        assert detector.extractor.calls == 2
        assert detector.registry.get("poster").rough_homography is not None

        # The rough fit alone is good enough once refinement is off
        rough_only = MultiPatternDetector(
            enable_homography_refinement=False, extractor=_BlindAfterFirstCall()
        )
        rough_only.register_pattern(pattern)

        assert "poster" in rough_only.detect(frame)

    def test_warp_buffer_reused(self, pattern_image):
        detector = MultiPatternDetector()
        detector.build_and_register_pattern(pattern_image, "poster")
        frame = make_frame(pattern_image)
        resources = detector.registry.get("poster")

        assert "poster" in detector.detect(frame)
        buffer = resources.warped_img
        assert buffer.shape == pattern_image.shape[:2]

        assert "poster" in detector.detect(frame)
        assert np.shares_memory(resources.warped_img, buffer)

    def test_unconvertible_frame_skipped(self, pattern_image, caplog):
        detector = MultiPatternDetector()
        detector.build_and_register_pattern(pattern_image, "poster")

        with caplog.at_level(logging.WARNING, logger="MultiPatternDetector"):
            assert detector.detect(make_frame(pattern_image)[:, :, :2]) == {}

        assert "Skipping frame" in caplog.text

    def test_only_present_pattern_reported(self, pattern_image, other_pattern_image):
        detector = MultiPatternDetector()
        detector.build_and_register_pattern(pattern_image, "present")
        detector.build_and_register_pattern(other_pattern_image, "absent")

        results = detector.detect(make_frame(pattern_image))

        assert list(results) == ["present"]

    def test_unregistered_pattern_not_detected(self, pattern_image):
        detector = MultiPatternDetector()
        detector.build_and_register_pattern(pattern_image, "poster")
        frame = make_frame(pattern_image)

        assert detector.unregister_pattern("poster") is True
        assert detector.detect(frame) == {}
        assert detector.unregister_pattern("poster") is False

        detector.build_and_register_pattern(pattern_image, "poster")
        assert "poster" in detector.detect(frame)

    def test_blank_frame(self, pattern_image):
        detector = MultiPatternDetector()
        detector.build_and_register_pattern(pattern_image, "poster")

        assert detector.detect(blank_frame()) == {}

    def test_nothing_registered(self, pattern_image):
        assert MultiPatternDetector().detect(make_frame(pattern_image)) == {}

    def test_build_failure_logged(self, caplog):
        detector = MultiPatternDetector()
        flat = np.full((100, 100, 4), 50, dtype=np.uint8)

        with caplog.at_level(logging.ERROR, logger="MultiPatternDetector"):
            assert detector.build_and_register_pattern(flat, "flat") is None

        assert "insufficient keypoints" in caplog.text
        assert detector.pattern_count == 0

    def test_release(self, pattern_image):
        detector = MultiPatternDetector()
        detector.build_and_register_pattern(pattern_image, "poster")
        detector.release()

        assert detector.pattern_count == 0
        assert detector.detect(make_frame(pattern_image)) == {}
