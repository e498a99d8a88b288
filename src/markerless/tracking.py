"""
Markerless Tracking - target store, scheduler and pose policies

ImageTracker ties everything together for a stream of camera frames:
- Keeps the registered targets (reference image, physical size, binding)
- Decides per frame whether detection has to run at all
- Turns detections into world poses and feeds them through a policy

Two policies, selected by TrackingMode:
- DYNAMIC -> LowPassPolicy: the object follows the image, smoothed
- STATIC  -> StabilityLockPolicy: the object appears only once N similar
  poses in a row were seen, then stays locked at their average

The rendered object is abstracted as a TargetBinding. Per-target state lives
here, keyed by target id, never on the bound object.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from .config import TrackerConfig, TrackingMode
from .detector import MultiPatternDetector, TrackingResult
from .frame_pipeline import FrameProcessor
from .pattern import Pattern, PatternBuildError
from .pose import (
    CameraIntrinsics,
    Frustum,
    PoseData,
    average_poses,
    compute_pose,
    estimate_world_pose,
    is_pose_similar,
    lerp,
    slerp,
)


class TargetBinding(ABC):
    """
    The scene object a target drives.

    set_pose and set_visible are required; the stabilization event and
    custom bounds are optional.
    """

    @abstractmethod
    def set_pose(self, target_id: str, position: np.ndarray, rotation: np.ndarray, scale: float):
        ...

    @abstractmethod
    def set_visible(self, target_id: str, visible: bool):
        ...

    def on_stabilized(self, target_id: str):
        pass

    def get_bounds(self, target_id: str) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """World-space (center, half_extents) of the object, or None for the default cube."""
        return None


@dataclass
class TrackedTarget:
    """Registration data and per-frame state of one tracked image."""
    target_id: str
    image: np.ndarray
    physical_size: float = 0.1
    binding: Optional[TargetBinding] = None
    pattern: Optional[Pattern] = None

    # Detection
    tracking_result: Optional[TrackingResult] = None
    is_detected: bool = False
    is_visible: bool = False

    # Low-pass policy
    prev_pose: Optional[PoseData] = None

    # Stability lock policy
    recent_poses: List[PoseData] = field(default_factory=list)
    similar_pose_count: int = 0
    is_stabilized: bool = False
    locked_pose: Optional[PoseData] = None

    def reset_stabilization(self):
        self.recent_poses.clear()
        self.similar_pose_count = 0
        self.is_stabilized = False
        self.locked_pose = None

    def set_visible(self, visible: bool):
        self.is_visible = visible
        if self.binding is not None:
            self.binding.set_visible(self.target_id, visible)

    def apply_pose(self, pose: PoseData):
        if self.binding is not None:
            self.binding.set_pose(
                self.target_id, pose.position.copy(), pose.rotation.copy(), self.physical_size
            )


@dataclass
class TargetState:
    """What happened to one target in one frame."""
    target_id: str
    detected: bool
    visible: bool
    stabilized: bool
    position: Optional[np.ndarray] = None
    rotation: Optional[np.ndarray] = None
    scale: float = 1.0
    just_stabilized: bool = False


class LowPassPolicy:
    """Blend each new pose with the previous one (DYNAMIC mode)."""

    def __init__(self, coefficient: float = 0.5, hide_when_not_detected: bool = True):
        self.coefficient = coefficient
        self.hide_when_not_detected = hide_when_not_detected

    def on_pose(self, target: TrackedTarget, pose: PoseData) -> PoseData:
        """
        Smooth and apply a raw pose.

        A coefficient of 0 applies the raw pose unchanged; values near 1
        keep the object close to where it was.
        """
        pose = pose.copy()
        if target.prev_pose is not None:
            t = 1.0 - self.coefficient
            pose.position = lerp(target.prev_pose.position, pose.position, t)
            pose.rotation = slerp(target.prev_pose.rotation, pose.rotation, t)

        target.prev_pose = pose
        target.apply_pose(pose)
        target.set_visible(True)
        return pose

    def on_miss(self, target: TrackedTarget):
        if self.hide_when_not_detected:
            target.set_visible(False)


class StabilityLockPolicy:
    """
    Accumulate similar poses, then lock the object in place (STATIC mode).

    Each pose is compared with the last one kept. A similar pose extends
    the run, a different one starts a new run. Once the run reaches
    stability_pose_count the average pose is applied and the target is
    stabilized; it stays there until reset.
    """

    def __init__(
        self,
        stability_pose_count: int = 10,
        max_position_difference: float = 0.01,
        max_angle_difference: float = 2.0
    ):
        self.stability_pose_count = stability_pose_count
        self.max_position_difference = max_position_difference
        self.max_angle_difference = max_angle_difference

    def on_pose(self, target: TrackedTarget, pose: PoseData) -> bool:
        """
        Feed one raw pose.

        Returns:
            True only on the frame the target becomes stabilized
        """
        if target.is_stabilized:
            return False

        if len(target.recent_poses) < self.stability_pose_count:
            if not target.recent_poses:
                target.recent_poses.append(pose.copy())
                target.similar_pose_count = 1
            elif is_pose_similar(
                target.recent_poses[-1], pose,
                self.max_position_difference, self.max_angle_difference
            ):
                target.recent_poses.append(pose.copy())
                target.similar_pose_count += 1
            else:
                target.recent_poses.clear()
                target.recent_poses.append(pose.copy())
                target.similar_pose_count = 1

            # Hidden until stable
            target.set_visible(False)

        if target.similar_pose_count < self.stability_pose_count:
            return False

        locked = average_poses(target.recent_poses)
        target.locked_pose = locked
        target.apply_pose(locked)
        target.is_stabilized = True
        target.set_visible(True)
        if target.binding is not None:
            target.binding.on_stabilized(target.target_id)
        return True

    def on_miss(self, target: TrackedTarget):
        if not target.is_stabilized:
            target.recent_poses.clear()
            target.similar_pose_count = 0


class ImageTracker:
    """
    Markerless image tracker for a single camera stream.

    Usage:
        tracker = ImageTracker(TrackerConfig(tracking_mode=TrackingMode.STATIC))
        tracker.initialize(1280, 960, cx, cy, fx, fy)
        tracker.add_target("poster", poster_rgba, physical_size=0.3, binding=binding)

        for frame, camera_to_world in stream:
            states = tracker.process_frame(frame, camera_to_world)
    """

    def __init__(self, config: Optional[TrackerConfig] = None):
        self.config = (config or TrackerConfig()).validate()
        self.logger = logging.getLogger("ImageTracker")

        self.detector = MultiPatternDetector(
            enable_ratio_test=self.config.enable_ratio_test,
            enable_homography_refinement=self.config.enable_homography_refinement,
            homography_reprojection_threshold=self.config.homography_reprojection_threshold,
        )
        self.low_pass = LowPassPolicy(
            self.config.pose_filter_coefficient, self.config.hide_when_not_detected
        )
        self.stability_lock = StabilityLockPolicy(
            self.config.stability_pose_count,
            self.config.max_position_difference,
            self.config.max_angle_difference,
        )

        self._targets: Dict[str, TrackedTarget] = {}
        self._tracking_mode = self.config.tracking_mode
        self._intrinsics: Optional[CameraIntrinsics] = None
        self._processing_intrinsics: Optional[CameraIntrinsics] = None
        self._is_ready = False

    # === SETUP ===

    def initialize(self, width: int, height: int, cx: float, cy: float, fx: float, fy: float) -> bool:
        """
        Set the camera parameters at full resolution.

        Detection runs on frames scaled by processing_downsample_factor; the
        intrinsics are scaled the same way.

        Returns:
            True if the tracker is ready
        """
        if width <= 0 or height <= 0 or fx <= 0 or fy <= 0:
            self.logger.error(
                f"Invalid camera parameters: {width}x{height}, fx={fx}, fy={fy}"
            )
            return False

        self._intrinsics = CameraIntrinsics(fx=fx, fy=fy, cx=cx, cy=cy, width=width, height=height)
        self._processing_intrinsics = self._intrinsics.scaled(self.config.processing_downsample_factor)
        self._is_ready = True

        self.logger.info(
            f"Initialized: camera {width}x{height}, processing "
            f"{self._processing_intrinsics.width}x{self._processing_intrinsics.height}, "
            f"mode {self._tracking_mode.value}"
        )
        return True

    def add_target(
        self,
        target_id: str,
        image: Optional[np.ndarray],
        physical_size: float = 0.1,
        binding: Optional[TargetBinding] = None
    ) -> bool:
        """
        Register a reference image to track.

        Args:
            target_id: Unique identifier
            image: Reference raster (RGBA, RGB or grayscale)
            physical_size: Printed edge length in meters
            binding: Scene object to drive (optional)

        Returns:
            True if the target was built and registered
        """
        if target_id in self._targets:
            self.logger.warning(f"Target {target_id} is already registered")
            return False
        if physical_size <= 0:
            self.logger.error(f"Target {target_id}: physical size must be positive, got {physical_size}")
            return False

        try:
            pattern = self.detector.build_pattern_from_image(image, target_id, physical_size)
        except PatternBuildError as e:
            self.logger.error(f"{e}. Check the image for sufficient texture.")
            return False

        self.detector.register_pattern(pattern, target_id)

        target = TrackedTarget(
            target_id=target_id,
            image=image,
            physical_size=physical_size,
            binding=binding,
            pattern=pattern,
        )
        self._targets[target_id] = target
        target.set_visible(False)

        self.logger.info(
            f"Target {target_id} added ({pattern.keypoint_count} keypoints, {physical_size} m)"
        )
        return True

    def remove_target(self, target_id: str) -> bool:
        target = self._targets.pop(target_id, None)
        if target is None:
            self.logger.warning(f"Cannot remove unknown target {target_id}")
            return False

        self.detector.unregister_pattern(target_id)
        self.logger.info(f"Target {target_id} removed")
        return True

    def get_target(self, target_id: str) -> Optional[TrackedTarget]:
        return self._targets.get(target_id)

    @property
    def target_ids(self) -> List[str]:
        return list(self._targets.keys())

    @property
    def is_ready(self) -> bool:
        return self._is_ready

    @property
    def tracking_mode(self) -> TrackingMode:
        return self._tracking_mode

    @property
    def processing_intrinsics(self) -> Optional[CameraIntrinsics]:
        return self._processing_intrinsics

    # === MODE AND STABILIZATION ===

    def set_tracking_mode(self, mode: TrackingMode, reset_stabilized: bool = False):
        """
        Switch policy.

        Leaving STATIC always unlocks every target; staying in (or entering)
        STATIC unlocks them only when reset_stabilized is set.
        """
        leaving_static = mode == TrackingMode.DYNAMIC and self._tracking_mode == TrackingMode.STATIC
        if leaving_static or (mode == TrackingMode.STATIC and reset_stabilized):
            for target in self._targets.values():
                target.reset_stabilization()

        self._tracking_mode = mode
        self.logger.info(f"Tracking mode set to {mode.value}")

    def reset_target_stabilization(self, target_id: str) -> bool:
        target = self._targets.get(target_id)
        if target is None:
            self.logger.warning(f"Cannot reset unknown target {target_id}")
            return False
        target.reset_stabilization()
        return True

    def is_any_stabilized(self) -> bool:
        return any(t.is_stabilized for t in self._targets.values())

    def are_all_stabilized(self) -> bool:
        return all(t.is_stabilized for t in self._targets.values())

    def should_run_detection(self) -> bool:
        """Detection is skipped in STATIC mode while any target is locked."""
        return not (self._tracking_mode == TrackingMode.STATIC and self.is_any_stabilized())

    # === PER-FRAME ===

    def detect_images(self, frame: Optional[np.ndarray]) -> List[str]:
        """
        Run detection on a full-resolution frame.

        A missing frame or a skipped detection leaves every target undetected
        for this frame; locked targets keep their lock.

        Returns:
            Ids of the targets found in this frame
        """
        if not self._is_ready:
            self.logger.error("ImageTracker has not been initialized")
            return []

        for target in self._targets.values():
            target.is_detected = False
            target.tracking_result = None

        if frame is None or not self._targets or not self.should_run_detection():
            return []

        size = (self._processing_intrinsics.width, self._processing_intrinsics.height)
        processing_frame = FrameProcessor.downsample(frame, size)
        results = self.detector.detect(processing_frame)

        detected = []
        for pattern_id, result in results.items():
            target = self._targets.get(pattern_id)
            if target is None:
                continue
            target.is_detected = True
            target.tracking_result = result
            detected.append(pattern_id)
        return detected

    def estimate_poses(self, camera_to_world: np.ndarray) -> Dict[str, TargetState]:
        """
        Update every target from the last detection.

        Args:
            camera_to_world: 4 x 4 camera transform for the frame (engine convention)

        Returns:
            target_id -> TargetState
        """
        if not self._is_ready:
            self.logger.error("ImageTracker has not been initialized")
            return {}

        camera_to_world = np.asarray(camera_to_world, dtype=np.float64)
        if camera_to_world.shape != (4, 4):
            raise ValueError(f"camera_to_world must be 4x4, got {camera_to_world.shape}")

        frustum: Optional[Frustum] = None
        states: Dict[str, TargetState] = {}

        for target in self._targets.values():
            if self._tracking_mode == TrackingMode.STATIC and target.is_stabilized:
                if self.config.check_stabilized_visibility and target.is_visible:
                    if frustum is None:
                        frustum = Frustum.from_camera(self._intrinsics, camera_to_world)
                    if not self._is_in_view(target, frustum):
                        self.logger.info(
                            f"Target {target.target_id} no longer visible, re-enabling tracking"
                        )
                        target.set_visible(False)
                        target.reset_stabilization()
                states[target.target_id] = self._state(target)
                continue

            just_stabilized = False
            pose = self._world_pose(target, camera_to_world)
            if pose is None:
                self._on_miss(target)
            elif self._tracking_mode == TrackingMode.DYNAMIC:
                self.low_pass.on_pose(target, pose)
            else:
                just_stabilized = self.stability_lock.on_pose(target, pose)
                if just_stabilized:
                    self.logger.info(
                        f"Target {target.target_id} stabilized after "
                        f"{target.similar_pose_count} similar poses"
                    )

            states[target.target_id] = self._state(target, just_stabilized)

        return states

    def process_frame(
        self,
        frame: Optional[np.ndarray],
        camera_to_world: Optional[np.ndarray] = None
    ) -> Dict[str, TargetState]:
        """Detect, then estimate poses. A missing camera transform means the identity."""
        if not self._is_ready:
            self.logger.error("ImageTracker has not been initialized")
            return {}

        self.detect_images(frame)
        if camera_to_world is None:
            camera_to_world = np.eye(4)
        return self.estimate_poses(camera_to_world)

    def release(self):
        self.detector.release()
        self._targets.clear()
        self._is_ready = False
        self.logger.info("ImageTracker released")

    # === INTERNALS ===

    def _world_pose(self, target: TrackedTarget, camera_to_world: np.ndarray) -> Optional[PoseData]:
        result = target.tracking_result
        if not target.is_detected or result is None:
            return None

        pose3d = compute_pose(target.pattern, result.contour, self._processing_intrinsics)
        if pose3d is None:
            self.logger.debug(f"Target {target.target_id}: pose estimation failed")
            return None

        result.pose3d = pose3d
        return estimate_world_pose(pose3d, camera_to_world, target.physical_size)

    def _on_miss(self, target: TrackedTarget):
        if self._tracking_mode == TrackingMode.DYNAMIC:
            self.low_pass.on_miss(target)
        else:
            self.stability_lock.on_miss(target)

    def _is_in_view(self, target: TrackedTarget, frustum: Frustum) -> bool:
        bounds = None
        if target.binding is not None:
            bounds = target.binding.get_bounds(target.target_id)
        if bounds is None:
            if target.locked_pose is None:
                return True
            center = target.locked_pose.position
            half_extents = np.full(3, target.physical_size / 2.0)
        else:
            center, half_extents = bounds
        return frustum.intersects_aabb(center, half_extents)

    def _state(self, target: TrackedTarget, just_stabilized: bool = False) -> TargetState:
        if target.is_stabilized:
            pose = target.locked_pose
        elif self._tracking_mode == TrackingMode.DYNAMIC:
            pose = target.prev_pose
        else:
            pose = None

        return TargetState(
            target_id=target.target_id,
            detected=target.is_detected,
            visible=target.is_visible,
            stabilized=target.is_stabilized,
            position=None if pose is None else pose.position.copy(),
            rotation=None if pose is None else pose.rotation.copy(),
            scale=target.physical_size,
            just_stabilized=just_stabilized,
        )
