"""
Markerless - Image Tracking Engine for Mixed Reality

Track printed images (posters, cards, packaging) in a passthrough camera
stream and anchor virtual objects to them. No fiducial markers needed.

Features:
- Multi-image detection with ORB features and a RANSAC geometric lock
- Homography refinement on the rectified patch
- PnP pose estimation into an engine (left-handed, Y-up) world frame
- DYNAMIC mode: low-pass smoothed poses every frame
- STATIC mode: lock objects once the pose is stable, skip detection while locked

Quick Start:
    from markerless import ImageTracker, TrackerConfig, TrackingMode, TargetBinding

    class PrintBinding(TargetBinding):
        def set_pose(self, target_id, position, rotation, scale):
            print(target_id, position, rotation)

        def set_visible(self, target_id, visible):
            print(target_id, "visible" if visible else "hidden")

    tracker = ImageTracker(TrackerConfig(tracking_mode=TrackingMode.STATIC))
    tracker.initialize(width, height, cx, cy, fx, fy)
    tracker.add_target("poster", poster_rgba, physical_size=0.3, binding=PrintBinding())

    # Update loop
    while True:
        states = tracker.process_frame(frame_rgba, camera_to_world)
"""

__version__ = "1.0.0"

# Configuration
from .config import TrackerConfig, TrackingMode

# Frames
from .frame_pipeline import FrameProcessor, PerformanceMonitor

# Patterns and detection
from .pattern import (
    FeatureExtractor,
    Pattern,
    PatternBuildError,
    build_pattern,
)
from .detector import (
    MultiPatternDetector,
    PatternMatcherRegistry,
    PatternMatchingResources,
    TrackingResult,
    ratio_test,
    refine_matches_with_homography,
)

# Pose
from .pose import (
    CameraIntrinsics,
    Frustum,
    PoseData,
    average_poses,
    compute_pose,
    estimate_world_pose,
    is_pose_similar,
    quaternion_angle,
    slerp,
    to_engine_transform,
)

# Tracking
from .tracking import (
    ImageTracker,
    LowPassPolicy,
    StabilityLockPolicy,
    TargetBinding,
    TargetState,
    TrackedTarget,
)

__all__ = [
    # Version
    "__version__",

    # Configuration
    "TrackerConfig",
    "TrackingMode",

    # Frames
    "FrameProcessor",
    "PerformanceMonitor",

    # Detection
    "FeatureExtractor",
    "Pattern",
    "PatternBuildError",
    "build_pattern",
    "MultiPatternDetector",
    "PatternMatcherRegistry",
    "PatternMatchingResources",
    "TrackingResult",
    "ratio_test",
    "refine_matches_with_homography",

    # Pose
    "CameraIntrinsics",
    "Frustum",
    "PoseData",
    "average_poses",
    "compute_pose",
    "estimate_world_pose",
    "is_pose_similar",
    "quaternion_angle",
    "slerp",
    "to_engine_transform",

    # Tracking
    "ImageTracker",
    "LowPassPolicy",
    "StabilityLockPolicy",
    "TargetBinding",
    "TargetState",
    "TrackedTarget",
]
