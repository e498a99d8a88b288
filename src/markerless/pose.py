"""
Markerless Pose - from image contour to world transform

Pipeline for one detected pattern:
1. solvePnP on the unit-square corners and the detected contour
   (intrinsics scaled to the processing resolution)
2. OpenCV camera space (right-handed, Y down) -> engine space
   (left-handed, Y up, +Z forward)
3. Compose with the camera-to-world transform of the frame
4. Rescale depth by the target's physical size, since PnP ran on a unit square

Also holds the quaternion math the tracking policies share and a camera
frustum for visibility checks. Quaternions are [x, y, z, w].
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import cv2
import numpy as np
from scipy.spatial.transform import Rotation

from .frame_pipeline import FrameProcessor
from .pattern import Pattern


INVERT_Y = np.diag([1.0, -1.0, 1.0, 1.0])
INVERT_Z = np.diag([1.0, 1.0, -1.0, 1.0])


@dataclass
class CameraIntrinsics:
    """Pinhole intrinsics at a given resolution."""
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    dist_coeffs: np.ndarray = field(default_factory=lambda: np.zeros(4, dtype=np.float64))

    def camera_matrix(self) -> np.ndarray:
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0],
        ], dtype=np.float64)

    def scaled(self, factor: float) -> "CameraIntrinsics":
        """Intrinsics for frames resized by factor."""
        width, height = FrameProcessor.processing_size(self.width, self.height, factor)
        return CameraIntrinsics(
            fx=self.fx * factor,
            fy=self.fy * factor,
            cx=self.cx * factor,
            cy=self.cy * factor,
            width=width,
            height=height,
            dist_coeffs=self.dist_coeffs.copy(),
        )


@dataclass
class PoseData:
    position: np.ndarray  # (3,)
    rotation: np.ndarray  # (4,) unit quaternion, x y z w

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> "PoseData":
        matrix = np.asarray(matrix, dtype=np.float64)
        rotation = Rotation.from_matrix(matrix[:3, :3]).as_quat()
        return cls(position=matrix[:3, 3].copy(), rotation=normalize_quaternion(rotation))

    def to_matrix(self) -> np.ndarray:
        matrix = np.eye(4)
        matrix[:3, :3] = Rotation.from_quat(self.rotation).as_matrix()
        matrix[:3, 3] = self.position
        return matrix

    def copy(self) -> "PoseData":
        return PoseData(position=self.position.copy(), rotation=self.rotation.copy())


# === CAMERA-SPACE POSE ===

def compute_pose(
    pattern: Pattern,
    contour: np.ndarray,
    intrinsics: CameraIntrinsics
) -> Optional[np.ndarray]:
    """
    Recover the pattern's camera-space pose from its detected corners.

    Args:
        pattern: Pattern providing the unit-square 3D corners
        contour: 4 x 2 detected corners, same order as pattern.points3d
        intrinsics: Intrinsics at the contour's resolution

    Returns:
        4 x 4 rigid transform (OpenCV camera convention) or None on failure
    """
    image_points = np.asarray(contour, dtype=np.float32).reshape(-1, 2)
    if image_points.shape[0] != len(pattern.points3d):
        return None

    try:
        ok, rvec, tvec = cv2.solvePnP(
            pattern.points3d,
            image_points,
            intrinsics.camera_matrix(),
            intrinsics.dist_coeffs,
        )
    except cv2.error:
        return None

    if not ok:
        return None

    rotation, _ = cv2.Rodrigues(rvec)
    pose = np.eye(4)
    pose[:3, :3] = rotation
    pose[:3, 3] = tvec.ravel()
    return pose


def to_engine_transform(pose3d: np.ndarray) -> np.ndarray:
    """Convert an OpenCV camera-space transform to the engine's left-handed, Y-up convention."""
    return INVERT_Y @ pose3d @ INVERT_Y @ INVERT_Y @ INVERT_Z


def estimate_world_pose(
    pose3d: np.ndarray,
    camera_to_world: np.ndarray,
    physical_size: float
) -> PoseData:
    """
    World pose of a pattern seen by a camera.

    Args:
        pose3d: Camera-space pose from compute_pose
        camera_to_world: Camera transform for the frame (engine convention)
        physical_size: Real edge length of the target in meters

    Returns:
        World position and rotation with depth corrected for physical size
    """
    camera_to_world = np.asarray(camera_to_world, dtype=np.float64)
    world = camera_to_world @ to_engine_transform(pose3d)
    pose = PoseData.from_matrix(world)

    # PnP ran on a unit square; distance from the camera scales with the real size
    camera_position = camera_to_world[:3, 3]
    offset = pose.position - camera_position
    distance = np.linalg.norm(offset)
    if distance > 0:
        direction = offset / distance
        pose.position = camera_position + direction * (distance * physical_size)

    return pose


# === QUATERNION HELPERS ===

def normalize_quaternion(q: np.ndarray) -> np.ndarray:
    q = np.asarray(q, dtype=np.float64)
    norm = np.linalg.norm(q)
    if norm == 0:
        return np.array([0.0, 0.0, 0.0, 1.0])
    return q / norm


def lerp(a: np.ndarray, b: np.ndarray, t: float) -> np.ndarray:
    a = np.asarray(a, dtype=np.float64)
    return a + (np.asarray(b, dtype=np.float64) - a) * t


def slerp(q1: np.ndarray, q2: np.ndarray, t: float) -> np.ndarray:
    """Spherical linear interpolation along the shorter arc."""
    q1 = normalize_quaternion(q1)
    q2 = normalize_quaternion(q2)

    dot = float(np.dot(q1, q2))
    if dot < 0:
        q2 = -q2
        dot = -dot

    # Nearly parallel
    if dot > 0.9995:
        return normalize_quaternion(q1 + t * (q2 - q1))

    theta_0 = np.arccos(dot)
    theta = theta_0 * t

    q_perp = normalize_quaternion(q2 - q1 * dot)
    return q1 * np.cos(theta) + q_perp * np.sin(theta)


def quaternion_angle(q1: np.ndarray, q2: np.ndarray) -> float:
    """Angle in degrees of the rotation taking q1 to q2 (sign-insensitive)."""
    dot = abs(float(np.dot(normalize_quaternion(q1), normalize_quaternion(q2))))
    return float(np.degrees(2.0 * np.arccos(min(dot, 1.0))))


def is_pose_similar(
    a: PoseData,
    b: PoseData,
    max_position_difference: float,
    max_angle_difference: float
) -> bool:
    if np.linalg.norm(a.position - b.position) > max_position_difference:
        return False
    return quaternion_angle(a.rotation, b.rotation) <= max_angle_difference


def average_poses(poses: Sequence[PoseData]) -> PoseData:
    """
    Mean of a set of poses.

    Positions are averaged arithmetically. Quaternions are summed after
    flipping each onto the running sum's hemisphere, then renormalized,
    so q and -q count as the same orientation.
    """
    if not poses:
        raise ValueError("Cannot average an empty pose list")

    position = np.mean([p.position for p in poses], axis=0)

    accumulated = np.zeros(4)
    for p in poses:
        q = normalize_quaternion(p.rotation)
        if np.dot(accumulated, q) < 0:
            q = -q
        accumulated += q

    return PoseData(position=position, rotation=normalize_quaternion(accumulated))


# === VISIBILITY ===

class Frustum:
    """
    Six world-space planes bounding what a camera can see.

    Each plane is (normal, d) with normal pointing inwards: a point p is
    inside when dot(normal, p) + d >= 0 for every plane.
    """

    DEFAULT_NEAR = 0.01
    DEFAULT_FAR = 1000.0

    def __init__(self, normals: np.ndarray, offsets: np.ndarray):
        self.normals = normals
        self.offsets = offsets

    @classmethod
    def from_camera(
        cls,
        intrinsics: CameraIntrinsics,
        camera_to_world: np.ndarray,
        near: float = DEFAULT_NEAR,
        far: float = DEFAULT_FAR
    ) -> "Frustum":
        """
        Build the frustum of an engine camera (+Z forward, Y up).

        Args:
            intrinsics: Camera intrinsics (any resolution, used as ratios)
            camera_to_world: Camera transform for the frame
            near: Near clip distance
            far: Far clip distance
        """
        fx, fy, cx, cy = intrinsics.fx, intrinsics.fy, intrinsics.cx, intrinsics.cy
        w, h = intrinsics.width, intrinsics.height

        normals: List[List[float]] = [
            [1.0, 0.0, cx / fx],           # left
            [-1.0, 0.0, (w - cx) / fx],    # right
            [0.0, -1.0, cy / fy],          # top
            [0.0, 1.0, (h - cy) / fy],     # bottom
            [0.0, 0.0, 1.0],               # near
            [0.0, 0.0, -1.0],              # far
        ]
        offsets = [0.0, 0.0, 0.0, 0.0, -near, far]

        camera_to_world = np.asarray(camera_to_world, dtype=np.float64)
        rotation = camera_to_world[:3, :3]
        translation = camera_to_world[:3, 3]

        world_normals = np.array(normals) @ rotation.T
        world_offsets = np.array(offsets) - world_normals @ translation
        return cls(world_normals, world_offsets)

    def contains_point(self, point: np.ndarray) -> bool:
        return bool(np.all(self.normals @ np.asarray(point, dtype=np.float64) + self.offsets >= 0))

    def intersects_aabb(self, center: np.ndarray, half_extents: np.ndarray) -> bool:
        """True unless the box lies entirely behind one of the planes."""
        center = np.asarray(center, dtype=np.float64)
        half_extents = np.asarray(half_extents, dtype=np.float64)
        for normal, d in zip(self.normals, self.offsets):
            # Box corner furthest along the plane normal
            p_vertex = center + half_extents * np.sign(normal)
            if np.dot(normal, p_vertex) + d < 0:
                return False
        return True
