"""
Markerless Configuration - tracker options and tracking modes

All tunables for one ImageTracker live in a single TrackerConfig. Defaults
match the values the tracker was tuned with on passthrough cameras.

Options can also be read from the environment (or a .env file):

    MARKERLESS_TRACKING_MODE=static
    MARKERLESS_STABILITY_POSE_COUNT=15
    MARKERLESS_MAX_ANGLE_DIFFERENCE=1.5
"""

import os
import logging
from dataclasses import dataclass, fields
from enum import Enum
from typing import Optional

from dotenv import find_dotenv, load_dotenv


logger = logging.getLogger("TrackerConfig")


class TrackingMode(Enum):
    """How detected poses are turned into object transforms."""
    DYNAMIC = "dynamic"  # Low-pass smoothing every frame
    STATIC = "static"    # Accumulate until stable, then lock


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Not a boolean value: {value!r}")


@dataclass
class TrackerConfig:
    """
    Options for an ImageTracker.

    Attributes:
        tracking_mode: DYNAMIC (smoothed every frame) or STATIC (lock once stable)
        processing_downsample_factor: Input frames are scaled by this before detection
        pose_filter_coefficient: Low-pass coefficient (higher = more smoothing)
        hide_when_not_detected: Hide bound objects on a miss (dynamic mode)
        stability_pose_count: Consecutive similar poses needed to lock (static mode)
        max_position_difference: Meters allowed between similar poses
        max_angle_difference: Degrees allowed between similar poses
        enable_ratio_test: Filter matches with the nearest-neighbour ratio test
        enable_homography_refinement: Re-match on the warped patch after the rough fit
        homography_reprojection_threshold: RANSAC reprojection threshold in pixels
        check_stabilized_visibility: Unlock stabilized targets that leave the view
    """
    tracking_mode: TrackingMode = TrackingMode.DYNAMIC
    processing_downsample_factor: float = 0.5
    pose_filter_coefficient: float = 0.5
    hide_when_not_detected: bool = True
    stability_pose_count: int = 10
    max_position_difference: float = 0.01
    max_angle_difference: float = 2.0
    enable_ratio_test: bool = True
    enable_homography_refinement: bool = True
    homography_reprojection_threshold: float = 3.0
    check_stabilized_visibility: bool = True

    def validate(self) -> "TrackerConfig":
        """
        Check option ranges.

        Raises:
            ValueError: If any option is out of range
        """
        if not isinstance(self.tracking_mode, TrackingMode):
            raise ValueError(f"tracking_mode must be a TrackingMode, got {self.tracking_mode!r}")
        if not 0.1 <= self.processing_downsample_factor <= 1.0:
            raise ValueError(
                f"processing_downsample_factor must be in [0.1, 1.0], "
                f"got {self.processing_downsample_factor}"
            )
        if not 0.0 <= self.pose_filter_coefficient <= 1.0:
            raise ValueError(
                f"pose_filter_coefficient must be in [0, 1], got {self.pose_filter_coefficient}"
            )
        if self.stability_pose_count < 1:
            raise ValueError(f"stability_pose_count must be >= 1, got {self.stability_pose_count}")
        if self.max_position_difference < 0:
            raise ValueError("max_position_difference must not be negative")
        if self.max_angle_difference < 0:
            raise ValueError("max_angle_difference must not be negative")
        if self.homography_reprojection_threshold <= 0:
            raise ValueError("homography_reprojection_threshold must be positive")
        return self

    @classmethod
    def from_env(cls, prefix: str = "MARKERLESS_", env_file: Optional[str] = None) -> "TrackerConfig":
        """
        Build a config from environment variables.

        Each field maps to PREFIX + FIELD_NAME in upper case. A .env file is
        loaded first (explicit path, or the default lookup from the cwd);
        variables already set in the process take precedence.

        Args:
            prefix: Environment variable prefix
            env_file: Optional path to a .env file

        Returns:
            Validated TrackerConfig
        """
        if env_file is not None:
            load_dotenv(env_file, override=False)
        else:
            load_dotenv(find_dotenv(usecwd=True), override=False)

        values = {}
        for f in fields(cls):
            raw = os.environ.get(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            if f.name == "tracking_mode":
                values[f.name] = TrackingMode(raw.strip().lower())
            elif f.type is bool:
                values[f.name] = _parse_bool(raw)
            elif f.type is int:
                values[f.name] = int(raw)
            else:
                values[f.name] = float(raw)

        if values:
            logger.debug(f"Config overrides from environment: {sorted(values)}")
        return cls(**values).validate()
