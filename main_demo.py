#!/usr/bin/env python3
"""
Markerless Image Tracking - Demo

Runs the ImageTracker on a webcam or video file:
1. Registers one or more reference images (--pattern ID=PATH[:SIZE])
2. Detects them in every frame
3. Logs pose, visibility and stabilization events per target

Usage:
    python main_demo.py --pattern poster=poster.png:0.3
    python main_demo.py --source clip.mp4 --pattern card=card.jpg --mode static
"""

import sys
import time
import logging
import argparse
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import numpy as np

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from markerless import (
    FrameProcessor,
    ImageTracker,
    PerformanceMonitor,
    TargetBinding,
    TrackerConfig,
    TrackingMode,
)


class LoggingBinding(TargetBinding):
    """Binding that only reports what a scene object would do."""

    def __init__(self):
        self.logger = logging.getLogger("DemoBinding")
        self._visible = {}

    def set_pose(self, target_id, position, rotation, scale):
        self.logger.debug(
            f"{target_id}: pos=({position[0]:+.3f}, {position[1]:+.3f}, {position[2]:+.3f}) "
            f"rot=({rotation[0]:+.2f}, {rotation[1]:+.2f}, {rotation[2]:+.2f}, {rotation[3]:+.2f})"
        )

    def set_visible(self, target_id, visible):
        # Only log changes
        if self._visible.get(target_id) != visible:
            self._visible[target_id] = visible
            self.logger.info(f"{target_id}: {'shown' if visible else 'hidden'}")

    def on_stabilized(self, target_id):
        self.logger.info(f"{target_id}: locked in place")


def parse_pattern_arg(value: str) -> Tuple[str, str, float]:
    """Parse ID=PATH[:SIZE]."""
    if "=" not in value:
        raise argparse.ArgumentTypeError(f"Expected ID=PATH[:SIZE], got {value!r}")
    target_id, rest = value.split("=", 1)
    size = 0.1
    path = rest
    if ":" in rest:
        head, tail = rest.rsplit(":", 1)
        try:
            size = float(tail)
            path = head
        except ValueError:
            # Part of the path (e.g. a Windows drive letter)
            path = rest
    if not target_id or not path:
        raise argparse.ArgumentTypeError(f"Expected ID=PATH[:SIZE], got {value!r}")
    return target_id, path, size


class MarkerlessDemo:
    """Capture loop around an ImageTracker."""

    def __init__(
        self,
        source,
        patterns: List[Tuple[str, str, float]],
        config: TrackerConfig,
        fx: Optional[float] = None,
        fy: Optional[float] = None,
        max_frames: Optional[int] = None
    ):
        self.source = source
        self.patterns = patterns
        self.config = config
        self.fx = fx
        self.fy = fy
        self.max_frames = max_frames

        self.tracker = ImageTracker(config)
        self.binding = LoggingBinding()
        self.perf = PerformanceMonitor()
        self.logger = logging.getLogger("MarkerlessDemo")

    def _load_targets(self) -> int:
        added = 0
        for target_id, path, size in self.patterns:
            image = cv2.imread(path, cv2.IMREAD_COLOR)
            if image is None:
                self.logger.error(f"Could not read pattern image {path}")
                continue
            if self.tracker.add_target(target_id, FrameProcessor.bgr_to_rgba(image), size, self.binding):
                added += 1
        return added

    def run(self) -> int:
        capture = cv2.VideoCapture(self.source)
        if not capture.isOpened():
            self.logger.error(f"Failed to open video source {self.source}")
            return 1

        ok, frame = capture.read()
        if not ok or frame is None:
            self.logger.error("No frames received from video source")
            capture.release()
            return 1

        height, width = frame.shape[:2]
        # Rough pinhole guess when the camera is not calibrated
        fx = self.fx or 0.9 * width
        fy = self.fy or fx
        if not self.tracker.initialize(width, height, width / 2.0, height / 2.0, fx, fy):
            capture.release()
            return 1

        if self._load_targets() == 0:
            self.logger.error("No pattern could be registered")
            capture.release()
            return 1

        frame_count = 0
        try:
            while ok:
                start = time.perf_counter()
                states = self.tracker.process_frame(FrameProcessor.bgr_to_rgba(frame))
                self.perf.update((time.perf_counter() - start) * 1000.0)

                for state in states.values():
                    if state.just_stabilized:
                        self.logger.info(f"{state.target_id} stabilized at {np.round(state.position, 3)}")

                frame_count += 1
                if frame_count % 100 == 0:
                    self.logger.info(f"{frame_count} frames, {self.perf.fps:.1f} FPS")
                if self.max_frames is not None and frame_count >= self.max_frames:
                    break

                ok, frame = capture.read()
        except KeyboardInterrupt:
            self.logger.info("Interrupted")
        finally:
            capture.release()
            self.tracker.release()

        self.logger.info(f"Demo stopped after {frame_count} frames")
        return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Markerless image tracking demo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Options not given on the command line are read from MARKERLESS_* environment
variables (or a .env file), e.g. MARKERLESS_STABILITY_POSE_COUNT=15.

Examples:
  python main_demo.py --pattern poster=poster.png:0.3
  python main_demo.py --source 1 --pattern a=a.png --pattern b=b.png
  python main_demo.py --source clip.mp4 --pattern card=card.jpg:0.085 --mode static
        """
    )

    parser.add_argument(
        "--source", "-s",
        default="0",
        help="Video source: camera index (0, 1, ...) or file path"
    )
    parser.add_argument(
        "--pattern", "-p",
        action="append",
        type=parse_pattern_arg,
        required=True,
        metavar="ID=PATH[:SIZE]",
        help="Reference image to track, size in meters (repeatable)"
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in TrackingMode],
        default=None,
        help="Tracking mode"
    )
    parser.add_argument("--downsample", type=float, default=None, help="Processing downsample factor")
    parser.add_argument("--filter", type=float, default=None, help="Pose filter coefficient (dynamic mode)")
    parser.add_argument("--stability-count", type=int, default=None, help="Similar poses needed to lock (static mode)")
    parser.add_argument("--fx", type=float, default=None, help="Focal length x in pixels")
    parser.add_argument("--fy", type=float, default=None, help="Focal length y in pixels")
    parser.add_argument("--env-file", default=None, help="Path to a .env file with MARKERLESS_* options")
    parser.add_argument("--max-frames", type=int, default=None, help="Stop after this many frames")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    try:
        config = TrackerConfig.from_env(env_file=args.env_file)
        if args.mode is not None:
            config.tracking_mode = TrackingMode(args.mode)
        if args.downsample is not None:
            config.processing_downsample_factor = args.downsample
        if args.filter is not None:
            config.pose_filter_coefficient = args.filter
        if args.stability_count is not None:
            config.stability_pose_count = args.stability_count
        config.validate()
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        sys.exit(2)

    # Camera index or file path
    try:
        source = int(args.source)
    except ValueError:
        source = args.source

    demo = MarkerlessDemo(
        source=source,
        patterns=args.pattern,
        config=config,
        fx=args.fx,
        fy=args.fy,
        max_frames=args.max_frames
    )
    sys.exit(demo.run())


if __name__ == "__main__":
    main()
