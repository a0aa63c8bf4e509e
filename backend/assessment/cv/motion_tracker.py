"""
Frame-to-frame motion tracking for timing and agility tests.

The subject centroid is located in every frame, then consecutive
centroids are differenced into motion samples:

    speed        = |displacement| / dt         (normalized frame units / s)
    direction    = atan2(dy, dx) in [0, 360)   (degrees clockwise from +x,
                                                image y grows downward)
    acceleration = d(speed) / dt               (0 for the first sample)

CENTROID SOURCES:
1. Pose keypoints, when a pose estimator is configured and finds a subject
2. Foreground mask against the median background of the series
   (frame-differencing proxy, suited to a fixed camera)

N frames always give N - 1 samples.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from assessment.config import Settings, get_settings
from assessment.cv.frame_sampler import Frame
from assessment.cv.pose_estimator import PoseEstimator
from assessment.errors import InsufficientDataError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MotionSample:
    """Motion of the tracked subject between two consecutive frames, stamped at the later one."""
    timestamp_ms: int
    position_x: float
    position_y: float
    speed: float
    direction: float
    acceleration: float
    tracked: bool = True  # False when the position was carried forward


def normalize_direction(degrees: float) -> float:
    """Wrap an angle into [0, 360)."""
    wrapped = degrees % 360.0
    # Tiny negative inputs can round up to exactly 360.0
    if wrapped >= 360.0:
        wrapped = 0.0
    return wrapped


def angle_difference(a: float, b: float) -> float:
    """Smallest absolute difference between two directions, in [0, 180]."""
    diff = abs(a - b) % 360.0
    return 360.0 - diff if diff > 180.0 else diff


class MotionTracker:
    """
    Derives MotionSample series from an ordered sequence of frames.

    Args:
        settings: Application settings (foreground thresholds)
        pose_estimator: Optional estimator used for keypoint centroids
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        pose_estimator: Optional[PoseEstimator] = None,
    ):
        self.settings = settings or get_settings()
        self.pose_estimator = pose_estimator

    @property
    def source_name(self) -> str:
        """Provenance label for results derived from this tracker."""
        if self.pose_estimator is None:
            return "foreground"
        return f"{self.pose_estimator.name}+foreground"

    def track(self, frames: Sequence[Frame]) -> List[MotionSample]:
        """
        Compute motion samples between consecutive frames.

        Raises:
            InsufficientDataError: If fewer than 2 frames are supplied
        """
        if len(frames) < 2:
            raise InsufficientDataError(
                f"Motion tracking needs at least 2 frames, got {len(frames)}"
            )

        centroids = self.locate(frames)

        samples: List[MotionSample] = []
        last_position: Optional[Tuple[float, float]] = None
        first_found = next((c for c in centroids if c is not None), None)
        previous_speed: Optional[float] = None

        for i in range(len(frames)):
            position = centroids[i]
            tracked = position is not None
            if position is None:
                # Carry forward the last known position (or the first found one)
                position = last_position or first_found or (0.5, 0.5)

            if i > 0:
                dt = (frames[i].timestamp_ms - frames[i - 1].timestamp_ms) / 1000.0
                if dt <= 0:
                    dt = 0.001
                dx = position[0] - last_position[0]
                dy = position[1] - last_position[1]
                speed = math.hypot(dx, dy) / dt
                direction = normalize_direction(math.degrees(math.atan2(dy, dx)))
                acceleration = 0.0 if previous_speed is None else (speed - previous_speed) / dt

                samples.append(MotionSample(
                    timestamp_ms=frames[i].timestamp_ms,
                    position_x=position[0],
                    position_y=position[1],
                    speed=speed,
                    direction=direction,
                    acceleration=acceleration,
                    tracked=tracked,
                ))
                previous_speed = speed

            last_position = position

        tracked_count = sum(1 for s in samples if s.tracked)
        logger.debug(f"Tracked {tracked_count}/{len(samples)} motion samples")
        return samples

    def locate(self, frames: Sequence[Frame]) -> List[Optional[Tuple[float, float]]]:
        """Normalized subject centroid per frame, None where not found."""
        centroids: List[Optional[Tuple[float, float]]] = [None] * len(frames)

        if self.pose_estimator is not None:
            min_conf = self.settings.keypoint_confidence_threshold
            for i, frame in enumerate(frames):
                pose = self.pose_estimator.estimate(frame)
                centroids[i] = pose.centroid(min_conf)

        missing = [i for i, c in enumerate(centroids) if c is None]
        if missing:
            background = self._median_background(frames)
            for i in missing:
                centroids[i] = self._foreground_centroid(frames[i], background)

        return centroids

    @staticmethod
    def _gray(frame: Frame) -> np.ndarray:
        image = frame.pixels
        if image.ndim == 3:
            return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        return image

    def _median_background(self, frames: Sequence[Frame]) -> np.ndarray:
        stack = np.stack([self._gray(f) for f in frames], axis=0)
        return np.median(stack, axis=0).astype(np.uint8)

    def _foreground_centroid(
        self,
        frame: Frame,
        background: np.ndarray,
    ) -> Optional[Tuple[float, float]]:
        gray = self._gray(frame)
        diff = cv2.absdiff(gray, background)
        _, mask = cv2.threshold(diff, self.settings.motion_diff_threshold, 255, cv2.THRESH_BINARY)

        if np.count_nonzero(mask) < self.settings.motion_min_foreground_ratio * mask.size:
            return None

        moments = cv2.moments(mask, binaryImage=True)
        if moments["m00"] <= 0:
            return None

        h, w = mask.shape[:2]
        return (moments["m10"] / moments["m00"] / w, moments["m01"] / moments["m00"] / h)
