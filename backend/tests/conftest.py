"""Shared test fixtures for the analysis test suite.

Provides synthetic videos, scripted pose estimators and series builders
used across all test modules.
"""

import math

import cv2
import numpy as np
import pytest

from assessment.config import Settings
from assessment.cv.frame_sampler import Frame
from assessment.cv.integrity_checker import SubjectDetector
from assessment.cv.motion_tracker import MotionSample
from assessment.cv.pose_estimator import NUM_KEYPOINTS, PoseEstimator, PoseSample

FRAME_WIDTH = 160
FRAME_HEIGHT = 120

# Upright figure, hip midpoint at y=0.6 (x, y per BodyJoint)
STANDING_SKELETON = np.array([
    [0.50, 0.15],  # nose
    [0.49, 0.14],  # left eye
    [0.51, 0.14],  # right eye
    [0.48, 0.15],  # left ear
    [0.52, 0.15],  # right ear
    [0.45, 0.30],  # left shoulder
    [0.55, 0.30],  # right shoulder
    [0.43, 0.42],  # left elbow
    [0.57, 0.42],  # right elbow
    [0.42, 0.52],  # left wrist
    [0.58, 0.52],  # right wrist
    [0.47, 0.60],  # left hip
    [0.53, 0.60],  # right hip
    [0.47, 0.75],  # left knee
    [0.53, 0.75],  # right knee
    [0.47, 0.90],  # left ankle
    [0.53, 0.90],  # right ankle
])


def make_video(path, n_frames=30, fps=30.0, step=4, width=FRAME_WIDTH, height=FRAME_HEIGHT):
    """Write an MJPG video of a dark block moving right on a gray background."""
    fourcc = cv2.VideoWriter_fourcc(*"MJPG")
    writer = cv2.VideoWriter(str(path), fourcc, fps, (width, height))
    for i in range(n_frames):
        image = np.full((height, width, 3), 128, dtype=np.uint8)
        x = 5 + (i * step) % max(1, width - 30)
        cv2.rectangle(image, (x, 40), (x + 20, 90), (40, 40, 40), -1)
        writer.write(image)
    writer.release()
    return str(path)


def make_empty_video(path, fps=30.0):
    """Write a video container holding no frames."""
    fourcc = cv2.VideoWriter_fourcc(*"MJPG")
    writer = cv2.VideoWriter(str(path), fourcc, fps, (FRAME_WIDTH, FRAME_HEIGHT))
    writer.release()
    return str(path)


def make_image(block_x=20, brightness=128, width=FRAME_WIDTH, height=FRAME_HEIGHT):
    """Gray image with a dark block at block_x."""
    image = np.full((height, width, 3), brightness, dtype=np.uint8)
    cv2.rectangle(image, (block_x, 40), (block_x + 20, 90), (40, 40, 40), -1)
    return image


def make_frame(index, image=None, fps=10.0, timestamp_ms=None):
    if image is None:
        image = make_image(block_x=5 + index * 4)
    if timestamp_ms is None:
        timestamp_ms = int(round(index * 1000.0 / fps))
    return Frame(index=index, timestamp_ms=timestamp_ms, pixels=image)


def make_frames(n, fps=10.0, step=4):
    return [make_frame(i, make_image(block_x=5 + i * step), fps=fps) for i in range(n)]


def make_pose(frame_index, dy=0.0, dx=0.0, confidence=0.9):
    """Standing pose shifted by (dx, dy) in normalized units."""
    xy = STANDING_SKELETON + np.array([dx, dy])
    array = np.column_stack([xy, np.full(NUM_KEYPOINTS, confidence)])
    return PoseSample.from_array(frame_index, array)


def make_torso_pose(frame_index, angle_deg, confidence=0.9):
    """Pose whose hip->shoulder vector makes angle_deg with the horizontal."""
    array = np.column_stack([STANDING_SKELETON.copy(), np.full(NUM_KEYPOINTS, confidence)])
    hip = (0.5, 0.7)
    length = 0.25
    shoulder = (
        hip[0] + length * math.cos(math.radians(angle_deg)),
        hip[1] - length * math.sin(math.radians(angle_deg)),
    )
    array[11, :2] = array[12, :2] = hip
    array[5, :2] = array[6, :2] = shoulder
    return PoseSample.from_array(frame_index, array)


def make_jump_series(hip_ys, confidence=0.9, ankles_move=True):
    """Pose series whose hip midpoint follows hip_ys (standing hip is 0.6)."""
    series = []
    for i, hip_y in enumerate(hip_ys):
        pose = make_pose(i, dy=hip_y - 0.6, confidence=confidence)
        if not ankles_move:
            array = np.array([[kp.x, kp.y, kp.confidence] for kp in pose.keypoints])
            array[15:17, 1] = STANDING_SKELETON[15:17, 1]
            pose = PoseSample.from_array(i, array)
        series.append(pose)
    return series


def make_motion_series(positions, interval_ms=100, tracked=True):
    """Motion samples from a list of (x, y) positions, one sample per step."""
    samples = []
    previous_speed = None
    for i in range(1, len(positions)):
        dt = interval_ms / 1000.0
        dx = positions[i][0] - positions[i - 1][0]
        dy = positions[i][1] - positions[i - 1][1]
        speed = math.hypot(dx, dy) / dt
        direction = math.degrees(math.atan2(dy, dx)) % 360.0
        acceleration = 0.0 if previous_speed is None else (speed - previous_speed) / dt
        samples.append(MotionSample(
            timestamp_ms=i * interval_ms,
            position_x=positions[i][0],
            position_y=positions[i][1],
            speed=speed,
            direction=direction,
            acceleration=acceleration,
            tracked=tracked,
        ))
        previous_speed = speed
    return samples


JUMP_HIP_YS = [0.6, 0.6, 0.5, 0.4, 0.3, 0.4, 0.5, 0.6, 0.6, 0.6]


class ScriptedEstimator(PoseEstimator):
    """Returns a prepared PoseSample per frame index (empty when not scripted)."""

    name = "scripted"

    def __init__(self, poses=None):
        self.poses = {p.frame_index: p for p in (poses or [])}
        self.calls = 0

    def _estimate(self, frame):
        self.calls += 1
        return self.poses.get(frame.index, PoseSample.empty(frame.index))


class FixedSubjectDetector(SubjectDetector):
    """Reports the same number of people in every frame."""

    name = "fixed"

    def __init__(self, count=1):
        self.subjects = count

    def detect(self, image):
        return [(10 * i, 10, 30, 60) for i in range(self.subjects)]


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def jump_video(tmp_path):
    return make_video(tmp_path / "jump.avi", n_frames=30)


@pytest.fixture
def sprint_video(tmp_path):
    return make_video(tmp_path / "sprint.avi", n_frames=60, step=2)
