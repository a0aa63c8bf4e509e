"""Application configuration."""

from functools import lru_cache
from typing import Dict, List, Tuple

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "SAI Fitness Analysis"
    debug: bool = False
    log_level: str = "INFO"

    # Redis (Celery broker + result backend)
    redis_url: str = "redis://localhost:6379/0"

    # Pipeline
    confidence_threshold: float = 0.7
    max_frame_width: int = 640  # Resize sampled frames (0 = no resize)

    # Frames sampled per test id. Tests missing here fall back to the
    # duration bands below: (max duration seconds, frame count).
    frame_count_schedule: Dict[str, int] = {
        "vertical_jump": 10,
        "sit_ups": 30,
        "sprint_30m": 20,
        "shuttle_run": 40,
    }
    frame_count_bands: List[Tuple[float, int]] = [
        (15.0, 20),
        (30.0, 40),
        (60.0, 30),
        (600.0, 60),
    ]

    # Wall-clock budget per stage, in seconds
    stage_timeouts: Dict[str, float] = {
        "sampling": 60.0,
        "extracting": 180.0,
        "checking": 60.0,
    }
    # Per test id overrides, e.g. {"sit_ups": {"extracting": 300}}
    stage_timeout_overrides: Dict[str, Dict[str, float]] = {}

    # Pose estimation
    pose_backend: str = "mediapipe"  # "mediapipe", "movenet" or "fallback"
    pose_model_path: str = "./models/pose_landmarker_full.task"
    movenet_model_url: str = "https://tfhub.dev/google/movenet/singlepose/thunder/4"
    fallback_mode: str = "contour"  # "contour" or "unknown"
    fallback_confidence_cap: float = 0.3  # Heuristic skeletons never reach the validity threshold
    fallback_min_area_ratio: float = 0.01  # Blob must cover 1% of the frame
    keypoint_confidence_threshold: float = 0.3

    # Metric extraction
    situp_down_angle: float = 30.0  # Torso angle from horizontal, degrees
    situp_up_angle: float = 70.0
    jump_baseline_fraction: float = 0.2  # Leading share of frames treated as standing
    nose_to_ankle_stature_ratio: float = 0.9  # Nose-to-ankle span as a share of stature
    movement_start_speed: float = 0.05  # Normalized frame units per second

    # Motion tracking
    motion_diff_threshold: int = 25  # Grayscale foreground threshold (0-255)
    motion_min_foreground_ratio: float = 0.001
    motion_use_pose: bool = False

    # Integrity checks
    enable_cheat_detection: bool = True
    multi_subject_min_frames: int = 1  # Raise to ignore brief crowding
    lighting_jump_threshold: float = 60.0  # Mean brightness delta (0-255)
    scene_correlation_threshold: float = 0.3  # Histogram correlation floor
    min_situp_torso_range: float = 20.0  # Degrees
    mechanical_motion_tolerance: float = 0.05  # Std of angle steps, degrees
    min_flight_ratio: float = 0.2  # Ankle rise relative to hip rise
    max_plausible_speed: float = 5.0  # Normalized frame units per second
    hog_min_weight: float = 0.5
    hog_nms_threshold: float = 0.4

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
