"""
MediaPipe Pose Landmarker backend.

Runs the Tasks API in IMAGE mode: every frame is estimated on its own,
without the tracking state VIDEO mode carries between calls, so results
are reproducible frame by frame.

The 33 MediaPipe landmarks are reduced to the 17-joint layout shared by
all estimators. Landmark visibility is used as keypoint confidence.
"""

import logging
import os
from typing import Optional

import cv2
import numpy as np
import mediapipe as mp
from mediapipe.tasks import python
from mediapipe.tasks.python import vision

from assessment.config import Settings
from assessment.cv.pose_estimator import ModelBackedEstimator, NUM_KEYPOINTS
from assessment.errors import ModelUnavailableError

logger = logging.getLogger(__name__)

# MediaPipe landmark index for each BodyJoint, in BodyJoint order
MEDIAPIPE_TO_BODY_JOINT = [
    0,   # nose
    2,   # left eye
    5,   # right eye
    7,   # left ear
    8,   # right ear
    11,  # left shoulder
    12,  # right shoulder
    13,  # left elbow
    14,  # right elbow
    15,  # left wrist
    16,  # right wrist
    23,  # left hip
    24,  # right hip
    25,  # left knee
    26,  # right knee
    27,  # left ankle
    28,  # right ankle
]


class MediaPipeEstimator(ModelBackedEstimator):
    """
    Pose estimator using the MediaPipe Tasks Pose Landmarker.

    Args:
        model_path: Path to a pose_landmarker_*.task bundle
        min_detection_confidence: Minimum confidence for person detection
        settings: Application settings
    """

    name = "mediapipe"

    def __init__(
        self,
        model_path: Optional[str] = None,
        min_detection_confidence: float = 0.5,
        settings: Optional[Settings] = None,
    ):
        super().__init__(settings)
        self.model_path = model_path or self.settings.pose_model_path
        self.min_detection_confidence = min_detection_confidence

    def _load_model(self):
        if not os.path.exists(self.model_path):
            raise ModelUnavailableError(
                f"Pose landmarker model not found at {self.model_path}. "
                "Download from: https://storage.googleapis.com/mediapipe-models/pose_landmarker/"
            )

        base_options = python.BaseOptions(model_asset_path=self.model_path)
        options = vision.PoseLandmarkerOptions(
            base_options=base_options,
            running_mode=vision.RunningMode.IMAGE,
            min_pose_detection_confidence=self.min_detection_confidence,
            num_poses=1,  # Single athlete per submission
        )
        return vision.PoseLandmarker.create_from_options(options)

    def _infer(self, model, image_bgr: np.ndarray) -> Optional[np.ndarray]:
        rgb = cv2.cvtColor(image_bgr, cv2.COLOR_BGR2RGB)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(rgb))
        result = model.detect(mp_image)

        if not result.pose_landmarks:
            return None

        landmarks = result.pose_landmarks[0]
        keypoints = np.zeros((NUM_KEYPOINTS, 3), dtype=np.float64)
        for joint, mp_index in enumerate(MEDIAPIPE_TO_BODY_JOINT):
            landmark = landmarks[mp_index]
            visibility = getattr(landmark, "visibility", None)
            keypoints[joint] = (
                landmark.x,
                landmark.y,
                visibility if visibility is not None else 0.5,
            )
        return keypoints

    def close(self):
        """Release the landmarker."""
        if self._model is not None:
            self._model.close()
            self._model = None
