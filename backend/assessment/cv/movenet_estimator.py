"""
MoveNet Thunder backend.

MoveNet predicts the 17 COCO keypoints directly, in the same order as
BodyJoint. Unlike a live-tracking setup, no temporal smoothing is applied:
each frame is estimated independently so results are reproducible.
"""

import logging
from typing import Optional

import cv2
import numpy as np
import tensorflow as tf
import tensorflow_hub as hub

from assessment.config import Settings
from assessment.cv.pose_estimator import ModelBackedEstimator

logger = logging.getLogger(__name__)


class MoveNetEstimator(ModelBackedEstimator):
    """
    MoveNet Thunder single-pose estimator loaded from TensorFlow Hub.

    Args:
        model_url: TensorFlow Hub handle (defaults to settings.movenet_model_url)
        min_subject_confidence: Mean keypoint score below which no subject
            is reported
        settings: Application settings
    """

    name = "movenet"
    INPUT_SIZE = 256

    def __init__(
        self,
        model_url: Optional[str] = None,
        min_subject_confidence: float = 0.1,
        settings: Optional[Settings] = None,
    ):
        super().__init__(settings)
        self.model_url = model_url or self.settings.movenet_model_url
        self.min_subject_confidence = min_subject_confidence

    def _load_model(self):
        model = hub.load(self.model_url)
        return model.signatures["serving_default"]

    def _infer(self, model, image_bgr: np.ndarray) -> Optional[np.ndarray]:
        input_image = self._preprocess(image_bgr)
        outputs = model(input_image)
        keypoints_with_scores = outputs["output_0"].numpy()[0, 0]  # Shape: (17, 3) as [y, x, score]

        if float(np.mean(keypoints_with_scores[:, 2])) < self.min_subject_confidence:
            return None

        # MoveNet emits [y, x, score]; estimators exchange [x, y, confidence]
        return keypoints_with_scores[:, [1, 0, 2]].astype(np.float64)

    def _preprocess(self, image_bgr: np.ndarray) -> tf.Tensor:
        """Preprocess frame for MoveNet input."""
        rgb = cv2.cvtColor(image_bgr, cv2.COLOR_BGR2RGB)
        resized = cv2.resize(rgb, (self.INPUT_SIZE, self.INPUT_SIZE))
        input_image = tf.cast(resized, dtype=tf.int32)
        return tf.expand_dims(input_image, axis=0)

    def close(self):
        self._model = None
