"""
Pose estimation for fitness test analysis.

Every estimator maps one Frame to a PoseSample of 17 normalized body
keypoints (MoveNet / COCO order) with per-keypoint confidence.

ESTIMATOR VARIANTS:
1. ModelBackedEstimator: delegates to a loaded pose model
   - "mediapipe": MediaPipe Pose Landmarker (Tasks API, IMAGE mode)
   - "movenet": MoveNet Thunder from TensorFlow Hub
2. FallbackEstimator: no model required
   - "contour": heuristic skeleton fitted to the largest foreground blob
   - "unknown": explicit unknown pose with confidence 0

Estimators are stateless per frame: the same frame through the same
backend always produces the same PoseSample. A frame that fails to
estimate yields an empty PoseSample instead of raising.
"""

import importlib
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from assessment.config import Settings, get_settings
from assessment.cv.frame_sampler import Frame
from assessment.errors import ModelUnavailableError

logger = logging.getLogger(__name__)


class BodyJoint(IntEnum):
    """Body joint indices (MoveNet / COCO-17 order)."""
    NOSE = 0
    LEFT_EYE = 1
    RIGHT_EYE = 2
    LEFT_EAR = 3
    RIGHT_EAR = 4
    LEFT_SHOULDER = 5
    RIGHT_SHOULDER = 6
    LEFT_ELBOW = 7
    RIGHT_ELBOW = 8
    LEFT_WRIST = 9
    RIGHT_WRIST = 10
    LEFT_HIP = 11
    RIGHT_HIP = 12
    LEFT_KNEE = 13
    RIGHT_KNEE = 14
    LEFT_ANKLE = 15
    RIGHT_ANKLE = 16


NUM_KEYPOINTS = len(BodyJoint)


@dataclass(frozen=True)
class Keypoint:
    """Single keypoint with normalized position and confidence."""
    name: BodyJoint
    x: float  # Normalized x (0-1)
    y: float  # Normalized y (0-1)
    confidence: float

    @classmethod
    def create(cls, name: BodyJoint, x: float, y: float, confidence: float) -> "Keypoint":
        """Build a keypoint with every value clipped into [0, 1]."""
        return cls(
            name=BodyJoint(name),
            x=float(np.clip(x, 0.0, 1.0)),
            y=float(np.clip(y, 0.0, 1.0)),
            confidence=float(np.clip(confidence, 0.0, 1.0)),
        )

    def is_visible(self, threshold: float = 0.3) -> bool:
        return self.confidence >= threshold


@dataclass(frozen=True)
class PoseSample:
    """
    Pose for a single frame.

    overall_confidence is the mean keypoint confidence; an empty sample
    (no subject found, or estimation failed) always has confidence 0.
    """
    frame_index: int
    keypoints: Tuple[Keypoint, ...] = field(default_factory=tuple)

    @property
    def overall_confidence(self) -> float:
        if not self.keypoints:
            return 0.0
        return float(np.mean([kp.confidence for kp in self.keypoints]))

    @property
    def is_empty(self) -> bool:
        return len(self.keypoints) == 0

    @classmethod
    def empty(cls, frame_index: int) -> "PoseSample":
        return cls(frame_index=frame_index, keypoints=())

    @classmethod
    def from_array(cls, frame_index: int, array: np.ndarray) -> "PoseSample":
        """
        Build a sample from an (17, 3) array of [x, y, confidence].
        """
        array = np.asarray(array, dtype=np.float64)
        if array.shape != (NUM_KEYPOINTS, 3):
            raise ValueError(f"Expected ({NUM_KEYPOINTS}, 3) keypoint array, got {array.shape}")
        keypoints = tuple(
            Keypoint.create(BodyJoint(i), x, y, conf)
            for i, (x, y, conf) in enumerate(array)
        )
        return cls(frame_index=frame_index, keypoints=keypoints)

    def get(self, joint: BodyJoint) -> Optional[Keypoint]:
        if joint < len(self.keypoints):
            return self.keypoints[joint]
        return None

    def midpoint(
        self,
        left: BodyJoint,
        right: BodyJoint,
        min_confidence: float = 0.0,
    ) -> Optional[Tuple[float, float]]:
        """Midpoint of a left/right joint pair, using one side if only one is visible."""
        points = [
            kp for kp in (self.get(left), self.get(right))
            if kp is not None and kp.confidence >= min_confidence
        ]
        if not points:
            return None
        return (
            float(np.mean([p.x for p in points])),
            float(np.mean([p.y for p in points])),
        )

    def hip_center(self, min_confidence: float = 0.0) -> Optional[Tuple[float, float]]:
        return self.midpoint(BodyJoint.LEFT_HIP, BodyJoint.RIGHT_HIP, min_confidence)

    def shoulder_center(self, min_confidence: float = 0.0) -> Optional[Tuple[float, float]]:
        return self.midpoint(BodyJoint.LEFT_SHOULDER, BodyJoint.RIGHT_SHOULDER, min_confidence)

    def ankle_center(self, min_confidence: float = 0.0) -> Optional[Tuple[float, float]]:
        return self.midpoint(BodyJoint.LEFT_ANKLE, BodyJoint.RIGHT_ANKLE, min_confidence)

    def centroid(self, min_confidence: float = 0.0) -> Optional[Tuple[float, float]]:
        """Mean position of all keypoints above min_confidence."""
        points = [kp for kp in self.keypoints if kp.confidence >= min_confidence]
        if not points:
            return None
        return (
            float(np.mean([p.x for p in points])),
            float(np.mean([p.y for p in points])),
        )

    def get_torso_angle(self, min_confidence: float = 0.0) -> Optional[float]:
        """
        Torso elevation above horizontal in degrees.

        0 = lying flat, 90 = sitting/standing upright. Uses the vector from
        hip midpoint to shoulder midpoint (image y increases downward).
        """
        hip = self.hip_center(min_confidence)
        shoulder = self.shoulder_center(min_confidence)
        if hip is None or shoulder is None:
            return None

        dx = shoulder[0] - hip[0]
        dy = hip[1] - shoulder[1]  # Positive when shoulders are above hips
        if abs(dx) < 1e-9 and abs(dy) < 1e-9:
            return None
        return float(np.degrees(np.arctan2(abs(dy), abs(dx))))

    def to_dict(self) -> Dict:
        """Serialize to dictionary for storage."""
        return {
            "frame_index": self.frame_index,
            "overall_confidence": self.overall_confidence,
            "keypoints": [
                {"name": kp.name.name.lower(), "x": kp.x, "y": kp.y, "confidence": kp.confidence}
                for kp in self.keypoints
            ],
        }


class PoseEstimator(ABC):
    """
    Abstract pose estimator.

    Subclasses implement _estimate(); estimate() contains per-frame
    failures so a series always has one sample per input frame.
    """

    name: str = "base"
    model_backed: bool = False

    def estimate(self, frame: Frame) -> PoseSample:
        """Estimate the pose in a single frame. Never raises for a bad frame."""
        try:
            return self._estimate(frame)
        except ModelUnavailableError:
            raise
        except Exception as e:
            logger.warning(f"{self.name}: pose estimation failed for frame {frame.index}: {e}")
            return PoseSample.empty(frame.index)

    def estimate_series(self, frames: Sequence[Frame]) -> List[PoseSample]:
        """Estimate poses for every frame, preserving order and length."""
        return [self.estimate(frame) for frame in frames]

    @abstractmethod
    def _estimate(self, frame: Frame) -> PoseSample:
        pass

    def load(self) -> None:
        """Prepare model resources. No-op for estimators without a model."""

    def close(self) -> None:
        """Release model resources."""

    def __enter__(self):
        self.load()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ModelBackedEstimator(PoseEstimator):
    """
    Base for estimators that delegate to a loaded pose model.

    The model is loaded once (lazily on first use, or eagerly via load())
    and then only read. Inference is serialized with a lock so a single
    instance can be shared by concurrently running pipelines.
    """

    model_backed = True

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._model = None
        self._load_lock = threading.Lock()
        self._infer_lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def load(self) -> None:
        """
        Load the model if it is not loaded yet.

        Raises:
            ModelUnavailableError: If the model cannot be loaded
        """
        if self._model is not None:
            return
        with self._load_lock:
            if self._model is not None:
                return
            logger.info(f"Loading {self.name} pose model...")
            try:
                self._model = self._load_model()
            except ModelUnavailableError:
                raise
            except Exception as e:
                raise ModelUnavailableError(f"Failed to load {self.name} model: {e}") from e
            logger.info(f"{self.name} pose model loaded")

    def _estimate(self, frame: Frame) -> PoseSample:
        self.load()
        with self._infer_lock:
            keypoints = self._infer(self._model, frame.pixels)
        if keypoints is None:
            return PoseSample.empty(frame.index)
        return PoseSample.from_array(frame.index, keypoints)

    @abstractmethod
    def _load_model(self):
        """Load and return the model handle."""

    @abstractmethod
    def _infer(self, model, image_bgr: np.ndarray) -> Optional[np.ndarray]:
        """
        Run the model on one BGR image.

        Returns:
            (17, 3) array of [x, y, confidence] normalized to the image,
            or None if no subject was detected.
        """


# Standing figure proportions relative to the subject bounding box
# (x from left edge, y from top edge).
_SKELETON_TEMPLATE = np.array([
    [0.50, 0.06],  # nose
    [0.47, 0.04],  # left eye
    [0.53, 0.04],  # right eye
    [0.43, 0.06],  # left ear
    [0.57, 0.06],  # right ear
    [0.30, 0.20],  # left shoulder
    [0.70, 0.20],  # right shoulder
    [0.24, 0.36],  # left elbow
    [0.76, 0.36],  # right elbow
    [0.22, 0.50],  # left wrist
    [0.78, 0.50],  # right wrist
    [0.38, 0.53],  # left hip
    [0.62, 0.53],  # right hip
    [0.40, 0.76],  # left knee
    [0.60, 0.76],  # right knee
    [0.40, 0.97],  # left ankle
    [0.60, 0.97],  # right ankle
])


class FallbackEstimator(PoseEstimator):
    """
    Model-free estimator.

    "contour" mode segments the frame with Otsu thresholding, takes the
    largest foreground contour as the subject and places a proportional
    skeleton inside its bounding box. Confidence is the contour solidity
    scaled by fallback_confidence_cap, so heuristic poses stay below the
    validity threshold. "unknown" mode reports no pose at all.
    """

    def __init__(self, mode: Optional[str] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.mode = mode or self.settings.fallback_mode
        if self.mode not in ("contour", "unknown"):
            raise ValueError(f"Unknown fallback mode: {self.mode!r}")
        self.name = f"fallback-{self.mode}"

    def _estimate(self, frame: Frame) -> PoseSample:
        if self.mode == "unknown":
            return PoseSample.empty(frame.index)

        image = frame.pixels
        h, w = image.shape[:2]
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image
        blurred = cv2.GaussianBlur(gray, (5, 5), 0)
        _, mask = cv2.threshold(blurred, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)

        # Subject is the minority region
        if np.count_nonzero(mask) > mask.size / 2:
            mask = cv2.bitwise_not(mask)

        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        if not contours:
            return PoseSample.empty(frame.index)

        contour = max(contours, key=cv2.contourArea)
        area = cv2.contourArea(contour)
        if area < self.settings.fallback_min_area_ratio * w * h:
            return PoseSample.empty(frame.index)

        hull_area = cv2.contourArea(cv2.convexHull(contour))
        solidity = area / hull_area if hull_area > 0 else 0.0
        confidence = self.settings.fallback_confidence_cap * solidity

        bx, by, bw, bh = cv2.boundingRect(contour)
        xs = (bx + _SKELETON_TEMPLATE[:, 0] * bw) / w
        ys = (by + _SKELETON_TEMPLATE[:, 1] * bh) / h
        keypoints = np.column_stack([xs, ys, np.full(NUM_KEYPOINTS, confidence)])

        return PoseSample.from_array(frame.index, keypoints)


# Model registry (lazy imports keep heavy ML dependencies optional at import time)
ESTIMATORS: Dict[str, str] = {
    "mediapipe": "assessment.cv.mediapipe_estimator.MediaPipeEstimator",
    "movenet": "assessment.cv.movenet_estimator.MoveNetEstimator",
    "fallback": "assessment.cv.pose_estimator.FallbackEstimator",
}


def get_estimator(name: str, **kwargs) -> PoseEstimator:
    """
    Get a pose estimator by backend name.

    Args:
        name: Backend name (mediapipe, movenet, fallback)
        **kwargs: Passed to the estimator constructor

    Raises:
        ValueError: If the backend name is not recognized
        ModelUnavailableError: If the backend's dependencies are not installed
    """
    if name not in ESTIMATORS:
        available = ", ".join(sorted(ESTIMATORS))
        raise ValueError(f"Unknown pose backend '{name}'. Available: {available}")

    module_path, class_name = ESTIMATORS[name].rsplit(".", 1)
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ModelUnavailableError(
            f"Pose backend '{name}' requires additional dependencies: {e}"
        ) from e

    return getattr(module, class_name)(**kwargs)


def list_estimators() -> List[str]:
    return sorted(ESTIMATORS)
