"""
Integrity ("cheat") assessment for recorded test sessions.

Independent checks each contribute at most one reason:

FRAME CHECKS (every test):
- multiple_subjects:       more than one person detected in the same frame
- duplicated_frames:       bit-identical consecutive frames (frozen/padded video)
- looped_sequence:         a frame reappears later in the video
- lighting_discontinuity:  abrupt mean-brightness jump between frames
- scene_discontinuity:     histogram correlation collapse between frames (cut/splice)

TEST CHECKS:
- sit_ups:        implausible_torso_motion, mechanical_torso_motion
- vertical_jump:  no_flight_phase
- sprint/shuttle: implausible_speed

cheat_detected is True exactly when at least one reason was found. When no
subject detector is available (or cheat detection is disabled), the report
says so with the "checker_unavailable" reason and checked=False, so a clean
result and an unchecked result can always be told apart.

Frame evidence is collected separately (inspect_frames) so the pipeline
can release frame buffers before the checks are evaluated.
"""

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from assessment.catalog import TestId
from assessment.config import Settings, get_settings
from assessment.cv.frame_sampler import Frame
from assessment.cv.motion_tracker import MotionSample
from assessment.cv.pose_estimator import PoseSample

logger = logging.getLogger(__name__)

CHECKER_UNAVAILABLE = "checker_unavailable"

Box = Tuple[int, int, int, int]


@dataclass(frozen=True)
class IntegrityReport:
    """Verdict of the integrity checks."""
    cheat_detected: bool
    reasons: FrozenSet[str]
    checked: bool = True

    @classmethod
    def from_reasons(cls, reasons) -> "IntegrityReport":
        reasons = frozenset(reasons)
        return cls(cheat_detected=len(reasons) > 0, reasons=reasons, checked=True)

    @classmethod
    def unavailable(cls) -> "IntegrityReport":
        return cls(cheat_detected=False, reasons=frozenset({CHECKER_UNAVAILABLE}), checked=False)


@dataclass(frozen=True, eq=False)
class FrameEvidence:
    """Per-frame facts the checks need once pixel data is gone."""
    index: int
    digest: str
    brightness: float
    histogram: np.ndarray  # Normalized 32-bin grayscale histogram (float32)
    subject_count: int


# =========================================================
# Subject detection
# =========================================================

class SubjectDetector(ABC):
    """Counts people in a frame."""

    name: str = "base"

    @abstractmethod
    def detect(self, image: np.ndarray) -> List[Box]:
        """Bounding boxes (x, y, w, h) of people in a BGR image."""

    def count(self, image: np.ndarray) -> int:
        return len(self.detect(image))


class HogSubjectDetector(SubjectDetector):
    """
    OpenCV HOG + linear SVM people detector.

    Detections below hog_min_weight are dropped and overlapping boxes are
    merged with non-maximum suppression, so one person counts once.
    """

    name = "hog"
    DETECTION_SIZE = 400

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.hog = cv2.HOGDescriptor()
        self.hog.setSVMDetector(cv2.HOGDescriptor_getDefaultPeopleDetector())
        self._lock = threading.Lock()

    def detect(self, image: np.ndarray) -> List[Box]:
        # Resize for faster detection
        scale = min(1.0, self.DETECTION_SIZE / max(image.shape[:2]))
        small = cv2.resize(image, None, fx=scale, fy=scale) if scale < 1.0 else image

        with self._lock:
            rects, weights = self.hog.detectMultiScale(
                small,
                winStride=(8, 8),
                padding=(4, 4),
                scale=1.05
            )

        if len(rects) == 0:
            return []

        boxes = [[int(v) for v in rect] for rect in rects]
        scores = [float(w) for w in np.asarray(weights).reshape(-1)]
        keep = cv2.dnn.NMSBoxes(
            boxes, scores, self.settings.hog_min_weight, self.settings.hog_nms_threshold
        )

        # Scale back to original size
        return [
            tuple(int(v / scale) for v in boxes[i])
            for i in np.asarray(keep).reshape(-1)
        ]


# =========================================================
# Checks
# =========================================================

class IntegrityCheck:
    """Base class for integrity checks."""

    reason: str = ""

    def flagged(
        self,
        evidence: Sequence[FrameEvidence],
        series: Sequence,
        settings: Settings
    ) -> bool:
        """Return True if the submission shows this tamper signature."""
        raise NotImplementedError


class MultipleSubjectsCheck(IntegrityCheck):
    """More than one person visible in enough frames."""

    reason = "multiple_subjects"

    def flagged(self, evidence, series, settings) -> bool:
        if not evidence:
            return False
        crowded = sum(1 for e in evidence if e.subject_count > 1)
        required = max(1, min(settings.multi_subject_min_frames, len(evidence)))
        return crowded >= required


class DuplicatedFramesCheck(IntegrityCheck):
    """Consecutive sampled frames are bit-identical."""

    reason = "duplicated_frames"

    def flagged(self, evidence, series, settings) -> bool:
        return any(a.digest == b.digest for a, b in zip(evidence, evidence[1:]))


class LoopedSequenceCheck(IntegrityCheck):
    """A frame reappears after other content was shown in between."""

    reason = "looped_sequence"

    def flagged(self, evidence, series, settings) -> bool:
        first_seen: Dict[str, int] = {}
        for position, e in enumerate(evidence):
            seen_at = first_seen.get(e.digest)
            if seen_at is not None and position - seen_at > 1:
                # Only a loop if something different was shown in between
                if any(m.digest != e.digest for m in evidence[seen_at + 1:position]):
                    return True
            first_seen.setdefault(e.digest, position)
        return False


class LightingDiscontinuityCheck(IntegrityCheck):
    """Mean brightness jumps by more than lighting_jump_threshold."""

    reason = "lighting_discontinuity"

    def flagged(self, evidence, series, settings) -> bool:
        return any(
            abs(b.brightness - a.brightness) > settings.lighting_jump_threshold
            for a, b in zip(evidence, evidence[1:])
        )


class SceneDiscontinuityCheck(IntegrityCheck):
    """Grayscale histograms of consecutive frames stop correlating."""

    reason = "scene_discontinuity"

    def flagged(self, evidence, series, settings) -> bool:
        for a, b in zip(evidence, evidence[1:]):
            correlation = cv2.compareHist(a.histogram, b.histogram, cv2.HISTCMP_CORREL)
            if correlation < settings.scene_correlation_threshold:
                return True
        return False


def _torso_angles(series: Sequence[PoseSample], settings: Settings) -> List[float]:
    angles = (s.get_torso_angle(settings.keypoint_confidence_threshold) for s in series)
    return [a for a in angles if a is not None]


class TorsoRangeCheck(IntegrityCheck):
    """Sit-up torso never travels through a human range of motion."""

    reason = "implausible_torso_motion"

    def flagged(self, evidence, series, settings) -> bool:
        angles = _torso_angles(series, settings)
        if len(angles) < 2:
            return False
        return (max(angles) - min(angles)) < settings.min_situp_torso_range


class MechanicalTorsoCheck(IntegrityCheck):
    """Torso angle changes by the same amount every frame (replayed or machine-driven motion)."""

    reason = "mechanical_torso_motion"

    def flagged(self, evidence, series, settings) -> bool:
        angles = _torso_angles(series, settings)
        if len(angles) < 4:
            return False
        steps = np.abs(np.diff(angles))
        if float(np.mean(steps)) < 1.0:
            return False
        return float(np.std(steps)) < settings.mechanical_motion_tolerance


class FlightPhaseCheck(IntegrityCheck):
    """
    Hips rise during a jump but the feet never leave the ground.

    Compares ankle rise to hip rise above the standing level; a real jump
    lifts both by a similar amount.
    """

    reason = "no_flight_phase"

    MIN_HIP_RISE = 0.02  # Normalized units; smaller movements are not a jump attempt

    def flagged(self, evidence, series, settings) -> bool:
        min_conf = settings.keypoint_confidence_threshold
        hips, ankles = [], []
        for sample in series:
            hip = sample.hip_center(min_conf)
            ankle = sample.ankle_center(min_conf)
            if hip is not None and ankle is not None:
                hips.append(hip[1])
                ankles.append(ankle[1])

        if len(hips) < 2:
            return False

        baseline_count = max(1, int(round(len(hips) * settings.jump_baseline_fraction)))
        hip_rise = float(np.median(hips[:baseline_count])) - min(hips)
        ankle_rise = float(np.median(ankles[:baseline_count])) - min(ankles)

        if hip_rise < self.MIN_HIP_RISE:
            return False
        return ankle_rise < settings.min_flight_ratio * hip_rise


class SpeedPlausibilityCheck(IntegrityCheck):
    """Tracked subject moves faster than a person can run."""

    reason = "implausible_speed"

    def flagged(self, evidence, series: Sequence[MotionSample], settings) -> bool:
        return any(s.tracked and s.speed > settings.max_plausible_speed for s in series)


class IntegrityChecker:
    """
    Runs the frame checks plus the checks registered for the test.

    Args:
        subject_detector: People detector; None means integrity cannot be
            assessed and every report is "checker_unavailable"
        settings: Application settings (thresholds)
    """

    FRAME_CHECKS: List[IntegrityCheck] = [
        MultipleSubjectsCheck(),
        DuplicatedFramesCheck(),
        LoopedSequenceCheck(),
        LightingDiscontinuityCheck(),
        SceneDiscontinuityCheck(),
    ]

    CHECKS_BY_TEST: Dict[str, List[IntegrityCheck]] = {
        TestId.SIT_UPS: [TorsoRangeCheck(), MechanicalTorsoCheck()],
        TestId.VERTICAL_JUMP: [FlightPhaseCheck()],
        TestId.SPRINT_30M: [SpeedPlausibilityCheck()],
        TestId.SHUTTLE_RUN: [SpeedPlausibilityCheck()],
    }

    def __init__(
        self,
        subject_detector: Optional[SubjectDetector] = None,
        settings: Optional[Settings] = None,
    ):
        self.subject_detector = subject_detector
        self.settings = settings or get_settings()

    @property
    def available(self) -> bool:
        return self.subject_detector is not None and self.settings.enable_cheat_detection

    def inspect_frames(self, frames: Sequence[Frame]) -> List[FrameEvidence]:
        """Collect evidence from frames while their pixels are still held."""
        if not self.available:
            return []
        return [self._inspect(frame) for frame in frames]

    def evaluate(
        self,
        evidence: Sequence[FrameEvidence],
        series: Sequence,
        test_id: str,
    ) -> IntegrityReport:
        """Run all applicable checks against collected evidence and the extracted series."""
        if not self.available:
            logger.info(f"Integrity check unavailable for {test_id}")
            return IntegrityReport.unavailable()

        checks = self.FRAME_CHECKS + self.CHECKS_BY_TEST.get(test_id, [])
        reasons = {
            check.reason for check in checks
            if check.flagged(evidence, series, self.settings)
        }

        report = IntegrityReport.from_reasons(reasons)
        if report.cheat_detected:
            logger.warning(f"Integrity flags for {test_id}: {sorted(report.reasons)}")
        return report

    def check(
        self,
        frames: Sequence[Frame],
        series: Sequence,
        test_id: str,
    ) -> IntegrityReport:
        """Inspect frames and evaluate in one step."""
        return self.evaluate(self.inspect_frames(frames), series, test_id)

    def _inspect(self, frame: Frame) -> FrameEvidence:
        image = frame.pixels
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image

        histogram = cv2.calcHist([gray], [0], None, [32], [0, 256])
        cv2.normalize(histogram, histogram, alpha=1.0, norm_type=cv2.NORM_L1)

        return FrameEvidence(
            index=frame.index,
            digest=hashlib.sha1(np.ascontiguousarray(image).tobytes()).hexdigest(),
            brightness=float(np.mean(gray)),
            histogram=histogram,
            subject_count=self.subject_detector.count(image),
        )
