"""
Per-test metric extraction.

Each supported test registers one MetricExtractor that turns a pose or
motion series into a single raw value plus a confidence score:

- vertical_jump (pose):   hip rise above standing level, in cm
- sit_ups (pose):         completed repetitions, hysteresis state machine
- sprint_30m (motion):    seconds from movement start to the last sample
- shuttle_run (motion):   seconds across the series, plus agility sub-score

Tests without an extractor raise UnsupportedTestError. A score is never
invented for a test that cannot be measured.

Extractors are pure: they hold no state between calls, and an empty
series always gives value 0 with confidence 0.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Type

import numpy as np

from assessment.catalog import AnalysisKind, TestDescriptor, TestId
from assessment.config import Settings, get_settings
from assessment.cv.motion_tracker import MotionSample, angle_difference
from assessment.cv.pose_estimator import BodyJoint, PoseSample
from assessment.errors import InsufficientDataError, UnsupportedTestError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Calibration:
    """
    Scale reference for converting normalized coordinates to centimeters.

    Provide either cm_per_unit directly (e.g. from a marked distance in
    frame) or the subject's stature in centimeters, which is matched
    against the subject's normalized height in the video.
    """
    cm_per_unit: Optional[float] = None
    reference_height_cm: Optional[float] = None

    def __post_init__(self):
        if self.cm_per_unit is None and self.reference_height_cm is None:
            raise ValueError("Calibration needs cm_per_unit or reference_height_cm")
        if self.cm_per_unit is not None and self.cm_per_unit <= 0:
            raise ValueError("cm_per_unit must be positive")
        if self.reference_height_cm is not None and self.reference_height_cm <= 0:
            raise ValueError("reference_height_cm must be positive")

    def resolve(self, series: Sequence[PoseSample], settings: Settings) -> float:
        """
        Centimeters per normalized frame unit.

        Raises:
            InsufficientDataError: If the scale has to be derived from the
                subject and no frame shows nose and ankles
        """
        if self.cm_per_unit is not None:
            return float(self.cm_per_unit)

        min_conf = settings.keypoint_confidence_threshold
        spans = []
        for sample in series:
            nose = sample.get(BodyJoint.NOSE)
            ankles = sample.ankle_center(min_conf)
            if nose is None or ankles is None or nose.confidence < min_conf:
                continue
            span = ankles[1] - nose.y
            if span > 0.05:
                spans.append(span)

        if not spans:
            raise InsufficientDataError(
                "Cannot derive calibration: subject's full height is never visible"
            )

        stature_units = float(np.median(spans)) / settings.nose_to_ankle_stature_ratio
        return float(self.reference_height_cm) / stature_units


@dataclass(frozen=True)
class MetricReading:
    """Raw metric value with its confidence and optional sub-scores."""
    value: float
    confidence: float
    extras: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "confidence", float(np.clip(self.confidence, 0.0, 1.0)))

    @classmethod
    def nothing(cls) -> "MetricReading":
        return cls(value=0.0, confidence=0.0)


@dataclass
class ExtractionContext:
    """Inputs an extractor may need besides the series itself."""
    descriptor: Optional[TestDescriptor] = None
    calibration: Optional[Calibration] = None
    settings: Settings = field(default_factory=get_settings)


class MetricExtractor(ABC):
    """Base class for per-test metric extractors."""

    test_id: str = ""
    analysis_kind: AnalysisKind = AnalysisKind.NONE
    metric_name: str = ""

    @abstractmethod
    def extract(self, series: Sequence, context: ExtractionContext) -> MetricReading:
        """Compute the metric. Must return MetricReading.nothing() for an empty series."""


EXTRACTORS: Dict[str, MetricExtractor] = {}


def register_extractor(cls: Type[MetricExtractor]) -> Type[MetricExtractor]:
    """Class decorator adding an extractor to the registry under its test_id."""
    if not cls.test_id:
        raise ValueError(f"{cls.__name__} has no test_id")
    EXTRACTORS[cls.test_id] = cls()
    return cls


def get_extractor(test_id: str) -> MetricExtractor:
    """
    Look up the extractor for a test.

    Raises:
        UnsupportedTestError: If no extractor is registered for test_id
    """
    try:
        return EXTRACTORS[test_id]
    except KeyError:
        raise UnsupportedTestError(
            f"No metric extractor registered for test '{test_id}'"
        ) from None


def registered_tests() -> List[str]:
    return sorted(EXTRACTORS)


def _detected(series: Sequence[PoseSample]) -> List[PoseSample]:
    return [s for s in series if not s.is_empty]


# =========================================================
# Pose-based extractors
# =========================================================

@register_extractor
class VerticalJumpExtractor(MetricExtractor):
    """
    Standing vertical jump height.

    The standing level is the median hip height over the first
    jump_baseline_fraction of detected frames; jump height is how far the
    hip midpoint rises above it, converted to cm with the calibration.
    Confidence is the mean pose confidence over frames with a subject.
    """

    test_id = TestId.VERTICAL_JUMP
    analysis_kind = AnalysisKind.POSE
    metric_name = "Jump Height"

    def extract(self, series: Sequence[PoseSample], context: ExtractionContext) -> MetricReading:
        detected = _detected(series)
        if not detected:
            return MetricReading.nothing()

        settings = context.settings
        if context.calibration is None:
            raise InsufficientDataError(
                "Vertical jump needs a calibration reference (subject height or cm per unit)"
            )

        confidence = float(np.mean([s.overall_confidence for s in detected]))

        min_conf = settings.keypoint_confidence_threshold
        hip_ys = [c[1] for c in (s.hip_center(min_conf) for s in detected) if c is not None]
        if not hip_ys:
            return MetricReading.nothing()

        cm_per_unit = context.calibration.resolve(detected, settings)

        baseline_count = max(1, int(round(len(hip_ys) * settings.jump_baseline_fraction)))
        standing_y = float(np.median(hip_ys[:baseline_count]))
        peak_y = float(np.min(hip_ys))  # Image y grows downward
        displacement = max(0.0, standing_y - peak_y)

        return MetricReading(
            value=displacement * cm_per_unit,
            confidence=confidence,
            extras={
                "displacement_normalized": displacement,
                "cm_per_unit": cm_per_unit,
            },
        )


class SitUpState(Enum):
    UNKNOWN = "unknown"
    DOWN = "down"
    UP = "up"


class SitUpCounter:
    """
    Two-state hysteresis counter over the torso angle signal.

    The state only changes when the angle crosses a threshold: at or
    below down_threshold it becomes DOWN, at or above up_threshold it
    becomes UP. A repetition is counted on DOWN -> UP only, so oscillation
    inside the band between the thresholds never counts.
    """

    def __init__(self, down_threshold: float, up_threshold: float):
        if down_threshold >= up_threshold:
            raise ValueError("down_threshold must be below up_threshold")
        self.down_threshold = down_threshold
        self.up_threshold = up_threshold
        self.state = SitUpState.UNKNOWN
        self.count = 0

    def update(self, angle: float) -> bool:
        """Feed one angle. Returns True if it completed a repetition."""
        if angle <= self.down_threshold:
            self.state = SitUpState.DOWN
        elif angle >= self.up_threshold:
            if self.state == SitUpState.DOWN:
                self.state = SitUpState.UP
                self.count += 1
                return True
            self.state = SitUpState.UP
        return False


@register_extractor
class SitUpExtractor(MetricExtractor):
    """Sit-up repetition count. Confidence is the mean pose confidence over all frames."""

    test_id = TestId.SIT_UPS
    analysis_kind = AnalysisKind.POSE
    metric_name = "Repetitions"

    def extract(self, series: Sequence[PoseSample], context: ExtractionContext) -> MetricReading:
        if not series:
            return MetricReading.nothing()

        settings = context.settings
        counter = SitUpCounter(settings.situp_down_angle, settings.situp_up_angle)
        min_conf = settings.keypoint_confidence_threshold

        angles = []
        for sample in series:
            angle = sample.get_torso_angle(min_conf)
            if angle is None:
                continue
            angles.append(angle)
            counter.update(angle)

        confidence = float(np.mean([s.overall_confidence for s in series]))
        angle_range = float(max(angles) - min(angles)) if angles else 0.0

        return MetricReading(
            value=float(counter.count),
            confidence=confidence,
            extras={"angle_range": angle_range},
        )


# =========================================================
# Motion-based extractors
# =========================================================

def _tracked_fraction(series: Sequence[MotionSample]) -> float:
    return sum(1 for s in series if s.tracked) / len(series)


def _direction_consistency(samples: Sequence[MotionSample]) -> float:
    """Mean resultant length of sample directions (1 = all identical)."""
    if not samples:
        return 0.0
    radians = np.radians([s.direction for s in samples])
    return float(math.hypot(np.mean(np.cos(radians)), np.mean(np.sin(radians))))


@register_extractor
class SprintExtractor(MetricExtractor):
    """
    Sprint time from the first moving sample to the end of the series.

    Each MotionSample carries the timestamp of the later frame of its pair,
    so the detected start can trail the true start by one sampling interval.

    Confidence rewards a steady running direction: erratic directions point
    at poor tracking rather than a poor sprint.
    """

    test_id = TestId.SPRINT_30M
    analysis_kind = AnalysisKind.MOTION
    metric_name = "Sprint Time"

    def extract(self, series: Sequence[MotionSample], context: ExtractionContext) -> MetricReading:
        if not series:
            return MetricReading.nothing()

        threshold = context.settings.movement_start_speed
        start = next((i for i, s in enumerate(series) if s.speed > threshold), None)
        if start is None:
            logger.info("Sprint: no movement above start threshold")
            return MetricReading.nothing()

        elapsed = (series[-1].timestamp_ms - series[start].timestamp_ms) / 1000.0
        moving = [s for s in series[start:] if s.speed > threshold]
        confidence = _direction_consistency(moving) * _tracked_fraction(series)

        extras = {"movement_start_ms": float(series[start].timestamp_ms)}
        distance = context.descriptor.distance_m if context.descriptor else None
        if distance and elapsed > 0:
            extras["speed_mps"] = distance / elapsed

        return MetricReading(value=elapsed, confidence=confidence, extras=extras)


@register_extractor
class ShuttleRunExtractor(MetricExtractor):
    """
    Shuttle run time across the whole series, with an agility sub-score.

    Elapsed time runs from the first to the last sample timestamp. Samples
    are stamped with the later frame of each pair, so the first sampling
    interval is not included.

    agility = (direction reversals > 90 degrees + acceleration sign changes)
              / number of samples
    """

    test_id = TestId.SHUTTLE_RUN
    analysis_kind = AnalysisKind.MOTION
    metric_name = "Shuttle Time"

    def extract(self, series: Sequence[MotionSample], context: ExtractionContext) -> MetricReading:
        if not series:
            return MetricReading.nothing()

        threshold = context.settings.movement_start_speed
        elapsed = (series[-1].timestamp_ms - series[0].timestamp_ms) / 1000.0

        reversals = 0
        for prev, curr in zip(series, series[1:]):
            # Direction is meaningless for a stationary subject
            if prev.speed > threshold and curr.speed > threshold:
                if angle_difference(prev.direction, curr.direction) > 90.0:
                    reversals += 1

        signs = [np.sign(s.acceleration) for s in series if abs(s.acceleration) > 1e-9]
        speed_changes = sum(1 for a, b in zip(signs, signs[1:]) if a != b)

        agility = (reversals + speed_changes) / len(series)
        extras = {
            "agility": agility,
            "direction_reversals": float(reversals),
            "speed_changes": float(speed_changes),
        }
        distance = context.descriptor.distance_m if context.descriptor else None
        if distance and elapsed > 0:
            extras["speed_mps"] = distance / elapsed

        return MetricReading(
            value=elapsed,
            confidence=_tracked_fraction(series),
            extras=extras,
        )
