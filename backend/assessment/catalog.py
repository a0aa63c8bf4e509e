"""
Fitness test catalog.

Static descriptors for every test of the assessment battery. Descriptors
are created once at import time and never mutated; the pipeline reads
them to pick a frame schedule, an analysis branch and a metric extractor.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from assessment.errors import UnsupportedTestError


class AnalysisKind(Enum):
    """Which signal a test is measured from."""
    POSE = "pose"        # Body keypoints per frame
    MOTION = "motion"    # Subject centroid motion between frames
    NONE = "none"        # Manual measurement, no video analysis


@dataclass(frozen=True)
class TestDescriptor:
    """Immutable description of one fitness test."""
    id: str
    name: str
    unit: str
    duration_limit_seconds: float
    analysis_kind: AnalysisKind
    test_number: int = 0
    quality_tested: Optional[str] = None
    requires_video: bool = True
    distance_m: Optional[float] = None

    # Keep pytest from collecting this class
    __test__ = False


class TestId:
    """Test identifiers."""
    HEIGHT = "height"
    WEIGHT = "weight"
    SIT_AND_REACH = "sit_and_reach"
    VERTICAL_JUMP = "vertical_jump"
    BROAD_JUMP = "broad_jump"
    MEDICINE_BALL_THROW = "medicine_ball_throw"
    SPRINT_30M = "sprint_30m"
    SHUTTLE_RUN = "shuttle_run"
    SIT_UPS = "sit_ups"
    ENDURANCE_RUN = "endurance_run"

    __test__ = False


FITNESS_TESTS: Dict[str, TestDescriptor] = {
    TestId.HEIGHT: TestDescriptor(
        id=TestId.HEIGHT,
        name="Height",
        unit="cm",
        duration_limit_seconds=30,
        analysis_kind=AnalysisKind.NONE,
        test_number=1,
        requires_video=False,
    ),
    TestId.WEIGHT: TestDescriptor(
        id=TestId.WEIGHT,
        name="Weight",
        unit="kg",
        duration_limit_seconds=30,
        analysis_kind=AnalysisKind.NONE,
        test_number=2,
        requires_video=False,
    ),
    TestId.SIT_AND_REACH: TestDescriptor(
        id=TestId.SIT_AND_REACH,
        name="Sit and Reach",
        unit="cm",
        duration_limit_seconds=60,
        analysis_kind=AnalysisKind.POSE,
        test_number=3,
        quality_tested="Flexibility",
    ),
    TestId.VERTICAL_JUMP: TestDescriptor(
        id=TestId.VERTICAL_JUMP,
        name="Standing Vertical Jump",
        unit="cm",
        duration_limit_seconds=45,
        analysis_kind=AnalysisKind.POSE,
        test_number=4,
        quality_tested="Lower Body Explosive Strength",
    ),
    TestId.BROAD_JUMP: TestDescriptor(
        id=TestId.BROAD_JUMP,
        name="Standing Broad Jump",
        unit="cm",
        duration_limit_seconds=45,
        analysis_kind=AnalysisKind.POSE,
        test_number=5,
        quality_tested="Lower Body Explosive Strength",
    ),
    TestId.MEDICINE_BALL_THROW: TestDescriptor(
        id=TestId.MEDICINE_BALL_THROW,
        name="Medicine Ball Throw",
        unit="m",
        duration_limit_seconds=60,
        analysis_kind=AnalysisKind.MOTION,
        test_number=6,
        quality_tested="Upper Body Strength",
    ),
    TestId.SPRINT_30M: TestDescriptor(
        id=TestId.SPRINT_30M,
        name="30m Standing Start",
        unit="seconds",
        duration_limit_seconds=15,
        analysis_kind=AnalysisKind.MOTION,
        test_number=7,
        quality_tested="Speed",
        distance_m=30.0,
    ),
    TestId.SHUTTLE_RUN: TestDescriptor(
        id=TestId.SHUTTLE_RUN,
        name="4 x 10m Shuttle Run",
        unit="seconds",
        duration_limit_seconds=30,
        analysis_kind=AnalysisKind.MOTION,
        test_number=8,
        quality_tested="Agility",
        distance_m=40.0,
    ),
    TestId.SIT_UPS: TestDescriptor(
        id=TestId.SIT_UPS,
        name="Sit Ups",
        unit="count",
        duration_limit_seconds=60,
        analysis_kind=AnalysisKind.POSE,
        test_number=9,
        quality_tested="Core Strength",
    ),
    TestId.ENDURANCE_RUN: TestDescriptor(
        id=TestId.ENDURANCE_RUN,
        name="Endurance Run",
        unit="minutes",
        duration_limit_seconds=600,
        analysis_kind=AnalysisKind.MOTION,
        test_number=10,
        quality_tested="Endurance",
    ),
}


def get_test(test_id: str) -> TestDescriptor:
    """Look up a test descriptor by id."""
    try:
        return FITNESS_TESTS[test_id]
    except KeyError:
        raise UnsupportedTestError(f"Unknown test id: {test_id!r}") from None


def video_tests() -> List[TestDescriptor]:
    """Tests that are submitted as a recorded video, in battery order."""
    return sorted(
        (t for t in FITNESS_TESTS.values() if t.requires_video),
        key=lambda t: t.test_number,
    )
