"""
Computer vision pipeline for fitness test analysis.

PIPELINE COMPONENTS:
1. FrameSampler: Uniform-spacing, deterministic frame sampling
2. PoseEstimator: 17-keypoint pose per frame (MediaPipe, MoveNet or fallback)
3. MotionTracker: Subject position, speed, direction, acceleration
4. MetricExtractor: Per-test raw value + confidence (registry)
5. IntegrityChecker: Multi-subject, tamper and test-specific cheat checks
6. AnalysisPipeline: PENDING -> SAMPLING -> EXTRACTING -> CHECKING -> COMPLETE

Model backends (mediapipe, movenet) are imported lazily through
get_estimator(), so only the selected backend's libraries are needed.

Usage:
    from assessment.catalog import get_test
    from assessment.cv import AnalysisContext, AnalysisPipeline, Calibration

    context = AnalysisContext()
    pipeline = AnalysisPipeline(
        context, "jump.mp4", get_test("vertical_jump"),
        calibration=Calibration(reference_height_cm=172),
    )
    result = pipeline.run().unwrap()
    print(f"{result.raw_value:.1f} {result.unit} (valid={result.is_valid})")
"""

from assessment.cv.frame_sampler import Frame, FrameSampler, VideoInfo, release_frames
from assessment.cv.pose_estimator import (
    BodyJoint,
    Keypoint,
    PoseSample,
    PoseEstimator,
    ModelBackedEstimator,
    FallbackEstimator,
    get_estimator,
    list_estimators,
)
from assessment.cv.motion_tracker import MotionSample, MotionTracker
from assessment.cv.metric_extractor import (
    Calibration,
    ExtractionContext,
    MetricExtractor,
    MetricReading,
    SitUpCounter,
    get_extractor,
    registered_tests,
)
from assessment.cv.integrity_checker import (
    CHECKER_UNAVAILABLE,
    FrameEvidence,
    HogSubjectDetector,
    IntegrityChecker,
    IntegrityReport,
    SubjectDetector,
)
from assessment.cv.pipeline import (
    AnalysisContext,
    AnalysisPipeline,
    AnalysisResult,
    CancellationToken,
    PipelineOutcome,
    PipelineState,
    StageEvent,
)

__all__ = [
    # Frame sampling
    "Frame",
    "FrameSampler",
    "VideoInfo",
    "release_frames",

    # Pose estimation
    "BodyJoint",
    "Keypoint",
    "PoseSample",
    "PoseEstimator",
    "ModelBackedEstimator",
    "FallbackEstimator",
    "get_estimator",
    "list_estimators",

    # Motion tracking
    "MotionSample",
    "MotionTracker",

    # Metric extraction
    "Calibration",
    "ExtractionContext",
    "MetricExtractor",
    "MetricReading",
    "SitUpCounter",
    "get_extractor",
    "registered_tests",

    # Integrity
    "CHECKER_UNAVAILABLE",
    "FrameEvidence",
    "HogSubjectDetector",
    "IntegrityChecker",
    "IntegrityReport",
    "SubjectDetector",

    # Orchestration
    "AnalysisContext",
    "AnalysisPipeline",
    "AnalysisResult",
    "CancellationToken",
    "PipelineOutcome",
    "PipelineState",
    "StageEvent",
]
