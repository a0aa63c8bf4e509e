"""
Analysis pipeline orchestrator.

One AnalysisPipeline drives one submission (video + test descriptor)
through a strict state machine:

    PENDING -> SAMPLING -> EXTRACTING -> CHECKING -> COMPLETE

FAILED and CANCELLED are terminal and reachable from any non-terminal
state. Stages never overlap and no state is revisited within an attempt.

PENDING:     extractor lookup + video preflight (bad input fails here)
SAMPLING:    FrameSampler with the configured frame count for the test
EXTRACTING:  PoseEstimator or MotionTracker, then the MetricExtractor;
             integrity evidence is collected and frames are released
CHECKING:    IntegrityChecker, always, regardless of confidence
COMPLETE:    immutable AnalysisResult

Models and detectors live in a shared, read-only AnalysisContext; every
pipeline owns only its frames and series. A FAILED or CANCELLED pipeline
can be run again, which starts a fresh attempt from PENDING.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Union

from assessment.catalog import AnalysisKind, TestDescriptor
from assessment.config import Settings, get_settings
from assessment.cv.frame_sampler import Frame, FrameSampler, release_frames
from assessment.cv.integrity_checker import HogSubjectDetector, IntegrityChecker, SubjectDetector
from assessment.cv.metric_extractor import (
    Calibration,
    ExtractionContext,
    MetricExtractor,
    get_extractor,
)
from assessment.cv.motion_tracker import MotionTracker
from assessment.cv.pose_estimator import PoseEstimator, get_estimator
from assessment.errors import (
    AnalysisError,
    PipelineCancelledError,
    PipelineStateError,
    StageTimeoutError,
    UnsupportedTestError,
)

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    PENDING = "pending"
    SAMPLING = "sampling"
    EXTRACTING = "extracting"
    CHECKING = "checking"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.COMPLETE, PipelineState.FAILED, PipelineState.CANCELLED)


# Coarse progress reported on entry to each state
STAGE_PROGRESS = {
    PipelineState.PENDING: 0.0,
    PipelineState.SAMPLING: 0.1,
    PipelineState.EXTRACTING: 0.3,
    PipelineState.CHECKING: 0.8,
    PipelineState.COMPLETE: 1.0,
    PipelineState.FAILED: 1.0,
    PipelineState.CANCELLED: 1.0,
}


@dataclass(frozen=True)
class StageEvent:
    """Published to listeners on every state transition."""
    test_id: str
    state: PipelineState
    previous: Optional[PipelineState]
    attempt: int
    progress: float
    timestamp: datetime


StageListener = Callable[[StageEvent], None]


class CancellationToken:
    """Cooperative cancellation flag, checked between stages."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class AnalysisResult:
    """
    Final, immutable outcome of a completed analysis.

    is_valid is derived from confidence and the threshold in force when the
    result was built, so the two can never disagree. is_valid and
    cheat_detected are independent: a measurement can be confident and
    flagged, or clean and unreliable.
    """
    test_id: str
    raw_value: float
    metric_name: str
    unit: str
    confidence: float
    confidence_threshold: float
    cheat_detected: bool
    cheat_reasons: FrozenSet[str]
    integrity_checked: bool
    analysis_timestamp: datetime
    estimator: str
    attempt: int = 1
    extras: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def is_valid(self) -> bool:
        return self.confidence >= self.confidence_threshold

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary for storage."""
        return {
            "test_id": self.test_id,
            "raw_value": self.raw_value,
            "metric_name": self.metric_name,
            "unit": self.unit,
            "confidence": self.confidence,
            "confidence_threshold": self.confidence_threshold,
            "is_valid": self.is_valid,
            "cheat_detected": self.cheat_detected,
            "cheat_reasons": sorted(self.cheat_reasons),
            "integrity_checked": self.integrity_checked,
            "analysis_timestamp": self.analysis_timestamp.isoformat(),
            "estimator": self.estimator,
            "attempt": self.attempt,
            "extras": dict(self.extras),
        }


@dataclass(frozen=True)
class PipelineOutcome:
    """What one run() ended in: a result, or the error that stopped it."""
    state: PipelineState
    attempt: int
    result: Optional[AnalysisResult] = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.COMPLETE

    def unwrap(self) -> AnalysisResult:
        """Return the result, or raise the error the run ended with."""
        if self.result is not None:
            return self.result
        if self.error is not None:
            raise self.error
        raise PipelineStateError(f"Pipeline ended in {self.state.value} without a result")


class AnalysisContext:
    """
    Shared, read-only collaborators for any number of pipelines.

    Construct once per process (or per test) and pass to every
    AnalysisPipeline. All members are safe for concurrent use.

    Args:
        settings: Application settings
        pose_estimator: Pose backend (defaults to settings.pose_backend)
        subject_detector: People detector for integrity checks; defaults to
            the HOG detector when cheat detection is enabled
        sampler / motion_tracker / integrity_checker: Override components
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        pose_estimator: Optional[PoseEstimator] = None,
        subject_detector: Optional[SubjectDetector] = None,
        sampler: Optional[FrameSampler] = None,
        motion_tracker: Optional[MotionTracker] = None,
        integrity_checker: Optional[IntegrityChecker] = None,
    ):
        self.settings = settings or get_settings()

        if pose_estimator is None:
            pose_estimator = get_estimator(self.settings.pose_backend, settings=self.settings)
        self.pose_estimator = pose_estimator

        if subject_detector is None and integrity_checker is None and self.settings.enable_cheat_detection:
            subject_detector = HogSubjectDetector(self.settings)

        self.sampler = sampler or FrameSampler(self.settings)
        self.motion_tracker = motion_tracker or MotionTracker(
            self.settings,
            pose_estimator=self.pose_estimator if self.settings.motion_use_pose else None,
        )
        self.integrity_checker = integrity_checker or IntegrityChecker(subject_detector, self.settings)

        logger.info(
            f"Analysis context ready: pose={self.pose_estimator.name}, "
            f"integrity={'on' if self.integrity_checker.available else 'unavailable'}"
        )

    @property
    def estimator_name(self) -> str:
        return self.pose_estimator.name

    def close(self) -> None:
        """Release model resources."""
        self.pose_estimator.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def resolve_frame_count(descriptor: TestDescriptor, settings: Settings) -> int:
    """
    Frames to sample for a test.

    The per-test schedule wins; otherwise the first duration band whose
    upper bound covers the test's duration limit is used.
    """
    scheduled = settings.frame_count_schedule.get(descriptor.id)
    if scheduled:
        return int(scheduled)

    bands = sorted(settings.frame_count_bands)
    if not bands:
        raise ValueError("frame_count_bands is empty")
    for max_duration, count in bands:
        if descriptor.duration_limit_seconds <= max_duration:
            return int(count)
    return int(bands[-1][1])


def resolve_stage_timeout(test_id: str, stage: PipelineState, settings: Settings) -> Optional[float]:
    """Wall-clock budget for a stage in seconds, None for no limit."""
    overrides = settings.stage_timeout_overrides.get(test_id, {})
    timeout = overrides.get(stage.value, settings.stage_timeouts.get(stage.value))
    if timeout is None or timeout <= 0:
        return None
    return float(timeout)


@dataclass
class _Extraction:
    series: List
    evidence: List
    value: float
    confidence: float
    extras: Dict[str, float]


class AnalysisPipeline:
    """
    Drives one submission through the analysis state machine.

    Args:
        context: Shared AnalysisContext
        video: Path or URI of the recorded video
        descriptor: Test being analyzed
        calibration: Scale reference for distance metrics
        cancellation: Token checked between stages
        listeners: Callables receiving a StageEvent on every transition
    """

    def __init__(
        self,
        context: AnalysisContext,
        video: Union[str, Path],
        descriptor: TestDescriptor,
        calibration: Optional[Calibration] = None,
        cancellation: Optional[CancellationToken] = None,
        listeners: Optional[List[StageListener]] = None,
    ):
        self.context = context
        self.video = video
        self.descriptor = descriptor
        self.calibration = calibration
        self.cancellation = cancellation or CancellationToken()
        self.listeners: List[StageListener] = list(listeners or [])

        self.state = PipelineState.PENDING
        self.attempt = 0
        self.result: Optional[AnalysisResult] = None
        self.error: Optional[BaseException] = None
        self.frames_released = 0

        self._frames: Optional[List[Frame]] = None
        self._running = threading.Lock()

    @property
    def settings(self) -> Settings:
        return self.context.settings

    def add_listener(self, listener: StageListener) -> None:
        self.listeners.append(listener)

    def cancel(self) -> None:
        """Request cancellation; takes effect at the next stage boundary."""
        self.cancellation.cancel()

    # =========================================================
    # Run
    # =========================================================

    def run(self) -> PipelineOutcome:
        """
        Run one attempt.

        Returns a PipelineOutcome for COMPLETE, FAILED and CANCELLED runs.
        Exceptions that are not AnalysisErrors are re-raised after the
        pipeline records FAILED and releases its frames.

        Raises:
            PipelineStateError: If the pipeline already completed or is running
        """
        if not self._running.acquire(blocking=False):
            raise PipelineStateError("Pipeline is already running")

        try:
            if self.state == PipelineState.COMPLETE:
                raise PipelineStateError("Pipeline already completed; results are never recomputed")
            if self.attempt > 0 and not self.state.is_terminal:
                raise PipelineStateError(f"Cannot restart from {self.state.value}")
            return self._run_attempt()
        finally:
            self._running.release()

    def _run_attempt(self) -> PipelineOutcome:
        self.attempt += 1
        self.result = None
        self.error = None
        self.frames_released = 0
        self._frames = None

        test_id = self.descriptor.id
        logger.info(f"Starting analysis of {test_id} (attempt {self.attempt}): {self.video}")
        self._transition(PipelineState.PENDING)

        try:
            # =========================================================
            # PENDING: lookup + preflight
            # =========================================================
            extractor = self._prepare()

            self._checkpoint(PipelineState.SAMPLING)
            frame_count = resolve_frame_count(self.descriptor, self.settings)
            self._frames = self._run_stage(PipelineState.SAMPLING, self._sample, frame_count)

            self._checkpoint(PipelineState.EXTRACTING)
            extraction = self._run_stage(
                PipelineState.EXTRACTING, self._extract, self._frames, extractor
            )
            self._release_frames()

            self._checkpoint(PipelineState.CHECKING)
            report = self._run_stage(
                PipelineState.CHECKING,
                self.context.integrity_checker.evaluate,
                extraction.evidence,
                extraction.series,
                test_id,
            )

            self.result = AnalysisResult(
                test_id=test_id,
                raw_value=float(extraction.value),
                metric_name=extractor.metric_name,
                unit=self.descriptor.unit,
                confidence=float(extraction.confidence),
                confidence_threshold=self.settings.confidence_threshold,
                cheat_detected=report.cheat_detected,
                cheat_reasons=report.reasons,
                integrity_checked=report.checked,
                analysis_timestamp=datetime.now(timezone.utc),
                estimator=self._provenance(),
                attempt=self.attempt,
                extras=MappingProxyType(dict(extraction.extras)),
            )
            self._transition(PipelineState.COMPLETE)

            logger.info(
                f"Analysis complete for {test_id}: {self.result.raw_value:.2f} {self.result.unit}, "
                f"confidence {self.result.confidence:.2f} "
                f"({'valid' if self.result.is_valid else 'low confidence'}), "
                f"cheat_detected={self.result.cheat_detected}"
            )
            return self._outcome()

        except PipelineCancelledError as e:
            self._release_frames()
            self.error = e
            logger.info(f"Analysis of {test_id} cancelled before {e.stage}")
            self._transition(PipelineState.CANCELLED)
            return self._outcome()

        except AnalysisError as e:
            if e.stage is None:
                e.stage = self.state.value
            self._release_frames()
            self.error = e
            logger.warning(f"Analysis of {test_id} failed: {e}")
            self._transition(PipelineState.FAILED)
            return self._outcome()

        except Exception as e:
            self._release_frames()
            self.error = e
            logger.exception(f"Unexpected error analyzing {test_id} during {self.state.value}: {e}")
            self._transition(PipelineState.FAILED)
            raise

        finally:
            self._release_frames()

    def _outcome(self) -> PipelineOutcome:
        return PipelineOutcome(
            state=self.state,
            attempt=self.attempt,
            result=self.result,
            error=self.error,
        )

    # =========================================================
    # Stages
    # =========================================================

    def _prepare(self) -> MetricExtractor:
        descriptor = self.descriptor
        if descriptor.analysis_kind == AnalysisKind.NONE or not descriptor.requires_video:
            raise UnsupportedTestError(f"Test '{descriptor.id}' has no video analysis")

        extractor = get_extractor(descriptor.id)
        if extractor.analysis_kind != descriptor.analysis_kind:
            raise UnsupportedTestError(
                f"Extractor for '{descriptor.id}' expects {extractor.analysis_kind.value} "
                f"analysis, test is {descriptor.analysis_kind.value}"
            )

        info = self.context.sampler.probe(self.video)
        logger.info(f"Video: {info.duration_seconds:.1f}s, {info.fps:.1f}fps, "
                    f"{info.width}x{info.height}")
        return extractor

    def _sample(self, frame_count: int) -> List[Frame]:
        return self.context.sampler.sample(
            self.video, frame_count, release_hook=self._on_frame_released
        )

    def _extract(self, frames: List[Frame], extractor: MetricExtractor) -> _Extraction:
        if self.descriptor.analysis_kind == AnalysisKind.POSE:
            series = self.context.pose_estimator.estimate_series(frames)
            detected = sum(1 for s in series if not s.is_empty)
            logger.info(f"Pose found in {detected}/{len(series)} frames")
        else:
            series = self.context.motion_tracker.track(frames)

        evidence = self.context.integrity_checker.inspect_frames(frames)

        reading = extractor.extract(
            series,
            ExtractionContext(
                descriptor=self.descriptor,
                calibration=self.calibration,
                settings=self.settings,
            ),
        )
        return _Extraction(
            series=series,
            evidence=evidence,
            value=reading.value,
            confidence=reading.confidence,
            extras=dict(reading.extras),
        )

    def _run_stage(self, stage: PipelineState, fn: Callable, *args):
        """
        Run a stage body within its wall-clock budget.

        The body runs on a worker thread so the budget holds even while it
        blocks in decoding or inference. A timed-out body is not interrupted;
        frames it produces afterwards are released as soon as it finishes.
        """
        timeout = resolve_stage_timeout(self.descriptor.id, stage, self.settings)
        if timeout is None:
            return fn(*args)

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"analysis-{stage.value}")
        future = executor.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            if stage == PipelineState.SAMPLING:
                future.add_done_callback(_release_late_frames)
            raise StageTimeoutError(
                f"{stage.value} exceeded its {timeout:.1f}s budget", stage=stage.value
            ) from None
        finally:
            executor.shutdown(wait=False)

    # =========================================================
    # Helpers
    # =========================================================

    def _checkpoint(self, next_state: PipelineState) -> None:
        """Honor cancellation at a stage boundary, then enter the next state."""
        if self.cancellation.cancelled:
            raise PipelineCancelledError(stage=next_state.value)
        self._transition(next_state)

    def _transition(self, state: PipelineState) -> None:
        previous = self.state if self.state != state else None
        self.state = state
        logger.debug(f"{self.descriptor.id}: {previous.value if previous else '-'} -> {state.value}")

        event = StageEvent(
            test_id=self.descriptor.id,
            state=state,
            previous=previous,
            attempt=self.attempt,
            progress=STAGE_PROGRESS[state],
            timestamp=datetime.now(timezone.utc),
        )
        for listener in self.listeners:
            listener(event)

    def _on_frame_released(self, frame: Frame) -> None:
        self.frames_released += 1
        hook = self.context.sampler.release_hook
        if hook is not None:
            hook(frame)

    def _release_frames(self) -> None:
        if self._frames is not None:
            freed = release_frames(self._frames)
            if freed:
                logger.debug(f"Released {freed} frame buffers")
            self._frames = None

    def _provenance(self) -> str:
        if self.descriptor.analysis_kind == AnalysisKind.POSE:
            return self.context.estimator_name
        return self.context.motion_tracker.source_name


def _release_late_frames(future) -> None:
    """Done-callback for a timed-out sampling stage."""
    if future.cancelled() or future.exception() is not None:
        return
    freed = release_frames(future.result())
    logger.debug(f"Released {freed} frames from timed-out sampling stage")
