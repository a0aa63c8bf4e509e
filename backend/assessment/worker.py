"""Celery worker for async test video analysis."""

import logging
from functools import lru_cache
from typing import Any, Callable, Dict, Optional

from celery import Celery

from assessment.catalog import get_test
from assessment.config import get_settings
from assessment.cv.metric_extractor import Calibration
from assessment.cv.pipeline import AnalysisContext, AnalysisPipeline, StageEvent
from assessment.errors import AnalysisError
from assessment.schemas.analysis import AnalysisFailureResponse, AnalysisResultResponse

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "fitness_analysis",
    broker=settings.redis_url,
    backend=settings.redis_url
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=1800,  # 30 minutes max per submission
    worker_prefetch_multiplier=1,  # Process one submission at a time
)


@lru_cache
def get_context() -> AnalysisContext:
    """Analysis context shared by every task in this worker process."""
    return AnalysisContext(get_settings())


def build_calibration(
    reference_height_cm: Optional[float] = None,
    cm_per_unit: Optional[float] = None,
) -> Optional[Calibration]:
    if reference_height_cm is None and cm_per_unit is None:
        return None
    return Calibration(cm_per_unit=cm_per_unit, reference_height_cm=reference_height_cm)


def failure_payload(test_id: str, error: AnalysisError, stage: str = "pending") -> Dict[str, Any]:
    """Failure payload for errors raised before a pipeline runs."""
    error.stage = error.stage or stage
    return AnalysisFailureResponse.from_error(test_id, error).model_dump(mode="json")


def run_analysis(
    context: AnalysisContext,
    video_path: str,
    test_id: str,
    calibration: Optional[Calibration] = None,
    on_stage: Optional[Callable[[StageEvent], None]] = None,
) -> Dict[str, Any]:
    """
    Analyze one submission and return a JSON-serializable payload.

    Completed analyses (including low-confidence or flagged ones) return an
    AnalysisResultResponse payload; failures and cancellations return an
    AnalysisFailureResponse payload, so callers never mistake a failure
    for a score.
    """
    try:
        descriptor = get_test(test_id)
    except AnalysisError as e:
        return failure_payload(test_id, e)

    pipeline = AnalysisPipeline(
        context,
        video_path,
        descriptor,
        calibration=calibration,
        listeners=[on_stage] if on_stage else None,
    )
    outcome = pipeline.run()

    if outcome.result is not None:
        return AnalysisResultResponse.from_result(outcome.result).model_dump(mode="json")
    return AnalysisFailureResponse.from_error(
        test_id, outcome.error, attempt=outcome.attempt
    ).model_dump(mode="json")


@celery_app.task(bind=True, name="analyze_video")
def analyze_video_task(
    self,
    video_path: str,
    test_id: str,
    reference_height_cm: Optional[float] = None,
    cm_per_unit: Optional[float] = None,
):
    """
    Analyze a recorded test video asynchronously.

    Stages:
    1. Preflight (test lookup, video probe)
    2. Frame sampling
    3. Pose / motion extraction and metric computation
    4. Integrity checks
    5. Result payload

    Progress is published as PROGRESS state updates with the current stage.
    """
    logger.info(f"Starting analysis task for {test_id}: {video_path}")

    def report_stage(event: StageEvent):
        self.update_state(
            state="PROGRESS",
            meta={
                "test_id": event.test_id,
                "stage": event.state.value,
                "progress": event.progress,
                "attempt": event.attempt,
            },
        )

    try:
        context = get_context()
    except AnalysisError as e:
        # Not cached, so the next task tries to load the backend again
        logger.warning(f"Analysis context unavailable for {test_id}: {e}")
        return failure_payload(test_id, e)

    try:
        payload = run_analysis(
            context,
            video_path,
            test_id,
            calibration=build_calibration(reference_height_cm, cm_per_unit),
            on_stage=report_stage,
        )
    except Exception as e:
        logger.exception(f"Error analyzing {test_id} video {video_path}: {e}")
        raise

    logger.info(f"Analysis task for {test_id} finished: {payload['status']}")
    return payload
