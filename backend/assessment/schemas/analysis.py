"""Analysis result schemas."""

from datetime import datetime
from typing import Dict, List, Optional

import numpy as np
from pydantic import BaseModel, Field

from assessment.errors import AnalysisError, PipelineCancelledError


def convert_numpy_types(obj):
    """Recursively convert numpy types to Python native types for JSON serialization."""
    if isinstance(obj, dict):
        return {k: convert_numpy_types(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [convert_numpy_types(item) for item in obj]
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.bool_):
        return bool(obj)
    return obj


class AnalysisResultResponse(BaseModel):
    """Completed analysis, possibly low-confidence or flagged."""
    status: str = "completed"
    test_id: str
    raw_value: float
    metric_name: str
    unit: str

    # Validity: is_valid == confidence >= confidence_threshold
    confidence: float = Field(..., ge=0.0, le=1.0)
    confidence_threshold: float
    is_valid: bool

    # Integrity (independent of validity)
    cheat_detected: bool
    cheat_reasons: List[str] = []
    integrity_checked: bool

    analysis_timestamp: datetime
    estimator: str
    attempt: int = 1
    extras: Dict[str, float] = {}

    class Config:
        from_attributes = True

    @classmethod
    def from_result(cls, result) -> "AnalysisResultResponse":
        """Build from an AnalysisResult."""
        return cls.model_validate(convert_numpy_types(result.to_dict()))


class AnalysisFailureResponse(BaseModel):
    """Analysis that did not produce a measurement."""
    status: str  # "failed" or "cancelled"
    test_id: str
    error: str
    reason: str
    stage: Optional[str] = None
    retryable: bool = False
    attempt: int = 1

    @classmethod
    def from_error(cls, test_id: str, error: BaseException, attempt: int = 1) -> "AnalysisFailureResponse":
        if isinstance(error, PipelineCancelledError):
            return cls(
                status="cancelled",
                test_id=test_id,
                error="cancelled",
                reason=str(error),
                stage=error.stage,
                attempt=attempt,
            )
        if isinstance(error, AnalysisError):
            return cls(status="failed", test_id=test_id, attempt=attempt, **error.to_dict())
        return cls(
            status="failed",
            test_id=test_id,
            error=type(error).__name__,
            reason=str(error),
            attempt=attempt,
        )
