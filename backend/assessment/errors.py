"""
Error taxonomy for the analysis pipeline.

Every failure a submission can end in is one of these kinds. Each error
carries a human-readable reason and the pipeline stage it occurred in.

- Input errors (DecodeError) need new input before a retry makes sense.
- Resource errors (ModelUnavailableError, StageTimeoutError) are retryable.
- Logic errors (UnsupportedTestError) point at a gap in the test catalog.
- Data errors (InsufficientDataError) mean the submission cannot be measured.

Low confidence and cheat flags are NOT errors; they are reported on the
AnalysisResult.
"""

from typing import Optional


class AnalysisError(Exception):
    """Base class for all pipeline failures."""

    kind: str = "analysis_error"
    retryable: bool = False

    def __init__(self, reason: str, stage: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"{self.kind} during {self.stage}: {self.reason}"
        return f"{self.kind}: {self.reason}"

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "reason": self.reason,
            "stage": self.stage,
            "retryable": self.retryable,
        }


class DecodeError(AnalysisError):
    """Video cannot be opened, has zero duration, or yields no frames."""

    kind = "decode_error"


class InsufficientDataError(AnalysisError):
    """Not enough data to compute the requested signal or metric."""

    kind = "insufficient_data"


class UnsupportedTestError(AnalysisError):
    """No metric extractor is registered for the test."""

    kind = "unsupported_test"


class StageTimeoutError(AnalysisError):
    """A pipeline stage exceeded its wall-clock budget."""

    kind = "stage_timeout"
    retryable = True


class ModelUnavailableError(AnalysisError):
    """A model-backed component could not load its model."""

    kind = "model_unavailable"
    retryable = True


class PipelineCancelledError(Exception):
    """Raised by PipelineOutcome.unwrap() for a cancelled run."""

    def __init__(self, stage: Optional[str] = None):
        super().__init__(f"analysis cancelled before {stage}" if stage else "analysis cancelled")
        self.stage = stage


class PipelineStateError(RuntimeError):
    """The pipeline was driven from a state that does not allow it."""


class FrameReleasedError(RuntimeError):
    """Pixel data was accessed after the frame buffer was released."""
