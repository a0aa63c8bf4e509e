"""Pydantic schemas for analysis payloads."""

from assessment.schemas.analysis import (
    AnalysisResultResponse,
    AnalysisFailureResponse,
    convert_numpy_types,
)

__all__ = [
    "AnalysisResultResponse",
    "AnalysisFailureResponse",
    "convert_numpy_types",
]
