"""Tests for assessment.catalog, assessment.config and assessment.errors."""

import dataclasses

import pytest

from assessment.catalog import FITNESS_TESTS, AnalysisKind, TestId, get_test, video_tests
from assessment.config import Settings, get_settings
from assessment.errors import (
    AnalysisError,
    DecodeError,
    InsufficientDataError,
    ModelUnavailableError,
    StageTimeoutError,
    UnsupportedTestError,
)


class TestCatalog:

    def test_battery_has_ten_tests(self):
        assert len(FITNESS_TESTS) == 10
        assert sorted(t.test_number for t in FITNESS_TESTS.values()) == list(range(1, 11))

    def test_descriptors_are_immutable(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            get_test(TestId.SIT_UPS).duration_limit_seconds = 120

    def test_lookup(self):
        sprint = get_test(TestId.SPRINT_30M)
        assert sprint.analysis_kind == AnalysisKind.MOTION
        assert sprint.distance_m == 30.0
        assert get_test(TestId.VERTICAL_JUMP).analysis_kind == AnalysisKind.POSE

    def test_unknown_test(self):
        with pytest.raises(UnsupportedTestError):
            get_test("hurdles")

    def test_video_tests_exclude_manual_measurements(self):
        ids = [t.id for t in video_tests()]
        assert TestId.HEIGHT not in ids
        assert TestId.WEIGHT not in ids
        assert ids[0] == TestId.SIT_AND_REACH
        assert ids[-1] == TestId.ENDURANCE_RUN


class TestSettings:

    def test_defaults(self):
        settings = Settings()
        assert settings.confidence_threshold == 0.7
        assert settings.frame_count_schedule[TestId.VERTICAL_JUMP] == 10
        assert settings.situp_down_angle < settings.situp_up_angle

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("CONFIDENCE_THRESHOLD", "0.8")
        monkeypatch.setenv("POSE_BACKEND", "fallback")
        settings = Settings()
        assert settings.confidence_threshold == 0.8
        assert settings.pose_backend == "fallback"

    def test_json_environment_override(self, monkeypatch):
        monkeypatch.setenv("FRAME_COUNT_SCHEDULE", '{"sit_ups": 45}')
        assert Settings().frame_count_schedule == {"sit_ups": 45}

    def test_get_settings_cached(self):
        assert get_settings() is get_settings()


class TestErrors:

    @pytest.mark.parametrize("error_cls,retryable", [
        (DecodeError, False),
        (InsufficientDataError, False),
        (UnsupportedTestError, False),
        (StageTimeoutError, True),
        (ModelUnavailableError, True),
    ])
    def test_retryability(self, error_cls, retryable):
        error = error_cls("reason")
        assert isinstance(error, AnalysisError)
        assert error.retryable is retryable

    def test_to_dict(self):
        error = DecodeError("cannot open", stage="pending")
        assert error.to_dict() == {
            "error": "decode_error",
            "reason": "cannot open",
            "stage": "pending",
            "retryable": False,
        }
        assert str(error) == "decode_error during pending: cannot open"
