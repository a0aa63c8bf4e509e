"""Tests for the worker entry point, payload schemas and CLI script."""

import json

import numpy as np
import pytest

from conftest import FixedSubjectDetector, JUMP_HIP_YS, ScriptedEstimator, make_empty_video, make_jump_series
from assessment.catalog import TestId
from assessment.cv.metric_extractor import Calibration
from assessment.cv.pipeline import AnalysisContext, PipelineState
from assessment.cv.pose_estimator import ESTIMATORS
from assessment.errors import ModelUnavailableError, PipelineCancelledError, StageTimeoutError
from assessment.schemas.analysis import AnalysisFailureResponse, convert_numpy_types
from assessment.worker import analyze_video_task, build_calibration, celery_app, failure_payload, run_analysis


@pytest.fixture
def context(settings):
    return AnalysisContext(
        settings,
        pose_estimator=ScriptedEstimator(make_jump_series(JUMP_HIP_YS)),
        subject_detector=FixedSubjectDetector(1),
    )


class TestRunAnalysis:

    def test_completed_payload(self, context, jump_video):
        stages = []
        payload = run_analysis(
            context, jump_video, TestId.VERTICAL_JUMP,
            calibration=Calibration(cm_per_unit=200.0),
            on_stage=lambda event: stages.append(event.state),
        )

        assert payload["status"] == "completed"
        assert payload["raw_value"] == pytest.approx(60.0, abs=0.01)
        assert payload["is_valid"] is True
        assert payload["cheat_detected"] is False
        assert payload["estimator"] == "scripted"
        assert isinstance(payload["analysis_timestamp"], str)
        assert stages[-1] == PipelineState.COMPLETE
        json.dumps(payload)

    def test_failed_payload(self, context, tmp_path):
        video = make_empty_video(tmp_path / "empty.avi")
        payload = run_analysis(context, video, TestId.VERTICAL_JUMP)

        assert payload["status"] == "failed"
        assert payload["error"] == "decode_error"
        assert payload["stage"] == "pending"
        assert payload["retryable"] is False
        assert "raw_value" not in payload

    def test_unknown_test_payload(self, context, jump_video):
        payload = run_analysis(context, jump_video, "hurdles")

        assert payload["status"] == "failed"
        assert payload["error"] == "unsupported_test"

    def test_build_calibration(self):
        assert build_calibration() is None
        assert build_calibration(reference_height_cm=170.0).reference_height_cm == 170.0
        assert build_calibration(cm_per_unit=150.0).cm_per_unit == 150.0


class TestSchemas:

    def test_cancelled_failure(self):
        response = AnalysisFailureResponse.from_error(TestId.SIT_UPS, PipelineCancelledError("extracting"))
        assert response.status == "cancelled"
        assert response.stage == "extracting"

    def test_retryable_failure(self):
        error = StageTimeoutError("too slow", stage="sampling")
        response = AnalysisFailureResponse.from_error(TestId.SIT_UPS, error, attempt=2)
        assert response.retryable is True
        assert response.attempt == 2

    def test_unexpected_failure(self):
        response = AnalysisFailureResponse.from_error(TestId.SIT_UPS, RuntimeError("boom"))
        assert response.error == "RuntimeError"
        assert response.reason == "boom"

    def test_convert_numpy_types(self):
        converted = convert_numpy_types({
            "a": np.float32(1.5),
            "b": [np.int64(3), np.bool_(True)],
            "c": np.zeros(2),
        })
        assert converted == {"a": 1.5, "b": [3, True], "c": [0.0, 0.0]}
        assert type(converted["b"][0]) is int


class TestCelery:

    def test_task_registered(self):
        assert analyze_video_task.name == "analyze_video"
        assert "analyze_video" in celery_app.tasks

    def test_json_only(self):
        assert celery_app.conf.task_serializer == "json"
        assert celery_app.conf.worker_prefetch_multiplier == 1


class TestCommandLine:

    def test_list_tests(self, capsys):
        import analyze_video

        assert analyze_video.main(["--list-tests"]) == 0
        output = capsys.readouterr().out
        assert "vertical_jump" in output
        assert "height" not in output

    def test_missing_arguments(self):
        import analyze_video

        assert analyze_video.main([]) == 2

    def test_analyze_with_fallback_backend(self, jump_video, capsys):
        import analyze_video

        status = analyze_video.main([
            jump_video, "--test", "vertical_jump", "--cm-per-unit", "200",
            "--backend", "fallback", "--no-cheat-detection",
        ])
        payload = json.loads(capsys.readouterr().out)

        assert status == 0
        assert payload["status"] == "completed"
        assert payload["estimator"] == "fallback-contour"
        assert payload["cheat_reasons"] == ["checker_unavailable"]

    def test_unavailable_backend_prints_failure(self, jump_video, monkeypatch, capsys):
        import analyze_video

        monkeypatch.setitem(ESTIMATORS, "movenet", "assessment.cv.not_installed.MissingEstimator")
        status = analyze_video.main([
            jump_video, "--test", "vertical_jump", "--backend", "movenet", "--cm-per-unit", "200",
        ])
        payload = json.loads(capsys.readouterr().out)

        assert status == 1
        assert payload["status"] == "failed"
        assert payload["error"] == "model_unavailable"
        assert payload["stage"] == "pending"
        assert payload["retryable"] is True


class TestUnavailableContext:

    def test_failure_payload_defaults_stage(self):
        payload = failure_payload(TestId.SIT_UPS, ModelUnavailableError("no tensorflow"))

        assert payload["status"] == "failed"
        assert payload["stage"] == "pending"
        assert payload["reason"] == "no tensorflow"

    def test_task_returns_failure_payload(self, monkeypatch):
        def unavailable():
            raise ModelUnavailableError("Pose backend 'movenet' requires additional dependencies")

        monkeypatch.setattr("assessment.worker.get_context", unavailable)
        payload = analyze_video_task("jump.avi", TestId.VERTICAL_JUMP)

        assert payload["status"] == "failed"
        assert payload["error"] == "model_unavailable"
        assert payload["stage"] == "pending"
        assert payload["retryable"] is True
