"""Tests for assessment.cv.pose_estimator."""

import numpy as np
import pytest

from conftest import ScriptedEstimator, make_frame, make_frames, make_image, make_pose, make_torso_pose
from assessment.config import Settings
from assessment.cv.frame_sampler import Frame
from assessment.cv.pose_estimator import (
    BodyJoint,
    FallbackEstimator,
    Keypoint,
    ModelBackedEstimator,
    NUM_KEYPOINTS,
    PoseEstimator,
    PoseSample,
    get_estimator,
    list_estimators,
)
from assessment.errors import ModelUnavailableError


class TestPoseSample:

    def test_keypoint_values_clipped(self):
        kp = Keypoint.create(BodyJoint.NOSE, -0.2, 1.4, 1.7)
        assert (kp.x, kp.y, kp.confidence) == (0.0, 1.0, 1.0)

    def test_empty_sample_has_zero_confidence(self):
        sample = PoseSample.empty(4)
        assert sample.is_empty
        assert sample.overall_confidence == 0.0
        assert sample.hip_center() is None

    def test_overall_confidence_is_mean(self):
        array = np.column_stack([np.full((NUM_KEYPOINTS, 2), 0.5), np.linspace(0.0, 1.0, NUM_KEYPOINTS)])
        sample = PoseSample.from_array(0, array)
        assert sample.overall_confidence == pytest.approx(0.5)

    def test_from_array_shape_checked(self):
        with pytest.raises(ValueError):
            PoseSample.from_array(0, np.zeros((33, 3)))

    def test_torso_angle(self):
        assert make_torso_pose(0, 0.0).get_torso_angle() == pytest.approx(0.0, abs=1e-6)
        assert make_torso_pose(0, 45.0).get_torso_angle() == pytest.approx(45.0, abs=1e-6)
        assert make_torso_pose(0, 90.0).get_torso_angle() == pytest.approx(90.0, abs=1e-6)

    def test_low_confidence_joints_ignored(self):
        pose = make_pose(0, confidence=0.2)
        assert pose.hip_center(0.3) is None
        assert pose.get_torso_angle(0.3) is None

    def test_to_dict(self):
        data = make_pose(2).to_dict()
        assert data["frame_index"] == 2
        assert len(data["keypoints"]) == NUM_KEYPOINTS
        assert data["keypoints"][0]["name"] == "nose"


class _BrokenEstimator(PoseEstimator):
    name = "broken"

    def _estimate(self, frame):
        raise RuntimeError("inference crashed")


class _MissingModelEstimator(PoseEstimator):
    name = "missing"

    def _estimate(self, frame):
        raise ModelUnavailableError("no weights")


class _CountingModelEstimator(ModelBackedEstimator):
    name = "counting"

    def __init__(self, fail=False):
        super().__init__(Settings())
        self.fail = fail
        self.loads = 0

    def _load_model(self):
        self.loads += 1
        if self.fail:
            raise OSError("weights corrupted")
        return object()

    def _infer(self, model, image_bgr):
        array = np.zeros((NUM_KEYPOINTS, 3))
        array[:, 2] = 0.8
        return array


class TestPoseEstimator:

    def test_series_length_matches_frames(self):
        estimator = ScriptedEstimator([make_pose(0), make_pose(2)])
        frames = make_frames(4)
        series = estimator.estimate_series(frames)

        assert len(series) == 4
        assert [s.frame_index for s in series] == [0, 1, 2, 3]
        assert series[1].is_empty

    def test_series_of_no_frames(self):
        assert ScriptedEstimator().estimate_series([]) == []

    def test_frame_failure_yields_empty_sample(self):
        sample = _BrokenEstimator().estimate(make_frame(7))
        assert sample.is_empty
        assert sample.frame_index == 7

    def test_released_frame_yields_empty_sample(self):
        frame = make_frame(0)
        frame.release()
        assert FallbackEstimator("contour", Settings()).estimate(frame).is_empty

    def test_model_unavailable_propagates(self):
        with pytest.raises(ModelUnavailableError):
            _MissingModelEstimator().estimate(make_frame(0))

    def test_model_loaded_once(self):
        estimator = _CountingModelEstimator()
        estimator.estimate_series(make_frames(3))
        assert estimator.loads == 1
        assert estimator.is_loaded

    def test_model_load_failure_is_model_unavailable(self):
        estimator = _CountingModelEstimator(fail=True)
        with pytest.raises(ModelUnavailableError):
            estimator.load()


class TestFallbackEstimator:

    def test_unknown_mode_reports_no_pose(self):
        estimator = FallbackEstimator("unknown", Settings())
        sample = estimator.estimate(make_frame(0))
        assert sample.is_empty
        assert sample.overall_confidence == 0.0
        assert estimator.name == "fallback-unknown"

    def test_contour_mode_fits_skeleton_to_blob(self):
        settings = Settings()
        sample = FallbackEstimator("contour", settings).estimate(make_frame(0, make_image(block_x=60)))

        assert len(sample.keypoints) == NUM_KEYPOINTS
        assert 0.0 < sample.overall_confidence <= settings.fallback_confidence_cap
        hip_x, _ = sample.hip_center()
        assert hip_x == pytest.approx(70 / 160, abs=0.05)

    def test_contour_mode_is_deterministic(self):
        estimator = FallbackEstimator("contour", Settings())
        frame = make_frame(0, make_image(block_x=30))
        assert estimator.estimate(frame) == estimator.estimate(frame)

    def test_blank_frame_has_no_subject(self):
        blank = np.full((120, 160, 3), 128, dtype=np.uint8)
        frame = Frame(index=0, timestamp_ms=0, pixels=blank)
        assert FallbackEstimator("contour", Settings()).estimate(frame).is_empty

    def test_invalid_mode_rejected(self):
        with pytest.raises(ValueError):
            FallbackEstimator("random", Settings())


class TestRegistry:

    def test_list_estimators(self):
        assert list_estimators() == ["fallback", "mediapipe", "movenet"]

    def test_get_fallback(self):
        estimator = get_estimator("fallback", mode="unknown", settings=Settings())
        assert isinstance(estimator, FallbackEstimator)

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown pose backend"):
            get_estimator("openpose")
