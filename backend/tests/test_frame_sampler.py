"""Tests for assessment.cv.frame_sampler."""

import numpy as np
import pytest

from conftest import make_empty_video, make_image, make_video
from assessment.config import Settings
from assessment.cv.frame_sampler import Frame, FrameSampler, release_frames
from assessment.errors import DecodeError, FrameReleasedError


class TestFrame:

    def test_pixels_are_read_only(self):
        frame = Frame(index=0, timestamp_ms=0, pixels=make_image())
        with pytest.raises(ValueError):
            frame.pixels[0, 0, 0] = 1

    def test_caller_array_stays_writable(self):
        image = make_image()
        frame = Frame(index=0, timestamp_ms=0, pixels=image)

        image[0, 0, 0] = 7
        assert image.flags.writeable
        assert frame.pixels[0, 0, 0] == 7

    def test_release_drops_pixels(self):
        frame = Frame(index=3, timestamp_ms=300, pixels=make_image())
        frame.release()
        assert frame.released
        with pytest.raises(FrameReleasedError):
            _ = frame.pixels

    def test_release_hook_called_once(self):
        released = []
        frame = Frame(index=0, timestamp_ms=0, pixels=make_image(), on_release=released.append)
        frame.release()
        frame.release()
        assert released == [frame]

    def test_negative_index_rejected(self):
        with pytest.raises(ValueError):
            Frame(index=-1, timestamp_ms=0, pixels=make_image())

    def test_release_frames_counts_only_live_buffers(self):
        frames = [Frame(index=i, timestamp_ms=i * 100, pixels=make_image()) for i in range(3)]
        frames[0].release()
        assert release_frames(frames) == 2
        assert release_frames(frames) == 0
        assert release_frames(None) == 0


class TestFrameSampler:

    def test_uniform_spacing(self, jump_video, settings):
        frames = FrameSampler(settings).sample(jump_video, 10)

        assert len(frames) == 10
        assert [f.index for f in frames] == list(range(10))
        assert [f.source_index for f in frames] == list(range(0, 30, 3))
        assert [f.timestamp_ms for f in frames] == list(range(0, 1000, 100))

    def test_deterministic(self, jump_video, settings):
        sampler = FrameSampler(settings)
        first = sampler.sample(jump_video, 10)
        second = sampler.sample(jump_video, 10)

        assert [f.timestamp_ms for f in first] == [f.timestamp_ms for f in second]
        for a, b in zip(first, second):
            assert np.array_equal(a.pixels, b.pixels)

    def test_short_video_never_repeats_frames(self, tmp_path, settings):
        video = make_video(tmp_path / "short.avi", n_frames=5)
        frames = FrameSampler(settings).sample(video, 10)

        sources = [f.source_index for f in frames]
        assert len(frames) <= 10
        assert len(sources) == len(set(sources))
        assert sources == sorted(sources)

    def test_zero_frame_count_rejected(self, jump_video, settings):
        with pytest.raises(ValueError):
            FrameSampler(settings).sample(jump_video, 0)

    def test_missing_video_raises_decode_error(self, tmp_path, settings):
        with pytest.raises(DecodeError):
            FrameSampler(settings).sample(str(tmp_path / "missing.avi"), 10)

    def test_zero_duration_video_raises_decode_error(self, tmp_path, settings):
        video = make_empty_video(tmp_path / "empty.avi")
        with pytest.raises(DecodeError):
            FrameSampler(settings).sample(video, 10)

    def test_garbage_file_raises_decode_error(self, tmp_path, settings):
        path = tmp_path / "garbage.mp4"
        path.write_bytes(b"not a video")
        with pytest.raises(DecodeError):
            FrameSampler(settings).probe(path)

    def test_probe_reads_metadata(self, jump_video, settings):
        info = FrameSampler(settings).probe(jump_video)
        assert info.total_frames == 30
        assert info.fps == pytest.approx(30.0)
        assert info.duration_seconds == pytest.approx(1.0)
        assert (info.width, info.height) == (160, 120)

    def test_wide_frames_are_downscaled(self, jump_video):
        frames = FrameSampler(Settings(max_frame_width=80)).sample(jump_video, 4)
        assert frames[0].shape[:2] == (60, 80)

    def test_sampler_release_hook(self, jump_video, settings):
        released = []
        frames = FrameSampler(settings, release_hook=released.append).sample(jump_video, 5)
        release_frames(frames)
        assert len(released) == len(frames)
