"""
Deterministic frame sampling from recorded test videos.

Frames are taken at UNIFORM temporal spacing (duration / frame_count) and
mapped to the nearest source frame. The same source frame is never
returned twice, so very short videos yield fewer frames than requested.

Frames own large pixel buffers. They are released explicitly by the
pipeline invocation that sampled them instead of waiting for the garbage
collector.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Union

import cv2
import numpy as np

from assessment.config import Settings, get_settings
from assessment.errors import DecodeError, FrameReleasedError

logger = logging.getLogger(__name__)

VideoReference = Union[str, Path]


class Frame:
    """
    Immutable still image sampled from a video.

    Pixel data is a read-only BGR array. Once release() has been called the
    buffer is dropped and any access to pixels raises FrameReleasedError.
    """

    __slots__ = ("_index", "_timestamp_ms", "_source_index", "_pixels", "_on_release")

    def __init__(
        self,
        index: int,
        timestamp_ms: int,
        pixels: np.ndarray,
        source_index: Optional[int] = None,
        on_release: Optional[Callable[["Frame"], None]] = None,
    ):
        if index < 0 or timestamp_ms < 0:
            raise ValueError("Frame index and timestamp must be non-negative")
        pixels = np.asarray(pixels).view()
        pixels.flags.writeable = False
        self._index = int(index)
        self._timestamp_ms = int(timestamp_ms)
        self._source_index = int(source_index) if source_index is not None else int(index)
        self._pixels: Optional[np.ndarray] = pixels
        self._on_release = on_release

    @property
    def index(self) -> int:
        return self._index

    @property
    def timestamp_ms(self) -> int:
        return self._timestamp_ms

    @property
    def source_index(self) -> int:
        return self._source_index

    @property
    def pixels(self) -> np.ndarray:
        if self._pixels is None:
            raise FrameReleasedError(f"Frame {self._index} has been released")
        return self._pixels

    @property
    def shape(self):
        return self.pixels.shape

    @property
    def released(self) -> bool:
        return self._pixels is None

    def release(self) -> None:
        """Drop the pixel buffer. Safe to call more than once."""
        if self._pixels is None:
            return
        self._pixels = None
        if self._on_release is not None:
            self._on_release(self)

    def __repr__(self) -> str:
        state = "released" if self.released else "x".join(str(d) for d in self._pixels.shape)
        return f"Frame(index={self._index}, timestamp_ms={self._timestamp_ms}, {state})"


def release_frames(frames: Optional[List[Frame]]) -> int:
    """Release every frame in the list. Returns how many buffers were freed."""
    if not frames:
        return 0
    freed = 0
    for frame in frames:
        if not frame.released:
            frame.release()
            freed += 1
    return freed


@dataclass
class VideoInfo:
    """Container properties read from the video header."""
    width: int
    height: int
    fps: float
    total_frames: int

    @property
    def duration_seconds(self) -> float:
        return self.total_frames / self.fps if self.fps > 0 else 0.0


class FrameSampler:
    """
    Uniform-spacing frame sampler backed by OpenCV.

    Args:
        settings: Application settings (max_frame_width)
        release_hook: Called once for every frame whose buffer is released
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        release_hook: Optional[Callable[[Frame], None]] = None,
    ):
        self.settings = settings or get_settings()
        self.release_hook = release_hook

    def probe(self, video: VideoReference) -> VideoInfo:
        """
        Read container metadata without decoding frames.

        Raises:
            DecodeError: If the video cannot be opened or has zero duration
        """
        cap = cv2.VideoCapture(str(video))
        try:
            return self._read_info(cap, video)
        finally:
            cap.release()

    def sample(
        self,
        video: VideoReference,
        frame_count: int,
        release_hook: Optional[Callable[[Frame], None]] = None,
    ) -> List[Frame]:
        """
        Sample up to frame_count frames at uniform temporal spacing.

        Args:
            video: Path or URI of the recorded video
            frame_count: Number of instants to sample (> 0)
            release_hook: Overrides the sampler-wide release hook

        Returns:
            Frames ordered by timestamp, len <= frame_count

        Raises:
            DecodeError: If the video cannot be opened, has zero duration,
                or no frame could be decoded
        """
        if frame_count <= 0:
            raise ValueError(f"frame_count must be positive, got {frame_count}")

        hook = release_hook or self.release_hook
        cap = cv2.VideoCapture(str(video))
        frames: List[Frame] = []

        try:
            info = self._read_info(cap, video)
            source_indices = self._schedule(info, frame_count)

            for source_index in source_indices:
                cap.set(cv2.CAP_PROP_POS_FRAMES, source_index)
                ret, image = cap.read()
                if not ret or image is None:
                    logger.warning(f"Could not decode frame {source_index} of {video}")
                    continue

                image = self._resize(image)
                timestamp_ms = int(round(source_index * 1000.0 / info.fps))
                frames.append(Frame(
                    index=len(frames),
                    timestamp_ms=timestamp_ms,
                    pixels=image,
                    source_index=source_index,
                    on_release=hook,
                ))
        except Exception:
            release_frames(frames)
            raise
        finally:
            cap.release()

        if not frames:
            raise DecodeError(f"No frames could be decoded from {video}")

        logger.info(f"Sampled {len(frames)}/{frame_count} frames from {video} "
                    f"({info.duration_seconds:.2f}s @ {info.fps:.1f}fps)")
        return frames

    def _read_info(self, cap: cv2.VideoCapture, video: VideoReference) -> VideoInfo:
        if not cap.isOpened():
            raise DecodeError(f"Cannot open video: {video}")

        info = VideoInfo(
            width=int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            height=int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            fps=float(cap.get(cv2.CAP_PROP_FPS)),
            total_frames=int(cap.get(cv2.CAP_PROP_FRAME_COUNT)),
        )
        if info.fps <= 0 or info.total_frames <= 0:
            raise DecodeError(f"Video has zero duration: {video}")
        return info

    @staticmethod
    def _schedule(info: VideoInfo, frame_count: int) -> List[int]:
        """Map uniformly spaced instants to distinct source frame indices."""
        spacing = info.duration_seconds / frame_count
        indices: List[int] = []
        for k in range(frame_count):
            idx = int(round(k * spacing * info.fps))
            idx = min(idx, info.total_frames - 1)
            if not indices or idx > indices[-1]:
                indices.append(idx)
        return indices

    def _resize(self, image: np.ndarray) -> np.ndarray:
        max_width = self.settings.max_frame_width
        if max_width and image.shape[1] > max_width:
            scale = max_width / image.shape[1]
            new_height = int(image.shape[0] * scale)
            image = cv2.resize(image, (max_width, new_height), interpolation=cv2.INTER_LINEAR)
        return image
