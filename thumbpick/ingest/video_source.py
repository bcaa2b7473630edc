from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Protocol

import numpy as np

from thumbpick.errors import VideoUnavailable
from thumbpick.ingest.probe import probe_duration_seconds

logger = logging.getLogger(__name__)


class DecodeSession(Protocol):
    """Seekable, single-stream decode handle for one video."""

    duration_seconds: float

    def read_frame_at(self, timestamp_seconds: float) -> np.ndarray: ...

    def close(self) -> None: ...


class VideoSource(Protocol):
    def open(self, video_id: str) -> Any: ...


class OpenCVDecodeSession:
    """Wraps a `cv2.VideoCapture`; seek+read pairs are serialized on one lock."""

    def __init__(self, capture: Any, duration_seconds: float, *, cv2_module: Any) -> None:
        self._capture = capture
        self._cv2 = cv2_module
        self._lock = threading.Lock()
        self._closed = False
        self.duration_seconds = duration_seconds

    def read_frame_at(self, timestamp_seconds: float) -> np.ndarray:
        with self._lock:
            if self._closed:
                raise RuntimeError("Decode session is closed.")
            if not self._capture.set(self._cv2.CAP_PROP_POS_MSEC, float(timestamp_seconds) * 1000.0):
                raise RuntimeError(f"Seek to {timestamp_seconds:.3f}s was rejected by the decoder.")
            ok, frame = self._capture.read()

        if not ok or frame is None:
            raise RuntimeError(f"No frame decoded at {timestamp_seconds:.3f}s.")
        return self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._capture.release()
                self._closed = True


class OpenCVVideoSource:
    """Video source provider resolving ids to local files decoded with OpenCV."""

    def __init__(self, base_dir: str | Path | None = None) -> None:
        self.base_dir = Path(base_dir).expanduser().resolve() if base_dir else None

    def resolve_path(self, video_id: str) -> Path:
        path = Path(video_id).expanduser()
        if self.base_dir is not None and not path.is_absolute():
            path = self.base_dir / path
        return path.resolve()

    @contextmanager
    def open(self, video_id: str) -> Iterator[OpenCVDecodeSession]:
        source_path = self.resolve_path(video_id)
        if not source_path.exists():
            raise VideoUnavailable(f"Video file not found: {source_path}")

        import cv2

        capture = cv2.VideoCapture(str(source_path))
        if not capture.isOpened():
            capture.release()
            raise VideoUnavailable(f"Unable to open video for decoding: {source_path}")

        try:
            duration_seconds = _capture_duration_seconds(capture, cv2)
            if duration_seconds <= 0:
                logger.debug("OpenCV reported no duration for %s; falling back to ffprobe.", source_path)
                duration_seconds = probe_duration_seconds(source_path)
        except BaseException:
            capture.release()
            raise

        session = OpenCVDecodeSession(capture, duration_seconds, cv2_module=cv2)
        try:
            yield session
        finally:
            session.close()


def _capture_duration_seconds(capture: Any, cv2_module: Any) -> float:
    fps = float(capture.get(cv2_module.CAP_PROP_FPS) or 0.0)
    frame_count = float(capture.get(cv2_module.CAP_PROP_FRAME_COUNT) or 0.0)
    if fps <= 0 or frame_count <= 0:
        return 0.0
    return frame_count / fps
