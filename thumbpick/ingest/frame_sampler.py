from __future__ import annotations

import logging
from typing import Any, Callable

import numpy as np

from thumbpick.errors import NoUsableFrames
from thumbpick.ingest.video_source import DecodeSession
from thumbpick.models import CandidateFrame

logger = logging.getLogger(__name__)

EDGE_TRIM_RATIO = 0.05


def sample_timestamps(duration_seconds: float, sample_count: int) -> list[float]:
    """Spread `sample_count` timestamps over the middle 90% of the video."""

    if sample_count < 1:
        raise ValueError(f"sample_count must be >= 1, got {sample_count}.")
    if duration_seconds <= 0:
        raise ValueError(f"duration_seconds must be > 0, got {duration_seconds}.")

    if sample_count == 1:
        return [duration_seconds / 2.0]

    start = duration_seconds * EDGE_TRIM_RATIO
    span = duration_seconds * (1.0 - 2 * EDGE_TRIM_RATIO)
    return [start + span * (index / (sample_count - 1)) for index in range(sample_count)]


def sample_frames(
    session: DecodeSession,
    sample_count: int,
    *,
    frame_width: int = 640,
    cv2_module: Any | None = None,
    before_seek: Callable[[], None] | None = None,
) -> list[CandidateFrame]:
    """Decode one candidate per timestamp, in order, dropping timestamps that fail.

    `before_seek` runs ahead of every seek; exceptions it raises (cancellation)
    abort sampling instead of dropping a candidate.
    """

    timestamps = sample_timestamps(session.duration_seconds, sample_count)
    frames: list[CandidateFrame] = []

    for timestamp in timestamps:
        if before_seek is not None:
            before_seek()

        try:
            raw = session.read_frame_at(timestamp)
            resized = _resize_for_scoring(raw, frame_width=frame_width, cv2_module=cv2_module)
            frames.append(CandidateFrame.from_array(timestamp, resized))
        except Exception as exc:
            logger.warning("Dropping candidate at %.3fs: %s", timestamp, exc)

    if not frames:
        raise NoUsableFrames(
            f"All {len(timestamps)} sampled timestamps failed to decode "
            f"(duration {session.duration_seconds:.3f}s)."
        )

    logger.debug("Sampled %d/%d candidate frames.", len(frames), len(timestamps))
    return frames


def encode_jpeg(frame: CandidateFrame, quality: int = 85, *, cv2_module: Any | None = None) -> bytes:
    """Encode a candidate as JPEG bytes for the judge and the store."""

    cv2 = cv2_module or _import_cv2()
    array = frame.as_array()
    conversion = cv2.COLOR_RGBA2BGR if frame.channels == 4 else cv2.COLOR_RGB2BGR
    try:
        bgr = cv2.cvtColor(array, conversion)
        ok, buffer = cv2.imencode(".jpg", bgr, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    except cv2.error as exc:
        raise ValueError(f"JPEG encoding failed for frame at {frame.timestamp_seconds:.3f}s: {exc}") from exc
    if not ok:
        raise ValueError(f"JPEG encoding failed for frame at {frame.timestamp_seconds:.3f}s.")
    return buffer.tobytes()


def _resize_for_scoring(frame: np.ndarray, *, frame_width: int, cv2_module: Any | None = None) -> np.ndarray:
    if frame_width <= 0:
        return frame

    height, width = frame.shape[:2]
    if width <= frame_width:
        return frame

    cv2 = cv2_module or _import_cv2()
    target_height = max(int(round(height * (frame_width / width))), 1)
    return cv2.resize(frame, (frame_width, target_height), interpolation=cv2.INTER_AREA)


def _import_cv2() -> Any:
    import cv2

    return cv2
