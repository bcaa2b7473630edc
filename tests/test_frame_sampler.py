from __future__ import annotations

import numpy as np
import pytest

from thumbpick.errors import NoUsableFrames, PipelineCancelled
from thumbpick.ingest.frame_sampler import _resize_for_scoring, encode_jpeg, sample_frames, sample_timestamps
from thumbpick.models import CandidateFrame


class _FakeSession:
    def __init__(self, duration_seconds: float, failing: set[int] | None = None) -> None:
        self.duration_seconds = duration_seconds
        self.failing = failing or set()
        self.calls: list[float] = []

    def read_frame_at(self, timestamp_seconds: float) -> np.ndarray:
        call_index = len(self.calls)
        self.calls.append(timestamp_seconds)
        if call_index in self.failing:
            raise RuntimeError("decode error")
        return np.full((6, 8, 3), call_index * 10, dtype=np.uint8)

    def close(self) -> None:
        pass


class _FakeCv2:
    INTER_AREA = 3

    def __init__(self) -> None:
        self.called_with: tuple[tuple[int, int], int] | None = None

    def resize(self, frame, dims, interpolation):
        self.called_with = (dims, interpolation)
        target_w, target_h = dims
        return np.zeros((target_h, target_w, frame.shape[2]), dtype=frame.dtype)


def test_sample_timestamps_stay_inside_trimmed_window_and_increase() -> None:
    timestamps = sample_timestamps(100.0, 5)

    assert timestamps == pytest.approx([5.0, 27.5, 50.0, 72.5, 95.0])
    assert all(5.0 <= ts <= 95.0 for ts in timestamps)
    assert all(a < b for a, b in zip(timestamps, timestamps[1:]))


def test_sample_timestamps_single_sample_uses_midpoint() -> None:
    assert sample_timestamps(42.0, 1) == [21.0]


@pytest.mark.parametrize(("duration", "count"), [(100.0, 0), (0.0, 3), (-5.0, 3)])
def test_sample_timestamps_rejects_invalid_input(duration: float, count: int) -> None:
    with pytest.raises(ValueError):
        sample_timestamps(duration, count)


def test_sample_frames_seeks_in_order_and_drops_failed_timestamps() -> None:
    session = _FakeSession(duration_seconds=100.0, failing={1, 3})

    frames = sample_frames(session, 5, frame_width=0)

    assert session.calls == pytest.approx([5.0, 27.5, 50.0, 72.5, 95.0])
    assert [frame.timestamp_seconds for frame in frames] == pytest.approx([5.0, 50.0, 95.0])
    assert frames[0].width == 8
    assert frames[0].height == 6
    assert frames[0].channels == 3


def test_sample_frames_raises_when_every_timestamp_fails() -> None:
    session = _FakeSession(duration_seconds=60.0, failing={0, 1, 2})

    with pytest.raises(NoUsableFrames):
        sample_frames(session, 3, frame_width=0)


def test_resize_for_scoring_skips_when_width_already_small() -> None:
    frame = np.zeros((100, 200, 3), dtype=np.uint8)
    fake_cv2 = _FakeCv2()

    resized = _resize_for_scoring(frame, frame_width=640, cv2_module=fake_cv2)

    assert resized is frame
    assert fake_cv2.called_with is None


def test_resize_for_scoring_downscales_preserving_aspect_ratio() -> None:
    frame = np.zeros((450, 800, 3), dtype=np.uint8)
    fake_cv2 = _FakeCv2()

    resized = _resize_for_scoring(frame, frame_width=400, cv2_module=fake_cv2)

    assert resized.shape[:2] == (225, 400)
    assert fake_cv2.called_with == ((400, 225), _FakeCv2.INTER_AREA)


def test_resize_for_scoring_disabled_for_non_positive_width() -> None:
    frame = np.zeros((100, 800, 3), dtype=np.uint8)
    fake_cv2 = _FakeCv2()

    resized = _resize_for_scoring(frame, frame_width=0, cv2_module=fake_cv2)

    assert resized is frame
    assert fake_cv2.called_with is None


class _MalformedOnceSession(_FakeSession):
    def read_frame_at(self, timestamp_seconds: float) -> np.ndarray:
        frame = super().read_frame_at(timestamp_seconds)
        if len(self.calls) == 3:
            return frame[:, :, 0]
        return frame


def test_sample_frames_drops_malformed_frame_without_aborting() -> None:
    session = _MalformedOnceSession(duration_seconds=100.0)

    frames = sample_frames(session, 5, frame_width=0)

    assert [frame.timestamp_seconds for frame in frames] == pytest.approx([5.0, 27.5, 72.5, 95.0])


def test_sample_frames_stops_before_next_seek_when_hook_raises() -> None:
    session = _FakeSession(duration_seconds=100.0)
    checks = {"count": 0}

    def _stop_after_two() -> None:
        checks["count"] += 1
        if checks["count"] > 2:
            raise PipelineCancelled("cancelled")

    with pytest.raises(PipelineCancelled):
        sample_frames(session, 5, frame_width=0, before_seek=_stop_after_two)

    assert session.calls == pytest.approx([5.0, 27.5])


class _FakeEncoderCv2:
    COLOR_RGB2BGR = 4
    COLOR_RGBA2BGR = 3
    IMWRITE_JPEG_QUALITY = 1

    class error(Exception):
        pass

    def __init__(self, *, encode_ok: bool = True, raise_on_convert: bool = False) -> None:
        self.encode_ok = encode_ok
        self.raise_on_convert = raise_on_convert
        self.conversions: list[int] = []
        self.params: list[int] | None = None

    def cvtColor(self, frame, code):
        if self.raise_on_convert:
            raise self.error("Invalid number of channels in input image")
        self.conversions.append(code)
        return frame[:, :, :3][:, :, ::-1]

    def imencode(self, ext, image, params):
        self.params = params
        if not self.encode_ok:
            return False, None
        return True, np.frombuffer(b"\xff\xd8fake\xff\xd9", dtype=np.uint8)


@pytest.mark.parametrize(("channels", "expected_code"), [(3, 4), (4, 3)])
def test_encode_jpeg_picks_conversion_from_channel_count(channels: int, expected_code: int) -> None:
    frame = CandidateFrame.from_array(2.0, np.zeros((4, 6, channels), dtype=np.uint8))
    fake_cv2 = _FakeEncoderCv2()

    payload = encode_jpeg(frame, 70, cv2_module=fake_cv2)

    assert payload == b"\xff\xd8fake\xff\xd9"
    assert fake_cv2.conversions == [expected_code]
    assert fake_cv2.params == [_FakeEncoderCv2.IMWRITE_JPEG_QUALITY, 70]


def test_encode_jpeg_raises_value_error_when_encoder_fails() -> None:
    frame = CandidateFrame.from_array(2.0, np.zeros((4, 6, 3), dtype=np.uint8))

    with pytest.raises(ValueError, match="JPEG encoding failed"):
        encode_jpeg(frame, cv2_module=_FakeEncoderCv2(encode_ok=False))

    with pytest.raises(ValueError, match="Invalid number of channels"):
        encode_jpeg(frame, cv2_module=_FakeEncoderCv2(raise_on_convert=True))


def test_encode_jpeg_produces_decodable_jpeg_with_opencv() -> None:
    cv2 = pytest.importorskip("cv2")
    pixels = np.zeros((16, 24, 4), dtype=np.uint8)
    pixels[:, :, 0] = 250  # red
    pixels[:, :, 3] = 255
    frame = CandidateFrame.from_array(2.0, pixels)

    payload = encode_jpeg(frame, 95)
    decoded = cv2.imdecode(np.frombuffer(payload, dtype=np.uint8), cv2.IMREAD_COLOR)

    assert payload[:2] == b"\xff\xd8"
    assert decoded.shape == (16, 24, 3)
    blue, green, red = decoded[8, 12].tolist()
    assert red > 200 and green < 50 and blue < 50
