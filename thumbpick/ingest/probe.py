from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any

from thumbpick.errors import VideoUnavailable

SHARED_LIBRARY_MARKER = "error while loading shared libraries"


def probe_duration_seconds(video_path: str | Path) -> float:
    """Return container duration in seconds via ffprobe."""

    source_path = Path(video_path).expanduser().resolve()
    if not source_path.exists():
        raise VideoUnavailable(f"Video file not found: {source_path}")

    payload = _run_ffprobe(source_path)
    duration = _extract_duration(payload)
    if duration is None or duration <= 0:
        raise VideoUnavailable(f"ffprobe reported no usable duration for {source_path}.")
    return duration


def _run_ffprobe(video_path: Path) -> dict[str, Any]:
    command = [
        "ffprobe",
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        "-select_streams",
        "v:0",
        str(video_path),
    ]

    try:
        completed = subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise VideoUnavailable(
            "ffprobe executable was not found. Install FFmpeg so ffprobe is available on PATH."
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        if SHARED_LIBRARY_MARKER in stderr:
            raise VideoUnavailable(
                "ffprobe is installed but failed to start because required shared libraries are missing. "
                f"ffprobe stderr: {stderr}"
            ) from exc
        details = f" ffprobe stderr: {stderr}" if stderr else ""
        raise VideoUnavailable(
            f"ffprobe failed while probing media file: {video_path}.{details}"
        ) from exc

    try:
        return json.loads(completed.stdout)
    except json.JSONDecodeError as exc:
        raise VideoUnavailable("ffprobe returned invalid JSON output.") from exc


def _extract_duration(payload: dict[str, Any]) -> float | None:
    format_duration = _to_float(payload.get("format", {}).get("duration"))
    if format_duration:
        return format_duration

    for stream in payload.get("streams", []):
        stream_duration = _to_float(stream.get("duration"))
        if stream_duration:
            return stream_duration
    return None


def _to_float(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", ""):
        return None
    return float(raw_value)
