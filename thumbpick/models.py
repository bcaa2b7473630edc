from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(slots=True, frozen=True)
class CandidateFrame:
    """One decoded still sampled from a video at a specific timestamp."""

    timestamp_seconds: float
    width: int
    height: int
    pixels: bytes
    channels: int = 3

    def as_array(self) -> np.ndarray:
        array = np.frombuffer(self.pixels, dtype=np.uint8)
        return array.reshape(self.height, self.width, self.channels)

    @classmethod
    def from_array(cls, timestamp_seconds: float, array: np.ndarray) -> CandidateFrame:
        if array.ndim != 3 or array.shape[2] not in (3, 4):
            raise ValueError(f"Expected an HxWx3 or HxWx4 frame, got shape {array.shape}.")
        contiguous = np.ascontiguousarray(array, dtype=np.uint8)
        height, width, channels = contiguous.shape
        return cls(
            timestamp_seconds=float(timestamp_seconds),
            width=int(width),
            height=int(height),
            pixels=contiguous.tobytes(),
            channels=int(channels),
        )


@dataclass(slots=True)
class HeuristicMetrics:
    """Pixel statistics derived from a candidate frame's luma plane."""

    brightness: float
    contrast: float
    sharpness: float


@dataclass(slots=True)
class ScoreRecord:
    """Per-candidate scoring outcome used for ranking."""

    candidate_index: int
    timestamp_seconds: float
    heuristic_score: float
    semantic_score: float | None
    combined_score: float
    method: str


@dataclass(slots=True)
class ThumbnailRecord:
    """Persisted selection decision for one source video."""

    source_key: str
    chosen_timestamp: float
    combined_score: float
    heuristic_score: float
    semantic_score: float | None
    storage_location: str
    created_at: str
    method: str = "pixel-only"
    candidate_count: int = 0
    brightness: float | None = None
    contrast: float | None = None
    sharpness: float | None = None
    semantic_reasoning: str | None = None
    content_sha256: str = ""
    width: int = 0
    height: int = 0


@dataclass(slots=True)
class SelectionOptions:
    """Per-request overrides on top of configured defaults."""

    sample_count: int | None = None
    heuristic_weight: float | None = None
    semantic_weight: float | None = None
