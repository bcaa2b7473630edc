from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from thumbpick.models import CandidateFrame, HeuristicMetrics

TARGET_BRIGHTNESS = 128.0
CONTRAST_GAIN = 2.0
SHARPNESS_GAIN = 10.0


@dataclass(slots=True)
class HeuristicScoreDetails:
    """Explainable output for deterministic pixel scoring."""

    score: float
    metrics: HeuristicMetrics
    component_scores: dict[str, float]


def heuristic_score(frame: CandidateFrame) -> float:
    """Compute the deterministic 0-100 pixel quality score of a frame."""

    return analyze_frame(frame).score


def analyze_frame(frame: CandidateFrame) -> HeuristicScoreDetails:
    """Measure brightness, contrast and sharpness, then score them."""

    return score_metrics(measure_frame(frame))


def measure_frame(frame: CandidateFrame) -> HeuristicMetrics:
    luma = _luma_plane(frame)
    if luma.size == 0:
        return HeuristicMetrics(brightness=0.0, contrast=0.0, sharpness=0.0)

    brightness = float(luma.mean())
    contrast = float(np.sqrt(np.mean((luma - brightness) ** 2)))
    return HeuristicMetrics(
        brightness=brightness,
        contrast=contrast,
        sharpness=_mean_gradient(luma),
    )


def score_metrics(metrics: HeuristicMetrics) -> HeuristicScoreDetails:
    """Fuse raw metrics into component scores and their mean.

    Brightness peaks at mid-gray and decays linearly toward black or white;
    contrast and sharpness are scaled and capped at 100.
    """

    component_scores = {
        "brightness": _clamp(100.0 - abs(metrics.brightness - TARGET_BRIGHTNESS)),
        "contrast": _clamp(metrics.contrast * CONTRAST_GAIN),
        "sharpness": _clamp(metrics.sharpness * SHARPNESS_GAIN),
    }
    score = _clamp(sum(component_scores.values()) / len(component_scores))
    return HeuristicScoreDetails(score=score, metrics=metrics, component_scores=component_scores)


def _luma_plane(frame: CandidateFrame) -> np.ndarray:
    rgb = frame.as_array()[..., :3].astype(np.float64)
    return rgb.sum(axis=2) / 3.0


def _mean_gradient(luma: np.ndarray) -> float:
    # Interior pixels only; each compares against its right and lower neighbour.
    if luma.shape[0] < 3 or luma.shape[1] < 3:
        return 0.0

    current = luma[1:-1, 1:-1]
    right = luma[1:-1, 2:]
    below = luma[2:, 1:-1]
    magnitude = np.sqrt((current - right) ** 2 + (current - below) ** 2)
    return float(magnitude.mean())


def _clamp(value: float, minimum: float = 0.0, maximum: float = 100.0) -> float:
    return max(minimum, min(maximum, value))
