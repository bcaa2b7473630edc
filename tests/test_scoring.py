from __future__ import annotations

import numpy as np
import pytest

from thumbpick.errors import NoCandidatesError
from thumbpick.models import CandidateFrame, HeuristicMetrics
from thumbpick.scoring.fuse import fuse_scores, normalize_weights, select_winner
from thumbpick.scoring.heuristic_score import analyze_frame, heuristic_score, measure_frame, score_metrics


def _frame(array: np.ndarray, timestamp: float = 1.0) -> CandidateFrame:
    return CandidateFrame.from_array(timestamp, array.astype(np.uint8))


def _stripes() -> np.ndarray:
    luma = np.tile(np.array([0, 100, 0, 100, 0], dtype=np.uint8), (5, 1))
    return np.stack([luma, luma, luma], axis=2)


def test_heuristic_scoring_is_deterministic_for_identical_pixels() -> None:
    rng = np.random.default_rng(7)
    pixels = rng.integers(0, 256, size=(24, 32, 3), dtype=np.uint8)

    first = analyze_frame(_frame(pixels))
    second = analyze_frame(_frame(pixels.copy()))

    assert first.metrics == second.metrics
    assert first.score == second.score


def test_measure_frame_stripes_pattern() -> None:
    metrics = measure_frame(_frame(_stripes()))

    assert metrics.brightness == pytest.approx(40.0)
    assert metrics.contrast == pytest.approx(np.sqrt(2400.0))
    assert metrics.sharpness == pytest.approx(100.0)


def test_uniform_mid_gray_scores_only_on_brightness() -> None:
    details = analyze_frame(_frame(np.full((10, 10, 3), 128)))

    assert details.metrics.contrast == pytest.approx(0.0)
    assert details.metrics.sharpness == pytest.approx(0.0)
    assert details.component_scores == pytest.approx({"brightness": 100.0, "contrast": 0.0, "sharpness": 0.0})
    assert details.score == pytest.approx(100.0 / 3)


def test_all_black_frame_has_zero_brightness_score() -> None:
    details = analyze_frame(_frame(np.zeros((10, 10, 3))))

    assert details.component_scores["brightness"] == 0.0
    assert details.score == 0.0

    fused = fuse_scores(details.score, 95.0)
    assert fused.score == pytest.approx(57.0)
    assert fused.score < 95.0


def test_alpha_channel_is_ignored() -> None:
    rgb = _stripes()
    opaque = np.concatenate([rgb, np.full((5, 5, 1), 255, dtype=np.uint8)], axis=2)
    transparent = np.concatenate([rgb, np.zeros((5, 5, 1), dtype=np.uint8)], axis=2)

    assert heuristic_score(_frame(opaque)) == pytest.approx(heuristic_score(_frame(rgb)))
    assert heuristic_score(_frame(transparent)) == pytest.approx(heuristic_score(_frame(rgb)))


def test_tiny_frames_have_zero_sharpness() -> None:
    metrics = measure_frame(_frame(np.array([[[0, 0, 0], [255, 255, 255]]])))

    assert metrics.sharpness == 0.0


def test_reference_scenario_heuristic_and_combined_scores() -> None:
    details = score_metrics(HeuristicMetrics(brightness=128.0, contrast=50.0, sharpness=8.0))

    assert details.score == pytest.approx(93.333, abs=0.01)

    fused = fuse_scores(details.score, 90.0, heuristic_weight=0.4, semantic_weight=0.6)
    assert fused.score == pytest.approx(91.3, abs=0.1)
    assert fused.method == "hybrid-ai-pixel"


def test_fuse_scores_without_semantic_falls_back_to_heuristic() -> None:
    fused = fuse_scores(72.5, None)

    assert fused.score == pytest.approx(72.5)
    assert fused.used_semantic is False
    assert fused.method == "pixel-only"


def test_normalize_weights_rescales_and_rejects_all_zero() -> None:
    assert normalize_weights(2.0, 3.0) == pytest.approx((0.4, 0.6))
    assert normalize_weights(-1.0, 1.0) == pytest.approx((0.0, 1.0))
    with pytest.raises(ValueError):
        normalize_weights(0.0, 0.0)


@pytest.mark.parametrize(
    ("strategy", "semantic", "expected", "used_semantic"),
    [
        ("heuristic", 90.0, 40.0, False),
        ("semantic", 90.0, 90.0, True),
        ("semantic", None, 40.0, False),
        ("hybrid", 90.0, (0.5 * 40.0) + (0.5 * 90.0), True),
        ("hybrid", None, 40.0, False),
    ],
)
def test_fusion_strategy_switch(strategy: str, semantic: float | None, expected: float, used_semantic: bool) -> None:
    details = fuse_scores(40.0, semantic, heuristic_weight=0.5, semantic_weight=0.5, strategy=strategy)

    assert details.score == pytest.approx(expected)
    assert details.used_semantic is used_semantic


def test_invalid_fusion_strategy_raises() -> None:
    with pytest.raises(ValueError, match="Unsupported scoring strategy"):
        fuse_scores(40.0, 70.0, strategy="invalid")


def test_select_winner_combined_equals_heuristic_when_all_semantic_missing() -> None:
    frames = [_frame(np.zeros((3, 3, 3)), timestamp=t) for t in (5.0, 10.0, 15.0)]

    winner, records = select_winner(frames, [30.0, 80.0, 55.0], [None, None, None])

    assert winner == 1
    assert [record.combined_score for record in records] == [record.heuristic_score for record in records]
    assert all(record.method == "pixel-only" for record in records)


def test_select_winner_ties_resolve_to_earlier_timestamp() -> None:
    # Input order deliberately differs from timestamp order.
    frames = [_frame(np.zeros((3, 3, 3)), timestamp=t) for t in (40.0, 12.0, 25.0)]

    winner, records = select_winner(frames, [70.0, 70.0, 70.005], [None, None, None])

    assert winner == 1
    assert records[winner].timestamp_seconds == 12.0


def test_select_winner_outside_epsilon_is_not_a_tie() -> None:
    frames = [_frame(np.zeros((3, 3, 3)), timestamp=t) for t in (10.0, 20.0)]

    winner, _ = select_winner(frames, [70.0, 70.5], [None, None])

    assert winner == 1


def test_select_winner_uses_semantic_scores_per_index() -> None:
    frames = [_frame(np.zeros((3, 3, 3)), timestamp=t) for t in (10.0, 20.0)]

    winner, records = select_winner(frames, [60.0, 50.0], [40.0, 90.0])

    assert winner == 1
    assert records[0].combined_score == pytest.approx(60.0 * 0.4 + 40.0 * 0.6)
    assert records[1].combined_score == pytest.approx(50.0 * 0.4 + 90.0 * 0.6)


def test_select_winner_rejects_empty_candidates() -> None:
    with pytest.raises(NoCandidatesError):
        select_winner([], [], [])


def test_select_winner_rejects_mismatched_lengths() -> None:
    frames = [_frame(np.zeros((3, 3, 3)))]

    with pytest.raises(ValueError, match="equal lengths"):
        select_winner(frames, [50.0, 60.0], [None])
