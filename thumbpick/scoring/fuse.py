from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Sequence

from thumbpick.errors import NoCandidatesError
from thumbpick.models import CandidateFrame, ScoreRecord

FusionStrategy = Literal["heuristic", "semantic", "hybrid"]

DEFAULT_HEURISTIC_WEIGHT = 0.4
DEFAULT_SEMANTIC_WEIGHT = 0.6
DEFAULT_TIE_EPSILON = 0.01

METHOD_PIXEL_ONLY = "pixel-only"
METHOD_HYBRID = "hybrid-ai-pixel"
METHOD_SEMANTIC = "semantic"


@dataclass(slots=True)
class FusionDetails:
    """Explainable output for score fusion decisions."""

    score: float
    strategy: FusionStrategy
    heuristic_score: float
    semantic_score: float | None
    heuristic_weight: float
    semantic_weight: float
    used_semantic: bool

    @property
    def method(self) -> str:
        if not self.used_semantic:
            return METHOD_PIXEL_ONLY
        if self.strategy == "semantic":
            return METHOD_SEMANTIC
        return METHOD_HYBRID


def normalize_weights(heuristic_weight: float, semantic_weight: float) -> tuple[float, float]:
    """Clip negatives to zero and rescale so the pair sums to one."""

    heuristic_weight = max(0.0, heuristic_weight)
    semantic_weight = max(0.0, semantic_weight)
    total = heuristic_weight + semantic_weight
    if total == 0:
        raise ValueError("At least one of the heuristic/semantic weights must be positive.")
    return heuristic_weight / total, semantic_weight / total


def fuse_scores(
    heuristic: float,
    semantic: float | None,
    *,
    heuristic_weight: float = DEFAULT_HEURISTIC_WEIGHT,
    semantic_weight: float = DEFAULT_SEMANTIC_WEIGHT,
    strategy: FusionStrategy = "hybrid",
) -> FusionDetails:
    """Combine one candidate's scores using the configured strategy.

    A missing semantic score is substituted with the heuristic score, so the
    hybrid result degrades to exactly the heuristic score.
    """

    normalized_strategy = _normalize_strategy(strategy)
    heuristic_weight, semantic_weight = normalize_weights(heuristic_weight, semantic_weight)
    heuristic_score = _clamp(heuristic)
    semantic_score = _clamp(semantic) if semantic is not None else None

    if normalized_strategy == "heuristic" or semantic_score is None:
        score = heuristic_score
        used_semantic = False
    elif normalized_strategy == "semantic":
        score = semantic_score
        used_semantic = True
    else:
        score = _clamp((heuristic_score * heuristic_weight) + (semantic_score * semantic_weight))
        used_semantic = True

    return FusionDetails(
        score=score,
        strategy=normalized_strategy,
        heuristic_score=heuristic_score,
        semantic_score=semantic_score,
        heuristic_weight=heuristic_weight,
        semantic_weight=semantic_weight,
        used_semantic=used_semantic,
    )


def select_winner(
    candidates: Sequence[CandidateFrame],
    heuristic_scores: Sequence[float],
    semantic_scores: Sequence[float | None],
    *,
    heuristic_weight: float = DEFAULT_HEURISTIC_WEIGHT,
    semantic_weight: float = DEFAULT_SEMANTIC_WEIGHT,
    strategy: FusionStrategy = "hybrid",
    tie_epsilon: float = DEFAULT_TIE_EPSILON,
) -> tuple[int, list[ScoreRecord]]:
    """Rank all candidates and return the winning index plus every ScoreRecord.

    Candidates within `tie_epsilon` of the best combined score are tied; the
    earliest timestamp wins, then the lowest index.
    """

    if not candidates:
        raise NoCandidatesError("Cannot select a thumbnail from zero candidates.")
    if not (len(candidates) == len(heuristic_scores) == len(semantic_scores)):
        raise ValueError(
            "candidates, heuristic_scores and semantic_scores must have equal lengths "
            f"({len(candidates)}, {len(heuristic_scores)}, {len(semantic_scores)})."
        )

    records: list[ScoreRecord] = []
    for index, (frame, heuristic, semantic) in enumerate(zip(candidates, heuristic_scores, semantic_scores)):
        fusion = fuse_scores(
            heuristic,
            semantic,
            heuristic_weight=heuristic_weight,
            semantic_weight=semantic_weight,
            strategy=strategy,
        )
        records.append(
            ScoreRecord(
                candidate_index=index,
                timestamp_seconds=frame.timestamp_seconds,
                heuristic_score=fusion.heuristic_score,
                semantic_score=fusion.semantic_score,
                combined_score=fusion.score,
                method=fusion.method,
            )
        )

    best = max(record.combined_score for record in records)
    tied = [record for record in records if best - record.combined_score <= max(0.0, tie_epsilon)]
    winner = min(tied, key=lambda record: (record.timestamp_seconds, record.candidate_index))
    return winner.candidate_index, records


def _normalize_strategy(strategy: str) -> FusionStrategy:
    normalized = strategy.lower().strip()
    if normalized not in {"heuristic", "semantic", "hybrid"}:
        msg = (
            f"Unsupported scoring strategy '{strategy}'. "
            "Expected one of: heuristic, semantic, hybrid."
        )
        raise ValueError(msg)
    return normalized  # type: ignore[return-value]


def _clamp(value: float, minimum: float = 0.0, maximum: float = 100.0) -> float:
    return max(minimum, min(maximum, value))
