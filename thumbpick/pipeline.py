from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from functools import partial
from typing import TypeVar

from thumbpick.config import Settings
from thumbpick.errors import PipelineCancelled, StorageError
from thumbpick.ingest.frame_sampler import encode_jpeg, sample_frames
from thumbpick.ingest.video_source import VideoSource
from thumbpick.models import CandidateFrame, ScoreRecord, SelectionOptions, ThumbnailRecord
from thumbpick.scoring.fuse import select_winner
from thumbpick.scoring.heuristic_score import HeuristicScoreDetails, analyze_frame
from thumbpick.scoring.semantic_score import (
    SemanticJudge,
    SemanticScore,
    load_prompt_template,
    score_frame,
    score_frames_concurrently,
)
from thumbpick.store.thumbnail_store import ThumbnailStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class SelectionResult:
    """Everything computed for one video before anything is persisted."""

    frames: list[CandidateFrame]
    heuristics: list[HeuristicScoreDetails]
    semantic: list[SemanticScore]
    records: list[ScoreRecord]
    winner_index: int

    @property
    def winner(self) -> ScoreRecord:
        return self.records[self.winner_index]

    @property
    def winner_frame(self) -> CandidateFrame:
        return self.frames[self.winner_index]


def ensure_thumbnail(
    source_key: str,
    context: str,
    options: SelectionOptions | None = None,
    *,
    settings: Settings,
    video_source: VideoSource,
    store: ThumbnailStore,
    judge: SemanticJudge | None = None,
    video_id: str | None = None,
    cancel_event: threading.Event | None = None,
) -> ThumbnailRecord:
    """Return the stored thumbnail for `source_key`, generating it only if absent."""

    with store.lock(source_key):
        existing = store.get(source_key)
        if existing is not None:
            logger.info("Thumbnail for %r already exists; skipping selection.", source_key)
            return existing

        return _generate_and_store(
            source_key,
            context,
            options,
            settings=settings,
            video_source=video_source,
            store=store,
            judge=judge,
            video_id=video_id,
            cancel_event=cancel_event,
        )


def force_regenerate(
    source_key: str,
    context: str,
    options: SelectionOptions | None = None,
    *,
    settings: Settings,
    video_source: VideoSource,
    store: ThumbnailStore,
    judge: SemanticJudge | None = None,
    video_id: str | None = None,
    cancel_event: threading.Event | None = None,
) -> ThumbnailRecord:
    """Run the full selection and overwrite any stored thumbnail for `source_key`."""

    with store.lock(source_key):
        return _generate_and_store(
            source_key,
            context,
            options,
            settings=settings,
            video_source=video_source,
            store=store,
            judge=judge,
            video_id=video_id,
            cancel_event=cancel_event,
        )


def score_video(
    video_id: str,
    context: str,
    options: SelectionOptions | None = None,
    *,
    settings: Settings,
    video_source: VideoSource,
    judge: SemanticJudge | None = None,
    cancel_event: threading.Event | None = None,
) -> SelectionResult:
    """Sample, score and rank candidates for one video without persisting anything."""

    options = options or SelectionOptions()
    deadline = _deadline(settings.pipeline.request_timeout_seconds)
    sample_count = _first_set(options.sample_count, settings.pipeline.sample_count)
    heuristic_weight = _first_set(options.heuristic_weight, settings.weights.heuristic)
    semantic_weight = _first_set(options.semantic_weight, settings.weights.semantic)
    strategy = settings.scoring.strategy

    with video_source.open(video_id) as session:
        frames = sample_frames(
            session,
            sample_count,
            frame_width=settings.pipeline.frame_width,
            before_seek=partial(_check_cancelled, cancel_event, deadline),
        )

    heuristics: list[HeuristicScoreDetails] = []
    for frame in frames:
        _check_cancelled(cancel_event, deadline)
        heuristics.append(analyze_frame(frame))

    if strategy.lower().strip() == "heuristic":
        semantic = [SemanticScore.failed("semantic scoring disabled by strategy") for _ in frames]
    else:
        semantic = score_frames_concurrently(
            frames,
            context,
            judge or build_default_judge(settings),
            max_workers=settings.judge.concurrency,
            cancel_event=cancel_event,
            deadline=deadline,
        )

    _check_cancelled(cancel_event, deadline)
    winner_index, records = select_winner(
        frames,
        [details.score for details in heuristics],
        [result.score for result in semantic],
        heuristic_weight=heuristic_weight,
        semantic_weight=semantic_weight,
        strategy=strategy,
        tie_epsilon=settings.scoring.tie_epsilon,
    )

    semantic_ok = sum(1 for result in semantic if result.ok)
    logger.info(
        "Scored %d candidates for %s (%d with semantic opinion); winner at %.3fs with %.2f.",
        len(frames),
        video_id,
        semantic_ok,
        records[winner_index].timestamp_seconds,
        records[winner_index].combined_score,
    )

    return SelectionResult(
        frames=frames,
        heuristics=heuristics,
        semantic=semantic,
        records=records,
        winner_index=winner_index,
    )


def build_default_judge(settings: Settings) -> SemanticJudge:
    judge_settings = settings.judge
    if judge_settings.provider.lower() != "ollama":
        raise ValueError(f"Unsupported judge provider '{judge_settings.provider}'. Expected: ollama.")

    return partial(
        score_frame,
        endpoint=judge_settings.endpoint,
        model=judge_settings.model,
        timeout_seconds=judge_settings.timeout_seconds,
        max_retries=judge_settings.max_retries,
        jpeg_quality=settings.store.jpeg_quality,
        prompt_template=load_prompt_template(judge_settings.prompt_path),
    )


def _generate_and_store(
    source_key: str,
    context: str,
    options: SelectionOptions | None,
    *,
    settings: Settings,
    video_source: VideoSource,
    store: ThumbnailStore,
    judge: SemanticJudge | None,
    video_id: str | None,
    cancel_event: threading.Event | None,
) -> ThumbnailRecord:
    result = score_video(
        video_id or source_key,
        context,
        options,
        settings=settings,
        video_source=video_source,
        judge=judge,
        cancel_event=cancel_event,
    )

    winner_frame = result.winner_frame
    frame_bytes = encode_jpeg(winner_frame, settings.store.jpeg_quality)
    store.put(
        source_key,
        frame_bytes,
        result.winner,
        metrics=result.heuristics[result.winner_index].metrics,
        semantic_reasoning=result.semantic[result.winner_index].reasoning,
        candidate_count=len(result.frames),
        width=winner_frame.width,
        height=winner_frame.height,
    )

    record = store.get(source_key)
    if record is None:
        raise StorageError(f"Thumbnail for {source_key!r} was written but could not be read back.")
    return record


def _deadline(timeout_seconds: float) -> float | None:
    if timeout_seconds <= 0:
        return None
    return time.monotonic() + timeout_seconds


def _check_cancelled(cancel_event: threading.Event | None, deadline: float | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise PipelineCancelled("Thumbnail request was cancelled.")
    if deadline is not None and time.monotonic() >= deadline:
        raise PipelineCancelled("Thumbnail request exceeded its deadline.")


def _first_set(value: T | None, default: T) -> T:
    return default if value is None else value
