from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, TypeVar

import typer

from thumbpick.config import Settings, load_settings
from thumbpick.errors import ThumbnailPipelineError
from thumbpick.ingest.video_source import OpenCVVideoSource
from thumbpick.logging_config import configure_logging
from thumbpick.models import SelectionOptions, ThumbnailRecord
from thumbpick.pipeline import ensure_thumbnail, force_regenerate, score_video
from thumbpick.store.thumbnail_store import ThumbnailStore

app = typer.Typer(help="Pick the best still frame of a video as its thumbnail.")
config_app = typer.Typer(help="Configuration commands.")
store_app = typer.Typer(help="Stored thumbnail commands.")

app.add_typer(config_app, name="config")
app.add_typer(store_app, name="store")

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_OPTION_HELP = "Path to YAML configuration file."
VIDEO_SUFFIXES = {".mp4", ".mov", ".m4v", ".mkv", ".webm", ".avi"}


def _run_with_progress(step_index: int, total_steps: int, label: str, work: Callable[[], T]) -> T:
    typer.echo(f"[{step_index}/{total_steps}] {label}...", err=True)
    started_at = perf_counter()
    try:
        result = work()
    except Exception:
        elapsed = perf_counter() - started_at
        typer.echo(f"[{step_index}/{total_steps}] {label} failed after {elapsed:.1f}s", err=True)
        raise
    elapsed = perf_counter() - started_at
    typer.echo(f"[{step_index}/{total_steps}] {label} done in {elapsed:.1f}s", err=True)
    return result


def _bootstrap(config_path: Path) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _build_store(settings: Settings) -> ThumbnailStore:
    return ThumbnailStore(
        settings.store.root_dir,
        max_put_attempts=settings.store.max_put_attempts,
        retry_delay_seconds=settings.store.retry_delay_seconds,
    )


def _record_payload(record: ThumbnailRecord) -> dict[str, Any]:
    return asdict(record)


def _collect_videos(inputs: list[Path], *, recursive: bool = False) -> list[Path]:
    videos: list[Path] = []
    for item in inputs:
        if item.is_dir():
            candidates = item.rglob("*") if recursive else item.iterdir()
            found = [path for path in candidates if path.is_file() and path.suffix.lower() in VIDEO_SUFFIXES]
            videos.extend(sorted(found))
        else:
            # Missing files are kept so they surface as per-video failures.
            videos.append(item)

    unique: list[Path] = []
    seen: set[Path] = set()
    for video in videos:
        resolved = video.resolve()
        if resolved not in seen:
            seen.add(resolved)
            unique.append(video)
    return unique


def _fail(exc: Exception) -> typer.Exit:
    logger.error("Thumbnail selection failed: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1)


@config_app.command("show")
def show_config(
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="THUMBPICK_CONFIG",
        help=CONFIG_OPTION_HELP,
    )
) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@app.command("ensure")
def ensure(
    video_path: str,
    source_key: str | None = typer.Option(None, help="Storage key for the video. Defaults to the filename stem."),
    context: str = typer.Option("", help="Short description of the video's subject for the vision judge."),
    sample_count: int | None = typer.Option(None, min=1, help="Number of candidate frames to sample."),
    heuristic_weight: float | None = typer.Option(None, help="Weight of the pixel heuristic score."),
    semantic_weight: float | None = typer.Option(None, help="Weight of the vision judge score."),
    force: bool = typer.Option(False, "--force", help="Regenerate even when a thumbnail is already stored."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="THUMBPICK_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Return the stored thumbnail for a video, selecting one first if needed."""

    settings = _bootstrap(config_path)
    resolved_key = source_key or Path(video_path).stem
    options = SelectionOptions(
        sample_count=sample_count,
        heuristic_weight=heuristic_weight,
        semantic_weight=semantic_weight,
    )
    entry_point = force_regenerate if force else ensure_thumbnail
    label = "Regenerate thumbnail" if force else "Ensure thumbnail"

    try:
        record = _run_with_progress(
            1,
            1,
            label,
            lambda: entry_point(
                resolved_key,
                context,
                options,
                settings=settings,
                video_source=OpenCVVideoSource(),
                store=_build_store(settings),
                video_id=video_path,
            ),
        )
    except (ThumbnailPipelineError, ValueError) as exc:
        raise _fail(exc) from exc

    logger.info("Thumbnail ready for %s at %s", resolved_key, record.storage_location)
    typer.echo(json.dumps(_record_payload(record), indent=2))


@app.command("regenerate")
def regenerate(
    video_path: str,
    source_key: str | None = typer.Option(None, help="Storage key for the video. Defaults to the filename stem."),
    context: str = typer.Option("", help="Short description of the video's subject for the vision judge."),
    sample_count: int | None = typer.Option(None, min=1, help="Number of candidate frames to sample."),
    heuristic_weight: float | None = typer.Option(None, help="Weight of the pixel heuristic score."),
    semantic_weight: float | None = typer.Option(None, help="Weight of the vision judge score."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="THUMBPICK_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Alias for `ensure --force`."""

    ensure(
        video_path,
        source_key=source_key,
        context=context,
        sample_count=sample_count,
        heuristic_weight=heuristic_weight,
        semantic_weight=semantic_weight,
        force=True,
        config_path=config_path,
    )


@app.command("batch")
def batch(
    inputs: list[Path] = typer.Argument(..., help="Video files and/or directories containing videos."),
    context: str = typer.Option("", help="Short description shared by every video, for the vision judge."),
    sample_count: int | None = typer.Option(None, min=1, help="Number of candidate frames to sample."),
    force: bool = typer.Option(False, "--force", help="Regenerate even when a thumbnail is already stored."),
    recursive: bool = typer.Option(False, "--recursive", "-r", help="Descend into subdirectories."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="THUMBPICK_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Ensure (or with --force, regenerate) thumbnails for many videos; one failure does not stop the run."""

    settings = _bootstrap(config_path)
    videos = _collect_videos(inputs, recursive=recursive)
    if not videos:
        typer.echo("Error: no video files found in the given inputs.", err=True)
        raise typer.Exit(code=1)

    store = _build_store(settings)
    video_source = OpenCVVideoSource()
    options = SelectionOptions(sample_count=sample_count)
    entry_point = force_regenerate if force else ensure_thumbnail
    action = "Regenerate" if force else "Ensure"

    results: list[dict[str, Any]] = []
    failures = 0
    for index, video_path in enumerate(videos, start=1):
        source_key = video_path.stem
        try:
            record = _run_with_progress(
                index,
                len(videos),
                f"{action} {source_key}",
                lambda: entry_point(
                    source_key,
                    context,
                    options,
                    settings=settings,
                    video_source=video_source,
                    store=store,
                    video_id=str(video_path),
                ),
            )
        except (ThumbnailPipelineError, ValueError) as exc:
            failures += 1
            logger.error("Thumbnail selection failed for %s: %s", video_path, exc)
            typer.echo(f"Error: {video_path}: {exc}", err=True)
            results.append(
                {"video_path": str(video_path), "source_key": source_key, "status": "error", "error": str(exc)}
            )
            continue

        results.append(
            {
                "video_path": str(video_path),
                "source_key": source_key,
                "status": "ok",
                "chosen_timestamp": record.chosen_timestamp,
                "combined_score": record.combined_score,
                "storage_location": record.storage_location,
            }
        )

    typer.echo(
        json.dumps(
            {"total": len(videos), "succeeded": len(videos) - failures, "failed": failures, "results": results},
            indent=2,
        )
    )
    if failures:
        raise typer.Exit(code=1)


@app.command("score")
def score(
    video_path: str,
    context: str = typer.Option("", help="Short description of the video's subject for the vision judge."),
    sample_count: int | None = typer.Option(None, min=1, help="Number of candidate frames to sample."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="THUMBPICK_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Score every sampled candidate and print the ranking without storing anything."""

    settings = _bootstrap(config_path)

    try:
        result = _run_with_progress(
            1,
            1,
            "Score candidates",
            lambda: score_video(
                video_path,
                context,
                SelectionOptions(sample_count=sample_count),
                settings=settings,
                video_source=OpenCVVideoSource(),
            ),
        )
    except (ThumbnailPipelineError, ValueError) as exc:
        raise _fail(exc) from exc

    candidates = []
    for record, details, semantic in zip(result.records, result.heuristics, result.semantic):
        candidates.append(
            {
                **asdict(record),
                "brightness": round(details.metrics.brightness, 3),
                "contrast": round(details.metrics.contrast, 3),
                "sharpness": round(details.metrics.sharpness, 3),
                "semantic_reasoning": semantic.reasoning,
                "semantic_error": semantic.error,
            }
        )

    typer.echo(
        json.dumps(
            {
                "video_path": video_path,
                "winner_index": result.winner_index,
                "winner_timestamp": result.winner.timestamp_seconds,
                "candidates": candidates,
            },
            indent=2,
        )
    )


@store_app.command("show")
def store_show(
    source_key: str,
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="THUMBPICK_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Print the stored record for a source key."""

    settings = _bootstrap(config_path)
    record = _build_store(settings).get(source_key)
    if record is None:
        typer.echo(f"No thumbnail stored for {source_key!r}.", err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(_record_payload(record), indent=2))


@store_app.command("clear")
def store_clear(
    source_key: str,
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="THUMBPICK_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Delete the stored thumbnail so the next `ensure` selects again."""

    settings = _bootstrap(config_path)
    removed = _build_store(settings).delete(source_key)
    typer.echo(json.dumps({"source_key": source_key, "removed": removed}, indent=2))


@store_app.command("list")
def store_list(
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="THUMBPICK_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """List source keys that have a stored thumbnail."""

    settings = _bootstrap(config_path)
    typer.echo(json.dumps(_build_store(settings).list_keys(), indent=2))


if __name__ == "__main__":
    app()
