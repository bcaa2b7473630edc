from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
import time
import weakref
from dataclasses import asdict, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from thumbpick.errors import StorageError
from thumbpick.models import HeuristicMetrics, ScoreRecord, ThumbnailRecord

logger = logging.getLogger(__name__)

THUMBNAIL_PREFIX = "video-thumbnails"
THUMBNAIL_STEM = "thumbnail"
RECORD_FILENAME = "record.json"


class ThumbnailStore:
    """Filesystem-backed store holding one thumbnail and one record per source key.

    Layout: ``<root>/video-thumbnails/<slug>-<hash>/{thumbnail-<sha>.jpg,record.json}``.
    The directory depends only on the source key, so regeneration replaces the
    record in place. Image files are content-addressed: new bytes land next to
    the old ones, the record swap is the commit point, and superseded images
    are pruned afterwards. Every record carries the SHA-256 of its bytes; `get`
    only returns records whose bytes verify.
    """

    def __init__(
        self,
        root_dir: str | Path,
        *,
        max_put_attempts: int = 3,
        retry_delay_seconds: float = 0.5,
    ) -> None:
        self.root_dir = Path(root_dir).expanduser().resolve()
        self.max_put_attempts = max(1, max_put_attempts)
        self.retry_delay_seconds = max(0.0, retry_delay_seconds)
        # Entries vanish once no caller holds the lock object.
        self._locks: weakref.WeakValueDictionary[str, Any] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def lock(self, source_key: str) -> Any:
        """Per-key re-entrant lock serializing writers of one source key."""

        with self._locks_guard:
            key_lock = self._locks.get(source_key)
            if key_lock is None:
                key_lock = threading.RLock()
                self._locks[source_key] = key_lock
            return key_lock

    def key_dir(self, source_key: str) -> Path:
        return self.root_dir / THUMBNAIL_PREFIX / storage_slug(source_key)

    def get(self, source_key: str) -> ThumbnailRecord | None:
        with self.lock(source_key):
            record_path = self.key_dir(source_key) / RECORD_FILENAME
            if not record_path.exists():
                return None

            try:
                record = _record_from_payload(json.loads(record_path.read_text(encoding="utf-8")))
            except (OSError, ValueError, TypeError, KeyError) as exc:
                logger.warning("Ignoring unreadable thumbnail record at %s: %s", record_path, exc)
                return None

            if record.source_key != source_key:
                logger.warning("Record at %s belongs to %r, not %r.", record_path, record.source_key, source_key)
                return None

            if not _bytes_match(Path(record.storage_location), record.content_sha256):
                logger.warning("Thumbnail bytes for %r are missing or do not match their record.", source_key)
                return None

            return record

    def put(
        self,
        source_key: str,
        frame_bytes: bytes,
        score_record: ScoreRecord,
        *,
        metrics: HeuristicMetrics | None = None,
        semantic_reasoning: str | None = None,
        candidate_count: int = 0,
        width: int = 0,
        height: int = 0,
    ) -> str:
        """Persist winner bytes plus its record; return the storage location."""

        if not frame_bytes:
            raise ValueError("Refusing to store an empty thumbnail payload.")

        digest = hashlib.sha256(frame_bytes).hexdigest()
        target_dir = self.key_dir(source_key)
        image_path = target_dir / f"{THUMBNAIL_STEM}-{digest[:16]}.jpg"
        record = ThumbnailRecord(
            source_key=source_key,
            chosen_timestamp=score_record.timestamp_seconds,
            combined_score=score_record.combined_score,
            heuristic_score=score_record.heuristic_score,
            semantic_score=score_record.semantic_score,
            storage_location=str(image_path),
            created_at=datetime.now(timezone.utc).isoformat(),
            method=score_record.method,
            candidate_count=candidate_count,
            brightness=metrics.brightness if metrics else None,
            contrast=metrics.contrast if metrics else None,
            sharpness=metrics.sharpness if metrics else None,
            semantic_reasoning=semantic_reasoning,
            content_sha256=digest,
            width=width,
            height=height,
        )
        record_bytes = json.dumps(asdict(record), indent=2, sort_keys=True).encode("utf-8")

        with self.lock(source_key):
            last_error: OSError | None = None
            for attempt in range(1, self.max_put_attempts + 1):
                try:
                    _write_pair(target_dir, image_path, frame_bytes, target_dir / RECORD_FILENAME, record_bytes)
                except OSError as exc:
                    last_error = exc
                    logger.warning(
                        "Thumbnail write for %r failed (attempt %d/%d): %s",
                        source_key,
                        attempt,
                        self.max_put_attempts,
                        exc,
                    )
                    if attempt < self.max_put_attempts:
                        time.sleep(self.retry_delay_seconds * attempt)
                    continue

                _prune_images(target_dir, keep=image_path)
                logger.info("Stored thumbnail for %r at %s", source_key, image_path)
                return str(image_path)

        raise StorageError(
            f"Failed to store thumbnail for {source_key!r} after {self.max_put_attempts} attempts: {last_error}"
        ) from last_error

    def delete(self, source_key: str) -> bool:
        with self.lock(source_key):
            target_dir = self.key_dir(source_key)
            if not target_dir.exists():
                return False
            # Record first so readers never see a record without bytes.
            record_path = target_dir / RECORD_FILENAME
            removed = record_path.exists()
            if removed:
                record_path.unlink()
            removed = _prune_images(target_dir, keep=None) > 0 or removed
            if not any(target_dir.iterdir()):
                target_dir.rmdir()
            return removed

    def list_keys(self) -> list[str]:
        base = self.root_dir / THUMBNAIL_PREFIX
        if not base.exists():
            return []

        keys: list[str] = []
        for record_path in sorted(base.glob(f"*/{RECORD_FILENAME}")):
            try:
                payload = json.loads(record_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable record %s: %s", record_path, exc)
                continue
            if isinstance(payload, dict) and isinstance(payload.get("source_key"), str):
                keys.append(payload["source_key"])
        return sorted(keys)


def storage_slug(source_key: str) -> str:
    sanitized = "".join(ch.lower() if ch.isalnum() else "_" for ch in source_key).strip("_")
    digest = hashlib.sha1(source_key.encode("utf-8")).hexdigest()[:10]
    return f"{sanitized[:64] or 'video'}-{digest}"


def _write_pair(target_dir: Path, image_path: Path, image_bytes: bytes, record_path: Path, record_bytes: bytes) -> None:
    target_dir.mkdir(parents=True, exist_ok=True)
    staged_image = _stage_bytes(target_dir, image_bytes)
    try:
        staged_record = _stage_bytes(target_dir, record_bytes)
    except BaseException:
        _remove_quietly(staged_image)
        raise

    image_existed = image_path.exists()
    try:
        os.replace(staged_image, image_path)
        try:
            os.replace(staged_record, record_path)
        except BaseException:
            # The previous record still points at its own image; drop ours.
            if not image_existed:
                _remove_quietly(str(image_path))
            raise
    finally:
        _remove_quietly(staged_image)
        _remove_quietly(staged_record)


def _prune_images(target_dir: Path, *, keep: Path | None) -> int:
    removed = 0
    for candidate in target_dir.glob(f"{THUMBNAIL_STEM}*.jpg"):
        if keep is not None and candidate == keep:
            continue
        try:
            candidate.unlink()
            removed += 1
        except OSError as exc:
            logger.warning("Could not remove superseded thumbnail %s: %s", candidate, exc)
    return removed


def _stage_bytes(directory: Path, payload: bytes) -> str:
    temp_name = None
    try:
        with tempfile.NamedTemporaryFile("wb", delete=False, dir=str(directory), suffix=".tmp") as handle:
            temp_name = handle.name
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
    except BaseException:
        if temp_name:
            _remove_quietly(temp_name)
        raise
    return temp_name


def _remove_quietly(path: str) -> None:
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError:
            pass


def _bytes_match(path: Path, expected_sha256: str) -> bool:
    if not expected_sha256 or not path.is_file():
        return False
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest() == expected_sha256
    except OSError:
        return False


def _record_from_payload(payload: Any) -> ThumbnailRecord:
    if not isinstance(payload, dict):
        raise ValueError("Thumbnail record must be a JSON object.")
    known = {item.name for item in fields(ThumbnailRecord)}
    return ThumbnailRecord(**{key: value for key, value in payload.items() if key in known})
