from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Iterator, Mapping

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "THUMBPICK_"


class PipelineSettings(BaseModel):
    sample_count: int = Field(default=10, ge=1)
    frame_width: int = 640
    request_timeout_seconds: float = 300.0


class WeightSettings(BaseModel):
    heuristic: float = 0.4
    semantic: float = 0.6


class ScoringSettings(BaseModel):
    strategy: str = "hybrid"
    tie_epsilon: float = Field(default=0.01, ge=0.0)


class JudgeSettings(BaseModel):
    provider: str = "ollama"
    model: str = "llava:7b"
    endpoint: str = "http://localhost:11434"
    timeout_seconds: int = 30
    max_retries: int = Field(default=1, ge=0, le=1)
    concurrency: int = Field(default=4, ge=1)
    prompt_path: Path | None = None


class StoreSettings(BaseModel):
    root_dir: Path = Path("data/thumbnails")
    max_put_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = 0.5
    jpeg_quality: int = Field(default=85, ge=1, le=100)


class LoggingSettings(BaseModel):
    level: str = "INFO"


class Settings(BaseModel):
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    weights: WeightSettings = Field(default_factory=WeightSettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    judge: JudgeSettings = Field(default_factory=JudgeSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML, then apply `THUMBPICK_<SECTION>__<FIELD>` overrides.

    An explicit path (argument or `THUMBPICK_CONFIG`) must exist; the bundled
    default path may be absent, in which case model defaults apply.
    """

    resolved_path = Path(config_path or os.getenv(f"{ENV_PREFIX}CONFIG") or DEFAULT_CONFIG_PATH)
    if resolved_path.exists():
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    elif resolved_path == DEFAULT_CONFIG_PATH:
        raw_config = {}
    else:
        raise FileNotFoundError(f"Config file not found: {resolved_path}")

    data = Settings.model_validate(raw_config).model_dump(mode="python")
    for section, field, raw_value in _env_overrides(os.environ):
        values = data.get(section)
        if isinstance(values, dict) and field in values:
            values[field] = _coerce_value(raw_value, values[field])

    return Settings.model_validate(data)


def _env_overrides(environ: Mapping[str, str]) -> Iterator[tuple[str, str, str]]:
    for key, raw_value in sorted(environ.items()):
        if not key.startswith(ENV_PREFIX):
            continue
        section, separator, field = key[len(ENV_PREFIX) :].lower().partition("__")
        # Settings are two levels deep; THUMBPICK_CONFIG has no separator.
        if not separator or not field or "__" in field:
            continue
        yield section, field, raw_value


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if isinstance(existing_value, bool):
        return raw_value.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, (int, float)):
        return type(existing_value)(raw_value)
    if isinstance(existing_value, (list, dict)):
        return json.loads(raw_value)
    if existing_value is None and raw_value.strip().lower() in {"", "none", "null"}:
        return None
    return raw_value
