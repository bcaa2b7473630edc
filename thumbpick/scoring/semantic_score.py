from __future__ import annotations

import base64
import json
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from http.client import HTTPException
from pathlib import Path
from typing import Any, Callable, Sequence
from urllib import request
from urllib.error import HTTPError, URLError

from thumbpick.errors import PipelineCancelled
from thumbpick.ingest.frame_sampler import encode_jpeg
from thumbpick.models import CandidateFrame

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "llava:7b"
DEFAULT_ENDPOINT = "http://localhost:11434"
DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_MAX_RETRIES = 1
DEFAULT_POLL_INTERVAL_SECONDS = 0.1
OPTIONAL_SUBSCORES = ("composition", "clarity", "lighting")
DEFAULT_PROMPT_TEMPLATE = """You are judging a candidate still frame to be used as a video thumbnail.
Video context: {context}

Rate the frame from 0 to 100, weighing:
- Composition (30%): clear focal point, balanced framing, little empty or distracting space.
- Visual clarity (25%): in focus, faces and key details readable, good separation between elements.
- Lighting and exposure (25%): subject well lit, neither too dark nor washed out.
- Relevance (20%): shows what the video is about given the context above, not a blank or transition frame.

Respond with JSON only, using exactly these keys:
{{"overall_score": <0-100>, "composition": <0-100>, "clarity": <0-100>, "lighting": <0-100>, "reasoning": "<one sentence>"}}
"""

SemanticJudge = Callable[[CandidateFrame, str], "SemanticScore"]


@dataclass(slots=True)
class SemanticScore:
    """Outcome of one judge call; `score` is None when the judge gave no opinion."""

    score: float | None
    reasoning: str | None = None
    subscores: dict[str, float] = field(default_factory=dict)
    error: str | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.score is not None

    @classmethod
    def failed(cls, error: str, *, attempts: int = 0) -> SemanticScore:
        return cls(score=None, error=error, attempts=attempts)


class TransientJudgeError(Exception):
    """Judge failure worth one more attempt (rate limit, 5xx, network, timeout)."""


class PermanentJudgeError(Exception):
    """Judge failure that a retry would not fix (bad request, malformed output)."""


def score_frame(
    frame: CandidateFrame,
    context: str,
    *,
    endpoint: str = DEFAULT_ENDPOINT,
    model: str = DEFAULT_MODEL,
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    max_retries: int = DEFAULT_MAX_RETRIES,
    jpeg_quality: int = 85,
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE,
) -> SemanticScore:
    """Ask a vision model served by Ollama for a 0-100 thumbnail quality score.

    Never raises for judge-side problems: timeouts, HTTP errors and malformed
    answers come back as a `SemanticScore` with `score=None`. Transient
    failures get at most one retry.
    """

    try:
        image_b64 = base64.b64encode(encode_jpeg(frame, jpeg_quality)).decode("ascii")
    except Exception as exc:
        logger.warning("Could not encode frame at %.3fs for the judge: %s", frame.timestamp_seconds, exc)
        return SemanticScore.failed(f"frame encoding failed: {exc}")

    prompt = _format_prompt(prompt_template, context)
    allowed_attempts = 1 + max(0, min(1, max_retries))
    last_error = "judge was not called"

    for attempt in range(1, allowed_attempts + 1):
        try:
            response_text = _call_judge(
                endpoint=endpoint,
                model=model,
                prompt=prompt,
                image_b64=image_b64,
                timeout_seconds=timeout_seconds,
            )
            result = _validate_judgement(_parse_json(response_text))
            result.attempts = attempt
            return result
        except TransientJudgeError as exc:
            last_error = str(exc)
            if attempt < allowed_attempts:
                logger.info(
                    "Transient judge failure at %.3fs (%s); retrying once.",
                    frame.timestamp_seconds,
                    exc,
                )
                continue
        except PermanentJudgeError as exc:
            last_error = str(exc)
            break

    logger.warning("Semantic judge gave no score for frame at %.3fs: %s", frame.timestamp_seconds, last_error)
    return SemanticScore.failed(last_error, attempts=attempt)


def score_frames_concurrently(
    frames: Sequence[CandidateFrame],
    context: str,
    judge: SemanticJudge,
    *,
    max_workers: int = 4,
    cancel_event: threading.Event | None = None,
    deadline: float | None = None,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> list[SemanticScore]:
    """Run the judge over all frames with bounded concurrency.

    Results are indexed like `frames` regardless of completion order. `deadline`
    is a `time.monotonic()` value; passing it, or setting `cancel_event`,
    abandons in-flight calls and raises `PipelineCancelled`.
    """

    if not frames:
        return []

    executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="semantic-judge")
    futures: dict[Future[SemanticScore], int] = {
        executor.submit(judge, frame, context): index for index, frame in enumerate(frames)
    }
    results: list[SemanticScore | None] = [None] * len(frames)
    pending = set(futures)
    cancelled = False

    try:
        while pending:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                raise PipelineCancelled("Thumbnail request was cancelled during semantic scoring.")

            timeout = poll_interval_seconds
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    cancelled = True
                    raise PipelineCancelled("Thumbnail request exceeded its deadline during semantic scoring.")
                timeout = min(timeout, remaining)

            done, pending = wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)
            for future in done:
                index = futures[future]
                try:
                    results[index] = future.result()
                except Exception as exc:
                    logger.warning("Semantic judge raised for candidate %d: %s", index, exc)
                    results[index] = SemanticScore.failed(f"{type(exc).__name__}: {exc}")
    finally:
        executor.shutdown(wait=not cancelled, cancel_futures=cancelled)

    return [result if result is not None else SemanticScore.failed("no result") for result in results]


def load_prompt_template(prompt_path: str | Path | None) -> str:
    if prompt_path is None:
        return DEFAULT_PROMPT_TEMPLATE
    return Path(prompt_path).read_text(encoding="utf-8")


def _format_prompt(template: str, context: str) -> str:
    return template.format(context=context.strip() or "unspecified").strip()


def _call_judge(*, endpoint: str, model: str, prompt: str, image_b64: str, timeout_seconds: int) -> str:
    try:
        return _request_ollama(
            endpoint=endpoint,
            model=model,
            prompt=prompt,
            image_b64=image_b64,
            timeout_seconds=timeout_seconds,
        )
    except HTTPError as exc:
        if exc.code == 429 or exc.code >= 500:
            raise TransientJudgeError(f"HTTP {exc.code} from judge") from exc
        raise PermanentJudgeError(f"HTTP {exc.code} from judge") from exc
    except (URLError, TimeoutError, ConnectionError) as exc:
        raise TransientJudgeError(f"judge unreachable: {exc}") from exc
    except HTTPException as exc:
        raise TransientJudgeError(f"judge connection broke: {type(exc).__name__}: {exc}") from exc
    except OSError as exc:
        raise TransientJudgeError(f"judge connection failed: {exc}") from exc


def _request_ollama(*, endpoint: str, model: str, prompt: str, image_b64: str, timeout_seconds: int) -> str:
    body = json.dumps(
        {
            "model": model,
            "prompt": prompt,
            "images": [image_b64],
            "stream": False,
            "format": "json",
            "options": {"temperature": 0},
        }
    ).encode("utf-8")

    req = request.Request(
        f"{endpoint.rstrip('/')}/api/generate",
        data=body,
        method="POST",
        headers={"Content-Type": "application/json"},
    )

    with request.urlopen(req, timeout=timeout_seconds) as response:
        raw_body = response.read()

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise PermanentJudgeError(f"Ollama response is not UTF-8: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise PermanentJudgeError(f"Ollama response is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise PermanentJudgeError("Ollama response envelope is not a JSON object.")

    content = payload.get("response")
    if not isinstance(content, str):
        raise PermanentJudgeError("Ollama response missing JSON text in 'response' field.")
    return content


def _parse_json(response_text: str) -> dict[str, Any]:
    try:
        payload = json.loads(response_text)
    except json.JSONDecodeError as exc:
        raise PermanentJudgeError(f"judge returned invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise PermanentJudgeError("judge returned JSON that is not an object.")
    return payload


def _validate_judgement(payload: dict[str, Any]) -> SemanticScore:
    if "overall_score" not in payload or "reasoning" not in payload:
        raise PermanentJudgeError("judge output must include 'overall_score' and 'reasoning'.")

    overall = _score_value(payload["overall_score"], "overall_score")

    reasoning = payload["reasoning"]
    if not isinstance(reasoning, str) or not reasoning.strip():
        raise PermanentJudgeError("reasoning must be a non-empty string.")

    subscores = {
        key: _score_value(payload[key], key)
        for key in OPTIONAL_SUBSCORES
        if payload.get(key) is not None
    }

    return SemanticScore(score=overall, reasoning=reasoning.strip(), subscores=subscores)


def _score_value(raw_value: Any, name: str) -> float:
    if isinstance(raw_value, bool):
        raise PermanentJudgeError(f"{name} must be a number.")
    try:
        value = float(raw_value)
    except (TypeError, ValueError) as exc:
        raise PermanentJudgeError(f"{name} must be a number.") from exc
    if not 0.0 <= value <= 100.0:
        raise PermanentJudgeError(f"{name} must be in [0, 100].")
    return value
