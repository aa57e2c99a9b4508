"""Helpers shared by the stage analyzers: JSON extraction, schema validation, formatting."""

import json
import logging
import re
from dataclasses import dataclass

from pydantic import BaseModel, ValidationError

from castwriter.errors import AnalyzerValidationError

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


@dataclass
class AnalyzerResult:
    """What an analyzer hands back to the stage runner.

    Token counts and cost are not part of this; the runner's metered client
    tracks them.
    """

    output_data: dict | None = None
    output_text: str | None = None
    skipped: bool = False


def extract_json(response_text: str, field: str = "response") -> dict:
    """Parse a JSON object out of an LLM reply.

    Accepts a bare object, an object wrapped in ```json fences, or an object
    embedded in surrounding prose. Trailing commas and // comments are
    cleaned up before giving up.

    Raises:
        AnalyzerValidationError: If no JSON object can be recovered.
    """
    text = (response_text or "").strip()
    candidates = [text]

    fenced = _FENCED_BLOCK.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())

    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        for attempt in (candidate, _clean_json(candidate)):
            try:
                parsed = json.loads(attempt)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed

    logger.error("Could not parse JSON (first 500 chars): %s", text[:500])
    raise AnalyzerValidationError(field, "could not extract a JSON object from the model response")


def _clean_json(text: str) -> str:
    """Best-effort cleanup of LLM-generated JSON (// comment lines, trailing commas)."""
    lines = [line for line in text.split("\n") if not line.lstrip().startswith("//")]
    return re.sub(r",\s*([}\]])", r"\1", "\n".join(lines))


def validate_output(model: type[BaseModel], data: dict) -> dict:
    """Validate analyzer JSON against a schema and return the normalized dict.

    The first pydantic error is reported as an AnalyzerValidationError naming
    the offending field path.
    """
    try:
        return model.model_validate(data).model_dump(mode="json")
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or model.__name__
        raise AnalyzerValidationError(field, first["msg"]) from e


def format_quotes(quotes: list[dict], limit: int | None = None) -> str:
    selected = quotes[:limit] if limit else quotes
    lines = []
    for i, q in enumerate(selected, 1):
        lines.append(f'{i}. "{q.get("quote", "")}" ({q.get("speaker", "unknown")})')
    return "\n".join(lines) or "(none)"


def format_list(items: list[str] | None) -> str:
    return "\n".join(f"- {item}" for item in (items or [])) or "(none)"


def format_evergreen(evergreen: dict) -> str:
    """Render shared reference content (podcast, host, voice) for a system prompt."""
    parts = []
    podcast = evergreen.get("podcast_info") or {}
    if podcast:
        parts.append(f"Podcast: {podcast.get('name', 'unknown')}")
        if podcast.get("target_audience"):
            parts.append(f"Audience: {podcast['target_audience']}")
    host = evergreen.get("host_profile") or {}
    if host.get("name"):
        parts.append(f"Host: {host['name']}")
    voice = evergreen.get("voice_guidelines") or {}
    if voice.get("tone"):
        tone = voice["tone"]
        parts.append(f"Tone: {', '.join(tone) if isinstance(tone, list) else tone}")
    if voice.get("avoid"):
        parts.append("Avoid: " + ", ".join(voice["avoid"]))
    return "\n".join(parts)
