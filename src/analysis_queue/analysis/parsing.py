"""Turn free-form model output into an AnalysisResult."""

from __future__ import annotations

import json
import re

from analysis_queue.analysis.base import AnalysisResult

DEFAULT_DESCRIPTION = "Unable to generate description"
DEFAULT_CATEGORY = "Uncategorized"
TEXT_FALLBACK_CATEGORY = "General"
DEFAULT_CONFIDENCE = 0.5
MAX_DESCRIPTION_WORDS = 200
MAX_TAGS = 5
TEXT_FALLBACK_DESCRIPTION_CHARS = 200

_STOP_WORDS = frozenset(
    {
        "this",
        "that",
        "with",
        "from",
        "they",
        "have",
        "been",
        "were",
        "will",
        "would",
        "could",
        "should",
    },
)
_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)
_DESCRIPTION_RE = re.compile(r"description[:\s]+([^,\n]+)", re.IGNORECASE)
_CATEGORY_RE = re.compile(r"category[:\s]+([^,\n]+)", re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r"confidence[:\s]+([0-9.]+)", re.IGNORECASE)


def parse_model_output(text: str) -> AnalysisResult:
    """Parse JSON output, falling back to key/value scraping of plain text."""

    fields = _parse_json_object(text)
    if fields is None:
        fields = parse_text_response(text)

    description = _as_text(fields.get("description")) or DEFAULT_DESCRIPTION
    category = _as_text(fields.get("category")) or DEFAULT_CATEGORY
    description = limit_words(description, MAX_DESCRIPTION_WORDS)
    return AnalysisResult(
        description=description,
        category=category,
        confidence=clamp_confidence(fields.get("confidence")),
        tags=extract_tags(description),
    )


def parse_text_response(text: str) -> dict[str, object]:
    description_match = _DESCRIPTION_RE.search(text)
    category_match = _CATEGORY_RE.search(text)
    confidence_match = _CONFIDENCE_RE.search(text)
    description = (
        description_match.group(1)
        if description_match
        else text[:TEXT_FALLBACK_DESCRIPTION_CHARS]
    )
    return {
        "description": description.strip(),
        "category": (category_match.group(1) if category_match else TEXT_FALLBACK_CATEGORY).strip(),
        "confidence": confidence_match.group(1) if confidence_match else None,
    }


def clamp_confidence(value: object) -> float:
    """Coerce to float in [0, 1]; missing or unparsable values become 0.5."""

    if isinstance(value, bool) or value is None:
        return DEFAULT_CONFIDENCE
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if number != number:  # NaN
        return DEFAULT_CONFIDENCE
    return min(max(number, 0.0), 1.0)


def extract_tags(description: str, *, limit: int = MAX_TAGS) -> list[str]:
    """Pick the first distinct meaningful words of a description."""

    letters_only = re.sub(r"[^a-z\s]", "", description.lower())
    tags: list[str] = []
    for word in letters_only.split():
        if len(word) <= 3 or word in _STOP_WORDS or word in tags:
            continue
        tags.append(word)
        if len(tags) >= limit:
            break
    return tags


def limit_words(text: str, max_words: int) -> str:
    words = text.split()
    if len(words) <= max_words:
        return text.strip()
    return " ".join(words[:max_words])


def _parse_json_object(text: str) -> dict[str, object] | None:
    candidate = text.strip()
    fenced = _FENCE_RE.match(candidate)
    if fenced:
        candidate = fenced.group(1)
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _as_text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()
