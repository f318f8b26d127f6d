"""Tolerant parsing of free-text model output.

Models are asked for bare JSON but routinely wrap it in code fences, add a
sentence before or after, leave trailing commas or emit stray control
characters. Parsing here:

1. strips an optional ``` / ```json fence
2. removes control characters (other than whitespace)
3. locates the first balanced top-level object (or array)
4. removes trailing commas before a closing bracket
5. json.loads the result

Anything that still fails raises ModelResponseError; callers turn that into
a tier miss, a safe fallback, or an empty learning batch.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Literal

import regex

from inbox_triage.core.errors import ModelResponseError
from inbox_triage.db.store import VALID_PRIORITIES, clamp_confidence

# Regex timeout in seconds; applied at match time
REGEX_TIMEOUT = 1.0

FENCE_PATTERN = regex.compile(r"```[a-zA-Z]*\s*\n?(.*?)(?:\n?\s*```|$)", regex.DOTALL)
CONTROL_CHARS_PATTERN = regex.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

_NULL_LABELS = frozenset({"", "null", "none", "individual"})


def parse_model_json(text: str | None, expect: Literal["object", "array"] = "object") -> Any:
    """Extract and decode the first JSON object or array in model output.

    Args:
        text: Raw model output
        expect: Which top-level container to look for

    Returns:
        The decoded dict (expect='object') or list (expect='array')

    Raises:
        ModelResponseError: If no decodable container is found
    """
    if not text or not text.strip():
        raise ModelResponseError("Empty model response", raw_response=text or "")

    try:
        cleaned = _strip_fences(text.strip())
        cleaned = CONTROL_CHARS_PATTERN.sub("", cleaned, timeout=REGEX_TIMEOUT)
    except TimeoutError as e:
        raise ModelResponseError("Model response too complex to clean", raw_response=text) from e

    opener, closer = ("{", "}") if expect == "object" else ("[", "]")
    last_error: json.JSONDecodeError | None = None
    for candidate in _balanced_spans(cleaned, opener, closer):
        try:
            return json.loads(_strip_trailing_commas(candidate), strict=False)
        except json.JSONDecodeError as e:
            last_error = e

    if last_error is not None:
        raise ModelResponseError(
            f"Invalid JSON in model response: {last_error}", raw_response=text
        ) from last_error
    raise ModelResponseError(f"No JSON {expect} found in model response", raw_response=text)


def _strip_fences(text: str) -> str:
    if "```" not in text:
        return text
    match = FENCE_PATTERN.search(text, timeout=REGEX_TIMEOUT)
    return match.group(1).strip() if match else text


def _balanced_spans(text: str, opener: str, closer: str) -> Iterator[str]:
    """Yield top-level balanced opener..closer spans in order, respecting JSON strings."""
    start = text.find(opener)
    while start != -1:
        end = _balanced_end(text, start, opener, closer)
        if end is None:
            # Unbalanced from this opener; try the next one
            start = text.find(opener, start + 1)
            continue
        yield text[start : end + 1]
        start = text.find(opener, end + 1)


def _balanced_end(text: str, start: int, opener: str, closer: str) -> int | None:
    """Index of the closer that balances text[start], or None."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return index
    return None


def _strip_trailing_commas(text: str) -> str:
    """Drop commas that directly precede '}' or ']' outside of strings."""
    out: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            out.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "}]":
            # Walk back over whitespace to a dangling comma
            back = len(out) - 1
            while back >= 0 and out[back].isspace():
                back -= 1
            if back >= 0 and out[back] == ",":
                del out[back]
        out.append(char)
    return "".join(out)


# ---------------------------------------------------------------------------
# Classification responses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParsedClassification:
    """Normalized classifier answer.

    Attributes:
        batch_type: A known batch type, or None (keep for individual review)
        confidence: Clamped into [0, 1]
        reason: Model's explanation
        enrichment: Optional summary / suggestedPriority / suggestedTags
    """

    batch_type: str | None
    confidence: float
    reason: str
    enrichment: dict[str, Any] = field(default_factory=dict)


def normalize_batch_type(value: Any, valid_batch_types: set[str] | frozenset[str]) -> str | None:
    """Map a model-supplied label onto a known batch type, else None."""
    if not isinstance(value, str):
        return None
    label = value.strip().lower()
    if label in _NULL_LABELS:
        return None
    return label if label in valid_batch_types else None


def parse_classification(
    text: str | None,
    valid_batch_types: set[str] | frozenset[str],
) -> ParsedClassification:
    """Parse a classifier response into a ParsedClassification.

    Unknown batch types become None and unknown priorities are dropped;
    neither is an error.

    Raises:
        ModelResponseError: If no JSON object can be decoded
    """
    data = parse_model_json(text, expect="object")
    if not isinstance(data, dict):
        raise ModelResponseError("Classifier response is not an object", raw_response=text or "")

    reason = data.get("reason") or data.get("reasoning") or "No reason provided"

    return ParsedClassification(
        batch_type=normalize_batch_type(data.get("batchType"), valid_batch_types),
        confidence=clamp_confidence(data.get("confidence")),
        reason=str(reason).strip(),
        enrichment=_parse_enrichment(data.get("enrichment")),
    )


def _parse_enrichment(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict):
        return {}

    enrichment: dict[str, Any] = {}

    summary = raw.get("summary")
    if isinstance(summary, str) and summary.strip():
        enrichment["summary"] = summary.strip()

    priority = raw.get("suggestedPriority")
    if isinstance(priority, str) and priority.strip().lower() in VALID_PRIORITIES:
        enrichment["suggestedPriority"] = priority.strip().lower()

    tags = raw.get("suggestedTags")
    if isinstance(tags, list):
        clean_tags = [t.strip() for t in tags if isinstance(t, str) and t.strip()]
        if clean_tags:
            enrichment["suggestedTags"] = clean_tags

    return enrichment


# ---------------------------------------------------------------------------
# Learning responses
# ---------------------------------------------------------------------------


def parse_learning_suggestions(text: str | None) -> list[dict[str, Any]]:
    """Parse a learning-loop response into normalized suggestion dicts.

    The whole batch is rejected if the output is not a JSON array or if any
    element is not an object; a partially garbled answer is never trusted.

    Raises:
        ModelResponseError: If the output is not an array of objects
    """
    data = parse_model_json(text, expect="array")
    if not isinstance(data, list):
        raise ModelResponseError("Learning response is not an array", raw_response=text or "")
    if any(not isinstance(entry, dict) for entry in data):
        raise ModelResponseError(
            "Learning response contains non-object entries", raw_response=text or ""
        )

    return [_normalize_suggestion(entry) for entry in data]


def _normalize_suggestion(entry: dict[str, Any]) -> dict[str, Any]:
    suggestion_type = "refine_rule" if entry.get("type") == "refine_rule" else "new_rule"
    rule_type = "guidance" if entry.get("ruleType") == "guidance" else "structured"

    suggestion: dict[str, Any] = {
        "type": suggestion_type,
        "ruleType": rule_type,
        "name": str(entry.get("name") or "Unnamed suggestion").strip(),
        "description": str(entry.get("description") or "").strip(),
        "confidence": clamp_confidence(entry.get("confidence")),
        "reasoning": str(entry.get("reasoning") or "").strip(),
    }

    if rule_type == "structured":
        trigger = entry.get("trigger")
        action = entry.get("action")
        suggestion["trigger"] = trigger if isinstance(trigger, dict) else None
        suggestion["action"] = action if isinstance(action, dict) else None
    else:
        guidance = entry.get("guidance")
        suggestion["guidance"] = guidance.strip() if isinstance(guidance, str) else None

    if entry.get("ruleId"):
        suggestion["ruleId"] = str(entry["ruleId"])

    return suggestion
