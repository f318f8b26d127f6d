"""Tests for tolerant parsing of model output."""

import pytest

from inbox_triage.classifier.parsing import (
    normalize_batch_type,
    parse_classification,
    parse_learning_suggestions,
    parse_model_json,
)
from inbox_triage.core.errors import ModelResponseError
from inbox_triage.db import clamp_confidence

VALID = frozenset({"notifications", "finance", "newsletters", "calendar", "spam"})


class TestParseModelJson:
    """Tests for JSON extraction from free text."""

    def test_plain_object(self) -> None:
        assert parse_model_json('{"a": 1}') == {"a": 1}

    def test_code_fence(self) -> None:
        text = '```json\n{"batchType": "spam", "confidence": 0.9}\n```'
        assert parse_model_json(text) == {"batchType": "spam", "confidence": 0.9}

    def test_surrounding_prose(self) -> None:
        text = 'Sure! Here is my answer: {"a": {"b": [1, 2]}} Hope that helps.'
        assert parse_model_json(text) == {"a": {"b": [1, 2]}}

    def test_braces_inside_strings(self) -> None:
        text = '{"reason": "contains } and { characters", "x": 1}'
        assert parse_model_json(text) == {"reason": "contains } and { characters", "x": 1}

    def test_trailing_commas(self) -> None:
        assert parse_model_json('{"a": [1, 2,], "b": 3,}') == {"a": [1, 2], "b": 3}

    def test_control_characters(self) -> None:
        assert parse_model_json('{"a":\x00 "b\x07"}') == {"a": "b"}

    def test_skips_unparseable_first_candidate(self) -> None:
        text = 'Format: {batchType: ...}. Answer: {"batchType": "finance"}'
        assert parse_model_json(text) == {"batchType": "finance"}

    def test_array(self) -> None:
        assert parse_model_json('Result:\n[{"a": 1},]', expect="array") == [{"a": 1}]

    @pytest.mark.parametrize("text", [None, "", "   ", "no json here", "{unterminated"])
    def test_failures_raise_model_response_error(self, text) -> None:
        with pytest.raises(ModelResponseError):
            parse_model_json(text)


class TestClampConfidence:
    """Tests for confidence normalization."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (0.5, 0.5),
            (1.7, 1.0),
            (-0.2, 0.0),
            (1, 1.0),
            ("0.9", 0.0),
            (None, 0.0),
            (True, 0.0),
            (float("nan"), 0.0),
        ],
    )
    def test_clamp(self, value, expected) -> None:
        assert clamp_confidence(value) == expected


class TestParseClassification:
    """Tests for classifier answer normalization."""

    def test_full_answer(self) -> None:
        text = """```json
{
  "batchType": "Newsletters",
  "confidence": 0.93,
  "reason": "Weekly digest",
  "enrichment": {
    "summary": "Industry news roundup",
    "suggestedPriority": "LOW",
    "suggestedTags": ["news", "", 3]
  }
}
```"""
        parsed = parse_classification(text, VALID)

        assert parsed.batch_type == "newsletters"
        assert parsed.confidence == 0.93
        assert parsed.reason == "Weekly digest"
        assert parsed.enrichment == {
            "summary": "Industry news roundup",
            "suggestedPriority": "low",
            "suggestedTags": ["news"],
        }

    def test_unknown_batch_type_becomes_none(self) -> None:
        parsed = parse_classification('{"batchType": "shopping", "confidence": 0.99}', VALID)
        assert parsed.batch_type is None
        assert parsed.reason == "No reason provided"

    def test_unknown_priority_dropped(self) -> None:
        text = '{"batchType": null, "confidence": 0.4, "enrichment": {"suggestedPriority": "asap"}}'
        assert parse_classification(text, VALID).enrichment == {}

    def test_out_of_range_confidence_clamped(self) -> None:
        assert parse_classification('{"batchType": "spam", "confidence": 7}', VALID).confidence == 1.0
        assert parse_classification('{"batchType": "spam", "confidence": "high"}', VALID).confidence == 0.0

    def test_garbage_raises(self) -> None:
        with pytest.raises(ModelResponseError):
            parse_classification("I think this is spam.", VALID)

    @pytest.mark.parametrize("label", [None, "null", "None", "individual", "", 42])
    def test_null_labels(self, label) -> None:
        assert normalize_batch_type(label, VALID) is None


class TestParseLearningSuggestions:
    """Tests for learning answer parsing."""

    def test_normalizes_suggestions(self) -> None:
        text = """Here you go:
[
  {"type": "new_rule", "ruleType": "structured", "name": "Acme billing",
   "trigger": {"senderDomain": "acme.com"}, "action": {"type": "batch", "batchType": "finance"},
   "confidence": 0.8, "reasoning": "Always bulk-archived"},
  {"type": "refine_rule", "ruleType": "guidance", "name": "Investors",
   "guidance": "  Investor mail is important  ", "confidence": 1.4, "ruleId": "r1"}
]"""
        suggestions = parse_learning_suggestions(text)

        assert len(suggestions) == 2
        assert suggestions[0]["trigger"] == {"senderDomain": "acme.com"}
        assert suggestions[0]["action"]["batchType"] == "finance"
        assert suggestions[1]["type"] == "refine_rule"
        assert suggestions[1]["guidance"] == "Investor mail is important"
        assert suggestions[1]["confidence"] == 1.0
        assert suggestions[1]["ruleId"] == "r1"
        assert "trigger" not in suggestions[1]

    def test_empty_array(self) -> None:
        assert parse_learning_suggestions("[]") == []

    def test_non_object_entry_rejects_whole_batch(self) -> None:
        with pytest.raises(ModelResponseError):
            parse_learning_suggestions('[{"name": "ok", "confidence": 0.9}, "oops"]')

    def test_object_instead_of_array_rejected(self) -> None:
        with pytest.raises(ModelResponseError):
            parse_learning_suggestions('{"name": "ok"}')
