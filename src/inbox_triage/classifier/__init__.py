"""Item classification components.

This package provides the triage decision pipeline:
- Deterministic rule matching and the rule lifecycle store
- Sender/domain decision history for classifier context
- Tolerant parsing of model output
- Local (fast) and cloud model callers
- The tiered classification pipeline
- Natural-language rule authoring
"""

from inbox_triage.classifier.cloud_classifier import CloudClassifier
from inbox_triage.classifier.context import MemoryContextProvider, NullMemoryContext, safe_context_for
from inbox_triage.classifier.decision_history import (
    DecisionHistoryAggregator,
    DecisionSummary,
    format_decision_history,
)
from inbox_triage.classifier.llm_log import LLMRequestLogger
from inbox_triage.classifier.local_classifier import LocalClassifier
from inbox_triage.classifier.parsing import (
    ParsedClassification,
    parse_classification,
    parse_learning_suggestions,
    parse_model_json,
)
from inbox_triage.classifier.pipeline import (
    ClassificationPipeline,
    ClassificationResult,
    CloudTier,
    ConnectorOverrideTier,
    FastTier,
    RuleTier,
    default_tiers,
    looks_automated,
)
from inbox_triage.classifier.rule_author import RuleAuthor, RuleDraft
from inbox_triage.classifier.rule_store import RuleStore, validate_rule_definition
from inbox_triage.classifier.rules import SEED_RULES, first_match, matches

__all__ = [
    # Rules
    "SEED_RULES",
    "first_match",
    "matches",
    "RuleStore",
    "validate_rule_definition",
    # Decision history
    "DecisionHistoryAggregator",
    "DecisionSummary",
    "format_decision_history",
    # Parsing
    "ParsedClassification",
    "parse_classification",
    "parse_learning_suggestions",
    "parse_model_json",
    # Model callers
    "CloudClassifier",
    "LLMRequestLogger",
    "LocalClassifier",
    # Memory context
    "MemoryContextProvider",
    "NullMemoryContext",
    "safe_context_for",
    # Pipeline
    "ClassificationPipeline",
    "ClassificationResult",
    "CloudTier",
    "ConnectorOverrideTier",
    "FastTier",
    "RuleTier",
    "default_tiers",
    "looks_automated",
    # Rule authoring
    "RuleAuthor",
    "RuleDraft",
]
