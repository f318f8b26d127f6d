"""Tiered classification pipeline.

An item is offered to an ordered list of tier handlers. Each handler
returns an accepted ClassificationResult or None ("pass"), and the first
accepted result wins:

1. ConnectorOverrideTier: meeting-record style connectors are always
   kept for individual review, with no model call
2. RuleTier: first matching active structured rule
3. FastTier: local model, only for items that look automated and only
   when its confidence clears the threshold
4. CloudTier: full-context cloud model; any parsed answer is final

A handler that raises is logged and treated as a pass. When every tier
passes, the pipeline returns a fixed safe fallback (keep for individual
review, confidence 0), so classify() never raises.

Usage:
    from inbox_triage.classifier.pipeline import ClassificationPipeline, default_tiers

    pipeline = ClassificationPipeline(default_tiers(config, rule_store, local, cloud, history))
    result = await pipeline.classify(item, active_rules)
    await store.update_item_classification(item.id, result.to_classification())
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from inbox_triage.classifier.context import safe_context_for
from inbox_triage.classifier.parsing import parse_classification
from inbox_triage.classifier.prompts import build_cloud_system_prompt, build_cloud_user_message
from inbox_triage.classifier.rules import first_match
from inbox_triage.classifier.rule_store import guidance_texts
from inbox_triage.core.errors import ModelResponseError
from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import Classification, clamp_confidence

if TYPE_CHECKING:
    from inbox_triage.classifier.cloud_classifier import CloudClassifier
    from inbox_triage.classifier.context import MemoryContextProvider
    from inbox_triage.classifier.decision_history import DecisionHistoryAggregator
    from inbox_triage.classifier.local_classifier import LocalClassifier
    from inbox_triage.classifier.rule_store import RuleStore
    from inbox_triage.config_schema import AppConfig, TriageConfig
    from inbox_triage.db.store import Item, Rule

logger = get_logger(__name__)

FALLBACK_REASON = "classification failed"

# Tags that connectors put on machine-generated items
AUTOMATED_TAGS = frozenset({"auto", "newsletter"})


@dataclass
class ClassificationResult:
    """Outcome of classifying one item.

    Attributes:
        tier: 'rule', 'fast' or 'cloud'
        batch_type: Group label, or None for individual review
        confidence: Clamped into [0, 1]
        reason: Short explanation
        rule_id: Matching rule (rule tier only)
        enrichment: Optional summary / suggestedPriority / suggestedTags
    """

    tier: str
    batch_type: str | None
    confidence: float
    reason: str
    rule_id: str | None = None
    enrichment: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.confidence = clamp_confidence(self.confidence)

    @property
    def is_fallback(self) -> bool:
        return self.reason == FALLBACK_REASON and self.confidence == 0.0

    def to_classification(self) -> Classification:
        """Stored classification record for this result (no card assigned yet)."""
        return Classification(
            tier=self.tier,
            batch_type=self.batch_type,
            confidence=self.confidence,
            reason=self.reason,
            rule_id=self.rule_id,
        )


def fallback_result() -> ClassificationResult:
    """The terminal outcome when no tier produced an answer."""
    return ClassificationResult(tier="cloud", batch_type=None, confidence=0.0, reason=FALLBACK_REASON)


@dataclass
class TierContext:
    """Per-item inputs shared by every tier."""

    active_rules: Sequence[Rule]
    guidance: list[str]


class TierHandler(Protocol):
    """One stage of the fallback chain."""

    name: str
    config: AppConfig

    async def try_classify(self, item: Item, context: TierContext) -> ClassificationResult | None: ...


def looks_automated(item: Item, config: TriageConfig) -> bool:
    """Cheap pre-filter: does this item look machine-generated?

    Real correspondence must never reach the small local model.
    """
    sender = item.sender.lower()
    if any(pattern.lower() in sender for pattern in config.automated_sender_patterns):
        return True
    if item.connector in config.automated_connectors:
        return True
    return any(tag.lower() in AUTOMATED_TAGS for tag in item.tags)


# ---------------------------------------------------------------------------
# Tier handlers
# ---------------------------------------------------------------------------


class ConnectorOverrideTier:
    name = "connector_override"

    def __init__(self, config: AppConfig):
        self.config = config

    async def try_classify(self, item: Item, context: TierContext) -> ClassificationResult | None:
        if item.connector not in self.config.triage.individual_connectors:
            return None
        return ClassificationResult(
            tier="rule",
            batch_type=None,
            confidence=1.0,
            reason=f"{item.connector} items are always kept for individual review",
        )


class RuleTier:
    """First matching active structured rule wins.

    The match-count increment is scheduled on the rule store's background
    runner and never delays or fails the result.
    """

    name = "rule"

    def __init__(self, config: AppConfig, rule_store: RuleStore):
        self.config = config
        self._rule_store = rule_store

    async def try_classify(self, item: Item, context: TierContext) -> ClassificationResult | None:
        rules = [r for r in context.active_rules if r.status == "active" and r.type == "structured"]
        rule = first_match(rules, item)
        if rule is None:
            return None

        self._rule_store.increment_match(rule.id)
        return ClassificationResult(
            tier="rule",
            batch_type=rule.batch_type,
            confidence=1.0,
            reason=f"Matched rule: {rule.name}",
            rule_id=rule.id,
        )


class FastTier:
    name = "fast"

    def __init__(self, config: AppConfig, local: LocalClassifier):
        self.config = config
        self._local = local

    async def try_classify(self, item: Item, context: TierContext) -> ClassificationResult | None:
        if not looks_automated(item, self.config.triage):
            return None

        raw = await self._local.classify(item, self.config.batch_types, context.guidance)
        if raw is None:
            return None

        try:
            parsed = parse_classification(raw, frozenset(self.config.batch_types))
        except ModelResponseError as e:
            logger.warning("fast_tier_parse_failed", item_id=item.id, error=str(e))
            return None

        threshold = self.config.triage.fast_confidence_threshold
        if parsed.confidence < threshold:
            logger.debug(
                "fast_tier_below_threshold",
                item_id=item.id,
                confidence=parsed.confidence,
                threshold=threshold,
            )
            return None

        return ClassificationResult(
            tier="fast",
            batch_type=parsed.batch_type,
            confidence=parsed.confidence,
            reason=parsed.reason,
        )


class CloudTier:
    """Full-context classification: decision history, memory context, guidance.

    A parsed answer is accepted whatever its confidence. A failed call or an
    unparseable answer is a pass, which ends in the pipeline fallback.
    """

    name = "cloud"

    def __init__(
        self,
        config: AppConfig,
        cloud: CloudClassifier,
        history: DecisionHistoryAggregator,
        memory: MemoryContextProvider | None = None,
    ):
        self.config = config
        self._cloud = cloud
        self._history = history
        self._memory = memory

    async def try_classify(self, item: Item, context: TierContext) -> ClassificationResult | None:
        history_text = await self._history.history_text(item.sender, item.sender_domain)
        memory_text = await safe_context_for(self._memory, item.sender, item.sender_name)

        raw = await self._cloud.complete(
            system=build_cloud_system_prompt(self.config.batch_types, context.guidance),
            user=build_cloud_user_message(item, history_text, memory_text),
            task_type="classify",
            item_id=item.id,
        )
        if raw is None:
            return None

        try:
            parsed = parse_classification(raw, frozenset(self.config.batch_types))
        except ModelResponseError as e:
            logger.warning("cloud_tier_parse_failed", item_id=item.id, error=str(e))
            return None

        return ClassificationResult(
            tier="cloud",
            batch_type=parsed.batch_type,
            confidence=parsed.confidence,
            reason=parsed.reason,
            enrichment=parsed.enrichment,
        )


def default_tiers(
    config: AppConfig,
    rule_store: RuleStore,
    local: LocalClassifier | None,
    cloud: CloudClassifier,
    history: DecisionHistoryAggregator,
    memory: MemoryContextProvider | None = None,
) -> list[TierHandler]:
    """The standard tier order; the fast tier is omitted without a local classifier."""
    tiers: list[TierHandler] = [ConnectorOverrideTier(config), RuleTier(config, rule_store)]
    if local is not None:
        tiers.append(FastTier(config, local))
    tiers.append(CloudTier(config, cloud, history, memory))
    return tiers


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class ClassificationPipeline:
    """Runs tier handlers in order until one accepts."""

    def __init__(self, tiers: Sequence[TierHandler]):
        self.tiers = list(tiers)

    def update_config(self, config: AppConfig) -> None:
        """Point every tier at a reloaded config."""
        for tier in self.tiers:
            tier.config = config

    async def classify(self, item: Item, active_rules: Sequence[Rule]) -> ClassificationResult:
        """Classify one item. Never raises.

        Args:
            item: Item to classify
            active_rules: Current active rules (structured and guidance)

        Returns:
            The first accepted tier result, or the safe fallback
        """
        context = TierContext(active_rules=active_rules, guidance=guidance_texts(list(active_rules)))

        for tier in self.tiers:
            try:
                result = await tier.try_classify(item, context)
            except Exception as e:
                logger.warning(
                    "classification_tier_failed",
                    tier=tier.name,
                    item_id=item.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            if result is not None:
                logger.debug(
                    "item_classified",
                    item_id=item.id,
                    tier=result.tier,
                    handler=tier.name,
                    batch_type=result.batch_type,
                    confidence=result.confidence,
                )
                return result

        logger.info("classification_fallback", item_id=item.id)
        return fallback_result()
