"""Scheduled learning loop: propose rules from recent triage decisions.

Once a day the loop reads the triage_action entries of a trailing window,
shows them to the learning model together with every existing rule
(active and inactive), and packages the model's suggestions into one
pending learning card. Nothing is created until the user accepts a
suggestion.

Cost discipline: with no decisions in the window there is no model call.
Output discipline: if the model's answer cannot be parsed as a whole, the
entire batch is discarded.

Usage:
    from inbox_triage.engine.learning import LearningLoop

    loop = LearningLoop(store, rule_store, cloud, config)
    result = await loop.run()
    if result.proposal_card_id:
        rule = await loop.accept_suggestion(result.proposal_card_id, 0)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from inbox_triage.classifier.parsing import parse_learning_suggestions
from inbox_triage.classifier.prompts import build_learning_system_prompt, build_learning_user_message
from inbox_triage.classifier.rules import drop_empty_trigger_fields
from inbox_triage.core.errors import (
    BatchCardNotFoundError,
    BatchCardStateError,
    ModelResponseError,
    RuleValidationError,
)
from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import BatchCard, new_id, utcnow

if TYPE_CHECKING:
    from inbox_triage.classifier.cloud_classifier import CloudClassifier
    from inbox_triage.classifier.rule_store import RuleStore
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import DatabaseStore, Rule

logger = get_logger(__name__)

LEARNING_MAX_TOKENS = 4096


@dataclass
class LearningResult:
    """Outcome of one learning run."""

    suggestion_count: int = 0
    proposal_card_id: str | None = None


def learning_card_title(count: int) -> str:
    return "learned 1 new pattern" if count == 1 else f"learned {count} new patterns"


class LearningLoop:
    """Mines recent triage decisions for rule suggestions."""

    def __init__(
        self,
        store: DatabaseStore,
        rule_store: RuleStore,
        cloud: CloudClassifier,
        config: AppConfig,
    ):
        self._store = store
        self._rule_store = rule_store
        self._cloud = cloud
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    async def run(self) -> LearningResult:
        """Run one learning pass over the configured trailing window.

        Returns:
            LearningResult; (0, None) when there was nothing to learn
        """
        settings = self._config.learning
        since = utcnow() - timedelta(hours=settings.window_hours)

        decisions = await self._store.get_action_logs(
            limit=settings.max_decisions,
            action_type="triage_action",
            since=since,
        )
        if not decisions:
            logger.info("learning_skipped_no_decisions", window_hours=settings.window_hours)
            return LearningResult()

        rules = await self._rule_store.list_established()

        raw = await self._cloud.complete(
            system=build_learning_system_prompt(
                rules, decisions, settings.window_hours, settings.min_confidence
            ),
            user=build_learning_user_message(len(decisions)),
            task_type="learning",
            model=self._config.models.learning,
            max_tokens=LEARNING_MAX_TOKENS,
        )
        if raw is None:
            logger.warning("learning_model_call_failed", decisions=len(decisions))
            return LearningResult()

        try:
            suggestions = parse_learning_suggestions(raw)
        except ModelResponseError as e:
            logger.warning(
                "learning_parse_failed",
                error=str(e),
                raw_response=e.raw_response,
            )
            return LearningResult()

        kept = [s for s in suggestions if s["confidence"] >= settings.min_confidence]
        if not kept:
            logger.info(
                "learning_no_confident_suggestions",
                decisions=len(decisions),
                suggestions=len(suggestions),
            )
            return LearningResult()

        card = BatchCard(
            id=new_id("card_"),
            title=learning_card_title(len(kept)),
            pattern="learning",
            status="pending",
            handler="batch:learning",
            data={
                "batchType": "learning",
                "suggestions": kept,
                "explanation": (
                    f"Based on {len(decisions)} triage actions in the last "
                    f"{settings.window_hours} hours, {len(kept)} pattern(s) were "
                    "identified that could improve future triage."
                ),
            },
        )
        await self._store.insert_card(card)

        logger.info(
            "learning_card_created",
            card_id=card.id,
            decisions=len(decisions),
            suggestions=len(kept),
            discarded=len(suggestions) - len(kept),
        )
        return LearningResult(suggestion_count=len(kept), proposal_card_id=card.id)

    async def _pending_learning_card(self, card_id: str) -> BatchCard:
        card = await self._store.get_card(card_id)
        if card is None:
            raise BatchCardNotFoundError(card_id)
        if card.pattern != "learning":
            raise BatchCardStateError(
                f"Card {card_id} is a {card.pattern} card, not a learning card",
                card_id=card_id,
                status=card.status,
            )
        if card.status != "pending":
            raise BatchCardStateError(
                f"Learning card {card_id} is already {card.status}",
                card_id=card_id,
                status=card.status,
            )
        return card

    async def accept_suggestion(self, card_id: str, index: int) -> Rule:
        """Turn one suggestion on a pending learning card into a rule.

        A refine_rule suggestion updates the referenced rule when it still
        exists; anything else creates a new rule with source 'learned'. The
        card is confirmed once every suggestion on it has been accepted.

        Raises:
            BatchCardNotFoundError: If the card does not exist
            BatchCardStateError: If the card is not a pending learning card
            RuleValidationError: If the index is invalid or the suggestion is not a valid rule
        """
        card = await self._pending_learning_card(card_id)
        suggestions: list[dict[str, Any]] = list(card.data.get("suggestions") or [])
        if not 0 <= index < len(suggestions):
            raise RuleValidationError(f"No suggestion #{index} on card {card_id}")

        suggestion = dict(suggestions[index])
        if suggestion.get("accepted"):
            raise RuleValidationError(f"Suggestion #{index} on card {card_id} was already accepted")

        rule = await self._apply_suggestion(suggestion)

        suggestion["accepted"] = True
        suggestion["ruleId"] = rule.id
        suggestions[index] = suggestion
        await self._store.update_card_data(card_id, {**card.data, "suggestions": suggestions})

        await self._store.log_action(
            "rule_created",
            description=f"Accepted learned rule '{rule.name}'",
            details={"cardId": card_id, "ruleId": rule.id, "suggestionType": suggestion["type"]},
            triggered_by="user",
        )

        if all(s.get("accepted") for s in suggestions):
            await self._store.complete_card(
                card_id,
                "confirmed",
                {
                    "acceptedRuleIds": [s["ruleId"] for s in suggestions],
                    "completedAt": utcnow().isoformat(),
                },
            )

        logger.info("learning_suggestion_accepted", card_id=card_id, index=index, rule_id=rule.id)
        return rule

    async def _apply_suggestion(self, suggestion: dict[str, Any]) -> Rule:
        rule_type = suggestion["ruleType"]
        trigger = suggestion.get("trigger")
        if isinstance(trigger, dict):
            trigger = drop_empty_trigger_fields(trigger)
        fields: dict[str, Any] = {
            "trigger": trigger if rule_type == "structured" else None,
            "action": suggestion.get("action") if rule_type == "structured" else None,
            "guidance": suggestion.get("guidance") if rule_type == "guidance" else None,
        }

        if suggestion["type"] == "refine_rule" and suggestion.get("ruleId"):
            updated = await self._rule_store.update(
                suggestion["ruleId"],
                type=rule_type,
                description=suggestion.get("description") or None,
                source="learned",
                **fields,
            )
            if updated is not None:
                return updated
            logger.info("refined_rule_missing", rule_id=suggestion["ruleId"])

        return await self._rule_store.create(
            name=suggestion["name"],
            rule_type=rule_type,
            description=suggestion.get("description") or None,
            source="learned",
            **fields,
        )

    async def dismiss(self, card_id: str) -> None:
        """Dismiss a pending learning card without creating any rule."""
        await self._pending_learning_card(card_id)
        completed = await self._store.complete_card(
            card_id, "dismissed", {"dismissedAt": utcnow().isoformat()}
        )
        if not completed:
            raise BatchCardStateError(
                f"Learning card {card_id} was resolved concurrently",
                card_id=card_id,
                status="unknown",
            )
        logger.info("learning_card_dismissed", card_id=card_id)
