"""Turn a natural-language instruction into a triage rule.

"Put everything from the Acme billing system in finance" becomes a
structured rule; "be careful with anything from investors" becomes a
guidance note. The cloud model drafts the rule and the draft is validated
before anything is stored.

Usage:
    from inbox_triage.classifier.rule_author import RuleAuthor

    author = RuleAuthor(cloud, rule_store, config)
    draft = await author.draft("archive everything from substack")
    rule = await author.author("archive everything from substack")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from inbox_triage.classifier.parsing import parse_model_json
from inbox_triage.classifier.prompts import build_rule_author_message, build_rule_author_system_prompt
from inbox_triage.classifier.rule_store import validate_rule_definition
from inbox_triage.classifier.rules import drop_empty_trigger_fields
from inbox_triage.core.errors import ModelResponseError, RuleValidationError
from inbox_triage.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_triage.classifier.cloud_classifier import CloudClassifier
    from inbox_triage.classifier.rule_store import RuleStore
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import Rule

logger = get_logger(__name__)


@dataclass(frozen=True)
class RuleDraft:
    """A validated rule definition that has not been stored yet."""

    type: str
    name: str
    description: str | None
    trigger: dict[str, Any] | None = None
    action: dict[str, Any] | None = None
    guidance: str | None = None


def draft_from_response(data: Any, batch_types: set[str] | frozenset[str]) -> RuleDraft:
    """Validate a decoded model answer and build a RuleDraft.

    Raises:
        RuleValidationError: If the answer is not a usable rule definition
    """
    if not isinstance(data, dict):
        raise RuleValidationError("Rule draft is not a JSON object")

    rule_type = data.get("type")
    if not rule_type:
        raise RuleValidationError("Rule draft missing type")
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise RuleValidationError("Rule draft missing name")

    description = data.get("description")
    description = description.strip() if isinstance(description, str) else None

    if rule_type == "guidance":
        guidance = data.get("guidance")
        guidance = guidance.strip() if isinstance(guidance, str) else None
        validate_rule_definition("guidance", None, None, guidance)
        return RuleDraft(type="guidance", name=name.strip(), description=description, guidance=guidance)

    trigger = data.get("trigger")
    action = data.get("action")
    if isinstance(trigger, dict):
        # Drop empty trigger fields the model filled with "" or null
        trigger = drop_empty_trigger_fields(trigger)
        if not trigger:
            raise RuleValidationError("Structured rule trigger has no conditions")
    validate_rule_definition(str(rule_type), trigger, action, None)
    if action is None:
        raise RuleValidationError("Structured rule missing action")

    batch_type = str(action["batchType"]).strip().lower()
    if batch_type not in batch_types:
        raise RuleValidationError(
            f"Unknown batch type '{batch_type}'. Must be one of: {', '.join(sorted(batch_types))}"
        )

    return RuleDraft(
        type="structured",
        name=name.strip(),
        description=description,
        trigger=trigger,
        action={"type": "batch", "batchType": batch_type},
    )


class RuleAuthor:
    """Drafts rules with the cloud model and stores them on request."""

    def __init__(self, cloud: CloudClassifier, rule_store: RuleStore, config: AppConfig):
        self._cloud = cloud
        self._rule_store = rule_store
        self._config = config

    async def draft(self, instruction: str) -> RuleDraft:
        """Ask the model for a rule draft and validate it.

        Raises:
            RuleValidationError: If the model fails or returns an invalid rule
        """
        if not instruction or not instruction.strip():
            raise RuleValidationError("Instruction cannot be empty")

        raw = await self._cloud.complete(
            system=build_rule_author_system_prompt(list(self._config.batch_types)),
            user=build_rule_author_message(instruction.strip()),
            task_type="rule_authoring",
            model=self._config.models.rule_authoring,
        )
        if raw is None:
            raise RuleValidationError("Rule authoring model call failed; try again later")

        try:
            data = parse_model_json(raw, expect="object")
        except ModelResponseError as e:
            logger.warning("rule_draft_unparseable", error=str(e), raw_response=e.raw_response)
            raise RuleValidationError(f"Could not parse rule draft: {e}") from e

        draft = draft_from_response(data, frozenset(self._config.batch_types))
        logger.info("rule_drafted", rule_name=draft.name, rule_type=draft.type)
        return draft

    async def author(self, instruction: str) -> Rule:
        """Draft, validate and store a rule from an instruction."""
        draft = await self.draft(instruction)
        return await self._rule_store.create(
            name=draft.name,
            rule_type=draft.type,
            trigger=draft.trigger,
            action=draft.action,
            guidance=draft.guidance,
            description=draft.description,
            source="user_chat",
        )
