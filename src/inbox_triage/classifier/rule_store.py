"""Rule lifecycle: creation, updates, soft deletion, seeding and match bookkeeping.

Rules are never hard-deleted; historical classifications keep pointing at
their rule id. Deleting a rule sets its status to 'inactive'.

Usage:
    from inbox_triage.classifier.rule_store import RuleStore

    rules = RuleStore(store, background)
    await rules.seed_defaults()
    active = await rules.list_active()
    rules.increment_match(rule.id)  # scheduled, not awaited
"""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING, Any

import regex

from inbox_triage.classifier.rules import (
    SEED_RULE_DESCRIPTION,
    SEED_RULES,
    SEED_SORT_ORDER_START,
    empty_trigger_fields,
    unknown_trigger_fields,
)
from inbox_triage.core.errors import RuleValidationError
from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import Rule, new_id, utcnow

if TYPE_CHECKING:
    from inbox_triage.core.background import BackgroundTasks
    from inbox_triage.db.store import DatabaseStore

logger = get_logger(__name__)

VALID_RULE_TYPES = ("structured", "guidance")
VALID_RULE_SOURCES = ("seed", "user", "user_chat", "override", "learned")
VALID_RULE_STATUSES = ("active", "inactive", "proposed", "dismissed")

# Fields a caller may change through RuleStore.update
_MUTABLE_FIELDS = frozenset(
    {"name", "description", "type", "trigger", "action", "guidance", "status", "source", "sort_order"}
)


def validate_rule_definition(
    rule_type: str,
    trigger: dict[str, Any] | None,
    action: dict[str, Any] | None,
    guidance: str | None,
) -> None:
    """Check that a rule definition is complete and consistent.

    Raises:
        RuleValidationError: Describing the first problem found
    """
    if rule_type not in VALID_RULE_TYPES:
        raise RuleValidationError(
            f"Unknown rule type '{rule_type}'. Must be one of: {', '.join(VALID_RULE_TYPES)}"
        )

    if rule_type == "guidance":
        if not guidance or not guidance.strip():
            raise RuleValidationError("Guidance rule missing guidance text")
        return

    if trigger is None:
        raise RuleValidationError("Structured rule missing trigger definition")
    if not isinstance(trigger, dict):
        raise RuleValidationError("Rule trigger must be a mapping of field -> value")

    unknown = unknown_trigger_fields(trigger)
    if unknown:
        raise RuleValidationError(f"Unknown trigger fields: {', '.join(sorted(unknown))}")

    empty = empty_trigger_fields(trigger)
    if empty:
        raise RuleValidationError(f"Empty trigger fields: {', '.join(sorted(empty))}")

    pattern = trigger.get("pattern")
    if pattern:
        try:
            regex.compile(str(pattern), regex.IGNORECASE)
        except regex.error as e:
            raise RuleValidationError(f"Invalid trigger pattern '{pattern}': {e}") from e

    if action is not None:
        if not isinstance(action, dict) or action.get("type") != "batch":
            raise RuleValidationError("Rule action must be {'type': 'batch', 'batchType': ...}")
        if not action.get("batchType"):
            raise RuleValidationError("Batch action missing batchType")


class RuleStore:
    """CRUD and lifecycle operations for triage rules.

    Attributes:
        _store: Database store
        _background: Runner for best-effort match-count increments
    """

    def __init__(self, store: DatabaseStore, background: BackgroundTasks):
        self._store = store
        self._background = background

    async def create(
        self,
        name: str,
        rule_type: str = "structured",
        trigger: dict[str, Any] | None = None,
        action: dict[str, Any] | None = None,
        guidance: str | None = None,
        description: str | None = None,
        source: str = "user",
        status: str = "active",
        pattern_key: str | None = None,
        evidence: dict[str, Any] | None = None,
    ) -> Rule:
        """Validate and persist a new rule.

        pattern_key and evidence are set on behavioral proposals only.

        Raises:
            RuleValidationError: If the definition is invalid
        """
        if not name or not name.strip():
            raise RuleValidationError("Rule name cannot be empty")
        if source not in VALID_RULE_SOURCES:
            raise RuleValidationError(f"Unknown rule source '{source}'")
        if status not in VALID_RULE_STATUSES:
            raise RuleValidationError(f"Unknown rule status '{status}'")
        validate_rule_definition(rule_type, trigger, action, guidance)

        rule = Rule(
            id=new_id(),
            name=name.strip(),
            type=rule_type,
            trigger=trigger if rule_type == "structured" else None,
            action=action if rule_type == "structured" else None,
            guidance=guidance if rule_type == "guidance" else None,
            description=description,
            status=status,
            source=source,
            pattern_key=pattern_key,
            evidence=evidence,
        )
        await self._store.insert_rule(rule)

        logger.info(
            "rule_created",
            rule_id=rule.id,
            rule_name=rule.name,
            rule_type=rule.type,
            source=rule.source,
            batch_type=rule.batch_type,
        )
        return rule

    async def update(self, rule_id: str, **changes: Any) -> Rule | None:
        """Apply field changes to a rule, bumping its version.

        Returns:
            The updated rule, or None if the rule does not exist

        Raises:
            RuleValidationError: If a field is not mutable or the result is invalid
        """
        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise RuleValidationError(f"Cannot update rule fields: {', '.join(sorted(unknown))}")
        if "status" in changes and changes["status"] not in VALID_RULE_STATUSES:
            raise RuleValidationError(f"Unknown rule status '{changes['status']}'")

        rule = await self._store.get_rule(rule_id)
        if rule is None:
            return None

        updated = replace(rule, **changes)
        validate_rule_definition(updated.type, updated.trigger, updated.action, updated.guidance)
        updated.version = rule.version + 1
        updated.updated_at = utcnow()
        await self._store.update_rule(updated)

        logger.info(
            "rule_updated",
            rule_id=rule_id,
            fields=sorted(changes),
            version=updated.version,
        )
        return updated

    async def soft_delete(self, rule_id: str) -> bool:
        """Deactivate a rule. Returns False if it does not exist."""
        rule = await self.update(rule_id, status="inactive")
        return rule is not None

    async def get(self, rule_id: str) -> Rule | None:
        return await self._store.get_rule(rule_id)

    async def list_active(self) -> list[Rule]:
        return await self._store.list_rules(status="active")

    async def list_all(self) -> list[Rule]:
        return await self._store.list_rules()

    async def list_established(self) -> list[Rule]:
        """Active and inactive rules; pending and dismissed proposals are left out."""
        return [rule for rule in await self.list_all() if rule.status in ("active", "inactive")]

    async def get_guidance_texts(self) -> list[str]:
        """Text of every active guidance rule, for prompt injection."""
        return guidance_texts(await self.list_active())

    async def seed_defaults(self) -> int:
        """Insert default rules whose names are not already present.

        Seed rules are ordered after rules the user or the learning loop
        created, so a sender override always wins over a default.

        Returns:
            Number of rules created
        """
        existing_names = await self._store.get_rule_names()

        created = 0
        for order, (name, trigger, batch_type) in enumerate(SEED_RULES):
            if name in existing_names:
                continue
            rule = Rule(
                id=new_id(),
                name=name,
                type="structured",
                trigger=dict(trigger),
                action={"type": "batch", "batchType": batch_type},
                description=SEED_RULE_DESCRIPTION,
                source="seed",
                sort_order=SEED_SORT_ORDER_START + order,
            )
            await self._store.insert_rule(rule)
            created += 1

        if created:
            logger.info("default_rules_seeded", created=created)
        return created

    async def find_by_sender(self, sender: str) -> Rule | None:
        """Active structured rule whose trigger is exactly {'sender': sender}."""
        for rule in await self.list_active():
            if rule.type == "structured" and rule.trigger == {"sender": sender}:
                return rule
        return None

    async def upsert_sender_rule(self, sender: str, batch_type: str, source: str = "override") -> Rule:
        """Route a sender to a batch type, updating an existing sender rule if present."""
        action = {"type": "batch", "batchType": batch_type}
        existing = await self.find_by_sender(sender)
        if existing is not None:
            updated = await self.update(existing.id, action=action, source=source, sort_order=0)
            # Rule was found a moment ago; only a concurrent hard delete could lose it
            return updated or existing

        return await self.create(
            name=f"{sender} → {batch_type}",
            trigger={"sender": sender},
            action=action,
            description=f"Items from {sender} go to {batch_type}",
            source=source,
        )

    def increment_match(self, rule_id: str) -> None:
        """Schedule a match-count increment without awaiting it.

        Failures are logged by the background runner and never reach the caller.
        """
        self._background.spawn(
            self._store.increment_rule_match(rule_id),
            name="rule_match_increment",
        )


def guidance_texts(rules: list[Rule]) -> list[str]:
    """Guidance text of the active guidance rules in a rule list."""
    return [
        rule.guidance
        for rule in rules
        if rule.type == "guidance" and rule.status == "active" and rule.guidance
    ]
