"""Direct user actions on single items.

Classification is advisory: none of these operations wait for or depend on
a classification. Each user decision is written to the action log as a
'triage_action' entry, which is what the learning loop later mines.
After each decision the sender is checked for a behavioral rule proposal
(see engine.proposals).

Usage:
    from inbox_triage.engine.actions import ItemActions

    actions = ItemActions(store, rule_store, config)
    item = await actions.ingest(item)
    await actions.record_decision(item.id, "archived", triage_path="quick")
    await actions.declassify(item.id)
    await actions.move_to_batch(item.id, "newsletters")
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from inbox_triage.core.errors import DatabaseError, RuleValidationError
from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import DECLASSIFIED_REASON_PREFIX, VALID_TRIAGE_PATHS, Classification, utcnow
from inbox_triage.engine.proposals import RuleProposer

if TYPE_CHECKING:
    from inbox_triage.classifier.rule_store import RuleStore
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import DatabaseStore, Item

logger = get_logger(__name__)

DECISION_STATUSES = ("archived", "snoozed", "actioned")

_STATUS_VERBS = {"archived": "Archived", "snoozed": "Snoozed", "actioned": "Actioned"}


def _describe(item: Item) -> str:
    return f"'{item.subject or '(no subject)'}' from {item.sender or 'unknown sender'}"


class ItemActions:
    """Ingestion and per-item user decisions."""

    def __init__(self, store: DatabaseStore, rule_store: RuleStore, config: AppConfig):
        self._store = store
        self._rule_store = rule_store
        self._config = config
        self._proposer = RuleProposer(store, rule_store)

    async def ingest(self, item: Item) -> Item:
        """Persist a newly synced item, unclassified, and return immediately.

        An item already stored under the same connector and external id is
        returned unchanged.
        """
        if item.external_id:
            existing = await self._store.get_item_by_external_id(item.connector, item.external_id)
            if existing is not None:
                logger.debug("item_already_ingested", item_id=existing.id, connector=item.connector)
                return existing

        item.status = "new"
        item.classification = None
        await self._store.save_item(item)
        logger.info("item_ingested", item_id=item.id, connector=item.connector)
        return item

    async def record_decision(
        self,
        item_id: str,
        status: str,
        triage_path: str,
        snoozed_until: datetime | None = None,
    ) -> bool:
        """Record how the user handled one item.

        Args:
            item_id: Item being resolved
            status: 'archived', 'snoozed' or 'actioned'
            triage_path: 'bulk', 'quick' or 'engaged'
            snoozed_until: Wake-up time for snoozed items

        Returns:
            False if the item does not exist

        Raises:
            ValueError: If status or triage_path is not recognized
        """
        if status not in DECISION_STATUSES:
            raise ValueError(f"Invalid decision status '{status}'. Must be one of: {DECISION_STATUSES}")
        if triage_path not in VALID_TRIAGE_PATHS:
            raise ValueError(f"Invalid triage path '{triage_path}'. Must be one of: {VALID_TRIAGE_PATHS}")

        item = await self._store.get_item(item_id)
        if item is None:
            return False

        classification = item.classification or Classification(
            tier="cloud",
            batch_type=None,
            confidence=0.0,
            reason="Resolved before classification",
        )
        # Handling a grouped or user-declassified item individually overrides the grouping
        if triage_path != "bulk" and (classification.batch_type or classification.is_user_declassified):
            classification = replace(classification, was_override=True)
        await self._store.update_item_status(
            item_id,
            status,  # type: ignore[arg-type]
            classification=classification.with_triage_path(triage_path),
            snoozed_until=snoozed_until if status == "snoozed" else None,
        )
        await self._store.log_action(
            "triage_action",
            item_id=item_id,
            description=f"{_STATUS_VERBS[status]} {_describe(item)} ({triage_path})",
            details={"status": status, "triagePath": triage_path, "connector": item.connector},
            triggered_by="user",
        )

        logger.info("item_decision_recorded", item_id=item_id, status=status, triage_path=triage_path)
        await self._propose_for(item)
        return True

    async def declassify(self, item_id: str) -> bool:
        """Pull an item out of its group for individual review.

        The classification is rewritten in place: the group, card and rule
        are cleared and the reason marks the user's choice. Other stored
        keys are kept. The rule-only reclassification pass never re-groups
        such an item.

        Returns:
            False if the item does not exist or is not in a group
        """
        item = await self._store.get_item(item_id)
        if item is None or item.classification is None or not item.classification.batch_type:
            return False

        batch_type = item.classification.batch_type
        await self._store.update_item_classification(
            item_id,
            replace(
                item.classification,
                tier="rule",
                batch_type=None,
                confidence=1.0,
                reason=f"{DECLASSIFIED_REASON_PREFIX} {batch_type} group",
                rule_id=None,
                batch_card_id=None,
                classified_at=utcnow().isoformat(),
                was_override=True,
            ),
        )
        await self._store.log_action(
            "triage_action",
            item_id=item_id,
            description=f"Removed {_describe(item)} from the {batch_type} group",
            details={"batchType": batch_type, "action": "declassify"},
            triggered_by="user",
        )

        logger.info("item_declassified", item_id=item_id, batch_type=batch_type)
        await self._propose_for(item)
        return True

    async def move_to_batch(self, item_id: str, batch_type: str) -> bool:
        """Move an item to another group and route its sender there from now on.

        Returns:
            False if the item does not exist

        Raises:
            RuleValidationError: If the batch type is not configured or the item has no sender
        """
        if batch_type not in self._config.batch_types:
            raise RuleValidationError(
                f"Unknown batch type '{batch_type}'. "
                f"Must be one of: {', '.join(sorted(self._config.batch_types))}"
            )

        item = await self._store.get_item(item_id)
        if item is None:
            return False
        if not item.sender:
            raise RuleValidationError(f"Item {item_id} has no sender to route")

        rule = await self._rule_store.upsert_sender_rule(item.sender, batch_type, source="override")
        fields: dict[str, Any] = {
            "tier": "rule",
            "batch_type": batch_type,
            "confidence": 1.0,
            "reason": f"Matched rule: {rule.name}",
            "rule_id": rule.id,
            "batch_card_id": None,
            "classified_at": utcnow().isoformat(),
        }
        classification = (
            replace(item.classification, **fields) if item.classification else Classification(**fields)
        )
        await self._store.update_item_classification(item_id, classification)
        await self._store.log_action(
            "triage_action",
            item_id=item_id,
            description=f"Moved {_describe(item)} to the {batch_type} group",
            details={"batchType": batch_type, "ruleId": rule.id, "action": "move_to_batch"},
            triggered_by="user",
        )

        logger.info("item_moved_to_batch", item_id=item_id, batch_type=batch_type, rule_id=rule.id)
        await self._propose_for(item)
        return True

    async def _propose_for(self, item: Item) -> None:
        """Check the item's sender for a rule proposal; failures are only logged."""
        if not self._config.learning.proposals_enabled or not item.sender:
            return
        if item.connector in self._config.triage.individual_connectors:
            return
        try:
            await self._proposer.propose_for(item.sender, item.sender_name)
        except (DatabaseError, RuleValidationError) as e:
            logger.warning("rule_proposal_failed", item_id=item.id, error=str(e))
