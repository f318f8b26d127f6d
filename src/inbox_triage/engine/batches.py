"""Batch card assignment and resolution.

Items classified with a batch type are grouped onto a single pending card
per batch type. The user then resolves the card in one step: checked items
get the card's action, unchecked items go back to individual review.

Assignment is safe to re-run at any time: it only touches items that have
no card yet, and card creation is an atomic get-or-create in SQLite, so
two overlapping passes never open a second pending card for a batch type.

Usage:
    from inbox_triage.engine.batches import BatchAssigner, BatchResolver

    result = await BatchAssigner(store, config).assign()
    await BatchResolver(store, config).resolve(card_id, accepted=[...], rejected=[...])
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from inbox_triage.config_schema import BatchTypeConfig
from inbox_triage.core.errors import BatchCardNotFoundError, BatchCardStateError, DatabaseError
from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import utcnow

if TYPE_CHECKING:
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import BatchCard, DatabaseStore, Item

logger = get_logger(__name__)

# Senders named in a card's audit line
MAX_AUDIT_SENDERS = 5


class ActionExecutor(Protocol):
    """Applies a resolved decision at the item's source system (e.g. archive in Gmail)."""

    async def execute(self, item: Item, action: str) -> None: ...


@dataclass
class AssignmentResult:
    """Items stamped onto cards in one assignment pass."""

    assigned: int = 0
    per_type: dict[str, int] = field(default_factory=dict)


@dataclass
class ResolutionResult:
    """Outcome of resolving one batch card."""

    card_id: str
    action: str
    accepted_count: int = 0
    rejected_count: int = 0
    failed_count: int = 0
    failed_item_ids: list[str] = field(default_factory=list)


@dataclass
class PendingBatch:
    """A pending batch card and the still-new items on it."""

    card: BatchCard
    items: list[Item]


def batch_type_config(config: AppConfig, batch_type: str) -> BatchTypeConfig:
    """Configured card settings for a batch type, or a generic default."""
    configured = config.batch_types.get(batch_type)
    if configured is not None:
        return configured
    label = batch_type.replace("_", " ")
    return BatchTypeConfig(
        title=label.capitalize(),
        explanation=f"Items grouped as {label}",
    )


class BatchAssigner:
    """Groups unassigned batch-labelled items onto pending cards."""

    def __init__(self, store: DatabaseStore, config: AppConfig):
        self._store = store
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    async def assign(self) -> AssignmentResult:
        """Stamp every unassigned batch item with its batch type's pending card.

        A failure for one batch type is logged and does not stop the others.
        """
        result = AssignmentResult()
        items = await self._store.list_unassigned_batch_items()
        if not items:
            return result

        groups: dict[str, list[str]] = defaultdict(list)
        for item in items:
            if item.classification and item.classification.batch_type:
                groups[item.classification.batch_type].append(item.id)

        for batch_type, item_ids in groups.items():
            settings = batch_type_config(self._config, batch_type)
            try:
                card, created = await self._store.get_or_create_pending_batch_card(
                    batch_type,
                    title=settings.title,
                    explanation=settings.explanation,
                    action=settings.action,
                )
                stamped = await self._store.assign_items_to_card(card.id, item_ids)
            except DatabaseError as e:
                logger.error("batch_assignment_failed", batch_type=batch_type, error=str(e))
                continue

            if created:
                logger.info("batch_card_created", card_id=card.id, batch_type=batch_type)
            result.per_type[batch_type] = stamped
            result.assigned += stamped

        logger.info("batch_assignment_complete", assigned=result.assigned, per_type=result.per_type)
        return result


class BatchResolver:
    """Applies a user's bulk decision to a pending batch card.

    Attributes:
        _executors: Optional source-side executors keyed by connector
    """

    def __init__(
        self,
        store: DatabaseStore,
        executors: Mapping[str, ActionExecutor] | None = None,
    ):
        self._store = store
        self._executors = dict(executors or {})

    async def list_pending(self) -> list[PendingBatch]:
        """Pending batch cards with their still-new items; empty cards are omitted."""
        pending: list[PendingBatch] = []
        for card in await self._store.list_cards(pattern="batch", status="pending"):
            items = await self._store.list_card_items(card.id)
            if items:
                pending.append(PendingBatch(card=card, items=items))
        return pending

    async def resolve(
        self,
        card_id: str,
        accepted: list[str],
        rejected: list[str],
    ) -> ResolutionResult:
        """Resolve a batch card.

        Accepted items are archived and recorded as bulk-triaged. Rejected
        items have their classification cleared so they come back for
        individual review. A failure on one item is counted and does not
        stop the rest.

        Raises:
            BatchCardNotFoundError: If the card does not exist
            BatchCardStateError: If the card is not a pending batch card
        """
        card = await self._store.get_card(card_id)
        if card is None:
            raise BatchCardNotFoundError(card_id)
        if card.pattern != "batch":
            raise BatchCardStateError(
                f"Card {card_id} is a {card.pattern} card, not a batch card",
                card_id=card_id,
                status=card.status,
            )
        if card.status != "pending":
            raise BatchCardStateError(
                f"Batch card {card_id} is already {card.status}",
                card_id=card_id,
                status=card.status,
            )

        action = str(card.data.get("action") or "archive")
        result = ResolutionResult(card_id=card_id, action=action)
        archived: list[Item] = []

        for item_id in accepted:
            item = await self._accept_item(item_id, action, result)
            if item is not None:
                archived.append(item)

        for item_id in rejected:
            await self._reject_item(item_id, result)

        await self._log_resolution(card, result, archived)

        completed = await self._store.complete_card(
            card_id,
            "confirmed",
            {
                "acceptedCount": result.accepted_count,
                "rejectedCount": result.rejected_count,
                "failedCount": result.failed_count,
                "action": action,
                "completedAt": utcnow().isoformat(),
            },
        )
        if not completed:
            # Another caller confirmed it while items were being processed
            raise BatchCardStateError(
                f"Batch card {card_id} was resolved concurrently",
                card_id=card_id,
                status="confirmed",
            )

        logger.info(
            "batch_card_resolved",
            card_id=card_id,
            batch_type=card.batch_type,
            action=action,
            accepted=result.accepted_count,
            rejected=result.rejected_count,
            failed=result.failed_count,
        )
        return result

    async def _accept_item(self, item_id: str, action: str, result: ResolutionResult) -> Item | None:
        try:
            item = await self._store.get_item(item_id)
            if item is None:
                logger.warning("batch_item_not_found", item_id=item_id)
                self._record_failure(item_id, result)
                return None

            classification = item.classification.with_triage_path("bulk") if item.classification else None
            await self._store.update_item_status(item_id, "archived", classification=classification)
        except DatabaseError as e:
            logger.error("batch_item_resolve_failed", item_id=item_id, error=str(e))
            self._record_failure(item_id, result)
            return None

        result.accepted_count += 1
        await self._execute_at_source(item, action)
        return item

    async def _reject_item(self, item_id: str, result: ResolutionResult) -> None:
        try:
            item = await self._store.get_item(item_id)
            if item is None:
                logger.warning("batch_item_not_found", item_id=item_id)
                self._record_failure(item_id, result)
                return
            await self._store.update_item_classification(item_id, None)
        except DatabaseError as e:
            logger.error("batch_item_resolve_failed", item_id=item_id, error=str(e))
            self._record_failure(item_id, result)
            return

        result.rejected_count += 1

    async def _execute_at_source(self, item: Item, action: str) -> None:
        """Best-effort source-side action; the local decision stands either way."""
        executor = self._executors.get(item.connector)
        if executor is None:
            return
        try:
            await executor.execute(item, action)
        except Exception as e:
            logger.warning(
                "action_executor_failed",
                item_id=item.id,
                connector=item.connector,
                action=action,
                error=str(e),
            )

    async def _log_resolution(self, card: BatchCard, result: ResolutionResult, archived: list[Item]) -> None:
        """Write the triage_action audit entries the learning loop reads."""
        senders = sorted({item.sender for item in archived if item.sender})
        sender_text = ", ".join(senders[:MAX_AUDIT_SENDERS])
        if len(senders) > MAX_AUDIT_SENDERS:
            sender_text += f" and {len(senders) - MAX_AUDIT_SENDERS} more"

        description = (
            f"Bulk-archived {result.accepted_count} {card.batch_type} item(s)"
            + (f" from {sender_text}" if sender_text else "")
            + f"; {result.rejected_count} sent back for individual review"
        )

        try:
            await self._store.log_action(
                "triage_action",
                description=description,
                details={
                    "cardId": card.id,
                    "batchType": card.batch_type,
                    "action": result.action,
                    "triagePath": "bulk",
                    "acceptedItemIds": [item.id for item in archived],
                    "failedItemIds": result.failed_item_ids,
                },
                triggered_by="user",
            )
            if result.action == "accept & archive" and archived:
                count = len(archived)
                await self._store.log_action(
                    "triage_action",
                    description=f"Accepted {count} calendar invite{'s' if count != 1 else ''}",
                    details={"action": "calendar_accept", "itemIds": [item.id for item in archived]},
                    triggered_by="user",
                )
        except DatabaseError as e:
            logger.warning("batch_audit_log_failed", card_id=card.id, error=str(e))

    @staticmethod
    def _record_failure(item_id: str, result: ResolutionResult) -> None:
        result.failed_count += 1
        result.failed_item_ids.append(item_id)
