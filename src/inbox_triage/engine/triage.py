"""Triage engine for scheduled classification passes.

Ingestion only stores items (unclassified). This engine runs on a
schedule and, per cycle:

1. Generate triage_cycle_id and set it as the correlation ID
2. Pick up config changes (hot reload)
3. Classification pass: every unclassified new item through the pipeline,
   several items at a time, tiers in order within an item
4. Rule-only reclassification of items kept for individual review, so
   newly added rules catch earlier ambiguous items (no model calls)
5. Batch assignment onto pending cards
6. Maintenance: prune old LLM logs
7. Wait for best-effort background writes, log the cycle summary

A failure on one item is logged and counted; the pass continues.

Usage:
    from inbox_triage.engine.triage import TriageEngine

    engine = TriageEngine(store, rule_store, pipeline, assigner, background, config)
    result = await engine.run_cycle()
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from inbox_triage.classifier.rules import first_match
from inbox_triage.config import get_config, reload_config_if_changed
from inbox_triage.core.errors import DatabaseError
from inbox_triage.core.logging import get_logger, set_correlation_id
from inbox_triage.db.store import merge_enrichment, utcnow

if TYPE_CHECKING:
    from inbox_triage.classifier.pipeline import ClassificationPipeline
    from inbox_triage.classifier.rule_store import RuleStore
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.core.background import BackgroundTasks
    from inbox_triage.db.store import DatabaseStore, Item, Rule
    from inbox_triage.engine.batches import BatchAssigner

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class BatchPassResult:
    """Aggregate counts of one classification pass."""

    classified: int = 0
    by_tier: dict[str, int] = field(default_factory=dict)
    failed: int = 0


@dataclass
class TriageCycleResult:
    """Result of a single triage cycle."""

    cycle_id: str
    duration_ms: int = 0
    classified: int = 0
    by_tier: dict[str, int] = field(default_factory=dict)
    failed: int = 0
    reclassified: int = 0
    assigned: int = 0
    logs_pruned: int = 0
    config_reloaded: bool = False


class TriageEngine:
    """Scheduled triage engine.

    Each cycle generates a UUID4 triage_cycle_id for log correlation.
    All log entries within a cycle share this ID for end-to-end tracing,
    including best-effort writes that finish on the background runner.

    Attributes:
        _store: DatabaseStore for persistence
        _rule_store: RuleStore for active rules and match bookkeeping
        _pipeline: ClassificationPipeline
        _assigner: BatchAssigner
        _background: Runner for best-effort writes, drained at cycle end
        _config: Application configuration
        _hot_reload: Whether to pick up config file changes each cycle
    """

    def __init__(
        self,
        store: DatabaseStore,
        rule_store: RuleStore,
        pipeline: ClassificationPipeline,
        assigner: BatchAssigner,
        background: BackgroundTasks,
        config: AppConfig,
        hot_reload: bool = False,
    ):
        self._store = store
        self._rule_store = rule_store
        self._pipeline = pipeline
        self._assigner = assigner
        self._background = background
        self._config = config
        self._hot_reload = hot_reload

    def update_config(self, config: AppConfig) -> None:
        """Update the config reference for hot-reload support."""
        self._config = config
        self._pipeline.update_config(config)
        self._assigner.update_config(config)

    async def run_cycle(self) -> TriageCycleResult:
        """Execute a single triage cycle.

        Returns:
            TriageCycleResult with counts and timing
        """
        cycle_id = str(uuid.uuid4())
        set_correlation_id(cycle_id)
        start_time = time.monotonic()

        result = TriageCycleResult(cycle_id=cycle_id)
        logger.info("triage_cycle_start", interval_minutes=self._config.triage.interval_minutes)

        try:
            if self._hot_reload and reload_config_if_changed():
                self.update_config(get_config())
                result.config_reloaded = True
                logger.info("triage_config_reloaded")

            batch_pass = await self.run_batch_pass()
            result.classified = batch_pass.classified
            result.by_tier = batch_pass.by_tier
            result.failed = batch_pass.failed

            result.reclassified = await self.reclassify_unbatched()

            assignment = await self._assigner.assign()
            result.assigned = assignment.assigned

            await self._store.set_state("last_triage_cycle", utcnow().isoformat())
            await self._store.set_state("last_triage_cycle_id", cycle_id)

            try:
                result.logs_pruned = await self._store.prune_llm_logs(
                    self._config.llm_logging.retention_days
                )
            except DatabaseError as e:
                logger.warning("log_pruning_failed", error=str(e))

        except DatabaseError as e:
            logger.error("triage_cycle_error", error=str(e), error_type=type(e).__name__)
        finally:
            await self._background.drain()
            result.duration_ms = int((time.monotonic() - start_time) * 1000)

            logger.info(
                "triage_cycle_complete",
                duration_ms=result.duration_ms,
                classified=result.classified,
                by_tier=result.by_tier,
                failed=result.failed,
                reclassified=result.reclassified,
                assigned=result.assigned,
                logs_pruned=result.logs_pruned,
            )

            set_correlation_id(None)

        return result

    async def run_batch_pass(self) -> BatchPassResult:
        """Classify every unclassified new item (up to the configured batch size).

        Items are processed concurrently up to config.triage.concurrency;
        already-classified items are never selected, so re-running is a no-op
        on unchanged data.
        """
        items = await self._store.list_unclassified_items(limit=self._config.triage.batch_size)
        if not items:
            logger.debug("batch_pass_no_items")
            return BatchPassResult()

        active_rules = await self._rule_store.list_active()
        semaphore = asyncio.Semaphore(self._config.triage.concurrency)

        async def process(item: Item) -> str | None:
            async with semaphore:
                return await self._classify_item(item, active_rules)

        outcomes = await asyncio.gather(*(process(item) for item in items), return_exceptions=True)

        tiers: Counter[str] = Counter()
        failed = 0
        for item, outcome in zip(items, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                failed += 1
                logger.error(
                    "item_classification_crashed",
                    item_id=item.id,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
            elif outcome is None:
                failed += 1
            else:
                tiers[outcome] += 1

        result = BatchPassResult(classified=sum(tiers.values()), by_tier=dict(tiers), failed=failed)
        logger.info(
            "batch_pass_complete",
            items=len(items),
            classified=result.classified,
            by_tier=result.by_tier,
            failed=result.failed,
        )
        return result

    async def _classify_item(self, item: Item, active_rules: list[Rule]) -> str | None:
        """Classify and persist one item.

        Returns:
            The tier that classified it, or None if persisting failed
        """
        classification = await self._pipeline.classify(item, active_rules)
        enrichment = (
            merge_enrichment(item.enrichment, classification.enrichment)
            if classification.enrichment
            else None
        )
        try:
            await self._store.update_item_classification(
                item.id, classification.to_classification(), enrichment=enrichment
            )
        except DatabaseError as e:
            logger.error("item_classification_save_failed", item_id=item.id, error=str(e))
            return None
        return classification.tier

    async def reclassify_unbatched(self) -> int:
        """Re-check individually-kept items against the current rules, without model calls.

        Skips items a user explicitly removed from a group and items from
        connectors that are always kept for individual review. Only rules
        that route to a batch type can reclassify an item, so running this
        twice leaves the same final state.

        Returns:
            Number of items moved into a batch type
        """
        batch_rules = [
            rule
            for rule in await self._rule_store.list_active()
            if rule.type == "structured" and rule.batch_type
        ]
        if not batch_rules:
            return 0

        individual = set(self._config.triage.individual_connectors)
        reclassified = 0

        for item in await self._store.list_unbatched_classified_items():
            classification = item.classification
            if classification is None or classification.is_user_declassified:
                continue
            if item.connector in individual:
                continue

            rule = first_match(batch_rules, item)
            if rule is None:
                continue

            updated = replace(
                classification,
                tier="rule",
                batch_type=rule.batch_type,
                confidence=1.0,
                reason=f"Matched rule: {rule.name}",
                rule_id=rule.id,
                batch_card_id=None,
                classified_at=utcnow().isoformat(),
            )
            try:
                await self._store.update_item_classification(item.id, updated)
            except DatabaseError as e:
                logger.error("item_reclassification_failed", item_id=item.id, error=str(e))
                continue

            self._rule_store.increment_match(rule.id)
            reclassified += 1

        if reclassified:
            logger.info("items_reclassified", count=reclassified)
        return reclassified
