"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for the inbox triage pipeline. It uses aiosqlite for async access
and returns typed dataclasses.

Usage:
    from inbox_triage.db.store import DatabaseStore, Item

    store = DatabaseStore("data/triage.db")
    await store.initialize()

    await store.save_item(Item(id="abc", connector="gmail", sender="a@b.com"))
    card = await store.get_or_create_pending_batch_card(
        "newsletters", title="Newsletters", explanation="...", action="archive"
    )
    stamped = await store.assign_items_to_card(card.id, ["abc"])
"""

from __future__ import annotations

import json
import math
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from inbox_triage.core.errors import DatabaseError
from inbox_triage.core.logging import get_correlation_id, get_logger
from inbox_triage.db.models import init_database

logger = get_logger(__name__)

# Type aliases
ItemStatus = Literal["new", "archived", "snoozed", "actioned"]
ItemPriority = Literal["urgent", "high", "normal", "low"]
Tier = Literal["rule", "fast", "cloud"]
TriagePath = Literal["bulk", "quick", "engaged"]
RuleType = Literal["structured", "guidance"]
RuleStatus = Literal["active", "inactive", "proposed", "dismissed"]
RuleSource = Literal["seed", "user", "user_chat", "override", "learned"]
CardPattern = Literal["batch", "learning"]
CardStatus = Literal["pending", "confirmed", "dismissed"]

VALID_PRIORITIES = frozenset({"urgent", "high", "normal", "low"})
VALID_TRIAGE_PATHS = ("bulk", "quick", "engaged")

# Reason prefix written when a user pulls an item out of a group; such items
# are never re-matched by the rule-only reclassification pass.
DECLASSIFIED_REASON_PREFIX = "User removed from"


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    """Generate a random identifier, optionally prefixed (e.g. 'card_')."""
    return f"{prefix}{uuid.uuid4().hex}"


def clamp_confidence(value: Any) -> float:
    """Coerce a model-supplied confidence into [0, 1].

    Non-numeric values (including booleans and NaN) become 0.0.
    """
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0.0
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


# Keys of the stored classification JSON that map onto Classification fields
_CLASSIFICATION_KEYS = {
    "tier": "tier",
    "batchType": "batch_type",
    "confidence": "confidence",
    "reason": "reason",
    "ruleId": "rule_id",
    "batchCardId": "batch_card_id",
    "triagePath": "triage_path",
    "wasOverride": "was_override",
    "classifiedAt": "classified_at",
}


@dataclass(frozen=True)
class Classification:
    """Classification record embedded on an item.

    Unknown keys read from storage are kept in ``extra`` and written back
    unchanged, so older or newer writers never lose each other's fields.

    Attributes:
        tier: Tier that produced the decision ('rule', 'fast', 'cloud')
        batch_type: Group label, or None to keep the item for individual review
        confidence: Always within [0, 1]
        reason: Short human-readable explanation
        rule_id: Matching rule (rule tier only)
        batch_card_id: Pending batch card the item was assigned to
        triage_path: How the user eventually resolved the item
        was_override: The user resolved a grouped item individually
        classified_at: ISO timestamp
        extra: Unrecognized stored keys
    """

    tier: str
    batch_type: str | None
    confidence: float
    reason: str
    rule_id: str | None = None
    batch_card_id: str | None = None
    triage_path: str | None = None
    was_override: bool = False
    classified_at: str = field(default_factory=lambda: utcnow().isoformat())
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence", clamp_confidence(self.confidence))

    def with_batch_card(self, card_id: str) -> Classification:
        """Return a copy stamped with a batch card id.

        Raises:
            ValueError: If the item is already assigned to a different card
        """
        if self.batch_card_id and self.batch_card_id != card_id:
            raise ValueError(
                f"Classification already assigned to card {self.batch_card_id}; "
                "declassify before reassigning"
            )
        return replace(self, batch_card_id=card_id)

    def with_triage_path(self, triage_path: str) -> Classification:
        """Return a copy recording how the user resolved the item."""
        return replace(self, triage_path=triage_path)

    @property
    def is_user_declassified(self) -> bool:
        """True if a user explicitly removed the item from a group."""
        return self.reason.startswith(DECLASSIFIED_REASON_PREFIX)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the stored JSON shape, keeping unknown keys."""
        data: dict[str, Any] = dict(self.extra)
        data.update(
            {
                "tier": self.tier,
                "batchType": self.batch_type,
                "confidence": self.confidence,
                "reason": self.reason,
                "batchCardId": self.batch_card_id,
                "classifiedAt": self.classified_at,
            }
        )
        if self.rule_id:
            data["ruleId"] = self.rule_id
        if self.triage_path:
            data["triagePath"] = self.triage_path
        if self.was_override:
            data["wasOverride"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Classification:
        """Build from stored JSON; unknown keys land in ``extra``."""
        known: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in data.items():
            if key in _CLASSIFICATION_KEYS:
                known[_CLASSIFICATION_KEYS[key]] = value
            else:
                extra[key] = value

        return cls(
            tier=str(known.get("tier") or "cloud"),
            batch_type=known.get("batch_type") or None,
            confidence=known.get("confidence", 0.0),
            reason=str(known.get("reason") or ""),
            rule_id=known.get("rule_id"),
            batch_card_id=known.get("batch_card_id"),
            triage_path=known.get("triage_path"),
            was_override=known.get("was_override") is True,
            classified_at=str(known.get("classified_at") or utcnow().isoformat()),
            extra=extra,
        )


def merge_enrichment(
    existing: dict[str, Any] | None,
    update: dict[str, Any] | None,
) -> dict[str, Any]:
    """Overlay non-empty enrichment fields onto existing enrichment.

    Every existing key survives; update keys with None, empty string or
    empty list values are ignored.
    """
    merged = dict(existing or {})
    for key, value in (update or {}).items():
        if value is None or value == "" or value == []:
            continue
        merged[key] = value
    return merged


@dataclass
class Item:
    """Inbox item record."""

    id: str
    connector: str
    sender: str = ""
    sender_name: str | None = None
    subject: str = ""
    content: str = ""
    preview: str | None = None
    external_id: str | None = None
    status: ItemStatus = "new"
    priority: ItemPriority = "normal"
    tags: list[str] = field(default_factory=list)
    enrichment: dict[str, Any] = field(default_factory=dict)
    classification: Classification | None = None
    snoozed_until: datetime | None = None
    received_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def sender_domain(self) -> str | None:
        """Substring after the last '@', or None if the sender has no '@'."""
        if "@" not in self.sender:
            return None
        return self.sender.rsplit("@", 1)[1]


@dataclass
class Rule:
    """Triage rule record."""

    id: str
    name: str
    type: RuleType = "structured"
    trigger: dict[str, Any] | None = None
    action: dict[str, Any] | None = None
    guidance: str | None = None
    description: str | None = None
    status: RuleStatus = "active"
    source: RuleSource = "user"
    sort_order: int = 0
    match_count: int = 0
    last_matched_at: datetime | None = None
    version: int = 1
    pattern_key: str | None = None
    evidence: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def batch_type(self) -> str | None:
        """Batch type from the rule's action, if any."""
        if not self.action:
            return None
        return self.action.get("batchType") or None


@dataclass
class BatchCard:
    """Batch or learning card record."""

    id: str
    title: str
    pattern: CardPattern = "batch"
    status: CardStatus = "pending"
    handler: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def batch_type(self) -> str | None:
        return self.data.get("batchType")

    @property
    def item_count(self) -> int:
        return int(self.data.get("itemCount") or 0)


@dataclass
class ActionLogEntry:
    """Action log entry from the database."""

    id: int
    timestamp: datetime
    action_type: str
    item_id: str | None = None
    description: str | None = None
    details: dict[str, Any] | None = None
    triggered_by: str | None = None


@dataclass
class LLMLogEntry:
    """LLM request log entry from the database."""

    id: int
    timestamp: datetime
    task_type: str | None = None
    provider: str | None = None
    model: str | None = None
    item_id: str | None = None
    triage_cycle_id: str | None = None
    prompt: dict[str, Any] | None = None
    response_text: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: int | None = None
    estimated_cost: float | None = None
    error: str | None = None


@dataclass
class CostSummary:
    """Model usage and estimated cost for one provider and task type."""

    provider: str
    task_type: str
    request_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: float = 0.0


@dataclass
class TriagePathCounts:
    """Resolved-item counts per triage path."""

    bulk: int = 0
    quick: int = 0
    engaged: int = 0

    @property
    def total(self) -> int:
        return self.bulk + self.quick + self.engaged


def _loads(raw: str | None) -> Any:
    """Parse a JSON column, returning None on empty or corrupt values."""
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def _parse_dt(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class DatabaseStore:
    """Database store for all inbox triage data.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        """Initialize the database store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables if needed. Must be called before any other operation."""
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets all required PRAGMAs for reliability and performance:
        - busy_timeout: 10s to handle the scheduler and CLI writing concurrently
        - foreign_keys: ON to enforce referential integrity
        - synchronous: NORMAL (safe with WAL, faster writes)
        - cache_size: 64MB for better read performance
        - temp_store: MEMORY for faster temp operations
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")

            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA cache_size = -64000")  # 64MB
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    async def checkpoint_wal(self) -> None:
        """Run a WAL checkpoint to keep WAL file size bounded."""
        try:
            async with self._db() as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            logger.debug("wal_checkpoint_complete")
        except aiosqlite.Error as e:
            logger.warning("wal_checkpoint_failed", error=str(e))

    # =========================================================================
    # Item Operations
    # =========================================================================

    async def save_item(self, item: Item) -> None:
        """Insert or update an item.

        Args:
            item: Item to save; created_at/updated_at are filled in when missing

        Raises:
            DatabaseError: If the operation fails
        """
        now = utcnow()
        item.created_at = item.created_at or now
        item.updated_at = now

        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO items (
                        id, external_id, connector, sender, sender_name, subject,
                        content, preview, status, priority, tags_json,
                        enrichment_json, classification_json, snoozed_until,
                        received_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        external_id = excluded.external_id,
                        connector = excluded.connector,
                        sender = excluded.sender,
                        sender_name = excluded.sender_name,
                        subject = excluded.subject,
                        content = excluded.content,
                        preview = excluded.preview,
                        status = excluded.status,
                        priority = excluded.priority,
                        tags_json = excluded.tags_json,
                        enrichment_json = excluded.enrichment_json,
                        classification_json = excluded.classification_json,
                        snoozed_until = excluded.snoozed_until,
                        received_at = excluded.received_at,
                        updated_at = excluded.updated_at
                    """,
                    (
                        item.id,
                        item.external_id,
                        item.connector,
                        item.sender,
                        item.sender_name,
                        item.subject,
                        item.content,
                        item.preview,
                        item.status,
                        item.priority,
                        json.dumps(list(item.tags)),
                        json.dumps(item.enrichment) if item.enrichment else None,
                        json.dumps(item.classification.to_dict()) if item.classification else None,
                        _dt(item.snoozed_until),
                        _dt(item.received_at),
                        _dt(item.created_at),
                        _dt(item.updated_at),
                    ),
                )
                await db.commit()
                logger.debug("Item saved", item_id=item.id)

        except aiosqlite.Error as e:
            logger.error("Failed to save item", item_id=item.id, error=str(e))
            raise DatabaseError(f"Failed to save item {item.id}: {e}") from e

    async def get_item(self, item_id: str) -> Item | None:
        """Get an item by ID, or None if not found."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM items WHERE id = ?", (item_id,))
                row = await cursor.fetchone()
                return self._row_to_item(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get item", item_id=item_id, error=str(e))
            raise DatabaseError(f"Failed to get item {item_id}: {e}") from e

    async def get_item_by_external_id(self, connector: str, external_id: str) -> Item | None:
        """Look up an item by its source-system identity."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM items WHERE connector = ? AND external_id = ?",
                    (connector, external_id),
                )
                row = await cursor.fetchone()
                return self._row_to_item(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get item by external id", connector=connector, error=str(e))
            raise DatabaseError(f"Failed to get item {connector}/{external_id}: {e}") from e

    async def list_items(self, status: str | None = None, limit: int = 100) -> list[Item]:
        """List items, newest first, optionally filtered by status."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM items"
                params: list[Any] = []
                if status:
                    query += " WHERE status = ?"
                    params.append(status)
                query += " ORDER BY created_at DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_item(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to list items", status=status, error=str(e))
            raise DatabaseError(f"Failed to list items: {e}") from e

    async def list_unclassified_items(self, limit: int = 100) -> list[Item]:
        """New items that have never been classified, oldest first."""
        return await self._select_items(
            """
            SELECT * FROM items
            WHERE status = 'new' AND classification_json IS NULL
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (limit,),
            "unclassified",
        )

    async def list_unbatched_classified_items(self) -> list[Item]:
        """New items classified for individual review, excluding user-declassified ones."""
        return await self._select_items(
            """
            SELECT * FROM items
            WHERE status = 'new'
              AND classification_json IS NOT NULL
              AND json_extract(classification_json, '$.batchType') IS NULL
              AND COALESCE(json_extract(classification_json, '$.reason'), '') NOT LIKE ?
            ORDER BY created_at ASC
            """,
            (f"{DECLASSIFIED_REASON_PREFIX}%",),
            "unbatched",
        )

    async def list_unassigned_batch_items(self) -> list[Item]:
        """New items with a batch type but no batch card yet."""
        return await self._select_items(
            """
            SELECT * FROM items
            WHERE status = 'new'
              AND classification_json IS NOT NULL
              AND json_extract(classification_json, '$.batchType') IS NOT NULL
              AND json_extract(classification_json, '$.batchCardId') IS NULL
            ORDER BY created_at ASC
            """,
            (),
            "unassigned",
        )

    async def list_card_items(self, card_id: str) -> list[Item]:
        """Still-new items stamped with the given batch card."""
        return await self._select_items(
            """
            SELECT * FROM items
            WHERE status = 'new'
              AND json_extract(classification_json, '$.batchCardId') = ?
            ORDER BY created_at ASC
            """,
            (card_id,),
            "card",
        )

    async def _select_items(self, query: str, params: tuple[Any, ...], label: str) -> list[Item]:
        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_item(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to select items", query=label, error=str(e))
            raise DatabaseError(f"Failed to select {label} items: {e}") from e

    async def update_item_classification(
        self,
        item_id: str,
        classification: Classification | None,
        enrichment: dict[str, Any] | None = None,
    ) -> None:
        """Replace an item's classification, and its enrichment when given.

        Passing classification=None clears the record (declassification).

        Raises:
            DatabaseError: If the operation fails
        """
        try:
            async with self._db() as db:
                classification_json = (
                    json.dumps(classification.to_dict()) if classification else None
                )
                if enrichment is not None:
                    await db.execute(
                        """
                        UPDATE items
                        SET classification_json = ?, enrichment_json = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (classification_json, json.dumps(enrichment), _dt(utcnow()), item_id),
                    )
                else:
                    await db.execute(
                        "UPDATE items SET classification_json = ?, updated_at = ? WHERE id = ?",
                        (classification_json, _dt(utcnow()), item_id),
                    )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to update classification", item_id=item_id, error=str(e))
            raise DatabaseError(f"Failed to update classification for {item_id}: {e}") from e

    async def update_item_status(
        self,
        item_id: str,
        status: ItemStatus,
        classification: Classification | None = None,
        snoozed_until: datetime | None = None,
    ) -> bool:
        """Transition an item's status, optionally rewriting its classification.

        Returns:
            True if the item exists and was updated
        """
        try:
            async with self._db() as db:
                if classification is not None:
                    cursor = await db.execute(
                        """
                        UPDATE items
                        SET status = ?, snoozed_until = ?, classification_json = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (
                            status,
                            _dt(snoozed_until),
                            json.dumps(classification.to_dict()),
                            _dt(utcnow()),
                            item_id,
                        ),
                    )
                else:
                    cursor = await db.execute(
                        "UPDATE items SET status = ?, snoozed_until = ?, updated_at = ? WHERE id = ?",
                        (status, _dt(snoozed_until), _dt(utcnow()), item_id),
                    )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to update item status", item_id=item_id, error=str(e))
            raise DatabaseError(f"Failed to update status for {item_id}: {e}") from e

    async def assign_items_to_card(self, card_id: str, item_ids: list[str]) -> int:
        """Stamp unassigned items with a card id and grow the card's itemCount.

        Both updates run in one transaction. Items that already carry a
        batchCardId are left untouched and are not counted. Nothing is
        stamped once the card has left the pending state.

        Returns:
            Number of items stamped
        """
        if not item_ids:
            return 0

        now = _dt(utcnow())
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    UPDATE items
                    SET classification_json = json_set(classification_json, '$.batchCardId', ?),
                        updated_at = ?
                    WHERE id IN ({_placeholders(len(item_ids))})
                      AND status = 'new'
                      AND classification_json IS NOT NULL
                      AND json_extract(classification_json, '$.batchCardId') IS NULL
                      AND EXISTS (
                          SELECT 1 FROM action_cards WHERE id = ? AND status = 'pending'
                      )
                    """,
                    (card_id, now, *item_ids, card_id),
                )
                stamped = cursor.rowcount

                if stamped:
                    await db.execute(
                        """
                        UPDATE action_cards
                        SET data_json = json_set(
                                data_json,
                                '$.itemCount',
                                COALESCE(json_extract(data_json, '$.itemCount'), 0) + ?
                            ),
                            updated_at = ?
                        WHERE id = ?
                        """,
                        (stamped, now, card_id),
                    )
                await db.commit()
                return stamped

        except aiosqlite.Error as e:
            logger.error("Failed to assign items to card", card_id=card_id, error=str(e))
            raise DatabaseError(f"Failed to assign items to card {card_id}: {e}") from e

    async def get_triage_path_counts(
        self,
        sender: str | None = None,
        sender_domain: str | None = None,
    ) -> TriagePathCounts:
        """Count resolved items (status != 'new') by recorded triage path.

        Exactly one of sender or sender_domain should be given. Domain matching
        compares against the text after the sender's last '@'.
        """
        if sender is not None:
            where, param = "sender = ?", sender
        elif sender_domain:
            escaped = (
                sender_domain.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            )
            where, param = "sender LIKE ? ESCAPE '\\'", f"%@{escaped}"
        else:
            return TriagePathCounts()

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT json_extract(classification_json, '$.triagePath') AS triage_path,
                           COUNT(*) AS count
                    FROM items
                    WHERE {where}
                      AND status != 'new'
                      AND json_extract(classification_json, '$.triagePath') IS NOT NULL
                    GROUP BY triage_path
                    """,
                    (param,),
                )
                rows = await cursor.fetchall()

        except aiosqlite.Error as e:
            logger.error("Failed to count triage paths", error=str(e))
            raise DatabaseError(f"Failed to count triage paths: {e}") from e

        counts = TriagePathCounts()
        for row in rows:
            if row["triage_path"] in VALID_TRIAGE_PATHS:
                setattr(counts, row["triage_path"], row["count"])
        return counts

    def _row_to_item(self, row: aiosqlite.Row) -> Item:
        """Convert a database row to an Item dataclass."""
        classification_data = _loads(row["classification_json"])
        tags = _loads(row["tags_json"])

        return Item(
            id=row["id"],
            external_id=row["external_id"],
            connector=row["connector"],
            sender=row["sender"] or "",
            sender_name=row["sender_name"],
            subject=row["subject"] or "",
            content=row["content"] or "",
            preview=row["preview"],
            status=row["status"],
            priority=row["priority"],
            tags=tags if isinstance(tags, list) else [],
            enrichment=_loads(row["enrichment_json"]) or {},
            classification=(
                Classification.from_dict(classification_data)
                if isinstance(classification_data, dict)
                else None
            ),
            snoozed_until=_parse_dt(row["snoozed_until"]),
            received_at=_parse_dt(row["received_at"]),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    # =========================================================================
    # Rule Operations
    # =========================================================================

    async def insert_rule(self, rule: Rule) -> Rule:
        """Insert a new rule.

        Raises:
            DatabaseError: If the operation fails (including duplicate IDs)
        """
        now = utcnow()
        rule.created_at = rule.created_at or now
        rule.updated_at = now

        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO triage_rules (
                        id, name, description, type, trigger_json, action_json,
                        guidance, status, source, sort_order, match_count,
                        last_matched_at, version, pattern_key, evidence_json,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        rule.id,
                        rule.name,
                        rule.description,
                        rule.type,
                        json.dumps(rule.trigger) if rule.trigger is not None else None,
                        json.dumps(rule.action) if rule.action is not None else None,
                        rule.guidance,
                        rule.status,
                        rule.source,
                        rule.sort_order,
                        rule.match_count,
                        _dt(rule.last_matched_at),
                        rule.version,
                        rule.pattern_key,
                        json.dumps(rule.evidence) if rule.evidence is not None else None,
                        _dt(rule.created_at),
                        _dt(rule.updated_at),
                    ),
                )
                await db.commit()
                return rule

        except aiosqlite.Error as e:
            logger.error("Failed to insert rule", rule_name=rule.name, error=str(e))
            raise DatabaseError(f"Failed to insert rule '{rule.name}': {e}") from e

    async def update_rule(self, rule: Rule) -> None:
        """Write every mutable field of an existing rule.

        Match-count fields are not written here; they are only changed by
        increment_rule_match so a concurrent increment is never lost.
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE triage_rules
                    SET name = ?, description = ?, type = ?, trigger_json = ?,
                        action_json = ?, guidance = ?, status = ?, source = ?,
                        sort_order = ?, version = ?, pattern_key = ?, evidence_json = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        rule.name,
                        rule.description,
                        rule.type,
                        json.dumps(rule.trigger) if rule.trigger is not None else None,
                        json.dumps(rule.action) if rule.action is not None else None,
                        rule.guidance,
                        rule.status,
                        rule.source,
                        rule.sort_order,
                        rule.version,
                        rule.pattern_key,
                        json.dumps(rule.evidence) if rule.evidence is not None else None,
                        _dt(rule.updated_at),
                        rule.id,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to update rule", rule_id=rule.id, error=str(e))
            raise DatabaseError(f"Failed to update rule {rule.id}: {e}") from e

    async def get_rule(self, rule_id: str) -> Rule | None:
        """Get a rule by ID, or None if not found."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM triage_rules WHERE id = ?", (rule_id,))
                row = await cursor.fetchone()
                return self._row_to_rule(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get rule", rule_id=rule_id, error=str(e))
            raise DatabaseError(f"Failed to get rule {rule_id}: {e}") from e

    async def list_rules(self, status: RuleStatus | None = None) -> list[Rule]:
        """List rules in evaluation order, optionally filtered by status."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM triage_rules"
                params: list[Any] = []
                if status:
                    query += " WHERE status = ?"
                    params.append(status)
                query += " ORDER BY sort_order ASC, created_at ASC"

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_rule(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to list rules", error=str(e))
            raise DatabaseError(f"Failed to list rules: {e}") from e

    async def get_rule_names(self) -> set[str]:
        """Names of every rule, active or not."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT name FROM triage_rules")
                return {row["name"] for row in await cursor.fetchall()}

        except aiosqlite.Error as e:
            logger.error("Failed to get rule names", error=str(e))
            raise DatabaseError(f"Failed to get rule names: {e}") from e

    async def list_rules_by_pattern_key(self, pattern_key: str) -> list[Rule]:
        """Every rule, in any status, proposed about the given sender."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM triage_rules WHERE pattern_key = ? ORDER BY created_at ASC",
                    (pattern_key,),
                )
                return [self._row_to_rule(row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list rules by pattern key", error=str(e))
            raise DatabaseError(f"Failed to list rules for {pattern_key}: {e}") from e

    async def count_engaged_overrides(self, sender: str) -> int:
        """Items from a sender that the user pulled out of a group and then engaged with."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT COUNT(*) FROM items
                    WHERE sender = ?
                      AND json_extract(classification_json, '$.wasOverride') = 1
                      AND json_extract(classification_json, '$.triagePath') = 'engaged'
                    """,
                    (sender,),
                )
                row = await cursor.fetchone()
                return row[0] if row else 0

        except aiosqlite.Error as e:
            logger.error("Failed to count overrides", error=str(e))
            raise DatabaseError(f"Failed to count overrides for {sender}: {e}") from e

    async def increment_rule_match(self, rule_id: str) -> None:
        """Increment a rule's match count and stamp last_matched_at."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE triage_rules
                    SET match_count = match_count + 1, last_matched_at = ?
                    WHERE id = ?
                    """,
                    (_dt(utcnow()), rule_id),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to increment rule match", rule_id=rule_id, error=str(e))
            raise DatabaseError(f"Failed to increment match count for {rule_id}: {e}") from e

    def _row_to_rule(self, row: aiosqlite.Row) -> Rule:
        """Convert a database row to a Rule dataclass."""
        trigger = _loads(row["trigger_json"])
        action = _loads(row["action_json"])
        evidence = _loads(row["evidence_json"])

        return Rule(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            type=row["type"],
            trigger=trigger if isinstance(trigger, dict) else None,
            action=action if isinstance(action, dict) else None,
            guidance=row["guidance"],
            status=row["status"],
            source=row["source"],
            sort_order=row["sort_order"],
            match_count=row["match_count"],
            last_matched_at=_parse_dt(row["last_matched_at"]),
            version=row["version"],
            pattern_key=row["pattern_key"],
            evidence=evidence if isinstance(evidence, dict) else None,
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    # =========================================================================
    # Card Operations
    # =========================================================================

    async def get_or_create_pending_batch_card(
        self,
        batch_type: str,
        title: str,
        explanation: str,
        action: str,
    ) -> tuple[BatchCard, bool]:
        """Return the single pending batch card for a batch type, creating it if absent.

        The insert is ignored when the partial unique index already holds a
        pending card for this batch type, so concurrent callers always end up
        with the same card.

        Returns:
            Tuple of (card, created)
        """
        candidate_id = new_id("card_")
        now = _dt(utcnow())
        data = {
            "batchType": batch_type,
            "action": action,
            "itemCount": 0,
            "explanation": explanation,
        }

        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT OR IGNORE INTO action_cards (
                        id, pattern, status, title, handler, batch_type,
                        data_json, created_at, updated_at
                    ) VALUES (?, 'batch', 'pending', ?, 'batch:action', ?, ?, ?, ?)
                    """,
                    (candidate_id, title, batch_type, json.dumps(data), now, now),
                )
                await db.commit()

                cursor = await db.execute(
                    """
                    SELECT * FROM action_cards
                    WHERE batch_type = ? AND status = 'pending' AND pattern = 'batch'
                    """,
                    (batch_type,),
                )
                row = await cursor.fetchone()

        except aiosqlite.Error as e:
            logger.error("Failed to get or create batch card", batch_type=batch_type, error=str(e))
            raise DatabaseError(f"Failed to get or create card for {batch_type}: {e}") from e

        if row is None:
            raise DatabaseError(f"Pending card for {batch_type} vanished after insert")

        card = self._row_to_card(row)
        return card, card.id == candidate_id

    async def insert_card(self, card: BatchCard) -> BatchCard:
        """Insert a card as-is (used for learning proposal cards)."""
        now = utcnow()
        card.created_at = card.created_at or now
        card.updated_at = now

        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO action_cards (
                        id, pattern, status, title, handler, batch_type,
                        data_json, result_json, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        card.id,
                        card.pattern,
                        card.status,
                        card.title,
                        card.handler,
                        card.batch_type,
                        json.dumps(card.data),
                        json.dumps(card.result) if card.result else None,
                        _dt(card.created_at),
                        _dt(card.updated_at),
                    ),
                )
                await db.commit()
                return card

        except aiosqlite.Error as e:
            logger.error("Failed to insert card", card_id=card.id, error=str(e))
            raise DatabaseError(f"Failed to insert card {card.id}: {e}") from e

    async def get_card(self, card_id: str) -> BatchCard | None:
        """Get a card by ID, or None if not found."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM action_cards WHERE id = ?", (card_id,))
                row = await cursor.fetchone()
                return self._row_to_card(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get card", card_id=card_id, error=str(e))
            raise DatabaseError(f"Failed to get card {card_id}: {e}") from e

    async def list_cards(
        self,
        pattern: CardPattern | None = None,
        status: CardStatus | None = None,
    ) -> list[BatchCard]:
        """List cards, oldest first, with optional filters."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM action_cards WHERE 1=1"
                params: list[Any] = []
                if pattern:
                    query += " AND pattern = ?"
                    params.append(pattern)
                if status:
                    query += " AND status = ?"
                    params.append(status)
                query += " ORDER BY created_at ASC"

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_card(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to list cards", error=str(e))
            raise DatabaseError(f"Failed to list cards: {e}") from e

    async def complete_card(
        self,
        card_id: str,
        status: CardStatus,
        result: dict[str, Any] | None = None,
    ) -> bool:
        """Move a pending card to a terminal status.

        In the same transaction, items that are still new and stamped with
        the card are released (their batchCardId is cleared) so the next
        assignment pass puts them on a successor card.

        Returns:
            True if the card was pending and is now updated, False otherwise
        """
        now = _dt(utcnow())
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE action_cards
                    SET status = ?, result_json = ?, updated_at = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (status, json.dumps(result) if result else None, now, card_id),
                )
                completed = cursor.rowcount > 0

                released = 0
                if completed:
                    cursor = await db.execute(
                        """
                        UPDATE items
                        SET classification_json = json_set(classification_json, '$.batchCardId', NULL),
                            updated_at = ?
                        WHERE status = 'new'
                          AND classification_json IS NOT NULL
                          AND json_extract(classification_json, '$.batchCardId') = ?
                        """,
                        (now, card_id),
                    )
                    released = cursor.rowcount
                await db.commit()

                if released:
                    logger.info("card_items_released", card_id=card_id, released=released)
                return completed

        except aiosqlite.Error as e:
            logger.error("Failed to complete card", card_id=card_id, error=str(e))
            raise DatabaseError(f"Failed to complete card {card_id}: {e}") from e

    async def update_card_data(self, card_id: str, data: dict[str, Any]) -> None:
        """Replace a card's data payload."""
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE action_cards SET data_json = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(data), _dt(utcnow()), card_id),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to update card data", card_id=card_id, error=str(e))
            raise DatabaseError(f"Failed to update card {card_id}: {e}") from e

    def _row_to_card(self, row: aiosqlite.Row) -> BatchCard:
        """Convert a database row to a BatchCard dataclass."""
        data = _loads(row["data_json"])
        result = _loads(row["result_json"])

        return BatchCard(
            id=row["id"],
            pattern=row["pattern"],
            status=row["status"],
            title=row["title"],
            handler=row["handler"],
            data=data if isinstance(data, dict) else {},
            result=result if isinstance(result, dict) else None,
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    # =========================================================================
    # Agent State Operations
    # =========================================================================

    async def get_state(self, key: str) -> str | None:
        """Get an agent state value, or None if not set."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT value FROM agent_state WHERE key = ?", (key,))
                row = await cursor.fetchone()
                return row["value"] if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get state", key=key, error=str(e))
            raise DatabaseError(f"Failed to get state: {e}") from e

    async def set_state(self, key: str, value: str) -> None:
        """Set an agent state value."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO agent_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, _dt(utcnow())),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to set state", key=key, error=str(e))
            raise DatabaseError(f"Failed to set state: {e}") from e

    # =========================================================================
    # LLM Request Log Operations
    # =========================================================================

    async def log_llm_request(
        self,
        task_type: str,
        provider: str,
        model: str,
        prompt: dict[str, Any] | None = None,
        response_text: str | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        duration_ms: int | None = None,
        item_id: str | None = None,
        error: str | None = None,
        estimated_cost: float | None = None,
    ) -> int:
        """Log a model call for debugging and cost tracking.

        Args:
            task_type: 'classify', 'learning' or 'rule_authoring'
            provider: 'anthropic' or 'ollama'
            model: Model string used
            prompt: System prompt and messages
            response_text: Raw model output
            input_tokens: Input token count
            output_tokens: Output token count
            duration_ms: Request duration in milliseconds
            item_id: Associated item ID (if applicable)
            error: Error message (if failed)
            estimated_cost: Estimated USD cost of the call

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        timestamp, task_type, provider, model, item_id, triage_cycle_id,
                        prompt_json, response_text, input_tokens, output_tokens,
                        duration_ms, estimated_cost, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _dt(utcnow()),
                        task_type,
                        provider,
                        model,
                        item_id,
                        get_correlation_id(),
                        json.dumps(prompt) if prompt else None,
                        response_text,
                        input_tokens,
                        output_tokens,
                        duration_ms,
                        estimated_cost,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to log LLM request", task_type=task_type, error=str(e))
            raise DatabaseError(f"Failed to log LLM request: {e}") from e

    async def get_llm_logs(
        self,
        limit: int = 100,
        triage_cycle_id: str | None = None,
    ) -> list[LLMLogEntry]:
        """Get LLM request logs, newest first."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM llm_request_log WHERE 1=1"
                params: list[Any] = []
                if triage_cycle_id:
                    query += " AND triage_cycle_id = ?"
                    params.append(triage_cycle_id)
                query += " ORDER BY timestamp DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_llm_log(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get LLM logs", error=str(e))
            raise DatabaseError(f"Failed to get LLM logs: {e}") from e

    async def prune_llm_logs(self, retention_days: int) -> int:
        """Delete LLM logs older than the retention period.

        Returns:
            Number of entries deleted
        """
        try:
            cutoff = utcnow() - timedelta(days=retention_days)

            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM llm_request_log WHERE timestamp < ?",
                    (cutoff.isoformat(),),
                )
                await db.commit()

                deleted = cursor.rowcount
                if deleted:
                    logger.info("Pruned LLM logs", deleted=deleted, retention_days=retention_days)
                return deleted

        except aiosqlite.Error as e:
            logger.error("Failed to prune LLM logs", error=str(e))
            raise DatabaseError(f"Failed to prune LLM logs: {e}") from e

    async def get_cost_summary(self, days: int = 7) -> list[CostSummary]:
        """Token usage and estimated cost per provider and task type over the last N days."""
        since = utcnow() - timedelta(days=days)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT COALESCE(provider, 'unknown') AS provider,
                           COALESCE(task_type, 'unknown') AS task_type,
                           COUNT(*) AS request_count,
                           COALESCE(SUM(input_tokens), 0) AS input_tokens,
                           COALESCE(SUM(output_tokens), 0) AS output_tokens,
                           COALESCE(SUM(estimated_cost), 0) AS total_cost
                    FROM llm_request_log
                    WHERE timestamp >= ?
                    GROUP BY 1, 2
                    ORDER BY total_cost DESC, provider, task_type
                    """,
                    (_dt(since),),
                )
                rows = await cursor.fetchall()
                return [
                    CostSummary(
                        provider=row["provider"],
                        task_type=row["task_type"],
                        request_count=row["request_count"],
                        input_tokens=row["input_tokens"],
                        output_tokens=row["output_tokens"],
                        total_cost=round(float(row["total_cost"]), 6),
                    )
                    for row in rows
                ]

        except aiosqlite.Error as e:
            logger.error("Failed to get cost summary", error=str(e))
            raise DatabaseError(f"Failed to get cost summary: {e}") from e

    def _row_to_llm_log(self, row: aiosqlite.Row) -> LLMLogEntry:
        """Convert a database row to an LLMLogEntry dataclass."""
        return LLMLogEntry(
            id=row["id"],
            timestamp=_parse_dt(row["timestamp"]) or utcnow(),
            task_type=row["task_type"],
            provider=row["provider"],
            model=row["model"],
            item_id=row["item_id"],
            triage_cycle_id=row["triage_cycle_id"],
            prompt=_loads(row["prompt_json"]),
            response_text=row["response_text"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            duration_ms=row["duration_ms"],
            estimated_cost=row["estimated_cost"],
            error=row["error"],
        )

    # =========================================================================
    # Action Log Operations
    # =========================================================================

    async def log_action(
        self,
        action_type: str,
        item_id: str | None = None,
        description: str | None = None,
        details: dict[str, Any] | None = None,
        triggered_by: str = "auto",
    ) -> int:
        """Log an action for the audit trail.

        Args:
            action_type: 'triage_action', 'classify', 'rule_created', ...
            item_id: Associated item ID (if applicable)
            description: Human-readable summary line
            details: Action details dictionary
            triggered_by: 'user', 'auto' or 'learning'

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO action_log (
                        timestamp, action_type, item_id, description, details_json, triggered_by
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _dt(utcnow()),
                        action_type,
                        item_id,
                        description,
                        json.dumps(details) if details else None,
                        triggered_by,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to log action", action_type=action_type, error=str(e))
            raise DatabaseError(f"Failed to log action: {e}") from e

    async def get_action_logs(
        self,
        limit: int = 100,
        item_id: str | None = None,
        action_type: str | None = None,
        since: datetime | None = None,
    ) -> list[ActionLogEntry]:
        """Get action logs, newest first, with optional filters."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM action_log WHERE 1=1"
                params: list[Any] = []

                if item_id:
                    query += " AND item_id = ?"
                    params.append(item_id)
                if action_type:
                    query += " AND action_type = ?"
                    params.append(action_type)
                if since:
                    query += " AND timestamp >= ?"
                    params.append(_dt(since))

                query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_action_log(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get action logs", error=str(e))
            raise DatabaseError(f"Failed to get action logs: {e}") from e

    def _row_to_action_log(self, row: aiosqlite.Row) -> ActionLogEntry:
        """Convert a database row to an ActionLogEntry dataclass."""
        return ActionLogEntry(
            id=row["id"],
            timestamp=_parse_dt(row["timestamp"]) or utcnow(),
            action_type=row["action_type"],
            item_id=row["item_id"],
            description=row["description"],
            details=_loads(row["details_json"]),
            triggered_by=row["triggered_by"],
        )
