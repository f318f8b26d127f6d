"""Database layer for the inbox triage pipeline.

This module provides SQLite database access with async operations.

Usage:
    from inbox_triage.db import DatabaseStore, Item

    store = DatabaseStore("data/triage.db")
    await store.initialize()

    await store.save_item(Item(id="abc123", connector="gmail", sender="news@substack.com"))
    items = await store.list_unclassified_items(limit=50)
"""

from inbox_triage.db.models import SCHEMA_VERSION, init_database, verify_schema
from inbox_triage.db.store import (
    DECLASSIFIED_REASON_PREFIX,
    ActionLogEntry,
    BatchCard,
    Classification,
    CostSummary,
    DatabaseStore,
    Item,
    LLMLogEntry,
    Rule,
    TriagePathCounts,
    clamp_confidence,
    merge_enrichment,
    new_id,
    utcnow,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "DECLASSIFIED_REASON_PREFIX",
    # Dataclasses
    "Item",
    "Classification",
    "Rule",
    "BatchCard",
    "ActionLogEntry",
    "LLMLogEntry",
    "CostSummary",
    "TriagePathCounts",
    # Helpers
    "clamp_confidence",
    "merge_enrichment",
    "new_id",
    "utcnow",
]
