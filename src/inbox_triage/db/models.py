"""SQLite database schema and initialization for the inbox triage pipeline.

Tables:
- items: Inbox items with their classification and enrichment JSON
- triage_rules: Structured and guidance rules
- action_cards: Batch cards and learning proposal cards
- action_log: Audit trail; 'triage_action' rows feed the learning loop
- llm_request_log: Model call log for debugging and cost tracking
- agent_state: Key-value state persistence

Usage:
    from inbox_triage.db.models import init_database

    await init_database("data/triage.db")
"""

import stat
from pathlib import Path

import aiosqlite

from inbox_triage.core.errors import DatabaseError
from inbox_triage.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 2

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    external_id TEXT,                       -- ID in the source system
    connector TEXT NOT NULL,                -- 'gmail', 'slack', 'linear', 'granola', ...
    sender TEXT NOT NULL DEFAULT '',
    sender_name TEXT,
    subject TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL DEFAULT '',
    preview TEXT,
    status TEXT NOT NULL DEFAULT 'new',     -- 'new', 'archived', 'snoozed', 'actioned'
    priority TEXT NOT NULL DEFAULT 'normal',-- 'urgent', 'high', 'normal', 'low'
    tags_json TEXT NOT NULL DEFAULT '[]',
    enrichment_json TEXT,                   -- Derived summary/priority/tags
    classification_json TEXT,               -- NULL until classified
    snoozed_until DATETIME,
    received_at DATETIME,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_items_connector_external
    ON items(connector, external_id);
CREATE INDEX IF NOT EXISTS idx_items_status ON items(status);
CREATE INDEX IF NOT EXISTS idx_items_sender ON items(sender);

CREATE TABLE IF NOT EXISTS triage_rules (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    type TEXT NOT NULL DEFAULT 'structured', -- 'structured', 'guidance'
    trigger_json TEXT,                       -- NULL matches nothing, '{}' matches everything
    action_json TEXT,                        -- {"type": "batch", "batchType": "..."}
    guidance TEXT,
    status TEXT NOT NULL DEFAULT 'active',   -- 'active', 'inactive', 'proposed', 'dismissed'
    source TEXT NOT NULL DEFAULT 'user',     -- 'seed', 'user', 'user_chat', 'override', 'learned'
    sort_order INTEGER NOT NULL DEFAULT 0,
    match_count INTEGER NOT NULL DEFAULT 0,
    last_matched_at DATETIME,
    version INTEGER NOT NULL DEFAULT 1,
    pattern_key TEXT,                        -- Sender a behavioral proposal is about
    evidence_json TEXT,                      -- Triage path counts behind a proposal
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_triage_rules_status ON triage_rules(status);
CREATE INDEX IF NOT EXISTS idx_triage_rules_name ON triage_rules(name);

CREATE TABLE IF NOT EXISTS action_cards (
    id TEXT PRIMARY KEY,
    pattern TEXT NOT NULL DEFAULT 'batch',  -- 'batch', 'learning'
    status TEXT NOT NULL DEFAULT 'pending', -- 'pending', 'confirmed', 'dismissed'
    title TEXT NOT NULL,
    handler TEXT,                           -- 'batch:action', 'batch:learning'
    batch_type TEXT,                        -- Mirrors data_json.batchType for indexing
    data_json TEXT NOT NULL DEFAULT '{}',
    result_json TEXT,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
);

-- At most one pending batch card per batch type
CREATE UNIQUE INDEX IF NOT EXISTS idx_action_cards_pending_batch
    ON action_cards(batch_type)
    WHERE status = 'pending' AND pattern = 'batch';

CREATE INDEX IF NOT EXISTS idx_action_cards_status ON action_cards(status);

CREATE TABLE IF NOT EXISTS action_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME NOT NULL,
    action_type TEXT NOT NULL,              -- 'triage_action', 'classify', 'rule_created', ...
    item_id TEXT,
    description TEXT,                       -- Human-readable line (fed to the learning prompt)
    details_json TEXT,
    triggered_by TEXT                       -- 'user', 'auto', 'learning'
);

CREATE INDEX IF NOT EXISTS idx_action_log_timestamp ON action_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_action_log_type_timestamp ON action_log(action_type, timestamp);

CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME NOT NULL,
    task_type TEXT,                         -- 'classify', 'learning', 'rule_authoring'
    provider TEXT,                          -- 'anthropic', 'ollama'
    model TEXT,
    item_id TEXT,
    triage_cycle_id TEXT,
    prompt_json TEXT,
    response_text TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    estimated_cost REAL,                    -- USD, from configured per-provider rates
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_llm_log_triage_cycle ON llm_request_log(triage_cycle_id);

CREATE TABLE IF NOT EXISTS agent_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at DATETIME
);
-- Keys: 'last_triage_cycle', 'last_learning_run'
"""

REQUIRED_TABLES = (
    "items",
    "triage_rules",
    "action_cards",
    "action_log",
    "llm_request_log",
    "agent_state",
)


# Columns added after schema version 1; databases created earlier get them on init
ADDED_COLUMNS = {
    "triage_rules": (("pattern_key", "TEXT"), ("evidence_json", "TEXT")),
    "llm_request_log": (("estimated_cost", "REAL"),),
}


async def _add_missing_columns(db: aiosqlite.Connection) -> None:
    for table, columns in ADDED_COLUMNS.items():
        cursor = await db.execute(f"PRAGMA table_info({table})")
        existing = {row[1] for row in await cursor.fetchall()}
        for name, column_type in columns:
            if name not in existing:
                await db.execute(f"ALTER TABLE {table} ADD COLUMN {name} {column_type}")
                logger.info("Database column added", table=table, column=name)


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await _add_missing_columns(db)
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_triage_rules_pattern_key ON triage_rules(pattern_key)"
            )
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Items hold message content: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error(
            "Database initialization failed",
            db_path=str(db_path),
            error=str(e),
        )
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that all required tables exist.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}

            missing = set(REQUIRED_TABLES) - existing_tables
            if missing:
                logger.warning(
                    "Missing database tables",
                    missing=sorted(missing),
                    db_path=str(db_path),
                )
                return False

            return True

    except aiosqlite.Error as e:
        logger.error(
            "Schema verification failed",
            db_path=str(db_path),
            error=str(e),
        )
        return False
