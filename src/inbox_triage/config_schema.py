"""Pydantic configuration schema for the inbox triage pipeline.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from inbox_triage.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class DatabaseConfig(BaseModel):
    """SQLite persistence configuration."""

    path: str = Field(
        default="data/triage.db",
        description="Path to the SQLite database file",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path is not empty and doesn't contain traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class TriageConfig(BaseModel):
    """Batch classification pass configuration."""

    interval_minutes: int = Field(
        default=15,
        ge=1,
        le=1440,
        description="How often the classification pass runs (minutes)",
    )
    batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Max unclassified items to process per pass",
    )
    concurrency: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Items classified in parallel within one pass",
    )
    individual_connectors: list[str] = Field(
        default=["granola"],
        description="Connectors whose items always surface individually (meeting records)",
    )
    automated_connectors: list[str] = Field(
        default=["linear"],
        description="Connectors whose items are machine-generated and may use the fast tier",
    )
    automated_sender_patterns: list[str] = Field(
        default=["noreply", "no-reply", "notifications", "mailer", "donotreply"],
        description="Sender substrings that mark an item as automated",
    )
    fast_confidence_threshold: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Minimum fast-tier confidence to accept its answer",
    )


class ModelsConfig(BaseModel):
    """Model selection and call limits."""

    cloud: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for cloud-tier classification",
    )
    learning: str = Field(
        default="claude-sonnet-4-5-20250929",
        description="Model for the learning loop",
    )
    rule_authoring: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for turning natural language into rules",
    )
    cloud_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        le=300,
        description="Timeout for a single cloud model call",
    )
    local_enabled: bool = Field(
        default=True,
        description="Try the local model for automated-looking items",
    )
    local_url: str = Field(
        default="http://localhost:11434",
        description="Base URL of the Ollama-compatible local model server",
    )
    local_model: str = Field(
        default="llama3.2:3b",
        description="Local model name",
    )
    local_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Timeout for a single local model call",
    )
    local_availability_ttl_seconds: float = Field(
        default=60.0,
        ge=0,
        description="How long a local-model availability check is trusted",
    )

    @field_validator("local_url")
    @classmethod
    def validate_local_url(cls, v: str) -> str:
        """Ensure the local model URL is http(s)."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("local_url must start with http:// or https://")
        return v.rstrip("/")


class LearningConfig(BaseModel):
    """Learning loop configuration."""

    enabled: bool = Field(default=True, description="Run the scheduled learning loop")
    window_hours: int = Field(
        default=24,
        ge=1,
        le=24 * 30,
        description="Trailing window of decisions to analyze",
    )
    min_confidence: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Discard suggestions below this confidence",
    )
    max_decisions: int = Field(
        default=200,
        ge=1,
        le=2000,
        description="Most recent decisions included in the prompt",
    )
    schedule_hour: int = Field(
        default=6,
        ge=0,
        le=23,
        description="Local hour at which the daily learning job runs",
    )
    proposals_enabled: bool = Field(
        default=True,
        description="Propose always-archive or always-surface rules from repeated triage decisions",
    )


BatchAction = Literal["archive", "accept & archive"]


class BatchTypeConfig(BaseModel):
    """Display and action settings for one batch type."""

    title: str = Field(description="Batch card title")
    explanation: str = Field(description="One-line explanation shown on the card")
    action: BatchAction = Field(
        default="archive",
        description="Action applied to accepted items when the card is resolved",
    )


def _default_batch_types() -> dict[str, BatchTypeConfig]:
    return {
        "notifications": BatchTypeConfig(
            title="Notifications",
            explanation="Tool alerts, CI/CD updates, and system notifications.",
        ),
        "finance": BatchTypeConfig(
            title="Finance",
            explanation="Invoices, payments, billing alerts, and purchase orders.",
        ),
        "newsletters": BatchTypeConfig(
            title="Newsletters",
            explanation="Industry digests, marketing emails, and subscriptions.",
        ),
        "calendar": BatchTypeConfig(
            title="Calendar",
            explanation="Meeting invites, acceptances, and scheduling updates.",
            action="accept & archive",
        ),
        "spam": BatchTypeConfig(
            title="Spam",
            explanation="Cold outreach, junk mail, and unsolicited sales pitches.",
        ),
    }


class ProviderRate(BaseModel):
    """Token prices for one model provider, in USD per 1K tokens."""

    input_per_1k: float = Field(default=0.0, ge=0)
    output_per_1k: float = Field(default=0.0, ge=0)


def _default_cost_rates() -> dict[str, ProviderRate]:
    return {
        "anthropic": ProviderRate(input_per_1k=0.003, output_per_1k=0.015),
        "ollama": ProviderRate(),
    }


class LLMLoggingConfig(BaseModel):
    """LLM request logging configuration.

    Each logged call carries an estimated cost computed from ``cost_rates``.
    Providers without a configured rate are logged at zero cost.
    """

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Days to retain LLM request logs",
    )
    log_prompts: bool = Field(
        default=True,
        description="Store full prompts (disable to save disk space)",
    )
    log_responses: bool = Field(
        default=True,
        description="Store full responses",
    )
    cost_rates: dict[str, ProviderRate] = Field(
        default_factory=_default_cost_rates,
        description="Per-provider token prices used for cost estimates",
    )


class AppConfig(BaseModel):
    """Root configuration schema for the inbox triage pipeline.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    timezone: str = Field(
        default="UTC",
        description="Timezone for the learning schedule",
    )
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    triage: TriageConfig = Field(default_factory=TriageConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    batch_types: dict[str, BatchTypeConfig] = Field(
        default_factory=_default_batch_types,
        description="Known batch types; unknown model labels are treated as individual",
    )
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)

    @field_validator("batch_types")
    @classmethod
    def validate_batch_types(cls, v: dict[str, BatchTypeConfig]) -> dict[str, BatchTypeConfig]:
        """Batch type keys are lowercase labels; 'learning' is reserved."""
        for key in v:
            if not key or key != key.strip().lower():
                raise ValueError(f"Batch type '{key}' must be a non-empty lowercase label")
            if key in ("learning", "individual"):
                raise ValueError(f"Batch type '{key}' is reserved")
        return v
