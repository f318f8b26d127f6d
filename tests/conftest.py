"""Pytest fixtures and configuration for inbox triage tests.

Provides common fixtures for configuration, database, items and rules.
"""

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from inbox_triage.classifier.rule_store import RuleStore
from inbox_triage.config import reset_config
from inbox_triage.config_schema import AppConfig
from inbox_triage.core.background import BackgroundTasks
from inbox_triage.db import Classification, DatabaseStore, Item, Rule


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

timezone: "America/New_York"

triage:
  interval_minutes: 15
  batch_size: 20
  concurrency: 3

models:
  local_enabled: false

learning:
  window_hours: 24
  min_confidence: 0.6
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "timezone": "America/New_York",
        "triage": {
            "interval_minutes": 15,
            "batch_size": 20,
            "concurrency": 3,
        },
        "models": {"local_enabled": False},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the TRIAGE_CONFIG_PATH environment variable."""
    old_value = os.environ.get("TRIAGE_CONFIG_PATH")
    os.environ["TRIAGE_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["TRIAGE_CONFIG_PATH"]
    else:
        os.environ["TRIAGE_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Create and initialize a DatabaseStore."""
    db_store = DatabaseStore(data_dir / "test.db")
    await db_store.initialize()
    return db_store


@pytest.fixture
def background() -> BackgroundTasks:
    return BackgroundTasks()


@pytest.fixture
def rule_store(store: DatabaseStore, background: BackgroundTasks) -> RuleStore:
    return RuleStore(store, background)


def make_item(
    item_id: str = "item-1",
    connector: str = "gmail",
    sender: str = "alice@example.com",
    subject: str = "Hello",
    content: str = "Just checking in.",
    **kwargs: Any,
) -> Item:
    """Build an Item with sensible defaults."""
    return Item(
        id=item_id,
        connector=connector,
        sender=sender,
        subject=subject,
        content=content,
        **kwargs,
    )


def make_rule(
    rule_id: str = "rule-1",
    name: str = "Test rule",
    trigger: dict[str, Any] | None = None,
    batch_type: str | None = "notifications",
    **kwargs: Any,
) -> Rule:
    """Build a structured Rule routing to batch_type."""
    return Rule(
        id=rule_id,
        name=name,
        trigger=trigger,
        action={"type": "batch", "batchType": batch_type} if batch_type else None,
        **kwargs,
    )


def classified(batch_type: str | None, reason: str = "test", **kwargs: Any) -> Classification:
    """Build a cloud-tier Classification."""
    return Classification(tier="cloud", batch_type=batch_type, confidence=0.9, reason=reason, **kwargs)
