"""Tests for the CLI commands that do not call a model."""

import asyncio
from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import classified, make_item
from inbox_triage.classifier.rule_store import RuleStore
from inbox_triage.cli import cli
from inbox_triage.core.background import BackgroundTasks
from inbox_triage.db import DatabaseStore
from inbox_triage.engine.proposals import RuleProposer


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the CLI at a config whose database lives under tmp_path."""
    db_path = tmp_path / "data" / "triage.db"
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"database:\n  path: {db_path}\nmodels:\n  local_enabled: false\n")
    monkeypatch.setenv("TRIAGE_CONFIG_PATH", str(config_path))
    return db_path


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestValidateConfig:
    def test_valid(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(cli, ["validate-config", "-c", str(config_file)])
        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_missing(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["validate-config", "-c", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1
        assert "Load error" in result.output


class TestRuleCommands:
    """Tests for database setup and rule management."""

    def test_init_db_and_seed(self, runner: CliRunner, cli_env: Path) -> None:
        assert runner.invoke(cli, ["init-db"]).exit_code == 0
        assert cli_env.exists()

        result = runner.invoke(cli, ["seed-rules"])
        assert result.exit_code == 0
        assert "Seeded 22 default rule(s)" in result.output

        again = runner.invoke(cli, ["seed-rules"])
        assert "Seeded 0 default rule(s)" in again.output

    def test_add_and_disable(self, runner: CliRunner, cli_env: Path) -> None:
        result = runner.invoke(
            cli,
            ["rules", "add", "--name", "Acme", "--sender-domain", "acme.com", "--batch-type", "finance"],
        )
        assert result.exit_code == 0
        assert "Created rule" in result.output

        rules = asyncio.run(DatabaseStore(cli_env).list_rules())
        assert len(rules) == 1
        assert rules[0].trigger == {"senderDomain": "acme.com"}

        assert runner.invoke(cli, ["rules", "disable", rules[0].id]).exit_code == 0
        assert asyncio.run(DatabaseStore(cli_env).list_rules(status="active")) == []

    def test_invalid_rule_reports_error(self, runner: CliRunner, cli_env: Path) -> None:
        result = runner.invoke(cli, ["rules", "add", "--name", "Bad", "--pattern", "(["])
        assert result.exit_code == 1
        assert "Invalid trigger pattern" in result.output

    def test_disable_unknown_rule(self, runner: CliRunner, cli_env: Path) -> None:
        result = runner.invoke(cli, ["rules", "disable", "missing"])
        assert result.exit_code == 1


class TestBatchCommands:
    """Tests for listing and resolving batch cards."""

    def _seed_card(self, db_path: Path) -> str:
        async def seed() -> str:
            store = DatabaseStore(db_path)
            await store.initialize()
            for item_id in ("a", "b"):
                item = make_item(item_id=item_id)
                item.classification = classified("spam")
                await store.save_item(item)
            card, _ = await store.get_or_create_pending_batch_card("spam", "Spam", "Junk", "archive")
            await store.assign_items_to_card(card.id, ["a", "b"])
            return card.id

        return asyncio.run(seed())

    def test_no_pending(self, runner: CliRunner, cli_env: Path) -> None:
        result = runner.invoke(cli, ["batches"])
        assert result.exit_code == 0
        assert "No pending batch cards" in result.output

    def test_resolve_with_reject(self, runner: CliRunner, cli_env: Path) -> None:
        card_id = self._seed_card(cli_env)

        result = runner.invoke(cli, ["resolve", card_id, "--reject", "b"])

        assert result.exit_code == 0
        assert "1 item(s), 1 sent back, 0 failed" in result.output
        store = DatabaseStore(cli_env)
        assert asyncio.run(store.get_item("a")).status == "archived"
        assert asyncio.run(store.get_item("b")).classification is None

    def test_resolve_unknown_card(self, runner: CliRunner, cli_env: Path) -> None:
        result = runner.invoke(cli, ["resolve", "card_missing"])
        assert result.exit_code == 1
        assert "not found" in result.output


class TestCostsCommand:
    """Tests for the model usage report."""

    def test_no_calls(self, runner: CliRunner, cli_env: Path) -> None:
        result = runner.invoke(cli, ["costs"])
        assert result.exit_code == 0
        assert "No model calls logged in the last 7 day(s)" in result.output

    def test_totals(self, runner: CliRunner, cli_env: Path) -> None:
        async def seed() -> None:
            store = DatabaseStore(cli_env)
            await store.initialize()
            await store.log_llm_request(
                task_type="classify", provider="anthropic", model="m", input_tokens=1000, estimated_cost=0.02
            )
            await store.log_llm_request(task_type="learning", provider="anthropic", model="m", estimated_cost=0.01)

        asyncio.run(seed())

        result = runner.invoke(cli, ["costs", "--days", "30"])

        assert result.exit_code == 0
        assert "Total: $0.0300" in result.output

    def test_rejects_zero_days(self, runner: CliRunner, cli_env: Path) -> None:
        assert runner.invoke(cli, ["costs", "--days", "0"]).exit_code == 2


class TestProposalCommands:
    """Tests for reviewing behavioral rule proposals."""

    def _seed_proposal(self, db_path: Path) -> str:
        async def seed() -> str:
            store = DatabaseStore(db_path)
            await store.initialize()
            rule_store = RuleStore(store, BackgroundTasks())
            for index in range(3):
                item = make_item(item_id=f"item-{index}", sender="news@acme.com", status="archived")
                item.classification = classified(None, triage_path="bulk")
                await store.save_item(item)
            rule = await RuleProposer(store, rule_store).propose_for("news@acme.com")
            return rule.id

        return asyncio.run(seed())

    def test_no_pending(self, runner: CliRunner, cli_env: Path) -> None:
        result = runner.invoke(cli, ["proposals"])
        assert result.exit_code == 0
        assert "No pending rule proposals" in result.output

    def test_list_and_accept(self, runner: CliRunner, cli_env: Path) -> None:
        rule_id = self._seed_proposal(cli_env)

        listed = runner.invoke(cli, ["proposals"])
        assert listed.exit_code == 0
        assert "Proposed rules" in listed.output

        result = runner.invoke(cli, ["proposal-accept", rule_id])
        assert result.exit_code == 0
        assert "Activated rule" in result.output
        assert asyncio.run(DatabaseStore(cli_env).get_rule(rule_id)).status == "active"

    def test_dismiss(self, runner: CliRunner, cli_env: Path) -> None:
        rule_id = self._seed_proposal(cli_env)

        assert runner.invoke(cli, ["proposal-dismiss", rule_id]).exit_code == 0
        assert asyncio.run(DatabaseStore(cli_env).get_rule(rule_id)).status == "dismissed"

        again = runner.invoke(cli, ["proposal-dismiss", rule_id])
        assert again.exit_code == 1
        assert "No pending proposal" in again.output
