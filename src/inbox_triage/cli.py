"""Command-line interface for the inbox triage pipeline.

Provides commands for configuration validation, database setup, rule
management, classification cycles, batch review, the learning loop,
behavioral rule proposals and model cost reporting.

Usage:
    python -m inbox_triage validate-config
    python -m inbox_triage init-db
    python -m inbox_triage seed-rules
    python -m inbox_triage classify
    python -m inbox_triage batches
    python -m inbox_triage proposals
    python -m inbox_triage costs --days 30
    python -m inbox_triage run
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
from rich.console import Console
from rich.table import Table

from inbox_triage.config import validate_config_file
from inbox_triage.core.logging import configure_logging

if TYPE_CHECKING:
    from inbox_triage.classifier.cloud_classifier import CloudClassifier
    from inbox_triage.classifier.local_classifier import LocalClassifier
    from inbox_triage.classifier.rule_store import RuleStore
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.core.background import BackgroundTasks
    from inbox_triage.db.store import DatabaseStore
    from inbox_triage.engine.learning import LearningLoop
    from inbox_triage.engine.triage import TriageEngine

console = Console()


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared dependencies initialized by _init_cli_deps()."""

    config: AppConfig
    store: DatabaseStore
    background: BackgroundTasks
    rule_store: RuleStore
    cloud: CloudClassifier | None = None
    local: LocalClassifier | None = None


async def _init_cli_deps(with_models: bool = False) -> CLIDeps:
    """Initialize shared CLI dependencies.

    Loads config, initializes the database, and (with_models=True) the
    Anthropic and local model clients. Prints actionable error messages
    and calls sys.exit(1) on failure.
    """
    import anthropic as anthropic_mod

    from inbox_triage.classifier.cloud_classifier import CloudClassifier
    from inbox_triage.classifier.llm_log import LLMRequestLogger
    from inbox_triage.classifier.local_classifier import LocalClassifier
    from inbox_triage.classifier.rule_store import RuleStore
    from inbox_triage.config import get_config
    from inbox_triage.core.background import BackgroundTasks
    from inbox_triage.core.errors import ConfigLoadError, ConfigValidationError
    from inbox_triage.db.store import DatabaseStore

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and adjust it,\n"
            "or point TRIAGE_CONFIG_PATH at your config file."
        )
        sys.exit(1)

    # 2. Initialize database
    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()

    background = BackgroundTasks()
    rule_store = RuleStore(store, background)

    if not with_models:
        return CLIDeps(config=config, store=store, background=background, rule_store=rule_store)

    # 3. Initialize model clients
    llm_logger = LLMRequestLogger(store, background, config.llm_logging)
    try:
        anthropic_client = anthropic_mod.AsyncAnthropic(max_retries=3)
    except anthropic_mod.AnthropicError as e:
        console.print(
            f"[red]Anthropic client error:[/red] {e}\n\n"
            "Set ANTHROPIC_API_KEY in your environment or .env file."
        )
        sys.exit(1)

    cloud = CloudClassifier(anthropic_client, config.models, llm_logger)
    local = LocalClassifier(config.models, llm_logger) if config.models.local_enabled else None

    return CLIDeps(
        config=config,
        store=store,
        background=background,
        rule_store=rule_store,
        cloud=cloud,
        local=local,
    )


async def _close_cli_deps(deps: CLIDeps) -> None:
    await deps.background.drain()
    if deps.local is not None:
        await deps.local.aclose()


def _build_engine(deps: CLIDeps, hot_reload: bool = False) -> TriageEngine:
    from inbox_triage.classifier.context import NullMemoryContext
    from inbox_triage.classifier.decision_history import DecisionHistoryAggregator
    from inbox_triage.classifier.pipeline import ClassificationPipeline, default_tiers
    from inbox_triage.engine.batches import BatchAssigner
    from inbox_triage.engine.triage import TriageEngine

    assert deps.cloud is not None
    pipeline = ClassificationPipeline(
        default_tiers(
            deps.config,
            deps.rule_store,
            deps.local,
            deps.cloud,
            DecisionHistoryAggregator(deps.store),
            NullMemoryContext(),
        )
    )
    return TriageEngine(
        store=deps.store,
        rule_store=deps.rule_store,
        pipeline=pipeline,
        assigner=BatchAssigner(deps.store, deps.config),
        background=deps.background,
        config=deps.config,
        hot_reload=hot_reload,
    )


def _build_learning(deps: CLIDeps) -> LearningLoop:
    from inbox_triage.engine.learning import LearningLoop

    assert deps.cloud is not None
    return LearningLoop(deps.store, deps.rule_store, deps.cloud, deps.config)


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run a command coroutine with consistent interrupt and error reporting."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Inbox triage - rule, local-model and cloud-model classification of inbox items."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for the scheduled service
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the database and its tables."""

    async def _init() -> None:
        deps = await _init_cli_deps()
        console.print(f"[green]✓[/green] Database ready at [cyan]{deps.config.database.path}[/cyan]")

    _run(_init())


@cli.command("seed-rules")
def seed_rules() -> None:
    """Insert the default rules (idempotent)."""

    async def _seed() -> None:
        deps = await _init_cli_deps()
        created = await deps.rule_store.seed_defaults()
        console.print(f"[green]✓[/green] Seeded {created} default rule(s)")

    _run(_seed())


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@cli.group("rules")
def rules() -> None:
    """Manage triage rules."""


@rules.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include inactive rules")
def rules_list(show_all: bool) -> None:
    """List rules in evaluation order."""

    async def _list() -> None:
        deps = await _init_cli_deps()
        rule_list = await (deps.rule_store.list_all() if show_all else deps.rule_store.list_active())

        table = Table(title="Triage rules")
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Trigger / guidance")
        table.add_column("Batch type", style="cyan")
        table.add_column("Source")
        table.add_column("Matches", justify="right")
        table.add_column("Status")

        for rule in rule_list:
            detail = rule.guidance if rule.type == "guidance" else str(rule.trigger)
            table.add_row(
                rule.id[:8],
                rule.name,
                rule.type,
                detail or "",
                rule.batch_type or "",
                rule.source,
                str(rule.match_count),
                rule.status,
            )
        console.print(table)

    _run(_list())


@rules.command("add")
@click.option("--name", required=True, help="Rule name")
@click.option("--batch-type", default=None, help="Batch type for structured rules")
@click.option("--connector", default=None, help="Match this connector")
@click.option("--sender", default=None, help="Match this exact sender address")
@click.option("--sender-domain", default=None, help="Match this sender domain")
@click.option("--subject-contains", default=None, help="Match text in the subject")
@click.option("--content-contains", default=None, help="Match text in the content")
@click.option("--pattern", default=None, help="Regex searched in subject or content")
@click.option("--guidance", default=None, help="Create a guidance rule with this text instead")
@click.option("--description", default=None, help="Rule description")
def rules_add(
    name: str,
    batch_type: str | None,
    connector: str | None,
    sender: str | None,
    sender_domain: str | None,
    subject_contains: str | None,
    content_contains: str | None,
    pattern: str | None,
    guidance: str | None,
    description: str | None,
) -> None:
    """Add a structured rule (trigger options + --batch-type) or a guidance rule."""

    async def _add() -> None:
        deps = await _init_cli_deps()
        if guidance:
            rule = await deps.rule_store.create(
                name=name, rule_type="guidance", guidance=guidance, description=description
            )
        else:
            trigger = {
                key: value
                for key, value in {
                    "connector": connector,
                    "sender": sender,
                    "senderDomain": sender_domain,
                    "subjectContains": subject_contains,
                    "contentContains": content_contains,
                    "pattern": pattern,
                }.items()
                if value
            }
            action = {"type": "batch", "batchType": batch_type} if batch_type else None
            rule = await deps.rule_store.create(
                name=name,
                rule_type="structured",
                trigger=trigger,
                action=action,
                description=description,
            )
        console.print(f"[green]✓[/green] Created rule [cyan]{rule.name}[/cyan] ({rule.id})")

    _run(_add())


@rules.command("author")
@click.argument("instruction")
def rules_author(instruction: str) -> None:
    """Create a rule from a natural-language INSTRUCTION."""
    from inbox_triage.classifier.rule_author import RuleAuthor

    async def _author() -> None:
        deps = await _init_cli_deps(with_models=True)
        try:
            assert deps.cloud is not None
            rule = await RuleAuthor(deps.cloud, deps.rule_store, deps.config).author(instruction)
        finally:
            await _close_cli_deps(deps)
        summary = rule.guidance if rule.type == "guidance" else f"{rule.trigger} → {rule.batch_type}"
        console.print(f"[green]✓[/green] Created {rule.type} rule [cyan]{rule.name}[/cyan]: {summary}")

    _run(_author())


@rules.command("disable")
@click.argument("rule_id")
def rules_disable(rule_id: str) -> None:
    """Deactivate a rule (rules are never hard-deleted)."""

    async def _disable() -> None:
        deps = await _init_cli_deps()
        if await deps.rule_store.soft_delete(rule_id):
            console.print(f"[green]✓[/green] Rule {rule_id} disabled")
        else:
            console.print(f"[red]✗[/red] Rule not found: {rule_id}")
            sys.exit(1)

    _run(_disable())


# ---------------------------------------------------------------------------
# Classification and batches
# ---------------------------------------------------------------------------


@cli.command("classify")
def classify() -> None:
    """Run a single triage cycle and print results."""

    async def _classify() -> None:
        deps = await _init_cli_deps(with_models=True)
        try:
            result = await _build_engine(deps).run_cycle()
        finally:
            await _close_cli_deps(deps)

        console.print(f"\n[bold]Triage Cycle Summary[/bold] (cycle {result.cycle_id[:8]}...)")
        console.print(f"  Duration:      {result.duration_ms}ms")
        console.print(f"  Classified:    {result.classified}")
        for tier, count in sorted(result.by_tier.items()):
            console.print(f"    {tier:<12}{count}")
        console.print(f"  Failed:        {result.failed}")
        console.print(f"  Reclassified:  {result.reclassified}")
        console.print(f"  Assigned:      {result.assigned}")

    _run(_classify())


@cli.command("batches")
def batches() -> None:
    """Show pending batch cards and their items."""
    from inbox_triage.engine.batches import BatchResolver

    async def _batches() -> None:
        deps = await _init_cli_deps()
        pending = await BatchResolver(deps.store).list_pending()
        if not pending:
            console.print("No pending batch cards.")
            return

        for batch in pending:
            table = Table(
                title=f"{batch.card.title} [dim]({batch.card.id})[/dim]",
                caption=batch.card.data.get("explanation"),
            )
            table.add_column("Item", style="dim")
            table.add_column("Sender")
            table.add_column("Subject")
            table.add_column("Tier")
            table.add_column("Confidence", justify="right")
            for item in batch.items:
                classification = item.classification
                table.add_row(
                    item.id,
                    item.sender,
                    item.subject,
                    classification.tier if classification else "",
                    f"{classification.confidence:.2f}" if classification else "",
                )
            console.print(table)

    _run(_batches())


@cli.command("resolve")
@click.argument("card_id")
@click.option(
    "--reject",
    "rejected",
    multiple=True,
    help="Item ID to send back for individual review (repeatable)",
)
def resolve(card_id: str, rejected: tuple[str, ...]) -> None:
    """Resolve batch card CARD_ID: apply its action to every item not rejected."""
    from inbox_triage.engine.batches import BatchResolver

    async def _resolve() -> None:
        deps = await _init_cli_deps()
        resolver = BatchResolver(deps.store)
        card_items = await deps.store.list_card_items(card_id)
        rejected_ids = set(rejected)
        accepted_ids = [item.id for item in card_items if item.id not in rejected_ids]

        result = await resolver.resolve(card_id, accepted=accepted_ids, rejected=sorted(rejected_ids))
        console.print(
            f"[green]✓[/green] {result.action}: {result.accepted_count} item(s), "
            f"{result.rejected_count} sent back, {result.failed_count} failed"
        )

    _run(_resolve())


# ---------------------------------------------------------------------------
# Learning
# ---------------------------------------------------------------------------


@cli.command("learn")
def learn() -> None:
    """Run the learning loop once and show any suggestions."""

    async def _learn() -> None:
        deps = await _init_cli_deps(with_models=True)
        try:
            result = await _build_learning(deps).run()
            card = (
                await deps.store.get_card(result.proposal_card_id)
                if result.proposal_card_id
                else None
            )
        finally:
            await _close_cli_deps(deps)

        if card is None:
            console.print("No new patterns learned.")
            return

        table = Table(title=f"{card.title} [dim]({card.id})[/dim]", caption=card.data.get("explanation"))
        table.add_column("#", justify="right")
        table.add_column("Kind")
        table.add_column("Name")
        table.add_column("Confidence", justify="right")
        table.add_column("Reasoning")
        for index, suggestion in enumerate(card.data.get("suggestions", [])):
            table.add_row(
                str(index),
                f"{suggestion['type']} / {suggestion['ruleType']}",
                suggestion["name"],
                f"{suggestion['confidence']:.2f}",
                suggestion.get("reasoning", ""),
            )
        console.print(table)

    _run(_learn())


@cli.command("learn-accept")
@click.argument("card_id")
@click.argument("index", type=int)
def learn_accept(card_id: str, index: int) -> None:
    """Accept suggestion INDEX from learning card CARD_ID."""

    async def _accept() -> None:
        deps = await _init_cli_deps(with_models=True)
        try:
            rule = await _build_learning(deps).accept_suggestion(card_id, index)
        finally:
            await _close_cli_deps(deps)
        console.print(f"[green]✓[/green] Created rule [cyan]{rule.name}[/cyan] ({rule.id})")

    _run(_accept())


@cli.command("learn-dismiss")
@click.argument("card_id")
def learn_dismiss(card_id: str) -> None:
    """Dismiss learning card CARD_ID without creating rules."""

    async def _dismiss() -> None:
        deps = await _init_cli_deps(with_models=True)
        try:
            await _build_learning(deps).dismiss(card_id)
        finally:
            await _close_cli_deps(deps)
        console.print(f"[green]✓[/green] Dismissed {card_id}")

    _run(_dismiss())


@cli.command("proposals")
def proposals() -> None:
    """Show rules proposed from repeated triage decisions."""
    from inbox_triage.engine.proposals import RuleProposer

    async def _proposals() -> None:
        deps = await _init_cli_deps()
        pending = await RuleProposer(deps.store, deps.rule_store).list_pending()
        if not pending:
            console.print("No pending rule proposals.")
            return

        table = Table(title="Proposed rules")
        table.add_column("ID", style="dim")
        table.add_column("Rule")
        table.add_column("Sender")
        table.add_column("Evidence")
        for rule in pending:
            evidence = rule.evidence or {}
            table.add_row(
                rule.id,
                rule.guidance or rule.name,
                rule.pattern_key or "",
                ", ".join(f"{key}={value}" for key, value in evidence.items()),
            )
        console.print(table)

    _run(_proposals())


@cli.command("proposal-accept")
@click.argument("rule_id")
def proposal_accept(rule_id: str) -> None:
    """Activate proposed rule RULE_ID."""
    from inbox_triage.engine.proposals import RuleProposer

    async def _accept() -> None:
        deps = await _init_cli_deps()
        rule = await RuleProposer(deps.store, deps.rule_store).accept(rule_id)
        if rule is None:
            console.print(f"[red]✗[/red] No pending proposal: {rule_id}")
            sys.exit(1)
        console.print(f"[green]✓[/green] Activated rule [cyan]{rule.name}[/cyan]")

    _run(_accept())


@cli.command("proposal-dismiss")
@click.argument("rule_id")
def proposal_dismiss(rule_id: str) -> None:
    """Dismiss proposed rule RULE_ID."""
    from inbox_triage.engine.proposals import RuleProposer

    async def _dismiss() -> None:
        deps = await _init_cli_deps()
        if await RuleProposer(deps.store, deps.rule_store).dismiss(rule_id) is None:
            console.print(f"[red]✗[/red] No pending proposal: {rule_id}")
            sys.exit(1)
        console.print(f"[green]✓[/green] Dismissed {rule_id}")

    _run(_dismiss())


# ---------------------------------------------------------------------------
# Model usage
# ---------------------------------------------------------------------------


@cli.command("costs")
@click.option("--days", default=7, show_default=True, type=click.IntRange(min=1), help="Trailing window")
def costs(days: int) -> None:
    """Show model token usage and estimated cost."""

    async def _costs() -> None:
        deps = await _init_cli_deps()
        summary = await deps.store.get_cost_summary(days=days)
        if not summary:
            console.print(f"No model calls logged in the last {days} day(s).")
            return

        table = Table(title=f"Model usage, last {days} day(s)")
        table.add_column("Provider")
        table.add_column("Task")
        table.add_column("Requests", justify="right")
        table.add_column("Input tokens", justify="right")
        table.add_column("Output tokens", justify="right")
        table.add_column("Est. cost (USD)", justify="right", style="cyan")
        for row in summary:
            table.add_row(
                row.provider,
                row.task_type,
                str(row.request_count),
                str(row.input_tokens),
                str(row.output_tokens),
                f"{row.total_cost:.4f}",
            )
        console.print(table)
        console.print(f"Total: ${sum(row.total_cost for row in summary):.4f}")

    _run(_costs())


# ---------------------------------------------------------------------------
# Continuous mode
# ---------------------------------------------------------------------------


@cli.command("run")
def run() -> None:
    """Run triage cycles on a schedule, plus the daily learning loop."""
    console.print("Starting triage in continuous mode...")
    try:
        asyncio.run(_run_continuous())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        sys.exit(0)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


async def _run_continuous() -> None:
    """Run the triage engine and learning loop with APScheduler."""
    import signal

    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from inbox_triage.config import get_config

    # Service mode logs as JSON
    configure_logging(json_output=True)

    deps = await _init_cli_deps(with_models=True)
    engine = _build_engine(deps, hot_reload=True)
    learning = _build_learning(deps)

    async def run_cycle() -> None:
        result = await engine.run_cycle()
        if result.config_reloaded:
            learning.update_config(get_config())
        console.print(
            f"[dim]Cycle {result.cycle_id[:8]}...[/dim] "
            f"classified={result.classified} assigned={result.assigned} "
            f"failed={result.failed} ({result.duration_ms}ms)"
        )

    async def run_learning() -> None:
        result = await learning.run()
        await deps.background.drain()
        console.print(f"[dim]Learning[/dim] suggestions={result.suggestion_count}")

    scheduler = AsyncIOScheduler(timezone=deps.config.timezone)
    scheduler.add_job(
        run_cycle,
        "interval",
        minutes=deps.config.triage.interval_minutes,
        id="triage_cycle",
        max_instances=1,
        coalesce=True,
    )
    if deps.config.learning.enabled:
        scheduler.add_job(
            run_learning,
            "cron",
            hour=deps.config.learning.schedule_hour,
            id="learning_loop",
            max_instances=1,
            coalesce=True,
        )
    scheduler.start()

    console.print(
        f"Triage engine running every {deps.config.triage.interval_minutes} minutes. "
        "Press Ctrl+C to stop."
    )

    # Wait until interrupted
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    scheduler.shutdown(wait=False)
    await _close_cli_deps(deps)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
