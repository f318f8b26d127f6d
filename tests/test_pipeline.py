"""Tests for the tiered classification pipeline."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_item, make_rule
from inbox_triage.classifier.pipeline import (
    FALLBACK_REASON,
    ClassificationPipeline,
    ClassificationResult,
    CloudTier,
    ConnectorOverrideTier,
    FastTier,
    RuleTier,
    default_tiers,
    looks_automated,
)
from inbox_triage.config_schema import AppConfig
from inbox_triage.db import Rule


def _answer(batch_type: str | None, confidence: float, reason: str = "because") -> str:
    return json.dumps({"batchType": batch_type, "confidence": confidence, "reason": reason})


@pytest.fixture
def config() -> AppConfig:
    return AppConfig()


@pytest.fixture
def rule_store() -> MagicMock:
    return MagicMock()


@pytest.fixture
def local() -> AsyncMock:
    mock = AsyncMock()
    mock.classify.return_value = None
    return mock


@pytest.fixture
def cloud() -> AsyncMock:
    mock = AsyncMock()
    mock.complete.return_value = None
    return mock


@pytest.fixture
def history() -> AsyncMock:
    mock = AsyncMock()
    mock.history_text.return_value = "No prior history with a or domain b."
    return mock


@pytest.fixture
def pipeline(config, rule_store, local, cloud, history) -> ClassificationPipeline:
    return ClassificationPipeline(default_tiers(config, rule_store, local, cloud, history))


class TestLooksAutomated:
    """Tests for the fast-tier pre-filter."""

    def test_sender_pattern(self, config: AppConfig) -> None:
        assert looks_automated(make_item(sender="NoReply@github.com"), config.triage)

    def test_automated_connector(self, config: AppConfig) -> None:
        assert looks_automated(make_item(connector="linear", sender="pm@acme.com"), config.triage)

    def test_tags(self, config: AppConfig) -> None:
        assert looks_automated(make_item(tags=["Newsletter"]), config.triage)

    def test_personal_mail(self, config: AppConfig) -> None:
        assert not looks_automated(make_item(sender="boss@acme.com"), config.triage)


class TestClassificationResult:
    def test_confidence_clamped(self) -> None:
        assert ClassificationResult("cloud", None, 3.0, "x").confidence == 1.0

    def test_to_classification(self) -> None:
        cls = ClassificationResult("rule", "finance", 1.0, "Matched rule: X", rule_id="r1").to_classification()
        assert cls.tier == "rule"
        assert cls.rule_id == "r1"
        assert cls.batch_card_id is None


class TestConnectorOverride:
    """Tests for the always-individual connector override."""

    @pytest.mark.asyncio
    async def test_meeting_records_skip_models(self, pipeline, local, cloud) -> None:
        result = await pipeline.classify(make_item(connector="granola"), [make_rule(trigger={})])

        assert result.tier == "rule"
        assert result.batch_type is None
        assert result.confidence == 1.0
        assert result.reason == "granola items are always kept for individual review"
        local.classify.assert_not_awaited()
        cloud.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_connectors_pass(self, config) -> None:
        tier = ConnectorOverrideTier(config)
        assert await tier.try_classify(make_item(connector="gmail"), MagicMock()) is None


class TestRuleTier:
    """Tests for the rule tier."""

    @pytest.mark.asyncio
    async def test_first_matching_rule_wins(self, pipeline, rule_store, cloud) -> None:
        rules = [
            make_rule(rule_id="r1", name="Other", trigger={"sender": "x@y.com"}),
            make_rule(rule_id="r2", name="Example", trigger={"senderDomain": "example.com"}, batch_type="finance"),
        ]

        result = await pipeline.classify(make_item(), rules)

        assert result.tier == "rule"
        assert result.batch_type == "finance"
        assert result.confidence == 1.0
        assert result.reason == "Matched rule: Example"
        assert result.rule_id == "r2"
        rule_store.increment_match.assert_called_once_with("r2")
        cloud.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inactive_and_guidance_rules_ignored(self, config, rule_store) -> None:
        tier = RuleTier(config, rule_store)
        pipeline = ClassificationPipeline([tier])
        rules = [
            make_rule(trigger={}, status="inactive"),
            Rule(id="g", name="G", type="guidance", guidance="Be kind"),
        ]

        result = await pipeline.classify(make_item(), rules)

        assert result.reason == FALLBACK_REASON
        rule_store.increment_match.assert_not_called()


class TestFastTier:
    """Tests for the local-model tier."""

    @pytest.mark.asyncio
    async def test_accepts_above_threshold(self, pipeline, local, cloud) -> None:
        local.classify.return_value = _answer("notifications", 0.95, "CI alert")

        result = await pipeline.classify(make_item(sender="noreply@github.com"), [])

        assert result.tier == "fast"
        assert result.batch_type == "notifications"
        assert result.confidence == 0.95
        cloud.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_below_threshold_falls_through_to_cloud(self, pipeline, local, cloud) -> None:
        local.classify.return_value = _answer("notifications", 0.5)
        cloud.complete.return_value = _answer("newsletters", 0.7, "Digest")

        result = await pipeline.classify(make_item(sender="noreply@github.com"), [])

        assert result.tier == "cloud"
        assert result.batch_type == "newsletters"

    @pytest.mark.asyncio
    async def test_personal_mail_never_reaches_local_model(self, config, local) -> None:
        tier = FastTier(config, local)
        context = MagicMock(guidance=[])

        assert await tier.try_classify(make_item(sender="boss@acme.com"), context) is None
        local.classify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_garbage_output_passes(self, config, local) -> None:
        local.classify.return_value = "not json at all"
        tier = FastTier(config, local)

        assert await tier.try_classify(make_item(sender="noreply@x.com"), MagicMock(guidance=[])) is None

    def test_fast_tier_omitted_without_local(self, config, rule_store, cloud, history) -> None:
        tiers = default_tiers(config, rule_store, None, cloud, history)
        assert [t.name for t in tiers] == ["connector_override", "rule", "cloud"]


class TestCloudTier:
    """Tests for the cloud tier and the safe fallback."""

    @pytest.mark.asyncio
    async def test_low_confidence_answer_is_final(self, pipeline, cloud) -> None:
        cloud.complete.return_value = _answer("spam", 0.0, "Unsure")

        result = await pipeline.classify(make_item(), [])

        assert result.tier == "cloud"
        assert result.batch_type == "spam"
        assert result.confidence == 0.0
        assert not result.is_fallback

    @pytest.mark.asyncio
    async def test_enrichment_kept(self, pipeline, cloud) -> None:
        cloud.complete.return_value = json.dumps(
            {
                "batchType": None,
                "confidence": 0.8,
                "reason": "Personal",
                "enrichment": {"summary": "Asks about lunch", "suggestedPriority": "high"},
            }
        )

        result = await pipeline.classify(make_item(), [])

        assert result.batch_type is None
        assert result.enrichment == {"summary": "Asks about lunch", "suggestedPriority": "high"}

    @pytest.mark.asyncio
    async def test_prompt_includes_history_memory_and_guidance(self, config, cloud, history) -> None:
        memory = AsyncMock()
        memory.context_for.return_value = "Alice is the CFO at a key client"
        history.history_text.return_value = "Sender alice@example.com: engaged 4/4"
        cloud.complete.return_value = _answer(None, 0.9)
        pipeline = ClassificationPipeline([CloudTier(config, cloud, history, memory)])
        guidance = Rule(id="g", name="G", type="guidance", guidance="Clients always need a reply")

        await pipeline.classify(make_item(), [guidance])

        kwargs = cloud.complete.await_args.kwargs
        assert "Clients always need a reply" in kwargs["system"]
        assert "engaged 4/4" in kwargs["user"]
        assert "Alice is the CFO" in kwargs["user"]
        assert kwargs["item_id"] == "item-1"

    @pytest.mark.asyncio
    async def test_garbage_output_returns_fallback(self, pipeline, cloud) -> None:
        cloud.complete.return_value = "I'd say this one is probably a newsletter."

        result = await pipeline.classify(make_item(), [])

        assert result.is_fallback
        assert result.tier == "cloud"
        assert result.batch_type is None
        assert result.reason == FALLBACK_REASON

    @pytest.mark.asyncio
    async def test_failed_call_returns_fallback(self, pipeline) -> None:
        result = await pipeline.classify(make_item(), [])
        assert result.is_fallback


class TestPipelineIsolation:
    """Tests for per-tier failure isolation and config reload."""

    @pytest.mark.asyncio
    async def test_raising_tier_is_a_pass(self, config, cloud, history) -> None:
        broken = MagicMock()
        broken.name = "broken"
        broken.try_classify = AsyncMock(side_effect=RuntimeError("boom"))
        cloud.complete.return_value = _answer("finance", 0.9)
        pipeline = ClassificationPipeline([broken, CloudTier(config, cloud, history)])

        result = await pipeline.classify(make_item(), [])

        assert result.batch_type == "finance"

    @pytest.mark.asyncio
    async def test_history_failure_still_ends_in_fallback(self, config, cloud) -> None:
        history = AsyncMock()
        history.history_text.side_effect = RuntimeError("db gone")
        pipeline = ClassificationPipeline([CloudTier(config, cloud, history)])

        result = await pipeline.classify(make_item(), [])

        assert result.is_fallback

    def test_update_config_reaches_every_tier(self, pipeline) -> None:
        new_config = AppConfig(triage={"fast_confidence_threshold": 0.5})

        pipeline.update_config(new_config)

        assert all(tier.config is new_config for tier in pipeline.tiers)
