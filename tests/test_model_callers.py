"""Tests for the local and cloud model callers and LLM request logging."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from conftest import make_item
from inbox_triage.classifier.cloud_classifier import CloudClassifier
from inbox_triage.classifier.context import NullMemoryContext, safe_context_for
from inbox_triage.classifier.llm_log import LLMRequestLogger, estimate_cost
from inbox_triage.classifier.local_classifier import LocalClassifier
from inbox_triage.config_schema import AppConfig, LLMLoggingConfig, ModelsConfig
from inbox_triage.core.logging import set_correlation_id

BASE_URL = "http://localhost:11434"
API_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _local(handler, config: ModelsConfig | None = None, clock=None) -> LocalClassifier:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return LocalClassifier(config or ModelsConfig(), client=client, clock=clock or FakeClock())


def _message(text: str) -> SimpleNamespace:
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        usage=SimpleNamespace(input_tokens=120, output_tokens=30),
    )


class TestLocalClassifier:
    """Tests for the Ollama-backed fast tier caller."""

    @pytest.mark.asyncio
    async def test_returns_response_text(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            if request.url.path == "/api/tags":
                return httpx.Response(200, json={"models": []})
            return httpx.Response(200, json={"response": '{"batchType": "spam", "confidence": 0.9}'})

        local = _local(handler)

        raw = await local.classify(make_item(), AppConfig().batch_types, [])

        assert raw == '{"batchType": "spam", "confidence": 0.9}'
        assert seen == ["/api/tags", "/api/generate"]

    @pytest.mark.asyncio
    async def test_availability_cached_for_ttl(self) -> None:
        checks = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal checks
            checks += 1
            return httpx.Response(503)

        clock = FakeClock()
        local = _local(handler, clock=clock)

        assert await local.is_available() is False
        assert await local.is_available() is False
        assert checks == 1

        clock.now += 61
        await local.is_available()
        assert checks == 2

    @pytest.mark.asyncio
    async def test_disabled_never_calls_server(self) -> None:
        handler = MagicMock(side_effect=AssertionError("should not be called"))
        local = _local(handler, config=ModelsConfig(local_enabled=False))

        assert await local.is_available() is False
        assert await local.classify(make_item(), AppConfig().batch_types, []) is None

    @pytest.mark.asyncio
    async def test_unreachable_server(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        local = _local(handler)

        assert await local.classify(make_item(), AppConfig().batch_types, []) is None

    @pytest.mark.asyncio
    async def test_timeout_is_no_result(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/tags":
                return httpx.Response(200)
            raise httpx.ReadTimeout("slow", request=request)

        local = _local(handler)

        assert await local.classify(make_item(), AppConfig().batch_types, []) is None

    @pytest.mark.asyncio
    async def test_missing_response_field(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/tags":
                return httpx.Response(200)
            return httpx.Response(200, json={"done": True})

        llm_logger = MagicMock()
        local = LocalClassifier(
            ModelsConfig(),
            llm_logger=llm_logger,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL),
        )

        assert await local.classify(make_item(), AppConfig().batch_types, []) is None
        kwargs = llm_logger.record.call_args.kwargs
        assert kwargs["provider"] == "ollama"
        assert "missing" in kwargs["error"]


class TestCloudClassifier:
    """Tests for the Anthropic caller."""

    @pytest.mark.asyncio
    async def test_returns_text_and_logs(self) -> None:
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=_message('{"batchType": null}'))
        llm_logger = MagicMock()
        cloud = CloudClassifier(client, ModelsConfig(), llm_logger=llm_logger)

        text = await cloud.complete("system", "user", item_id="item-1")

        assert text == '{"batchType": null}'
        call = client.messages.create.await_args.kwargs
        assert call["model"] == ModelsConfig().cloud
        assert call["system"] == "system"
        assert call["messages"] == [{"role": "user", "content": "user"}]
        assert call["timeout"] == ModelsConfig().cloud_timeout_seconds
        logged = llm_logger.record.call_args.kwargs
        assert logged["provider"] == "anthropic"
        assert logged["input_tokens"] == 120
        assert logged["error"] is None

    @pytest.mark.asyncio
    async def test_model_override(self) -> None:
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=_message("[]"))
        cloud = CloudClassifier(client, ModelsConfig())

        await cloud.complete("s", "u", task_type="learning", model="bigger-model", max_tokens=4096)

        call = client.messages.create.await_args.kwargs
        assert call["model"] == "bigger-model"
        assert call["max_tokens"] == 4096

    @pytest.mark.parametrize(
        "error",
        [
            anthropic.APITimeoutError(request=API_REQUEST),
            anthropic.APIConnectionError(request=API_REQUEST),
            anthropic.InternalServerError(
                "overloaded", response=httpx.Response(529, request=API_REQUEST), body=None
            ),
            anthropic.RateLimitError(
                "slow down", response=httpx.Response(429, request=API_REQUEST), body=None
            ),
        ],
    )
    @pytest.mark.asyncio
    async def test_api_errors_return_none(self, error) -> None:
        client = MagicMock()
        client.messages.create = AsyncMock(side_effect=error)
        llm_logger = MagicMock()
        cloud = CloudClassifier(client, ModelsConfig(), llm_logger=llm_logger)

        assert await cloud.complete("s", "u") is None
        assert llm_logger.record.call_args.kwargs["error"]

    @pytest.mark.asyncio
    async def test_non_text_blocks_ignored(self) -> None:
        client = MagicMock()
        client.messages.create = AsyncMock(
            return_value=SimpleNamespace(content=[SimpleNamespace(type="tool_use", id="x")], usage=None)
        )
        cloud = CloudClassifier(client, ModelsConfig())

        assert await cloud.complete("s", "u") is None


class TestLLMRequestLogger:
    """Tests for best-effort call logging."""

    @pytest.mark.asyncio
    async def test_row_written_with_cycle_id(self, store, background) -> None:
        llm_logger = LLMRequestLogger(store, background, LLMLoggingConfig())
        set_correlation_id("cycle-123")
        try:
            llm_logger.record(task_type="classify", provider="anthropic", model="m", response_text="{}")
        finally:
            set_correlation_id(None)
        await background.drain()

        logs = await store.get_llm_logs(triage_cycle_id="cycle-123")
        assert len(logs) == 1
        assert logs[0].response_text == "{}"

    @pytest.mark.asyncio
    async def test_prompts_omitted_when_disabled(self, store, background) -> None:
        config = LLMLoggingConfig(log_prompts=False, log_responses=False)
        llm_logger = LLMRequestLogger(store, background, config)

        llm_logger.record(
            task_type="classify", provider="ollama", model="m", prompt={"prompt": "secret"}, response_text="x"
        )
        await background.drain()

        logs = await store.get_llm_logs()
        assert logs[0].prompt is None
        assert logs[0].response_text is None

    @pytest.mark.asyncio
    async def test_disabled_writes_nothing(self, store, background) -> None:
        llm_logger = LLMRequestLogger(store, background, LLMLoggingConfig(enabled=False))

        llm_logger.record(task_type="classify", provider="ollama", model="m")

        assert background.pending == 0
        assert await store.get_llm_logs() == []

    @pytest.mark.asyncio
    async def test_row_carries_estimated_cost(self, store, background) -> None:
        llm_logger = LLMRequestLogger(store, background, LLMLoggingConfig())

        llm_logger.record(
            task_type="classify", provider="anthropic", model="m", input_tokens=1000, output_tokens=200
        )
        await background.drain()

        logs = await store.get_llm_logs()
        assert logs[0].estimated_cost == pytest.approx(0.006)


class TestEstimateCost:
    """Tests for per-call cost estimates."""

    def test_cloud_rates(self) -> None:
        rates = LLMLoggingConfig().cost_rates
        assert estimate_cost(rates, "anthropic", 2000, 1000) == pytest.approx(0.021)

    def test_local_model_is_free(self) -> None:
        assert estimate_cost(LLMLoggingConfig().cost_rates, "ollama", 5000, 5000) == 0.0

    def test_unknown_provider_is_free(self) -> None:
        assert estimate_cost(LLMLoggingConfig().cost_rates, "openai", 5000, 5000) == 0.0

    def test_missing_token_counts(self) -> None:
        assert estimate_cost(LLMLoggingConfig().cost_rates, "anthropic", None, None) == 0.0

    def test_configured_rates(self) -> None:
        config = LLMLoggingConfig(cost_rates={"anthropic": {"input_per_1k": 0.001, "output_per_1k": 0.005}})
        assert estimate_cost(config.cost_rates, "anthropic", 1000, 1000) == pytest.approx(0.006)
        assert estimate_cost(config.cost_rates, "ollama", 1000, 1000) == 0.0


class TestMemoryContext:
    @pytest.mark.asyncio
    async def test_null_provider(self) -> None:
        assert await safe_context_for(NullMemoryContext(), "a@b.com") == ""
        assert await safe_context_for(None, "a@b.com") == ""

    @pytest.mark.asyncio
    async def test_failure_yields_empty(self) -> None:
        provider = AsyncMock()
        provider.context_for.side_effect = RuntimeError("memory offline")
        assert await safe_context_for(provider, "a@b.com", "A") == ""

    @pytest.mark.asyncio
    async def test_result_stripped(self) -> None:
        provider = AsyncMock()
        provider.context_for.return_value = "  CFO at Acme \n"
        assert await safe_context_for(provider, "a@b.com") == "CFO at Acme"
