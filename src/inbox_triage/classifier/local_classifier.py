"""Fast-tier classifier backed by a local Ollama-compatible model server.

The local model may simply not be running. Availability is checked with a
cheap GET and the answer is cached for a configurable TTL, so a pass over
hundreds of items checks at most once per TTL window. An unavailable
server, a timeout or an HTTP error all mean "no result" (None); none of
them are errors for the caller.

Usage:
    from inbox_triage.classifier.local_classifier import LocalClassifier

    local = LocalClassifier(config.models, llm_logger=llm_logger)
    raw = await local.classify(item, config.batch_types, guidance)
    await local.aclose()
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING

import httpx

from inbox_triage.classifier.prompts import build_local_prompt
from inbox_triage.core.cache import TTLCache
from inbox_triage.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_triage.classifier.llm_log import LLMRequestLogger
    from inbox_triage.config_schema import BatchTypeConfig, ModelsConfig
    from inbox_triage.db.store import Item

logger = get_logger(__name__)

# Availability check timeout (seconds)
AVAILABILITY_TIMEOUT = 2.0

_AVAILABILITY_KEY = "local_model"


class LocalClassifier:
    """Calls /api/generate on a local model server and returns raw text.

    Attributes:
        model: Local model name
        base_url: Server base URL
    """

    def __init__(
        self,
        config: ModelsConfig,
        llm_logger: LLMRequestLogger | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the classifier.

        Args:
            config: Models configuration (URL, model, timeouts, availability TTL)
            llm_logger: Optional best-effort call logger
            client: HTTP client to use; one is created (and owned) when omitted
            clock: Clock for the availability cache
        """
        self.model = config.local_model
        self.base_url = config.local_url
        self._enabled = config.local_enabled
        self._timeout = config.local_timeout_seconds
        self._llm_logger = llm_logger
        self._client = client or httpx.AsyncClient(base_url=self.base_url)
        self._owns_client = client is None
        self._availability: TTLCache[bool] = TTLCache(
            ttl_seconds=config.local_availability_ttl_seconds,
            clock=clock,
        )

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def is_available(self) -> bool:
        """Whether the local server answers; cached for the configured TTL."""
        if not self._enabled:
            return False

        cached = self._availability.get(_AVAILABILITY_KEY)
        if cached is not None:
            return cached

        try:
            response = await self._client.get("/api/tags", timeout=AVAILABILITY_TIMEOUT)
            available = response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug("local_model_unavailable", url=self.base_url, error=str(e))
            available = False

        self._availability.put(_AVAILABILITY_KEY, available)
        if not available:
            logger.info("local_model_unavailable", url=self.base_url)
        return available

    async def classify(
        self,
        item: Item,
        batch_types: Mapping[str, BatchTypeConfig],
        guidance: Sequence[str],
    ) -> str | None:
        """Ask the local model to classify an item.

        Returns:
            Raw model text, or None when the model is unavailable or the call fails
        """
        if not await self.is_available():
            return None

        prompt = build_local_prompt(item, batch_types, guidance)
        start_time = time.monotonic()
        error: str | None = None
        text: str | None = None

        try:
            response = await self._client.post(
                "/api/generate",
                json={
                    "model": self.model,
                    "prompt": prompt,
                    "stream": False,
                    "options": {"temperature": 0.1},
                },
                timeout=self._timeout,
            )
            response.raise_for_status()
            payload = response.json()
            text = payload.get("response") if isinstance(payload, dict) else None
            if not text:
                error = "Local model response missing 'response'"
        except httpx.TimeoutException as e:
            error = f"Local model timed out after {self._timeout}s: {e}"
        except httpx.HTTPError as e:
            error = f"Local model call failed: {e}"
            # Check availability again on the next call
            self._availability.invalidate(_AVAILABILITY_KEY)
        except ValueError as e:
            error = f"Local model returned invalid JSON: {e}"

        duration_ms = int((time.monotonic() - start_time) * 1000)
        if error:
            logger.warning("local_classify_failed", item_id=item.id, error=error)

        if self._llm_logger is not None:
            self._llm_logger.record(
                task_type="classify",
                provider="ollama",
                model=self.model,
                prompt={"prompt": prompt},
                response_text=text,
                duration_ms=duration_ms,
                item_id=item.id,
                error=error,
            )

        return text or None
