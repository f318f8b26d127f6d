"""Cloud model caller (Anthropic) returning raw response text.

Used by the cloud classification tier, the learning loop and rule
authoring. The caller owns prompt construction and response parsing; this
module only makes the call, applies the timeout, logs it, and maps every
API failure to None.

Error handling strategy:
- Transient errors (429, 5xx, network): retried by the Anthropic SDK (max_retries)
- Anything still failing after SDK retries: logged, returned as None
- Timeouts: per-request timeout from config.models.cloud_timeout_seconds

Usage:
    from inbox_triage.classifier.cloud_classifier import CloudClassifier

    cloud = CloudClassifier(anthropic.AsyncAnthropic(max_retries=2), config.models)
    text = await cloud.complete(system, user, task_type="classify", item_id=item.id)
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import anthropic

from inbox_triage.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_triage.classifier.llm_log import LLMRequestLogger
    from inbox_triage.config_schema import ModelsConfig

logger = get_logger(__name__)

DEFAULT_MAX_TOKENS = 1024


class CloudClassifier:
    """Thin async wrapper around the Anthropic Messages API.

    Attributes:
        default_model: Model used when complete() is not given one
    """

    def __init__(
        self,
        client: anthropic.AsyncAnthropic,
        config: ModelsConfig,
        llm_logger: LLMRequestLogger | None = None,
    ):
        """Initialize the caller.

        Args:
            client: Anthropic async client (configure max_retries for transient errors)
            config: Models configuration (model names and timeout)
            llm_logger: Optional best-effort call logger
        """
        self._client = client
        self._timeout = config.cloud_timeout_seconds
        self._llm_logger = llm_logger
        self.default_model = config.cloud

    async def complete(
        self,
        system: str,
        user: str,
        task_type: str = "classify",
        model: str | None = None,
        item_id: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> str | None:
        """Send one system + user message exchange.

        Returns:
            Concatenated text blocks of the reply, or None on any API failure
        """
        model_name = model or self.default_model
        messages = [{"role": "user", "content": user}]
        start_time = time.monotonic()
        response: Any = None
        error: str | None = None

        try:
            response = await self._client.messages.create(
                model=model_name,
                max_tokens=max_tokens,
                system=system,
                messages=messages,
                timeout=self._timeout,
            )
        except anthropic.APITimeoutError as e:
            error = f"Timed out after {self._timeout}s: {e}"
            logger.warning("cloud_call_timeout", task_type=task_type, item_id=item_id)
        except anthropic.RateLimitError as e:
            error = f"Rate limited after SDK retries: {e}"
            logger.error("cloud_call_rate_limited", task_type=task_type, item_id=item_id, error=str(e))
        except anthropic.APIConnectionError as e:
            error = f"API connection error after SDK retries: {e}"
            logger.error(
                "cloud_call_connection_error", task_type=task_type, item_id=item_id, error=str(e)
            )
        except anthropic.APIStatusError as e:
            error = f"API status error {e.status_code}: {e.message}"
            logger.error(
                "cloud_call_api_error",
                task_type=task_type,
                item_id=item_id,
                status_code=e.status_code,
                error=str(e),
            )

        duration_ms = int((time.monotonic() - start_time) * 1000)
        text = _extract_text(response) if response is not None else None
        if response is not None and not text:
            error = "Response contained no text blocks"
            logger.warning("cloud_call_empty_response", task_type=task_type, item_id=item_id)

        if self._llm_logger is not None:
            usage = getattr(response, "usage", None)
            self._llm_logger.record(
                task_type=task_type,
                provider="anthropic",
                model=model_name,
                prompt={"system": system, "messages": messages},
                response_text=text,
                input_tokens=getattr(usage, "input_tokens", None),
                output_tokens=getattr(usage, "output_tokens", None),
                duration_ms=duration_ms,
                item_id=item_id,
                error=error,
            )

        return text or None


def _extract_text(response: Any) -> str:
    """Join the text blocks of an Anthropic message."""
    parts = [
        block.text
        for block in getattr(response, "content", None) or []
        if getattr(block, "type", None) == "text"
    ]
    return "".join(parts).strip()
