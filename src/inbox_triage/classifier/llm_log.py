"""Best-effort logging of model calls.

Each call is written to llm_request_log on the background runner. The
write is never awaited by the caller, and a failed write is only logged.
Tasks copy the current context, so the triage_cycle_id correlation id of
the calling cycle is recorded with the row.

Rows carry an estimated cost from the configured per-provider token
rates; ``inbox-triage costs`` sums them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from inbox_triage.config_schema import LLMLoggingConfig, ProviderRate
    from inbox_triage.core.background import BackgroundTasks
    from inbox_triage.db.store import DatabaseStore


def estimate_cost(
    rates: dict[str, ProviderRate],
    provider: str,
    input_tokens: int | None,
    output_tokens: int | None,
) -> float:
    """Estimated USD cost of one call. Unknown providers cost nothing."""
    rate = rates.get(provider)
    if rate is None:
        return 0.0
    cost = (input_tokens or 0) / 1000 * rate.input_per_1k + (output_tokens or 0) / 1000 * rate.output_per_1k
    return round(cost, 6)


class LLMRequestLogger:
    """Schedules llm_request_log writes on a BackgroundTasks runner."""

    def __init__(
        self,
        store: DatabaseStore,
        background: BackgroundTasks,
        config: LLMLoggingConfig,
    ):
        self._store = store
        self._background = background
        self._config = config

    def record(
        self,
        task_type: str,
        provider: str,
        model: str,
        prompt: dict[str, Any] | None = None,
        response_text: str | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        duration_ms: int | None = None,
        item_id: str | None = None,
        error: str | None = None,
    ) -> None:
        """Schedule one log row; returns immediately."""
        if not self._config.enabled:
            return

        self._background.spawn(
            self._store.log_llm_request(
                task_type=task_type,
                provider=provider,
                model=model,
                prompt=prompt if self._config.log_prompts else None,
                response_text=response_text if self._config.log_responses else None,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=duration_ms,
                item_id=item_id,
                error=error,
                estimated_cost=estimate_cost(self._config.cost_rates, provider, input_tokens, output_tokens),
            ),
            name="llm_request_log",
        )
