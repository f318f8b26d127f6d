"""Sender context from an external memory store.

The cloud tier may include what a long-term memory knows about a sender
("works at Acme, weekly 1:1 with the user"). The store itself lives outside
this package; anything implementing MemoryContextProvider can be plugged in.
Lookups are best effort and never fail a classification.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from inbox_triage.core.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class MemoryContextProvider(Protocol):
    """Returns free-text context about a sender, or "" when nothing is known."""

    async def context_for(self, sender: str, sender_name: str | None = None) -> str: ...


class NullMemoryContext:
    """Provider used when no memory store is configured."""

    async def context_for(self, sender: str, sender_name: str | None = None) -> str:
        return ""


async def safe_context_for(
    provider: MemoryContextProvider | None,
    sender: str,
    sender_name: str | None = None,
) -> str:
    """Ask the provider for sender context; any failure yields ""."""
    if provider is None:
        return ""
    try:
        context = await provider.context_for(sender, sender_name)
    except Exception as e:
        logger.warning("memory_context_failed", sender=sender, error=str(e))
        return ""
    return context.strip() if isinstance(context, str) else ""
