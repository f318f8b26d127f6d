"""Sender and domain decision history for classifier context.

Counts how the user resolved earlier items from the same sender and the
same sender domain, bucketed by triage path:
- bulk: accepted as part of a batch card
- quick: archived/snoozed individually without engaging
- engaged: replied to, actioned, or otherwise worked on

The formatted text is injected verbatim into the cloud classifier prompt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import TriagePathCounts

if TYPE_CHECKING:
    from inbox_triage.db.store import DatabaseStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class DecisionSummary:
    """Resolved-item counts for one sender and its domain."""

    sender: str
    sender_domain: str
    sender_decisions: TriagePathCounts = field(default_factory=TriagePathCounts)
    domain_decisions: TriagePathCounts = field(default_factory=TriagePathCounts)


def sender_domain_of(sender: str) -> str:
    """Text after the last '@'; the whole sender when there is no '@'."""
    return sender.rsplit("@", 1)[1] if "@" in sender else sender


def format_decision_history(summary: DecisionSummary) -> str:
    """Render a summary as compact prompt text.

    One line per population with at least one resolved item, listing only
    non-zero buckets, e.g.::

        Sender a@x.com: bulk-archived 6/9, quick-archived 2/9, engaged 1/9
        Domain x.com: bulk-archived 12/12

    With no resolved items at all, a single "No prior history" sentence.
    """
    sender_counts = summary.sender_decisions
    domain_counts = summary.domain_decisions

    if sender_counts.total == 0 and domain_counts.total == 0:
        return f"No prior history with {summary.sender} or domain {summary.sender_domain}."

    lines: list[str] = []
    if sender_counts.total > 0:
        lines.append(f"Sender {summary.sender}: {_format_counts(sender_counts)}")
    if domain_counts.total > 0:
        lines.append(f"Domain {summary.sender_domain}: {_format_counts(domain_counts)}")
    return "\n".join(lines)


def _format_counts(counts: TriagePathCounts) -> str:
    parts: list[str] = []
    if counts.bulk > 0:
        parts.append(f"bulk-archived {counts.bulk}/{counts.total}")
    if counts.quick > 0:
        parts.append(f"quick-archived {counts.quick}/{counts.total}")
    if counts.engaged > 0:
        parts.append(f"engaged {counts.engaged}/{counts.total}")
    return ", ".join(parts)


class DecisionHistoryAggregator:
    """Builds DecisionSummary views from item history."""

    def __init__(self, store: DatabaseStore):
        self._store = store

    async def history(self, sender: str, sender_domain: str | None = None) -> DecisionSummary:
        """Count resolved items for the exact sender and for its domain.

        Args:
            sender: Sender address
            sender_domain: Domain to aggregate; derived from sender when omitted

        Raises:
            DatabaseError: If a query fails
        """
        domain = sender_domain or sender_domain_of(sender)
        sender_counts = await self._store.get_triage_path_counts(sender=sender)
        domain_counts = await self._store.get_triage_path_counts(sender_domain=domain)

        return DecisionSummary(
            sender=sender,
            sender_domain=domain,
            sender_decisions=sender_counts,
            domain_decisions=domain_counts,
        )

    async def history_text(self, sender: str, sender_domain: str | None = None) -> str:
        """Formatted history; degrades to the "no prior history" line on any failure."""
        domain = sender_domain or sender_domain_of(sender)
        try:
            summary = await self.history(sender, domain)
        except Exception as e:
            logger.warning("decision_history_failed", sender=sender, error=str(e))
            summary = DecisionSummary(sender=sender, sender_domain=domain)
        return format_decision_history(summary)
