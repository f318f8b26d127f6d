"""Behavioral rule proposals from repeated triage decisions.

After each user decision the sender's resolved items are counted by triage
path. Once enough of them agree, a guidance rule is proposed:

- every item archived in bulk or quickly: "Always archive emails from X"
- two or more items the user pulled out of a group and then engaged with,
  or every item engaged with: "Always surface emails from X"

Proposals are stored as guidance rules with status 'proposed' and the
sender as pattern_key. Accepting one activates it, so its text reaches the
cloud classifier prompt. Each dismissal raises the evidence threshold for
the next proposal about that sender, and after three dismissals the sender
is never proposed again.

Usage:
    from inbox_triage.engine.proposals import RuleProposer

    proposer = RuleProposer(store, rule_store)
    rule = await proposer.propose_for(item.sender, item.sender_name)
    await proposer.accept(rule.id)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from inbox_triage.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_triage.classifier.rule_store import RuleStore
    from inbox_triage.db.store import DatabaseStore, Rule

logger = get_logger(__name__)

# Evidence needed after 0, 1 and 2 dismissals
THRESHOLDS = (3, 5, 8)
MAX_DISMISSALS = 3
MIN_ENGAGED_OVERRIDES = 2

ProposalType = Literal["archive", "surface"]


@dataclass(frozen=True, slots=True)
class Proposal:
    """A rule worth proposing for one sender.

    Attributes:
        type: 'archive' or 'surface'
        sender: Sender address the proposal is about
        rule_text: Guidance text of the proposed rule
        evidence: Triage path counts (and override count) behind it
    """

    type: ProposalType
    sender: str
    rule_text: str
    evidence: dict[str, Any] = field(default_factory=dict)


class RuleProposer:
    """Detect sender patterns and manage the proposed rules they produce."""

    def __init__(self, store: DatabaseStore, rule_store: RuleStore):
        self._store = store
        self._rule_store = rule_store

    async def check(self, sender: str, sender_name: str | None = None) -> Proposal | None:
        """Return a proposal for the sender if its decisions warrant one."""
        if not sender:
            return None

        existing = await self._store.list_rules_by_pattern_key(sender)
        if any(rule.status in ("active", "proposed") for rule in existing):
            return None
        # An explicit sender routing rule already decides where these items go
        if await self._rule_store.find_by_sender(sender) is not None:
            return None

        dismissals = sum(1 for rule in existing if rule.status == "dismissed")
        if dismissals >= MAX_DISMISSALS:
            return None
        threshold = THRESHOLDS[min(dismissals, len(THRESHOLDS) - 1)]

        counts = await self._store.get_triage_path_counts(sender=sender)
        if counts.total < threshold:
            return None

        evidence: dict[str, Any] = {
            "bulk": counts.bulk,
            "quick": counts.quick,
            "engaged": counts.engaged,
            "total": counts.total,
        }
        display_name = sender_name or sender

        if counts.bulk + counts.quick == counts.total:
            return Proposal("archive", sender, f"Always archive emails from {display_name}", evidence)

        override_count = await self._store.count_engaged_overrides(sender)
        if override_count >= MIN_ENGAGED_OVERRIDES:
            return Proposal(
                "surface",
                sender,
                f"Always surface emails from {display_name}",
                {**evidence, "overrideCount": override_count},
            )

        if counts.engaged == counts.total:
            return Proposal("surface", sender, f"Always surface emails from {display_name}", evidence)

        return None

    async def propose_for(self, sender: str, sender_name: str | None = None) -> Rule | None:
        """Check the sender and store a proposed rule when a pattern is found."""
        proposal = await self.check(sender, sender_name)
        if proposal is None:
            return None

        rule = await self._rule_store.create(
            name=proposal.rule_text,
            rule_type="guidance",
            guidance=proposal.rule_text,
            description=f"Auto-proposed based on {proposal.evidence['total']} triage actions",
            source="learned",
            status="proposed",
            pattern_key=proposal.sender,
            evidence=proposal.evidence,
        )
        await self._store.log_action(
            "rule_proposed",
            description=f"Proposed rule: {proposal.rule_text}",
            details={"ruleId": rule.id, "type": proposal.type, "evidence": proposal.evidence},
            triggered_by="auto",
        )

        logger.info(
            "rule_proposed",
            rule_id=rule.id,
            proposal_type=proposal.type,
            total=proposal.evidence["total"],
        )
        return rule

    async def list_pending(self) -> list[Rule]:
        return await self._store.list_rules(status="proposed")

    async def accept(self, rule_id: str) -> Rule | None:
        """Activate a proposed rule. Returns None if no such proposal is pending."""
        return await self._resolve(rule_id, "active")

    async def dismiss(self, rule_id: str) -> Rule | None:
        """Dismiss a proposed rule. Returns None if no such proposal is pending."""
        return await self._resolve(rule_id, "dismissed")

    async def _resolve(self, rule_id: str, status: str) -> Rule | None:
        rule = await self._rule_store.get(rule_id)
        if rule is None or rule.status != "proposed":
            return None

        updated = await self._rule_store.update(rule_id, status=status)
        await self._store.log_action(
            "rule_proposal_accepted" if status == "active" else "rule_proposal_dismissed",
            description=f"{'Accepted' if status == 'active' else 'Dismissed'} proposed rule: {rule.name}",
            details={"ruleId": rule_id, "patternKey": rule.pattern_key},
            triggered_by="user",
        )

        logger.info("rule_proposal_resolved", rule_id=rule_id, status=status)
        return updated
