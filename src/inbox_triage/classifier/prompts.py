"""Prompt builders for the fast, cloud, learning and rule-authoring model calls.

Every prompt asks for bare JSON; the response is parsed tolerantly by
inbox_triage.classifier.parsing regardless of what the model returns.

Usage:
    from inbox_triage.classifier.prompts import build_cloud_system_prompt

    system = build_cloud_system_prompt(config.batch_types, guidance_texts)
    user = build_cloud_user_message(item, history_text, memory_text)
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from inbox_triage.config_schema import BatchTypeConfig
    from inbox_triage.db.store import ActionLogEntry, Item, Rule

# Content sent to each tier (characters)
LOCAL_CONTENT_LIMIT = 500
CLOUD_CONTENT_LIMIT = 1500

# Tighter definitions for the default groups; other configured batch types
# fall back to their card explanation.
GROUP_DEFINITIONS: dict[str, str] = {
    "notifications": (
        "ONLY for clearly automated tool/system messages: CI/CD failures, bot alerts, "
        "deployment notifications, device sign-ins, OAuth alerts, design-tool thread "
        "notifications, confirmation codes. NOT for messages from real people."
    ),
    "finance": (
        "Automated financial notifications: invoice alerts, purchase order confirmations, "
        "payment processed notifications, card charges, billing reminders, payroll alerts. "
        "Must be system-generated, not personal financial discussions."
    ),
    "newsletters": (
        "Marketing emails, industry digests, subscription content, press releases, "
        "analytics reports. NOT for personal emails even if they contain news."
    ),
    "calendar": (
        "Meeting invites, calendar acceptances/declines, RSVPs, scheduling changes. "
        "System-generated calendar notifications."
    ),
    "spam": (
        "Cold outreach from unknown senders, junk mail, unsolicited sales pitches, "
        "phishing attempts."
    ),
}


def format_guidance_block(guidance: Sequence[str]) -> str:
    """Guidance notes section, or an empty string when there are none."""
    if not guidance:
        return ""
    notes = "\n".join(f"- {note}" for note in guidance)
    return f"\nGUIDANCE NOTES (use these to inform your classification):\n{notes}\n"


def _group_lines(batch_types: Mapping[str, BatchTypeConfig]) -> str:
    lines = []
    for name, batch in batch_types.items():
        definition = GROUP_DEFINITIONS.get(name, batch.explanation)
        lines.append(f'- "{name}": {definition}')
    return "\n".join(lines)


def _batch_type_enum(batch_types: Mapping[str, BatchTypeConfig]) -> str:
    return "|".join(f'"{name}"' for name in batch_types) + "|null"


def _item_lines(item: Item, content_limit: int) -> str:
    display = item.sender_name or item.sender
    lines = [
        f"- Source: {item.connector}",
        f"- From: {display} <{item.sender}>",
        f"- Subject: {item.subject}",
    ]
    if item.tags:
        lines.append(f"- Tags: {', '.join(item.tags)}")
    lines.append(f"- Content: {item.content[:content_limit]}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Fast tier (local model)
# ---------------------------------------------------------------------------


def build_local_prompt(
    item: Item,
    batch_types: Mapping[str, BatchTypeConfig],
    guidance: Sequence[str],
) -> str:
    """Single-string prompt for the local model."""
    return f"""You are a triage classifier for an inbox system. Classify this item into one of the following batch types, or null if it needs individual attention.

Batch types:
{_group_lines(batch_types)}
- null: Needs individual attention. Important, urgent, or requires a specific response.
{format_guidance_block(guidance)}
ITEM:
{_item_lines(item, LOCAL_CONTENT_LIMIT)}

Respond with ONLY valid JSON, no markdown fences or explanation:
{{"batchType": {_batch_type_enum(batch_types)}, "confidence": 0.0-1.0, "reason": "brief explanation"}}"""


# ---------------------------------------------------------------------------
# Cloud tier
# ---------------------------------------------------------------------------


def build_cloud_system_prompt(
    batch_types: Mapping[str, BatchTypeConfig],
    guidance: Sequence[str],
) -> str:
    """System prompt for the cloud classifier, including enrichment fields."""
    return f"""You are a conservative triage classifier. Classify items into groups or return null for individual attention. When in doubt, return null.

Groups:
{_group_lines(batch_types)}
- null: DEFAULT. Use for anything from a real person writing a real message, anything you're unsure about, anything that needs a personal response. If in doubt, return null.

CRITICAL: Real people writing real messages = null. Always.

Use the decision history: if the user consistently bulk-archives this sender or domain, grouping is safe; if they engage with it, return null.
Weight guidance notes heavily. They are confirmed user preferences.
{format_guidance_block(guidance)}
Respond with ONLY valid JSON, no markdown fences:
{{
  "batchType": {_batch_type_enum(batch_types)},
  "confidence": 0.0-1.0,
  "reason": "brief explanation",
  "enrichment": {{
    "summary": "1-2 sentence summary of the item",
    "suggestedPriority": "urgent|high|normal|low",
    "suggestedTags": ["tag1", "tag2"]
  }}
}}"""


def build_cloud_user_message(item: Item, decision_history: str, memory_context: str) -> str:
    """Per-item user message with history and memory context sections."""
    sections = [
        "Classify this inbox item:",
        "",
        _item_lines(item, CLOUD_CONTENT_LIMIT),
        "",
        "=== DECISION HISTORY ===",
        decision_history or "No prior decisions.",
    ]
    if memory_context:
        sections.extend(["", "=== SENDER CONTEXT (from memory) ===", memory_context])
    return "\n".join(sections)


# ---------------------------------------------------------------------------
# Learning loop
# ---------------------------------------------------------------------------


def _rule_line(rule: Rule) -> str:
    line = f'- [{rule.type}] "{rule.name}" ({rule.status}): {rule.description or "(no description)"}'
    if rule.trigger is not None:
        line += f" | trigger: {json.dumps(rule.trigger)}"
    if rule.action:
        line += f" | action: {json.dumps(rule.action)}"
    if rule.guidance:
        line += f" | guidance: {rule.guidance}"
    return line


def build_learning_system_prompt(
    rules: Sequence[Rule],
    decisions: Sequence[ActionLogEntry],
    window_hours: int,
    min_confidence: float,
) -> str:
    """System prompt asking for new_rule / refine_rule suggestions as a JSON array."""
    rules_context = "\n".join(_rule_line(rule) for rule in rules) or "(no rules yet)"
    decisions_context = "\n".join(
        f"- [{entry.timestamp.isoformat()}] {entry.description or entry.action_type}"
        for entry in decisions
    )

    return f"""You are a triage assistant that learns from the user's triage decisions.

Analyze the triage actions taken in the last {window_hours} hours and compare them against the existing rules. Suggest new rules or refinements that would automate or improve future triage.

EXISTING RULES:
{rules_context}

RECENT TRIAGE ACTIONS (last {window_hours}h):
{decisions_context}

Respond with ONLY a JSON array of suggestions. No markdown fences, no explanation outside the JSON.

Each suggestion should have:
- "type": "new_rule" or "refine_rule"
- "ruleType": "structured" (deterministic trigger/action) or "guidance" (context for AI)
- "name": short rule name
- "description": what the rule does
- "trigger": object with optional fields: connector, sender, senderDomain, subjectContains, contentContains, pattern (only for structured rules)
- "action": {{"type": "batch", "batchType": "..."}} (only for structured rules)
- "guidance": guidance text (only for guidance rules)
- "confidence": 0.0-1.0 how confident you are this pattern is real
- "reasoning": why you suggest this rule

Only suggest rules with confidence >= {min_confidence}. If no patterns are worth suggesting, return an empty array []."""


def build_learning_user_message(decision_count: int) -> str:
    return f"Analyze these {decision_count} triage actions and suggest rule improvements."


# ---------------------------------------------------------------------------
# Rule authoring
# ---------------------------------------------------------------------------


def build_rule_author_system_prompt(batch_types: Sequence[str]) -> str:
    """System prompt turning a natural-language instruction into a rule draft."""
    batch_enum = "|".join(batch_types)
    return f"""You are a triage rule parser for an inbox system. The user will give you a natural language instruction about how to handle certain inbox items.

Your job: determine whether this instruction can be expressed as a simple deterministic rule (structured) or if it requires nuanced AI judgment (guidance).

## Structured rules
Use when the instruction is a simple pattern match:
- Specific senders or sender domains
- Specific connectors (gmail, slack, linear, granola)
- Keyword matches in subject or content
- Regex patterns

Return JSON:
{{
  "type": "structured",
  "name": "Short rule name",
  "description": "What this rule does",
  "trigger": {{
    "connector": "gmail|slack|linear|granola" (optional),
    "sender": "exact@email.com" (optional),
    "senderDomain": "example.com" (optional),
    "subjectContains": "keyword" (optional),
    "contentContains": "keyword" (optional),
    "pattern": "regex pattern" (optional)
  }},
  "action": {{
    "type": "batch",
    "batchType": "{batch_enum}"
  }}
}}

## Guidance notes
Use when the instruction involves context, judgment, or nuance that can't be expressed as a simple pattern. Examples: "be gentle when replying to clients", "prioritize messages from my team", "anything about Project X is high priority right now".

Return JSON:
{{
  "type": "guidance",
  "name": "Short rule name",
  "description": "What this guidance does",
  "guidance": "The full instruction in a clear form for AI context"
}}

Respond with ONLY valid JSON, no markdown fences or explanation."""


def build_rule_author_message(instruction: str) -> str:
    return f'Parse this triage instruction into a rule:\n\n"{instruction}"'
