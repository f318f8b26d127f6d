"""Deterministic rule matching for structured triage rules.

A structured rule carries a trigger: a mapping of optional fields that are
ANDed together. Every field that is present must match for the rule to
match. Guidance rules never match; they are prompt context only.

Trigger fields:
- connector: exact equality with the item's connector
- sender: exact equality with the item's sender address
- senderDomain: equality with the text after the sender's last '@'
  (a sender without '@' never matches)
- subjectContains / contentContains: case-insensitive substring
- pattern: case-insensitive regex searched in the subject OR the content;
  an invalid pattern or a regex timeout is a non-match

A field that is present with a null or empty value never matches.

Pattern evaluation uses the ``regex`` library with a timeout so a
pathological user- or model-authored pattern cannot stall a pass.

Usage:
    from inbox_triage.classifier.rules import first_match, matches

    if matches(rule, item):
        ...
    rule = first_match(active_rules, item)
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import regex

from inbox_triage.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_triage.db.store import Item, Rule

logger = get_logger(__name__)

# Regex timeout in seconds; applied at search time
REGEX_TIMEOUT = 1.0

TRIGGER_FIELDS = frozenset(
    {"connector", "sender", "senderDomain", "subjectContains", "contentContains", "pattern"}
)


def matches(rule: Rule, item: Item) -> bool:
    """Check whether an item satisfies a rule's trigger.

    Pure: no I/O and no side effects. Never raises for malformed rules.

    Args:
        rule: Rule to evaluate
        item: Item to test

    Returns:
        False for guidance rules and for a None trigger; True for an empty
        trigger; otherwise the AND of every specified trigger field.
    """
    if rule.type == "guidance":
        return False

    trigger = rule.trigger
    if trigger is None or not isinstance(trigger, dict):
        return False

    # A field that is present but empty is malformed, not a wildcard
    if any(_is_empty(trigger[key]) for key in trigger if key in TRIGGER_FIELDS):
        return False

    connector = trigger.get("connector")
    if connector and str(connector) != item.connector:
        return False

    sender = trigger.get("sender")
    if sender and str(sender) != item.sender:
        return False

    sender_domain = trigger.get("senderDomain")
    if sender_domain and str(sender_domain) != item.sender_domain:
        return False

    subject_contains = trigger.get("subjectContains")
    if subject_contains and str(subject_contains).lower() not in item.subject.lower():
        return False

    content_contains = trigger.get("contentContains")
    if content_contains and str(content_contains).lower() not in item.content.lower():
        return False

    pattern = trigger.get("pattern")
    if pattern and not _pattern_matches(str(pattern), item.subject, item.content):
        return False

    return True


def first_match(rules: Iterable[Rule], item: Item) -> Rule | None:
    """Return the first rule (in the given order) that matches the item."""
    for rule in rules:
        if matches(rule, item):
            return rule
    return None


def _pattern_matches(pattern: str, subject: str, content: str) -> bool:
    """Case-insensitive regex search against subject or content.

    Returns False on an invalid pattern or a timeout.
    """
    try:
        for text in (subject, content):
            if regex.search(pattern, text, regex.IGNORECASE, timeout=REGEX_TIMEOUT):
                return True
        return False
    except (regex.error, TimeoutError) as e:
        logger.debug("rule_pattern_unusable", pattern=pattern[:100], error=str(e))
        return False


def unknown_trigger_fields(trigger: dict[str, Any]) -> set[str]:
    """Trigger keys that the matcher does not understand."""
    return set(trigger) - TRIGGER_FIELDS


def empty_trigger_fields(trigger: dict[str, Any]) -> set[str]:
    """Trigger keys whose value is null or an empty string."""
    return {key for key, value in trigger.items() if _is_empty(value)}


def drop_empty_trigger_fields(trigger: dict[str, Any]) -> dict[str, Any]:
    """Copy of a trigger without its null or empty-string fields."""
    return {key: value for key, value in trigger.items() if not _is_empty(value)}


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


# ---------------------------------------------------------------------------
# Default rules for common automated services
# ---------------------------------------------------------------------------

# (name, trigger, batch type)
SEED_RULES: list[tuple[str, dict[str, str], str]] = [
    # Notifications, by domain
    ("GitHub → notifications", {"senderDomain": "github.com"}, "notifications"),
    ("Figma → notifications", {"senderDomain": "figma.com"}, "notifications"),
    ("Slack → notifications", {"senderDomain": "slack.com"}, "notifications"),
    ("Airtable → notifications", {"senderDomain": "airtable.com"}, "notifications"),
    ("Linear → notifications", {"senderDomain": "linear.app"}, "notifications"),
    ("Vercel → notifications", {"senderDomain": "vercel.com"}, "notifications"),
    ("Granola → notifications", {"senderDomain": "granola.ai"}, "notifications"),
    ("Railway → notifications", {"senderDomain": "railway.app"}, "notifications"),
    ("Neon → notifications", {"senderDomain": "neon.tech"}, "notifications"),
    ("Sentry → notifications", {"senderDomain": "sentry.io"}, "notifications"),
    (
        "Google Alerts → notifications",
        {"sender": "googlealerts-noreply@google.com"},
        "notifications",
    ),
    (
        "Google Search Console → notifications",
        {"sender": "sc-noreply@google.com"},
        "notifications",
    ),
    # Finance, by domain
    ("Venmo → finance", {"senderDomain": "venmo.com"}, "finance"),
    ("PayPal → finance", {"senderDomain": "paypal.com"}, "finance"),
    ("Stripe → finance", {"senderDomain": "stripe.com"}, "finance"),
    ("QuickBooks → finance", {"senderDomain": "intuit.com"}, "finance"),
    # Calendar, by subject
    ("Calendar invites → calendar", {"subjectContains": "invitation:"}, "calendar"),
    ("Calendar updates → calendar", {"subjectContains": "Updated invitation:"}, "calendar"),
    ("Calendar cancellations → calendar", {"subjectContains": "Canceled event:"}, "calendar"),
    ("Calendar RSVPs → calendar", {"subjectContains": "accepted this invitation"}, "calendar"),
    # Newsletters, by domain
    ("Substack → newsletters", {"senderDomain": "substack.com"}, "newsletters"),
    ("Beehiiv → newsletters", {"senderDomain": "beehiiv.com"}, "newsletters"),
]

SEED_RULE_DESCRIPTION = "Default rule, auto-created"

# Seed rules sort after every user, override and learned rule (sort_order 0)
SEED_SORT_ORDER_START = 1000
