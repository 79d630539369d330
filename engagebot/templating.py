"""Render response templates with ``{{variable}}`` placeholders."""

import re
from dataclasses import dataclass, field
from typing import Optional

from .models import AutoReplyRule, Mention

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

MENTION_TEXT_LIMIT = 100


@dataclass
class RenderedTemplate:
    """Rendered text plus the placeholder names that had no value."""

    text: str
    unresolved_variables: list[str] = field(default_factory=list)


def render_template(template: str, variables: dict[str, Optional[str]]) -> RenderedTemplate:
    """Substitute known variables; leave unknown placeholders verbatim.

    Never raises. Unresolved names are reported in first-seen order.
    """
    unresolved: list[str] = []

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        value = variables.get(name)
        if value is None:
            if name not in unresolved:
                unresolved.append(name)
            return match.group(0)
        return str(value)

    return RenderedTemplate(PLACEHOLDER_PATTERN.sub(_replace, template or ""), unresolved)


def mention_variables(mention: Mention, rule: Optional[AutoReplyRule] = None) -> dict[str, Optional[str]]:
    """Template variables derived from a mention (and optionally the rule)."""
    return {
        "author_username": mention.author_handle,
        "author_name": mention.author_display_name or mention.author_handle,
        "mention_text": (mention.text or "")[:MENTION_TEXT_LIMIT],
        "mention_id": mention.id,
        "sentiment": mention.sentiment.value if mention.sentiment else None,
        "priority_level": mention.priority_level.value if mention.priority_level else None,
        "rule_name": rule.name if rule else None,
    }


def truncate_reply(text: str, max_length: int) -> str:
    """Trim a reply to the platform limit, marking the cut with an ellipsis."""
    if len(text) <= max_length:
        return text
    if max_length <= 1:
        return text[:max_length]
    return text[: max_length - 1].rstrip() + "…"
