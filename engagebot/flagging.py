"""Decide which mentions need human review."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .config import FlaggingConfig
from .models import Mention, PriorityLevel, normalize_terms
from .orm.base import as_utc, utcnow

PRIORITY_REASON = "priority_escalation"
SLA_REASON = "sla_breach"
KEYWORD_REASON = "escalation_keyword"
MANUAL_REASON = "manual"
HUMAN_ESCALATION_REASON = "human_escalation"


@dataclass
class FlagDecision:
    """Whether a mention is flagged, and every reason that applies."""

    is_flagged: bool
    reasons: list[str] = field(default_factory=list)


def merge_reasons(existing: Iterable[str], new: Iterable[str]) -> list[str]:
    """Append new reasons to existing ones, skipping duplicates."""
    merged = list(existing)
    for reason in new:
        if reason not in merged:
            merged.append(reason)
    return merged


class FlaggingEngine:
    """Flag by priority level, unanswered staleness, or escalation keywords.

    Independent of auto-reply matching; both tracks run for every mention.
    """

    def __init__(self, config: Optional[FlaggingConfig] = None) -> None:
        self.config = config or FlaggingConfig()
        self.escalation_keywords = normalize_terms(self.config.escalation_keywords)

    def is_stale(self, mention: Mention, now: datetime) -> bool:
        """True when the mention has waited longer than the SLA without a reply."""
        if mention.is_replied:
            return False
        age = as_utc(now) - as_utc(mention.created_at)
        return age > timedelta(minutes=self.config.sla_minutes)

    def evaluate(self, mention: Mention, now: Optional[datetime] = None) -> FlagDecision:
        """Collect flag reasons for a mention."""
        now = now or utcnow()
        reasons: list[str] = []

        if mention.priority_level in (PriorityLevel.HIGH, PriorityLevel.CRITICAL):
            reasons.append(f"{PRIORITY_REASON}:{mention.priority_level.value}")

        if self.is_stale(mention, now):
            reasons.append(f"{SLA_REASON}:{self.config.sla_minutes}m")

        lowered = (mention.text or "").lower()
        for keyword in self.escalation_keywords:
            if keyword.lower() in lowered:
                reasons.append(f"{KEYWORD_REASON}:{keyword}")

        return FlagDecision(is_flagged=bool(reasons), reasons=reasons)
