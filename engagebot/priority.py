"""Priority scoring from sentiment and audience size."""

from dataclasses import dataclass, field
from typing import Optional

from .config import PriorityConfig
from .models import Mention, PriorityLevel, Sentiment


@dataclass
class PriorityScore:
    """Numeric score (0-100), its level and human-readable reasons."""

    score: float
    level: PriorityLevel
    reasons: list[str] = field(default_factory=list)


class PriorityScorer:
    """Derive a priority score and level for a mention.

    Monotonic in audience size for a fixed sentiment, and in
    positive -> neutral -> negative for a fixed audience size.
    """

    def __init__(self, config: Optional[PriorityConfig] = None) -> None:
        self.config = config or PriorityConfig()

    def _sentiment_weight(self, sentiment: Optional[Sentiment]) -> float:
        if sentiment == Sentiment.NEGATIVE:
            return self.config.negative_weight
        if sentiment == Sentiment.POSITIVE:
            return self.config.positive_weight
        return self.config.neutral_weight

    def level_for(self, score: float) -> PriorityLevel:
        """Map a score onto a level using the configured cut-offs."""
        if score >= self.config.critical_cutoff:
            return PriorityLevel.CRITICAL
        if score >= self.config.high_cutoff:
            return PriorityLevel.HIGH
        if score >= self.config.medium_cutoff:
            return PriorityLevel.MEDIUM
        return PriorityLevel.LOW

    def calculate(self, sentiment: Optional[Sentiment], audience_size: int) -> PriorityScore:
        """Score a (sentiment, audience size) pair."""
        audience = max(int(audience_size or 0), 0)
        sentiment = sentiment or Sentiment.NEUTRAL
        reasons = [f"{sentiment.value} sentiment"]

        influence = min(audience / 1000 * self.config.influence_weight, self.config.influence_cap)
        score = min(max(self._sentiment_weight(sentiment) + influence, 0.0), 100.0)
        level = self.level_for(score)

        if audience > self.config.audience_threshold:
            level = level.step_up()
            reasons.append(f"high influence author ({audience:,} followers)")

        return PriorityScore(score=round(score, 2), level=level, reasons=reasons)

    def score(self, mention: Mention) -> tuple[float, PriorityLevel]:
        """Return (priority score, priority level) for a mention."""
        result = self.calculate(mention.sentiment, mention.audience_size)
        return result.score, result.level
