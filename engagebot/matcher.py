"""Match mention text against auto-reply rules.

Keywords and phrases are both matched as case-insensitive substrings; no
token boundaries and no diacritic normalization. The same function backs live
processing and the rule test endpoint.

Example:
    >>> rule = AutoReplyRule(id="r1", name="login", response_template="Hi",
    ...                      keywords=["login", "password"])
    >>> [m.confidence for m in RuleMatcher().match("login broken", [rule])]
    [0.5]
"""

from typing import Iterable, Optional

from .models import AutoReplyRule, MatchType, RuleMatch, Sentiment


class RuleMatcher:
    """Evaluate rules and rank the ones that qualify."""

    @staticmethod
    def passes_sentiment_filter(rule: AutoReplyRule, sentiment: Optional[Sentiment]) -> bool:
        """Empty filters allow everything; an unknown sentiment skips the filter."""
        if not rule.sentiment_filter or sentiment is None:
            return True
        return Sentiment(sentiment) in rule.sentiment_filter

    def evaluate_rule(
        self,
        rule: AutoReplyRule,
        text: str,
        sentiment: Optional[Sentiment] = None,
    ) -> RuleMatch:
        """Evaluate a single rule against text.

        Args:
            rule: Rule to evaluate. ``is_active`` is not considered here.
            text: Mention body.
            sentiment: Mention sentiment, or None to skip the sentiment filter.

        Returns:
            A RuleMatch; ``matched`` is False when the rule is not a candidate.
        """
        if not self.passes_sentiment_filter(rule, sentiment):
            return RuleMatch(rule=rule, matched=False)

        lowered = (text or "").lower()
        matched_keywords = [k for k in rule.keywords if k.lower() in lowered]
        matched_phrases = [p for p in rule.phrases if p.lower() in lowered]

        configured = rule.term_count
        hits = len(matched_keywords) + len(matched_phrases)

        # Rules without terms never match
        if configured == 0:
            matched = False
        elif rule.match_type == MatchType.ALL:
            matched = hits == configured
        else:
            matched = hits > 0

        confidence = 0.0
        if matched:
            confidence = 1.0 if rule.match_type == MatchType.ALL else hits / configured

        return RuleMatch(
            rule=rule,
            matched=matched,
            matched_keywords=matched_keywords,
            matched_phrases=matched_phrases,
            confidence=confidence,
        )

    def match(
        self,
        text: str,
        rules: Iterable[AutoReplyRule],
        sentiment: Optional[Sentiment] = None,
    ) -> list[RuleMatch]:
        """Return candidate matches, best first.

        Only active rules are considered. Candidates are ordered by priority
        descending, then by creation order ascending.
        """
        active = sorted(
            (rule for rule in rules if rule.is_active),
            key=lambda rule: rule.sequence,
        )
        candidates = [
            result
            for result in (self.evaluate_rule(rule, text, sentiment) for rule in active)
            if result.matched
        ]
        # sorted() is stable, so equal priorities keep creation order
        return sorted(candidates, key=lambda result: -result.rule.priority)

    def best_match(
        self,
        text: str,
        rules: Iterable[AutoReplyRule],
        sentiment: Optional[Sentiment] = None,
    ) -> Optional[RuleMatch]:
        """Head of the candidate list, if any."""
        candidates = self.match(text, rules, sentiment)
        return candidates[0] if candidates else None
