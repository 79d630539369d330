"""Tests for PriorityScorer."""

from datetime import datetime, timezone

import pytest

from engagebot.config import PriorityConfig
from engagebot.models import Mention, PriorityLevel, Sentiment
from engagebot.priority import PriorityScorer


class TestPriorityScorer:
    """Test priority scoring."""

    def setup_method(self):
        """Set up test fixtures."""
        self.scorer = PriorityScorer()

    def test_negative_high_audience_is_critical(self):
        """Test a negative mention from a 50k-follower author."""
        result = self.scorer.calculate(Sentiment.NEGATIVE, 50_000)
        assert result.score == 60.0
        assert result.level == PriorityLevel.CRITICAL
        assert "high influence author (50,000 followers)" in result.reasons

    def test_positive_small_audience_is_low(self):
        """Test a positive mention from a small account."""
        result = self.scorer.calculate(Sentiment.POSITIVE, 100)
        assert result.level == PriorityLevel.LOW
        assert result.score == pytest.approx(10.1)

    def test_threshold_is_exclusive(self):
        """Test that exactly the threshold audience does not step up."""
        at = self.scorer.calculate(Sentiment.NEUTRAL, 1000)
        above = self.scorer.calculate(Sentiment.NEUTRAL, 1001)
        assert at.level == PriorityLevel.LOW
        assert above.level == PriorityLevel.MEDIUM

    def test_unclassified_scores_as_neutral(self):
        """Test that a missing sentiment uses the neutral weight."""
        assert self.scorer.calculate(None, 0).score == self.scorer.calculate(Sentiment.NEUTRAL, 0).score

    def test_negative_audience_clamped(self):
        """Test that a negative audience size is treated as zero."""
        assert self.scorer.calculate(Sentiment.NEUTRAL, -5).score == 30.0

    @pytest.mark.parametrize("sentiment", list(Sentiment))
    def test_monotonic_in_audience(self, sentiment):
        """Test score and level never drop as audience grows."""
        previous = None
        for audience in (0, 500, 1000, 1001, 5000, 20_000, 1_000_000):
            result = self.scorer.calculate(sentiment, audience)
            if previous is not None:
                assert result.score >= previous.score
                assert result.level.rank >= previous.level.rank
            previous = result

    @pytest.mark.parametrize("audience", [0, 999, 1500, 80_000])
    def test_monotonic_in_sentiment(self, audience):
        """Test positive <= neutral <= negative for a fixed audience."""
        scores = [
            self.scorer.calculate(s, audience)
            for s in (Sentiment.POSITIVE, Sentiment.NEUTRAL, Sentiment.NEGATIVE)
        ]
        assert scores[0].score <= scores[1].score <= scores[2].score
        assert scores[0].level.rank <= scores[1].level.rank <= scores[2].level.rank

    def test_step_up_caps_at_critical(self):
        """Test that stepping up from critical stays critical."""
        config = PriorityConfig(negative_weight=90.0)
        result = PriorityScorer(config).calculate(Sentiment.NEGATIVE, 5000)
        assert result.level == PriorityLevel.CRITICAL

    def test_score_mention(self):
        """Test the (score, level) tuple contract."""
        mention = Mention(
            id="m1",
            author_handle="bob",
            text="",
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            sentiment=Sentiment.NEGATIVE,
            audience_size=50_000,
        )
        assert self.scorer.score(mention) == (60.0, PriorityLevel.CRITICAL)

    def test_invalid_cutoffs_rejected(self):
        """Test config validation of cut-off ordering."""
        with pytest.raises(ValueError):
            PriorityConfig(medium_cutoff=70.0, high_cutoff=60.0)
