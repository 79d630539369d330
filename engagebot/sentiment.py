"""Lexicon-based sentiment classification for mention text."""

import logging
from dataclasses import dataclass
from typing import Iterable

from vaderSentiment.vaderSentiment import SentimentIntensityAnalyzer

from .models import Sentiment

logger = logging.getLogger(__name__)

# VADER's conventional compound thresholds
POSITIVE_THRESHOLD = 0.05
NEGATIVE_THRESHOLD = -0.05


@dataclass
class SentimentAnalysis:
    """Label plus the raw compound score it was derived from."""

    sentiment: Sentiment
    confidence: float
    compound: float


class SentimentClassifier:
    """Classify text as positive, neutral or negative.

    Pure and deterministic for a given VADER lexicon; never raises.
    """

    def __init__(self, analyzer: SentimentIntensityAnalyzer | None = None) -> None:
        self.analyzer = analyzer or SentimentIntensityAnalyzer()

    def analyze(self, text: str) -> SentimentAnalysis:
        """Analyze sentiment of text."""
        if not text or not text.strip():
            return SentimentAnalysis(Sentiment.NEUTRAL, 0.0, 0.0)

        try:
            compound = float(self.analyzer.polarity_scores(text)["compound"])
        except Exception as e:
            logger.warning("Sentiment analysis failed, defaulting to neutral: %s", e)
            return SentimentAnalysis(Sentiment.NEUTRAL, 0.0, 0.0)

        if compound >= POSITIVE_THRESHOLD:
            sentiment = Sentiment.POSITIVE
        elif compound <= NEGATIVE_THRESHOLD:
            sentiment = Sentiment.NEGATIVE
        else:
            sentiment = Sentiment.NEUTRAL

        return SentimentAnalysis(sentiment, min(abs(compound), 1.0), compound)

    def classify(self, text: str) -> Sentiment:
        """Return only the sentiment label for text."""
        return self.analyze(text).sentiment

    @staticmethod
    def distribution(analyses: Iterable[SentimentAnalysis]) -> dict[str, int]:
        """Count analyses per label."""
        counts = {s.value: 0 for s in Sentiment}
        total = 0
        for analysis in analyses:
            counts[analysis.sentiment.value] += 1
            total += 1
        counts["total"] = total
        return counts
