"""Tests for AnalyticsAggregator."""

from datetime import timedelta

import pytest

from engagebot.models import PriorityLevel, ReplyLogEntry, ReplyOutcome, Sentiment
from engagebot.services import AnalyticsAggregator, AnalyticsWindow, AuditLog
from engagebot.services.analytics_service import export_csv, snapshot_to_dict

from tests.conftest import NOW


async def seed(mention_service, make_mention):
    """Three mentions inside [NOW, NOW+2h), one outside, and their log entries."""
    audit = AuditLog()

    m1 = await make_mention("love it", ingested_at=NOW + timedelta(minutes=10))
    m1.sentiment = Sentiment.POSITIVE
    m1.priority_score = 10.0
    m1.priority_level = PriorityLevel.LOW
    await mention_service.save_mention(m1)
    await mention_service.mark_replied(m1.id, "r1", "Hi", "reply-1", NOW + timedelta(minutes=10))

    m2 = await make_mention("awful", ingested_at=NOW + timedelta(minutes=70))
    m2.sentiment = Sentiment.NEGATIVE
    m2.priority_score = 60.0
    m2.priority_level = PriorityLevel.HIGH
    m2.is_flagged = True
    m2.flag_reasons = ["priority_escalation:high"]
    await mention_service.save_mention(m2)

    m3 = await make_mention("unclassified", ingested_at=NOW + timedelta(minutes=20))
    await make_mention("later", ingested_at=NOW + timedelta(hours=3))

    entries = [
        ReplyLogEntry(m1.id, ReplyOutcome.MATCHED_SENT, "r1", "support", 1.0, created_at=NOW + timedelta(minutes=10)),
        ReplyLogEntry(m3.id, ReplyOutcome.NO_MATCH, created_at=NOW + timedelta(minutes=20)),
        ReplyLogEntry(m3.id, ReplyOutcome.MATCHED_FAILED, "r2", "billing", 0.25, created_at=NOW + timedelta(minutes=25)),
        ReplyLogEntry(m2.id, ReplyOutcome.FLAGGED, created_at=NOW + timedelta(minutes=70)),
        ReplyLogEntry(m2.id, ReplyOutcome.MATCHED_THROTTLED, "r1", "support", 0.5, created_at=NOW + timedelta(minutes=70)),
        ReplyLogEntry(m2.id, ReplyOutcome.MATCHED_SENT, "r1", "support", 1.0, created_at=NOW + timedelta(hours=5)),
    ]
    for entry in entries:
        await audit.record(entry)


class TestAnalyticsAggregator:
    """Test snapshot computation."""

    def setup_method(self):
        """Set up test fixtures."""
        self.aggregator = AnalyticsAggregator()
        self.window = AnalyticsWindow(NOW, NOW + timedelta(hours=2), "hour")

    @pytest.mark.asyncio
    async def test_summary_totals(self, db, mention_service, make_mention):
        """Test counts and rates over the window."""
        await seed(mention_service, make_mention)

        snapshot = await self.aggregator.summarize(self.window)

        assert snapshot.total_mentions == 3
        assert snapshot.sentiment_distribution == {
            "positive": 1,
            "neutral": 1,
            "negative": 1,
            "total": 3,
        }
        assert snapshot.replies_sent == 1
        assert snapshot.flagged_count == 1
        assert snapshot.response_rate == 33.33
        assert snapshot.avg_priority == 35.0
        assert snapshot.outcome_counts == {
            "matched_sent": 1,
            "matched_throttled": 1,
            "matched_failed": 1,
            "no_match": 1,
            "flagged": 1,
        }

    @pytest.mark.asyncio
    async def test_rule_performance(self, db, mention_service, make_mention):
        """Test per-rule rollups ordered by matches."""
        await seed(mention_service, make_mention)

        snapshot = await self.aggregator.summarize(self.window)
        support, billing = snapshot.rule_performance

        assert (support.rule_id, support.rule_name) == ("r1", "support")
        assert (support.matches, support.sent, support.throttled, support.failed) == (2, 1, 1, 0)
        assert support.success_rate == 50.0
        assert support.avg_confidence == 0.75
        # One positive and one negative mention: ties resolve to positive
        assert support.dominant_sentiment == Sentiment.POSITIVE

        assert (billing.rule_id, billing.matches, billing.failed) == ("r2", 1, 1)
        assert billing.success_rate == 0.0
        assert billing.dominant_sentiment == Sentiment.NEUTRAL

    @pytest.mark.asyncio
    async def test_time_series_zero_filled(self, db, mention_service, make_mention):
        """Test hourly buckets cover the whole window."""
        await seed(mention_service, make_mention)

        snapshot = await self.aggregator.summarize(self.window)
        first, second = snapshot.time_series

        assert first.bucket_start == NOW
        assert (first.mentions, first.replies, first.flagged) == (2, 1, 0)
        assert (first.positive, first.neutral, first.negative) == (1, 1, 0)
        assert second.bucket_start == NOW + timedelta(hours=1)
        assert (second.mentions, second.flagged, second.negative) == (1, 1, 1)

    @pytest.mark.asyncio
    async def test_daily_buckets_for_empty_window(self, db):
        """Test an empty window still yields one zero point per day."""
        window = AnalyticsWindow(NOW - timedelta(days=2), NOW + timedelta(days=1), "day")

        snapshot = await self.aggregator.summarize(window)

        assert snapshot.total_mentions == 0
        assert snapshot.response_rate == 0.0
        assert snapshot.avg_priority == 0.0
        assert snapshot.rule_performance == []
        assert [p.bucket_start.day for p in snapshot.time_series] == [1, 2, 3, 4]
        assert all(p.mentions == 0 for p in snapshot.time_series)

    @pytest.mark.asyncio
    async def test_summarize_is_idempotent(self, db, mention_service, make_mention):
        """Test repeated summaries over unchanged data are identical."""
        await seed(mention_service, make_mention)

        first = await self.aggregator.summarize(self.window)
        second = await self.aggregator.summarize(self.window)

        assert first == second
        assert snapshot_to_dict(first) == snapshot_to_dict(second)

    @pytest.mark.asyncio
    async def test_export_csv(self, db, mention_service, make_mention):
        """Test the CSV export of the time series."""
        await seed(mention_service, make_mention)

        snapshot = await self.aggregator.summarize(self.window)

        assert export_csv(snapshot).splitlines() == [
            "Date,Mentions,Replies,Flagged,Positive,Negative,Neutral",
            "2024-06-03 12:00,2,1,0,1,0,1",
            "2024-06-03 13:00,1,0,1,0,1,0",
        ]

    def test_snapshot_to_dict_is_json_ready(self):
        """Test datetimes and enums are converted."""
        from engagebot.services.analytics_service import AnalyticsSnapshot, RulePerformance

        snapshot = AnalyticsSnapshot(
            window=self.window,
            total_mentions=0,
            sentiment_distribution={},
            replies_sent=0,
            flagged_count=0,
            response_rate=0.0,
            avg_priority=0.0,
            outcome_counts={},
            rule_performance=[RulePerformance("r1", "x", dominant_sentiment=Sentiment.NEGATIVE)],
        )
        data = snapshot_to_dict(snapshot)
        assert data["window"]["start"] == NOW.isoformat()
        assert data["rule_performance"][0]["dominant_sentiment"] == "negative"

    def test_invalid_window(self):
        """Test windows must have end after start."""
        with pytest.raises(ValueError):
            AnalyticsWindow(NOW, NOW)
        with pytest.raises(ValueError):
            AnalyticsWindow(NOW, NOW + timedelta(hours=1), "week")
