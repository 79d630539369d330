"""Recomputable rollups over mentions and the audit log."""

import csv
import io
import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal, Optional

from ..models import Mention, ReplyLogEntry, ReplyOutcome, Sentiment
from ..orm.base import as_utc
from .audit_service import AuditLog
from .mention_service import MentionService

logger = logging.getLogger(__name__)

Granularity = Literal["hour", "day"]

MAX_BUCKETS = 5000

CSV_COLUMNS = ["Date", "Mentions", "Replies", "Flagged", "Positive", "Negative", "Neutral"]

_MATCH_OUTCOMES = (
    ReplyOutcome.MATCHED_SENT,
    ReplyOutcome.MATCHED_THROTTLED,
    ReplyOutcome.MATCHED_FAILED,
)

_SENTIMENT_ORDER = [Sentiment.POSITIVE, Sentiment.NEUTRAL, Sentiment.NEGATIVE]


@dataclass(frozen=True)
class AnalyticsWindow:
    """Half-open time window [start, end)."""

    start: datetime
    end: datetime
    granularity: Granularity = "day"

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", as_utc(self.start))
        object.__setattr__(self, "end", as_utc(self.end))
        if self.end <= self.start:
            raise ValueError("window end must be after start")
        if self.granularity not in ("hour", "day"):
            raise ValueError(f"unsupported granularity: {self.granularity}")


@dataclass
class RulePerformance:
    rule_id: str
    rule_name: Optional[str]
    matches: int = 0
    sent: int = 0
    throttled: int = 0
    failed: int = 0
    success_rate: float = 0.0
    avg_confidence: float = 0.0
    dominant_sentiment: Optional[Sentiment] = None


@dataclass
class TimeSeriesPoint:
    bucket_start: datetime
    mentions: int = 0
    replies: int = 0
    flagged: int = 0
    positive: int = 0
    negative: int = 0
    neutral: int = 0


@dataclass
class AnalyticsSnapshot:
    """Aggregate view of one window. Derived data, never stored."""

    window: AnalyticsWindow
    total_mentions: int
    sentiment_distribution: dict[str, int]
    replies_sent: int
    flagged_count: int
    response_rate: float
    avg_priority: float
    outcome_counts: dict[str, int]
    rule_performance: list[RulePerformance] = field(default_factory=list)
    time_series: list[TimeSeriesPoint] = field(default_factory=list)


def _bucket_floor(ts: datetime, granularity: Granularity) -> datetime:
    ts = ts.replace(minute=0, second=0, microsecond=0)
    if granularity == "day":
        ts = ts.replace(hour=0)
    return ts


def _bucket_step(granularity: Granularity) -> timedelta:
    return timedelta(hours=1) if granularity == "hour" else timedelta(days=1)


def _dominant(counter: Counter) -> Optional[Sentiment]:
    if not counter:
        return None
    # Most frequent wins; ties go to the first in positive, neutral, negative order
    return max(_SENTIMENT_ORDER, key=lambda s: (counter.get(s, 0), -_SENTIMENT_ORDER.index(s)))


class AnalyticsAggregator:
    """Compute AnalyticsSnapshots; reads only."""

    def __init__(
        self,
        mention_service: Optional[MentionService] = None,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self.mention_service = mention_service or MentionService()
        self.audit_log = audit_log or AuditLog()

    async def summarize(self, window: AnalyticsWindow) -> AnalyticsSnapshot:
        """Recompute the snapshot for ``window`` from stored mentions and log entries."""
        mentions = await self.mention_service.list_in_window(window.start, window.end)
        entries = await self.audit_log.list_entries(start=window.start, end=window.end)

        sentiment_counts = Counter(m.sentiment or Sentiment.NEUTRAL for m in mentions)
        distribution = {s.value: sentiment_counts.get(s, 0) for s in _SENTIMENT_ORDER}
        distribution["total"] = len(mentions)

        replies_sent = sum(1 for m in mentions if m.is_replied)
        flagged_count = sum(1 for m in mentions if m.is_flagged)
        scored = [m.priority_score for m in mentions if m.priority_score is not None]

        outcome_counts = Counter(e.outcome for e in entries)

        rule_performance = await self._rule_performance(entries)

        return AnalyticsSnapshot(
            window=window,
            total_mentions=len(mentions),
            sentiment_distribution=distribution,
            replies_sent=replies_sent,
            flagged_count=flagged_count,
            response_rate=round(replies_sent / len(mentions) * 100, 2) if mentions else 0.0,
            avg_priority=round(sum(scored) / len(scored), 2) if scored else 0.0,
            outcome_counts={o.value: outcome_counts.get(o, 0) for o in ReplyOutcome},
            rule_performance=rule_performance,
            time_series=self._time_series(window, mentions),
        )

    async def _rule_performance(self, entries: list[ReplyLogEntry]) -> list[RulePerformance]:
        matched = [e for e in entries if e.rule_id and e.outcome in _MATCH_OUTCOMES]
        mention_map = await self.mention_service.get_mentions(
            sorted({e.mention_id for e in matched})
        )

        stats: dict[str, RulePerformance] = {}
        confidences: dict[str, list[float]] = {}
        sentiments: dict[str, Counter] = {}

        for entry in matched:
            perf = stats.get(entry.rule_id)
            if perf is None:
                perf = stats[entry.rule_id] = RulePerformance(entry.rule_id, entry.rule_name)
                confidences[entry.rule_id] = []
                sentiments[entry.rule_id] = Counter()
            elif entry.rule_name:
                perf.rule_name = entry.rule_name

            perf.matches += 1
            if entry.outcome == ReplyOutcome.MATCHED_SENT:
                perf.sent += 1
            elif entry.outcome == ReplyOutcome.MATCHED_THROTTLED:
                perf.throttled += 1
            else:
                perf.failed += 1
            confidences[entry.rule_id].append(entry.confidence)

            mention = mention_map.get(entry.mention_id)
            if mention is not None:
                sentiments[entry.rule_id][mention.sentiment or Sentiment.NEUTRAL] += 1

        for rule_id, perf in stats.items():
            perf.success_rate = round(perf.sent / perf.matches * 100, 2)
            perf.avg_confidence = round(sum(confidences[rule_id]) / perf.matches, 4)
            perf.dominant_sentiment = _dominant(sentiments[rule_id])

        return sorted(stats.values(), key=lambda p: (-p.matches, p.rule_id))

    def _time_series(self, window: AnalyticsWindow, mentions: list[Mention]) -> list[TimeSeriesPoint]:
        step = _bucket_step(window.granularity)
        first = _bucket_floor(window.start, window.granularity)
        if (window.end - first) / step > MAX_BUCKETS:
            raise ValueError(
                f"window spans more than {MAX_BUCKETS} {window.granularity} buckets"
            )

        points: dict[datetime, TimeSeriesPoint] = {}
        cursor = first
        while cursor < window.end:
            points[cursor] = TimeSeriesPoint(bucket_start=cursor)
            cursor += step

        for mention in mentions:
            point = points.get(_bucket_floor(mention.created_at, window.granularity))
            if point is None:
                continue
            point.mentions += 1
            if mention.is_replied:
                point.replies += 1
            if mention.is_flagged:
                point.flagged += 1
            sentiment = mention.sentiment or Sentiment.NEUTRAL
            setattr(point, sentiment.value, getattr(point, sentiment.value) + 1)

        return list(points.values())


def snapshot_to_dict(snapshot: AnalyticsSnapshot) -> dict[str, Any]:
    """JSON-ready dict of a snapshot."""

    def _convert(value):
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Sentiment):
            return value.value
        if isinstance(value, dict):
            return {k: _convert(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_convert(v) for v in value]
        return value

    return _convert(asdict(snapshot))


def export_csv(snapshot: AnalyticsSnapshot) -> str:
    """The snapshot's time series as CSV."""
    date_format = "%Y-%m-%d %H:00" if snapshot.window.granularity == "hour" else "%Y-%m-%d"
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for point in snapshot.time_series:
        writer.writerow(
            [
                point.bucket_start.strftime(date_format),
                point.mentions,
                point.replies,
                point.flagged,
                point.positive,
                point.negative,
                point.neutral,
            ]
        )
    return buffer.getvalue()
