"""Per-rule rate limiting with rolling hourly/daily windows and a cooldown."""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select

from ..models import AutoReplyRule, ThrottleDecision, ThrottleReason, ThrottleStatus
from ..orm.base import as_utc, utcnow
from ..orm.throttle_event import ThrottleEvent
from .database import get_db_service

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(hours=24)


class ThrottleGuard:
    """Check-and-reserve send slots for rules.

    Each rule's check runs under its own lock and inside one transaction, so
    concurrent dispatches for the same rule cannot both see spare capacity.
    """

    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @staticmethod
    def _evaluate(
        rule: AutoReplyRule, sent_times: list[datetime], now: datetime
    ) -> tuple[Optional[ThrottleReason], Optional[datetime]]:
        """Return the first limit that denies a send at ``now``, with its retry time."""
        hourly = sorted(t for t in sent_times if t > now - HOUR)
        daily = sorted(t for t in sent_times if t > now - DAY)

        # A limit of 0 never frees up, so there is no retry time
        if len(hourly) >= rule.max_per_hour:
            retry_at = hourly[len(hourly) - rule.max_per_hour] + HOUR if rule.max_per_hour else None
            return ThrottleReason.HOURLY_LIMIT, retry_at

        if len(daily) >= rule.max_per_day:
            retry_at = daily[len(daily) - rule.max_per_day] + DAY if rule.max_per_day else None
            return ThrottleReason.DAILY_LIMIT, retry_at

        if daily and rule.cooldown_minutes > 0:
            cooldown = timedelta(minutes=rule.cooldown_minutes)
            if now - daily[-1] < cooldown:
                return ThrottleReason.COOLDOWN, daily[-1] + cooldown

        return None, None

    async def check_and_reserve(
        self,
        rule: AutoReplyRule,
        now: Optional[datetime] = None,
        mention_id: Optional[str] = None,
    ) -> ThrottleDecision:
        """Deny, or record a send at ``now`` and allow it."""
        now = as_utc(now) or utcnow()
        db = get_db_service()

        async with self._locks[rule.id]:
            async with db.session() as session:
                # Prune outside the daily window; the hourly window is a subset
                await session.execute(
                    delete(ThrottleEvent).where(
                        ThrottleEvent.rule_id == rule.id,
                        ThrottleEvent.sent_at <= now - DAY,
                    )
                )
                result = await session.execute(
                    select(ThrottleEvent.sent_at).where(ThrottleEvent.rule_id == rule.id)
                )
                sent_times = [as_utc(t) for t in result.scalars().all()]

                reason, retry_at = self._evaluate(rule, sent_times, now)
                if reason is not None:
                    await session.commit()
                    logger.info("Rule %s throttled: %s", rule.name, reason.value)
                    return ThrottleDecision(allowed=False, reason=reason, retry_at=retry_at)

                event = ThrottleEvent(rule_id=rule.id, sent_at=now, mention_id=mention_id)
                session.add(event)
                await session.commit()
                return ThrottleDecision(allowed=True, reservation_id=event.id)

    async def release(self, reservation_id: str) -> None:
        """Give back a reservation whose send did not happen."""
        db = get_db_service()
        async with db.session() as session:
            await session.execute(delete(ThrottleEvent).where(ThrottleEvent.id == reservation_id))
            await session.commit()

    async def status(self, rule: AutoReplyRule, now: Optional[datetime] = None) -> ThrottleStatus:
        """Current window usage for a rule, without modifying anything."""
        now = as_utc(now) or utcnow()
        db = get_db_service()
        async with db.session() as session:
            result = await session.execute(
                select(ThrottleEvent.sent_at).where(
                    ThrottleEvent.rule_id == rule.id,
                    ThrottleEvent.sent_at > now - DAY,
                )
            )
            sent_times = [as_utc(t) for t in result.scalars().all()]

        hourly = [t for t in sent_times if t > now - HOUR]
        _, retry_at = self._evaluate(rule, sent_times, now)
        return ThrottleStatus(
            rule_id=rule.id,
            sent_last_hour=len(hourly),
            sent_last_day=len(sent_times),
            remaining_hour=max(0, rule.max_per_hour - len(hourly)),
            remaining_day=max(0, rule.max_per_day - len(sent_times)),
            last_sent_at=max(sent_times) if sent_times else None,
            next_available_at=retry_at,
        )

    async def cleanup_old_events(self, now: Optional[datetime] = None) -> int:
        """Delete events that fell out of every window."""
        now = as_utc(now) or utcnow()
        db = get_db_service()
        async with db.session() as session:
            result = await session.execute(
                delete(ThrottleEvent).where(ThrottleEvent.sent_at <= now - DAY)
            )
            await session.commit()
            return result.rowcount or 0
