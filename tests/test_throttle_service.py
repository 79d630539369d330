"""Tests for ThrottleGuard."""

import asyncio
from datetime import timedelta

import pytest

from engagebot.models import AutoReplyRule, ThrottleReason
from engagebot.services import ThrottleGuard

from tests.conftest import NOW


def make_rule(**fields) -> AutoReplyRule:
    fields.setdefault("max_per_hour", 10)
    fields.setdefault("max_per_day", 50)
    fields.setdefault("cooldown_minutes", 0)
    return AutoReplyRule(id="rule-1", name="support", response_template="Hi", keywords=["help"], **fields)


class TestThrottleGuard:
    """Test rolling-window throttling."""

    def setup_method(self):
        """Set up test fixtures."""
        self.guard = ThrottleGuard()

    @pytest.mark.asyncio
    async def test_hourly_limit(self, db):
        """Test the third send within an hour is denied."""
        rule = make_rule(max_per_hour=2)

        first = await self.guard.check_and_reserve(rule, NOW)
        second = await self.guard.check_and_reserve(rule, NOW + timedelta(minutes=1))
        third = await self.guard.check_and_reserve(rule, NOW + timedelta(minutes=2))

        assert first.allowed and second.allowed
        assert first.reservation_id and first.reservation_id != second.reservation_id
        assert not third.allowed
        assert third.reason == ThrottleReason.HOURLY_LIMIT
        assert third.retry_at == NOW + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_hourly_window_rolls(self, db):
        """Test capacity returns once the oldest send is an hour old."""
        rule = make_rule(max_per_hour=1)
        assert (await self.guard.check_and_reserve(rule, NOW)).allowed
        assert not (await self.guard.check_and_reserve(rule, NOW + timedelta(minutes=59))).allowed
        assert (await self.guard.check_and_reserve(rule, NOW + timedelta(minutes=61))).allowed

    @pytest.mark.asyncio
    async def test_daily_limit(self, db):
        """Test the daily cap applies across hours."""
        rule = make_rule(max_per_hour=5, max_per_day=2)
        assert (await self.guard.check_and_reserve(rule, NOW)).allowed
        assert (await self.guard.check_and_reserve(rule, NOW + timedelta(hours=2))).allowed

        denied = await self.guard.check_and_reserve(rule, NOW + timedelta(hours=4))
        assert denied.reason == ThrottleReason.DAILY_LIMIT
        assert denied.retry_at == NOW + timedelta(hours=24)

        assert (await self.guard.check_and_reserve(rule, NOW + timedelta(hours=25))).allowed

    @pytest.mark.asyncio
    async def test_cooldown(self, db):
        """Test sends closer than the cooldown are denied."""
        rule = make_rule(cooldown_minutes=5)
        assert (await self.guard.check_and_reserve(rule, NOW)).allowed

        denied = await self.guard.check_and_reserve(rule, NOW + timedelta(minutes=3))
        assert denied.reason == ThrottleReason.COOLDOWN
        assert denied.retry_at == NOW + timedelta(minutes=5)

        assert (await self.guard.check_and_reserve(rule, NOW + timedelta(minutes=5))).allowed

    @pytest.mark.asyncio
    async def test_zero_limit_always_denies(self, db):
        """Test a limit of 0 disables sending."""
        rule = make_rule(max_per_hour=0)
        decision = await self.guard.check_and_reserve(rule, NOW)
        assert decision.reason == ThrottleReason.HOURLY_LIMIT
        assert decision.retry_at is None

    @pytest.mark.asyncio
    async def test_release_returns_capacity(self, db):
        """Test a released reservation no longer counts."""
        rule = make_rule(max_per_hour=1)
        decision = await self.guard.check_and_reserve(rule, NOW)
        await self.guard.release(decision.reservation_id)

        status = await self.guard.status(rule, NOW)
        assert status.sent_last_hour == 0
        assert (await self.guard.check_and_reserve(rule, NOW)).allowed

    @pytest.mark.asyncio
    async def test_rules_are_independent(self, db):
        """Test one rule's sends do not throttle another."""
        rule = make_rule(max_per_hour=1)
        other = AutoReplyRule(id="rule-2", name="other", response_template="x", keywords=["y"], max_per_hour=1, cooldown_minutes=0)
        assert (await self.guard.check_and_reserve(rule, NOW)).allowed
        assert (await self.guard.check_and_reserve(other, NOW)).allowed

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_exceed_limit(self, db):
        """Test concurrent attempts for one rule cannot overshoot."""
        rule = make_rule(max_per_hour=3)
        decisions = await asyncio.gather(
            *(self.guard.check_and_reserve(rule, NOW) for _ in range(10))
        )
        assert sum(d.allowed for d in decisions) == 3
        assert all(d.reason == ThrottleReason.HOURLY_LIMIT for d in decisions if not d.allowed)

    @pytest.mark.asyncio
    async def test_status_is_read_only(self, db):
        """Test status reports usage without reserving."""
        rule = make_rule(max_per_hour=2, max_per_day=5)
        await self.guard.check_and_reserve(rule, NOW)

        status = await self.guard.status(rule, NOW + timedelta(minutes=1))
        again = await self.guard.status(rule, NOW + timedelta(minutes=1))

        assert status == again
        assert status.sent_last_hour == 1
        assert status.remaining_hour == 1
        assert status.remaining_day == 4
        assert status.last_sent_at == NOW

    @pytest.mark.asyncio
    async def test_cleanup_old_events(self, db):
        """Test events past the daily window are removed."""
        rule = make_rule()
        await self.guard.check_and_reserve(rule, NOW)
        await self.guard.check_and_reserve(rule, NOW + timedelta(hours=20))

        removed = await self.guard.cleanup_old_events(NOW + timedelta(hours=25))
        assert removed == 1
