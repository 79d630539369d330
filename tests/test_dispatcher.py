"""Tests for ResponseDispatcher."""

from datetime import timedelta

import pytest

from engagebot.config import EngineConfig
from engagebot.matcher import RuleMatcher
from engagebot.models import ReplyOutcome, ThrottleReason
from engagebot.services import AuditLog, ResponseDispatcher, ThrottleGuard

from tests.conftest import NOW, RecordingSender


@pytest.fixture
def audit_log():
    return AuditLog()


@pytest.fixture
def throttle_guard():
    return ThrottleGuard()


def build(mention_service, throttle_guard, audit_log, sender, **engine) -> ResponseDispatcher:
    return ResponseDispatcher(mention_service, throttle_guard, audit_log, sender, EngineConfig(**engine))


class TestResponseDispatcher:
    """Test rendering, reservation, throttling and sending."""

    @pytest.mark.asyncio
    async def test_successful_send(self, db, mention_service, throttle_guard, audit_log, sender, make_mention, make_rule):
        """Test a send marks the mention replied and logs matched_sent."""
        mention = await make_mention("login broken", author_display_name="Gina")
        rule = await make_rule(response_template="Hi {{author_name}}, re: {{mention_text}} {{ticket}}")
        match = RuleMatcher().evaluate_rule(rule, mention.text)
        dispatcher = build(mention_service, throttle_guard, audit_log, sender)

        result = await dispatcher.dispatch(mention, match, NOW)

        assert result.outcome == ReplyOutcome.MATCHED_SENT
        assert result.rendered_text == "Hi Gina, re: login broken {{ticket}}"
        assert result.unresolved_variables == ["ticket"]
        assert sender.calls == [(mention.id, result.rendered_text)]

        stored = await mention_service.get_mention(mention.id)
        assert stored.is_replied
        assert stored.reply.rule_id == rule.id
        assert stored.reply.reply_id == result.reply_id

        [entry] = await audit_log.list_entries(mention_id=mention.id)
        assert entry.outcome == ReplyOutcome.MATCHED_SENT
        assert entry.rule_name == rule.name
        assert entry.matched_keywords == ["login"]
        assert entry.confidence == 1.0

    @pytest.mark.asyncio
    async def test_second_dispatch_is_duplicate(self, db, mention_service, throttle_guard, audit_log, sender, make_mention, make_rule):
        """Test a mention is never sent twice."""
        mention = await make_mention("login broken")
        rule = await make_rule()
        match = RuleMatcher().evaluate_rule(rule, mention.text)
        dispatcher = build(mention_service, throttle_guard, audit_log, sender)

        await dispatcher.dispatch(mention, match, NOW)
        again = await dispatcher.dispatch(mention, match, NOW)

        assert again.duplicate
        assert again.outcome is None
        assert len(sender.calls) == 1
        assert len(await audit_log.list_entries(mention_id=mention.id)) == 1

    @pytest.mark.asyncio
    async def test_throttled(self, db, mention_service, throttle_guard, audit_log, sender, make_mention, make_rule):
        """Test a denied reservation logs matched_throttled and frees the mention."""
        mention = await make_mention("login broken")
        rule = await make_rule(max_per_hour=0)
        match = RuleMatcher().evaluate_rule(rule, mention.text)
        dispatcher = build(mention_service, throttle_guard, audit_log, sender)

        result = await dispatcher.dispatch(mention, match, NOW)

        assert result.outcome == ReplyOutcome.MATCHED_THROTTLED
        assert result.throttle_reason == ThrottleReason.HOURLY_LIMIT
        assert sender.calls == []
        assert not (await mention_service.get_mention(mention.id)).is_replied
        assert await mention_service.reserve_reply(mention.id)

        [entry] = await audit_log.list_entries(mention_id=mention.id)
        assert entry.outcome == ReplyOutcome.MATCHED_THROTTLED
        assert entry.error_message == "hourly_limit"

    @pytest.mark.asyncio
    async def test_send_failure_releases_everything(self, db, mention_service, throttle_guard, audit_log, make_mention, make_rule):
        """Test a failed send leaves the mention retryable and the quota untouched."""
        mention = await make_mention("login broken")
        rule = await make_rule(max_per_hour=1)
        match = RuleMatcher().evaluate_rule(rule, mention.text)
        sender = RecordingSender(fail=True)
        dispatcher = build(mention_service, throttle_guard, audit_log, sender)

        result = await dispatcher.dispatch(mention, match, NOW)

        assert result.outcome == ReplyOutcome.MATCHED_FAILED
        assert result.error == "platform unavailable"
        assert not (await mention_service.get_mention(mention.id)).is_replied
        assert (await throttle_guard.status(rule, NOW)).sent_last_hour == 0

        [entry] = await audit_log.list_entries(mention_id=mention.id)
        assert entry.outcome == ReplyOutcome.MATCHED_FAILED
        assert entry.error_message == "platform unavailable"

        sender.fail = False
        retry = await dispatcher.dispatch(mention, match, NOW)
        assert retry.outcome == ReplyOutcome.MATCHED_SENT

    @pytest.mark.asyncio
    async def test_send_timeout(self, db, mention_service, throttle_guard, audit_log, make_mention, make_rule):
        """Test a hanging sender is cut off by the timeout."""
        mention = await make_mention("login broken")
        rule = await make_rule()
        match = RuleMatcher().evaluate_rule(rule, mention.text)
        dispatcher = build(
            mention_service, throttle_guard, audit_log, RecordingSender(delay=5), send_timeout=0.05
        )

        result = await dispatcher.dispatch(mention, match, NOW)

        assert result.outcome == ReplyOutcome.MATCHED_FAILED
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_reply_truncated(self, db, mention_service, throttle_guard, audit_log, sender, make_mention, make_rule):
        """Test replies are cut to the configured length."""
        mention = await make_mention("login broken")
        rule = await make_rule(response_template="x" * 50)
        match = RuleMatcher().evaluate_rule(rule, mention.text)
        dispatcher = build(mention_service, throttle_guard, audit_log, sender, max_reply_length=10)

        result = await dispatcher.dispatch(mention, match, NOW)
        assert len(result.rendered_text) == 10
        assert sender.calls[0][1] == result.rendered_text

    @pytest.mark.asyncio
    async def test_cooldown_reports_retry_time(self, db, mention_service, throttle_guard, audit_log, sender, make_mention, make_rule):
        """Test a cooldown denial says when the rule frees up."""
        first = await make_mention("login broken")
        second = await make_mention("login still broken")
        rule = await make_rule(cooldown_minutes=10)
        dispatcher = build(mention_service, throttle_guard, audit_log, sender)

        await dispatcher.dispatch(first, RuleMatcher().evaluate_rule(rule, first.text), NOW)
        result = await dispatcher.dispatch(
            second, RuleMatcher().evaluate_rule(rule, second.text), NOW + timedelta(minutes=1)
        )

        assert result.throttle_reason == ThrottleReason.COOLDOWN
        assert result.retry_at == NOW + timedelta(minutes=10)
