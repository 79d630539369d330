"""Render, reserve, throttle and send the winning auto-reply."""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from ..config import EngineConfig
from ..models import (
    DispatchResult,
    Mention,
    ReplyLogEntry,
    ReplyOutcome,
    RuleMatch,
    SendResult,
)
from ..orm.base import as_utc, utcnow
from ..sender import Sender
from ..templating import mention_variables, render_template, truncate_reply
from .audit_service import AuditLog
from .mention_service import MentionService
from .throttle_service import ThrottleGuard

logger = logging.getLogger(__name__)


class ResponseDispatcher:
    """Hand a matched rule's rendered response to the sender, at most once per mention."""

    def __init__(
        self,
        mention_service: MentionService,
        throttle_guard: ThrottleGuard,
        audit_log: AuditLog,
        sender: Sender,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.mention_service = mention_service
        self.throttle_guard = throttle_guard
        self.audit_log = audit_log
        self.sender = sender
        self.config = config or EngineConfig()

    def _entry(
        self,
        mention: Mention,
        match: RuleMatch,
        outcome: ReplyOutcome,
        text: str,
        now: datetime,
        error: Optional[str] = None,
    ) -> ReplyLogEntry:
        return ReplyLogEntry(
            mention_id=mention.id,
            outcome=outcome,
            rule_id=match.rule.id,
            rule_name=match.rule.name,
            confidence=match.confidence,
            matched_keywords=list(match.matched_keywords),
            matched_phrases=list(match.matched_phrases),
            rendered_response=text,
            error_message=error,
            created_at=now,
        )

    async def _send(self, text: str, mention: Mention) -> SendResult:
        try:
            return await asyncio.wait_for(
                self.sender.send(text, mention), timeout=self.config.send_timeout
            )
        except asyncio.TimeoutError:
            return SendResult(
                success=False, error=f"send timed out after {self.config.send_timeout:g}s"
            )
        except Exception as e:
            logger.error("Sender raised for mention %s: %s", mention.id, e, exc_info=True)
            return SendResult(success=False, error=str(e) or type(e).__name__)

    async def dispatch(
        self, mention: Mention, match: RuleMatch, now: Optional[datetime] = None
    ) -> DispatchResult:
        """Dispatch the reply for ``match`` against ``mention``.

        Returns a DispatchResult whose outcome is matched_sent, matched_throttled
        or matched_failed. When another worker already holds the mention, the
        result is marked ``duplicate`` and nothing is sent or logged.
        """
        now = as_utc(now) or utcnow()
        rule = match.rule

        rendered = render_template(rule.response_template, mention_variables(mention, rule))
        text = truncate_reply(rendered.text, self.config.max_reply_length)
        if rendered.unresolved_variables:
            logger.warning(
                "Rule %s left placeholders unresolved: %s",
                rule.name,
                ", ".join(rendered.unresolved_variables),
            )

        result = DispatchResult(
            outcome=None,
            rule_id=rule.id,
            rendered_text=text,
            unresolved_variables=rendered.unresolved_variables,
        )

        if not await self.mention_service.reserve_reply(mention.id):
            logger.info("Mention %s is already claimed or replied, skipping send", mention.id)
            result.duplicate = True
            return result

        decision = await self.throttle_guard.check_and_reserve(rule, now, mention_id=mention.id)
        if not decision.allowed:
            await self.mention_service.release_reply(mention.id)
            result.outcome = ReplyOutcome.MATCHED_THROTTLED
            result.throttle_reason = decision.reason
            result.retry_at = decision.retry_at
            logger.debug(
                "Reply to mention %s throttled by rule %s until %s",
                mention.id,
                rule.name,
                decision.retry_at.isoformat() if decision.retry_at else "limit is raised",
            )
            await self.audit_log.record(
                self._entry(
                    mention,
                    match,
                    ReplyOutcome.MATCHED_THROTTLED,
                    text,
                    now,
                    error=decision.reason.value if decision.reason else None,
                )
            )
            return result

        send_result = await self._send(text, mention)

        if not send_result.success:
            await self.throttle_guard.release(decision.reservation_id)
            await self.mention_service.release_reply(mention.id)
            logger.warning("Reply to mention %s failed: %s", mention.id, send_result.error)
            result.outcome = ReplyOutcome.MATCHED_FAILED
            result.error = send_result.error
            await self.audit_log.record(
                self._entry(
                    mention, match, ReplyOutcome.MATCHED_FAILED, text, now, error=send_result.error
                )
            )
            return result

        await self.mention_service.mark_replied(
            mention.id,
            rule_id=rule.id,
            reply_text=text,
            reply_id=send_result.reply_id,
            replied_at=now,
        )
        logger.info("Replied to @%s with rule %s", mention.author_handle, rule.name)

        result.outcome = ReplyOutcome.MATCHED_SENT
        result.reply_id = send_result.reply_id
        await self.audit_log.record(self._entry(mention, match, ReplyOutcome.MATCHED_SENT, text, now))
        return result
