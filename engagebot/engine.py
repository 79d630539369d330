"""Mention processing pipeline with async support and database persistence."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .atproto_client import BlueskyClient
from .config import Config
from .flagging import HUMAN_ESCALATION_REASON, MANUAL_REASON, FlaggingEngine, merge_reasons
from .matcher import RuleMatcher
from .models import (
    AutoReplyRule,
    DispatchResult,
    DryRunResult,
    HumanAction,
    IncomingMention,
    Mention,
    ProcessingResult,
    ReplyLogEntry,
    ReplyOutcome,
    Sentiment,
)
from .orm.base import as_utc, utcnow
from .priority import PriorityScore, PriorityScorer
from .sender import DryRunSender, Sender
from .sentiment import SentimentAnalysis, SentimentClassifier
from .services import (
    AuditLog,
    MentionService,
    ResponseDispatcher,
    RuleService,
    ThrottleGuard,
)
from .templating import mention_variables, render_template, truncate_reply

logger = logging.getLogger(__name__)

TEST_USERNAME = "test_user"
TEST_DISPLAY_NAME = "Test User"


class EngagementEngine:
    """Orchestrates classification, flagging, matching and dispatch for mentions."""

    def __init__(
        self,
        config: Config,
        sender: Optional[Sender] = None,
        source: Optional[BlueskyClient] = None,
    ) -> None:
        self.config = config
        self.source = source
        self.sender = sender or DryRunSender()

        self.classifier = SentimentClassifier()
        self.scorer = PriorityScorer(config.priority)
        self.flagging = FlaggingEngine(config.flagging)
        self.matcher = RuleMatcher()

        # Use database-backed services
        self.mention_service = MentionService()
        self.rule_service = RuleService()
        self.throttle_guard = ThrottleGuard()
        self.audit_log = AuditLog()
        self.dispatcher = ResponseDispatcher(
            self.mention_service,
            self.throttle_guard,
            self.audit_log,
            self.sender,
            config.engine,
        )

        self._stop = asyncio.Event()

    async def ingest(self, incoming: IncomingMention) -> str:
        """Store a mention from the source and return its id.

        A mention whose platform uri is already stored returns the existing id.
        """
        mention, created = await self.mention_service.add_mention(incoming)
        if created:
            logger.debug("Ingested mention %s from @%s", mention.id, mention.author_handle)
        return mention.id

    async def _record_flag(self, mention: Mention, new_reasons: list[str], now: datetime) -> None:
        logger.info(
            "Flagged mention %s from @%s: %s",
            mention.id,
            mention.author_handle,
            ", ".join(new_reasons),
        )
        await self.audit_log.record(
            ReplyLogEntry(
                mention_id=mention.id,
                outcome=ReplyOutcome.FLAGGED,
                created_at=now,
            )
        )

    def _score(self, mention: Mention) -> PriorityScore:
        priority = self.scorer.calculate(mention.sentiment, mention.audience_size)
        mention.priority_score = priority.score
        mention.priority_level = priority.level
        return priority

    def _apply_flags(self, mention: Mention, now: datetime) -> list[str]:
        """Merge fresh flag reasons into the mention; return the ones that are new."""
        decision = self.flagging.evaluate(mention, now)
        new_reasons = [r for r in decision.reasons if r not in mention.flag_reasons]
        if new_reasons:
            mention.flag_reasons = merge_reasons(mention.flag_reasons, new_reasons)
            mention.is_flagged = True
        return new_reasons

    async def process_mention(self, mention_id: str, now: Optional[datetime] = None) -> ProcessingResult:
        """Run one mention through the pipeline.

        Args:
            mention_id: Id of a stored mention.
            now: Processing time; defaults to the current time.

        Returns:
            ProcessingResult describing the terminal outcome. Already processed
            or replied mentions are not touched and come back ``skipped``.
        """
        now = as_utc(now) or utcnow()
        mention = await self.mention_service.get_mention(mention_id)
        if mention is None:
            logger.warning("Mention %s not found", mention_id)
            return ProcessingResult(mention_id=mention_id, skipped=True, error="mention not found")

        if mention.processed_at is not None or mention.is_replied:
            logger.info("Skipping already processed mention %s", mention_id)
            return ProcessingResult(
                mention_id=mention_id,
                is_flagged=mention.is_flagged,
                flag_reasons=mention.flag_reasons,
                skipped=True,
            )

        logger.info(
            "Processing mention from @%s: %s",
            mention.author_handle,
            mention.text[:50] + "..." if len(mention.text) > 50 else mention.text,
        )

        analysis = self.classifier.analyze(mention.text)
        mention.sentiment = analysis.sentiment
        mention.sentiment_confidence = analysis.confidence

        priority = self._score(mention)
        logger.debug(
            "Mention %s priority %s: %s", mention.id, priority.level.value, "; ".join(priority.reasons)
        )

        new_reasons = self._apply_flags(mention, now)
        await self.mention_service.save_mention(mention)
        if new_reasons:
            await self._record_flag(mention, new_reasons, now)

        result = ProcessingResult(
            mention_id=mention.id,
            is_flagged=mention.is_flagged,
            flag_reasons=list(mention.flag_reasons),
            priority_reasons=priority.reasons,
        )

        if mention.is_flagged and self.config.engine.skip_auto_reply_when_flagged:
            await self.mention_service.mark_processed(mention.id, now)
            result.outcome = ReplyOutcome.FLAGGED
            return result

        rules = await self.rule_service.list_active_rules()
        candidates = self.matcher.match(mention.text, rules, mention.sentiment)

        if not candidates:
            await self.audit_log.record(
                ReplyLogEntry(mention_id=mention.id, outcome=ReplyOutcome.NO_MATCH, created_at=now)
            )
            await self.mention_service.mark_processed(mention.id, now)
            result.outcome = ReplyOutcome.NO_MATCH
            return result

        dispatch = await self.dispatcher.dispatch(mention, candidates[0], now)
        result.rule_id = dispatch.rule_id

        if dispatch.duplicate:
            result.skipped = True
            return result

        result.outcome = dispatch.outcome
        result.error = dispatch.error
        if dispatch.outcome == ReplyOutcome.MATCHED_FAILED:
            # Stays pending for the next batch until the attempts run out
            await self.mention_service.record_send_failure(
                mention.id, now, self.config.engine.max_send_attempts
            )
        else:
            await self.mention_service.mark_processed(mention.id, now)
        return result

    async def process_batch(
        self,
        mention_ids: Iterable[str],
        cancel_event: Optional[asyncio.Event] = None,
        now: Optional[datetime] = None,
    ) -> list[ProcessingResult]:
        """Process mentions concurrently, at most ``max_workers`` at a time.

        Cancellation is checked before each mention starts; a mention already
        in the pipeline always runs to completion. Results for mentions that
        never started are omitted.
        """
        unique_ids = list(dict.fromkeys(mention_ids))
        semaphore = asyncio.Semaphore(self.config.engine.max_workers)

        async def _run(mention_id: str) -> Optional[ProcessingResult]:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return None
                try:
                    return await self.process_mention(mention_id, now)
                except Exception as e:
                    logger.error("Error processing mention %s: %s", mention_id, e, exc_info=True)
                    return ProcessingResult(mention_id=mention_id, error=str(e))

        results = await asyncio.gather(*(_run(mention_id) for mention_id in unique_ids))
        return [r for r in results if r is not None]

    async def flag_stale_mentions(self, now: Optional[datetime] = None) -> int:
        """Flag unreplied mentions that have outlived the SLA.

        Reads at most ``batch_size`` candidates; mentions flagged here drop out
        of the next read, so repeated sweeps work through any backlog.

        Returns:
            Number of mentions newly flagged.
        """
        now = as_utc(now) or utcnow()
        cutoff = now - timedelta(minutes=self.config.flagging.sla_minutes)
        flagged = 0

        candidates = await self.mention_service.list_stale_candidates(
            cutoff, limit=self.config.engine.batch_size
        )
        for mention in candidates:
            new_reasons = self._apply_flags(mention, now)
            if not new_reasons:
                continue
            await self.mention_service.save_mention(mention)
            await self._record_flag(mention, new_reasons, now)
            flagged += 1

        return flagged

    async def execute(
        self,
        mention_id: str,
        rule_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """Manually dispatch a reply for a stored mention.

        With ``rule_id`` that rule must be active and must match the mention;
        otherwise the best live candidate is used. Throttling and the
        one-reply-per-mention guarantee still apply.

        Raises:
            LookupError: If the mention or rule does not exist.
            ValueError: If no rule matches, or the given rule is inactive or
                does not match.
        """
        now = as_utc(now) or utcnow()
        mention = await self.mention_service.get_mention(mention_id)
        if mention is None:
            raise LookupError(f"mention {mention_id} not found")

        sentiment = mention.sentiment or self.classifier.classify(mention.text)

        if rule_id is not None:
            rule = await self.rule_service.get_rule(rule_id)
            if rule is None:
                raise LookupError(f"rule {rule_id} not found")
            if not rule.is_active:
                raise ValueError(f"rule {rule.name} is not active")
            match = self.matcher.evaluate_rule(rule, mention.text, sentiment)
            if not match.matched:
                raise ValueError(f"rule {rule.name} does not match this mention")
        else:
            rules = await self.rule_service.list_active_rules()
            match = self.matcher.best_match(mention.text, rules, sentiment)
            if match is None:
                raise ValueError("no active rule matches this mention")

        result = await self.dispatcher.dispatch(mention, match, now)
        if result.outcome in (ReplyOutcome.MATCHED_SENT, ReplyOutcome.MATCHED_THROTTLED):
            await self.mention_service.mark_processed(mention.id, now)
        return result

    async def flag_mention(
        self, mention_id: str, now: Optional[datetime] = None
    ) -> tuple[Mention, PriorityScore]:
        """Flag a mention for review by hand, whatever its score.

        The mention is scored (and classified first if it never was) and
        carries every automatic reason that applies plus ``manual``.

        Raises:
            LookupError: If the mention does not exist.
        """
        now = as_utc(now) or utcnow()
        mention = await self.mention_service.get_mention(mention_id)
        if mention is None:
            raise LookupError(f"mention {mention_id} not found")

        if mention.sentiment is None:
            analysis = self.classifier.analyze(mention.text)
            mention.sentiment = analysis.sentiment
            mention.sentiment_confidence = analysis.confidence
        priority = self._score(mention)

        was_flagged = mention.is_flagged
        new_reasons = self._apply_flags(mention, now)
        if MANUAL_REASON not in mention.flag_reasons:
            new_reasons.append(MANUAL_REASON)
            mention.flag_reasons = merge_reasons(mention.flag_reasons, [MANUAL_REASON])
        mention.is_flagged = True

        await self.mention_service.save_mention(mention)
        if new_reasons or not was_flagged:
            await self._record_flag(mention, new_reasons or [MANUAL_REASON], now)
        return mention, priority

    async def unflag_mention(self, mention_id: str) -> Mention:
        """Clear a mention's flag.

        Raises:
            LookupError: If the mention does not exist.
        """
        mention = await self.mention_service.unflag(mention_id)
        if mention is None:
            raise LookupError(f"mention {mention_id} not found")
        return mention

    async def record_human_response(
        self,
        mention_id: str,
        action: HumanAction,
        notes: Optional[str] = None,
        response_text: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Mention:
        """Store what a reviewer did with a mention.

        Raises:
            LookupError: If the mention does not exist.
        """
        now = as_utc(now) or utcnow()
        before = await self.mention_service.get_mention(mention_id)
        if before is None:
            raise LookupError(f"mention {mention_id} not found")

        mention = await self.mention_service.record_human_action(
            mention_id, action, now, notes=notes, response_text=response_text
        )
        if mention is None:
            raise LookupError(f"mention {mention_id} not found")

        if HumanAction(action) == HumanAction.ESCALATED and (
            not before.is_flagged or HUMAN_ESCALATION_REASON not in before.flag_reasons
        ):
            await self._record_flag(mention, [HUMAN_ESCALATION_REASON], now)
        return mention

    async def analyze_mention(self, mention_id: str) -> tuple[SentimentAnalysis, Mention]:
        """Re-classify a stored mention's text and store the new sentiment.

        Raises:
            LookupError: If the mention does not exist.
        """
        mention = await self.mention_service.get_mention(mention_id)
        if mention is None:
            raise LookupError(f"mention {mention_id} not found")

        analysis = self.classifier.analyze(mention.text)
        updated = await self.mention_service.set_sentiment(
            mention_id, analysis.sentiment, analysis.confidence
        )
        return analysis, updated or mention

    def test_rule(
        self,
        rule: AutoReplyRule,
        text: str,
        sentiment: Optional[Sentiment] = None,
    ) -> DryRunResult:
        """Evaluate a rule against arbitrary text without side effects."""
        evaluation = self.matcher.evaluate_rule(rule, text, sentiment)

        response_text = None
        unresolved: list[str] = []
        if evaluation.matched:
            sample = Mention(
                id="test-mention",
                author_handle=TEST_USERNAME,
                author_display_name=TEST_DISPLAY_NAME,
                text=text,
                created_at=utcnow(),
                sentiment=sentiment,
            )
            rendered = render_template(rule.response_template, mention_variables(sample, rule))
            response_text = truncate_reply(rendered.text, self.config.engine.max_reply_length)
            unresolved = rendered.unresolved_variables

        return DryRunResult(
            matched=evaluation.matched,
            confidence=evaluation.confidence,
            matched_keywords=evaluation.matched_keywords,
            matched_phrases=evaluation.matched_phrases,
            response_text=response_text,
            unresolved_variables=unresolved,
        )

    async def run_once(self) -> int:
        """Run a single polling cycle.

        Returns:
            Number of mentions processed to a result.
        """
        logger.debug("Checking for new mentions...")

        try:
            if self.source is not None:
                incoming = await asyncio.to_thread(self.source.get_unread_mentions)
                if incoming:
                    logger.info("Found %d new mention(s)", len(incoming))
                    for item in incoming:
                        await self.ingest(item)
                    await asyncio.to_thread(self.source.mark_notifications_read)

            pending = await self.mention_service.list_pending_ids(self.config.engine.batch_size)
            results = await self.process_batch(pending, cancel_event=self._stop)

            stale = await self.flag_stale_mentions()
            if stale:
                logger.info("Flagged %d stale mention(s)", stale)

            await self.throttle_guard.cleanup_old_events()
            return sum(1 for r in results if not r.skipped and r.error is None)

        except Exception as e:
            logger.error("Error in polling cycle: %s", e, exc_info=True)
            return 0

    def stop(self) -> None:
        """Ask the polling loop to exit after the mentions in flight."""
        self._stop.set()

    async def run(self) -> None:
        """Run the engine in a continuous polling loop."""
        logger.info("Poll interval: %d seconds", self.config.engine.poll_interval)
        if self.config.engine.dry_run:
            logger.info("Dry run enabled: replies are logged, not sent")

        if self.source is not None:
            await asyncio.to_thread(self.source.login)

        try:
            while not self._stop.is_set():
                await self.run_once()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.config.engine.poll_interval)
                except asyncio.TimeoutError:
                    pass

        except Exception as e:
            logger.error("Unexpected error in main loop: %s", e, exc_info=True)
            raise
        logger.info("Engine stopped")
