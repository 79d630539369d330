"""Service for storing mentions and reserving them for replies."""

import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select, update

from ..flagging import HUMAN_ESCALATION_REASON, SLA_REASON, merge_reasons
from ..models import HumanAction, IncomingMention, Mention, ReplyMetadata, Sentiment
from ..orm.base import as_utc, utcnow
from ..orm.mention import MentionRecord
from .database import get_db_service

logger = logging.getLogger(__name__)

RESERVED = "reserved"
SENT = "sent"


def record_to_mention(record: MentionRecord) -> Mention:
    """Convert a stored row into a validated domain Mention."""
    reply = None
    if record.is_replied and record.replied_at is not None:
        reply = ReplyMetadata(
            rule_id=record.reply_rule_id,
            replied_at=as_utc(record.replied_at),
            reply_id=record.reply_id,
            reply_text=record.reply_text,
        )

    try:
        flag_reasons = json.loads(record.flag_reasons or "[]")
    except ValueError:
        logger.warning("Discarding unreadable flag reasons on mention %s", record.id)
        flag_reasons = []

    return Mention(
        id=record.id,
        author_handle=record.author_handle,
        author_display_name=record.author_display_name,
        author_did=record.author_did,
        text=record.text or "",
        created_at=as_utc(record.created_at),
        audience_size=record.audience_size,
        platform_uri=record.platform_uri,
        platform_cid=record.platform_cid,
        root_uri=record.root_uri,
        root_cid=record.root_cid,
        posted_at=as_utc(record.posted_at),
        sentiment=record.sentiment,
        sentiment_confidence=record.sentiment_confidence,
        priority_score=record.priority_score,
        priority_level=record.priority_level,
        is_flagged=record.is_flagged,
        flag_reasons=list(flag_reasons),
        is_replied=record.is_replied,
        reply=reply,
        processed_at=as_utc(record.processed_at),
        send_attempts=record.send_attempts or 0,
        human_action=record.human_action,
        human_notes=record.human_notes,
        human_action_at=as_utc(record.human_action_at),
    )


class MentionService:
    """Repository for mentions."""

    async def add_mention(
        self, incoming: IncomingMention, ingested_at: Optional[datetime] = None
    ) -> tuple[Mention, bool]:
        """Store a new mention.

        Returns:
            (mention, created). A mention whose platform uri is already known
            is returned unchanged with ``created`` False.
        """
        db = get_db_service()
        async with db.session() as session:
            result = await session.execute(
                select(MentionRecord).where(MentionRecord.platform_uri == incoming.platform_uri)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                return record_to_mention(existing), False

            record = MentionRecord(
                platform_uri=incoming.platform_uri,
                platform_cid=incoming.platform_cid,
                root_uri=incoming.root_uri,
                root_cid=incoming.root_cid,
                author_did=incoming.author_did,
                author_handle=incoming.author_handle,
                author_display_name=incoming.author_display_name,
                text=incoming.text or "",
                posted_at=incoming.posted_at,
                audience_size=max(int(incoming.audience_size or 0), 0),
                created_at=ingested_at or utcnow(),
            )
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return record_to_mention(record), True

    async def get_mention(self, mention_id: str) -> Optional[Mention]:
        """Fetch a mention by id."""
        db = get_db_service()
        async with db.session() as session:
            record = await session.get(MentionRecord, mention_id)
            if record is None or record.is_deleted:
                return None
            return record_to_mention(record)

    async def save_mention(self, mention: Mention) -> None:
        """Persist the classification and flagging fields of a mention.

        Reply fields are owned by ``reserve_reply`` / ``mark_replied``.
        """
        db = get_db_service()
        async with db.session() as session:
            await session.execute(
                update(MentionRecord)
                .where(MentionRecord.id == mention.id)
                .values(
                    sentiment=mention.sentiment.value if mention.sentiment else None,
                    sentiment_confidence=mention.sentiment_confidence,
                    priority_score=mention.priority_score,
                    priority_level=mention.priority_level.value if mention.priority_level else None,
                    is_flagged=mention.is_flagged,
                    flag_reasons=json.dumps(mention.flag_reasons),
                    updated_at=utcnow(),
                )
            )
            await session.commit()

    async def mark_processed(self, mention_id: str, processed_at: Optional[datetime] = None) -> None:
        """Record that the mention reached a terminal pipeline state."""
        db = get_db_service()
        async with db.session() as session:
            await session.execute(
                update(MentionRecord)
                .where(MentionRecord.id == mention_id)
                .values(processed_at=processed_at or utcnow())
            )
            await session.commit()

    async def reserve_reply(self, mention_id: str) -> bool:
        """Atomically claim a mention for sending.

        Only one caller can move ``reply_state`` from NULL to reserved, and
        never for an already replied mention.
        """
        db = get_db_service()
        async with db.session() as session:
            result = await session.execute(
                update(MentionRecord)
                .where(
                    MentionRecord.id == mention_id,
                    MentionRecord.is_replied == False,  # noqa: E712
                    MentionRecord.reply_state.is_(None),
                )
                .values(reply_state=RESERVED)
            )
            await session.commit()
            return result.rowcount == 1

    async def release_reply(self, mention_id: str) -> None:
        """Drop a reservation that did not lead to a send."""
        db = get_db_service()
        async with db.session() as session:
            await session.execute(
                update(MentionRecord)
                .where(
                    MentionRecord.id == mention_id,
                    MentionRecord.reply_state == RESERVED,
                )
                .values(reply_state=None)
            )
            await session.commit()

    async def mark_replied(
        self,
        mention_id: str,
        rule_id: str,
        reply_text: str,
        reply_id: Optional[str],
        replied_at: datetime,
    ) -> None:
        """Record a confirmed send against a reserved mention."""
        db = get_db_service()
        async with db.session() as session:
            await session.execute(
                update(MentionRecord)
                .where(MentionRecord.id == mention_id)
                .values(
                    reply_state=SENT,
                    is_replied=True,
                    reply_rule_id=rule_id,
                    reply_text=reply_text,
                    reply_id=reply_id,
                    replied_at=replied_at,
                )
            )
            await session.commit()

    async def record_send_failure(
        self, mention_id: str, failed_at: datetime, max_attempts: int
    ) -> int:
        """Count a failed send against a mention.

        Once ``max_attempts`` failures have been counted the mention is marked
        processed, so it stops being picked up as pending.

        Returns:
            The number of failed attempts so far.
        """
        db = get_db_service()
        async with db.session() as session:
            record = await session.get(MentionRecord, mention_id)
            if record is None:
                return 0
            record.send_attempts = (record.send_attempts or 0) + 1
            record.last_attempt_at = failed_at
            if record.send_attempts >= max_attempts and record.processed_at is None:
                record.processed_at = failed_at
                logger.warning(
                    "Giving up on mention %s after %d failed sends", mention_id, record.send_attempts
                )
            await session.commit()
            return record.send_attempts

    async def list_pending_ids(self, limit: int = 500) -> list[str]:
        """Ids of mentions that never reached a terminal state.

        Mentions with fewer failed sends come first, then oldest first, so a
        backlog of failing mentions cannot hold newly ingested ones back.
        """
        db = get_db_service()
        async with db.session() as session:
            result = await session.execute(
                select(MentionRecord.id)
                .where(
                    MentionRecord.processed_at.is_(None),
                    MentionRecord.is_replied == False,  # noqa: E712
                    MentionRecord.reply_state.is_(None),
                    MentionRecord.is_deleted == False,  # noqa: E712
                )
                .order_by(MentionRecord.send_attempts, MentionRecord.created_at, MentionRecord.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_stale_candidates(self, cutoff: datetime, limit: int = 500) -> list[Mention]:
        """Unreplied mentions ingested before ``cutoff`` that still need an SLA flag.

        Mentions already carrying an SLA reason, and mentions a reviewer has
        responded to or ignored, are left out in the query itself.
        """
        db = get_db_service()
        async with db.session() as session:
            result = await session.execute(
                select(MentionRecord)
                .where(
                    MentionRecord.created_at < cutoff,
                    MentionRecord.is_replied == False,  # noqa: E712
                    MentionRecord.is_deleted == False,  # noqa: E712
                    MentionRecord.flag_reasons.not_like(f'%"{SLA_REASON}:%'),
                    or_(
                        MentionRecord.human_action.is_(None),
                        MentionRecord.human_action == HumanAction.ESCALATED.value,
                    ),
                )
                .order_by(MentionRecord.created_at, MentionRecord.id)
                .limit(limit)
            )
            return [record_to_mention(r) for r in result.scalars().all()]

    async def unflag(self, mention_id: str) -> Optional[Mention]:
        """Clear the flag on a mention; its reasons are kept as history."""
        db = get_db_service()
        async with db.session() as session:
            record = await session.get(MentionRecord, mention_id)
            if record is None or record.is_deleted:
                return None
            record.is_flagged = False
            record.updated_at = utcnow()
            await session.commit()
            await session.refresh(record)
            logger.info("Unflagged mention %s", mention_id)
            return record_to_mention(record)

    async def set_sentiment(
        self, mention_id: str, sentiment: Sentiment, confidence: float
    ) -> Optional[Mention]:
        """Overwrite the stored sentiment of a mention."""
        db = get_db_service()
        async with db.session() as session:
            record = await session.get(MentionRecord, mention_id)
            if record is None or record.is_deleted:
                return None
            record.sentiment = Sentiment(sentiment).value
            record.sentiment_confidence = min(max(float(confidence), 0.0), 1.0)
            record.updated_at = utcnow()
            await session.commit()
            await session.refresh(record)
            return record_to_mention(record)

    async def record_human_action(
        self,
        mention_id: str,
        action: HumanAction,
        acted_at: datetime,
        notes: Optional[str] = None,
        response_text: Optional[str] = None,
    ) -> Optional[Mention]:
        """Record how a reviewer handled a mention.

        ``responded`` with a response text marks the mention replied, unless
        it already has a reply. ``responded`` and ``ignored`` end automated
        processing. ``escalated`` flags the mention.
        """
        action = HumanAction(action)
        db = get_db_service()
        async with db.session() as session:
            record = await session.get(MentionRecord, mention_id)
            if record is None or record.is_deleted:
                return None

            record.human_action = action.value
            record.human_notes = notes
            record.human_action_at = acted_at

            if action == HumanAction.RESPONDED and response_text and not record.is_replied:
                record.is_replied = True
                record.reply_state = SENT
                record.reply_rule_id = None
                record.reply_text = response_text
                record.replied_at = acted_at

            if action in (HumanAction.RESPONDED, HumanAction.IGNORED) and record.processed_at is None:
                record.processed_at = acted_at

            if action == HumanAction.ESCALATED:
                reasons = json.loads(record.flag_reasons or "[]")
                record.flag_reasons = json.dumps(merge_reasons(reasons, [HUMAN_ESCALATION_REASON]))
                record.is_flagged = True

            record.updated_at = utcnow()
            await session.commit()
            await session.refresh(record)

            logger.info("Human response recorded for mention %s: %s", mention_id, action.value)
            return record_to_mention(record)

    async def list_in_window(self, start: datetime, end: datetime) -> list[Mention]:
        """Mentions ingested in [start, end), ordered for reproducible scans."""
        db = get_db_service()
        async with db.session() as session:
            result = await session.execute(
                select(MentionRecord)
                .where(
                    MentionRecord.created_at >= start,
                    MentionRecord.created_at < end,
                    MentionRecord.is_deleted == False,  # noqa: E712
                )
                .order_by(MentionRecord.created_at, MentionRecord.id)
            )
            return [record_to_mention(r) for r in result.scalars().all()]

    async def get_mentions(self, mention_ids: list[str]) -> dict[str, Mention]:
        """Fetch several mentions keyed by id."""
        if not mention_ids:
            return {}
        db = get_db_service()
        async with db.session() as session:
            result = await session.execute(
                select(MentionRecord).where(MentionRecord.id.in_(mention_ids))
            )
            return {r.id: record_to_mention(r) for r in result.scalars().all()}

    async def list_flagged(self, limit: int = 50) -> list[Mention]:
        """Flagged mentions, highest priority first, newest first within a score."""
        db = get_db_service()
        async with db.session() as session:
            result = await session.execute(
                select(MentionRecord)
                .where(
                    MentionRecord.is_flagged == True,  # noqa: E712
                    MentionRecord.is_deleted == False,  # noqa: E712
                )
                .order_by(
                    MentionRecord.priority_score.desc(),
                    MentionRecord.created_at.desc(),
                    MentionRecord.id,
                )
                .limit(limit)
            )
            return [record_to_mention(r) for r in result.scalars().all()]
