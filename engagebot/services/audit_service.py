"""Append-only audit log of auto-reply decisions."""

import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select

from ..models import ReplyLogEntry
from ..orm.base import as_utc, utcnow
from ..orm.reply_log import ReplyLogRecord
from .database import get_db_service

logger = logging.getLogger(__name__)


def record_to_entry(record: ReplyLogRecord) -> ReplyLogEntry:
    """Convert a stored row into a ReplyLogEntry."""
    return ReplyLogEntry(
        id=record.id,
        mention_id=record.mention_id,
        rule_id=record.rule_id,
        rule_name=record.rule_name,
        outcome=record.outcome,
        confidence=record.confidence,
        matched_keywords=json.loads(record.matched_keywords or "[]"),
        matched_phrases=json.loads(record.matched_phrases or "[]"),
        rendered_response=record.rendered_response,
        error_message=record.error_message,
        created_at=as_utc(record.created_at),
    )


class AuditLog:
    """Write and read ReplyLogEntry records."""

    async def record(self, entry: ReplyLogEntry) -> bool:
        """Append an entry.

        Storage failures never propagate to the caller; they are surfaced as a
        warning and reported through the return value.
        """
        try:
            db = get_db_service()
            async with db.session() as session:
                record = ReplyLogRecord(
                    mention_id=entry.mention_id,
                    rule_id=entry.rule_id,
                    rule_name=entry.rule_name,
                    outcome=entry.outcome.value,
                    confidence=entry.confidence,
                    matched_keywords=json.dumps(entry.matched_keywords),
                    matched_phrases=json.dumps(entry.matched_phrases),
                    rendered_response=entry.rendered_response,
                    error_message=entry.error_message,
                    created_at=entry.created_at or utcnow(),
                )
                session.add(record)
                await session.commit()

                logger.debug(
                    "Recorded %s for mention %s (rule=%s)",
                    entry.outcome.value,
                    entry.mention_id,
                    entry.rule_id,
                )
                return True

        except Exception as e:
            logger.warning(
                "Failed to write audit entry %s for mention %s: %s",
                entry.outcome.value,
                entry.mention_id,
                e,
                exc_info=True,
            )
            return False

    async def list_entries(
        self,
        mention_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ReplyLogEntry]:
        """Entries filtered by mention and/or [start, end), oldest first."""
        db = get_db_service()
        async with db.session() as session:
            query = select(ReplyLogRecord).where(
                ReplyLogRecord.is_deleted == False,  # noqa: E712
            )
            if mention_id is not None:
                query = query.where(ReplyLogRecord.mention_id == mention_id)
            if start is not None:
                query = query.where(ReplyLogRecord.created_at >= start)
            if end is not None:
                query = query.where(ReplyLogRecord.created_at < end)

            result = await session.execute(
                query.order_by(ReplyLogRecord.created_at, ReplyLogRecord.id)
            )
            return [record_to_entry(r) for r in result.scalars().all()]
