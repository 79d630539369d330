"""Service for reading and maintaining auto-reply rules."""

import json
import logging
from typing import Any, Optional

from sqlalchemy import func, select

from ..models import AutoReplyRule, MatchType
from ..orm.auto_reply_rule import AutoReplyRuleRecord
from ..orm.base import as_utc, utcnow
from .database import get_db_service

logger = logging.getLogger(__name__)

RULE_FIELDS = (
    "name",
    "keywords",
    "phrases",
    "match_type",
    "response_template",
    "priority",
    "is_active",
    "sentiment_filter",
    "max_per_hour",
    "max_per_day",
    "cooldown_minutes",
)


def record_to_rule(record: AutoReplyRuleRecord) -> AutoReplyRule:
    """Convert a stored row into a validated domain rule.

    Raises:
        ValueError: If the stored row holds invalid enums or JSON.
    """
    return AutoReplyRule(
        id=record.id,
        name=record.name,
        response_template=record.response_template,
        keywords=json.loads(record.keywords or "[]"),
        phrases=json.loads(record.phrases or "[]"),
        match_type=record.match_type,
        priority=record.priority,
        is_active=record.is_active,
        sentiment_filter=set(json.loads(record.sentiment_filter or "[]")),
        max_per_hour=record.max_per_hour,
        max_per_day=record.max_per_day,
        cooldown_minutes=record.cooldown_minutes,
        sequence=record.sequence,
        created_at=as_utc(record.created_at),
    )


def validate_rule_fields(fields: dict[str, Any]) -> AutoReplyRule:
    """Build a throwaway rule from fields to run the domain validation."""
    rule = AutoReplyRule(id="", **fields)
    if not rule.name.strip():
        raise ValueError("rule name is required")
    if not rule.response_template.strip():
        raise ValueError("response_template is required")
    if rule.term_count == 0:
        raise ValueError("a rule needs at least one keyword or phrase")
    return rule


def _apply(record: AutoReplyRuleRecord, rule: AutoReplyRule) -> None:
    record.name = rule.name.strip()
    record.keywords = json.dumps(rule.keywords)
    record.phrases = json.dumps(rule.phrases)
    record.match_type = MatchType(rule.match_type).value
    record.response_template = rule.response_template
    record.priority = int(rule.priority)
    record.is_active = bool(rule.is_active)
    record.sentiment_filter = json.dumps(sorted(s.value for s in rule.sentiment_filter))
    record.max_per_hour = rule.max_per_hour
    record.max_per_day = rule.max_per_day
    record.cooldown_minutes = rule.cooldown_minutes


class RuleService:
    """Repository for auto-reply rules.

    ``list_active_rules`` is what the matcher consumes; the create/update/delete
    methods back the configuration API.
    """

    async def list_active_rules(self) -> list[AutoReplyRule]:
        """Active rules in creation order; unreadable rows are skipped."""
        return await self._list(active_only=True)

    async def list_rules(self) -> list[AutoReplyRule]:
        """All non-deleted rules in creation order."""
        return await self._list(active_only=False)

    async def _list(self, active_only: bool) -> list[AutoReplyRule]:
        db = get_db_service()
        async with db.session() as session:
            query = select(AutoReplyRuleRecord).where(
                AutoReplyRuleRecord.is_deleted == False,  # noqa: E712
            )
            if active_only:
                query = query.where(AutoReplyRuleRecord.is_active == True)  # noqa: E712
            result = await session.execute(query.order_by(AutoReplyRuleRecord.sequence))

            rules = []
            for record in result.scalars().all():
                try:
                    rules.append(record_to_rule(record))
                except (TypeError, ValueError) as e:
                    logger.warning("Skipping malformed rule %s (%s): %s", record.id, record.name, e)
            return rules

    async def get_rule(self, rule_id: str, include_deleted: bool = False) -> Optional[AutoReplyRule]:
        """Fetch a rule by id."""
        db = get_db_service()
        async with db.session() as session:
            record = await session.get(AutoReplyRuleRecord, rule_id)
            if record is None or (record.is_deleted and not include_deleted):
                return None
            return record_to_rule(record)

    async def create_rule(self, **fields: Any) -> AutoReplyRule:
        """Validate and store a new rule at the end of the creation order.

        Raises:
            ValueError: If the rule is malformed (e.g. no keywords or phrases).
        """
        rule = validate_rule_fields(fields)

        db = get_db_service()
        async with db.session() as session:
            max_seq_result = await session.execute(select(func.max(AutoReplyRuleRecord.sequence)))
            max_seq = max_seq_result.scalar() or 0

            record = AutoReplyRuleRecord(sequence=max_seq + 1)
            _apply(record, rule)
            session.add(record)
            await session.commit()
            await session.refresh(record)

            logger.info("Created auto-reply rule %s (%s)", record.name, record.id)
            return record_to_rule(record)

    async def update_rule(self, rule_id: str, **changes: Any) -> Optional[AutoReplyRule]:
        """Apply changes to a rule; returns None when it does not exist."""
        db = get_db_service()
        async with db.session() as session:
            record = await session.get(AutoReplyRuleRecord, rule_id)
            if record is None or record.is_deleted:
                return None

            current = record_to_rule(record)
            fields = {name: getattr(current, name) for name in RULE_FIELDS}
            fields.update({k: v for k, v in changes.items() if k in RULE_FIELDS})
            rule = validate_rule_fields(fields)

            _apply(record, rule)
            record.updated_at = utcnow()
            await session.commit()
            await session.refresh(record)
            return record_to_rule(record)

    async def delete_rule(self, rule_id: str) -> bool:
        """Soft delete a rule; audit entries keep pointing at its id."""
        db = get_db_service()
        async with db.session() as session:
            record = await session.get(AutoReplyRuleRecord, rule_id)
            if record is None or record.is_deleted:
                return False
            record.is_deleted = True
            record.is_active = False
            await session.commit()
            logger.info("Deleted auto-reply rule %s", rule_id)
            return True
