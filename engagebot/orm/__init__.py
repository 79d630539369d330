"""ORM models for database persistence."""

from .auto_reply_rule import AutoReplyRuleRecord
from .base import Base, SqlalchemyBase, as_utc, utcnow
from .mention import MentionRecord
from .reply_log import ReplyLogRecord
from .throttle_event import ThrottleEvent

__all__ = [
    "AutoReplyRuleRecord",
    "Base",
    "MentionRecord",
    "ReplyLogRecord",
    "SqlalchemyBase",
    "ThrottleEvent",
    "as_utc",
    "utcnow",
]
