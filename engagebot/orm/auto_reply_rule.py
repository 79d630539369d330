"""AutoReplyRuleRecord model for configured auto-reply rules."""

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


class AutoReplyRuleRecord(SqlalchemyBase):
    """Keyword/phrase matching policy with a response template and throttle settings."""

    __tablename__ = "auto_reply_rules"
    __table_args__ = (
        Index("idx_auto_reply_rules_sequence", "sequence", unique=True),
        Index("idx_auto_reply_rules_active", "is_active"),
    )

    name: Mapped[str] = mapped_column(String, nullable=False)
    keywords: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON list
    phrases: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON list
    match_type: Mapped[str] = mapped_column(String, nullable=False, default="any")
    response_template: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sentiment_filter: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON list

    # Throttle settings
    max_per_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    max_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    cooldown_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    # Creation order, used to break priority ties
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
