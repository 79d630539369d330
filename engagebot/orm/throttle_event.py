"""ThrottleEvent model for per-rule send reservations."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


class ThrottleEvent(SqlalchemyBase):
    """One reserved send for a rule; the rolling windows are counted from these rows."""

    __tablename__ = "throttle_events"
    __table_args__ = (
        Index("idx_throttle_rule_id_sent_at", "rule_id", "sent_at"),
        Index("idx_throttle_sent_at", "sent_at"),
    )

    rule_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    mention_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
