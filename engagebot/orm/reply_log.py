"""ReplyLogRecord model for the append-only decision audit log."""

from typing import Optional

from sqlalchemy import Float, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


class ReplyLogRecord(SqlalchemyBase):
    """Audit entry for a matched, dispatched, skipped or flagged decision."""

    __tablename__ = "reply_logs"
    __table_args__ = (
        Index("idx_reply_logs_mention_id", "mention_id"),
        Index("idx_reply_logs_rule_id", "rule_id"),
        Index("idx_reply_logs_outcome", "outcome"),
        Index("idx_reply_logs_created_at", "created_at"),
    )

    mention_id: Mapped[str] = mapped_column(String, nullable=False)
    rule_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    rule_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    outcome: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    matched_keywords: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON list
    matched_phrases: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON list
    rendered_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return f"<ReplyLogRecord(id={self.id}, mention_id={self.mention_id}, outcome={self.outcome})>"
