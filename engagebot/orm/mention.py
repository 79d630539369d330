"""MentionRecord model for ingested mentions."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


class MentionRecord(SqlalchemyBase):
    """One inbound mention and the decisions taken about it.

    ``created_at`` is the ingestion time; ``posted_at`` is the platform timestamp.
    """

    __tablename__ = "mentions"
    __table_args__ = (
        Index("idx_mentions_platform_uri", "platform_uri", unique=True),
        Index("idx_mentions_created_at", "created_at"),
        Index("idx_mentions_is_flagged", "is_flagged"),
        Index("idx_mentions_pending", "processed_at", "is_replied"),
    )

    platform_uri: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    platform_cid: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    root_uri: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    root_cid: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    author_did: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    author_handle: Mapped[str] = mapped_column(String, nullable=False)
    author_display_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    posted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    audience_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Classification
    sentiment: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    sentiment_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    priority_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    priority_level: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Flagging
    is_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flag_reasons: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON list

    # Reply
    reply_state: Mapped[Optional[str]] = mapped_column(String, nullable=True)  # NULL | reserved | sent
    is_replied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reply_rule_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    reply_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    reply_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    replied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    send_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Reviewer handling of flagged mentions
    human_action: Mapped[Optional[str]] = mapped_column(String, nullable=True)  # responded | ignored | escalated
    human_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    human_action_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<MentionRecord(id={self.id}, author={self.author_handle}, "
            f"sentiment={self.sentiment}, replied={self.is_replied})>"
        )
