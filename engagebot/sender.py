"""Outbound reply senders."""

import logging
import uuid
from typing import Protocol

from .models import Mention, SendResult

logger = logging.getLogger(__name__)


class Sender(Protocol):
    """External send interface; implementations must not retry internally."""

    async def send(self, text: str, target: Mention) -> SendResult:
        ...


class DryRunSender:
    """Log replies instead of posting them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, text: str, target: Mention) -> SendResult:
        reply_id = f"dry-run-{uuid.uuid4().hex[:12]}"
        self.sent.append((target.id, text))
        logger.info("[dry run] Reply to @%s: %s", target.author_handle, text[:50])
        return SendResult(success=True, reply_id=reply_id)
