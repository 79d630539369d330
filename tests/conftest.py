"""Shared fixtures: a temporary database per test and a recording sender."""

import asyncio
from datetime import datetime, timezone

import pytest

from engagebot.config import Config
from engagebot.models import IncomingMention, Mention, SendResult
from engagebot.services import MentionService, RuleService, close_db_service, init_db_service

NOW = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


class RecordingSender:
    """Sender double that records every call and can be told to fail or hang."""

    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail = fail
        self.delay = delay

    async def send(self, text: str, target: Mention) -> SendResult:
        self.calls.append((target.id, text))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            return SendResult(success=False, error="platform unavailable")
        return SendResult(success=True, reply_id=f"reply-{len(self.calls)}")


@pytest.fixture
async def db(tmp_path):
    """Fresh SQLite database for one test."""
    service = await init_db_service(tmp_path / "test.db")
    yield service
    await close_db_service()


@pytest.fixture
def config() -> Config:
    return Config()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def mention_service() -> MentionService:
    return MentionService()


@pytest.fixture
def rule_service() -> RuleService:
    return RuleService()


@pytest.fixture
def make_mention(mention_service):
    """Store a mention and return it."""
    counter = {"n": 0}

    async def _make(text: str = "hello", ingested_at: datetime = NOW, **fields) -> Mention:
        counter["n"] += 1
        fields.setdefault("platform_uri", f"at://did:plc:author/app.bsky.feed.post/{counter['n']}")
        fields.setdefault("platform_cid", f"cid{counter['n']}")
        fields.setdefault("author_handle", "alice.bsky.social")
        incoming = IncomingMention(text=text, **fields)
        mention, _ = await mention_service.add_mention(incoming, ingested_at=ingested_at)
        return mention

    return _make


@pytest.fixture
def make_rule(rule_service):
    """Create a rule with sensible defaults."""

    async def _make(**fields):
        fields.setdefault("name", "support")
        fields.setdefault("response_template", "Hi @{{author_username}}, we're on it!")
        fields.setdefault("keywords", ["login"])
        fields.setdefault("cooldown_minutes", 0)
        return await rule_service.create_rule(**fields)

    return _make
