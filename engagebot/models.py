"""Domain records passed between the pipeline stages."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Sentiment(str, Enum):
    """Sentiment label assigned to mention text."""

    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class PriorityLevel(str, Enum):
    """Coarse priority classification, ordered low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def step_up(self) -> "PriorityLevel":
        """Next level up, capped at critical."""
        return _LEVEL_ORDER[min(self.rank + 1, len(_LEVEL_ORDER) - 1)]


_LEVEL_ORDER = [
    PriorityLevel.LOW,
    PriorityLevel.MEDIUM,
    PriorityLevel.HIGH,
    PriorityLevel.CRITICAL,
]


class MatchType(str, Enum):
    """How a rule combines its keywords and phrases."""

    ANY = "any"
    ALL = "all"


class ReplyOutcome(str, Enum):
    """Outcome tag of an audit entry."""

    MATCHED_SENT = "matched_sent"
    MATCHED_THROTTLED = "matched_throttled"
    MATCHED_FAILED = "matched_failed"
    NO_MATCH = "no_match"
    FLAGGED = "flagged"


class ThrottleReason(str, Enum):
    """Why the throttle guard denied a send."""

    HOURLY_LIMIT = "hourly_limit"
    DAILY_LIMIT = "daily_limit"
    COOLDOWN = "cooldown"


class HumanAction(str, Enum):
    """What a reviewer did about a flagged mention."""

    RESPONDED = "responded"
    IGNORED = "ignored"
    ESCALATED = "escalated"


def normalize_terms(terms) -> list[str]:
    """Strip terms, drop blanks and drop case-insensitive duplicates, keeping first-seen order."""
    seen: set[str] = set()
    result: list[str] = []
    for term in terms or []:
        if not isinstance(term, str):
            continue
        cleaned = term.strip()
        if not cleaned or cleaned.lower() in seen:
            continue
        seen.add(cleaned.lower())
        result.append(cleaned)
    return result


@dataclass
class ReplyMetadata:
    """Which rule replied to a mention, and when.

    ``rule_id`` is None for a reply a reviewer sent by hand.
    """

    rule_id: Optional[str]
    replied_at: datetime
    reply_id: Optional[str] = None
    reply_text: Optional[str] = None


@dataclass
class Mention:
    """One inbound social reference to the monitored account."""

    id: str
    author_handle: str
    text: str
    created_at: datetime
    author_display_name: Optional[str] = None
    author_did: Optional[str] = None
    audience_size: int = 0
    platform_uri: str = ""
    platform_cid: Optional[str] = None
    root_uri: Optional[str] = None
    root_cid: Optional[str] = None
    posted_at: Optional[datetime] = None
    sentiment: Optional[Sentiment] = None
    sentiment_confidence: Optional[float] = None
    priority_score: Optional[float] = None
    priority_level: Optional[PriorityLevel] = None
    is_flagged: bool = False
    flag_reasons: list[str] = field(default_factory=list)
    is_replied: bool = False
    reply: Optional[ReplyMetadata] = None
    processed_at: Optional[datetime] = None
    send_attempts: int = 0
    human_action: Optional[HumanAction] = None
    human_notes: Optional[str] = None
    human_action_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.audience_size is None or self.audience_size < 0:
            self.audience_size = 0
        if self.sentiment is not None:
            self.sentiment = Sentiment(self.sentiment)
        if self.priority_level is not None:
            self.priority_level = PriorityLevel(self.priority_level)
        if self.human_action is not None:
            self.human_action = HumanAction(self.human_action)


@dataclass
class IncomingMention:
    """A mention as delivered by a source, before it is stored."""

    platform_uri: str
    author_handle: str
    text: str
    platform_cid: Optional[str] = None
    root_uri: Optional[str] = None
    root_cid: Optional[str] = None
    author_did: Optional[str] = None
    author_display_name: Optional[str] = None
    audience_size: int = 0
    posted_at: Optional[datetime] = None


@dataclass
class AutoReplyRule:
    """A configured matching policy.

    ``sequence`` is the creation order; lower values were created first.
    """

    id: str
    name: str
    response_template: str
    keywords: list[str] = field(default_factory=list)
    phrases: list[str] = field(default_factory=list)
    match_type: MatchType = MatchType.ANY
    priority: int = 0
    is_active: bool = True
    sentiment_filter: set[Sentiment] = field(default_factory=set)
    max_per_hour: int = 10
    max_per_day: int = 50
    cooldown_minutes: int = 5
    sequence: int = 0
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.keywords = normalize_terms(self.keywords)
        self.phrases = normalize_terms(self.phrases)
        self.match_type = MatchType(self.match_type)
        self.sentiment_filter = {Sentiment(s) for s in self.sentiment_filter or ()}
        for name in ("max_per_hour", "max_per_day", "cooldown_minutes"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")

    @property
    def term_count(self) -> int:
        return len(self.keywords) + len(self.phrases)


@dataclass
class RuleMatch:
    """Result of evaluating one rule against one text."""

    rule: AutoReplyRule
    matched: bool
    matched_keywords: list[str] = field(default_factory=list)
    matched_phrases: list[str] = field(default_factory=list)
    confidence: float = 0.0


@dataclass
class ThrottleDecision:
    """Allowed (with a reservation) or denied (with a reason)."""

    allowed: bool
    reason: Optional[ThrottleReason] = None
    reservation_id: Optional[str] = None
    retry_at: Optional[datetime] = None


@dataclass
class ThrottleStatus:
    """Read-only view of a rule's throttle windows."""

    rule_id: str
    sent_last_hour: int
    sent_last_day: int
    remaining_hour: int
    remaining_day: int
    last_sent_at: Optional[datetime] = None
    next_available_at: Optional[datetime] = None


@dataclass
class SendResult:
    """Outcome of one call to the external sender."""

    success: bool
    reply_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DispatchResult:
    """What the response dispatcher did with a winning candidate."""

    outcome: Optional[ReplyOutcome]
    rule_id: str
    rendered_text: str
    unresolved_variables: list[str] = field(default_factory=list)
    throttle_reason: Optional[ThrottleReason] = None
    retry_at: Optional[datetime] = None
    reply_id: Optional[str] = None
    error: Optional[str] = None
    duplicate: bool = False


@dataclass(frozen=True)
class ReplyLogEntry:
    """Immutable audit record of one decision."""

    mention_id: str
    outcome: ReplyOutcome
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None
    confidence: float = 0.0
    matched_keywords: list[str] = field(default_factory=list)
    matched_phrases: list[str] = field(default_factory=list)
    rendered_response: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "outcome", ReplyOutcome(self.outcome))
        object.__setattr__(self, "confidence", min(max(float(self.confidence), 0.0), 1.0))
        object.__setattr__(self, "matched_keywords", list(self.matched_keywords))
        object.__setattr__(self, "matched_phrases", list(self.matched_phrases))


@dataclass
class DryRunResult:
    """Response of the rule test endpoint."""

    matched: bool
    confidence: float
    matched_keywords: list[str]
    matched_phrases: list[str]
    response_text: Optional[str]
    unresolved_variables: list[str] = field(default_factory=list)


@dataclass
class ProcessingResult:
    """Summary of one mention's pass through the pipeline."""

    mention_id: str
    outcome: Optional[ReplyOutcome] = None
    rule_id: Optional[str] = None
    is_flagged: bool = False
    flag_reasons: list[str] = field(default_factory=list)
    priority_reasons: list[str] = field(default_factory=list)
    skipped: bool = False
    error: Optional[str] = None
