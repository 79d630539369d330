"""Service layer for business logic and database operations."""

from .analytics_service import AnalyticsAggregator, AnalyticsWindow
from .audit_service import AuditLog
from .database import DatabaseService, close_db_service, get_db_service, init_db_service
from .dispatch_service import ResponseDispatcher
from .mention_service import MentionService
from .rule_service import RuleService
from .throttle_service import ThrottleGuard

__all__ = [
    "AnalyticsAggregator",
    "AnalyticsWindow",
    "AuditLog",
    "DatabaseService",
    "MentionService",
    "ResponseDispatcher",
    "RuleService",
    "ThrottleGuard",
    "close_db_service",
    "get_db_service",
    "init_db_service",
]
