"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from billing_core.state.database import get_engine, get_session, get_session_factory
from billing_core.state.repository import (
    AuditRepository,
    ChainVerification,
    ConversionHistoryRepository,
    EntitlementRepository,
    NotificationPreferenceRepository,
    NotificationRepository,
    ProcessedEventRepository,
    SubscriptionRepository,
    TenantMemberRepository,
    UserRepository,
)

__all__ = [
    "AuditRepository",
    "ChainVerification",
    "ConversionHistoryRepository",
    "EntitlementRepository",
    "NotificationPreferenceRepository",
    "NotificationRepository",
    "ProcessedEventRepository",
    "SubscriptionRepository",
    "TenantMemberRepository",
    "UserRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
