"""Domain models for the billing core."""

from billing_core.models.billing import (
    ConversionReason,
    SubscriptionStatus,
    SubscriptionUpdate,
    is_transition_allowed,
)
from billing_core.models.notification import (
    DigestFrequency,
    MemberRole,
    NotificationType,
    Severity,
    severity_for,
)

__all__ = [
    "ConversionReason",
    "DigestFrequency",
    "MemberRole",
    "NotificationType",
    "Severity",
    "SubscriptionStatus",
    "SubscriptionUpdate",
    "is_transition_allowed",
    "severity_for",
]
