"""Notification and digest preference models."""

from __future__ import annotations

from datetime import timedelta
from enum import Enum


class NotificationType(str, Enum):
    """Severity-bearing notification type."""

    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Severity(str, Enum):
    """Display severity used when summarising notifications."""

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


_SEVERITY_BY_TYPE: dict[NotificationType, Severity] = {
    NotificationType.CRITICAL: Severity.CRITICAL,
    NotificationType.ERROR: Severity.CRITICAL,
    NotificationType.WARNING: Severity.WARNING,
    NotificationType.INFO: Severity.INFO,
    NotificationType.SUCCESS: Severity.INFO,
}


def severity_for(notification_type: NotificationType | str) -> Severity:
    """Map a notification type to its display severity."""
    try:
        return _SEVERITY_BY_TYPE[NotificationType(notification_type)]
    except ValueError:
        return Severity.INFO


class DigestFrequency(str, Enum):
    """How often a user wants to receive a notification digest."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def min_interval(self) -> timedelta:
        """Minimum time between two digests for this frequency."""
        return _MIN_INTERVALS[self]


_MIN_INTERVALS: dict[DigestFrequency, timedelta] = {
    DigestFrequency.DAILY: timedelta(hours=24),
    DigestFrequency.WEEKLY: timedelta(hours=24 * 7),
    DigestFrequency.MONTHLY: timedelta(hours=24 * 30),
}


class MemberRole(str, Enum):
    """Role of a user inside a tenant."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
