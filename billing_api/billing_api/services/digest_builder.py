"""Digest eligibility rules and batch construction.

Everything here is pure: the scheduler supplies the clock, preference row
and notifications, and gets back decisions and an immutable
:class:`Digest` ready for rendering.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from billing_core.models.notification import (
    DigestFrequency,
    NotificationType,
    Severity,
    severity_for,
)
from billing_core.state.tables import NotificationTable

logger = logging.getLogger(__name__)

_MINUTES_PER_DAY = 24 * 60

# Display order of type groups inside a tenant section.
_TYPE_ORDER: dict[str, int] = {
    NotificationType.CRITICAL.value: 0,
    NotificationType.ERROR.value: 1,
    NotificationType.WARNING.value: 2,
    NotificationType.SUCCESS.value: 3,
    NotificationType.INFO.value: 4,
}


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------


def is_frequency_due(frequency: DigestFrequency | str, last_sent_at: datetime | None, now: datetime) -> bool:
    """Whether enough time has passed since the last digest.

    A user who never received a digest is always due.
    """
    if last_sent_at is None:
        return True
    return now - last_sent_at >= DigestFrequency(frequency).min_interval


def parse_digest_time(value: str) -> time:
    """Parse an ``HH:MM`` preference value.

    Raises
    ------
    ValueError
        If *value* is not a valid 24-hour ``HH:MM`` time.
    """
    hours, sep, minutes = value.partition(":")
    if not sep or not hours.isdigit() or not minutes.isdigit():
        raise ValueError(f"Invalid digest time {value!r}; expected HH:MM")
    return time(hour=int(hours), minute=int(minutes))


def resolve_timezone(name: str | None) -> ZoneInfo:
    """Return the IANA zone *name*, falling back to UTC for unknown names."""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r in digest preferences; using UTC", name)
        return ZoneInfo("UTC")


def is_within_window(
    now: datetime,
    digest_time: str,
    window: timedelta,
    tz_name: str | None = "UTC",
) -> bool:
    """Whether the user's local time of day is within *window* of *digest_time*.

    The distance is measured on the 24-hour clock, so ``23:30`` and ``00:10``
    are 40 minutes apart.  The bound is exclusive: with an hourly poller
    at most one run lands inside a one-hour window.
    """
    target = parse_digest_time(digest_time)
    local = now.astimezone(resolve_timezone(tz_name))

    current_minutes = local.hour * 60 + local.minute + local.second / 60
    target_minutes = target.hour * 60 + target.minute
    diff = abs(current_minutes - target_minutes) % _MINUTES_PER_DAY
    distance = min(diff, _MINUTES_PER_DAY - diff)
    return distance < window.total_seconds() / 60


# ---------------------------------------------------------------------------
# Batch construction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DigestItem:
    title: str
    message: str | None
    type: str
    created_at: datetime
    link: str | None = None


@dataclass(frozen=True)
class DigestTypeGroup:
    """Notifications of one type within one tenant."""

    type: str
    severity: Severity
    total: int
    items: tuple[DigestItem, ...]

    @property
    def overflow(self) -> int:
        """Number of notifications collapsed into the "... and N more" line."""
        return self.total - len(self.items)


@dataclass(frozen=True)
class DigestTenantGroup:
    tenant_id: str
    total: int
    groups: tuple[DigestTypeGroup, ...]


@dataclass(frozen=True)
class Digest:
    """A user's batch of unread notifications, grouped for rendering."""

    user_id: str
    email: str
    display_name: str | None
    frequency: str
    tenants: tuple[DigestTenantGroup, ...]
    severity_counts: dict[str, int]
    total: int


def build_digest(
    *,
    user_id: str,
    email: str,
    display_name: str | None,
    frequency: DigestFrequency | str,
    notifications: Iterable[NotificationTable],
    max_items_per_group: int,
    group_totals: Mapping[tuple[str, str], int] | None = None,
) -> Digest:
    """Group *notifications* by tenant, then by type, and count severities.

    Parameters
    ----------
    notifications:
        Unread notifications for the user, in any order.  May already be
        cut down to the listed items when *group_totals* is given.
    max_items_per_group:
        Maximum number of items listed per type group; the rest are only
        counted.
    group_totals:
        Full size of each ``(tenant_id, type)`` group.  Defaults to the
        number of *notifications* in the group.
    """
    listed: dict[tuple[str, str], list[NotificationTable]] = {}
    for notification in sorted(notifications, key=lambda n: (n.tenant_id, n.created_at)):
        listed.setdefault((notification.tenant_id, notification.type), []).append(notification)

    totals = {key: len(rows) for key, rows in listed.items()}
    for key, count in (group_totals or {}).items():
        totals[key] = max(count, totals.get(key, 0))

    severity_counts = {severity.value: 0 for severity in Severity}
    by_tenant: dict[str, list[str]] = {}
    for (tenant_id, type_name), count in totals.items():
        severity_counts[severity_for(type_name).value] += count
        by_tenant.setdefault(tenant_id, []).append(type_name)

    tenants: list[DigestTenantGroup] = []
    for tenant_id in sorted(by_tenant):
        type_groups: list[DigestTypeGroup] = []
        for type_name in sorted(by_tenant[tenant_id], key=lambda t: (_TYPE_ORDER.get(t, len(_TYPE_ORDER)), t)):
            rows = listed.get((tenant_id, type_name), [])
            items = tuple(
                DigestItem(
                    title=row.title,
                    message=row.message,
                    type=row.type,
                    created_at=row.created_at,
                    link=row.link,
                )
                for row in rows[:max_items_per_group]
            )
            type_groups.append(
                DigestTypeGroup(
                    type=type_name,
                    severity=severity_for(type_name),
                    total=totals[(tenant_id, type_name)],
                    items=items,
                )
            )
        tenants.append(
            DigestTenantGroup(
                tenant_id=tenant_id,
                total=sum(group.total for group in type_groups),
                groups=tuple(type_groups),
            )
        )

    return Digest(
        user_id=user_id,
        email=email,
        display_name=display_name,
        frequency=DigestFrequency(frequency).value,
        tenants=tuple(tenants),
        severity_counts=severity_counts,
        total=sum(totals.values()),
    )


def digest_subject(digest: Digest) -> str:
    """Subject line summarising the digest."""
    noun = "notification" if digest.total == 1 else "notifications"
    subject = f"Your {digest.frequency} digest: {digest.total} unread {noun}"
    critical = digest.severity_counts.get(Severity.CRITICAL.value, 0)
    if critical:
        subject = f"[{critical} critical] {subject}"
    return subject
