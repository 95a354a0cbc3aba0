"""Subscription domain models shared by the state layer and the API services."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a tenant subscription."""

    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    DELETED = "deleted"


class ConversionReason(str, Enum):
    """Classification of a plan change recorded in conversion history."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    PLAN_CHANGE = "plan_change"


# Allowed status transitions.  Identity transitions are always allowed so that
# re-applying the same state is a no-op; ``DELETED`` is terminal except for the
# explicit lifecycle restart to ``NONE``.
_ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.NONE: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.DELETED}),
    SubscriptionStatus.ACTIVE: frozenset(
        {
            SubscriptionStatus.CANCEL_AT_PERIOD_END,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.DELETED,
        }
    ),
    SubscriptionStatus.CANCEL_AT_PERIOD_END: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.DELETED,
        }
    ),
    SubscriptionStatus.PAST_DUE: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.DELETED}),
    SubscriptionStatus.DELETED: frozenset({SubscriptionStatus.NONE}),
}


def is_transition_allowed(current: SubscriptionStatus, requested: SubscriptionStatus) -> bool:
    """Return ``True`` if *current* may move to *requested*."""
    if current == requested:
        return True
    return requested in _ALLOWED_TRANSITIONS[current]


class SubscriptionUpdate(BaseModel):
    """Partial update applied to a tenant subscription record.

    Every field is optional; ``None`` means "leave unchanged".  Credits can
    only be added, never set or subtracted.
    """

    plan_id: str | None = None
    status: SubscriptionStatus | None = None
    date_paid: datetime | None = None
    credits_increment: int | None = Field(default=None, ge=0)

    @field_validator("credits_increment")
    @classmethod
    def zero_is_no_change(cls, value: int | None) -> int | None:
        return value or None

    def is_empty(self) -> bool:
        """Whether the update would not touch any field."""
        return (
            self.plan_id is None and self.status is None and self.date_paid is None and self.credits_increment is None
        )
