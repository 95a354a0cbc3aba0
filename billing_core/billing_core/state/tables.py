"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by the repository layer and by test fixtures that build the schema with
``Base.metadata.create_all``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL for GIN indexing and
# query operators, falls back to plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp that always round-trips as UTC.

    PostgreSQL stores ``timestamptz`` natively.  SQLite has no timezone
    support, so values are normalised to naive UTC on the way in and
    re-labelled as UTC on the way out.  Watermark comparisons therefore
    behave identically on both backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Tenant subscriptions
# ---------------------------------------------------------------------------


class TenantSubscriptionTable(Base):
    """Current subscription state per tenant.

    One row per tenant, never deleted.  ``external_account_ref`` is the
    payment processor's customer id; it is unique across tenants and stays
    attached to the row across resubscriptions, which bump ``lifecycle``.
    """

    __tablename__ = "tenant_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    external_account_ref: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    date_paid: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifecycle: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_tenant_subscriptions_credits_non_negative"),
        CheckConstraint(
            "status IN ('none', 'active', 'past_due', 'cancel_at_period_end', 'deleted')",
            name="ck_tenant_subscriptions_status",
        ),
    )


class ConversionHistoryTable(Base):
    """Append-only log of plan changes."""

    __tablename__ = "conversion_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    from_plan: Mapped[str | None] = mapped_column(String(64), nullable=True)
    to_plan: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_conversion_history_tenant_created", "tenant_id", "created_at"),)


# ---------------------------------------------------------------------------
# Entitlements
# ---------------------------------------------------------------------------


class TenantEntitlementTable(Base):
    """Last computed entitlement projection per tenant.

    Replaced wholesale on every reconcile; read only to diff against.
    """

    __tablename__ = "tenant_entitlements"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    features: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)


class EntitlementChangeTable(Base):
    """A non-empty entitlement diff produced by a reconcile."""

    __tablename__ = "entitlement_changes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    newly_enabled: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    newly_disabled: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    total_features: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_entitlement_changes_tenant_created", "tenant_id", "created_at"),)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditLogTable(Base):
    """Append-only billing audit trail, hash-chained per tenant.

    ``sequence`` numbers a tenant's entries from 1 without gaps and fixes the
    chain order.  ``entry_hash`` covers the entry's content and
    ``previous_hash``, so editing or deleting any row breaks verification of
    every later row.
    """

    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(String(256), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    resource_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "sequence", name="uq_audit_tenant_sequence"),
        Index("ix_audit_tenant_action", "tenant_id", "action"),
        Index("ix_audit_resource", "tenant_id", "resource_type", "resource_id"),
    )


# ---------------------------------------------------------------------------
# Users and membership
# ---------------------------------------------------------------------------


class UserTable(Base):
    """Notification and digest recipients."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)


class TenantMemberTable(Base):
    """Which users belong to a tenant, and with which role."""

    __tablename__ = "tenant_members"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="member")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_tenant_members_tenant_user"),
        Index("ix_tenant_members_tenant", "tenant_id"),
        Index("ix_tenant_members_user", "user_id"),
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationTable(Base):
    """Per-user, per-tenant in-app notification."""

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="INFO")
    event_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    link: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    # Set when a digest run claims the row; overwritten by the next run if that digest was never delivered.
    digest_batch_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    # Set only after the digest carrying the row was accepted by the mail relay.
    digested_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_notifications_user_unread", "user_id", "is_read", "created_at"),
        Index("ix_notifications_user_pending_digest", "user_id", "digested_at"),
        Index("ix_notifications_digest_batch", "digest_batch_id"),
        Index("ix_notifications_tenant", "tenant_id"),
    )


class NotificationPreferenceTable(Base):
    """Per-user notification and digest preferences.

    ``last_digest_sent_at`` is the digest watermark: only the digest
    scheduler writes it, and only after a successful delivery.
    """

    __tablename__ = "notification_preferences"

    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    digest_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    digest_frequency: Mapped[str] = mapped_column(String(16), nullable=False, default="daily")
    digest_time: Mapped[str] = mapped_column(String(5), nullable=False, default="09:00")
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    last_digest_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    in_app_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    disabled_event_types: Mapped[list[str] | None] = mapped_column(_JsonType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "digest_frequency IN ('daily', 'weekly', 'monthly')",
            name="ck_notification_preferences_frequency",
        ),
        Index("ix_notification_preferences_digest", "digest_enabled"),
    )


# ---------------------------------------------------------------------------
# Processed webhook events
# ---------------------------------------------------------------------------


class ProcessedWebhookEventTable(Base):
    """Ledger of processor event ids that have already been applied."""

    __tablename__ = "processed_webhook_events"

    event_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    external_account_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
