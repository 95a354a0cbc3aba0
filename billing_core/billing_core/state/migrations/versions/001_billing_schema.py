"""Create the billing reconciliation and notification tables.

Revision ID: 001
Revises:
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # -----------------------------------------------------------------------
    # tenant_subscriptions
    # -----------------------------------------------------------------------
    op.create_table(
        "tenant_subscriptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, unique=True),
        sa.Column("external_account_ref", sa.String(256), nullable=True, unique=True),
        sa.Column("plan_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="none"),
        sa.Column("date_paid", sa.DateTime(timezone=True), nullable=True),
        sa.Column("credits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("lifecycle", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("credits >= 0", name="ck_tenant_subscriptions_credits_non_negative"),
        sa.CheckConstraint(
            "status IN ('none', 'active', 'past_due', 'cancel_at_period_end', 'deleted')",
            name="ck_tenant_subscriptions_status",
        ),
    )

    # -----------------------------------------------------------------------
    # conversion_history
    # -----------------------------------------------------------------------
    op.create_table(
        "conversion_history",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("from_plan", sa.String(64), nullable=True),
        sa.Column("to_plan", sa.String(64), nullable=False),
        sa.Column("reason", sa.String(32), nullable=False),
        sa.Column("metadata_json", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_conversion_history_tenant_created", "conversion_history", ["tenant_id", "created_at"])

    # -----------------------------------------------------------------------
    # tenant_entitlements / entitlement_changes
    # -----------------------------------------------------------------------
    op.create_table(
        "tenant_entitlements",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("plan_id", sa.String(64), nullable=True),
        sa.Column("features", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "entitlement_changes",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("plan_id", sa.String(64), nullable=True),
        sa.Column("newly_enabled", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("newly_disabled", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("total_features", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_entitlement_changes_tenant_created", "entitlement_changes", ["tenant_id", "created_at"])

    # -----------------------------------------------------------------------
    # audit_log
    # -----------------------------------------------------------------------
    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("actor", sa.String(256), nullable=False),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("resource_type", sa.String(128), nullable=True),
        sa.Column("resource_id", sa.String(512), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("metadata_json", JSONB, nullable=True),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "sequence", name="uq_audit_tenant_sequence"),
    )
    op.create_index("ix_audit_tenant_action", "audit_log", ["tenant_id", "action"])
    op.create_index("ix_audit_resource", "audit_log", ["tenant_id", "resource_type", "resource_id"])

    # -----------------------------------------------------------------------
    # users / tenant_members
    # -----------------------------------------------------------------------
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("display_name", sa.String(256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "tenant_members",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(32), nullable=False, server_default="member"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_tenant_members_tenant_user"),
    )
    op.create_index("ix_tenant_members_tenant", "tenant_members", ["tenant_id"])
    op.create_index("ix_tenant_members_user", "tenant_members", ["user_id"])

    # -----------------------------------------------------------------------
    # notifications / notification_preferences
    # -----------------------------------------------------------------------
    op.create_table(
        "notifications",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(512), nullable=False),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column("type", sa.String(16), nullable=False, server_default="INFO"),
        sa.Column("event_type", sa.String(128), nullable=True),
        sa.Column("link", sa.String(1024), nullable=True),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("digest_batch_id", sa.String(32), nullable=True),
        sa.Column("digested_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notifications_user_unread", "notifications", ["user_id", "is_read", "created_at"])
    op.create_index("ix_notifications_user_pending_digest", "notifications", ["user_id", "digested_at"])
    op.create_index("ix_notifications_digest_batch", "notifications", ["digest_batch_id"])
    op.create_index("ix_notifications_tenant", "notifications", ["tenant_id"])

    op.create_table(
        "notification_preferences",
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("digest_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("digest_frequency", sa.String(16), nullable=False, server_default="daily"),
        sa.Column("digest_time", sa.String(5), nullable=False, server_default="09:00"),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("last_digest_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("in_app_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("disabled_event_types", JSONB, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "digest_frequency IN ('daily', 'weekly', 'monthly')",
            name="ck_notification_preferences_frequency",
        ),
    )
    op.create_index("ix_notification_preferences_digest", "notification_preferences", ["digest_enabled"])

    # -----------------------------------------------------------------------
    # processed_webhook_events
    # -----------------------------------------------------------------------
    op.create_table(
        "processed_webhook_events",
        sa.Column("event_id", sa.String(256), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("external_account_ref", sa.String(256), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("processed_webhook_events")
    op.drop_index("ix_notification_preferences_digest", table_name="notification_preferences")
    op.drop_table("notification_preferences")
    op.drop_index("ix_notifications_tenant", table_name="notifications")
    op.drop_index("ix_notifications_digest_batch", table_name="notifications")
    op.drop_index("ix_notifications_user_pending_digest", table_name="notifications")
    op.drop_index("ix_notifications_user_unread", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_tenant_members_user", table_name="tenant_members")
    op.drop_index("ix_tenant_members_tenant", table_name="tenant_members")
    op.drop_table("tenant_members")
    op.drop_table("users")
    op.drop_index("ix_audit_resource", table_name="audit_log")
    op.drop_index("ix_audit_tenant_action", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_index("ix_entitlement_changes_tenant_created", table_name="entitlement_changes")
    op.drop_table("entitlement_changes")
    op.drop_table("tenant_entitlements")
    op.drop_index("ix_conversion_history_tenant_created", table_name="conversion_history")
    op.drop_table("conversion_history")
