"""Repository classes providing access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.state.tables import (
    AuditLogTable,
    ConversionHistoryTable,
    EntitlementChangeTable,
    NotificationPreferenceTable,
    NotificationTable,
    ProcessedWebhookEventTable,
    TenantEntitlementTable,
    TenantMemberTable,
    TenantSubscriptionTable,
    UserTable,
)

logger = logging.getLogger(__name__)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str] | None = None,
    constraint: str | None = None,
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names for conflict detection (mutually exclusive with *constraint*).
    constraint:
        Named constraint for conflict detection (mutually exclusive with *index_elements*).

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    conflict_kwargs: dict[str, Any] = {}
    if constraint is not None:
        conflict_kwargs["constraint"] = constraint
    elif index_elements is not None:
        conflict_kwargs["index_elements"] = index_elements

    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_nothing(**conflict_kwargs)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        # SQLite on_conflict_do_nothing only supports index_elements, not named constraints.
        sqlite_kwargs: dict[str, Any] = {}
        if index_elements is not None:
            sqlite_kwargs["index_elements"] = index_elements
        stmt = stmt.on_conflict_do_nothing(**sqlite_kwargs)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Access to tenant subscription records.

    Reads taken with ``for_update=True`` hold a row lock (``SELECT ... FOR
    UPDATE``) until the surrounding transaction ends.  SQLite ignores the
    clause; its single-writer model serialises the read-modify-write instead.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_tenant(self, tenant_id: str, *, for_update: bool = False) -> TenantSubscriptionTable | None:
        """Return the record for *tenant_id*, or ``None``."""
        stmt = select(TenantSubscriptionTable).where(TenantSubscriptionTable.tenant_id == tenant_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def find_by_external_ref(
        self, external_ref: str, *, for_update: bool = False
    ) -> TenantSubscriptionTable | None:
        """Return the record linked to *external_ref*, or ``None``."""
        stmt = select(TenantSubscriptionTable).where(TenantSubscriptionTable.external_account_ref == external_ref)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def create(self, tenant_id: str, *, external_ref: str | None = None) -> TenantSubscriptionTable:
        """Insert a fresh record with status ``none`` and zero credits."""
        row = TenantSubscriptionTable(
            tenant_id=tenant_id,
            external_account_ref=external_ref,
            plan_id=None,
            status="none",
            credits=0,
            lifecycle=0,
        )
        self._session.add(row)
        await self._session.flush()
        logger.info("Created subscription record for tenant %s (account %s)", tenant_id, external_ref or "-")
        return row

    async def set_external_ref(self, tenant_id: str, external_ref: str) -> None:
        """Bind *external_ref* to the record of *tenant_id*."""
        stmt = (
            update(TenantSubscriptionTable)
            .where(TenantSubscriptionTable.tenant_id == tenant_id)
            .values(external_account_ref=external_ref, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def update(
        self,
        external_ref: str,
        values: dict[str, Any],
        *,
        credits_increment: int = 0,
        lifecycle_increment: int = 0,
    ) -> TenantSubscriptionTable | None:
        """Apply a partial update to the record linked to *external_ref*.

        Increments are applied as ``column = column + n`` in the UPDATE
        statement itself so concurrent grants never lose a write.

        Returns
        -------
        TenantSubscriptionTable | None
            The refreshed record, or ``None`` if no record is linked.
        """
        if credits_increment < 0:
            raise ValueError("credits_increment must not be negative")

        stmt_values: dict[str, Any] = dict(values)
        if credits_increment:
            stmt_values["credits"] = TenantSubscriptionTable.credits + credits_increment
        if lifecycle_increment:
            stmt_values["lifecycle"] = TenantSubscriptionTable.lifecycle + lifecycle_increment
        stmt_values["updated_at"] = datetime.now(UTC)

        stmt = (
            update(TenantSubscriptionTable)
            .where(TenantSubscriptionTable.external_account_ref == external_ref)
            .values(**stmt_values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if (result.rowcount or 0) == 0:  # type: ignore[attr-defined]
            return None
        await self._session.flush()
        return await self.find_by_external_ref(external_ref)


# ---------------------------------------------------------------------------
# ConversionHistoryRepository
# ---------------------------------------------------------------------------


class ConversionHistoryRepository:
    """Append-only conversion history."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        tenant_id: str,
        from_plan: str | None,
        to_plan: str,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> ConversionHistoryTable:
        row = ConversionHistoryTable(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            from_plan=from_plan,
            to_plan=to_plan,
            reason=reason,
            metadata_json=metadata,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_tenant(self, tenant_id: str, *, limit: int = 100) -> list[ConversionHistoryTable]:
        """Return the tenant's history, oldest first."""
        stmt = (
            select(ConversionHistoryTable)
            .where(ConversionHistoryTable.tenant_id == tenant_id)
            .order_by(ConversionHistoryTable.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# EntitlementRepository
# ---------------------------------------------------------------------------


class EntitlementRepository:
    """Stored entitlement projection and the log of non-empty diffs."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str) -> TenantEntitlementTable | None:
        result = await self._session.execute(
            select(TenantEntitlementTable)
            .where(TenantEntitlementTable.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def replace(self, tenant_id: str, *, plan_id: str | None, features: Iterable[str]) -> None:
        """Overwrite the stored projection for *tenant_id*."""
        feature_list = sorted(features)
        row = await self.get(tenant_id)
        if row is None:
            self._session.add(
                TenantEntitlementTable(
                    tenant_id=tenant_id,
                    plan_id=plan_id,
                    features=feature_list,
                    updated_at=datetime.now(UTC),
                )
            )
        else:
            row.plan_id = plan_id
            row.features = feature_list
            row.updated_at = datetime.now(UTC)
        await self._session.flush()

    async def record_change(
        self,
        *,
        tenant_id: str,
        plan_id: str | None,
        newly_enabled: Sequence[str],
        newly_disabled: Sequence[str],
        total_features: int,
    ) -> EntitlementChangeTable:
        row = EntitlementChangeTable(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            plan_id=plan_id,
            newly_enabled=list(newly_enabled),
            newly_disabled=list(newly_disabled),
            total_features=total_features,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_changes(self, tenant_id: str, *, limit: int = 50) -> list[EntitlementChangeTable]:
        """Return recorded diffs for *tenant_id*, most recent first."""
        stmt = (
            select(EntitlementChangeTable)
            .where(EntitlementChangeTable.tenant_id == tenant_id)
            .order_by(EntitlementChangeTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# AuditRepository
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChainVerification:
    """Result of walking one tenant's audit chain.

    ``broken_at`` is the sequence number of the first entry that failed, and
    ``reason`` says which check it failed (``sequence``, ``link`` or
    ``digest``).
    """

    tenant_id: str
    valid: bool
    checked: int
    broken_at: int | None = None
    reason: str | None = None


class AuditRepository:
    """Billing audit trail of one tenant, append-only and hash-chained.

    Entries are numbered ``1, 2, 3, ...`` per tenant.  Each entry stores the
    digest of its predecessor in ``previous_hash`` and its own digest in
    ``entry_hash``; :meth:`verify_chain` recomputes both, so an edited,
    reordered or deleted row is detected.  Appends are serialised per tenant
    with a PostgreSQL advisory lock; on SQLite the single writer and the
    ``(tenant_id, sequence)`` unique constraint keep the chain linear.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    @staticmethod
    def entry_digest(
        *,
        tenant_id: str,
        sequence: int,
        actor: str,
        action: str,
        resource_type: str | None,
        resource_id: str | None,
        description: str | None,
        metadata: dict[str, Any] | None,
        previous_hash: str | None,
        created_at: datetime,
    ) -> str:
        """SHA-256 of the entry rendered as canonical JSON."""
        document = {
            "tenant": tenant_id,
            "seq": sequence,
            "actor": actor,
            "action": action,
            "resource": [resource_type, resource_id],
            "description": description,
            "metadata": metadata or None,
            "prev": previous_hash,
            "at": created_at.isoformat(),
        }
        canonical = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def digest_of(cls, row: AuditLogTable) -> str:
        return cls.entry_digest(
            tenant_id=row.tenant_id,
            sequence=row.sequence,
            actor=row.actor,
            action=row.action,
            resource_type=row.resource_type,
            resource_id=row.resource_id,
            description=row.description,
            metadata=row.metadata_json,
            previous_hash=row.previous_hash,
            created_at=row.created_at,
        )

    def _append_lock_key(self) -> int:
        digest = hashlib.sha256(f"billing_audit:{self._tenant_id}".encode()).digest()
        return int.from_bytes(digest[:4], "big") & 0x7FFFFFFF

    async def head(self) -> tuple[int, str | None]:
        """Return ``(sequence, entry_hash)`` of the newest entry, ``(0, None)`` when empty."""
        stmt = (
            select(AuditLogTable.sequence, AuditLogTable.entry_hash)
            .where(AuditLogTable.tenant_id == self._tenant_id)
            .order_by(AuditLogTable.sequence.desc())
            .limit(1)
        )
        row = (await self._session.execute(stmt)).first()
        if row is None:
            return 0, None
        return row.sequence, row.entry_hash

    async def append(
        self,
        *,
        actor: str,
        action: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogTable:
        """Add an entry to the end of the tenant's chain and return it."""
        if "postgresql" in _dialect_name(self._session):
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": self._append_lock_key()},
            )

        last_sequence, previous_hash = await self.head()
        row = AuditLogTable(
            id=uuid.uuid4().hex,
            tenant_id=self._tenant_id,
            actor=actor,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            description=description,
            metadata_json=metadata or None,
            sequence=last_sequence + 1,
            previous_hash=previous_hash,
            created_at=datetime.now(UTC),
        )
        row.entry_hash = self.digest_of(row)
        self._session.add(row)
        await self._session.flush()

        logger.info(
            "Audit #%d tenant=%s action=%s resource=%s/%s",
            row.sequence,
            self._tenant_id,
            action,
            resource_type or "-",
            resource_id or "-",
        )
        return row

    async def recent(
        self,
        *,
        action: str | None = None,
        resource_id: str | None = None,
        limit: int = 50,
    ) -> list[AuditLogTable]:
        """Newest entries first, optionally narrowed to one action or resource."""
        stmt = select(AuditLogTable).where(AuditLogTable.tenant_id == self._tenant_id)
        if action is not None:
            stmt = stmt.where(AuditLogTable.action == action)
        if resource_id is not None:
            stmt = stmt.where(AuditLogTable.resource_id == resource_id)
        stmt = stmt.order_by(AuditLogTable.sequence.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def verify_chain(self) -> ChainVerification:
        """Walk the tenant's chain from the first entry and recheck every link."""
        stmt = (
            select(AuditLogTable)
            .where(AuditLogTable.tenant_id == self._tenant_id)
            .order_by(AuditLogTable.sequence.asc())
        )
        result = await self._session.execute(stmt)

        expected_sequence = 1
        previous_hash: str | None = None
        for row in result.scalars():
            reason = None
            if row.sequence != expected_sequence:
                reason = "sequence"
            elif row.previous_hash != previous_hash:
                reason = "link"
            elif row.entry_hash != self.digest_of(row):
                reason = "digest"
            if reason is not None:
                logger.warning(
                    "Audit chain of tenant %s broken at #%d (%s check failed)",
                    self._tenant_id,
                    row.sequence,
                    reason,
                )
                return ChainVerification(
                    tenant_id=self._tenant_id,
                    valid=False,
                    checked=expected_sequence - 1,
                    broken_at=row.sequence,
                    reason=reason,
                )
            previous_hash = row.entry_hash
            expected_sequence += 1

        return ChainVerification(tenant_id=self._tenant_id, valid=True, checked=expected_sequence - 1)


# ---------------------------------------------------------------------------
# Users and membership
# ---------------------------------------------------------------------------


class UserRepository:
    """Users who can receive notifications and digests."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, *, email: str, display_name: str | None = None, user_id: str | None = None) -> UserTable:
        row = UserTable(
            id=user_id or uuid.uuid4().hex,
            email=email,
            display_name=display_name,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, user_id: str) -> UserTable | None:
        result = await self._session.execute(select(UserTable).where(UserTable.id == user_id))
        return result.scalar_one_or_none()


class TenantMemberRepository:
    """Tenant membership lookups for recipient selection."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, *, tenant_id: str, user_id: str, role: str = "member") -> TenantMemberTable:
        row = TenantMemberTable(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            user_id=user_id,
            role=role,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_members(
        self,
        tenant_id: str,
        *,
        roles: Iterable[str] | None = None,
    ) -> list[tuple[TenantMemberTable, UserTable]]:
        """Return ``(membership, user)`` pairs for *tenant_id*.

        Parameters
        ----------
        tenant_id:
            Tenant whose members to list.
        roles:
            When given, only members holding one of these roles are returned.
        """
        stmt = (
            select(TenantMemberTable, UserTable)
            .join(UserTable, UserTable.id == TenantMemberTable.user_id)
            .where(TenantMemberTable.tenant_id == tenant_id)
            .order_by(TenantMemberTable.created_at.asc())
        )
        if roles is not None:
            stmt = stmt.where(TenantMemberTable.role.in_(list(roles)))
        result = await self._session.execute(stmt)
        return [(member, user) for member, user in result.all()]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationRepository:
    """In-app notifications."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        user_id: str,
        tenant_id: str,
        title: str,
        type: str,
        message: str | None = None,
        event_type: str | None = None,
        link: str | None = None,
        created_at: datetime | None = None,
    ) -> NotificationTable:
        row = NotificationTable(
            id=uuid.uuid4().hex,
            user_id=user_id,
            tenant_id=tenant_id,
            title=title,
            message=message,
            type=type,
            event_type=event_type,
            link=link,
            is_read=False,
            created_at=created_at or datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_user(self, user_id: str, *, tenant_id: str | None = None) -> list[NotificationTable]:
        stmt = select(NotificationTable).where(NotificationTable.user_id == user_id)
        if tenant_id is not None:
            stmt = stmt.where(NotificationTable.tenant_id == tenant_id)
        result = await self._session.execute(stmt.order_by(NotificationTable.created_at.asc()))
        return list(result.scalars().all())

    async def list_for_tenant(self, tenant_id: str) -> list[NotificationTable]:
        stmt = (
            select(NotificationTable)
            .where(NotificationTable.tenant_id == tenant_id)
            .order_by(NotificationTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    # -- digest batches ---------------------------------------------------

    def _pending_digest_clauses(self, user_id: str, until: datetime) -> tuple[Any, ...]:
        member_tenants = select(TenantMemberTable.tenant_id).where(TenantMemberTable.user_id == user_id)
        return (
            NotificationTable.user_id == user_id,
            NotificationTable.is_read.is_(False),
            NotificationTable.digested_at.is_(None),
            NotificationTable.created_at <= until,
            NotificationTable.tenant_id.in_(member_tenants),
        )

    async def claim_for_digest(self, user_id: str, *, until: datetime, batch_id: str) -> int:
        """Tag every notification waiting for *user_id*'s next digest with *batch_id*.

        Waiting means unread, not part of a delivered digest, created at or
        before *until*, and from a tenant the user is still a member of.
        Rows left tagged by an undelivered earlier batch are re-tagged.

        Only committed rows can be tagged, so a notification whose producer
        commits after this statement stays untagged and waits for the next
        run, whatever its ``created_at``.

        Returns
        -------
        int
            Number of notifications in the batch.
        """
        stmt = (
            update(NotificationTable)
            .where(*self._pending_digest_clauses(user_id, until))
            .values(digest_batch_id=batch_id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def count_batch(self, batch_id: str) -> dict[tuple[str, str], int]:
        """Return the size of each ``(tenant_id, type)`` group in the batch."""
        stmt = (
            select(NotificationTable.tenant_id, NotificationTable.type, func.count())
            .where(NotificationTable.digest_batch_id == batch_id)
            .group_by(NotificationTable.tenant_id, NotificationTable.type)
        )
        result = await self._session.execute(stmt)
        return {(tenant_id, type_): count for tenant_id, type_, count in result.all()}

    async def list_batch(self, batch_id: str, *, per_group_limit: int) -> list[NotificationTable]:
        """Return the oldest *per_group_limit* notifications of each group in the batch."""
        ranked = (
            select(
                NotificationTable.id,
                func.row_number()
                .over(
                    partition_by=(NotificationTable.tenant_id, NotificationTable.type),
                    order_by=(NotificationTable.created_at.asc(), NotificationTable.id.asc()),
                )
                .label("position"),
            )
            .where(NotificationTable.digest_batch_id == batch_id)
            .subquery()
        )
        stmt = (
            select(NotificationTable)
            .join(ranked, ranked.c.id == NotificationTable.id)
            .where(ranked.c.position <= per_group_limit)
            .order_by(NotificationTable.tenant_id.asc(), NotificationTable.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_digested(self, batch_id: str, digested_at: datetime) -> int:
        """Record that the digest carrying *batch_id* was delivered."""
        stmt = (
            update(NotificationTable)
            .where(
                NotificationTable.digest_batch_id == batch_id,
                NotificationTable.digested_at.is_(None),
            )
            .values(digested_at=digested_at)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]


class NotificationPreferenceRepository:
    """Per-user notification preferences and the digest watermark."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, user_id: str) -> NotificationPreferenceTable | None:
        result = await self._session.execute(
            select(NotificationPreferenceTable)
            .where(NotificationPreferenceTable.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_many(self, user_ids: Iterable[str]) -> dict[str, NotificationPreferenceTable]:
        ids = list(user_ids)
        if not ids:
            return {}
        result = await self._session.execute(
            select(NotificationPreferenceTable).where(NotificationPreferenceTable.user_id.in_(ids))
        )
        return {row.user_id: row for row in result.scalars().all()}

    async def upsert(self, user_id: str, **fields: Any) -> NotificationPreferenceTable:
        """Create or update the preferences of *user_id*."""
        row = await self.get(user_id)
        if row is None:
            row = NotificationPreferenceTable(user_id=user_id, **fields)
            self._session.add(row)
        else:
            for key, value in fields.items():
                setattr(row, key, value)
        await self._session.flush()
        return row

    async def list_digest_enabled(self) -> list[NotificationPreferenceTable]:
        """Return every preference row with digesting switched on."""
        stmt = (
            select(NotificationPreferenceTable)
            .where(NotificationPreferenceTable.digest_enabled.is_(True))
            .order_by(NotificationPreferenceTable.user_id.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update_digest_watermark(self, user_id: str, sent_at: datetime) -> None:
        """Advance the digest watermark of *user_id* to *sent_at*."""
        stmt = (
            update(NotificationPreferenceTable)
            .where(NotificationPreferenceTable.user_id == user_id)
            .values(last_digest_sent_at=sent_at, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# ProcessedEventRepository
# ---------------------------------------------------------------------------


class ProcessedEventRepository:
    """Duplicate-delivery ledger for processor webhook events."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, event_id: str, *, event_type: str, external_ref: str | None) -> bool:
        """Insert *event_id* into the ledger.

        Returns
        -------
        bool
            ``True`` if the id was new, ``False`` if it was already recorded.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            ProcessedWebhookEventTable,
            values={
                "event_id": event_id,
                "event_type": event_type,
                "external_account_ref": external_ref,
                "processed_at": datetime.now(UTC),
            },
            index_elements=["event_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def exists(self, event_id: str) -> bool:
        result = await self._session.execute(
            select(ProcessedWebhookEventTable.event_id).where(ProcessedWebhookEventTable.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None
