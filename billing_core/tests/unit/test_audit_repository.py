"""Unit tests for the per-tenant billing audit chain.

Runs against in-memory SQLite via aiosqlite; the advisory lock used on
PostgreSQL is skipped there and the ``(tenant_id, sequence)`` constraint
keeps the chain linear.

Covers:
- Sequence numbering and hash links of appended billing entries
- Newest-first listing with action / resource filters
- Chain verification and the three ways it reports a break
- Tenant isolation of both numbering and verification
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
import pytest_asyncio
from billing_core.state.repository import AuditRepository
from billing_core.state.tables import AuditLogTable, Base
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def async_session():
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


async def _billing_history(repo: AuditRepository) -> list[AuditLogTable]:
    """A paid invoice, a failed renewal and a cancellation."""
    return [
        await repo.append(
            actor="system:billing",
            action="PAYMENT_SUCCEEDED",
            resource_type="invoice",
            resource_id="in_001",
            description="Payment successful for pro plan",
            metadata={"plan_id": "pro", "amount_paid": 4900},
        ),
        await repo.append(
            actor="system:billing",
            action="PAYMENT_FAILED",
            resource_type="invoice",
            resource_id="in_002",
            metadata={"invoice_id": "in_002", "plan_id": "pro"},
        ),
        await repo.append(
            actor="system:billing",
            action="SUBSCRIPTION_DELETED",
            resource_type="subscription",
            resource_id="sub_001",
        ),
    ]


async def _tamper(session: AsyncSession, stmt) -> None:
    await session.execute(stmt)
    session.expire_all()


# ---------------------------------------------------------------------------
# Appending
# ---------------------------------------------------------------------------


class TestAppend:
    @pytest.mark.asyncio
    async def test_entries_numbered_and_linked(self, async_session: AsyncSession):
        repo = AuditRepository(async_session, tenant_id="t1")

        paid, failed, deleted = await _billing_history(repo)

        assert [e.sequence for e in (paid, failed, deleted)] == [1, 2, 3]
        assert paid.previous_hash is None
        assert failed.previous_hash == paid.entry_hash
        assert deleted.previous_hash == failed.entry_hash
        assert len(paid.entry_hash) == 64

    @pytest.mark.asyncio
    async def test_head_tracks_newest_entry(self, async_session: AsyncSession):
        repo = AuditRepository(async_session, tenant_id="t1")
        assert await repo.head() == (0, None)

        entries = await _billing_history(repo)

        assert await repo.head() == (3, entries[-1].entry_hash)

    @pytest.mark.asyncio
    async def test_empty_metadata_stored_as_null(self, async_session: AsyncSession):
        repo = AuditRepository(async_session, tenant_id="t1")
        entry = await repo.append(actor="system:billing", action="FEATURES_UPDATED", metadata={})
        assert entry.metadata_json is None

    @pytest.mark.asyncio
    async def test_tenants_numbered_independently(self, async_session: AsyncSession):
        await _billing_history(AuditRepository(async_session, tenant_id="t1"))

        other = await AuditRepository(async_session, tenant_id="t2").append(
            actor="system:billing", action="BILLING_ACCOUNT_LINKED", resource_id="cus_9"
        )

        assert other.sequence == 1
        assert other.previous_hash is None


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class TestRecent:
    @pytest.mark.asyncio
    async def test_newest_first(self, async_session: AsyncSession):
        repo = AuditRepository(async_session, tenant_id="t1")
        await _billing_history(repo)

        entries = await repo.recent()

        assert [e.action for e in entries] == ["SUBSCRIPTION_DELETED", "PAYMENT_FAILED", "PAYMENT_SUCCEEDED"]

    @pytest.mark.asyncio
    async def test_filters(self, async_session: AsyncSession):
        repo = AuditRepository(async_session, tenant_id="t1")
        await _billing_history(repo)

        failed = await repo.recent(action="PAYMENT_FAILED")
        by_invoice = await repo.recent(resource_id="in_001")

        assert [e.resource_id for e in failed] == ["in_002"]
        assert [e.action for e in by_invoice] == ["PAYMENT_SUCCEEDED"]

    @pytest.mark.asyncio
    async def test_limit_keeps_newest(self, async_session: AsyncSession):
        repo = AuditRepository(async_session, tenant_id="t1")
        await _billing_history(repo)

        entries = await repo.recent(limit=2)

        assert [e.sequence for e in entries] == [3, 2]

    @pytest.mark.asyncio
    async def test_other_tenants_hidden(self, async_session: AsyncSession):
        await _billing_history(AuditRepository(async_session, tenant_id="t1"))
        assert await AuditRepository(async_session, tenant_id="t2").recent() == []


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestVerifyChain:
    @pytest.mark.asyncio
    async def test_intact_chain(self, async_session: AsyncSession):
        repo = AuditRepository(async_session, tenant_id="t1")
        await _billing_history(repo)
        await async_session.commit()
        async_session.expire_all()

        result = await repo.verify_chain()

        assert result.valid
        assert result.checked == 3
        assert (result.broken_at, result.reason) == (None, None)

    @pytest.mark.asyncio
    async def test_empty_chain_is_valid(self, async_session: AsyncSession):
        result = await AuditRepository(async_session, tenant_id="t1").verify_chain()
        assert (result.valid, result.checked) == (True, 0)

    @pytest.mark.asyncio
    async def test_edited_amount_detected(self, async_session: AsyncSession):
        repo = AuditRepository(async_session, tenant_id="t1")
        await _billing_history(repo)
        await _tamper(
            async_session,
            update(AuditLogTable)
            .where(AuditLogTable.tenant_id == "t1", AuditLogTable.sequence == 1)
            .values(metadata_json={"plan_id": "pro", "amount_paid": 0}),
        )

        result = await repo.verify_chain()

        assert not result.valid
        assert (result.broken_at, result.reason, result.checked) == (1, "digest", 0)

    @pytest.mark.asyncio
    async def test_relinked_entry_detected(self, async_session: AsyncSession):
        repo = AuditRepository(async_session, tenant_id="t1")
        await _billing_history(repo)
        await _tamper(
            async_session,
            update(AuditLogTable)
            .where(AuditLogTable.tenant_id == "t1", AuditLogTable.sequence == 2)
            .values(previous_hash="0" * 64),
        )

        result = await repo.verify_chain()

        assert (result.valid, result.broken_at, result.reason, result.checked) == (False, 2, "link", 1)

    @pytest.mark.asyncio
    async def test_deleted_entry_detected(self, async_session: AsyncSession):
        repo = AuditRepository(async_session, tenant_id="t1")
        await _billing_history(repo)
        await _tamper(
            async_session,
            delete(AuditLogTable).where(AuditLogTable.tenant_id == "t1", AuditLogTable.sequence == 2),
        )

        result = await repo.verify_chain()

        assert (result.valid, result.broken_at, result.reason, result.checked) == (False, 3, "sequence", 1)

    @pytest.mark.asyncio
    async def test_break_in_one_tenant_leaves_others_valid(self, async_session: AsyncSession):
        await _billing_history(AuditRepository(async_session, tenant_id="t1"))
        clean = AuditRepository(async_session, tenant_id="t2")
        await _billing_history(clean)
        await _tamper(
            async_session,
            update(AuditLogTable)
            .where(AuditLogTable.tenant_id == "t1", AuditLogTable.sequence == 3)
            .values(action="SUBSCRIPTION_UPDATED"),
        )

        assert not (await AuditRepository(async_session, tenant_id="t1").verify_chain()).valid
        assert (await clean.verify_chain()).valid


class TestEntryDigest:
    _FIELDS = {
        "tenant_id": "t1",
        "sequence": 4,
        "actor": "system:billing",
        "action": "PAYMENT_SUCCEEDED",
        "resource_type": "invoice",
        "resource_id": "in_004",
        "description": None,
        "metadata": {"plan_id": "pro", "amount_paid": 4900},
        "previous_hash": "a" * 64,
        "created_at": datetime(2025, 1, 15, 9, 0, tzinfo=UTC),
    }

    def test_metadata_key_order_irrelevant(self):
        reordered = {**self._FIELDS, "metadata": {"amount_paid": 4900, "plan_id": "pro"}}
        assert AuditRepository.entry_digest(**self._FIELDS) == AuditRepository.entry_digest(**reordered)

    @pytest.mark.parametrize(
        ("field", "value"),
        [("sequence", 5), ("tenant_id", "t2"), ("previous_hash", None), ("metadata", {"plan_id": "team"})],
    )
    def test_every_field_is_covered(self, field: str, value):
        changed = {**self._FIELDS, field: value}
        assert AuditRepository.entry_digest(**self._FIELDS) != AuditRepository.entry_digest(**changed)
