"""Tests for subscription transitions, reopening and account linking."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from billing_core.catalog.plans import Plan, PlanCatalog
from billing_core.errors import AccountConflict, InvalidStatusTransition, UnknownAccount
from billing_core.models.billing import SubscriptionStatus, SubscriptionUpdate
from billing_core.state.repository import ConversionHistoryRepository

from billing_api.services.subscription_reconciler import SubscriptionReconciler

_PAID_AT = datetime(2025, 1, 1, tzinfo=UTC)


@pytest.mark.asyncio
class TestApplyTransition:
    async def test_activates_plan_and_records_upgrade(self, session_factory, seed_tenant, catalog) -> None:
        await seed_tenant("t-1", "cus_1")
        async with session_factory() as session:
            reconciler = SubscriptionReconciler(session, catalog)
            result = await reconciler.apply_transition(
                "cus_1",
                SubscriptionUpdate(plan_id="pro", status=SubscriptionStatus.ACTIVE, date_paid=_PAID_AT),
                metadata={"invoice_id": "in_1"},
            )
            await session.commit()

        assert result.changed
        assert result.plan_changed and result.status_changed
        assert result.previous_plan is None
        assert result.record.plan_id == "pro"
        assert result.record.status == SubscriptionStatus.ACTIVE
        assert result.history_entry_id is not None

        async with session_factory() as session:
            history = await ConversionHistoryRepository(session).list_for_tenant("t-1")
        assert len(history) == 1
        assert history[0].from_plan is None
        assert history[0].to_plan == "pro"
        assert history[0].reason == "upgrade"
        assert history[0].metadata_json == {"invoice_id": "in_1"}

    async def test_same_update_twice_is_unchanged(self, session_factory, seed_tenant, catalog) -> None:
        await seed_tenant("t-1", "cus_1")
        update = SubscriptionUpdate(plan_id="hobby", status=SubscriptionStatus.ACTIVE, date_paid=_PAID_AT)
        async with session_factory() as session:
            reconciler = SubscriptionReconciler(session, catalog)
            await reconciler.apply_transition("cus_1", update)
            second = await reconciler.apply_transition("cus_1", update)
            await session.commit()

        assert not second.changed
        assert second.history_entry_id is None

        async with session_factory() as session:
            history = await ConversionHistoryRepository(session).list_for_tenant("t-1")
        assert len(history) == 1

    async def test_downgrade_classified(self, session_factory, seed_tenant, catalog) -> None:
        await seed_tenant("t-1", "cus_1")
        async with session_factory() as session:
            reconciler = SubscriptionReconciler(session, catalog)
            await reconciler.apply_transition("cus_1", SubscriptionUpdate(plan_id="pro", status=SubscriptionStatus.ACTIVE))
            await reconciler.apply_transition("cus_1", SubscriptionUpdate(plan_id="hobby"))
            await session.commit()

        async with session_factory() as session:
            history = await ConversionHistoryRepository(session).list_for_tenant("t-1")
        assert [h.reason for h in history] == ["upgrade", "downgrade"]

    async def test_equal_rank_switch_is_plan_change(self, session_factory, seed_tenant) -> None:
        catalog = PlanCatalog(
            [
                Plan(plan_id="free", rank=0),
                Plan(plan_id="pro", rank=2, price_id="price_pro"),
                Plan(plan_id="pro_annual", rank=2, price_id="price_pro_annual"),
            ]
        )
        await seed_tenant("t-1", "cus_1")
        async with session_factory() as session:
            reconciler = SubscriptionReconciler(session, catalog)
            await reconciler.apply_transition("cus_1", SubscriptionUpdate(plan_id="pro", status=SubscriptionStatus.ACTIVE))
            switched = await reconciler.apply_transition("cus_1", SubscriptionUpdate(plan_id="pro_annual"))
            await session.commit()

        assert switched.plan_changed
        async with session_factory() as session:
            history = await ConversionHistoryRepository(session).list_for_tenant("t-1")
        assert [(h.from_plan, h.to_plan, h.reason) for h in history] == [
            (None, "pro", "upgrade"),
            ("pro", "pro_annual", "plan_change"),
        ]

    async def test_credits_accumulate(self, session_factory, seed_tenant, catalog) -> None:
        await seed_tenant("t-1", "cus_1")
        async with session_factory() as session:
            reconciler = SubscriptionReconciler(session, catalog)
            await reconciler.apply_transition("cus_1", SubscriptionUpdate(credits_increment=10))
            result = await reconciler.apply_transition("cus_1", SubscriptionUpdate(credits_increment=10))
            await session.commit()

        assert result.record.credits == 20
        assert not result.plan_changed

    async def test_empty_update_is_noop(self, session_factory, seed_tenant, catalog) -> None:
        await seed_tenant("t-1", "cus_1")
        async with session_factory() as session:
            result = await SubscriptionReconciler(session, catalog).apply_transition("cus_1", SubscriptionUpdate())
        assert not result.changed
        assert result.record.status == SubscriptionStatus.NONE

    async def test_unknown_account_raises(self, session_factory, catalog) -> None:
        async with session_factory() as session:
            with pytest.raises(UnknownAccount) as exc_info:
                await SubscriptionReconciler(session, catalog).apply_transition(
                    "cus_missing", SubscriptionUpdate(status=SubscriptionStatus.ACTIVE)
                )
        assert exc_info.value.code == "account_not_linked"

    async def test_disallowed_transition_writes_nothing(self, session_factory, seed_tenant, catalog) -> None:
        await seed_tenant("t-1", "cus_1")
        async with session_factory() as session:
            reconciler = SubscriptionReconciler(session, catalog)
            await reconciler.apply_transition("cus_1", SubscriptionUpdate(status=SubscriptionStatus.DELETED))
            await session.commit()

        async with session_factory() as session:
            with pytest.raises(InvalidStatusTransition):
                await SubscriptionReconciler(session, catalog).apply_transition(
                    "cus_1", SubscriptionUpdate(plan_id="pro", status=SubscriptionStatus.PAST_DUE)
                )

        async with session_factory() as session:
            snapshot = await SubscriptionReconciler(session, catalog).get_snapshot("t-1")
        assert snapshot is not None
        assert snapshot.status == SubscriptionStatus.DELETED
        assert snapshot.plan_id is None

    async def test_history_failure_keeps_update(self, session_factory, seed_tenant, catalog, monkeypatch) -> None:
        await seed_tenant("t-1", "cus_1")

        async def _boom(self, **kwargs):
            raise RuntimeError("history table unavailable")

        monkeypatch.setattr(ConversionHistoryRepository, "create", _boom)

        async with session_factory() as session:
            result = await SubscriptionReconciler(session, catalog).apply_transition(
                "cus_1", SubscriptionUpdate(plan_id="pro", status=SubscriptionStatus.ACTIVE)
            )
            await session.commit()

        assert result.history_entry_id is None
        assert result.history_error == "history table unavailable"

        async with session_factory() as session:
            snapshot = await SubscriptionReconciler(session, catalog).get_snapshot("t-1")
        assert snapshot is not None
        assert snapshot.plan_id == "pro"


@pytest.mark.asyncio
class TestReopen:
    async def test_reopen_deleted_starts_new_lifecycle(self, session_factory, seed_tenant, catalog) -> None:
        await seed_tenant("t-1", "cus_1")
        async with session_factory() as session:
            reconciler = SubscriptionReconciler(session, catalog)
            await reconciler.apply_transition("cus_1", SubscriptionUpdate(plan_id="pro", status=SubscriptionStatus.ACTIVE))
            await reconciler.apply_transition("cus_1", SubscriptionUpdate(status=SubscriptionStatus.DELETED))
            result = await reconciler.reopen("cus_1")
            await session.commit()

        assert result.changed
        assert result.previous_status == SubscriptionStatus.DELETED
        assert result.record.status == SubscriptionStatus.NONE
        assert result.record.plan_id is None
        assert result.record.lifecycle == 1
        assert result.record.external_account_ref == "cus_1"

    async def test_reopen_active_is_noop(self, session_factory, seed_tenant, catalog) -> None:
        await seed_tenant("t-1", "cus_1")
        async with session_factory() as session:
            reconciler = SubscriptionReconciler(session, catalog)
            await reconciler.apply_transition("cus_1", SubscriptionUpdate(status=SubscriptionStatus.ACTIVE))
            result = await reconciler.reopen("cus_1")
        assert not result.changed
        assert result.record.lifecycle == 0


@pytest.mark.asyncio
class TestLinkAccount:
    async def test_creates_record_for_new_tenant(self, session_factory, catalog) -> None:
        async with session_factory() as session:
            snapshot, linked = await SubscriptionReconciler(session, catalog).link_account("t-new", "cus_9")
            await session.commit()
        assert linked
        assert snapshot.tenant_id == "t-new"
        assert snapshot.external_account_ref == "cus_9"
        assert snapshot.status == SubscriptionStatus.NONE

    async def test_links_existing_unlinked_tenant(self, session_factory, seed_tenant, catalog) -> None:
        await seed_tenant("t-1")
        async with session_factory() as session:
            snapshot, linked = await SubscriptionReconciler(session, catalog).link_account("t-1", "cus_1")
            await session.commit()
        assert linked
        assert snapshot.external_account_ref == "cus_1"

    async def test_relinking_same_tenant_is_noop(self, session_factory, seed_tenant, catalog) -> None:
        await seed_tenant("t-1", "cus_1")
        async with session_factory() as session:
            _snapshot, linked = await SubscriptionReconciler(session, catalog).link_account("t-1", "cus_1")
        assert not linked

    async def test_account_owned_by_other_tenant_conflicts(self, session_factory, seed_tenant, catalog) -> None:
        await seed_tenant("t-1", "cus_1")
        async with session_factory() as session:
            with pytest.raises(AccountConflict):
                await SubscriptionReconciler(session, catalog).link_account("t-2", "cus_1")
