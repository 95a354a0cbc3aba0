"""Subscription state reconciliation.

Applies partial updates from the payment processor to a tenant's
subscription record.  The record is read under a row lock and written in
the caller's transaction; the caller commits.  Status changes are checked
against the subscription state machine, credits only ever grow, and plan
changes append a conversion history entry inside a SAVEPOINT so that a
history failure never loses the subscription update itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from billing_core.catalog.plans import PlanCatalog
from billing_core.errors import AccountConflict, InvalidStatusTransition, UnknownAccount
from billing_core.models.billing import SubscriptionStatus, SubscriptionUpdate, is_transition_allowed
from billing_core.state.repository import ConversionHistoryRepository, SubscriptionRepository
from billing_core.state.tables import TenantSubscriptionTable
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Immutable copy of a subscription record at one point in time."""

    tenant_id: str
    external_account_ref: str | None
    plan_id: str | None
    status: SubscriptionStatus
    date_paid: datetime | None
    credits: int
    lifecycle: int

    @classmethod
    def from_row(cls, row: TenantSubscriptionTable) -> SubscriptionSnapshot:
        return cls(
            tenant_id=row.tenant_id,
            external_account_ref=row.external_account_ref,
            plan_id=row.plan_id,
            status=SubscriptionStatus(row.status),
            date_paid=row.date_paid,
            credits=row.credits,
            lifecycle=row.lifecycle,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "external_account_ref": self.external_account_ref,
            "plan_id": self.plan_id,
            "status": self.status.value,
            "date_paid": self.date_paid.isoformat() if self.date_paid else None,
            "credits": self.credits,
            "lifecycle": self.lifecycle,
        }


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of :meth:`SubscriptionReconciler.apply_transition`.

    Attributes
    ----------
    record:
        The record after the update.
    previous_plan, previous_status:
        Plan and status before the update.
    changed:
        ``False`` when the stored state is identical after the update,
        i.e. the input was a duplicate.
    history_entry_id:
        Id of the conversion history entry, when one was written.
    history_error:
        Error message when the history write failed.  The subscription
        update is kept regardless.
    """

    record: SubscriptionSnapshot
    previous_plan: str | None
    previous_status: SubscriptionStatus
    changed: bool
    history_entry_id: str | None = None
    history_error: str | None = None

    @property
    def plan_changed(self) -> bool:
        return self.record.plan_id != self.previous_plan

    @property
    def status_changed(self) -> bool:
        return self.record.status != self.previous_status


class SubscriptionReconciler:
    """Idempotent transitions on tenant subscription records.

    Parameters
    ----------
    session:
        Database session; the caller owns the transaction.
    catalog:
        Plan catalog used to classify plan changes.
    """

    def __init__(self, session: AsyncSession, catalog: PlanCatalog) -> None:
        self._session = session
        self._catalog = catalog
        self._subscriptions = SubscriptionRepository(session)
        self._history = ConversionHistoryRepository(session)

    async def get_snapshot(self, tenant_id: str) -> SubscriptionSnapshot | None:
        row = await self._subscriptions.get_by_tenant(tenant_id)
        return SubscriptionSnapshot.from_row(row) if row is not None else None

    async def apply_transition(
        self,
        external_ref: str,
        update: SubscriptionUpdate,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        """Apply *update* to the record linked to *external_ref*.

        Parameters
        ----------
        external_ref:
            Processor customer id the record is linked to.
        update:
            Fields to change; ``None`` fields are left untouched.
        metadata:
            Extra context stored on the conversion history entry.

        Raises
        ------
        UnknownAccount
            If no record is linked to *external_ref*.
        InvalidStatusTransition
            If the requested status is not reachable from the current one.
            Nothing is written.
        """
        row = await self._subscriptions.find_by_external_ref(external_ref, for_update=True)
        if row is None:
            raise UnknownAccount(external_ref)

        previous = SubscriptionSnapshot.from_row(row)
        if update.status is not None and not is_transition_allowed(previous.status, update.status):
            raise InvalidStatusTransition(previous.status.value, update.status.value)

        if update.is_empty():
            return TransitionResult(
                record=previous,
                previous_plan=previous.plan_id,
                previous_status=previous.status,
                changed=False,
            )

        values: dict[str, Any] = {}
        if update.plan_id is not None:
            values["plan_id"] = update.plan_id
        if update.status is not None:
            values["status"] = update.status.value
        if update.date_paid is not None:
            values["date_paid"] = update.date_paid

        updated = await self._subscriptions.update(
            external_ref,
            values,
            credits_increment=update.credits_increment or 0,
        )
        if updated is None:
            raise UnknownAccount(external_ref)
        record = SubscriptionSnapshot.from_row(updated)

        history_entry_id: str | None = None
        history_error: str | None = None
        if update.plan_id is not None and update.plan_id != previous.plan_id:
            history_entry_id, history_error = await self._record_conversion(
                record.tenant_id, previous.plan_id, update.plan_id, metadata
            )

        changed = record != previous
        if changed:
            logger.info(
                "Subscription transition tenant=%s account=%s plan=%s->%s status=%s->%s credits=%d->%d",
                record.tenant_id,
                external_ref,
                previous.plan_id or "-",
                record.plan_id or "-",
                previous.status.value,
                record.status.value,
                previous.credits,
                record.credits,
            )
        else:
            logger.debug("Subscription for account %s unchanged by update", external_ref)

        return TransitionResult(
            record=record,
            previous_plan=previous.plan_id,
            previous_status=previous.status,
            changed=changed,
            history_entry_id=history_entry_id,
            history_error=history_error,
        )

    async def _record_conversion(
        self,
        tenant_id: str,
        from_plan: str | None,
        to_plan: str,
        metadata: dict[str, Any] | None,
    ) -> tuple[str | None, str | None]:
        reason = self._catalog.classify(from_plan, to_plan)
        try:
            async with self._session.begin_nested():
                entry = await self._history.create(
                    tenant_id=tenant_id,
                    from_plan=from_plan,
                    to_plan=to_plan,
                    reason=reason.value,
                    metadata=metadata,
                )
        except Exception as exc:
            logger.exception(
                "Failed to record conversion %s->%s for tenant %s; subscription update kept",
                from_plan or "-",
                to_plan,
                tenant_id,
            )
            return None, str(exc)
        return entry.id, None

    async def reopen(self, external_ref: str) -> TransitionResult:
        """Start a new lifecycle on a ``deleted`` record.

        The record keeps its tenant and external account reference; the
        status goes back to ``none``, the plan is cleared and ``lifecycle``
        is incremented.  Records in any other status are returned unchanged.

        Raises
        ------
        UnknownAccount
            If no record is linked to *external_ref*.
        """
        row = await self._subscriptions.find_by_external_ref(external_ref, for_update=True)
        if row is None:
            raise UnknownAccount(external_ref)

        previous = SubscriptionSnapshot.from_row(row)
        if previous.status != SubscriptionStatus.DELETED:
            return TransitionResult(
                record=previous,
                previous_plan=previous.plan_id,
                previous_status=previous.status,
                changed=False,
            )

        updated = await self._subscriptions.update(
            external_ref,
            {"status": SubscriptionStatus.NONE.value, "plan_id": None},
            lifecycle_increment=1,
        )
        if updated is None:
            raise UnknownAccount(external_ref)
        record = SubscriptionSnapshot.from_row(updated)
        logger.info(
            "Reopened subscription for tenant %s (account %s), lifecycle %d",
            record.tenant_id,
            external_ref,
            record.lifecycle,
        )
        return TransitionResult(
            record=record,
            previous_plan=previous.plan_id,
            previous_status=previous.status,
            changed=True,
        )

    async def link_account(self, tenant_id: str, external_ref: str) -> tuple[SubscriptionSnapshot, bool]:
        """Bind the processor customer *external_ref* to *tenant_id*.

        Creates the tenant's record when it does not exist yet.

        Returns
        -------
        tuple[SubscriptionSnapshot, bool]
            The record and whether a new link was made (``False`` when the
            account was already linked to this tenant).

        Raises
        ------
        AccountConflict
            If *external_ref* is already linked to a different tenant.
        """
        existing = await self._subscriptions.find_by_external_ref(external_ref, for_update=True)
        if existing is not None:
            if existing.tenant_id != tenant_id:
                raise AccountConflict(external_ref, existing.tenant_id)
            return SubscriptionSnapshot.from_row(existing), False

        row = await self._subscriptions.get_by_tenant(tenant_id, for_update=True)
        if row is None:
            row = await self._subscriptions.create(tenant_id, external_ref=external_ref)
            return SubscriptionSnapshot.from_row(row), True

        if row.external_account_ref is not None:
            logger.warning(
                "Tenant %s moves from account %s to %s",
                tenant_id,
                row.external_account_ref,
                external_ref,
            )
        await self._subscriptions.set_external_ref(tenant_id, external_ref)
        row = await self._subscriptions.get_by_tenant(tenant_id)
        if row is None:
            raise UnknownAccount(external_ref)
        logger.info("Linked account %s to tenant %s", external_ref, tenant_id)
        return SubscriptionSnapshot.from_row(row), True
