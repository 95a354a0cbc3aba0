"""Stripe webhook processing.

Ties the pipeline together for one verified event:

1. Record the event id in the processed-event ledger (duplicates stop here).
2. Resolve the purchased plan from the event's line items.
3. Apply the subscription transition and commit it together with the
   ledger row.
4. Reconcile the tenant's entitlements when plan or status changed.
5. Emit audit, notification and email side effects.

Steps 4 and 5 run after the commit and are isolated: their failures are
logged and never undo or fail the transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, assert_never

from billing_core.catalog.features import FeatureMap
from billing_core.catalog.plans import CreditsEffect
from billing_core.catalog.resolver import PlanResolver
from billing_core.errors import InvalidStatusTransition
from billing_core.events.models import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from billing_core.models.billing import SubscriptionStatus, SubscriptionUpdate
from billing_core.models.notification import NotificationType
from billing_core.state.repository import ProcessedEventRepository

from billing_api.services.audit_service import AuditAction
from billing_api.services.checkout_line_items import LineItemSource
from billing_api.services.entitlement_service import EntitlementDiff, EntitlementService
from billing_api.services.side_effects import (
    AuditSpec,
    EmailSpec,
    NotificationSpec,
    SideEffectDispatcher,
    SideEffectReport,
)
from billing_api.services.subscription_reconciler import (
    SubscriptionReconciler,
    SubscriptionSnapshot,
    TransitionResult,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

_BILLING_LINK = "/account/billing"


class OutcomeStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class WebhookOutcome:
    """Result of processing one webhook event."""

    status: OutcomeStatus
    event_id: str
    event_type: str
    tenant_id: str | None = None
    detail: str | None = None
    entitlements: EntitlementDiff | None = None
    side_effects: tuple[SideEffectReport, ...] = ()


@dataclass(frozen=True)
class _Emission:
    audit: AuditSpec
    notification: NotificationSpec | None = None
    email: EmailSpec | None = None
    # Receives the entitlement diff in its audit metadata.
    primary: bool = True


@dataclass
class _Applied:
    """What a handler did inside the transaction, and what must follow it."""

    status: OutcomeStatus = OutcomeStatus.PROCESSED
    tenant_id: str | None = None
    detail: str | None = None
    reconcile: bool = False
    emissions: list[_Emission] = field(default_factory=list)


def _needs_reconcile(*results: TransitionResult) -> bool:
    return any(r.changed and (r.plan_changed or r.status_changed) for r in results)


def _epoch_to_iso(value: int | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC).date().isoformat()


class BillingService:
    """Process verified Stripe webhook events.

    Parameters
    ----------
    session_factory:
        Async session factory; the transition runs in one session, each
        follow-up step in its own.
    resolver:
        Price id to plan resolver built from the plan catalog.
    feature_map:
        Plan to feature-set mapping for entitlement reconciliation.
    dispatcher:
        Side-effect dispatcher.
    line_items:
        Source of checkout line items that are not expanded in the event.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: PlanResolver,
        feature_map: FeatureMap,
        dispatcher: SideEffectDispatcher,
        line_items: LineItemSource,
    ) -> None:
        self._session_factory = session_factory
        self._resolver = resolver
        self._feature_map = feature_map
        self._dispatcher = dispatcher
        self._line_items = line_items

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process(self, event: BillingEvent) -> WebhookOutcome:
        """Apply *event* exactly once.

        Raises
        ------
        MalformedLineItems, UnknownPriceId
            The event cannot be mapped to a plan.  Nothing is written.
        UnknownAccount
            The customer is not linked to a tenant yet.  Nothing is
            written, so the processor's retry is processed normally.
        AccountConflict
            The checkout links a customer that belongs to another tenant.
        """
        external_ref = event.external_account_ref
        async with self._session_factory() as session:
            try:
                ledger = ProcessedEventRepository(session)
                is_new = await ledger.record(event.event_id, event_type=event.type, external_ref=external_ref)
                if not is_new:
                    await session.rollback()
                    logger.info("Event %s (%s) already processed; skipping", event.event_id, event.type)
                    return WebhookOutcome(
                        status=OutcomeStatus.DUPLICATE,
                        event_id=event.event_id,
                        event_type=event.type,
                        detail="already processed",
                    )

                applied = await self._apply(session, event)
                await session.commit()
            except InvalidStatusTransition as exc:
                await session.rollback()
                logger.warning(
                    "Ignoring stale %s event %s for account %s: %s",
                    event.type,
                    event.event_id,
                    external_ref or "-",
                    exc,
                )
                return WebhookOutcome(
                    status=OutcomeStatus.IGNORED,
                    event_id=event.event_id,
                    event_type=event.type,
                    detail=str(exc),
                )
            except Exception:
                await session.rollback()
                raise

        logger.info(
            "Processed %s event %s for tenant %s (account %s): %s",
            event.type,
            event.event_id,
            applied.tenant_id or "-",
            external_ref or "-",
            applied.detail or applied.status.value,
        )

        diff: EntitlementDiff | None = None
        if applied.reconcile and applied.tenant_id is not None:
            diff = await self._reconcile_after_transition(applied.tenant_id)

        reports: list[SideEffectReport] = []
        if applied.tenant_id is not None:
            data = {"event_id": event.event_id, "external_account_ref": external_ref}
            for emission in applied.emissions:
                audit = emission.audit
                if emission.primary and diff is not None and not diff.is_empty:
                    audit = replace(audit, metadata={**audit.metadata, "entitlements": diff.to_dict()})
                reports.append(
                    await self._dispatcher.emit(
                        applied.tenant_id,
                        event.type,
                        data,
                        audit,
                        notification=emission.notification,
                        email=emission.email,
                    )
                )

        return WebhookOutcome(
            status=applied.status,
            event_id=event.event_id,
            event_type=event.type,
            tenant_id=applied.tenant_id,
            detail=applied.detail,
            entitlements=diff,
            side_effects=tuple(reports),
        )

    async def _apply(self, session: AsyncSession, event: BillingEvent) -> _Applied:
        reconciler = SubscriptionReconciler(session, self._resolver.catalog)
        if isinstance(event, CheckoutCompleted):
            return await self._on_checkout_completed(reconciler, event)
        if isinstance(event, InvoicePaid):
            return await self._on_invoice_paid(reconciler, event)
        if isinstance(event, InvoicePaymentFailed):
            return await self._on_invoice_payment_failed(reconciler, event)
        if isinstance(event, SubscriptionUpdated):
            return await self._on_subscription_updated(reconciler, event)
        if isinstance(event, SubscriptionDeleted):
            return await self._on_subscription_deleted(reconciler, event)
        assert_never(event)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_checkout_completed(self, reconciler: SubscriptionReconciler, event: CheckoutCompleted) -> _Applied:
        checkout = event.session
        external_ref = event.external_account_ref
        if external_ref is None:
            return _Applied(status=OutcomeStatus.IGNORED, detail="checkout session has no customer")

        applied = _Applied(detail="checkout recorded")
        if event.tenant_id is not None:
            snapshot, linked = await reconciler.link_account(event.tenant_id, external_ref)
            applied.tenant_id = snapshot.tenant_id
            if linked:
                applied.detail = "account linked"
                applied.emissions.append(
                    _Emission(
                        audit=AuditSpec(
                            action=AuditAction.BILLING_ACCOUNT_LINKED,
                            resource_type="billing_account",
                            resource_id=external_ref,
                            description=f"Billing account {external_ref} linked",
                            metadata={"checkout_session_id": checkout.id},
                        ),
                        primary=False,
                    )
                )

        if not event.is_paid_one_time_purchase:
            return applied

        # One-time purchases produce no invoice; credits are granted here.
        if checkout.line_items is not None:
            line_items = checkout.line_items.data
        else:
            line_items = await self._line_items.fetch(checkout.id)
        resolved = self._resolver.resolve_line_items(line_items)
        if not isinstance(resolved.effect, CreditsEffect):
            logger.warning(
                "One-time checkout %s resolved to subscription plan %s; nothing granted",
                checkout.id,
                resolved.plan_id,
            )
            return applied

        amount = resolved.effect.amount
        result = await reconciler.apply_transition(
            external_ref,
            SubscriptionUpdate(
                credits_increment=amount,
                date_paid=event.created_at or datetime.now(UTC),
            ),
        )
        applied.tenant_id = result.record.tenant_id
        applied.detail = f"{amount} credits granted"
        applied.emissions.append(
            _Emission(
                audit=AuditSpec(
                    action=AuditAction.CREDITS_PURCHASED,
                    resource_type="payment",
                    resource_id=checkout.id,
                    description=f"Purchased {amount} credits",
                    metadata={"plan_id": resolved.plan_id, "credits": amount, "balance": result.record.credits},
                ),
                notification=NotificationSpec(
                    type=NotificationType.SUCCESS,
                    title="Credits added",
                    message=f"{amount} credits were added to your workspace",
                    link=_BILLING_LINK,
                ),
            )
        )
        return applied

    async def _on_invoice_paid(self, reconciler: SubscriptionReconciler, event: InvoicePaid) -> _Applied:
        invoice = event.invoice
        resolved = self._resolver.resolve_line_items(invoice.lines.data)
        if not resolved.is_subscription:
            return _Applied(
                status=OutcomeStatus.IGNORED,
                detail=f"invoice for one-time plan {resolved.plan_id}; settled at checkout",
            )

        reopened = await reconciler.reopen(event.external_account_ref)
        date_paid = event.period_start or event.created_at or datetime.now(UTC)
        result = await reconciler.apply_transition(
            event.external_account_ref,
            SubscriptionUpdate(plan_id=resolved.plan_id, status=SubscriptionStatus.ACTIVE, date_paid=date_paid),
            metadata={"invoice_id": invoice.id, "event_id": event.event_id},
        )

        applied = _Applied(tenant_id=result.record.tenant_id, reconcile=_needs_reconcile(reopened, result))
        if not (reopened.changed or result.changed):
            applied.detail = "no change"
            return applied

        applied.detail = f"payment recorded for plan {resolved.plan_id}"
        applied.emissions.append(
            _Emission(
                audit=AuditSpec(
                    action=AuditAction.PAYMENT_SUCCEEDED,
                    resource_type="payment",
                    resource_id=invoice.id,
                    description=f"Payment successful for {resolved.plan_id} plan",
                    metadata={
                        "plan_id": resolved.plan_id,
                        "previous_plan": reopened.previous_plan if reopened.changed else result.previous_plan,
                        "date_paid": date_paid.isoformat(),
                        "invoice_id": invoice.id,
                        "amount_due": invoice.amount_due,
                        "currency": invoice.currency,
                        "lifecycle": result.record.lifecycle,
                    },
                ),
                notification=NotificationSpec(
                    type=NotificationType.SUCCESS,
                    title="Payment successful",
                    message=f"Your {resolved.plan_id} subscription payment was received",
                    link=_BILLING_LINK,
                ),
            )
        )
        return applied

    async def _on_invoice_payment_failed(
        self, reconciler: SubscriptionReconciler, event: InvoicePaymentFailed
    ) -> _Applied:
        invoice = event.invoice
        result = await reconciler.apply_transition(
            event.external_account_ref,
            SubscriptionUpdate(status=SubscriptionStatus.PAST_DUE),
        )
        applied = _Applied(tenant_id=result.record.tenant_id, reconcile=_needs_reconcile(result))
        if not result.changed:
            applied.detail = "already past due"
            return applied

        plan_id = result.record.plan_id
        applied.detail = "subscription past due"
        applied.emissions.append(
            _Emission(
                audit=AuditSpec(
                    action=AuditAction.PAYMENT_FAILED,
                    resource_type="payment",
                    resource_id=invoice.id,
                    description=f"Payment failed for {plan_id or 'current'} subscription",
                    metadata={"invoice_id": invoice.id, "plan_id": plan_id},
                ),
                notification=NotificationSpec(
                    type=NotificationType.ERROR,
                    title="Payment failed",
                    message="We were unable to process your payment. Please update your payment method.",
                    link=_BILLING_LINK,
                ),
                email=EmailSpec(
                    template_id="payment_failed",
                    variables={"plan_id": plan_id, "invoice_url": invoice.hosted_invoice_url},
                ),
            )
        )
        return applied

    async def _on_subscription_updated(
        self, reconciler: SubscriptionReconciler, event: SubscriptionUpdated
    ) -> _Applied:
        subscription = event.subscription
        if subscription.status == "active":
            status = (
                SubscriptionStatus.CANCEL_AT_PERIOD_END
                if subscription.cancel_at_period_end
                else SubscriptionStatus.ACTIVE
            )
        elif subscription.status == "past_due":
            status = SubscriptionStatus.PAST_DUE
        else:
            logger.info(
                "Subscription %s has untracked status %s; ignoring",
                subscription.id,
                subscription.status,
            )
            return _Applied(
                status=OutcomeStatus.IGNORED,
                detail=f"subscription status '{subscription.status}' is not tracked",
            )

        resolved = self._resolver.resolve_line_items(subscription.items.data)
        plan_id: str | None = resolved.plan_id
        if not resolved.is_subscription:
            logger.warning(
                "Subscription %s item resolved to one-time plan %s; keeping current plan",
                subscription.id,
                resolved.plan_id,
            )
            plan_id = None

        result = await reconciler.apply_transition(
            event.external_account_ref,
            SubscriptionUpdate(plan_id=plan_id, status=status),
            metadata={"subscription_id": subscription.id, "event_id": event.event_id},
        )
        applied = _Applied(tenant_id=result.record.tenant_id, reconcile=_needs_reconcile(result))
        if not result.changed:
            applied.detail = "no change"
            return applied

        record = result.record
        applied.detail = f"subscription {record.status.value} on plan {record.plan_id or '-'}"
        if status == SubscriptionStatus.CANCEL_AT_PERIOD_END and result.status_changed:
            period_end = _epoch_to_iso(subscription.current_period_end)
            applied.emissions.append(
                _Emission(
                    audit=AuditSpec(
                        action=AuditAction.SUBSCRIPTION_CANCELLED,
                        resource_type="subscription",
                        resource_id=subscription.id,
                        description=f"Subscription to {record.plan_id or 'current'} plan cancelled at period end",
                        metadata={"plan_id": record.plan_id, "period_end": period_end},
                    ),
                    notification=NotificationSpec(
                        type=NotificationType.WARNING,
                        title="Subscription cancelled",
                        message="Your subscription will end at the close of the current billing period",
                        link=_BILLING_LINK,
                    ),
                    email=EmailSpec(
                        template_id="subscription_cancelled",
                        variables={"plan_id": record.plan_id, "period_end": period_end},
                    ),
                )
            )
            return applied

        notification: NotificationSpec | None = None
        if result.plan_changed:
            notification = NotificationSpec(
                type=NotificationType.INFO,
                title="Plan changed",
                message=f"Your workspace is now on the {record.plan_id} plan",
                link=_BILLING_LINK,
            )
        applied.emissions.append(
            _Emission(
                audit=AuditSpec(
                    action=AuditAction.SUBSCRIPTION_UPDATED,
                    resource_type="subscription",
                    resource_id=subscription.id,
                    description=f"Subscription updated to {record.plan_id or '-'} ({record.status.value})",
                    metadata={
                        "plan_id": record.plan_id,
                        "previous_plan": result.previous_plan,
                        "status": record.status.value,
                        "previous_status": result.previous_status.value,
                    },
                ),
                notification=notification,
            )
        )
        return applied

    async def _on_subscription_deleted(
        self, reconciler: SubscriptionReconciler, event: SubscriptionDeleted
    ) -> _Applied:
        subscription = event.subscription
        result = await reconciler.apply_transition(
            event.external_account_ref,
            SubscriptionUpdate(status=SubscriptionStatus.DELETED),
        )
        applied = _Applied(tenant_id=result.record.tenant_id, reconcile=_needs_reconcile(result))
        if not result.changed:
            applied.detail = "already deleted"
            return applied

        applied.detail = "subscription deleted"
        applied.emissions.append(
            _Emission(
                audit=AuditSpec(
                    action=AuditAction.SUBSCRIPTION_DELETED,
                    resource_type="subscription",
                    resource_id=subscription.id,
                    description=f"Subscription to {result.record.plan_id or 'current'} plan ended",
                    metadata={"plan_id": result.record.plan_id, "previous_status": result.previous_status.value},
                ),
                notification=NotificationSpec(
                    type=NotificationType.WARNING,
                    title="Subscription ended",
                    message="Your subscription has ended and paid features are no longer available",
                    link=_BILLING_LINK,
                ),
            )
        )
        return applied

    # ------------------------------------------------------------------
    # Entitlements
    # ------------------------------------------------------------------

    async def _reconcile_after_transition(self, tenant_id: str) -> EntitlementDiff | None:
        try:
            async with self._session_factory() as session:
                diff = await EntitlementService(session, self._feature_map).reconcile(tenant_id)
                await session.commit()
        except Exception:
            logger.exception("Entitlement reconcile failed for tenant %s; transition kept", tenant_id)
            return None
        return diff

    async def reconcile_entitlements(self, tenant_id: str) -> EntitlementDiff:
        """Reconcile *tenant_id*'s entitlements outside the webhook path.

        A non-empty diff is audited as ``FEATURES_UPDATED``.
        """
        async with self._session_factory() as session:
            diff = await EntitlementService(session, self._feature_map).reconcile(tenant_id)
            await session.commit()

        if not diff.is_empty:
            await self._dispatcher.emit(
                tenant_id,
                "entitlements.reconciled",
                {},
                AuditSpec(
                    action=AuditAction.FEATURES_UPDATED,
                    resource_type="tenant",
                    resource_id=tenant_id,
                    description=f"Feature access updated for plan {diff.plan_id or 'free'}",
                    metadata=diff.to_dict(),
                ),
            )
        return diff

    async def subscription_overview(self, tenant_id: str) -> dict[str, Any] | None:
        """Return the tenant's subscription record and current entitlement set."""
        async with self._session_factory() as session:
            snapshot: SubscriptionSnapshot | None = await SubscriptionReconciler(
                session, self._resolver.catalog
            ).get_snapshot(tenant_id)
            if snapshot is None:
                return None
            features = await EntitlementService(session, self._feature_map).compute(tenant_id)
        return {
            **snapshot.to_dict(),
            "features": sorted(feature.value for feature in features),
            "total_features": self._feature_map.total_features,
        }
