"""Billing endpoints: Stripe webhook intake and internal subscription admin.

The webhook endpoint is authenticated by the Stripe signature, not by a
bearer token.  Its status codes drive Stripe's retry behaviour:

* ``200`` -- processed, duplicate, or acknowledged without processing
  (unknown event kind, stale transition, billing disabled).  No retry.
* ``400`` -- bad signature or an event that cannot be mapped to a plan.
* ``409`` -- the customer is not linked to a tenant yet, or belongs to
  another tenant.  Stripe retries, which absorbs checkout/invoice races.

The admin endpoints (subscription overview, entitlement reconcile and the
per-tenant audit trail with its chain check) require the admin bearer token.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from billing_core.errors import (
    AccountConflict,
    BillingError,
    InvalidSignature,
    MalformedLineItems,
    MalformedPayload,
    UnhandledEventKind,
    UnknownAccount,
    UnknownPriceId,
)
from billing_core.events.verifier import verify_and_classify
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from billing_api.dependencies import BillingServiceDep, SessionDep, SettingsDep, require_admin_token
from billing_api.services.audit_service import AuditService
from billing_api.services.billing_service import OutcomeStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class WebhookAck(BaseModel):
    """Body of a ``200`` webhook response."""

    received: bool = True
    status: OutcomeStatus
    event_id: str | None = None
    detail: str | None = None


class SubscriptionOverview(BaseModel):
    """Response for ``GET /billing/subscription/{tenant_id}``."""

    tenant_id: str
    external_account_ref: str | None = None
    plan_id: str | None = None
    status: str
    date_paid: str | None = None
    credits: int
    lifecycle: int
    features: list[str] = Field(default_factory=list)
    total_features: int


class EntitlementDiffResponse(BaseModel):
    """Response for ``POST /billing/entitlements/{tenant_id}/reconcile``."""

    tenant_id: str
    plan_id: str | None = None
    newly_enabled: list[str]
    newly_disabled: list[str]
    total_features: int


class AuditEntryResponse(BaseModel):
    sequence: int
    action: str
    actor: str
    resource_type: str | None = None
    resource_id: str | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime


class AuditTrailResponse(BaseModel):
    """Response for ``GET /billing/audit/{tenant_id}``."""

    tenant_id: str
    entries: list[AuditEntryResponse]


class AuditVerificationResponse(BaseModel):
    """Response for ``GET /billing/audit/{tenant_id}/verify``."""

    tenant_id: str
    valid: bool
    checked: int
    broken_at: int | None = None
    reason: str | None = None


def _error(status_code: int, exc: BillingError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": exc.code, "message": str(exc)}},
    )


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


@router.post("/webhooks", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    billing: BillingServiceDep,
) -> Any:
    """Verify, decode and process one Stripe webhook delivery."""
    if not settings.billing_enabled:
        return WebhookAck(status=OutcomeStatus.IGNORED, detail="billing disabled")

    body = await request.body()
    try:
        event = verify_and_classify(
            body,
            request.headers.get("stripe-signature"),
            settings.stripe_webhook_secret.get_secret_value(),
            tolerance=settings.stripe_webhook_tolerance_seconds,
        )
    except UnhandledEventKind as exc:
        logger.warning("Acknowledging unhandled event %s (%s)", exc.event_id or "-", exc.event_type)
        return WebhookAck(status=OutcomeStatus.IGNORED, event_id=exc.event_id, detail=str(exc))
    except (InvalidSignature, MalformedPayload) as exc:
        logger.warning("Rejected webhook delivery: %s", exc)
        return _error(400, exc)

    try:
        outcome = await billing.process(event)
    except (MalformedLineItems, UnknownPriceId) as exc:
        logger.error("Rejected %s event %s: %s", event.type, event.event_id, exc)
        return _error(400, exc)
    except (UnknownAccount, AccountConflict) as exc:
        logger.warning("Deferred %s event %s: %s", event.type, event.event_id, exc)
        return _error(409, exc)

    return WebhookAck(status=outcome.status, event_id=outcome.event_id, detail=outcome.detail)


# ---------------------------------------------------------------------------
# Internal admin
# ---------------------------------------------------------------------------


@router.get(
    "/subscription/{tenant_id}",
    response_model=SubscriptionOverview,
    dependencies=[Depends(require_admin_token)],
)
async def get_subscription(tenant_id: str, billing: BillingServiceDep) -> Any:
    """Return the tenant's subscription record and entitlement set."""
    overview = await billing.subscription_overview(tenant_id)
    if overview is None:
        raise HTTPException(status_code=404, detail=f"No subscription record for tenant '{tenant_id}'")
    return overview


@router.post(
    "/entitlements/{tenant_id}/reconcile",
    response_model=EntitlementDiffResponse,
    dependencies=[Depends(require_admin_token)],
)
async def reconcile_entitlements(tenant_id: str, billing: BillingServiceDep) -> Any:
    """Recompute the tenant's entitlements and return the diff."""
    diff = await billing.reconcile_entitlements(tenant_id)
    return EntitlementDiffResponse(
        tenant_id=tenant_id,
        plan_id=diff.plan_id,
        newly_enabled=diff.newly_enabled,
        newly_disabled=diff.newly_disabled,
        total_features=diff.total_features,
    )


@router.get(
    "/audit/{tenant_id}",
    response_model=AuditTrailResponse,
    dependencies=[Depends(require_admin_token)],
)
async def list_audit_entries(
    tenant_id: str,
    session: SessionDep,
    action: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
) -> Any:
    """Return the tenant's newest billing audit entries."""
    entries = await AuditService(session, tenant_id=tenant_id).recent(action=action, limit=limit)
    return AuditTrailResponse(
        tenant_id=tenant_id,
        entries=[
            AuditEntryResponse(
                sequence=entry.sequence,
                action=entry.action,
                actor=entry.actor,
                resource_type=entry.resource_type,
                resource_id=entry.resource_id,
                description=entry.description,
                metadata=entry.metadata_json,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
    )


@router.get(
    "/audit/{tenant_id}/verify",
    response_model=AuditVerificationResponse,
    dependencies=[Depends(require_admin_token)],
)
async def verify_audit_chain(tenant_id: str, session: SessionDep) -> Any:
    """Recheck the tenant's audit hash chain."""
    result = await AuditService(session, tenant_id=tenant_id).verify()
    return AuditVerificationResponse(
        tenant_id=result.tenant_id,
        valid=result.valid,
        checked=result.checked,
        broken_at=result.broken_at,
        reason=result.reason,
    )
