"""Billing audit trail.

Every billing state change is recorded through :class:`AuditService` under
one of the :class:`AuditAction` names, so the per-tenant chain in
``audit_log`` can be listed and verified from the admin endpoints.
"""

from __future__ import annotations

import logging
from typing import Any

from billing_core.state.repository import AuditRepository, ChainVerification
from billing_core.state.tables import AuditLogTable
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class AuditAction:
    """Action names written by the billing pipeline."""

    BILLING_ACCOUNT_LINKED = "BILLING_ACCOUNT_LINKED"
    CREDITS_PURCHASED = "CREDITS_PURCHASED"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    SUBSCRIPTION_DELETED = "SUBSCRIPTION_DELETED"
    FEATURES_UPDATED = "FEATURES_UPDATED"


class AuditService:
    """Audit access for one tenant.

    Parameters
    ----------
    session:
        Session the entries are read and written in.  Writes are flushed,
        not committed.
    tenant_id:
        Tenant whose chain is used.
    actor:
        Principal recorded on new entries.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        actor: str = "system",
    ) -> None:
        self._repo = AuditRepository(session, tenant_id=tenant_id)
        self._actor = actor

    async def log(
        self,
        action: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        *,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Append an entry and return its id."""
        entry = await self._repo.append(
            actor=self._actor,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            description=description,
            metadata=metadata,
        )
        return entry.id

    async def recent(self, *, action: str | None = None, limit: int = 50) -> list[AuditLogTable]:
        return await self._repo.recent(action=action, limit=limit)

    async def verify(self) -> ChainVerification:
        """Recheck the tenant's whole chain."""
        result = await self._repo.verify_chain()
        if result.valid:
            logger.info("Audit chain of tenant %s verified (%d entries)", result.tenant_id, result.checked)
        return result
