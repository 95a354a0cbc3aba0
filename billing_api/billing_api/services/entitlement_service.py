"""Entitlement reconciliation.

The entitlement set of a tenant is a pure function of its current plan and
subscription status, evaluated through the injected :class:`FeatureMap`.
The last computed set is stored only so the next reconcile can diff
against it.  Reconciling is safe to repeat: every call computes a fresh
diff against the stored projection and then replaces it, so a second call
without a plan change returns empty lists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from billing_core.catalog.features import FeatureKey, FeatureMap
from billing_core.models.billing import SubscriptionStatus
from billing_core.state.repository import EntitlementRepository, SubscriptionRepository
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntitlementDiff:
    """Features gained and lost by a tenant in one reconcile."""

    tenant_id: str
    plan_id: str | None
    newly_enabled: list[str] = field(default_factory=list)
    newly_disabled: list[str] = field(default_factory=list)
    total_features: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.newly_enabled and not self.newly_disabled

    def to_dict(self) -> dict[str, Any]:
        return {
            "newly_enabled": list(self.newly_enabled),
            "newly_disabled": list(self.newly_disabled),
            "total_features": self.total_features,
        }


class EntitlementService:
    """Compute, diff and store tenant entitlement sets.

    Parameters
    ----------
    session:
        Database session; the caller owns the transaction.
    feature_map:
        Plan to feature-set mapping.
    """

    def __init__(self, session: AsyncSession, feature_map: FeatureMap) -> None:
        self._feature_map = feature_map
        self._subscriptions = SubscriptionRepository(session)
        self._entitlements = EntitlementRepository(session)

    async def effective_plan(self, tenant_id: str) -> str | None:
        """Return the plan whose features the tenant currently has.

        ``None`` (the fallback plan) for tenants without a record, without a
        plan, or with a deleted subscription.  ``past_due`` and
        ``cancel_at_period_end`` keep the plan's features.
        """
        record = await self._subscriptions.get_by_tenant(tenant_id)
        if record is None or record.status == SubscriptionStatus.DELETED.value:
            return None
        return record.plan_id

    async def compute(self, tenant_id: str) -> frozenset[FeatureKey]:
        """Return the tenant's current entitlement set."""
        return self._feature_map.features_for(await self.effective_plan(tenant_id))

    async def reconcile(self, tenant_id: str) -> EntitlementDiff:
        """Recompute the tenant's entitlements and diff them against the last known set.

        Tenants reconciled for the first time are diffed against the
        fallback plan's features.  Non-empty diffs are recorded in the
        entitlement change log.
        """
        plan_id = await self.effective_plan(tenant_id)
        current = {feature.value for feature in self._feature_map.features_for(plan_id)}

        stored = await self._entitlements.get(tenant_id)
        if stored is not None:
            previous = set(stored.features or [])
        else:
            previous = {feature.value for feature in self._feature_map.features_for(None)}

        diff = EntitlementDiff(
            tenant_id=tenant_id,
            plan_id=plan_id,
            newly_enabled=sorted(current - previous),
            newly_disabled=sorted(previous - current),
            total_features=self._feature_map.total_features,
        )

        await self._entitlements.replace(tenant_id, plan_id=plan_id, features=current)
        if not diff.is_empty:
            await self._entitlements.record_change(
                tenant_id=tenant_id,
                plan_id=plan_id,
                newly_enabled=diff.newly_enabled,
                newly_disabled=diff.newly_disabled,
                total_features=diff.total_features,
            )
            logger.info(
                "Entitlements for tenant %s on plan %s: +%d -%d",
                tenant_id,
                plan_id or "-",
                len(diff.newly_enabled),
                len(diff.newly_disabled),
            )
        return diff
