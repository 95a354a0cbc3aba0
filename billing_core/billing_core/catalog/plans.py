"""Plan catalog: internal plans, their rank, effect, and processor price id.

The catalog is immutable configuration.  It is built once at process start
(from settings or a JSON file) and passed explicitly to every component that
needs it.  Subscription plans carry a rank used to classify conversions;
plans may share a rank (e.g. monthly and annual billing of one tier), and a
move between them is a plan change.  Credit packs have no rank.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from billing_core.models.billing import ConversionReason

logger = logging.getLogger(__name__)

FREE_PLAN_ID = "free"


# ---------------------------------------------------------------------------
# Plan effects
# ---------------------------------------------------------------------------


class SubscriptionEffect(BaseModel):
    """Recurring subscription: paying moves the tenant onto the plan."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["subscription"] = "subscription"


class CreditsEffect(BaseModel):
    """One-time purchase granting a fixed number of credits."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["credits"] = "credits"
    amount: int = Field(..., gt=0)


PlanEffect = Annotated[SubscriptionEffect | CreditsEffect, Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Plan definition
# ---------------------------------------------------------------------------


class Plan(BaseModel):
    """A single purchasable (or default) plan."""

    model_config = ConfigDict(frozen=True)

    plan_id: str = Field(..., min_length=1)
    effect: PlanEffect = Field(default_factory=SubscriptionEffect)
    rank: int | None = Field(
        default=None,
        description="Position in the subscription order; required for subscription plans.",
    )
    price_id: str | None = Field(
        default=None,
        description="Processor price identifier; ``None`` for plans that cannot be bought.",
    )

    @property
    def is_subscription(self) -> bool:
        return isinstance(self.effect, SubscriptionEffect)


class PlanCatalogError(ValueError):
    """The catalog configuration is inconsistent."""


class PlanCatalog:
    """Read-only lookup over the configured plans.

    Parameters
    ----------
    plans:
        Plan definitions.  Plan ids and price ids must be unique, and every
        subscription plan must have a rank.
    """

    def __init__(self, plans: Iterable[Plan]) -> None:
        plan_list = list(plans)
        by_id: dict[str, Plan] = {}
        by_price: dict[str, Plan] = {}

        for plan in plan_list:
            if plan.plan_id in by_id:
                raise PlanCatalogError(f"Duplicate plan id '{plan.plan_id}'")
            by_id[plan.plan_id] = plan

            if plan.price_id:
                if plan.price_id in by_price:
                    raise PlanCatalogError(f"Price id '{plan.price_id}' is mapped to more than one plan")
                by_price[plan.price_id] = plan

            if plan.is_subscription and plan.rank is None:
                raise PlanCatalogError(f"Subscription plan '{plan.plan_id}' has no rank")

        if FREE_PLAN_ID not in by_id:
            raise PlanCatalogError(f"Catalog must define the '{FREE_PLAN_ID}' plan")

        self._plans = tuple(plan_list)
        self._by_id = by_id
        self._by_price = by_price

    @property
    def plans(self) -> tuple[Plan, ...]:
        return self._plans

    def get(self, plan_id: str) -> Plan | None:
        """Return the plan with *plan_id*, or ``None``."""
        return self._by_id.get(plan_id)

    def by_price_id(self, price_id: str) -> Plan | None:
        """Return the plan sold under *price_id*, or ``None``."""
        return self._by_price.get(price_id)

    def rank(self, plan_id: str) -> int | None:
        """Return the rank of a subscription plan, or ``None`` if unranked/unknown."""
        plan = self._by_id.get(plan_id)
        return plan.rank if plan is not None else None

    def subscription_plan_ids(self) -> list[str]:
        """Subscription plan ids ordered from lowest to highest rank."""
        ranked = [p for p in self._plans if p.is_subscription]
        return [p.plan_id for p in sorted(ranked, key=lambda p: p.rank or 0)]

    def classify(self, from_plan: str | None, to_plan: str) -> ConversionReason:
        """Classify a plan change by comparing plan ranks.

        No previous plan counts as an upgrade.  A previous plan that is not
        in the catalog (e.g. a retired plan) is also treated as an upgrade
        because there is nothing to compare it against.  Two plans of equal
        rank are a plan change.
        """
        if from_plan is None:
            return ConversionReason.UPGRADE

        from_rank = self.rank(from_plan)
        to_rank = self.rank(to_plan)
        if from_rank is None or to_rank is None:
            logger.warning(
                "Cannot rank conversion %s -> %s; classifying as upgrade",
                from_plan,
                to_plan,
            )
            return ConversionReason.UPGRADE

        if to_rank > from_rank:
            return ConversionReason.UPGRADE
        if to_rank < from_rank:
            return ConversionReason.DOWNGRADE
        return ConversionReason.PLAN_CHANGE


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def build_default_catalog(
    *,
    hobby_price_id: str = "",
    pro_price_id: str = "",
    credits_price_id: str = "",
    credits_amount: int = 10,
) -> PlanCatalog:
    """Build the standard free < hobby < pro catalog plus an optional credit pack.

    Empty price ids leave the corresponding plan defined but unpurchasable.
    """
    plans = [
        Plan(plan_id=FREE_PLAN_ID, rank=0),
        Plan(plan_id="hobby", rank=1, price_id=hobby_price_id or None),
        Plan(plan_id="pro", rank=2, price_id=pro_price_id or None),
    ]
    if credits_price_id:
        plans.append(
            Plan(
                plan_id=f"credits{credits_amount}",
                effect=CreditsEffect(amount=credits_amount),
                price_id=credits_price_id,
            )
        )
    return PlanCatalog(plans)


class _CatalogFile(BaseModel):
    plans: list[Plan]


def load_plan_catalog(path: Path | str) -> PlanCatalog:
    """Load a catalog from a JSON file of the form ``{"plans": [...]}``.

    Raises
    ------
    PlanCatalogError
        If the file cannot be parsed or the catalog is inconsistent.
    """
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        parsed = _CatalogFile.model_validate(raw)
    except (OSError, json.JSONDecodeError, ValueError) as exc:
        raise PlanCatalogError(f"Invalid plan catalog file {path}: {exc}") from exc

    catalog = PlanCatalog(parsed.plans)
    logger.info("Loaded plan catalog from %s (%d plans)", path, len(catalog.plans))
    return catalog
