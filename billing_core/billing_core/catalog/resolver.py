"""Map processor line items to internal plans."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from billing_core.catalog.plans import CreditsEffect, Plan, PlanCatalog, SubscriptionEffect
from billing_core.errors import MalformedLineItems, UnknownPriceId
from billing_core.events.models import LineItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedPlan:
    """Result of resolving a processor price id."""

    plan_id: str
    effect: SubscriptionEffect | CreditsEffect
    price_id: str

    @property
    def is_subscription(self) -> bool:
        return isinstance(self.effect, SubscriptionEffect)


def extract_price_id(line_items: Sequence[LineItem]) -> str:
    """Return the price id of the single line item in *line_items*.

    Raises
    ------
    MalformedLineItems
        If there is not exactly one item, or the item carries no price id
        in either supported shape.
    """
    if len(line_items) != 1:
        raise MalformedLineItems(f"Expected exactly one line item, got {len(line_items)}")

    item = line_items[0]
    if item.price is not None and item.price.id:
        return item.price.id
    if item.pricing is not None and item.pricing.price_details is not None and item.pricing.price_details.price:
        return item.pricing.price_details.price

    raise MalformedLineItems(f"Line item {item.id or '-'} has no price id")


class PlanResolver:
    """Resolve processor price ids against an immutable :class:`PlanCatalog`."""

    def __init__(self, catalog: PlanCatalog) -> None:
        self._catalog = catalog

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog

    def resolve(self, price_id: str) -> ResolvedPlan:
        """Resolve *price_id* to a plan.

        Never falls back to a default plan: an unmatched price id means the
        catalog has drifted from the processor configuration.

        Raises
        ------
        UnknownPriceId
            If no configured plan is sold under *price_id*.
        """
        plan: Plan | None = self._catalog.by_price_id(price_id)
        if plan is None:
            logger.error("Price id %s is not mapped to any plan", price_id)
            raise UnknownPriceId(price_id)
        return ResolvedPlan(plan_id=plan.plan_id, effect=plan.effect, price_id=price_id)

    def resolve_line_items(self, line_items: Sequence[LineItem]) -> ResolvedPlan:
        """Extract the single price id from *line_items* and resolve it."""
        return self.resolve(extract_price_id(line_items))
