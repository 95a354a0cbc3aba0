"""Plan catalog, feature map, and price resolution."""

from billing_core.catalog.features import DEFAULT_PLAN_FEATURES, FeatureKey, FeatureMap
from billing_core.catalog.plans import (
    FREE_PLAN_ID,
    CreditsEffect,
    Plan,
    PlanCatalog,
    PlanCatalogError,
    SubscriptionEffect,
    build_default_catalog,
    load_plan_catalog,
)
from billing_core.catalog.resolver import PlanResolver, ResolvedPlan, extract_price_id

__all__ = [
    "DEFAULT_PLAN_FEATURES",
    "FREE_PLAN_ID",
    "CreditsEffect",
    "FeatureKey",
    "FeatureMap",
    "Plan",
    "PlanCatalog",
    "PlanCatalogError",
    "PlanResolver",
    "ResolvedPlan",
    "SubscriptionEffect",
    "build_default_catalog",
    "extract_price_id",
    "load_plan_catalog",
]
