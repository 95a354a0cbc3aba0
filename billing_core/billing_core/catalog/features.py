"""Feature keys and plan-based entitlement mapping.

Three subscription plans control access to product features:

* **Free** -- Alert handling, brand monitoring, and basic collaboration.
* **Hobby** -- Adds incident/case management, ATT&CK mapping, and
  infringement workflows.
* **Pro** -- Full feature set including automation, threat intelligence,
  SSO, and API access.

The mapping is a pure function of the plan id.  Higher plans include all
lower-plan features automatically.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum

from billing_core.catalog.plans import PlanCatalog, PlanCatalogError


class FeatureKey(str, Enum):
    """Product features that can be gated by plan."""

    # Aegis (incident and case management)
    AEGIS_ALERT_CREATION = "aegis.alert_creation"
    AEGIS_ALERT_MANAGEMENT = "aegis.alert_management"
    AEGIS_INCIDENT_MANAGEMENT = "aegis.incident_management"
    AEGIS_CASE_MANAGEMENT = "aegis.case_management"
    AEGIS_SLA_TRACKING = "aegis.sla_tracking"
    AEGIS_AUTO_ESCALATION = "aegis.auto_escalation"
    AEGIS_EVIDENCE_MANAGEMENT = "aegis.evidence_management"
    AEGIS_OBSERVABLES_IOC = "aegis.observables_ioc"
    AEGIS_TASK_AUTOMATION = "aegis.task_automation"
    AEGIS_ADVANCED_ANALYTICS = "aegis.advanced_analytics"
    AEGIS_TIMELINE_TRACKING = "aegis.timeline_tracking"
    AEGIS_INVESTIGATION_NOTES = "aegis.investigation_notes"

    # Eclipse (brand protection)
    ECLIPSE_BRAND_MONITORING = "eclipse.brand_monitoring"
    ECLIPSE_BRAND_PROTECTION = "eclipse.brand_protection"
    ECLIPSE_ANALYTICS_REPORTS = "eclipse.analytics_reports"
    ECLIPSE_DOMAIN_MONITORING = "eclipse.domain_monitoring"
    ECLIPSE_SOCIAL_MEDIA_MONITORING = "eclipse.social_media_monitoring"
    ECLIPSE_VISUAL_DETECTION = "eclipse.visual_detection"
    ECLIPSE_AUTOMATED_TAKEDOWNS = "eclipse.automated_takedowns"
    ECLIPSE_INFRINGEMENT_MANAGEMENT = "eclipse.infringement_management"
    ECLIPSE_YARA_RULES = "eclipse.yara_rules"
    ECLIPSE_AEGIS_INTEGRATION = "eclipse.aegis_integration"

    # MITRE ATT&CK
    MITRE_ATTACK_MAPPING = "mitre.attack_mapping"
    MITRE_TTP_TRACKING = "mitre.ttp_tracking"
    MITRE_THREAT_INTELLIGENCE = "mitre.threat_intelligence"
    MITRE_ATTACK_ANALYTICS = "mitre.attack_analytics"
    MITRE_TECHNIQUE_RECOMMENDATIONS = "mitre.technique_recommendations"
    MITRE_ATTACK_SIMULATION = "mitre.attack_simulation"

    # Platform
    CORE_MULTI_WORKSPACE = "core.multi_workspace"
    CORE_TEAM_COLLABORATION = "core.team_collaboration"
    CORE_ADVANCED_ANALYTICS = "core.advanced_analytics"
    CORE_API_ACCESS = "core.api_access"
    CORE_CUSTOM_NOTIFICATIONS = "core.custom_notifications"
    CORE_AUDIT_LOGGING = "core.audit_logging"
    CORE_SSO_INTEGRATION = "core.sso_integration"
    CORE_CUSTOM_BRANDING = "core.custom_branding"
    CORE_DATA_EXPORT = "core.data_export"
    CORE_PRIORITY_SUPPORT = "core.priority_support"


_FREE_FEATURES: frozenset[FeatureKey] = frozenset(
    {
        FeatureKey.AEGIS_ALERT_CREATION,
        FeatureKey.AEGIS_ALERT_MANAGEMENT,
        FeatureKey.AEGIS_TIMELINE_TRACKING,
        FeatureKey.AEGIS_INVESTIGATION_NOTES,
        FeatureKey.ECLIPSE_BRAND_MONITORING,
        FeatureKey.CORE_MULTI_WORKSPACE,
        FeatureKey.CORE_TEAM_COLLABORATION,
    }
)

_HOBBY_FEATURES: frozenset[FeatureKey] = _FREE_FEATURES | frozenset(
    {
        FeatureKey.AEGIS_INCIDENT_MANAGEMENT,
        FeatureKey.AEGIS_CASE_MANAGEMENT,
        FeatureKey.AEGIS_SLA_TRACKING,
        FeatureKey.AEGIS_EVIDENCE_MANAGEMENT,
        FeatureKey.AEGIS_OBSERVABLES_IOC,
        FeatureKey.AEGIS_ADVANCED_ANALYTICS,
        FeatureKey.ECLIPSE_BRAND_PROTECTION,
        FeatureKey.ECLIPSE_ANALYTICS_REPORTS,
        FeatureKey.ECLIPSE_DOMAIN_MONITORING,
        FeatureKey.ECLIPSE_SOCIAL_MEDIA_MONITORING,
        FeatureKey.ECLIPSE_INFRINGEMENT_MANAGEMENT,
        FeatureKey.ECLIPSE_AEGIS_INTEGRATION,
        FeatureKey.MITRE_ATTACK_MAPPING,
        FeatureKey.MITRE_TTP_TRACKING,
        FeatureKey.CORE_ADVANCED_ANALYTICS,
        FeatureKey.CORE_CUSTOM_NOTIFICATIONS,
        FeatureKey.CORE_AUDIT_LOGGING,
        FeatureKey.CORE_DATA_EXPORT,
    }
)

# Pro unlocks every defined feature.
_PRO_FEATURES: frozenset[FeatureKey] = frozenset(FeatureKey)

DEFAULT_PLAN_FEATURES: dict[str, frozenset[FeatureKey]] = {
    "free": _FREE_FEATURES,
    "hobby": _HOBBY_FEATURES,
    "pro": _PRO_FEATURES,
}


class FeatureMap:
    """Immutable ``plan id -> feature set`` mapping.

    Parameters
    ----------
    plan_features:
        Feature set for each known plan.
    fallback_plan:
        Plan whose features apply to tenants without a plan, with a deleted
        subscription, or on a plan the map does not know.
    """

    def __init__(
        self,
        plan_features: Mapping[str, frozenset[FeatureKey]] | None = None,
        *,
        fallback_plan: str = "free",
    ) -> None:
        features = dict(plan_features if plan_features is not None else DEFAULT_PLAN_FEATURES)
        if fallback_plan not in features:
            raise ValueError(f"Fallback plan '{fallback_plan}' has no feature set")
        self._plan_features = features
        self._fallback = features[fallback_plan]

    @property
    def total_features(self) -> int:
        """Number of defined feature keys."""
        return len(FeatureKey)

    def features_for(self, plan_id: str | None) -> frozenset[FeatureKey]:
        """Return the set of features enabled for a plan.

        Parameters
        ----------
        plan_id:
            The plan to query, or ``None`` for a tenant without a plan.

        Returns
        -------
        frozenset[FeatureKey]
            All features enabled for the plan.
        """
        if plan_id is None:
            return self._fallback
        return self._plan_features.get(plan_id, self._fallback)

    def is_feature_enabled(self, plan_id: str | None, feature: FeatureKey) -> bool:
        """Check whether *feature* is enabled on *plan_id*."""
        return feature in self.features_for(plan_id)

    def check_catalog(self, catalog: PlanCatalog) -> None:
        """Fail unless every subscription plan in *catalog* has a feature set.

        Without one, a tenant paying for the plan would silently receive the
        fallback features.

        Raises
        ------
        PlanCatalogError
            Naming the uncovered plan ids.
        """
        missing = [plan_id for plan_id in catalog.subscription_plan_ids() if plan_id not in self._plan_features]
        if missing:
            raise PlanCatalogError(f"No feature set for subscription plan(s): {', '.join(missing)}")
