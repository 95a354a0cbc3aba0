"""Tests for plan-based feature gating in billing_core.catalog.features."""

from __future__ import annotations

import pytest
from billing_core.catalog.features import DEFAULT_PLAN_FEATURES, FeatureKey, FeatureMap
from billing_core.catalog.plans import CreditsEffect, Plan, PlanCatalog, PlanCatalogError, build_default_catalog


class TestDefaultFeatureSets:
    """Higher plans include every lower-plan feature."""

    def test_free_subset_of_hobby(self) -> None:
        assert DEFAULT_PLAN_FEATURES["free"] < DEFAULT_PLAN_FEATURES["hobby"]

    def test_hobby_subset_of_pro(self) -> None:
        assert DEFAULT_PLAN_FEATURES["hobby"] < DEFAULT_PLAN_FEATURES["pro"]

    def test_pro_has_every_feature(self) -> None:
        assert DEFAULT_PLAN_FEATURES["pro"] == frozenset(FeatureKey)

    def test_feature_keys_are_namespaced(self) -> None:
        for feature in FeatureKey:
            namespace, _, name = feature.value.partition(".")
            assert namespace in {"aegis", "eclipse", "mitre", "core"}
            assert name


class TestFeatureMap:
    def test_known_plan(self) -> None:
        feature_map = FeatureMap()
        assert feature_map.features_for("hobby") == DEFAULT_PLAN_FEATURES["hobby"]

    def test_none_falls_back_to_free(self) -> None:
        assert FeatureMap().features_for(None) == DEFAULT_PLAN_FEATURES["free"]

    def test_unknown_plan_falls_back_to_free(self) -> None:
        assert FeatureMap().features_for("credits10") == DEFAULT_PLAN_FEATURES["free"]

    def test_total_features(self) -> None:
        assert FeatureMap().total_features == len(FeatureKey)

    @pytest.mark.parametrize(
        ("plan_id", "feature", "expected"),
        [
            ("free", FeatureKey.AEGIS_ALERT_CREATION, True),
            ("free", FeatureKey.MITRE_ATTACK_MAPPING, False),
            ("hobby", FeatureKey.MITRE_ATTACK_MAPPING, True),
            ("hobby", FeatureKey.CORE_SSO_INTEGRATION, False),
            ("pro", FeatureKey.CORE_SSO_INTEGRATION, True),
            (None, FeatureKey.CORE_API_ACCESS, False),
        ],
    )
    def test_is_feature_enabled(self, plan_id: str | None, feature: FeatureKey, expected: bool) -> None:
        assert FeatureMap().is_feature_enabled(plan_id, feature) is expected

    def test_custom_mapping_and_fallback(self) -> None:
        feature_map = FeatureMap(
            {
                "starter": frozenset({FeatureKey.CORE_API_ACCESS}),
                "basic": frozenset(),
            },
            fallback_plan="basic",
        )
        assert feature_map.features_for("starter") == {FeatureKey.CORE_API_ACCESS}
        assert feature_map.features_for(None) == frozenset()

    def test_missing_fallback_rejected(self) -> None:
        with pytest.raises(ValueError, match="Fallback plan"):
            FeatureMap({"pro": frozenset(FeatureKey)})


class TestCheckCatalog:
    def test_default_catalog_covered(self) -> None:
        FeatureMap().check_catalog(build_default_catalog(credits_price_id="price_credits"))

    def test_uncovered_subscription_plan_rejected(self) -> None:
        catalog = PlanCatalog(
            [
                Plan(plan_id="free", rank=0),
                Plan(plan_id="pro", rank=2, price_id="price_pro"),
                Plan(plan_id="enterprise", rank=3, price_id="price_enterprise"),
            ]
        )
        with pytest.raises(PlanCatalogError, match="enterprise"):
            FeatureMap().check_catalog(catalog)

    def test_credit_packs_need_no_feature_set(self) -> None:
        catalog = PlanCatalog(
            [
                Plan(plan_id="free", rank=0),
                Plan(plan_id="credits100", effect=CreditsEffect(amount=100), price_id="price_c100"),
            ]
        )
        FeatureMap().check_catalog(catalog)
