"""
Tests for the tier / feature catalogue.

Tests cover:
- Loading the shipped plans.yml
- Startup validation: every tier and feature present, complete rows,
  well-formed limits and ranks
- Path resolution (explicit path, CATALOGUE_PATH)
- Route gate validation
"""

import pytest

from edpsych.entitlements.catalogue import Catalogue, coerce_feature, coerce_tier, load_catalogue
from edpsych.entitlements.errors import CatalogueConfigError, UnknownFeatureError, UnknownTierError
from edpsych.entitlements.models import (
    UNLIMITED,
    Audience,
    Feature,
    ResourceKind,
    Tier,
)


_CORE = {"problem_solver", "lesson_differentiation"}
_EVALUATION = _CORE | {"battle_royale", "email_support"}
_MAT_LA_TOP = _CORE | {
    "ehcna_support", "battle_royale", "progress_monitoring", "intervention_tracking",
    "advanced_analytics", "custom_reports", "data_export", "team_collaboration",
    "parent_portal", "multi_school_sharing", "priority_support", "training_sessions",
    "dedicated_account_manager", "api_access", "sims_integration", "single_sign_on",
}

# Agreed product matrix, one entry per tier.
EXPECTED_FEATURES = {
    "trial": _EVALUATION,
    "demo": _EVALUATION,
    "school_small": _CORE | {
        "ehcna_support", "battle_royale", "progress_monitoring", "basic_analytics",
        "team_collaboration", "email_support",
    },
    "school_medium": _CORE | {
        "ehcna_support", "battle_royale", "progress_monitoring", "intervention_tracking",
        "advanced_analytics", "team_collaboration", "parent_portal", "phone_support",
    },
    "school_large": _CORE | {
        "ehcna_support", "battle_royale", "progress_monitoring", "intervention_tracking",
        "advanced_analytics", "custom_reports", "data_export", "team_collaboration",
        "parent_portal", "priority_support", "api_access",
    },
    "mat_small": _CORE | {
        "ehcna_support", "battle_royale", "progress_monitoring", "advanced_analytics",
        "team_collaboration", "multi_school_sharing", "phone_support",
    },
    "mat_medium": _CORE | {
        "ehcna_support", "battle_royale", "progress_monitoring", "intervention_tracking",
        "advanced_analytics", "custom_reports", "data_export", "team_collaboration",
        "multi_school_sharing", "parent_portal", "priority_support", "api_access",
    },
    "mat_large": _MAT_LA_TOP,
    "la_tier1": _CORE | {
        "ehcna_support", "progress_monitoring", "basic_analytics", "team_collaboration",
        "email_support", "training_sessions",
    },
    "la_tier2": _CORE | {
        "ehcna_support", "battle_royale", "progress_monitoring", "intervention_tracking",
        "advanced_analytics", "custom_reports", "team_collaboration",
        "multi_school_sharing", "phone_support", "training_sessions",
    },
    "la_tier3": _MAT_LA_TOP,
    "research_individual": _CORE | {
        "research_data_access", "research_documentation", "email_support",
    },
    "research_institutional": _CORE | {
        "research_api", "research_data_access", "research_documentation",
        "advanced_analytics", "priority_support",
    },
    "research_partnership": _CORE | {
        "research_api", "research_data_access", "research_documentation",
        "custom_feature_development", "advanced_analytics", "dedicated_account_manager",
        "api_access",
    },
    "legacy": _CORE | {
        "ehcna_support", "battle_royale", "progress_monitoring", "intervention_tracking",
        "advanced_analytics", "custom_reports", "data_export", "team_collaboration",
        "parent_portal", "multi_school_sharing", "email_support", "phone_support",
    },
}


def _tier_entry(raw: dict, tier_id: str) -> dict:
    return next(t for t in raw["tiers"] if t["id"] == tier_id)


class TestShippedCatalogue:
    """The packaged plans.yml must load and describe every tier and feature."""

    def test_every_tier_has_exactly_one_entry(self, catalogue):
        assert [t.tier for t in catalogue.tiers].count(Tier.SCHOOL_SMALL) == 1
        assert {t.tier for t in catalogue.tiers} == set(Tier)
        assert len(catalogue.tiers) == len(Tier)

    def test_every_feature_is_described(self, catalogue):
        assert {f.feature for f in catalogue.features} == set(Feature)
        assert catalogue.feature_name(Feature.SIMS_INTEGRATION)

    def test_every_tier_row_is_complete(self, catalogue):
        for definition in catalogue.tiers:
            assert set(definition.features) == set(Feature)
            assert set(definition.limits) == set(ResourceKind)

    def test_tiers_ordered_by_rank(self, catalogue):
        ranks = [t.rank for t in catalogue.tiers]
        assert ranks == sorted(ranks)
        assert catalogue.tiers[0].tier == Tier.TRIAL

    def test_school_small_definition(self, catalogue):
        school_small = catalogue.get_tier(Tier.SCHOOL_SMALL)
        assert school_small.audience == Audience.SCHOOL
        assert school_small.includes(Feature.BATTLE_ROYALE)
        assert not school_small.includes(Feature.SIMS_INTEGRATION)
        assert school_small.limit_for(ResourceKind.STUDENTS) == 100
        assert school_small.limit_for(ResourceKind.USERS) == 10

    def test_unlimited_limits_use_sentinel(self, catalogue):
        assert catalogue.get_tier(Tier.LA_TIER3).limit_for(ResourceKind.SCHOOLS) is UNLIMITED
        assert catalogue.get_tier(Tier.SCHOOL_LARGE).limit_for(ResourceKind.STUDENTS) is UNLIMITED

    @pytest.mark.parametrize("tier_id", sorted(EXPECTED_FEATURES))
    def test_feature_matrix(self, catalogue, tier_id):
        enabled = {f.value for f in catalogue.get_tier(tier_id).enabled_features()}
        assert enabled == EXPECTED_FEATURES[tier_id]

    def test_matrix_covers_every_tier(self):
        assert set(EXPECTED_FEATURES) == {t.value for t in Tier}

    def test_non_purchasable_tiers(self, catalogue):
        hidden = {t.tier for t in catalogue.tiers if not t.purchasable}
        assert hidden == {Tier.TRIAL, Tier.DEMO, Tier.LEGACY}

    def test_lookup_by_string(self, catalogue):
        assert catalogue.get_tier("mat_large").tier == Tier.MAT_LARGE
        assert catalogue.tier_name("la_tier1") == "Local Authority Tier 1"

    def test_lookup_unknown_ids_raise(self, catalogue):
        with pytest.raises(UnknownTierError):
            catalogue.get_tier("enterprise")
        with pytest.raises(UnknownFeatureError):
            catalogue.get_feature("time_travel")


class TestCoercion:

    def test_coerce_accepts_enum_and_value(self):
        assert coerce_feature("battle_royale") is Feature.BATTLE_ROYALE
        assert coerce_feature(Feature.BATTLE_ROYALE) is Feature.BATTLE_ROYALE
        assert coerce_tier("school_small") is Tier.SCHOOL_SMALL

    def test_unknown_feature_is_value_error(self):
        with pytest.raises(ValueError):
            coerce_feature("not_a_feature")


class TestCatalogueValidation:
    """Any inconsistency is fatal: CatalogueConfigError, never a partial catalogue."""

    def test_round_trip_through_yaml(self, catalogue_dict, make_yaml_config):
        path = make_yaml_config("plans.yml", catalogue_dict)
        loaded = load_catalogue(str(path))
        assert loaded.source == str(path)
        assert len(loaded.tiers) == len(Tier)

    def test_missing_tier_entry(self, catalogue_dict):
        catalogue_dict["tiers"] = [t for t in catalogue_dict["tiers"] if t["id"] != "legacy"]
        with pytest.raises(CatalogueConfigError, match="legacy"):
            Catalogue.from_dict(catalogue_dict)

    def test_unknown_tier_entry(self, catalogue_dict):
        extra = dict(_tier_entry(catalogue_dict, "school_small"), id="enterprise")
        catalogue_dict["tiers"].append(extra)
        with pytest.raises(CatalogueConfigError, match="enterprise"):
            Catalogue.from_dict(catalogue_dict)

    def test_duplicate_tier_entry(self, catalogue_dict):
        catalogue_dict["tiers"].append(dict(_tier_entry(catalogue_dict, "demo")))
        with pytest.raises(CatalogueConfigError, match="duplicate"):
            Catalogue.from_dict(catalogue_dict)

    def test_missing_feature_description(self, catalogue_dict):
        del catalogue_dict["features"]["single_sign_on"]
        with pytest.raises(CatalogueConfigError, match="single_sign_on"):
            Catalogue.from_dict(catalogue_dict)

    def test_unknown_feature_in_row(self, catalogue_dict):
        entry = _tier_entry(catalogue_dict, "school_small")
        entry["features"] = dict(entry["features"], hoverboards=True)
        with pytest.raises(CatalogueConfigError, match="hoverboards"):
            Catalogue.from_dict(catalogue_dict)

    def test_incomplete_feature_row(self, catalogue_dict):
        entry = _tier_entry(catalogue_dict, "school_medium")
        entry["features"] = {k: v for k, v in entry["features"].items() if k != "api_access"}
        with pytest.raises(CatalogueConfigError, match="api_access"):
            Catalogue.from_dict(catalogue_dict)

    def test_non_boolean_inclusion(self, catalogue_dict):
        entry = _tier_entry(catalogue_dict, "school_small")
        entry["features"] = dict(entry["features"], parent_portal="limited")
        with pytest.raises(CatalogueConfigError, match="true or false"):
            Catalogue.from_dict(catalogue_dict)

    @pytest.mark.parametrize("bad_limit", [-1, "lots", True, 2.5, None])
    def test_invalid_limit(self, catalogue_dict, bad_limit):
        entry = _tier_entry(catalogue_dict, "school_small")
        entry["limits"] = dict(entry["limits"], max_students=bad_limit)
        with pytest.raises(CatalogueConfigError, match="max_students"):
            Catalogue.from_dict(catalogue_dict)

    def test_missing_limit(self, catalogue_dict):
        entry = _tier_entry(catalogue_dict, "school_small")
        entry["limits"] = {"max_users": 10, "max_students": 100}
        with pytest.raises(CatalogueConfigError, match="max_schools"):
            Catalogue.from_dict(catalogue_dict)

    def test_unknown_limit_key(self, catalogue_dict):
        entry = _tier_entry(catalogue_dict, "school_small")
        entry["limits"] = dict(entry["limits"], max_classrooms=4)
        with pytest.raises(CatalogueConfigError, match="max_classrooms"):
            Catalogue.from_dict(catalogue_dict)

    def test_non_integer_rank(self, catalogue_dict):
        _tier_entry(catalogue_dict, "mat_small")["rank"] = "forty"
        with pytest.raises(CatalogueConfigError, match="rank"):
            Catalogue.from_dict(catalogue_dict)

    def test_unknown_audience(self, catalogue_dict):
        _tier_entry(catalogue_dict, "mat_small")["audience"] = "hospital"
        with pytest.raises(CatalogueConfigError, match="audience"):
            Catalogue.from_dict(catalogue_dict)

    def test_root_must_be_mapping(self):
        with pytest.raises(CatalogueConfigError):
            Catalogue.from_dict(["not", "a", "mapping"])


class TestCatalogueLoading:

    def test_missing_file(self, temp_config_dir):
        with pytest.raises(CatalogueConfigError, match="not found"):
            load_catalogue(str(temp_config_dir / "absent.yml"))

    def test_invalid_yaml(self, temp_config_dir):
        path = temp_config_dir / "plans.yml"
        path.write_text("tiers: [unclosed\n")
        with pytest.raises(CatalogueConfigError, match="YAML"):
            load_catalogue(str(path))

    def test_catalogue_path_env(self, catalogue_dict, make_yaml_config, monkeypatch):
        catalogue_dict["version"] = "from-env"
        path = make_yaml_config("custom.yml", catalogue_dict)
        monkeypatch.setenv("CATALOGUE_PATH", str(path))
        assert load_catalogue().version == "from-env"

    def test_default_location_is_packaged(self, monkeypatch):
        monkeypatch.delenv("CATALOGUE_PATH", raising=False)
        loaded = load_catalogue()
        assert loaded.source.endswith("plans.yml")


class TestFeatureReferenceValidation:

    def test_known_references_pass(self, catalogue):
        catalogue.validate_feature_references(["data_export", Feature.SIMS_INTEGRATION])

    def test_unknown_reference_is_fatal(self, catalogue):
        with pytest.raises(CatalogueConfigError, match="route gates"):
            catalogue.validate_feature_references(["data_export", "warp_drive"], context="route gates")
