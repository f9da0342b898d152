"""Tests for result-shape detection, the legacy transform and gaps summary."""
from __future__ import annotations

import copy
import json

import pytest

from brandintel.errors import DataUnavailable
from brandintel.fields import get_items, get_value, make_field
from brandintel.legacy import FALLBACK_SOURCE, build_gaps_summary, transform_legacy
from brandintel.reconciler import (
    ResultShape,
    detect_shape,
    reconcile,
    reconcile_snapshot,
)


def _comprehensive():
    return {
        "meta": {"brand_name": make_field("Acme", confidence=0.9, source=["homepage"], description="name")},
        "verbal_identity": {"tagline": make_field("Build faster")},
    }


def _legacy_kit():
    return {
        "domain": "acme.io",
        "brand_name": "Acme",
        "generated_at": "2024-05-01T10:00:00",
        "visual_identity": {"logo_url": "https://acme.io/logo.svg", "primary_colors": ["#111111", "#222222"]},
        "voice_and_tone": {"tagline": "Build faster", "tone_adjectives": ["bold", "warm"]},
        "audience": {"primary_audience": {"role": "CTO"}},
        "positioning": {"industry": "Software"},
        "trust_elements": {"testimonials": ["Great!"], "review_sites": [{"platform": "G2", "url": "https://g2.com/acme"}]},
        "social_profiles": [{"platform": "linkedin", "url": "https://linkedin.com/company/acme"}],
        "content_strategy": {"has_blog": True},
    }


class TestDetectShape:
    def test_comprehensive_wins(self):
        result = {"comprehensive": _comprehensive(), "brand_kit": _legacy_kit()}
        assert detect_shape(result) is ResultShape.COMPREHENSIVE

    def test_wrapped_brand_kit(self):
        kit = {"verbal_identity": {"elevator_pitch": make_field("We help")}}
        assert detect_shape({"brand_kit": kit}) is ResultShape.WRAPPED_BRAND_KIT

    def test_wrapped_probe_with_null_value_still_wrapped(self):
        kit = {"proof_trust": {"testimonials": {"value": None, "status": "missing"}}}
        assert detect_shape({"brand_kit": kit}) is ResultShape.WRAPPED_BRAND_KIT

    def test_flat_brand_kit_is_legacy(self):
        assert detect_shape({"brand_kit": _legacy_kit()}) is ResultShape.LEGACY

    def test_empty_comprehensive_falls_through(self):
        assert detect_shape({"comprehensive": {}, "brand_kit": _legacy_kit()}) is ResultShape.LEGACY

    def test_nothing_recognizable(self):
        assert detect_shape({"brand_scores": {}}) is None
        assert detect_shape(None) is None


class TestReconcile:
    def test_comprehensive_used_verbatim(self):
        comp = _comprehensive()
        out = reconcile({"comprehensive": comp})
        assert out.canonical == comp
        assert out.canonical is not comp
        assert out.source == "auto"
        assert get_value(out.canonical["meta"]["brand_name"]) == "Acme"

    def test_wrapped_kit_used_as_canonical(self):
        kit = {"verbal_identity": {"elevator_pitch": make_field("We help")}, "domain": "acme.io"}
        out = reconcile({"brand_kit": kit, "brand_scores": {"overall_score": 70}})
        assert out.shape is ResultShape.WRAPPED_BRAND_KIT
        assert out.canonical == kit
        assert out.source == "auto"
        assert out.raw["brand_scores"] == {"overall_score": 70}

    def test_legacy_goes_through_fallback(self):
        out = reconcile({"brand_kit": _legacy_kit()})
        assert out.shape is ResultShape.LEGACY
        assert out.source == "auto_fallback"
        assert out.generated_at == "2024-05-01T10:00:00"
        tagline = out.canonical["verbal_identity"]["tagline"]
        assert tagline["status"] == "found"
        assert tagline["source"] == [FALLBACK_SOURCE]

    def test_no_kit_raises_data_unavailable(self):
        with pytest.raises(DataUnavailable):
            reconcile({"brand_scores": {"overall_score": 1}})
        with pytest.raises(DataUnavailable):
            reconcile(None)

    @pytest.mark.parametrize("result", [
        {"comprehensive": _comprehensive()},
        {"brand_kit": {"verbal_identity": {"elevator_pitch": make_field("We help")}}},
        {"brand_kit": _legacy_kit(), "brand_roadmap": {"quick_wins": []}},
    ])
    def test_reconciliation_is_idempotent(self, result):
        before = copy.deepcopy(result)
        first = reconcile(result)
        second = reconcile(result)
        assert json.dumps(first.canonical, sort_keys=True) == json.dumps(second.canonical, sort_keys=True)
        assert json.dumps(first.raw, sort_keys=True) == json.dumps(second.raw, sort_keys=True)
        assert result == before

    def test_snapshot_keeps_canonical_kit(self):
        kit = {"meta": {"brand_name": make_field("Acme")}, "visual_identity": {}}
        out = reconcile_snapshot(kit)
        assert out.canonical == kit
        assert out.source == "reanalyzed"

    def test_snapshot_transforms_legacy_kit(self):
        out = reconcile_snapshot(_legacy_kit())
        assert out.shape is ResultShape.LEGACY
        assert get_value(out.canonical["meta"]["brand_name"]) == "Acme"

    def test_snapshot_without_kit(self):
        with pytest.raises(DataUnavailable):
            reconcile_snapshot(None)


class TestLegacyTransform:
    def test_lifts_scalars_and_lists(self):
        canonical = transform_legacy({"brand_kit": _legacy_kit()})
        assert get_value(canonical["meta"]["canonical_domain"]) == "acme.io"
        assert get_value(canonical["visual_identity"]["logos"]["primary_logo_url"]) == "https://acme.io/logo.svg"
        assert get_items(canonical["visual_identity"]["color_system"]["primary_colors"]) == [
            {"hex": "#111111"}, {"hex": "#222222"},
        ]
        assert get_items(canonical["verbal_identity"]["tone_of_voice"]["adjectives"]) == ["bold", "warm"]
        icp = get_value(canonical["audience_positioning"]["primary_icp"])
        assert icp == {"role": "CTO", "company_type": "Unknown", "company_size": "Unknown"}
        assert get_value(canonical["content_assets"]["blog_present"]) is True

    def test_absent_fields_are_missing(self):
        canonical = transform_legacy({"brand_kit": {"domain": "x.io"}})
        pitch = canonical["verbal_identity"]["elevator_pitch"]
        assert pitch["status"] == "missing"
        assert pitch["value"] is None

    def test_unknown_brand_is_inferred(self):
        canonical = transform_legacy({"brand_kit": {"domain": "x.io"}})
        name = canonical["meta"]["brand_name"]
        assert name["status"] == "inferred"
        assert name["confidence"] == 0.5

    def test_social_and_reviews_normalized(self):
        canonical = transform_legacy({"brand_kit": _legacy_kit()})
        social = get_items(canonical["external_presence"]["social_profiles"])
        assert social == [{"platform": "linkedin", "url": "https://linkedin.com/company/acme"}]
        reviews = get_items(canonical["proof_trust"]["third_party_reviews"])
        assert reviews[0]["platform"] == "G2"

    def test_competitor_analysis_from_top_level(self):
        result = {"brand_kit": {"domain": "x.io"}, "competitor_analysis": {"top_competitors": ["Rival"]}}
        canonical = transform_legacy(result)
        assert get_items(canonical["competitor_analysis"]["top_competitors"]) == ["Rival"]


class TestGapsSummary:
    def test_critical_gaps_and_weak_inferred(self):
        canonical = {
            "verbal_identity": {
                "tagline": make_field(None, status="missing", confidence=0.0, description="Brand tagline"),
                "elevator_pitch": make_field("We help"),
            },
            "audience_positioning": {
                "primary_icp": make_field("CTOs", status="inferred", confidence=0.6, description="ICP"),
            },
        }
        gaps = build_gaps_summary(canonical)
        assert [g["field"] for g in gaps["critical_gaps"]] == ["verbal_identity.tagline"]
        assert [g["field"] for g in gaps["inferred_weak"]] == ["audience_positioning.primary_icp"]
        # found=1, inferred=1, missing=1 -> (1 + 0.5) / 3
        assert gaps["total_completeness"] == 50
        assert gaps["by_section"]["verbal_identity"]["completeness"] == 50

    def test_non_critical_missing_field_is_not_a_gap(self):
        canonical = {"meta": {"region": make_field(None, status="missing", confidence=0.0)}}
        gaps = build_gaps_summary(canonical)
        assert gaps["critical_gaps"] == []
        assert gaps["total_completeness"] == 0

    def test_legacy_transform_reports_gaps(self):
        canonical = transform_legacy({"brand_kit": _legacy_kit()})
        fields = [g["field"] for g in canonical["gaps_summary"]["critical_gaps"]]
        assert "verbal_identity.elevator_pitch" in fields
        assert "proof_trust.case_studies" in fields
        assert "verbal_identity.tagline" not in fields
