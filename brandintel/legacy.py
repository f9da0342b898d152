"""Fallback transform: lift a legacy flat ``brand_kit`` into the canonical shape.

Used only when the engine returned neither a ``comprehensive`` section nor a
``brand_kit`` that is already FieldValue-wrapped. Every lifted field is tagged
with the ``fallback_transform`` source. Confidence values come from
``FALLBACK_CONFIDENCE`` and are heuristics, not a contract.

The transform is a pure function of its input (no clock reads), so running it
twice on the same payload yields identical output.
"""
from __future__ import annotations

from typing import Any, Callable

from brandintel.fields import (
    FOUND, INFERRED, MISSING, collect_fields, get_metadata, make_field, missing_field,
)

FALLBACK_SOURCE = "fallback_transform"

DEFAULT_CONFIDENCE = 0.8

# Tunable per-field confidence for lifted values, keyed by canonical path.
FALLBACK_CONFIDENCE: dict[str, float] = {
    "meta.brand_name": 1.0,
    "meta.canonical_domain": 1.0,
    "meta.category": 0.9,
    "meta.audit_timestamp": 1.0,
    "visual_identity.logos.primary_logo_url": 0.9,
    "visual_identity.logos.favicon_url": 0.9,
    "visual_identity.color_system.primary_colors": 0.9,
    "visual_identity.typography.heading_font": 0.9,
    "visual_identity.typography.body_font": 0.85,
    "visual_identity.imagery.style": 0.7,
    "verbal_identity.tagline": 0.9,
    "verbal_identity.elevator_pitch": 0.85,
    "verbal_identity.tone_of_voice.adjectives": 0.75,
    "verbal_identity.tone_of_voice.guidance": 0.7,
    "verbal_identity.brand_personality": 0.75,
    "audience_positioning.pain_points": 0.75,
    "audience_positioning.positioning_statement": 0.75,
    "product_offers.products": 0.9,
    "product_offers.plans": 0.95,
    "product_offers.guarantees": 0.85,
    "proof_trust.client_logos": 0.9,
    "proof_trust.testimonials": 0.85,
    "proof_trust.case_studies": 0.9,
    "proof_trust.third_party_reviews": 0.95,
    "seo_identity.primary_keywords": 0.85,
    "seo_identity.secondary_keywords": 0.75,
    "external_presence.social_profiles": 0.95,
    "external_presence.directories_marketplaces": 0.9,
    "external_presence.other_properties": 0.85,
    "content_assets.blog_present": 1.0,
    "content_assets.posting_frequency": 0.7,
    "content_assets.estimated_total_assets": 0.85,
    "competitor_analysis.top_competitors": 0.9,
    "contact_info.email": 0.9,
}

# Brand name placeholder when the legacy kit has none: inferred, low confidence.
UNKNOWN_BRAND = "Unknown Brand"
UNKNOWN_BRAND_CONFIDENCE = 0.5

CRITICAL_FIELDS: dict[str, tuple[str, ...]] = {
    "verbal_identity": ("tagline", "elevator_pitch"),
    "audience_positioning": ("primary_icp", "positioning_statement"),
    "proof_trust": ("testimonials", "case_studies"),
}

WEAK_INFERRED_THRESHOLD = 0.7

GAP_SECTIONS = (
    "meta", "visual_identity", "verbal_identity", "audience_positioning",
    "product_offers", "proof_trust", "seo_identity", "external_presence",
    "content_assets", "competitor_analysis",
)


# ---------------------------------------------------------------------------
# Legacy readers
# ---------------------------------------------------------------------------


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _non_empty_list(value: Any) -> list | None:
    return value if isinstance(value, list) and value else None


def _list_of(path: tuple[str, ...], mapper: Callable[[Any], Any] | None = None):
    def read(kit: dict) -> dict | None:
        items = _non_empty_list(_dig(kit, *path))
        if items is None:
            return None
        return {"items": [mapper(i) for i in items] if mapper else list(items)}
    return read


def _first_list(*paths: tuple[str, ...], mapper: Callable[[Any], Any] | None = None):
    def read(kit: dict) -> dict | None:
        for path in paths:
            items = _non_empty_list(_dig(kit, *path))
            if items is not None:
                return {"items": [mapper(i) for i in items] if mapper else list(items)}
        return None
    return read


def _scalar(*path: str):
    def read(kit: dict) -> Any:
        value = _dig(kit, *path)
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return value
    return read


def _first_scalar(*paths: tuple[str, ...]):
    def read(kit: dict) -> Any:
        for path in paths:
            value = _scalar(*path)(kit)
            if value is not None:
                return value
        return None
    return read


def _named(key: str):
    def convert(item: Any) -> Any:
        if isinstance(item, dict):
            return item
        return {key: item}
    return convert


def _platform_entry(item: Any) -> dict:
    if not isinstance(item, dict):
        return {"platform": str(item), "url": ""}
    return {
        "platform": item.get("platform") or item.get("name") or "unknown",
        "url": item.get("url") or "",
        **{k: item[k] for k in ("handle", "followers", "rating") if item.get(k) is not None},
    }


def _primary_icp(kit: dict) -> dict | None:
    primary = _dig(kit, "audience", "primary_audience")
    if not isinstance(primary, dict) or not primary:
        return None
    return {
        "role": primary.get("role") or "Unknown",
        "company_type": primary.get("company_type") or "Unknown",
        "company_size": primary.get("company_size") or "Unknown",
    }


def _font(*path: str):
    def read(kit: dict) -> dict | None:
        name = _scalar(*path)(kit)
        return {"name": name} if name is not None else None
    return read


def _blog_present(kit: dict) -> bool | None:
    has_blog = _dig(kit, "content_strategy", "has_blog")
    if has_blog is not None:
        return bool(has_blog)
    posts = _dig(kit, "content_inventory", "blog_posts")
    if isinstance(posts, (int, float)):
        return posts > 0
    return None


def _total_assets(kit: dict) -> int | None:
    inv = _dig(kit, "content_inventory") or {}
    if not isinstance(inv, dict):
        return None
    if inv.get("total_assets"):
        return inv["total_assets"]
    if inv.get("blog_posts"):
        return sum(int(inv.get(k) or 0) for k in ("blog_posts", "case_studies", "guides"))
    return None


def _plans(kit: dict) -> dict | None:
    plans = _non_empty_list(_dig(kit, "pricing", "plans"))
    if plans is None:
        return None
    items = []
    for plan in plans:
        if isinstance(plan, dict):
            items.append({"name": plan.get("name"), "pricing_notes": plan.get("price") or plan.get("pricing_notes")})
        else:
            items.append({"name": plan, "pricing_notes": None})
    return {"items": items}


def _case_study(item: Any) -> dict:
    if not isinstance(item, dict):
        return {"title": item, "outcomes": []}
    return {
        "title": item.get("title"),
        "customer": item.get("customer"),
        "industry": item.get("industry"),
        "outcomes": item.get("outcomes") or [],
        "url": item.get("url"),
    }


# ---------------------------------------------------------------------------
# Field rules: (canonical path, description, reader)
# ---------------------------------------------------------------------------

_RULES: list[tuple[str, str, Callable[[dict], Any]]] = [
    ("meta.canonical_domain", "Primary website domain", _scalar("domain")),
    ("meta.industry", "Primary industry or vertical", _scalar("positioning", "industry")),
    ("meta.category", "Product/service category", _scalar("positioning", "category")),
    ("meta.company_type", "Business model type", _scalar("positioning", "company_type")),
    ("meta.region", "Primary geographic region or market", _scalar("region")),
    ("meta.audit_timestamp", "When this brand kit was generated", _scalar("generated_at")),

    ("visual_identity.logos.primary_logo_url", "Primary logo",
     _first_scalar(("visual_identity", "logo_url"), ("logos", "primary_url"))),
    ("visual_identity.logos.favicon_url", "Favicon", _scalar("logos", "favicon_url")),
    ("visual_identity.logos.variations", "Logo variations", _list_of(("logos", "variations"))),
    ("visual_identity.color_system.primary_colors", "Primary colors",
     _list_of(("visual_identity", "primary_colors"), _named("hex"))),
    ("visual_identity.color_system.secondary_colors", "Secondary colors",
     _list_of(("visual_identity", "secondary_colors"), _named("hex"))),
    ("visual_identity.typography.heading_font", "Heading font", _font("visual_identity", "primary_font")),
    ("visual_identity.typography.body_font", "Body font", _font("visual_identity", "secondary_font")),
    ("visual_identity.components.button_style", "Button style", _scalar("visual_identity", "button_style")),
    ("visual_identity.imagery.style", "Imagery style", _scalar("visual_identity", "imagery_style")),

    ("verbal_identity.tagline", "Brand tagline or slogan", _scalar("voice_and_tone", "tagline")),
    ("verbal_identity.elevator_pitch", "1-3 sentence description of what you do",
     _scalar("voice_and_tone", "elevator_pitch")),
    ("verbal_identity.core_value_props", "Core benefit statements",
     _list_of(("voice_and_tone", "value_propositions"))),
    ("verbal_identity.tone_of_voice.adjectives", "Tone descriptors",
     _list_of(("voice_and_tone", "tone_adjectives"))),
    ("verbal_identity.tone_of_voice.guidance", "Copywriting guidelines", _scalar("voice_and_tone", "tone_guidance")),
    ("verbal_identity.brand_personality", "Brand personality or archetype",
     _scalar("voice_and_tone", "brand_personality")),
    ("verbal_identity.key_phrases", "Repeated phrases or mottos", _list_of(("voice_and_tone", "key_phrases"))),

    ("audience_positioning.primary_icp", "Primary ideal customer profile", _primary_icp),
    ("audience_positioning.secondary_icps", "Secondary audiences", _list_of(("audience", "secondary_audiences"))),
    ("audience_positioning.pain_points", "Audience pain points", _list_of(("audience", "pain_points"))),
    ("audience_positioning.goals", "Audience goals", _list_of(("audience", "goals"))),
    ("audience_positioning.positioning_statement", "Positioning statement",
     _scalar("positioning", "positioning_statement")),

    ("product_offers.products", "Products or service modules", _list_of(("features", "products"))),
    ("product_offers.features", "Feature list", _list_of(("features", "feature_list"))),
    ("product_offers.plans", "Pricing plans or tiers", _plans),
    ("product_offers.guarantees", "Guarantees and risk reversal", _list_of(("guarantees",))),

    ("proof_trust.client_logos", "Client logos", _list_of(("trust_elements", "client_logos"), _named("name"))),
    ("proof_trust.testimonials", "Customer testimonials", _list_of(("trust_elements", "testimonials"))),
    ("proof_trust.case_studies", "Case studies",
     _first_list(("case_studies",), ("trust_elements", "case_studies"), mapper=_case_study)),
    ("proof_trust.third_party_reviews", "Third-party reviews",
     _first_list(("review_sites",), ("trust_elements", "review_sites"), mapper=_platform_entry)),
    ("proof_trust.awards_certifications", "Awards and certifications",
     _list_of(("trust_elements", "awards"), _named("name"))),

    ("seo_identity.primary_keywords", "Core SEO keywords", _list_of(("seo_foundation", "primary_keywords"))),
    ("seo_identity.secondary_keywords", "Secondary keyword themes",
     _list_of(("seo_foundation", "keyword_themes"), _named("theme"))),
    ("seo_identity.branded_keywords", "Brand-related search terms", _list_of(("branded_keywords",))),

    ("external_presence.social_profiles", "Social media profiles",
     _first_list(("social_profiles",), ("trust_elements", "social_profiles"), mapper=_platform_entry)),
    ("external_presence.directories_marketplaces", "Directory listings",
     _first_list(("review_sites",), ("trust_elements", "review_sites"), mapper=_platform_entry)),
    ("external_presence.other_properties", "Other owned properties", _list_of(("other_properties",))),

    ("content_assets.blog_present", "Blog presence", _blog_present),
    ("content_assets.posting_frequency", "Content posting frequency",
     _scalar("content_strategy", "posting_frequency")),
    ("content_assets.content_types", "Content types", _list_of(("content_strategy", "content_types"))),
    ("content_assets.content_pillars", "Content pillars", _list_of(("content_strategy", "content_pillars"))),
    ("content_assets.estimated_total_assets", "Estimated number of content pieces", _total_assets),

    ("competitor_analysis.top_competitors", "Top competitors", _list_of(("competitor_analysis", "top_competitors"))),

    ("contact_info.email", "Contact email", _scalar("contact", "email")),
    ("contact_info.phone", "Contact phone", _scalar("contact", "phone")),
    ("contact_info.address", "Postal address", _scalar("contact", "address")),
]


def _place(tree: dict, path: str, node: dict) -> None:
    *parents, leaf = path.split(".")
    for key in parents:
        tree = tree.setdefault(key, {})
    tree[leaf] = node


def _lift(value: Any, path: str, description: str) -> dict:
    if value is None:
        return missing_field(description, [FALLBACK_SOURCE])
    confidence = FALLBACK_CONFIDENCE.get(path, DEFAULT_CONFIDENCE)
    return make_field(value, FOUND, confidence, [FALLBACK_SOURCE], description)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def transform_legacy(result: dict) -> dict:
    """Build the canonical structure from a legacy ``{brand_kit, ...}`` result."""
    kit = result.get("brand_kit") or {}
    if not isinstance(kit, dict):
        kit = {}
    if not kit.get("competitor_analysis") and isinstance(result.get("competitor_analysis"), dict):
        kit = {**kit, "competitor_analysis": result["competitor_analysis"]}

    canonical: dict[str, Any] = {}

    brand_name = _scalar("brand_name")(kit)
    if brand_name is None:
        _place(canonical, "meta.brand_name", make_field(
            UNKNOWN_BRAND, INFERRED, UNKNOWN_BRAND_CONFIDENCE, [FALLBACK_SOURCE], "Official brand name",
        ))
    else:
        _place(canonical, "meta.brand_name", _lift(brand_name, "meta.brand_name", "Official brand name"))

    for path, description, reader in _RULES:
        _place(canonical, path, _lift(reader(kit), path, description))

    canonical["gaps_summary"] = build_gaps_summary(canonical)
    return canonical


# ---------------------------------------------------------------------------
# Gaps summary
# ---------------------------------------------------------------------------


def section_completeness(section: Any) -> dict:
    counts = {FOUND: 0, INFERRED: 0, MISSING: 0}
    for _path, field in collect_fields(section):
        status = field.get("status")
        if status in counts:
            counts[status] += 1
    total = sum(counts.values())
    filled = counts[FOUND] + counts[INFERRED]
    return {
        "found_count": counts[FOUND],
        "inferred_count": counts[INFERRED],
        "missing_count": counts[MISSING],
        "completeness": round(filled / total * 100) if total else 0,
    }


def _section_gaps(name: str, section: Any) -> tuple[list[dict], list[dict]]:
    critical, weak = [], []
    for path, field in collect_fields(section, name):
        meta = get_metadata(field)
        if meta is None:
            continue
        leaf = path.rsplit(".", 1)[-1]
        if meta["status"] == MISSING and leaf in CRITICAL_FIELDS.get(name, ()):
            critical.append({
                "field": path, "section": name, "severity": "critical",
                "recommendation": f"{meta['description']} is missing.".strip(),
            })
        elif meta["status"] == INFERRED and meta["confidence"] < WEAK_INFERRED_THRESHOLD:
            weak.append({
                "field": path, "section": name, "severity": "important",
                "recommendation": f"{meta['description']} has low confidence ({meta['confidence']}).",
            })
    return critical, weak


def build_gaps_summary(canonical: dict) -> dict:
    by_section = {}
    critical: list[dict] = []
    weak: list[dict] = []
    total_fields = 0
    score = 0.0
    for name in GAP_SECTIONS:
        section = canonical.get(name) or {}
        stats = section_completeness(section)
        by_section[name] = stats
        total_fields += stats["found_count"] + stats["inferred_count"] + stats["missing_count"]
        score += stats["found_count"] + stats["inferred_count"] * 0.5
        c, w = _section_gaps(name, section)
        critical.extend(c)
        weak.extend(w)
    return {
        "critical_gaps": critical,
        "inferred_weak": weak,
        "total_completeness": round(score / total_fields * 100) if total_fields else 0,
        "by_section": by_section,
    }
