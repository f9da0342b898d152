"""Derived projection builders.

Pure functions from the canonical structure (plus scores/context/roadmap) to
row dicts. Row keys match the column names in ``models`` so the materializer
can upsert them directly. Nothing here touches the database.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from brandintel.fields import FOUND, PRESENT_STATUSES, extract_values, get_items, get_value, is_present

TASK_STATUSES = ("pending", "in_progress", "completed", "skipped")
LEVELS = ("low", "medium", "high")

PRIORITY_POINTS = {"critical": 100, "high": 80, "medium": 60, "low": 40}
IMPACT_POINTS = {"high": 30, "medium": 20, "low": 10}
EFFORT_POINTS = {"low": 10, "medium": 5, "high": 0}

# Synthetic campaigns for the bucketed roadmap shape:
# (bucket key, title, short title, description, order, timeline, priority)
LEGACY_BUCKETS: tuple[tuple[str, str, str, str, int, str, int], ...] = (
    ("quick_wins", "Quick Wins", "Quick Wins",
     "High-impact, low-effort tasks you can complete quickly", 1, "1-2 weeks", 100),
    ("projects", "Core Projects", "Projects",
     "Medium-term initiatives to strengthen your brand foundation", 2, "1-2 months", 80),
    ("long_term", "Long-term Initiatives", "Long-term",
     "Strategic initiatives for sustained growth", 3, "3-6 months", 60),
)


@dataclass
class RoadmapBatch:
    campaigns: list[dict] = field(default_factory=list)
    milestones: list[dict] = field(default_factory=list)
    tasks: list[dict] = field(default_factory=list)


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _level(value: Any) -> str:
    return value if value in LEVELS else "medium"


def _int_or_none(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def priority_score(priority: Any, impact: Any, effort: Any) -> int:
    return (
        PRIORITY_POINTS.get(priority, 50)
        + IMPACT_POINTS.get(impact, 20)
        + EFFORT_POINTS.get(effort, 5)
    )


# ---------------------------------------------------------------------------
# Roadmap normalizer
# ---------------------------------------------------------------------------


def _task_row(task: dict, campaign_id: str, milestone_id: str | None,
              is_quick_win: bool, prefer_description: bool = False) -> dict:
    if prefer_description:
        title = task.get("description") or task.get("title") or "Untitled Task"
    else:
        title = task.get("title") or task.get("description") or "Untitled Task"
    engine_score = _int_or_none(task.get("priority_score"))
    status = task.get("status")
    return {
        "external_id": str(task["id"]),
        "campaign_id": campaign_id,
        "milestone_id": milestone_id,
        "title": title,
        "description": task.get("description") or "",
        "category": task.get("category") or "other",
        "impact": _level(task.get("impact")),
        "effort": _level(task.get("effort")),
        "targets": _list(task.get("targets")),
        "suggested_owner": task.get("suggested_owner"),
        "suggested_tools": _list(task.get("suggested_tools")),
        "priority_score": engine_score if engine_score is not None else priority_score(
            task.get("priority"), task.get("impact"), task.get("effort"),
        ),
        "recommended_order": _int_or_none(task.get("recommended_order")),
        "status": status if status in TASK_STATUSES else "pending",
        "depends_on": [str(d) for d in _list(task.get("depends_on"))],
        "acceptance_criteria": task.get("acceptance_criteria"),
        "is_quick_win": bool(task.get("is_quick_win", is_quick_win)),
    }


def _persona(roadmap: dict) -> str | None:
    persona = roadmap.get("analysis_persona")
    if isinstance(persona, dict):
        return persona.get("id")
    return persona if isinstance(persona, str) else None


def _from_campaign_tree(roadmap: dict) -> RoadmapBatch:
    batch = RoadmapBatch()
    seen: set[str] = set()
    persona = _persona(roadmap)

    for campaign in _list(roadmap.get("campaigns")):
        campaign = _dict(campaign)
        cid = campaign.get("id") or campaign.get("campaign_id")
        if not cid:
            continue
        cid = str(cid)
        batch.campaigns.append({
            "external_id": cid,
            "persona": campaign.get("persona") or persona,
            "title": campaign.get("title"),
            "short_title": campaign.get("short_title"),
            "description": campaign.get("description"),
            "category": campaign.get("category"),
            "recommended_order": _int_or_none(campaign.get("recommended_order")),
            "estimated_timeline": campaign.get("estimated_timeline"),
            "dimensions_affected": _list(campaign.get("dimensions_affected")),
            "priority_score": _int_or_none(campaign.get("priority_score")),
        })

        for index, milestone in enumerate(_list(campaign.get("milestones"))):
            milestone = _dict(milestone)
            mid = milestone.get("id") or milestone.get("milestone_id")
            if not mid:
                continue
            mid = str(mid)
            tasks = _list(milestone.get("tasks"))
            order = milestone.get("order_index", milestone.get("order"))
            batch.milestones.append({
                "external_id": mid,
                "campaign_id": cid,
                "title": milestone.get("title"),
                "goal": milestone.get("goal"),
                "estimated_duration": milestone.get("estimated_duration"),
                "order_index": _int_or_none(order) if order is not None else index,
                "total_tasks": _int_or_none(milestone.get("total_tasks")) or len(tasks),
            })
            for task in tasks:
                if isinstance(task, dict) and task.get("id") and str(task["id"]) not in seen:
                    seen.add(str(task["id"]))
                    batch.tasks.append(_task_row(task, cid, mid, False))

        for task in _list(campaign.get("tasks")):
            if isinstance(task, dict) and task.get("id") and str(task["id"]) not in seen:
                seen.add(str(task["id"]))
                batch.tasks.append(_task_row(task, cid, None, False))

    return batch


def _from_buckets(roadmap: dict, profile_key: Any) -> RoadmapBatch:
    batch = RoadmapBatch()
    persona = _persona(roadmap)
    quick_win_ids = {
        str(t["id"]) for t in _list(roadmap.get("quick_wins"))
        if isinstance(t, dict) and t.get("id")
    }
    seen: set[str] = set()

    for key, title, short, description, order, timeline, priority in LEGACY_BUCKETS:
        tasks = [t for t in _list(roadmap.get(key)) if isinstance(t, dict) and t.get("id")]
        if not tasks:
            continue
        cid = f"campaign_{key}_{profile_key}"
        batch.campaigns.append({
            "external_id": cid,
            "persona": persona,
            "title": title,
            "short_title": short,
            "description": description,
            "category": key,
            "recommended_order": order,
            "estimated_timeline": timeline,
            "dimensions_affected": [],
            "priority_score": priority,
        })
        is_quick_win = key == "quick_wins"
        for task in tasks:
            tid = str(task["id"])
            if tid in seen or (not is_quick_win and tid in quick_win_ids):
                continue
            seen.add(tid)
            batch.tasks.append(_task_row(task, cid, None, is_quick_win, prefer_description=True))

    return batch


def normalize_roadmap(roadmap: Any, profile_key: Any) -> RoadmapBatch:
    """Flatten a roadmap into campaign/milestone/task rows keyed by stable ids.

    Supports the ``campaigns -> milestones -> tasks`` tree and the older
    ``quick_wins`` / ``projects`` / ``long_term`` buckets. Engine-supplied
    ordering fields are copied verbatim; rows are emitted in input order.
    Items without an id are skipped since they cannot be upserted.
    """
    roadmap = _dict(roadmap)
    if _list(roadmap.get("campaigns")):
        return _from_campaign_tree(roadmap)
    return _from_buckets(roadmap, profile_key)


# ---------------------------------------------------------------------------
# Social profiles
# ---------------------------------------------------------------------------


def _sources(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    return [str(s) for s in _list(value)]


def extract_social_profiles(canonical: Any) -> list[dict]:
    """One row per found/inferred entry in ``external_presence.social_profiles``.

    Unrecognized platform labels are kept as given.
    """
    presence = _dict(_dict(canonical).get("external_presence"))
    wrapper = presence.get("social_profiles")
    if wrapper is None:
        return []
    wrapper_status = wrapper.get("status") if isinstance(wrapper, dict) else None
    if wrapper_status is not None and wrapper_status not in PRESENT_STATUSES:
        return []
    wrapper_source = _sources(wrapper.get("source")) if isinstance(wrapper, dict) else []

    rows = []
    for item in get_items(wrapper):
        if isinstance(item, str):
            item = {"platform": item}
        if not isinstance(item, dict):
            continue
        status = item.get("status") or wrapper_status or FOUND
        if status not in PRESENT_STATUSES:
            continue
        rows.append({
            "platform": str(get_value(item.get("platform")) or item.get("name") or "unknown"),
            "profile_type": item.get("type"),
            "url": get_value(item.get("url")) or "",
            "status": status,
            "source": _sources(item.get("source")) or wrapper_source,
        })
    return rows


# ---------------------------------------------------------------------------
# Summary scalars
# ---------------------------------------------------------------------------


def _float_or_none(value: Any) -> float | None:
    value = get_value(value)
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _blog_flag(field: Any) -> bool:
    if not is_present(field):
        return False
    value = get_value(field)
    if value is False:
        return False
    if isinstance(value, dict) and value.get("exists") is False:
        return False
    return True


def summary_scalars(
    canonical: Any,
    scores: Any = None,
    context: Any = None,
    raw_kit: Any = None,
) -> dict:
    """Flat columns for the profile row. Always computed from scratch."""
    canonical = _dict(canonical)
    scores = _dict(scores)
    context = _dict(context)
    entity = _dict(context.get("entity_profile"))
    raw_kit = _dict(raw_kit)
    meta = extract_values(canonical.get("meta"), ("canonical_domain", "brand_name"))
    gaps = _dict(canonical.get("gaps_summary"))

    overall = _float_or_none(scores.get("overall_score"))
    if overall is None:
        overall = _float_or_none(_dict(scores.get("dimensions")).get("overall"))

    return {
        "canonical_domain": (
            meta["canonical_domain"]
            or raw_kit.get("domain")
            or context.get("canonical_url")
        ),
        "brand_name": meta["brand_name"] or raw_kit.get("brand_name"),
        "persona_id": context.get("persona_id"),
        "entity_type": context.get("entity_type") or entity.get("entity_type"),
        "business_model": context.get("business_model") or entity.get("business_model"),
        "channel_orientation": context.get("channel_orientation") or entity.get("channel_orientation"),
        "overall_score": overall,
        "completeness_score": _float_or_none(gaps.get("total_completeness")) or 0.0,
        "total_critical_gaps": len(get_items(gaps.get("critical_gaps"))),
        "has_social_profiles": is_present(_dict(canonical.get("external_presence")).get("social_profiles")),
        "has_blog": _blog_flag(_dict(canonical.get("content_assets")).get("blog_present")),
        "has_review_sites": is_present(_dict(canonical.get("proof_trust")).get("third_party_reviews")),
    }
