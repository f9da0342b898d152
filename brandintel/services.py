"""Use-case operations shared by the API and scripts.

Functions take an open ``Session`` and, where the engine is involved, an
``EngineClient``. Ownership is checked here: a profile with a ``user_id``
is only visible to that user.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from brandintel import tracker
from brandintel.client import EngineClient
from brandintel.errors import (
    ConcurrentModification, DataUnavailable, NotFound, ServiceUnavailable, Unauthorized,
    ValidationError,
)
from brandintel.fields import data_quality_summary
from brandintel.materializer import MaterializeReport, materialize
from brandintel.merger import extract_module_patch, merge_module_patch, validate_module_id
from brandintel.models import (
    TERMINAL_STATUSES, BrandKit, BrandProfile, ModuleJob, RoadmapCampaign, RoadmapMilestone,
    RoadmapTask, SocialProfile,
)
from brandintel.projections import TASK_STATUSES
from brandintel.reconciler import (
    SOURCE_REANALYZED, Reconciled, ResultShape, reconcile, reconcile_snapshot,
)
from brandintel.utils import json_parse, utcnow

log = logging.getLogger(__name__)

DEPTHS = ("light", "medium", "deep")
DEFAULT_MAX_PAGES = 20
DEFAULT_MAX_SEARCH_QUERIES = 10
MAX_PATCH_ATTEMPTS = 3

TASK_UPDATE_FIELDS = ("status", "acceptance_criteria")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def apply_updates(obj: Any, updates: dict, fields: tuple[str, ...]) -> None:
    """Copy whitelisted keys from *updates* onto *obj*."""
    for key in fields:
        if key in updates:
            setattr(obj, key, updates[key])


def _check_owner(profile: BrandProfile, user_id: str | None) -> BrandProfile:
    if profile.user_id is not None and profile.user_id != user_id:
        raise Unauthorized("Unauthorized: Profile does not belong to this user")
    return profile


def get_profile(session: Session, profile_pk: int, user_id: str | None = None) -> BrandProfile:
    profile = session.get(BrandProfile, profile_pk)
    if profile is None:
        raise NotFound(f"Profile {profile_pk} not found")
    return _check_owner(profile, user_id)


def get_profile_by_job(session: Session, job_id: str, user_id: str | None = None) -> BrandProfile:
    return _check_owner(tracker.get_profile_by_job(session, job_id), user_id)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _duration_seconds(profile: BrandProfile) -> float | None:
    if profile.job_started_at and profile.job_completed_at:
        return max(0.0, (profile.job_completed_at - profile.job_started_at).total_seconds())
    return None


# ---------------------------------------------------------------------------
# Analysis requests
# ---------------------------------------------------------------------------


def build_analyze_payload(
    url: str,
    depth: str | None = None,
    override_persona: str | None = None,
    config: dict | None = None,
    include_screenshots: bool | None = None,
    include_web_search: bool | None = None,
    max_pages: int | None = None,
) -> dict:
    """Request body for ``POST /analyze``.

    A modular ``config`` (``depth``/``components``/``evidence``) takes
    precedence; without one the flat evidence flags are sent.
    """
    if not url or not url.strip():
        raise ValidationError("URL is required for brand intelligence analysis")
    payload: dict[str, Any] = {"url": url.strip(), "depth": depth or "medium"}
    if payload["depth"] not in DEPTHS:
        raise ValidationError(f"Invalid depth {payload['depth']!r}")
    if override_persona:
        payload["override_persona"] = override_persona

    if config:
        if config.get("depth"):
            payload["depth"] = config["depth"]
        engine_config: dict[str, Any] = {}
        if config.get("components"):
            engine_config["components"] = config["components"]
        evidence = config.get("evidence")
        if evidence:
            engine_config["evidence"] = {
                "include_screenshots": evidence.get(
                    "include_screenshots", True if include_screenshots is None else include_screenshots),
                "include_web_search": evidence.get(
                    "include_web_search", True if include_web_search is None else include_web_search),
                "max_pages": evidence.get("max_pages") or max_pages or DEFAULT_MAX_PAGES,
                "max_search_queries": evidence.get("max_search_queries") or DEFAULT_MAX_SEARCH_QUERIES,
            }
        if engine_config:
            payload["config"] = engine_config
    else:
        payload["include_screenshots"] = True if include_screenshots is None else include_screenshots
        payload["include_web_search"] = True if include_web_search is None else include_web_search
        payload["max_pages"] = max_pages or DEFAULT_MAX_PAGES
    return payload


async def request_analysis(
    session: Session,
    client: EngineClient,
    user_id: str | None,
    url: str,
    **options: Any,
) -> BrandProfile:
    """Submit *url* to the engine and record the new ``queued`` job."""
    payload = build_analyze_payload(url, **options)
    response = await client.analyze(payload)
    return tracker.create_job(session, user_id, payload["url"], response)


async def poll(
    session: Session,
    client: EngineClient,
    job_id: str,
    user_id: str | None = None,
) -> dict:
    """Poll a job (or module job) and return its best-known state."""
    try:
        get_profile_by_job(session, job_id, user_id)
    except NotFound:
        if _find_module_job(session, job_id) is None:
            raise
        return await poll_module_job(session, client, job_id, user_id)
    outcome = await tracker.poll_job(session, client, job_id)
    out = job_summary(outcome.profile)
    out["data_unavailable"] = outcome.data_unavailable
    if outcome.materialized is not None:
        out["projection_failures"] = outcome.materialized.failed
    return out


# ---------------------------------------------------------------------------
# Full re-analysis
# ---------------------------------------------------------------------------


async def reanalyze(
    session: Session,
    client: EngineClient,
    profile_pk: int,
    user_id: str | None = None,
) -> MaterializeReport:
    """Rebuild a completed profile's kit from the engine's canonical output.

    Falls back to the locally stored snapshot when the engine can't serve it.
    The profile row is reused; no new job row is created.
    """
    profile = get_profile(session, profile_pk, user_id)
    if profile.status != "complete" or not profile.job_id:
        raise ValidationError("Only completed analyses can be re-analyzed")

    result: dict = {}
    try:
        response = await client.get_job(profile.job_id, comprehensive=True)
        result = response.get("result") or {}
        reconciled = reconcile(result)
        reconciled.source = SOURCE_REANALYZED
    except (ServiceUnavailable, NotFound, DataUnavailable) as exc:
        log.warning("Re-analysis of profile %s falling back to stored kit: %s", profile.id, exc)
        reconciled = reconcile_snapshot(json_parse(profile.brand_kit_json, None))
        result = {}

    return materialize(
        session, profile, reconciled,
        scores=result.get("brand_scores") or json_parse(profile.brand_scores_json, None),
        roadmap=result.get("brand_roadmap") or json_parse(profile.brand_roadmap_json, None),
        context=result.get("analysis_context") or json_parse(profile.analysis_context_json, None),
    )


# ---------------------------------------------------------------------------
# Module analysis
# ---------------------------------------------------------------------------


def _find_module_job(session: Session, job_id: str) -> ModuleJob | None:
    return session.execute(select(ModuleJob).where(ModuleJob.job_id == job_id)).scalars().first()


async def analyze_module(
    session: Session,
    client: EngineClient,
    profile_pk: int,
    module_id: str,
    user_id: str | None = None,
    persona_id: str | None = None,
    reuse_evidence: bool = True,
) -> ModuleJob:
    """Ask the engine to re-analyze one section of a profile's kit."""
    validate_module_id(module_id)
    profile = get_profile(session, profile_pk, user_id)
    if not profile.canonical_domain:
        raise ValidationError("Profile has no canonical domain to analyze")

    persona_id = persona_id or profile.persona_id
    response = await client.analyze_module(
        url=f"https://{profile.canonical_domain}",
        module_id=module_id,
        persona_id=persona_id,
        job_id=profile.job_id if reuse_evidence else None,
    )
    if not response.get("job_id"):
        raise DataUnavailable("Engine did not return a module job id")
    module_job = ModuleJob(
        job_id=str(response["job_id"]),
        brand_profile_id=profile.id,
        module_id=module_id,
        persona_id=persona_id,
        status="queued",
    )
    session.add(module_job)
    session.commit()
    session.refresh(module_job)
    log.info("Started module job %s (%s) for profile %s", module_job.job_id, module_id, profile.id)
    return module_job


def apply_module_patch(
    session: Session,
    profile: BrandProfile,
    module_id: str,
    patch: Any,
    expected_version: int | None = None,
) -> MaterializeReport:
    """Replace section *module_id* of the profile's kit and re-materialize.

    Without *expected_version* a concurrent kit write is retried against the
    fresh kit; with it, any mismatch raises ``ConcurrentModification``.
    """
    validate_module_id(module_id)
    for attempt in range(1, MAX_PATCH_ATTEMPTS + 1):
        session.refresh(profile)
        seen = profile.kit_version
        if expected_version is not None and seen != expected_version:
            raise ConcurrentModification(
                f"Brand kit is at version {seen}, expected {expected_version}"
            )
        merged = merge_module_patch(json_parse(profile.brand_kit_json, None), module_id, patch)
        kit = session.execute(
            select(BrandKit).where(BrandKit.brand_profile_id == profile.id)
        ).scalars().first()
        reconciled = Reconciled(
            canonical=merged,
            raw=json_parse(kit.v2_raw_json) if kit else {},
            shape=ResultShape.COMPREHENSIVE,
            source=SOURCE_REANALYZED,
            generated_at=utcnow().isoformat(),
        )
        try:
            return materialize(
                session, profile, reconciled,
                scores=json_parse(profile.brand_scores_json, None),
                roadmap=json_parse(profile.brand_roadmap_json, None),
                context=json_parse(profile.analysis_context_json, None),
                expected_version=seen,
            )
        except ConcurrentModification:
            if expected_version is not None or attempt == MAX_PATCH_ATTEMPTS:
                raise
            log.info("Kit for profile %s changed during patch of %s, retrying", profile.id, module_id)
    raise ConcurrentModification(f"Could not apply patch to profile {profile.id}")


async def poll_module_job(
    session: Session,
    client: EngineClient,
    job_id: str,
    user_id: str | None = None,
) -> dict:
    """Poll a module job and apply its patch once, when it completes."""
    module_job = _find_module_job(session, job_id)
    if module_job is None:
        raise NotFound(f"Module job {job_id} not found")
    profile = get_profile(session, module_job.brand_profile_id, user_id)

    response = await client.get_module_job(job_id)
    observed = tracker.normalize_status(response.get("status"))
    target = tracker.next_status(module_job.status, observed)
    now = utcnow()
    if target == "processing":
        module_job.status = "processing"
        module_job.started_at = module_job.started_at or now
    elif target in TERMINAL_STATUSES:
        module_job.status = target
        module_job.completed_at = now
        module_job.started_at = module_job.started_at or now
        if target == "failed":
            module_job.error = response.get("error") or tracker.DEFAULT_FAILURE_MESSAGE
    session.commit()

    if module_job.status == "complete" and not module_job.applied:
        patch = extract_module_patch(response.get("result"), module_job.module_id)
        if patch is None:
            log.warning("Module job %s completed without a brand_kit_patch", job_id)
        else:
            apply_module_patch(session, profile, module_job.module_id, patch)
            module_job.applied = True
            session.commit()

    return module_job_summary(module_job)


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


def job_summary(profile: BrandProfile) -> dict:
    return {
        "id": profile.id,
        "job_id": profile.job_id,
        "profile_id": profile.profile_id,
        "url": profile.url,
        "status": profile.status,
        "brand_name": profile.brand_name,
        "canonical_domain": profile.canonical_domain,
        "started_at": _iso(profile.job_started_at),
        "completed_at": _iso(profile.job_completed_at),
        "duration_seconds": _duration_seconds(profile),
        "error": profile.job_error,
        "is_complete": profile.status == "complete",
        "is_failed": profile.status == "failed",
        "is_processing": profile.status in ("queued", "processing"),
        "created_at": _iso(profile.created_at),
    }


def module_job_summary(module_job: ModuleJob) -> dict:
    return {
        "job_id": module_job.job_id,
        "profile_id": module_job.brand_profile_id,
        "module_id": module_job.module_id,
        "status": module_job.status,
        "started_at": _iso(module_job.started_at),
        "completed_at": _iso(module_job.completed_at),
        "error": module_job.error,
        "applied": module_job.applied,
    }


def job_history(session: Session, user_id: str | None, limit: int = 50) -> list[dict]:
    stmt = select(BrandProfile).where(BrandProfile.job_id.is_not(None))
    if user_id is not None:
        stmt = stmt.where(BrandProfile.user_id == user_id)
    stmt = stmt.order_by(BrandProfile.created_at.desc(), BrandProfile.id.desc()).limit(limit)
    return [job_summary(p) for p in session.execute(stmt).scalars().all()]


def job_details(session: Session, job_id: str, user_id: str | None = None) -> dict:
    profile = get_profile_by_job(session, job_id, user_id)
    kit = json_parse(profile.brand_kit_json, None)
    out = job_summary(profile)
    out.update({
        "kit_version": profile.kit_version,
        "brand_kit": kit,
        "brand_scores": json_parse(profile.brand_scores_json, None),
        "brand_roadmap": json_parse(profile.brand_roadmap_json, None),
        "analysis_context": json_parse(profile.analysis_context_json, None),
        "data_quality": data_quality_summary(kit) if kit else None,
        "summary": {
            "persona_id": profile.persona_id,
            "entity_type": profile.entity_type,
            "business_model": profile.business_model,
            "channel_orientation": profile.channel_orientation,
            "overall_score": profile.overall_score,
            "completeness_score": profile.completeness_score,
            "total_critical_gaps": profile.total_critical_gaps,
            "has_social_profiles": profile.has_social_profiles,
            "has_blog": profile.has_blog,
            "has_review_sites": profile.has_review_sites,
        },
    })
    return out


def get_kit(session: Session, profile_pk: int, user_id: str | None = None) -> dict:
    profile = get_profile(session, profile_pk, user_id)
    kit = session.execute(
        select(BrandKit).where(BrandKit.brand_profile_id == profile.id)
    ).scalars().first()
    if kit is None:
        raise NotFound(f"No brand kit for profile {profile_pk}")
    return {
        "profile_id": profile.id,
        "kit_version": profile.kit_version,
        "comprehensive": json_parse(kit.comprehensive_json),
        "v2_raw": json_parse(kit.v2_raw_json),
        "format_version": kit.format_version,
        "source": kit.source,
        "generated_at": kit.generated_at,
    }


def data_quality(session: Session, profile_pk: int, user_id: str | None = None) -> dict:
    profile = get_profile(session, profile_pk, user_id)
    return data_quality_summary(json_parse(profile.brand_kit_json, None))


def task_dict(task: RoadmapTask) -> dict:
    return {
        "id": task.external_id,
        "campaign_id": task.campaign_id,
        "milestone_id": task.milestone_id,
        "title": task.title,
        "description": task.description,
        "category": task.category,
        "impact": task.impact,
        "effort": task.effort,
        "targets": json_parse(task.targets_json, []),
        "suggested_owner": task.suggested_owner,
        "suggested_tools": json_parse(task.suggested_tools_json, []),
        "priority_score": task.priority_score,
        "recommended_order": task.recommended_order,
        "status": task.status,
        "depends_on": json_parse(task.depends_on_json, []),
        "acceptance_criteria": task.acceptance_criteria,
        "is_quick_win": task.is_quick_win,
    }


def get_roadmap(session: Session, profile_pk: int, user_id: str | None = None) -> dict:
    """Campaign tree rebuilt from the normalized tables, in insertion order."""
    profile = get_profile(session, profile_pk, user_id)

    def rows(model):
        return session.execute(
            select(model).where(model.brand_profile_id == profile.id).order_by(model.id)
        ).scalars().all()

    tasks_by_campaign: dict[str, list[dict]] = {}
    for task in rows(RoadmapTask):
        tasks_by_campaign.setdefault(task.campaign_id, []).append(task_dict(task))
    milestones_by_campaign: dict[str, list[dict]] = {}
    for m in rows(RoadmapMilestone):
        milestones_by_campaign.setdefault(m.campaign_id, []).append({
            "id": m.external_id, "title": m.title, "goal": m.goal,
            "estimated_duration": m.estimated_duration, "order_index": m.order_index,
            "total_tasks": m.total_tasks,
        })

    campaigns = []
    for c in rows(RoadmapCampaign):
        campaigns.append({
            "id": c.external_id, "persona": c.persona, "title": c.title,
            "short_title": c.short_title, "description": c.description,
            "category": c.category, "recommended_order": c.recommended_order,
            "estimated_timeline": c.estimated_timeline,
            "dimensions_affected": json_parse(c.dimensions_affected_json, []),
            "priority_score": c.priority_score,
            "milestones": milestones_by_campaign.get(c.external_id, []),
            "tasks": tasks_by_campaign.get(c.external_id, []),
        })
    return {"profile_id": profile.id, "campaigns": campaigns}


def get_social_profiles(session: Session, profile_pk: int, user_id: str | None = None) -> list[dict]:
    profile = get_profile(session, profile_pk, user_id)
    rows = session.execute(
        select(SocialProfile).where(SocialProfile.brand_profile_id == profile.id).order_by(SocialProfile.id)
    ).scalars().all()
    return [
        {"platform": r.platform, "profile_type": r.profile_type, "url": r.url,
         "status": r.status, "source": json_parse(r.source_json, [])}
        for r in rows
    ]


# ---------------------------------------------------------------------------
# Roadmap task updates
# ---------------------------------------------------------------------------


def _validate_task_updates(updates: dict) -> dict:
    clean = {k: updates[k] for k in TASK_UPDATE_FIELDS if k in updates}
    if not clean:
        raise ValidationError("Nothing to update: expected status or acceptance_criteria")
    if "status" in clean and clean["status"] not in TASK_STATUSES:
        raise ValidationError(
            f"Invalid task status {clean['status']!r}. Must be one of: {', '.join(TASK_STATUSES)}"
        )
    return clean


def _get_task(session: Session, profile: BrandProfile, task_id: str) -> RoadmapTask:
    task = session.execute(
        select(RoadmapTask).where(
            RoadmapTask.brand_profile_id == profile.id, RoadmapTask.external_id == task_id,
        )
    ).scalars().first()
    if task is None:
        raise NotFound(f"Task {task_id} not found")
    return task


def update_task(
    session: Session,
    profile_pk: int,
    task_id: str,
    updates: dict,
    user_id: str | None = None,
) -> dict:
    profile = get_profile(session, profile_pk, user_id)
    clean = _validate_task_updates(updates)
    task = _get_task(session, profile, task_id)
    apply_updates(task, clean, TASK_UPDATE_FIELDS)
    session.commit()
    return task_dict(task)


def bulk_update_tasks(
    session: Session,
    profile_pk: int,
    updates: list[dict],
    user_id: str | None = None,
) -> list[dict]:
    """Apply several task updates atomically; any invalid entry aborts all."""
    profile = get_profile(session, profile_pk, user_id)
    planned = []
    for item in updates:
        task_id = item.get("task_id")
        if not task_id:
            raise ValidationError("Each update needs a task_id")
        planned.append((_get_task(session, profile, task_id), _validate_task_updates(item)))
    for task, clean in planned:
        apply_updates(task, clean, TASK_UPDATE_FIELDS)
    session.commit()
    return [task_dict(task) for task, _ in planned]
