"""Result materializer: persist a reconciled result and its derived projections.

Order of work for one completed result:

1. Write the canonical snapshot on the profile row and upsert the kit row
   (one commit, optionally guarded by the profile's ``kit_version``).
2. Rebuild the roadmap tables (upsert by external id, prune the rest).
3. Replace the social profile rows.
4. Recompute the summary columns on the profile.

Steps 2-4 each commit or roll back on their own; a failing builder is logged
and reported, never raised, and never undoes step 1.

``rebuild_projections`` runs steps 2-4 alone from what is already stored.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from brandintel.errors import ConcurrentModification
from brandintel.models import (
    BrandKit, BrandProfile, RoadmapCampaign, RoadmapMilestone, RoadmapTask, SocialProfile,
)
from brandintel.projections import extract_social_profiles, normalize_roadmap, summary_scalars
from brandintel.reconciler import FORMAT_VERSION, Reconciled
from brandintel.utils import json_dump, json_parse, utcnow

log = logging.getLogger(__name__)

# Task columns owned by the user once a task exists; re-extraction leaves them alone.
USER_OWNED_TASK_FIELDS = ("status", "acceptance_criteria")


@dataclass
class MaterializeReport:
    kit_written: bool = False
    failed: list[str] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Upsert helpers
# ---------------------------------------------------------------------------


def _dialect_insert(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    elif dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        raise NotImplementedError(f"Upsert not supported for dialect {dialect!r}")
    return insert


def _upsert_rows(
    session: Session,
    model,
    rows: list[dict],
    index_elements: list[str],
    skip_on_update: tuple[str, ...] = (),
) -> None:
    if not rows:
        return
    insert = _dialect_insert(session)
    stmt = insert(model).values(rows)
    keys = set(index_elements) | set(skip_on_update)
    set_ = {c: stmt.excluded[c] for c in rows[0] if c not in keys}
    set_["updated_at"] = func.now()
    session.execute(stmt.on_conflict_do_update(index_elements=index_elements, set_=set_))


def _with_json_columns(row: dict, *keys: str) -> dict:
    out = dict(row)
    for key in keys:
        out[f"{key}_json"] = json_dump(out.pop(key, None) or [])
    return out


def _dedupe(rows: list[dict]) -> list[dict]:
    seen: set[str] = set()
    out = []
    for row in rows:
        if row["external_id"] not in seen:
            seen.add(row["external_id"])
            out.append(row)
    return out


def _prune(session: Session, model, profile_pk: int, keep: list[str]) -> None:
    stmt = delete(model).where(model.brand_profile_id == profile_pk)
    if keep:
        stmt = stmt.where(model.external_id.notin_(keep))
    session.execute(stmt)


# ---------------------------------------------------------------------------
# Kit
# ---------------------------------------------------------------------------


def upsert_kit(session: Session, profile: BrandProfile, reconciled: Reconciled) -> None:
    """Insert or overwrite the profile's single kit row. Caller must commit."""
    values = {
        "brand_profile_id": profile.id,
        "user_id": profile.user_id,
        "comprehensive_json": json_dump(reconciled.canonical),
        "v2_raw_json": json_dump(reconciled.raw),
        "format_version": FORMAT_VERSION,
        "source": reconciled.source,
        "generated_at": reconciled.generated_at or utcnow().isoformat(),
    }
    insert = _dialect_insert(session)
    stmt = insert(BrandKit).values(values)
    set_ = {c: stmt.excluded[c] for c in values if c != "brand_profile_id"}
    if reconciled.generated_at is None:
        # keep the original timestamp when the payload carries none
        set_.pop("generated_at")
    set_["updated_at"] = func.now()
    session.execute(stmt.on_conflict_do_update(index_elements=["brand_profile_id"], set_=set_))


def _write_snapshot(
    session: Session,
    profile: BrandProfile,
    reconciled: Reconciled,
    expected_version: int | None,
) -> None:
    stmt = update(BrandProfile).where(BrandProfile.id == profile.id)
    if expected_version is not None:
        stmt = stmt.where(BrandProfile.kit_version == expected_version)
    res = session.execute(
        stmt.values(
            brand_kit_json=json_dump(reconciled.canonical),
            kit_version=BrandProfile.kit_version + 1,
        ).execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        session.rollback()
        raise ConcurrentModification(
            f"Brand kit for profile {profile.id} changed since version {expected_version}"
        )
    upsert_kit(session, profile, reconciled)
    session.commit()


# ---------------------------------------------------------------------------
# Derived projections
# ---------------------------------------------------------------------------


def write_roadmap(session: Session, profile: BrandProfile, roadmap: Any) -> dict[str, int]:
    """Upsert roadmap rows from *roadmap* and drop rows it no longer names. Caller must commit."""
    batch = normalize_roadmap(roadmap, profile.profile_id or profile.job_id or profile.id)
    campaigns = _dedupe([
        {"brand_profile_id": profile.id, **_with_json_columns(c, "dimensions_affected")}
        for c in batch.campaigns
    ])
    milestones = _dedupe([{"brand_profile_id": profile.id, **m} for m in batch.milestones])
    tasks = _dedupe([
        {"brand_profile_id": profile.id,
         **_with_json_columns(t, "targets", "suggested_tools", "depends_on")}
        for t in batch.tasks
    ])

    key = ["brand_profile_id", "external_id"]
    _upsert_rows(session, RoadmapCampaign, campaigns, key)
    _upsert_rows(session, RoadmapMilestone, milestones, key)
    _upsert_rows(session, RoadmapTask, tasks, key, skip_on_update=USER_OWNED_TASK_FIELDS)

    _prune(session, RoadmapTask, profile.id, [t["external_id"] for t in tasks])
    _prune(session, RoadmapMilestone, profile.id, [m["external_id"] for m in milestones])
    _prune(session, RoadmapCampaign, profile.id, [c["external_id"] for c in campaigns])
    return {"campaigns": len(campaigns), "milestones": len(milestones), "tasks": len(tasks)}


def write_social_profiles(session: Session, profile: BrandProfile, canonical: Any) -> dict[str, int]:
    """Delete-then-insert the profile's social rows. Caller must commit."""
    rows = extract_social_profiles(canonical)
    session.execute(delete(SocialProfile).where(SocialProfile.brand_profile_id == profile.id))
    session.add_all(
        SocialProfile(
            brand_profile_id=profile.id,
            platform=r["platform"],
            profile_type=r["profile_type"],
            url=r["url"],
            status=r["status"],
            source_json=json_dump(r["source"]),
        )
        for r in rows
    )
    return {"social_profiles": len(rows)}


def write_summary(
    session: Session,
    profile: BrandProfile,
    canonical: Any,
    scores: Any,
    context: Any,
    raw_kit: Any,
) -> dict[str, int]:
    """Recompute every summary column on *profile*. Caller must commit."""
    values = summary_scalars(canonical, scores, context, raw_kit)
    session.execute(
        update(BrandProfile)
        .where(BrandProfile.id == profile.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return {}


def _run_isolated(
    session: Session,
    report: MaterializeReport,
    name: str,
    fn: Callable[[], dict[str, int]],
    profile_pk: int,
) -> None:
    try:
        counts = fn()
        session.commit()
    except Exception as exc:
        session.rollback()
        report.failed.append(name)
        log.warning("Projection %s failed for profile %s: %s", name, profile_pk, exc)
        return
    report.counts.update(counts)


def _run_projections(
    session: Session,
    profile: BrandProfile,
    report: MaterializeReport,
    canonical: Any,
    scores: Any,
    roadmap: Any,
    context: Any,
    raw_kit: Any,
) -> None:
    profile_pk = profile.id
    _run_isolated(session, report, "roadmap",
                  lambda: write_roadmap(session, profile, roadmap), profile_pk)
    _run_isolated(session, report, "social_profiles",
                  lambda: write_social_profiles(session, profile, canonical), profile_pk)
    _run_isolated(session, report, "summary",
                  lambda: write_summary(session, profile, canonical, scores, context, raw_kit), profile_pk)

    session.refresh(profile)
    log.info("Materialized profile %s: %s%s", profile_pk, report.counts,
             f" (failed: {', '.join(report.failed)})" if report.failed else "")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def materialize(
    session: Session,
    profile: BrandProfile,
    reconciled: Reconciled,
    scores: Any = None,
    roadmap: Any = None,
    context: Any = None,
    expected_version: int | None = None,
) -> MaterializeReport:
    """Persist *reconciled* for *profile* and refresh every derived projection.

    ``expected_version`` turns the snapshot write into a compare-and-swap on
    ``kit_version``; a mismatch raises ``ConcurrentModification`` before
    anything is written. Kit write failures propagate; projection failures
    are only logged and listed in the returned report.
    """
    profile_pk = profile.id
    report = MaterializeReport()

    _write_snapshot(session, profile, reconciled, expected_version)
    report.kit_written = True
    log.info("Upserted brand kit for profile %s (source=%s, shape=%s)",
             profile_pk, reconciled.source, reconciled.shape.value)

    if roadmap is None:
        roadmap = reconciled.raw.get("brand_roadmap")
    _run_projections(session, profile, report, reconciled.canonical, scores, roadmap, context,
                     reconciled.raw.get("brand_kit"))
    return report


def rebuild_projections(session: Session, profile: BrandProfile) -> MaterializeReport:
    """Re-derive every projection from the profile's stored snapshot.

    Neither the snapshot nor the kit row is written, so module patches and
    re-analyses applied since the job completed are kept.
    """
    report = MaterializeReport()
    kit = session.execute(
        select(BrandKit).where(BrandKit.brand_profile_id == profile.id)
    ).scalars().first()
    raw = json_parse(kit.v2_raw_json) if kit else {}
    _run_projections(
        session, profile, report,
        json_parse(profile.brand_kit_json),
        json_parse(profile.brand_scores_json, None),
        json_parse(profile.brand_roadmap_json, None),
        json_parse(profile.analysis_context_json, None),
        raw.get("brand_kit") if isinstance(raw, dict) else None,
    )
    return report
