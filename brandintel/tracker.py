"""Job state tracker: owns the job columns of a profile row.

State machine::

    queued -> processing -> complete
                         -> failed

``queued`` may also jump straight to a terminal state (a missed
``processing`` observation). Backwards and post-terminal observations are
ignored. Every write is conditional on the persisted status, so concurrent
pollers can't set a timestamp twice or complete a job twice.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from brandintel.client import EngineClient
from brandintel.errors import DataUnavailable, NotFound
from brandintel.materializer import MaterializeReport, materialize, rebuild_projections
from brandintel.models import JOB_STATUSES, TERMINAL_STATUSES, BrandProfile
from brandintel.reconciler import Reconciled, reconcile
from brandintel.utils import json_dump, utcnow

log = logging.getLogger(__name__)

_RANK = {"queued": 0, "processing": 1, "complete": 2, "failed": 2}

# Engine spellings that map onto our states.
STATUS_SYNONYMS = {"running": "processing", "in_progress": "processing", "pending": "queued"}

DEFAULT_FAILURE_MESSAGE = "Analysis failed"


@dataclass
class PollOutcome:
    profile: BrandProfile
    transitioned: bool = False
    materialized: MaterializeReport | None = None
    data_unavailable: bool = False


def normalize_status(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    status = raw.strip().lower()
    status = STATUS_SYNONYMS.get(status, status)
    return status if status in JOB_STATUSES else None


def next_status(current: str, observed: str | None) -> str | None:
    """Status to move to, or ``None`` when *observed* changes nothing."""
    if observed is None or current in TERMINAL_STATUSES or observed == current:
        return None
    if _RANK[observed] < _RANK.get(current, 0):
        return None
    return observed


# ---------------------------------------------------------------------------
# Job creation
# ---------------------------------------------------------------------------


def create_job(session: Session, user_id: str | None, url: str, response: dict) -> BrandProfile:
    """Record a freshly submitted engine job as a ``queued`` profile row."""
    job_id = response.get("job_id")
    if not job_id:
        raise DataUnavailable("Engine did not return a job id")
    profile = BrandProfile(
        user_id=user_id,
        url=url,
        job_id=str(job_id),
        status="queued",
        raw_result_json=json_dump({**response, "url": url}),
    )
    session.add(profile)
    session.commit()
    session.refresh(profile)
    log.info("Created job %s for %s", profile.job_id, url)
    return profile


def get_profile_by_job(session: Session, job_id: str) -> BrandProfile:
    profile = session.execute(
        select(BrandProfile).where(BrandProfile.job_id == job_id)
    ).scalars().first()
    if profile is None:
        raise NotFound(f"Job {job_id} not found")
    return profile


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _reconcile_or_none(job_id: str, result: Any) -> Reconciled | None:
    try:
        return reconcile(result)
    except DataUnavailable as exc:
        log.warning("Job %s completed without usable result, skipping kit: %s", job_id, exc)
        return None


def _result_columns(result: Any, reconciled: Reconciled | None) -> dict:
    result = result if isinstance(result, dict) else {}
    return {
        "brand_kit_json": json_dump(reconciled.canonical) if reconciled else None,
        "brand_scores_json": json_dump(result.get("brand_scores")),
        "brand_roadmap_json": json_dump(result.get("brand_roadmap")),
        "analysis_context_json": json_dump(result.get("analysis_context")),
    }


def _start(session: Session, profile: BrandProfile, response: dict) -> bool:
    res = session.execute(
        update(BrandProfile)
        .where(BrandProfile.id == profile.id, BrandProfile.status == "queued")
        .values(status="processing", job_started_at=utcnow(), raw_result_json=json_dump(response))
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return res.rowcount == 1


def _finish(
    session: Session,
    profile: BrandProfile,
    status: str,
    response: dict,
    reconciled: Reconciled | None,
) -> bool:
    now = utcnow()
    values: dict[str, Any] = {
        "status": status,
        "job_completed_at": now,
        "job_started_at": func.coalesce(BrandProfile.job_started_at, now),
        "raw_result_json": json_dump(response),
    }
    if status == "complete":
        values["profile_id"] = profile.job_id
        values.update(_result_columns(response.get("result"), reconciled))
    else:
        values["job_error"] = response.get("error") or DEFAULT_FAILURE_MESSAGE
    res = session.execute(
        update(BrandProfile)
        .where(BrandProfile.id == profile.id, BrandProfile.status.notin_(TERMINAL_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return res.rowcount == 1


def _store_late_results(session: Session, profile: BrandProfile, response: dict,
                        reconciled: Reconciled) -> None:
    # only keys the result carries; absent ones keep their stored value
    columns = {k: v for k, v in _result_columns(response.get("result"), reconciled).items() if v is not None}
    session.execute(
        update(BrandProfile)
        .where(BrandProfile.id == profile.id)
        .values(**columns)
        .execution_options(synchronize_session=False)
    )
    session.commit()


def _hand_off(session: Session, profile: BrandProfile, result: Any,
              reconciled: Reconciled) -> MaterializeReport | None:
    result = result if isinstance(result, dict) else {}
    try:
        return materialize(
            session, profile, reconciled,
            scores=result.get("brand_scores"),
            roadmap=result.get("brand_roadmap"),
            context=result.get("analysis_context"),
        )
    except Exception as exc:
        session.rollback()
        log.warning("Materialization failed for job %s: %s", profile.job_id, exc)
        return None


def apply_poll(session: Session, job_id: str, response: dict) -> PollOutcome:
    """Apply one engine poll response ``{status, result?, error?}`` to the job row.

    Re-observing ``complete`` on a completed job rebuilds the projections from
    the stored kit and never rewrites it, so later module patches survive.
    Only a job that completed without a usable result takes the new one.
    """
    profile = get_profile_by_job(session, job_id)
    outcome = PollOutcome(profile=profile)
    observed = normalize_status(response.get("status"))
    current = profile.status
    target = next_status(current, observed)

    if observed is None:
        log.debug("Job %s: ignoring unrecognized status %r", job_id, response.get("status"))
    elif target == "processing":
        outcome.transitioned = _start(session, profile, response)
        if outcome.transitioned:
            log.info("Job %s started processing", job_id)
    elif target in TERMINAL_STATUSES:
        reconciled = None
        if target == "complete":
            reconciled = _reconcile_or_none(job_id, response.get("result"))
            outcome.data_unavailable = reconciled is None
        outcome.transitioned = _finish(session, profile, target, response, reconciled)
        if outcome.transitioned:
            log.info("Job %s %s", job_id, "completed" if target == "complete" else "failed")
            if reconciled is not None:
                session.refresh(profile)
                outcome.materialized = _hand_off(session, profile, response.get("result"), reconciled)
    elif current == "complete" and observed == "complete":
        if profile.brand_kit_json is None:
            reconciled = _reconcile_or_none(job_id, response.get("result"))
            outcome.data_unavailable = reconciled is None
            if reconciled is not None:
                _store_late_results(session, profile, response, reconciled)
                session.refresh(profile)
                outcome.materialized = _hand_off(session, profile, response.get("result"), reconciled)
        else:
            outcome.materialized = rebuild_projections(session, profile)
    elif target is None and current != observed:
        log.info("Job %s: ignoring %s after %s", job_id, observed, current)
    else:
        log.debug("Job %s: still %s", job_id, current)

    session.refresh(profile)
    return outcome


async def poll_job(session: Session, client: EngineClient, job_id: str) -> PollOutcome:
    """Fetch the engine's view of *job_id* and apply it.

    ``ServiceUnavailable`` from the client propagates with the row untouched.
    """
    get_profile_by_job(session, job_id)
    response = await client.get_job(job_id)
    return apply_poll(session, job_id, response)
