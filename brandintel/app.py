from __future__ import annotations

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from sqlalchemy.orm import Session

from brandintel import services
from brandintel.client import EngineClient
from brandintel.db import init_db, session_generator
from brandintel.errors import (
    BrandIntelError, ConcurrentModification, DataUnavailable, NotFound, ServiceUnavailable,
    Unauthorized, ValidationError,
)
from brandintel.schemas import (
    AnalyzeRequest,
    BulkTaskUpdate,
    JobOut,
    MaterializeOut,
    ModuleAnalyzeRequest,
    ModuleJobOut,
    TaskOut,
    TaskUpdate,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Brand Intelligence",
    version="0.1.0",
    description=(
        "Tracks brand-intelligence analysis jobs, reconciles their results into "
        "one canonical brand kit, and serves the derived roadmap and social data. "
        "Callers identify themselves with the X-User-Id header."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Jobs", "description": "Submit analyses and poll their status."},
        {"name": "Modules", "description": "Re-analyze a single section of a brand kit."},
        {"name": "Kits", "description": "Read brand kits and their data quality."},
        {"name": "Roadmap", "description": "Roadmap campaigns and task progress."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def engine_client() -> EngineClient:
    return EngineClient()


def current_user(x_user_id: str | None = Header(default=None)) -> str | None:
    return x_user_id


_STATUS_CODES: list[tuple[type[BrandIntelError], int]] = [
    (ServiceUnavailable, 503),
    (DataUnavailable, 422),
    (NotFound, 404),
    (Unauthorized, 403),
    (ValidationError, 400),
    (ConcurrentModification, 409),
]


@contextmanager
def _service_errors():
    try:
        yield
    except BrandIntelError as exc:
        code = next((c for cls, c in _STATUS_CODES if isinstance(exc, cls)), 500)
        raise HTTPException(code, exc.message) from exc


# ---------------------------------------------------------------------------
# Routes: Jobs
# ---------------------------------------------------------------------------


@app.post("/api/analyze", response_model=JobOut, status_code=201,
          tags=["Jobs"], summary="Submit a URL for brand analysis")
async def analyze(
    body: AnalyzeRequest,
    session: Session = Depends(db_session),
    client: EngineClient = Depends(engine_client),
    user_id: str | None = Depends(current_user),
):
    with _service_errors():
        profile = await services.request_analysis(
            session, client, user_id, body.url, **body.model_dump(exclude={"url"}),
        )
    return services.job_summary(profile)


@app.get("/api/jobs", response_model=list[JobOut], tags=["Jobs"], summary="List the caller's analysis jobs")
async def list_jobs(
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user),
):
    return services.job_history(session, user_id, limit)


@app.get("/api/jobs/{job_id}", tags=["Jobs"], summary="Poll the engine and return the job's current status")
async def poll_job(
    job_id: str,
    session: Session = Depends(db_session),
    client: EngineClient = Depends(engine_client),
    user_id: str | None = Depends(current_user),
) -> dict[str, Any]:
    with _service_errors():
        return await services.poll(session, client, job_id, user_id)


@app.get("/api/jobs/{job_id}/details", tags=["Jobs"], summary="Stored results for a job (no engine call)")
async def job_details(
    job_id: str,
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user),
) -> dict[str, Any]:
    with _service_errors():
        return services.job_details(session, job_id, user_id)


@app.post("/api/profiles/{profile_id}/reanalyze", response_model=MaterializeOut,
          tags=["Jobs"], summary="Rebuild a completed profile's kit from fresh engine output")
async def reanalyze(
    profile_id: int,
    session: Session = Depends(db_session),
    client: EngineClient = Depends(engine_client),
    user_id: str | None = Depends(current_user),
):
    with _service_errors():
        report = await services.reanalyze(session, client, profile_id, user_id)
    return {"kit_written": report.kit_written, "failed": report.failed, "counts": report.counts}


# ---------------------------------------------------------------------------
# Routes: Modules
# ---------------------------------------------------------------------------


@app.post("/api/profiles/{profile_id}/modules", response_model=ModuleJobOut, status_code=201,
          tags=["Modules"], summary="Re-analyze one section of a profile's kit")
async def analyze_module(
    profile_id: int,
    body: ModuleAnalyzeRequest,
    session: Session = Depends(db_session),
    client: EngineClient = Depends(engine_client),
    user_id: str | None = Depends(current_user),
):
    with _service_errors():
        module_job = await services.analyze_module(
            session, client, profile_id, body.module_id, user_id,
            persona_id=body.persona_id, reuse_evidence=body.reuse_evidence,
        )
    return services.module_job_summary(module_job)


@app.get("/api/modules/{job_id}", response_model=ModuleJobOut,
         tags=["Modules"], summary="Poll a module job; applies its patch on completion")
async def poll_module(
    job_id: str,
    session: Session = Depends(db_session),
    client: EngineClient = Depends(engine_client),
    user_id: str | None = Depends(current_user),
):
    with _service_errors():
        return await services.poll_module_job(session, client, job_id, user_id)


# ---------------------------------------------------------------------------
# Routes: Kits
# ---------------------------------------------------------------------------


@app.get("/api/profiles/{profile_id}/kit", tags=["Kits"], summary="Canonical brand kit for a profile")
async def get_kit(
    profile_id: int,
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user),
) -> dict[str, Any]:
    with _service_errors():
        return services.get_kit(session, profile_id, user_id)


@app.get("/api/profiles/{profile_id}/quality", tags=["Kits"], summary="Field-level data quality summary")
async def get_quality(
    profile_id: int,
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user),
) -> dict[str, Any]:
    with _service_errors():
        return services.data_quality(session, profile_id, user_id)


@app.get("/api/profiles/{profile_id}/social", tags=["Kits"], summary="Social profiles found for a brand")
async def get_social(
    profile_id: int,
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user),
) -> list[dict[str, Any]]:
    with _service_errors():
        return services.get_social_profiles(session, profile_id, user_id)


# ---------------------------------------------------------------------------
# Routes: Roadmap
# ---------------------------------------------------------------------------


@app.get("/api/profiles/{profile_id}/roadmap", tags=["Roadmap"], summary="Roadmap campaigns, milestones and tasks")
async def get_roadmap(
    profile_id: int,
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user),
) -> dict[str, Any]:
    with _service_errors():
        return services.get_roadmap(session, profile_id, user_id)


@app.patch("/api/profiles/{profile_id}/tasks/{task_id}", response_model=TaskOut,
           tags=["Roadmap"], summary="Update a task's status or acceptance criteria")
async def update_task(
    profile_id: int,
    task_id: str,
    body: TaskUpdate,
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user),
):
    with _service_errors():
        return services.update_task(
            session, profile_id, task_id, body.model_dump(exclude_unset=True), user_id,
        )


@app.patch("/api/profiles/{profile_id}/tasks", response_model=list[TaskOut],
           tags=["Roadmap"], summary="Update several tasks at once")
async def bulk_update_tasks(
    profile_id: int,
    body: BulkTaskUpdate,
    session: Session = Depends(db_session),
    user_id: str | None = Depends(current_user),
):
    with _service_errors():
        return services.bulk_update_tasks(
            session, profile_id, [u.model_dump(exclude_unset=True) for u in body.updates], user_id,
        )


def main():
    import uvicorn
    uvicorn.run("brandintel.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
