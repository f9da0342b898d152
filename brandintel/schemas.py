"""Pydantic schemas for the engine contract and the HTTP API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from brandintel.merger import MODULE_ID_RE
from brandintel.projections import TASK_STATUSES

# ---------------------------------------------------------------------------
# Engine responses
# ---------------------------------------------------------------------------


class EngineJobAccepted(BaseModel):
    model_config = ConfigDict(extra="allow")

    job_id: str
    status: str = "queued"
    message: str | None = None


class EngineJobStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    job_id: str | None = None
    status: str
    result: Any = None
    error: str | None = None


class EngineModuleStatus(EngineJobStatus):
    module_id: str | None = None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class AnalyzeRequest(BaseModel):
    url: str
    depth: str | None = None
    override_persona: str | None = None
    config: dict[str, Any] | None = None
    include_screenshots: bool | None = None
    include_web_search: bool | None = None
    max_pages: int | None = None

    @field_validator("url")
    @classmethod
    def url_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("URL is required")
        return v


class ModuleAnalyzeRequest(BaseModel):
    module_id: str
    persona_id: str | None = None
    reuse_evidence: bool = True

    @field_validator("module_id")
    @classmethod
    def module_id_format(cls, v: str) -> str:
        if not MODULE_ID_RE.match(v):
            raise ValueError("module_id must contain only lowercase letters and underscores")
        return v


class TaskUpdate(BaseModel):
    status: str | None = None
    acceptance_criteria: str | None = None

    @field_validator("status")
    @classmethod
    def status_known(cls, v: str | None) -> str | None:
        if v is not None and v not in TASK_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(TASK_STATUSES)}")
        return v


class BulkTaskUpdateItem(TaskUpdate):
    task_id: str


class BulkTaskUpdate(BaseModel):
    updates: list[BulkTaskUpdateItem]


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class JobOut(BaseModel):
    id: int
    job_id: str | None = None
    profile_id: str | None = None
    url: str
    status: str
    brand_name: str | None = None
    canonical_domain: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    duration_seconds: float | None = None
    error: str | None = None
    is_complete: bool
    is_failed: bool
    is_processing: bool
    created_at: str | None = None


class ModuleJobOut(BaseModel):
    job_id: str
    profile_id: int
    module_id: str
    status: str
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None
    applied: bool


class TaskOut(BaseModel):
    id: str
    campaign_id: str
    milestone_id: str | None = None
    title: str
    description: str
    category: str
    impact: str
    effort: str
    targets: list[Any] = []
    suggested_owner: str | None = None
    suggested_tools: list[Any] = []
    priority_score: int | None = None
    recommended_order: int | None = None
    status: str
    depends_on: list[str] = []
    acceptance_criteria: str | None = None
    is_quick_win: bool


class MaterializeOut(BaseModel):
    kit_written: bool
    failed: list[str] = []
    counts: dict[str, int] = {}
