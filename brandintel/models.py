from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JOB_STATUSES = ("queued", "processing", "complete", "failed")
TERMINAL_STATUSES = ("complete", "failed")


class Base(DeclarativeBase):
    pass


class BrandProfile(Base):
    """One analysis subject and the engine job that (last) analyzed it."""
    __tablename__ = "brand_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(String(100), index=True, default=None)
    url: Mapped[str] = mapped_column(String(500), default="")

    # Job tracking
    job_id: Mapped[str | None] = mapped_column(String(100), unique=True, index=True, default=None)
    profile_id: Mapped[str | None] = mapped_column(String(100), default=None)
    status: Mapped[str] = mapped_column(String(20), default="queued")  # queued | processing | complete | failed
    job_started_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    job_completed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    job_error: Mapped[str | None] = mapped_column(Text, default=None)
    raw_result_json: Mapped[str | None] = mapped_column(Text, default=None)

    # Results, populated on completion
    brand_kit_json: Mapped[str | None] = mapped_column(Text, default=None)
    brand_scores_json: Mapped[str | None] = mapped_column(Text, default=None)
    brand_roadmap_json: Mapped[str | None] = mapped_column(Text, default=None)
    analysis_context_json: Mapped[str | None] = mapped_column(Text, default=None)
    kit_version: Mapped[int] = mapped_column(Integer, default=0)

    # Summary columns, recomputed on every completion
    canonical_domain: Mapped[str | None] = mapped_column(String(300), index=True, default=None)
    brand_name: Mapped[str | None] = mapped_column(String(300), default=None)
    persona_id: Mapped[str | None] = mapped_column(String(100), default=None)
    entity_type: Mapped[str | None] = mapped_column(String(100), default=None)
    business_model: Mapped[str | None] = mapped_column(String(100), default=None)
    channel_orientation: Mapped[str | None] = mapped_column(String(100), default=None)
    overall_score: Mapped[float | None] = mapped_column(Float, default=None)
    completeness_score: Mapped[float] = mapped_column(Float, default=0.0)
    total_critical_gaps: Mapped[int] = mapped_column(Integer, default=0)
    has_social_profiles: Mapped[bool] = mapped_column(Boolean, default=False)
    has_blog: Mapped[bool] = mapped_column(Boolean, default=False)
    has_review_sites: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    kit: Mapped[BrandKit | None] = relationship("BrandKit", back_populates="profile", uselist=False, cascade="all, delete-orphan")
    campaigns: Mapped[list[RoadmapCampaign]] = relationship("RoadmapCampaign", cascade="all, delete-orphan")
    milestones: Mapped[list[RoadmapMilestone]] = relationship("RoadmapMilestone", cascade="all, delete-orphan")
    tasks: Mapped[list[RoadmapTask]] = relationship("RoadmapTask", cascade="all, delete-orphan")
    social_profiles: Mapped[list[SocialProfile]] = relationship("SocialProfile", cascade="all, delete-orphan")
    module_jobs: Mapped[list[ModuleJob]] = relationship("ModuleJob", back_populates="profile", cascade="all, delete-orphan")


class BrandKit(Base):
    __tablename__ = "brand_kits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand_profile_id: Mapped[int] = mapped_column(Integer, ForeignKey("brand_profiles.id"), unique=True, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(100), default=None)
    comprehensive_json: Mapped[str] = mapped_column(Text, default="{}")
    v2_raw_json: Mapped[str] = mapped_column(Text, default="{}")
    format_version: Mapped[str] = mapped_column(String(20), default="2.0")
    source: Mapped[str] = mapped_column(String(30), default="auto")  # auto | auto_fallback | reanalyzed | manual
    generated_at: Mapped[str | None] = mapped_column(String(50), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    profile: Mapped[BrandProfile] = relationship("BrandProfile", back_populates="kit")


class RoadmapCampaign(Base):
    __tablename__ = "brand_roadmap_campaigns"
    __table_args__ = (UniqueConstraint("brand_profile_id", "external_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand_profile_id: Mapped[int] = mapped_column(Integer, ForeignKey("brand_profiles.id"), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    persona: Mapped[str | None] = mapped_column(String(100), default=None)
    title: Mapped[str | None] = mapped_column(Text, default=None)
    short_title: Mapped[str | None] = mapped_column(String(200), default=None)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    category: Mapped[str | None] = mapped_column(String(100), default=None)
    recommended_order: Mapped[int | None] = mapped_column(Integer, default=None)
    estimated_timeline: Mapped[str | None] = mapped_column(String(100), default=None)
    dimensions_affected_json: Mapped[str] = mapped_column(Text, default="[]")
    priority_score: Mapped[int | None] = mapped_column(Integer, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class RoadmapMilestone(Base):
    __tablename__ = "brand_roadmap_milestones"
    __table_args__ = (UniqueConstraint("brand_profile_id", "external_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand_profile_id: Mapped[int] = mapped_column(Integer, ForeignKey("brand_profiles.id"), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(200), nullable=False)  # campaign external_id
    title: Mapped[str | None] = mapped_column(Text, default=None)
    goal: Mapped[str | None] = mapped_column(Text, default=None)
    estimated_duration: Mapped[str | None] = mapped_column(String(100), default=None)
    order_index: Mapped[int | None] = mapped_column(Integer, default=None)
    total_tasks: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class RoadmapTask(Base):
    __tablename__ = "brand_roadmap_tasks"
    __table_args__ = (UniqueConstraint("brand_profile_id", "external_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand_profile_id: Mapped[int] = mapped_column(Integer, ForeignKey("brand_profiles.id"), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(200), nullable=False)
    milestone_id: Mapped[str | None] = mapped_column(String(200), default=None)
    title: Mapped[str] = mapped_column(Text, default="")
    description: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[str] = mapped_column(String(100), default="other")
    impact: Mapped[str] = mapped_column(String(10), default="medium")  # low | medium | high
    effort: Mapped[str] = mapped_column(String(10), default="medium")
    targets_json: Mapped[str] = mapped_column(Text, default="[]")
    suggested_owner: Mapped[str | None] = mapped_column(String(200), default=None)
    suggested_tools_json: Mapped[str] = mapped_column(Text, default="[]")
    priority_score: Mapped[int | None] = mapped_column(Integer, default=None)
    recommended_order: Mapped[int | None] = mapped_column(Integer, default=None)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | in_progress | completed | skipped
    depends_on_json: Mapped[str] = mapped_column(Text, default="[]")
    acceptance_criteria: Mapped[str | None] = mapped_column(Text, default=None)
    is_quick_win: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class SocialProfile(Base):
    __tablename__ = "brand_social_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand_profile_id: Mapped[int] = mapped_column(Integer, ForeignKey("brand_profiles.id"), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(100), default="unknown")
    profile_type: Mapped[str | None] = mapped_column(String(100), default=None)
    url: Mapped[str] = mapped_column(String(500), default="")
    status: Mapped[str] = mapped_column(String(20), default="found")
    source_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class ModuleJob(Base):
    """A module-scoped engine job that re-analyzes one section of a kit."""
    __tablename__ = "module_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    brand_profile_id: Mapped[int] = mapped_column(Integer, ForeignKey("brand_profiles.id"), nullable=False, index=True)
    module_id: Mapped[str] = mapped_column(String(100), nullable=False)
    persona_id: Mapped[str | None] = mapped_column(String(100), default=None)
    status: Mapped[str] = mapped_column(String(20), default="queued")
    started_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    error: Mapped[str | None] = mapped_column(Text, default=None)
    applied: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    profile: Mapped[BrandProfile] = relationship("BrandProfile", back_populates="module_jobs")
