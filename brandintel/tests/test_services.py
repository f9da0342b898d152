"""Service-layer tests: analysis requests, re-analysis, module patches, task updates."""
from __future__ import annotations

from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from brandintel import services
from brandintel.client import EngineClient
from brandintel.errors import (
    ConcurrentModification, DataUnavailable, NotFound, ServiceUnavailable, Unauthorized,
    ValidationError,
)
from brandintel.fields import make_field
from brandintel.materializer import materialize as real_materialize
from brandintel.models import Base, BrandKit, BrandProfile, RoadmapTask
from brandintel.tracker import apply_poll, create_job
from brandintel.utils import json_parse

KIT = {
    "meta": {"brand_name": make_field("Acme"), "canonical_domain": make_field("acme.io")},
    "visual_identity": {"primary_colors": make_field({"items": ["#111111"]})},
    "verbal_identity": {"elevator_pitch": make_field("We make anvils.")},
    "gaps_summary": {"total_completeness": 60, "critical_gaps": ["logo"]},
}
RESULT = {
    "comprehensive": KIT,
    "brand_scores": {"overall_score": 58},
    "brand_roadmap": {"campaigns": [{
        "id": "c1", "title": "Foundation",
        "milestones": [{"id": "m1", "tasks": [
            {"id": "t1", "title": "Write tagline"},
            {"id": "t2", "title": "Add testimonials"},
        ]}],
    }]},
    "analysis_context": {"persona_id": "saas_b2b", "entity_type": "company"},
}


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def client():
    return AsyncMock(spec=EngineClient)


@pytest.fixture()
def completed(session: Session) -> BrandProfile:
    profile = create_job(session, "u1", "https://acme.io", {"job_id": "J1", "status": "queued"})
    apply_poll(session, "J1", {"status": "complete", "result": RESULT})
    return profile


class TestAnalyzePayload:
    def test_defaults(self):
        assert services.build_analyze_payload(" https://acme.io ") == {
            "url": "https://acme.io",
            "depth": "medium",
            "include_screenshots": True,
            "include_web_search": True,
            "max_pages": 20,
        }

    def test_blank_url(self):
        with pytest.raises(ValidationError):
            services.build_analyze_payload("   ")

    def test_invalid_depth(self):
        with pytest.raises(ValidationError):
            services.build_analyze_payload("https://acme.io", depth="extreme")

    def test_modular_config_wins(self):
        payload = services.build_analyze_payload(
            "https://acme.io",
            override_persona="ecommerce",
            config={
                "depth": "deep",
                "components": ["visual_identity"],
                "evidence": {"include_screenshots": False, "max_pages": 5},
            },
            include_web_search=False,
        )
        assert payload == {
            "url": "https://acme.io",
            "depth": "deep",
            "override_persona": "ecommerce",
            "config": {
                "components": ["visual_identity"],
                "evidence": {
                    "include_screenshots": False,
                    "include_web_search": False,
                    "max_pages": 5,
                    "max_search_queries": 10,
                },
            },
        }

    @pytest.mark.asyncio
    async def test_request_analysis_records_queued_job(self, session, client):
        client.analyze.return_value = {"job_id": "J9", "status": "processing", "message": "ok"}
        profile = await services.request_analysis(session, client, "u1", "https://acme.io", depth="light")
        assert profile.job_id == "J9"
        assert profile.status == "queued"
        assert client.analyze.await_args.args[0]["depth"] == "light"

    @pytest.mark.asyncio
    async def test_request_analysis_service_down(self, session, client):
        client.analyze.side_effect = ServiceUnavailable("down")
        with pytest.raises(ServiceUnavailable):
            await services.request_analysis(session, client, "u1", "https://acme.io")
        assert session.execute(select(BrandProfile)).scalars().first() is None


class TestPoll:
    @pytest.mark.asyncio
    async def test_poll_returns_summary(self, session, client):
        create_job(session, "u1", "https://acme.io", {"job_id": "J1"})
        client.get_job.return_value = {"status": "complete", "result": RESULT}
        out = await services.poll(session, client, "J1", "u1")
        assert out["status"] == "complete"
        assert out["is_complete"] is True
        assert out["brand_name"] == "Acme"
        assert out["data_unavailable"] is False
        assert out["projection_failures"] == []

    @pytest.mark.asyncio
    async def test_poll_other_users_job(self, session, client):
        create_job(session, "u1", "https://acme.io", {"job_id": "J1"})
        with pytest.raises(Unauthorized):
            await services.poll(session, client, "J1", "intruder")
        client.get_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_poll_unknown_job(self, session, client):
        with pytest.raises(NotFound):
            await services.poll(session, client, "nope", "u1")


class TestReanalyze:
    @pytest.mark.asyncio
    async def test_uses_engine_comprehensive_output(self, session, client, completed):
        fresh = {**RESULT, "comprehensive": {**KIT, "meta": {"brand_name": make_field("Acme Inc")}}}
        client.get_job.return_value = {"status": "complete", "result": fresh}
        report = await services.reanalyze(session, client, completed.id, "u1")
        assert report.kit_written
        client.get_job.assert_awaited_once_with("J1", comprehensive=True)
        kit = session.execute(select(BrandKit)).scalars().one()
        assert kit.source == "reanalyzed"
        assert completed.brand_name == "Acme Inc"

    @pytest.mark.asyncio
    async def test_falls_back_to_stored_kit(self, session, client, completed):
        client.get_job.side_effect = ServiceUnavailable("down")
        await services.reanalyze(session, client, completed.id, "u1")
        kit = session.execute(select(BrandKit)).scalars().one()
        assert kit.source == "reanalyzed"
        assert json_parse(kit.comprehensive_json) == KIT
        assert completed.kit_version == 2

    @pytest.mark.asyncio
    async def test_requires_complete(self, session, client):
        profile = create_job(session, "u1", "https://acme.io", {"job_id": "J1"})
        with pytest.raises(ValidationError):
            await services.reanalyze(session, client, profile.id, "u1")

    @pytest.mark.asyncio
    async def test_no_stored_kit(self, session, client):
        profile = create_job(session, "u1", "https://acme.io", {"job_id": "J1"})
        apply_poll(session, "J1", {"status": "complete", "result": None})
        client.get_job.side_effect = NotFound("gone")
        with pytest.raises(DataUnavailable):
            await services.reanalyze(session, client, profile.id, "u1")


class TestModulePatch:
    def test_patch_replaces_only_its_section(self, session, completed):
        new_visual = {"primary_colors": make_field({"items": ["#ff0000"]})}
        before = json_parse(completed.brand_kit_json)
        services.apply_module_patch(session, completed, "visual_identity", new_visual)

        after = json_parse(completed.brand_kit_json)
        assert after["visual_identity"] == new_visual
        assert after["verbal_identity"] == before["verbal_identity"]
        assert after["meta"] == before["meta"]
        kit = session.execute(select(BrandKit)).scalars().one()
        assert json_parse(kit.comprehensive_json) == after
        assert kit.source == "reanalyzed"

    def test_patch_is_idempotent(self, session, completed):
        new_visual = {"primary_colors": make_field({"items": ["#ff0000"]})}
        services.apply_module_patch(session, completed, "visual_identity", new_visual)
        first = json_parse(completed.brand_kit_json)
        services.apply_module_patch(session, completed, "visual_identity", new_visual)
        assert json_parse(completed.brand_kit_json) == first

    def test_invalid_module_id(self, session, completed):
        with pytest.raises(ValidationError):
            services.apply_module_patch(session, completed, "Visual-Identity", {})

    def test_stale_expected_version(self, session, completed):
        with pytest.raises(ConcurrentModification):
            services.apply_module_patch(session, completed, "visual_identity", {}, expected_version=0)
        assert "primary_colors" in json_parse(completed.brand_kit_json)["visual_identity"]

    def test_retries_after_concurrent_write(self, session, completed):
        calls = []

        def flaky(*args, **kwargs):
            calls.append(kwargs["expected_version"])
            if len(calls) == 1:
                raise ConcurrentModification("raced")
            return real_materialize(*args, **kwargs)

        with patch("brandintel.services.materialize", side_effect=flaky):
            services.apply_module_patch(session, completed, "proof_trust", {"testimonials": make_field(None, "missing")})
        assert len(calls) == 2
        assert "proof_trust" in json_parse(completed.brand_kit_json)

    def test_gives_up_after_max_attempts(self, session, completed):
        with patch("brandintel.services.materialize", side_effect=ConcurrentModification("raced")) as m:
            with pytest.raises(ConcurrentModification):
                services.apply_module_patch(session, completed, "proof_trust", {})
        assert m.call_count == services.MAX_PATCH_ATTEMPTS


class TestModuleJobs:
    @pytest.mark.asyncio
    async def test_analyze_module_creates_job(self, session, client, completed):
        client.analyze_module.return_value = {"job_id": "M1", "status": "queued"}
        job = await services.analyze_module(session, client, completed.id, "visual_identity", "u1")
        assert job.status == "queued"
        assert job.persona_id == "saas_b2b"
        client.analyze_module.assert_awaited_once_with(
            url="https://acme.io", module_id="visual_identity", persona_id="saas_b2b", job_id="J1",
        )

    @pytest.mark.asyncio
    async def test_analyze_module_needs_domain(self, session, client):
        profile = create_job(session, "u1", "https://acme.io", {"job_id": "J1"})
        with pytest.raises(ValidationError):
            await services.analyze_module(session, client, profile.id, "visual_identity", "u1")

    @pytest.mark.asyncio
    async def test_completed_module_job_auto_applies_once(self, session, client, completed):
        client.analyze_module.return_value = {"job_id": "M1"}
        await services.analyze_module(session, client, completed.id, "visual_identity", "u1")
        new_visual = {"primary_colors": make_field({"items": ["#00ff00"]})}
        client.get_module_job.return_value = {
            "job_id": "M1", "status": "complete",
            "result": {"brand_kit_patch": {"visual_identity": new_visual}},
        }

        out = await services.poll(session, client, "M1", "u1")
        assert out["status"] == "complete"
        assert out["applied"] is True
        assert json_parse(completed.brand_kit_json)["visual_identity"] == new_visual
        version = completed.kit_version

        await services.poll_module_job(session, client, "M1", "u1")
        session.refresh(completed)
        assert completed.kit_version == version

    @pytest.mark.asyncio
    async def test_failed_module_job(self, session, client, completed):
        client.analyze_module.return_value = {"job_id": "M1"}
        await services.analyze_module(session, client, completed.id, "seo_identity", "u1")
        client.get_module_job.return_value = {"job_id": "M1", "status": "failed"}
        out = await services.poll_module_job(session, client, "M1", "u1")
        assert out["status"] == "failed"
        assert out["error"] == "Analysis failed"
        assert out["applied"] is False


class TestReadModels:
    def test_job_history_durations(self, session, completed):
        completed.job_started_at = datetime(2024, 1, 1, 12, 0, 0)
        completed.job_completed_at = datetime(2024, 1, 1, 12, 1, 30)
        session.commit()
        create_job(session, "u1", "https://other.io", {"job_id": "J2"})
        create_job(session, "u2", "https://third.io", {"job_id": "J3"})

        history = services.job_history(session, "u1")
        assert {h["job_id"] for h in history} == {"J1", "J2"}
        by_id = {h["job_id"]: h for h in history}
        assert by_id["J1"]["duration_seconds"] == 90.0
        assert by_id["J2"]["duration_seconds"] is None
        assert by_id["J2"]["is_processing"] is True

    def test_job_details(self, session, completed):
        details = services.job_details(session, "J1", "u1")
        assert details["brand_kit"] == KIT
        assert details["summary"]["persona_id"] == "saas_b2b"
        assert details["summary"]["total_critical_gaps"] == 1
        assert details["data_quality"]["total_fields"] == 4

    def test_get_kit(self, session, completed):
        kit = services.get_kit(session, completed.id, "u1")
        assert kit["comprehensive"] == KIT
        assert kit["format_version"] == "2.0"
        assert kit["source"] == "auto"

    def test_get_kit_unauthorized(self, session, completed):
        with pytest.raises(Unauthorized):
            services.get_kit(session, completed.id, "someone-else")

    def test_get_roadmap(self, session, completed):
        roadmap = services.get_roadmap(session, completed.id, "u1")
        [campaign] = roadmap["campaigns"]
        assert campaign["id"] == "c1"
        assert [t["id"] for t in campaign["tasks"]] == ["t1", "t2"]
        assert campaign["milestones"][0]["total_tasks"] == 2


class TestTaskUpdates:
    def test_update_single_task(self, session, completed):
        out = services.update_task(session, completed.id, "t1", {"status": "in_progress"}, "u1")
        assert out["status"] == "in_progress"

    def test_invalid_status(self, session, completed):
        with pytest.raises(ValidationError):
            services.update_task(session, completed.id, "t1", {"status": "done-ish"}, "u1")

    def test_unknown_task(self, session, completed):
        with pytest.raises(NotFound):
            services.update_task(session, completed.id, "t99", {"status": "completed"}, "u1")

    def test_bulk_update_is_all_or_nothing(self, session, completed):
        with pytest.raises(NotFound):
            services.bulk_update_tasks(session, completed.id, [
                {"task_id": "t1", "status": "completed"},
                {"task_id": "t99", "status": "completed"},
            ], "u1")
        session.rollback()
        statuses = session.execute(select(RoadmapTask.status)).scalars().all()
        assert "completed" not in statuses

        out = services.bulk_update_tasks(session, completed.id, [
            {"task_id": "t1", "status": "completed"},
            {"task_id": "t2", "acceptance_criteria": "Three quotes on homepage"},
        ], "u1")
        assert [t["status"] for t in out] == ["completed", "pending"]
        assert out[1]["acceptance_criteria"] == "Three quotes on homepage"
