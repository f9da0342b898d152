"""Materializer tests: kit upsert, roadmap/social re-extraction, summary refresh."""
from __future__ import annotations

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker

from brandintel.errors import ConcurrentModification
from brandintel.fields import make_field
from brandintel.materializer import materialize, rebuild_projections
from brandintel.models import (
    Base, BrandKit, BrandProfile, RoadmapCampaign, RoadmapMilestone, RoadmapTask, SocialProfile,
)
from brandintel.reconciler import reconcile
from brandintel.utils import json_parse


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
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
def profile(session: Session) -> BrandProfile:
    p = BrandProfile(user_id="u1", url="https://acme.io", job_id="J1", profile_id="J1", status="complete")
    session.add(p)
    session.commit()
    session.refresh(p)
    return p


def _count(session: Session, model) -> int:
    return session.execute(select(func.count()).select_from(model)).scalar()


def _result(social=("linkedin", "youtube")):
    return {
        "comprehensive": {
            "meta": {"brand_name": make_field("Acme"), "canonical_domain": make_field("acme.io")},
            "external_presence": {"social_profiles": make_field(
                {"items": [{"platform": p, "url": f"https://{p}.com/acme"} for p in social]},
            )},
            "content_assets": {"blog_present": make_field(True)},
            "gaps_summary": {"total_completeness": 80, "critical_gaps": []},
        },
        "brand_scores": {"overall_score": 66},
        "brand_roadmap": {
            "campaigns": [{
                "id": "c1", "title": "Foundation",
                "milestones": [{"id": "m1", "tasks": [
                    {"id": "t1", "title": "Write tagline", "recommended_order": 1},
                    {"id": "t2", "title": "Add testimonials", "recommended_order": 2},
                ]}],
            }],
        },
    }


def _materialize(session, profile, result, **kwargs):
    return materialize(
        session, profile, reconcile(result),
        scores=result.get("brand_scores"), roadmap=result.get("brand_roadmap"), **kwargs,
    )


class TestKitUpsert:
    def test_kit_round_trips_canonical_structure(self, session, profile):
        result = _result()
        report = _materialize(session, profile, result)
        assert report.kit_written
        kit = session.execute(select(BrandKit)).scalars().one()
        assert json_parse(kit.comprehensive_json) == result["comprehensive"]
        assert json_parse(profile.brand_kit_json) == result["comprehensive"]
        assert json_parse(kit.v2_raw_json)["brand_scores"] == {"overall_score": 66}

    def test_second_write_updates_in_place(self, session, profile):
        _materialize(session, profile, _result())
        first_id = session.execute(select(BrandKit.id)).scalar()
        changed = _result()
        changed["comprehensive"]["meta"]["brand_name"] = make_field("Acme Corp")
        _materialize(session, profile, changed)
        assert _count(session, BrandKit) == 1
        kit = session.execute(select(BrandKit)).scalars().one()
        assert kit.id == first_id
        assert json_parse(kit.comprehensive_json)["meta"]["brand_name"]["value"] == "Acme Corp"
        assert profile.brand_name == "Acme Corp"

    def test_kit_version_increments(self, session, profile):
        _materialize(session, profile, _result())
        _materialize(session, profile, _result())
        assert profile.kit_version == 2

    def test_expected_version_mismatch(self, session, profile):
        _materialize(session, profile, _result())
        with pytest.raises(ConcurrentModification):
            _materialize(session, profile, _result(), expected_version=0)
        assert profile.kit_version == 1


class TestProjections:
    def test_rematerializing_yields_same_rows(self, session, profile):
        _materialize(session, profile, _result())
        _materialize(session, profile, _result())
        assert _count(session, RoadmapCampaign) == 1
        assert _count(session, RoadmapMilestone) == 1
        assert _count(session, RoadmapTask) == 2
        assert _count(session, SocialProfile) == 2

    def test_social_profiles_fully_replaced(self, session, profile):
        _materialize(session, profile, _result(social=("linkedin", "youtube")))
        _materialize(session, profile, _result(social=("tiktok",)))
        platforms = session.execute(select(SocialProfile.platform)).scalars().all()
        assert platforms == ["tiktok"]

    def test_user_task_progress_survives_reextraction(self, session, profile):
        _materialize(session, profile, _result())
        task = session.execute(select(RoadmapTask).where(RoadmapTask.external_id == "t1")).scalars().one()
        task.status = "completed"
        task.acceptance_criteria = "Tagline on homepage"
        session.commit()

        changed = _result()
        changed["brand_roadmap"]["campaigns"][0]["milestones"][0]["tasks"][0]["title"] = "Write a sharper tagline"
        _materialize(session, profile, changed)

        session.refresh(task)
        assert task.title == "Write a sharper tagline"
        assert task.status == "completed"
        assert task.acceptance_criteria == "Tagline on homepage"

    def test_tasks_dropped_from_roadmap_are_pruned(self, session, profile):
        _materialize(session, profile, _result())
        changed = _result()
        changed["brand_roadmap"]["campaigns"][0]["milestones"][0]["tasks"].pop()
        _materialize(session, profile, changed)
        ids = session.execute(select(RoadmapTask.external_id)).scalars().all()
        assert ids == ["t1"]

    def test_summary_recomputed(self, session, profile):
        _materialize(session, profile, _result())
        assert profile.brand_name == "Acme"
        assert profile.canonical_domain == "acme.io"
        assert profile.overall_score == 66.0
        assert profile.completeness_score == 80.0
        assert profile.has_blog is True
        assert profile.has_social_profiles is True
        assert profile.has_review_sites is False

        no_social = _result(social=())
        _materialize(session, profile, no_social)
        assert profile.has_social_profiles is False

    def test_profiles_are_isolated(self, session, profile):
        other = BrandProfile(url="https://other.io", job_id="J2", profile_id="J2", status="complete")
        session.add(other)
        session.commit()
        _materialize(session, profile, _result())
        _materialize(session, other, _result(social=("x",)))
        assert _count(session, RoadmapTask) == 4
        assert session.execute(
            select(func.count()).select_from(SocialProfile).where(SocialProfile.brand_profile_id == profile.id)
        ).scalar() == 2


class TestRebuild:
    def test_rebuild_leaves_kit_alone(self, session, profile):
        result = _result()
        _materialize(session, profile, result)
        profile.brand_scores_json = '{"overall_score": 66}'
        profile.brand_roadmap_json = None
        session.commit()
        kit_before = session.execute(select(BrandKit.comprehensive_json, BrandKit.source)).one()

        report = rebuild_projections(session, profile)
        assert not report.kit_written
        assert report.failed == []
        assert profile.kit_version == 1
        assert session.execute(select(BrandKit.comprehensive_json, BrandKit.source)).one() == kit_before
        assert profile.overall_score == 66.0
        assert _count(session, SocialProfile) == 2
        # no stored roadmap means nothing to keep
        assert _count(session, RoadmapTask) == 0
