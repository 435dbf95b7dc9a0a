from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta

import pytest
from common.cache import CacheLayer
from common.utils import now_utc_iso
from marketplace.geo import GeoPoint, destination_point
from marketplace.geocoding import PostcodeGeocoder
from marketplace.search import ProximitySearchEngine

pytestmark = pytest.mark.integration

JOB_SITE = GeoPoint(51.5074, -0.1278)


@pytest.fixture
def engine(repository, geocoder_client, fake_redis) -> ProximitySearchEngine:
    geocoder = PostcodeGeocoder(geocoder_client, CacheLayer(fake_redis))
    return ProximitySearchEngine(repository, geocoder, match_warn_threshold=3)


@pytest.fixture
def posted_job(seeder):
    category = seeder.category("hospitality")
    seeder.category("cleaning")
    employer = seeder.user("employer", lat=JOB_SITE.lat, lng=JOB_SITE.lng)
    job_id = seeder.job(
        employer_id=employer,
        category_id=category,
        lat=JOB_SITE.lat,
        lng=JOB_SITE.lng,
        job_id="job-1",
    )
    return seeder.repository.get_job_detail(job_id)


def seeker(seeder, user_id: str, miles: float, radius: float, **overrides) -> str:
    home = destination_point(JOB_SITE, miles, 90)
    options = {"looking": True, "category_ids": ["cat-hospitality"]}
    options.update(overrides)
    return seeder.user(user_id, lat=home.lat, lng=home.lng, radius_miles=radius, **options)


@pytest.mark.asyncio
async def test_each_seeker_is_matched_against_their_own_radius(engine, seeder, posted_job) -> None:
    seeker(seeder, "near-small-radius", miles=3, radius=5)
    seeker(seeder, "far-large-radius", miles=20, radius=25)
    seeker(seeder, "far-small-radius", miles=20, radius=10)

    matched = await engine.match_users_to_job(posted_job, excluded_user_ids={"employer"})

    assert sorted(user.user_id for user in matched) == ["far-large-radius", "near-small-radius"]
    by_id = {user.user_id: user for user in matched}
    assert by_id["near-small-radius"].distance_miles == 3.0
    assert by_id["far-large-radius"].email == "far-large-radius@example.com"


@pytest.mark.asyncio
async def test_store_prefilter_drops_ineligible_seekers(engine, seeder, posted_job) -> None:
    seeker(seeder, "eligible", miles=1, radius=10)
    seeker(seeder, "not-looking", miles=1, radius=10, looking=False)
    seeker(seeder, "suspended", miles=1, radius=10, status="suspended")
    seeker(seeder, "other-category", miles=1, radius=10, category_ids=["cat-cleaning"])
    seeder.user("no-location", looking=True, category_ids=["cat-hospitality"])

    matched = await engine.match_users_to_job(posted_job, excluded_user_ids=set())

    assert [user.user_id for user in matched] == ["eligible"]


@pytest.mark.asyncio
async def test_find_matching_users_excludes_employer_and_blocks(engine, seeder, posted_job) -> None:
    seeker(seeder, "employer", miles=0, radius=10)
    seeker(seeder, "blocked-by-employer", miles=1, radius=10)
    seeker(seeder, "blocked-the-employer", miles=1, radius=10)
    seeker(seeder, "friendly", miles=1, radius=10)
    seeder.repository.block_user("employer", "blocked-by-employer")
    seeder.repository.block_user("blocked-the-employer", "employer")

    matched = await engine.find_matching_users(posted_job)

    assert [user.user_id for user in matched] == ["friendly"]


@pytest.mark.asyncio
async def test_matching_logs_summary_and_scaling_warning(
    engine, seeder, posted_job, caplog: pytest.LogCaptureFixture
) -> None:
    for index in range(4):
        seeker(seeder, f"seeker-{index}", miles=1 + index, radius=2.5)

    with caplog.at_level(logging.INFO, logger="gigmatch.search"):
        matched = await engine.match_users_to_job(posted_job, excluded_user_ids=set())

    events = [
        json.loads(record.getMessage())
        for record in caplog.records
        if record.name == "gigmatch.search"
    ]
    assert len(matched) == 2
    assert events[0]["event"] == "job_matching_candidates_high"
    assert events[0]["candidates"] == 4
    assert events[-1] == {
        "event": "job_matching_completed",
        "job_id": "job-1",
        "potential_users": 4,
        "matched_users": 2,
    }


@pytest.mark.asyncio
async def test_find_matching_jobs_for_a_seeker(engine, seeder) -> None:
    hospitality = seeder.category("hospitality")
    cleaning = seeder.category("cleaning")
    seeder.user("employer")
    seeder.user("blocked-employer")
    seeder.user(
        "seeker",
        lat=JOB_SITE.lat,
        lng=JOB_SITE.lng,
        radius_miles=5,
        looking=True,
        category_ids=[hospitality],
    )
    seeder.repository.block_user("seeker", "blocked-employer")

    def job_at(job_id: str, miles: float, category: str = hospitality, employer: str = "employer"):
        point = destination_point(JOB_SITE, miles, 0)
        seeder.job(
            employer_id=employer,
            category_id=category,
            lat=point.lat,
            lng=point.lng,
            job_id=job_id,
        )

    job_at("near-old", 1)
    job_at("too-far", 9)
    job_at("wrong-category", 1, category=cleaning)
    job_at("blocked", 1, employer="blocked-employer")
    job_at("near-new", 2)

    assert [job.id for job in await engine.find_matching_jobs("seeker")] == ["near-new", "near-old"]
    assert [job.id for job in await engine.find_matching_jobs("seeker", limit=1)] == ["near-new"]
    assert await engine.find_matching_jobs("nobody") == []


@pytest.mark.asyncio
async def test_seeker_without_categories_or_location_gets_nothing(engine, seeder) -> None:
    category = seeder.category()
    seeder.user("employer")
    seeder.user("no-categories", lat=JOB_SITE.lat, lng=JOB_SITE.lng, looking=True)
    seeder.user("no-location", looking=True, category_ids=[category])
    seeder.job(employer_id="employer", category_id=category, lat=JOB_SITE.lat, lng=JOB_SITE.lng)

    assert await engine.find_matching_jobs("no-categories") == []
    assert await engine.find_matching_jobs("no-location") == []


@pytest.mark.asyncio
async def test_recent_matches_only_include_jobs_created_since(engine, seeder) -> None:
    category = seeder.category()
    seeder.user("employer")
    seeder.user(
        "seeker",
        lat=JOB_SITE.lat,
        lng=JOB_SITE.lng,
        radius_miles=10,
        looking=True,
        category_ids=[category],
    )
    old = (datetime.now(UTC) - timedelta(days=3)).isoformat()
    for job_id, created_at in (("fresh", now_utc_iso()), ("stale", old)):
        seeder.job(
            employer_id="employer",
            category_id=category,
            lat=JOB_SITE.lat,
            lng=JOB_SITE.lng,
            job_id=job_id,
            created_at=created_at,
        )

    since = datetime.now(UTC) - timedelta(days=1)
    recent = await engine.recent_job_matches("seeker", since)

    assert [job.id for job in recent] == ["fresh"]
    assert await engine.count_recent_matches("seeker") == 1
