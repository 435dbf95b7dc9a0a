from __future__ import annotations

import pytest
from common import cache_keys
from common.cache import CacheLayer
from marketplace.catalog import CatalogService, build_category_tree
from marketplace.errors import BadRequestError, ConflictError, NotFoundError
from marketplace.models import Category, CategoryUpsertRequest

pytestmark = pytest.mark.integration


@pytest.fixture
def catalog(repository, fake_redis) -> CatalogService:
    return CatalogService(repository, CacheLayer(fake_redis))


@pytest.fixture
def categories(seeder) -> dict[str, str]:
    hospitality = seeder.category("hospitality")
    bar = seeder.category("bar-work", parent_id=hospitality)
    cleaning = seeder.category("cleaning")
    seeder.category("retired", is_active=False)
    seeder.user("employer")
    for category in (bar, bar, cleaning):
        seeder.job(employer_id="employer", category_id=category, lat=51.5, lng=-0.12)
    return {"hospitality": hospitality, "bar": bar, "cleaning": cleaning}


def test_build_category_tree_nests_children() -> None:
    flat = [
        Category(id="a", name="A", slug="a"),
        Category(id="b", name="B", slug="b", parent_id="a"),
        Category(id="c", name="C", slug="c"),
    ]

    tree = build_category_tree(flat, {"b": 4})

    assert [node.id for node in tree] == ["a", "c"]
    assert tree[0].children[0].id == "b"
    assert tree[0].children[0].job_count == 4
    assert tree[1].children == []


@pytest.mark.asyncio
async def test_category_tree_is_cached_with_job_counts(catalog, categories, seeder) -> None:
    tree = await catalog.category_tree()
    seeder.category("gardening")
    cached = await catalog.category_tree()

    assert [node.slug for node in tree] == ["cleaning", "hospitality"]
    hospitality = next(node for node in tree if node.slug == "hospitality")
    assert hospitality.children[0].slug == "bar-work"
    assert hospitality.children[0].job_count == 2
    assert cached == tree


@pytest.mark.asyncio
async def test_upsert_category_invalidates_every_catalog_key(
    catalog, categories, fake_redis
) -> None:
    await catalog.category_tree()
    await catalog.all_categories()
    await catalog.get_category("cleaning")
    await catalog.list_skills()
    await fake_redis.set(cache_keys.setting("unrelated"), '"keep"')

    created = await catalog.upsert_category(
        CategoryUpsertRequest(name="Gardening", slug="gardening")
    )

    assert created.slug == "gardening"
    catalog_prefixes = ("categories:", "category:", "skills:")
    assert [key for key in fake_redis.values if key.startswith(catalog_prefixes)] == []
    assert cache_keys.setting("unrelated") in fake_redis.values
    assert "gardening" in [category.slug for category in await catalog.all_categories()]


@pytest.mark.asyncio
async def test_upsert_category_checks_the_parent(catalog, categories) -> None:
    with pytest.raises(NotFoundError):
        await catalog.upsert_category(
            CategoryUpsertRequest(name="Orphan", slug="orphan", parent_id="cat-missing")
        )
    with pytest.raises(BadRequestError):
        await catalog.upsert_category(
            CategoryUpsertRequest(name="Loop", slug="loop", parent_id="cat-loop"),
            category_id="cat-loop",
        )


@pytest.mark.asyncio
async def test_upsert_category_rejects_a_slug_owned_by_another_category(
    catalog, categories, repository
) -> None:
    with pytest.raises(ConflictError) as caught:
        await catalog.upsert_category(CategoryUpsertRequest(name="Dup", slug="hospitality"))
    with pytest.raises(ConflictError):
        await catalog.upsert_category(
            CategoryUpsertRequest(name="Bar", slug="cleaning"), category_id=categories["bar"]
        )
    kept = await catalog.upsert_category(
        CategoryUpsertRequest(name="Cleaning Services", slug="cleaning"),
        category_id=categories["cleaning"],
    )

    assert caught.value.code == "CATEGORY_SLUG_TAKEN"
    assert kept.name == "Cleaning Services"
    assert repository.get_category("bar-work").id == categories["bar"]


@pytest.mark.asyncio
async def test_get_category_by_id_or_slug(catalog, categories, fake_redis) -> None:
    by_slug = await catalog.get_category("bar-work")
    by_id = await catalog.get_category(categories["bar"])

    assert by_slug == by_id
    assert cache_keys.category_by_id(categories["bar"]) in fake_redis.values
    assert cache_keys.category_by_slug("bar-work") in fake_redis.values
    with pytest.raises(NotFoundError):
        await catalog.get_category("retired")


@pytest.mark.asyncio
async def test_popular_categories_rank_by_active_jobs(catalog, categories) -> None:
    popular = await catalog.popular_categories(limit=2)
    assert [(category.slug, category.job_count) for category in popular] == [
        ("bar-work", 2),
        ("cleaning", 1),
    ]


@pytest.mark.asyncio
async def test_skills_are_cached_per_category(catalog, categories, seeder, fake_redis) -> None:
    seeder.repository.upsert_skill(
        skill_id="skill-cocktails",
        name="Cocktails",
        slug="cocktails",
        category_id=categories["bar"],
    )
    seeder.repository.upsert_skill(skill_id="skill-mopping", name="Mopping", slug="mopping")

    bar_skills = await catalog.list_skills(categories["bar"])
    all_skills = await catalog.list_skills()

    assert [skill.slug for skill in bar_skills] == ["cocktails"]
    assert [skill.slug for skill in all_skills] == ["cocktails", "mopping"]
    assert cache_keys.skills_by_category(categories["bar"]) in fake_redis.values
    assert fake_redis.ttl_of(cache_keys.all_skills()) <= cache_keys.SKILLS_TTL


@pytest.mark.asyncio
async def test_settings_are_cached_and_invalidated_on_update(catalog, repository) -> None:
    repository.upsert_setting("job_expiry_days", "7")

    assert await catalog.get_setting("job_expiry_days") == "7"
    repository.upsert_setting("job_expiry_days", "9")
    assert await catalog.get_setting("job_expiry_days") == "7"

    await catalog.update_setting("job_expiry_days", "14")

    assert await catalog.get_setting("job_expiry_days") == "14"
    assert [setting.value for setting in await catalog.all_settings()] == ["14"]
    assert await catalog.get_setting("missing", "fallback") == "fallback"


@pytest.mark.asyncio
async def test_catalog_reads_fall_through_to_the_store_when_cache_is_down(
    repository, categories, unavailable_redis
) -> None:
    catalog = CatalogService(repository, CacheLayer(unavailable_redis))

    tree = await catalog.category_tree()
    created = await catalog.upsert_category(CategoryUpsertRequest(name="Events", slug="events"))

    assert {node.slug for node in tree} == {"cleaning", "hospitality"}
    assert created.slug == "events"
    assert await catalog.get_setting("anything", "default") == "default"


def test_catalog_routes(api_client, api_seeder) -> None:
    hospitality = api_seeder.category("hospitality")
    api_seeder.repository.upsert_skill(
        skill_id="skill-cocktails", name="Cocktails", slug="cocktails", category_id=hospitality
    )

    renamed = api_client.put(
        f"/categories/{hospitality}", json={"name": "Hospitality & Bars", "slug": "hospitality"}
    )
    by_slug = api_client.get("/categories/hospitality")
    missing = api_client.get("/categories/nope")
    duplicate = api_client.post("/categories", json={"name": "Dup", "slug": "hospitality"})
    popular = api_client.get("/categories/popular", params={"limit": 1})
    skills = api_client.get("/skills", params={"category_id": hospitality})
    saved = api_client.put("/settings/job_expiry_days", json={"value": "5"})
    setting = api_client.get("/settings/job_expiry_days")
    unknown_setting = api_client.get("/settings/unknown")

    assert renamed.status_code == 200
    assert by_slug.json()["name"] == "Hospitality & Bars"
    assert missing.status_code == 404
    assert missing.json()["code"] == "CATEGORY_NOT_FOUND"
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "CATEGORY_SLUG_TAKEN"
    assert popular.json() == [
        {"id": hospitality, "name": "Hospitality & Bars", "slug": "hospitality", "job_count": 0}
    ]
    assert [skill["slug"] for skill in skills.json()] == ["cocktails"]
    assert saved.json()["value"] == "5"
    assert setting.json() == {"key": "job_expiry_days", "value": "5"}
    assert unknown_setting.status_code == 404
    assert unknown_setting.json()["code"] == "SETTING_NOT_FOUND"
    assert [item["key"] for item in api_client.get("/settings").json()] == ["job_expiry_days"]
