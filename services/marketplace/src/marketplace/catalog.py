from __future__ import annotations

import json
import logging

from common import cache_keys
from common.cache import CacheLayer
from fastapi.concurrency import run_in_threadpool

from marketplace.errors import (
    BAD_REQUEST,
    CATEGORY_NOT_FOUND,
    CATEGORY_SLUG_TAKEN,
    BadRequestError,
    ConflictError,
    NotFoundError,
)
from marketplace.models import (
    Category,
    CategoryTreeNode,
    CategoryUpsertRequest,
    PopularCategory,
    Skill,
    SystemSetting,
)
from marketplace.repository import MarketplaceRepository

LOGGER = logging.getLogger("gigmatch.marketplace")


def build_category_tree(
    categories: list[Category],
    job_counts: dict[str, int],
    parent_id: str | None = None,
) -> list[CategoryTreeNode]:
    return [
        CategoryTreeNode(
            **category.model_dump(),
            job_count=job_counts.get(category.id, 0),
            children=build_category_tree(categories, job_counts, category.id),
        )
        for category in categories
        if category.parent_id == parent_id
    ]


class CatalogService:
    """Cached reads of categories, skills and system settings.

    Writes go through this service so the matching cache keys are dropped in
    the same call that changes the store.
    """

    def __init__(self, repository: MarketplaceRepository, cache: CacheLayer) -> None:
        self.repository = repository
        self.cache = cache

    async def category_tree(self) -> list[CategoryTreeNode]:
        async def load() -> list[dict]:
            categories = await run_in_threadpool(self.repository.list_categories)
            counts = await run_in_threadpool(self.repository.active_job_counts_by_category)
            return [
                node.model_dump(mode="json") for node in build_category_tree(categories, counts)
            ]

        raw = await self.cache.get_or_set(
            cache_keys.category_tree(),
            load,
            cache_keys.CATEGORIES_TTL,
        )
        return [CategoryTreeNode.model_validate(node) for node in raw]

    async def all_categories(self) -> list[Category]:
        async def load() -> list[dict]:
            categories = await run_in_threadpool(self.repository.list_categories)
            return [category.model_dump(mode="json") for category in categories]

        raw = await self.cache.get_or_set(
            cache_keys.all_categories(),
            load,
            cache_keys.CATEGORIES_TTL,
        )
        return [Category.model_validate(category) for category in raw]

    async def get_category(self, id_or_slug: str) -> Category:
        for key in (cache_keys.category_by_id(id_or_slug), cache_keys.category_by_slug(id_or_slug)):
            cached = await self.cache.get(key)
            if cached is not None:
                return Category.model_validate(cached)

        category = await run_in_threadpool(self.repository.get_category, id_or_slug)
        if category is None or not category.is_active:
            raise NotFoundError(f"Category not found: {id_or_slug}", CATEGORY_NOT_FOUND)

        payload = category.model_dump(mode="json")
        await self.cache.set(
            cache_keys.category_by_id(category.id),
            payload,
            cache_keys.CATEGORIES_TTL,
        )
        await self.cache.set(
            cache_keys.category_by_slug(category.slug),
            payload,
            cache_keys.CATEGORIES_TTL,
        )
        return category

    async def popular_categories(self, limit: int = 10) -> list[PopularCategory]:
        async def load() -> list[dict]:
            popular = await run_in_threadpool(self.repository.popular_categories, limit)
            return [category.model_dump(mode="json") for category in popular]

        raw = await self.cache.get_or_set(
            cache_keys.popular_categories(limit),
            load,
            cache_keys.CATEGORIES_TTL,
        )
        return [PopularCategory.model_validate(category) for category in raw]

    async def upsert_category(
        self,
        payload: CategoryUpsertRequest,
        category_id: str | None = None,
    ) -> Category:
        if payload.parent_id is not None:
            if payload.parent_id == category_id:
                raise BadRequestError("A category cannot be its own parent", BAD_REQUEST)
            parent = await run_in_threadpool(self.repository.get_category, payload.parent_id)
            if parent is None:
                raise NotFoundError(
                    f"Parent category not found: {payload.parent_id}",
                    CATEGORY_NOT_FOUND,
                )

        existing = await run_in_threadpool(self.repository.get_category, payload.slug)
        if existing is not None and existing.slug == payload.slug and existing.id != category_id:
            raise ConflictError(
                f"Category slug already in use: {payload.slug}",
                CATEGORY_SLUG_TAKEN,
            )

        category = await run_in_threadpool(
            self.repository.upsert_category,
            category_id=category_id,
            **payload.model_dump(),
        )
        await self._invalidate_catalog()
        LOGGER.info(json.dumps({"event": "category_upserted", "category_id": category.id}))
        return category

    async def _invalidate_catalog(self) -> None:
        for pattern in cache_keys.all_category_keys():
            await self.cache.invalidate_pattern(pattern)
        # skill listings embed category ids
        await self.cache.invalidate_pattern(cache_keys.all_skill_keys())

    async def list_skills(self, category_id: str | None = None) -> list[Skill]:
        key = cache_keys.skills_by_category(category_id) if category_id else cache_keys.all_skills()

        async def load() -> list[dict]:
            skills = await run_in_threadpool(self.repository.list_skills, category_id)
            return [skill.model_dump(mode="json") for skill in skills]

        raw = await self.cache.get_or_set(key, load, cache_keys.SKILLS_TTL)
        return [Skill.model_validate(skill) for skill in raw]

    async def all_settings(self) -> list[SystemSetting]:
        async def load() -> list[dict]:
            settings = await run_in_threadpool(self.repository.list_settings)
            return [setting.model_dump(mode="json") for setting in settings]

        raw = await self.cache.get_or_set(
            cache_keys.all_settings(),
            load,
            cache_keys.SETTINGS_TTL,
        )
        return [SystemSetting.model_validate(setting) for setting in raw]

    async def get_setting(self, key: str, default: str | None = None) -> str | None:
        async def load() -> str | None:
            setting = await run_in_threadpool(self.repository.get_setting, key)
            return setting.value if setting else None

        value = await self.cache.get_or_set(cache_keys.setting(key), load, cache_keys.SETTINGS_TTL)
        return default if value is None else value

    async def update_setting(self, key: str, value: str) -> SystemSetting:
        setting = await run_in_threadpool(self.repository.upsert_setting, key, value)
        await self.cache.delete(cache_keys.setting(key))
        await self.cache.delete(cache_keys.all_settings())
        return setting
