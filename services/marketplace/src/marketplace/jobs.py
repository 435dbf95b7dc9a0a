from __future__ import annotations

import json
import logging
import math
from datetime import date, timedelta
from typing import Any

from common import cache_keys
from common.cache import CacheLayer
from common.utils import normalize_postcode
from fastapi.concurrency import run_in_threadpool

from marketplace.catalog import CatalogService
from marketplace.errors import (
    BAD_REQUEST,
    FORBIDDEN,
    JOB_NOT_ACTIVE,
    JOB_NOT_FOUND,
    USER_NOT_FOUND,
    BadRequestError,
    ForbiddenError,
    GeocodingUnavailable,
    LocationNotResolvable,
    NotFoundError,
)
from marketplace.geo import GeoPoint
from marketplace.geocoding import PostcodeGeocoder
from marketplace.models import (
    EmployerJobsPage,
    JobCreateRequest,
    JobDetail,
    JobSearchFilters,
    JobStatus,
    JobUpdateRequest,
    MatchedUser,
    SearchPage,
    SortKey,
)
from marketplace.notifications import JobAlertWorker
from marketplace.repository import MarketplaceRepository
from marketplace.search import ProximitySearchEngine, empty_page

LOGGER = logging.getLogger("gigmatch.marketplace")

DEFAULT_RADIUS_MILES = 10
DEFAULT_EXPIRY_DAYS = 7
EDITABLE_STATUSES: tuple[JobStatus, ...] = ("draft", "active", "paused", "pending_review")
OWNER_STATUS_TRANSITIONS: dict[str, tuple[JobStatus, ...]] = {
    "draft": ("active", "pending_review"),
    "pending_review": (),
    "active": ("paused", "filled", "expired"),
    "paused": ("active", "expired"),
    "filled": ("completed",),
    "completed": (),
    "expired": (),
    "rejected": ("draft",),
}
NULLABLE_JOB_FIELDS = ("location_address", "location_city", "end_time", "experience_level")


def build_applied_filters(
    filters: JobSearchFilters,
    *,
    postcode: str | None,
    center: GeoPoint | None,
    radius_miles: float,
) -> dict[str, Any]:
    applied = filters.model_dump(mode="json", exclude_defaults=True)
    if postcode:
        applied["postcode"] = postcode
    if center is not None:
        applied["lat"] = center.lat
        applied["lng"] = center.lng
    if radius_miles != DEFAULT_RADIUS_MILES:
        applied["radius_miles"] = radius_miles
    return applied


class JobService:
    def __init__(
        self,
        repository: MarketplaceRepository,
        cache: CacheLayer,
        engine: ProximitySearchEngine,
        geocoder: PostcodeGeocoder,
        catalog: CatalogService,
        alerts: JobAlertWorker | None = None,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.engine = engine
        self.geocoder = geocoder
        self.catalog = catalog
        self.alerts = alerts

    async def create_job(self, employer_id: str, payload: JobCreateRequest) -> JobDetail:
        if not await run_in_threadpool(self.repository.user_exists, employer_id):
            raise NotFoundError(f"User not found: {employer_id}", USER_NOT_FOUND)
        await self._require_active_category(payload.category_id)
        await self._require_known_skills(payload.required_skill_ids)
        point = await self._geocode_postcode(payload.location_postcode)

        requires_approval = await self.catalog.get_setting("job_requires_approval", "false")
        expires_at = await self._expiry_for(payload.job_date)
        status: JobStatus = "pending_review" if requires_approval == "true" else "active"

        fields = payload.model_dump(exclude={"required_skill_ids"})
        fields.update(
            job_date=payload.job_date.isoformat(),
            location_postcode=normalize_postcode(payload.location_postcode),
            location_lat=point.lat,
            location_lng=point.lng,
            status=status,
            expires_at=expires_at,
        )
        job_id = await run_in_threadpool(
            self.repository.insert_job,
            employer_id=employer_id,
            fields=fields,
            required_skill_ids=payload.required_skill_ids,
        )
        LOGGER.info(
            json.dumps(
                {
                    "event": "job_created",
                    "job_id": job_id,
                    "employer_id": employer_id,
                    "status": status,
                }
            )
        )

        await self._invalidate_job_caches(employer_id)
        job = await self._load_detail(job_id)
        if status == "active":
            await self._alert_matching_users(job)
        return job

    async def update_job(self, job_id: str, user_id: str, payload: JobUpdateRequest) -> JobDetail:
        owner = await self._require_owner(job_id, user_id)
        if owner["status"] not in EDITABLE_STATUSES:
            raise BadRequestError(
                f"Job cannot be edited in status {owner['status']}",
                JOB_NOT_ACTIVE,
            )

        changes = payload.model_dump(exclude_unset=True, exclude={"required_skill_ids"})
        changes = {
            field: value
            for field, value in changes.items()
            if value is not None or field in NULLABLE_JOB_FIELDS
        }
        if changes.get("category_id"):
            await self._require_active_category(changes["category_id"])
        if payload.required_skill_ids:
            await self._require_known_skills(payload.required_skill_ids)

        if changes.get("location_postcode"):
            point = await self._geocode_postcode(changes["location_postcode"])
            changes["location_postcode"] = normalize_postcode(changes["location_postcode"])
            changes["location_lat"] = point.lat
            changes["location_lng"] = point.lng
        if isinstance(changes.get("job_date"), date):
            changes["expires_at"] = await self._expiry_for(changes["job_date"])
            changes["job_date"] = changes["job_date"].isoformat()

        await run_in_threadpool(
            self.repository.update_job,
            job_id,
            changes,
            required_skill_ids=payload.required_skill_ids,
        )
        LOGGER.info(json.dumps({"event": "job_updated", "job_id": job_id, "user_id": user_id}))
        await self._invalidate_job_caches(user_id, job_id)
        return await self._load_detail(job_id)

    async def update_job_status(
        self, job_id: str, user_id: str, new_status: JobStatus
    ) -> JobDetail:
        owner = await self._require_owner(job_id, user_id)
        current = owner["status"]
        if new_status not in OWNER_STATUS_TRANSITIONS.get(current, ()):
            raise BadRequestError(
                f"Cannot change job status from {current} to {new_status}",
                BAD_REQUEST,
            )

        await run_in_threadpool(self.repository.update_job, job_id, {"status": new_status})
        LOGGER.info(
            json.dumps(
                {
                    "event": "job_status_updated",
                    "job_id": job_id,
                    "from": current,
                    "to": new_status,
                    "user_id": user_id,
                }
            )
        )
        await self._invalidate_job_caches(user_id, job_id)
        job = await self._load_detail(job_id)
        if new_status == "active":
            await self._alert_matching_users(job)
        return job

    async def delete_job(self, job_id: str, user_id: str) -> None:
        await self._require_owner(job_id, user_id)
        await run_in_threadpool(self.repository.update_job, job_id, {"status": "expired"})
        LOGGER.info(json.dumps({"event": "job_deleted", "job_id": job_id, "user_id": user_id}))
        await self._invalidate_job_caches(user_id, job_id)

    async def get_job(
        self,
        job_id: str,
        viewer_id: str | None = None,
        *,
        increment_views: bool = True,
    ) -> JobDetail:
        """Read-through job detail.

        The cached payload is viewer-neutral; ``is_owner`` is filled in after
        the cache. Views are counted at most once per viewer an hour.
        """
        key = cache_keys.job_detail(job_id)
        cached = await self.cache.get(key)
        if cached is not None:
            job = JobDetail.model_validate(cached)
        else:
            job = await self._load_detail(job_id)
            await self.cache.set(key, job.model_dump(mode="json"), cache_keys.JOB_DETAIL_TTL)

        if viewer_id:
            job.is_owner = viewer_id == job.employer.id

        if increment_views and viewer_id != job.employer.id:
            await self._record_view(job_id, viewer_id)
        return job

    async def _record_view(self, job_id: str, viewer_id: str | None) -> None:
        first_view = await self.cache.mark_if_absent(
            cache_keys.job_view(job_id, viewer_id),
            cache_keys.VIEW_DEBOUNCE_TTL,
        )
        if not first_view:
            return
        await run_in_threadpool(self.repository.increment_job_views, job_id)
        # views_count is part of the cached detail payload
        await self.cache.delete(cache_keys.job_detail(job_id))

    async def search_jobs(
        self,
        filters: JobSearchFilters,
        *,
        postcode: str | None = None,
        lat: float | None = None,
        lng: float | None = None,
        radius_miles: float = DEFAULT_RADIUS_MILES,
        page: int = 1,
        page_size: int = 20,
        sort: SortKey = "newest",
    ) -> SearchPage:
        center: GeoPoint | None = None
        wants_location = postcode is not None or (lat is not None and lng is not None)
        if wants_location:
            try:
                center = await self.engine.resolve_center(lat, lng, postcode)
            except LocationNotResolvable as exc:
                LOGGER.warning(
                    json.dumps({"event": "search_center_unresolved", "location": exc.location_text})
                )
                result = empty_page(page)
                result.applied_filters = build_applied_filters(
                    filters,
                    postcode=postcode,
                    center=None,
                    radius_miles=radius_miles,
                )
                return result

        result = await self.engine.search(
            filters,
            center=center,
            radius_miles=radius_miles,
            page=page,
            page_size=page_size,
            sort=sort,
        )
        result.applied_filters = build_applied_filters(
            filters,
            postcode=postcode,
            center=center,
            radius_miles=radius_miles,
        )
        return result

    async def nearby_jobs(
        self,
        *,
        postcode: str | None = None,
        lat: float | None = None,
        lng: float | None = None,
        radius_miles: float = DEFAULT_RADIUS_MILES,
        page: int = 1,
        page_size: int = 20,
    ) -> SearchPage:
        center = await self.engine.resolve_center(lat, lng, postcode)
        return await self.search_jobs(
            JobSearchFilters(),
            lat=center.lat,
            lng=center.lng,
            radius_miles=radius_miles,
            page=page,
            page_size=page_size,
            sort="nearest",
        )

    async def employer_jobs(
        self,
        user_id: str,
        *,
        status: JobStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> EmployerJobsPage:
        async def load() -> dict[str, Any]:
            items, total = await run_in_threadpool(
                self.repository.list_employer_jobs,
                user_id,
                status=status,
                offset=(page - 1) * page_size,
                limit=page_size,
            )
            return EmployerJobsPage(
                items=items,
                total=total,
                page=page,
                total_pages=math.ceil(total / page_size) if total else 0,
            ).model_dump(mode="json")

        raw = await self.cache.get_or_set(
            cache_keys.jobs_by_user(user_id, status, page, page_size),
            load,
            cache_keys.JOB_LIST_TTL,
        )
        return EmployerJobsPage.model_validate(raw)

    async def matching_users(self, job_id: str, user_id: str) -> list[MatchedUser]:
        await self._require_owner(job_id, user_id)
        job = await self._load_detail(job_id)
        return await self.engine.find_matching_users(job)

    async def _alert_matching_users(self, job: JobDetail) -> None:
        if self.alerts is None:
            return
        queued = await self.alerts.notify_matching_users(job)
        LOGGER.info(json.dumps({"event": "job_alerts_queued", "job_id": job.id, "queued": queued}))

    async def _invalidate_job_caches(self, user_id: str, job_id: str | None = None) -> None:
        if job_id:
            await self.cache.delete(cache_keys.job_detail(job_id))
        await self.cache.invalidate_pattern(cache_keys.all_jobs_by_user(user_id))

    async def _load_detail(self, job_id: str) -> JobDetail:
        job = await run_in_threadpool(self.repository.get_job_detail, job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}", JOB_NOT_FOUND)
        return job

    async def _require_owner(self, job_id: str, user_id: str) -> dict[str, Any]:
        owner = await run_in_threadpool(self.repository.get_job_owner, job_id)
        if owner is None:
            raise NotFoundError(f"Job not found: {job_id}", JOB_NOT_FOUND)
        if owner["user_id"] != user_id:
            raise ForbiddenError("Only the job owner can do this", FORBIDDEN)
        return owner

    async def _require_active_category(self, category_id: str) -> None:
        category = await run_in_threadpool(self.repository.get_category, category_id)
        if category is None or not category.is_active or category.id != category_id:
            raise BadRequestError(f"Invalid category: {category_id}", BAD_REQUEST)

    async def _require_known_skills(self, skill_ids: list[str]) -> None:
        if not skill_ids:
            return
        found = await run_in_threadpool(self.repository.count_existing_skills, skill_ids)
        if found != len(set(skill_ids)):
            raise BadRequestError("Some required skills do not exist", BAD_REQUEST)

    async def _geocode_postcode(self, postcode: str) -> GeoPoint:
        try:
            lookup = await self.geocoder.lookup_postcode(postcode)
        except GeocodingUnavailable as exc:
            raise LocationNotResolvable(postcode) from exc
        if lookup is None:
            raise LocationNotResolvable(postcode)
        return lookup.point()

    async def _expiry_for(self, job_date: date) -> str:
        raw = await self.catalog.get_setting("job_expiry_days", str(DEFAULT_EXPIRY_DAYS))
        try:
            days = int(raw)
        except (TypeError, ValueError):
            days = DEFAULT_EXPIRY_DAYS
        return (job_date + timedelta(days=days)).isoformat()
