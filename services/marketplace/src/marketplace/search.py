"""Proximity search over jobs and job-seekers.

The store has no geospatial operators, so a center plus radius becomes a
lat/lng rectangle the store can filter on. Exact great-circle distances are
then computed in-process, candidates outside the radius are dropped and, for
``nearest``, the page is re-ranked by distance.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import UTC, datetime, timedelta

from fastapi.concurrency import run_in_threadpool

from marketplace.errors import GeocodingUnavailable, LocationNotResolvable
from marketplace.geo import GeoPoint, bounding_box, haversine_miles, is_within_radius
from marketplace.geocoding import PostcodeGeocoder
from marketplace.models import (
    JobListItem,
    JobSearchFilters,
    MatchedUser,
    MatchResult,
    SearchPage,
    SortKey,
)
from marketplace.repository import MarketplaceRepository

LOGGER = logging.getLogger("gigmatch.search")
NEAREST_OVERFETCH_FACTOR = 3
DEFAULT_MATCH_WARN_THRESHOLD = 5000


def empty_page(page: int) -> SearchPage:
    return SearchPage(items=[], total=0, page=page, total_pages=0)


def _total_pages(total: int, page_size: int) -> int:
    return math.ceil(total / page_size) if total else 0


class ProximitySearchEngine:
    def __init__(
        self,
        repository: MarketplaceRepository,
        geocoder: PostcodeGeocoder,
        *,
        match_warn_threshold: int = DEFAULT_MATCH_WARN_THRESHOLD,
    ) -> None:
        self.repository = repository
        self.geocoder = geocoder
        self.match_warn_threshold = match_warn_threshold

    async def resolve_center(
        self,
        explicit_lat: float | None = None,
        explicit_lng: float | None = None,
        location_text: str | None = None,
    ) -> GeoPoint:
        """Pick the search center.

        Explicit coordinates win when both are present and in range. Otherwise
        ``location_text`` goes through the geocoder, whose results are cached
        by normalised text. Anything that cannot be placed raises
        ``LocationNotResolvable``.
        """
        if explicit_lat is not None and explicit_lng is not None:
            point = GeoPoint(explicit_lat, explicit_lng)
            if point.is_valid():
                return point
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "explicit_center_ignored",
                        "lat": explicit_lat,
                        "lng": explicit_lng,
                    }
                )
            )

        if not location_text or not location_text.strip():
            raise LocationNotResolvable(location_text)

        try:
            point = await self.geocoder.geocode(location_text)
        except GeocodingUnavailable as exc:
            raise LocationNotResolvable(location_text) from exc
        if point is None:
            raise LocationNotResolvable(location_text)
        return point

    async def search(
        self,
        filters: JobSearchFilters,
        *,
        center: GeoPoint | None = None,
        radius_miles: float = 10,
        page: int = 1,
        page_size: int = 20,
        sort: SortKey = "newest",
    ) -> SearchPage:
        page = max(page, 1)
        page_size = max(page_size, 1)
        offset = (page - 1) * page_size

        if center is None:
            items, total = await self._fetch_without_center(filters, sort, offset, page_size)
            return SearchPage(
                items=[MatchResult(job=item) for item in items],
                total=total,
                page=page,
                total_pages=_total_pages(total, page_size),
            )

        if not math.isfinite(radius_miles) or radius_miles < 0:
            return empty_page(page)

        bbox = bounding_box(center, radius_miles)
        fetch_limit = page_size * NEAREST_OVERFETCH_FACTOR if sort == "nearest" else page_size
        candidates = await run_in_threadpool(
            self.repository.find_jobs,
            filters,
            bbox=bbox,
            sort=sort,
            offset=offset,
            limit=fetch_limit,
        )

        matches: list[MatchResult] = []
        for candidate in candidates:
            point = candidate.point()
            if point is None:
                continue
            distance = haversine_miles(center, point)
            if distance <= radius_miles:
                matches.append(MatchResult(job=candidate, distance_miles=distance))

        # The count reflects the filtered window, not the full store.
        total = len(matches)
        if sort == "nearest":
            matches.sort(key=lambda match: match.distance_miles)
            matches = matches[:page_size]

        return SearchPage(
            items=matches,
            total=total,
            page=page,
            total_pages=_total_pages(total, page_size),
        )

    async def _fetch_without_center(
        self,
        filters: JobSearchFilters,
        sort: SortKey,
        offset: int,
        limit: int,
    ) -> tuple[list[JobListItem], int]:
        items = await run_in_threadpool(
            self.repository.find_jobs,
            filters,
            sort=sort,
            offset=offset,
            limit=limit,
        )
        total = await run_in_threadpool(self.repository.count_jobs, filters)
        return items, total

    async def match_users_to_job(
        self,
        job: JobListItem,
        excluded_user_ids: set[str],
    ) -> list[MatchedUser]:
        """Return job-seekers whose own notification radius covers the job.

        Each candidate has a different radius, so there is no shared bounding
        box: the store narrows by category and availability only.
        """
        job_point = job.point()
        if job_point is None:
            return []

        candidates = await run_in_threadpool(
            self.repository.list_notification_candidates,
            job.category.id,
            excluded_user_ids,
        )
        if len(candidates) > self.match_warn_threshold:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "job_matching_candidates_high",
                        "job_id": job.id,
                        "candidates": len(candidates),
                        "threshold": self.match_warn_threshold,
                    }
                )
            )

        matched: list[MatchedUser] = []
        for candidate in candidates:
            distance = haversine_miles(candidate.point(), job_point)
            if distance <= candidate.notification_radius_miles:
                matched.append(
                    MatchedUser(
                        user_id=candidate.user_id,
                        email=candidate.email,
                        first_name=candidate.first_name,
                        distance_miles=round(distance, 1),
                    )
                )

        LOGGER.info(
            json.dumps(
                {
                    "event": "job_matching_completed",
                    "job_id": job.id,
                    "potential_users": len(candidates),
                    "matched_users": len(matched),
                }
            )
        )
        return matched

    async def find_matching_users(self, job: JobListItem) -> list[MatchedUser]:
        employer_id = job.employer.id
        blocked = await run_in_threadpool(self.repository.list_block_relations, employer_id)
        return await self.match_users_to_job(job, blocked | {employer_id})

    async def find_matching_jobs(self, user_id: str, limit: int = 10) -> list[JobListItem]:
        profile = await run_in_threadpool(self.repository.get_user_match_profile, user_id)
        if profile is None or not profile.category_ids:
            return []
        user_point = profile.point()
        if user_point is None:
            return []

        filters = JobSearchFilters(
            category_ids=profile.category_ids,
            employer_ids_excluded=profile.blocked_user_ids,
        )
        candidates = await run_in_threadpool(
            self.repository.find_jobs,
            filters,
            sort="newest",
            limit=limit * NEAREST_OVERFETCH_FACTOR,
        )

        matching: list[JobListItem] = []
        for job in candidates:
            job_point = job.point()
            if job_point is None:
                continue
            if is_within_radius(user_point, job_point, profile.notification_radius_miles):
                matching.append(job)
                if len(matching) >= limit:
                    break
        return matching

    async def recent_job_matches(self, user_id: str, since: datetime) -> list[JobListItem]:
        profile = await run_in_threadpool(self.repository.get_user_match_profile, user_id)
        if profile is None or not profile.category_ids:
            return []
        user_point = profile.point()
        if user_point is None:
            return []

        filters = JobSearchFilters(
            category_ids=profile.category_ids,
            employer_ids_excluded=profile.blocked_user_ids,
            created_since=since.astimezone(UTC).isoformat(),
        )
        total = await run_in_threadpool(self.repository.count_jobs, filters)
        if total == 0:
            return []
        candidates = await run_in_threadpool(
            self.repository.find_jobs,
            filters,
            sort="newest",
            limit=total,
        )
        return [
            job
            for job in candidates
            if job.point() is not None
            and is_within_radius(user_point, job.point(), profile.notification_radius_miles)
        ]

    async def count_recent_matches(self, user_id: str) -> int:
        since = datetime.now(UTC) - timedelta(hours=24)
        return len(await self.recent_job_matches(user_id, since))
