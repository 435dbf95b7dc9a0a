from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
import threading
import time
import uuid
from contextlib import asynccontextmanager
from datetime import date
from typing import Any

import httpx
from common import cache_keys
from common.cache import CacheLayer, create_redis_client
from common.utils import now_utc_iso
from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from marketplace.catalog import CatalogService
from marketplace.errors import (
    GEOCODER_UNAVAILABLE,
    POSTCODE_NOT_FOUND,
    RATE_LIMITED,
    SETTING_NOT_FOUND,
    UNAUTHORIZED,
    VALIDATION_INVALID_POSTCODE,
    BadRequestError,
    GeocodingUnavailable,
    MarketplaceError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
)
from marketplace.geocoding import (
    DEFAULT_GEOCODER_TIMEOUT_SECONDS,
    DEFAULT_GEOCODER_URL,
    PostcodeGeocoder,
    create_geocoder_client,
)
from marketplace.jobs import JobService
from marketplace.models import (
    BulkPostcodeRequest,
    Category,
    CategoryTreeNode,
    CategoryUpsertRequest,
    EmployerJobsPage,
    ExperienceLevel,
    JobCreateRequest,
    JobDetail,
    JobListItem,
    JobSearchFilters,
    JobStatus,
    JobStatusUpdateRequest,
    JobUpdateRequest,
    LocationSearchResult,
    MatchedUser,
    MetricsSnapshot,
    PayType,
    PopularCategory,
    PostcodeLookupResult,
    SearchPage,
    SettingUpdateRequest,
    Skill,
    SortKey,
    SystemSetting,
)
from marketplace.notifications import JobAlertWorker
from marketplace.repository import MarketplaceRepository
from marketplace.search import DEFAULT_MATCH_WARN_THRESHOLD, ProximitySearchEngine

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "gigmatch", "marketplace.sqlite3")
DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_SEARCH_RATE_LIMIT = 120
RATE_LIMIT_WINDOW_SECONDS = 60
UNMATCHED_ROUTE = "unmatched"
LOGGER = logging.getLogger("gigmatch.marketplace")


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0, "rate_limited": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            if status_code == 429:
                self._totals["rate_limited"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {
                    "count": 0,
                    "2xx": 0,
                    "4xx": 0,
                    "5xx": 0,
                    "latency_ms_sum": 0.0,
                    "latency_ms_avg": 0.0,
                },
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in ("2xx", "4xx", "5xx"):
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms
            endpoint["latency_ms_avg"] = float(endpoint["latency_ms_sum"]) / int(endpoint["count"])

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints={key: dict(value) for key, value in self._endpoints.items()},
            )


def route_template(request: Request) -> str:
    """Matched route pattern for metrics keys; unrouted requests share one bucket."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


def parse_skill_ids(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [skill.strip() for skill in raw.split(",") if skill.strip()]


def require_user_id(request: Request) -> str:
    user_id = request.headers.get("x-user-id", "").strip()
    if not user_id:
        raise UnauthorizedError("Missing x-user-id header", UNAUTHORIZED)
    return user_id


def optional_user_id(request: Request) -> str | None:
    return request.headers.get("x-user-id", "").strip() or None


def create_app(
    *,
    database_path: str | None = None,
    redis_url: str | None = None,
    cache_backend: Any | None = None,
    geocoder_url: str | None = None,
    http_client: httpx.AsyncClient | None = None,
    search_rate_limit: int | None = None,
    match_warn_threshold: int | None = None,
) -> FastAPI:
    resolved_path = database_path or os.getenv("MARKETPLACE_DB_PATH", DEFAULT_DB_PATH)
    resolved_redis_url = redis_url or os.getenv("MARKETPLACE_REDIS_URL", DEFAULT_REDIS_URL)
    resolved_geocoder_url = geocoder_url or os.getenv(
        "MARKETPLACE_GEOCODER_URL", DEFAULT_GEOCODER_URL
    )
    resolved_timeout = float(
        os.getenv("MARKETPLACE_GEOCODER_TIMEOUT_SECONDS", str(DEFAULT_GEOCODER_TIMEOUT_SECONDS))
    )
    resolved_rate_limit = (
        search_rate_limit
        if search_rate_limit is not None
        else int(os.getenv("MARKETPLACE_SEARCH_RATE_LIMIT", str(DEFAULT_SEARCH_RATE_LIMIT)))
    )
    resolved_warn_threshold = (
        match_warn_threshold
        if match_warn_threshold is not None
        else int(os.getenv("MARKETPLACE_MATCH_WARN_THRESHOLD", str(DEFAULT_MATCH_WARN_THRESHOLD)))
    )

    repository = MarketplaceRepository(database_path=resolved_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        backend = cache_backend
        if backend is None:
            backend = create_redis_client(resolved_redis_url)
        cache = CacheLayer(backend)
        client = http_client or create_geocoder_client(resolved_geocoder_url, resolved_timeout)
        geocoder = PostcodeGeocoder(client, cache)
        engine = ProximitySearchEngine(
            repository,
            geocoder,
            match_warn_threshold=resolved_warn_threshold,
        )
        catalog = CatalogService(repository, cache)
        alerts = JobAlertWorker(engine, cache)

        app.state.repository = repository
        app.state.cache = cache
        app.state.geocoder = geocoder
        app.state.engine = engine
        app.state.catalog = catalog
        app.state.alerts = alerts
        app.state.jobs = JobService(repository, cache, engine, geocoder, catalog, alerts)
        app.state.metrics = MetricsStore()
        app.state.search_rate_limit = resolved_rate_limit
        alerts_task = asyncio.create_task(alerts.run())
        try:
            yield
        finally:
            alerts_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await alerts_task
            if http_client is None:
                await client.aclose()
            if cache_backend is None:
                await cache.close()
            await run_in_threadpool(repository.close)

    app = FastAPI(title="Gigmatch Marketplace", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code},
        )

    @app.exception_handler(GeocodingUnavailable)
    async def geocoder_error_handler(request: Request, exc: GeocodingUnavailable) -> JSONResponse:
        return JSONResponse(
            status_code=503,
            content={"detail": "Geocoding service unavailable", "code": GEOCODER_UNAVAILABLE},
        )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            request.app.state.metrics.observe(
                method=request.method,
                path=route_template(request),
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(duration_ms, 3),
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            method=request.method,
            path=route_template(request),
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            json.dumps(
                {
                    "event": "request_complete",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 3),
                    "source_ip": request.client.host if request.client else None,
                }
            )
        )
        return response

    async def enforce_search_rate_limit(request: Request) -> None:
        limit: int = request.app.state.search_rate_limit
        if limit <= 0:
            return
        cache: CacheLayer = request.app.state.cache
        client_id = request.client.host if request.client else "anonymous"
        window = int(time.time() // RATE_LIMIT_WINDOW_SECONDS)
        key = cache_keys.rate_limit("search", client_id, window)
        count = await cache.increment(key)
        if count == 1:
            await cache.expire(key, RATE_LIMIT_WINDOW_SECONDS)
        # a failed increment returns 0 and lets the request through
        if count > limit:
            raise RateLimitedError("Too many search requests, slow down", RATE_LIMITED)

    @app.get("/health")
    async def health(request: Request) -> dict[str, str]:
        cache_ok = await request.app.state.cache.ping()
        return {
            "status": "ok",
            "service": "marketplace",
            "cache": "ok" if cache_ok else "degraded",
        }

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.get("/jobs", response_model=SearchPage, response_model_exclude_none=True)
    async def search_jobs(
        request: Request,
        category_id: str | None = Query(default=None),
        category_slug: str | None = Query(default=None),
        postcode: str | None = Query(default=None, max_length=64),
        lat: float | None = Query(default=None, ge=-90, le=90),
        lng: float | None = Query(default=None, ge=-180, le=180),
        radius_miles: float = Query(default=10, ge=1, le=50),
        city: str | None = Query(default=None, max_length=120),
        min_pay: float | None = Query(default=None, ge=0),
        max_pay: float | None = Query(default=None, ge=0),
        pay_type: PayType | None = Query(default=None),
        date_from: date | None = Query(default=None),
        date_to: date | None = Query(default=None),
        experience_level: ExperienceLevel | None = Query(default=None),
        keyword: str | None = Query(default=None, max_length=120),
        skills: str | None = Query(default=None),
        sort: SortKey = Query(default="newest"),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=50),
    ) -> SearchPage:
        await enforce_search_rate_limit(request)
        filters = JobSearchFilters(
            category_id=category_id,
            category_slug=category_slug,
            city=city,
            min_pay=min_pay,
            max_pay=max_pay,
            pay_type=pay_type,
            date_from=date_from,
            date_to=date_to,
            experience_level=experience_level,
            keyword=keyword,
            skills=parse_skill_ids(skills),
        )
        return await request.app.state.jobs.search_jobs(
            filters,
            postcode=postcode,
            lat=lat,
            lng=lng,
            radius_miles=radius_miles,
            page=page,
            page_size=limit,
            sort=sort,
        )

    @app.get("/jobs/nearby", response_model=SearchPage, response_model_exclude_none=True)
    async def nearby_jobs(
        request: Request,
        postcode: str | None = Query(default=None, max_length=64),
        lat: float | None = Query(default=None, ge=-90, le=90),
        lng: float | None = Query(default=None, ge=-180, le=180),
        radius_miles: float = Query(default=10, ge=1, le=50),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=50),
    ) -> SearchPage:
        await enforce_search_rate_limit(request)
        if postcode is None and (lat is None or lng is None):
            raise BadRequestError(
                "Location required: provide postcode or lat/lng",
                VALIDATION_INVALID_POSTCODE,
            )
        return await request.app.state.jobs.nearby_jobs(
            postcode=postcode,
            lat=lat,
            lng=lng,
            radius_miles=radius_miles,
            page=page,
            page_size=limit,
        )

    @app.post("/jobs", response_model=JobDetail, status_code=201)
    async def create_job(payload: JobCreateRequest, request: Request) -> JobDetail:
        user_id = require_user_id(request)
        return await request.app.state.jobs.create_job(user_id, payload)

    @app.get("/jobs/mine", response_model=EmployerJobsPage)
    async def my_jobs(
        request: Request,
        status: JobStatus | None = Query(default=None),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=50),
    ) -> EmployerJobsPage:
        user_id = require_user_id(request)
        return await request.app.state.jobs.employer_jobs(
            user_id,
            status=status,
            page=page,
            page_size=limit,
        )

    @app.get("/jobs/{job_id}", response_model=JobDetail)
    async def get_job(job_id: str, request: Request) -> JobDetail:
        return await request.app.state.jobs.get_job(job_id, optional_user_id(request))

    @app.patch("/jobs/{job_id}", response_model=JobDetail)
    async def update_job(job_id: str, payload: JobUpdateRequest, request: Request) -> JobDetail:
        user_id = require_user_id(request)
        return await request.app.state.jobs.update_job(job_id, user_id, payload)

    @app.patch("/jobs/{job_id}/status", response_model=JobDetail)
    async def update_job_status(
        job_id: str,
        payload: JobStatusUpdateRequest,
        request: Request,
    ) -> JobDetail:
        user_id = require_user_id(request)
        return await request.app.state.jobs.update_job_status(job_id, user_id, payload.status)

    @app.delete("/jobs/{job_id}")
    async def delete_job(job_id: str, request: Request) -> dict[str, str]:
        user_id = require_user_id(request)
        await request.app.state.jobs.delete_job(job_id, user_id)
        return {"status": "deleted", "job_id": job_id}

    @app.get("/jobs/{job_id}/matches", response_model=list[MatchedUser])
    async def job_matches(job_id: str, request: Request) -> list[MatchedUser]:
        user_id = require_user_id(request)
        return await request.app.state.jobs.matching_users(job_id, user_id)

    @app.get("/users/{user_id}/matching-jobs", response_model=list[JobListItem])
    async def matching_jobs(
        user_id: str,
        request: Request,
        limit: int = Query(default=10, ge=1, le=50),
    ) -> list[JobListItem]:
        return await request.app.state.engine.find_matching_jobs(user_id, limit)

    @app.get("/users/{user_id}/recent-matches")
    async def recent_matches(user_id: str, request: Request) -> dict[str, str | int]:
        count = await request.app.state.engine.count_recent_matches(user_id)
        return {"user_id": user_id, "count": count}

    @app.get("/categories", response_model=list[CategoryTreeNode])
    async def category_tree(request: Request) -> list[CategoryTreeNode]:
        return await request.app.state.catalog.category_tree()

    @app.get("/categories/all", response_model=list[Category])
    async def all_categories(request: Request) -> list[Category]:
        return await request.app.state.catalog.all_categories()

    @app.get("/categories/popular", response_model=list[PopularCategory])
    async def popular_categories(
        request: Request,
        limit: int = Query(default=10, ge=1, le=50),
    ) -> list[PopularCategory]:
        return await request.app.state.catalog.popular_categories(limit)

    @app.get("/categories/{id_or_slug}", response_model=Category)
    async def get_category(id_or_slug: str, request: Request) -> Category:
        return await request.app.state.catalog.get_category(id_or_slug)

    @app.post("/categories", response_model=Category, status_code=201)
    async def create_category(payload: CategoryUpsertRequest, request: Request) -> Category:
        return await request.app.state.catalog.upsert_category(payload)

    @app.put("/categories/{category_id}", response_model=Category)
    async def upsert_category(
        category_id: str,
        payload: CategoryUpsertRequest,
        request: Request,
    ) -> Category:
        return await request.app.state.catalog.upsert_category(payload, category_id)

    @app.get("/skills", response_model=list[Skill])
    async def list_skills(
        request: Request,
        category_id: str | None = Query(default=None),
    ) -> list[Skill]:
        return await request.app.state.catalog.list_skills(category_id)

    @app.get("/settings", response_model=list[SystemSetting])
    async def list_settings(request: Request) -> list[SystemSetting]:
        return await request.app.state.catalog.all_settings()

    @app.get("/settings/{key}")
    async def get_setting(key: str, request: Request) -> dict[str, str]:
        value = await request.app.state.catalog.get_setting(key)
        if value is None:
            raise NotFoundError(f"Setting not found: {key}", SETTING_NOT_FOUND)
        return {"key": key, "value": value}

    @app.put("/settings/{key}", response_model=SystemSetting)
    async def update_setting(
        key: str,
        payload: SettingUpdateRequest,
        request: Request,
    ) -> SystemSetting:
        return await request.app.state.catalog.update_setting(key, payload.value)

    @app.get("/locations/postcodes/{postcode}", response_model=PostcodeLookupResult)
    async def lookup_postcode(postcode: str, request: Request) -> PostcodeLookupResult:
        geocoder: PostcodeGeocoder = request.app.state.geocoder
        if geocoder.validate_postcode_format(postcode) is None:
            raise BadRequestError(f"Invalid postcode: {postcode}", VALIDATION_INVALID_POSTCODE)
        result = await geocoder.lookup_postcode(postcode)
        if result is None:
            raise NotFoundError(f"Postcode not found: {postcode}", POSTCODE_NOT_FOUND)
        return result

    @app.post("/locations/postcodes/bulk")
    async def bulk_lookup(
        payload: BulkPostcodeRequest,
        request: Request,
    ) -> dict[str, PostcodeLookupResult | None]:
        return await request.app.state.geocoder.bulk_lookup_postcodes(payload.postcodes)

    @app.get("/locations/reverse", response_model=PostcodeLookupResult)
    async def reverse_geocode(
        request: Request,
        lat: float = Query(..., ge=-90, le=90),
        lng: float = Query(..., ge=-180, le=180),
    ) -> PostcodeLookupResult:
        result = await request.app.state.geocoder.reverse_geocode(lat, lng)
        if result is None:
            raise NotFoundError("No postcode near this point", POSTCODE_NOT_FOUND)
        return result

    @app.get("/locations/autocomplete")
    async def autocomplete(
        request: Request,
        q: str = Query(..., min_length=1, max_length=16),
    ) -> dict[str, list[str]]:
        return {"postcodes": await request.app.state.geocoder.autocomplete_postcode(q)}

    @app.get("/locations/search", response_model=list[LocationSearchResult])
    async def search_places(
        request: Request,
        q: str = Query(..., min_length=1, max_length=120),
    ) -> list[LocationSearchResult]:
        return await request.app.state.geocoder.search_places(q)

    return app


app = create_app()
