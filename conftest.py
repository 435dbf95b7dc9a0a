from __future__ import annotations

import fnmatch
import json
import time
from collections.abc import AsyncIterator, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient
from marketplace.main import create_app
from marketplace.repository import MarketplaceRepository
from redis.exceptions import ConnectionError as RedisConnectionError


class FakeRedis:
    """In-memory stand-in for the subset of ``redis.asyncio.Redis`` the cache uses."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.expires_at: dict[str, float] = {}
        self.closed = False

    def _purge(self, key: str) -> None:
        deadline = self.expires_at.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.values.pop(key, None)
            self.expires_at.pop(key, None)

    def ttl_of(self, key: str) -> float | None:
        deadline = self.expires_at.get(key)
        if deadline is None:
            return None
        return deadline - time.monotonic()

    async def get(self, key: str) -> str | None:
        self._purge(key)
        return self.values.get(key)

    async def set(
        self,
        key: str,
        value: Any,
        ex: int | None = None,
        nx: bool = False,
    ) -> bool | None:
        self._purge(key)
        if nx and key in self.values:
            return None
        self.values[key] = str(value)
        if ex:
            self.expires_at[key] = time.monotonic() + ex
        else:
            self.expires_at.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            self._purge(key)
            if key in self.values:
                deleted += 1
            self.values.pop(key, None)
            self.expires_at.pop(key, None)
        return deleted

    async def exists(self, key: str) -> int:
        self._purge(key)
        return int(key in self.values)

    async def expire(self, key: str, seconds: int) -> bool:
        self._purge(key)
        if key not in self.values:
            return False
        self.expires_at[key] = time.monotonic() + seconds
        return True

    async def incr(self, key: str) -> int:
        self._purge(key)
        value = int(self.values.get(key, "0")) + 1
        self.values[key] = str(value)
        return value

    async def decr(self, key: str) -> int:
        self._purge(key)
        value = int(self.values.get(key, "0")) - 1
        self.values[key] = str(value)
        return value

    async def scan_iter(
        self, match: str | None = None, count: int | None = None
    ) -> AsyncIterator[str]:
        del count
        for key in list(self.values):
            self._purge(key)
            if key in self.values and (match is None or fnmatch.fnmatchcase(key, match)):
                yield key

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        self.closed = True


class UnavailableRedis:
    """Backend double whose every call fails like a dropped connection."""

    def __getattr__(self, name: str) -> Any:
        async def fail(*_: object, **__: object) -> Any:
            raise RedisConnectionError(f"redis unavailable during {name}")

        return fail

    def scan_iter(self, *_: object, **__: object) -> AsyncIterator[str]:
        async def fail() -> AsyncIterator[str]:
            raise RedisConnectionError("redis unavailable during scan_iter")
            yield ""

        return fail()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def unavailable_redis() -> UnavailableRedis:
    return UnavailableRedis()


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "marketplace.sqlite3")


def future_date(days: int = 7) -> str:
    return (datetime.now(UTC).date() + timedelta(days=days)).isoformat()


KNOWN_POSTCODES: dict[str, dict[str, Any]] = {
    "SW1A1AA": {
        "postcode": "SW1A 1AA",
        "latitude": 51.501009,
        "longitude": -0.141588,
        "admin_district": "Westminster",
        "region": "London",
        "country": "England",
    },
    "EC1A1BB": {
        "postcode": "EC1A 1BB",
        "latitude": 51.520180,
        "longitude": -0.097897,
        "admin_district": "City of London",
        "region": "London",
        "country": "England",
    },
    "M11AE": {
        "postcode": "M1 1AE",
        "latitude": 53.480759,
        "longitude": -2.242631,
        "admin_district": "Manchester",
        "region": "North West",
        "country": "England",
    },
}
KNOWN_PLACES: dict[str, dict[str, Any]] = {
    "london": {
        "code": "osgb4000000074813508",
        "name_1": "London",
        "region": "London",
        "latitude": 51.5074,
        "longitude": -0.1278,
    },
    "manchester": {
        "code": "osgb4000000074559635",
        "name_1": "Manchester",
        "region": "North West",
        "latitude": 53.4808,
        "longitude": -2.2426,
    },
}
# Valid-looking postcode the fake API answers with a server error.
FAILING_POSTCODE = "ZZ99ZZ"


class FakePostcodesApi:
    """Request handler for ``httpx.MockTransport`` shaped like postcodes.io."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(f"{request.method} {path}")
        parts = [part for part in path.split("/") if part]

        if parts == ["places"]:
            query = request.url.params.get("q", "").strip().lower()
            limit = int(request.url.params.get("limit", "10"))
            results = [place for name, place in KNOWN_PLACES.items() if name.startswith(query)]
            return httpx.Response(200, json={"status": 200, "result": results[:limit]})

        if parts == ["postcodes"] and request.method == "POST":
            payload = json.loads(request.content)
            results = [
                {"query": code, "result": KNOWN_POSTCODES.get(code.replace(" ", "").upper())}
                for code in payload["postcodes"]
            ]
            return httpx.Response(200, json={"status": 200, "result": results})

        if parts == ["postcodes"]:
            lat = float(request.url.params["lat"])
            lng = float(request.url.params["lon"])
            nearest = min(
                KNOWN_POSTCODES.values(),
                key=lambda item: (item["latitude"] - lat) ** 2 + (item["longitude"] - lng) ** 2,
            )
            return httpx.Response(200, json={"status": 200, "result": [nearest]})

        if len(parts) == 3 and parts[0] == "postcodes" and parts[2] == "autocomplete":
            prefix = parts[1].upper()
            matches = [
                item["postcode"]
                for code, item in KNOWN_POSTCODES.items()
                if code.startswith(prefix)
            ]
            return httpx.Response(200, json={"status": 200, "result": matches or None})

        if len(parts) == 2 and parts[0] == "postcodes":
            code = parts[1].upper()
            if code == FAILING_POSTCODE:
                return httpx.Response(503, json={"status": 503, "error": "upstream down"})
            if code in KNOWN_POSTCODES:
                return httpx.Response(200, json={"status": 200, "result": KNOWN_POSTCODES[code]})
            return httpx.Response(404, json={"status": 404, "error": "Postcode not found"})

        return httpx.Response(404, json={"status": 404, "error": "Resource not found"})


class MarketplaceSeeder:
    """Writes fixture rows straight into the store."""

    def __init__(self, repository: Any) -> None:
        self.repository = repository
        self._sequence = 0

    def category(
        self,
        slug: str = "hospitality",
        *,
        name: str | None = None,
        parent_id: str | None = None,
        is_active: bool = True,
    ) -> str:
        category = self.repository.upsert_category(
            category_id=f"cat-{slug}",
            name=name or slug.replace("-", " ").title(),
            slug=slug,
            parent_id=parent_id,
            is_active=is_active,
        )
        return category.id

    def user(
        self,
        user_id: str,
        *,
        lat: float | None = None,
        lng: float | None = None,
        radius_miles: float = 10,
        looking: bool = False,
        category_ids: list[str] | None = None,
        status: str = "active",
    ) -> str:
        self.repository.upsert_user(
            user_id,
            email=f"{user_id}@example.com",
            first_name=user_id.title(),
            last_name="Tester",
            status=status,
            is_actively_looking=looking,
            location_lat=lat,
            location_lng=lng,
            notification_radius_miles=radius_miles,
            category_ids=category_ids,
        )
        return user_id

    def job(
        self,
        *,
        employer_id: str,
        category_id: str,
        lat: float,
        lng: float,
        job_id: str | None = None,
        title: str = "Bar staff",
        description: str = "Serving drinks at a busy venue.",
        city: str = "London",
        postcode: str = "SW1A 1AA",
        pay_amount: float = 12.5,
        pay_type: str = "hourly",
        experience_level: str | None = None,
        job_date: str | None = None,
        start_time: str = "18:00",
        status: str = "active",
        skill_ids: list[str] | None = None,
        created_at: str | None = None,
    ) -> str:
        self._sequence += 1
        created = created_at or (
            datetime(2026, 1, 1, tzinfo=UTC) + timedelta(minutes=self._sequence)
        ).isoformat()
        return self.repository.insert_job(
            employer_id=employer_id,
            job_id=job_id,
            created_at=created,
            required_skill_ids=skill_ids,
            fields={
                "category_id": category_id,
                "title": title,
                "description": description,
                "location_postcode": postcode,
                "location_city": city,
                "location_lat": lat,
                "location_lng": lng,
                "job_date": job_date or future_date(),
                "start_time": start_time,
                "pay_amount": pay_amount,
                "pay_type": pay_type,
                "experience_level": experience_level,
                "status": status,
            },
        )


@pytest.fixture
def postcodes_api() -> FakePostcodesApi:
    return FakePostcodesApi()


@pytest.fixture
def geocoder_client(postcodes_api: FakePostcodesApi) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.MockTransport(postcodes_api.handler),
        base_url="https://postcodes.test",
    )


@pytest.fixture
def repository(db_path: str) -> Iterator[MarketplaceRepository]:
    repo = MarketplaceRepository(db_path)
    repo.connect()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture
def seeder(repository: MarketplaceRepository) -> MarketplaceSeeder:
    return MarketplaceSeeder(repository)


@pytest.fixture
def api_client(
    db_path: str,
    fake_redis: FakeRedis,
    geocoder_client: httpx.AsyncClient,
) -> Iterator[TestClient]:
    app = create_app(
        database_path=db_path,
        cache_backend=fake_redis,
        http_client=geocoder_client,
        search_rate_limit=0,
    )
    with TestClient(app) as client:
        yield client


@pytest.fixture
def api_seeder(api_client: TestClient) -> MarketplaceSeeder:
    return MarketplaceSeeder(api_client.app.state.repository)
