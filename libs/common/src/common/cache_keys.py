from __future__ import annotations

from common.utils import compact_postcode, normalize_location_text

JOB_DETAIL_TTL = 2 * 60
JOB_LIST_TTL = 60
CATEGORIES_TTL = 60 * 60
SKILLS_TTL = 60 * 60
SETTINGS_TTL = 30 * 60
POSTCODE_LOOKUP_TTL = 24 * 60 * 60
VIEW_DEBOUNCE_TTL = 60 * 60
JOB_ALERT_DEBOUNCE_TTL = 24 * 60 * 60


def job_detail(job_id: str) -> str:
    return f"job:detail:{job_id}"


def jobs_by_user(user_id: str, status: str | None, page: int, limit: int) -> str:
    return f"job:user:{user_id}:{status or 'all'}:{page}:{limit}"


def all_jobs_by_user(user_id: str) -> str:
    return f"job:user:{user_id}:*"


def category_tree() -> str:
    return "categories:tree"


def all_categories() -> str:
    return "categories:all"


def popular_categories(limit: int) -> str:
    return f"categories:popular:{limit}"


def category_by_id(category_id: str) -> str:
    return f"category:id:{category_id}"


def category_by_slug(slug: str) -> str:
    return f"category:slug:{slug}"


def all_skills() -> str:
    return "skills:all"


def skills_by_category(category_id: str) -> str:
    return f"skills:category:{category_id}"


def all_settings() -> str:
    return "settings:all"


def setting(key: str) -> str:
    return f"settings:{key}"


def postcode_lookup(postcode: str) -> str:
    return f"postcode:lookup:{compact_postcode(postcode)}"


def reverse_geocode(lat: float, lng: float) -> str:
    return f"postcode:reverse:{lat:.5f}_{lng:.5f}"


def geocoded_location(text: str) -> str:
    return f"location:geocode:{normalize_location_text(text)}"


def job_view(job_id: str, viewer_id: str | None) -> str:
    if viewer_id:
        return f"view:job:{job_id}:user:{viewer_id}"
    return f"view:job:{job_id}:anon"


def job_alert(job_id: str, user_id: str) -> str:
    return f"notify:job:{job_id}:user:{user_id}"


def rate_limit(scope: str, client: str, window: int) -> str:
    return f"rl:{scope}:{client}:{window}"


def all_category_keys() -> list[str]:
    return ["categories:*", "category:*"]


def all_skill_keys() -> str:
    return "skills:*"
