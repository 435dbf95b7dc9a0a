from __future__ import annotations

import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any

from common.utils import now_utc_iso, today_utc_iso

from marketplace.geo import BoundingBox
from marketplace.models import (
    Category,
    CategorySummary,
    EmployerSummary,
    JobDetail,
    JobListItem,
    JobSearchFilters,
    NotificationCandidate,
    PopularCategory,
    Skill,
    SkillSummary,
    SortKey,
    SystemSetting,
    UserMatchProfile,
)

JOB_SELECT = """
    SELECT
        j.*,
        c.name AS category_name,
        c.slug AS category_slug,
        u.first_name AS employer_first_name,
        u.last_name AS employer_last_name
    FROM jobs j
    JOIN categories c ON c.id = j.category_id
    JOIN users u ON u.id = j.user_id
"""

ORDER_BY: dict[str, str] = {
    "newest": "j.created_at DESC, j.id ASC",
    "highest_pay": "j.pay_amount DESC, j.created_at DESC, j.id ASC",
    "ending_soon": "j.job_date ASC, j.start_time ASC, j.id ASC",
    "nearest": "j.created_at DESC, j.id ASC",
}

UPDATABLE_JOB_COLUMNS = (
    "category_id",
    "title",
    "description",
    "location_address",
    "location_postcode",
    "location_city",
    "location_lat",
    "location_lng",
    "job_date",
    "start_time",
    "end_time",
    "pay_amount",
    "pay_type",
    "experience_level",
    "status",
    "expires_at",
)


def _like_pattern(value: str) -> str:
    escaped = value.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _placeholders(values: list[str] | set[str]) -> str:
    return ", ".join("?" for _ in values)


def build_job_filter_clause(
    filters: JobSearchFilters,
    bbox: BoundingBox | None,
    *,
    today: str,
) -> tuple[str, list[Any]]:
    clauses = ["j.status = ?", "j.job_date >= ?"]
    params: list[Any] = [filters.status, today]

    if filters.category_id:
        clauses.append(
            "j.category_id IN (SELECT id FROM categories WHERE id = ? OR parent_id = ?)"
        )
        params.extend([filters.category_id, filters.category_id])
    elif filters.category_slug:
        clauses.append(
            """
            j.category_id IN (
                SELECT id FROM categories
                WHERE slug = ? OR parent_id = (SELECT id FROM categories WHERE slug = ?)
            )
            """
        )
        params.extend([filters.category_slug, filters.category_slug])

    if filters.category_ids:
        clauses.append(f"j.category_id IN ({_placeholders(filters.category_ids)})")
        params.extend(filters.category_ids)

    if filters.employer_ids_excluded:
        clauses.append(f"j.user_id NOT IN ({_placeholders(filters.employer_ids_excluded)})")
        params.extend(filters.employer_ids_excluded)

    if bbox is not None:
        clauses.append("j.location_lat BETWEEN ? AND ?")
        clauses.append("j.location_lng BETWEEN ? AND ?")
        params.extend([bbox.min_lat, bbox.max_lat, bbox.min_lng, bbox.max_lng])

    if filters.city:
        clauses.append("LOWER(j.location_city) LIKE ? ESCAPE '\\'")
        params.append(_like_pattern(filters.city))

    if filters.min_pay is not None:
        clauses.append("j.pay_amount >= ?")
        params.append(filters.min_pay)
    if filters.max_pay is not None:
        clauses.append("j.pay_amount <= ?")
        params.append(filters.max_pay)
    if filters.pay_type:
        clauses.append("j.pay_type = ?")
        params.append(filters.pay_type)

    if filters.date_from:
        clauses.append("j.job_date >= ?")
        params.append(filters.date_from.isoformat())
    if filters.date_to:
        clauses.append("j.job_date <= ?")
        params.append(filters.date_to.isoformat())

    if filters.experience_level:
        clauses.append("j.experience_level = ?")
        params.append(filters.experience_level)

    if filters.keyword and filters.keyword.strip():
        pattern = _like_pattern(filters.keyword.strip())
        clauses.append(
            "(LOWER(j.title) LIKE ? ESCAPE '\\' OR LOWER(j.description) LIKE ? ESCAPE '\\')"
        )
        params.extend([pattern, pattern])

    skills = [skill.strip() for skill in filters.skills if skill.strip()]
    if skills:
        clauses.append(
            f"""
            EXISTS (
                SELECT 1 FROM job_required_skills s
                WHERE s.job_id = j.id AND s.skill_id IN ({_placeholders(skills)})
            )
            """
        )
        params.extend(skills)

    if filters.created_since:
        clauses.append("j.created_at >= ?")
        params.append(filters.created_since)

    return " AND ".join(clauses), params


class MarketplaceRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS categories (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL UNIQUE,
                    parent_id TEXT REFERENCES categories(id),
                    icon TEXT,
                    description TEXT,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS skills (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL UNIQUE,
                    category_id TEXT REFERENCES categories(id)
                );

                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    is_actively_looking INTEGER NOT NULL DEFAULT 0,
                    location_lat REAL,
                    location_lng REAL,
                    notification_radius_miles REAL NOT NULL DEFAULT 10,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_categories (
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    category_id TEXT NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
                    PRIMARY KEY (user_id, category_id)
                );

                CREATE TABLE IF NOT EXISTS blocked_users (
                    blocker_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    blocked_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    PRIMARY KEY (blocker_id, blocked_id)
                );

                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id),
                    category_id TEXT NOT NULL REFERENCES categories(id),
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    location_address TEXT,
                    location_postcode TEXT NOT NULL,
                    location_city TEXT,
                    location_lat REAL,
                    location_lng REAL,
                    job_date TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    pay_amount REAL NOT NULL,
                    pay_type TEXT NOT NULL,
                    experience_level TEXT,
                    status TEXT NOT NULL,
                    views_count INTEGER NOT NULL DEFAULT 0,
                    applications_count INTEGER NOT NULL DEFAULT 0,
                    expires_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_status_date ON jobs (status, job_date);
                CREATE INDEX IF NOT EXISTS idx_jobs_location ON jobs (location_lat, location_lng);

                CREATE TABLE IF NOT EXISTS job_required_skills (
                    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                    skill_id TEXT NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
                    PRIMARY KEY (job_id, skill_id)
                );

                CREATE TABLE IF NOT EXISTS system_settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def upsert_category(
        self,
        *,
        category_id: str | None = None,
        name: str,
        slug: str,
        parent_id: str | None = None,
        icon: str | None = None,
        description: str | None = None,
        sort_order: int = 0,
        is_active: bool = True,
    ) -> Category:
        with self._lock:
            now = now_utc_iso()
            resolved_id = category_id or str(uuid.uuid4())
            self.connection.execute(
                """
                INSERT INTO categories (
                    id, name, slug, parent_id, icon, description, sort_order, is_active,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    slug = excluded.slug,
                    parent_id = excluded.parent_id,
                    icon = excluded.icon,
                    description = excluded.description,
                    sort_order = excluded.sort_order,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (
                    resolved_id,
                    name,
                    slug,
                    parent_id,
                    icon,
                    description,
                    sort_order,
                    int(is_active),
                    now,
                    now,
                ),
            )
            self.connection.commit()
            category = self.get_category(resolved_id)
            if category is None:
                raise RuntimeError("Failed to load category after upsert")
            return category

    def get_category(self, id_or_slug: str) -> Category | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM categories WHERE id = ? OR slug = ? LIMIT 1",
                (id_or_slug, id_or_slug),
            ).fetchone()
        if row is None:
            return None
        return self._to_category(row)

    def list_categories(self, *, active_only: bool = True) -> list[Category]:
        with self._lock:
            query = "SELECT * FROM categories"
            if active_only:
                query += " WHERE is_active = 1"
            query += " ORDER BY sort_order ASC, name ASC"
            rows = self.connection.execute(query).fetchall()
        return [self._to_category(row) for row in rows]

    def active_job_counts_by_category(self) -> dict[str, int]:
        with self._lock:
            rows = self.connection.execute(
                """
                SELECT category_id, COUNT(1) AS c
                FROM jobs
                WHERE status = 'active'
                GROUP BY category_id
                """
            ).fetchall()
        return {row["category_id"]: int(row["c"]) for row in rows}

    def popular_categories(self, limit: int) -> list[PopularCategory]:
        with self._lock:
            rows = self.connection.execute(
                """
                SELECT c.id, c.name, c.slug, COUNT(j.id) AS job_count
                FROM categories c
                LEFT JOIN jobs j ON j.category_id = c.id AND j.status = 'active'
                WHERE c.is_active = 1
                GROUP BY c.id
                ORDER BY job_count DESC, c.name ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            PopularCategory(
                id=row["id"],
                name=row["name"],
                slug=row["slug"],
                job_count=int(row["job_count"]),
            )
            for row in rows
        ]

    def upsert_skill(
        self,
        *,
        skill_id: str | None = None,
        name: str,
        slug: str,
        category_id: str | None = None,
    ) -> Skill:
        with self._lock:
            resolved_id = skill_id or str(uuid.uuid4())
            self.connection.execute(
                """
                INSERT INTO skills (id, name, slug, category_id) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    slug = excluded.slug,
                    category_id = excluded.category_id
                """,
                (resolved_id, name, slug, category_id),
            )
            self.connection.commit()
        return Skill(id=resolved_id, name=name, slug=slug, category_id=category_id)

    def list_skills(self, category_id: str | None = None) -> list[Skill]:
        with self._lock:
            if category_id:
                rows = self.connection.execute(
                    "SELECT * FROM skills WHERE category_id = ? ORDER BY name ASC",
                    (category_id,),
                ).fetchall()
            else:
                rows = self.connection.execute("SELECT * FROM skills ORDER BY name ASC").fetchall()
        return [
            Skill(
                id=row["id"],
                name=row["name"],
                slug=row["slug"],
                category_id=row["category_id"],
            )
            for row in rows
        ]

    def count_existing_skills(self, skill_ids: list[str]) -> int:
        if not skill_ids:
            return 0
        unique_ids = sorted(set(skill_ids))
        with self._lock:
            row = self.connection.execute(
                f"SELECT COUNT(1) AS c FROM skills WHERE id IN ({_placeholders(unique_ids)})",
                unique_ids,
            ).fetchone()
        return int(row["c"])

    def upsert_user(
        self,
        user_id: str,
        *,
        email: str,
        first_name: str,
        last_name: str,
        status: str = "active",
        is_actively_looking: bool = False,
        location_lat: float | None = None,
        location_lng: float | None = None,
        notification_radius_miles: float = 10,
        category_ids: list[str] | None = None,
    ) -> None:
        with self._lock:
            self.connection.execute(
                """
                INSERT INTO users (
                    id, email, first_name, last_name, status, is_actively_looking,
                    location_lat, location_lng, notification_radius_miles, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    status = excluded.status,
                    is_actively_looking = excluded.is_actively_looking,
                    location_lat = excluded.location_lat,
                    location_lng = excluded.location_lng,
                    notification_radius_miles = excluded.notification_radius_miles
                """,
                (
                    user_id,
                    email,
                    first_name,
                    last_name,
                    status,
                    int(is_actively_looking),
                    location_lat,
                    location_lng,
                    notification_radius_miles,
                    now_utc_iso(),
                ),
            )
            if category_ids is not None:
                self.connection.execute(
                    "DELETE FROM user_categories WHERE user_id = ?",
                    (user_id,),
                )
                self.connection.executemany(
                    "INSERT INTO user_categories (user_id, category_id) VALUES (?, ?)",
                    [(user_id, category_id) for category_id in sorted(set(category_ids))],
                )
            self.connection.commit()

    def block_user(self, blocker_id: str, blocked_id: str) -> None:
        with self._lock:
            self.connection.execute(
                """
                INSERT OR IGNORE INTO blocked_users (blocker_id, blocked_id) VALUES (?, ?)
                """,
                (blocker_id, blocked_id),
            )
            self.connection.commit()

    def list_block_relations(self, user_id: str) -> set[str]:
        """Users blocked by ``user_id`` plus users who blocked ``user_id``."""
        with self._lock:
            rows = self.connection.execute(
                """
                SELECT blocked_id AS other_id FROM blocked_users WHERE blocker_id = ?
                UNION
                SELECT blocker_id AS other_id FROM blocked_users WHERE blocked_id = ?
                """,
                (user_id, user_id),
            ).fetchall()
        return {row["other_id"] for row in rows}

    def user_exists(self, user_id: str) -> bool:
        with self._lock:
            row = self.connection.execute(
                "SELECT 1 FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        return row is not None

    def get_user_match_profile(self, user_id: str) -> UserMatchProfile | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT id, location_lat, location_lng, notification_radius_miles
                FROM users WHERE id = ?
                """,
                (user_id,),
            ).fetchone()
            if row is None:
                return None
            category_rows = self.connection.execute(
                "SELECT category_id FROM user_categories WHERE user_id = ? ORDER BY category_id",
                (user_id,),
            ).fetchall()
        return UserMatchProfile(
            user_id=row["id"],
            location_lat=row["location_lat"],
            location_lng=row["location_lng"],
            notification_radius_miles=row["notification_radius_miles"],
            category_ids=[category_row["category_id"] for category_row in category_rows],
            blocked_user_ids=sorted(self.list_block_relations(user_id)),
        )

    def list_notification_candidates(
        self,
        category_id: str,
        excluded_user_ids: set[str] | list[str],
    ) -> list[NotificationCandidate]:
        excluded = sorted(set(excluded_user_ids))
        query = """
            SELECT u.id, u.email, u.first_name, u.location_lat, u.location_lng,
                   u.notification_radius_miles
            FROM users u
            WHERE u.is_actively_looking = 1
              AND u.status = 'active'
              AND u.location_lat IS NOT NULL
              AND u.location_lng IS NOT NULL
              AND EXISTS (
                  SELECT 1 FROM user_categories uc
                  WHERE uc.user_id = u.id AND uc.category_id = ?
              )
        """
        params: list[Any] = [category_id]
        if excluded:
            query += f" AND u.id NOT IN ({_placeholders(excluded)})"
            params.extend(excluded)
        query += " ORDER BY u.id ASC"
        with self._lock:
            rows = self.connection.execute(query, params).fetchall()
        return [
            NotificationCandidate(
                user_id=row["id"],
                email=row["email"],
                first_name=row["first_name"],
                location_lat=row["location_lat"],
                location_lng=row["location_lng"],
                notification_radius_miles=row["notification_radius_miles"],
            )
            for row in rows
        ]

    def insert_job(
        self,
        *,
        employer_id: str,
        fields: dict[str, Any],
        required_skill_ids: list[str] | None = None,
        job_id: str | None = None,
        created_at: str | None = None,
    ) -> str:
        with self._lock:
            resolved_id = job_id or str(uuid.uuid4())
            created = created_at or now_utc_iso()
            self.connection.execute(
                """
                INSERT INTO jobs (
                    id, user_id, category_id, title, description, location_address,
                    location_postcode, location_city, location_lat, location_lng, job_date,
                    start_time, end_time, pay_amount, pay_type, experience_level, status,
                    expires_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    resolved_id,
                    employer_id,
                    fields["category_id"],
                    fields["title"],
                    fields["description"],
                    fields.get("location_address"),
                    fields["location_postcode"],
                    fields.get("location_city"),
                    fields.get("location_lat"),
                    fields.get("location_lng"),
                    fields["job_date"],
                    fields["start_time"],
                    fields.get("end_time"),
                    fields["pay_amount"],
                    fields["pay_type"],
                    fields.get("experience_level"),
                    fields.get("status", "active"),
                    fields.get("expires_at"),
                    created,
                    created,
                ),
            )
            self._replace_required_skills(resolved_id, required_skill_ids or [])
            self.connection.commit()
        return resolved_id

    def update_job(
        self,
        job_id: str,
        fields: dict[str, Any],
        *,
        required_skill_ids: list[str] | None = None,
    ) -> None:
        assignments = {
            column: value for column, value in fields.items() if column in UPDATABLE_JOB_COLUMNS
        }
        with self._lock:
            if assignments:
                set_clause = ", ".join(f"{column} = ?" for column in assignments)
                self.connection.execute(
                    f"UPDATE jobs SET {set_clause}, updated_at = ? WHERE id = ?",
                    [*assignments.values(), now_utc_iso(), job_id],
                )
            if required_skill_ids is not None:
                self._replace_required_skills(job_id, required_skill_ids)
            self.connection.commit()

    def _replace_required_skills(self, job_id: str, skill_ids: list[str]) -> None:
        self.connection.execute("DELETE FROM job_required_skills WHERE job_id = ?", (job_id,))
        self.connection.executemany(
            "INSERT INTO job_required_skills (job_id, skill_id) VALUES (?, ?)",
            [(job_id, skill_id) for skill_id in sorted(set(skill_ids))],
        )

    def increment_job_views(self, job_id: str) -> None:
        with self._lock:
            self.connection.execute(
                "UPDATE jobs SET views_count = views_count + 1 WHERE id = ?",
                (job_id,),
            )
            self.connection.commit()

    def get_job_owner(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT id, user_id, status, location_postcode, location_lat, location_lng
                FROM jobs WHERE id = ?
                """,
                (job_id,),
            ).fetchone()
        return dict(row) if row is not None else None

    def get_job_detail(self, job_id: str) -> JobDetail | None:
        with self._lock:
            row = self.connection.execute(f"{JOB_SELECT} WHERE j.id = ?", (job_id,)).fetchone()
            if row is None:
                return None
            skill_rows = self.connection.execute(
                """
                SELECT s.id, s.name, s.slug
                FROM job_required_skills jrs
                JOIN skills s ON s.id = jrs.skill_id
                WHERE jrs.job_id = ?
                ORDER BY s.name ASC
                """,
                (job_id,),
            ).fetchall()
        base = self._to_job_list_item(row).model_dump()
        return JobDetail(
            **base,
            description=row["description"],
            location_address=row["location_address"],
            end_time=row["end_time"],
            experience_level=row["experience_level"],
            views_count=row["views_count"],
            expires_at=row["expires_at"],
            updated_at=row["updated_at"],
            required_skills=[
                SkillSummary(id=skill["id"], name=skill["name"], slug=skill["slug"])
                for skill in skill_rows
            ],
        )

    def find_jobs(
        self,
        filters: JobSearchFilters,
        *,
        bbox: BoundingBox | None = None,
        sort: SortKey = "newest",
        offset: int = 0,
        limit: int = 20,
        today: str | None = None,
    ) -> list[JobListItem]:
        where, params = build_job_filter_clause(filters, bbox, today=today or today_utc_iso())
        query = f"{JOB_SELECT} WHERE {where} ORDER BY {ORDER_BY[sort]} LIMIT ? OFFSET ?"
        with self._lock:
            rows = self.connection.execute(query, [*params, limit, offset]).fetchall()
        return [self._to_job_list_item(row) for row in rows]

    def list_employer_jobs(
        self,
        employer_id: str,
        *,
        status: str | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[JobListItem], int]:
        where = "j.user_id = ?"
        params: list[Any] = [employer_id]
        if status:
            where += " AND j.status = ?"
            params.append(status)
        with self._lock:
            rows = self.connection.execute(
                f"{JOB_SELECT} WHERE {where} ORDER BY {ORDER_BY['newest']} LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
            total = self.connection.execute(
                f"SELECT COUNT(1) AS c FROM jobs j WHERE {where}",
                params,
            ).fetchone()
        return [self._to_job_list_item(row) for row in rows], int(total["c"])

    def count_jobs(
        self,
        filters: JobSearchFilters,
        *,
        bbox: BoundingBox | None = None,
        today: str | None = None,
    ) -> int:
        where, params = build_job_filter_clause(filters, bbox, today=today or today_utc_iso())
        with self._lock:
            row = self.connection.execute(
                f"SELECT COUNT(1) AS c FROM jobs j WHERE {where}",
                params,
            ).fetchone()
        return int(row["c"])

    def get_setting(self, key: str) -> SystemSetting | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM system_settings WHERE key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        return SystemSetting(key=row["key"], value=row["value"], updated_at=row["updated_at"])

    def list_settings(self) -> list[SystemSetting]:
        with self._lock:
            rows = self.connection.execute(
                "SELECT * FROM system_settings ORDER BY key ASC"
            ).fetchall()
        return [
            SystemSetting(key=row["key"], value=row["value"], updated_at=row["updated_at"])
            for row in rows
        ]

    def upsert_setting(self, key: str, value: str) -> SystemSetting:
        now = now_utc_iso()
        with self._lock:
            self.connection.execute(
                """
                INSERT INTO system_settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, now),
            )
            self.connection.commit()
        return SystemSetting(key=key, value=value, updated_at=now)

    def _to_category(self, row: sqlite3.Row) -> Category:
        return Category(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            parent_id=row["parent_id"],
            icon=row["icon"],
            description=row["description"],
            sort_order=row["sort_order"],
            is_active=bool(row["is_active"]),
        )

    def _to_job_list_item(self, row: sqlite3.Row) -> JobListItem:
        return JobListItem(
            id=row["id"],
            title=row["title"],
            category=CategorySummary(
                id=row["category_id"],
                name=row["category_name"],
                slug=row["category_slug"],
            ),
            employer=EmployerSummary(
                id=row["user_id"],
                first_name=row["employer_first_name"],
                last_name=row["employer_last_name"],
            ),
            location_city=row["location_city"],
            location_postcode=row["location_postcode"],
            location_lat=row["location_lat"],
            location_lng=row["location_lng"],
            job_date=row["job_date"],
            start_time=row["start_time"],
            pay_amount=row["pay_amount"],
            pay_type=row["pay_type"],
            status=row["status"],
            applications_count=row["applications_count"],
            created_at=row["created_at"],
        )
