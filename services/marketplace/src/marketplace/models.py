from __future__ import annotations

from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from marketplace.geo import GeoPoint

JobStatus = Literal[
    "draft",
    "pending_review",
    "active",
    "paused",
    "filled",
    "completed",
    "expired",
    "rejected",
]
PayType = Literal["hourly", "daily", "fixed"]
ExperienceLevel = Literal["entry", "intermediate", "experienced"]
SortKey = Literal["newest", "highest_pay", "ending_soon", "nearest"]

HH_MM_PATTERN = r"^([01][0-9]|2[0-3]):[0-5][0-9]$"


class PostcodeLookupResult(BaseModel):
    postcode: str
    latitude: float
    longitude: float
    city: str | None = None
    region: str | None = None
    country: str | None = None
    admin_district: str | None = None

    def point(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)


class LocationSearchResult(BaseModel):
    postcode: str
    city: str | None = None
    region: str | None = None
    latitude: float
    longitude: float


class CategorySummary(BaseModel):
    id: str
    name: str
    slug: str


class EmployerSummary(BaseModel):
    id: str
    first_name: str
    last_name: str


class SkillSummary(BaseModel):
    id: str
    name: str
    slug: str


class JobListItem(BaseModel):
    id: str
    title: str
    category: CategorySummary
    employer: EmployerSummary
    location_city: str | None = None
    location_postcode: str
    location_lat: float | None = None
    location_lng: float | None = None
    job_date: str
    start_time: str
    pay_amount: float
    pay_type: PayType
    status: JobStatus
    applications_count: int = 0
    created_at: str

    def point(self) -> GeoPoint | None:
        if self.location_lat is None or self.location_lng is None:
            return None
        return GeoPoint(self.location_lat, self.location_lng)


class JobDetail(JobListItem):
    description: str
    location_address: str | None = None
    end_time: str | None = None
    experience_level: ExperienceLevel | None = None
    views_count: int = 0
    expires_at: str | None = None
    updated_at: str
    required_skills: list[SkillSummary] = Field(default_factory=list)
    is_owner: bool | None = None


class MatchResult(BaseModel):
    job: JobListItem
    distance_miles: float | None = None


class SearchPage(BaseModel):
    items: list[MatchResult]
    total: int
    page: int
    total_pages: int
    applied_filters: dict[str, Any] = Field(default_factory=dict)


class EmployerJobsPage(BaseModel):
    items: list[JobListItem]
    total: int
    page: int
    total_pages: int


class JobSearchFilters(BaseModel):
    category_id: str | None = None
    category_slug: str | None = None
    city: str | None = None
    min_pay: float | None = Field(default=None, ge=0)
    max_pay: float | None = Field(default=None, ge=0)
    pay_type: PayType | None = None
    date_from: date | None = None
    date_to: date | None = None
    experience_level: ExperienceLevel | None = None
    keyword: str | None = None
    skills: list[str] = Field(default_factory=list)
    status: JobStatus = "active"
    category_ids: list[str] = Field(default_factory=list)
    employer_ids_excluded: list[str] = Field(default_factory=list)
    created_since: str | None = None


class NotificationCandidate(BaseModel):
    user_id: str
    email: str
    first_name: str
    location_lat: float
    location_lng: float
    notification_radius_miles: float

    def point(self) -> GeoPoint:
        return GeoPoint(self.location_lat, self.location_lng)


class MatchedUser(BaseModel):
    user_id: str
    email: str
    first_name: str
    distance_miles: float


class UserMatchProfile(BaseModel):
    user_id: str
    location_lat: float | None = None
    location_lng: float | None = None
    notification_radius_miles: float = 10
    category_ids: list[str] = Field(default_factory=list)
    blocked_user_ids: list[str] = Field(default_factory=list)

    def point(self) -> GeoPoint | None:
        if self.location_lat is None or self.location_lng is None:
            return None
        return GeoPoint(self.location_lat, self.location_lng)


class JobCreateRequest(BaseModel):
    category_id: str
    title: str = Field(..., min_length=3, max_length=120)
    description: str = Field(..., min_length=10, max_length=5000)
    location_postcode: str = Field(..., min_length=2, max_length=16)
    location_address: str | None = Field(default=None, max_length=255)
    location_city: str | None = Field(default=None, max_length=120)
    job_date: date
    start_time: str = Field(..., pattern=HH_MM_PATTERN)
    end_time: str | None = Field(default=None, pattern=HH_MM_PATTERN)
    pay_amount: float = Field(..., gt=0)
    pay_type: PayType
    experience_level: ExperienceLevel | None = None
    required_skill_ids: list[str] = Field(default_factory=list)


class JobUpdateRequest(BaseModel):
    category_id: str | None = None
    title: str | None = Field(default=None, min_length=3, max_length=120)
    description: str | None = Field(default=None, min_length=10, max_length=5000)
    location_postcode: str | None = Field(default=None, min_length=2, max_length=16)
    location_address: str | None = Field(default=None, max_length=255)
    location_city: str | None = Field(default=None, max_length=120)
    job_date: date | None = None
    start_time: str | None = Field(default=None, pattern=HH_MM_PATTERN)
    end_time: str | None = Field(default=None, pattern=HH_MM_PATTERN)
    pay_amount: float | None = Field(default=None, gt=0)
    pay_type: PayType | None = None
    experience_level: ExperienceLevel | None = None
    required_skill_ids: list[str] | None = None


class JobStatusUpdateRequest(BaseModel):
    status: JobStatus


class Category(BaseModel):
    id: str
    name: str
    slug: str
    parent_id: str | None = None
    icon: str | None = None
    description: str | None = None
    sort_order: int = 0
    is_active: bool = True


class CategoryTreeNode(Category):
    job_count: int = 0
    children: list[CategoryTreeNode] = Field(default_factory=list)


class PopularCategory(CategorySummary):
    job_count: int


class CategoryUpsertRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    slug: str = Field(..., min_length=1, max_length=120, pattern=r"^[a-z0-9-]+$")
    parent_id: str | None = None
    icon: str | None = None
    description: str | None = Field(default=None, max_length=500)
    sort_order: int = 0
    is_active: bool = True

    @model_validator(mode="after")
    def validate_parent(self) -> CategoryUpsertRequest:
        if self.parent_id is not None and not self.parent_id.strip():
            raise ValueError("parent_id must be a non-empty string when provided.")
        return self


class Skill(BaseModel):
    id: str
    name: str
    slug: str
    category_id: str | None = None


class SystemSetting(BaseModel):
    key: str
    value: str
    updated_at: str


class SettingUpdateRequest(BaseModel):
    value: str = Field(..., max_length=2000)


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]


class BulkPostcodeRequest(BaseModel):
    postcodes: list[str] = Field(..., min_length=1, max_length=100)
