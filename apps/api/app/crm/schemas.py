from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Any, Generic, TypeVar
from uuid import UUID

from pydantic import (
    AfterValidator,
    AnyHttpUrl,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    EmailStr,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from app.crm.models import ActivityType, DealStage, TaskPriority
from app.crm.versioning import ensure_utc


_ISO_DATETIME_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?$",
    re.IGNORECASE,
)


def _iso_datetime_only(value: Any) -> Any:
    """Version tokens travel as ISO-8601 date-time strings; epoch numbers and bare dates are rejected."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not _ISO_DATETIME_RE.match(value.strip()):
        raise ValueError("must be an ISO-8601 date-time string")
    return value.strip()


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]
VersionToken = Annotated[datetime, BeforeValidator(_iso_datetime_only), AfterValidator(ensure_utc)]

_URL_ADAPTER = TypeAdapter(AnyHttpUrl)
_PHONE_RE = re.compile(r"^[\d\s\-()]+$")
_HEX_COLOR_RE = r"^#[0-9A-Fa-f]{6}$"

T = TypeVar("T")


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and value.strip() == "":
        return None
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReadModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class PageMeta(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> PageMeta:
        total_pages = (total + limit - 1) // limit if limit else 0
        return cls(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class Page(CamelModel, Generic[T]):
    data: list[T]
    pagination: PageMeta


# Companies


class CompanyWrite(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    industry: str | None = Field(default=None, max_length=100)
    website: str | None = Field(default=None, max_length=255)
    address: str | None = None
    employee_count: int | None = Field(default=None, gt=0)
    memo: str | None = None

    @field_validator("website", mode="before")
    @classmethod
    def _validate_website(cls, value: Any) -> Any:
        value = _blank_to_none(value)
        if value is not None:
            _URL_ADAPTER.validate_python(value)
        return value


class CompanyRead(ReadModel):
    id: UUID
    name: str
    industry: str | None
    website: str | None
    address: str | None
    employee_count: int | None
    memo: str | None
    created_at: UtcDatetime
    updated_at: UtcDatetime


class DeletePreviewSetNull(CamelModel):
    contacts: int
    deals: int


class DeletePreviewCascade(CamelModel):
    activities: int
    tasks: int


class DeletePreviewImpact(CamelModel):
    set_null: DeletePreviewSetNull
    cascade: DeletePreviewCascade


class CompanyDeletePreview(CamelModel):
    entity_name: str
    impact: DeletePreviewImpact


# Contacts


class ContactWrite(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=50)
    position: str | None = Field(default=None, max_length=100)
    company_id: UUID | None = None
    memo: str | None = None

    @field_validator("email", "company_id", mode="before")
    @classmethod
    def _blank_optional(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("phone", mode="before")
    @classmethod
    def _validate_phone(cls, value: Any) -> Any:
        value = _blank_to_none(value)
        if value is not None and not _PHONE_RE.match(str(value)):
            raise ValueError("invalid phone number format")
        return value


class ContactRead(ReadModel):
    id: UUID
    name: str
    email: str | None
    phone: str | None
    position: str | None
    company_id: UUID | None
    memo: str | None
    created_at: UtcDatetime
    updated_at: UtcDatetime


# Deals


class DealCreate(CamelModel):
    title: str = Field(min_length=1, max_length=255)
    amount: int = Field(default=0, ge=0)
    stage: DealStage = DealStage.LEAD
    expected_close_date: UtcDatetime | None = None
    contact_id: UUID | None = None
    company_id: UUID | None = None
    memo: str | None = None

    @field_validator("expected_close_date", "contact_id", "company_id", mode="before")
    @classmethod
    def _blank_optional(cls, value: Any) -> Any:
        return _blank_to_none(value)


class DealUpdate(CamelModel):
    """Partial update of a deal.

    ``updated_at`` is the version token the client last saw; when present it
    is checked against the stored value before anything is written.
    """

    title: str | None = Field(default=None, min_length=1, max_length=255)
    amount: int | None = Field(default=None, ge=0)
    stage: DealStage | None = None
    expected_close_date: UtcDatetime | None = None
    contact_id: UUID | None = None
    company_id: UUID | None = None
    memo: str | None = None
    updated_at: VersionToken | None = None

    @field_validator("expected_close_date", "contact_id", "company_id", mode="before")
    @classmethod
    def _blank_optional(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("title", "amount", "stage")
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("field cannot be null")
        return value


class DealStageUpdate(CamelModel):
    stage: DealStage
    updated_at: VersionToken


class DealRead(ReadModel):
    id: UUID
    title: str
    amount: int
    stage: DealStage
    expected_close_date: UtcDatetime | None
    contact_id: UUID | None
    company_id: UUID | None
    memo: str | None
    created_at: UtcDatetime
    updated_at: UtcDatetime


class StageSummary(CamelModel):
    count: int = 0
    total: int = 0


class DealSummary(CamelModel):
    stages: dict[DealStage, StageSummary]


# Activities


class ActivityWrite(CamelModel):
    type: ActivityType
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    scheduled_at: UtcDatetime | None = None
    contact_id: UUID | None = None
    company_id: UUID | None = None
    deal_id: UUID | None = None

    @field_validator("scheduled_at", "contact_id", "company_id", "deal_id", mode="before")
    @classmethod
    def _blank_optional(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @model_validator(mode="after")
    def _require_parent(self) -> ActivityWrite:
        if self.contact_id is None and self.company_id is None and self.deal_id is None:
            raise ValueError("an activity must reference a contact, company or deal")
        return self


class ActivityCompleteRequest(CamelModel):
    completed_at: UtcDatetime | None = None


class ActivityRead(ReadModel):
    id: UUID
    type: ActivityType
    title: str
    description: str | None
    scheduled_at: UtcDatetime | None
    completed_at: UtcDatetime | None
    contact_id: UUID | None
    company_id: UUID | None
    deal_id: UUID | None
    created_at: UtcDatetime
    updated_at: UtcDatetime


# Tasks


class TaskCreate(CamelModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    due_date: UtcDatetime | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    contact_id: UUID | None = None
    company_id: UUID | None = None
    deal_id: UUID | None = None

    @field_validator("due_date", "contact_id", "company_id", "deal_id", mode="before")
    @classmethod
    def _blank_optional(cls, value: Any) -> Any:
        return _blank_to_none(value)


class TaskUpdate(TaskCreate):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    priority: TaskPriority | None = None
    is_completed: bool | None = None


class TaskRead(ReadModel):
    id: UUID
    title: str
    description: str | None
    due_date: UtcDatetime | None
    priority: TaskPriority
    is_completed: bool
    contact_id: UUID | None
    company_id: UUID | None
    deal_id: UUID | None
    created_at: UtcDatetime
    updated_at: UtcDatetime


# Tags and email templates


class TagCreate(CamelModel):
    name: str = Field(min_length=1, max_length=50)
    color: str = Field(pattern=_HEX_COLOR_RE)


class TagUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=50)
    color: str | None = Field(default=None, pattern=_HEX_COLOR_RE)


class TagRead(ReadModel):
    id: UUID
    name: str
    color: str
    created_at: UtcDatetime


class EmailTemplateWrite(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    subject: str = Field(min_length=1, max_length=255)
    body: str = Field(min_length=1)


class EmailTemplateRead(ReadModel):
    id: UUID
    name: str
    subject: str
    body: str
    created_at: UtcDatetime
    updated_at: UtcDatetime


# Search


class ContactSearchHit(ReadModel):
    id: UUID
    name: str
    email: str | None
    phone: str | None
    position: str | None


class CompanySearchHit(ReadModel):
    id: UUID
    name: str
    industry: str | None
    website: str | None


class DealSearchHit(ReadModel):
    id: UUID
    title: str
    amount: int
    stage: DealStage


class SearchResults(CamelModel):
    contacts: list[ContactSearchHit] = Field(default_factory=list)
    companies: list[CompanySearchHit] = Field(default_factory=list)
    deals: list[DealSearchHit] = Field(default_factory=list)
