from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.crm.errors import CRMError, PermissionDeniedError
from app.crm.models import ActivityType, DealStage, TaskPriority
from app.crm.schemas import (
    ActivityCompleteRequest,
    ActivityRead,
    ActivityWrite,
    CompanyDeletePreview,
    CompanyRead,
    CompanyWrite,
    ContactRead,
    ContactWrite,
    DealCreate,
    DealRead,
    DealStageUpdate,
    DealSummary,
    DealUpdate,
    EmailTemplateRead,
    EmailTemplateWrite,
    Page,
    SearchResults,
    TagCreate,
    TagRead,
    TagUpdate,
    TaskCreate,
    TaskRead,
    TaskUpdate,
)
from app.crm.search import search_entities
from app.crm.service import (
    ActivityService,
    ActorUser,
    CompanyService,
    ContactService,
    DealService,
    EmailTemplateService,
    TagService,
    TaskService,
)

CRM_PERMISSIONS = frozenset(
    {
        "crm.companies.read",
        "crm.companies.write",
        "crm.contacts.read",
        "crm.contacts.write",
        "crm.deals.read",
        "crm.deals.write",
        "crm.deals.change_stage",
        "crm.activities.read",
        "crm.activities.write",
        "crm.tasks.read",
        "crm.tasks.write",
        "crm.tags.read",
        "crm.tags.write",
        "crm.templates.read",
        "crm.templates.write",
        "crm.search.read",
    }
)

companies_router = APIRouter(prefix="/api/companies", tags=["crm.companies"])
contacts_router = APIRouter(prefix="/api/contacts", tags=["crm.contacts"])
deals_router = APIRouter(prefix="/api/deals", tags=["crm.deals"])
activities_router = APIRouter(prefix="/api/activities", tags=["crm.activities"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["crm.tasks"])
tags_router = APIRouter(prefix="/api/tags", tags=["crm.tags"])
templates_router = APIRouter(prefix="/api/email-templates", tags=["crm.email_templates"])
search_router = APIRouter(prefix="/api", tags=["crm.search"])

router = APIRouter()
for _sub_router in (
    companies_router,
    contacts_router,
    deals_router,
    activities_router,
    tasks_router,
    tags_router,
    templates_router,
    search_router,
):
    router.include_router(_sub_router)

company_service = CompanyService()
contact_service = ContactService()
deal_service = DealService()
activity_service = ActivityService()
task_service = TaskService()
tag_service = TagService()
template_service = EmailTemplateService()

_settings = get_settings()
PageParam = Query(default=1, ge=1)
LimitParam = Query(default=_settings.default_page_size, ge=1, le=_settings.max_page_size)


@dataclass
class ErrorEnvelope:
    error: str
    code: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or request.headers.get("x-correlation-id")
    payload = ErrorEnvelope(
        error=message,
        code=code,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def crm_error_response(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    settings = get_settings()
    normalized_roles = {str(role).lower() for role in auth_user.roles}

    permissions = set(auth_user.roles)
    if "admin" in normalized_roles or (settings.authz_default_allow and not auth_user.authenticated):
        permissions |= CRM_PERMISSIONS

    return ActorUser(
        user_id=auth_user.sub,
        permissions=permissions,
        correlation_id=get_correlation_id(),
        is_authenticated=auth_user.authenticated,
        roles=list(auth_user.roles),
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise PermissionDeniedError(permission)


# Companies


@companies_router.get("", response_model=Page[CompanyRead])
def list_companies(
    request: Request,
    page: int = PageParam,
    limit: int = LimitParam,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Page[CompanyRead] | JSONResponse:
    try:
        require_permission(user, "crm.companies.read")
        return company_service.list_companies(db, page, limit)
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.post("", response_model=CompanyRead, status_code=status.HTTP_201_CREATED)
def create_company(
    request: Request,
    dto: CompanyWrite,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(user, "crm.companies.write")
        return company_service.create_company(db, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.get("/{company_id}", response_model=CompanyRead)
def get_company(
    request: Request,
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(user, "crm.companies.read")
        return company_service.get_company(db, company_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.put("/{company_id}", response_model=CompanyRead)
def update_company(
    request: Request,
    company_id: uuid.UUID,
    dto: CompanyWrite,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyRead | JSONResponse:
    try:
        require_permission(user, "crm.companies.write")
        return company_service.update_company(db, company_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.delete("/{company_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_company(
    request: Request,
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.companies.write")
        company_service.delete_company(db, company_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except CRMError as exc:
        return crm_error_response(request, exc)


@companies_router.get("/{company_id}/delete-preview", response_model=CompanyDeletePreview)
def preview_company_delete(
    request: Request,
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CompanyDeletePreview | JSONResponse:
    try:
        require_permission(user, "crm.companies.read")
        return company_service.delete_preview(db, company_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


# Contacts


@contacts_router.get("", response_model=Page[ContactRead])
def list_contacts(
    request: Request,
    page: int = PageParam,
    limit: int = LimitParam,
    company_id: uuid.UUID | None = Query(default=None, alias="companyId"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Page[ContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.list_contacts(db, page, limit, company_id=company_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@contacts_router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactWrite,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.create_contact(db, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@contacts_router.get("/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.get_contact(db, contact_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@contacts_router.put("/{contact_id}", response_model=ContactRead)
def update_contact(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactWrite,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.update_contact(db, contact_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@contacts_router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.contacts.write")
        contact_service.delete_contact(db, contact_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except CRMError as exc:
        return crm_error_response(request, exc)


# Deals


@deals_router.get("", response_model=Page[DealRead])
def list_deals(
    request: Request,
    page: int = PageParam,
    limit: int = LimitParam,
    stage: DealStage | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Page[DealRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.list_deals(db, page, limit, stage=stage)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.create_deal(db, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.get("/summary", response_model=DealSummary)
def summarize_deals(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealSummary | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.summarize(db)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.get("/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.get_deal(db, deal_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.put("/{deal_id}", response_model=DealRead)
def update_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        if dto.stage is not None:
            require_permission(user, "crm.deals.change_stage")
        return deal_service.update_deal(db, deal_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.patch("/{deal_id}/stage", response_model=DealRead)
def change_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.change_stage")
        return deal_service.change_stage(db, user, deal_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@deals_router.delete("/{deal_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.deals.write")
        deal_service.delete_deal(db, deal_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except CRMError as exc:
        return crm_error_response(request, exc)


# Activities


@activities_router.get("", response_model=Page[ActivityRead])
def list_activities(
    request: Request,
    page: int = PageParam,
    limit: int = LimitParam,
    contact_id: uuid.UUID | None = Query(default=None, alias="contactId"),
    company_id: uuid.UUID | None = Query(default=None, alias="companyId"),
    deal_id: uuid.UUID | None = Query(default=None, alias="dealId"),
    activity_type: ActivityType | None = Query(default=None, alias="type"),
    from_date: date | None = Query(default=None, alias="fromDate"),
    to_date: date | None = Query(default=None, alias="toDate"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Page[ActivityRead] | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        return activity_service.list_activities(
            db,
            filters={
                "contact_id": contact_id,
                "company_id": company_id,
                "deal_id": deal_id,
                "type": activity_type,
                "from_date": from_date,
                "to_date": to_date,
            },
            page=page,
            limit=limit,
        )
    except CRMError as exc:
        return crm_error_response(request, exc)


@activities_router.post("", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def create_activity(
    request: Request,
    dto: ActivityWrite,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return activity_service.create_activity(db, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@activities_router.get("/{activity_id}", response_model=ActivityRead)
def get_activity(
    request: Request,
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.read")
        return activity_service.get_activity(db, activity_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@activities_router.put("/{activity_id}", response_model=ActivityRead)
def update_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: ActivityWrite,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return activity_service.update_activity(db, activity_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@activities_router.patch("/{activity_id}/complete", response_model=ActivityRead)
def complete_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: ActivityCompleteRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ActivityRead | JSONResponse:
    try:
        require_permission(user, "crm.activities.write")
        return activity_service.complete_activity(db, activity_id, dto or ActivityCompleteRequest())
    except CRMError as exc:
        return crm_error_response(request, exc)


@activities_router.delete("/{activity_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_activity(
    request: Request,
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.activities.write")
        activity_service.delete_activity(db, activity_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except CRMError as exc:
        return crm_error_response(request, exc)


# Tasks


@tasks_router.get("", response_model=Page[TaskRead])
def list_tasks(
    request: Request,
    page: int = PageParam,
    limit: int = LimitParam,
    is_completed: bool | None = Query(default=None, alias="isCompleted"),
    priority: TaskPriority | None = Query(default=None),
    deal_id: uuid.UUID | None = Query(default=None, alias="dealId"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Page[TaskRead] | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.list_tasks(
            db,
            filters={"is_completed": is_completed, "priority": priority, "deal_id": deal_id},
            page=page,
            limit=limit,
        )
    except CRMError as exc:
        return crm_error_response(request, exc)


@tasks_router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.create_task(db, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@tasks_router.get("/{task_id}", response_model=TaskRead)
def get_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.read")
        return task_service.get_task(db, task_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@tasks_router.put("/{task_id}", response_model=TaskRead)
def update_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.update_task(db, task_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@tasks_router.patch("/{task_id}/complete", response_model=TaskRead)
def complete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "crm.tasks.write")
        return task_service.complete_task(db, task_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@tasks_router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.tasks.write")
        task_service.delete_task(db, task_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except CRMError as exc:
        return crm_error_response(request, exc)


# Tags


@tags_router.get("", response_model=list[TagRead])
def list_tags(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TagRead] | JSONResponse:
    try:
        require_permission(user, "crm.tags.read")
        return tag_service.list_tags(db)
    except CRMError as exc:
        return crm_error_response(request, exc)


@tags_router.post("", response_model=TagRead, status_code=status.HTTP_201_CREATED)
def create_tag(
    request: Request,
    dto: TagCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TagRead | JSONResponse:
    try:
        require_permission(user, "crm.tags.write")
        return tag_service.create_tag(db, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@tags_router.get("/{tag_id}", response_model=TagRead)
def get_tag(
    request: Request,
    tag_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TagRead | JSONResponse:
    try:
        require_permission(user, "crm.tags.read")
        return tag_service.get_tag(db, tag_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@tags_router.put("/{tag_id}", response_model=TagRead)
def update_tag(
    request: Request,
    tag_id: uuid.UUID,
    dto: TagUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TagRead | JSONResponse:
    try:
        require_permission(user, "crm.tags.write")
        return tag_service.update_tag(db, tag_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@tags_router.delete("/{tag_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_tag(
    request: Request,
    tag_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.tags.write")
        tag_service.delete_tag(db, tag_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except CRMError as exc:
        return crm_error_response(request, exc)


# Email templates


@templates_router.get("", response_model=Page[EmailTemplateRead])
def list_email_templates(
    request: Request,
    page: int = PageParam,
    limit: int = LimitParam,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Page[EmailTemplateRead] | JSONResponse:
    try:
        require_permission(user, "crm.templates.read")
        return template_service.list_templates(db, page, limit)
    except CRMError as exc:
        return crm_error_response(request, exc)


@templates_router.post("", response_model=EmailTemplateRead, status_code=status.HTTP_201_CREATED)
def create_email_template(
    request: Request,
    dto: EmailTemplateWrite,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailTemplateRead | JSONResponse:
    try:
        require_permission(user, "crm.templates.write")
        return template_service.create_template(db, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@templates_router.get("/{template_id}", response_model=EmailTemplateRead)
def get_email_template(
    request: Request,
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailTemplateRead | JSONResponse:
    try:
        require_permission(user, "crm.templates.read")
        return template_service.get_template(db, template_id)
    except CRMError as exc:
        return crm_error_response(request, exc)


@templates_router.put("/{template_id}", response_model=EmailTemplateRead)
def update_email_template(
    request: Request,
    template_id: uuid.UUID,
    dto: EmailTemplateWrite,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EmailTemplateRead | JSONResponse:
    try:
        require_permission(user, "crm.templates.write")
        return template_service.update_template(db, template_id, dto)
    except CRMError as exc:
        return crm_error_response(request, exc)


@templates_router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_email_template(
    request: Request,
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.templates.write")
        template_service.delete_template(db, template_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except CRMError as exc:
        return crm_error_response(request, exc)


# Search


@search_router.get("/search", response_model=SearchResults)
def global_search(
    request: Request,
    q: str | None = Query(default=None),
    limit: int = Query(default=_settings.search_default_limit, ge=1, le=_settings.max_page_size),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SearchResults | JSONResponse:
    try:
        require_permission(user, "crm.search.read")
        return search_entities(db, q, limit)
    except CRMError as exc:
        return crm_error_response(request, exc)
