from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time, timezone
from typing import Any, TypeVar

from pydantic import BaseModel
from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.database import Base, transaction
from app.crm.errors import ConflictError, InvalidArgumentError, NotFoundError, StaleDealError
from app.crm.models import (
    CRMActivity,
    CRMCompany,
    CRMContact,
    CRMDeal,
    CRMEmailTemplate,
    CRMTag,
    CRMTask,
    DealStage,
    utcnow,
)
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
    DeletePreviewCascade,
    DeletePreviewImpact,
    DeletePreviewSetNull,
    EmailTemplateRead,
    EmailTemplateWrite,
    Page,
    PageMeta,
    StageSummary,
    TagCreate,
    TagRead,
    TagUpdate,
    TaskCreate,
    TaskRead,
    TaskUpdate,
)
from app.crm.stage_transition import (
    Clock,
    StageTransitionService,
    guarded_deal_update,
    load_deal,
    record_stage_change,
)
from app.crm.versioning import versions_match


logger = logging.getLogger("app.crm")

ModelT = TypeVar("ModelT", bound=Base)
ReadT = TypeVar("ReadT", bound=BaseModel)


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str]
    correlation_id: str | None = None
    is_authenticated: bool = False
    roles: list[str] = field(default_factory=list)


def paginate(
    session: Session,
    stmt: Select[Any],
    read_model: type[ReadT],
    page: int,
    limit: int,
) -> Page[ReadT]:
    total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = session.scalars(stmt.offset((page - 1) * limit).limit(limit)).all()
    return Page[read_model](  # type: ignore[valid-type]
        data=[read_model.model_validate(row) for row in rows],
        pagination=PageMeta.build(page, limit, total),
    )


def _get_or_404(session: Session, model: type[ModelT], entity_id: uuid.UUID, label: str) -> ModelT:
    row = session.scalar(select(model).where(model.id == entity_id).execution_options(populate_existing=True))  # type: ignore[attr-defined]
    if row is None:
        raise NotFoundError(label, entity_id)
    return row


def _ensure_references(session: Session, payload: dict[str, Any]) -> None:
    references = {
        "company_id": (CRMCompany, "company"),
        "contact_id": (CRMContact, "contact"),
        "deal_id": (CRMDeal, "deal"),
    }
    missing: list[str] = []
    for field_name, (model, _label) in references.items():
        value = payload.get(field_name)
        if value is None:
            continue
        if session.scalar(select(model.id).where(model.id == value)) is None:
            missing.append(field_name)
    if missing:
        raise InvalidArgumentError(
            f"referenced record does not exist: {', '.join(sorted(missing))}",
            fields=missing,
        )


class CompanyService:
    entity_type = "crm.company"

    def list_companies(self, session: Session, page: int, limit: int) -> Page[CompanyRead]:
        stmt = select(CRMCompany).order_by(CRMCompany.created_at.desc(), CRMCompany.id)
        return paginate(session, stmt, CompanyRead, page, limit)

    def create_company(self, session: Session, dto: CompanyWrite) -> CompanyRead:
        with transaction(session):
            company = CRMCompany(**dto.model_dump())
            session.add(company)
            session.flush()
        logger.info("company.created", extra={"entity_type": self.entity_type, "entity_id": str(company.id)})
        return CompanyRead.model_validate(company)

    def get_company(self, session: Session, company_id: uuid.UUID) -> CompanyRead:
        return CompanyRead.model_validate(_get_or_404(session, CRMCompany, company_id, "Company"))

    def update_company(self, session: Session, company_id: uuid.UUID, dto: CompanyWrite) -> CompanyRead:
        with transaction(session):
            company = _get_or_404(session, CRMCompany, company_id, "Company")
            for key, value in dto.model_dump().items():
                setattr(company, key, value)
            company.updated_at = utcnow()
        return self.get_company(session, company_id)

    def delete_company(self, session: Session, company_id: uuid.UUID) -> None:
        with transaction(session):
            company = _get_or_404(session, CRMCompany, company_id, "Company")
            session.delete(company)
        session.expire_all()
        logger.info("company.deleted", extra={"entity_type": self.entity_type, "entity_id": str(company_id)})

    def delete_preview(self, session: Session, company_id: uuid.UUID) -> CompanyDeletePreview:
        company = _get_or_404(session, CRMCompany, company_id, "Company")

        def _count(model: type[Base]) -> int:
            column = model.company_id  # type: ignore[attr-defined]
            return session.scalar(select(func.count()).select_from(model).where(column == company_id)) or 0

        return CompanyDeletePreview(
            entity_name=company.name,
            impact=DeletePreviewImpact(
                set_null=DeletePreviewSetNull(contacts=_count(CRMContact), deals=_count(CRMDeal)),
                cascade=DeletePreviewCascade(activities=_count(CRMActivity), tasks=_count(CRMTask)),
            ),
        )


class ContactService:
    entity_type = "crm.contact"

    def list_contacts(
        self,
        session: Session,
        page: int,
        limit: int,
        company_id: uuid.UUID | None = None,
    ) -> Page[ContactRead]:
        stmt = select(CRMContact)
        if company_id is not None:
            stmt = stmt.where(CRMContact.company_id == company_id)
        stmt = stmt.order_by(CRMContact.created_at.desc(), CRMContact.id)
        return paginate(session, stmt, ContactRead, page, limit)

    def create_contact(self, session: Session, dto: ContactWrite) -> ContactRead:
        payload = dto.model_dump()
        with transaction(session):
            _ensure_references(session, payload)
            contact = CRMContact(**payload)
            session.add(contact)
            session.flush()
        logger.info("contact.created", extra={"entity_type": self.entity_type, "entity_id": str(contact.id)})
        return ContactRead.model_validate(contact)

    def get_contact(self, session: Session, contact_id: uuid.UUID) -> ContactRead:
        return ContactRead.model_validate(_get_or_404(session, CRMContact, contact_id, "Contact"))

    def update_contact(self, session: Session, contact_id: uuid.UUID, dto: ContactWrite) -> ContactRead:
        payload = dto.model_dump()
        with transaction(session):
            contact = _get_or_404(session, CRMContact, contact_id, "Contact")
            _ensure_references(session, payload)
            for key, value in payload.items():
                setattr(contact, key, value)
            contact.updated_at = utcnow()
        return self.get_contact(session, contact_id)

    def delete_contact(self, session: Session, contact_id: uuid.UUID) -> None:
        with transaction(session):
            contact = _get_or_404(session, CRMContact, contact_id, "Contact")
            session.delete(contact)
        session.expire_all()


class DealService:
    """Deal CRUD.

    Every write that touches a deal goes through ``guarded_deal_update`` so
    that ``updated_at`` keeps working as a version token: stage moves made
    through a full update are audited exactly like ``change_stage``.
    """

    entity_type = "crm.deal"

    def __init__(self, clock: Clock = utcnow) -> None:
        self.clock = clock
        self.stage_transitions = StageTransitionService(clock=clock)

    def list_deals(
        self,
        session: Session,
        page: int,
        limit: int,
        stage: DealStage | None = None,
    ) -> Page[DealRead]:
        stmt = select(CRMDeal)
        if stage is not None:
            stmt = stmt.where(CRMDeal.stage == stage)
        stmt = stmt.order_by(CRMDeal.created_at.desc(), CRMDeal.id)
        return paginate(session, stmt, DealRead, page, limit)

    def create_deal(self, session: Session, dto: DealCreate) -> DealRead:
        payload = dto.model_dump()
        now = self.clock()
        with transaction(session):
            _ensure_references(session, payload)
            deal = CRMDeal(**payload, created_at=now, updated_at=now)
            session.add(deal)
            session.flush()
            deal_id = deal.id
        logger.info("deal.created", extra={"entity_type": self.entity_type, "entity_id": str(deal_id)})
        return self.get_deal(session, deal_id)

    def get_deal(self, session: Session, deal_id: uuid.UUID) -> DealRead:
        deal = load_deal(session, deal_id)
        if deal is None:
            raise NotFoundError("Deal", deal_id)
        return DealRead.model_validate(deal)

    def update_deal(self, session: Session, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        payload = dto.model_dump(exclude_unset=True)
        client_token = payload.pop("updated_at", None)

        with transaction(session):
            deal = load_deal(session, deal_id)
            if deal is None:
                raise NotFoundError("Deal", deal_id)
            if client_token is not None and not versions_match(client_token, deal.updated_at):
                raise StaleDealError(deal_id)
            _ensure_references(session, payload)

            previous_stage = DealStage(deal.stage)
            new_token = guarded_deal_update(session, deal_id, deal.updated_at, payload, self.clock())
            new_stage = payload.get("stage")
            if new_stage is not None and new_stage != previous_stage:
                record_stage_change(session, deal_id, previous_stage, new_stage, at=new_token)

        logger.info("deal.updated", extra={"entity_type": self.entity_type, "entity_id": str(deal_id)})
        return self.get_deal(session, deal_id)

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: DealStageUpdate,
    ) -> DealRead:
        deal = self.stage_transitions.transition_stage(
            session,
            deal_id,
            dto.stage,
            dto.updated_at,
            actor_user_id=actor_user.user_id,
        )
        return DealRead.model_validate(deal)

    def delete_deal(self, session: Session, deal_id: uuid.UUID) -> None:
        with transaction(session):
            deal = load_deal(session, deal_id)
            if deal is None:
                raise NotFoundError("Deal", deal_id)
            session.delete(deal)
        session.expire_all()
        logger.info("deal.deleted", extra={"entity_type": self.entity_type, "entity_id": str(deal_id)})

    def summarize(self, session: Session) -> DealSummary:
        stages = {stage: StageSummary() for stage in DealStage}
        rows = session.execute(
            select(CRMDeal.stage, func.count(CRMDeal.id), func.coalesce(func.sum(CRMDeal.amount), 0)).group_by(
                CRMDeal.stage
            )
        ).all()
        for stage, count, total in rows:
            stages[DealStage(stage)] = StageSummary(count=int(count), total=int(total))
        return DealSummary(stages=stages)


class ActivityService:
    entity_type = "crm.activity"

    def list_activities(
        self,
        session: Session,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> Page[ActivityRead]:
        conditions = []
        for key in ("contact_id", "company_id", "deal_id"):
            if filters.get(key) is not None:
                conditions.append(getattr(CRMActivity, key) == filters[key])
        if filters.get("type") is not None:
            conditions.append(CRMActivity.type == filters["type"])
        if filters.get("from_date") is not None:
            start = datetime.combine(filters["from_date"], dt_time.min, tzinfo=timezone.utc)
            conditions.append(CRMActivity.scheduled_at >= start)
        if filters.get("to_date") is not None:
            end = datetime.combine(filters["to_date"], dt_time.max, tzinfo=timezone.utc)
            conditions.append(CRMActivity.scheduled_at <= end)

        stmt = select(CRMActivity)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.order_by(
            CRMActivity.scheduled_at.desc().nulls_last(),
            CRMActivity.created_at.desc(),
            CRMActivity.id,
        )
        return paginate(session, stmt, ActivityRead, page, limit)

    def create_activity(self, session: Session, dto: ActivityWrite) -> ActivityRead:
        payload = dto.model_dump()
        with transaction(session):
            _ensure_references(session, payload)
            activity = CRMActivity(**payload)
            session.add(activity)
            session.flush()
        return ActivityRead.model_validate(activity)

    def get_activity(self, session: Session, activity_id: uuid.UUID) -> ActivityRead:
        return ActivityRead.model_validate(_get_or_404(session, CRMActivity, activity_id, "Activity"))

    def update_activity(self, session: Session, activity_id: uuid.UUID, dto: ActivityWrite) -> ActivityRead:
        payload = dto.model_dump()
        with transaction(session):
            activity = _get_or_404(session, CRMActivity, activity_id, "Activity")
            _ensure_references(session, payload)
            for key, value in payload.items():
                setattr(activity, key, value)
            activity.updated_at = utcnow()
        return self.get_activity(session, activity_id)

    def complete_activity(
        self,
        session: Session,
        activity_id: uuid.UUID,
        dto: ActivityCompleteRequest,
    ) -> ActivityRead:
        with transaction(session):
            activity = _get_or_404(session, CRMActivity, activity_id, "Activity")
            now = utcnow()
            activity.completed_at = dto.completed_at or now
            activity.updated_at = now
        return self.get_activity(session, activity_id)

    def delete_activity(self, session: Session, activity_id: uuid.UUID) -> None:
        with transaction(session):
            activity = _get_or_404(session, CRMActivity, activity_id, "Activity")
            session.delete(activity)


class TaskService:
    entity_type = "crm.task"

    def list_tasks(
        self,
        session: Session,
        filters: dict[str, Any],
        page: int,
        limit: int,
    ) -> Page[TaskRead]:
        stmt = select(CRMTask)
        if filters.get("is_completed") is not None:
            stmt = stmt.where(CRMTask.is_completed == filters["is_completed"])
        if filters.get("priority") is not None:
            stmt = stmt.where(CRMTask.priority == filters["priority"])
        if filters.get("deal_id") is not None:
            stmt = stmt.where(CRMTask.deal_id == filters["deal_id"])
        stmt = stmt.order_by(CRMTask.due_date.asc().nulls_last(), CRMTask.created_at.desc(), CRMTask.id)
        return paginate(session, stmt, TaskRead, page, limit)

    def create_task(self, session: Session, dto: TaskCreate) -> TaskRead:
        payload = dto.model_dump()
        with transaction(session):
            _ensure_references(session, payload)
            task = CRMTask(**payload)
            session.add(task)
            session.flush()
        return TaskRead.model_validate(task)

    def get_task(self, session: Session, task_id: uuid.UUID) -> TaskRead:
        return TaskRead.model_validate(_get_or_404(session, CRMTask, task_id, "Task"))

    def update_task(self, session: Session, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        payload = dto.model_dump(exclude_unset=True)
        for key in ("title", "priority", "is_completed"):
            if key in payload and payload[key] is None:
                raise InvalidArgumentError(f"{key} cannot be null", fields=[key])
        with transaction(session):
            task = _get_or_404(session, CRMTask, task_id, "Task")
            _ensure_references(session, payload)
            for key, value in payload.items():
                setattr(task, key, value)
            task.updated_at = utcnow()
        return self.get_task(session, task_id)

    def complete_task(self, session: Session, task_id: uuid.UUID) -> TaskRead:
        with transaction(session):
            task = _get_or_404(session, CRMTask, task_id, "Task")
            task.is_completed = True
            task.updated_at = utcnow()
        return self.get_task(session, task_id)

    def delete_task(self, session: Session, task_id: uuid.UUID) -> None:
        with transaction(session):
            task = _get_or_404(session, CRMTask, task_id, "Task")
            session.delete(task)


class TagService:
    entity_type = "crm.tag"

    def list_tags(self, session: Session) -> list[TagRead]:
        tags = session.scalars(select(CRMTag).order_by(CRMTag.name)).all()
        return [TagRead.model_validate(tag) for tag in tags]

    def create_tag(self, session: Session, dto: TagCreate) -> TagRead:
        try:
            with transaction(session):
                tag = CRMTag(name=dto.name.strip(), color=dto.color)
                session.add(tag)
                session.flush()
        except IntegrityError as exc:
            raise ConflictError("Tag name already exists", details={"name": dto.name}) from exc
        return TagRead.model_validate(tag)

    def get_tag(self, session: Session, tag_id: uuid.UUID) -> TagRead:
        return TagRead.model_validate(_get_or_404(session, CRMTag, tag_id, "Tag"))

    def update_tag(self, session: Session, tag_id: uuid.UUID, dto: TagUpdate) -> TagRead:
        payload = dto.model_dump(exclude_unset=True, exclude_none=True)
        try:
            with transaction(session):
                tag = _get_or_404(session, CRMTag, tag_id, "Tag")
                for key, value in payload.items():
                    setattr(tag, key, value.strip() if key == "name" else value)
                session.flush()
        except IntegrityError as exc:
            raise ConflictError("Tag name already exists", details={"name": payload.get("name")}) from exc
        return self.get_tag(session, tag_id)

    def delete_tag(self, session: Session, tag_id: uuid.UUID) -> None:
        with transaction(session):
            tag = _get_or_404(session, CRMTag, tag_id, "Tag")
            session.delete(tag)


class EmailTemplateService:
    entity_type = "crm.email_template"

    def list_templates(self, session: Session, page: int, limit: int) -> Page[EmailTemplateRead]:
        stmt = select(CRMEmailTemplate).order_by(CRMEmailTemplate.created_at.desc(), CRMEmailTemplate.id)
        return paginate(session, stmt, EmailTemplateRead, page, limit)

    def create_template(self, session: Session, dto: EmailTemplateWrite) -> EmailTemplateRead:
        with transaction(session):
            template = CRMEmailTemplate(**dto.model_dump())
            session.add(template)
            session.flush()
        return EmailTemplateRead.model_validate(template)

    def get_template(self, session: Session, template_id: uuid.UUID) -> EmailTemplateRead:
        return EmailTemplateRead.model_validate(_get_or_404(session, CRMEmailTemplate, template_id, "Email template"))

    def update_template(
        self,
        session: Session,
        template_id: uuid.UUID,
        dto: EmailTemplateWrite,
    ) -> EmailTemplateRead:
        with transaction(session):
            template = _get_or_404(session, CRMEmailTemplate, template_id, "Email template")
            for key, value in dto.model_dump().items():
                setattr(template, key, value)
            template.updated_at = utcnow()
        return self.get_template(session, template_id)

    def delete_template(self, session: Session, template_id: uuid.UUID) -> None:
        with transaction(session):
            template = _get_or_404(session, CRMEmailTemplate, template_id, "Email template")
            session.delete(template)
