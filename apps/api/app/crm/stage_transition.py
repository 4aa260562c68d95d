from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from app import events
from app.core.database import transaction
from app.crm.errors import NotFoundError, StaleDealError
from app.crm.models import ActivityType, CRMActivity, CRMDeal, DealStage, utcnow
from app.crm.versioning import ensure_utc, next_version, version_drift, versions_match
from app.metrics import observe_stage_transition
from app.otel import get_tracer


logger = logging.getLogger("app.crm.deals")
tracer = get_tracer("app.crm.deals")

Clock = Callable[[], datetime]

STAGE_CHANGED_EVENT = "crm.deal.stage_changed"


def stage_change_title(old_stage: DealStage, new_stage: DealStage) -> str:
    return f"단계 변경: {old_stage.value} → {new_stage.value}"


def record_stage_change(
    session: Session,
    deal_id: uuid.UUID,
    old_stage: DealStage,
    new_stage: DealStage,
    *,
    at: datetime | None = None,
) -> CRMActivity:
    """Append the audit note for a stage change to the caller's unit of work.

    Never commits; the row becomes visible only when the enclosing
    transaction does.
    """
    activity = CRMActivity(
        type=ActivityType.NOTE,
        title=stage_change_title(old_stage, new_stage),
        deal_id=deal_id,
    )
    if at is not None:
        activity.created_at = at
        activity.updated_at = at
    session.add(activity)
    session.flush()
    return activity


def load_deal(session: Session, deal_id: uuid.UUID) -> CRMDeal | None:
    return session.scalar(
        select(CRMDeal).where(CRMDeal.id == deal_id).execution_options(populate_existing=True)
    )


def guarded_deal_update(
    session: Session,
    deal_id: uuid.UUID,
    expected_token: datetime,
    values: dict[str, Any],
    now: datetime,
) -> datetime:
    """Compare-and-swap write of ``values`` onto a deal.

    The UPDATE only matches while the stored ``updated_at`` still equals
    ``expected_token``; a concurrent commit in between leaves zero rows
    affected and raises ``StaleDealError``. Returns the new version token.
    """
    new_token = next_version(expected_token, now)
    result = session.execute(
        update(CRMDeal)
        .where(and_(CRMDeal.id == deal_id, CRMDeal.updated_at == expected_token))
        .values(**values, updated_at=new_token)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise StaleDealError(deal_id)
    return new_token


class StageTransitionService:
    entity_type = "crm.deal"

    def __init__(self, clock: Clock = utcnow) -> None:
        self.clock = clock

    def transition_stage(
        self,
        session: Session,
        deal_id: uuid.UUID,
        requested_stage: DealStage,
        client_updated_at: datetime,
        *,
        actor_user_id: str | None = None,
    ) -> CRMDeal:
        started = time.perf_counter()
        outcome = "error"
        drift_seconds: float | None = None

        with tracer.start_as_current_span("crm.deal.transition_stage") as span:
            span.set_attribute("crm.deal_id", str(deal_id))
            span.set_attribute("crm.deal.to_stage", requested_stage.value)
            try:
                with transaction(session):
                    deal = load_deal(session, deal_id)
                    if deal is None:
                        outcome = "not_found"
                        raise NotFoundError("Deal", deal_id)

                    stored_token = deal.updated_at
                    previous_stage = DealStage(deal.stage)
                    drift_seconds = version_drift(client_updated_at, stored_token).total_seconds()
                    if not versions_match(client_updated_at, stored_token):
                        outcome = "conflict"
                        logger.warning(
                            "deal.stage_conflict",
                            extra={
                                "deal_id": str(deal_id),
                                "client_updated_at": ensure_utc(client_updated_at).isoformat(),
                                "stored_updated_at": ensure_utc(stored_token).isoformat(),
                                "drift_ms": round(drift_seconds * 1000, 3),
                            },
                        )
                        raise StaleDealError(deal_id)

                    try:
                        new_token = guarded_deal_update(
                            session,
                            deal_id,
                            stored_token,
                            {"stage": requested_stage},
                            self.clock(),
                        )
                    except StaleDealError:
                        outcome = "conflict"
                        logger.warning("deal.stage_conflict", extra={"deal_id": str(deal_id), "error": "lost_race"})
                        raise
                    record_stage_change(session, deal_id, previous_stage, requested_stage, at=new_token)
            except Exception as exc:
                span.set_attribute("crm.deal.outcome", outcome)
                if outcome == "error":
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)[:200]))
                observe_stage_transition(outcome, time.perf_counter() - started, drift_seconds)
                raise

            outcome = "applied"
            span.set_attribute("crm.deal.from_stage", previous_stage.value)
            span.set_attribute("crm.deal.outcome", outcome)

        observe_stage_transition(outcome, time.perf_counter() - started, drift_seconds)
        logger.info(
            "deal.stage_changed",
            extra={
                "deal_id": str(deal_id),
                "from_stage": previous_stage.value,
                "to_stage": requested_stage.value,
            },
        )
        events.publish(
            STAGE_CHANGED_EVENT,
            {
                "deal_id": str(deal_id),
                "from_stage": previous_stage.value,
                "to_stage": requested_stage.value,
                "updated_at": new_token.isoformat(),
            },
            actor_user_id=actor_user_id,
        )

        updated = load_deal(session, deal_id)
        if updated is None:
            raise NotFoundError("Deal", deal_id)
        return updated
