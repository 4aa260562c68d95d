from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, func, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.database import Base
from app.crm import service, stage_transition
from app.crm.errors import NotFoundError, StaleDealError
from app.crm.models import ActivityType, CRMActivity, CRMDeal, DealStage
from app.crm.schemas import DealCreate, DealUpdate
from app.crm.service import DealService
from app.crm.stage_transition import StageTransitionService, guarded_deal_update
from app.crm.versioning import ensure_utc


T0 = datetime(2026, 3, 2, 9, 30, 0, 250000, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture()
def transitions(clock: FrozenClock) -> StageTransitionService:
    return StageTransitionService(clock=clock)


@pytest.fixture()
def deal_id(db_session: Session, clock: FrozenClock) -> uuid.UUID:
    created = DealService(clock=clock).create_deal(
        db_session,
        DealCreate(title="ACME renewal", amount=1_200_000, stage=DealStage.LEAD),
    )
    return created.id


def _activities(db_session: Session, deal_id: uuid.UUID) -> list[CRMActivity]:
    return list(
        db_session.scalars(
            select(CRMActivity).where(CRMActivity.deal_id == deal_id).order_by(CRMActivity.created_at)
        ).all()
    )


def _stored(db_session: Session, deal_id: uuid.UUID) -> CRMDeal:
    db_session.expire_all()
    deal = db_session.get(CRMDeal, deal_id)
    assert deal is not None
    return deal


def test_transition_applies_stage_and_appends_one_note(
    db_session: Session,
    transitions: StageTransitionService,
    clock: FrozenClock,
    deal_id: uuid.UUID,
) -> None:
    applied_at = clock.advance(seconds=30)

    deal = transitions.transition_stage(db_session, deal_id, DealStage.PROPOSAL, T0)

    assert deal.stage == DealStage.PROPOSAL
    assert ensure_utc(deal.updated_at) == applied_at

    activities = _activities(db_session, deal_id)
    assert len(activities) == 1
    assert activities[0].type == ActivityType.NOTE
    assert activities[0].title == "단계 변경: lead → proposal"
    assert activities[0].deal_id == deal_id
    assert activities[0].contact_id is None
    assert activities[0].company_id is None


def test_successive_transitions_chain_version_tokens(
    db_session: Session,
    transitions: StageTransitionService,
    clock: FrozenClock,
    deal_id: uuid.UUID,
) -> None:
    clock.advance(seconds=1)
    first = transitions.transition_stage(db_session, deal_id, DealStage.QUALIFIED, T0)
    first_token = ensure_utc(first.updated_at)

    clock.advance(seconds=5)
    second = transitions.transition_stage(db_session, deal_id, DealStage.NEGOTIATION, first_token)

    assert second.stage == DealStage.NEGOTIATION
    assert ensure_utc(second.updated_at) > first_token
    titles = [activity.title for activity in _activities(db_session, deal_id)]
    assert titles == ["단계 변경: lead → qualified", "단계 변경: qualified → negotiation"]


def test_stale_token_beyond_tolerance_is_rejected_without_writes(
    db_session: Session,
    transitions: StageTransitionService,
    clock: FrozenClock,
    deal_id: uuid.UUID,
) -> None:
    clock.advance(seconds=10)

    with pytest.raises(StaleDealError) as exc_info:
        transitions.transition_stage(db_session, deal_id, DealStage.CLOSED_WON, T0 - timedelta(seconds=2))

    assert exc_info.value.message == "Deal has been modified by another user. Please refresh and try again."
    stored = _stored(db_session, deal_id)
    assert stored.stage == DealStage.LEAD
    assert ensure_utc(stored.updated_at) == T0
    assert _activities(db_session, deal_id) == []
    assert list(events.published_events) == []


@pytest.mark.parametrize("offset_ms", [-1000, -500, 0, 500, 1000])
def test_tokens_within_tolerance_are_accepted(
    db_session: Session,
    transitions: StageTransitionService,
    clock: FrozenClock,
    deal_id: uuid.UUID,
    offset_ms: int,
) -> None:
    clock.advance(seconds=3)

    deal = transitions.transition_stage(
        db_session,
        deal_id,
        DealStage.QUALIFIED,
        T0 + timedelta(milliseconds=offset_ms),
    )

    assert deal.stage == DealStage.QUALIFIED
    assert len(_activities(db_session, deal_id)) == 1


@pytest.mark.parametrize("offset_ms", [-1001, 1001, 60_000])
def test_tokens_just_outside_tolerance_conflict(
    db_session: Session,
    transitions: StageTransitionService,
    clock: FrozenClock,
    deal_id: uuid.UUID,
    offset_ms: int,
) -> None:
    clock.advance(seconds=3)

    with pytest.raises(StaleDealError):
        transitions.transition_stage(
            db_session,
            deal_id,
            DealStage.QUALIFIED,
            T0 + timedelta(milliseconds=offset_ms),
        )

    assert _stored(db_session, deal_id).stage == DealStage.LEAD


def test_naive_client_token_is_read_as_utc(
    db_session: Session,
    transitions: StageTransitionService,
    clock: FrozenClock,
    deal_id: uuid.UUID,
) -> None:
    clock.advance(seconds=3)

    deal = transitions.transition_stage(db_session, deal_id, DealStage.QUALIFIED, T0.replace(tzinfo=None))

    assert deal.stage == DealStage.QUALIFIED


def test_version_token_increases_when_clock_moves_backwards(
    db_session: Session,
    transitions: StageTransitionService,
    clock: FrozenClock,
    deal_id: uuid.UUID,
) -> None:
    clock.now = T0 - timedelta(minutes=5)

    deal = transitions.transition_stage(db_session, deal_id, DealStage.QUALIFIED, T0)

    assert ensure_utc(deal.updated_at) == T0 + timedelta(microseconds=1)


def test_same_stage_transition_is_still_recorded(
    db_session: Session,
    transitions: StageTransitionService,
    clock: FrozenClock,
    deal_id: uuid.UUID,
) -> None:
    clock.advance(seconds=1)

    deal = transitions.transition_stage(db_session, deal_id, DealStage.LEAD, T0)

    assert deal.stage == DealStage.LEAD
    assert ensure_utc(deal.updated_at) > T0
    assert [activity.title for activity in _activities(db_session, deal_id)] == ["단계 변경: lead → lead"]


def test_unknown_deal_raises_not_found(
    db_session: Session,
    transitions: StageTransitionService,
) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        transitions.transition_stage(db_session, uuid.uuid4(), DealStage.QUALIFIED, T0)

    assert exc_info.value.message == "Deal not found"
    assert db_session.scalar(select(func.count()).select_from(CRMActivity)) == 0


def test_audit_failure_rolls_back_stage_change(
    db_session: Session,
    transitions: StageTransitionService,
    clock: FrozenClock,
    deal_id: uuid.UUID,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def failing_record(*args: object, **kwargs: object) -> None:
        raise RuntimeError("activity store unavailable")

    monkeypatch.setattr(stage_transition, "record_stage_change", failing_record)
    clock.advance(seconds=2)

    with pytest.raises(RuntimeError):
        transitions.transition_stage(db_session, deal_id, DealStage.CLOSED_LOST, T0)

    stored = _stored(db_session, deal_id)
    assert stored.stage == DealStage.LEAD
    assert ensure_utc(stored.updated_at) == T0
    assert _activities(db_session, deal_id) == []
    assert list(events.published_events) == []


def test_concurrent_commit_between_read_and_write_conflicts(
    db_session: Session,
    transitions: StageTransitionService,
    clock: FrozenClock,
    deal_id: uuid.UUID,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    real_load_deal = stage_transition.load_deal
    interfered = {"done": False}

    def load_then_interfere(session: Session, target_id: uuid.UUID) -> CRMDeal | None:
        deal = real_load_deal(session, target_id)
        if not interfered["done"]:
            interfered["done"] = True
            session.execute(
                update(CRMDeal)
                .where(CRMDeal.id == target_id)
                .values(updated_at=T0 + timedelta(milliseconds=10))
                .execution_options(synchronize_session=False)
            )
        return deal

    monkeypatch.setattr(stage_transition, "load_deal", load_then_interfere)
    clock.advance(seconds=2)

    with pytest.raises(StaleDealError):
        transitions.transition_stage(db_session, deal_id, DealStage.PROPOSAL, T0)

    assert _stored(db_session, deal_id).stage == DealStage.LEAD
    assert _activities(db_session, deal_id) == []


def test_stage_change_and_full_update_share_one_tolerance_rule(
    db_session: Session,
    transitions: StageTransitionService,
    clock: FrozenClock,
    deal_id: uuid.UUID,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    checked: list[tuple[datetime, datetime]] = []

    def strict_match(client_token: datetime, stored_token: datetime) -> bool:
        checked.append((client_token, stored_token))
        return ensure_utc(client_token) == ensure_utc(stored_token)

    monkeypatch.setattr(stage_transition, "versions_match", strict_match)
    monkeypatch.setattr(service, "versions_match", strict_match)
    clock.advance(seconds=3)
    near_token = T0 + timedelta(milliseconds=500)

    with pytest.raises(StaleDealError):
        transitions.transition_stage(db_session, deal_id, DealStage.QUALIFIED, near_token)
    with pytest.raises(StaleDealError):
        DealService(clock=clock).update_deal(
            db_session,
            deal_id,
            DealUpdate(stage=DealStage.QUALIFIED, updated_at=near_token),
        )

    assert len(checked) == 2
    assert _stored(db_session, deal_id).stage == DealStage.LEAD
    assert _activities(db_session, deal_id) == []


def test_guarded_update_rejects_outdated_expected_token(
    db_session: Session,
    deal_id: uuid.UUID,
) -> None:
    with pytest.raises(StaleDealError):
        guarded_deal_update(
            db_session,
            deal_id,
            T0 - timedelta(seconds=1),
            {"stage": DealStage.QUALIFIED},
            T0 + timedelta(seconds=1),
        )
    db_session.rollback()

    assert _stored(db_session, deal_id).stage == DealStage.LEAD


def test_successful_transition_publishes_event_and_logs(
    db_session: Session,
    transitions: StageTransitionService,
    clock: FrozenClock,
    deal_id: uuid.UUID,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="app.crm.deals")
    clock.advance(seconds=1)

    transitions.transition_stage(db_session, deal_id, DealStage.QUALIFIED, T0, actor_user_id="user-7")

    stage_events = [item for item in events.published_events if item["event_type"] == "crm.deal.stage_changed"]
    assert len(stage_events) == 1
    assert stage_events[0]["actor_user_id"] == "user-7"
    assert stage_events[0]["payload"]["deal_id"] == str(deal_id)
    assert stage_events[0]["payload"]["from_stage"] == "lead"
    assert stage_events[0]["payload"]["to_stage"] == "qualified"

    assert any(
        record.getMessage() == "deal.stage_changed"
        and getattr(record, "deal_id", None) == str(deal_id)
        and getattr(record, "to_stage", None) == "qualified"
        for record in caplog.records
    )


def test_conflict_is_logged_with_drift(
    db_session: Session,
    transitions: StageTransitionService,
    deal_id: uuid.UUID,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="app.crm.deals")

    with pytest.raises(StaleDealError):
        transitions.transition_stage(db_session, deal_id, DealStage.QUALIFIED, T0 + timedelta(seconds=5))

    conflict_records = [record for record in caplog.records if record.getMessage() == "deal.stage_conflict"]
    assert conflict_records
    assert conflict_records[0].levelno == logging.WARNING
    assert getattr(conflict_records[0], "drift_ms", None) == 5000.0
