from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow import audit, events
from dealflow.core.config import get_settings
from dealflow.core.database import Base
from dealflow.core.events import PLACEMENT_OUTCOME_EVENTS, InProcessEventBus, InternalEvent
from dealflow.crm.errors import ConflictError, InternalError, NotFoundError
from dealflow.crm.models import CRMPipeline, CRMPipelinePlacement, CRMPipelineStage, CRMStageMovement
from dealflow.crm.schemas import (
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PlacementCreate,
    PlacementMoveRequest,
)
from dealflow.crm.service import (
    ActorUser,
    PipelineService,
    PlacementService,
    StageService,
    TransitionEngine,
)


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
def clear_stubs() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="owner-1", permissions={"crm.placements.move"}, correlation_id="corr-engine")


@pytest.fixture()
def pipeline(db_session: Session, actor: ActorUser) -> PipelineRead:
    return PipelineService().create_pipeline(db_session, actor, PipelineCreate(name="Sales", is_default=True))


def _stage_id(pipeline: PipelineRead, name: str) -> uuid.UUID:
    assert pipeline.stages is not None
    return next(stage.id for stage in pipeline.stages if stage.name == name)


def _place(db_session: Session, actor: ActorUser, pipeline: PipelineRead, stage: str = "New") -> uuid.UUID:
    placement = PlacementService().create_placement(
        db_session,
        actor,
        pipeline.id,
        PlacementCreate(title="Acme", stage_id=_stage_id(pipeline, stage)),
    )
    return placement.id


def _ledger_count(db_session: Session, placement_id: uuid.UUID) -> int:
    return db_session.scalar(
        select(func.count()).select_from(CRMStageMovement).where(CRMStageMovement.placement_id == placement_id)
    )


def test_move_to_open_stage_appends_ledger_record(db_session: Session, actor: ActorUser, pipeline: PipelineRead) -> None:
    placement_id = _place(db_session, actor, pipeline)

    moved = TransitionEngine().move(
        db_session,
        actor,
        pipeline.id,
        placement_id,
        PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Qualification"), reason="contacted"),
    )

    assert moved.stage_id == _stage_id(pipeline, "Qualification")
    assert moved.stage.name == "Qualification"
    assert moved.won_at is None
    assert moved.lost_at is None
    assert moved.row_version == 2
    assert _ledger_count(db_session, placement_id) == 2
    latest = moved.movements[0]
    assert latest.from_stage_id == _stage_id(pipeline, "New")
    assert latest.reason == "contacted"
    assert latest.moved_by == "owner-1"

    moved_events = [item for item in events.published_events if item["event_type"] == "pipeline.placement.moved"]
    assert len(moved_events) == 1
    assert moved_events[0]["payload"]["to_stage_id"] == str(_stage_id(pipeline, "Qualification"))
    assert moved_events[0]["correlation_id"] == "corr-engine"
    placement_audits = audit.entries_for(str(placement_id), "crm.pipeline.placement")
    assert [entry["action"] for entry in placement_audits] == ["create", "move"]
    assert placement_audits[-1]["changed_fields"] == ["row_version", "stage_id"]


def test_repeated_move_to_same_stage_is_conflict(db_session: Session, actor: ActorUser, pipeline: PipelineRead) -> None:
    placement_id = _place(db_session, actor, pipeline)
    engine = TransitionEngine()
    request = PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Proposal"))

    engine.move(db_session, actor, pipeline.id, placement_id, request)
    with pytest.raises(ConflictError, match="already in this stage"):
        engine.move(db_session, actor, pipeline.id, placement_id, request)

    assert _ledger_count(db_session, placement_id) == 2


def test_won_then_open_clears_terminal_timestamps(db_session: Session, actor: ActorUser, pipeline: PipelineRead) -> None:
    placement_id = _place(db_session, actor, pipeline)
    engine = TransitionEngine()

    won = engine.move(
        db_session,
        actor,
        pipeline.id,
        placement_id,
        PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Won")),
    )
    assert won.won_at is not None
    assert won.lost_at is None
    assert won.won_at == won.movements[0].moved_at
    assert any(item["event_type"] == "pipeline.placement.won" for item in events.published_events)

    lost = engine.move(
        db_session,
        actor,
        pipeline.id,
        placement_id,
        PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Lost")),
    )
    assert lost.won_at is None
    assert lost.lost_at is not None

    reopened = engine.move(
        db_session,
        actor,
        pipeline.id,
        placement_id,
        PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "New"), reason="revived"),
    )
    assert reopened.won_at is None
    assert reopened.lost_at is None
    assert _ledger_count(db_session, placement_id) == 4


def test_terminal_timestamps_always_follow_current_stage(
    db_session: Session,
    actor: ActorUser,
    pipeline: PipelineRead,
) -> None:
    placement_id = _place(db_session, actor, pipeline)
    engine = TransitionEngine()

    for name in ("Won", "Proposal", "Lost", "Won", "Negotiation", "Lost"):
        engine.move(
            db_session,
            actor,
            pipeline.id,
            placement_id,
            PlacementMoveRequest(to_stage_id=_stage_id(pipeline, name)),
        )
        placement = db_session.get(CRMPipelinePlacement, placement_id, populate_existing=True)
        stage = db_session.get(CRMPipelineStage, placement.stage_id)
        assert (placement.won_at is not None) == stage.is_won
        assert (placement.lost_at is not None) == stage.is_lost
        assert placement.won_at is None or placement.lost_at is None


def test_move_preconditions_report_not_found(db_session: Session, actor: ActorUser, pipeline: PipelineRead) -> None:
    placement_id = _place(db_session, actor, pipeline)
    engine = TransitionEngine()
    other_pipeline = PipelineService().create_pipeline(db_session, actor, PipelineCreate(name="Other"))
    request = PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Proposal"))

    with pytest.raises(NotFoundError, match="pipeline not found"):
        engine.move(db_session, actor, uuid.uuid4(), placement_id, request)

    stranger = ActorUser(user_id="owner-2")
    with pytest.raises(NotFoundError, match="pipeline not found"):
        engine.move(db_session, stranger, pipeline.id, placement_id, request)

    with pytest.raises(NotFoundError, match="placement not found"):
        engine.move(db_session, actor, other_pipeline.id, placement_id, request)

    with pytest.raises(NotFoundError, match="target stage not found"):
        engine.move(
            db_session,
            actor,
            pipeline.id,
            placement_id,
            PlacementMoveRequest(to_stage_id=_stage_id(other_pipeline, "Proposal")),
        )

    assert _ledger_count(db_session, placement_id) == 1


def test_stale_row_version_is_conflict(db_session: Session, actor: ActorUser, pipeline: PipelineRead) -> None:
    placement_id = _place(db_session, actor, pipeline)
    engine = TransitionEngine()

    engine.move(
        db_session,
        actor,
        pipeline.id,
        placement_id,
        PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Proposal"), row_version=1),
    )
    with pytest.raises(ConflictError, match="row_version"):
        engine.move(
            db_session,
            actor,
            pipeline.id,
            placement_id,
            PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Negotiation"), row_version=1),
        )


def test_interleaved_moves_let_exactly_one_commit(db_session: Session, actor: ActorUser, pipeline: PipelineRead) -> None:
    placement_id = _place(db_session, actor, pipeline)
    engine = TransitionEngine()

    first = engine.prepare(
        db_session,
        actor,
        pipeline.id,
        placement_id,
        PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Proposal")),
    )
    second = engine.prepare(
        db_session,
        actor,
        pipeline.id,
        placement_id,
        PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Won")),
    )

    committed = engine.commit(db_session, actor, first)
    assert committed.stage.name == "Proposal"

    with pytest.raises(ConflictError):
        engine.commit(db_session, actor, second)

    placement = db_session.get(CRMPipelinePlacement, placement_id, populate_existing=True)
    assert placement.stage_id == _stage_id(pipeline, "Proposal")
    assert placement.won_at is None
    assert _ledger_count(db_session, placement_id) == 2
    assert not any(item["event_type"] == "pipeline.placement.won" for item in events.published_events)


def test_target_stage_deleted_between_prepare_and_commit_is_conflict(
    db_session: Session,
    actor: ActorUser,
    pipeline: PipelineRead,
) -> None:
    placement_id = _place(db_session, actor, pipeline)
    extra = StageService().create_stage(
        db_session,
        actor,
        pipeline.id,
        PipelineStageCreate(name="Pilot", order=9),
    )
    engine = TransitionEngine()

    pending = engine.prepare(
        db_session,
        actor,
        pipeline.id,
        placement_id,
        PlacementMoveRequest(to_stage_id=extra.id),
    )
    StageService().delete_stage(db_session, actor, pipeline.id, extra.id)

    with pytest.raises(ConflictError):
        engine.commit(db_session, actor, pending)

    placement = db_session.get(CRMPipelinePlacement, placement_id, populate_existing=True)
    assert placement.stage_id == _stage_id(pipeline, "New")
    assert placement.row_version == pending.observed_row_version
    assert _ledger_count(db_session, placement_id) == 1
    assert not any(item["event_type"] == "pipeline.placement.moved" for item in events.published_events)


def test_integrity_failure_on_move_commit_is_conflict(
    db_session: Session,
    actor: ActorUser,
    pipeline: PipelineRead,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    placement_id = _place(db_session, actor, pipeline)

    def failing_commit() -> None:
        raise IntegrityError("UPDATE crm_pipeline_placement", {}, Exception("FOREIGN KEY constraint failed"))

    monkeypatch.setattr(db_session, "commit", failing_commit)
    with pytest.raises(ConflictError, match="target stage was removed concurrently"):
        TransitionEngine().move(
            db_session,
            actor,
            pipeline.id,
            placement_id,
            PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Proposal")),
        )
    monkeypatch.undo()

    placement = db_session.get(CRMPipelinePlacement, placement_id, populate_existing=True)
    assert placement.stage_id == _stage_id(pipeline, "New")
    assert _ledger_count(db_session, placement_id) == 1


def test_storage_failure_during_move_writes_nothing(
    db_session: Session,
    actor: ActorUser,
    pipeline: PipelineRead,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    placement_id = _place(db_session, actor, pipeline)

    def failing_commit() -> None:
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db_session, "commit", failing_commit)
    with pytest.raises(InternalError, match="failed to move placement"):
        TransitionEngine().move(
            db_session,
            actor,
            pipeline.id,
            placement_id,
            PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Won")),
        )
    monkeypatch.undo()

    placement = db_session.get(CRMPipelinePlacement, placement_id, populate_existing=True)
    assert placement.stage_id == _stage_id(pipeline, "New")
    assert placement.won_at is None
    assert _ledger_count(db_session, placement_id) == 1


class _NoReopenValidator:
    def validate(self, placement, from_stage, to_stage) -> None:  # type: ignore[no-untyped-def]
        if (from_stage.is_won or from_stage.is_lost) and not (to_stage.is_won or to_stage.is_lost):
            raise ConflictError("closed placements cannot be reopened")


def test_custom_validator_can_restrict_transitions(db_session: Session, actor: ActorUser, pipeline: PipelineRead) -> None:
    placement_id = _place(db_session, actor, pipeline)
    engine = TransitionEngine(validator=_NoReopenValidator())

    engine.move(db_session, actor, pipeline.id, placement_id, PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Won")))
    with pytest.raises(ConflictError, match="cannot be reopened"):
        engine.move(
            db_session,
            actor,
            pipeline.id,
            placement_id,
            PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "New")),
        )
    with pytest.raises(ConflictError, match="already in this stage"):
        engine.move(
            db_session,
            actor,
            pipeline.id,
            placement_id,
            PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Won")),
        )

    assert _ledger_count(db_session, placement_id) == 2


def test_deleting_occupied_won_stage_leaves_state_unchanged(
    db_session: Session,
    actor: ActorUser,
    pipeline: PipelineRead,
) -> None:
    placement_id = _place(db_session, actor, pipeline, stage="Won")
    won_stage_id = _stage_id(pipeline, "Won")

    with pytest.raises(ConflictError):
        StageService().delete_stage(db_session, actor, pipeline.id, won_stage_id)

    assert db_session.get(CRMPipelineStage, won_stage_id) is not None
    placement = db_session.get(CRMPipelinePlacement, placement_id, populate_existing=True)
    assert placement.stage_id == won_stage_id
    assert placement.won_at is not None

    TransitionEngine().move(
        db_session,
        actor,
        pipeline.id,
        placement_id,
        PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Negotiation")),
    )
    StageService().delete_stage(db_session, actor, pipeline.id, won_stage_id)
    assert db_session.get(CRMPipelineStage, won_stage_id) is None


def test_default_pipeline_count_never_exceeds_one(db_session: Session, actor: ActorUser) -> None:
    service = PipelineService()
    created = [
        service.create_pipeline(db_session, actor, PipelineCreate(name=f"Pipeline {index}", is_default=True, stages=[]))
        for index in range(4)
    ]

    defaults = db_session.scalars(
        select(CRMPipeline.id).where(CRMPipeline.owner_user_id == actor.user_id, CRMPipeline.is_default.is_(True))
    ).all()
    assert defaults == [created[-1].id]


def test_outcome_subscribers_receive_committed_won_move(
    db_session: Session,
    actor: ActorUser,
    pipeline: PipelineRead,
) -> None:
    bus = InProcessEventBus()
    received: list[InternalEvent] = []
    bus.subscribe(PLACEMENT_OUTCOME_EVENTS, received.append)
    bus.subscribe("pipeline.placement.won", received.append)
    assert len(bus.handlers_for("pipeline.placement.won")) == 1

    placement_id = _place(db_session, actor, pipeline)
    TransitionEngine().move(
        db_session,
        actor,
        pipeline.id,
        placement_id,
        PlacementMoveRequest(to_stage_id=_stage_id(pipeline, "Won")),
    )

    outcome_events = [item for item in events.published_events if item["event_type"] in PLACEMENT_OUTCOME_EVENTS]
    for envelope in outcome_events:
        assert bus.publish(envelope["event_type"], envelope) == 1

    assert [event.name for event in received] == ["pipeline.placement.won"]
    assert received[0].placement_id == str(placement_id)
