from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import InstrumentedAttribute, Session, aliased, selectinload

from dealflow import audit, events
from dealflow.core.config import get_settings
from dealflow.crm.errors import ConflictError, InternalError, NotFoundError, PipelineError, ValidationError
from dealflow.crm.models import (
    CRMContact,
    CRMLead,
    CRMPipeline,
    CRMPipelinePlacement,
    CRMPipelineStage,
    CRMStageMovement,
    utcnow,
)
from dealflow.crm.schemas import (
    ContactSummary,
    LeadSummary,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageSeed,
    PipelineStageUpdate,
    PipelineUpdate,
    PlacementCreate,
    PlacementMoveRequest,
    PlacementRead,
    PlacementUpdate,
    StageMovementRead,
)
from dealflow.crm.transitions import TransitionValidator, UnconstrainedTransitionValidator
from dealflow.metrics import observe_pipeline_move, observe_placement_created
from dealflow.otel import get_tracer

logger = logging.getLogger("dealflow.crm.pipeline")
tracer = get_tracer("dealflow.crm.pipeline")

INITIAL_PLACEMENT_REASON = "initial placement"

DEFAULT_STAGE_CATALOG: tuple[tuple[str, str, bool, bool], ...] = (
    ("New", "#6B7280", False, False),
    ("Qualification", "#3B82F6", False, False),
    ("Proposal", "#8B5CF6", False, False),
    ("Negotiation", "#F59E0B", False, False),
    ("Won", "#10B981", True, False),
    ("Lost", "#EF4444", False, True),
)


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


@contextmanager
def _write_transaction(
    session: Session,
    action: str,
    *,
    conflict_message: str | None = None,
) -> Iterator[None]:
    """Commit the enclosed writes as one unit, translating storage failures into domain errors."""
    try:
        yield
        session.commit()
    except PipelineError:
        session.rollback()
        raise
    except IntegrityError as exc:
        session.rollback()
        if conflict_message is not None:
            logger.info("pipeline.write.conflict", extra={"event_name": action, "error": str(exc.orig)[:500]})
            raise ConflictError(conflict_message) from exc
        logger.exception("pipeline.write.failed", extra={"event_name": action})
        raise InternalError(f"{action} failed") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("pipeline.write.failed", extra={"event_name": action})
        raise InternalError(f"{action} failed") from exc


def _clean_name(value: str, label: str, min_length: int = 1) -> str:
    cleaned = value.strip()
    if len(cleaned) < min_length:
        raise ValidationError(f"{label} must be at least {min_length} characters")
    return cleaned


def _to_decimal(value: float | None) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _get_owned_pipeline(session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> CRMPipeline:
    pipeline = session.scalar(
        select(CRMPipeline).where(
            and_(CRMPipeline.id == pipeline_id, CRMPipeline.owner_user_id == actor_user.user_id)
        )
    )
    if pipeline is None:
        raise NotFoundError("pipeline not found")
    return pipeline


def _get_stage(session: Session, pipeline_id: uuid.UUID, stage_id: uuid.UUID) -> CRMPipelineStage:
    stage = session.scalar(
        select(CRMPipelineStage).where(
            and_(CRMPipelineStage.id == stage_id, CRMPipelineStage.pipeline_id == pipeline_id)
        )
    )
    if stage is None:
        raise NotFoundError("stage not found")
    return stage


def _get_placement(session: Session, pipeline_id: uuid.UUID, placement_id: uuid.UUID) -> CRMPipelinePlacement:
    placement = session.scalar(
        select(CRMPipelinePlacement).where(
            and_(CRMPipelinePlacement.id == placement_id, CRMPipelinePlacement.pipeline_id == pipeline_id)
        )
    )
    if placement is None:
        raise NotFoundError("placement not found")
    return placement


def _count_by(session: Session, column: InstrumentedAttribute[Any], keys: list[uuid.UUID]) -> dict[uuid.UUID, int]:
    if not keys:
        return {}
    rows = session.execute(select(column, func.count()).where(column.in_(keys)).group_by(column)).all()
    return {key: count for key, count in rows}


def _load_movements(
    session: Session,
    placement_ids: list[uuid.UUID],
    limit: int | None,
) -> dict[uuid.UUID, list[CRMStageMovement]]:
    """Movement records per placement, newest first; at most ``limit`` each when given."""
    if not placement_ids:
        return {}

    if limit is None:
        rows = session.scalars(
            select(CRMStageMovement)
            .where(CRMStageMovement.placement_id.in_(placement_ids))
            .order_by(CRMStageMovement.placement_id, CRMStageMovement.moved_at.desc())
        ).all()
    else:
        ranked = (
            select(
                CRMStageMovement,
                func.row_number()
                .over(
                    partition_by=CRMStageMovement.placement_id,
                    order_by=CRMStageMovement.moved_at.desc(),
                )
                .label("position"),
            )
            .where(CRMStageMovement.placement_id.in_(placement_ids))
            .subquery()
        )
        recent = aliased(CRMStageMovement, ranked)
        rows = session.scalars(
            select(recent)
            .where(ranked.c.position <= limit)
            .order_by(ranked.c.placement_id, ranked.c.moved_at.desc())
        ).all()

    grouped: dict[uuid.UUID, list[CRMStageMovement]] = {}
    for movement in rows:
        grouped.setdefault(movement.placement_id, []).append(movement)
    return grouped


def _to_stage_read(stage: CRMPipelineStage, placement_count: int | None = None) -> PipelineStageRead:
    read = PipelineStageRead.model_validate(stage)
    read.placement_count = placement_count
    return read


def _to_placement_read(placement: CRMPipelinePlacement, movements: list[CRMStageMovement]) -> PlacementRead:
    return PlacementRead(
        id=placement.id,
        pipeline_id=placement.pipeline_id,
        stage_id=placement.stage_id,
        title=placement.title,
        contact_id=placement.contact_id,
        lead_id=placement.lead_id,
        value=float(placement.value) if placement.value is not None else None,
        notes=placement.notes,
        won_at=placement.won_at,
        lost_at=placement.lost_at,
        created_at=placement.created_at,
        updated_at=placement.updated_at,
        row_version=placement.row_version,
        stage=_to_stage_read(placement.stage),
        contact=ContactSummary.model_validate(placement.contact) if placement.contact is not None else None,
        lead=LeadSummary.model_validate(placement.lead) if placement.lead is not None else None,
        movements=[StageMovementRead.model_validate(movement) for movement in movements],
    )


def _enriched_placements(session: Session, *criteria: Any, movement_limit: int | None) -> list[PlacementRead]:
    placements = session.scalars(
        select(CRMPipelinePlacement)
        .where(*criteria)
        .options(
            selectinload(CRMPipelinePlacement.stage),
            selectinload(CRMPipelinePlacement.contact),
            selectinload(CRMPipelinePlacement.lead),
        )
        .order_by(CRMPipelinePlacement.created_at.desc())
    ).all()
    movements = _load_movements(session, [placement.id for placement in placements], movement_limit)
    return [_to_placement_read(placement, movements.get(placement.id, [])) for placement in placements]


def _read_placement(session: Session, placement_id: uuid.UUID, movement_limit: int | None) -> PlacementRead:
    reads = _enriched_placements(session, CRMPipelinePlacement.id == placement_id, movement_limit=movement_limit)
    if not reads:
        raise NotFoundError("placement not found")
    return reads[0]


def _pipeline_snapshot(pipeline: CRMPipeline) -> dict[str, Any]:
    return {
        "name": pipeline.name,
        "description": pipeline.description,
        "color": pipeline.color,
        "is_default": pipeline.is_default,
        "is_active": pipeline.is_active,
    }


def _stage_snapshot(stage: CRMPipelineStage) -> dict[str, Any]:
    return {
        "pipeline_id": str(stage.pipeline_id),
        "name": stage.name,
        "color": stage.color,
        "order": stage.order,
        "is_won": stage.is_won,
        "is_lost": stage.is_lost,
    }


def _placement_snapshot(placement: CRMPipelinePlacement) -> dict[str, Any]:
    return {
        "pipeline_id": str(placement.pipeline_id),
        "stage_id": str(placement.stage_id),
        "title": placement.title,
        "value": str(placement.value) if placement.value is not None else None,
        "notes": placement.notes,
    }


def _event(event_type: str, actor_user: ActorUser, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": utcnow().isoformat(),
        "actor_user_id": actor_user.user_id,
        "version": 1,
        "payload": payload,
        "correlation_id": actor_user.correlation_id,
    }


class PipelineService:
    entity_type = "crm.pipeline"

    def create_pipeline(self, session: Session, actor_user: ActorUser, dto: PipelineCreate) -> PipelineRead:
        name = _clean_name(dto.name, "pipeline name", min_length=2)
        seeds = self._stage_seeds(dto)

        pipeline = CRMPipeline(
            owner_user_id=actor_user.user_id,
            name=name,
            description=dto.description,
            color=dto.color or get_settings().pipeline_default_color,
            is_default=dto.is_default,
        )
        with _write_transaction(
            session,
            "pipeline.create",
            conflict_message="another default pipeline was committed concurrently",
        ):
            # Existing defaults are cleared before the insert so the partial unique index never sees two.
            if dto.is_default:
                self._unset_other_defaults(session, actor_user.user_id, None)
            session.add(pipeline)
            session.flush()
            for seed in seeds:
                session.add(
                    CRMPipelineStage(
                        pipeline_id=pipeline.id,
                        name=seed.name,
                        color=seed.color,
                        order=seed.order,
                        is_won=seed.is_won,
                        is_lost=seed.is_lost,
                    )
                )
            pipeline_id = pipeline.id
            after = _pipeline_snapshot(pipeline)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline_id),
            action="create",
            before=None,
            after={**after, "stage_count": len(seeds)},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            _event("pipeline.created", actor_user, {"pipeline_id": str(pipeline_id), "is_default": dto.is_default})
        )
        logger.info("pipeline.created", extra={"pipeline_id": str(pipeline_id), "user_id": actor_user.user_id})
        return self.get_pipeline(session, actor_user, pipeline_id)

    def update_pipeline(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineUpdate,
    ) -> PipelineRead:
        pipeline = _get_owned_pipeline(session, actor_user, pipeline_id)
        changes = dto.model_dump(exclude_unset=True)
        for key in ("name", "color", "is_default", "is_active"):
            if key in changes and changes[key] is None:
                changes.pop(key)
        if "name" in changes:
            changes["name"] = _clean_name(changes["name"], "pipeline name", min_length=2)

        before = _pipeline_snapshot(pipeline)
        with _write_transaction(
            session,
            "pipeline.update",
            conflict_message="another default pipeline was committed concurrently",
        ):
            if changes.get("is_default"):
                self._unset_other_defaults(session, actor_user.user_id, pipeline.id)
            for key, value in changes.items():
                setattr(pipeline, key, value)
            pipeline.row_version = pipeline.row_version + 1
            after = _pipeline_snapshot(pipeline)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline_id),
            action="update",
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        return self.get_pipeline(session, actor_user, pipeline_id)

    def delete_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> None:
        pipeline = _get_owned_pipeline(session, actor_user, pipeline_id)
        before = _pipeline_snapshot(pipeline)

        placement_ids = select(CRMPipelinePlacement.id).where(CRMPipelinePlacement.pipeline_id == pipeline_id)
        with _write_transaction(session, "pipeline.delete"):
            session.execute(
                delete(CRMStageMovement)
                .where(CRMStageMovement.placement_id.in_(placement_ids))
                .execution_options(synchronize_session=False)
            )
            session.execute(
                delete(CRMPipelinePlacement)
                .where(CRMPipelinePlacement.pipeline_id == pipeline_id)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                delete(CRMPipelineStage)
                .where(CRMPipelineStage.pipeline_id == pipeline_id)
                .execution_options(synchronize_session=False)
            )
            session.execute(
                delete(CRMPipeline)
                .where(and_(CRMPipeline.id == pipeline_id, CRMPipeline.owner_user_id == actor_user.user_id))
                .execution_options(synchronize_session=False)
            )

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pipeline_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(_event("pipeline.deleted", actor_user, {"pipeline_id": str(pipeline_id)}))
        logger.info("pipeline.deleted", extra={"pipeline_id": str(pipeline_id), "user_id": actor_user.user_id})

    def list_pipelines(
        self,
        session: Session,
        actor_user: ActorUser,
        include_stages: bool = False,
        include_placements: bool = False,
    ) -> list[PipelineRead]:
        stmt = (
            select(CRMPipeline)
            .where(CRMPipeline.owner_user_id == actor_user.user_id)
            .order_by(CRMPipeline.is_default.desc(), CRMPipeline.created_at.desc())
        )
        if include_stages:
            stmt = stmt.options(selectinload(CRMPipeline.stages))
        pipelines = session.scalars(stmt).all()

        pipeline_ids = [pipeline.id for pipeline in pipelines]
        stage_counts = _count_by(session, CRMPipelineStage.pipeline_id, pipeline_ids)
        placement_counts = _count_by(session, CRMPipelinePlacement.pipeline_id, pipeline_ids)

        placements_by_pipeline: dict[uuid.UUID, list[PlacementRead]] = {}
        if include_placements and pipeline_ids:
            placements = _enriched_placements(
                session,
                CRMPipelinePlacement.pipeline_id.in_(pipeline_ids),
                movement_limit=get_settings().pipeline_recent_movements_limit,
            )
            for placement in placements:
                placements_by_pipeline.setdefault(placement.pipeline_id, []).append(placement)

        return [
            self._to_pipeline_read(
                pipeline,
                stage_count=stage_counts.get(pipeline.id, 0),
                placement_count=placement_counts.get(pipeline.id, 0),
                stages=[_to_stage_read(stage) for stage in pipeline.stages] if include_stages else None,
                placements=placements_by_pipeline.get(pipeline.id, []) if include_placements else None,
            )
            for pipeline in pipelines
        ]

    def get_pipeline(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> PipelineRead:
        pipeline = _get_owned_pipeline(session, actor_user, pipeline_id)
        stages = StageService().list_stages(session, actor_user, pipeline_id)
        placements = _enriched_placements(
            session,
            CRMPipelinePlacement.pipeline_id == pipeline_id,
            movement_limit=get_settings().pipeline_recent_movements_limit,
        )
        return self._to_pipeline_read(
            pipeline,
            stage_count=len(stages),
            placement_count=len(placements),
            stages=stages,
            placements=placements,
        )

    def _stage_seeds(self, dto: PipelineCreate) -> list[PipelineStageSeed]:
        if dto.stages is None:
            return [
                PipelineStageSeed(name=name, color=color, order=order, is_won=is_won, is_lost=is_lost)
                for order, (name, color, is_won, is_lost) in enumerate(DEFAULT_STAGE_CATALOG)
            ]

        default_color = get_settings().stage_default_color
        seeds: list[PipelineStageSeed] = []
        for index, stage in enumerate(dto.stages):
            if stage.is_won and stage.is_lost:
                raise ValidationError(f"stage '{stage.name}' cannot be both won and lost")
            seeds.append(
                PipelineStageSeed(
                    name=_clean_name(stage.name, "stage name"),
                    color=stage.color or default_color,
                    order=stage.order if stage.order is not None else index,
                    is_won=stage.is_won,
                    is_lost=stage.is_lost,
                )
            )
        return seeds

    def _unset_other_defaults(self, session: Session, owner_user_id: str, pipeline_id: uuid.UUID | None) -> None:
        criteria = [CRMPipeline.owner_user_id == owner_user_id, CRMPipeline.is_default.is_(True)]
        if pipeline_id is not None:
            criteria.append(CRMPipeline.id != pipeline_id)
        session.execute(
            update(CRMPipeline)
            .where(and_(*criteria))
            .values(is_default=False, updated_at=utcnow(), row_version=CRMPipeline.row_version + 1)
        )

    def _to_pipeline_read(
        self,
        pipeline: CRMPipeline,
        *,
        stage_count: int,
        placement_count: int,
        stages: list[PipelineStageRead] | None = None,
        placements: list[PlacementRead] | None = None,
    ) -> PipelineRead:
        return PipelineRead(
            id=pipeline.id,
            owner_user_id=pipeline.owner_user_id,
            name=pipeline.name,
            description=pipeline.description,
            color=pipeline.color,
            is_default=pipeline.is_default,
            is_active=pipeline.is_active,
            created_at=pipeline.created_at,
            updated_at=pipeline.updated_at,
            row_version=pipeline.row_version,
            stage_count=stage_count,
            placement_count=placement_count,
            stages=stages,
            placements=placements,
        )


class StageService:
    entity_type = "crm.pipeline.stage"

    def create_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PipelineStageCreate,
    ) -> PipelineStageRead:
        pipeline = _get_owned_pipeline(session, actor_user, pipeline_id)
        name = _clean_name(dto.name, "stage name")
        if dto.is_won and dto.is_lost:
            raise ValidationError("stage cannot be both won and lost")

        stage = CRMPipelineStage(
            pipeline_id=pipeline.id,
            name=name,
            color=dto.color or get_settings().stage_default_color,
            order=dto.order,
            is_won=dto.is_won,
            is_lost=dto.is_lost,
        )
        with _write_transaction(session, "stage.create"):
            session.add(stage)
            session.flush()
            after = _stage_snapshot(stage)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage.id),
            action="create",
            before=None,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        return _to_stage_read(stage, placement_count=0)

    def update_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        stage_id: uuid.UUID,
        dto: PipelineStageUpdate,
    ) -> PipelineStageRead:
        pipeline = _get_owned_pipeline(session, actor_user, pipeline_id)
        stage = _get_stage(session, pipeline.id, stage_id)

        changes = {key: value for key, value in dto.model_dump(exclude_unset=True).items() if value is not None}
        is_won = changes.get("is_won", stage.is_won)
        is_lost = changes.get("is_lost", stage.is_lost)
        if is_won and is_lost:
            raise ValidationError("stage cannot be both won and lost")
        if "name" in changes:
            changes["name"] = _clean_name(changes["name"], "stage name")

        placement_count = _count_by(session, CRMPipelinePlacement.stage_id, [stage.id]).get(stage.id, 0)
        if (is_won != stage.is_won or is_lost != stage.is_lost) and placement_count > 0:
            raise ConflictError("terminal flags cannot change while the stage holds placements")

        before = _stage_snapshot(stage)
        with _write_transaction(session, "stage.update"):
            for key, value in changes.items():
                setattr(stage, key, value)
            session.flush()
            after = _stage_snapshot(stage)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage_id),
            action="update",
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        return _to_stage_read(stage, placement_count=placement_count)

    def delete_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        stage_id: uuid.UUID,
    ) -> None:
        pipeline = _get_owned_pipeline(session, actor_user, pipeline_id)
        stage = _get_stage(session, pipeline.id, stage_id)
        placement_count = _count_by(session, CRMPipelinePlacement.stage_id, [stage.id]).get(stage.id, 0)
        if placement_count > 0:
            raise ConflictError(f"stage holds {placement_count} placement(s); move them before deleting")

        before = _stage_snapshot(stage)
        with _write_transaction(session, "stage.delete", conflict_message="stage received a placement concurrently"):
            session.delete(stage)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(stage_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )

    def list_stages(self, session: Session, actor_user: ActorUser, pipeline_id: uuid.UUID) -> list[PipelineStageRead]:
        pipeline = _get_owned_pipeline(session, actor_user, pipeline_id)
        stages = session.scalars(
            select(CRMPipelineStage)
            .where(CRMPipelineStage.pipeline_id == pipeline.id)
            .order_by(CRMPipelineStage.order, CRMPipelineStage.created_at)
        ).all()
        counts = _count_by(session, CRMPipelinePlacement.stage_id, [stage.id for stage in stages])
        return [_to_stage_read(stage, placement_count=counts.get(stage.id, 0)) for stage in stages]


class PlacementService:
    entity_type = "crm.pipeline.placement"

    def create_placement(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        dto: PlacementCreate,
    ) -> PlacementRead:
        pipeline = _get_owned_pipeline(session, actor_user, pipeline_id)
        stage = _get_stage(session, pipeline.id, dto.stage_id)
        if dto.contact_id is not None and self._owned_contact_id(session, actor_user, dto.contact_id) is None:
            raise NotFoundError("contact not found")
        if dto.lead_id is not None and self._owned_lead_id(session, actor_user, dto.lead_id) is None:
            raise NotFoundError("lead not found")
        title = _clean_name(dto.title, "title")

        now = utcnow()
        placement = CRMPipelinePlacement(
            pipeline_id=pipeline.id,
            stage_id=stage.id,
            title=title,
            contact_id=dto.contact_id,
            lead_id=dto.lead_id,
            value=_to_decimal(dto.value),
            notes=dto.notes,
            won_at=now if stage.is_won else None,
            lost_at=now if stage.is_lost else None,
            created_at=now,
            updated_at=now,
        )
        with _write_transaction(session, "placement.create", conflict_message="stage was removed concurrently"):
            session.add(placement)
            session.flush()
            session.add(
                CRMStageMovement(
                    placement_id=placement.id,
                    from_stage_id=None,
                    from_stage_name=None,
                    to_stage_id=stage.id,
                    to_stage_name=stage.name,
                    reason=INITIAL_PLACEMENT_REASON,
                    moved_by=actor_user.user_id,
                    moved_at=now,
                )
            )
            placement_id = placement.id
            after = _placement_snapshot(placement)

        observe_placement_created()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(placement_id),
            action="create",
            before=None,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            _event(
                "pipeline.placement.created",
                actor_user,
                {"pipeline_id": str(pipeline_id), "placement_id": str(placement_id), "stage_id": str(dto.stage_id)},
            )
        )
        logger.info(
            "pipeline.placement.created",
            extra={"pipeline_id": str(pipeline_id), "placement_id": str(placement_id), "stage_id": str(dto.stage_id)},
        )
        return _read_placement(session, placement_id, get_settings().pipeline_recent_movements_limit)

    def list_placements(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        stage_id: uuid.UUID | None = None,
    ) -> list[PlacementRead]:
        pipeline = _get_owned_pipeline(session, actor_user, pipeline_id)
        criteria = [CRMPipelinePlacement.pipeline_id == pipeline.id]
        if stage_id is not None:
            criteria.append(CRMPipelinePlacement.stage_id == stage_id)
        return _enriched_placements(
            session,
            *criteria,
            movement_limit=get_settings().pipeline_recent_movements_limit,
        )

    def get_placement(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        placement_id: uuid.UUID,
    ) -> PlacementRead:
        pipeline = _get_owned_pipeline(session, actor_user, pipeline_id)
        placement = _get_placement(session, pipeline.id, placement_id)
        return _read_placement(session, placement.id, movement_limit=None)

    def update_placement(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        placement_id: uuid.UUID,
        dto: PlacementUpdate,
    ) -> PlacementRead:
        pipeline = _get_owned_pipeline(session, actor_user, pipeline_id)
        placement = _get_placement(session, pipeline.id, placement_id)

        changes = dto.model_dump(exclude_unset=True)
        if "title" in changes:
            if changes["title"] is None:
                changes.pop("title")
            else:
                changes["title"] = _clean_name(changes["title"], "title")
        if "value" in changes:
            changes["value"] = _to_decimal(changes["value"])

        before = _placement_snapshot(placement)
        with _write_transaction(session, "placement.update"):
            for key, value in changes.items():
                setattr(placement, key, value)
            placement.row_version = placement.row_version + 1
            session.flush()
            after = _placement_snapshot(placement)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(placement_id),
            action="update",
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        return _read_placement(session, placement_id, get_settings().pipeline_recent_movements_limit)

    def delete_placement(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        placement_id: uuid.UUID,
    ) -> None:
        pipeline = _get_owned_pipeline(session, actor_user, pipeline_id)
        placement = _get_placement(session, pipeline.id, placement_id)
        before = _placement_snapshot(placement)

        with _write_transaction(session, "placement.delete"):
            session.execute(
                delete(CRMStageMovement)
                .where(CRMStageMovement.placement_id == placement_id)
                .execution_options(synchronize_session=False)
            )
            session.delete(placement)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(placement_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            _event(
                "pipeline.placement.deleted",
                actor_user,
                {"pipeline_id": str(pipeline_id), "placement_id": str(placement_id)},
            )
        )

    def _owned_contact_id(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> uuid.UUID | None:
        return session.scalar(
            select(CRMContact.id).where(
                and_(CRMContact.id == contact_id, CRMContact.owner_user_id == actor_user.user_id)
            )
        )

    def _owned_lead_id(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> uuid.UUID | None:
        return session.scalar(
            select(CRMLead.id).where(and_(CRMLead.id == lead_id, CRMLead.owner_user_id == actor_user.user_id))
        )


@dataclass(frozen=True)
class PendingMove:
    """A validated move that has not been written yet."""

    pipeline_id: uuid.UUID
    placement_id: uuid.UUID
    observed_row_version: int
    from_stage_id: uuid.UUID
    from_stage_name: str
    to_stage_id: uuid.UUID
    to_stage_name: str
    to_is_won: bool
    to_is_lost: bool
    reason: str | None


class TransitionEngine:
    """Moves placements between stages of one pipeline.

    ``prepare`` runs every precondition against the current state and captures what it
    observed; ``commit`` writes the placement update and the movement record in one
    transaction, guarded on that observation. A guard miss means another move committed
    first and surfaces as a conflict with nothing written.
    """

    entity_type = "crm.pipeline.placement"

    def __init__(self, validator: TransitionValidator | None = None) -> None:
        self.validator = validator or UnconstrainedTransitionValidator()

    def move(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        placement_id: uuid.UUID,
        dto: PlacementMoveRequest,
    ) -> PlacementRead:
        pending = self.prepare(session, actor_user, pipeline_id, placement_id, dto)
        return self.commit(session, actor_user, pending)

    def prepare(
        self,
        session: Session,
        actor_user: ActorUser,
        pipeline_id: uuid.UUID,
        placement_id: uuid.UUID,
        dto: PlacementMoveRequest,
    ) -> PendingMove:
        pipeline = _get_owned_pipeline(session, actor_user, pipeline_id)
        placement = _get_placement(session, pipeline.id, placement_id)
        to_stage = session.scalar(
            select(CRMPipelineStage).where(
                and_(CRMPipelineStage.id == dto.to_stage_id, CRMPipelineStage.pipeline_id == pipeline.id)
            )
        )
        if to_stage is None:
            raise NotFoundError("target stage not found")
        if to_stage.id == placement.stage_id:
            raise ConflictError("placement is already in this stage")

        from_stage = session.get(CRMPipelineStage, placement.stage_id)
        if from_stage is None:
            raise InternalError("placement references a missing stage")
        self.validator.validate(placement, from_stage, to_stage)

        if dto.row_version is not None and dto.row_version != placement.row_version:
            raise ConflictError("row_version conflict")

        return PendingMove(
            pipeline_id=pipeline.id,
            placement_id=placement.id,
            observed_row_version=placement.row_version,
            from_stage_id=from_stage.id,
            from_stage_name=from_stage.name,
            to_stage_id=to_stage.id,
            to_stage_name=to_stage.name,
            to_is_won=to_stage.is_won,
            to_is_lost=to_stage.is_lost,
            reason=dto.reason,
        )

    def commit(self, session: Session, actor_user: ActorUser, pending: PendingMove) -> PlacementRead:
        log_extra = {
            "pipeline_id": str(pending.pipeline_id),
            "placement_id": str(pending.placement_id),
            "from_stage_id": str(pending.from_stage_id),
            "to_stage_id": str(pending.to_stage_id),
            "user_id": actor_user.user_id,
        }
        now = utcnow()

        with tracer.start_as_current_span("crm.pipeline.move") as span:
            span.set_attribute("crm.pipeline_id", str(pending.pipeline_id))
            span.set_attribute("crm.placement_id", str(pending.placement_id))
            span.set_attribute("crm.from_stage_id", str(pending.from_stage_id))
            span.set_attribute("crm.to_stage_id", str(pending.to_stage_id))
            if actor_user.correlation_id:
                span.set_attribute("correlation_id", actor_user.correlation_id)

            try:
                result = session.execute(
                    update(CRMPipelinePlacement)
                    .where(
                        and_(
                            CRMPipelinePlacement.id == pending.placement_id,
                            CRMPipelinePlacement.pipeline_id == pending.pipeline_id,
                            CRMPipelinePlacement.stage_id == pending.from_stage_id,
                            CRMPipelinePlacement.row_version == pending.observed_row_version,
                            # The target stage may have been deleted since prepare.
                            select(CRMPipelineStage.id)
                            .where(
                                and_(
                                    CRMPipelineStage.id == pending.to_stage_id,
                                    CRMPipelineStage.pipeline_id == pending.pipeline_id,
                                )
                            )
                            .exists(),
                        )
                    )
                    .values(
                        stage_id=pending.to_stage_id,
                        won_at=now if pending.to_is_won else None,
                        lost_at=now if pending.to_is_lost else None,
                        updated_at=now,
                        row_version=CRMPipelinePlacement.row_version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    session.rollback()
                    span.set_attribute("crm.move.outcome", "conflict")
                    observe_pipeline_move("conflict")
                    logger.info("pipeline.move.conflict", extra=log_extra)
                    raise ConflictError("placement or target stage was changed concurrently; reload and retry")

                session.add(
                    CRMStageMovement(
                        placement_id=pending.placement_id,
                        from_stage_id=pending.from_stage_id,
                        from_stage_name=pending.from_stage_name,
                        to_stage_id=pending.to_stage_id,
                        to_stage_name=pending.to_stage_name,
                        reason=pending.reason,
                        moved_by=actor_user.user_id,
                        moved_at=now,
                    )
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                span.set_attribute("crm.move.outcome", "conflict")
                observe_pipeline_move("conflict")
                logger.info("pipeline.move.conflict", extra={**log_extra, "error": str(exc.orig)[:500]})
                raise ConflictError("target stage was removed concurrently") from exc
            except SQLAlchemyError as exc:
                session.rollback()
                span.set_attribute("crm.move.outcome", "error")
                observe_pipeline_move("error")
                logger.exception("pipeline.move.failed", extra={**log_extra, "error": str(exc)[:500]})
                raise InternalError("failed to move placement") from exc

            span.set_attribute("crm.move.outcome", "moved")

        observe_pipeline_move("moved")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(pending.placement_id),
            action="move",
            before={"stage_id": str(pending.from_stage_id), "row_version": pending.observed_row_version},
            after={"stage_id": str(pending.to_stage_id), "row_version": pending.observed_row_version + 1},
            correlation_id=actor_user.correlation_id,
        )

        payload = {
            "pipeline_id": str(pending.pipeline_id),
            "placement_id": str(pending.placement_id),
            "from_stage_id": str(pending.from_stage_id),
            "to_stage_id": str(pending.to_stage_id),
            "reason": pending.reason,
        }
        events.publish(_event("pipeline.placement.moved", actor_user, payload))
        if pending.to_is_won:
            events.publish(_event("pipeline.placement.won", actor_user, payload))
        elif pending.to_is_lost:
            events.publish(_event("pipeline.placement.lost", actor_user, payload))

        logger.info("pipeline.move.committed", extra=log_extra)
        return _read_placement(session, pending.placement_id, get_settings().pipeline_recent_movements_limit)
