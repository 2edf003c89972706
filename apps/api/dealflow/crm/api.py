from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from dealflow.context import get_correlation_id
from dealflow.core.auth import AuthUser, get_current_user as get_auth_user
from dealflow.core.database import get_db
from dealflow.crm.errors import PipelineError
from dealflow.crm.schemas import (
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    PipelineStageUpdate,
    PipelineUpdate,
    PlacementCreate,
    PlacementMoveRequest,
    PlacementRead,
    PlacementUpdate,
)
from dealflow.crm.service import ActorUser, PipelineService, PlacementService, StageService, TransitionEngine

pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
placements_router = APIRouter(prefix="/api/crm", tags=["crm.placements"])

pipeline_service = PipelineService()
stage_service = StageService()
placement_service = PlacementService()
transition_engine = TransitionEngine()

_KIND_BY_STATUS = {
    status.HTTP_403_FORBIDDEN: "forbidden",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_409_CONFLICT: "conflict",
    422: "validation",
    status.HTTP_429_TOO_MANY_REQUESTS: "rate_limited",
}


@dataclass
class ErrorEnvelope:
    kind: str
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    kind: str,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        kind=kind,
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failure(request: Request, exc: PipelineError | HTTPException, code: str) -> JSONResponse:
    if isinstance(exc, PipelineError):
        return error_response(request, status_code=exc.status_code, kind=exc.kind, code=code, message=exc.message)
    return error_response(
        request,
        status_code=exc.status_code,
        kind=_KIND_BY_STATUS.get(exc.status_code, "internal"),
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


@pipelines_router.get("/pipelines", response_model=list[PipelineRead])
def list_pipelines(
    request: Request,
    include_stages: bool = Query(default=False),
    include_placements: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.list_pipelines(
            db,
            user,
            include_stages=include_stages,
            include_placements=include_placements,
        )
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_pipeline_list_failed")


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.create_pipeline(db, user, dto)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_pipeline_create_failed")


@pipelines_router.get("/pipelines/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return pipeline_service.get_pipeline(db, user, pipeline_id)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_pipeline_get_failed")


@pipelines_router.patch("/pipelines/{pipeline_id}", response_model=PipelineRead)
def update_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return pipeline_service.update_pipeline(db, user, pipeline_id, dto)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_pipeline_update_failed")


@pipelines_router.delete("/pipelines/{pipeline_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.pipelines.manage")
        pipeline_service.delete_pipeline(db, user, pipeline_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_pipeline_delete_failed")


@pipelines_router.get("/pipelines/{pipeline_id}/stages", response_model=list[PipelineStageRead])
def list_pipeline_stages(
    request: Request,
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return stage_service.list_stages(db, user, pipeline_id)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_pipeline_stage_list_failed")


@pipelines_router.post(
    "/pipelines/{pipeline_id}/stages",
    response_model=PipelineStageRead,
    status_code=status.HTTP_201_CREATED,
)
def add_pipeline_stage(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return stage_service.create_stage(db, user, pipeline_id, dto)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_pipeline_stage_create_failed")


@pipelines_router.patch("/pipelines/{pipeline_id}/stages/{stage_id}", response_model=PipelineStageRead)
def update_pipeline_stage(
    request: Request,
    pipeline_id: uuid.UUID,
    stage_id: uuid.UUID,
    dto: PipelineStageUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.manage")
        return stage_service.update_stage(db, user, pipeline_id, stage_id, dto)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_pipeline_stage_update_failed")


@pipelines_router.delete("/pipelines/{pipeline_id}/stages/{stage_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_pipeline_stage(
    request: Request,
    pipeline_id: uuid.UUID,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.pipelines.manage")
        stage_service.delete_stage(db, user, pipeline_id, stage_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_pipeline_stage_delete_failed")


@placements_router.get("/pipelines/{pipeline_id}/placements", response_model=list[PlacementRead])
def list_placements(
    request: Request,
    pipeline_id: uuid.UUID,
    stage_id: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PlacementRead] | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return placement_service.list_placements(db, user, pipeline_id, stage_id=stage_id)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_placement_list_failed")


@placements_router.post(
    "/pipelines/{pipeline_id}/placements",
    response_model=PlacementRead,
    status_code=status.HTTP_201_CREATED,
)
def create_placement(
    request: Request,
    pipeline_id: uuid.UUID,
    dto: PlacementCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PlacementRead | JSONResponse:
    try:
        require_permission(user, "crm.placements.write")
        return placement_service.create_placement(db, user, pipeline_id, dto)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_placement_create_failed")


@placements_router.get("/pipelines/{pipeline_id}/placements/{placement_id}", response_model=PlacementRead)
def get_placement(
    request: Request,
    pipeline_id: uuid.UUID,
    placement_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PlacementRead | JSONResponse:
    try:
        require_permission(user, "crm.pipelines.read")
        return placement_service.get_placement(db, user, pipeline_id, placement_id)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_placement_get_failed")


@placements_router.patch("/pipelines/{pipeline_id}/placements/{placement_id}", response_model=PlacementRead)
def update_placement(
    request: Request,
    pipeline_id: uuid.UUID,
    placement_id: uuid.UUID,
    dto: PlacementUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PlacementRead | JSONResponse:
    try:
        require_permission(user, "crm.placements.write")
        return placement_service.update_placement(db, user, pipeline_id, placement_id, dto)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_placement_update_failed")


@placements_router.delete(
    "/pipelines/{pipeline_id}/placements/{placement_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_placement(
    request: Request,
    pipeline_id: uuid.UUID,
    placement_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.placements.write")
        placement_service.delete_placement(db, user, pipeline_id, placement_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_placement_delete_failed")


@placements_router.post(
    "/pipelines/{pipeline_id}/placements/{placement_id}/move",
    response_model=PlacementRead,
)
def move_placement(
    request: Request,
    pipeline_id: uuid.UUID,
    placement_id: uuid.UUID,
    dto: PlacementMoveRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PlacementRead | JSONResponse:
    try:
        require_permission(user, "crm.placements.move")
        return transition_engine.move(db, user, pipeline_id, placement_id, dto)
    except (PipelineError, HTTPException) as exc:
        return _failure(request, exc, "crm_placement_move_failed")
