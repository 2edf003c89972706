from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


class PipelineStageSeed(BaseModel):
    name: str = Field(min_length=1)
    color: str | None = Field(default=None, pattern=HEX_COLOR_PATTERN)
    order: int | None = Field(default=None, ge=0)
    is_won: bool = False
    is_lost: bool = False


class PipelineCreate(BaseModel):
    name: str = Field(min_length=2)
    description: str | None = None
    color: str | None = Field(default=None, pattern=HEX_COLOR_PATTERN)
    is_default: bool = False
    stages: list[PipelineStageSeed] | None = None


class PipelineUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=2)
    description: str | None = None
    color: str | None = Field(default=None, pattern=HEX_COLOR_PATTERN)
    is_default: bool | None = None
    is_active: bool | None = None


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1)
    color: str | None = Field(default=None, pattern=HEX_COLOR_PATTERN)
    order: int = Field(ge=0)
    is_won: bool = False
    is_lost: bool = False


class PipelineStageUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    color: str | None = Field(default=None, pattern=HEX_COLOR_PATTERN)
    order: int | None = Field(default=None, ge=0)
    is_won: bool | None = None
    is_lost: bool | None = None


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    color: str
    order: int
    is_won: bool
    is_lost: bool
    created_at: datetime
    updated_at: datetime
    placement_count: int | None = None


class ContactSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str | None
    phone: str | None
    company_name: str | None


class LeadSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str | None
    status: str
    source: str | None


class StageMovementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    placement_id: UUID
    from_stage_id: UUID | None
    from_stage_name: str | None
    to_stage_id: UUID
    to_stage_name: str
    reason: str | None
    moved_by: str
    moved_at: datetime


class PlacementCreate(BaseModel):
    title: str = Field(min_length=1)
    stage_id: UUID
    value: float | None = Field(default=None, gt=0)
    notes: str | None = None
    contact_id: UUID | None = None
    lead_id: UUID | None = None


class PlacementUpdate(BaseModel):
    """Descriptive fields only; the stage changes exclusively through a move."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1)
    value: float | None = Field(default=None, gt=0)
    notes: str | None = None


class PlacementMoveRequest(BaseModel):
    to_stage_id: UUID
    reason: str | None = None
    row_version: int | None = Field(default=None, ge=1)


class PlacementRead(BaseModel):
    id: UUID
    pipeline_id: UUID
    stage_id: UUID
    title: str
    contact_id: UUID | None
    lead_id: UUID | None
    value: float | None
    notes: str | None
    won_at: datetime | None
    lost_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    stage: PipelineStageRead
    contact: ContactSummary | None = None
    lead: LeadSummary | None = None
    movements: list[StageMovementRead] = Field(default_factory=list)


class PipelineRead(BaseModel):
    id: UUID
    owner_user_id: str
    name: str
    description: str | None
    color: str
    is_default: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime
    row_version: int
    stage_count: int = 0
    placement_count: int = 0
    stages: list[PipelineStageRead] | None = None
    placements: list[PlacementRead] | None = None
