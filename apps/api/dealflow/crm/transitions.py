from __future__ import annotations

from typing import Protocol

from dealflow.crm.errors import ConflictError, NotFoundError
from dealflow.crm.models import CRMPipelinePlacement, CRMPipelineStage


class TransitionValidator(Protocol):
    def validate(
        self,
        placement: CRMPipelinePlacement,
        from_stage: CRMPipelineStage,
        to_stage: CRMPipelineStage,
    ) -> None: ...


class UnconstrainedTransitionValidator:
    """Kanban rule: the stage graph of a pipeline is complete.

    A move is legal when the target stage belongs to the placement's pipeline and
    differs from the current stage. Moving from a terminal stage back to an open
    one is allowed.
    """

    def validate(
        self,
        placement: CRMPipelinePlacement,
        from_stage: CRMPipelineStage,
        to_stage: CRMPipelineStage,
    ) -> None:
        if to_stage.pipeline_id != placement.pipeline_id:
            raise NotFoundError("target stage not found")
        if from_stage.id == to_stage.id:
            raise ConflictError("placement is already in this stage")
