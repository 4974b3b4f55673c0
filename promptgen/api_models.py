"""Pydantic request/response models for the pipeline API."""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel

from promptgen.models import STAGE_IDS, Language, StageKind
from promptgen.run_manager import RunContext


class CreateRunRequest(BaseModel):
    """Request body for POST /runs and POST /runs/{run_id}/restart."""

    description: str
    language: Language = "zh"


class EditStageRequest(BaseModel):
    """Request body for PUT /runs/{run_id}/stages/{stage_id}."""

    output: Union[list[str], str]


class EditItemRequest(BaseModel):
    value: str


class StageView(BaseModel):
    stage_id: int
    stage_kind: StageKind
    output: Union[list[str], str]
    completed: bool


class RunSummary(BaseModel):
    """Lightweight run entry for GET /runs (no stage outputs)."""

    run_id: str
    description: str
    language: Language
    status: str
    completed_stage_ids: list[int]
    last_error: Optional[str] = None

    @classmethod
    def from_context(cls, ctx: RunContext) -> RunSummary:
        run = ctx.run
        return cls(
            run_id=ctx.run_id,
            description=run.description,
            language=run.language,
            status=run.state.kind,
            completed_stage_ids=sorted(run.completed_stage_ids),
            last_error=run.last_error,
        )


class RunView(RunSummary):
    """Full run state for GET /runs/{run_id} and stage actions."""

    running_stage_id: Optional[int] = None
    active_stage_id: int
    stages: list[StageView]
    progress_message: Optional[str] = None
    stream_result: Any = None

    @classmethod
    def from_context(cls, ctx: RunContext) -> RunView:
        run = ctx.run
        summary = RunSummary.from_context(ctx)
        return cls(
            **summary.model_dump(),
            running_stage_id=run.running_stage_id,
            active_stage_id=run.active_stage_id,
            stages=[
                StageView(
                    stage_id=stage_id,
                    stage_kind=run.slot(stage_id).stage_kind,
                    output=run.slot(stage_id).output,
                    completed=stage_id in run.completed_stage_ids,
                )
                for stage_id in STAGE_IDS
            ],
            progress_message=run.progress_message,
            stream_result=run.stream_result,
        )


class StageRunResponse(BaseModel):
    """Response from POST /runs/{run_id}/stages/{stage_id}."""

    ok: bool
    run: RunView


class AcceptedResponse(BaseModel):
    """Response from the background endpoints (automate, stream)."""

    run_id: str
    status: str


class StageTextResponse(BaseModel):
    stage_id: int
    text: str
