"""Shared data models for the prompt generation pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from promptgen.errors import InputError

Language = Literal["zh", "en"]

STAGE_IDS = (1, 2, 3, 4)
SUCCESS_CODE = 200


class StageKind(str, Enum):
    THINKING_POINTS = "THINKING_POINTS"
    INITIAL_PROMPT = "INITIAL_PROMPT"
    OPTIMIZATION_ADVICE = "OPTIMIZATION_ADVICE"
    FINAL_PROMPT = "FINAL_PROMPT"

    @property
    def is_list(self) -> bool:
        """Stages whose output is an ordered list of strings."""
        return self in (StageKind.THINKING_POINTS, StageKind.OPTIMIZATION_ADVICE)


STAGE_KINDS: dict[int, StageKind] = {
    1: StageKind.THINKING_POINTS,
    2: StageKind.INITIAL_PROMPT,
    3: StageKind.OPTIMIZATION_ADVICE,
    4: StageKind.FINAL_PROMPT,
}

STAGE_LABELS: dict[int, str] = {
    1: "generating thinking points",
    2: "generating initial prompt",
    3: "collecting optimization advice",
    4: "generating final prompt",
}

StageOutput = Union[list[str], str]


def is_empty_output(value: StageOutput) -> bool:
    """A string is empty when blank; a list is empty when no item is non-blank."""
    if isinstance(value, str):
        return not value.strip()
    return not any(isinstance(item, str) and item.strip() for item in value)


class StageSlot(BaseModel):
    """Editable output of one pipeline stage."""

    stage_kind: StageKind
    output: StageOutput

    @classmethod
    def empty(cls, stage_kind: StageKind) -> StageSlot:
        return cls(stage_kind=stage_kind, output=[] if stage_kind.is_list else "")


class Idle(BaseModel):
    kind: Literal["idle"] = "idle"


class Running(BaseModel):
    kind: Literal["running"] = "running"
    stage_id: int


class Streaming(BaseModel):
    """The one-shot streaming generation is in flight (no single stage owns it)."""

    kind: Literal["streaming"] = "streaming"


RunState = Annotated[Union[Idle, Running, Streaming], Field(discriminator="kind")]


def _empty_stages() -> list[StageSlot]:
    return [StageSlot.empty(STAGE_KINDS[stage_id]) for stage_id in STAGE_IDS]


class PipelineRun(BaseModel):
    """One end-to-end attempt at turning a description into a final prompt.

    Passed explicitly to every orchestrator operation; nothing about a run
    lives in module state, so any number of runs can coexist.
    """

    description: str = Field(frozen=True)
    language: Language = Field(default="zh", frozen=True)
    stages: list[StageSlot] = Field(default_factory=_empty_stages, min_length=4, max_length=4)
    completed_stage_ids: set[int] = Field(default_factory=set)
    active_stage_id: int = Field(default=0, ge=0, le=4)
    state: RunState = Field(default_factory=Idle)
    last_error: Optional[str] = None
    progress_message: Optional[str] = None
    stream_result: Any = None

    @field_validator("stages")
    @classmethod
    def _stages_in_order(cls, stages: list[StageSlot]) -> list[StageSlot]:
        for stage_id, slot in zip(STAGE_IDS, stages):
            if slot.stage_kind != STAGE_KINDS[stage_id]:
                raise ValueError(
                    f"Stage {stage_id} must be {STAGE_KINDS[stage_id].value}, "
                    f"got {slot.stage_kind.value}"
                )
        return stages

    def slot(self, stage_id: int) -> StageSlot:
        if stage_id not in STAGE_IDS:
            raise InputError(f"Unknown stage id: {stage_id}")
        return self.stages[stage_id - 1]

    @property
    def running_stage_id(self) -> Optional[int]:
        return self.state.stage_id if isinstance(self.state, Running) else None

    @property
    def is_busy(self) -> bool:
        return not isinstance(self.state, Idle)

    @property
    def is_complete(self) -> bool:
        return self.completed_stage_ids == set(STAGE_IDS)


class StreamFrame(BaseModel):
    """One decoded record from the streaming endpoint."""

    code: int
    message: Optional[str] = None
    data: Any = None

    @property
    def ok(self) -> bool:
        return self.code == SUCCESS_CODE


class PromptRecord(BaseModel):
    """Finished prompt handed to the persistence collaborator."""

    title: str
    description: str
    requirement_report: str
    thinking_points: list[str]
    initial_prompt: str
    advice: list[str]
    final_prompt: str
    language: Language
    format: str = "markdown"
    tags: list[str] = []
