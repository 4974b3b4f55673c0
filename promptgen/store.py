"""Stage result store — get/set/reset over a PipelineRun.

These are the only functions that write stage outputs and the completion set.
The orchestrator calls them after successful remote calls; user edits go
through the same ``set_output`` path. They carry no business rules beyond
shape checks: cascades, preconditions and error recording live in
``promptgen.orchestrator``.
"""

from __future__ import annotations

import logging
from typing import Iterable

from promptgen.errors import InputError
from promptgen.models import STAGE_IDS, PipelineRun, StageOutput

logger = logging.getLogger(__name__)


def _check_stage_id(stage_id: int) -> None:
    if stage_id not in STAGE_IDS:
        raise InputError(f"Unknown stage id: {stage_id}")


def get_output(run: PipelineRun, stage_id: int) -> StageOutput:
    """Return the current output of one stage."""
    return run.slot(stage_id).output


def set_output(run: PipelineRun, stage_id: int, value: StageOutput) -> None:
    """Overwrite one stage's output, leaving every other slot untouched.

    Raises:
        InputError: If the value's shape does not match the stage kind
            (list of strings for stages 1 and 3, string for stages 2 and 4).
    """
    slot = run.slot(stage_id)
    if slot.stage_kind.is_list:
        if isinstance(value, str) or not all(isinstance(item, str) for item in value):
            raise InputError(f"Stage {stage_id} expects a list of strings.")
        slot.output = list(value)
    else:
        if not isinstance(value, str):
            raise InputError(f"Stage {stage_id} expects a string.")
        slot.output = value


def mark_completed(run: PipelineRun, stage_id: int) -> None:
    _check_stage_id(stage_id)
    run.completed_stage_ids = run.completed_stage_ids | {stage_id}


def replace_completed(run: PipelineRun, stage_ids: Iterable[int]) -> None:
    """Atomically replace the completion set."""
    new_ids = set(stage_ids)
    for stage_id in new_ids:
        _check_stage_id(stage_id)
    run.completed_stage_ids = new_ids


def reset(run: PipelineRun) -> None:
    """Clear every stage output and all per-attempt bookkeeping."""
    for slot in run.stages:
        slot.output = [] if slot.stage_kind.is_list else ""
    replace_completed(run, ())
    run.last_error = None
    run.progress_message = None
    run.stream_result = None
    run.active_stage_id = 1
    logger.debug("Reset run for description %.30r", run.description)
