"""Pipeline orchestrator — sequences the four dependent stages of a run.

Run modes:

- ``run_stage``: exactly one remote call for one stage.
- ``run_from``: one stage, then cascade through stage 4, stopping at the first
  failure. ``run_from(2)`` is "generate initial prompt", ``run_from(4)`` is
  "apply advice".
- ``run_all``: reset the run, then cascade 1 → 4.
- ``run_streaming``: the one-shot streaming variant fed through the NDJSON
  assembler.

Input problems raise ``InputError`` before anything changes. Remote failures
never escape an operation: they land in ``run.last_error`` and the operation
returns ``False``, leaving every previously completed stage intact.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import Optional

from promptgen import store
from promptgen.client import StageClient
from promptgen.errors import InputError, RemoteCallError, RunBusyError, StreamStatusError
from promptgen.models import (
    STAGE_IDS,
    STAGE_LABELS,
    Idle,
    PipelineRun,
    PromptRecord,
    Running,
    StageOutput,
    Streaming,
    is_empty_output,
)
from promptgen.ndjson import iter_frames
from promptgen.repository import InMemoryPromptRepository, PromptRepository

logger = logging.getLogger(__name__)

TITLE_PREFIX = "提示词_"
TITLE_DESCRIPTION_CHARS = 20

# Fields of a streamed result object and the stage each one fills.
STREAM_RESULT_FIELDS = {1: "keyIntent", 2: "initialPrompt", 4: "finalPrompt"}


class PipelineOrchestrator:
    """State machine driving a ``PipelineRun`` through its stages."""

    def __init__(
        self,
        client: StageClient,
        repository: Optional[PromptRepository] = None,
    ) -> None:
        self._client = client
        self._repository = repository or InMemoryPromptRepository()

    # -- Preconditions ---------------------------------------------------------

    @staticmethod
    def _missing_input(stage_id: int, run: PipelineRun) -> Optional[str]:
        if stage_id == 1 and not run.description.strip():
            return "a description"
        if stage_id == 2 and is_empty_output(store.get_output(run, 1)):
            return "thinking points"
        if stage_id in (3, 4) and is_empty_output(store.get_output(run, 2)):
            return "an initial prompt"
        if stage_id == 4 and is_empty_output(store.get_output(run, 3)):
            return "optimization advice"
        return None

    def check_ready(self, stage_id: int, run: PipelineRun) -> None:
        if stage_id not in STAGE_IDS:
            raise InputError(f"Unknown stage id: {stage_id}")
        if run.is_busy:
            raise RunBusyError("Another generation is already in progress for this run.")
        missing = self._missing_input(stage_id, run)
        if missing:
            raise InputError(f"Stage {stage_id} requires {missing}.")

    # -- Remote calls ----------------------------------------------------------

    async def _call(self, stage_id: int, run: PipelineRun) -> StageOutput:
        # Arguments are read from the slots here, before the await, so edits
        # made while the call is in flight do not reach this request.
        if stage_id == 1:
            return await self._client.thinking_points(run.description, run.language)
        if stage_id == 2:
            return await self._client.system_prompt(
                run.description, run.language, list(store.get_output(run, 1))
            )
        if stage_id == 3:
            return await self._client.optimization_advice(store.get_output(run, 2), run.language)
        return await self._client.apply_optimization(
            store.get_output(run, 2), list(store.get_output(run, 3)), run.language
        )

    async def _execute(self, stage_id: int, run: PipelineRun) -> bool:
        run.last_error = None
        run.state = Running(stage_id=stage_id)
        logger.info("Stage %d started (%s)", stage_id, STAGE_LABELS[stage_id])
        try:
            output = await self._call(stage_id, run)
            if is_empty_output(output):
                raise RemoteCallError(f"Stage {stage_id} returned an empty result.")
        except RemoteCallError as e:
            run.last_error = str(e)
            logger.warning("Stage %d failed: %s", stage_id, e)
            return False
        finally:
            run.state = Idle()

        store.set_output(run, stage_id, output)
        store.mark_completed(run, stage_id)
        run.active_stage_id = stage_id
        logger.info("Stage %d completed", stage_id)
        return True

    async def _cascade(self, start: int, run: PipelineRun, report_progress: bool = False) -> bool:
        for stage_id in range(start, STAGE_IDS[-1] + 1):
            if report_progress:
                run.progress_message = (
                    f"Step {stage_id}/{len(STAGE_IDS)}: {STAGE_LABELS[stage_id]}..."
                )
            if not await self._execute(stage_id, run):
                logger.info("Cascade stopped at stage %d", stage_id)
                return False
        return True

    # -- Run modes -------------------------------------------------------------

    async def run_stage(self, stage_id: int, run: PipelineRun) -> bool:
        """Run exactly one stage against the current slot contents."""
        self.check_ready(stage_id, run)
        return await self._execute(stage_id, run)

    async def run_from(self, stage_id: int, run: PipelineRun) -> bool:
        """Run ``stage_id`` and cascade through stage 4 while calls succeed."""
        self.check_ready(stage_id, run)
        return await self._cascade(stage_id, run)

    async def run_all(self, run: PipelineRun) -> bool:
        """Erase previous outputs and run all four stages in order."""
        self.check_ready(1, run)
        store.reset(run)
        try:
            return await self._cascade(1, run, report_progress=True)
        finally:
            run.progress_message = None

    async def run_streaming(self, run: PipelineRun) -> bool:
        """One-shot generation over the NDJSON stream; the last frame wins."""
        self.check_ready(1, run)
        run.last_error = None
        run.stream_result = None
        run.state = Streaming()
        logger.info("Streaming generation started")
        try:
            chunks = self._client.stream_generate(run.description)
            async with aclosing(chunks), aclosing(iter_frames(chunks)) as frames:
                async for frame in frames:
                    if not frame.ok:
                        raise StreamStatusError(frame.code, frame.message)
                    if frame.data is not None:
                        run.stream_result = frame.data
        except RemoteCallError as e:
            run.last_error = str(e)
            logger.warning("Streaming generation failed: %s", e)
            return False
        finally:
            run.state = Idle()

        if run.stream_result is None:
            run.last_error = "Stream ended without a result."
            return False
        self._commit_stream_result(run)
        logger.info("Streaming generation completed")
        return True

    @staticmethod
    def _commit_stream_result(run: PipelineRun) -> None:
        result = run.stream_result
        values: dict[int, str] = {}
        if isinstance(result, str):
            values[4] = result
        elif isinstance(result, dict):
            for stage_id, key in STREAM_RESULT_FIELDS.items():
                if isinstance(result.get(key), str):
                    values[stage_id] = result[key]

        for stage_id, value in values.items():
            if not value.strip():
                continue
            slot_kind = run.slot(stage_id).stage_kind
            store.set_output(run, stage_id, [value] if slot_kind.is_list else value)
            store.mark_completed(run, stage_id)
            run.active_stage_id = stage_id

    # -- Local edits -----------------------------------------------------------

    def edit_stage_output(self, stage_id: int, new_value: StageOutput, run: PipelineRun) -> None:
        """Replace a stage's output by hand.

        Completion is untouched and downstream stages are not invalidated: a
        final prompt stays in place even after the initial prompt it was
        derived from has been edited.
        """
        store.set_output(run, stage_id, new_value)

    def _list_output(self, stage_id: int, run: PipelineRun) -> list[str]:
        slot = run.slot(stage_id)
        if not slot.stage_kind.is_list:
            raise InputError(f"Stage {stage_id} does not hold a list.")
        return list(slot.output)

    def add_stage_item(self, stage_id: int, run: PipelineRun) -> None:
        items = self._list_output(stage_id, run)
        items.append("")
        store.set_output(run, stage_id, items)

    def update_stage_item(self, stage_id: int, index: int, value: str, run: PipelineRun) -> None:
        items = self._list_output(stage_id, run)
        if not 0 <= index < len(items):
            raise InputError(f"Stage {stage_id} has no item {index}.")
        items[index] = value
        store.set_output(run, stage_id, items)

    def toggle_active_stage(self, stage_id: int, run: PipelineRun) -> int:
        run.slot(stage_id)
        run.active_stage_id = 0 if run.active_stage_id == stage_id else stage_id
        return run.active_stage_id

    def stage_text(self, stage_id: int, run: PipelineRun) -> str:
        output = store.get_output(run, stage_id)
        return "\n".join(output) if isinstance(output, list) else output

    def reset(self, run: PipelineRun) -> None:
        if run.is_busy:
            raise RunBusyError("Cannot reset while a generation is in progress.")
        store.reset(run)

    # -- Saving ----------------------------------------------------------------

    def build_record(self, run: PipelineRun) -> PromptRecord:
        final_prompt = store.get_output(run, 4)
        if is_empty_output(final_prompt):
            raise InputError("Generate a final prompt before saving.")

        description = run.description
        title = TITLE_PREFIX + description[:TITLE_DESCRIPTION_CHARS]
        if len(description) > TITLE_DESCRIPTION_CHARS:
            title += "..."
        return PromptRecord(
            title=title,
            description=description,
            requirement_report=description,
            thinking_points=list(store.get_output(run, 1)),
            initial_prompt=store.get_output(run, 2),
            advice=list(store.get_output(run, 3)),
            final_prompt=final_prompt,
            language=run.language,
        )

    async def save(self, run: PipelineRun) -> Optional[PromptRecord]:
        """Hand the finished prompt to the repository; failures go to last_error."""
        record = self.build_record(run)
        run.last_error = None
        try:
            return await self._repository.save(record)
        except RemoteCallError as e:
            run.last_error = str(e)
            logger.warning("Saving prompt record failed: %s", e)
            return None
