"""RunManager — tracks live pipeline runs and their background tasks."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from promptgen.errors import InputError
from promptgen.models import Language, PipelineRun

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal pipeline error"


@dataclass
class RunContext:
    """Tracks a single pipeline run."""

    run_id: str
    run: PipelineRun
    task: Optional[asyncio.Task] = None
    created_at: float = field(default_factory=time.time)


class RunManager:
    """Manages pipeline runs keyed by run id."""

    def __init__(self) -> None:
        self._runs: dict[str, RunContext] = {}

    def create_run(self, run_id: str, description: str, language: Language = "zh") -> RunContext:
        """Register a new run. Raises ValueError if run_id already exists."""
        if run_id in self._runs:
            raise ValueError(f"Run '{run_id}' already exists.")
        ctx = RunContext(run_id=run_id, run=PipelineRun(description=description, language=language))
        self._runs[run_id] = ctx
        logger.info("[RunManager] Created run %s", run_id)
        return ctx

    def get_run(self, run_id: str) -> Optional[RunContext]:
        """Get a run context by ID, or None if not found."""
        return self._runs.get(run_id)

    def list_runs(self) -> list[RunContext]:
        return sorted(self._runs.values(), key=lambda ctx: ctx.created_at)

    def restart_run(
        self, run_id: str, description: str, language: Language = "zh"
    ) -> Optional[RunContext]:
        """Discard the run's state and start over with a new description."""
        ctx = self._runs.get(run_id)
        if ctx:
            ctx.run = PipelineRun(description=description, language=language)
            logger.info("[RunManager] Restarted run %s", run_id)
        return ctx

    def remove_run(self, run_id: str) -> None:
        """Remove a run from tracking."""
        self._runs.pop(run_id, None)


# Module-level singleton
run_manager = RunManager()


async def run_in_background(
    run_ctx: RunContext,
    operation: Callable[[PipelineRun], Awaitable[bool]],
) -> None:
    """Background wrapper for a long orchestrator operation (automate, stream).

    The orchestrator already turns remote failures into ``last_error``; this
    only guards against unexpected exceptions so a crashed task still leaves
    the run readable.
    """
    run = run_ctx.run
    try:
        ok = await operation(run)
        logger.info("[run_in_background] Run %s finished, ok=%s", run_ctx.run_id, ok)
    except InputError as e:
        logger.warning("[run_in_background] Run %s rejected: %s", run_ctx.run_id, e)
        run.last_error = str(e)
    except Exception:
        logger.exception("[run_in_background] Error in background operation for run %s", run_ctx.run_id)
        run.last_error = INTERNAL_ERROR_MESSAGE
        run.progress_message = None
