"""FastAPI server exposing the prompt generation pipeline as REST endpoints."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from promptgen import services
from promptgen.api_models import (
    AcceptedResponse,
    CreateRunRequest,
    EditItemRequest,
    EditStageRequest,
    RunSummary,
    RunView,
    StageRunResponse,
    StageTextResponse,
)
from promptgen.errors import InputError, RunBusyError
from promptgen.models import PromptRecord
from promptgen.orchestrator import PipelineOrchestrator
from promptgen.run_manager import RunContext, run_in_background, run_manager

# Configure logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await services.stage_client.aclose()


# -- FastAPI app ---------------------------------------------------------------
fastapi_app = FastAPI(title="Prompt Generator", version="0.1.0", lifespan=lifespan)

# CORS
cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
fastapi_app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@fastapi_app.exception_handler(InputError)
async def input_error_handler(request: Request, exc: InputError):
    status_code = 409 if isinstance(exc, RunBusyError) else 400
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def get_orchestrator() -> PipelineOrchestrator:
    """Shared orchestrator; overridden in tests."""
    return services.orchestrator


def _get_context(run_id: str) -> RunContext:
    ctx = run_manager.get_run(run_id)
    if not ctx:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found.")
    return ctx


def _ensure_no_background_task(ctx: RunContext) -> None:
    # A background task may be scheduled but not yet marked the run as busy.
    if ctx.task is not None and not ctx.task.done():
        raise RunBusyError(f"Run '{ctx.run_id}' has a background generation in progress.")


# -- REST endpoints ------------------------------------------------------------
@fastapi_app.get("/health")
async def health():
    """Health check."""
    return {"status": "healthy"}


@fastapi_app.post("/runs", status_code=201, response_model=RunView)
async def create_run(body: CreateRunRequest):
    """Create a new pipeline run for a description."""
    run_id = str(uuid.uuid4())
    ctx = run_manager.create_run(run_id, body.description, body.language)
    logger.info("[POST /runs] Created run %s (language=%s)", run_id, body.language)
    return RunView.from_context(ctx)


@fastapi_app.get("/runs", response_model=list[RunSummary])
async def list_runs():
    """List all runs without stage outputs."""
    return [RunSummary.from_context(ctx) for ctx in run_manager.list_runs()]


@fastapi_app.get("/runs/{run_id}", response_model=RunView)
async def get_run(run_id: str):
    """Get full state for a run."""
    return RunView.from_context(_get_context(run_id))


@fastapi_app.delete("/runs/{run_id}", status_code=204)
async def delete_run(run_id: str):
    ctx = _get_context(run_id)
    if ctx.task is not None and not ctx.task.done():
        ctx.task.cancel()
    run_manager.remove_run(run_id)


@fastapi_app.post("/runs/{run_id}/restart", response_model=RunView)
async def restart_run(run_id: str, body: CreateRunRequest):
    """Discard the run and start over with a (possibly edited) description."""
    ctx = _get_context(run_id)
    _ensure_no_background_task(ctx)
    if ctx.run.is_busy:
        raise RunBusyError("Cannot restart while a generation is in progress.")
    run_manager.restart_run(run_id, body.description, body.language)
    return RunView.from_context(ctx)


@fastapi_app.post("/runs/{run_id}/reset", response_model=RunView)
async def reset_run(run_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    ctx = _get_context(run_id)
    _ensure_no_background_task(ctx)
    orchestrator.reset(ctx.run)
    return RunView.from_context(ctx)


# -- Stage endpoints -----------------------------------------------------------
@fastapi_app.post("/runs/{run_id}/stages/{stage_id}", response_model=StageRunResponse)
async def run_stage(
    run_id: str,
    stage_id: int,
    cascade: bool = False,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Run one stage, or with ``cascade=true`` run it and every stage after it.

    Remote failures are not HTTP errors: the response carries ``ok=false`` and
    the run's ``last_error``.
    """
    ctx = _get_context(run_id)
    _ensure_no_background_task(ctx)
    if cascade:
        ok = await orchestrator.run_from(stage_id, ctx.run)
    else:
        ok = await orchestrator.run_stage(stage_id, ctx.run)
    return StageRunResponse(ok=ok, run=RunView.from_context(ctx))


@fastapi_app.put("/runs/{run_id}/stages/{stage_id}", response_model=RunView)
async def edit_stage(
    run_id: str,
    stage_id: int,
    body: EditStageRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Hand-edit a stage's output."""
    ctx = _get_context(run_id)
    orchestrator.edit_stage_output(stage_id, body.output, ctx.run)
    return RunView.from_context(ctx)


@fastapi_app.post("/runs/{run_id}/stages/{stage_id}/items", response_model=RunView)
async def add_stage_item(
    run_id: str, stage_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    ctx = _get_context(run_id)
    orchestrator.add_stage_item(stage_id, ctx.run)
    return RunView.from_context(ctx)


@fastapi_app.put("/runs/{run_id}/stages/{stage_id}/items/{index}", response_model=RunView)
async def update_stage_item(
    run_id: str,
    stage_id: int,
    index: int,
    body: EditItemRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    ctx = _get_context(run_id)
    orchestrator.update_stage_item(stage_id, index, body.value, ctx.run)
    return RunView.from_context(ctx)


@fastapi_app.post("/runs/{run_id}/stages/{stage_id}/toggle", response_model=RunView)
async def toggle_stage(
    run_id: str, stage_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Expand a stage panel, or collapse it if it is already expanded."""
    ctx = _get_context(run_id)
    orchestrator.toggle_active_stage(stage_id, ctx.run)
    return RunView.from_context(ctx)


@fastapi_app.get("/runs/{run_id}/stages/{stage_id}/text", response_model=StageTextResponse)
async def get_stage_text(
    run_id: str, stage_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Copyable text of a stage (list stages are newline-joined)."""
    ctx = _get_context(run_id)
    return StageTextResponse(stage_id=stage_id, text=orchestrator.stage_text(stage_id, ctx.run))


# -- Background endpoints ------------------------------------------------------
def _spawn(ctx: RunContext, operation) -> AcceptedResponse:
    ctx.task = asyncio.create_task(run_in_background(ctx, operation))
    return AcceptedResponse(run_id=ctx.run_id, status="RUNNING")


@fastapi_app.post("/runs/{run_id}/automate", status_code=202, response_model=AcceptedResponse)
async def automate_run(run_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Run all four stages from scratch in the background.

    Poll GET /runs/{run_id} for ``progress_message`` and the results.
    """
    ctx = _get_context(run_id)
    _ensure_no_background_task(ctx)
    orchestrator.check_ready(1, ctx.run)
    logger.info("[POST /runs/%s/automate] Starting full generation", run_id)
    return _spawn(ctx, orchestrator.run_all)


@fastapi_app.post("/runs/{run_id}/stream", status_code=202, response_model=AcceptedResponse)
async def stream_run(run_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """One-shot streaming generation in the background."""
    ctx = _get_context(run_id)
    _ensure_no_background_task(ctx)
    orchestrator.check_ready(1, ctx.run)
    logger.info("[POST /runs/%s/stream] Starting streaming generation", run_id)
    return _spawn(ctx, orchestrator.run_streaming)


# -- Saving --------------------------------------------------------------------
@fastapi_app.post("/runs/{run_id}/save", response_model=PromptRecord)
async def save_run(run_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Save the finished prompt to the prompt store."""
    ctx = _get_context(run_id)
    record = await orchestrator.save(ctx.run)
    if record is None:
        raise HTTPException(status_code=502, detail=ctx.run.last_error or "Save failed.")
    return record
