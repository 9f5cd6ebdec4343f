"""
FastAPI entrypoint for the webaudit service.

This module defines the HTTP interface for audit runs. It starts runs in
the background, exposes their state and progress, streams run events
over SSE, and forwards stop / pause / continue requests to the control
flags of the audit directory.

The audit directory is the source of truth. The in-process registry of
runs exists only to serve event streams and live state; every other
endpoint reads the checkpoint and progress files, so runs started by the
CLI are visible here too.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.responses import Response

from webaudit.app.browser.backend import load_backend_factory
from webaudit.app.config import RunMode, ServiceConfig
from webaudit.app.coordinator.scheduler import AuditScheduler
from webaudit.app.events import MemoryQueueEventEmitter
from webaudit.app.storage.artifacts import read_json
from webaudit.app.storage.checkpoint import CheckpointStore
from webaudit.app.storage.progress import ProgressStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Presentation helpers (presentation-only)
# ---------------------------------------------------------------------------

def pretty_json(data: Any) -> str:
    """
    Pretty-print JSON for human-readable output.

    PRESENTATION ONLY:
    - MUST NOT be used for audit artifacts
    """
    return json.dumps(
        data,
        ensure_ascii=False,
        allow_nan=False,
        indent=2,
        separators=(", ", ": "),
        default=str,
    )


class PrettyJSONResponse(Response):
    """
    Pretty-printed JSON response for human-readable console output.
    """

    media_type = "application/json"

    def render(self, content: Any) -> bytes:
        return pretty_json(content).encode("utf-8")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class AuditRequest(BaseModel):
    """Parameters of a new audit run. Omitted values use service defaults."""

    base_url: str = ""
    codebase_path: str = "."
    prd_path: Optional[str] = None
    focus_areas: List[str] = Field(default_factory=list)
    mode: Optional[RunMode] = None
    parallel_stages: Optional[bool] = None
    max_pages: Optional[int] = Field(None, gt=0)
    max_forms: Optional[int] = Field(None, gt=0)
    timeout_per_stage: Optional[float] = Field(None, gt=0)
    audit_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


@dataclass
class AuditRun:
    """In-process handle on a run started by this service."""

    scheduler: AuditScheduler
    emitter: MemoryQueueEventEmitter
    task: Optional[asyncio.Task] = field(default=None)

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()


# ---------------------------------------------------------------------------
# Application setup
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Webaudit Service",
    description="Staged audit runner for web applications",
    version="0.1.0",
)


# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------

@app.on_event("startup")
def startup_event() -> None:
    """
    Application startup hook.

    Configuration is loaded once and treated as immutable for the lifetime
    of the process. The browser backend factory is resolved here so a bad
    WEBAUDIT_BROWSER_BACKEND fails fast.
    """
    config = ServiceConfig.from_env()
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app.state.config = config
    app.state.browser_factory = load_backend_factory(config.BROWSER_BACKEND)
    app.state.runs = {}


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Stop in-process runs at the next stage boundary."""
    runs: Dict[str, AuditRun] = app.state.runs
    for run in runs.values():
        if run.active:
            run.scheduler.stop()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _audit_path(audit_id: str) -> Path:
    if "/" in audit_id or "\\" in audit_id or audit_id in {".", ".."}:
        raise HTTPException(status_code=400, detail="Invalid audit id")
    config: ServiceConfig = app.state.config
    return config.OUTPUT_ROOT / audit_id


def _checkpoint_store(audit_id: str) -> CheckpointStore:
    store = CheckpointStore(_audit_path(audit_id))
    if store.load() is None:
        raise HTTPException(status_code=404, detail=f"Audit '{audit_id}' not found")
    return store


def prune_finished_runs(runs: Dict[str, AuditRun], keep: int) -> List[str]:
    """
    Drop the oldest finished runs so at most keep of them stay registered.

    Active runs are never dropped. Returns the removed audit ids.
    """
    finished = [audit_id for audit_id, run in runs.items() if not run.active]
    removed = finished[: max(len(finished) - keep, 0)]
    for audit_id in removed:
        del runs[audit_id]
    if removed:
        logger.debug("Released %d finished run(s) from memory", len(removed))
    return removed


def _launch(audit_id: str, run: AuditRun, config=None) -> None:
    async def run_audit_task() -> None:
        try:
            await run.scheduler.run(config)
        except Exception:
            # Scheduler state already records the failure
            logger.exception("Audit %s aborted", audit_id)

    run.task = asyncio.create_task(run_audit_task())
    runs: Dict[str, AuditRun] = app.state.runs
    # Re-registering an id moves it to the end of the retention order.
    runs.pop(audit_id, None)
    runs[audit_id] = run
    prune_finished_runs(runs, app.state.config.RETAINED_RUNS)


def _new_run() -> AuditRun:
    emitter = MemoryQueueEventEmitter()
    scheduler = AuditScheduler(
        browser_factory=app.state.browser_factory,
        emitter=emitter,
    )
    return AuditRun(scheduler=scheduler, emitter=emitter)


def _ensure_not_running(audit_id: str) -> None:
    existing: Optional[AuditRun] = app.state.runs.get(audit_id)
    if existing is not None and existing.active:
        raise HTTPException(
            status_code=409,
            detail=f"Audit '{audit_id}' is already running",
        )


# ---------------------------------------------------------------------------
# API Routes
# ---------------------------------------------------------------------------

@app.post(
    "/audits",
    status_code=202,
    response_class=PrettyJSONResponse,
    summary="Start an audit run",
)
async def start_audit(request: AuditRequest) -> Dict[str, Any]:
    service: ServiceConfig = app.state.config

    try:
        config = service.run_config(
            audit_id=request.audit_id,
            base_url=request.base_url,
            codebase_path=Path(request.codebase_path),
            prd_path=Path(request.prd_path) if request.prd_path else None,
            focus_areas=request.focus_areas,
            mode=request.mode,
            parallel_stages=request.parallel_stages,
            max_pages=request.max_pages,
            max_forms=request.max_forms,
            timeout_per_stage=request.timeout_per_stage,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    _ensure_not_running(config.audit_id)
    _launch(config.audit_id, _new_run(), config)

    return {
        "audit_id": config.audit_id,
        "status": "running",
        "mode": config.mode.value,
        "audit_path": str(config.audit_path),
    }


@app.get(
    "/audits/{audit_id}",
    response_class=PrettyJSONResponse,
    summary="Run state of an audit",
)
async def get_audit(audit_id: str) -> Dict[str, Any]:
    run: Optional[AuditRun] = app.state.runs.get(audit_id)
    state = run.scheduler.get_state() if run is not None else None
    if state is not None:
        return state.model_dump(mode="json")

    checkpoint = _checkpoint_store(audit_id).load()
    return checkpoint.model_dump(mode="json")


@app.get(
    "/audits/{audit_id}/progress",
    response_class=PrettyJSONResponse,
    summary="Progress snapshot of an audit",
)
async def get_progress(audit_id: str) -> Dict[str, Any]:
    progress = ProgressStore(_audit_path(audit_id)).load()
    if progress is None:
        raise HTTPException(status_code=404, detail=f"Audit '{audit_id}' not found")
    return progress.model_dump(mode="json")


@app.get(
    "/audits/{audit_id}/report",
    response_class=PrettyJSONResponse,
    summary="Final report of an audit",
)
async def get_report(audit_id: str) -> Dict[str, Any]:
    report = read_json(_audit_path(audit_id) / "report.json")
    if report is None:
        raise HTTPException(status_code=404, detail=f"No report for audit '{audit_id}'")
    return report


@app.get(
    "/audits/{audit_id}/events",
    summary="Stream run events (SSE)",
)
async def stream_events(audit_id: str):
    """
    Stream the events of a run started by this process.

    This endpoint is observational only:
    - Client disconnects do NOT cancel the run
    - Events do NOT influence execution
    """
    run: Optional[AuditRun] = app.state.runs.get(audit_id)
    if run is None:
        raise HTTPException(
            status_code=404,
            detail=f"No event stream for audit '{audit_id}' in this process",
        )

    async def event_stream():
        try:
            async for event in run.emitter.stream():
                yield event.to_sse_payload()
        except asyncio.CancelledError:
            # Client disconnected; run continues
            pass

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# Run control
# ---------------------------------------------------------------------------

@app.post("/audits/{audit_id}/stop", status_code=202, summary="Request a stop")
async def stop_audit(audit_id: str) -> JSONResponse:
    _checkpoint_store(audit_id).request_stop()
    return JSONResponse(status_code=202, content={"audit_id": audit_id, "requested": "stop"})


@app.post("/audits/{audit_id}/pause", status_code=202, summary="Request a pause")
async def pause_audit(audit_id: str) -> JSONResponse:
    _checkpoint_store(audit_id).request_pause()
    return JSONResponse(status_code=202, content={"audit_id": audit_id, "requested": "pause"})


@app.post("/audits/{audit_id}/continue", status_code=202, summary="Lift a pause")
async def continue_audit(audit_id: str) -> JSONResponse:
    _checkpoint_store(audit_id).request_continue()
    return JSONResponse(status_code=202, content={"audit_id": audit_id, "requested": "continue"})


@app.post(
    "/audits/{audit_id}/resume",
    status_code=202,
    response_class=PrettyJSONResponse,
    summary="Resume an interrupted audit",
)
async def resume_audit(audit_id: str) -> Dict[str, Any]:
    _checkpoint_store(audit_id)
    _ensure_not_running(audit_id)

    run = _new_run()
    if not await run.scheduler.resume(_audit_path(audit_id)):
        raise HTTPException(
            status_code=409,
            detail=f"Audit '{audit_id}' has no resumable checkpoint",
        )
    _launch(audit_id, run)

    state = run.scheduler.get_state()
    return {
        "audit_id": audit_id,
        "status": "running",
        "completed_stages": [s.value for s in state.completed_stages],
    }


# ---------------------------------------------------------------------------
# Health Check
# ---------------------------------------------------------------------------

@app.get(
    "/health",
    summary="Service health check",
)
def health_check() -> JSONResponse:
    """Simple health check endpoint."""
    return JSONResponse(
        content={
            "status": "ok",
            "service": "webaudit",
        }
    )
