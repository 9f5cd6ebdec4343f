"""
Stage scheduler for one audit run.

IMPORTANT:
The scheduler is a DUMB AUTHORITY.

It MUST NOT:
- inspect findings
- interpret stage artifacts
- decide what a stage produces

Its sole responsibilities are:
- enforcing the stage order and stage prerequisites of the active mode
- running parallel-group partners concurrently
- isolating stage failures into failed stage results
- honouring stop / pause / continue flags at stage boundaries
- keeping the checkpoint, progress files and RunState consistent

Concurrency model:
- One run per scheduler instance at a time.
- Parallel partners run as two tasks under asyncio.gather. Every state
  transition (results, completed set, checkpoint, progress) happens in a
  synchronous block with no await in between, so the two tasks never
  interleave a read-modify-write.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import List, Optional

from webaudit.app.browser.backend import (
    BackendFactory,
    BrowserBackend,
    load_backend_factory,
)
from webaudit.app.config import RunConfig, ServiceConfig
from webaudit.app.coordinator.pipeline import (
    effective_dependencies,
    needs_browser,
    parallel_partner,
    stages_for_mode,
)
from webaudit.app.events import (
    AuditEvent,
    AuditEventEmitter,
    AuditEventType,
    NullEventEmitter,
)
from webaudit.app.findings.generator import FindingGenerator
from webaudit.app.schemas.stages import (
    RunState,
    RunStatus,
    StageError,
    StageName,
    StageResult,
    StageStatus,
)
from webaudit.app.stages.base import ExecutorRegistry, StageContext, run_executor
from webaudit.app.stages.registry import default_executors
from webaudit.app.storage.artifacts import ensure_audit_dirs
from webaudit.app.storage.checkpoint import CheckpointStatus, CheckpointStore
from webaudit.app.storage.findings import FindingStore
from webaudit.app.storage.progress import ProgressStore

logger = logging.getLogger(__name__)

SKIP_REASON = "dependencies not satisfied"

_TERMINAL_EVENTS = {
    RunStatus.COMPLETED: AuditEventType.AUDIT_COMPLETED,
    RunStatus.FAILED: AuditEventType.AUDIT_FAILED,
    RunStatus.STOPPED: AuditEventType.AUDIT_STOPPED,
    RunStatus.PAUSED: AuditEventType.AUDIT_PAUSED,
}

_CHECKPOINT_STATUS = {
    RunStatus.COMPLETED: CheckpointStatus.COMPLETE,
    RunStatus.FAILED: CheckpointStatus.FAILED,
    RunStatus.STOPPED: CheckpointStatus.STOPPED,
    RunStatus.PAUSED: CheckpointStatus.PAUSED,
}


class AuditInitializationError(RuntimeError):
    """The audit directory or its state files could not be created."""


class AuditScheduler:
    """
    Executes the stages of one audit run.

    Usage:
        scheduler = AuditScheduler()
        results = await scheduler.run(config)

    Resuming an interrupted run:
        if await scheduler.resume(audit_path):
            results = await scheduler.run()
    """

    def __init__(
        self,
        *,
        executors: Optional[ExecutorRegistry] = None,
        browser: Optional[BrowserBackend] = None,
        browser_factory: Optional[BackendFactory] = None,
        emitter: Optional[AuditEventEmitter] = None,
    ) -> None:
        """
        Direct constructor.

        Intended for tests and explicit wiring. An injected browser is
        borrowed and never closed; a browser built from browser_factory
        is owned by the run and closed when the run ends.
        """
        self._executors = default_executors(executors)
        self._browser = browser
        self._browser_factory = browser_factory
        self._emitter: AuditEventEmitter = emitter or NullEventEmitter()

        self._generator = FindingGenerator()
        self._state: Optional[RunState] = None
        self._resumed = False
        self._running = False

    @classmethod
    def from_config(
        cls,
        config: ServiceConfig,
        *,
        emitter: Optional[AuditEventEmitter] = None,
    ) -> "AuditScheduler":
        """Construct a scheduler wired from service configuration."""
        return cls(
            browser_factory=load_backend_factory(config.BROWSER_BACKEND),
            emitter=emitter,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_state(self) -> Optional[RunState]:
        """Deep copy of the current run state, or None before any run."""
        if self._state is None:
            return None
        return self._state.model_copy(deep=True)

    def stop(self) -> None:
        self._require_state("stop")
        self._checkpoint().request_stop()

    def pause(self) -> None:
        self._require_state("pause")
        self._checkpoint().request_pause()

    def continue_(self) -> None:
        self._require_state("continue")
        self._checkpoint().request_continue()

    async def resume(self, audit_path: Path) -> bool:
        """
        Restore run state from the checkpoint in audit_path.

        Returns False when there is no checkpoint or it is not resumable.
        The restored run is executed by a subsequent call to run().
        """
        store = CheckpointStore(Path(audit_path))
        checkpoint = store.load()
        if checkpoint is None:
            logger.info("No checkpoint found in %s", audit_path)
            return False

        point = store.determine_resume_point(checkpoint)
        if point is None:
            logger.info("Audit %s is not resumable", checkpoint.audit_id)
            return False

        store.clear_stop_flag()
        store.clear_pause_flag()

        self._state = RunState(
            config=checkpoint.config,
            audit_path=str(audit_path),
            started_at=checkpoint.started_at,
            completed_stages=list(point.completed_stages),
        )
        self._generator.reset(FindingStore(Path(audit_path)).max_sequence())
        self._resumed = True

        logger.info(
            "Audit %s will resume at stage %s (%d stages already completed)",
            checkpoint.audit_id,
            point.stage.value,
            len(point.completed_stages),
        )
        return True

    async def run(self, config: Optional[RunConfig] = None) -> List[StageResult]:
        """
        Execute the run and return the stage results produced by it.

        With config, a fresh run starts. Without config, the run
        previously restored by resume() continues.
        """
        if self._running:
            raise RuntimeError("A run is already in progress on this scheduler")

        if config is None:
            if not self._resumed or self._state is None:
                raise ValueError("run() needs a RunConfig unless resume() succeeded first")
            resumed = True
        else:
            self._state = RunState(config=config, audit_path=str(config.audit_path))
            self._generator.reset(0)
            self._resumed = False
            resumed = False

        self._running = True
        try:
            return await self._run(resumed)
        finally:
            self._running = False
            self._resumed = False

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def _run(self, resumed: bool) -> List[StageResult]:
        state = self._state
        config = state.config
        audit_path = Path(state.audit_path)
        planned = stages_for_mode(config.mode)

        try:
            ensure_audit_dirs(audit_path)
            if resumed:
                self._checkpoint().set_status(CheckpointStatus.RUNNING)
                if self._progress().load() is None:
                    self._progress().initialize(
                        config.audit_id,
                        planned,
                        focus_areas=config.focus_areas,
                        started_at=state.started_at,
                    )
                self._progress().set_stop_flag(False)
            else:
                self._checkpoint().initialize(
                    config.audit_id,
                    config=config,
                    planned_stages=planned,
                    started_at=state.started_at,
                )
                self._progress().initialize(
                    config.audit_id,
                    planned,
                    focus_areas=config.focus_areas,
                    started_at=state.started_at,
                )
        except OSError as exc:
            state.status = RunStatus.FAILED
            logger.error("Cannot initialize audit directory %s: %s", audit_path, exc)
            raise AuditInitializationError(
                f"Cannot initialize audit directory {audit_path}: {exc}"
            ) from exc

        state.status = RunStatus.RUNNING
        self._progress().update_status(RunStatus.RUNNING.value)

        await self._emit(
            AuditEventType.AUDIT_RESUMED if resumed else AuditEventType.AUDIT_STARTED,
            mode=config.mode.value,
            stages=[s.value for s in planned],
            completed_stages=[s.value for s in state.completed_stages],
        )
        logger.info(
            "%s audit %s (mode=%s, %d stages)",
            "Resuming" if resumed else "Starting",
            config.audit_id,
            config.mode.value,
            len(planned),
        )

        ctx = self._context(audit_path, needs_browser(config.mode))
        try:
            await self._execute(ctx, planned)
        finally:
            await self._release_browser(ctx)

        status = self._terminal_status()
        state.status = status
        self._checkpoint().set_status(_CHECKPOINT_STATUS[status])
        self._progress().update_status(status.value)

        logger.info(
            "Audit %s finished with status %s (%d results, %d failed)",
            config.audit_id,
            status.value,
            len(state.stage_results),
            sum(1 for r in state.stage_results if r.status == StageStatus.FAILED),
        )
        await self._emit(
            _TERMINAL_EVENTS[status],
            completed_stages=[s.value for s in state.completed_stages],
            skipped_stages=[s.value for s in state.skipped_stages],
            errors_recovered=state.errors_recovered,
        )
        return list(state.stage_results)

    def _terminal_status(self) -> RunStatus:
        state = self._state
        if any(r.status == StageStatus.FAILED for r in state.stage_results):
            return RunStatus.FAILED
        if state.is_stopped:
            return RunStatus.STOPPED
        if state.is_paused:
            return RunStatus.PAUSED
        return RunStatus.COMPLETED

    # ------------------------------------------------------------------
    # Execution loop
    # ------------------------------------------------------------------

    async def _execute(self, ctx: StageContext, planned: List[StageName]) -> None:
        state = self._state
        mode = state.config.mode

        for stage in planned:
            if self._halt_requested():
                break

            # Completed in an earlier session, or already run as a partner.
            if stage in state.completed_stages or self._attempted(stage):
                continue

            if not effective_dependencies(stage, mode) <= set(state.completed_stages):
                await self._skip(stage)
                continue

            partner = self._eligible_partner(stage, planned)
            if partner is not None:
                logger.info("Running %s and %s in parallel", stage.value, partner.value)
                await asyncio.gather(
                    self._run_stage(stage, ctx),
                    self._run_stage(partner, ctx),
                )
            else:
                await self._run_stage(stage, ctx)

    def _halt_requested(self) -> bool:
        """
        Poll the control flags at a stage boundary.

        A pending continue lifts a pause. A pause without a continue
        halts the run with status paused; a stop always halts it.
        """
        state = self._state
        checkpoint = self._checkpoint()

        if checkpoint.check_stop_flag():
            state.is_stopped = True
            self._progress().set_stop_flag(True)
            logger.info("Stop requested for audit %s", state.config.audit_id)
            return True

        if checkpoint.check_continue_flag():
            if state.is_paused:
                logger.info("Audit %s continued", state.config.audit_id)
            state.is_paused = False
        elif checkpoint.check_pause_flag():
            state.is_paused = True

        if state.is_paused:
            logger.info("Audit %s paused", state.config.audit_id)
            return True
        return False

    def _attempted(self, stage: StageName) -> bool:
        return any(r.stage == stage for r in self._state.stage_results)

    def _eligible_partner(
        self,
        stage: StageName,
        planned: List[StageName],
    ) -> Optional[StageName]:
        state = self._state
        if not state.config.parallel_stages:
            return None

        partner = parallel_partner(stage)
        if partner is None or partner not in planned:
            return None
        if partner in state.completed_stages or self._attempted(partner):
            return None
        if not effective_dependencies(partner, state.config.mode) <= set(state.completed_stages):
            return None
        return partner

    async def _skip(self, stage: StageName) -> None:
        state = self._state
        state.stage_results.append(
            StageResult(stage=stage, status=StageStatus.SKIPPED, error=SKIP_REASON)
        )
        state.skipped_stages.append(stage)
        self._progress().skip_stage_progress(stage, SKIP_REASON)

        logger.info("Skipping stage %s: %s", stage.value, SKIP_REASON)
        await self._emit(AuditEventType.STAGE_SKIPPED, stage=stage.value, reason=SKIP_REASON)

    async def _run_stage(self, stage: StageName, ctx: StageContext) -> StageResult:
        state = self._state

        state.current_stages.append(stage)
        self._checkpoint().start_stage(stage)
        self._progress().start_stage_progress(stage)
        await self._emit(AuditEventType.STAGE_STARTED, stage=stage.value)

        started = time.monotonic()
        executor = self._executors.get(stage)
        if executor is None:
            outcome = StageError(
                stage=stage,
                message=f"No executor registered for stage '{stage.value}'",
            )
        else:
            outcome = await run_executor(
                stage,
                executor,
                ctx,
                timeout=state.config.timeout_per_stage,
            )
        duration = round(time.monotonic() - started, 3)

        # ---- no await below until the transition is recorded ----
        if isinstance(outcome, StageError):
            result = StageResult(
                stage=stage,
                status=StageStatus.FAILED,
                duration_seconds=duration,
                error=outcome.message,
            )
            state.stage_results.append(result)
            state.errors_recovered += 1
            self._checkpoint().fail_stage(stage, outcome.message, recoverable=True)
            self._progress().fail_stage_progress(stage, outcome.message)
        else:
            result = StageResult(
                stage=stage,
                status=StageStatus.COMPLETED,
                findings_count=outcome.findings_count,
                duration_seconds=duration,
                output_file=outcome.output_file,
            )
            state.stage_results.append(result)
            state.completed_stages.append(stage)
            state.browser_restarts += int(outcome.details.get("browser_restarts", 0))
            self._checkpoint().complete_stage(
                stage,
                outputs=[outcome.output_file] if outcome.output_file else [],
                metrics=outcome.details,
            )
            self._progress().complete_stage_progress(stage, outcome.findings_count)
        if stage in state.current_stages:
            state.current_stages.remove(stage)
        # ---- transition recorded ----

        if result.status == StageStatus.FAILED:
            logger.warning("Stage %s failed: %s", stage.value, result.error)
            await self._emit(AuditEventType.STAGE_FAILED, stage=stage.value, error=result.error)
        else:
            logger.info(
                "Stage %s completed in %.2fs (%d findings)",
                stage.value,
                duration,
                result.findings_count,
            )
            await self._emit(
                AuditEventType.STAGE_COMPLETED,
                stage=stage.value,
                findings_count=result.findings_count,
                duration_seconds=duration,
            )
            if stage == StageName.REPORT:
                await self._emit(
                    AuditEventType.AUDIT_REPORT_READY,
                    output_file=result.output_file,
                    **outcome.details,
                )
        return result

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def _checkpoint(self) -> CheckpointStore:
        return CheckpointStore(Path(self._state.audit_path))

    def _progress(self) -> ProgressStore:
        return ProgressStore(Path(self._state.audit_path))

    def _require_state(self, action: str) -> None:
        if self._state is None:
            raise RuntimeError(f"Cannot {action}: no audit has been started or resumed")

    def _context(self, audit_path: Path, browser_needed: bool) -> StageContext:
        ctx = StageContext(
            config=self._state.config,
            audit_path=audit_path,
            generator=self._generator,
            findings=FindingStore(audit_path),
            progress=ProgressStore(audit_path),
            browser=self._browser,
        )
        if ctx.browser is None and browser_needed and self._browser_factory is not None:
            try:
                ctx.browser = self._browser_factory()
            except Exception as exc:
                logger.exception("Browser backend could not be started")
                ctx.browser_error = f"Browser backend could not be started: {exc}"
        return ctx

    async def _release_browser(self, ctx: StageContext) -> None:
        if ctx.browser is None or ctx.browser is self._browser:
            return
        try:
            await ctx.browser.close()
        except Exception:
            logger.warning("Browser backend close failed", exc_info=True)

    async def _emit(self, event_type: AuditEventType, **details) -> None:
        """Emission is observational; failures never reach the run."""
        try:
            await self._emitter.emit(
                AuditEvent(
                    audit_id=self._state.config.audit_id,
                    event_type=event_type,
                    details=details or None,
                )
            )
        except Exception:
            logger.warning("Event emission failed for %s", event_type.value, exc_info=True)
