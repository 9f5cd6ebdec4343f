import asyncio
from pathlib import Path

import pytest

from webaudit.app.analyzers.base import AnalyzerResult, RawFinding
from webaudit.app.config import RunConfig, RunMode
from webaudit.app.coordinator.pipeline import effective_dependencies, stages_for_mode
from webaudit.app.coordinator.scheduler import AuditInitializationError, AuditScheduler
from webaudit.app.events import AuditEventType, MemoryQueueEventEmitter
from webaudit.app.schemas.stages import RunStatus, StageName, StageStatus
from webaudit.app.stages.base import stage_output
from webaudit.app.storage.checkpoint import CheckpointStatus, CheckpointStore
from webaudit.app.storage.findings import FindingStore
from webaudit.app.storage.progress import ProgressStore
from webaudit.tests.fixtures.fake_browser import FakeBrowser, page

pytestmark = pytest.mark.anyio


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _config(tmp_path: Path, **overrides) -> RunConfig:
    codebase = tmp_path / "app"
    codebase.mkdir(exist_ok=True)
    values = {
        "audit_id": "audit-test",
        "codebase_path": codebase,
        "output_root": tmp_path / "audits",
    }
    values.update(overrides)
    return RunConfig(**values)


def _ok(stage: StageName, calls=None):
    async def executor(ctx):
        if calls is not None:
            calls.append(stage)
        return stage_output(stage)

    return executor


def _raises(message: str):
    async def executor(ctx):
        raise RuntimeError(message)

    return executor


def _stubs(calls=None, **overrides):
    executors = {stage: _ok(stage, calls) for stage in StageName}
    for name, executor in overrides.items():
        executors[StageName(name.replace("_", "-"))] = executor
    return executors


def _statuses(results):
    return [(r.stage, r.status) for r in results]


# ----------------------------------------------------------------------
# Mode subsetting and failure isolation
# ----------------------------------------------------------------------

async def test_code_only_mode_produces_exactly_four_results(tmp_path):
    config = _config(tmp_path, mode=RunMode.CODE_ONLY)
    (config.codebase_path / "server.py").write_text(
        "# TODO: add rate limiting\n"
        "def handler():\n"
        "    return 'ok'\n",
        encoding="utf-8",
    )

    scheduler = AuditScheduler()
    results = await scheduler.run(config)

    assert _statuses(results) == [
        (StageName.PREFLIGHT, StageStatus.COMPLETED),
        (StageName.CODE_SCAN, StageStatus.COMPLETED),
        (StageName.AGGREGATE, StageStatus.COMPLETED),
        (StageName.REPORT, StageStatus.COMPLETED),
    ]
    assert scheduler.get_state().status == RunStatus.COMPLETED
    assert (config.audit_path / "report.json").is_file()
    assert (config.audit_path / "report.md").is_file()

    checkpoint = CheckpointStore(config.audit_path).load()
    assert checkpoint.status == CheckpointStatus.COMPLETE
    assert checkpoint.can_resume is False


async def test_failing_stage_is_isolated_and_dependents_skipped(tmp_path):
    config = _config(tmp_path, mode=RunMode.CODE_ONLY)
    scheduler = AuditScheduler(executors=_stubs(code_scan=_raises("analyzer crashed")))

    results = await scheduler.run(config)

    assert _statuses(results) == [
        (StageName.PREFLIGHT, StageStatus.COMPLETED),
        (StageName.CODE_SCAN, StageStatus.FAILED),
        (StageName.AGGREGATE, StageStatus.SKIPPED),
        (StageName.REPORT, StageStatus.SKIPPED),
    ]
    assert results[1].error == "analyzer crashed"

    state = scheduler.get_state()
    assert state.status == RunStatus.FAILED
    assert state.errors_recovered == 1
    assert state.skipped_stages == [StageName.AGGREGATE, StageName.REPORT]

    checkpoint = CheckpointStore(config.audit_path).load()
    assert checkpoint.can_resume is True
    assert checkpoint.resume_stage == StageName.CODE_SCAN
    assert checkpoint.errors[0].error == "analyzer crashed"

    progress = ProgressStore(config.audit_path).load()
    assert progress.stages["aggregate"].status == "skipped"
    assert progress.stages["code-scan"].status == "failed"


async def test_stage_returning_error_value_is_failed_not_raised(tmp_path):
    from webaudit.app.schemas.stages import StageError

    async def preflight(ctx):
        return StageError(stage=StageName.PREFLIGHT, message="Preflight failed: no codebase")

    scheduler = AuditScheduler(executors=_stubs(preflight=preflight))
    results = await scheduler.run(_config(tmp_path, mode=RunMode.CODE_ONLY))

    assert results[0].status == StageStatus.FAILED
    assert results[0].error == "Preflight failed: no codebase"
    assert all(r.status == StageStatus.SKIPPED for r in results[1:])


async def test_stage_timeout_becomes_failed_result(tmp_path):
    async def slow(ctx):
        await asyncio.sleep(5)
        return stage_output(StageName.CODE_SCAN)

    scheduler = AuditScheduler(executors=_stubs(code_scan=slow))
    results = await scheduler.run(
        _config(tmp_path, mode=RunMode.CODE_ONLY, timeout_per_stage=0.05)
    )

    failed = results[1]
    assert failed.stage == StageName.CODE_SCAN
    assert failed.status == StageStatus.FAILED
    assert "timed out" in failed.error


async def test_browser_stage_without_backend_fails_with_verbatim_message(tmp_path):
    from webaudit.app.stages.browser import run_explore

    config = _config(tmp_path, mode=RunMode.QUICK, base_url="http://localhost:3000")
    scheduler = AuditScheduler(executors=_stubs(explore=run_explore))

    results = await scheduler.run(config)
    by_stage = {r.stage: r for r in results}

    assert by_stage[StageName.EXPLORE].status == StageStatus.FAILED
    assert by_stage[StageName.EXPLORE].error == (
        "No browser backend configured (set WEBAUDIT_BROWSER_BACKEND)"
    )
    assert by_stage[StageName.CODE_SCAN].status == StageStatus.COMPLETED
    for stage in (StageName.AGGREGATE, StageName.VERIFY, StageName.REPORT):
        assert by_stage[stage].status == StageStatus.SKIPPED


# ----------------------------------------------------------------------
# Dependency ordering and parallel groups
# ----------------------------------------------------------------------

@pytest.mark.parametrize("mode", list(RunMode))
@pytest.mark.parametrize("parallel", [True, False])
async def test_no_stage_starts_before_its_prerequisites_complete(tmp_path, mode, parallel):
    violations = []

    def _checking(stage):
        async def executor(ctx):
            done = set(CheckpointStore(ctx.audit_path).load().completed_stages)
            missing = effective_dependencies(stage, ctx.config.mode) - done
            if missing:
                violations.append((stage, missing))
            return stage_output(stage)

        return executor

    scheduler = AuditScheduler(executors={s: _checking(s) for s in StageName})
    results = await scheduler.run(_config(tmp_path, mode=mode, parallel_stages=parallel))

    assert violations == []
    assert sorted(r.stage.value for r in results) == sorted(s.value for s in stages_for_mode(mode))
    assert all(r.status == StageStatus.COMPLETED for r in results)


async def test_parallel_partners_run_concurrently(tmp_path):
    started = {StageName.CODE_SCAN: asyncio.Event(), StageName.EXPLORE: asyncio.Event()}

    def _rendezvous(stage, other):
        async def executor(ctx):
            started[stage].set()
            await asyncio.wait_for(started[other].wait(), timeout=2)
            return stage_output(stage)

        return executor

    scheduler = AuditScheduler(
        executors=_stubs(
            code_scan=_rendezvous(StageName.CODE_SCAN, StageName.EXPLORE),
            explore=_rendezvous(StageName.EXPLORE, StageName.CODE_SCAN),
        )
    )
    results = await scheduler.run(_config(tmp_path, mode=RunMode.FULL))

    by_stage = {r.stage: r for r in results}
    assert by_stage[StageName.CODE_SCAN].status == StageStatus.COMPLETED
    assert by_stage[StageName.EXPLORE].status == StageStatus.COMPLETED
    assert scheduler.get_state().status == RunStatus.COMPLETED


async def test_sequential_mode_never_overlaps_stages(tmp_path):
    active = []
    peak = []

    def _tracked(stage):
        async def executor(ctx):
            active.append(stage)
            peak.append(len(active))
            await asyncio.sleep(0)
            active.remove(stage)
            return stage_output(stage)

        return executor

    scheduler = AuditScheduler(executors={s: _tracked(s) for s in StageName})
    results = await scheduler.run(_config(tmp_path, parallel_stages=False))

    assert max(peak) == 1
    assert [r.stage for r in results] == stages_for_mode(RunMode.FULL)


# ----------------------------------------------------------------------
# Resume
# ----------------------------------------------------------------------

async def test_resume_without_checkpoint_returns_false(tmp_path):
    scheduler = AuditScheduler()
    assert await scheduler.resume(tmp_path / "missing") is False


async def test_resume_never_reexecutes_completed_stages(tmp_path):
    config = _config(tmp_path, mode=RunMode.CODE_ONLY)
    first = AuditScheduler(executors=_stubs(code_scan=_raises("boom")))
    await first.run(config)

    calls = []
    second = AuditScheduler(executors=_stubs(calls))
    assert await second.resume(config.audit_path) is True

    results = await second.run()

    assert calls == [StageName.CODE_SCAN, StageName.AGGREGATE, StageName.REPORT]
    assert [r.stage for r in results] == calls
    assert second.get_state().status == RunStatus.COMPLETED
    assert second.get_state().completed_stages == stages_for_mode(RunMode.CODE_ONLY)

    # A finished run is no longer resumable.
    assert await AuditScheduler().resume(config.audit_path) is False


async def test_resume_continues_finding_id_sequence(tmp_path):
    def _minting(stage, count):
        async def executor(ctx):
            result = AnalyzerResult(
                analyzer="security",
                findings=[
                    RawFinding(
                        type="hardcoded_secret",
                        severity="CRITICAL",
                        file=f"{stage.value}-{i}.py",
                        line=1,
                        message=f"Secret {stage.value} {i}",
                    )
                    for i in range(count)
                ],
            )
            findings = ctx.generator.from_analyzer(result)
            return stage_output(stage, findings_count=ctx.record_findings(findings))

        return executor

    config = _config(tmp_path, mode=RunMode.CODE_ONLY)
    first = AuditScheduler(
        executors=_stubs(code_scan=_minting(StageName.CODE_SCAN, 2), aggregate=_raises("disk full"))
    )
    await first.run(config)

    second = AuditScheduler(executors=_stubs(aggregate=_minting(StageName.AGGREGATE, 1)))
    assert await second.resume(config.audit_path)
    await second.run()

    ids = [f.id for f in FindingStore(config.audit_path).load_all()]
    assert ids == ["F-001", "F-002", "F-003"]


async def test_run_without_config_requires_successful_resume(tmp_path):
    with pytest.raises(ValueError):
        await AuditScheduler().run()


# ----------------------------------------------------------------------
# Stop / pause / continue
# ----------------------------------------------------------------------

def _requesting(stage, *requests):
    async def executor(ctx):
        store = CheckpointStore(ctx.audit_path)
        for request in requests:
            getattr(store, f"request_{request}")()
        return stage_output(stage)

    return executor


async def test_stop_flag_halts_at_next_stage_boundary(tmp_path):
    config = _config(tmp_path, mode=RunMode.CODE_ONLY)
    scheduler = AuditScheduler(
        executors=_stubs(code_scan=_requesting(StageName.CODE_SCAN, "stop"))
    )

    results = await scheduler.run(config)

    assert [r.stage for r in results] == [StageName.PREFLIGHT, StageName.CODE_SCAN]
    state = scheduler.get_state()
    assert state.status == RunStatus.STOPPED
    assert state.is_stopped is True
    assert CheckpointStore(config.audit_path).load().status == CheckpointStatus.STOPPED
    assert ProgressStore(config.audit_path).load().stop_flag is True

    resumed = AuditScheduler(executors=_stubs())
    assert await resumed.resume(config.audit_path)
    results = await resumed.run()
    assert [r.stage for r in results] == [StageName.AGGREGATE, StageName.REPORT]
    assert resumed.get_state().status == RunStatus.COMPLETED


async def test_pause_without_continue_halts_as_paused(tmp_path):
    config = _config(tmp_path, mode=RunMode.CODE_ONLY)
    scheduler = AuditScheduler(
        executors=_stubs(preflight=_requesting(StageName.PREFLIGHT, "pause"))
    )

    results = await scheduler.run(config)

    assert [r.stage for r in results] == [StageName.PREFLIGHT]
    assert scheduler.get_state().status == RunStatus.PAUSED
    assert scheduler.get_state().is_paused is True
    assert CheckpointStore(config.audit_path).load().can_resume is True


async def test_continue_lifts_pending_pause_and_is_consumed(tmp_path):
    config = _config(tmp_path, mode=RunMode.CODE_ONLY)
    scheduler = AuditScheduler(
        executors=_stubs(preflight=_requesting(StageName.PREFLIGHT, "pause", "continue"))
    )

    results = await scheduler.run(config)

    assert len(results) == 4
    assert scheduler.get_state().status == RunStatus.COMPLETED
    assert not (config.audit_path / "continue.flag").exists()
    assert not (config.audit_path / "pause.flag").exists()


async def test_control_methods_need_a_run():
    with pytest.raises(RuntimeError):
        AuditScheduler().stop()


# ----------------------------------------------------------------------
# State, events and initialization
# ----------------------------------------------------------------------

async def test_get_state_returns_independent_copy(tmp_path):
    scheduler = AuditScheduler(executors=_stubs())
    assert scheduler.get_state() is None

    await scheduler.run(_config(tmp_path, mode=RunMode.CODE_ONLY))
    snapshot = scheduler.get_state()
    snapshot.completed_stages.clear()

    assert len(scheduler.get_state().completed_stages) == 4


async def test_events_follow_run_lifecycle(tmp_path):
    emitter = MemoryQueueEventEmitter()
    scheduler = AuditScheduler(executors=_stubs(), emitter=emitter)

    await scheduler.run(_config(tmp_path, mode=RunMode.CODE_ONLY))

    types = [e.event_type for e in emitter.history]
    assert types[0] == AuditEventType.AUDIT_STARTED
    assert types[-1] == AuditEventType.AUDIT_COMPLETED
    assert types.count(AuditEventType.STAGE_STARTED) == 4
    assert types.count(AuditEventType.STAGE_COMPLETED) == 4
    assert AuditEventType.AUDIT_REPORT_READY in types
    assert emitter.closed is True


async def test_emitter_failures_do_not_affect_the_run(tmp_path):
    class ExplodingEmitter:
        async def emit(self, event):
            raise RuntimeError("subscriber gone")

    scheduler = AuditScheduler(executors=_stubs(), emitter=ExplodingEmitter())
    results = await scheduler.run(_config(tmp_path, mode=RunMode.CODE_ONLY))

    assert all(r.status == StageStatus.COMPLETED for r in results)


async def test_unwritable_output_root_raises_initialization_error(tmp_path):
    blocker = tmp_path / "audits"
    blocker.write_text("not a directory", encoding="utf-8")

    scheduler = AuditScheduler(executors=_stubs())
    with pytest.raises(AuditInitializationError):
        await scheduler.run(_config(tmp_path, mode=RunMode.CODE_ONLY))

    assert scheduler.get_state().status == RunStatus.FAILED


async def test_owned_browser_is_built_for_browser_modes_and_closed(tmp_path):
    built = []

    def factory():
        browser = FakeBrowser({"http://localhost:3000/": page("http://localhost:3000/")})
        built.append(browser)
        return browser

    scheduler = AuditScheduler(executors=_stubs(), browser_factory=factory)
    await scheduler.run(_config(tmp_path, mode=RunMode.QUICK, base_url="http://localhost:3000"))
    assert len(built) == 1
    assert built[0].closed is True

    code_only = AuditScheduler(executors=_stubs(), browser_factory=factory)
    await code_only.run(_config(tmp_path, audit_id="audit-code", mode=RunMode.CODE_ONLY))
    assert len(built) == 1
