"""
Stage executor contract.

A stage executor is an async callable taking a StageContext and
returning a StageOutcome (StageOutput on success, StageError on
failure). Executors MAY still raise; run_executor converts anything
raised, and any timeout, into a StageError so the scheduler only ever
inspects values.

IMPORTANT:
- Executors communicate through the audit directory (stage artifacts
  and the findings store), never through in-memory state, so that a
  resumed run sees exactly what the original run produced.
- Findings MUST be minted through ctx.generator so ids stay
  monotonic within the run.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from webaudit.app.browser.backend import BrowserBackend, BrowserUnavailableError
from webaudit.app.config import RunConfig
from webaudit.app.findings.generator import FindingGenerator
from webaudit.app.schemas.findings import Finding
from webaudit.app.schemas.stages import StageError, StageName, StageOutcome, StageOutput
from webaudit.app.storage.findings import FindingStore
from webaudit.app.storage.progress import ProgressStore

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """Collaborators shared by every stage of one run."""

    config: RunConfig
    audit_path: Path
    generator: FindingGenerator
    findings: FindingStore
    progress: ProgressStore
    browser: Optional[BrowserBackend] = None
    browser_error: Optional[str] = None

    def require_browser(self) -> BrowserBackend:
        if self.browser is None:
            raise BrowserUnavailableError(
                self.browser_error
                or "No browser backend configured (set WEBAUDIT_BROWSER_BACKEND)"
            )
        return self.browser

    def record_findings(self, findings: List[Finding]) -> int:
        """Persist newly minted findings and count them in progress."""
        if not findings:
            return 0
        self.findings.save_many(findings)
        self.progress.record_findings(f.severity.value for f in findings)
        return len(findings)


StageExecutor = Callable[[StageContext], Awaitable[StageOutcome]]


def stage_output(
    stage: StageName,
    *,
    findings_count: int = 0,
    output_file: Optional[Path] = None,
    **details,
) -> StageOutput:
    return StageOutput(
        stage=stage,
        findings_count=findings_count,
        output_file=str(output_file) if output_file is not None else None,
        details=details,
    )


async def run_executor(
    stage: StageName,
    executor: StageExecutor,
    ctx: StageContext,
    *,
    timeout: float,
) -> StageOutcome:
    """
    Execute one stage and always return a StageOutcome.

    Cancellation is never converted: it propagates to the caller.
    """
    try:
        outcome = await asyncio.wait_for(executor(ctx), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Stage %s timed out after %ss", stage.value, timeout)
        return StageError(
            stage=stage,
            message=f"Stage '{stage.value}' timed out after {timeout:g}s",
            exception_type="TimeoutError",
        )
    except Exception as exc:
        logger.exception("Stage %s raised", stage.value)
        return StageError(
            stage=stage,
            message=str(exc) or type(exc).__name__,
            exception_type=type(exc).__name__,
        )

    if not isinstance(outcome, (StageOutput, StageError)):
        return StageError(
            stage=stage,
            message=f"Stage '{stage.value}' returned {type(outcome).__name__}, expected a stage outcome",
            exception_type="TypeError",
        )
    return outcome


ExecutorRegistry = Dict[StageName, StageExecutor]
