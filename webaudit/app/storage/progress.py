"""
File-based progress store.

Maintains progress.json (machine-readable) and progress.md (human
readable) inside the audit directory. Both are rewritten on every
update so external watchers (CLI status, HTTP service) always see the
latest state.

Progress is observational: losing it never affects audit correctness.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from webaudit.app.schemas.stages import STAGE_SCHEMA_VERSION, StageName
from webaudit.app.storage.artifacts import read_json, write_json, write_text

logger = logging.getLogger(__name__)

PROGRESS_JSON = "progress.json"
PROGRESS_MD = "progress.md"

STAGE_DISPLAY_NAMES = {
    StageName.PREFLIGHT: "Preflight Checks",
    StageName.CODE_SCAN: "Code Analysis",
    StageName.EXPLORE: "Page Exploration",
    StageName.TEST: "Form & Action Testing",
    StageName.RESPONSIVE: "Responsive Testing",
    StageName.AGGREGATE: "Finding Aggregation",
    StageName.VERIFY: "Verification",
    StageName.COMPARE: "PRD Comparison",
    StageName.REPORT: "Report Generation",
}

_STATUS_ICONS = {
    "pending": "[ ]",
    "running": "[~]",
    "completed": "[x]",
    "failed": "[!]",
    "skipped": "[-]",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StageProgress(BaseModel):
    status: str = "pending"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    findings_count: int = 0
    current_action: Optional[str] = None
    error: Optional[str] = None


class ProgressMetrics(BaseModel):
    pages_visited: int = 0
    pages_total: int = 0
    routes_covered: int = 0
    routes_total: int = 0
    findings_total: int = 0
    findings_by_severity: Dict[str, int] = Field(
        default_factory=lambda: {f"P{i}": 0 for i in range(5)}
    )
    verified_count: int = 0
    flaky_count: int = 0
    unverified_count: int = 0


class ProgressError(BaseModel):
    stage: Optional[str] = None
    error: str
    timestamp: datetime = Field(default_factory=_utcnow)
    recoverable: bool = True


class AuditProgress(BaseModel):
    schema_version: str = STAGE_SCHEMA_VERSION
    audit_id: str
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    status: str = "initializing"
    current_stages: List[str] = Field(default_factory=list)
    stages: Dict[str, StageProgress] = Field(default_factory=dict)
    metrics: ProgressMetrics = Field(default_factory=ProgressMetrics)
    focus_areas: List[str] = Field(default_factory=list)
    stop_flag: bool = False
    errors: List[ProgressError] = Field(default_factory=list)


class ProgressStore:
    def __init__(self, audit_path: Path) -> None:
        self.audit_path = Path(audit_path)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def initialize(
        self,
        audit_id: str,
        stages: Iterable[StageName],
        *,
        focus_areas: Optional[List[str]] = None,
        started_at: Optional[datetime] = None,
    ) -> AuditProgress:
        progress = AuditProgress(
            audit_id=audit_id,
            started_at=started_at or _utcnow(),
            stages={stage.value: StageProgress() for stage in stages},
            focus_areas=list(focus_areas or []),
        )
        self._write(progress)
        return progress

    def load(self) -> Optional[AuditProgress]:
        data = read_json(self.audit_path / PROGRESS_JSON)
        if data is None:
            return None
        try:
            return AuditProgress.model_validate(data)
        except ValueError as exc:
            logger.warning("Ignoring unreadable progress file in %s: %s", self.audit_path, exc)
            return None

    def _write(self, progress: AuditProgress) -> None:
        progress.updated_at = _utcnow()
        write_json(self.audit_path / PROGRESS_JSON, progress)
        write_text(self.audit_path / PROGRESS_MD, render_progress_markdown(progress))

    def _update(self, mutate) -> None:
        progress = self.load()
        if progress is None:
            logger.debug("Progress not initialized in %s; update dropped", self.audit_path)
            return
        mutate(progress)
        self._write(progress)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def update_status(self, status: str) -> None:
        def mutate(progress: AuditProgress) -> None:
            progress.status = status
            if status != "running":
                progress.current_stages = []

        self._update(mutate)

    def set_stop_flag(self, value: bool = True) -> None:
        def mutate(progress: AuditProgress) -> None:
            progress.stop_flag = value

        self._update(mutate)

    def add_error(self, error: str, stage: Optional[StageName] = None, recoverable: bool = True) -> None:
        def mutate(progress: AuditProgress) -> None:
            progress.errors.append(
                ProgressError(
                    stage=stage.value if stage else None,
                    error=error,
                    recoverable=recoverable,
                )
            )

        self._update(mutate)

    # ------------------------------------------------------------------
    # Stage progress
    # ------------------------------------------------------------------

    def _stage(self, progress: AuditProgress, stage: StageName) -> StageProgress:
        return progress.stages.setdefault(stage.value, StageProgress())

    def start_stage_progress(self, stage: StageName, action: Optional[str] = None) -> None:
        def mutate(progress: AuditProgress) -> None:
            entry = self._stage(progress, stage)
            entry.status = "running"
            entry.started_at = _utcnow()
            entry.current_action = action
            if stage.value not in progress.current_stages:
                progress.current_stages.append(stage.value)
            progress.status = "running"

        self._update(mutate)

    def complete_stage_progress(self, stage: StageName, findings_count: int = 0) -> None:
        def mutate(progress: AuditProgress) -> None:
            entry = self._stage(progress, stage)
            entry.status = "completed"
            entry.completed_at = _utcnow()
            entry.findings_count = findings_count
            entry.current_action = None
            if stage.value in progress.current_stages:
                progress.current_stages.remove(stage.value)

        self._update(mutate)

    def fail_stage_progress(self, stage: StageName, error: str) -> None:
        def mutate(progress: AuditProgress) -> None:
            entry = self._stage(progress, stage)
            entry.status = "failed"
            entry.completed_at = _utcnow()
            entry.error = error
            entry.current_action = None
            if stage.value in progress.current_stages:
                progress.current_stages.remove(stage.value)
            progress.errors.append(ProgressError(stage=stage.value, error=error))

        self._update(mutate)

    def skip_stage_progress(self, stage: StageName, reason: str) -> None:
        def mutate(progress: AuditProgress) -> None:
            entry = self._stage(progress, stage)
            entry.status = "skipped"
            entry.current_action = reason

        self._update(mutate)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def update_metrics(self, **partial: Any) -> None:
        """
        Merge metric values. findings_by_severity is merged per key;
        every other metric is replaced.
        """

        def mutate(progress: AuditProgress) -> None:
            data = progress.metrics.model_dump()
            by_severity = partial.pop("findings_by_severity", None)
            if by_severity:
                data["findings_by_severity"].update(by_severity)
            data.update(partial)
            progress.metrics = ProgressMetrics.model_validate(data)

        self._update(mutate)

    def record_findings(self, severities: Iterable[str]) -> None:
        """Increment finding totals for newly written findings."""

        def mutate(progress: AuditProgress) -> None:
            for severity in severities:
                progress.metrics.findings_total += 1
                bucket = progress.metrics.findings_by_severity
                bucket[severity] = bucket.get(severity, 0) + 1

        self._update(mutate)


def render_progress_markdown(progress: AuditProgress) -> str:
    metrics = progress.metrics
    lines = [
        f"# Audit Progress: {progress.audit_id}",
        "",
        f"**Status:** {progress.status}",
        f"**Started:** {progress.started_at.isoformat()}",
        f"**Updated:** {progress.updated_at.isoformat()}",
    ]
    if progress.current_stages:
        lines.append(f"**Current:** {', '.join(progress.current_stages)}")
    if progress.stop_flag:
        lines.append("**Stop requested.**")

    lines += ["", "## Stages", ""]
    for name, entry in progress.stages.items():
        try:
            display = STAGE_DISPLAY_NAMES[StageName(name)]
        except ValueError:
            display = name
        line = f"- {_STATUS_ICONS.get(entry.status, '[?]')} {display}"
        if entry.status == "completed":
            line += f" ({entry.findings_count} findings)"
        elif entry.error:
            line += f": {entry.error}"
        elif entry.current_action:
            line += f": {entry.current_action}"
        lines.append(line)

    severity_line = ", ".join(
        f"{key}: {value}" for key, value in sorted(metrics.findings_by_severity.items())
    )
    lines += [
        "",
        "## Metrics",
        "",
        f"- Pages visited: {metrics.pages_visited}/{metrics.pages_total}",
        f"- Routes covered: {metrics.routes_covered}/{metrics.routes_total}",
        f"- Findings: {metrics.findings_total} ({severity_line})",
        f"- Verified: {metrics.verified_count}, flaky: {metrics.flaky_count}, "
        f"unverified: {metrics.unverified_count}",
    ]

    if progress.errors:
        lines += ["", "## Errors", ""]
        lines += [f"- {e.stage or 'audit'}: {e.error}" for e in progress.errors]

    return "\n".join(lines) + "\n"
