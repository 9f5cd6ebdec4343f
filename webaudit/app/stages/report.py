"""
Report stage: assemble report.json and report.md in the audit root.

Everything is read back from the audit directory so the report is the
same whether the run went straight through or was resumed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from webaudit.app.reporting.report_generator import (
    PrdSummary,
    ReportCoverage,
    ReportFinding,
    ReportMetadata,
    RouteCoverage,
    build_report,
    render_markdown,
)
from webaudit.app.schemas.findings import Finding
from webaudit.app.schemas.stages import StageError, StageName, StageOutcome
from webaudit.app.stages.base import StageContext, stage_output
from webaudit.app.stages.browser import architecture_details
from webaudit.app.storage.artifacts import (
    STAGES_DIR,
    read_json,
    read_stage_artifact,
    write_json,
    write_stage_artifact,
    write_text,
)
from webaudit.app.storage.checkpoint import CheckpointStore

logger = logging.getLogger(__name__)

REPORT_JSON = "report.json"
REPORT_MD = "report.md"


def _location(finding: Finding) -> str:
    location = finding.location
    if location.file:
        return f"{location.file}:{location.line}" if location.line else location.file
    return location.url or "Unknown"


def _report_finding(finding: Finding, outcome: Optional[Dict[str, Any]]) -> ReportFinding:
    severity = finding.severity.value
    status = finding.verification_status.value
    labels: List[str] = []
    if outcome is not None:
        severity = outcome.get("final_severity", severity)
        status = outcome["status"] if outcome.get("applicable") else "not_applicable"
        labels = list(outcome.get("labels", []))
    return ReportFinding(
        id=finding.id,
        title=finding.title,
        severity=severity,
        type=finding.type.value,
        category=finding.category,
        description=finding.description,
        location=_location(finding),
        verification_status=status,
        labels=labels,
    )


def _coverage(ctx: StageContext) -> ReportCoverage:
    explore = read_stage_artifact(ctx.audit_path, StageName.EXPLORE) or {}
    aggregate = read_stage_artifact(ctx.audit_path, StageName.AGGREGATE) or {}
    test = read_stage_artifact(ctx.audit_path, StageName.TEST) or {}
    responsive = read_stage_artifact(ctx.audit_path, StageName.RESPONSIVE) or {}
    architecture = read_json(ctx.audit_path / STAGES_DIR / "architecture.json") or {}

    routes = aggregate.get("route_coverage") or {}
    total = routes.get("routes_total", 0)
    visited = routes.get("routes_covered", 0)
    pages = explore.get("pages", [])
    return ReportCoverage(
        routes=RouteCoverage(
            total=total,
            visited=visited,
            percent=round(visited / total * 100) if total else 0,
        ),
        pages_total=len(pages) + len(explore.get("unvisited", [])),
        pages_tested=len(pages),
        forms_pages_tested=len(test.get("pages_tested", [])),
        viewports_tested=[v["name"] for v in responsive.get("viewports", [])],
        viewport_issues=responsive.get("issues", 0),
        files_analyzed=(architecture.get("metrics") or {}).get("total_files", 0),
    )


def _prd_summary(ctx: StageContext) -> Optional[PrdSummary]:
    compare = read_stage_artifact(ctx.audit_path, StageName.COMPARE) or {}
    comparison = compare.get("comparison")
    if compare.get("status") != "compared" or not comparison:
        return None
    return PrdSummary(
        prd_path=comparison["prd_source"],
        features_total=comparison["total_features"],
        implemented=comparison["implemented"],
        partial=comparison["partial"],
        missing=comparison["missing"],
        coverage_percent=comparison["coverage_percent"],
    )


def _metadata(ctx: StageContext) -> ReportMetadata:
    checkpoint = CheckpointStore(ctx.audit_path).load()
    progress = ctx.progress.load()

    stage_status = {name: entry.status for name, entry in progress.stages.items()} if progress else {}
    started_at = checkpoint.started_at if checkpoint else datetime.now(timezone.utc)
    return ReportMetadata(
        duration_seconds=round((datetime.now(timezone.utc) - started_at).total_seconds(), 1),
        stages_completed=[s.value for s in checkpoint.completed_stages] if checkpoint else [],
        stages_skipped=[name for name, status in stage_status.items() if status == "skipped"],
        stages_failed=[name for name, status in stage_status.items() if status == "failed"],
        errors_recovered=len(checkpoint.errors) if checkpoint else 0,
    )


async def run_report(ctx: StageContext) -> StageOutcome:
    aggregate = read_stage_artifact(ctx.audit_path, StageName.AGGREGATE)
    if aggregate is None:
        return StageError(
            stage=StageName.REPORT,
            message="Aggregate output not found; cannot build report",
        )

    verify = read_stage_artifact(ctx.audit_path, StageName.VERIFY) or {}
    outcomes = {o["finding_id"]: o for o in verify.get("outcomes", [])}

    findings: List[ReportFinding] = []
    for entry in aggregate.get("findings", []):
        if entry.get("duplicate_of") is not None or not entry.get("include"):
            continue
        outcome = outcomes.get(entry["id"])
        if outcome is not None and not outcome.get("include_in_report", True):
            continue
        finding = ctx.findings.load(entry["id"])
        if finding is None:
            logger.warning("Aggregated finding %s missing from store", entry["id"])
            continue
        findings.append(_report_finding(finding, outcome))

    report = build_report(
        audit_id=ctx.config.audit_id,
        findings=findings,
        coverage=_coverage(ctx),
        verification_summary=verify.get("summary", {}),
        metadata=_metadata(ctx),
        application_url=ctx.config.base_url,
        framework=architecture_details(ctx).get("framework"),
        focus_areas=ctx.config.focus_areas,
        prd_comparison=_prd_summary(ctx),
    )

    report_json = write_json(ctx.audit_path / REPORT_JSON, report)
    write_text(ctx.audit_path / REPORT_MD, render_markdown(report))

    summary = report.summary
    logger.info(
        "Report %s: score %d (%s), status %s",
        ctx.config.audit_id,
        summary.score,
        summary.grade,
        summary.status.value,
    )

    output = write_stage_artifact(
        ctx.audit_path,
        StageName.REPORT,
        {
            "report_json": str(report_json),
            "report_md": str(ctx.audit_path / REPORT_MD),
            "summary": summary.model_dump(mode="json"),
        },
    )
    return stage_output(
        StageName.REPORT,
        findings_count=len(findings),
        output_file=output,
        score=summary.score,
        grade=summary.grade,
        status=summary.status.value,
    )
