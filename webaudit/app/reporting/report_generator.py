"""
Audit report generation.

Builds the final AuditReport (report.json) and its Markdown rendering
(report.md) from the findings selected for reporting, coverage
numbers, the optional PRD comparison and run metadata.

Scoring:

    start at 100
    P0 -25, P1 -10, P2 -3, P3 -1, P4 -0.5 per reported finding
    +5 when route coverage is at least 80%
    clamp to 0..100 and round

Status:

    any P0            FAIL
    more than 3 P1    NEEDS_ATTENTION
    any P1            PASS_WITH_WARNINGS
    otherwise         PASS
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from webaudit.app.schemas.stages import STAGE_SCHEMA_VERSION

SEVERITY_PENALTY = {"P0": 25.0, "P1": 10.0, "P2": 3.0, "P3": 1.0, "P4": 0.5}
SEVERITY_LABELS = {"P0": "Critical", "P1": "High", "P2": "Medium", "P3": "Low", "P4": "Info"}
COVERAGE_BONUS = 5
COVERAGE_BONUS_PERCENT = 80
LOW_COVERAGE_PERCENT = 60

GRADE_THRESHOLDS = (
    (97, "A+"), (93, "A"), (90, "A-"),
    (87, "B+"), (83, "B"), (80, "B-"),
    (77, "C+"), (73, "C"), (70, "C-"),
    (67, "D+"), (63, "D"), (60, "D-"),
)

SECURITY_CATEGORIES = frozenset({"hardcoded_secret", "sql_injection", "xss_vulnerability", "missing_auth"})
ARCHITECTURE_CATEGORIES = frozenset({"circular_dependency", "god_file"})


class ReportStatus(str, Enum):
    PASS = "PASS"
    PASS_WITH_WARNINGS = "PASS_WITH_WARNINGS"
    NEEDS_ATTENTION = "NEEDS_ATTENTION"
    FAIL = "FAIL"


# ----------------------------------------------------------------------
# Report model
# ----------------------------------------------------------------------


class ReportFinding(BaseModel):
    id: str
    title: str
    severity: str
    type: str
    category: str
    description: str = ""
    location: str = "Unknown"
    verification_status: Optional[str] = None
    labels: List[str] = Field(default_factory=list)


class RouteCoverage(BaseModel):
    total: int = 0
    visited: int = 0
    percent: int = 0


class ReportCoverage(BaseModel):
    routes: RouteCoverage = Field(default_factory=RouteCoverage)
    pages_total: int = 0
    pages_tested: int = 0
    forms_pages_tested: int = 0
    viewports_tested: List[str] = Field(default_factory=list)
    viewport_issues: int = 0
    files_analyzed: int = 0


class PrdSummary(BaseModel):
    prd_path: str
    features_total: int
    implemented: int
    partial: int
    missing: int
    coverage_percent: int


class Recommendation(BaseModel):
    priority: str
    category: str
    title: str
    description: str
    related_findings: List[str] = Field(default_factory=list)


class ReportSummary(BaseModel):
    grade: str
    score: int
    status: ReportStatus
    headline: str
    total_findings: int
    critical_issues: int
    verified_findings: int = 0
    flaky_findings: int = 0
    unverified_findings: int = 0


class ReportMetadata(BaseModel):
    duration_seconds: float = 0.0
    stages_completed: List[str] = Field(default_factory=list)
    stages_skipped: List[str] = Field(default_factory=list)
    stages_failed: List[str] = Field(default_factory=list)
    browser_restarts: int = 0
    errors_recovered: int = 0


class AuditReport(BaseModel):
    schema_version: str = STAGE_SCHEMA_VERSION
    audit_id: str
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    application_url: str = ""
    framework: Optional[str] = None
    focus_areas: List[str] = Field(default_factory=list)
    summary: ReportSummary
    findings_by_severity: Dict[str, List[ReportFinding]]
    verification_summary: Dict[str, int] = Field(default_factory=dict)
    coverage: ReportCoverage = Field(default_factory=ReportCoverage)
    prd_comparison: Optional[PrdSummary] = None
    recommendations: List[Recommendation] = Field(default_factory=list)
    metadata: ReportMetadata = Field(default_factory=ReportMetadata)


# ----------------------------------------------------------------------
# Scoring
# ----------------------------------------------------------------------


def calculate_score(severities: List[str], route_percent: int = 0) -> int:
    score = 100.0 - sum(SEVERITY_PENALTY.get(s, 0.0) for s in severities)
    if route_percent >= COVERAGE_BONUS_PERCENT:
        score += COVERAGE_BONUS
    return max(0, min(100, math.floor(score + 0.5)))


def score_to_grade(score: int) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "F"


def determine_status(severities: List[str]) -> ReportStatus:
    p0 = severities.count("P0")
    p1 = severities.count("P1")
    if p0:
        return ReportStatus.FAIL
    if p1 > 3:
        return ReportStatus.NEEDS_ATTENTION
    if p1:
        return ReportStatus.PASS_WITH_WARNINGS
    return ReportStatus.PASS


def generate_headline(status: ReportStatus, severities: List[str]) -> str:
    p0 = severities.count("P0")
    p1 = severities.count("P1")
    total = len(severities)
    if status == ReportStatus.FAIL:
        return f"{p0} critical issues must be fixed before launch."
    if status == ReportStatus.NEEDS_ATTENTION:
        return f"{p1} high-priority issues require immediate attention."
    if status == ReportStatus.PASS_WITH_WARNINGS:
        return f"{p1} high-priority issues should be addressed before launch."
    if total == 0:
        return "No issues found - application is ready for launch!"
    return f"{total} minor issues found - application is ready for launch with small improvements."


def generate_recommendations(
    findings: List[ReportFinding],
    coverage: ReportCoverage,
) -> List[Recommendation]:
    recommendations: List[Recommendation] = []

    security = [f for f in findings if f.type == "security" or f.category in SECURITY_CATEGORIES]
    if security:
        recommendations.append(
            Recommendation(
                priority="critical",
                category="Security",
                title="Address Security Vulnerabilities",
                description=(
                    f"{len(security)} security issues were found. These should be "
                    "addressed immediately to prevent potential exploits."
                ),
                related_findings=[f.id for f in security],
            )
        )

    unfinished = [f for f in findings if f.category in ("todo", "fixme")]
    if len(unfinished) > 5:
        todo = sum(1 for f in unfinished if f.category == "todo")
        recommendations.append(
            Recommendation(
                priority="medium",
                category="Code Quality",
                title="Complete Unfinished Work",
                description=(
                    f"Found {todo} TODO and {len(unfinished) - todo} FIXME comments. "
                    "Review these items before launch."
                ),
                related_findings=[f.id for f in unfinished],
            )
        )

    if coverage.routes.total and coverage.routes.percent < LOW_COVERAGE_PERCENT:
        recommendations.append(
            Recommendation(
                priority="high",
                category="Testing",
                title="Improve Test Coverage",
                description=(
                    f"Only {coverage.routes.percent}% of routes were tested. "
                    "Consider expanding test coverage."
                ),
            )
        )

    architecture = [f for f in findings if f.category in ARCHITECTURE_CATEGORIES]
    if architecture:
        recommendations.append(
            Recommendation(
                priority="low",
                category="Architecture",
                title="Refactor Architecture Issues",
                description=(
                    "Code architecture could be improved to reduce complexity "
                    "and improve maintainability."
                ),
                related_findings=[f.id for f in architecture],
            )
        )

    return recommendations


def build_report(
    *,
    audit_id: str,
    findings: List[ReportFinding],
    coverage: ReportCoverage,
    verification_summary: Dict[str, int],
    metadata: ReportMetadata,
    application_url: str = "",
    framework: Optional[str] = None,
    focus_areas: Optional[List[str]] = None,
    prd_comparison: Optional[PrdSummary] = None,
) -> AuditReport:
    severities = [f.severity for f in findings]
    score = calculate_score(severities, coverage.routes.percent)
    status = determine_status(severities)

    by_severity = {
        severity: [f for f in findings if f.severity == severity]
        for severity in SEVERITY_PENALTY
    }

    return AuditReport(
        audit_id=audit_id,
        application_url=application_url,
        framework=framework,
        focus_areas=list(focus_areas or []),
        summary=ReportSummary(
            grade=score_to_grade(score),
            score=score,
            status=status,
            headline=generate_headline(status, severities),
            total_findings=len(findings),
            critical_issues=len(by_severity["P0"]),
            verified_findings=verification_summary.get("verified", 0),
            flaky_findings=verification_summary.get("flaky", 0),
            unverified_findings=verification_summary.get("could_not_reproduce", 0),
        ),
        findings_by_severity=by_severity,
        verification_summary=verification_summary,
        coverage=coverage,
        prd_comparison=prd_comparison,
        recommendations=generate_recommendations(findings, coverage),
        metadata=metadata,
    )


# ----------------------------------------------------------------------
# Markdown rendering
# ----------------------------------------------------------------------


def render_markdown(report: AuditReport) -> str:
    summary = report.summary
    lines = [
        f"# Audit Report: {report.application_url or report.audit_id}",
        "",
        f"**Audit ID:** {report.audit_id}",
        f"**Generated:** {report.generated_at.isoformat()}",
        f"**Framework:** {report.framework or 'Unknown'}",
    ]
    if report.focus_areas:
        lines.append(f"**Focus areas:** {', '.join(report.focus_areas)}")

    lines += [
        "",
        "## Summary",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| **Grade** | {summary.grade} |",
        f"| **Score** | {summary.score}/100 |",
        f"| **Status** | {summary.status.value} |",
        f"| **Total Findings** | {summary.total_findings} |",
        f"| **Critical Issues** | {summary.critical_issues} |",
        "",
        f"> {summary.headline}",
        "",
        "## Findings by Severity",
        "",
    ]

    for severity, findings in report.findings_by_severity.items():
        if not findings:
            continue
        lines.append(f"### {severity} - {SEVERITY_LABELS[severity]} ({len(findings)})")
        lines.append("")
        for finding in findings:
            lines.append(f"- **{finding.title}** - {finding.location}")
            if finding.description:
                lines.append(f"  - {finding.description.splitlines()[0]}")
            if finding.verification_status:
                lines.append(f"  - _Verification: {finding.verification_status}_")
            if finding.labels:
                lines.append(f"  - Labels: {', '.join(finding.labels)}")
        lines.append("")

    coverage = report.coverage
    lines += [
        "## Coverage",
        "",
        "| Area | Coverage |",
        "|------|----------|",
        f"| Routes | {coverage.routes.visited}/{coverage.routes.total} ({coverage.routes.percent}%) |",
        f"| Pages Tested | {coverage.pages_tested}/{coverage.pages_total} |",
        f"| Pages with Interactions Tested | {coverage.forms_pages_tested} |",
        f"| Viewports | {', '.join(coverage.viewports_tested) or '-'} |",
        f"| Files Analyzed | {coverage.files_analyzed} |",
        "",
    ]

    if report.verification_summary:
        lines += ["## Verification Summary", "", "| Status | Count |", "|--------|-------|"]
        lines += [
            f"| {name.replace('_', ' ').title()} | {count} |"
            for name, count in report.verification_summary.items()
        ]
        lines.append("")

    if report.prd_comparison:
        prd = report.prd_comparison
        lines += [
            "## PRD Comparison",
            "",
            f"Source: {prd.prd_path} ({prd.coverage_percent}% coverage)",
            "",
            "| Status | Count |",
            "|--------|-------|",
            f"| Implemented | {prd.implemented} |",
            f"| Partial | {prd.partial} |",
            f"| Missing | {prd.missing} |",
            "",
        ]

    if report.recommendations:
        lines += ["## Recommendations", ""]
        for rec in report.recommendations:
            lines += [f"### [{rec.priority}] {rec.title}", "", rec.description, ""]

    metadata = report.metadata
    lines += [
        "---",
        "",
        f"_Completed stages: {', '.join(metadata.stages_completed) or '-'}; "
        f"skipped: {', '.join(metadata.stages_skipped) or '-'}; "
        f"duration {metadata.duration_seconds:.1f}s_",
    ]
    return "\n".join(lines) + "\n"
