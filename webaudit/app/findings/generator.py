"""
Finding generation engine.

Converts structured phase output (page snapshots, diagnostic reports,
interaction results, viewport results, API smoke reports, raw analyzer
output, PRD comparisons) into canonical findings using fixed rules.

IMPORTANT:
- No method performs I/O.
- Output is deterministic given the input and the counter state.
- One FindingGenerator instance (and its FindingCounter) per audit run.
  Ids are never drawn from process-wide state.

Severity rules:

    exploration   status >= 500                         P0
    exploration   loading / please-wait text            P1
    exploration   no forms, <= 1 link, < 100 chars      P2
    diagnostics   render-error                          P0
    diagnostics   js-error / api-failure                P1 if error else P2
    diagnostics   loading-stuck / auth-failure          P1
    diagnostics   missing-resource / cors / websocket   P2
    diagnostics   slow-request / mixed-content          P3
    diagnostics   severity == info                      (no finding)
    interaction   error + console errors or 5xx         P1
    interaction   error without console/network signal  P2
    responsive    verbatim
    api-smoke     verbatim
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional
from urllib.parse import urlparse

from webaudit.app.analyzers.base import AnalyzerResult
from webaudit.app.comparison.prd import FeaturePriority, FeatureStatus, PrdComparison
from webaudit.app.findings.factory import create_finding
from webaudit.app.findings.identity import FindingCounter, normalize_severity
from webaudit.app.schemas.findings import (
    Finding,
    FindingType,
    NetworkRequestSummary,
    Severity,
)
from webaudit.app.schemas.phase_data import (
    ApiSmokeReport,
    DiagnosisCategory,
    PageData,
    PageDiagnosis,
    PageDiagnosticReport,
    PageInteractionResult,
    ResponsivePageResult,
)

LOADING_PATTERNS = (
    re.compile(r"loading\.{0,3}$", re.I | re.M),
    re.compile(r"^loading$", re.I | re.M),
    re.compile(r"please wait", re.I),
)
API_URL_RE = re.compile(r"/api/", re.I)

EXCERPT_CHARS = 300
EMPTY_SHELL_MAX_LINKS = 1
EMPTY_SHELL_MIN_TEXT = 100

_DIAGNOSIS_SEVERITY = {
    DiagnosisCategory.RENDER_ERROR: Severity.P0,
    DiagnosisCategory.LOADING_STUCK: Severity.P1,
    DiagnosisCategory.AUTH_FAILURE: Severity.P1,
    DiagnosisCategory.MISSING_RESOURCE: Severity.P2,
    DiagnosisCategory.CORS_ERROR: Severity.P2,
    DiagnosisCategory.WEBSOCKET_ERROR: Severity.P2,
    DiagnosisCategory.SLOW_REQUEST: Severity.P3,
    DiagnosisCategory.MIXED_CONTENT: Severity.P3,
}

_ANALYZER_TYPES = {
    "security": FindingType.SECURITY,
    "code-quality": FindingType.QUALITY,
    "architecture": FindingType.QUALITY,
}

_PRD_GAP_SEVERITY = {
    FeaturePriority.MUST_HAVE: Severity.P1,
    FeaturePriority.SHOULD_HAVE: Severity.P2,
}


def page_name(url: str) -> str:
    """Pathname of a URL, or 'Homepage' for the root path."""
    try:
        path = urlparse(url).path
    except ValueError:
        return url
    if path in ("", "/"):
        return "Homepage"
    return path


def is_loading_stuck(text: str) -> bool:
    return any(pattern.search(text) for pattern in LOADING_PATTERNS)


def is_empty_shell(page: PageData) -> bool:
    return (
        not page.forms
        and len(page.links) <= EMPTY_SHELL_MAX_LINKS
        and len(page.text.strip()) < EMPTY_SHELL_MIN_TEXT
    )


def diagnosis_severity(diagnosis: PageDiagnosis) -> Severity:
    if diagnosis.category in (DiagnosisCategory.JS_ERROR, DiagnosisCategory.API_FAILURE):
        return Severity.P1 if diagnosis.severity == "error" else Severity.P2
    return _DIAGNOSIS_SEVERITY.get(diagnosis.category, Severity.P3)


class FindingGenerator:
    """
    Rule-driven producer of canonical findings for one audit run.
    """

    def __init__(self, counter: Optional[FindingCounter] = None) -> None:
        self.counter = counter if counter is not None else FindingCounter()

    def reset(self, value: int = 0) -> None:
        self.counter.reset(value)

    def _mint(self, **fields) -> Finding:
        return create_finding(fields, counter=self.counter)

    # ------------------------------------------------------------------
    # Exploration
    # ------------------------------------------------------------------

    def from_pages(self, pages: Iterable[PageData]) -> List[Finding]:
        findings: List[Finding] = []
        for page in pages:
            findings.extend(self.from_page(page))
        return findings

    def from_page(self, page: PageData) -> List[Finding]:
        findings: List[Finding] = []
        name = page_name(page.url)
        excerpt = page.text[:EXCERPT_CHARS]

        if page.status_code is not None and page.status_code >= 500:
            findings.append(
                self._mint(
                    type=FindingType.FUNCTIONALITY,
                    severity=Severity.P0,
                    title=f"{page.url} returns {page.status_code} Server Error",
                    description=(
                        f"Page returned HTTP {page.status_code}. This is a server "
                        "crash that blocks access to the entire page."
                    ),
                    location={"url": page.url},
                    category="functionality",
                    source_phase="exploration",
                    steps_to_reproduce=[
                        f"Navigate to {page.url}",
                        f"Observe {page.status_code} error",
                    ],
                    actual_behavior=f"HTTP {page.status_code}",
                    evidence={
                        "network_requests": [
                            NetworkRequestSummary(url=e.url, method=e.method, status=e.status)
                            for e in page.network_errors
                            if e.status >= 500
                        ],
                    },
                )
            )

        if is_loading_stuck(page.text):
            api_errors = [e for e in page.network_errors if API_URL_RE.search(e.url)]
            if api_errors:
                cause = "Root cause: {} API call(s) failing ({})".format(
                    len(api_errors),
                    ", ".join(f"{e.url} -> {e.status}" for e in api_errors),
                )
            else:
                cause = "No API errors detected - may be waiting for data that never arrives."
            findings.append(
                self._mint(
                    type=FindingType.FUNCTIONALITY,
                    severity=Severity.P1,
                    title=f"{name} stuck in loading state",
                    description=f"Page text contains loading indicators. {cause}",
                    location={"url": page.url},
                    category="functionality",
                    source_phase="exploration",
                    steps_to_reproduce=[
                        f"Navigate to {page.url}",
                        "Wait for page to fully load",
                        'Observe persistent "Loading" state',
                    ],
                    evidence={
                        "page_text_excerpt": excerpt,
                        "console_errors": [
                            m.text for m in page.console_messages if m.type == "error"
                        ],
                        "network_requests": [
                            NetworkRequestSummary(url=e.url, method=e.method, status=e.status)
                            for e in api_errors
                        ],
                    },
                )
            )

        if is_empty_shell(page):
            findings.append(
                self._mint(
                    type=FindingType.FUNCTIONALITY,
                    severity=Severity.P2,
                    title=f"{name} is an empty shell",
                    description=(
                        "Page has no forms, at most 1 link, and less than 100 "
                        "characters of text content. This appears to be a UI "
                        "shell without working content."
                    ),
                    location={"url": page.url},
                    category="functionality",
                    source_phase="exploration",
                    steps_to_reproduce=[
                        f"Navigate to {page.url}",
                        "Observe empty page with no content",
                    ],
                    evidence={"page_text_excerpt": excerpt},
                )
            )

        return findings

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def from_diagnostics(self, reports: Iterable[PageDiagnosticReport]) -> List[Finding]:
        findings: List[Finding] = []
        for report in reports:
            for diagnosis in report.diagnoses:
                if diagnosis.severity == "info":
                    continue

                dom_text = "\n".join(e.raw for e in diagnosis.evidence if e.source == "dom")
                description = diagnosis.description
                if diagnosis.suggested_cause:
                    description = f"{description}\n\nSuggested cause: {diagnosis.suggested_cause}"

                findings.append(
                    self._mint(
                        type=(
                            FindingType.PERFORMANCE
                            if diagnosis.category == DiagnosisCategory.SLOW_REQUEST
                            else FindingType.FUNCTIONALITY
                        ),
                        severity=diagnosis_severity(diagnosis),
                        title=diagnosis.title,
                        description=description.strip(),
                        location={"url": diagnosis.url},
                        category=diagnosis.category.value,
                        source_phase="diagnostics",
                        steps_to_reproduce=[
                            f"Navigate to {diagnosis.url}",
                            "Open browser DevTools console",
                            f"Observe: {diagnosis.title}",
                        ],
                        evidence={
                            "console_errors": [
                                e.raw for e in diagnosis.evidence if e.source == "console"
                            ],
                            "network_requests": [
                                NetworkRequestSummary(url=e.raw)
                                for e in diagnosis.evidence
                                if e.source == "network"
                            ],
                            "page_text_excerpt": dom_text or None,
                        },
                    )
                )
        return findings

    # ------------------------------------------------------------------
    # Interaction testing
    # ------------------------------------------------------------------

    def from_interactions(self, results: Iterable[PageInteractionResult]) -> List[Finding]:
        findings: List[Finding] = []
        for page_result in results:
            for test in page_result.elements_tested:
                if not test.has_error:
                    continue

                severity = Severity.P2
                if test.console_errors or any(r.status >= 500 for r in test.failed_requests):
                    severity = Severity.P1

                parts = [test.description]
                if test.console_errors:
                    parts.append("Console errors: " + "; ".join(test.console_errors))
                if test.failed_requests:
                    parts.append(
                        "Failed requests: "
                        + "; ".join(f"{r.method} {r.url} -> {r.status}" for r in test.failed_requests)
                    )

                element = f'"{test.element.text}" {test.element.element_type}'
                findings.append(
                    self._mint(
                        type=FindingType.FUNCTIONALITY,
                        severity=severity,
                        title=f"Clicking {element} triggers error",
                        description="\n".join(p for p in parts if p),
                        location={"url": test.url},
                        category="functionality",
                        source_phase="form-testing",
                        steps_to_reproduce=[
                            f"Navigate to {test.url}",
                            f"Click the {element}",
                            "Observe error",
                        ],
                        evidence={
                            "console_errors": list(test.console_errors),
                            "network_requests": [
                                NetworkRequestSummary(url=r.url, method=r.method, status=r.status)
                                for r in test.failed_requests
                            ],
                        },
                    )
                )
        return findings

    # ------------------------------------------------------------------
    # Responsive testing / API smoke (severity verbatim)
    # ------------------------------------------------------------------

    def from_responsive(self, results: Iterable[ResponsivePageResult]) -> List[Finding]:
        findings: List[Finding] = []
        for result in results:
            for issue in result.findings:
                findings.append(
                    self._mint(
                        type=FindingType.UI,
                        severity=issue.severity,
                        title=issue.title,
                        description=issue.description,
                        location={"url": issue.url},
                        category="ux",
                        source_phase="responsive-testing",
                        steps_to_reproduce=[
                            f"Navigate to {issue.url}",
                            f"Resize viewport to {issue.viewport}",
                            "Observe issue",
                        ],
                    )
                )
        return findings

    def from_api_smoke(self, report: ApiSmokeReport) -> List[Finding]:
        return [
            self._mint(
                type=FindingType.FUNCTIONALITY,
                severity=issue.severity,
                title=issue.title,
                description=issue.description,
                location={"url": issue.url},
                category="functionality",
                source_phase="api-smoke",
                steps_to_reproduce=[
                    f"Send GET request to {issue.url}",
                    f"Observe HTTP {issue.status} response",
                ],
                evidence={
                    "network_requests": [
                        NetworkRequestSummary(url=issue.url, method="GET", status=issue.status)
                    ],
                    "page_text_excerpt": issue.response_preview or None,
                },
            )
            for issue in report.findings
        ]

    # ------------------------------------------------------------------
    # Static analysis and PRD comparison
    # ------------------------------------------------------------------

    def from_analyzer(self, result: AnalyzerResult) -> List[Finding]:
        finding_type = _ANALYZER_TYPES.get(result.analyzer, FindingType.QUALITY)
        findings: List[Finding] = []
        for raw in result.findings:
            description = raw.message
            if raw.evidence:
                description = f"{description}\n\nEvidence: {raw.evidence}"
            findings.append(
                self._mint(
                    type=finding_type,
                    severity=normalize_severity(raw.severity),
                    title=raw.message,
                    description=description,
                    location={"file": raw.file, "line": raw.line},
                    category=raw.type,
                    source_phase="code-scan",
                    fix_suggestion=raw.recommendation,
                    component=result.analyzer,
                )
            )
        return findings

    def from_prd_comparison(self, comparison: PrdComparison) -> List[Finding]:
        findings: List[Finding] = []
        for result in comparison.feature_results:
            if result.status != FeatureStatus.MISSING:
                continue
            findings.append(
                self._mint(
                    type=FindingType.PRD_GAP,
                    severity=_PRD_GAP_SEVERITY.get(result.priority, Severity.P3),
                    title=f"PRD feature not found in implementation: {result.feature_name}",
                    description=(
                        f"No discovered route or endpoint matches feature "
                        f"'{result.feature_name}' ({result.requirements_total} requirement(s))."
                    ),
                    category="prd-gap",
                    source_phase="compare",
                    prd_section=result.feature_name,
                    prd_requirement=(
                        result.missing_requirements[0] if result.missing_requirements else None
                    ),
                    expected_behavior=f"Feature '{result.feature_name}' is implemented",
                )
            )
        return findings
