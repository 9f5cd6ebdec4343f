import pytest

from webaudit.app.analyzers.base import AnalyzerResult, RawFinding
from webaudit.app.comparison.prd import compare_prd, parse_prd
from webaudit.app.findings.generator import FindingGenerator, page_name
from webaudit.app.schemas.findings import FindingType, Severity
from webaudit.app.schemas.phase_data import (
    ApiSmokeIssue,
    ApiSmokeReport,
    DiagnosisCategory,
    FailedRequest,
    InteractedElement,
    InteractionTestResult,
    NetworkError,
    PageData,
    PageDiagnosis,
    PageDiagnosticReport,
    PageInteractionResult,
    ResponsiveIssue,
    ResponsivePageResult,
)

URL = "http://localhost:3000/dashboard"


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _rich_page(**overrides) -> PageData:
    fields = {
        "url": URL,
        "text": "Quarterly revenue overview and recent orders. " * 5,
        "links": ["/", "/orders", "/settings"],
        "status_code": 200,
    }
    fields.update(overrides)
    return PageData(**fields)


def _diagnosis(category, severity="error", title="Something broke") -> PageDiagnosticReport:
    return PageDiagnosticReport(
        url=URL,
        diagnoses=[
            PageDiagnosis(url=URL, category=category, severity=severity, title=title)
        ],
    )


# ----------------------------------------------------------------------
# Exploration
# ----------------------------------------------------------------------

def test_healthy_page_produces_no_findings():
    assert FindingGenerator().from_page(_rich_page()) == []


def test_server_error_page_is_p0():
    (finding,) = FindingGenerator().from_page(_rich_page(status_code=502))
    assert finding.severity == Severity.P0
    assert finding.title == f"{URL} returns 502 Server Error"
    assert finding.source_phase == "exploration"


@pytest.mark.parametrize("status, expected", [(499, []), (500, [Severity.P0])])
def test_server_error_threshold_is_500(status, expected):
    findings = FindingGenerator().from_page(_rich_page(status_code=status))
    assert [f.severity for f in findings] == expected


def test_loading_page_is_p1_and_names_failing_api_calls():
    page = _rich_page(
        text="Dashboard\nLoading...",
        network_errors=[NetworkError(url="http://localhost:3000/api/stats", status=500)],
    )

    findings = FindingGenerator().from_page(page)
    loading = [f for f in findings if "loading state" in f.title]

    assert len(loading) == 1
    assert loading[0].severity == Severity.P1
    assert loading[0].title == "/dashboard stuck in loading state"
    assert "/api/stats -> 500" in loading[0].description


def test_empty_shell_is_p2():
    page = PageData(url="http://localhost:3000/", text="Hi", links=["/"])
    (finding,) = FindingGenerator().from_page(page)
    assert finding.severity == Severity.P2
    assert finding.title == "Homepage is an empty shell"


def test_page_name_of_root_is_homepage():
    assert page_name("http://localhost:3000") == "Homepage"
    assert page_name("http://localhost:3000/a/b") == "/a/b"


# ----------------------------------------------------------------------
# Diagnostics
# ----------------------------------------------------------------------

@pytest.mark.parametrize(
    "category, severity, expected",
    [
        (DiagnosisCategory.RENDER_ERROR, "error", Severity.P0),
        (DiagnosisCategory.JS_ERROR, "error", Severity.P1),
        (DiagnosisCategory.JS_ERROR, "warning", Severity.P2),
        (DiagnosisCategory.API_FAILURE, "error", Severity.P1),
        (DiagnosisCategory.LOADING_STUCK, "warning", Severity.P1),
        (DiagnosisCategory.AUTH_FAILURE, "error", Severity.P1),
        (DiagnosisCategory.MISSING_RESOURCE, "warning", Severity.P2),
        (DiagnosisCategory.CORS_ERROR, "error", Severity.P2),
        (DiagnosisCategory.WEBSOCKET_ERROR, "error", Severity.P2),
        (DiagnosisCategory.SLOW_REQUEST, "warning", Severity.P3),
        (DiagnosisCategory.MIXED_CONTENT, "warning", Severity.P3),
    ],
)
def test_diagnosis_severity_table(category, severity, expected):
    (finding,) = FindingGenerator().from_diagnostics([_diagnosis(category, severity)])
    assert finding.severity == expected
    assert finding.category == category.value


def test_info_diagnoses_are_dropped():
    report = _diagnosis(DiagnosisCategory.SLOW_REQUEST, severity="info")
    assert FindingGenerator().from_diagnostics([report]) == []


def test_slow_requests_are_performance_findings():
    (finding,) = FindingGenerator().from_diagnostics(
        [_diagnosis(DiagnosisCategory.SLOW_REQUEST, "warning")]
    )
    assert finding.type == FindingType.PERFORMANCE


# ----------------------------------------------------------------------
# Interactions
# ----------------------------------------------------------------------

def _interaction(**overrides) -> PageInteractionResult:
    fields = {
        "url": URL,
        "element": InteractedElement(text="Save", element_type="button"),
        "has_error": True,
        "description": "Click produced an error",
    }
    fields.update(overrides)
    return PageInteractionResult(url=URL, elements_tested=[InteractionTestResult(**fields)])


def test_interaction_error_with_console_errors_is_p1():
    (finding,) = FindingGenerator().from_interactions(
        [_interaction(console_errors=["TypeError: x is undefined"])]
    )
    assert finding.severity == Severity.P1
    assert finding.title == 'Clicking "Save" button triggers error'


def test_interaction_error_with_server_error_is_p1():
    (finding,) = FindingGenerator().from_interactions(
        [_interaction(failed_requests=[FailedRequest(method="POST", url="/api/save", status=500)])]
    )
    assert finding.severity == Severity.P1


def test_interaction_error_without_signal_is_p2():
    (finding,) = FindingGenerator().from_interactions([_interaction()])
    assert finding.severity == Severity.P2


def test_passing_interactions_produce_nothing():
    assert FindingGenerator().from_interactions([_interaction(has_error=False)]) == []


# ----------------------------------------------------------------------
# Responsive and API smoke (severity copied from the sub-check)
# ----------------------------------------------------------------------

def test_responsive_issues_keep_their_severity():
    result = ResponsivePageResult(
        url=URL,
        findings=[
            ResponsiveIssue(title="Nav overlaps content", severity="P0", url=URL, viewport="mobile"),
            ResponsiveIssue(title="Table scrolls sideways", severity="P2", url=URL, viewport="tablet"),
            ResponsiveIssue(title="Footer text too small", severity="P3", url=URL, viewport="mobile"),
        ],
    )

    findings = FindingGenerator().from_responsive([result])

    assert [f.severity for f in findings] == [Severity.P0, Severity.P2, Severity.P3]
    assert {f.type for f in findings} == {FindingType.UI}
    assert {f.source_phase for f in findings} == {"responsive-testing"}
    assert findings[1].steps_to_reproduce[1] == "Resize viewport to tablet"


def test_responsive_page_without_issues_produces_nothing():
    assert FindingGenerator().from_responsive([ResponsivePageResult(url=URL)]) == []


def test_api_smoke_issues_keep_their_severity():
    api = "http://localhost:3000/api"
    report = ApiSmokeReport(
        base_url="http://localhost:3000",
        findings=[
            ApiSmokeIssue(title="Server error on GET /api/users", severity="P0", url=f"{api}/users", status=500),
            ApiSmokeIssue(title="Slow response from /api/stats", severity="P2", url=f"{api}/stats", status=200),
            ApiSmokeIssue(title="Unexpected 404 from /api/health", severity="P3", url=f"{api}/health", status=404),
        ],
    )

    findings = FindingGenerator().from_api_smoke(report)

    assert [f.severity for f in findings] == [Severity.P0, Severity.P2, Severity.P3]
    assert {f.type for f in findings} == {FindingType.FUNCTIONALITY}
    assert {f.source_phase for f in findings} == {"api-smoke"}
    assert findings[0].evidence.network_requests[0].status == 500


# ----------------------------------------------------------------------
# Analyzer output and PRD gaps
# ----------------------------------------------------------------------

def test_analyzer_severities_are_normalized():
    result = AnalyzerResult(
        analyzer="security",
        findings=[
            RawFinding(type="hardcoded_secret", severity="CRITICAL", file="a.py", line=3, message="Secret"),
            RawFinding(type="cors", severity="medium", file="b.py", message="Wildcard CORS"),
        ],
    )

    findings = FindingGenerator().from_analyzer(result)

    assert [f.severity for f in findings] == [Severity.P0, Severity.P2]
    assert all(f.type == FindingType.SECURITY for f in findings)
    assert findings[0].location.file == "a.py"
    assert findings[0].location.line == 3


def test_missing_must_have_feature_becomes_p1_prd_gap():
    prd = parse_prd(
        "# Shop PRD\n\n"
        "## Invoice Export (must have)\n"
        "Customers download invoices as PDF.\n"
        "- Export invoice\n"
        "- Email invoice\n"
    )
    comparison = compare_prd(prd, routes=["/orders", "/settings"])

    (finding,) = FindingGenerator().from_prd_comparison(comparison)

    assert finding.type == FindingType.PRD_GAP
    assert finding.severity == Severity.P1
    assert finding.prd_section == "Invoice Export (must have)"


def test_reset_restarts_sequence():
    generator = FindingGenerator()
    generator.from_page(_rich_page(status_code=500))
    generator.reset(41)
    (finding,) = generator.from_page(_rich_page(status_code=503))
    assert finding.id == "F-042"
