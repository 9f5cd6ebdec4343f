import pytest

from webaudit.app.reporting.report_generator import (
    ReportCoverage,
    ReportFinding,
    ReportStatus,
    RouteCoverage,
    calculate_score,
    determine_status,
    generate_headline,
    generate_recommendations,
    score_to_grade,
)


@pytest.mark.parametrize(
    "severities, route_percent, expected",
    [
        ([], 0, 100),
        (["P0", "P1"], 0, 65),
        (["P2", "P2", "P2"], 0, 91),
        (["P1"], 80, 95),
        ([], 95, 100),
        (["P4"], 0, 100),
        (["P0"] * 5, 0, 0),
    ],
)
def test_calculate_score(severities, route_percent, expected):
    assert calculate_score(severities, route_percent) == expected


@pytest.mark.parametrize(
    "score, grade",
    [(100, "A+"), (93, "A"), (89, "B+"), (72, "C-"), (60, "D-"), (59, "F")],
)
def test_score_to_grade(score, grade):
    assert score_to_grade(score) == grade


def test_status_and_headline_follow_blocking_severities():
    assert determine_status(["P0", "P3"]) == ReportStatus.FAIL
    assert determine_status(["P1"] * 4) == ReportStatus.NEEDS_ATTENTION
    assert determine_status(["P1", "P2"]) == ReportStatus.PASS_WITH_WARNINGS
    assert determine_status(["P3", "P4"]) == ReportStatus.PASS

    assert generate_headline(ReportStatus.PASS, []) == "No issues found - application is ready for launch!"
    assert generate_headline(ReportStatus.PASS, ["P3", "P4"]).startswith("2 minor issues found")
    assert generate_headline(ReportStatus.NEEDS_ATTENTION, ["P1"] * 4) == (
        "4 high-priority issues require immediate attention."
    )


def test_security_findings_produce_a_recommendation():
    findings = [
        ReportFinding(
            id="F-001",
            title="Hardcoded API key",
            severity="P0",
            type="security",
            category="hardcoded_secret",
        )
    ]
    coverage = ReportCoverage(routes=RouteCoverage(total=10, visited=9, percent=90))

    recommendations = generate_recommendations(findings, coverage)

    assert [r.category for r in recommendations] == ["Security"]
    assert recommendations[0].related_findings == ["F-001"]
