import pytest

from webaudit.app.findings.factory import (
    classify_category,
    create_finding,
    upgrade_legacy_finding,
    validate_finding,
)
from webaudit.app.findings.identity import (
    FindingCounter,
    compute_dedup_hash,
    normalize_severity,
    parse_finding_sequence,
)
from webaudit.app.schemas.findings import (
    FindingType,
    ReviewDecision,
    SchemaValidationError,
    Severity,
    VerificationStatus,
)


def make_finding(counter=None, **overrides):
    fields = {
        "type": "functionality",
        "severity": "P1",
        "title": "Checkout button does nothing",
        "location": {"url": "http://localhost:3000/checkout"},
    }
    fields.update(overrides)
    return create_finding(fields, counter=counter)


# ----------------------------------------------------------------------
# Construction
# ----------------------------------------------------------------------

def test_minimal_input_yields_fully_populated_finding():
    finding = make_finding(counter=FindingCounter())

    assert finding.id == "F-001"
    assert finding.confidence == 50
    assert finding.verification_status == VerificationStatus.PENDING
    assert finding.review_decision == ReviewDecision.PENDING
    assert finding.affected_users == "all"
    assert len(finding.dedup_hash) == 16
    assert finding.created_at == finding.updated_at


def test_counter_assigns_monotonic_ids():
    counter = FindingCounter()
    ids = [make_finding(counter=counter, title=f"Issue {i}").id for i in range(3)]
    assert ids == ["F-001", "F-002", "F-003"]
    assert [parse_finding_sequence(i) for i in ids] == [1, 2, 3]


def test_invalid_input_lists_every_violation_and_keeps_counter():
    counter = FindingCounter()

    with pytest.raises(SchemaValidationError) as exc_info:
        make_finding(counter=counter, severity="P9", type="cosmetic", confidence=150)

    fields = {e.field for e in exc_info.value.errors}
    assert {"severity", "type", "confidence"} <= fields
    assert counter.value == 0


def test_validate_finding_reports_instead_of_raising():
    result = validate_finding({"type": "ui", "severity": "P2"})
    assert result.valid is False
    assert any(e.field == "title" for e in result.errors)


def test_stored_findings_are_frozen():
    finding = make_finding(counter=FindingCounter())
    with pytest.raises(Exception):
        finding.severity = Severity.P0


# ----------------------------------------------------------------------
# Dedup hash
# ----------------------------------------------------------------------

def test_dedup_hash_ignores_confidence_and_evidence():
    a = make_finding(confidence=90)
    b = make_finding(confidence=10, evidence={"console_errors": ["TypeError"]})
    assert a.dedup_hash == b.dedup_hash


def test_dedup_hash_normalizes_title_case_and_whitespace():
    assert compute_dedup_hash(type="ui", severity="P2", title="  Broken Layout ") == (
        compute_dedup_hash(type=FindingType.UI, severity=Severity.P2, title="broken layout")
    )


def test_dedup_hash_tracks_identity_fields():
    base = make_finding()
    assert make_finding(severity="P2").dedup_hash != base.dedup_hash
    assert make_finding(location={"url": "http://localhost:3000/cart"}).dedup_hash != base.dedup_hash


# ----------------------------------------------------------------------
# Legacy records and severity normalization
# ----------------------------------------------------------------------

def test_legacy_record_is_upgraded_onto_canonical_schema():
    legacy = {
        "id": "F-007",
        "title": "Hardcoded API key",
        "severity": "CRITICAL",
        "category": "Security",
        "status": "open",
        "evidence": {"code": ["src/config.ts:42-50"], "browser": "Key visible in bundle"},
        "fix": "Move the key to an environment variable",
    }

    finding = upgrade_legacy_finding(legacy)

    assert finding.id == "F-007"
    assert finding.type == FindingType.SECURITY
    assert finding.severity == Severity.P0
    assert finding.location.file == "src/config.ts"
    assert finding.location.line == 42
    assert finding.actual_behavior == "Key visible in bundle"
    assert finding.fix_suggestion == "Move the key to an environment variable"
    assert finding.verification_status == VerificationStatus.PENDING


@pytest.mark.parametrize(
    "category, expected",
    [
        ("security", FindingType.SECURITY),
        ("PRD compliance", FindingType.PRD_GAP),
        ("responsive layout", FindingType.UI),
        ("perf", FindingType.PERFORMANCE),
        ("a11y", FindingType.ACCESSIBILITY),
        ("data integrity", FindingType.DATA_INTEGRITY),
        ("code smell", FindingType.QUALITY),
        ("broken flow", FindingType.FUNCTIONALITY),
        (None, FindingType.FUNCTIONALITY),
    ],
)
def test_classify_category(category, expected):
    assert classify_category(category) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("P0", Severity.P0),
        ("critical", Severity.P0),
        ("HIGH", Severity.P1),
        ("medium", Severity.P2),
        ("warning", Severity.P3),
        ("info", Severity.P4),
        ("whatever", Severity.P3),
    ],
)
def test_normalize_severity(raw, expected):
    assert normalize_severity(raw) == expected
