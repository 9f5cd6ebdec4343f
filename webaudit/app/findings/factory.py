"""
Finding factory.

The ONLY sanctioned way to mint canonical findings.

Responsibilities:
- fill every omitted field with its schema default
- assign run-scoped ids from an explicit FindingCounter
- compute dedup_hash when absent
- stamp created_at / updated_at
- convert pydantic validation failures into structured
  SchemaValidationError instances listing every violated field
- upgrade minimal legacy records onto the canonical schema
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from webaudit.app.findings.identity import (
    FindingCounter,
    dedup_hash_for,
    format_finding_id,
    normalize_severity,
)
from webaudit.app.schemas.findings import (
    FieldViolation,
    Finding,
    FindingType,
    FindingValidation,
    ReviewDecision,
    SchemaValidationError,
    VerificationStatus,
)


def _violations(exc: ValidationError) -> List[FieldViolation]:
    return [
        FieldViolation(
            field=".".join(str(part) for part in err["loc"]) or "<root>",
            message=err["msg"],
        )
        for err in exc.errors()
    ]


def create_finding(
    data: Optional[Mapping[str, Any]] = None,
    *,
    counter: Optional[FindingCounter] = None,
    **fields: Any,
) -> Finding:
    """
    Construct a fully-populated, schema-valid Finding.

    When no id is supplied the next id is drawn from counter. The
    counter only advances once the record has validated, so rejected
    input never leaves a gap in the id sequence.
    """
    payload: Dict[str, Any] = dict(data or {})
    payload.update(fields)

    allocate_id = not payload.get("id") and counter is not None
    if allocate_id:
        payload["id"] = format_finding_id(counter.value + 1)

    if not payload.get("dedup_hash"):
        payload["dedup_hash"] = dedup_hash_for(payload)

    now = datetime.now(timezone.utc)
    payload.setdefault("created_at", now)
    payload.setdefault("updated_at", payload["created_at"])

    try:
        finding = Finding.model_validate(payload)
    except ValidationError as exc:
        raise SchemaValidationError(_violations(exc)) from exc

    if allocate_id:
        counter.next_id()

    return finding


def validate_finding(data: Mapping[str, Any]) -> FindingValidation:
    """
    Re-validate a record loaded from storage.

    Never raises for schema problems; violations are returned.
    """
    try:
        record = create_finding(data)
    except SchemaValidationError as exc:
        return FindingValidation(valid=False, errors=exc.errors)
    return FindingValidation(valid=True, record=record)


# ---------------------------------------------------------------------------
# Legacy upgrade
# ---------------------------------------------------------------------------

# Order matters: the first matching keyword group wins.
_CATEGORY_KEYWORDS = (
    (("security",), FindingType.SECURITY),
    (("prd", "compliance", "gap"), FindingType.PRD_GAP),
    (("ui", "visual", "responsive"), FindingType.UI),
    (("performance", "perf"), FindingType.PERFORMANCE),
    (("accessibility", "a11y"), FindingType.ACCESSIBILITY),
    (("data", "integrity"), FindingType.DATA_INTEGRITY),
    (("quality", "code"), FindingType.QUALITY),
)


def classify_category(category: Optional[str]) -> FindingType:
    """Classify a free-text category into the fixed type taxonomy."""
    if not category:
        return FindingType.FUNCTIONALITY

    lower = category.lower()
    for keywords, finding_type in _CATEGORY_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return finding_type
    return FindingType.FUNCTIONALITY


def _parse_code_ref(ref: str) -> Dict[str, Any]:
    """'src/app.py:42' or 'src/app.py:42-50' -> {'file', 'line'}."""
    file, _, line_part = ref.partition(":")
    location: Dict[str, Any] = {"file": file.strip() or None}
    start = line_part.split("-")[0].strip()
    if start.isdigit() and int(start) > 0:
        location["line"] = int(start)
    return location


def is_legacy_record(data: Mapping[str, Any]) -> bool:
    return "type" not in data and "category" in data


def upgrade_legacy_finding(
    legacy: Mapping[str, Any],
    *,
    counter: Optional[FindingCounter] = None,
) -> Finding:
    """
    Map a minimal legacy record onto the canonical schema.

    Legacy records carry a free-text category, an evidence object with
    'code' references and a 'browser' note, and a free-text 'fix'.
    """
    category = legacy.get("category")
    partial: Dict[str, Any] = {
        "title": legacy.get("title"),
        "severity": normalize_severity(legacy.get("severity", "P3")),
        "type": classify_category(category),
        "category": category or "uncategorized",
        "description": legacy.get("description") or "",
        "fix_suggestion": legacy.get("fix") or None,
    }
    if legacy.get("id"):
        partial["id"] = legacy["id"]
    if legacy.get("prd_section"):
        partial["prd_section"] = legacy["prd_section"]

    location: Dict[str, Any] = {}
    if legacy.get("url"):
        location["url"] = legacy["url"]

    evidence = legacy.get("evidence")
    if isinstance(evidence, Mapping):
        code_refs = evidence.get("code") or []
        if isinstance(code_refs, str):
            code_refs = [code_refs]
        browser_note = evidence.get("browser")
        if browser_note:
            partial["actual_behavior"] = str(browser_note)
        if code_refs:
            location.update(_parse_code_ref(str(code_refs[0])))

    if location:
        partial["location"] = location

    if legacy.get("status") == "open":
        partial["verification_status"] = VerificationStatus.PENDING
        partial["review_decision"] = ReviewDecision.PENDING

    return create_finding(partial, counter=counter)
