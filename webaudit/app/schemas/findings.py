"""
Canonical finding schema.

Defines the canonical structure used to report issues detected by every
audit stage (static code scan, browser exploration, form testing,
responsive testing, API smoke testing, PRD comparison).

This schema is:
- authoritative
- immutable once written to the findings store
- severity-graded (P0 most urgent ... P4 least)
- content-addressed through dedup_hash

Only verification_status, review_decision, is_false_positive and
updated_at may change after a finding has been written.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations (FROZEN CONTRACTS)
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    """
    Ranked urgency of a finding.

    Ordering is intentional and MUST remain stable.
    """

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"

    @property
    def rank(self) -> int:
        return int(self.value[1])


class FindingType(str, Enum):
    """
    Fixed issue taxonomy.
    """

    SECURITY = "security"
    FUNCTIONALITY = "functionality"
    UI = "ui"
    QUALITY = "quality"
    PERFORMANCE = "performance"
    ACCESSIBILITY = "accessibility"
    PRD_GAP = "prd-gap"
    DATA_INTEGRITY = "data-integrity"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FLAKY = "flaky"
    COULD_NOT_REPRODUCE = "could_not_reproduce"
    FALSE_POSITIVE = "false_positive"
    VERIFICATION_ERROR = "verification_error"


class ReviewDecision(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    SKIPPED = "skipped"


# Fields later stages may update on a stored finding.
ANNOTATION_FIELDS = frozenset(
    {
        "verification_status",
        "review_decision",
        "is_false_positive",
        "updated_at",
    }
)


# ---------------------------------------------------------------------------
# Nested value objects
# ---------------------------------------------------------------------------


class FindingLocation(BaseModel):
    url: Optional[str] = Field(None, description="Page URL where the issue was observed")
    file: Optional[str] = Field(None, description="Source file path, relative to the codebase")
    line: Optional[int] = Field(None, gt=0, description="1-based line number")

    model_config = ConfigDict(frozen=True, extra="forbid")


class NetworkRequestSummary(BaseModel):
    url: str
    method: str = "GET"
    status: Optional[int] = None
    failure: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class FindingEvidence(BaseModel):
    screenshots: List[str] = Field(default_factory=list)
    console_errors: List[str] = Field(default_factory=list)
    network_requests: List[NetworkRequestSummary] = Field(default_factory=list)
    page_text_excerpt: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class BrowserInfo(BaseModel):
    name: str = "unknown"
    version: str = "unknown"

    model_config = ConfigDict(frozen=True, extra="forbid")


class ViewportSize(BaseModel):
    width: int = Field(1280, gt=0)
    height: int = Field(720, gt=0)

    model_config = ConfigDict(frozen=True, extra="forbid")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Canonical Finding (PUBLIC, FROZEN)
# ---------------------------------------------------------------------------


class Finding(BaseModel):
    """
    Canonical audit finding.

    A Finding is never partially initialized: construction either yields
    a fully-populated record or fails validation. Use
    webaudit.app.findings.factory.create_finding to mint new records so
    that dedup_hash and timestamps are filled consistently.
    """

    # Identity
    id: str = Field(..., min_length=1, description="Run-scoped identifier (e.g. 'F-001')")
    type: FindingType
    severity: Severity
    title: str = Field(..., min_length=1)
    description: str = ""
    location: FindingLocation = Field(default_factory=FindingLocation)

    # Evidence and reproduction
    evidence: FindingEvidence = Field(default_factory=FindingEvidence)
    steps_to_reproduce: List[str] = Field(default_factory=list)
    expected_behavior: Optional[str] = None
    actual_behavior: Optional[str] = None
    screenshot_id: Optional[str] = None

    # PRD linkage
    prd_section: Optional[str] = None
    prd_requirement: Optional[str] = None

    # Quality signals
    confidence: int = Field(50, ge=0, le=100)
    critique_notes: Optional[str] = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    is_false_positive: bool = False

    # Classification and impact
    category: str = "uncategorized"
    component: Optional[str] = None
    affected_users: str = "all"
    workaround: Optional[str] = None
    fix_suggestion: Optional[str] = None
    related_findings: List[str] = Field(default_factory=list)

    # Provenance
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    source_phase: Optional[str] = None
    browser_info: BrowserInfo = Field(default_factory=BrowserInfo)
    viewport_size: ViewportSize = Field(default_factory=ViewportSize)

    # Deduplication and workflow
    dedup_hash: str = Field(..., min_length=16, max_length=16)
    review_decision: ReviewDecision = ReviewDecision.PENDING
    github_issue_number: Optional[int] = Field(None, gt=0)

    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Structured validation errors
# ---------------------------------------------------------------------------


class FieldViolation(BaseModel):
    field: str
    message: str

    model_config = ConfigDict(frozen=True, extra="forbid")


class SchemaValidationError(ValueError):
    """
    Raised when finding data violates the canonical schema.

    Always lists every violated field constraint so producers can be
    corrected deterministically.
    """

    def __init__(self, errors: List[FieldViolation]) -> None:
        self.errors = list(errors)
        summary = "; ".join(f"{e.field}: {e.message}" for e in self.errors)
        super().__init__(f"Finding failed schema validation ({summary})")


class FindingValidation(BaseModel):
    """Outcome of re-validating a stored record."""

    valid: bool
    record: Optional[Finding] = None
    errors: List[FieldViolation] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


class FindingImmutableError(ValueError):
    """Raised when a write would modify a non-annotation field of a stored finding."""
