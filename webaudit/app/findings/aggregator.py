"""
Finding aggregation.

Deduplicates stored findings by dedup_hash, scores each unique finding
for report quality, and orders the result for verification and
reporting.

IMPORTANT:
- Aggregation never modifies or deletes a stored finding. Its decisions
  (duplicate_of, include) live only in the aggregate artifact.
- Within a dedup group the first finding in id order wins.
"""

from __future__ import annotations

from collections import Counter
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from webaudit.app.schemas.findings import Finding

MIN_CONFIDENCE = 25
MIN_QUALITY_SCORE = 40
MIN_DESCRIPTION_CHARS = 50
MIN_STEPS = 3

BROWSER_REPRO_PHASES = frozenset({"exploration", "diagnostics"})


class FindingCritique(BaseModel):
    finding_id: str
    quality_score: int = Field(..., ge=0, le=100)
    issues: List[str] = Field(default_factory=list)
    should_include: bool

    model_config = ConfigDict(frozen=True, extra="forbid")


class AggregatedFinding(BaseModel):
    id: str
    severity: str
    type: str
    title: str
    dedup_hash: str
    source_phase: Optional[str] = None
    url: Optional[str] = None
    file: Optional[str] = None
    confidence: int
    quality_score: int
    quality_issues: List[str] = Field(default_factory=list)
    include: bool
    duplicate_of: Optional[str] = None
    duplicates: List[str] = Field(default_factory=list)
    verification_method: str

    model_config = ConfigDict(extra="forbid")


class AggregationSummary(BaseModel):
    total: int = 0
    unique: int = 0
    duplicates: int = 0
    filtered: int = 0
    included: int = 0
    by_severity: Dict[str, int] = Field(default_factory=dict)
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_source_phase: Dict[str, int] = Field(default_factory=dict)


class AggregationResult(BaseModel):
    findings: List[AggregatedFinding] = Field(default_factory=list)
    summary: AggregationSummary = Field(default_factory=AggregationSummary)

    def included(self) -> List[AggregatedFinding]:
        return [f for f in self.findings if f.include and f.duplicate_of is None]


def _has_evidence(finding: Finding) -> bool:
    evidence = finding.evidence
    return bool(
        evidence.screenshots
        or evidence.console_errors
        or evidence.network_requests
        or evidence.page_text_excerpt
        or finding.location.file
    )


def critique_finding(finding: Finding) -> FindingCritique:
    """Score a finding for actionability (100 = fully actionable)."""
    score = 100
    issues: List[str] = []

    if not _has_evidence(finding):
        score -= 30
        issues.append("missing-evidence")

    if not finding.steps_to_reproduce:
        score -= 15
        issues.append("missing-steps")
    elif len(finding.steps_to_reproduce) < MIN_STEPS:
        score -= 5
        issues.append("incomplete-steps")

    if len(finding.description) < MIN_DESCRIPTION_CHARS:
        score -= 10
        issues.append("vague-description")

    if finding.confidence < 50:
        score -= 15
        issues.append("low-confidence")

    if not finding.location.url and not finding.location.file:
        score -= 10
        issues.append("missing-location")

    score = max(0, score)
    return FindingCritique(
        finding_id=finding.id,
        quality_score=score,
        issues=issues,
        should_include=(
            score >= MIN_QUALITY_SCORE
            and finding.confidence >= MIN_CONFIDENCE
            and not finding.is_false_positive
        ),
    )


def verification_method(finding: Finding) -> str:
    if finding.source_phase in BROWSER_REPRO_PHASES and finding.location.url:
        return "browser_repro"
    if finding.location.file:
        return "file_check"
    return "none"


def aggregate_findings(findings: List[Finding]) -> AggregationResult:
    """
    Deduplicate and score findings.

    Output order: severity (P0 first), then confidence (highest first),
    then id order.
    """
    entries: Dict[str, AggregatedFinding] = {}
    first_by_hash: Dict[str, str] = {}

    for finding in findings:
        critique = critique_finding(finding)
        original = first_by_hash.get(finding.dedup_hash)
        entry = AggregatedFinding(
            id=finding.id,
            severity=finding.severity.value,
            type=finding.type.value,
            title=finding.title,
            dedup_hash=finding.dedup_hash,
            source_phase=finding.source_phase,
            url=finding.location.url,
            file=finding.location.file,
            confidence=finding.confidence,
            quality_score=critique.quality_score,
            quality_issues=critique.issues,
            include=critique.should_include and original is None,
            duplicate_of=original,
            verification_method=verification_method(finding),
        )
        if original is None:
            first_by_hash[finding.dedup_hash] = finding.id
        else:
            entries[original].duplicates.append(finding.id)
        entries[finding.id] = entry

    ordered = sorted(
        entries.values(),
        key=lambda e: (e.severity, -e.confidence),
    )

    unique = [e for e in ordered if e.duplicate_of is None]
    included = [e for e in unique if e.include]
    summary = AggregationSummary(
        total=len(ordered),
        unique=len(unique),
        duplicates=len(ordered) - len(unique),
        filtered=len(unique) - len(included),
        included=len(included),
        by_severity=dict(Counter(e.severity for e in included)),
        by_type=dict(Counter(e.type for e in included)),
        by_source_phase=dict(Counter(e.source_phase or "unknown" for e in included)),
    )
    return AggregationResult(findings=ordered, summary=summary)
