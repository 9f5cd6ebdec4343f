"""
Finding verification by reproduction.

Browser-reproducible findings (exploration and diagnostics findings
with a URL) are re-checked by visiting the page again, regenerating
findings from the fresh snapshot with a throwaway generator, and
looking for the same dedup_hash.

Status per finding:

    every attempt errored             verification_error
    reproduced in every attempt       verified
    reproduced in some attempts       flaky
    never reproduced                  could_not_reproduce
    not browser-reproducible          pending (not applicable)

IMPORTANT:
- The stored severity is never changed. The downgraded severity for
  could_not_reproduce findings is reported as final_severity only.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from webaudit.app.browser.backend import BrowserBackend
from webaudit.app.findings.aggregator import BROWSER_REPRO_PHASES
from webaudit.app.findings.generator import FindingGenerator
from webaudit.app.schemas.findings import Finding, Severity, VerificationStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

_SEVERITY_DOWNGRADE = {
    Severity.P0: Severity.P1,
    Severity.P1: Severity.P2,
    Severity.P2: Severity.P3,
    Severity.P3: Severity.P4,
    Severity.P4: Severity.P4,
}

_LABELS = {
    VerificationStatus.VERIFIED: ["verified"],
    VerificationStatus.FLAKY: ["flaky", "needs-investigation"],
    VerificationStatus.COULD_NOT_REPRODUCE: ["unverified", "could-not-reproduce"],
    VerificationStatus.VERIFICATION_ERROR: ["verification-error", "needs-manual-check"],
    VerificationStatus.PENDING: ["static-analysis"],
}


class VerificationAttempt(BaseModel):
    attempt: int = Field(..., ge=1)
    reproduced: bool = False
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class VerificationOutcome(BaseModel):
    finding_id: str
    applicable: bool
    status: VerificationStatus
    original_severity: Severity
    final_severity: Severity
    severity_adjusted: bool = False
    include_in_report: bool
    labels: List[str] = Field(default_factory=list)
    attempts: List[VerificationAttempt] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="forbid")


def is_browser_reproducible(finding: Finding) -> bool:
    return finding.source_phase in BROWSER_REPRO_PHASES and bool(finding.location.url)


def determine_status(attempts: List[VerificationAttempt]) -> VerificationStatus:
    if not attempts:
        return VerificationStatus.PENDING
    errors = sum(1 for a in attempts if a.error is not None)
    reproduced = sum(1 for a in attempts if a.reproduced)
    if errors == len(attempts):
        return VerificationStatus.VERIFICATION_ERROR
    if reproduced == len(attempts):
        return VerificationStatus.VERIFIED
    if reproduced:
        return VerificationStatus.FLAKY
    return VerificationStatus.COULD_NOT_REPRODUCE


def final_severity(severity: Severity, status: VerificationStatus) -> Severity:
    if status == VerificationStatus.COULD_NOT_REPRODUCE:
        return _SEVERITY_DOWNGRADE[severity]
    return severity


def include_in_report(status: VerificationStatus, severity: Severity) -> bool:
    if status == VerificationStatus.COULD_NOT_REPRODUCE:
        return severity in (Severity.P0, Severity.P1)
    return status != VerificationStatus.FALSE_POSITIVE


async def reproduce_once(finding: Finding, backend: BrowserBackend) -> bool:
    """Re-run the page checks that produced finding and look for its hash."""
    url = finding.location.url
    generator = FindingGenerator()
    if finding.source_phase == "diagnostics":
        fresh = generator.from_diagnostics([await backend.diagnose_page(url)])
    else:
        fresh = generator.from_page(await backend.visit_page(url))
    return any(f.dedup_hash == finding.dedup_hash for f in fresh)


async def verify_finding(
    finding: Finding,
    backend: Optional[BrowserBackend],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay_seconds: float = 0.0,
) -> VerificationOutcome:
    attempts: List[VerificationAttempt] = []
    applicable = is_browser_reproducible(finding) and backend is not None

    if applicable:
        for number in range(1, max_attempts + 1):
            if number > 1 and delay_seconds:
                await asyncio.sleep(delay_seconds)
            try:
                reproduced = await reproduce_once(finding, backend)
            except Exception as exc:
                logger.warning(
                    "Verification attempt %d for %s failed: %s", number, finding.id, exc
                )
                attempts.append(
                    VerificationAttempt(attempt=number, error=str(exc) or type(exc).__name__)
                )
                continue
            attempts.append(VerificationAttempt(attempt=number, reproduced=reproduced))

    status = determine_status(attempts)
    severity = final_severity(finding.severity, status)
    return VerificationOutcome(
        finding_id=finding.id,
        applicable=applicable,
        status=status,
        original_severity=finding.severity,
        final_severity=severity,
        severity_adjusted=severity != finding.severity,
        include_in_report=include_in_report(status, severity),
        labels=list(_LABELS.get(status, [])),
        attempts=attempts,
    )
