"""
Verify stage: reproduce aggregated findings through the browser backend.

Only the unique findings selected by the aggregate stage are verified.
The outcome is written back to the findings store as
verification_status (an annotation field) and in full to
stages/verify.json.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import List

from webaudit.app.findings.verifier import (
    VerificationOutcome,
    is_browser_reproducible,
    verify_finding,
)
from webaudit.app.schemas.findings import Finding, VerificationStatus
from webaudit.app.schemas.stages import StageError, StageName, StageOutcome
from webaudit.app.stages.base import StageContext, stage_output
from webaudit.app.storage.artifacts import read_stage_artifact, write_stage_artifact

logger = logging.getLogger(__name__)


def _aggregated_findings(ctx: StageContext) -> List[Finding]:
    aggregate = read_stage_artifact(ctx.audit_path, StageName.AGGREGATE) or {}
    findings: List[Finding] = []
    for entry in aggregate.get("findings", []):
        if entry.get("duplicate_of") is not None:
            continue
        finding = ctx.findings.load(entry["id"])
        if finding is not None:
            findings.append(finding)
    return findings


async def run_verify(ctx: StageContext) -> StageOutcome:
    if read_stage_artifact(ctx.audit_path, StageName.AGGREGATE) is None:
        return StageError(
            stage=StageName.VERIFY,
            message="Aggregate output not found; nothing to verify",
        )

    findings = _aggregated_findings(ctx)
    backend = None
    if any(is_browser_reproducible(f) for f in findings):
        backend = ctx.require_browser()

    outcomes: List[VerificationOutcome] = []
    for finding in findings:
        outcome = await verify_finding(finding, backend)
        outcomes.append(outcome)
        if outcome.applicable:
            ctx.findings.annotate(finding.id, verification_status=outcome.status)

    counts = Counter(o.status for o in outcomes if o.applicable)
    summary = {
        "verified": counts[VerificationStatus.VERIFIED],
        "flaky": counts[VerificationStatus.FLAKY],
        "could_not_reproduce": counts[VerificationStatus.COULD_NOT_REPRODUCE],
        "verification_error": counts[VerificationStatus.VERIFICATION_ERROR],
        "not_applicable": sum(1 for o in outcomes if not o.applicable),
    }
    ctx.progress.update_metrics(
        verified_count=summary["verified"],
        flaky_count=summary["flaky"],
        unverified_count=summary["could_not_reproduce"] + summary["verification_error"],
    )
    logger.info("Verification summary: %s", summary)

    output = write_stage_artifact(
        ctx.audit_path,
        StageName.VERIFY,
        {
            "summary": summary,
            "outcomes": [o.model_dump(mode="json") for o in outcomes],
        },
    )
    return stage_output(
        StageName.VERIFY,
        findings_count=sum(1 for o in outcomes if o.include_in_report),
        output_file=output,
        **summary,
    )
