"""
Compare stage: match PRD features against discovered routes.

The PRD is optional. Without one the stage completes and records that
no comparison was made.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlsplit

from webaudit.app.comparison.prd import compare_prd, load_prd
from webaudit.app.schemas.stages import StageName, StageOutcome
from webaudit.app.stages.base import StageContext, stage_output
from webaudit.app.stages.browser import architecture_details
from webaudit.app.storage.artifacts import read_stage_artifact, write_stage_artifact

logger = logging.getLogger(__name__)


def resolve_prd_path(ctx: StageContext) -> Optional[Path]:
    """Configured PRD, else the one preflight discovered."""
    if ctx.config.prd_path is not None:
        return ctx.config.prd_path
    preflight = read_stage_artifact(ctx.audit_path, StageName.PREFLIGHT) or {}
    discovered = preflight.get("prd_path")
    return Path(discovered) if discovered else None


def _candidate_routes(ctx: StageContext) -> List[str]:
    details = architecture_details(ctx)
    routes = [r["path"] for r in details.get("routes", []) if isinstance(r, dict) and r.get("path")]
    routes += [r for r in details.get("page_routes", []) if isinstance(r, str)]

    explore = read_stage_artifact(ctx.audit_path, StageName.EXPLORE) or {}
    routes += [urlsplit(p["url"]).path or "/" for p in explore.get("pages", [])]
    return list(dict.fromkeys(routes))


def _candidate_endpoints(ctx: StageContext) -> List[str]:
    test = read_stage_artifact(ctx.audit_path, StageName.TEST) or {}
    endpoints = (test.get("api_smoke") or {}).get("endpoints", [])
    return [e["path"] for e in endpoints if isinstance(e, dict) and e.get("path")]


async def run_compare(ctx: StageContext) -> StageOutcome:
    prd_path = resolve_prd_path(ctx)
    if prd_path is None or not prd_path.is_file():
        reason = "PRD not provided" if prd_path is None else f"PRD not found: {prd_path}"
        logger.info("Skipping PRD comparison: %s", reason)
        output = write_stage_artifact(
            ctx.audit_path,
            StageName.COMPARE,
            {"status": "not_provided", "reason": reason},
        )
        return stage_output(StageName.COMPARE, output_file=output, compared=False)

    prd = load_prd(prd_path)
    comparison = compare_prd(prd, _candidate_routes(ctx), _candidate_endpoints(ctx))
    findings = ctx.generator.from_prd_comparison(comparison)
    count = ctx.record_findings(findings)

    output = write_stage_artifact(
        ctx.audit_path,
        StageName.COMPARE,
        {
            "status": "compared",
            "prd_title": prd.title,
            "comparison": comparison.model_dump(mode="json"),
            "finding_ids": [f.id for f in findings],
        },
    )
    return stage_output(
        StageName.COMPARE,
        findings_count=count,
        output_file=output,
        compared=True,
        coverage_percent=comparison.coverage_percent,
    )
