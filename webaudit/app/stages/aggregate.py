"""
Aggregate stage: deduplicate and quality-filter every stored finding.

Aggregate is also the first stage that runs after both code-scan and
explore have committed, so route coverage (declared page routes against
visited URLs) is computed here rather than in either of them.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List

from webaudit.app.findings.aggregator import aggregate_findings
from webaudit.app.schemas.stages import StageName, StageOutcome
from webaudit.app.stages.base import StageContext, stage_output
from webaudit.app.stages.browser import PARAM_SEGMENT_RE, architecture_details
from webaudit.app.storage.artifacts import read_stage_artifact, write_stage_artifact
from webaudit.app.utils.urls import route_pattern

logger = logging.getLogger(__name__)


def normalize_route(route: str) -> str:
    segments = route.rstrip("/").split("/")
    return "/".join(":id" if PARAM_SEGMENT_RE.match(s) else s for s in segments) or "/"


def route_coverage(page_routes: List[str], visited: List[str]) -> Dict[str, int]:
    visited_patterns = {route_pattern(url) for url in visited}
    covered = 0
    for route in page_routes:
        pattern = normalize_route(route)
        if pattern in visited_patterns:
            covered += 1
        elif ":id" in pattern:
            regex = re.compile("^" + re.escape(pattern).replace(":id", "[^/]+") + "$")
            if any(regex.match(p) for p in visited_patterns):
                covered += 1
    return {"routes_total": len(page_routes), "routes_covered": covered}


def _committed_coverage(ctx: StageContext) -> Dict[str, int]:
    explore = read_stage_artifact(ctx.audit_path, StageName.EXPLORE) or {}
    visited = [page["url"] for page in explore.get("pages", []) if page.get("url")]
    page_routes = architecture_details(ctx).get("page_routes") or []
    return route_coverage(page_routes, visited)


async def run_aggregate(ctx: StageContext) -> StageOutcome:
    findings = ctx.findings.load_all()
    result = aggregate_findings(findings)
    summary = result.summary

    logger.info(
        "Aggregated %d finding(s): %d unique, %d duplicate(s), %d filtered",
        summary.total,
        summary.unique,
        summary.duplicates,
        summary.filtered,
    )

    coverage = _committed_coverage(ctx)
    ctx.progress.update_metrics(**coverage)

    output = write_stage_artifact(
        ctx.audit_path,
        StageName.AGGREGATE,
        {**result.model_dump(mode="json"), "route_coverage": coverage},
    )
    return stage_output(
        StageName.AGGREGATE,
        findings_count=summary.included,
        output_file=output,
        duplicates=summary.duplicates,
        filtered=summary.filtered,
        **coverage,
    )
