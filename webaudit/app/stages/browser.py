"""
Browser-driven stages: explore, test and responsive.

All three consume the run's BrowserBackend. Individual page failures
are recorded in the stage artifact and do not fail the stage; a stage
fails only when no page at all could be processed, in which case the
first page error is reported verbatim.
"""

from __future__ import annotations

import logging
import re
from collections import Counter, deque
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

from webaudit.app.findings.endpoints import (
    build_smoke_report,
    discover_endpoints,
    result_from_error,
    result_from_probe,
    safe_endpoints,
)
from webaudit.app.schemas.phase_data import (
    DEFAULT_VIEWPORTS,
    EndpointTestResult,
    NetworkError,
    PageData,
    PageDiagnosticReport,
    PageInteractionResult,
    ResponsivePageResult,
)
from webaudit.app.schemas.stages import StageError, StageName, StageOutcome
from webaudit.app.stages.base import StageContext, stage_output
from webaudit.app.storage.artifacts import (
    STAGES_DIR,
    read_json,
    read_stage_artifact,
    write_stage_artifact,
)
from webaudit.app.utils.urls import canonicalize_url, route_pattern, same_origin

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PER_PATTERN = 5
RESPONSIVE_MAX_PAGES = 10
PARAM_SEGMENT_RE = re.compile(r"^(?:\[.+\]|:.+|\{.+\})$")


async def _each_page(
    urls: List[str],
    call: Callable[[str], Awaitable[T]],
    errors: List[Dict[str, str]],
) -> AsyncIterator[T]:
    for url in urls:
        try:
            yield await call(url)
        except Exception as exc:
            logger.warning("Page %s failed: %s", url, exc)
            errors.append({"url": url, "error": str(exc) or type(exc).__name__})


def _all_failed(stage: StageName, attempted: int, errors: List[Dict[str, str]]) -> Optional[StageError]:
    if attempted and len(errors) >= attempted:
        return StageError(stage=stage, message=errors[0]["error"])
    return None


def _explored_urls(ctx: StageContext, limit: int) -> List[str]:
    explore = read_stage_artifact(ctx.audit_path, StageName.EXPLORE) or {}
    urls = [
        page["url"]
        for page in explore.get("pages", [])
        if (page.get("status_code") or 200) < 400
    ]
    return urls[:limit]


def _pages_with_forms(ctx: StageContext, max_forms: int) -> List[str]:
    """
    Explored pages that carry forms, in crawl order, until max_forms forms
    are covered. A page is tested whole, so the last one may overshoot.
    """
    explore = read_stage_artifact(ctx.audit_path, StageName.EXPLORE) or {}
    urls: List[str] = []
    covered = 0
    for page in explore.get("pages", []):
        if covered >= max_forms:
            break
        forms = page.get("form_count") or 0
        if forms and (page.get("status_code") or 200) < 400:
            urls.append(page["url"])
            covered += forms
    return urls


def architecture_details(ctx: StageContext) -> Dict[str, Any]:
    """details payload of the architecture analyzer output, if code-scan ran."""
    data = read_json(ctx.audit_path / STAGES_DIR / "architecture.json")
    details = data.get("details") if isinstance(data, dict) else None
    return details if isinstance(details, dict) else {}


# ----------------------------------------------------------------------
# Explore
# ----------------------------------------------------------------------

async def run_explore(ctx: StageContext) -> StageOutcome:
    browser = ctx.require_browser()
    base = canonicalize_url(ctx.config.base_url)
    if base is None:
        return StageError(
            stage=StageName.EXPLORE,
            message=f"Cannot explore without a valid base URL (got '{ctx.config.base_url}')",
        )

    queue = deque([base])
    seen = {base}
    per_pattern = Counter({route_pattern(base): 1})
    pages: List[PageData] = []
    reports: List[PageDiagnosticReport] = []
    errors: List[Dict[str, str]] = []
    attempted = 0

    while queue and len(pages) < ctx.config.max_pages:
        url = queue.popleft()
        attempted += 1
        ctx.progress.update_metrics(pages_visited=len(pages), pages_total=len(seen))
        try:
            page = await browser.visit_page(url)
            report = await browser.diagnose_page(url)
        except Exception as exc:
            if not pages and not queue:
                raise
            logger.warning("Page %s failed: %s", url, exc)
            errors.append({"url": url, "error": str(exc) or type(exc).__name__})
            continue

        pages.append(page)
        reports.append(report)

        for link in page.links:
            candidate = canonicalize_url(link, page.url)
            if candidate is None or candidate in seen or not same_origin(candidate, base):
                continue
            pattern = route_pattern(candidate)
            if per_pattern[pattern] >= MAX_PER_PATTERN:
                continue
            per_pattern[pattern] += 1
            seen.add(candidate)
            queue.append(candidate)

    failure = _all_failed(StageName.EXPLORE, attempted, errors)
    if failure is not None:
        return failure

    findings = ctx.generator.from_pages(pages) + ctx.generator.from_diagnostics(reports)
    count = ctx.record_findings(findings)

    ctx.progress.update_metrics(pages_visited=len(pages), pages_total=len(seen))

    output = write_stage_artifact(
        ctx.audit_path,
        StageName.EXPLORE,
        {
            "base_url": base,
            "pages": [
                {
                    "url": p.url,
                    "title": p.title,
                    "status_code": p.status_code,
                    "load_time_ms": p.load_time_ms,
                    "link_count": len(p.links),
                    "form_count": len(p.forms),
                    "console_errors": sum(1 for m in p.console_messages if m.type == "error"),
                }
                for p in pages
            ],
            "network_errors": [e.model_dump() for p in pages for e in p.network_errors],
            "unvisited": list(queue),
            "errors": errors,
            "finding_ids": [f.id for f in findings],
        },
    )
    return stage_output(
        StageName.EXPLORE,
        findings_count=count,
        output_file=output,
        pages_visited=len(pages),
    )


# ----------------------------------------------------------------------
# Test (interactions + API smoke)
# ----------------------------------------------------------------------

def _probeable(path: str) -> bool:
    return not any(PARAM_SEGMENT_RE.match(s) for s in path.split("/") if s)


async def run_test(ctx: StageContext) -> StageOutcome:
    browser = ctx.require_browser()
    urls = _pages_with_forms(ctx, ctx.config.max_forms)
    errors: List[Dict[str, str]] = []

    interactions: List[PageInteractionResult] = [
        r async for r in _each_page(urls, browser.test_interactions, errors)
    ]
    failure = _all_failed(StageName.TEST, len(urls), errors)
    if failure is not None:
        return failure

    explore = read_stage_artifact(ctx.audit_path, StageName.EXPLORE) or {}
    network = []
    for raw in explore.get("network_errors", []):
        try:
            network.append(NetworkError.model_validate(raw))
        except ValueError:
            continue
    endpoints = [
        e
        for e in safe_endpoints(discover_endpoints(architecture_details(ctx), network))
        if _probeable(e.path)
    ]

    base = ctx.config.base_url.rstrip("/")
    smoke_results: List[EndpointTestResult] = []
    for endpoint in endpoints:
        url = base + endpoint.path
        try:
            probe = await browser.probe_endpoint(url, endpoint.method)
        except Exception as exc:
            smoke_results.append(result_from_error(endpoint, exc))
            continue
        smoke_results.append(result_from_probe(endpoint, probe, url))
    smoke = build_smoke_report(base, endpoints, smoke_results)

    findings = ctx.generator.from_interactions(interactions) + ctx.generator.from_api_smoke(smoke)
    count = ctx.record_findings(findings)

    output = write_stage_artifact(
        ctx.audit_path,
        StageName.TEST,
        {
            "pages_tested": [r.url for r in interactions],
            "forms_budget": ctx.config.max_forms,
            "elements_tested": sum(len(r.elements_tested) for r in interactions),
            "elements_with_errors": sum(
                1 for r in interactions for t in r.elements_tested if t.has_error
            ),
            "api_smoke": smoke.model_dump(mode="json"),
            "errors": errors,
            "finding_ids": [f.id for f in findings],
        },
    )
    return stage_output(
        StageName.TEST,
        findings_count=count,
        output_file=output,
        pages_tested=len(interactions),
        endpoints_probed=len(smoke_results),
    )


# ----------------------------------------------------------------------
# Responsive
# ----------------------------------------------------------------------

async def run_responsive(ctx: StageContext) -> StageOutcome:
    browser = ctx.require_browser()
    urls = _explored_urls(ctx, RESPONSIVE_MAX_PAGES)
    errors: List[Dict[str, str]] = []

    async def check(url: str) -> ResponsivePageResult:
        return await browser.test_viewports(url, DEFAULT_VIEWPORTS)

    results = [r async for r in _each_page(urls, check, errors)]
    failure = _all_failed(StageName.RESPONSIVE, len(urls), errors)
    if failure is not None:
        return failure

    findings = ctx.generator.from_responsive(results)
    count = ctx.record_findings(findings)

    output = write_stage_artifact(
        ctx.audit_path,
        StageName.RESPONSIVE,
        {
            "viewports": [v.model_dump() for v in DEFAULT_VIEWPORTS],
            "pages_tested": [r.url for r in results],
            "issues": sum(len(r.findings) for r in results),
            "errors": errors,
            "finding_ids": [f.id for f in findings],
        },
    )
    return stage_output(
        StageName.RESPONSIVE,
        findings_count=count,
        output_file=output,
        pages_tested=len(results),
    )
