from pathlib import Path

import pytest

from webaudit.app.config import RunConfig, RunMode
from webaudit.app.coordinator.scheduler import AuditScheduler
from webaudit.app.findings.factory import create_finding
from webaudit.app.findings.generator import FindingGenerator
from webaudit.app.schemas.findings import FindingType, Severity
from webaudit.app.schemas.phase_data import ProbeResponse
from webaudit.app.schemas.stages import StageError, StageName, StageOutput, StageStatus
from webaudit.app.stages.aggregate import run_aggregate
from webaudit.app.stages.base import StageContext, run_executor
from webaudit.app.stages.browser import run_explore, run_test
from webaudit.app.stages.compare import run_compare
from webaudit.app.stages.preflight import discover_prd_candidates, run_preflight
from webaudit.app.stages.report import REPORT_JSON, REPORT_MD, run_report
from webaudit.app.storage.artifacts import ensure_audit_dirs, read_json, read_stage_artifact, write_stage_artifact
from webaudit.app.storage.findings import FindingStore
from webaudit.app.storage.progress import ProgressStore
from webaudit.tests.fixtures.fake_browser import FakeBrowser, page

pytestmark = pytest.mark.anyio

BASE = "http://localhost:3000"


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _ctx(tmp_path: Path, browser=None, **overrides) -> StageContext:
    codebase = tmp_path / "app"
    codebase.mkdir(exist_ok=True)
    values = {
        "audit_id": "audit-stage",
        "base_url": BASE,
        "codebase_path": codebase,
        "output_root": tmp_path / "audits",
    }
    values.update(overrides)
    config = RunConfig(**values)

    audit_path = config.audit_path
    ensure_audit_dirs(audit_path)
    progress = ProgressStore(audit_path)
    progress.initialize(config.audit_id, list(StageName))
    return StageContext(
        config=config,
        audit_path=audit_path,
        generator=FindingGenerator(),
        findings=FindingStore(audit_path),
        progress=progress,
        browser=browser,
    )


def _seed_finding(ctx: StageContext, **overrides):
    fields = {
        "type": "functionality",
        "severity": "P2",
        "title": "Footer link is broken",
        "description": "The footer 'Terms' link points at a page that no longer exists.",
        "location": {"url": f"{BASE}/"},
        "steps_to_reproduce": ["Open the homepage", "Scroll to footer", "Click Terms"],
        "evidence": {"console_errors": ["GET /terms 404"]},
        "confidence": 80,
        "source_phase": "exploration",
    }
    fields.update(overrides)
    finding = create_finding(fields, counter=ctx.generator.counter)
    ctx.record_findings([finding])
    return finding


# ----------------------------------------------------------------------
# Preflight
# ----------------------------------------------------------------------

async def test_preflight_discovers_prd_in_docs(tmp_path):
    ctx = _ctx(tmp_path, mode=RunMode.CODE_ONLY)
    docs = ctx.config.codebase_path / "docs"
    docs.mkdir()
    (docs / "product-requirements.md").write_text("# PRD\n", encoding="utf-8")
    (docs / "changelog.md").write_text("# Changes\n", encoding="utf-8")

    outcome = await run_preflight(ctx)

    assert isinstance(outcome, StageOutput)
    artifact = read_stage_artifact(ctx.audit_path, StageName.PREFLIGHT)
    assert artifact["prd_path"] == str(docs / "product-requirements.md")
    assert discover_prd_candidates(ctx.config.codebase_path) == [artifact["prd_path"]]


async def test_preflight_fails_browser_modes_without_base_url(tmp_path):
    ctx = _ctx(tmp_path, base_url="", mode=RunMode.QUICK)

    outcome = await run_preflight(ctx)

    assert isinstance(outcome, StageError)
    assert outcome.message == "Preflight failed: A base URL is required for mode 'quick'"


async def test_missing_browser_is_only_a_warning(tmp_path):
    ctx = _ctx(tmp_path, mode=RunMode.QUICK)

    outcome = await run_preflight(ctx)

    assert isinstance(outcome, StageOutput)
    artifact = read_stage_artifact(ctx.audit_path, StageName.PREFLIGHT)
    assert "Browser-driven stages will fail without a browser backend" in artifact["warnings"]


# ----------------------------------------------------------------------
# Explore
# ----------------------------------------------------------------------

def _site():
    items = [f"/items/{i}" for i in range(1, 8)]
    home = page(
        f"{BASE}/",
        links=items + ["/about", "/about#team", "/about?utm_source=mail", "https://elsewhere.example/x"],
    )
    pages = {home.url: home, f"{BASE}/about": page(f"{BASE}/about")}
    for path in items:
        pages[BASE + path] = page(BASE + path)
    return pages


async def test_explore_crawls_breadth_first_within_origin_and_pattern_cap(tmp_path):
    browser = FakeBrowser(_site())
    ctx = _ctx(tmp_path, browser=browser)

    outcome = await run_explore(ctx)

    assert isinstance(outcome, StageOutput)
    assert browser.visited == [f"{BASE}/"] + [f"{BASE}/items/{i}" for i in range(1, 6)] + [f"{BASE}/about"]
    assert outcome.details["pages_visited"] == 7

    artifact = read_stage_artifact(ctx.audit_path, StageName.EXPLORE)
    assert artifact["unvisited"] == []
    assert artifact["errors"] == []
    assert ctx.progress.load().metrics.pages_visited == 7


async def test_explore_respects_page_budget(tmp_path):
    browser = FakeBrowser(_site())
    ctx = _ctx(tmp_path, browser=browser, max_pages=2)

    await run_explore(ctx)

    artifact = read_stage_artifact(ctx.audit_path, StageName.EXPLORE)
    assert len(artifact["pages"]) == 2
    assert len(artifact["unvisited"]) == 5


async def test_unreachable_site_fails_explore_with_backend_message(tmp_path):
    ctx = _ctx(tmp_path, browser=FakeBrowser())

    outcome = await run_executor(StageName.EXPLORE, run_explore, ctx, timeout=5)

    assert isinstance(outcome, StageError)
    assert outcome.message == f"net::ERR_NAME_NOT_RESOLVED at {BASE}/"


async def test_single_broken_page_does_not_fail_explore(tmp_path):
    pages = _site()
    del pages[f"{BASE}/about"]
    ctx = _ctx(tmp_path, browser=FakeBrowser(pages))

    outcome = await run_explore(ctx)

    assert isinstance(outcome, StageOutput)
    artifact = read_stage_artifact(ctx.audit_path, StageName.EXPLORE)
    assert [e["url"] for e in artifact["errors"]] == [f"{BASE}/about"]


# ----------------------------------------------------------------------
# Test
# ----------------------------------------------------------------------

async def test_interaction_testing_stops_once_form_budget_is_covered(tmp_path):
    counts = {"/": 2, "/about": 0, "/signup": 3, "/contact": 1}
    pages = {BASE + path: page(BASE + path) for path in counts}
    ctx = _ctx(tmp_path, browser=FakeBrowser(pages), max_forms=4)
    write_stage_artifact(
        ctx.audit_path,
        StageName.EXPLORE,
        {"pages": [{"url": BASE + path, "status_code": 200, "form_count": n} for path, n in counts.items()]},
    )

    outcome = await run_test(ctx)

    assert isinstance(outcome, StageOutput)
    artifact = read_stage_artifact(ctx.audit_path, StageName.TEST)
    assert artifact["pages_tested"] == [f"{BASE}/", f"{BASE}/signup"]
    assert artifact["forms_budget"] == 4


# ----------------------------------------------------------------------
# Compare
# ----------------------------------------------------------------------

async def test_compare_without_prd_records_not_provided(tmp_path):
    ctx = _ctx(tmp_path)

    outcome = await run_compare(ctx)

    assert isinstance(outcome, StageOutput)
    assert outcome.details["compared"] is False
    artifact = read_stage_artifact(ctx.audit_path, StageName.COMPARE)
    assert artifact["stage"] == "compare"
    assert artifact["status"] == "not_provided"
    assert artifact["reason"] == "PRD not provided"


async def test_compare_turns_missing_features_into_prd_gaps(tmp_path):
    prd = tmp_path / "prd.md"
    prd.write_text(
        "# Shop PRD\n\n"
        "## Invoice Export (must have)\n"
        "Customers download invoices as PDF.\n"
        "- Export invoice\n"
        "- Email invoice\n",
        encoding="utf-8",
    )
    ctx = _ctx(tmp_path, prd_path=prd)
    write_stage_artifact(
        ctx.audit_path,
        StageName.EXPLORE,
        {"pages": [{"url": f"{BASE}/orders"}, {"url": f"{BASE}/settings"}]},
    )

    outcome = await run_compare(ctx)

    assert outcome.findings_count == 1
    (finding,) = ctx.findings.load_all()
    assert finding.type == FindingType.PRD_GAP
    assert finding.severity == Severity.P1
    assert read_stage_artifact(ctx.audit_path, StageName.COMPARE)["status"] == "compared"


# ----------------------------------------------------------------------
# Aggregate + report
# ----------------------------------------------------------------------

async def test_report_requires_aggregate_output(tmp_path):
    outcome = await run_report(_ctx(tmp_path))

    assert isinstance(outcome, StageError)
    assert outcome.message == "Aggregate output not found; cannot build report"


async def test_report_scores_unique_findings(tmp_path):
    ctx = _ctx(tmp_path)
    _seed_finding(ctx, severity="P0", title="Checkout crashes on submit")
    _seed_finding(ctx)
    _seed_finding(ctx, confidence=95)

    await run_aggregate(ctx)
    outcome = await run_report(ctx)

    assert isinstance(outcome, StageOutput)
    assert outcome.details == {"score": 72, "grade": "C-", "status": "FAIL"}

    report = read_json(ctx.audit_path / REPORT_JSON)
    assert report["summary"]["total_findings"] == 2
    assert report["summary"]["critical_issues"] == 1
    assert report["summary"]["headline"] == "1 critical issues must be fixed before launch."
    assert [f["id"] for f in report["findings_by_severity"]["P2"]] == ["F-002"]
    assert (ctx.audit_path / REPORT_MD).is_file()


# ----------------------------------------------------------------------
# Full pipeline
# ----------------------------------------------------------------------

async def test_full_run_probes_discovered_api_routes(tmp_path):
    codebase = tmp_path / "app"
    (codebase / "pages" / "api").mkdir(parents=True)
    (codebase / "pages" / "api" / "users.ts").write_text(
        "export default function handler(req, res) { res.json([]) }\n",
        encoding="utf-8",
    )
    home = page(f"{BASE}/", links=["/about"])
    browser = FakeBrowser(
        {home.url: home, f"{BASE}/about": page(f"{BASE}/about")},
        probes={f"{BASE}/api/users": ProbeResponse(status=500, body_preview="Internal Server Error")},
    )
    config = RunConfig(
        audit_id="audit-full",
        base_url=BASE,
        codebase_path=codebase,
        output_root=tmp_path / "audits",
    )

    results = await AuditScheduler(browser=browser).run(config)

    assert [r.status for r in results] == [StageStatus.COMPLETED] * len(StageName)
    assert browser.probed == [f"{BASE}/api/users"]
    assert browser.closed is False

    titles = [f.title for f in FindingStore(config.audit_path).load_all()]
    assert "Server error on GET /api/users" in titles
    assert read_json(config.audit_path / REPORT_JSON)["summary"]["status"] == "FAIL"


@pytest.mark.parametrize("parallel_stages", [True, False])
async def test_route_coverage_does_not_depend_on_stage_concurrency(tmp_path, parallel_stages):
    codebase = tmp_path / "app"
    (codebase / "pages").mkdir(parents=True)
    for name in ("index", "about", "pricing"):
        (codebase / "pages" / f"{name}.tsx").write_text(
            f"export default function {name.title()}() {{ return null }}\n",
            encoding="utf-8",
        )
    home = page(f"{BASE}/", links=["/about"])
    browser = FakeBrowser({home.url: home, f"{BASE}/about": page(f"{BASE}/about")})
    config = RunConfig(
        audit_id="audit-coverage",
        base_url=BASE,
        codebase_path=codebase,
        output_root=tmp_path / "audits",
        parallel_stages=parallel_stages,
    )

    await AuditScheduler(browser=browser).run(config)

    expected = {"routes_total": 3, "routes_covered": 2}
    explore = read_stage_artifact(config.audit_path, StageName.EXPLORE)
    assert "routes_total" not in explore
    aggregate = read_stage_artifact(config.audit_path, StageName.AGGREGATE)
    assert aggregate["route_coverage"] == expected

    metrics = ProgressStore(config.audit_path).load().metrics
    assert (metrics.routes_total, metrics.routes_covered) == (3, 2)

    report = read_json(config.audit_path / REPORT_JSON)
    assert report["coverage"]["routes"] == {"total": 3, "visited": 2, "percent": 67}
