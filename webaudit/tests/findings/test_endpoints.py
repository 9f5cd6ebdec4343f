from webaudit.app.findings.endpoints import (
    build_smoke_report,
    categorize_status,
    coerce_endpoint,
    deduplicate_endpoints,
    discover_endpoints,
    nextjs_file_to_api_path,
    result_from_error,
    result_from_probe,
    safe_endpoints,
)
from webaudit.app.schemas.findings import Severity
from webaudit.app.schemas.phase_data import (
    Endpoint,
    EndpointCategory,
    EndpointSource,
    NetworkError,
    ProbeResponse,
)

BASE = "http://localhost:3000"


# ----------------------------------------------------------------------
# Discovery
# ----------------------------------------------------------------------

def test_malformed_candidates_are_dropped_not_raised():
    assert coerce_endpoint(42) is None
    assert coerce_endpoint({"path": 7}) is None
    assert coerce_endpoint("relative/path") is None
    assert coerce_endpoint({"url": "/api/x", "method": "post", "expectedStatus": True}) == Endpoint(
        path="/api/x", method="POST"
    )


def test_discovery_reads_route_lists_nested_strings_and_route_files():
    payload = {
        "routes": [{"method": "get", "path": "/api/users"}, "/api/orders", None],
        "meta": {"nested": [{"deep": "/api/health"}]},
        "files": ["pages/api/users/[id].ts", "app/api/reports/route.ts", "src/util.ts"],
    }

    endpoints = discover_endpoints(payload)
    paths = {e.path: e for e in endpoints}

    assert set(paths) == {
        "/api/users",
        "/api/orders",
        "/api/health",
        "/api/users/[id]",
        "/api/reports",
    }
    assert paths["/api/reports"].source == EndpointSource.ROUTE_FILE


def test_discovery_tolerates_non_mapping_payloads():
    assert discover_endpoints(["not", "a", "mapping"]) == []
    assert discover_endpoints(None) == []


def test_network_captures_lose_to_code_analysis_on_conflict():
    endpoints = discover_endpoints(
        {"routes": ["/api/users"]},
        network=[
            NetworkError(url=f"{BASE}/api/users", status=500),
            NetworkError(url=f"{BASE}/api/cart", status=404),
        ],
    )
    sources = {e.path: e.source for e in endpoints}
    assert sources == {
        "/api/users": EndpointSource.CODE_ANALYSIS,
        "/api/cart": EndpointSource.NETWORK_CAPTURE,
    }


def test_deduplicate_keys_on_method_and_path():
    endpoints = deduplicate_endpoints(
        [
            Endpoint(path="/api/a", source=EndpointSource.OPENAPI),
            Endpoint(path="/api/a", source=EndpointSource.ROUTE_FILE),
            Endpoint(path="/api/a", method="POST"),
        ]
    )
    assert len(endpoints) == 2
    assert endpoints[0].source == EndpointSource.ROUTE_FILE


def test_only_safe_methods_are_probed():
    endpoints = [Endpoint(path="/a"), Endpoint(path="/b", method="DELETE"), Endpoint(path="/c", method="HEAD")]
    assert [e.path for e in safe_endpoints(endpoints)] == ["/a", "/c"]


def test_nextjs_file_paths():
    assert nextjs_file_to_api_path("pages/api/index.ts") == "/api"
    assert nextjs_file_to_api_path("src/pages/api/users.js") == "/api/users"
    assert nextjs_file_to_api_path("app/api/items/route.ts") == "/api/items"
    assert nextjs_file_to_api_path("src/lib/db.ts") is None


# ----------------------------------------------------------------------
# Classification and smoke findings
# ----------------------------------------------------------------------

def test_status_categories():
    assert categorize_status(204) == EndpointCategory.SUCCESS
    assert categorize_status(401) == EndpointCategory.AUTH_FAILURE
    assert categorize_status(404) == EndpointCategory.NOT_FOUND
    assert categorize_status(503) == EndpointCategory.SERVER_ERROR
    assert categorize_status(0) == EndpointCategory.TIMEOUT
    assert categorize_status(418) == EndpointCategory.OTHER_ERROR


def test_smoke_report_findings():
    users = Endpoint(path="/api/users")
    missing = Endpoint(path="/api/missing")
    captured = Endpoint(path="/api/old", source=EndpointSource.NETWORK_CAPTURE)
    public = Endpoint(path="/api/public", requires_auth=False)

    results = [
        result_from_probe(users, ProbeResponse(status=500, body_preview="Traceback"), BASE + users.path),
        result_from_probe(missing, ProbeResponse(status=404), BASE + missing.path),
        result_from_probe(captured, ProbeResponse(status=404), BASE + captured.path),
        result_from_probe(public, ProbeResponse(status=403), BASE + public.path),
        result_from_error(Endpoint(path="/api/slow"), TimeoutError("Request timeout")),
    ]

    report = build_smoke_report(BASE, [r.endpoint for r in results], results)

    assert [(f.title, f.severity) for f in report.findings] == [
        ("Server error on GET /api/users", Severity.P0),
        ("Defined route returns 404: GET /api/missing", Severity.P1),
        ("Unexpected auth requirement: GET /api/public", Severity.P2),
    ]
    assert report.stats["total"] == 5
    assert report.stats["timeout"] == 1
    assert report.stats["not-found"] == 2
