"""
Best-effort endpoint discovery and API smoke classification.

Code-analysis payloads have flexible, unknown shapes. Every extraction
helper here returns Optional values per candidate and NEVER raises on
malformed input: an unrecognized candidate is simply dropped.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional
from urllib.parse import urlparse

from webaudit.app.schemas.findings import Severity
from webaudit.app.schemas.phase_data import (
    ApiSmokeIssue,
    ApiSmokeReport,
    Endpoint,
    EndpointCategory,
    EndpointSource,
    EndpointTestResult,
    NetworkError,
    ProbeResponse,
)

API_PATH_RE = re.compile(r"/api/|/graphql|/v\d+/")
NEXTJS_API_FILE_RE = re.compile(r"(?:pages|app)/api/")

ROUTE_KEYS = ("routes", "apiRoutes", "endpoints", "api")
FILE_LIST_KEYS = ("fileList", "files", "sourceFiles")
SAFE_METHODS = frozenset({"GET", "HEAD"})
MAX_WALK_DEPTH = 10
PREVIEW_MAX_CHARS = 512

_SOURCE_PRIORITY = {
    EndpointSource.CODE_ANALYSIS: 0,
    EndpointSource.ROUTE_FILE: 1,
    EndpointSource.OPENAPI: 2,
    EndpointSource.NETWORK_CAPTURE: 3,
}


# ----------------------------------------------------------------------
# Candidate coercion
# ----------------------------------------------------------------------

def coerce_endpoint(
    candidate: Any,
    source: EndpointSource = EndpointSource.CODE_ANALYSIS,
) -> Optional[Endpoint]:
    """
    Coerce one unknown candidate into an Endpoint.

    Accepts a path string ('/api/users') or a mapping with one of
    'path', 'url', 'route' plus optional 'method', 'expectedStatus' /
    'expected_status' and 'requiresAuth' / 'requires_auth'.
    """
    if isinstance(candidate, str):
        if candidate.startswith("/"):
            return Endpoint(path=candidate, source=source)
        return None

    if not isinstance(candidate, Mapping):
        return None

    path = None
    for key in ("path", "url", "route"):
        value = candidate.get(key)
        if isinstance(value, str):
            path = value
            break
    if not path or not path.startswith("/"):
        return None

    method = candidate.get("method")
    expected = candidate.get("expectedStatus", candidate.get("expected_status"))
    requires_auth = candidate.get("requiresAuth", candidate.get("requires_auth"))

    return Endpoint(
        path=path,
        method=method.upper() if isinstance(method, str) and method else "GET",
        source=source,
        expected_status=(
            expected
            if isinstance(expected, int) and not isinstance(expected, bool)
            else None
        ),
        requires_auth=requires_auth if isinstance(requires_auth, bool) else None,
    )


def nextjs_file_to_api_path(file_path: str) -> Optional[str]:
    """'pages/api/users/[id].ts' -> '/api/users/[id]'."""
    normalized = file_path.replace("\\", "/")

    match = re.search(r"pages/(api/.+)\.\w+$", normalized)
    if match:
        route = re.sub(r"/index$", "", "/" + match.group(1))
        return route or "/api"

    match = re.search(r"app/(api/.+?)/route\.\w+$", normalized)
    if match:
        return "/" + match.group(1)

    match = re.search(r"(/api/\S+)\.\w+$", normalized)
    if match:
        return re.sub(r"/index$", "", match.group(1)) or "/api"

    return None


def _walk_strings(obj: Any, visit: Callable[[str], None], depth: int = 0) -> None:
    if depth > MAX_WALK_DEPTH:
        return
    if isinstance(obj, str):
        visit(obj)
    elif isinstance(obj, Mapping):
        for value in obj.values():
            _walk_strings(value, visit, depth + 1)
    elif isinstance(obj, (list, tuple)):
        for item in obj:
            _walk_strings(item, visit, depth + 1)


# ----------------------------------------------------------------------
# Discovery
# ----------------------------------------------------------------------

def extract_from_code_analysis(payload: Any) -> List[Endpoint]:
    if not isinstance(payload, Mapping):
        return []

    endpoints: List[Endpoint] = []
    seen_paths: set[str] = set()

    def add(endpoint: Optional[Endpoint]) -> None:
        if endpoint is not None:
            endpoints.append(endpoint)
            seen_paths.add(endpoint.path)

    # 1. Explicit route collections
    for key in ROUTE_KEYS:
        value = payload.get(key)
        if isinstance(value, (list, tuple)):
            for item in value:
                add(coerce_endpoint(item))
        elif isinstance(value, Mapping):
            for sub_key, sub_value in value.items():
                if isinstance(sub_value, str) and sub_value.startswith("/"):
                    add(Endpoint(path=sub_value, method=str(sub_key).upper()))
                elif isinstance(sub_key, str) and sub_key.startswith("/"):
                    add(Endpoint(path=sub_key))

    # 2. Any API-looking path string anywhere in the payload
    def visit(text: str) -> None:
        if text.startswith("/") and API_PATH_RE.search(text) and text not in seen_paths:
            add(Endpoint(path=text))

    _walk_strings(payload, visit)

    # 3. File-based API routes
    for key in FILE_LIST_KEYS:
        value = payload.get(key)
        if not isinstance(value, (list, tuple)):
            continue
        for file_path in value:
            if not isinstance(file_path, str) or not NEXTJS_API_FILE_RE.search(file_path):
                continue
            api_path = nextjs_file_to_api_path(file_path)
            if api_path and api_path not in seen_paths:
                add(Endpoint(path=api_path, source=EndpointSource.ROUTE_FILE))

    return endpoints


def extract_from_network(requests: Iterable[NetworkError]) -> List[Endpoint]:
    endpoints: List[Endpoint] = []
    seen: set[str] = set()
    for request in requests:
        try:
            path = urlparse(request.url).path
        except ValueError:
            continue
        if not API_PATH_RE.search(path):
            continue
        method = request.method.upper()
        key = f"{method}:{path}"
        if key in seen:
            continue
        seen.add(key)
        endpoints.append(
            Endpoint(path=path, method=method, source=EndpointSource.NETWORK_CAPTURE)
        )
    return endpoints


def deduplicate_endpoints(endpoints: Iterable[Endpoint]) -> List[Endpoint]:
    """Keep one endpoint per method+path, preferring higher-confidence sources."""
    chosen: Dict[str, Endpoint] = {}
    for endpoint in endpoints:
        key = f"{endpoint.method.upper()}:{endpoint.path}"
        existing = chosen.get(key)
        if existing is None or _SOURCE_PRIORITY[endpoint.source] < _SOURCE_PRIORITY[existing.source]:
            chosen[key] = endpoint
    return list(chosen.values())


def discover_endpoints(
    code_analysis: Any = None,
    network: Optional[Iterable[NetworkError]] = None,
) -> List[Endpoint]:
    found = extract_from_code_analysis(code_analysis) if code_analysis else []
    if network:
        found.extend(extract_from_network(network))
    return deduplicate_endpoints(found)


def safe_endpoints(endpoints: Iterable[Endpoint]) -> List[Endpoint]:
    return [e for e in endpoints if e.method.upper() in SAFE_METHODS]


# ----------------------------------------------------------------------
# Classification
# ----------------------------------------------------------------------

def categorize_status(status: int) -> EndpointCategory:
    if 200 <= status < 300:
        return EndpointCategory.SUCCESS
    if status in (401, 403):
        return EndpointCategory.AUTH_FAILURE
    if status == 404:
        return EndpointCategory.NOT_FOUND
    if status >= 500:
        return EndpointCategory.SERVER_ERROR
    if status == 0:
        return EndpointCategory.TIMEOUT
    return EndpointCategory.OTHER_ERROR


def result_from_probe(endpoint: Endpoint, probe: ProbeResponse, url: str) -> EndpointTestResult:
    category = categorize_status(probe.status)
    return EndpointTestResult(
        endpoint=endpoint,
        status=probe.status,
        duration_ms=probe.duration_ms,
        response_preview=probe.body_preview[:PREVIEW_MAX_CHARS],
        category=category,
        failure_reason=(
            None
            if category == EndpointCategory.SUCCESS
            else f"{category.value} (HTTP {probe.status}) at {url}"
        ),
    )


def result_from_error(endpoint: Endpoint, error: BaseException) -> EndpointTestResult:
    message = str(error) or type(error).__name__
    is_timeout = "timeout" in message.lower() or isinstance(error, TimeoutError)
    return EndpointTestResult(
        endpoint=endpoint,
        status=0,
        category=EndpointCategory.TIMEOUT if is_timeout else EndpointCategory.OTHER_ERROR,
        failure_reason=message,
    )


def smoke_issues(base_url: str, results: Iterable[EndpointTestResult]) -> List[ApiSmokeIssue]:
    base = base_url.rstrip("/")
    issues: List[ApiSmokeIssue] = []
    for r in results:
        url = base + r.endpoint.path
        label = f"{r.endpoint.method} {r.endpoint.path}"

        if r.category == EndpointCategory.SERVER_ERROR:
            issues.append(
                ApiSmokeIssue(
                    title=f"Server error on {label}",
                    severity=Severity.P0,
                    url=url,
                    description=(
                        f"API endpoint returned HTTP {r.status}. This indicates an "
                        "unhandled server-side error that will affect users."
                    ),
                    status=r.status,
                    response_preview=r.response_preview,
                )
            )
        elif (
            r.category == EndpointCategory.NOT_FOUND
            and r.endpoint.source == EndpointSource.CODE_ANALYSIS
        ):
            issues.append(
                ApiSmokeIssue(
                    title=f"Defined route returns 404: {label}",
                    severity=Severity.P1,
                    url=url,
                    description=(
                        "Endpoint discovered in code analysis returned HTTP 404. "
                        "The route may be misconfigured or the handler may be missing."
                    ),
                    status=r.status,
                    response_preview=r.response_preview,
                )
            )
        elif (
            r.category == EndpointCategory.AUTH_FAILURE
            and r.endpoint.requires_auth is False
        ):
            issues.append(
                ApiSmokeIssue(
                    title=f"Unexpected auth requirement: {label}",
                    severity=Severity.P2,
                    url=url,
                    description=(
                        f"Endpoint marked as not requiring auth returned HTTP {r.status}. "
                        "Either the endpoint metadata is wrong or auth middleware is too broad."
                    ),
                    status=r.status,
                    response_preview=r.response_preview,
                )
            )
    return issues


def build_smoke_report(
    base_url: str,
    endpoints: List[Endpoint],
    results: List[EndpointTestResult],
) -> ApiSmokeReport:
    stats = {category.value: 0 for category in EndpointCategory}
    for r in results:
        stats[r.category.value] += 1
    stats["total"] = len(results)

    return ApiSmokeReport(
        base_url=base_url,
        endpoints=endpoints,
        results=results,
        findings=smoke_issues(base_url, results),
        stats=stats,
    )
