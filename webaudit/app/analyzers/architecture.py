"""
Architecture analyzer.

Detects the web framework, extracts declared HTTP routes and flags
files with an excessive number of imports ("god files").

The route list it produces is the main input to API endpoint discovery
and PRD route matching.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from webaudit.app.analyzers.base import (
    AnalyzerResult,
    RawFinding,
    iter_source_files,
    line_of,
    read_text,
    relative,
)

FRAMEWORK_MARKERS = (
    ("next", ("next.config.js", "next.config.mjs", "pages/_app.tsx", "app/layout.tsx")),
    ("nuxt", ("nuxt.config.js", "nuxt.config.ts")),
    ("angular", ("angular.json",)),
    ("svelte", ("svelte.config.js",)),
    ("django", ("manage.py",)),
    ("react", ("src/App.tsx", "src/App.jsx")),
    ("vue", ("vue.config.js", "src/App.vue")),
)

# Express/Koa style: app.get('/path', ...), router.post("/path", ...)
JS_ROUTE_RE = re.compile(
    r"""\b(?:app|router|server)\.(get|post|put|patch|delete|head|options)\s*\(\s*['"`](/[^'"`]*)['"`]""",
    re.I,
)
# FastAPI/Flask decorators: @app.get("/path"), @router.post('/path')
PY_DECORATOR_RE = re.compile(
    r"""@\w+\.(get|post|put|patch|delete|head|options)\s*\(\s*['"](/[^'"]*)['"]""",
    re.I,
)
# Flask: @app.route("/path", methods=["GET", "POST"])
FLASK_ROUTE_RE = re.compile(
    r"""@\w+\.route\s*\(\s*['"](/[^'"]*)['"](?:[^)]*methods\s*=\s*\[([^\]]*)\])?""",
    re.I,
)
IMPORT_RE = re.compile(r"^\s*(?:import\s|from\s+\S+\s+import\s|const\s+\w+\s*=\s*require\()", re.M)

GOD_FILE_IMPORTS = 20
PAGE_FILE_RE = re.compile(r"(?:^|/)(?:pages|app)/(?!api/)(.+?)(?:/page)?\.(?:tsx|jsx|vue|svelte)$")


def detect_framework(root: Path) -> Optional[str]:
    for framework, markers in FRAMEWORK_MARKERS:
        if any((root / marker).exists() for marker in markers):
            return framework
    for name in ("app.js", "server.js", "src/app.ts"):
        content = read_text(root / name) if (root / name).is_file() else None
        if content and "express" in content:
            return "express"
    for name in ("main.py", "app.py", "app/main.py"):
        content = read_text(root / name) if (root / name).is_file() else None
        if content and "FastAPI" in content:
            return "fastapi"
        if content and "Flask" in content:
            return "flask"
    return None


def extract_routes(content: str, rel_path: str) -> List[Dict[str, Any]]:
    routes: List[Dict[str, Any]] = []
    for pattern in (JS_ROUTE_RE, PY_DECORATOR_RE):
        for match in pattern.finditer(content):
            routes.append(
                {
                    "method": match.group(1).upper(),
                    "path": match.group(2),
                    "file": rel_path,
                    "line": line_of(content, match.start()),
                }
            )
    for match in FLASK_ROUTE_RE.finditer(content):
        methods = re.findall(r"[A-Za-z]+", match.group(2) or "") or ["GET"]
        for method in methods:
            routes.append(
                {
                    "method": method.upper(),
                    "path": match.group(1),
                    "file": rel_path,
                    "line": line_of(content, match.start()),
                }
            )
    return routes


def page_route_for(rel_path: str) -> Optional[str]:
    """'pages/about.tsx' -> '/about'; 'app/settings/page.tsx' -> '/settings'."""
    match = PAGE_FILE_RE.search(rel_path)
    if not match:
        return None
    route = "/" + match.group(1)
    route = re.sub(r"/index$", "", route)
    if route.startswith("/_") or route in {"/layout", "/page"}:
        return None
    return route or "/"


class ArchitectureAnalyzer:
    name = "architecture"
    output_file = "architecture.json"

    def analyze(self, codebase_path: Path) -> AnalyzerResult:
        findings: List[RawFinding] = []
        routes: List[Dict[str, Any]] = []
        page_routes: List[str] = []
        files: List[str] = []
        max_imports = 0

        for path in iter_source_files(codebase_path):
            rel_path = relative(path, codebase_path)
            files.append(rel_path)
            content = read_text(path)
            if content is None:
                continue

            routes.extend(extract_routes(content, rel_path))
            page_route = page_route_for(rel_path)
            if page_route and page_route not in page_routes:
                page_routes.append(page_route)

            imports = len(IMPORT_RE.findall(content))
            max_imports = max(max_imports, imports)
            if imports > GOD_FILE_IMPORTS:
                findings.append(
                    RawFinding(
                        type="god_file",
                        severity="P3",
                        file=rel_path,
                        message=f"File has {imports} imports (max: {GOD_FILE_IMPORTS})",
                        recommendation="Break the module up along its responsibilities",
                    )
                )

        return AnalyzerResult(
            analyzer=self.name,
            findings=findings,
            metrics={
                "total_files": len(files),
                "route_count": len(routes),
                "page_route_count": len(page_routes),
                "max_imports_in_file": max_imports,
            },
            details={
                "framework": detect_framework(codebase_path),
                "routes": routes,
                "page_routes": page_routes,
                "files": files,
            },
        )
