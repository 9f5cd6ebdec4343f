"""
Pattern-based security scanner.

Detects hardcoded secrets, SQL injection risks, XSS sinks, permissive
CORS configuration and environment files exposed in public directories.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import List

from webaudit.app.analyzers.base import (
    AnalyzerResult,
    RawFinding,
    iter_source_files,
    line_of,
    read_text,
    relative,
)

SECRET_PATTERNS = (
    (re.compile(r"""['"`]?(?:api[_-]?key|apikey)['"`]?\s*[:=]\s*['"`]([A-Za-z0-9_\-]{20,})['"`]""", re.I), "API key"),
    (re.compile(r"""['"`]?(?:secret[_-]?key|secretkey)['"`]?\s*[:=]\s*['"`]([A-Za-z0-9_\-]{20,})['"`]""", re.I), "Secret key"),
    (re.compile(r"""['"`]?(?:access[_-]?token|auth[_-]?token)['"`]?\s*[:=]\s*['"`]([A-Za-z0-9_\-]{20,})['"`]""", re.I), "Access token"),
    (re.compile(r"AKIA[0-9A-Z]{16}"), "AWS Access Key ID"),
    (re.compile(r"ghp_[A-Za-z0-9]{36}"), "GitHub Personal Access Token"),
    (re.compile(r"""['"`]?(?:password|passwd|pwd)['"`]?\s*[:=]\s*['"`]([^'"`\s]{8,})['"`]""", re.I), "Hardcoded password"),
    (re.compile(r"-----BEGIN\s+(?:RSA\s+)?PRIVATE\s+KEY-----"), "Private key"),
    (re.compile(r"(?:mongodb|mysql|postgres|postgresql|redis)://[^:\s]+:[^@\s]+@[^/\s]+", re.I), "Database URL with credentials"),
)

PLACEHOLDER_PATTERNS = (
    re.compile(r"^your[_-]?", re.I),
    re.compile(r"^x{3,}$", re.I),
    re.compile(r"^(placeholder|example|dummy|changeme)", re.I),
    re.compile(r"^test[_-]?", re.I),
    re.compile(r"^\$\{"),
    re.compile(r"<.*>"),
)

SQL_INJECTION_PATTERNS = (
    re.compile(r"""(?:query|execute|exec|sql)\s*\(\s*`[^`]*\$\{""", re.I),
    re.compile(r"""(?:query|execute|exec|sql)\s*\(\s*['"][^'"]*['"]\s*\+\s*(?!['"])""", re.I),
    re.compile(r"""(?:execute|executemany)\s*\(\s*f['"][^'"]*\{""", re.I),
    re.compile(r"""(?:execute|executemany)\s*\(\s*['"][^'"]*%s?[^'"]*['"]\s*%\s*""", re.I),
)

XSS_PATTERNS = (
    re.compile(r"""\.innerHTML\s*=\s*(?!['"`])[^;\n]+"""),
    re.compile(r"""document\.write\s*\([^)]*(?:\$\{|\+)"""),
    re.compile(r"""dangerouslySetInnerHTML\s*=\s*\{\s*\{\s*__html\s*:"""),
    re.compile(r"""v-html\s*=\s*['"][^'"]+['"]"""),
    re.compile(r"""\|\s*safe\b|mark_safe\s*\("""),
)

CORS_PATTERNS = (
    re.compile(r"""['"`]Access-Control-Allow-Origin['"`]\s*[:=,]\s*['"`]\*['"`]""", re.I),
    re.compile(r"""cors\s*\(\s*\{\s*origin\s*:\s*(?:true|['"`]\*['"`])""", re.I),
    re.compile(r"""allow_origins\s*=\s*\[\s*['"]\*['"]\s*\]"""),
)

PUBLIC_DIRS = ("public", "static", "www", "dist", "build")
ENV_FILES = (".env", ".env.local", ".env.production", ".env.development")


def _is_placeholder(value: str) -> bool:
    return any(p.search(value) for p in PLACEHOLDER_PATTERNS)


def _is_fixture_file(rel_path: str) -> bool:
    lower = rel_path.lower()
    return any(marker in lower for marker in (".test.", ".spec.", "test_", "example", "mock", "fixture"))


class SecurityAnalyzer:
    name = "security"
    output_file = "security-scan.json"

    def analyze(self, codebase_path: Path) -> AnalyzerResult:
        findings: List[RawFinding] = []
        files_scanned = 0

        findings.extend(self._exposed_env_files(codebase_path))

        for path in iter_source_files(codebase_path):
            content = read_text(path)
            if content is None:
                continue
            files_scanned += 1
            rel_path = relative(path, codebase_path)

            if not _is_fixture_file(rel_path):
                findings.extend(self._secrets(content, rel_path))
            findings.extend(
                self._match_all(
                    content, rel_path, SQL_INJECTION_PATTERNS,
                    rule="sql_injection",
                    severity="P0",
                    message="Potential SQL injection: query built from untrusted string concatenation",
                    recommendation="Use parameterized queries or an ORM query builder",
                )
            )
            findings.extend(
                self._match_all(
                    content, rel_path, XSS_PATTERNS,
                    rule="xss_vulnerability",
                    severity="P1",
                    message="Potential XSS: dynamic content rendered as raw HTML",
                    recommendation="Escape or sanitize content before rendering it as HTML",
                )
            )
            findings.extend(
                self._match_all(
                    content, rel_path, CORS_PATTERNS,
                    rule="cors_misconfiguration",
                    severity="P1",
                    message="Permissive CORS configuration allows any origin",
                    recommendation="Restrict allowed origins to a known list",
                )
            )

        return AnalyzerResult(
            analyzer=self.name,
            findings=findings,
            metrics={
                "files_scanned": files_scanned,
                "secrets_found": sum(
                    1 for f in findings if f.type in {"hardcoded_secret", "exposed_env"}
                ),
                "potential_injections": sum(
                    1 for f in findings if f.type in {"sql_injection", "xss_vulnerability"}
                ),
            },
        )

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    @staticmethod
    def _exposed_env_files(root: Path) -> List[RawFinding]:
        found = []
        for public_dir in PUBLIC_DIRS:
            for env_file in ENV_FILES:
                if (root / public_dir / env_file).is_file():
                    found.append(
                        RawFinding(
                            type="exposed_env",
                            severity="P0",
                            file=f"{public_dir}/{env_file}",
                            message="Environment file exposed in public directory",
                            recommendation="Move .env files out of public directories and ignore them in VCS",
                        )
                    )
        return found

    @staticmethod
    def _secrets(content: str, rel_path: str) -> List[RawFinding]:
        found = []
        for pattern, label in SECRET_PATTERNS:
            for match in pattern.finditer(content):
                value = match.group(1) if match.groups() else match.group(0)
                if _is_placeholder(value):
                    continue
                snippet = match.group(0)
                found.append(
                    RawFinding(
                        type="hardcoded_secret",
                        severity="P0",
                        file=rel_path,
                        line=line_of(content, match.start()),
                        message=f"Potential {label} found in source code",
                        evidence=snippet[:50] + ("..." if len(snippet) > 50 else ""),
                        recommendation="Move secrets to environment variables or a secrets manager",
                    )
                )
        return found

    @staticmethod
    def _match_all(
        content: str,
        rel_path: str,
        patterns,
        *,
        rule: str,
        severity: str,
        message: str,
        recommendation: str,
    ) -> List[RawFinding]:
        found = []
        seen_lines: set[int] = set()
        for pattern in patterns:
            for match in pattern.finditer(content):
                line = line_of(content, match.start())
                if line in seen_lines:
                    continue
                seen_lines.add(line)
                found.append(
                    RawFinding(
                        type=rule,
                        severity=severity,
                        file=rel_path,
                        line=line,
                        message=message,
                        evidence=match.group(0)[:80],
                        recommendation=recommendation,
                    )
                )
        return found
