"""
Static analyzer contract.

Analyzers run during the code-scan stage. Each one walks the codebase
and returns an AnalyzerResult holding raw, analyzer-specific findings
plus free-form metrics. Raw findings are normalized into canonical
findings by the finding generation engine, never by the analyzer.

IMPORTANT:
- Analyzers are synchronous and perform file I/O only.
- Unreadable files are skipped, never fatal.
- Analyzers MUST NOT write to the audit directory.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

SOURCE_EXTENSIONS = (
    ".py", ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
    ".vue", ".svelte", ".rb", ".php", ".java", ".go",
)

EXCLUDED_DIRS = frozenset(
    {
        "node_modules", "dist", "build", ".git", "vendor", "coverage",
        "__pycache__", ".venv", "venv", ".tox", ".mypy_cache", ".audits",
    }
)


class RawFinding(BaseModel):
    """Analyzer-native finding before normalization."""

    type: str = Field(..., description="Analyzer-specific rule type (e.g. 'hardcoded_secret')")
    severity: str = Field(..., description="Analyzer severity label (P0..P4 or CRITICAL..INFO)")
    file: Optional[str] = None
    line: Optional[int] = Field(None, gt=0)
    message: str
    evidence: Optional[str] = None
    recommendation: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class AnalyzerResult(BaseModel):
    schema_version: str = "1.0.0"
    analyzer: str
    scanned_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    findings: List[RawFinding] = Field(default_factory=list)
    metrics: Dict[str, Any] = Field(default_factory=dict)

    # Analyzer-specific structured payload (routes, dependency graph, ...)
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra="forbid")


class Analyzer(Protocol):
    name: str
    output_file: str

    def analyze(self, codebase_path: Path) -> AnalyzerResult:
        ...


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------

def iter_source_files(
    root: Path,
    extensions: Sequence[str] = SOURCE_EXTENSIONS,
) -> Iterator[Path]:
    """Yield source files below root in a stable order, skipping vendored dirs."""
    if not root.is_dir():
        return
    for path in sorted(root.rglob("*")):
        if any(part in EXCLUDED_DIRS for part in path.relative_to(root).parts):
            continue
        if path.is_file() and path.suffix in extensions:
            yield path


def read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logger.debug("Skipping unreadable file %s: %s", path, exc)
        return None


def line_of(content: str, offset: int) -> int:
    """1-based line number of a character offset."""
    return content.count("\n", 0, offset) + 1


def relative(path: Path, root: Path) -> str:
    return path.relative_to(root).as_posix()
