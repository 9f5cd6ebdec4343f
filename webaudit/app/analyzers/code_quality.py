"""
Lightweight code quality analyzer.

Flags marker comments (TODO/FIXME/HACK), leftover console logging,
oversized files and runs of commented-out code.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import List

from webaudit.app.analyzers.base import (
    AnalyzerResult,
    RawFinding,
    iter_source_files,
    read_text,
    relative,
)

MARKER_RE = re.compile(r"(?:#|//|/\*)\s*(TODO|FIXME|HACK)\b[:\s]*(.*)", re.I)
CONSOLE_RE = re.compile(r"\bconsole\.(log|debug|trace)\s*\(")
COMMENTED_CODE_RE = re.compile(
    r"^\s*(?://|#)\s*(?:const|let|var|return|if\s*\(|for\s*\(|import|def |class |[\w.]+\(.*\);?\s*$)"
)

MAX_FILE_LINES = 500
MIN_COMMENTED_RUN = 5


class CodeQualityAnalyzer:
    name = "code-quality"
    output_file = "code-quality.json"

    def __init__(self, max_file_lines: int = MAX_FILE_LINES) -> None:
        self._max_file_lines = max_file_lines

    def analyze(self, codebase_path: Path) -> AnalyzerResult:
        findings: List[RawFinding] = []
        files_analyzed = 0
        total_lines = 0

        for path in iter_source_files(codebase_path):
            content = read_text(path)
            if content is None:
                continue
            files_analyzed += 1
            rel_path = relative(path, codebase_path)
            lines = content.splitlines()
            total_lines += len(lines)

            if len(lines) > self._max_file_lines:
                findings.append(
                    RawFinding(
                        type="large_file",
                        severity="P3",
                        file=rel_path,
                        message=f"File has {len(lines)} lines (max: {self._max_file_lines})",
                        recommendation="Split the file into smaller cohesive modules",
                    )
                )

            commented_run = 0
            for number, line in enumerate(lines, start=1):
                marker = MARKER_RE.search(line)
                if marker:
                    kind = marker.group(1).upper()
                    findings.append(
                        RawFinding(
                            type=kind.lower(),
                            severity="P2" if kind in {"FIXME", "HACK"} else "P3",
                            file=rel_path,
                            line=number,
                            message=marker.group(2).strip() or f"{kind} comment found",
                        )
                    )

                if path.suffix != ".py" and CONSOLE_RE.search(line):
                    findings.append(
                        RawFinding(
                            type="console_log",
                            severity="P3",
                            file=rel_path,
                            line=number,
                            message="Console logging left in production code",
                            evidence=line.strip()[:80],
                            recommendation="Remove the call or route it through a logger",
                        )
                    )

                if COMMENTED_CODE_RE.match(line):
                    commented_run += 1
                    continue
                if commented_run >= MIN_COMMENTED_RUN:
                    findings.append(self._commented_block(rel_path, number - commented_run, commented_run))
                commented_run = 0

            if commented_run >= MIN_COMMENTED_RUN:
                findings.append(
                    self._commented_block(rel_path, len(lines) - commented_run + 1, commented_run)
                )

        return AnalyzerResult(
            analyzer=self.name,
            findings=findings,
            metrics={
                "files_analyzed": files_analyzed,
                "total_lines": total_lines,
                "marker_comments": sum(1 for f in findings if f.type in {"todo", "fixme", "hack"}),
            },
        )

    @staticmethod
    def _commented_block(rel_path: str, start_line: int, length: int) -> RawFinding:
        return RawFinding(
            type="commented_code",
            severity="P3",
            file=rel_path,
            line=start_line,
            message=f"{length} consecutive lines of commented-out code",
            recommendation="Delete dead code; version control keeps the history",
        )
