"""
Preflight stage: validate the environment before any analysis runs.

Checks:
- the audit directory is writable
- the codebase path exists (required for code-only runs)
- a base URL is configured when the mode drives a browser
- a browser backend is available (warning only)
- a PRD is configured or can be discovered in the codebase
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from webaudit.app.config import RunMode
from webaudit.app.coordinator.pipeline import needs_browser
from webaudit.app.schemas.stages import StageError, StageName, StageOutcome
from webaudit.app.stages.base import StageContext, stage_output
from webaudit.app.storage.artifacts import write_stage_artifact

logger = logging.getLogger(__name__)

PRD_NAME_RE = re.compile(r"(?:^|[-_ ])(?:prd|product[-_ ]requirements?)(?:[-_ .]|$)", re.I)
PRD_SEARCH_DIRS = (".", "docs", "doc", "specs")


def discover_prd_candidates(codebase_path: Path) -> List[str]:
    """Markdown files that look like a product requirements document."""
    candidates: List[str] = []
    for directory in PRD_SEARCH_DIRS:
        root = codebase_path / directory
        if not root.is_dir():
            continue
        for path in sorted(root.glob("*.md")):
            if PRD_NAME_RE.search(path.stem):
                candidates.append(str(path))
    return candidates


def _check(name: str, passed: bool, detail: str, *, fatal: bool = False) -> Dict[str, Any]:
    return {"name": name, "passed": passed, "fatal": fatal and not passed, "detail": detail}


def _write_access(audit_path: Path) -> bool:
    probe = audit_path / ".write-probe"
    try:
        probe.write_text("ok", encoding="utf-8")
        probe.unlink()
    except OSError:
        return False
    return True


async def run_preflight(ctx: StageContext) -> StageOutcome:
    config = ctx.config
    checks: List[Dict[str, Any]] = []
    warnings: List[str] = []

    checks.append(
        _check(
            "write_access",
            _write_access(ctx.audit_path),
            f"Audit directory {ctx.audit_path}",
            fatal=True,
        )
    )

    codebase_ok = config.codebase_path.is_dir()
    checks.append(
        _check(
            "codebase",
            codebase_ok,
            f"Codebase path {config.codebase_path}",
            fatal=config.mode == RunMode.CODE_ONLY,
        )
    )

    if needs_browser(config.mode):
        checks.append(
            _check(
                "base_url",
                bool(config.base_url),
                config.base_url or f"A base URL is required for mode '{config.mode.value}'",
                fatal=True,
            )
        )
        browser_ok = ctx.browser is not None
        checks.append(
            _check(
                "browser_backend",
                browser_ok,
                "Browser backend available" if browser_ok else "No browser backend configured",
            )
        )
        if not browser_ok:
            warnings.append("Browser-driven stages will fail without a browser backend")

    prd_path: Optional[str] = None
    candidates: List[str] = []
    if config.prd_path is not None:
        prd_ok = config.prd_path.is_file()
        prd_path = str(config.prd_path) if prd_ok else None
        checks.append(_check("prd", prd_ok, f"PRD {config.prd_path}"))
        if not prd_ok:
            warnings.append(f"Configured PRD not found: {config.prd_path}")
    elif codebase_ok:
        candidates = discover_prd_candidates(config.codebase_path)
        prd_path = candidates[0] if candidates else None
        checks.append(
            _check(
                "prd",
                prd_path is not None,
                f"Discovered {prd_path}" if prd_path else "No PRD found; compare stage will be skipped",
            )
        )

    for warning in warnings:
        logger.warning("Preflight: %s", warning)

    output = write_stage_artifact(
        ctx.audit_path,
        StageName.PREFLIGHT,
        {
            "mode": config.mode.value,
            "base_url": config.base_url,
            "codebase_path": str(config.codebase_path),
            "prd_path": prd_path,
            "prd_candidates": candidates,
            "checks": checks,
            "warnings": warnings,
        },
    )

    fatal = [c for c in checks if c["fatal"]]
    if fatal:
        return StageError(
            stage=StageName.PREFLIGHT,
            message="Preflight failed: " + "; ".join(c["detail"] for c in fatal),
        )

    return stage_output(
        StageName.PREFLIGHT,
        output_file=output,
        checks_passed=sum(1 for c in checks if c["passed"]),
        checks_total=len(checks),
    )
