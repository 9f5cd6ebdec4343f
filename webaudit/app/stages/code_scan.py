"""
Code-scan stage: run the static analyzers over the codebase.

Each analyzer runs in a worker thread (analysis is blocking file I/O)
and writes its raw result to stages/<analyzer output file>. Raw
findings are normalized into canonical findings by the generator.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Sequence

from webaudit.app.analyzers.architecture import ArchitectureAnalyzer
from webaudit.app.analyzers.base import Analyzer, AnalyzerResult
from webaudit.app.analyzers.code_quality import CodeQualityAnalyzer
from webaudit.app.analyzers.security import SecurityAnalyzer
from webaudit.app.schemas.stages import StageName, StageOutcome
from webaudit.app.stages.base import StageContext, stage_output
from webaudit.app.storage.artifacts import STAGES_DIR, write_json, write_stage_artifact

logger = logging.getLogger(__name__)


def default_analyzers() -> List[Analyzer]:
    return [CodeQualityAnalyzer(), SecurityAnalyzer(), ArchitectureAnalyzer()]


def make_code_scan(analyzers: Sequence[Analyzer]):
    async def run_code_scan(ctx: StageContext) -> StageOutcome:
        codebase = ctx.config.codebase_path
        if not codebase.is_dir():
            logger.warning("Codebase %s not found; code scan has nothing to analyze", codebase)

        results: List[AnalyzerResult] = []
        for analyzer in analyzers:
            result = await asyncio.to_thread(analyzer.analyze, codebase)
            write_json(ctx.audit_path / STAGES_DIR / analyzer.output_file, result)
            results.append(result)
            logger.info(
                "Analyzer %s reported %d raw finding(s)",
                analyzer.name,
                len(result.findings),
            )

        findings = []
        for result in results:
            findings.extend(ctx.generator.from_analyzer(result))
        count = ctx.record_findings(findings)

        output = write_stage_artifact(
            ctx.audit_path,
            StageName.CODE_SCAN,
            {
                "codebase_path": str(codebase),
                "analyzers": [
                    {
                        "name": analyzer.name,
                        "output_file": analyzer.output_file,
                        "raw_findings": len(result.findings),
                        "metrics": result.metrics,
                    }
                    for analyzer, result in zip(analyzers, results)
                ],
                "finding_ids": [f.id for f in findings],
            },
        )
        return stage_output(
            StageName.CODE_SCAN,
            findings_count=count,
            output_file=output,
            analyzers=[a.name for a in analyzers],
        )

    return run_code_scan


run_code_scan = make_code_scan(default_analyzers())
