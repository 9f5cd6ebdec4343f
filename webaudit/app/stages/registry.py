"""
Default stage executor wiring.
"""

from __future__ import annotations

from typing import Optional

from webaudit.app.schemas.stages import StageName
from webaudit.app.stages.aggregate import run_aggregate
from webaudit.app.stages.base import ExecutorRegistry
from webaudit.app.stages.browser import run_explore, run_responsive, run_test
from webaudit.app.stages.code_scan import run_code_scan
from webaudit.app.stages.compare import run_compare
from webaudit.app.stages.preflight import run_preflight
from webaudit.app.stages.report import run_report
from webaudit.app.stages.verify import run_verify


def default_executors(overrides: Optional[ExecutorRegistry] = None) -> ExecutorRegistry:
    """One executor per stage; overrides replace individual entries."""
    executors: ExecutorRegistry = {
        StageName.PREFLIGHT: run_preflight,
        StageName.CODE_SCAN: run_code_scan,
        StageName.EXPLORE: run_explore,
        StageName.TEST: run_test,
        StageName.RESPONSIVE: run_responsive,
        StageName.AGGREGATE: run_aggregate,
        StageName.VERIFY: run_verify,
        StageName.COMPARE: run_compare,
        StageName.REPORT: run_report,
    }
    executors.update(overrides or {})
    return executors
