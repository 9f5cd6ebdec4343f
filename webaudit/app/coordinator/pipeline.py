"""
Static stage graph.

Declares the frozen stage order, stage prerequisites, parallel groups,
and the stage subset executed by each run mode.

IMPORTANT:
- The graph is static. Nothing here is mutated at runtime.
- Effective prerequisites are always computed against the active mode:
  a prerequisite that the mode does not run is replaced by its own
  in-mode prerequisites (transitively).
"""

from __future__ import annotations

from typing import Dict, FrozenSet, List, Optional, Tuple

from webaudit.app.config import RunMode
from webaudit.app.schemas.stages import StageName

# Declared order of all stages.
STAGE_ORDER: Tuple[StageName, ...] = tuple(StageName)

STAGE_DEPENDENCIES: Dict[StageName, FrozenSet[StageName]] = {
    StageName.PREFLIGHT: frozenset(),
    StageName.CODE_SCAN: frozenset({StageName.PREFLIGHT}),
    StageName.EXPLORE: frozenset({StageName.PREFLIGHT}),
    StageName.TEST: frozenset({StageName.EXPLORE}),
    StageName.RESPONSIVE: frozenset({StageName.EXPLORE}),
    StageName.AGGREGATE: frozenset(
        {StageName.CODE_SCAN, StageName.TEST, StageName.RESPONSIVE}
    ),
    StageName.VERIFY: frozenset({StageName.AGGREGATE}),
    StageName.COMPARE: frozenset({StageName.VERIFY}),
    StageName.REPORT: frozenset({StageName.COMPARE}),
}

PARALLEL_GROUPS: Tuple[FrozenSet[StageName], ...] = (
    frozenset({StageName.CODE_SCAN, StageName.EXPLORE}),
    frozenset({StageName.TEST, StageName.RESPONSIVE}),
)

MODE_STAGES: Dict[RunMode, FrozenSet[StageName]] = {
    RunMode.FULL: frozenset(StageName),
    RunMode.QUICK: frozenset(
        {
            StageName.PREFLIGHT,
            StageName.CODE_SCAN,
            StageName.EXPLORE,
            StageName.AGGREGATE,
            StageName.VERIFY,
            StageName.REPORT,
        }
    ),
    RunMode.CODE_ONLY: frozenset(
        {
            StageName.PREFLIGHT,
            StageName.CODE_SCAN,
            StageName.AGGREGATE,
            StageName.REPORT,
        }
    ),
}

# Stages that need a running application and a browser backend.
BROWSER_STAGES: FrozenSet[StageName] = frozenset(
    {StageName.EXPLORE, StageName.TEST, StageName.RESPONSIVE, StageName.VERIFY}
)


def stages_for_mode(mode: RunMode) -> List[StageName]:
    """Stages executed by mode, in declared order."""
    active = MODE_STAGES[mode]
    return [stage for stage in STAGE_ORDER if stage in active]


def effective_dependencies(stage: StageName, mode: RunMode) -> FrozenSet[StageName]:
    """
    Prerequisites of stage restricted to the stages mode runs.
    """
    active = MODE_STAGES[mode]
    resolved = set()
    pending = list(STAGE_DEPENDENCIES[stage])
    while pending:
        dep = pending.pop()
        if dep in active:
            resolved.add(dep)
        else:
            pending.extend(STAGE_DEPENDENCIES[dep])
    return frozenset(resolved)


def parallel_partner(stage: StageName) -> Optional[StageName]:
    for group in PARALLEL_GROUPS:
        if stage in group:
            (partner,) = group - {stage}
            return partner
    return None


def needs_browser(mode: RunMode) -> bool:
    return bool(MODE_STAGES[mode] & BROWSER_STAGES)
