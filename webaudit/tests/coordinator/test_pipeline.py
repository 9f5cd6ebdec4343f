from webaudit.app.config import RunMode
from webaudit.app.coordinator.pipeline import (
    STAGE_DEPENDENCIES,
    STAGE_ORDER,
    effective_dependencies,
    needs_browser,
    parallel_partner,
    stages_for_mode,
)
from webaudit.app.schemas.stages import StageName as S


def test_stage_order_respects_declared_dependencies():
    position = {stage: i for i, stage in enumerate(STAGE_ORDER)}
    for stage, deps in STAGE_DEPENDENCIES.items():
        assert all(position[d] < position[stage] for d in deps), stage


def test_mode_stage_subsets_keep_declared_order():
    assert stages_for_mode(RunMode.FULL) == list(STAGE_ORDER)
    assert stages_for_mode(RunMode.QUICK) == [
        S.PREFLIGHT, S.CODE_SCAN, S.EXPLORE, S.AGGREGATE, S.VERIFY, S.REPORT,
    ]
    assert stages_for_mode(RunMode.CODE_ONLY) == [
        S.PREFLIGHT, S.CODE_SCAN, S.AGGREGATE, S.REPORT,
    ]


def test_out_of_mode_prerequisites_are_replaced_by_their_own():
    # code-only: aggregate's test/responsive collapse onto explore, then preflight
    assert effective_dependencies(S.AGGREGATE, RunMode.CODE_ONLY) == {S.CODE_SCAN, S.PREFLIGHT}
    assert effective_dependencies(S.REPORT, RunMode.CODE_ONLY) == {S.AGGREGATE}

    assert effective_dependencies(S.AGGREGATE, RunMode.QUICK) == {S.CODE_SCAN, S.EXPLORE}
    assert effective_dependencies(S.REPORT, RunMode.QUICK) == {S.VERIFY}

    assert effective_dependencies(S.REPORT, RunMode.FULL) == {S.COMPARE}


def test_parallel_partners_are_symmetric():
    assert parallel_partner(S.CODE_SCAN) == S.EXPLORE
    assert parallel_partner(S.EXPLORE) == S.CODE_SCAN
    assert parallel_partner(S.TEST) == S.RESPONSIVE
    assert parallel_partner(S.REPORT) is None


def test_only_code_only_mode_runs_without_a_browser():
    assert needs_browser(RunMode.FULL)
    assert needs_browser(RunMode.QUICK)
    assert not needs_browser(RunMode.CODE_ONLY)
