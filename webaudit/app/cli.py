"""Command-line entry point for running and controlling audits."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from webaudit.app.browser.backend import BrowserUnavailableError
from webaudit.app.config import RunMode, ServiceConfig
from webaudit.app.coordinator.scheduler import AuditInitializationError, AuditScheduler
from webaudit.app.schemas.stages import RunStatus, StageResult
from webaudit.app.storage.checkpoint import CheckpointStore
from webaudit.app.storage.progress import ProgressStore

logger = logging.getLogger(__name__)


class ExitCode:
    SUCCESS = 0
    STAGE_FAILED = 1
    USAGE = 2
    NOT_FOUND = 3
    NOT_RESUMABLE = 4
    INIT_FAILED = 5
    INTERRUPTED = 6


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="webaudit",
        description="Staged audit runner for web applications",
    )
    parser.add_argument(
        "--output-root",
        default=None,
        help="Directory holding audit directories (default: WEBAUDIT_OUTPUT_ROOT or .audits)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start a new audit")
    run.add_argument("--url", default="", help="Base URL of the running application")
    run.add_argument("--codebase", default=".", help="Application source root")
    run.add_argument("--prd", default=None, help="Markdown PRD to compare against")
    run.add_argument(
        "--mode",
        choices=[m.value for m in RunMode],
        default=None,
        help="Stage subset (default: WEBAUDIT_DEFAULT_MODE or full)",
    )
    run.add_argument("--focus", action="append", default=[], help="Focus area (repeatable)")
    run.add_argument("--audit-id", default=None)
    run.add_argument("--max-pages", type=int, default=None)
    run.add_argument("--max-forms", type=int, default=None)
    run.add_argument("--timeout", type=float, default=None, help="Per-stage timeout in seconds")
    run.add_argument(
        "--sequential",
        action="store_true",
        help="Run parallel-group stages one after another",
    )

    for name, text in (
        ("resume", "Resume an interrupted audit"),
        ("stop", "Request a stop at the next stage boundary"),
        ("pause", "Request a pause at the next stage boundary"),
        ("continue", "Lift a pause"),
        ("status", "Print the progress of an audit"),
    ):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("audit_id")

    return parser


def _print_results(results: List[StageResult]) -> None:
    for result in results:
        line = f"{result.stage.value:<12} {result.status.value:<10} {result.duration_seconds:>8.2f}s"
        if result.findings_count:
            line += f"  {result.findings_count} findings"
        if result.error:
            line += f"  ({result.error})"
        print(line)


def _exit_code(scheduler: AuditScheduler) -> int:
    state = scheduler.get_state()
    if state is None or state.status == RunStatus.FAILED:
        return ExitCode.STAGE_FAILED
    if state.status in {RunStatus.STOPPED, RunStatus.PAUSED}:
        return ExitCode.INTERRUPTED
    return ExitCode.SUCCESS


def _cmd_run(args: argparse.Namespace, service: ServiceConfig) -> int:
    try:
        config = service.run_config(
            audit_id=args.audit_id,
            base_url=args.url,
            codebase_path=Path(args.codebase),
            prd_path=Path(args.prd) if args.prd else None,
            focus_areas=args.focus,
            mode=RunMode(args.mode) if args.mode else None,
            parallel_stages=False if args.sequential else None,
            max_pages=args.max_pages,
            max_forms=args.max_forms,
            timeout_per_stage=args.timeout,
        )
    except ValueError as exc:
        print(f"Invalid audit parameters: {exc}", file=sys.stderr)
        return ExitCode.USAGE

    scheduler = AuditScheduler.from_config(service)
    print(f"Audit {config.audit_id} -> {config.audit_path}")
    try:
        results = asyncio.run(scheduler.run(config))
    except AuditInitializationError as exc:
        print(str(exc), file=sys.stderr)
        return ExitCode.INIT_FAILED

    _print_results(results)
    return _exit_code(scheduler)


def _cmd_resume(args: argparse.Namespace, service: ServiceConfig) -> int:
    audit_path = service.OUTPUT_ROOT / args.audit_id
    scheduler = AuditScheduler.from_config(service)

    async def _resume() -> Optional[List[StageResult]]:
        if not await scheduler.resume(audit_path):
            return None
        return await scheduler.run()

    results = asyncio.run(_resume())
    if results is None:
        print(f"Audit '{args.audit_id}' has no resumable checkpoint", file=sys.stderr)
        return ExitCode.NOT_RESUMABLE

    _print_results(results)
    return _exit_code(scheduler)


def _cmd_flag(args: argparse.Namespace, service: ServiceConfig) -> int:
    store = CheckpointStore(service.OUTPUT_ROOT / args.audit_id)
    if store.load() is None:
        print(f"Audit '{args.audit_id}' not found", file=sys.stderr)
        return ExitCode.NOT_FOUND

    {
        "stop": store.request_stop,
        "pause": store.request_pause,
        "continue": store.request_continue,
    }[args.command]()
    print(f"{args.command} requested for {args.audit_id}")
    return ExitCode.SUCCESS


def _cmd_status(args: argparse.Namespace, service: ServiceConfig) -> int:
    progress = ProgressStore(service.OUTPUT_ROOT / args.audit_id).load()
    if progress is None:
        print(f"Audit '{args.audit_id}' not found", file=sys.stderr)
        return ExitCode.NOT_FOUND
    print(json.dumps(progress.model_dump(mode="json"), indent=2))
    return ExitCode.SUCCESS


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        service = ServiceConfig.from_env()
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return ExitCode.USAGE
    if args.output_root:
        service = service.model_copy(update={"OUTPUT_ROOT": Path(args.output_root)})

    logging.basicConfig(
        level=service.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "run":
            return _cmd_run(args, service)
        if args.command == "resume":
            return _cmd_resume(args, service)
        if args.command == "status":
            return _cmd_status(args, service)
        return _cmd_flag(args, service)
    except BrowserUnavailableError as exc:
        print(str(exc), file=sys.stderr)
        return ExitCode.USAGE


if __name__ == "__main__":
    sys.exit(main())
