"""Command-line runner for the QA cycle.

Usage:
    qa-cycle run --path ./my-app
    qa-cycle run --github owner/repo --max-cycles 2 --output result.json
    qa-cycle view 1
    qa-cycle catalog

Exit codes:
    0  all tasks passed
    1  incomplete (cycle bound reached or aborted)
    2  configuration or usage error
    3  malformed provider response
    4  provider unavailable
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

from agents import build_default_team
from providers.cloudinary_service import CloudinaryStorage
from providers.github_service import GitHubService
from shared.config import Settings, settings as default_settings
from shared.errors import PreconditionError, QAWorkflowError
from shared.logging_setup import configure_logging
from workflow.context_scoper import bundle_files, is_relevant_source
from workflow.cycle_machine import CycleStateMachine, MachineTiming
from workflow.history import BlobStorage, HistoryArchiver, LocalBlobStorage
from workflow.persistence import FileKeyValueStore
from workflow.session_store import SessionStore

logger = logging.getLogger(__name__)


# ── Source loading ───────────────────────────────────────────────────

def load_directory(root: str | Path) -> str:
    """Bundle every relevant file under *root*, in sorted path order."""
    base = Path(root)
    if not base.is_dir():
        raise PreconditionError(f"Not a directory: {root}", "cli")
    files: list[tuple[str, str]] = []
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            rel = path.relative_to(base).as_posix()
            if not is_relevant_source(rel):
                continue
            files.append((rel, path.read_text(encoding="utf-8", errors="replace")))
    logger.info("Loaded %d file(s) from %s", len(files), base)
    return bundle_files(files)


# ── Wiring ───────────────────────────────────────────────────────────

def build_storage(cfg: Settings, archive_dir: str | None = None) -> BlobStorage:
    if cfg.CLOUDINARY_CLOUD_NAME and cfg.CLOUDINARY_UPLOAD_PRESET:
        return CloudinaryStorage(cfg.CLOUDINARY_CLOUD_NAME, cfg.CLOUDINARY_UPLOAD_PRESET)
    root = archive_dir or cfg.ARCHIVE_DIR or str(Path(cfg.STATE_DIR) / "archive")
    return LocalBlobStorage(root)


def build_machine(
    cfg: Settings,
    state_dir: str | None = None,
    archive_dir: str | None = None,
    max_cycles: int | None = None,
    no_delay: bool = False,
    reasoning: Any = None,
) -> CycleStateMachine:
    store = SessionStore(
        FileKeyValueStore(state_dir or cfg.STATE_DIR),
        key=cfg.STORAGE_KEY,
        debounce_s=cfg.PERSIST_DEBOUNCE_S,
        max_cycles=max_cycles if max_cycles is not None else cfg.MAX_CYCLES,
        session_id_prefix=cfg.SESSION_ID_PREFIX,
    )
    store.load()
    timing = MachineTiming(0.0, 0.0) if no_delay else MachineTiming(cfg.TASK_DELAY_S, cfg.REGRESSION_DELAY_S)
    return CycleStateMachine(
        reasoning=reasoning or build_default_team(cfg),
        store=store,
        archiver=HistoryArchiver(build_storage(cfg, archive_dir)),
        timing=timing,
        source_host=GitHubService(cfg.GITHUB_TOKEN, cfg.GITHUB_MAX_FILES),
    )


# ── Commands ─────────────────────────────────────────────────────────

async def _load_source(args: argparse.Namespace, machine: CycleStateMachine) -> tuple[str, str]:
    if args.github:
        host: GitHubService = machine.source_host
        code = await asyncio.to_thread(
            host.import_repository, args.github, lambda msg: print(f"  {msg}", file=sys.stderr)
        )
        return code, args.name or args.github
    if args.file:
        path = Path(args.file)
        return path.read_text(encoding="utf-8", errors="replace"), args.name or path.stem
    root = Path(args.path or ".").resolve()
    return load_directory(root), args.name or root.name


async def cmd_run(args: argparse.Namespace, machine: CycleStateMachine) -> int:
    code, name = await _load_source(args, machine)
    machine.store.set_source(code, name)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, machine.abort)
    except (NotImplementedError, RuntimeError):
        pass

    print(f"Analyzing {name} ({len(code)} chars)...")
    await machine.analyze()
    result = await machine.run_mission()

    counts = machine.state.pipeline.counts()
    print(f"\nOutcome: {result.outcome.value} after cycle {result.cycle}")
    print(f"  passed={counts['PASSED']} failed={counts['FAILED']} pending={counts['PENDING']}")
    for item in machine.state.cycle_history:
        where = item.storage_url or "(memory only)"
        print(f"  cycle {item.cycle_number}: {item.defect_count} defect(s) -> {where}")

    if args.output:
        Path(args.output).write_text(json.dumps(result.to_dict(), indent=2) + "\n", encoding="utf-8")
        print(f"Result written to {args.output}")
    return result.exit_code


async def cmd_view(args: argparse.Namespace, machine: CycleStateMachine) -> int:
    view = await machine.view_cycle(args.cycle)
    label = " (partial)" if view.partial else ""
    print(f"Cycle {view.cycle_number}{label}")
    for task in view.tasks:
        print(f"  [{task.status.value}] {task.id}: {task.description}")
    if view.report:
        print()
        print(view.report)
    return 0


def cmd_catalog(machine: CycleStateMachine) -> int:
    if not machine.store.catalog:
        print("No projects analyzed yet.")
    for item in machine.store.catalog:
        print(f"{item.id}  {item.name}  ({item.last_analyzed})")
        if item.summary_snippet:
            print(f"    {item.summary_snippet}")
    return 0


# ── Main ─────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qa-cycle", description="Automated QA cycle runner")
    parser.add_argument("--state-dir", default=None, help="Directory for the session record")
    parser.add_argument("--archive-dir", default=None, help="Local archive root (no Cloudinary)")
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Analyze a codebase and run the test/fix cycle")
    source = run.add_mutually_exclusive_group()
    source.add_argument("--path", help="Local directory to bundle (default: cwd)")
    source.add_argument("--file", help="Pre-framed source bundle")
    source.add_argument("--github", metavar="OWNER/REPO", help="Import from GitHub")
    run.add_argument("--name", help="Project identity (default: derived from the source)")
    run.add_argument("--max-cycles", type=int, default=None)
    run.add_argument("--no-delay", action="store_true", help="Skip pacing delays")
    run.add_argument("--output", help="Write the mission result as JSON")

    view = sub.add_parser("view", help="Show an archived cycle of the current session")
    view.add_argument("cycle", type=int)

    sub.add_parser("catalog", help="List analyzed projects")
    return parser


def main(argv: list[str] | None = None, cfg: Settings | None = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = cfg or default_settings
    configure_logging(args.log_level or cfg.LOG_LEVEL, cfg.LOG_FILE or None)

    machine: CycleStateMachine | None = None
    try:
        machine = build_machine(
            cfg,
            state_dir=args.state_dir,
            archive_dir=args.archive_dir,
            max_cycles=getattr(args, "max_cycles", None),
            no_delay=getattr(args, "no_delay", False),
        )
        if args.command == "catalog":
            return cmd_catalog(machine)
        if args.command == "view":
            return asyncio.run(cmd_view(args, machine))
        return asyncio.run(cmd_run(args, machine))
    except QAWorkflowError as exc:
        logger.debug("Command failed: %s", exc.to_record())
        print(f"error: {exc.message}", file=sys.stderr)
        return exc.exit_code
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    finally:
        if machine is not None:
            machine.store.flush()


if __name__ == "__main__":
    sys.exit(main())
