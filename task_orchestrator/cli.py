"""
Command line entry point for the task orchestrator.

Usage:
    task-orchestrator [--repo PATH] [--mode worktree|branches] [--max-agents N]
                      [--review always|never|on-failure-only]
                      [--once | --status | --sweep | --dry-run] [--verbose]

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import argparse
import os
import signal
import sys
import threading

from .config import (
    GIT_WORKING_MODES,
    ORCHESTRATOR_CONFIG_PATH,
    REVIEW_MODES,
    OrchestratorSettings,
    load_orchestrator_config,
    parse_orchestrator_settings,
)
from .console import log, set_verbose
from .errors import ConfigError
from .orchestrator import Orchestrator
from .project import Project, build_project

STOP_SEMAPHORE_FILENAME = ".stop"
STOP_POLL_SECONDS = 5

_shutdown_requested = threading.Event()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Task Orchestrator: drive a backlog to completion with coding agents"
    )
    parser.add_argument("--repo", default=".", help="Repository to work in (default: current directory)")
    parser.add_argument(
        "--config", default=None,
        help=f"Config file (default: <repo>/{ORCHESTRATOR_CONFIG_PATH})",
    )
    parser.add_argument("--backlog", default=None, help="Backlog YAML file (overrides config)")
    parser.add_argument("--mode", choices=GIT_WORKING_MODES, default=None, help="Git working mode")
    parser.add_argument("--max-agents", type=int, default=None, metavar="N",
                        help="Maximum concurrent coding agents (forced to 1 in branches mode)")
    parser.add_argument("--review", choices=REVIEW_MODES, default=None, help="Review policy")

    action = parser.add_mutually_exclusive_group()
    action.add_argument("--once", action="store_true",
                        help="Assign one round of tasks, wait for them, then exit")
    action.add_argument("--status", action="store_true", help="Print status and agent profiles, then exit")
    action.add_argument("--sweep", action="store_true",
                        help="Run one auto-recovery pass over blocked tasks, then exit")
    action.add_argument("--dry-run", action="store_true",
                        help="Show which tasks would be assigned without spawning agents")

    parser.add_argument("--verbose", action="store_true", help="Verbose logging")
    return parser


def apply_cli_overrides(settings: OrchestratorSettings, args: argparse.Namespace) -> OrchestratorSettings:
    if args.mode:
        settings.git_working_mode = args.mode
    if args.max_agents is not None:
        if args.max_agents < 1:
            raise ConfigError("--max-agents must be at least 1")
        settings.max_concurrent_coders = args.max_agents
    if args.review:
        settings.review_mode = args.review
    if args.backlog:
        settings.backlog_path = args.backlog
    return settings


def print_status(orchestrator: Orchestrator) -> None:
    project = orchestrator.project
    status = orchestrator.scheduler.get_status(project.project_id)
    print(f"Project: {project.project_id} ({project.repo_path})")
    print(f"  Mode: {project.settings.git_working_mode}, max agents: {project.settings.max_agents}")
    print(f"  Queue depth: {status['queue_depth']}")

    tasks = project.store.list_tasks(project.repo_path)
    counts: dict[str, int] = {}
    for task in tasks:
        counts[task.status] = counts.get(task.status, 0) + 1
    summary = ", ".join(f"{k}={v}" for k, v in sorted(counts.items()))
    print(f"  Tasks: {summary or 'none'}")
    for task in tasks:
        if task.block_reason:
            print(f"    {task.id} blocked: {task.block_reason}")

    profiles = orchestrator.identity.get_all_profiles()
    if profiles:
        print("Agent profiles:")
        for profile in profiles:
            avg_min = profile.avg_time_to_complete_ms / 60000
            failures = ", ".join(f"{k}={v}" for k, v in sorted(profile.failures_by_type.items()))
            print(f"  {profile.agent_id}: {profile.tasks_succeeded}/{profile.tasks_attempted} succeeded, "
                  f"avg {avg_min:.1f} min" + (f", failures: {failures}" if failures else ""))


def print_dry_run(orchestrator: Orchestrator) -> None:
    project = orchestrator.project
    tasks = orchestrator.scheduler.schedulable_tasks(project)[:project.settings.max_agents]
    if not tasks:
        print("[DRY RUN] Nothing to assign")
        return
    for task in tasks:
        config = project.settings.agent_for_complexity(task.complexity)
        print(f"[DRY RUN] Would assign {task.id} ({task.title}) to {config.agent_id} "
              f"on {project.workspace.branch_name_for(task.id)}")


def handle_signal(signum, frame):
    """Handle SIGINT/SIGTERM by asking the main loop to shut down."""
    sig_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
    log(f"Received {sig_name}. Shutting down gracefully...")
    _shutdown_requested.set()


def run_forever(orchestrator: Orchestrator) -> None:
    stop_path = os.path.join(orchestrator.project.state_dir, STOP_SEMAPHORE_FILENAME)
    if os.path.exists(stop_path):
        os.remove(stop_path)
    orchestrator.start()
    log(f"  (Ctrl+C or 'touch {stop_path}' to stop)")
    try:
        while not _shutdown_requested.wait(STOP_POLL_SECONDS):
            if os.path.exists(stop_path):
                log("Stop requested via semaphore.")
                os.remove(stop_path)
                break
    finally:
        orchestrator.stop()


def load_project(args: argparse.Namespace) -> Project:
    repo = os.path.abspath(args.repo)
    config_path = args.config or os.path.join(repo, ORCHESTRATOR_CONFIG_PATH)
    settings = parse_orchestrator_settings(load_orchestrator_config(config_path))
    return build_project(repo, apply_cli_overrides(settings, args))


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    set_verbose(args.verbose)

    try:
        project = load_project(args)
    except ConfigError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2

    orchestrator = Orchestrator(project, dry_run=args.dry_run)

    if args.status:
        print_status(orchestrator)
        return 0
    if args.dry_run:
        print_dry_run(orchestrator)
        return 0
    if args.sweep:
        reopened = orchestrator.sweeper.run_pass()
        log(f"Auto-recovery pass reopened {reopened} task(s)")
        return 0

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    log(f"Starting orchestrator for {project.project_id}")
    log(f"  Backlog: {orchestrator.backlog_file}")
    log(f"  Mode: {project.settings.git_working_mode}, max agents: {project.settings.max_agents}, "
        f"review: {project.settings.review_mode}")

    if args.once:
        try:
            assigned = orchestrator.run_once()
        finally:
            orchestrator.scheduler.stop()
        log(f"Processed {assigned} task(s). Exiting (--once mode).")
        return 0

    run_forever(orchestrator)
    log("Orchestrator stopped.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
