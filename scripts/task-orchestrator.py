#!/usr/bin/env -S python3 -u
"""
Task Orchestrator: runs coding agents against a repository's backlog.

Picks ready tasks from .claude/backlog.yaml, gives each one an isolated git
workspace, drives it through coding, review and merge, and handles failures
by retrying, demoting or blocking. Blocked tasks are retried automatically
every few hours.

Usage:
    python scripts/task-orchestrator.py [--once] [--status] [--sweep] [--dry-run] [--verbose]

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from task_orchestrator.cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
