"""
Startup recovery for work a previous orchestrator process left behind.

Slots live only in memory, so after a crash or restart any task still marked
in_progress by an agent has nobody working on it. Those tasks are returned
to the pool. Their branches are kept, so the next attempt continues from the
last committed work. Worktrees that no longer belong to an in-progress task
are removed.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import re
from typing import Optional

from .config import GIT_MODE_WORKTREE
from .console import log, warn
from .models import STATUS_IN_PROGRESS, STATUS_OPEN
from .project import Project

AGENT_ASSIGNEE_PATTERN = re.compile(r"^(claude|codex)-")


def is_agent_assignee(assignee: str) -> bool:
    return bool(AGENT_ASSIGNEE_PATTERN.match(assignee or ""))


def recover_orphaned_tasks(project: Project, active_task_ids: Optional[set[str]] = None) -> list[str]:
    """Reopen in-progress agent tasks that have no live slot.

    Args:
        project: Project to reconcile
        active_task_ids: Tasks with a live slot in this process (left alone)

    Returns:
        Ids of the tasks that were reopened
    """
    active = active_task_ids or set()
    repo = project.repo_path
    recovered = []

    for task in project.store.list_tasks(repo, STATUS_IN_PROGRESS):
        if task.id in active or not is_agent_assignee(task.assignee):
            continue
        try:
            project.store.update(repo, task.id, status=STATUS_OPEN, assignee="")
            project.store.comment(
                repo, task.id,
                f"Recovered after orchestrator restart; {task.assignee} was no longer running. "
                "Task requeued with its branch preserved.",
            )
            recovered.append(task.id)
        except Exception as e:
            warn(f"Could not recover orphaned task {task.id}: {e}")

    if project.settings.git_working_mode == GIT_MODE_WORKTREE:
        in_progress = {t.id for t in project.store.list_tasks(repo, STATUS_IN_PROGRESS)}
        for task_id, path in project.workspace.list_task_worktrees():
            if task_id in active or task_id in in_progress:
                continue
            log(f"Removing stale worktree {path}")
            project.workspace.remove_task_worktree(task_id)

    if recovered:
        log(f"Recovered {len(recovered)} orphaned task(s): {', '.join(recovered)}")
    return recovered
