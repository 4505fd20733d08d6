"""
Task store interface and a YAML file-backed implementation.

The orchestrator only talks to the store through the TaskStore protocol.
YamlTaskStore keeps the backlog in a single YAML file inside the repository
(.claude/backlog.yaml by default):

    tasks:
      - id: T-1
        title: Add login form
        status: open
        priority: 2
        complexity: 3
        dependencies:
          - {id: T-0, type: blocks}

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import tempfile
import threading
import time
from typing import Optional, Protocol

import yaml

from .config import DEFAULT_BACKLOG_PATH
from .console import verbose_log
from .errors import TaskNotFoundError
from .models import (
    STATUS_BLOCKED,
    STATUS_CLOSED,
    STATUS_OPEN,
    Dependency,
    Task,
    is_technical_block_reason,
)

BLOCKING_DEPENDENCY_TYPES = {"blocks"}

# Fields the orchestrator is allowed to change through update()
UPDATABLE_FIELDS = {
    "title",
    "description",
    "status",
    "priority",
    "assignee",
    "block_reason",
    "cumulative_attempts",
    "last_auto_retry_at",
    "complexity",
}


class TaskStore(Protocol):
    """Operations the orchestrator consumes from the durable task store."""

    def ready(self, repo: str) -> list[Task]: ...

    def show(self, repo: str, task_id: str) -> Task: ...

    def update(self, repo: str, task_id: str, **fields) -> Task: ...

    def comment(self, repo: str, task_id: str, text: str, author: str = "orchestrator") -> None: ...

    def add_dependency(self, repo: str, task_id: str, depends_on: str, dep_type: str = "blocks") -> None: ...

    def sync(self, repo: str) -> None: ...

    def get_blockers(self, repo: str, task_id: str) -> list[Task]: ...

    def set_cumulative_attempts(self, repo: str, task_id: str, count: int) -> None: ...

    def list_blocked_for_auto_retry(self, repo: str, cutoff: float) -> list[Task]: ...

    def list_tasks(self, repo: str, status: Optional[str] = None) -> list[Task]: ...


class YamlTaskStore:
    """TaskStore that persists every task in one YAML document per repository."""

    def __init__(self, backlog_path: str = DEFAULT_BACKLOG_PATH):
        self.backlog_path = backlog_path
        self._lock = threading.RLock()

    def path_for(self, repo: str) -> str:
        if os.path.isabs(self.backlog_path):
            return self.backlog_path
        return os.path.join(repo, self.backlog_path)

    # ─── File I/O ─────────────────────────────────────────────────────

    def _load(self, repo: str) -> list[Task]:
        path = self.path_for(repo)
        if not os.path.exists(path):
            return []
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        return [Task.from_dict(item) for item in data.get("tasks", []) or []]

    def _save(self, repo: str, tasks: list[Task]) -> None:
        path = self.path_for(repo)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        document = {"tasks": [t.to_dict() for t in tasks]}
        fd, tmp_path = tempfile.mkstemp(
            dir=os.path.dirname(path) or ".", prefix=os.path.basename(path) + ".", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                yaml.dump(document, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    @staticmethod
    def _find(tasks: list[Task], task_id: str) -> Task:
        for task in tasks:
            if task.id == task_id:
                return task
        raise TaskNotFoundError(task_id)

    # ─── Queries ──────────────────────────────────────────────────────

    def list_tasks(self, repo: str, status: Optional[str] = None) -> list[Task]:
        with self._lock:
            tasks = self._load(repo)
        if status is None:
            return tasks
        return [t for t in tasks if t.status == status]

    def show(self, repo: str, task_id: str) -> Task:
        with self._lock:
            return self._find(self._load(repo), task_id)

    def get_blockers(self, repo: str, task_id: str) -> list[Task]:
        """Return every task that blocks task_id, whatever its status."""
        with self._lock:
            tasks = self._load(repo)
        by_id = {t.id: t for t in tasks}
        task = self._find(tasks, task_id)
        blockers = []
        for dep in task.dependencies:
            if dep.dep_type not in BLOCKING_DEPENDENCY_TYPES:
                continue
            blocker = by_id.get(dep.depends_on)
            if blocker is not None:
                blockers.append(blocker)
        return blockers

    def ready(self, repo: str) -> list[Task]:
        """Open, non-container tasks whose blockers are all closed, in priority order."""
        with self._lock:
            tasks = self._load(repo)
        by_id = {t.id: t for t in tasks}

        def unblocked(task: Task) -> bool:
            for dep in task.dependencies:
                if dep.dep_type not in BLOCKING_DEPENDENCY_TYPES:
                    continue
                blocker = by_id.get(dep.depends_on)
                if blocker is not None and blocker.status != STATUS_CLOSED:
                    return False
            return True

        candidates = [
            t for t in tasks
            if t.status == STATUS_OPEN and not t.is_container and unblocked(t)
        ]
        candidates.sort(key=lambda t: (t.priority, t.created_at, t.id))
        return candidates

    def list_blocked_for_auto_retry(self, repo: str, cutoff: float) -> list[Task]:
        """Blocked tasks with a technical reason whose last auto retry is at or before cutoff."""
        return [
            t for t in self.list_tasks(repo, STATUS_BLOCKED)
            if is_technical_block_reason(t.block_reason)
            and (t.last_auto_retry_at is None or t.last_auto_retry_at <= cutoff)
        ]

    # ─── Mutations ────────────────────────────────────────────────────

    def create_task(self, repo: str, task: Task) -> Task:
        with self._lock:
            tasks = self._load(repo)
            if any(t.id == task.id for t in tasks):
                raise ValueError(f"Task already exists: {task.id}")
            if not task.created_at:
                task.created_at = time.time()
            tasks.append(task)
            self._save(repo, tasks)
        return task

    def update(self, repo: str, task_id: str, **fields) -> Task:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {sorted(unknown)}")
        with self._lock:
            tasks = self._load(repo)
            task = self._find(tasks, task_id)
            for name, value in fields.items():
                setattr(task, name, value)
            self._save(repo, tasks)
        verbose_log(f"{task_id} updated: {fields}", "STORE")
        return task

    def comment(self, repo: str, task_id: str, text: str, author: str = "orchestrator") -> None:
        with self._lock:
            tasks = self._load(repo)
            task = self._find(tasks, task_id)
            task.comments.append({"author": author, "text": text, "created_at": time.time()})
            self._save(repo, tasks)

    def add_dependency(self, repo: str, task_id: str, depends_on: str, dep_type: str = "blocks") -> None:
        with self._lock:
            tasks = self._load(repo)
            task = self._find(tasks, task_id)
            self._find(tasks, depends_on)
            if any(d.depends_on == depends_on for d in task.dependencies):
                return
            task.dependencies.append(Dependency(depends_on=depends_on, dep_type=dep_type))
            self._save(repo, tasks)

    def set_cumulative_attempts(self, repo: str, task_id: str, count: int) -> None:
        self.update(repo, task_id, cumulative_attempts=count)

    def sync(self, repo: str) -> None:
        """Rewrite the backlog file in canonical form, creating it when missing."""
        with self._lock:
            self._save(repo, self._load(repo))
