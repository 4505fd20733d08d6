"""
Auto-recovery sweeper: periodically reopens tasks blocked for technical reasons.

Tasks blocked by "Coding Failure" or "Merge Failure" get another chance once
per interval (8 hours by default). Blocks that need a human, such as
"Open Question", are never touched.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import threading
import time
from typing import Callable, Optional

from .config import DEFAULT_AUTO_RETRY_INTERVAL_HOURS
from .console import log, verbose_log, warn
from .events import EVENT_TASK_UPDATED, EventBus
from .models import STATUS_BLOCKED, STATUS_OPEN, is_technical_block_reason
from .project import Project
from .scheduler import ConcurrentScheduler


class AutoRecoverySweeper:
    """Reopens technically-blocked tasks whose cooldown has elapsed."""

    def __init__(
        self,
        scheduler: ConcurrentScheduler,
        events: EventBus,
        interval_seconds: float = DEFAULT_AUTO_RETRY_INTERVAL_HOURS * 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.scheduler = scheduler
        self.events = events
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_pass(self) -> int:
        """Sweep every registered project once. Returns how many tasks were reopened."""
        total = 0
        for project_id in self.scheduler.project_ids():
            try:
                total += self.sweep_project(self.scheduler.get_project(project_id))
            except Exception as e:
                warn(f"Auto-recovery sweep failed for {project_id}: {e}")
        if total:
            log(f"[AUTO-RETRY] Reopened {total} blocked task(s)")
        return total

    def sweep_project(self, project: Project) -> int:
        repo = project.repo_path
        now = self._clock()
        cutoff = now - project.settings.auto_retry_interval_seconds
        reopened = 0

        for task in project.store.list_blocked_for_auto_retry(repo, cutoff):
            try:
                # A human may have re-blocked the task since the query; the latest write wins
                current = project.store.show(repo, task.id)
                if current.status != STATUS_BLOCKED or not is_technical_block_reason(current.block_reason):
                    verbose_log(f"Skipping {task.id}: no longer technically blocked", "AUTO-RETRY")
                    continue
                project.store.update(
                    repo, task.id,
                    status=STATUS_OPEN, block_reason=None, last_auto_retry_at=now, assignee="",
                )
                project.store.comment(
                    repo, task.id,
                    f"Auto-retry: reopened after being blocked for '{current.block_reason}'.",
                )
                self.events.emit(
                    project.project_id, EVENT_TASK_UPDATED, task.id,
                    status=STATUS_OPEN, phase="", reason="auto_retry",
                )
                self.scheduler.nudge(project.project_id)
                reopened += 1
                log(f"[AUTO-RETRY] {task.id} reopened (was blocked: {current.block_reason})")
            except Exception as e:
                warn(f"Auto-retry of {task.id} failed: {e}")
        return reopened

    def _loop(self) -> None:
        while True:
            try:
                self.run_pass()
            except Exception as e:
                warn(f"Auto-recovery pass failed: {e}")
            if self._stopping.wait(self.interval_seconds):
                return

    def start(self) -> None:
        """Run one pass now, then one every interval, on a background thread."""
        self._stopping.clear()
        self._thread = threading.Thread(target=self._loop, name="auto-recovery", daemon=True)
        self._thread.start()
        log(f"Auto-recovery sweeper started (every {self.interval_seconds / 3600:g}h)")

    def stop(self) -> None:
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
