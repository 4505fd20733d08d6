"""
Wires the orchestrator's services together for one project.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
from typing import Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .agent_identity import ATTEMPTS_FILENAME, AgentIdentityService
from .agent_runner import AgentRunner
from .config import SLACK_CONFIG_PATH
from .console import log, verbose_log
from .events import EVENT_LOG_FILENAME, EventBus, EventLog
from .failure_handler import FailureHandler
from .notifications import SlackNotifier
from .phase_executor import PhaseExecutor
from .project import Project
from .recovery import recover_orphaned_tasks
from .scheduler import ConcurrentScheduler
from .sweeper import AutoRecoverySweeper


class BacklogWatcher(FileSystemEventHandler):
    """Watchdog handler that fires when the backlog file changes."""

    def __init__(self, backlog_path: str, event_callback):
        super().__init__()
        self.backlog_path = os.path.realpath(backlog_path)
        self.event_callback = event_callback

    def _matches(self, path) -> bool:
        if isinstance(path, bytes):
            path = path.decode()
        return os.path.realpath(path) == self.backlog_path

    def on_created(self, event):
        if not event.is_directory and self._matches(event.src_path):
            verbose_log(f"Backlog created: {event.src_path}", "WATCH")
            self.event_callback()

    def on_modified(self, event):
        if not event.is_directory and self._matches(event.src_path):
            verbose_log(f"Backlog modified: {event.src_path}", "WATCH")
            self.event_callback()

    def on_moved(self, event):
        # Atomic saves replace the file with a rename
        if not event.is_directory and self._matches(event.dest_path):
            verbose_log(f"Backlog replaced: {event.dest_path}", "WATCH")
            self.event_callback()


class Orchestrator:
    """Everything needed to drive one project's backlog."""

    def __init__(
        self,
        project: Project,
        runner: Optional[AgentRunner] = None,
        notifier: Optional[SlackNotifier] = None,
        dry_run: bool = False,
    ):
        self.project = project
        state_dir = project.state_dir
        self.runner = runner or AgentRunner(dry_run=dry_run)
        self.identity = AgentIdentityService(os.path.join(state_dir, ATTEMPTS_FILENAME))
        self.events = EventBus(EventLog(os.path.join(state_dir, EVENT_LOG_FILENAME)))
        self.notifier = notifier or SlackNotifier(os.path.join(project.repo_path, SLACK_CONFIG_PATH))
        if self.notifier.is_enabled():
            self.events.subscribe("*", self.notifier.handle_event)

        self.failure_handler = FailureHandler(self.identity, self.events)
        self.executor = PhaseExecutor(self.runner, self.identity, self.failure_handler, self.events)
        settings = project.settings
        self.scheduler = ConcurrentScheduler(
            self.executor, self.identity, self.events, self.runner,
            tick_interval=settings.tick_interval_seconds,
            watchdog_interval=settings.watchdog_interval_seconds,
        )
        self.scheduler.register_project(project)
        self.sweeper = AutoRecoverySweeper(
            self.scheduler, self.events, interval_seconds=settings.auto_retry_interval_seconds,
        )
        self._observer: Optional[Observer] = None

    @property
    def backlog_file(self) -> str:
        store_path_for = getattr(self.project.store, "path_for", None)
        if store_path_for is None:
            return ""
        return store_path_for(self.project.repo_path)

    def recover(self) -> list[str]:
        self.project.workspace.exclude_state_paths()
        return recover_orphaned_tasks(
            self.project, self.scheduler.active_task_ids(self.project.project_id)
        )

    def _start_watching(self) -> None:
        backlog_file = self.backlog_file
        if not backlog_file:
            return
        watch_dir = os.path.dirname(backlog_file)
        os.makedirs(watch_dir, exist_ok=True)
        self._observer = Observer()
        self._observer.schedule(
            BacklogWatcher(backlog_file, lambda: self.scheduler.nudge(self.project.project_id)),
            watch_dir, recursive=False,
        )
        self._observer.start()
        log(f"Watching {backlog_file} for changes")

    def start(self, watch: bool = True) -> None:
        self.recover()
        self.scheduler.start()
        self.sweeper.start()
        if watch:
            self._start_watching()
        self.notifier.send_status(f"*Orchestrator started* for {self.project.project_id}", level="info")

    def run_once(self, timeout: Optional[float] = None) -> int:
        """Assign one round of tasks and wait for them to finish. Returns how many were assigned."""
        self.recover()
        assigned = self.scheduler.tick(self.project.project_id)
        self.scheduler.wait_idle(timeout)
        return assigned

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        self.sweeper.stop()
        self.scheduler.stop()
        self.notifier.send_status(f"*Orchestrator stopped* for {self.project.project_id}", level="warning")
