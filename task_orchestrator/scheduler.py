"""
Concurrency scheduler: fills agent slots with ready tasks.

The scheduler owns the slot registry (project -> task -> slot). A tick
looks at free capacity, asks the store for ready work, and starts one worker
thread per assigned task. Ticks run on a timer and whenever something nudges
the scheduler (a slot finishing, the sweeper reopening tasks, the backlog
file changing). Ticks for one project never overlap.

A watchdog thread kills agents that stop producing output; the killed
attempt then surfaces as a timeout failure through the normal failure path.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import threading
import time
from typing import Optional

from .agent_identity import AgentIdentityService
from .agent_runner import AgentRunner
from .config import DEFAULT_TICK_INTERVAL_SECONDS, DEFAULT_WATCHDOG_INTERVAL_SECONDS
from .console import log, verbose_log, warn
from .events import EVENT_AGENT_STARTED, EventBus
from .models import STATUS_CLOSED, STATUS_IN_PROGRESS, STATUS_OPEN, AgentSlot, Task
from .phase_executor import SLOT_STOPPED, PhaseExecutor
from .phases import PHASE_ASSIGNED, PHASE_DONE
from .project import Project

WORKER_JOIN_TIMEOUT_SECONDS = 30


class ConcurrentScheduler:
    """Assigns ready tasks to agent slots, up to each project's limit."""

    def __init__(
        self,
        executor: PhaseExecutor,
        identity: AgentIdentityService,
        events: EventBus,
        runner: Optional[AgentRunner] = None,
        tick_interval: float = DEFAULT_TICK_INTERVAL_SECONDS,
        watchdog_interval: float = DEFAULT_WATCHDOG_INTERVAL_SECONDS,
    ):
        self.executor = executor
        self.identity = identity
        self.events = events
        self.runner = runner
        self.tick_interval = tick_interval
        self.watchdog_interval = watchdog_interval

        self._projects: dict[str, Project] = {}
        self._slots: dict[str, dict[str, AgentSlot]] = {}
        self._slots_lock = threading.RLock()
        self._tick_locks: dict[str, threading.Lock] = {}
        self._counters: dict[str, dict[str, int]] = {}
        self._idle = threading.Condition(self._slots_lock)

        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._loop_thread: Optional[threading.Thread] = None
        self._watchdog_thread: Optional[threading.Thread] = None

    # ─── Projects ─────────────────────────────────────────────────────

    def register_project(self, project: Project) -> None:
        with self._slots_lock:
            self._projects[project.project_id] = project
            self._slots.setdefault(project.project_id, {})
            self._tick_locks.setdefault(project.project_id, threading.Lock())
            self._counters.setdefault(project.project_id, {"done": 0, "failed": 0})
        log(f"Registered project {project.project_id} ({project.settings.git_working_mode} mode, "
            f"max {project.settings.max_agents} agent(s))")

    def unregister_project(self, project_id: str) -> None:
        with self._slots_lock:
            self._projects.pop(project_id, None)

    def get_project(self, project_id: str) -> Project:
        with self._slots_lock:
            return self._projects[project_id]

    def project_ids(self) -> list[str]:
        with self._slots_lock:
            return list(self._projects)

    # ─── Scheduling ───────────────────────────────────────────────────

    def nudge(self, project_id: Optional[str] = None) -> None:
        """Ask for a tick as soon as possible."""
        verbose_log(f"Nudged{' for ' + project_id if project_id else ''}", "SCHEDULER")
        self._wake.set()

    def active_task_ids(self, project_id: str) -> set[str]:
        with self._slots_lock:
            return set(self._slots.get(project_id, {}))

    def schedulable_tasks(self, project: Project) -> list[Task]:
        """Ready tasks an agent may pick up now, in store priority order."""
        repo = project.repo_path
        slotted = self.active_task_ids(project.project_id)
        schedulable = []
        for task in project.store.ready(repo):
            if task.is_container or task.is_gate or task.id in slotted:
                continue
            # The ready view can be stale; re-check blockers before committing an agent
            blockers = project.store.get_blockers(repo, task.id)
            if any(b.status != STATUS_CLOSED for b in blockers):
                verbose_log(f"Skipping {task.id}: blockers still open", "SCHEDULER")
                continue
            schedulable.append(task)
        return schedulable

    def tick(self, project_id: str) -> int:
        """Fill free slots for one project.

        Returns:
            Number of tasks assigned. 0 when another tick for the project is
            already running.
        """
        tick_lock = self._tick_locks.get(project_id)
        if tick_lock is None:
            raise KeyError(f"Unknown project: {project_id}")
        if not tick_lock.acquire(blocking=False):
            verbose_log(f"Tick for {project_id} already in flight", "SCHEDULER")
            return 0
        try:
            if self._stopping.is_set():
                return 0
            return self._fill_slots(self.get_project(project_id))
        finally:
            tick_lock.release()

    def _fill_slots(self, project: Project) -> int:
        available = project.settings.max_agents - len(self.active_task_ids(project.project_id))
        if available <= 0:
            return 0

        assigned = 0
        for task in self.schedulable_tasks(project):
            if assigned >= available:
                break
            if self._assign(project, task):
                assigned += 1
        if assigned:
            log(f"[{project.project_id}] Assigned {assigned} task(s), "
                f"{len(self.active_task_ids(project.project_id))} active")
        return assigned

    def _next_attempt_number(self, task: Task) -> int:
        recent = self.identity.get_recent_attempts(task.id, limit=1)
        last = recent[-1].attempt if recent else 0
        return max(task.cumulative_attempts, last) + 1

    def _assign(self, project: Project, task: Task) -> bool:
        project_slots = self._slots[project.project_id]
        with self._slots_lock:
            if task.id in project_slots:
                return False
            attempt = self._next_attempt_number(task)
            slot = AgentSlot(
                task_id=task.id,
                project_id=project.project_id,
                agent_config=project.settings.agent_for_complexity(task.complexity),
                attempt=attempt,
                branch_name=project.workspace.branch_name_for(task.id),
            )
            project_slots[task.id] = slot

        try:
            slot.agent_config = self.identity.select_agent_for_retry(
                task.id, attempt, task.complexity, project.settings,
            )
            project.store.update(
                project.repo_path, task.id,
                status=STATUS_IN_PROGRESS, assignee=slot.agent_config.agent_id,
            )
            self.events.emit(
                project.project_id, EVENT_AGENT_STARTED, task.id,
                status=STATUS_IN_PROGRESS, phase=PHASE_ASSIGNED,
                agent_id=slot.agent_config.agent_id, attempt=attempt,
            )
            worker = threading.Thread(
                target=self._run_worker, args=(project, slot),
                name=f"slot-{project.project_id}-{task.id}", daemon=True,
            )
            slot.worker = worker
            worker.start()
        except Exception as e:
            warn(f"Failed to assign {task.id}: {e}")
            self._release_slot(project.project_id, task.id)
            return False

        log(f"[{project.project_id}] {task.id} -> {slot.agent_config.agent_id} "
            f"(attempt {attempt}, P{task.priority} {task.priority_label})")
        return True

    def _run_worker(self, project: Project, slot: AgentSlot) -> None:
        try:
            result = self.executor.run_slot(project, slot)
            if result != SLOT_STOPPED:
                self._count(project.project_id, "done" if result == PHASE_DONE else "failed")
        except Exception as e:
            warn(f"Slot for {slot.task_id} crashed: {e}")
            self._count(project.project_id, "failed")
            try:
                project.store.update(project.repo_path, slot.task_id, status=STATUS_OPEN, assignee="")
                project.store.comment(
                    project.repo_path, slot.task_id,
                    f"Orchestrator error during attempt {slot.attempt}: {str(e)[:500]}; task requeued.",
                )
            except Exception as store_error:
                warn(f"Could not requeue {slot.task_id}: {store_error}")
        finally:
            self._release_slot(project.project_id, slot.task_id)
            self.nudge(project.project_id)

    def _release_slot(self, project_id: str, task_id: str) -> None:
        with self._slots_lock:
            self._slots.get(project_id, {}).pop(task_id, None)
            self._idle.notify_all()

    def _count(self, project_id: str, key: str) -> None:
        with self._slots_lock:
            self._counters[project_id][key] += 1

    # ─── Inactivity watchdog ──────────────────────────────────────────

    def check_inactivity(self, now: Optional[float] = None) -> list[str]:
        """Kill every agent that has been silent longer than its project's timeout.

        Returns:
            Task ids whose agents were killed
        """
        now = now if now is not None else time.time()
        stale = []
        with self._slots_lock:
            for project_id, slots in self._slots.items():
                project = self._projects.get(project_id)
                if project is None:
                    continue
                timeout = project.settings.agent_inactivity_timeout_seconds
                for slot in slots.values():
                    process = slot.process
                    if process is None or not process.is_running() or slot.killed_for_inactivity:
                        continue
                    if now - slot.last_output_at() > timeout:
                        slot.killed_for_inactivity = True
                        stale.append(slot)
        for slot in stale:
            warn(f"{slot.task_id}: no agent output for "
                 f"{now - slot.last_output_at():.0f}s, killing agent")
            slot.kill()
        return [slot.task_id for slot in stale]

    # ─── Status ───────────────────────────────────────────────────────

    def get_status(self, project_id: str) -> dict:
        project = self.get_project(project_id)
        with self._slots_lock:
            active = len(self._slots.get(project_id, {}))
            counters = dict(self._counters.get(project_id, {"done": 0, "failed": 0}))
        return {
            "active_tasks": active,
            "queue_depth": len(self.schedulable_tasks(project)),
            "total_done": counters["done"],
            "total_failed": counters["failed"],
        }

    def get_agent_details(self, project_id: str) -> list[dict]:
        with self._slots_lock:
            slots = list(self._slots.get(project_id, {}).values())
        details = []
        for slot in slots:
            process = slot.process
            details.append({
                "task_id": slot.task_id,
                "phase": slot.phase,
                "attempt": slot.attempt,
                "infra_retries": slot.infra_retries,
                "agent_id": slot.agent_config.agent_id,
                "branch": slot.branch_name,
                "worktree": slot.worktree_path,
                "started_at": slot.started_at,
                "last_output_at": slot.last_output_at(),
                "pid": getattr(process, "pid", None),
                "output_tail": process.collector.tail() if hasattr(process, "collector") else "",
            })
        return details

    # ─── Lifecycle ────────────────────────────────────────────────────

    def _loop(self) -> None:
        while not self._stopping.is_set():
            self._wake.clear()
            for project_id in self.project_ids():
                try:
                    self.tick(project_id)
                except Exception as e:
                    warn(f"Tick for {project_id} failed: {e}")
            self._wake.wait(self.tick_interval)

    def _watchdog_loop(self) -> None:
        while not self._stopping.wait(self.watchdog_interval):
            try:
                self.check_inactivity()
            except Exception as e:
                warn(f"Inactivity check failed: {e}")

    def start(self) -> None:
        self._stopping.clear()
        self._loop_thread = threading.Thread(target=self._loop, name="scheduler", daemon=True)
        self._watchdog_thread = threading.Thread(
            target=self._watchdog_loop, name="inactivity-watchdog", daemon=True
        )
        self._loop_thread.start()
        self._watchdog_thread.start()
        log(f"Scheduler started (tick {self.tick_interval:g}s, watchdog {self.watchdog_interval:g}s)")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no slot is active. Returns False on timeout."""
        deadline = None if timeout is None else time.time() + timeout
        with self._idle:
            while any(self._slots.values()):
                remaining = None if deadline is None else deadline - time.time()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    def stop(self) -> None:
        """Stop ticking, kill live agents and wait for their workers to hand tasks back."""
        self._stopping.set()
        self._wake.set()
        with self._slots_lock:
            slots = [slot for project_slots in self._slots.values() for slot in project_slots.values()]
        for slot in slots:
            slot.stop_requested = True
            slot.kill()
        if self.runner is not None:
            killed = self.runner.kill_all()
            if killed:
                log(f"Killed {killed} remaining agent process(es)")
        for slot in slots:
            if slot.worker is not None:
                slot.worker.join(timeout=WORKER_JOIN_TIMEOUT_SECONDS)
        for thread in (self._loop_thread, self._watchdog_thread):
            if thread is not None:
                thread.join(timeout=5)
        log("Scheduler stopped")
