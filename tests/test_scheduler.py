# tests/test_scheduler.py
# Unit tests for slot assignment, the tick guard and the inactivity watchdog.

import threading
import time

import pytest

from fakes import BlockingProcess, task

from task_orchestrator.agent_identity import AgentIdentityService, build_attempt_record
from task_orchestrator.config import OrchestratorSettings
from task_orchestrator.events import EVENT_AGENT_STARTED, EventBus
from task_orchestrator.models import (
    STATUS_CLOSED,
    STATUS_IN_PROGRESS,
    STATUS_OPEN,
    AgentConfig,
    Dependency,
)
from task_orchestrator.phase_executor import SLOT_STOPPED
from task_orchestrator.phases import PHASE_BLOCKED, PHASE_DONE
from task_orchestrator.project import Project
from task_orchestrator.scheduler import ConcurrentScheduler
from task_orchestrator.task_store import YamlTaskStore


class FakeExecutor:
    """Records slots and holds each one until released."""

    def __init__(self, result=PHASE_DONE, hold=True):
        self.result = result
        self.release = threading.Event()
        if not hold:
            self.release.set()
        self.slots = []

    def run_slot(self, project, slot):
        self.slots.append(slot)
        self.release.wait(10)
        if slot.stop_requested:
            return SLOT_STOPPED
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class SilentAgentExecutor:
    """Gives each slot an agent process that never prints anything."""

    def __init__(self, last_output_at):
        self.last_output_at = last_output_at

    def run_slot(self, project, slot):
        slot.process = BlockingProcess(last_output_at=self.last_output_at)
        slot.process.wait(10)
        return PHASE_DONE


def _project(tmp_path, tasks, **settings_kwargs):
    settings = OrchestratorSettings(**settings_kwargs)
    store = YamlTaskStore()
    for t in tasks:
        store.create_task(str(tmp_path), t)
    return Project("proj", str(tmp_path), settings, store)


def _scheduler(executor, identity=None):
    events = []
    bus = EventBus()
    bus.subscribe("*", events.append)
    scheduler = ConcurrentScheduler(executor, identity or AgentIdentityService(), bus)
    return scheduler, events


# --- assignment tests ---


def test_tick_fills_up_to_max_agents(tmp_path):
    project = _project(tmp_path, [task(f"T-{i}", created_at=float(i)) for i in range(1, 6)],
                       max_concurrent_coders=2)
    executor = FakeExecutor()
    scheduler, events = _scheduler(executor)
    scheduler.register_project(project)

    assert scheduler.tick("proj") == 2
    assert scheduler.active_task_ids("proj") == {"T-1", "T-2"}
    stored = project.store.show(str(tmp_path), "T-1")
    assert stored.status == STATUS_IN_PROGRESS
    assert stored.assignee == "claude-sonnet"
    assert [e["task_id"] for e in events if e["type"] == EVENT_AGENT_STARTED] == ["T-1", "T-2"]

    executor.release.set()
    assert scheduler.wait_idle(10)


def test_busy_slots_are_not_reassigned(tmp_path):
    project = _project(tmp_path, [task("T-1"), task("T-2")], max_concurrent_coders=3)
    executor = FakeExecutor()
    scheduler, _ = _scheduler(executor)
    scheduler.register_project(project)

    scheduler.tick("proj")
    # Reopened behind the scheduler's back while its slot is still running
    project.store.update(str(tmp_path), "T-1", status=STATUS_OPEN)
    assert scheduler.tick("proj") == 0
    assert len(executor.slots) == 2

    executor.release.set()
    scheduler.wait_idle(10)


def test_branches_mode_runs_one_agent(tmp_path):
    project = _project(tmp_path, [task("T-1"), task("T-2")],
                       git_working_mode="branches", max_concurrent_coders=4)
    executor = FakeExecutor()
    scheduler, _ = _scheduler(executor)
    scheduler.register_project(project)

    assert scheduler.tick("proj") == 1
    executor.release.set()
    scheduler.wait_idle(10)


def test_containers_and_gates_skipped(tmp_path):
    project = _project(tmp_path, [
        task("E-1", issue_type="epic"),
        task("G-1", issue_type="gate"),
        task("G-2", title="Plan approval gate"),
        task("T-1"),
    ])
    scheduler, _ = _scheduler(FakeExecutor(hold=False))
    scheduler.register_project(project)

    assert [t.id for t in scheduler.schedulable_tasks(project)] == ["T-1"]


def test_stale_ready_view_rechecked_against_blockers(tmp_path):
    class StaleStore(YamlTaskStore):
        def ready(self, repo):
            return [t for t in self.list_tasks(repo) if t.status == STATUS_OPEN]

    settings = OrchestratorSettings()
    store = StaleStore()
    store.create_task(str(tmp_path), task("T-1"))
    store.create_task(str(tmp_path), task("T-2", dependencies=[Dependency("T-1")]))
    project = Project("proj", str(tmp_path), settings, store)
    scheduler, _ = _scheduler(FakeExecutor(hold=False))
    scheduler.register_project(project)

    assert [t.id for t in scheduler.schedulable_tasks(project)] == ["T-1"]
    store.update(str(tmp_path), "T-1", status=STATUS_CLOSED)
    assert [t.id for t in scheduler.schedulable_tasks(project)] == ["T-2"]


def test_attempt_number_continues_from_history(tmp_path):
    project = _project(tmp_path, [task("T-1", cumulative_attempts=2)])
    identity = AgentIdentityService()
    identity.record_attempt(build_attempt_record("T-1", AgentConfig(), 4, 0.0, "crash", 1.0))
    executor = FakeExecutor(hold=False)
    scheduler, _ = _scheduler(executor, identity)
    scheduler.register_project(project)

    scheduler.tick("proj")
    scheduler.wait_idle(10)
    assert executor.slots[0].attempt == 5


def test_concurrent_tick_is_a_noop(tmp_path):
    project = _project(tmp_path, [task("T-1")])
    scheduler, _ = _scheduler(FakeExecutor(hold=False))
    scheduler.register_project(project)

    scheduler._tick_locks["proj"].acquire()
    try:
        assert scheduler.tick("proj") == 0
    finally:
        scheduler._tick_locks["proj"].release()
    assert scheduler.tick("proj") == 1
    scheduler.wait_idle(10)


def test_tick_unknown_project_raises():
    scheduler, _ = _scheduler(FakeExecutor())
    with pytest.raises(KeyError):
        scheduler.tick("ghost")


# --- worker outcome tests ---


def test_counters_track_done_and_failed(tmp_path):
    project = _project(tmp_path, [task("T-1")])
    scheduler, _ = _scheduler(FakeExecutor(result=PHASE_BLOCKED, hold=False))
    scheduler.register_project(project)
    scheduler.tick("proj")
    scheduler.wait_idle(10)

    status = scheduler.get_status("proj")
    assert status["total_failed"] == 1
    assert status["total_done"] == 0
    assert status["active_tasks"] == 0


def test_crashed_worker_reopens_task(tmp_path):
    project = _project(tmp_path, [task("T-1")])
    scheduler, _ = _scheduler(FakeExecutor(result=RuntimeError("disk full"), hold=False))
    scheduler.register_project(project)
    scheduler.tick("proj")
    scheduler.wait_idle(10)

    stored = project.store.show(str(tmp_path), "T-1")
    assert stored.status == STATUS_OPEN
    assert stored.assignee == ""
    assert "disk full" in stored.comments[-1]["text"]
    assert scheduler.active_task_ids("proj") == set()


def test_status_reports_queue_depth(tmp_path):
    project = _project(tmp_path, [task("T-1"), task("T-2"), task("T-3")], max_concurrent_coders=1)
    executor = FakeExecutor()
    scheduler, _ = _scheduler(executor)
    scheduler.register_project(project)
    scheduler.tick("proj")

    status = scheduler.get_status("proj")
    assert status["active_tasks"] == 1
    assert status["queue_depth"] == 2
    details = scheduler.get_agent_details("proj")
    assert details[0]["task_id"] == "T-1"
    assert details[0]["branch"] == "task/T-1"

    executor.release.set()
    scheduler.wait_idle(10)


# --- inactivity watchdog tests ---


def test_silent_agent_killed(tmp_path):
    project = _project(tmp_path, [task("T-1")], agent_inactivity_timeout_seconds=600)
    scheduler, _ = _scheduler(SilentAgentExecutor(last_output_at=time.time() - 601))
    scheduler.register_project(project)
    scheduler.tick("proj")

    deadline = time.time() + 5
    killed = []
    while not killed and time.time() < deadline:
        killed = scheduler.check_inactivity()
        time.sleep(0.01)

    assert killed == ["T-1"]
    scheduler.wait_idle(10)


def test_active_agent_left_alone(tmp_path):
    project = _project(tmp_path, [task("T-1")])
    executor = SilentAgentExecutor(last_output_at=time.time())
    scheduler, _ = _scheduler(executor)
    scheduler.register_project(project)
    scheduler.tick("proj")

    time.sleep(0.05)
    assert scheduler.check_inactivity() == []
    scheduler.stop()


# --- lifecycle tests ---


def test_stop_flags_slots_and_waits_for_workers(tmp_path):
    project = _project(tmp_path, [task("T-1"), task("T-2")])
    executor = FakeExecutor()
    scheduler, _ = _scheduler(executor)
    scheduler.register_project(project)
    scheduler.tick("proj")

    stopper = threading.Thread(target=scheduler.stop)
    stopper.start()
    deadline = time.time() + 5
    while not all(slot.stop_requested for slot in executor.slots) and time.time() < deadline:
        time.sleep(0.01)
    executor.release.set()
    stopper.join(10)

    assert all(slot.stop_requested for slot in executor.slots)
    assert scheduler.active_task_ids("proj") == set()
    assert scheduler.tick("proj") == 0


def test_background_loop_picks_up_nudged_work(tmp_path):
    project = _project(tmp_path, [])
    executor = FakeExecutor(hold=False)
    scheduler, _ = _scheduler(executor)
    scheduler.tick_interval = 60
    scheduler.register_project(project)
    scheduler.start()
    try:
        project.store.create_task(str(tmp_path), task("T-1"))
        scheduler.nudge("proj")
        deadline = time.time() + 5
        while not executor.slots and time.time() < deadline:
            time.sleep(0.01)
        assert [s.task_id for s in executor.slots] == ["T-1"]
    finally:
        scheduler.stop()
