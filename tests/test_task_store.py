# tests/test_task_store.py
# Unit tests for the YAML-backed task store.

import pytest
import yaml

from task_orchestrator.errors import TaskNotFoundError
from task_orchestrator.models import STATUS_BLOCKED, STATUS_CLOSED, STATUS_OPEN, Dependency, Task
from task_orchestrator.task_store import YamlTaskStore


@pytest.fixture
def store(tmp_path):
    return YamlTaskStore()


def _add(store, repo, task_id, **kwargs):
    kwargs.setdefault("title", task_id)
    return store.create_task(str(repo), Task(id=task_id, **kwargs))


# --- ready tests ---


def test_ready_orders_by_priority_then_creation(store, tmp_path):
    _add(store, tmp_path, "T-low", priority=3, created_at=1.0)
    _add(store, tmp_path, "T-b", priority=1, created_at=3.0)
    _add(store, tmp_path, "T-a", priority=1, created_at=2.0)
    assert [t.id for t in store.ready(str(tmp_path))] == ["T-a", "T-b", "T-low"]


def test_ready_skips_tasks_with_open_blockers(store, tmp_path):
    _add(store, tmp_path, "T-1")
    _add(store, tmp_path, "T-2", dependencies=[Dependency("T-1")])
    assert [t.id for t in store.ready(str(tmp_path))] == ["T-1"]

    store.update(str(tmp_path), "T-1", status=STATUS_CLOSED)
    assert [t.id for t in store.ready(str(tmp_path))] == ["T-2"]


def test_ready_ignores_non_blocking_dependencies(store, tmp_path):
    _add(store, tmp_path, "T-1")
    _add(store, tmp_path, "T-2", dependencies=[Dependency("T-1", dep_type="related")])
    assert {t.id for t in store.ready(str(tmp_path))} == {"T-1", "T-2"}


def test_ready_excludes_epics_and_non_open(store, tmp_path):
    _add(store, tmp_path, "E-1", issue_type="epic")
    _add(store, tmp_path, "T-1", status=STATUS_BLOCKED)
    _add(store, tmp_path, "T-2")
    assert [t.id for t in store.ready(str(tmp_path))] == ["T-2"]


def test_missing_backlog_is_empty(store, tmp_path):
    assert store.ready(str(tmp_path)) == []


# --- mutation tests ---


def test_update_persists_to_yaml(store, tmp_path):
    _add(store, tmp_path, "T-1")
    store.update(str(tmp_path), "T-1", status=STATUS_BLOCKED, block_reason="Open Question")

    data = yaml.safe_load((tmp_path / ".claude" / "backlog.yaml").read_text())
    assert data["tasks"][0]["status"] == "blocked"
    assert data["tasks"][0]["block_reason"] == "Open Question"


def test_update_rejects_unknown_fields(store, tmp_path):
    _add(store, tmp_path, "T-1")
    with pytest.raises(ValueError):
        store.update(str(tmp_path), "T-1", id="T-2")


def test_show_unknown_task_raises(store, tmp_path):
    with pytest.raises(TaskNotFoundError):
        store.show(str(tmp_path), "nope")


def test_create_duplicate_rejected(store, tmp_path):
    _add(store, tmp_path, "T-1")
    with pytest.raises(ValueError):
        _add(store, tmp_path, "T-1")


def test_comment_appends(store, tmp_path):
    _add(store, tmp_path, "T-1")
    store.comment(str(tmp_path), "T-1", "first")
    store.comment(str(tmp_path), "T-1", "second", author="reviewer")
    comments = store.show(str(tmp_path), "T-1").comments
    assert [c["text"] for c in comments] == ["first", "second"]
    assert comments[1]["author"] == "reviewer"


def test_add_dependency_is_idempotent(store, tmp_path):
    _add(store, tmp_path, "T-1")
    _add(store, tmp_path, "T-2")
    store.add_dependency(str(tmp_path), "T-2", "T-1")
    store.add_dependency(str(tmp_path), "T-2", "T-1")
    assert [b.id for b in store.get_blockers(str(tmp_path), "T-2")] == ["T-1"]


def test_add_dependency_on_missing_task_raises(store, tmp_path):
    _add(store, tmp_path, "T-1")
    with pytest.raises(TaskNotFoundError):
        store.add_dependency(str(tmp_path), "T-1", "T-404")


def test_set_cumulative_attempts(store, tmp_path):
    _add(store, tmp_path, "T-1")
    store.set_cumulative_attempts(str(tmp_path), "T-1", 4)
    assert store.show(str(tmp_path), "T-1").cumulative_attempts == 4


def test_sync_creates_file(store, tmp_path):
    store.sync(str(tmp_path))
    assert yaml.safe_load((tmp_path / ".claude" / "backlog.yaml").read_text()) == {"tasks": []}


# --- auto-retry query tests ---


def test_blocked_for_auto_retry_filters_reason_and_cooldown(store, tmp_path):
    _add(store, tmp_path, "T-never", status=STATUS_BLOCKED, block_reason="Coding Failure")
    _add(store, tmp_path, "T-old", status=STATUS_BLOCKED, block_reason="Merge Failure",
         last_auto_retry_at=100.0)
    _add(store, tmp_path, "T-recent", status=STATUS_BLOCKED, block_reason="Coding Failure",
         last_auto_retry_at=900.0)
    _add(store, tmp_path, "T-human", status=STATUS_BLOCKED, block_reason="Open Question")
    _add(store, tmp_path, "T-open", status=STATUS_OPEN)

    eligible = store.list_blocked_for_auto_retry(str(tmp_path), cutoff=500.0)
    assert {t.id for t in eligible} == {"T-never", "T-old"}


def test_hand_written_backlog_loads(store, tmp_path):
    backlog = tmp_path / ".claude" / "backlog.yaml"
    backlog.parent.mkdir()
    backlog.write_text(
        "tasks:\n"
        "  - id: T-1\n"
        "    title: Base\n"
        "    status: closed\n"
        "  - id: T-2\n"
        "    title: Follow-up\n"
        "    priority: 1\n"
        "    dependencies: [T-1]\n"
    )
    ready = store.ready(str(tmp_path))
    assert [t.id for t in ready] == ["T-2"]
    assert ready[0].priority_label == "High"
