# tests/test_events.py
# Unit tests for the event bus and the JSONL event log.

from task_orchestrator.events import (
    EVENT_TASK_BLOCKED,
    EVENT_TASK_UPDATED,
    EventBus,
    EventLog,
    build_event,
)


def test_build_event_payload():
    event = build_event("proj", EVENT_TASK_UPDATED, "T-1", "open", "fail", reason="timeout", attempt=2)
    assert event["type"] == "task.updated"
    assert event["project_id"] == "proj"
    assert event["reason"] == "timeout"
    assert event["attempt"] == 2
    assert "timestamp" in event


def test_reason_omitted_when_none():
    assert "reason" not in build_event("proj", EVENT_TASK_UPDATED, "T-1", "open", "assigned")


def test_subscribers_scoped_by_project():
    bus = EventBus()
    mine, everything = [], []
    bus.subscribe("proj", mine.append)
    bus.subscribe("*", everything.append)

    bus.emit("proj", EVENT_TASK_UPDATED, "T-1", "open", "assigned")
    bus.emit("other", EVENT_TASK_UPDATED, "T-2", "open", "assigned")

    assert [e["task_id"] for e in mine] == ["T-1"]
    assert [e["task_id"] for e in everything] == ["T-1", "T-2"]


def test_failing_subscriber_does_not_stop_delivery(capsys):
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("subscriber down")

    bus.subscribe("proj", broken)
    bus.subscribe("proj", received.append)
    bus.emit("proj", EVENT_TASK_BLOCKED, "T-1", "blocked", "blocked", reason="Coding Failure")

    assert len(received) == 1
    assert "subscriber down" in capsys.readouterr().out


def test_event_log_appends_and_filters(tmp_path):
    log_path = tmp_path / "state" / "events.jsonl"
    bus = EventBus(EventLog(str(log_path)))
    bus.emit("proj", EVENT_TASK_UPDATED, "T-1", "in_progress", "assigned")
    bus.emit("proj", EVENT_TASK_BLOCKED, "T-2", "blocked", "blocked")

    event_log = EventLog(str(log_path))
    assert len(event_log.read()) == 2
    assert [e["type"] for e in event_log.read("T-2")] == ["task.blocked"]


def test_event_log_skips_corrupt_lines(tmp_path):
    log_path = tmp_path / "events.jsonl"
    log_path.write_text('{"task_id": "T-1"}\nnot json\n\n')
    assert EventLog(str(log_path)).read() == [{"task_id": "T-1"}]
