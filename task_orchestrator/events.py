"""
Lifecycle events published to project channels.

Publishing is best-effort: a failing subscriber is logged and skipped, it
never interrupts the orchestrator. Every event is also appended to a JSONL
event log so a run can be reconstructed afterwards.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import json
import os
import threading
import time
from typing import Callable, Optional

from .console import verbose_log, warn

EVENT_AGENT_STARTED = "agent.started"
EVENT_AGENT_COMPLETED = "agent.completed"
EVENT_TASK_UPDATED = "task.updated"
EVENT_TASK_BLOCKED = "task.blocked"
LIFECYCLE_EVENTS = (EVENT_AGENT_STARTED, EVENT_AGENT_COMPLETED, EVENT_TASK_UPDATED, EVENT_TASK_BLOCKED)

EVENT_LOG_FILENAME = "events.jsonl"

Subscriber = Callable[[dict], None]


def build_event(
    project_id: str,
    event_type: str,
    task_id: str,
    status: str,
    phase: str,
    reason: Optional[str] = None,
    **extra,
) -> dict:
    event = {
        "type": event_type,
        "project_id": project_id,
        "task_id": task_id,
        "status": status,
        "phase": phase,
        "timestamp": time.time(),
    }
    if reason is not None:
        event["reason"] = reason
    event.update(extra)
    return event


class EventLog:
    """Append-only JSONL log of published events."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def append(self, event: dict) -> None:
        with self._lock:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "a") as f:
                f.write(json.dumps(event) + "\n")

    def read(self, task_id: Optional[str] = None) -> list[dict]:
        if not os.path.exists(self.path):
            return []
        events = []
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if task_id is None or event.get("task_id") == task_id:
                    events.append(event)
        return events


class EventBus:
    """Fans events out to per-project subscribers."""

    def __init__(self, event_log: Optional[EventLog] = None):
        self.event_log = event_log
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, project_id: str, subscriber: Subscriber) -> None:
        """Register a subscriber. project_id "*" receives every project's events."""
        with self._lock:
            self._subscribers.setdefault(project_id, []).append(subscriber)

    def publish(self, project_id: str, event_type: str, data: dict) -> None:
        event = dict(data)
        event.setdefault("type", event_type)
        event.setdefault("project_id", project_id)
        event.setdefault("timestamp", time.time())
        verbose_log(f"{event_type} {event.get('task_id', '')} {event.get('status', '')}", "EVENT")

        if self.event_log is not None:
            try:
                self.event_log.append(event)
            except OSError as e:
                warn(f"Could not append to event log: {e}")

        with self._lock:
            subscribers = list(self._subscribers.get(project_id, []))
            subscribers += self._subscribers.get("*", [])
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception as e:
                warn(f"Event subscriber failed for {event_type}: {e}")

    def emit(self, project_id: str, event_type: str, task_id: str, status: str,
             phase: str, reason: Optional[str] = None, **extra) -> None:
        """Publish a lifecycle event with the standard payload."""
        self.publish(
            project_id,
            event_type,
            build_event(project_id, event_type, task_id, status, phase, reason, **extra),
        )
