"""
Core data model: tasks, agent configurations, slots and attempt records.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

# Task status values
STATUS_OPEN = "open"
STATUS_IN_PROGRESS = "in_progress"
STATUS_BLOCKED = "blocked"
STATUS_CLOSED = "closed"
TASK_STATUSES = (STATUS_OPEN, STATUS_IN_PROGRESS, STATUS_BLOCKED, STATUS_CLOSED)

# Issue types that never get an agent of their own
CONTAINER_ISSUE_TYPES = {"epic"}
GATE_ISSUE_TYPE = "gate"
PLAN_APPROVAL_GATE_TITLE = "Plan approval gate"

# Failure policy thresholds
BACKOFF_FAILURE_THRESHOLD = 3
MAX_PRIORITY_BEFORE_BLOCK = 4
MAX_INFRA_RETRIES = 2
MAX_ATTEMPT_RECORDS = 500
AGENT_INACTIVITY_TIMEOUT_SECONDS = 600  # 10 minutes without output

PRIORITY_LABELS = {
    0: "Critical",
    1: "High",
    2: "Medium",
    3: "Low",
    4: "Lowest",
}

# Failure types fed to the failure handler
FAILURE_AGENT_CRASH = "agent_crash"
FAILURE_TIMEOUT = "timeout"
FAILURE_MERGE_CONFLICT = "merge_conflict"
FAILURE_CODING = "coding_failure"
FAILURE_REVIEW_REJECTION = "review_rejection"
INFRA_FAILURE_TYPES = {FAILURE_AGENT_CRASH, FAILURE_TIMEOUT, FAILURE_MERGE_CONFLICT}
LOGIC_FAILURE_TYPES = {FAILURE_CODING, FAILURE_REVIEW_REJECTION}

# Attempt outcomes recorded by the identity service
OUTCOME_SUCCESS = "success"
OUTCOME_TEST_FAILURE = "test_failure"
OUTCOME_REVIEW_REJECTION = "review_rejection"
OUTCOME_CRASH = "crash"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_NO_RESULT = "no_result"
OUTCOME_CODING_FAILURE = "coding_failure"

FAILURE_TYPE_TO_OUTCOME = {
    FAILURE_AGENT_CRASH: OUTCOME_CRASH,
    FAILURE_TIMEOUT: OUTCOME_TIMEOUT,
    FAILURE_MERGE_CONFLICT: OUTCOME_NO_RESULT,
    FAILURE_CODING: OUTCOME_CODING_FAILURE,
    FAILURE_REVIEW_REJECTION: OUTCOME_REVIEW_REJECTION,
}

# Block reasons. Only the technical ones are eligible for auto-recovery.
BLOCK_REASON_CODING_FAILURE = "Coding Failure"
BLOCK_REASON_MERGE_FAILURE = "Merge Failure"
BLOCK_REASON_OPEN_QUESTION = "Open Question"
BLOCK_REASON_API_BLOCKED = "API Blocked"
TECHNICAL_BLOCK_REASONS = {BLOCK_REASON_CODING_FAILURE, BLOCK_REASON_MERGE_FAILURE}


def is_technical_block_reason(reason: Optional[str]) -> bool:
    return reason in TECHNICAL_BLOCK_REASONS


@dataclass
class Dependency:
    """A typed edge from one task to a task it depends on."""
    depends_on: str
    dep_type: str = "blocks"


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    status: str = STATUS_OPEN
    priority: int = 2
    issue_type: str = "task"
    complexity: int = 5
    assignee: str = ""
    block_reason: Optional[str] = None
    cumulative_attempts: int = 0
    last_auto_retry_at: Optional[float] = None
    dependencies: list[Dependency] = field(default_factory=list)
    comments: list[dict] = field(default_factory=list)
    created_at: float = 0.0

    @property
    def is_container(self) -> bool:
        return self.issue_type in CONTAINER_ISSUE_TYPES

    @property
    def is_gate(self) -> bool:
        return self.issue_type == GATE_ISSUE_TYPE or self.title == PLAN_APPROVAL_GATE_TITLE

    @property
    def priority_label(self) -> str:
        return PRIORITY_LABELS.get(self.priority, str(self.priority))

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        deps = []
        for dep in data.get("dependencies", []) or []:
            if isinstance(dep, str):
                deps.append(Dependency(depends_on=dep))
            else:
                deps.append(Dependency(
                    depends_on=str(dep.get("id", "")),
                    dep_type=dep.get("type", "blocks"),
                ))
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            description=data.get("description", "") or "",
            status=data.get("status", STATUS_OPEN),
            priority=int(data.get("priority", 2)),
            issue_type=data.get("type", "task"),
            complexity=int(data.get("complexity", 5)),
            assignee=data.get("assignee", "") or "",
            block_reason=data.get("block_reason"),
            cumulative_attempts=int(data.get("cumulative_attempts", 0)),
            last_auto_retry_at=data.get("last_auto_retry_at"),
            dependencies=deps,
            comments=list(data.get("comments", []) or []),
            created_at=float(data.get("created_at", 0.0) or 0.0),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "type": self.issue_type,
            "complexity": self.complexity,
            "assignee": self.assignee,
            "block_reason": self.block_reason,
            "cumulative_attempts": self.cumulative_attempts,
            "last_auto_retry_at": self.last_auto_retry_at,
            "dependencies": [
                {"id": d.depends_on, "type": d.dep_type} for d in self.dependencies
            ],
            "comments": self.comments,
            "created_at": self.created_at,
        }


@dataclass
class AgentConfig:
    """Which agent backend and model runs a task."""
    backend: str = "claude"
    model: str = ""

    @property
    def agent_id(self) -> str:
        return f"{self.backend}-{self.model or 'default'}"

    @classmethod
    def from_dict(cls, data: Optional[dict], default: Optional["AgentConfig"] = None) -> "AgentConfig":
        fallback = default or cls()
        if not isinstance(data, dict):
            return AgentConfig(backend=fallback.backend, model=fallback.model)
        return cls(
            backend=str(data.get("backend", fallback.backend)),
            model=str(data.get("model", fallback.model) or ""),
        )


@dataclass
class AttemptRecord:
    task_id: str
    agent_id: str
    model: str
    attempt: int
    started_at: float
    completed_at: float
    outcome: str
    duration_ms: int

    @classmethod
    def from_dict(cls, data: dict) -> "AttemptRecord":
        return cls(
            task_id=str(data["task_id"]),
            agent_id=data.get("agent_id", ""),
            model=data.get("model", ""),
            attempt=int(data.get("attempt", 1)),
            started_at=float(data.get("started_at", 0.0)),
            completed_at=float(data.get("completed_at", 0.0)),
            outcome=data.get("outcome", OUTCOME_NO_RESULT),
            duration_ms=int(data.get("duration_ms", 0)),
        )

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "model": self.model,
            "attempt": self.attempt,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "outcome": self.outcome,
            "duration_ms": self.duration_ms,
        }


@dataclass
class AgentProfile:
    """Aggregate statistics for one agent identity, derived on demand."""
    agent_id: str
    tasks_attempted: int = 0
    tasks_succeeded: int = 0
    tasks_failed: int = 0
    avg_time_to_complete_ms: float = 0.0
    failures_by_type: dict[str, int] = field(default_factory=dict)


@dataclass
class PhaseResult:
    """Latest output captured from an agent phase."""
    diff: str = ""
    summary: str = ""
    test_output: str = ""
    review_feedback: str = ""


@dataclass
class AgentSlot:
    """In-memory tracking of one running agent against one task."""
    task_id: str
    project_id: str
    agent_config: AgentConfig
    attempt: int = 1
    infra_retries: int = 0
    worktree_path: Optional[str] = None
    branch_name: str = ""
    phase: str = "assigned"
    phase_result: PhaseResult = field(default_factory=PhaseResult)
    process: Optional[Any] = None
    started_at: float = field(default_factory=time.time)
    killed_for_inactivity: bool = False
    stop_requested: bool = False
    worker: Optional[threading.Thread] = None

    def last_output_at(self) -> float:
        if self.process is not None:
            return self.process.last_output_at
        return self.started_at

    def kill(self) -> None:
        if self.process is not None:
            self.process.kill()
