"""
Agent identity and escalation service.

Keeps an append-only history of agent attempts (capped, oldest evicted),
derives per-agent statistics on demand, and picks the agent configuration
for a retry. A task that keeps failing the same way is treated as a sign
that the model is not capable enough, so the next retry is escalated one
step up the backend's model ladder.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import json
import os
import tempfile
import threading
import time
from typing import Optional

from .config import DEFAULT_MODEL_LADDERS, OrchestratorSettings
from .console import log, verbose_log, warn
from .models import (
    MAX_ATTEMPT_RECORDS,
    OUTCOME_SUCCESS,
    AgentConfig,
    AgentProfile,
    AttemptRecord,
)

ATTEMPTS_FILENAME = "agent-attempts.json"

# Attempts up to this number always use the base configuration
BASE_CONFIG_ATTEMPTS = 2
# Trailing same-outcome attempts needed before escalating
ESCALATION_RUN_LENGTH = 3
RECENT_ATTEMPTS_LIMIT = 10


def agent_id_for(config: AgentConfig) -> str:
    """Stable identity string for a backend and model pair, e.g. claude-opus."""
    return config.agent_id


def build_attempt_record(
    task_id: str,
    config: AgentConfig,
    attempt: int,
    started_at: float,
    outcome: str,
    completed_at: Optional[float] = None,
) -> AttemptRecord:
    completed = completed_at if completed_at is not None else time.time()
    return AttemptRecord(
        task_id=task_id,
        agent_id=agent_id_for(config),
        model=config.model,
        attempt=attempt,
        started_at=started_at,
        completed_at=completed,
        outcome=outcome,
        duration_ms=int(max(0.0, completed - started_at) * 1000),
    )


def escalate_model(config: AgentConfig, ladders: dict[str, list[str]]) -> AgentConfig:
    """Return config with its model moved one step up the backend's ladder.

    Unknown models, and models already at the top, come back unchanged.
    """
    ladder = ladders.get(config.backend, [])
    if config.model not in ladder:
        return AgentConfig(backend=config.backend, model=config.model)
    idx = ladder.index(config.model)
    return AgentConfig(backend=config.backend, model=ladder[min(idx + 1, len(ladder) - 1)])


class AgentIdentityService:
    """Records attempt outcomes and selects agent configurations for retries."""

    def __init__(self, storage_path: Optional[str] = None, max_records: int = MAX_ATTEMPT_RECORDS):
        self.storage_path = storage_path
        self.max_records = max_records
        self._records: list[AttemptRecord] = []
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if not self.storage_path or not os.path.exists(self.storage_path):
            return
        try:
            with open(self.storage_path, "r") as f:
                data = json.load(f)
            self._records = [AttemptRecord.from_dict(r) for r in data.get("attempts", [])]
            self._records = self._records[-self.max_records:]
            verbose_log(f"Loaded {len(self._records)} attempt record(s)", "IDENTITY")
        except (json.JSONDecodeError, IOError, KeyError, ValueError) as e:
            warn(f"Ignoring unreadable attempt history {self.storage_path}: {e}")
            self._records = []

    def _save(self) -> None:
        if not self.storage_path:
            return
        directory = os.path.dirname(self.storage_path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        with os.fdopen(fd, "w") as f:
            json.dump({"attempts": [r.to_dict() for r in self._records]}, f, indent=2)
        os.replace(tmp_path, self.storage_path)

    def record_attempt(self, record: AttemptRecord) -> None:
        """Append an attempt, evicting the oldest records beyond the cap."""
        with self._lock:
            self._records.append(record)
            overflow = len(self._records) - self.max_records
            if overflow > 0:
                del self._records[:overflow]
            try:
                self._save()
            except OSError as e:
                warn(f"Could not persist attempt history: {e}")
        verbose_log(
            f"{record.task_id} attempt {record.attempt} by {record.agent_id}: {record.outcome}",
            "IDENTITY",
        )

    def all_records(self) -> list[AttemptRecord]:
        with self._lock:
            return list(self._records)

    def get_recent_attempts(self, task_id: str, limit: int = RECENT_ATTEMPTS_LIMIT) -> list[AttemptRecord]:
        """Most recent attempts for a task, oldest first."""
        with self._lock:
            matching = [r for r in self._records if r.task_id == task_id]
        return matching[-limit:]

    def get_profile(self, agent_id: str) -> AgentProfile:
        with self._lock:
            records = [r for r in self._records if r.agent_id == agent_id]
        profile = AgentProfile(agent_id=agent_id, tasks_attempted=len(records))
        durations = []
        for record in records:
            if record.outcome == OUTCOME_SUCCESS:
                profile.tasks_succeeded += 1
                durations.append(record.duration_ms)
            else:
                profile.tasks_failed += 1
                profile.failures_by_type[record.outcome] = (
                    profile.failures_by_type.get(record.outcome, 0) + 1
                )
        if durations:
            profile.avg_time_to_complete_ms = sum(durations) / len(durations)
        return profile

    def get_all_profiles(self) -> list[AgentProfile]:
        with self._lock:
            agent_ids = sorted({r.agent_id for r in self._records})
        return [self.get_profile(agent_id) for agent_id in agent_ids]

    def trailing_outcome_run(self, task_id: str) -> tuple[Optional[str], int]:
        """Length of the most recent run of identical outcomes for a task.

        Counts backward from the latest attempt and stops at the first
        attempt with a different outcome.
        """
        attempts = self.get_recent_attempts(task_id, limit=self.max_records)
        if not attempts:
            return None, 0
        outcome = attempts[-1].outcome
        run = 0
        for record in reversed(attempts):
            if record.outcome != outcome:
                break
            run += 1
        return outcome, run

    def select_agent_for_retry(
        self,
        task_id: str,
        attempt: int,
        complexity: int,
        settings: Optional[OrchestratorSettings] = None,
    ) -> AgentConfig:
        """Choose the agent configuration for an attempt.

        Args:
            task_id: Task being retried
            attempt: Attempt number about to start (1-based)
            complexity: Task complexity (1-10), selects the base tier
            settings: Project settings holding tiered configs and model ladders

        Returns:
            The base config, or an escalated copy for this attempt only
        """
        settings = settings or OrchestratorSettings()
        base = settings.agent_for_complexity(complexity)
        if attempt <= BASE_CONFIG_ATTEMPTS:
            return base

        outcome, run = self.trailing_outcome_run(task_id)
        if outcome == OUTCOME_SUCCESS or run < ESCALATION_RUN_LENGTH:
            return base

        escalated = escalate_model(base, settings.model_ladders or DEFAULT_MODEL_LADDERS)
        if escalated.model != base.model:
            log(f"[ESCALATION] {task_id}: {run} consecutive '{outcome}' attempts, "
                f"using {escalated.model} instead of {base.model} for attempt {attempt}")
        return escalated
