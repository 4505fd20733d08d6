"""
Failure handling: retry, demote or block a task after a failed attempt.

decide_failure_action() is a pure function so the policy can be tested
without git or agents. FailureHandler applies a decision: it archives the
session first, then comments, records the attempt, mutates the workspace
and task, and publishes a lifecycle event.

Failure taxonomy:
    infrastructure  agent_crash, timeout, merge_conflict. Retried up to
                    MAX_INFRA_RETRIES times without counting toward demotion.
    logic           coding_failure, review_rejection. Every one counts; each
                    BACKOFF_FAILURE_THRESHOLD-th consecutive one demotes the
                    task, and at the lowest priority it blocks instead.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import time
from dataclasses import dataclass
from typing import Optional

from .agent_identity import AgentIdentityService, build_attempt_record
from .console import log, warn
from .events import EVENT_TASK_BLOCKED, EVENT_TASK_UPDATED, EventBus
from .models import (
    BACKOFF_FAILURE_THRESHOLD,
    BLOCK_REASON_CODING_FAILURE,
    BLOCK_REASON_MERGE_FAILURE,
    FAILURE_MERGE_CONFLICT,
    FAILURE_REVIEW_REJECTION,
    FAILURE_TIMEOUT,
    FAILURE_TYPE_TO_OUTCOME,
    INFRA_FAILURE_TYPES,
    LOGIC_FAILURE_TYPES,
    MAX_INFRA_RETRIES,
    MAX_PRIORITY_BEFORE_BLOCK,
    STATUS_BLOCKED,
    STATUS_IN_PROGRESS,
    STATUS_OPEN,
    AgentSlot,
)
from .phases import PHASE_BLOCKED, PHASE_FAIL
from .project import Project
from .sessions import SessionManager

ACTION_INFRA_RETRY = "infra_retry"
ACTION_RETRY = "retry"
ACTION_DEMOTE = "demote"
ACTION_BLOCK = "block"

COMMENT_FEEDBACK_LIMIT = 2000
COMMENT_REASON_LIMIT = 500


@dataclass(frozen=True)
class FailureDecision:
    """What to do with a task after one failed attempt."""
    action: str
    failure_type: str
    next_attempt: int
    infra_retries: int
    cumulative_attempts: int
    priority: int
    delete_branch: bool
    block_reason: Optional[str] = None

    @property
    def is_retry(self) -> bool:
        return self.action in (ACTION_INFRA_RETRY, ACTION_RETRY)

    @property
    def counts_toward_demotion(self) -> bool:
        return self.action != ACTION_INFRA_RETRY


def is_infrastructure_failure(failure_type: str) -> bool:
    return failure_type in INFRA_FAILURE_TYPES


def decide_failure_action(
    failure_type: str,
    attempt: int,
    infra_retries: int,
    priority: int,
    cumulative_attempts: int,
    threshold: int = BACKOFF_FAILURE_THRESHOLD,
    max_priority: int = MAX_PRIORITY_BEFORE_BLOCK,
    max_infra_retries: int = MAX_INFRA_RETRIES,
) -> FailureDecision:
    """Decide between infra retry, retry, demotion and blocking.

    Args:
        failure_type: One of the infrastructure or logic failure types
        attempt: Attempt number that just failed
        infra_retries: Infrastructure retries already spent on this slot
        priority: Task's current priority (0 highest)
        cumulative_attempts: Penalised attempts persisted on the task so far

    Returns:
        The FailureDecision to apply

    Raises:
        ValueError: failure_type is not a known failure type
    """
    if failure_type not in INFRA_FAILURE_TYPES and failure_type not in LOGIC_FAILURE_TYPES:
        raise ValueError(f"Unknown failure type: {failure_type}")

    if is_infrastructure_failure(failure_type) and infra_retries < max_infra_retries:
        return FailureDecision(
            action=ACTION_INFRA_RETRY,
            failure_type=failure_type,
            next_attempt=attempt + 1,
            infra_retries=infra_retries + 1,
            cumulative_attempts=cumulative_attempts,
            priority=priority,
            delete_branch=False,
        )

    # Exhausted infra retries keep their counter; a logic failure starts it over
    next_infra_retries = infra_retries if is_infrastructure_failure(failure_type) else 0
    cumulative = cumulative_attempts + 1
    is_demotion_point = cumulative % threshold == 0

    if not is_demotion_point:
        return FailureDecision(
            action=ACTION_RETRY,
            failure_type=failure_type,
            next_attempt=attempt + 1,
            infra_retries=next_infra_retries,
            cumulative_attempts=cumulative,
            priority=priority,
            delete_branch=False,
        )

    if priority >= max_priority:
        reason = (
            BLOCK_REASON_MERGE_FAILURE if failure_type == FAILURE_MERGE_CONFLICT
            else BLOCK_REASON_CODING_FAILURE
        )
        return FailureDecision(
            action=ACTION_BLOCK,
            failure_type=failure_type,
            next_attempt=attempt + 1,
            infra_retries=0,
            cumulative_attempts=cumulative,
            priority=priority,
            delete_branch=True,
            block_reason=reason,
        )

    return FailureDecision(
        action=ACTION_DEMOTE,
        failure_type=failure_type,
        next_attempt=attempt + 1,
        infra_retries=0,
        cumulative_attempts=cumulative,
        priority=priority + 1,
        delete_branch=True,
    )


def format_failure_comment(
    failure_type: str,
    attempt: int,
    reason: str,
    inactivity_minutes: float = 10,
) -> str:
    """Task comment describing a failed attempt."""
    if failure_type == FAILURE_TIMEOUT:
        return (
            f"Attempt {attempt} failed [timeout]: Agent stopped responding "
            f"({inactivity_minutes:g} min inactivity); task requeued."
        )
    if failure_type == FAILURE_REVIEW_REJECTION:
        return f"Review rejected (attempt {attempt}):\n\n{reason[:COMMENT_FEEDBACK_LIMIT]}"
    return f"Attempt {attempt} failed [{failure_type}]: {reason[:COMMENT_REASON_LIMIT]}"


class FailureHandler:
    """Applies failure decisions to tasks, slots and workspaces."""

    def __init__(
        self,
        identity: AgentIdentityService,
        events: EventBus,
        sessions_for=None,
    ):
        self.identity = identity
        self.events = events
        # project -> SessionManager; defaults to one archive per project state dir
        self._sessions_for = sessions_for or (lambda project: SessionManager(project.state_dir))

    def sessions_for(self, project: Project) -> SessionManager:
        """The session archive for a project, shared by failed and successful attempts."""
        return self._sessions_for(project)

    def _capture_diff(self, project: Project, slot: AgentSlot) -> str:
        if not slot.branch_name:
            return ""
        diff = project.workspace.capture_branch_diff(slot.branch_name)
        workspace_dir = project.workspace.workspace_dir(slot.worktree_path)
        if workspace_dir and os.path.isdir(workspace_dir):
            diff += project.workspace.capture_uncommitted_diff(workspace_dir)
        return diff

    def handle_task_failure(
        self,
        project: Project,
        slot: AgentSlot,
        failure_type: str,
        reason: str,
        output_log: str = "",
    ) -> FailureDecision:
        """Record a failed attempt and apply the retry/demote/block decision.

        The slot's attempt and infra_retries are updated in place when the
        decision is a retry.
        """
        repo = project.repo_path
        task = project.store.show(repo, slot.task_id)
        decision = decide_failure_action(
            failure_type,
            attempt=slot.attempt,
            infra_retries=slot.infra_retries,
            priority=task.priority,
            cumulative_attempts=task.cumulative_attempts,
        )
        log(f"[FAILURE] {slot.task_id} attempt {slot.attempt} [{failure_type}] -> {decision.action}")

        # The session archive must exist before anything touches the workspace
        outcome = FAILURE_TYPE_TO_OUTCOME[failure_type]
        self.sessions_for(project).archive(
            slot.task_id,
            slot.attempt,
            output_log=output_log,
            diff=self._capture_diff(project, slot),
            failure_reason=reason,
            agent_id=slot.agent_config.agent_id,
            outcome=outcome,
            failure_type=failure_type,
        )

        self.identity.record_attempt(build_attempt_record(
            slot.task_id, slot.agent_config, slot.attempt, slot.started_at, outcome,
        ))

        inactivity_minutes = project.settings.agent_inactivity_timeout_seconds / 60
        project.store.comment(
            repo, slot.task_id,
            format_failure_comment(failure_type, slot.attempt, reason, inactivity_minutes),
        )

        if decision.counts_toward_demotion:
            project.store.set_cumulative_attempts(repo, slot.task_id, decision.cumulative_attempts)

        if decision.is_retry:
            self._apply_retry(project, slot, decision)
        elif decision.action == ACTION_DEMOTE:
            self._apply_demotion(project, slot, decision)
        else:
            self._apply_block(project, slot, decision, reason)
        return decision

    def _apply_retry(self, project: Project, slot: AgentSlot, decision: FailureDecision) -> None:
        workspace_dir = project.workspace.workspace_dir(slot.worktree_path)
        if workspace_dir and os.path.isdir(workspace_dir):
            project.workspace.commit_wip(workspace_dir, slot.task_id)
        slot.attempt = decision.next_attempt
        slot.infra_retries = decision.infra_retries
        slot.started_at = time.time()
        self.events.emit(
            project.project_id, EVENT_TASK_UPDATED, slot.task_id,
            status=STATUS_IN_PROGRESS, phase=PHASE_FAIL,
            reason=decision.failure_type, action=decision.action, attempt=slot.attempt,
        )

    def _apply_demotion(self, project: Project, slot: AgentSlot, decision: FailureDecision) -> None:
        project.workspace.release_workspace(slot.task_id, slot.branch_name, delete_branch=True)
        project.store.update(
            project.repo_path, slot.task_id,
            status=STATUS_OPEN, priority=decision.priority, assignee="",
        )
        log(f"[FAILURE] {slot.task_id} demoted to priority {decision.priority} "
            f"after {decision.cumulative_attempts} failed attempts")
        self.events.emit(
            project.project_id, EVENT_TASK_UPDATED, slot.task_id,
            status=STATUS_OPEN, phase=PHASE_FAIL,
            reason=decision.failure_type, action=ACTION_DEMOTE, priority=decision.priority,
        )

    def _apply_block(self, project: Project, slot: AgentSlot, decision: FailureDecision,
                     detail: str) -> None:
        try:
            project.workspace.release_workspace(slot.task_id, slot.branch_name, delete_branch=True)
        finally:
            project.store.update(
                project.repo_path, slot.task_id,
                status=STATUS_BLOCKED, block_reason=decision.block_reason, assignee="",
            )
        warn(f"{slot.task_id} blocked: {decision.block_reason} "
             f"after {decision.cumulative_attempts} failed attempts")
        self.events.emit(
            project.project_id, EVENT_TASK_BLOCKED, slot.task_id,
            status=STATUS_BLOCKED, phase=PHASE_BLOCKED,
            reason=decision.block_reason, detail=detail[:COMMENT_REASON_LIMIT],
        )
