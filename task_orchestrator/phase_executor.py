"""
Runs one task slot through its phases: coding, optional review, merge.

Each attempt walks the PhaseMachine. A failed attempt goes to the
FailureHandler, which decides whether the same slot tries again (possibly
with an escalated model) or gives the task back to the store.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import re
from dataclasses import dataclass
from typing import Optional

from .agent_identity import AgentIdentityService, build_attempt_record
from .agent_runner import AgentRunner
from .config import GIT_MODE_BRANCHES
from .console import log, verbose_log, warn
from .errors import AgentSpawnError, GitCommandError, MergeConflictError
from .events import EVENT_AGENT_COMPLETED, EVENT_AGENT_STARTED, EventBus
from .failure_handler import ACTION_BLOCK, ACTION_DEMOTE, FailureHandler
from .merger import run_merger_agent
from .models import (
    FAILURE_AGENT_CRASH,
    FAILURE_CODING,
    FAILURE_MERGE_CONFLICT,
    FAILURE_REVIEW_REJECTION,
    FAILURE_TIMEOUT,
    OUTCOME_SUCCESS,
    STATUS_CLOSED,
    STATUS_OPEN,
    AgentConfig,
    AgentSlot,
    Task,
)
from .phases import (
    PHASE_BLOCKED,
    PHASE_CODING,
    PHASE_DONE,
    PHASE_FAIL,
    PHASE_MERGING,
    PhaseMachine,
)
from .project import Project

# Result returned by run_slot when shutdown interrupted the slot
SLOT_STOPPED = "stopped"

OUTPUT_TAIL_CHARS = 1500
REVIEW_DIFF_LIMIT = 50000

RESULT_PATTERN = re.compile(r"\*\*Result:\s*(SUCCESS|FAILED)\*\*\s*(.*)", re.IGNORECASE)
REVIEW_VERDICT_PATTERN = re.compile(r"\*\*Verdict:\s*(APPROVED|REJECTED)\*\*", re.IGNORECASE)
REVIEW_FEEDBACK_PATTERN = re.compile(r"\*\*Feedback:\*\*\s*(.*)", re.IGNORECASE | re.DOTALL)

CODING_PROMPT_TEMPLATE = """You are working on task {task_id}: {title}

## Task Description

{description}

## Attempt

This is attempt {attempt}.{retry_context}

## Instructions

1. Implement the task in the current working directory.
2. Run the project's tests and fix anything you broke.
3. Commit your work with git before you finish.
4. End your output with exactly one line:
   **Result: SUCCESS** or **Result: FAILED** <one-line reason>
"""

REVIEW_PROMPT_TEMPLATE = """You are a REVIEWER for task {task_id}: {title}

## Task Description

{description}

## Changes

```diff
{diff}
```

## Output Format

**Verdict: APPROVED** or **Verdict: REJECTED**

**Feedback:**
What must change before this can be merged (omit when approved).
"""


@dataclass
class ReviewVerdict:
    approved: bool
    feedback: str = ""
    raw_output: str = ""


@dataclass
class AttemptOutcome:
    """How one pass through the phases ended."""
    success: bool
    failure_type: Optional[str] = None
    reason: str = ""
    output: str = ""
    stopped: bool = False


def parse_review_verdict(output: str) -> ReviewVerdict:
    """Parse a reviewer's verdict. Output without a verdict counts as a rejection."""
    verdict_match = REVIEW_VERDICT_PATTERN.search(output)
    approved = bool(verdict_match) and verdict_match.group(1).upper() == "APPROVED"
    feedback_match = REVIEW_FEEDBACK_PATTERN.search(output)
    if feedback_match:
        feedback = feedback_match.group(1).strip()
    elif not verdict_match:
        feedback = "Reviewer produced no verdict.\n\n" + output[-OUTPUT_TAIL_CHARS:]
    else:
        feedback = ""
    return ReviewVerdict(approved=approved, feedback=feedback, raw_output=output)


def parse_coding_result(output: str) -> tuple[Optional[bool], str]:
    """Find the agent's last **Result:** line.

    Returns:
        (True/False, reason) when the line is present, (None, "") otherwise
    """
    matches = RESULT_PATTERN.findall(output)
    if not matches:
        return None, ""
    status, reason = matches[-1]
    return status.upper() == "SUCCESS", reason.strip()


def build_coding_prompt(task: Task, attempt: int, retry_context: str = "") -> str:
    context = f"\n\nThe previous attempt failed:\n\n{retry_context}" if retry_context else ""
    return CODING_PROMPT_TEMPLATE.format(
        task_id=task.id,
        title=task.title,
        description=task.description or "No description",
        attempt=attempt,
        retry_context=context,
    )


def build_review_prompt(task: Task, diff: str) -> str:
    return REVIEW_PROMPT_TEMPLATE.format(
        task_id=task.id,
        title=task.title,
        description=task.description or "No description",
        diff=diff[:REVIEW_DIFF_LIMIT],
    )


class PhaseExecutor:
    """Drives slots through coding, review and merge."""

    def __init__(
        self,
        runner: AgentRunner,
        identity: AgentIdentityService,
        failure_handler: FailureHandler,
        events: EventBus,
    ):
        self.runner = runner
        self.identity = identity
        self.failure_handler = failure_handler
        self.events = events

    def run_slot(self, project: Project, slot: AgentSlot) -> str:
        """Run attempts until the task merges, leaves the slot, or shutdown stops it.

        Returns:
            The final phase: done, blocked, fail (demoted back to the pool),
            or SLOT_STOPPED
        """
        def sync_phase(_task_id: str, _from_phase: str, to_phase: str) -> None:
            slot.phase = to_phase

        machine = PhaseMachine(slot.task_id, on_transition=sync_phase)
        retry_context = ""

        while True:
            if slot.stop_requested:
                self._abandon_for_shutdown(project, slot)
                return SLOT_STOPPED
            outcome = self._run_attempt(project, slot, machine, retry_context)
            if outcome.stopped:
                self._abandon_for_shutdown(project, slot)
                return SLOT_STOPPED
            if outcome.success:
                self._complete(project, slot, machine, outcome.output)
                return PHASE_DONE

            machine.fail(outcome.failure_type, outcome.reason)
            decision = self.failure_handler.handle_task_failure(
                project, slot, outcome.failure_type, outcome.reason, outcome.output,
            )
            if decision.action == ACTION_BLOCK:
                machine.transition(PHASE_BLOCKED)
                return PHASE_BLOCKED
            if decision.action == ACTION_DEMOTE:
                return PHASE_FAIL

            retry_context = self._retry_context(outcome)
            task = project.store.show(project.repo_path, slot.task_id)
            slot.agent_config = self.identity.select_agent_for_retry(
                slot.task_id, slot.attempt, task.complexity, project.settings,
            )
            slot.killed_for_inactivity = False
            slot.process = None
            machine.retry()

    # ─── Phases ───────────────────────────────────────────────────────

    def _run_attempt(self, project: Project, slot: AgentSlot, machine: PhaseMachine,
                     retry_context: str) -> AttemptOutcome:
        task = project.store.show(project.repo_path, slot.task_id)

        try:
            slot.worktree_path, slot.branch_name = project.workspace.prepare_workspace(slot.task_id)
        except (GitCommandError, OSError) as e:
            slot.worktree_path = None
            return AttemptOutcome(False, FAILURE_AGENT_CRASH, f"Workspace setup failed: {e}")
        workspace_dir = project.workspace.workspace_dir(slot.worktree_path)

        machine.transition(PHASE_CODING)
        outcome = self._run_agent(
            project, slot, slot.agent_config,
            build_coding_prompt(task, slot.attempt, retry_context),
            workspace_dir, "coder",
        )
        if outcome is not None:
            return outcome
        output = slot.process.get_output()

        succeeded, result_reason = parse_coding_result(output)
        project.workspace.commit_wip(workspace_dir, slot.task_id)
        if succeeded is False:
            return AttemptOutcome(False, FAILURE_CODING, result_reason or "Agent reported failure", output)
        if project.workspace.get_commit_count_ahead(slot.branch_name) == 0:
            return AttemptOutcome(False, FAILURE_CODING, "Agent finished without producing any changes", output)

        slot.phase_result.diff = project.workspace.capture_branch_diff(slot.branch_name)
        slot.phase_result.summary = result_reason or output[-OUTPUT_TAIL_CHARS:]

        review_required = project.settings.should_review(task.cumulative_attempts)
        machine.after_coding(review_required)
        if review_required:
            review_config = project.settings.review_agent or slot.agent_config
            outcome = self._run_agent(
                project, slot, review_config,
                build_review_prompt(task, slot.phase_result.diff),
                workspace_dir, "reviewer",
            )
            if outcome is not None:
                return outcome
            verdict = parse_review_verdict(slot.process.get_output())
            if not verdict.approved:
                slot.phase_result.review_feedback = verdict.feedback
                return AttemptOutcome(False, FAILURE_REVIEW_REJECTION, verdict.feedback, output)
            machine.transition(PHASE_MERGING)

        return self._merge(project, slot, task, output)

    def _run_agent(self, project: Project, slot: AgentSlot, config: AgentConfig, prompt: str,
                   cwd: str, role: str) -> Optional[AttemptOutcome]:
        """Spawn an agent for the slot and wait for it.

        Returns:
            None when the agent exited 0, otherwise the failed AttemptOutcome
        """
        description = f"{role} {slot.task_id} attempt {slot.attempt} ({config.agent_id})"
        try:
            slot.process = self.runner.spawn(config, prompt, cwd=cwd, description=description)
        except AgentSpawnError as e:
            return AttemptOutcome(False, FAILURE_AGENT_CRASH, str(e))
        self.events.emit(
            project.project_id, EVENT_AGENT_STARTED, slot.task_id,
            status="in_progress", phase=slot.phase,
            agent_id=config.agent_id, attempt=slot.attempt, role=role,
        )

        exit_code = slot.process.wait()
        output = slot.process.get_output()
        if slot.stop_requested:
            return AttemptOutcome(False, stopped=True, output=output)
        if slot.killed_for_inactivity:
            minutes = project.settings.agent_inactivity_timeout_seconds / 60
            return AttemptOutcome(
                False, FAILURE_TIMEOUT, f"No output for {minutes:g} minutes", output)
        if exit_code != 0:
            return AttemptOutcome(
                False, FAILURE_AGENT_CRASH,
                f"{role} exited with code {exit_code}: {output[-OUTPUT_TAIL_CHARS:]}", output,
            )
        verbose_log(f"{description} finished", "EXEC")
        return None

    def _merge(self, project: Project, slot: AgentSlot, task: Task, output: str) -> AttemptOutcome:
        workspace = project.workspace
        branch = slot.branch_name
        with workspace.merge_lock():
            try:
                workspace.merge_to_main(branch, f"Merge {branch}: {task.title}")
            except MergeConflictError as e:
                merger_config = project.settings.merger_agent or project.settings.simple_agent
                if not run_merger_agent(self.runner, workspace, merger_config, branch, e.files):
                    workspace.merge_abort()
                    return AttemptOutcome(False, FAILURE_MERGE_CONFLICT, str(e), output)
                try:
                    workspace.commit_merge(f"Merge {branch}: {task.title} (conflicts resolved)")
                except GitCommandError as commit_error:
                    workspace.merge_abort()
                    return AttemptOutcome(False, FAILURE_MERGE_CONFLICT, str(commit_error), output)
            except GitCommandError as e:
                return AttemptOutcome(False, FAILURE_MERGE_CONFLICT, str(e), output)

            if not workspace.verify_merge(branch):
                return AttemptOutcome(
                    False, FAILURE_MERGE_CONFLICT,
                    f"{branch} is not listed by git branch --merged {workspace.main_branch}", output,
                )
        return AttemptOutcome(True, output=output)

    # ─── Outcomes ─────────────────────────────────────────────────────

    @staticmethod
    def _retry_context(outcome: AttemptOutcome) -> str:
        if outcome.failure_type == FAILURE_REVIEW_REJECTION:
            return f"A reviewer rejected it with this feedback:\n\n{outcome.reason}"
        if outcome.failure_type == FAILURE_MERGE_CONFLICT:
            return (
                "Your branch could not be merged into main. Merge main into your "
                f"branch, resolve the conflicts and commit.\n\n{outcome.reason}"
            )
        return outcome.reason[-OUTPUT_TAIL_CHARS:]

    def _complete(self, project: Project, slot: AgentSlot, machine: PhaseMachine, output: str) -> None:
        machine.transition(PHASE_DONE)
        self.failure_handler.sessions_for(project).archive(
            slot.task_id, slot.attempt,
            output_log=output,
            diff=slot.phase_result.diff,
            agent_id=slot.agent_config.agent_id,
            outcome=OUTCOME_SUCCESS,
        )
        self.identity.record_attempt(build_attempt_record(
            slot.task_id, slot.agent_config, slot.attempt, slot.started_at, OUTCOME_SUCCESS,
        ))
        project.workspace.release_workspace(slot.task_id, slot.branch_name, delete_branch=True)
        project.store.update(project.repo_path, slot.task_id, status=STATUS_CLOSED, assignee="")
        project.store.comment(
            project.repo_path, slot.task_id,
            f"Merged to {project.workspace.main_branch} on attempt {slot.attempt} "
            f"by {slot.agent_config.agent_id}.",
        )
        log(f"[DONE] {slot.task_id} merged on attempt {slot.attempt}")
        task = project.store.show(project.repo_path, slot.task_id)
        self.events.emit(
            project.project_id, EVENT_AGENT_COMPLETED, slot.task_id,
            status=STATUS_CLOSED, phase=PHASE_DONE, title=task.title,
        )

    def _abandon_for_shutdown(self, project: Project, slot: AgentSlot) -> None:
        """Keep partial work on the branch and hand the task back to the pool."""
        workspace_dir = project.workspace.workspace_dir(slot.worktree_path)
        try:
            if workspace_dir and os.path.isdir(workspace_dir):
                project.workspace.commit_wip(workspace_dir, slot.task_id)
            if project.workspace.mode == GIT_MODE_BRANCHES:
                project.workspace.revert_and_return_to_main()
        finally:
            project.store.update(project.repo_path, slot.task_id, status=STATUS_OPEN, assignee="")
        warn(f"{slot.task_id} interrupted by shutdown; task reopened with work committed to {slot.branch_name}")
