# tests/test_failure_handler.py
# Unit tests for the retry/demote/block policy and its application to tasks.

import pytest

from fakes import git, make_project, task

from task_orchestrator.agent_identity import AgentIdentityService
from task_orchestrator.events import EVENT_TASK_BLOCKED, EVENT_TASK_UPDATED, EventBus
from task_orchestrator.failure_handler import (
    ACTION_BLOCK,
    ACTION_DEMOTE,
    ACTION_INFRA_RETRY,
    ACTION_RETRY,
    FailureHandler,
    decide_failure_action,
    format_failure_comment,
)
from task_orchestrator.models import (
    FAILURE_AGENT_CRASH,
    FAILURE_CODING,
    FAILURE_MERGE_CONFLICT,
    FAILURE_REVIEW_REJECTION,
    FAILURE_TIMEOUT,
    STATUS_BLOCKED,
    STATUS_IN_PROGRESS,
    STATUS_OPEN,
    AgentConfig,
    AgentSlot,
)
from task_orchestrator.sessions import SessionManager


# --- decide_failure_action tests ---


def test_infra_failure_retries_without_counting():
    """First infrastructure failure is a free retry."""
    decision = decide_failure_action(FAILURE_AGENT_CRASH, attempt=1, infra_retries=0,
                                     priority=2, cumulative_attempts=0)
    assert decision.action == ACTION_INFRA_RETRY
    assert decision.next_attempt == 2
    assert decision.infra_retries == 1
    assert decision.cumulative_attempts == 0
    assert decision.counts_toward_demotion is False


def test_infra_retries_exhausted_counts_as_attempt():
    """Third timeout in a row is treated like a logic failure."""
    decision = decide_failure_action(FAILURE_TIMEOUT, attempt=3, infra_retries=2,
                                     priority=2, cumulative_attempts=0)
    assert decision.action == ACTION_RETRY
    assert decision.cumulative_attempts == 1
    assert decision.infra_retries == 2
    assert decision.counts_toward_demotion is True


def test_logic_failure_resets_infra_counter():
    decision = decide_failure_action(FAILURE_CODING, attempt=2, infra_retries=1,
                                     priority=2, cumulative_attempts=0)
    assert decision.action == ACTION_RETRY
    assert decision.infra_retries == 0


def test_third_logic_failure_demotes():
    decision = decide_failure_action(FAILURE_REVIEW_REJECTION, attempt=3, infra_retries=0,
                                     priority=2, cumulative_attempts=2)
    assert decision.action == ACTION_DEMOTE
    assert decision.priority == 3
    assert decision.cumulative_attempts == 3
    assert decision.delete_branch is True


def test_demotion_point_at_lowest_priority_blocks():
    decision = decide_failure_action(FAILURE_CODING, attempt=3, infra_retries=0,
                                     priority=4, cumulative_attempts=2)
    assert decision.action == ACTION_BLOCK
    assert decision.block_reason == "Coding Failure"
    assert decision.delete_branch is True


def test_exhausted_merge_conflict_blocks_as_merge_failure():
    decision = decide_failure_action(FAILURE_MERGE_CONFLICT, attempt=9, infra_retries=2,
                                     priority=4, cumulative_attempts=5)
    assert decision.action == ACTION_BLOCK
    assert decision.block_reason == "Merge Failure"


def test_unknown_failure_type_rejected():
    with pytest.raises(ValueError):
        decide_failure_action("gremlins", attempt=1, infra_retries=0,
                              priority=2, cumulative_attempts=0)


def test_logic_failures_from_priority_2_walk_down_to_blocked():
    """Consecutive logic failures demote at 3 and 6, and block at 9."""
    priority, cumulative, infra = 2, 0, 0
    actions = []
    for attempt in range(1, 10):
        decision = decide_failure_action(FAILURE_CODING, attempt, infra, priority, cumulative)
        actions.append((decision.action, decision.priority))
        priority, cumulative, infra = decision.priority, decision.cumulative_attempts, decision.infra_retries

    assert actions == [
        (ACTION_RETRY, 2), (ACTION_RETRY, 2), (ACTION_DEMOTE, 3),
        (ACTION_RETRY, 3), (ACTION_RETRY, 3), (ACTION_DEMOTE, 4),
        (ACTION_RETRY, 4), (ACTION_RETRY, 4), (ACTION_BLOCK, 4),
    ]


def test_task_starting_at_priority_3_blocks_at_sixth_failure():
    priority, cumulative = 3, 0
    last = None
    for attempt in range(1, 7):
        last = decide_failure_action(FAILURE_CODING, attempt, 0, priority, cumulative)
        priority, cumulative = last.priority, last.cumulative_attempts
    assert last.action == ACTION_BLOCK
    assert cumulative == 6


# --- format_failure_comment tests ---


def test_timeout_comment_mentions_inactivity():
    comment = format_failure_comment(FAILURE_TIMEOUT, 2, "ignored", inactivity_minutes=10)
    assert comment == (
        "Attempt 2 failed [timeout]: Agent stopped responding (10 min inactivity); task requeued."
    )


def test_review_comment_truncates_feedback():
    comment = format_failure_comment(FAILURE_REVIEW_REJECTION, 1, "x" * 5000)
    assert comment.startswith("Review rejected (attempt 1):")
    assert comment.count("x") == 2000


def test_generic_comment_truncates_reason():
    comment = format_failure_comment(FAILURE_AGENT_CRASH, 4, "y" * 900)
    assert comment.startswith("Attempt 4 failed [agent_crash]: ")
    assert comment.count("y") == 500


# --- FailureHandler tests ---


class TestFailureHandler:
    """handle_task_failure against a real git repository and YAML store."""

    def _setup(self, tmp_path, **task_kwargs):
        task_kwargs.setdefault("status", STATUS_IN_PROGRESS)
        project = make_project(tmp_path, tasks=[task("T-1", **task_kwargs)])
        worktree, branch = project.workspace.prepare_workspace("T-1")
        (tmp_path / "worktrees" / "T-1" / "partial.txt").write_text("half done\n")
        slot = AgentSlot(
            task_id="T-1", project_id=project.project_id,
            agent_config=AgentConfig("claude", "sonnet"),
            worktree_path=worktree, branch_name=branch,
        )
        events = []
        bus = EventBus()
        bus.subscribe(project.project_id, events.append)
        identity = AgentIdentityService()
        handler = FailureHandler(identity, bus)
        return project, slot, handler, identity, events

    def test_infra_retry_commits_wip_and_advances_slot(self, tmp_path):
        project, slot, handler, identity, events = self._setup(tmp_path)

        decision = handler.handle_task_failure(project, slot, FAILURE_AGENT_CRASH, "exit 1", "log")

        assert decision.action == ACTION_INFRA_RETRY
        assert slot.attempt == 2
        assert slot.infra_retries == 1
        log = git(slot.worktree_path, "log", "--oneline")
        assert "WIP: partial work on T-1" in log
        stored = project.store.show(project.repo_path, "T-1")
        assert stored.cumulative_attempts == 0
        assert stored.status == STATUS_IN_PROGRESS
        assert events[-1]["type"] == EVENT_TASK_UPDATED

    def test_session_archived_with_uncommitted_diff(self, tmp_path):
        project, slot, handler, _, _ = self._setup(tmp_path)

        handler.handle_task_failure(project, slot, FAILURE_CODING, "tests fail", "agent output")

        session = SessionManager(project.state_dir).load("T-1", 1)
        assert session["failure_type"] == FAILURE_CODING
        assert session["outcome"] == "coding_failure"
        assert session["output_log"] == "agent output"
        assert "partial.txt" in session["diff"]

    def test_failure_is_recorded_and_commented(self, tmp_path):
        project, slot, handler, identity, _ = self._setup(tmp_path)

        handler.handle_task_failure(project, slot, FAILURE_CODING, "tests fail")

        records = identity.get_recent_attempts("T-1")
        assert [r.outcome for r in records] == ["coding_failure"]
        stored = project.store.show(project.repo_path, "T-1")
        assert stored.cumulative_attempts == 1
        assert stored.comments[-1]["text"] == "Attempt 1 failed [coding_failure]: tests fail"

    def test_demotion_reopens_task_and_removes_branch(self, tmp_path):
        project, slot, handler, _, events = self._setup(tmp_path, cumulative_attempts=2)
        slot.attempt = 3

        decision = handler.handle_task_failure(project, slot, FAILURE_CODING, "still failing")

        assert decision.action == ACTION_DEMOTE
        stored = project.store.show(project.repo_path, "T-1")
        assert stored.status == STATUS_OPEN
        assert stored.priority == 3
        assert stored.assignee == ""
        assert not project.workspace.branch_exists("task/T-1")
        assert not (tmp_path / "worktrees" / "T-1").exists()
        assert events[-1]["action"] == ACTION_DEMOTE
        assert events[-1]["priority"] == 3

    def test_block_sets_reason_and_publishes(self, tmp_path):
        project, slot, handler, _, events = self._setup(tmp_path, priority=4, cumulative_attempts=5)
        slot.attempt = 6

        decision = handler.handle_task_failure(project, slot, FAILURE_REVIEW_REJECTION, "not good")

        assert decision.action == ACTION_BLOCK
        stored = project.store.show(project.repo_path, "T-1")
        assert stored.status == STATUS_BLOCKED
        assert stored.block_reason == "Coding Failure"
        assert events[-1]["type"] == EVENT_TASK_BLOCKED
        assert events[-1]["reason"] == "Coding Failure"
        # The archive survives the branch deletion
        assert SessionManager(project.state_dir).list_sessions("T-1") == [6]

    def test_missing_worktree_leaves_main_checkout_alone(self, tmp_path):
        project = make_project(tmp_path, tasks=[task("T-1", status=STATUS_IN_PROGRESS)])
        repo = tmp_path / "repo"
        (repo / "README.md").write_text("local edit\n")
        slot = AgentSlot(
            task_id="T-1", project_id=project.project_id,
            agent_config=AgentConfig("claude", "sonnet"), branch_name="task/T-1",
        )
        handler = FailureHandler(AgentIdentityService(), EventBus())

        decision = handler.handle_task_failure(
            project, slot, FAILURE_AGENT_CRASH, "Workspace setup failed")

        assert decision.action == ACTION_INFRA_RETRY
        assert git(repo, "log", "--format=%s").splitlines() == ["init"]
        assert git(repo, "status", "--porcelain", "--untracked-files=no").strip() == "M README.md"
        assert SessionManager(project.state_dir).load("T-1", 1)["diff"] == ""
