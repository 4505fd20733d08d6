"""
Git workspace management for task agents.

Two working modes are supported per project:

    worktree  Every task gets its own git worktree on a dedicated branch,
              so several agents can code in parallel.
    branches  The repository's own working directory checks out the task
              branch. There is only one working directory, so every git
              mutation holds a mutex and the scheduler runs one agent.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import re
import shutil
import subprocess
import tempfile
import threading
import time
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Optional

from .config import DEFAULT_BRANCH_PREFIX, DEFAULT_MAIN_BRANCH, GIT_MODE_BRANCHES, GIT_MODE_WORKTREE
from .console import log, verbose_log, warn
from .errors import GitCommandError, MergeConflictError

GIT_READY_TIMEOUT_SECONDS = 10
GIT_READY_POLL_SECONDS = 0.5
STALE_INDEX_LOCK_SECONDS = 30  # index.lock older than this is left over from a dead process

CONFLICT_MARKER_PATTERN = re.compile(r"^(<{7} |={7}$|>{7} )", re.MULTILINE)


def run_git(args: list[str], cwd: str, check: bool = True) -> subprocess.CompletedProcess:
    """Run a git command and return the completed process.

    Args:
        args: Arguments after "git"
        cwd: Directory to run in
        check: Raise GitCommandError on a non-zero exit

    Returns:
        The CompletedProcess with text stdout/stderr
    """
    cmd = ["git", *args]
    result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, check=False)
    verbose_log(f"{' '.join(cmd)} -> {result.returncode}", "GIT")
    if check and result.returncode != 0:
        raise GitCommandError(cmd, result.returncode, result.stderr or "")
    return result


class GitWorkspaceManager:
    """Creates, inspects, merges and removes per-task git workspaces."""

    def __init__(
        self,
        repo_path: str,
        mode: str = GIT_MODE_WORKTREE,
        main_branch: str = DEFAULT_MAIN_BRANCH,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
        worktree_base: Optional[str] = None,
        state_paths: Optional[list[str]] = None,
    ):
        self.repo_path = str(repo_path)
        self.mode = mode
        self.main_branch = main_branch
        self.branch_prefix = branch_prefix
        repo_name = os.path.basename(os.path.abspath(self.repo_path))
        self.worktree_base = Path(
            worktree_base or os.path.join(tempfile.gettempdir(), f"{repo_name}-worktrees")
        )
        # Shared working directory mutex for branches mode
        self._working_dir_lock = threading.RLock()
        # Serializes every change to main
        self._merge_lock = threading.RLock()
        # Orchestrator files inside the repo (backlog, state dir); "/" marks a directory
        self.state_paths = list(state_paths or [])
        self._state_excluded = False
        self._state_lock = threading.Lock()

    # =========================================================================
    # NAMING
    # =========================================================================

    def branch_name_for(self, task_id: str) -> str:
        return f"{self.branch_prefix}/{task_id}"

    def worktree_path_for(self, task_id: str) -> Path:
        return self.worktree_base / task_id

    def workspace_dir(self, worktree_path: Optional[str]) -> Optional[str]:
        """Directory an agent works in: its worktree, or the repo in branches mode.

        None in worktree mode when the task has no worktree. The repository
        root is main's checkout there and never belongs to a task.
        """
        if worktree_path:
            return worktree_path
        if self.mode == GIT_MODE_BRANCHES:
            return self.repo_path
        return None

    def _exclusive(self):
        if self.mode == GIT_MODE_BRANCHES:
            return self._working_dir_lock
        return nullcontext()

    @contextmanager
    def merge_lock(self):
        """Hold main exclusively across merge, conflict resolution and commit."""
        with self._merge_lock, self._exclusive():
            yield

    # =========================================================================
    # ORCHESTRATOR STATE
    # =========================================================================

    def exclude_state_paths(self) -> None:
        """List the orchestrator's own files in the repository's info/exclude.

        Excluded files are never staged by add -A, removed by clean -fd or
        swapped out by checkout, so the backlog and session archive survive
        whatever happens to task branches. info/exclude lives in the common
        git dir, so worktrees share it.
        """
        if not self.state_paths:
            return
        with self._state_lock:
            if self._state_excluded:
                return
            result = run_git(["rev-parse", "--git-path", "info/exclude"], self.repo_path, check=False)
            if result.returncode != 0:
                return
            exclude_file = Path(self.repo_path, result.stdout.strip())
            existing = exclude_file.read_text().splitlines() if exclude_file.exists() else []
            missing = [f"/{p}" for p in self.state_paths if f"/{p}" not in existing]
            if missing:
                exclude_file.parent.mkdir(parents=True, exist_ok=True)
                with open(exclude_file, "a") as f:
                    if existing and existing[-1].strip():
                        f.write("\n")
                    f.write("# task-orchestrator state\n")
                    f.write("".join(f"{line}\n" for line in missing))
                verbose_log(f"Excluded {', '.join(missing)} in {exclude_file}", "WORKSPACE")

            tracked = run_git(
                ["ls-files", "--", *self._state_pathspecs(exclude=False)], self.repo_path, check=False
            ).stdout.split()
            if tracked:
                warn(f"Orchestrator state is tracked by git and can be reset by task cleanup: "
                     f"{', '.join(tracked)}")
            self._state_excluded = True

    def _state_pathspecs(self, exclude: bool = True) -> list[str]:
        magic = ":(exclude)" if exclude else ""
        return [f"{magic}{p.rstrip('/')}" for p in self.state_paths]

    def _stage_all(self, path: str) -> None:
        """git add -A, leaving orchestrator state out of the index."""
        self.exclude_state_paths()
        run_git(["add", "-A", "--", ".", *self._state_pathspecs()], path)

    # =========================================================================
    # BRANCHES
    # =========================================================================

    def branch_exists(self, branch: str) -> bool:
        result = run_git(
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
            self.repo_path, check=False,
        )
        return result.returncode == 0

    def current_branch(self, path: Optional[str] = None) -> str:
        result = run_git(["branch", "--show-current"], path or self.repo_path, check=False)
        return result.stdout.strip()

    def create_or_checkout_branch(self, branch: str) -> None:
        """Check out branch in the shared working directory, creating it from main if missing.

        An existing branch keeps its history so a retry continues from the
        previous attempt's commits.
        """
        with self._exclusive():
            self.wait_for_git_ready()
            if self.branch_exists(branch):
                run_git(["checkout", branch], self.repo_path)
                verbose_log(f"Checked out existing branch {branch}", "WORKSPACE")
            else:
                run_git(["checkout", "-b", branch, self.main_branch], self.repo_path)
                verbose_log(f"Created branch {branch} from {self.main_branch}", "WORKSPACE")

    def delete_branch(self, branch: str) -> None:
        """Force-delete a branch. Missing branches are ignored."""
        with self._exclusive():
            result = run_git(["branch", "-D", branch], self.repo_path, check=False)
        if result.returncode == 0:
            verbose_log(f"Deleted branch {branch}", "WORKSPACE")

    # =========================================================================
    # WORKTREE MANAGEMENT
    # =========================================================================

    def create_task_worktree(self, task_id: str) -> str:
        """Create (or reuse) the worktree for a task.

        A valid worktree already on the task branch is reused as is. A stale
        directory is replaced; only committed branch content survives.

        Returns:
            Absolute path of the worktree
        """
        worktree_path = self.worktree_path_for(task_id)
        branch = self.branch_name_for(task_id)

        if worktree_path.exists():
            if (worktree_path / ".git").exists() and self.current_branch(str(worktree_path)) == branch:
                verbose_log(f"Reusing worktree {worktree_path}", "WORKSPACE")
                return str(worktree_path)
            log(f"Replacing stale worktree at {worktree_path}")
            self.remove_task_worktree(task_id)

        self.worktree_base.mkdir(parents=True, exist_ok=True)
        run_git(["worktree", "prune"], self.repo_path, check=False)

        if self.branch_exists(branch):
            run_git(["worktree", "add", str(worktree_path), branch], self.repo_path)
        else:
            run_git(
                ["worktree", "add", "-b", branch, str(worktree_path), self.main_branch],
                self.repo_path,
            )
        verbose_log(f"Created worktree at {worktree_path} on branch {branch}", "WORKSPACE")
        return str(worktree_path)

    def remove_task_worktree(self, task_id: str) -> None:
        """Force-remove a task's worktree. Uncommitted work in it is lost."""
        worktree_path = self.worktree_path_for(task_id)
        result = run_git(
            ["worktree", "remove", "--force", str(worktree_path)], self.repo_path, check=False
        )
        if result.returncode != 0 and worktree_path.exists():
            verbose_log(f"worktree remove failed, deleting {worktree_path} directly", "WORKSPACE")
            shutil.rmtree(worktree_path, ignore_errors=True)
        run_git(["worktree", "prune"], self.repo_path, check=False)

    def list_task_worktrees(self) -> list[tuple[str, str]]:
        """Return (task_id, path) for every registered worktree under the worktree base."""
        result = run_git(["worktree", "list", "--porcelain"], self.repo_path, check=False)
        base = os.path.realpath(str(self.worktree_base))
        found = []
        for line in result.stdout.splitlines():
            if not line.startswith("worktree "):
                continue
            path = line[len("worktree "):].strip()
            if os.path.dirname(os.path.realpath(path)) == base:
                found.append((os.path.basename(path), path))
        return found

    def prepare_workspace(self, task_id: str) -> tuple[Optional[str], str]:
        """Get a task ready for an agent.

        Returns:
            (worktree_path, branch_name). worktree_path is None in branches
            mode, where the agent works in the repository itself.
        """
        self.exclude_state_paths()
        branch = self.branch_name_for(task_id)
        if self.mode == GIT_MODE_BRANCHES:
            self.create_or_checkout_branch(branch)
            return None, branch
        return self.create_task_worktree(task_id), branch

    def revert_and_return_to_main(self, branch: Optional[str] = None) -> None:
        """Discard working-directory changes and go back to main (branches mode).

        Deletes branch afterwards when given.
        """
        self.exclude_state_paths()
        with self._exclusive():
            run_git(["reset", "--hard"], self.repo_path, check=False)
            run_git(["clean", "-fd"], self.repo_path, check=False)
            run_git(["checkout", self.main_branch], self.repo_path, check=False)
            if branch:
                run_git(["branch", "-D", branch], self.repo_path, check=False)

    def release_workspace(self, task_id: str, branch: str, delete_branch: bool) -> None:
        """Tear down whatever workspace the task used, optionally dropping its branch."""
        if self.mode == GIT_MODE_BRANCHES:
            self.revert_and_return_to_main(branch if delete_branch else None)
            return
        self.remove_task_worktree(task_id)
        if delete_branch:
            self.delete_branch(branch)

    # =========================================================================
    # DIFFS AND COMMITS
    # =========================================================================

    def capture_branch_diff(self, branch: str) -> str:
        """Diff a branch against main without checking it out. Empty on any error."""
        try:
            return run_git(["diff", f"{self.main_branch}...{branch}"], self.repo_path).stdout
        except GitCommandError as e:
            warn(f"Could not capture diff for {branch}: {e}")
            return ""

    def capture_uncommitted_diff(self, path: str) -> str:
        """Diff of everything uncommitted in a workspace, untracked files included.

        The index is restored afterwards so the working tree is left as found.
        """
        with self._exclusive():
            try:
                self._stage_all(path)
                return run_git(["diff", "--cached", "HEAD"], path).stdout
            except GitCommandError as e:
                warn(f"Could not capture uncommitted diff in {path}: {e}")
                return ""
            finally:
                run_git(["reset", "HEAD"], path, check=False)

    def commit_wip(self, path: str, task_id: str) -> bool:
        """Commit pending work in a workspace so it survives a retry.

        Returns:
            True if a commit was made
        """
        with self._exclusive():
            if self.current_branch(path) == self.main_branch:
                warn(f"Not committing work in progress for {task_id}: {path} is on {self.main_branch}")
                return False
            try:
                self._stage_all(path)
                staged = run_git(["diff", "--cached", "--quiet"], path, check=False)
                if staged.returncode == 0:
                    return False
                run_git(
                    ["commit", "--no-verify", "-m", f"WIP: partial work on {task_id}"], path
                )
                log(f"Committed work in progress for {task_id}")
                return True
            except GitCommandError as e:
                warn(f"Could not commit work in progress for {task_id}: {e}")
                return False

    def get_commit_count_ahead(self, branch: str) -> int:
        try:
            result = run_git(
                ["rev-list", "--count", f"{self.main_branch}..{branch}"], self.repo_path
            )
            return int(result.stdout.strip() or 0)
        except (GitCommandError, ValueError):
            return 0

    def get_changed_files(self, branch: str) -> list[str]:
        try:
            result = run_git(
                ["diff", "--name-only", f"{self.main_branch}...{branch}"], self.repo_path
            )
        except GitCommandError:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]

    # =========================================================================
    # MERGING
    # =========================================================================

    def merge_to_main(self, branch: str, message: str = "") -> None:
        """Merge a task branch into main at the repository root.

        On conflict the merge is left in progress so it can be resolved and
        finalized with commit_merge(), or dropped with merge_abort().

        Raises:
            MergeConflictError: The merge produced conflicted files
            GitCommandError: The merge failed for any other reason
        """
        with self.merge_lock():
            self.wait_for_git_ready()
            run_git(["checkout", self.main_branch], self.repo_path)
            result = run_git(
                ["merge", "--no-ff", "-m", message or f"Merge {branch}", branch],
                self.repo_path, check=False,
            )
            if result.returncode == 0:
                log(f"Merged {branch} into {self.main_branch}")
                return
            conflicted = self.get_conflicted_files()
            if conflicted:
                raise MergeConflictError(branch, conflicted)
            self.merge_abort()
            raise GitCommandError(["git", "merge", branch], result.returncode, result.stderr)

    def commit_merge(self, message: str = "") -> None:
        """Finalize an in-progress merge after its conflicts were resolved."""
        commit_args = ["-m", message] if message else ["--no-edit"]
        with self.merge_lock():
            self._stage_all(self.repo_path)
            run_git(["commit", *commit_args, "--no-verify"], self.repo_path)

    def merge_abort(self) -> None:
        with self._exclusive():
            run_git(["merge", "--abort"], self.repo_path, check=False)

    def is_merge_in_progress(self, path: Optional[str] = None) -> bool:
        result = run_git(
            ["rev-parse", "-q", "--verify", "MERGE_HEAD"], path or self.repo_path, check=False
        )
        return result.returncode == 0

    def verify_merge(self, branch: str) -> bool:
        """Check that branch shows up in `git branch --merged main`."""
        result = run_git(["branch", "--merged", self.main_branch], self.repo_path, check=False)
        if result.returncode != 0:
            return False
        merged = [line.strip().lstrip("*+ ").strip() for line in result.stdout.splitlines()]
        return branch in merged

    def get_conflicted_files(self, path: Optional[str] = None) -> list[str]:
        result = run_git(
            ["diff", "--name-only", "--diff-filter=U"], path or self.repo_path, check=False
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def has_conflict_markers(self, files: list[str], path: Optional[str] = None) -> bool:
        """Scan files (relative to path) for leftover <<<<<<< / ======= / >>>>>>> markers."""
        root = Path(path or self.repo_path)
        for name in files:
            file_path = root / name
            if not file_path.is_file():
                continue
            try:
                content = file_path.read_text(errors="replace")
            except OSError:
                continue
            if CONFLICT_MARKER_PATTERN.search(content):
                verbose_log(f"Conflict markers remain in {name}", "MERGE")
                return True
        return False

    # =========================================================================
    # REPOSITORY HEALTH
    # =========================================================================

    def _git_dir(self, path: str) -> Optional[str]:
        result = run_git(["rev-parse", "--absolute-git-dir"], path, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def wait_for_git_ready(self, path: Optional[str] = None,
                           timeout: float = GIT_READY_TIMEOUT_SECONDS) -> bool:
        """Wait until no index.lock is held, removing one left by a dead process.

        Returns:
            True when the repository is usable, False on timeout
        """
        git_dir = self._git_dir(path or self.repo_path)
        if git_dir is None:
            return False
        lock_path = os.path.join(git_dir, "index.lock")
        deadline = time.time() + timeout
        while os.path.exists(lock_path):
            try:
                age = time.time() - os.path.getmtime(lock_path)
            except OSError:
                continue
            if age > STALE_INDEX_LOCK_SECONDS:
                warn(f"Removing stale git index.lock ({age:.0f}s old) at {lock_path}")
                try:
                    os.remove(lock_path)
                except FileNotFoundError:
                    pass
                return True
            if time.time() >= deadline:
                return False
            time.sleep(GIT_READY_POLL_SECONDS)
        return True
