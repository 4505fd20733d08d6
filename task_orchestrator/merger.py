"""
Merger agent: resolves conflict markers left by a merge into main.

The agent runs in the repository root, where the merge is in progress. It
only edits files. Finalizing the merge is left to the caller, which commits
only after checking that no conflict markers remain.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import tempfile

from .agent_runner import AgentRunner
from .console import log, warn
from .errors import AgentSpawnError
from .git_workspace import GitWorkspaceManager
from .models import AgentConfig

MERGER_TIMEOUT_SECONDS = 1800

MERGER_PROMPT_TEMPLATE = """You are a MERGER. A git merge of branch {branch} into {main_branch}
stopped with conflicts. Resolve them.

## Conflicted files

{file_list}

## Instructions

1. Open each conflicted file and read both sides of every conflict.
2. Edit the file so it keeps the intent of both sides.
3. Remove every conflict marker (<<<<<<<, =======, >>>>>>>).
4. Do not touch files that are not listed above.

## Rules

- Do NOT run git commit, git merge --continue, git merge --abort,
  git rebase --continue or git add. The orchestrator finalizes the merge
  after checking your work.
- Do NOT delete a file to make a conflict go away.
"""


def build_merger_prompt(branch: str, main_branch: str, conflicted_files: list[str]) -> str:
    file_list = "\n".join(f"- {name}" for name in conflicted_files)
    return MERGER_PROMPT_TEMPLATE.format(
        branch=branch, main_branch=main_branch, file_list=file_list
    )


def run_merger_agent(
    runner: AgentRunner,
    workspace: GitWorkspaceManager,
    config: AgentConfig,
    branch: str,
    conflicted_files: list[str],
) -> bool:
    """Run the merger agent at the repository root and wait for it.

    Returns:
        True when the agent exited 0 and no conflict markers remain
    """
    fd, prompt_path = tempfile.mkstemp(prefix="merger-prompt-", suffix=".md")
    with os.fdopen(fd, "w") as f:
        f.write(build_merger_prompt(branch, workspace.main_branch, conflicted_files))

    log(f"[MERGER] Resolving {len(conflicted_files)} conflicted file(s) for {branch}")
    try:
        process = runner.spawn(
            config,
            f"Read the instructions in {prompt_path} and follow them exactly.",
            cwd=workspace.repo_path,
            description=f"merger {branch}",
        )
        exit_code = process.wait(timeout=MERGER_TIMEOUT_SECONDS)
        if exit_code is None:
            warn(f"Merger agent for {branch} timed out after {MERGER_TIMEOUT_SECONDS}s")
            process.kill()
            exit_code = process.wait()
    except AgentSpawnError as e:
        warn(f"Merger agent could not start: {e}")
        return False
    finally:
        try:
            os.unlink(prompt_path)
        except OSError:
            pass

    if exit_code != 0:
        warn(f"Merger agent for {branch} exited with code {exit_code}")
        return False
    if workspace.has_conflict_markers(conflicted_files):
        warn(f"Merger agent for {branch} left conflict markers behind")
        return False
    log(f"[MERGER] Conflicts for {branch} resolved")
    return True
