"""
Exception types raised by the orchestrator.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ConfigError(OrchestratorError):
    """Raised when orchestrator configuration holds an unusable value."""


class TaskNotFoundError(OrchestratorError):
    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class GitCommandError(OrchestratorError):
    """A git subprocess exited with a non-zero status."""

    def __init__(self, cmd: list[str], returncode: int, stderr: str = ""):
        super().__init__(
            f"{' '.join(cmd)} failed with exit code {returncode}: {stderr.strip()[:300]}"
        )
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr


class MergeConflictError(OrchestratorError):
    """Merging a task branch into main left conflicted files behind."""

    def __init__(self, branch: str, files: list[str]):
        super().__init__(
            f"Merge of {branch} into main conflicted in {len(files)} file(s): "
            f"{', '.join(files[:10])}"
        )
        self.branch = branch
        self.files = files


class IllegalTransitionError(OrchestratorError):
    def __init__(self, from_phase: str, to_phase: str):
        super().__init__(f"Illegal phase transition: {from_phase} -> {to_phase}")
        self.from_phase = from_phase
        self.to_phase = to_phase


class AgentSpawnError(OrchestratorError):
    """The agent binary could not be started."""
