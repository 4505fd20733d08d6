"""
A project the orchestrator drives: one repository, its settings and its store.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
from dataclasses import dataclass
from typing import Optional

from .config import OrchestratorSettings
from .git_workspace import GitWorkspaceManager
from .task_store import TaskStore, YamlTaskStore


@dataclass
class Project:
    project_id: str
    repo_path: str
    settings: OrchestratorSettings
    store: TaskStore
    workspace: Optional[GitWorkspaceManager] = None

    def __post_init__(self):
        if self.workspace is None:
            self.workspace = GitWorkspaceManager(
                self.repo_path,
                mode=self.settings.git_working_mode,
                main_branch=self.settings.main_branch,
                branch_prefix=self.settings.branch_prefix,
                state_paths=self.settings.state_paths(),
            )

    @property
    def state_dir(self) -> str:
        if os.path.isabs(self.settings.state_dir):
            return self.settings.state_dir
        return os.path.join(self.repo_path, self.settings.state_dir)


def build_project(
    repo_path: str,
    settings: OrchestratorSettings,
    project_id: Optional[str] = None,
    store: Optional[TaskStore] = None,
) -> Project:
    """Assemble a Project with a YAML task store unless another store is given."""
    repo_path = os.path.abspath(repo_path)
    return Project(
        project_id=project_id or os.path.basename(repo_path),
        repo_path=repo_path,
        settings=settings,
        store=store or YamlTaskStore(settings.backlog_path),
    )
