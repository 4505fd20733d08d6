"""
Project configuration for the task orchestrator.

Settings live in .claude/orchestrator-config.yaml next to the repository.
A missing or unreadable file yields the defaults below.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
from dataclasses import dataclass, field
from typing import Optional

import yaml

from .errors import ConfigError
from .models import AGENT_INACTIVITY_TIMEOUT_SECONDS, AgentConfig

ORCHESTRATOR_CONFIG_PATH = ".claude/orchestrator-config.yaml"
DEFAULT_BACKLOG_PATH = ".claude/backlog.yaml"
DEFAULT_STATE_DIR = ".claude/orchestrator"
SLACK_CONFIG_PATH = ".claude/slack.local.yaml"

GIT_MODE_WORKTREE = "worktree"
GIT_MODE_BRANCHES = "branches"
GIT_WORKING_MODES = (GIT_MODE_WORKTREE, GIT_MODE_BRANCHES)

REVIEW_ALWAYS = "always"
REVIEW_NEVER = "never"
REVIEW_ON_FAILURE_ONLY = "on-failure-only"
REVIEW_MODES = (REVIEW_ALWAYS, REVIEW_NEVER, REVIEW_ON_FAILURE_ONLY)

DEFAULT_MAX_CONCURRENT_CODERS = 3
DEFAULT_TICK_INTERVAL_SECONDS = 5
DEFAULT_WATCHDOG_INTERVAL_SECONDS = 30
DEFAULT_AUTO_RETRY_INTERVAL_HOURS = 8
DEFAULT_SIMPLE_COMPLEXITY_MAX = 5
DEFAULT_BRANCH_PREFIX = "task"
DEFAULT_MAIN_BRANCH = "main"

# Model escalation ladders per backend, lowest capability first
DEFAULT_MODEL_LADDERS: dict[str, list[str]] = {
    "claude": ["haiku", "sonnet", "opus"],
}

DEFAULT_SIMPLE_AGENT = AgentConfig(backend="claude", model="sonnet")
DEFAULT_COMPLEX_AGENT = AgentConfig(backend="claude", model="opus")


def load_orchestrator_config(config_path: str = ORCHESTRATOR_CONFIG_PATH) -> dict:
    """Load project-level orchestrator config from .claude/orchestrator-config.yaml.

    Returns the parsed dict, or an empty dict if the file doesn't exist.
    """
    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
        return config if isinstance(config, dict) else {}
    except (IOError, yaml.YAMLError):
        return {}


@dataclass
class OrchestratorSettings:
    """Per-project orchestration settings."""
    git_working_mode: str = GIT_MODE_WORKTREE
    max_concurrent_coders: int = DEFAULT_MAX_CONCURRENT_CODERS
    review_mode: str = REVIEW_NEVER
    branch_prefix: str = DEFAULT_BRANCH_PREFIX
    main_branch: str = DEFAULT_MAIN_BRANCH
    tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS
    watchdog_interval_seconds: float = DEFAULT_WATCHDOG_INTERVAL_SECONDS
    agent_inactivity_timeout_seconds: float = AGENT_INACTIVITY_TIMEOUT_SECONDS
    auto_retry_interval_hours: float = DEFAULT_AUTO_RETRY_INTERVAL_HOURS
    simple_complexity_max: int = DEFAULT_SIMPLE_COMPLEXITY_MAX
    simple_agent: AgentConfig = field(default_factory=lambda: AgentConfig(
        DEFAULT_SIMPLE_AGENT.backend, DEFAULT_SIMPLE_AGENT.model))
    complex_agent: AgentConfig = field(default_factory=lambda: AgentConfig(
        DEFAULT_COMPLEX_AGENT.backend, DEFAULT_COMPLEX_AGENT.model))
    review_agent: Optional[AgentConfig] = None
    merger_agent: Optional[AgentConfig] = None
    model_ladders: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_MODEL_LADDERS.items()})
    backlog_path: str = DEFAULT_BACKLOG_PATH
    state_dir: str = DEFAULT_STATE_DIR

    @property
    def max_agents(self) -> int:
        """Effective concurrency cap. Branches mode shares one working directory."""
        if self.git_working_mode == GIT_MODE_BRANCHES:
            return 1
        return max(1, self.max_concurrent_coders)

    @property
    def auto_retry_interval_seconds(self) -> float:
        return self.auto_retry_interval_hours * 3600

    def agent_for_complexity(self, complexity: int) -> AgentConfig:
        """Pick the base agent config from the task's complexity tier."""
        if complexity <= self.simple_complexity_max:
            return self.simple_agent
        return self.complex_agent

    def should_review(self, logic_failures: int) -> bool:
        """Whether coding output goes to a reviewer.

        on-failure-only looks at logic failures already counted against the
        task. Crashes and timeouts are not counted, so they never turn review on.
        """
        if self.review_mode == REVIEW_ALWAYS:
            return True
        if self.review_mode == REVIEW_ON_FAILURE_ONLY:
            return logic_failures > 0
        return False

    def state_paths(self) -> list[str]:
        """Repository-relative orchestrator files that git must never touch.

        Directories end with "/". Absolute locations live outside the
        repository and are not listed.
        """
        paths = []
        if not os.path.isabs(self.backlog_path):
            backlog = os.path.normpath(self.backlog_path)
            paths += [backlog, f"{backlog}.*.tmp"]
        if not os.path.isabs(self.state_dir):
            paths.append(os.path.normpath(self.state_dir) + "/")
        return paths


def parse_orchestrator_settings(config: dict) -> OrchestratorSettings:
    """Parse orchestrator settings from a loaded config dict.

    Args:
        config: Dict loaded from orchestrator-config.yaml (may be empty)

    Returns:
        OrchestratorSettings with defaults for any missing keys

    Raises:
        ConfigError: When git_working_mode or review_mode is not recognised
    """
    settings = OrchestratorSettings()

    mode = config.get("git_working_mode", settings.git_working_mode)
    if mode not in GIT_WORKING_MODES:
        raise ConfigError(f"git_working_mode must be one of {GIT_WORKING_MODES}, got {mode!r}")
    settings.git_working_mode = mode

    review_mode = config.get("review_mode", settings.review_mode)
    if review_mode not in REVIEW_MODES:
        raise ConfigError(f"review_mode must be one of {REVIEW_MODES}, got {review_mode!r}")
    settings.review_mode = review_mode

    settings.max_concurrent_coders = int(
        config.get("max_concurrent_coders", settings.max_concurrent_coders))
    settings.branch_prefix = str(config.get("branch_prefix", settings.branch_prefix))
    settings.main_branch = str(config.get("main_branch", settings.main_branch))
    settings.tick_interval_seconds = float(
        config.get("tick_interval_seconds", settings.tick_interval_seconds))
    settings.watchdog_interval_seconds = float(
        config.get("watchdog_interval_seconds", settings.watchdog_interval_seconds))
    settings.agent_inactivity_timeout_seconds = float(
        config.get("agent_inactivity_timeout_seconds", settings.agent_inactivity_timeout_seconds))
    settings.auto_retry_interval_hours = float(
        config.get("auto_retry_interval_hours", settings.auto_retry_interval_hours))
    settings.simple_complexity_max = int(
        config.get("simple_complexity_max", settings.simple_complexity_max))
    settings.backlog_path = str(config.get("backlog_path", settings.backlog_path))
    settings.state_dir = str(config.get("state_dir", settings.state_dir))

    agents = config.get("agents", {})
    if isinstance(agents, dict):
        settings.simple_agent = AgentConfig.from_dict(agents.get("simple"), settings.simple_agent)
        settings.complex_agent = AgentConfig.from_dict(agents.get("complex"), settings.complex_agent)
        if agents.get("review"):
            settings.review_agent = AgentConfig.from_dict(agents["review"], settings.simple_agent)
        if agents.get("merger"):
            settings.merger_agent = AgentConfig.from_dict(agents["merger"], settings.simple_agent)

    ladders = config.get("model_ladders", {})
    if isinstance(ladders, dict):
        for backend, ladder in ladders.items():
            if isinstance(ladder, list) and ladder:
                settings.model_ladders[str(backend)] = [str(m) for m in ladder]

    return settings


def load_settings(config_path: str = ORCHESTRATOR_CONFIG_PATH) -> OrchestratorSettings:
    return parse_orchestrator_settings(load_orchestrator_config(config_path))
