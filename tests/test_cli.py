# tests/test_cli.py
# Tests for the command line entry point and the scripts/ wrapper.

import argparse
import importlib.util

import pytest
import yaml

from task_orchestrator import cli
from task_orchestrator.config import OrchestratorSettings
from task_orchestrator.errors import ConfigError
from task_orchestrator.models import STATUS_BLOCKED, STATUS_OPEN, Task
from task_orchestrator.task_store import YamlTaskStore


def _backlog(tmp_path, *tasks):
    store = YamlTaskStore()
    for t in tasks:
        store.create_task(str(tmp_path), t)
    return store


def _args(**overrides):
    defaults = {"mode": None, "max_agents": None, "review": None, "backlog": None}
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


# --- apply_cli_overrides tests ---


def test_overrides_replace_config_values():
    settings = cli.apply_cli_overrides(
        OrchestratorSettings(),
        _args(mode="branches", max_agents=5, review="always", backlog="tasks.yaml"),
    )
    assert settings.git_working_mode == "branches"
    assert settings.max_concurrent_coders == 5
    assert settings.max_agents == 1
    assert settings.review_mode == "always"
    assert settings.backlog_path == "tasks.yaml"


def test_no_overrides_keep_defaults():
    settings = cli.apply_cli_overrides(OrchestratorSettings(), _args())
    assert settings == OrchestratorSettings()


def test_zero_agents_rejected():
    with pytest.raises(ConfigError):
        cli.apply_cli_overrides(OrchestratorSettings(), _args(max_agents=0))


# --- main tests ---


def test_invalid_mode_rejected_by_parser(tmp_path):
    with pytest.raises(SystemExit) as exc:
        cli.main(["--repo", str(tmp_path), "--mode", "sandbox"])
    assert exc.value.code == 2


def test_bad_config_file_exits_2(tmp_path, capsys):
    config = tmp_path / "config.yaml"
    config.write_text(yaml.dump({"review_mode": "sometimes"}))
    assert cli.main(["--repo", str(tmp_path), "--config", str(config)]) == 2
    assert "review_mode" in capsys.readouterr().err


def test_status_prints_counts(tmp_path, capsys):
    _backlog(tmp_path,
             Task(id="T-1", title="one"),
             Task(id="T-2", title="two", status=STATUS_BLOCKED, block_reason="Open Question"))

    assert cli.main(["--repo", str(tmp_path), "--status"]) == 0

    out = capsys.readouterr().out
    assert "Tasks: blocked=1, open=1" in out
    assert "T-2 blocked: Open Question" in out
    assert "Queue depth: 1" in out


def test_dry_run_lists_assignments(tmp_path, capsys):
    _backlog(tmp_path, Task(id="T-1", title="Simple", complexity=2),
             Task(id="T-2", title="Hard", complexity=9))

    assert cli.main(["--repo", str(tmp_path), "--dry-run"]) == 0

    out = capsys.readouterr().out
    assert "Would assign T-1 (Simple) to claude-sonnet on task/T-1" in out
    assert "Would assign T-2 (Hard) to claude-opus on task/T-2" in out


def test_sweep_reopens_technical_blocks(tmp_path):
    store = _backlog(tmp_path,
                     Task(id="T-1", title="one", status=STATUS_BLOCKED, block_reason="Coding Failure"))

    assert cli.main(["--repo", str(tmp_path), "--sweep"]) == 0
    assert store.show(str(tmp_path), "T-1").status == STATUS_OPEN


def test_actions_are_mutually_exclusive(tmp_path):
    with pytest.raises(SystemExit):
        cli.main(["--repo", str(tmp_path), "--status", "--sweep"])


# --- scripts/ wrapper tests ---


def test_script_wrapper_exposes_main():
    spec = importlib.util.spec_from_file_location("task_orchestrator_script", "scripts/task-orchestrator.py")
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    assert mod.main is cli.main
