"""
Agent invocation gateway: spawns coding, review and merge agents.

Every agent runs as a child process. Its combined stdout/stderr is read line
by line on a background thread so the scheduler can watch for inactivity.

Process handle contract:
  - output lines reach the collector (and on_output) in order
  - exactly one exit notification fires, after the last output line
  - kill() is safe to call any number of times, before or after exit

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
import shutil
import signal
import subprocess
import threading
import time
from typing import Callable, Optional

from .console import log, verbose_log, warn
from .errors import AgentSpawnError
from .models import AgentConfig

CLAUDE_BINARY_SEARCH_PATHS = [
    os.path.expanduser("~/.claude/local/node_modules/@anthropic-ai/claude-code/cli.js"),
    "/usr/local/lib/node_modules/@anthropic-ai/claude-code/cli.js",
    "/opt/homebrew/lib/node_modules/@anthropic-ai/claude-code/cli.js",
]

# CLAUDECODE marks nested sessions; strip it so agents can be spawned from one
STRIPPED_ENV_VARS = ["CLAUDECODE"]

KILL_GRACE_SECONDS = 5
OUTPUT_TAIL_LINES = 20


def build_child_env() -> dict[str, str]:
    """Build a clean environment for spawning agent child processes."""
    env = os.environ.copy()
    for var in STRIPPED_ENV_VARS:
        env.pop(var, None)
    env["PYTHONUNBUFFERED"] = "1"
    return env


def resolve_claude_binary() -> list[str]:
    """Find the claude binary, checking PATH then known install locations.

    Returns a command list (e.g. ['claude'] or ['node', '/path/to/cli.js']).
    """
    claude_path = shutil.which("claude")
    if claude_path:
        return [claude_path]

    for search_path in CLAUDE_BINARY_SEARCH_PATHS:
        if os.path.isfile(search_path):
            node_path = shutil.which("node")
            if node_path:
                return [node_path, search_path]

    npx_path = shutil.which("npx")
    if npx_path:
        return [npx_path, "@anthropic-ai/claude-code"]

    warn("Could not find 'claude' binary. Agents will fail to start.")
    return ["claude"]


def build_agent_command(config: AgentConfig, prompt: str) -> list[str]:
    """Build the CLI invocation for an agent backend.

    Raises:
        AgentSpawnError: When the backend is not known
    """
    if config.backend == "claude":
        cmd = [*resolve_claude_binary(), "--dangerously-skip-permissions", "--print", prompt]
        if config.model:
            cmd.extend(["--model", config.model])
        return cmd
    if config.backend == "codex":
        cmd = ["codex", "exec", "--full-auto"]
        if config.model:
            cmd.extend(["-m", config.model])
        cmd.append(prompt)
        return cmd
    raise AgentSpawnError(f"Unknown agent backend: {config.backend}")


class OutputCollector:
    """Collects output from an agent process and tracks stats."""

    def __init__(self):
        self.lines: list[str] = []
        self.bytes_received = 0
        self.line_count = 0
        self.last_output_at = time.time()
        self._lock = threading.Lock()

    def add_line(self, line: str) -> None:
        with self._lock:
            self.lines.append(line)
            self.bytes_received += len(line.encode("utf-8"))
            self.line_count += 1
            self.last_output_at = time.time()

    def get_output(self) -> str:
        with self._lock:
            return "".join(self.lines)

    def tail(self, count: int = OUTPUT_TAIL_LINES) -> str:
        with self._lock:
            return "".join(self.lines[-count:])


class AgentProcess:
    """Handle on one running agent child process."""

    def __init__(
        self,
        cmd: list[str],
        cwd: str,
        description: str,
        on_output: Optional[Callable[[str], None]] = None,
        on_exit: Optional[Callable[[int], None]] = None,
    ):
        self.cmd = cmd
        self.cwd = cwd
        self.description = description
        self.collector = OutputCollector()
        self.started_at = time.time()
        self.exit_code: Optional[int] = None
        self.killed = False
        self._on_output = on_output
        self._on_exit = on_exit
        self._process: Optional[subprocess.Popen] = None
        self._exited = threading.Event()
        self._kill_lock = threading.Lock()
        self._reader: Optional[threading.Thread] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def last_output_at(self) -> float:
        return self.collector.last_output_at

    def start(self) -> "AgentProcess":
        """Spawn the child and begin streaming its output.

        Raises:
            AgentSpawnError: The command could not be executed
        """
        try:
            self._process = subprocess.Popen(
                self.cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                cwd=self.cwd,
                env=build_child_env(),
                start_new_session=True,
            )
        except OSError as e:
            raise AgentSpawnError(f"Could not start {self.description}: {e}") from e

        log(f"Spawned agent PID {self._process.pid}: {self.description}")
        self._reader = threading.Thread(
            target=self._stream, name=f"agent-output-{self._process.pid}", daemon=True
        )
        self._reader.start()
        return self

    def _stream(self) -> None:
        try:
            for line in iter(self._process.stdout.readline, ""):
                if not line:
                    continue
                self.collector.add_line(line)
                if self._on_output:
                    try:
                        self._on_output(line)
                    except Exception as e:
                        verbose_log(f"Output callback failed for {self.description}: {e}", "AGENT")
        except (OSError, ValueError) as e:
            verbose_log(f"Error streaming {self.description}: {e}", "AGENT")
        finally:
            self.exit_code = self._process.wait()
            duration = time.time() - self.started_at
            log(f"Agent PID {self._process.pid} exited with code {self.exit_code} "
                f"after {duration:.0f}s: {self.description}")
            self._exited.set()
            if self._on_exit:
                try:
                    self._on_exit(self.exit_code)
                except Exception as e:
                    warn(f"Exit callback failed for {self.description}: {e}")

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until the process exits. Returns the exit code, or None on timeout."""
        if not self._exited.wait(timeout):
            return None
        return self.exit_code

    def is_running(self) -> bool:
        return self._process is not None and not self._exited.is_set()

    def get_output(self) -> str:
        return self.collector.get_output()

    def kill(self) -> None:
        """Terminate the agent's process group, escalating to SIGKILL after a grace period."""
        with self._kill_lock:
            if self.killed or self._process is None or self._exited.is_set():
                return
            self.killed = True
        log(f"Killing agent PID {self._process.pid}: {self.description}")
        _signal_group(self._process, signal.SIGTERM)
        try:
            self._process.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            warn(f"Agent PID {self._process.pid} ignored SIGTERM. Killing...")
            _signal_group(self._process, signal.SIGKILL)


def _signal_group(process: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(os.getpgid(process.pid), sig)
    except (ProcessLookupError, PermissionError, OSError):
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass


class AgentRunner:
    """Spawns agent processes and keeps a registry of the live ones.

    The registry lets shutdown kill every agent this orchestrator started.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self._live: dict[int, AgentProcess] = {}  # keyed by id(process)
        self._lock = threading.Lock()

    def spawn(
        self,
        config: AgentConfig,
        prompt: str,
        cwd: str,
        description: str,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> AgentProcess:
        cmd = build_agent_command(config, prompt)
        if self.dry_run:
            cmd = ["echo", f"[DRY RUN] {config.agent_id}: {description}"]
        verbose_log(f"Command: {' '.join(cmd[:3])}... in {cwd}", "AGENT")

        process = AgentProcess(
            cmd, cwd, description,
            on_output=on_output,
            on_exit=lambda _code: self._unregister(process),
        )
        # Registered before start so a fast exit cannot leave a stale entry
        with self._lock:
            self._live[id(process)] = process
        try:
            process.start()
        except AgentSpawnError:
            self._unregister(process)
            raise
        return process

    def _unregister(self, process: AgentProcess) -> None:
        with self._lock:
            self._live.pop(id(process), None)

    def live_processes(self) -> list[AgentProcess]:
        with self._lock:
            return list(self._live.values())

    def kill_all(self) -> int:
        """Kill every live agent. Returns how many were signalled."""
        processes = self.live_processes()
        for process in processes:
            process.kill()
        return len(processes)
