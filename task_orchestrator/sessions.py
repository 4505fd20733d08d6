"""
Durable per-attempt session archive.

Each failed or finished attempt is written to
<state_dir>/sessions/<task_id>-<attempt>/ before its workspace is touched,
so the agent's output and diff survive even when the worktree is deleted.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import json
import os
import time
from pathlib import Path
from typing import Optional

from .console import verbose_log

SESSIONS_DIRNAME = "sessions"
SESSION_FILENAME = "session.json"
OUTPUT_LOG_FILENAME = "output.log"
DIFF_FILENAME = "diff.patch"


class SessionManager:
    """Writes and reads archived agent sessions."""

    def __init__(self, state_dir: str):
        self.sessions_dir = Path(state_dir) / SESSIONS_DIRNAME

    def session_dir(self, task_id: str, attempt: int) -> Path:
        return self.sessions_dir / f"{task_id}-{attempt}"

    def archive(
        self,
        task_id: str,
        attempt: int,
        output_log: str = "",
        diff: str = "",
        failure_reason: str = "",
        agent_id: str = "",
        outcome: str = "",
        failure_type: Optional[str] = None,
    ) -> Path:
        """Archive one attempt. Re-archiving the same attempt overwrites it.

        Returns:
            Path of the written session.json
        """
        directory = self.session_dir(task_id, attempt)
        directory.mkdir(parents=True, exist_ok=True)

        (directory / OUTPUT_LOG_FILENAME).write_text(output_log)
        (directory / DIFF_FILENAME).write_text(diff)

        record = {
            "task_id": task_id,
            "attempt": attempt,
            "agent_id": agent_id,
            "outcome": outcome,
            "failure_type": failure_type,
            "failure_reason": failure_reason,
            "archived_at": time.time(),
            "output_bytes": len(output_log.encode("utf-8")),
            "diff_bytes": len(diff.encode("utf-8")),
        }
        session_path = directory / SESSION_FILENAME
        with open(session_path, "w") as f:
            json.dump(record, f, indent=2)
        verbose_log(f"Archived session {directory.name}", "SESSION")
        return session_path

    def load(self, task_id: str, attempt: int) -> Optional[dict]:
        """Load an archived session, including its output and diff."""
        directory = self.session_dir(task_id, attempt)
        session_path = directory / SESSION_FILENAME
        if not session_path.exists():
            return None
        with open(session_path, "r") as f:
            record = json.load(f)
        for key, filename in (("output_log", OUTPUT_LOG_FILENAME), ("diff", DIFF_FILENAME)):
            path = directory / filename
            record[key] = path.read_text() if path.exists() else ""
        return record

    def list_sessions(self, task_id: str) -> list[int]:
        """Attempt numbers archived for a task, ascending."""
        if not self.sessions_dir.is_dir():
            return []
        prefix = f"{task_id}-"
        attempts = []
        for name in os.listdir(self.sessions_dir):
            suffix = name[len(prefix):]
            if name.startswith(prefix) and suffix.isdigit():
                attempts.append(int(suffix))
        return sorted(attempts)
