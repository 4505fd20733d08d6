"""
Slack notifications for events a human should see.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import json
import urllib.request

import yaml

from .config import SLACK_CONFIG_PATH
from .console import verbose_log
from .events import EVENT_AGENT_COMPLETED, EVENT_TASK_BLOCKED
from .models import PRIORITY_LABELS, is_technical_block_reason

SLACK_POST_URL = "https://slack.com/api/chat.postMessage"
SLACK_TIMEOUT_SECONDS = 10
SLACK_LEVEL_EMOJI = {
    "info": ":large_blue_circle:",
    "success": ":white_check_mark:",
    "error": ":x:",
    "warning": ":warning:",
    "question": ":question:",
}


class SlackNotifier:
    """Sends messages to Slack via the Web API.

    Reads .claude/slack.local.yaml on init. If the file is missing or
    slack.enabled is false, every method is a silent no-op. Individual
    event kinds are switched on under slack.notify:

        slack:
          enabled: true
          bot_token: xoxb-...
          channel_id: C0123
          notify:
            on_task_blocked: true
            on_task_done: false
            on_demotion: false
    """

    def __init__(self, config_path: str = SLACK_CONFIG_PATH):
        self._enabled = False
        self._bot_token = ""
        self._channel_id = ""
        self._notify_config: dict = {}

        try:
            with open(config_path, "r") as f:
                config = yaml.safe_load(f)
        except (IOError, yaml.YAMLError):
            return

        if not isinstance(config, dict):
            return
        slack_config = config.get("slack", {})
        if not isinstance(slack_config, dict):
            return

        self._enabled = bool(slack_config.get("enabled", False))
        if not self._enabled:
            return
        self._bot_token = slack_config.get("bot_token", "")
        self._channel_id = slack_config.get("channel_id", "")
        notify = slack_config.get("notify", {})
        self._notify_config = notify if isinstance(notify, dict) else {}

    def is_enabled(self) -> bool:
        return self._enabled

    def _should_notify(self, event: str, default: bool = False) -> bool:
        return self._enabled and bool(self._notify_config.get(event, default))

    def _post_message(self, payload: dict) -> bool:
        """POST a message via chat.postMessage. Returns True when Slack answers ok."""
        if not self._bot_token or not self._channel_id:
            return False

        payload["channel"] = self._channel_id
        try:
            req = urllib.request.Request(
                SLACK_POST_URL,
                data=json.dumps(payload).encode("utf-8"),
                headers={
                    "Content-Type": "application/json; charset=utf-8",
                    "Authorization": f"Bearer {self._bot_token}",
                },
            )
            with urllib.request.urlopen(req, timeout=SLACK_TIMEOUT_SECONDS) as resp:
                result = json.loads(resp.read())
                return result.get("ok", False)
        except Exception as e:
            print(f"[SLACK] Failed to post message: {e}")
            return False

    def _build_status_block(self, message: str, level: str) -> dict:
        emoji = SLACK_LEVEL_EMOJI.get(level, ":large_blue_circle:")
        return {
            "blocks": [{
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"{emoji} {message}"},
            }]
        }

    def send_status(self, message: str, level: str = "info") -> None:
        """Send a status update to Slack. No-op if disabled."""
        if not self._enabled or not self._bot_token or not self._channel_id:
            return
        self._post_message(self._build_status_block(message, level))

    def notify_task_blocked(self, task_id: str, reason: str, detail: str = "") -> None:
        """Tell humans a task stopped. Technical blocks are warnings, human ones questions."""
        if not self._should_notify("on_task_blocked", default=True):
            return
        level = "warning" if is_technical_block_reason(reason) else "question"
        message = f"*Task {task_id} blocked:* {reason}"
        if detail:
            message += f"\n{detail[:500]}"
        self.send_status(message, level=level)

    def notify_task_done(self, task_id: str, title: str = "") -> None:
        if not self._should_notify("on_task_done"):
            return
        self.send_status(f"*Task {task_id} merged:* {title}".rstrip(), level="success")

    def notify_demotion(self, task_id: str, new_priority: int) -> None:
        if not self._should_notify("on_demotion"):
            return
        label = PRIORITY_LABELS.get(new_priority, str(new_priority))
        self.send_status(f"*Task {task_id} demoted* to P{new_priority} ({label})", level="warning")

    def handle_event(self, event: dict) -> None:
        """EventBus subscriber turning lifecycle events into notifications."""
        event_type = event.get("type")
        task_id = event.get("task_id", "")
        if event_type == EVENT_TASK_BLOCKED:
            self.notify_task_blocked(task_id, event.get("reason", ""), event.get("detail", ""))
        elif event_type == EVENT_AGENT_COMPLETED and event.get("status") == "closed":
            self.notify_task_done(task_id, event.get("title", ""))
        elif event.get("action") == "demote":
            self.notify_demotion(task_id, int(event.get("priority", 0)))
        else:
            verbose_log(f"No notification for {event_type}", "SLACK")
