"""Where chat replies go: a thread in a Slack channel."""

from typing import Any, Dict, List, Optional, Protocol

from constants import CANCEL_ACTION_ID, COLOR_ERROR
from core.logging import get_logger
from services.slack_client import SlackClient

logger = get_logger(__name__)


class Responder(Protocol):
    """Reply surface used by the command handlers."""

    async def send_message(self, title: str, text: Optional[str] = None, color: Optional[str] = None,
                           attachments: Optional[List[Dict[str, Any]]] = None) -> None: ...

    async def send_error(self, title: str, text: str) -> None: ...

    async def set_reaction(self, name: str) -> None: ...

    async def upload_log(self, content: str) -> None: ...


def cancel_button(target_key: str) -> Dict[str, Any]:
    """Attachment with a button that cancels the deployment for ``target_key``."""
    return {
        "blocks": [
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "action_id": CANCEL_ACTION_ID,
                        "text": {"type": "plain_text", "text": "Cancel deployment"},
                        "style": "danger",
                        "value": target_key,
                    }
                ],
            }
        ]
    }


class SlackThreadResponder:
    """Replies in the thread of the message that triggered a command."""

    def __init__(self, client: SlackClient, channel: str, thread_ts: str):
        self.client = client
        self.channel = channel
        self.thread_ts = thread_ts
        self._reaction: Optional[str] = None

    async def send_message(self, title: str, text: Optional[str] = None, color: Optional[str] = None,
                           attachments: Optional[List[Dict[str, Any]]] = None) -> None:
        attachments = list(attachments or [])
        if text is None:
            await self.client.post_message(self.channel, title, thread_ts=self.thread_ts,
                                           attachments=attachments)
            return

        body = {"text": text, "mrkdwn_in": ["text"]}
        if color:
            body["color"] = color
        await self.client.post_message(
            self.channel,
            f"*{title}*",
            thread_ts=self.thread_ts,
            attachments=[body, *attachments],
        )

    async def send_error(self, title: str, text: str) -> None:
        await self.send_message(title, text, COLOR_ERROR)

    async def set_reaction(self, name: str) -> None:
        """Replace the current reaction on the triggering message."""
        if self._reaction == name:
            return
        if self._reaction:
            await self.client.remove_reaction(self.channel, self.thread_ts, self._reaction)
        self._reaction = name
        await self.client.add_reaction(self.channel, self.thread_ts, name)

    async def upload_log(self, content: str) -> None:
        await self.client.upload_file(self.channel, content, "error.txt", thread_ts=self.thread_ts)
