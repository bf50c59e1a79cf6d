"""Slack Web API client (httpx)."""

from typing import Any, Dict, List, Optional

import httpx

from core.logging import get_logger, log_api_call

logger = get_logger(__name__)


class SlackAPIError(Exception):
    """Slack answered with ``ok: false`` or an HTTP error."""

    def __init__(self, method: str, error: str):
        self.method = method
        self.error = error
        super().__init__(f"Slack {method} failed: {error}")


class SlackClient:
    """Minimal async Slack Web API client for the deployment bot."""

    def __init__(
        self,
        token: Optional[str],
        api_url: str = "https://slack.com/api",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.api_url = api_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def call(self, method: str, json: Optional[Dict[str, Any]] = None,
                   data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """POST a Web API method and return the decoded payload."""
        try:
            response = await self._client.post(
                f"{self.api_url}/{method}",
                json=json,
                data=data,
                headers=self._headers,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            log_api_call(logger, "slack", method, False, error=str(e))
            raise SlackAPIError(method, str(e)) from e

        if not payload.get("ok"):
            log_api_call(logger, "slack", method, False, error=payload.get("error"))
            raise SlackAPIError(method, payload.get("error", "unknown_error"))

        log_api_call(logger, "slack", method, True)
        return payload

    async def post_message(
        self,
        channel: str,
        text: str,
        thread_ts: Optional[str] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
        blocks: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"channel": channel, "text": text, "mrkdwn": True}
        if thread_ts:
            body["thread_ts"] = thread_ts
        if attachments:
            body["attachments"] = attachments
        if blocks:
            body["blocks"] = blocks
        return await self.call("chat.postMessage", json=body)

    async def add_reaction(self, channel: str, timestamp: str, name: str) -> None:
        await self.call("reactions.add", json={"channel": channel, "timestamp": timestamp, "name": name})

    async def remove_reaction(self, channel: str, timestamp: str, name: str) -> None:
        await self.call("reactions.remove", json={"channel": channel, "timestamp": timestamp, "name": name})

    async def upload_file(
        self,
        channel: str,
        content: str,
        filename: str,
        thread_ts: Optional[str] = None,
    ) -> str:
        """Upload text as a file into a channel/thread (external upload flow)."""
        data = content.encode("utf-8")
        ticket = await self.call(
            "files.getUploadURLExternal",
            data={"filename": filename, "length": str(len(data))},
        )

        try:
            response = await self._client.post(ticket["upload_url"], content=data)
            response.raise_for_status()
        except httpx.HTTPError as e:
            log_api_call(logger, "slack", "file-upload", False, error=str(e))
            raise SlackAPIError("file-upload", str(e)) from e

        complete: Dict[str, Any] = {
            "files": [{"id": ticket["file_id"], "title": filename}],
            "channel_id": channel,
        }
        if thread_ts:
            complete["thread_ts"] = thread_ts
        await self.call("files.completeUploadExternal", json=complete)
        return ticket["file_id"]

    async def respond(self, response_url: str, text: str, ephemeral: bool = True) -> None:
        """Reply through an interaction ``response_url``."""
        body = {"text": text, "response_type": "ephemeral" if ephemeral else "in_channel"}
        try:
            response = await self._client.post(response_url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            log_api_call(logger, "slack", "response_url", False, error=str(e))
            raise SlackAPIError("response_url", str(e)) from e
