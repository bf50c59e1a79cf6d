"""Slack Events API and interactivity endpoints.

Mentions of the bot are dispatched to the chat-ops command layer in a
background task so Slack gets its acknowledgement within three seconds.
"""
import asyncio
from typing import Any, Dict, Set
from urllib.parse import parse_qs

import orjson
from fastapi import APIRouter, Depends, HTTPException, Request

from constants import CANCEL_ACTION_ID, SLACK_EVENT_TYPES
from core.container import container
from core.logging import get_logger
from middleware.auth import verify_slack_request
from services.chatops import SlackThreadResponder

logger = get_logger(__name__)
router = APIRouter(prefix="/slack", tags=["slack"])

# Command runs in flight; referenced so they are not garbage collected
_command_tasks: Set[asyncio.Task] = set()


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _command_tasks.add(task)
    task.add_done_callback(_on_task_done)
    return task


def _on_task_done(task: asyncio.Task) -> None:
    _command_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("Slack handler failed", error=str(error))


async def wait_for_commands() -> None:
    """Wait for in-flight command runs (used on shutdown and in tests)."""
    if _command_tasks:
        await asyncio.gather(*list(_command_tasks), return_exceptions=True)


async def _handle_mention(event: Dict[str, Any]) -> None:
    dispatcher = container.dispatcher()
    responder = SlackThreadResponder(container.slack_client(), event["channel"], event["ts"])
    await dispatcher.dispatch(event["channel"], event.get("user", ""), event.get("text", ""), responder)


async def _handle_member_joined(event: Dict[str, Any]) -> None:
    dispatcher = container.dispatcher()
    if not dispatcher.access.is_allowed_channel(event.get("channel")):
        return
    await container.slack_client().post_message(event["channel"], dispatcher.welcome_text(event["user"]))


@router.post("/events")
async def handle_event(request: Request, body: bytes = Depends(verify_slack_request)):
    """Receive Events API callbacks."""
    try:
        payload = orjson.loads(body)
    except orjson.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON") from None

    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge")}

    if request.headers.get("x-slack-retry-num"):
        # First delivery is already being handled
        logger.info("Ignoring Slack retry", retry=request.headers.get("x-slack-retry-num"))
        return {"ok": True}

    event = payload.get("event") or {}
    event_type = event.get("type")
    if event_type not in SLACK_EVENT_TYPES:
        logger.debug("Unhandled Slack event", event_type=event_type)
        return {"ok": True}

    if event_type == "app_mention":
        logger.info("Slack mention received", channel=event.get("channel"), user=event.get("user"))
        _spawn(_handle_mention(event))
    else:
        _spawn(_handle_member_joined(event))

    return {"ok": True}


@router.post("/actions")
async def handle_action(body: bytes = Depends(verify_slack_request)):
    """Receive block actions (the cancel button)."""
    form = parse_qs(body.decode("utf-8"))
    try:
        payload = orjson.loads(form["payload"][0])
    except (KeyError, IndexError, orjson.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Invalid interaction payload") from None

    user = (payload.get("user") or {}).get("id")
    channel = (payload.get("channel") or {}).get("id")
    response_url = payload.get("response_url")
    dispatcher = container.dispatcher()

    for action in payload.get("actions", []):
        if action.get("action_id") != CANCEL_ACTION_ID or action.get("type") != "button":
            continue

        if not (dispatcher.access.is_allowed_user(user) and dispatcher.access.is_allowed_channel(channel)):
            _spawn(container.slack_client().respond(response_url, "You are not allowed to trigger this action."))
            return {"ok": True}

        target_key = action.get("value") or channel
        if container.registry().cancel(target_key, user):
            logger.info("Deployment cancelled from button", target=target_key, user=user)
            _spawn(_announce_cancel(response_url, channel, user))
        else:
            _spawn(container.slack_client().respond(
                response_url, f"<@{user}> There are no queued or running deployments."
            ))

    return {"ok": True}


async def _announce_cancel(response_url: str, channel: str, user: str) -> None:
    slack = container.slack_client()
    await slack.respond(response_url, f"<@{user}> Deployment cancelled.")
    await slack.post_message(channel, f"A deployment was cancelled by <@{user}>.")
