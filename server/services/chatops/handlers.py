"""Chat command handlers - deploy, cancel and list."""

from dataclasses import dataclass
from typing import List

from constants import COLOR_SUCCESS, REACTION_FAILURE, REACTION_PENDING, REACTION_SUCCESS
from core.logging import get_logger
from services.access import AccessPolicy
from services.deployment import (
    CheckQueryError,
    Deployment,
    DeploymentConflict,
    DeploymentLogicError,
    DeploymentRegistry,
    DeploymentState,
    InvalidDeploymentRequest,
    PlaybookError,
    RepoSyncError,
)
from services.github import CheckResult
from .parser import DeployCommand
from .responder import Responder, cancel_button

logger = get_logger(__name__)

STATE_REACTIONS = {
    DeploymentState.DONE: REACTION_SUCCESS,
    DeploymentState.ERROR: REACTION_FAILURE,
    DeploymentState.ABORTED: REACTION_FAILURE,
}


@dataclass
class CommandContext:
    """Who asked, where, and how to answer."""
    registry: DeploymentRegistry
    access: AccessPolicy
    channel: str
    user: str
    responder: Responder


class DeploymentWatcher:
    """Mirrors a deployment's state transitions into chat reactions."""

    def __init__(self, deployment: Deployment, responder: Responder):
        self.deployment = deployment
        self.responder = responder

    async def on_state(self, state: DeploymentState) -> None:
        if state is DeploymentState.ABORTED:
            text = "The deployment was cancelled."
            if self.deployment.cancelled_by:
                text = f"The deployment was cancelled by <@{self.deployment.cancelled_by}>."
            await self.responder.send_error("Deployment aborted", text)

        reaction = STATE_REACTIONS.get(state)
        if reaction:
            await self.responder.set_reaction(reaction)


def format_checks(checks: List[CheckResult]) -> str:
    return ", ".join(f"<{c.url}|{c.repository}: {c.name}>" for c in checks)


async def _run_checks(deployment: Deployment, context: CommandContext) -> bool:
    """Gate the deployment on upstream CI. True when it may proceed."""
    responder = context.responder

    async def on_pending(pending: List[CheckResult]) -> None:
        await responder.send_message(
            "Checks are pending. Deployment will continue once checks are completed."
        )

    try:
        outcome = await deployment.run_checks(on_pending)
    except CheckQueryError as e:
        logger.error("Error collecting checks", target=context.channel, error=str(e))
        context.registry.clear(context.channel, deployment)
        await responder.send_error("Unknown error collecting checks", "Please contact an administrator.")
        return False

    if outcome.passed:
        await responder.send_message("All checks have passed, proceeding with deployment.")
        return True
    if outcome.aborted:
        return False

    context.registry.clear(context.channel, deployment)
    await responder.send_error("Checks have failed, aborted deployment.", format_checks(outcome.failed))
    return False


async def handle_deploy(command: DeployCommand, context: CommandContext) -> None:
    """Handle ``(force) deploy <tag> [args]``.

    Creates the deployment for the channel, gates it on CI (unless forced or
    the target skips checks), syncs the Ansible repository and runs the
    playbook, reporting every step in the command's thread.
    """
    registry = context.registry
    responder = context.responder

    if not registry.can_create(context.channel):
        await responder.send_error(
            "Deployment already running",
            "There is already a deployment running in this channel.",
        )
        return

    if command.force and not context.access.is_super_user(context.user):
        await responder.send_error("You are not allowed to force deploy.", "Please contact a superuser.")
        await responder.set_reaction(REACTION_FAILURE)
        return

    try:
        deployment = registry.create(context.channel, context.user, command.tag, command.args)
    except DeploymentConflict:
        await responder.send_error(
            "Deployment already running",
            "There is already a deployment running in this channel.",
        )
        return
    except InvalidDeploymentRequest as e:
        await responder.send_error("Invalid command", str(e))
        await responder.set_reaction(REACTION_FAILURE)
        return

    watcher = DeploymentWatcher(deployment, responder)
    deployment.on_state(watcher.on_state)
    await responder.set_reaction(REACTION_PENDING)

    button = cancel_button(context.channel)
    if command.force:
        await responder.send_message("Deployment started", "Skipping checks. This better be good.",
                                     attachments=[button])
        if deployment.is_terminal():
            return
        deployment.skip_checks()
    else:
        await responder.send_message(
            "Deployment started",
            f"Deployment of {deployment.tag.value} queued by <@{context.user}>.",
            attachments=[button],
        )
        if deployment.is_terminal():
            return
        if deployment.profile.run_checks:
            if not await _run_checks(deployment, context):
                return
        else:
            deployment.skip_checks()

    # Cancelled while reporting the check result
    if deployment.is_terminal():
        return
    deployment.on_progress(responder.send_message)

    try:
        if not await deployment.update_repo():
            return

        await responder.send_message("Running Ansible playbook…")
        if await deployment.run_playbook():
            await responder.send_message(
                "Success!",
                f"Deployment of {deployment.tag.value} completed successfully!",
                COLOR_SUCCESS,
            )
    except RepoSyncError as e:
        logger.error("Repository sync failed", target=context.channel, stdout=e.stdout, stderr=e.stderr)
        registry.clear(context.channel, deployment)
        await responder.send_error("Deployment failed", str(e))
        log = "\n".join(part for part in (e.stdout, e.stderr) if part)
        if log:
            await responder.upload_log(log)
    except PlaybookError as e:
        logger.error("Ansible playbook failed", target=context.channel, returncode=e.returncode)
        registry.clear(context.channel, deployment)
        await responder.send_error("Deployment failed", str(e))
        if e.output:
            await responder.upload_log(e.output)
    except DeploymentLogicError as e:
        logger.error("Deployment sequence error", target=context.channel, error=str(e))
        registry.clear(context.channel, deployment)
        await responder.send_error("Unexpected error", str(e))


async def handle_cancel(context: CommandContext) -> None:
    """Handle ``cancel``."""
    if context.registry.cancel(context.channel, context.user):
        await context.responder.send_message(
            "Deployment cancelled",
            "A deployment was running and has been cancelled.",
        )
    else:
        await context.responder.send_message(
            "Nothing to cancel",
            "No deployment was queued or running.",
        )


async def handle_list(context: CommandContext) -> None:
    """Handle ``list``."""
    deployment = context.registry.get(context.channel)

    if deployment is not None and not deployment.safe_to_clear():
        title = "Deployment queued" if deployment.state is DeploymentState.QUEUED else "Deployment running"
        created = deployment.created_at.strftime("%Y-%m-%d %H:%M:%S %Z")
        await context.responder.send_message(
            title,
            f"Deployment for `{deployment.tag.value}` by <@{deployment.requester}> created at "
            f"{created} is currently {deployment.state.value} "
            f"({deployment.running_since()}s).",
        )
        return

    await context.responder.send_message(
        "No deployments",
        "There are currently no running or queued deployments.",
    )
