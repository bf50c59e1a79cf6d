"""Route chat messages to command handlers."""

from constants import REACTION_FAILURE
from core.logging import get_logger
from services.access import AccessPolicy
from services.deployment import DeploymentRegistry
from .handlers import CommandContext, handle_cancel, handle_deploy, handle_list
from .parser import (
    CancelCommand,
    CommandError,
    DeployCommand,
    HelpCommand,
    ListCommand,
    help_text,
    parse_command,
    strip_mentions,
)
from .responder import Responder

logger = get_logger(__name__)


class CommandDispatcher:
    """Checks access, parses the message and runs the matching handler."""

    def __init__(self, registry: DeploymentRegistry, access: AccessPolicy):
        self.registry = registry
        self.access = access

    def welcome_text(self, user: str) -> str:
        if self.access.is_allowed_user(user):
            return f"Welcome <@{user}>!"
        return (
            f"Welcome <@{user}>! Please add them to the list of allowed users if they "
            f"should be able to interact with me (`{user}`)."
        )

    async def dispatch(self, channel: str, user: str, text: str, responder: Responder) -> None:
        if not self.access.is_allowed_channel(channel):
            await responder.send_message("I don't work in this channel.")
            return

        if not self.access.is_allowed_user(user):
            allowed = ", ".join(f"<@{u}>" for u in sorted(self.access.allowed_users))
            await responder.send_message(
                f"You are not allowed to use this command. Please ask one of: {allowed}"
            )
            return

        message = strip_mentions(text)
        profile = self.registry.profiles.get(channel)
        allowed_args = profile.allowed_args if profile else {}

        try:
            command = parse_command(message, allowed_args)
        except CommandError as e:
            await responder.send_error("Invalid command", str(e))
            await responder.set_reaction(REACTION_FAILURE)
            return

        logger.info("Command received", channel=channel, user=user,
                    command=type(command).__name__ if command else None)
        context = CommandContext(
            registry=self.registry,
            access=self.access,
            channel=channel,
            user=user,
            responder=responder,
        )

        try:
            if isinstance(command, DeployCommand):
                await handle_deploy(command, context)
            elif isinstance(command, CancelCommand):
                await handle_cancel(context)
            elif isinstance(command, ListCommand):
                await handle_list(context)
            else:
                await responder.send_message(help_text(unknown=not isinstance(command, HelpCommand)))
        except Exception as e:
            logger.error("Error processing command", channel=channel, error=str(e), exc_info=True)
            await responder.send_message(
                "Unknown error processing command. Please contact an administrator."
            )
