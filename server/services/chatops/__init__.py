"""Chat-ops layer - commands that drive the deployment engine."""

from .dispatcher import CommandDispatcher
from .handlers import CommandContext, DeploymentWatcher, handle_cancel, handle_deploy, handle_list
from .parser import (
    CancelCommand,
    CommandError,
    DeployCommand,
    HelpCommand,
    ListCommand,
    parse_command,
)
from .responder import Responder, SlackThreadResponder, cancel_button

__all__ = [
    "CommandDispatcher",
    "CommandContext",
    "DeploymentWatcher",
    "handle_cancel",
    "handle_deploy",
    "handle_list",
    "CancelCommand",
    "CommandError",
    "DeployCommand",
    "HelpCommand",
    "ListCommand",
    "parse_command",
    "Responder",
    "SlackThreadResponder",
    "cancel_button",
]
