"""Chat command parsing."""

import re
from dataclasses import dataclass, field
from typing import Collection, Dict, Optional, Union

DEPLOY_RE = re.compile(r"^(force deploy|deploy) (web|frontend|backend|all)(.*)$")
CANCEL_RE = re.compile(r"^cancel( deploy(ment)?)?$")
LIST_RE = re.compile(r"^list( deployments)?$")
HELP_RE = re.compile(r"^help$")
ARGUMENT_RE = re.compile(r'(\w+)=(".*?"|[^ ]+)')
MENTION_RE = re.compile(r"<@[A-Z0-9]+>")

COMMAND_HELP = (
    "`(force) deploy [web|frontend|backend|all] [args]` - Deploy the specified tag",
    "`cancel` - Cancel a running or queued deployment",
    "`list` - List all running or queued deployments",
)


class CommandError(ValueError):
    """The message matched a command but could not be parsed."""


@dataclass
class DeployCommand:
    tag: str
    force: bool = False
    args: Dict[str, str] = field(default_factory=dict)


@dataclass
class CancelCommand:
    pass


@dataclass
class ListCommand:
    pass


@dataclass
class HelpCommand:
    pass


Command = Union[DeployCommand, CancelCommand, ListCommand, HelpCommand]


def strip_mentions(text: str) -> str:
    return MENTION_RE.sub("", text).strip()


def parse_arguments(text: str, allowed: Collection[str]) -> Dict[str, str]:
    """Parse ``key=value`` / ``key="quoted value"`` pairs, keeping their order."""
    args: Dict[str, str] = {}
    for match in ARGUMENT_RE.finditer(text.strip()):
        key = match.group(1)
        value = match.group(2)
        if value.startswith('"') and value.endswith('"') and len(value) >= 2:
            value = value[1:-1]

        if key in args:
            raise CommandError(f"Duplicate argument: {key}")
        if key not in allowed:
            raise CommandError(f"Argument not allowed: {key}")
        args[key] = value
    return args


def parse_command(message: str, allowed_args: Collection[str] = ()) -> Optional[Command]:
    """Parse a chat message (bot mention already stripped). None if unknown."""
    message = message.strip()

    match = DEPLOY_RE.match(message)
    if match:
        return DeployCommand(
            tag=match.group(2),
            force=match.group(1) == "force deploy",
            args=parse_arguments(match.group(3), allowed_args),
        )
    if CANCEL_RE.match(message):
        return CancelCommand()
    if LIST_RE.match(message):
        return ListCommand()
    if HELP_RE.match(message):
        return HelpCommand()
    return None


def help_text(unknown: bool = True) -> str:
    text = "Command not found. " if unknown else ""
    text += "Available commands:\n\n"
    text += "\n".join(f"- {line}" for line in COMMAND_HELP)
    return text
