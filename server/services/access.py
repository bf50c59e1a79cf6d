"""Chat access control - allowed users, super users and deployment channels."""

from typing import Iterable, Optional

from core.config import Settings


class AccessPolicy:
    """Allow-lists deciding who may talk to the bot, and where."""

    def __init__(
        self,
        allowed_users: Iterable[str],
        super_users: Iterable[str],
        channels: Iterable[str],
    ):
        self.allowed_users = frozenset(allowed_users)
        self.super_users = frozenset(super_users)
        self.channels = frozenset(channels)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AccessPolicy":
        channels = [c for c in (settings.slack_room_prod, settings.slack_room_test) if c]
        return cls(settings.allowed_users, settings.super_users, channels)

    def is_allowed_user(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and user_id in self.allowed_users

    def is_super_user(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and user_id in self.super_users

    def is_allowed_channel(self, channel: Optional[str]) -> bool:
        return bool(channel) and channel in self.channels
