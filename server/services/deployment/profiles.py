"""Deployment targets and provisioning configuration."""

import json
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Pattern, Tuple

from constants import PROFILE_PRODUCTION, PROFILE_TEST
from core.config import Settings
from .exceptions import InvalidDeploymentRequest


@dataclass(frozen=True)
class ProvisioningConfig:
    """How the control repository is synced and the playbook is run."""
    ansible_root: str
    ansible_bin: str
    playbook: str
    highlights: Tuple[Pattern[str], ...] = ()
    sync_command: Tuple[str, ...] = ("git", "pull", "origin", "main")
    sync_timeout: float = 30.0
    kill_timeout: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProvisioningConfig":
        return cls(
            ansible_root=settings.ansible_root,
            ansible_bin=settings.ansible_bin,
            playbook=settings.ansible_playbook,
            highlights=tuple(settings.highlight_patterns()),
            sync_command=tuple(settings.sync_argv()),
            sync_timeout=settings.git_sync_timeout,
            kill_timeout=settings.kill_timeout,
        )


@dataclass(frozen=True)
class TargetProfile:
    """Per-target deployment behaviour (one per exclusivity slot)."""
    key: str
    name: str
    inventory: str
    run_checks: bool = True
    # user argument -> Ansible extra-var it sets
    allowed_args: Mapping[str, str] = field(default_factory=dict)

    def validate_args(self, args: Mapping[str, str]) -> Dict[str, str]:
        """Return ``args`` as an ordered dict, rejecting keys outside the allow-list."""
        for key in args:
            if key not in self.allowed_args:
                raise InvalidDeploymentRequest(f"Argument not allowed: {key}")
        return dict(args)

    def ansible_args(self, args: Mapping[str, str]) -> List[str]:
        """Inventory selection plus one ``-e`` JSON extra-var per user argument."""
        argv = ["-i", self.inventory]
        for key, value in args.items():
            argv.extend(["-e", json.dumps({self.allowed_args[key]: value})])
        return argv


def build_target_profiles(settings: Settings) -> Dict[str, TargetProfile]:
    """Production and test targets keyed by their chat channel."""
    profiles: Dict[str, TargetProfile] = {}
    if settings.slack_room_prod:
        profiles[settings.slack_room_prod] = TargetProfile(
            key=settings.slack_room_prod,
            name=PROFILE_PRODUCTION,
            inventory=settings.prod_inventory,
            run_checks=True,
        )
    if settings.slack_room_test:
        profiles[settings.slack_room_test] = TargetProfile(
            key=settings.slack_room_test,
            name=PROFILE_TEST,
            inventory=settings.test_inventory,
            run_checks=False,
            allowed_args=dict(settings.test_allowed_args),
        )
    return profiles
