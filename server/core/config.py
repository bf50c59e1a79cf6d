"""Environment-driven configuration with Pydantic v2."""

import json
import re
import shlex
from typing import Annotated, Dict, List, Literal, Optional, Pattern

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode

from constants import HIGHLIGHT_TEMPLATE

CommaList = Annotated[List[str], NoDecode]


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = Field(default=3010, ge=1024, le=65535)
    debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"
    log_file: Optional[str] = None

    # GitHub checks
    github_token: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("github_token", "octokit_token")
    )
    github_api_url: str = "https://api.github.com"
    github_timeout: float = Field(default=30.0, ge=1.0, le=300.0)
    check_repos: CommaList = Field(default_factory=list)
    check_ref: str = "main"
    check_ignored_names: CommaList = Field(default_factory=lambda: ["Dependabot"])
    check_passing_conclusions: CommaList = Field(
        default_factory=lambda: ["success", "neutral", "skipped"]
    )
    check_poll_interval: float = Field(default=120.0, gt=0)

    # Ansible provisioning
    ansible_root: str = "../ansible"
    ansible_bin: str = "ansible-playbook"
    ansible_playbook: str = "deploy.yml"
    deployment_highlights: CommaList = Field(default_factory=list)
    git_sync_command: str = "git pull origin main"
    git_sync_timeout: float = Field(default=30.0, gt=0)
    kill_timeout: float = Field(default=10.0, gt=0)

    # Slack
    slack_bot_token: Optional[str] = None
    slack_signing_secret: Optional[str] = None
    slack_api_url: str = "https://slack.com/api"
    slack_room_prod: Optional[str] = None
    slack_room_test: Optional[str] = None
    allowed_users: CommaList = Field(default_factory=list)
    super_users: CommaList = Field(default_factory=list)

    # Target profiles
    prod_inventory: str = "inventory"
    test_inventory: str = "test-inventory"
    test_allowed_args: Dict[str, str] = Field(default_factory=dict)

    # REST API
    api_token: Optional[str] = None

    @field_validator(
        "check_repos",
        "check_ignored_names",
        "check_passing_conclusions",
        "deployment_highlights",
        "allowed_users",
        "super_users",
        mode="before",
    )
    @classmethod
    def split_comma_list(cls, v):
        """Accept ``a,b,c`` strings as well as real lists."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("test_allowed_args", mode="before")
    @classmethod
    def parse_allowed_args(cls, v):
        if isinstance(v, str):
            return json.loads(v) if v.strip() else {}
        return v

    @field_validator("check_repos")
    @classmethod
    def validate_check_repos(cls, v):
        for repo in v:
            if repo.count("/") != 1:
                raise ValueError(f"Check repository must be 'owner/repo', got {repo!r}")
        return v

    def highlight_patterns(self) -> List[Pattern[str]]:
        """Compile the highlight labels into Ansible task matchers."""
        return [re.compile(HIGHLIGHT_TEMPLATE.format(label=label)) for label in self.deployment_highlights]

    def sync_argv(self) -> List[str]:
        return shlex.split(self.git_sync_command)

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "populate_by_name": True,
    }
