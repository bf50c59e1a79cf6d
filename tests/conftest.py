"""
Shared fixtures for the deployment bot tests.

Ansible is replaced by a small Python script behind a ``/bin/sh`` wrapper so
the real process supervision path (pipes, signals, exit codes) is exercised.
"""

import asyncio
import json
import os
import re
import stat
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

from constants import HIGHLIGHT_TEMPLATE
from services.access import AccessPolicy
from services.deployment import DeploymentRegistry, ProvisioningConfig, TargetProfile
from services.github import CheckAggregator, CheckClassification, CheckResult, CheckRound


# =============================================================================
# FAKES
# =============================================================================

class FakeAggregator:
    """Scripted stand-in for CheckAggregator.rounds()."""

    def __init__(self, rounds=(), hang: bool = False, error: Optional[Exception] = None):
        self._rounds = list(rounds)
        self.hang = hang
        self.error = error
        self.closed = False

    async def rounds(self):
        try:
            for check_round in self._rounds:
                yield check_round
            if self.error is not None:
                raise self.error
            if self.hang:
                await asyncio.Event().wait()
        finally:
            self.closed = True


class FakeResponder:
    """Records everything the handlers say."""

    def __init__(self):
        self.messages: List[tuple] = []
        self.errors: List[tuple] = []
        self.reactions: List[str] = []
        self.logs: List[str] = []

    async def send_message(self, title, text=None, color=None, attachments=None):
        self.messages.append((title, text, color, attachments))

    async def send_error(self, title, text):
        self.errors.append((title, text))

    async def set_reaction(self, name):
        self.reactions.append(name)

    async def upload_log(self, content):
        self.logs.append(content)

    @property
    def titles(self) -> List[str]:
        return [message[0] for message in self.messages]

    @property
    def error_titles(self) -> List[str]:
        return [error[0] for error in self.errors]


def check(name: str, classification: CheckClassification, repository: str = "api") -> CheckResult:
    return CheckResult(
        repository=repository,
        name=name,
        url=f"https://github.com/acme/{repository}/runs/1",
        classification=classification,
    )


def passed_round() -> CheckRound:
    return CheckRound(passed=[check("build", CheckClassification.PASSED)])


def pending_round() -> CheckRound:
    return CheckRound(pending=[check("build", CheckClassification.PENDING)])


def failed_round() -> CheckRound:
    return CheckRound(failed=[check("lint", CheckClassification.FAILED)])


# =============================================================================
# MOCKED GITHUB API
# =============================================================================

def check_run(name, status="completed", conclusion="success", repo="acme/api") -> Dict[str, Any]:
    return {
        "name": name,
        "status": status,
        "conclusion": conclusion,
        "url": f"https://api.github.com/repos/{repo}/check-runs/1",
        "html_url": f"https://github.com/{repo}/runs/1",
    }


def make_aggregator(handler, repos=("acme/api", "acme/web"), poll_interval: float = 0.01) -> CheckAggregator:
    """A real CheckAggregator whose HTTP calls go to ``handler``."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.github.test")
    return CheckAggregator(repos=list(repos), token="gh-token", poll_interval=poll_interval, client=client)


# =============================================================================
# FAKE ANSIBLE
# =============================================================================

class FakeAnsible:
    """Writes an executable that records its argv and runs a Python body."""

    def __init__(self, root: Path):
        self.root = root
        self.argv_file = root / "argv.json"
        self.wrapper = root / "ansible-playbook"
        self.script = root / "fake_ansible.py"

    def install(self, body: str) -> str:
        self.script.write_text(
            "import json, signal, sys, time\n"
            f"with open({str(self.argv_file)!r}, 'w') as fh:\n"
            "    json.dump(sys.argv[1:], fh)\n"
            + body
        )
        self.wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{self.script}" "$@"\n')
        self.wrapper.chmod(self.wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(self.wrapper)

    def argv(self) -> List[str]:
        return json.loads(self.argv_file.read_text())


@pytest.fixture
def fake_ansible(tmp_path) -> FakeAnsible:
    return FakeAnsible(tmp_path)


def highlights(*labels: str):
    return tuple(re.compile(HIGHLIGHT_TEMPLATE.format(label=label)) for label in labels)


@pytest.fixture
def make_config(tmp_path):
    """Build a ProvisioningConfig rooted in the test's tmp dir."""

    def _make(ansible_bin: str = "ansible-playbook", **overrides: Any) -> ProvisioningConfig:
        values: Dict[str, Any] = dict(
            ansible_root=str(tmp_path),
            ansible_bin=ansible_bin,
            playbook="deploy.yml",
            highlights=highlights("Install packages", "Restart services"),
            sync_command=(sys.executable, "-c", "print('Already up to date.')"),
            sync_timeout=5.0,
            kill_timeout=0.5,
        )
        values.update(overrides)
        return ProvisioningConfig(**values)

    return _make


# =============================================================================
# TARGETS AND ACCESS
# =============================================================================

PROD = "C-PROD"
TEST = "C-TEST"


@pytest.fixture
def profiles() -> Dict[str, TargetProfile]:
    return {
        PROD: TargetProfile(key=PROD, name="production", inventory="inventory", run_checks=True),
        TEST: TargetProfile(
            key=TEST,
            name="test",
            inventory="test-inventory",
            run_checks=False,
            allowed_args={"branch": "deploy_branch"},
        ),
    }


@pytest.fixture
def access() -> AccessPolicy:
    return AccessPolicy(allowed_users=["U-DEV", "U-ADMIN"], super_users=["U-ADMIN"], channels=[PROD, TEST])


@pytest.fixture
def make_registry(make_config, profiles):
    def _make(aggregator=None, ansible_bin: str = "ansible-playbook", **overrides: Any) -> DeploymentRegistry:
        return DeploymentRegistry(
            config=make_config(ansible_bin, **overrides),
            profiles=profiles,
            aggregator=aggregator or FakeAggregator([passed_round()]),
        )

    return _make


async def wait_until(predicate, timeout: float = 5.0) -> None:
    """Poll ``predicate`` on the loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep a developer's .env and environment out of Settings()."""
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith(("SLACK_", "CHECK_", "GITHUB_", "OCTOKIT_", "ANSIBLE_", "API_TOKEN")):
            monkeypatch.delenv(name, raising=False)
