"""Deployment - state machine for one in-flight deployment request.

Drives checks -> repo sync -> playbook run. Every phase is a coroutine
that observes the deployment's cancellation token; cancelling moves the
deployment to ``aborted`` and tears down whatever is in flight.
"""

import asyncio
import inspect
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, TYPE_CHECKING

from constants import TAG_SCOPES
from core.logging import get_logger, log_execution_time
from .cancellation import CancellationToken
from .events import EventChannel
from .exceptions import (
    CheckQueryError,
    InvalidStateTransition,
    OperationCancelled,
    PhasePreconditionError,
    PlaybookAlreadyRunning,
    PlaybookError,
    RepoSyncCancelled,
    RepoSyncError,
)
from .process import ProcessSupervisor, run_command
from .profiles import ProvisioningConfig, TargetProfile
from .state import ACTIVE_STATES, FINAL_STATES, ChecksOutcome, ChecksStatus, DeploymentState, DeploymentTag

if TYPE_CHECKING:
    from services.github import CheckAggregator, CheckResult, CheckRound

logger = get_logger(__name__)

PendingCallback = Callable[[List["CheckResult"]], Any]


async def _next_round(rounds: AsyncIterator["CheckRound"]) -> Optional["CheckRound"]:
    try:
        return await rounds.__anext__()
    except StopAsyncIteration:
        return None


class Deployment:
    """One deployment request for a target key."""

    def __init__(
        self,
        target_key: str,
        requester: str,
        tag: DeploymentTag,
        profile: TargetProfile,
        config: ProvisioningConfig,
        aggregator: "CheckAggregator",
        extra_args: Optional[Mapping[str, str]] = None,
    ):
        self.target_key = target_key
        self.requester = requester
        self.tag = DeploymentTag(tag)
        self.profile = profile
        self.config = config
        self.extra_args: Dict[str, str] = dict(extra_args or {})
        self.created_at = datetime.now(timezone.utc)
        self.cancelled_by: Optional[str] = None
        self.child: Optional[asyncio.subprocess.Process] = None

        self.stdout = ""
        self.stderr = ""
        self.output = ""

        self.state_events: EventChannel[DeploymentState] = EventChannel("state")
        self.progress_events: EventChannel[str] = EventChannel("progress")

        self._aggregator = aggregator
        self._state = DeploymentState.QUEUED
        self.token = CancellationToken()

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> DeploymentState:
        return self._state

    def _set_state(self, new_state: DeploymentState) -> None:
        if self._state in FINAL_STATES and new_state not in FINAL_STATES:
            raise InvalidStateTransition(self._state.value, new_state.value)

        previous, self._state = self._state, new_state
        logger.info("Deployment state changed", target=self.target_key,
                    previous=previous.value, state=new_state.value)
        self.state_events.emit(new_state)

        if new_state in FINAL_STATES:
            self.state_events.close()
            self.progress_events.close()

    def is_terminal(self) -> bool:
        return self._state in FINAL_STATES

    def safe_to_clear(self) -> bool:
        return self.is_terminal()

    def is_running(self) -> bool:
        return self._state in ACTIVE_STATES

    def running_since(self) -> int:
        """Whole seconds elapsed since creation."""
        return int((datetime.now(timezone.utc) - self.created_at).total_seconds())

    def on_state(self, listener: Callable[[DeploymentState], Any]) -> Callable[[], None]:
        return self.state_events.subscribe(listener)

    def on_progress(self, listener: Callable[[str], Any]) -> Callable[[], None]:
        return self.progress_events.subscribe(listener)

    def _require(self, phase: str, expected: DeploymentState) -> None:
        if self._state is not expected:
            raise PhasePreconditionError(phase, self._state.value, expected.value)

    # =========================================================================
    # CANCELLATION
    # =========================================================================

    def cancel(self, actor: Optional[str] = None, reason: str = "Deployment cancelled by user") -> bool:
        """Abort the deployment. No-op (False) once terminal."""
        if self.is_terminal():
            return False
        self.cancelled_by = actor
        logger.info("Deployment cancelled", target=self.target_key, actor=actor, reason=reason)
        self._set_state(DeploymentState.ABORTED)
        self.token.cancel(reason)
        return True

    # =========================================================================
    # PHASES
    # =========================================================================

    async def run_checks(self, on_pending: Optional[PendingCallback] = None) -> ChecksOutcome:
        """Wait for upstream CI; report pending checks once, stop on failures."""
        if self._state is DeploymentState.ABORTED:
            return ChecksOutcome(ChecksStatus.ABORTED)
        self._require("run_checks", DeploymentState.QUEUED)
        self._set_state(DeploymentState.CHECKING)

        start_time = time.time()
        notified = False
        rounds = self._aggregator.rounds()
        try:
            while True:
                try:
                    check_round = await self.token.run(_next_round(rounds))
                except OperationCancelled:
                    logger.info("Checks aborted", target=self.target_key)
                    return ChecksOutcome(ChecksStatus.ABORTED)
                except CheckQueryError:
                    if not self.is_terminal():
                        self._set_state(DeploymentState.ERROR)
                    raise

                if check_round is None:
                    break

                if check_round.pending and not notified:
                    notified = True
                    if on_pending is not None:
                        result = on_pending(check_round.pending)
                        if inspect.isawaitable(result):
                            try:
                                await self.token.run(result)
                            except OperationCancelled:
                                logger.info("Checks aborted", target=self.target_key)
                                return ChecksOutcome(ChecksStatus.ABORTED)

                if check_round.failed:
                    logger.warning("Checks failed", target=self.target_key,
                                   failed=[f"{c.repository}: {c.name}" for c in check_round.failed])
                    if not self.is_terminal():
                        self._set_state(DeploymentState.ERROR)
                    return ChecksOutcome(ChecksStatus.FAILED, failed=list(check_round.failed))
        finally:
            await rounds.aclose()

        if self.token.cancelled:
            return ChecksOutcome(ChecksStatus.ABORTED)

        log_execution_time(logger, "checks", start_time, time.time(), target=self.target_key)
        self._set_state(DeploymentState.READY)
        return ChecksOutcome(ChecksStatus.PASSED)

    def skip_checks(self) -> None:
        """Move straight to ``ready`` (forced deploys, targets without CI gating)."""
        self._require("skip_checks", DeploymentState.QUEUED)
        logger.info("Skipping checks", target=self.target_key)
        self._set_state(DeploymentState.READY)

    async def update_repo(self) -> bool:
        """Pull the control repository. Returns False if the deployment was aborted."""
        if self._state is DeploymentState.ABORTED:
            return False
        self._require("update_repo", DeploymentState.READY)
        self._set_state(DeploymentState.UPDATING)

        start_time = time.time()
        try:
            try:
                result = await run_command(
                    self.config.sync_command,
                    cwd=self.config.ansible_root,
                    token=self.token,
                    timeout=self.config.sync_timeout,
                )
            except OperationCancelled as e:
                raise RepoSyncCancelled("Repository sync cancelled") from e
            except OSError as e:
                raise RepoSyncError(f"Failed to pull Ansible repo with Git: {e}") from e

            if result.timed_out:
                raise RepoSyncError(
                    f"Git pull timed out after {self.config.sync_timeout}s",
                    result.stdout,
                    result.stderr,
                )
            if result.returncode != 0:
                raise RepoSyncError(
                    "Failed to pull Ansible repo with Git",
                    result.stdout,
                    result.stderr,
                )
        except RepoSyncCancelled:
            logger.info("Repository sync aborted", target=self.target_key)
            return False
        except RepoSyncError as e:
            logger.error("Repository sync failed", target=self.target_key, error=str(e), stderr=e.stderr)
            if not self.is_terminal():
                self._set_state(DeploymentState.ERROR)
            raise

        if self.token.cancelled:
            return False

        log_execution_time(logger, "repo_sync", start_time, time.time(), target=self.target_key)
        self._set_state(DeploymentState.READY)
        return True

    def scopes(self) -> List[str]:
        return list(TAG_SCOPES[self.tag.value])

    def playbook_args(self) -> List[str]:
        """Scope flags, then the target's extra arguments, then the playbook."""
        args: List[str] = []
        for scope in self.scopes():
            args.extend(["-t", scope])
        args.extend(self.profile.ansible_args(self.extra_args))
        args.append(self.config.playbook)
        return args

    async def run_playbook(self) -> bool:
        """Run the provisioning playbook.

        Returns True on success and False if the run was aborted; raises
        ``PlaybookError`` on a failed run.
        """
        if self.child is not None:
            raise PlaybookAlreadyRunning()
        if self._state is DeploymentState.ABORTED:
            return False
        self._require("run_playbook", DeploymentState.READY)
        self._set_state(DeploymentState.RUNNING)

        args = self.playbook_args()
        logger.info("Running Ansible playbook", target=self.target_key, args=args)

        supervisor = ProcessSupervisor(
            self.config.ansible_bin,
            args,
            cwd=self.config.ansible_root,
            token=self.token,
            kill_timeout=self.config.kill_timeout,
            on_stdout=self._on_stdout,
            on_stderr=self._on_stderr,
            on_spawn=self._attach_child,
        )

        start_time = time.time()
        try:
            result = await supervisor.run()
        except OSError as e:
            logger.error("Could not start Ansible", target=self.target_key, error=str(e))
            if not self.is_terminal():
                self._set_state(DeploymentState.ERROR)
            raise PlaybookError(
                f"Could not start Ansible playbook: {e}",
                self.stdout,
                self.stderr,
                self.output,
            ) from e

        if result.cancelled or self.token.cancelled:
            logger.info("Ansible playbook aborted", target=self.target_key, returncode=result.returncode)
            return False

        log_execution_time(logger, "playbook", start_time, time.time(),
                           target=self.target_key, returncode=result.returncode)

        if result.returncode != 0:
            self._set_state(DeploymentState.ERROR)
            raise PlaybookError(
                f"Ansible playbook failed with code {result.returncode}",
                self.stdout,
                self.stderr,
                self.output,
                result.returncode,
            )

        self._set_state(DeploymentState.DONE)
        logger.info("Ansible playbook finished successfully", target=self.target_key)
        return True

    # =========================================================================
    # OUTPUT
    # =========================================================================

    def _attach_child(self, process: asyncio.subprocess.Process) -> None:
        self.child = process

    def _on_stdout(self, text: str) -> None:
        self.stdout += text
        self.output += text
        for label in self.match_highlights(text):
            self.progress_events.emit(label)

    def _on_stderr(self, text: str) -> None:
        self.stderr += text
        self.output += text

    def match_highlights(self, text: str) -> List[str]:
        """Labels of every highlight match in ``text``, in output order."""
        matches = []
        for pattern in self.config.highlights:
            for match in pattern.finditer(text):
                matches.append((match.start(), _label(match)))
        matches.sort(key=lambda item: item[0])
        return [label for _, label in matches]

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_key": self.target_key,
            "profile": self.profile.name,
            "tag": self.tag.value,
            "requester": self.requester,
            "state": self._state.value,
            "created_at": self.created_at.isoformat(),
            "running_since": self.running_since(),
            "extra_args": dict(self.extra_args),
            "cancelled_by": self.cancelled_by,
            "pid": self.child.pid if self.child else None,
        }


def _label(match) -> str:
    groups = match.groupdict()
    if groups.get("label") is not None:
        return groups["label"]
    for group in reversed(match.groups()):
        if group is not None:
            return group
    return match.group(0)
