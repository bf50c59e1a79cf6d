"""Deployment engine exception hierarchy."""

from typing import Optional


class DeploymentError(Exception):
    """Base exception for all deployment-related errors."""


class CheckQueryError(DeploymentError):
    """Querying upstream CI failed (transport or HTTP error)."""

    def __init__(self, repository: str, message: str):
        self.repository = repository
        super().__init__(f"[{repository}] {message}")


class RepoSyncError(DeploymentError):
    """Synchronizing the control repository failed."""

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)


class RepoSyncCancelled(RepoSyncError):
    """Repository sync was torn down by cancellation."""


class PlaybookError(DeploymentError):
    """The provisioning run failed."""

    def __init__(
        self,
        message: str,
        stdout: str = "",
        stderr: str = "",
        output: str = "",
        returncode: Optional[int] = None,
    ):
        self.stdout = stdout
        self.stderr = stderr
        self.output = output
        self.returncode = returncode
        super().__init__(message)


class OperationCancelled(DeploymentError):
    """A suspension point observed the cancellation token."""


class DeploymentConflict(DeploymentError):
    """A live deployment already exists for the target."""

    def __init__(self, target_key: str):
        self.target_key = target_key
        super().__init__("There is already a running deployment")


class InvalidDeploymentRequest(DeploymentError):
    """Invalid tag or extra argument on a deployment request."""


# =============================================================================
# LOGIC ERRORS (programming defects in the calling sequence)
# =============================================================================

class DeploymentLogicError(DeploymentError):
    """Invalid calling sequence; fatal to the current request."""


class InvalidStateTransition(DeploymentLogicError):
    """Attempt to leave a terminal state."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f'Cannot change state from "{current}" to "{requested}"')


class PhasePreconditionError(DeploymentLogicError):
    """A phase method was invoked from the wrong state."""

    def __init__(self, phase: str, state: str, expected: str):
        self.phase = phase
        self.state = state
        super().__init__(f"{phase} requires state {expected!r}, deployment is {state!r}")


class PlaybookAlreadyRunning(DeploymentLogicError):
    """run_playbook was invoked while a child process is attached."""

    def __init__(self):
        super().__init__("Ansible playbook is already running")


class UnknownTarget(DeploymentLogicError):
    """No deployment profile is registered for the target key."""

    def __init__(self, target_key: str):
        self.target_key = target_key
        super().__init__(f"No deployment target registered for {target_key!r}")
