"""Deployment module - chat-triggered deployment lifecycle engine."""

from .state import DeploymentState, DeploymentTag, ChecksOutcome, ChecksStatus, FINAL_STATES, ACTIVE_STATES
from .exceptions import (
    CheckQueryError,
    DeploymentConflict,
    DeploymentError,
    DeploymentLogicError,
    InvalidDeploymentRequest,
    InvalidStateTransition,
    OperationCancelled,
    PhasePreconditionError,
    PlaybookAlreadyRunning,
    PlaybookError,
    RepoSyncCancelled,
    RepoSyncError,
    UnknownTarget,
)
from .cancellation import CancellationToken
from .events import EventChannel
from .profiles import ProvisioningConfig, TargetProfile, build_target_profiles
from .process import ProcessSupervisor, ProcessResult, run_command
from .deployment import Deployment
from .registry import DeploymentRegistry

__all__ = [
    "DeploymentState",
    "DeploymentTag",
    "ChecksOutcome",
    "ChecksStatus",
    "FINAL_STATES",
    "ACTIVE_STATES",
    "CheckQueryError",
    "DeploymentConflict",
    "DeploymentError",
    "DeploymentLogicError",
    "InvalidDeploymentRequest",
    "InvalidStateTransition",
    "OperationCancelled",
    "PhasePreconditionError",
    "PlaybookAlreadyRunning",
    "PlaybookError",
    "RepoSyncCancelled",
    "RepoSyncError",
    "UnknownTarget",
    "CancellationToken",
    "EventChannel",
    "ProvisioningConfig",
    "TargetProfile",
    "build_target_profiles",
    "ProcessSupervisor",
    "ProcessResult",
    "run_command",
    "Deployment",
    "DeploymentRegistry",
]
