"""Deployment State - lifecycle states, tags and phase outcomes."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, TYPE_CHECKING

from constants import DEPLOYMENT_TAGS
from .exceptions import InvalidDeploymentRequest

if TYPE_CHECKING:
    from services.github import CheckResult


class DeploymentState(str, Enum):
    """Lifecycle state of a deployment."""
    QUEUED = "queued"
    CHECKING = "checking"
    UPDATING = "updating"
    READY = "ready"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    ABORTED = "aborted"

    @property
    def is_final(self) -> bool:
        return self in FINAL_STATES


FINAL_STATES = frozenset([DeploymentState.DONE, DeploymentState.ERROR, DeploymentState.ABORTED])

# States in which side effects (repo sync, playbook) are in flight
ACTIVE_STATES = frozenset([DeploymentState.UPDATING, DeploymentState.RUNNING])


class DeploymentTag(str, Enum):
    """Deployment scope requested by the user."""
    WEB = "web"
    BACKEND = "backend"
    FRONTEND = "frontend"
    ALL = "all"

    @classmethod
    def parse(cls, value: str) -> "DeploymentTag":
        try:
            return cls(value)
        except ValueError:
            raise InvalidDeploymentRequest(
                f"Invalid tag {value!r}, expected one of: {', '.join(DEPLOYMENT_TAGS)}"
            ) from None


class ChecksStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class ChecksOutcome:
    """Result of the checking phase."""
    status: ChecksStatus
    failed: List["CheckResult"] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status is ChecksStatus.PASSED

    @property
    def aborted(self) -> bool:
        return self.status is ChecksStatus.ABORTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "failed": [check.to_dict() for check in self.failed],
        }
