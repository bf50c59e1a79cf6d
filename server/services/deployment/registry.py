"""Deployment Registry - single-flight deployments per target key.

At most one live deployment exists per target. Every check-then-act on the
mapping happens under one lock, so a chat command and a cancel button that
arrive together cannot both win.
"""

import threading
from typing import Dict, List, Mapping, Optional, Tuple, TYPE_CHECKING

from core.logging import get_logger
from .deployment import Deployment
from .exceptions import DeploymentConflict, UnknownTarget
from .profiles import ProvisioningConfig, TargetProfile
from .state import DeploymentTag

if TYPE_CHECKING:
    from services.github import CheckAggregator

logger = get_logger(__name__)


class DeploymentRegistry:
    """Maps target keys to their current deployment."""

    def __init__(
        self,
        config: ProvisioningConfig,
        profiles: Mapping[str, TargetProfile],
        aggregator: "CheckAggregator",
    ):
        self.config = config
        self.profiles: Dict[str, TargetProfile] = dict(profiles)
        self.aggregator = aggregator
        self._deployments: Dict[str, Deployment] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._deployments)

    def __contains__(self, target_key: str) -> bool:
        return target_key in self._deployments

    def profile(self, target_key: str) -> TargetProfile:
        profile = self.profiles.get(target_key)
        if profile is None:
            raise UnknownTarget(target_key)
        return profile

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def can_create(self, target_key: str) -> bool:
        with self._lock:
            return self._can_create(target_key)

    def _can_create(self, target_key: str) -> bool:
        existing = self._deployments.get(target_key)
        return existing is None or existing.safe_to_clear()

    def create(
        self,
        target_key: str,
        requester: str,
        tag: str,
        extra_args: Optional[Mapping[str, str]] = None,
    ) -> Deployment:
        """Register a new deployment, replacing a finished one.

        Raises ``UnknownTarget``, ``InvalidDeploymentRequest`` (bad tag or
        argument) or ``DeploymentConflict`` (live deployment for the key).
        """
        profile = self.profile(target_key)
        deployment_tag = DeploymentTag.parse(tag)
        args = profile.validate_args(extra_args or {})

        with self._lock:
            if not self._can_create(target_key):
                raise DeploymentConflict(target_key)
            self._deployments.pop(target_key, None)

            deployment = Deployment(
                target_key=target_key,
                requester=requester,
                tag=deployment_tag,
                profile=profile,
                config=self.config,
                aggregator=self.aggregator,
                extra_args=args,
            )
            self._deployments[target_key] = deployment

        logger.info("Deployment created", target=target_key, profile=profile.name,
                    tag=deployment_tag.value, requester=requester, args=args)
        return deployment

    def cancel(self, target_key: str, actor: Optional[str] = None) -> bool:
        """Cancel and evict. False if there is no deployment for the key."""
        with self._lock:
            deployment = self._deployments.pop(target_key, None)
        if deployment is None:
            return False

        deployment.cancel(actor)
        logger.info("Deployment evicted", target=target_key, actor=actor, state=deployment.state.value)
        return True

    def clear(self, target_key: str, expected: Optional[Deployment] = None) -> bool:
        """Evict a finished or not-yet-running deployment.

        Returns False and leaves the deployment alone while it is updating
        the repository or running the playbook. With ``expected``, only that
        instance is evicted; a newer deployment under the key is kept.
        """
        with self._lock:
            deployment = self._deployments.get(target_key)
            if deployment is None or deployment.is_running():
                return False
            if expected is not None and deployment is not expected:
                return False
            del self._deployments[target_key]

        if not deployment.is_terminal():
            deployment.cancel(reason="Deployment cleared by system")
        logger.info("Deployment cleared", target=target_key, state=deployment.state.value)
        return True

    def cancel_all(self, actor: Optional[str] = None) -> bool:
        """Cancel every deployment. True if any of them was actively running."""
        with self._lock:
            deployments = list(self._deployments.values())
            self._deployments.clear()

        was_running = any(d.is_running() for d in deployments)
        for deployment in deployments:
            deployment.cancel(actor)
        if deployments:
            logger.info("All deployments cancelled", count=len(deployments), actor=actor)
        return was_running

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get(self, target_key: str) -> Optional[Deployment]:
        return self._deployments.get(target_key)

    def list(self) -> List[Tuple[str, Deployment]]:
        with self._lock:
            return list(self._deployments.items())
