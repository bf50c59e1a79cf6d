"""
Tests for the per-target deployment registry.
"""

import pytest

from conftest import PROD, TEST
from services.deployment import (
    DeploymentConflict,
    DeploymentState,
    InvalidDeploymentRequest,
    UnknownTarget,
)


class TestCreate:

    def test_create_registers_queued_deployment(self, make_registry):
        registry = make_registry()
        deployment = registry.create(PROD, "U-DEV", "web")

        assert registry.get(PROD) is deployment
        assert deployment.state is DeploymentState.QUEUED
        assert deployment.profile.name == "production"
        assert PROD in registry and len(registry) == 1

    def test_second_live_deployment_conflicts(self, make_registry):
        registry = make_registry()
        first = registry.create(PROD, "U-DEV", "web")

        assert not registry.can_create(PROD)
        with pytest.raises(DeploymentConflict, match="already a running deployment"):
            registry.create(PROD, "U-ADMIN", "all")
        assert registry.get(PROD) is first

    def test_targets_are_independent(self, make_registry):
        registry = make_registry()
        registry.create(PROD, "U-DEV", "web")
        registry.create(TEST, "U-DEV", "web")
        assert len(registry) == 2

    def test_finished_deployment_is_replaced(self, make_registry):
        registry = make_registry()
        first = registry.create(PROD, "U-DEV", "web")
        first.cancel()

        second = registry.create(PROD, "U-DEV", "backend")

        assert registry.get(PROD) is second
        assert second is not first

    def test_unknown_target(self, make_registry):
        with pytest.raises(UnknownTarget):
            make_registry().create("C-RANDOM", "U-DEV", "web")

    def test_invalid_tag(self, make_registry):
        registry = make_registry()
        with pytest.raises(InvalidDeploymentRequest):
            registry.create(PROD, "U-DEV", "mobile")
        assert PROD not in registry

    def test_argument_allow_list_is_per_target(self, make_registry):
        registry = make_registry()

        deployment = registry.create(TEST, "U-DEV", "web", {"branch": "feature"})
        assert deployment.extra_args == {"branch": "feature"}

        with pytest.raises(InvalidDeploymentRequest, match="Argument not allowed: branch"):
            registry.create(PROD, "U-DEV", "web", {"branch": "feature"})


class TestCancelAndClear:

    def test_cancel_evicts_and_aborts(self, make_registry):
        registry = make_registry()
        deployment = registry.create(PROD, "U-DEV", "web")

        assert registry.cancel(PROD, "U-ADMIN") is True

        assert registry.get(PROD) is None
        assert deployment.state is DeploymentState.ABORTED
        assert deployment.cancelled_by == "U-ADMIN"
        assert registry.can_create(PROD)

    def test_cancel_without_deployment(self, make_registry):
        assert make_registry().cancel(PROD) is False

    def test_clear_refuses_running_deployment(self, make_registry):
        registry = make_registry()
        deployment = registry.create(PROD, "U-DEV", "web")
        deployment.skip_checks()
        deployment._set_state(DeploymentState.RUNNING)

        assert registry.clear(PROD) is False
        assert registry.get(PROD) is deployment

    def test_clear_queued_deployment_aborts_it(self, make_registry):
        registry = make_registry()
        deployment = registry.create(PROD, "U-DEV", "web")

        assert registry.clear(PROD) is True
        assert deployment.state is DeploymentState.ABORTED
        assert deployment.cancelled_by is None

    def test_clear_finished_deployment(self, make_registry):
        registry = make_registry()
        deployment = registry.create(PROD, "U-DEV", "web")
        deployment.cancel()

        assert registry.clear(PROD) is True
        assert registry.clear(PROD) is False

    def test_clear_only_evicts_expected_instance(self, make_registry):
        registry = make_registry()
        stale = registry.create(PROD, "U-DEV", "web")
        stale.cancel()
        current = registry.create(PROD, "U-ADMIN", "backend")

        assert registry.clear(PROD, stale) is False
        assert registry.get(PROD) is current
        assert current.state is DeploymentState.QUEUED

        assert registry.clear(PROD, current) is True
        assert registry.get(PROD) is None

    def test_cancel_all_reports_running(self, make_registry):
        registry = make_registry()
        queued = registry.create(PROD, "U-DEV", "web")
        running = registry.create(TEST, "U-DEV", "web")
        running.skip_checks()
        running._set_state(DeploymentState.UPDATING)

        assert registry.cancel_all("system") is True

        assert len(registry) == 0
        assert queued.state is DeploymentState.ABORTED
        assert running.state is DeploymentState.ABORTED

    def test_cancel_all_idle(self, make_registry):
        registry = make_registry()
        registry.create(PROD, "U-DEV", "web")
        assert registry.cancel_all() is False
