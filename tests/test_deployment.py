"""
Tests for the Deployment state machine and its phases.

Playbook runs go through a fake ansible executable so process supervision
(streaming, exit codes, SIGTERM/SIGKILL escalation) runs for real.
"""

import asyncio
import os
import signal
import sys

import httpx
import pytest

from conftest import (
    FakeAggregator,
    check_run,
    failed_round,
    make_aggregator,
    passed_round,
    pending_round,
    wait_until,
)
from services.deployment import (
    ChecksStatus,
    CheckQueryError,
    Deployment,
    DeploymentState,
    DeploymentTag,
    InvalidStateTransition,
    PhasePreconditionError,
    PlaybookAlreadyRunning,
    PlaybookError,
    RepoSyncError,
    TargetProfile,
)

PROFILE = TargetProfile(
    key="C-PROD",
    name="production",
    inventory="inventory",
    allowed_args={"branch": "deploy_branch"},
)

SUCCESS_BODY = (
    "sys.stdout.write('PLAY [all]\\nTASK [common : Install packages]\\nok: [web1]\\n')\n"
    "sys.stdout.flush()\n"
    "sys.stdout.write('TASK [Restart services]\\nchanged: [web1]\\n')\n"
    "sys.stdout.flush()\n"
    "sys.stderr.write('warning: deprecated\\n')\n"
)

FAILING_BODY = SUCCESS_BODY + "sys.exit(1)\n"

STUBBORN_BODY = (
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('started', flush=True)\n"
    "time.sleep(30)\n"
)


def make_deployment(config, aggregator=None, tag="backend", extra_args=None) -> Deployment:
    return Deployment(
        target_key="C-PROD",
        requester="U-DEV",
        tag=DeploymentTag(tag),
        profile=PROFILE,
        config=config,
        aggregator=aggregator or FakeAggregator([passed_round()]),
        extra_args=extra_args,
    )


def record_states(deployment: Deployment):
    states = []
    deployment.on_state(states.append)
    return states


# =============================================================================
# STATE MACHINE
# =============================================================================

class TestStateMachine:

    def test_new_deployment_is_queued(self, make_config):
        deployment = make_deployment(make_config())
        assert deployment.state is DeploymentState.QUEUED
        assert not deployment.is_terminal()
        assert not deployment.is_running()

    def test_cancel_moves_to_aborted_once(self, make_config):
        deployment = make_deployment(make_config())
        states = record_states(deployment)

        assert deployment.cancel("U-ADMIN") is True
        assert deployment.cancel("U-OTHER") is False

        assert deployment.state is DeploymentState.ABORTED
        assert deployment.cancelled_by == "U-ADMIN"
        assert deployment.token.cancelled
        assert states == [DeploymentState.ABORTED]

    def test_terminal_state_is_absorbing(self, make_config):
        deployment = make_deployment(make_config())
        deployment.cancel()

        with pytest.raises(InvalidStateTransition):
            deployment._set_state(DeploymentState.RUNNING)

    def test_channels_close_on_terminal_state(self, make_config):
        deployment = make_deployment(make_config())
        deployment.cancel()

        assert deployment.state_events.closed
        assert deployment.progress_events.closed

    def test_skip_checks_requires_queued(self, make_config):
        deployment = make_deployment(make_config())
        deployment.skip_checks()
        assert deployment.state is DeploymentState.READY

        with pytest.raises(PhasePreconditionError):
            deployment.skip_checks()

    def test_to_dict(self, make_config):
        deployment = make_deployment(make_config(), extra_args={"branch": "feature"})
        data = deployment.to_dict()

        assert data["state"] == "queued"
        assert data["tag"] == "backend"
        assert data["profile"] == "production"
        assert data["extra_args"] == {"branch": "feature"}
        assert data["pid"] is None


# =============================================================================
# CHECKS
# =============================================================================

class TestRunChecks:

    @pytest.mark.asyncio
    async def test_passing_checks_make_deployment_ready(self, make_config):
        aggregator = FakeAggregator([pending_round(), pending_round(), passed_round()])
        deployment = make_deployment(make_config(), aggregator)
        notified = []

        outcome = await deployment.run_checks(notified.append)

        assert outcome.passed
        assert deployment.state is DeploymentState.READY
        assert len(notified) == 1
        assert aggregator.closed

    @pytest.mark.asyncio
    async def test_failing_checks_end_in_error(self, make_config):
        deployment = make_deployment(make_config(), FakeAggregator([pending_round(), failed_round()]))

        outcome = await deployment.run_checks()

        assert outcome.status is ChecksStatus.FAILED
        assert [c.name for c in outcome.failed] == ["lint"]
        assert deployment.state is DeploymentState.ERROR

    @pytest.mark.asyncio
    async def test_query_error_propagates(self, make_config):
        aggregator = FakeAggregator(error=CheckQueryError("acme/api", "HTTP 502"))
        deployment = make_deployment(make_config(), aggregator)

        with pytest.raises(CheckQueryError):
            await deployment.run_checks()
        assert deployment.state is DeploymentState.ERROR

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_checks(self, make_config):
        aggregator = FakeAggregator([pending_round()], hang=True)
        deployment = make_deployment(make_config(), aggregator)

        task = asyncio.create_task(deployment.run_checks())
        await wait_until(lambda: deployment.state is DeploymentState.CHECKING)
        await asyncio.sleep(0.05)
        deployment.cancel("U-ADMIN")
        outcome = await asyncio.wait_for(task, timeout=5)

        assert outcome.aborted
        assert deployment.state is DeploymentState.ABORTED
        assert aggregator.closed

    @pytest.mark.asyncio
    async def test_all_repositories_passing_never_reports_pending(self, make_config):
        queried = []

        def handler(request: httpx.Request):
            repo = "/".join(request.url.path.split("/")[2:4])
            queried.append(repo)
            return httpx.Response(200, json={"check_runs": [check_run("build", repo=repo)]})

        aggregator = make_aggregator(handler, repos=("acme/api", "acme/web", "acme/worker"))
        deployment = make_deployment(make_config(), aggregator)
        notified = []

        outcome = await deployment.run_checks(notified.append)

        assert outcome.passed
        assert sorted(queried) == ["acme/api", "acme/web", "acme/worker"]
        assert notified == []
        assert deployment.state is DeploymentState.READY

    @pytest.mark.asyncio
    async def test_cancel_during_poll_interval(self, make_config):
        requests = []

        def handler(request: httpx.Request):
            requests.append(request)
            return httpx.Response(200, json={"check_runs": [
                check_run("build", status="in_progress", conclusion=None),
            ]})

        aggregator = make_aggregator(handler, repos=("acme/api",), poll_interval=60)
        deployment = make_deployment(make_config(), aggregator)
        notified = []

        task = asyncio.create_task(deployment.run_checks(notified.append))
        await wait_until(lambda: notified)
        loop = asyncio.get_running_loop()
        cancelled_at = loop.time()
        deployment.cancel("U-ADMIN")
        outcome = await asyncio.wait_for(task, timeout=5)

        assert outcome.aborted
        assert loop.time() - cancelled_at < 5
        assert len(requests) == 1
        assert deployment.state is DeploymentState.ABORTED

    @pytest.mark.asyncio
    async def test_cancel_while_reporting_pending_checks(self, make_config):
        aggregator = FakeAggregator([pending_round(), passed_round()])
        deployment = make_deployment(make_config(), aggregator)
        reporting = asyncio.Event()

        async def slow_report(pending):
            reporting.set()
            await asyncio.sleep(60)

        task = asyncio.create_task(deployment.run_checks(slow_report))
        await asyncio.wait_for(reporting.wait(), timeout=5)
        deployment.cancel("U-ADMIN")
        outcome = await asyncio.wait_for(task, timeout=5)

        assert outcome.aborted
        assert deployment.state is DeploymentState.ABORTED
        assert aggregator.closed

    @pytest.mark.asyncio
    async def test_checks_after_cancel_report_aborted(self, make_config):
        deployment = make_deployment(make_config())
        deployment.cancel()

        outcome = await deployment.run_checks()

        assert outcome.aborted

    @pytest.mark.asyncio
    async def test_checks_require_queued(self, make_config):
        deployment = make_deployment(make_config())
        deployment.skip_checks()

        with pytest.raises(PhasePreconditionError):
            await deployment.run_checks()


# =============================================================================
# REPOSITORY SYNC
# =============================================================================

class TestUpdateRepo:

    @pytest.mark.asyncio
    async def test_successful_sync_returns_to_ready(self, make_config):
        deployment = make_deployment(make_config())
        states = record_states(deployment)
        deployment.skip_checks()

        assert await deployment.update_repo() is True
        assert states == [DeploymentState.READY, DeploymentState.UPDATING, DeploymentState.READY]

    @pytest.mark.asyncio
    async def test_failed_sync_raises_with_output(self, make_config):
        command = (sys.executable, "-c", "import sys; sys.stderr.write('fatal: not a git repository'); sys.exit(128)")
        deployment = make_deployment(make_config(sync_command=command))
        deployment.skip_checks()

        with pytest.raises(RepoSyncError) as exc_info:
            await deployment.update_repo()

        assert "Failed to pull Ansible repo with Git" in str(exc_info.value)
        assert "not a git repository" in exc_info.value.stderr
        assert deployment.state is DeploymentState.ERROR

    @pytest.mark.asyncio
    async def test_sync_timeout(self, make_config):
        command = (sys.executable, "-c", "import time; time.sleep(30)")
        deployment = make_deployment(make_config(sync_command=command, sync_timeout=0.3))
        deployment.skip_checks()

        with pytest.raises(RepoSyncError, match="timed out"):
            await asyncio.wait_for(deployment.update_repo(), timeout=10)
        assert deployment.state is DeploymentState.ERROR

    @pytest.mark.asyncio
    async def test_missing_git_binary(self, make_config):
        deployment = make_deployment(make_config(sync_command=("/nonexistent/git", "pull")))
        deployment.skip_checks()

        with pytest.raises(RepoSyncError):
            await deployment.update_repo()
        assert deployment.state is DeploymentState.ERROR

    @pytest.mark.asyncio
    async def test_cancelled_sync_returns_false(self, make_config):
        command = (sys.executable, "-c", "import time; time.sleep(30)")
        deployment = make_deployment(make_config(sync_command=command, sync_timeout=20))
        deployment.skip_checks()

        task = asyncio.create_task(deployment.update_repo())
        await wait_until(lambda: deployment.state is DeploymentState.UPDATING)
        await asyncio.sleep(0.1)
        deployment.cancel("U-ADMIN")

        assert await asyncio.wait_for(task, timeout=10) is False
        assert deployment.state is DeploymentState.ABORTED

    @pytest.mark.asyncio
    async def test_cancelled_sync_does_not_wait_for_forked_children(self, make_config):
        script = "import subprocess, time; subprocess.Popen(['sleep', '30']); print('ready', flush=True); time.sleep(30)"
        deployment = make_deployment(make_config(sync_command=(sys.executable, "-c", script), sync_timeout=20))
        deployment.skip_checks()

        task = asyncio.create_task(deployment.update_repo())
        await wait_until(lambda: deployment.state is DeploymentState.UPDATING)
        await asyncio.sleep(0.5)
        deployment.cancel("U-ADMIN")

        assert await asyncio.wait_for(task, timeout=5) is False
        assert deployment.state is DeploymentState.ABORTED

    @pytest.mark.asyncio
    async def test_update_requires_ready(self, make_config):
        deployment = make_deployment(make_config())
        with pytest.raises(PhasePreconditionError):
            await deployment.update_repo()


# =============================================================================
# PLAYBOOK
# =============================================================================

class TestRunPlaybook:

    @pytest.mark.asyncio
    async def test_successful_run(self, make_config, fake_ansible):
        deployment = make_deployment(make_config(fake_ansible.install(SUCCESS_BODY)), tag="all",
                                     extra_args={"branch": "feature/x"})
        progress = []
        deployment.on_progress(progress.append)
        deployment.skip_checks()

        assert await deployment.run_playbook() is True

        assert deployment.state is DeploymentState.DONE
        assert progress == ["Install packages", "Restart services"]
        assert "changed: [web1]" in deployment.stdout
        assert "deprecated" in deployment.stderr
        assert "TASK [Restart services]" in deployment.output and "deprecated" in deployment.output
        assert fake_ansible.argv() == [
            "-t", "deploy-backend",
            "-t", "deploy-frontend",
            "-i", "inventory",
            "-e", '{"deploy_branch": "feature/x"}',
            "deploy.yml",
        ]

    @pytest.mark.asyncio
    async def test_failed_run_raises_after_progress(self, make_config, fake_ansible):
        deployment = make_deployment(make_config(fake_ansible.install(FAILING_BODY)))
        progress = []
        deployment.on_progress(progress.append)
        deployment.skip_checks()

        with pytest.raises(PlaybookError) as exc_info:
            await deployment.run_playbook()

        assert progress == ["Install packages", "Restart services"]
        assert exc_info.value.returncode == 1
        assert "failed with code 1" in str(exc_info.value)
        assert "ok: [web1]" in exc_info.value.output
        assert deployment.state is DeploymentState.ERROR

    @pytest.mark.asyncio
    async def test_cancel_escalates_to_sigkill(self, make_config, fake_ansible):
        deployment = make_deployment(make_config(fake_ansible.install(STUBBORN_BODY), kill_timeout=0.5))
        deployment.skip_checks()

        task = asyncio.create_task(deployment.run_playbook())
        await wait_until(lambda: "started" in deployment.stdout)
        deployment.cancel("U-ADMIN")

        assert await asyncio.wait_for(task, timeout=10) is False
        assert deployment.state is DeploymentState.ABORTED
        assert deployment.child.returncode == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_cancel_terminates_cooperative_child(self, make_config, fake_ansible):
        body = "print('started', flush=True)\ntime.sleep(30)\n"
        deployment = make_deployment(make_config(fake_ansible.install(body), kill_timeout=5))
        deployment.skip_checks()

        task = asyncio.create_task(deployment.run_playbook())
        await wait_until(lambda: "started" in deployment.stdout)
        deployment.cancel()

        assert await asyncio.wait_for(task, timeout=10) is False
        assert deployment.child.returncode == -signal.SIGTERM

    @pytest.mark.asyncio
    async def test_cancel_reaches_forked_workers(self, make_config, fake_ansible):
        body = (
            "import subprocess\n"
            "subprocess.Popen(['sleep', '30'])\n"
            "print('started', flush=True)\n"
            "time.sleep(30)\n"
        )
        deployment = make_deployment(make_config(fake_ansible.install(body), kill_timeout=5))
        deployment.skip_checks()

        task = asyncio.create_task(deployment.run_playbook())
        await wait_until(lambda: "started" in deployment.stdout)
        deployment.cancel()

        assert await asyncio.wait_for(task, timeout=5) is False
        assert deployment.state is DeploymentState.ABORTED
        assert deployment.child.returncode == -signal.SIGTERM

    @pytest.mark.asyncio
    async def test_cancel_stops_reading_pipes_held_by_detached_process(self, make_config, fake_ansible):
        body = (
            "import subprocess\n"
            "daemon = subprocess.Popen(['sleep', '30'], start_new_session=True)\n"
            "print('started', daemon.pid, flush=True)\n"
            "time.sleep(30)\n"
        )
        deployment = make_deployment(make_config(fake_ansible.install(body), kill_timeout=0.5))
        deployment.skip_checks()

        task = asyncio.create_task(deployment.run_playbook())
        await wait_until(lambda: "started" in deployment.stdout)
        daemon_pid = int(deployment.stdout.split()[1])
        try:
            deployment.cancel()

            assert await asyncio.wait_for(task, timeout=5) is False
            assert deployment.state is DeploymentState.ABORTED
        finally:
            os.kill(daemon_pid, signal.SIGKILL)

    @pytest.mark.asyncio
    async def test_second_run_is_rejected(self, make_config, fake_ansible):
        deployment = make_deployment(make_config(fake_ansible.install(SUCCESS_BODY)))
        deployment.skip_checks()
        await deployment.run_playbook()

        with pytest.raises(PlaybookAlreadyRunning):
            await deployment.run_playbook()

    @pytest.mark.asyncio
    async def test_missing_binary(self, make_config):
        deployment = make_deployment(make_config("/nonexistent/ansible-playbook"))
        deployment.skip_checks()

        with pytest.raises(PlaybookError, match="Could not start"):
            await deployment.run_playbook()
        assert deployment.state is DeploymentState.ERROR

    @pytest.mark.asyncio
    async def test_run_after_cancel_is_noop(self, make_config, fake_ansible):
        deployment = make_deployment(make_config(fake_ansible.install(SUCCESS_BODY)))
        deployment.skip_checks()
        deployment.cancel()

        assert await deployment.run_playbook() is False
        assert deployment.child is None

    @pytest.mark.asyncio
    async def test_run_requires_ready(self, make_config, fake_ansible):
        deployment = make_deployment(make_config(fake_ansible.install(SUCCESS_BODY)))
        with pytest.raises(PhasePreconditionError):
            await deployment.run_playbook()


class TestHighlights:

    def test_matches_in_output_order_across_patterns(self, make_config):
        deployment = make_deployment(make_config())
        text = "TASK [Restart services]\nTASK [role : Install packages]\nTASK [Restart services]\n"
        assert deployment.match_highlights(text) == ["Restart services", "Install packages", "Restart services"]

    def test_unrelated_tasks_are_ignored(self, make_config):
        deployment = make_deployment(make_config())
        assert deployment.match_highlights("TASK [Gathering Facts]\nok: [web1]\n") == []
