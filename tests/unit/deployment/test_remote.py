"""
Unit tests for the transient SSH session and its credential lifecycle
"""

import asyncio
import stat
import threading
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from core.exceptions import RemoteConnectionError, RemoteDeploymentFailed
from deployment.remote import ExecutorConfig, ExecutorState, RemoteExecutor, render_routine

pytestmark = [pytest.mark.unit, pytest.mark.critical]

ROUTINE_ENV = {"DEPLOY_ENVIRONMENT": "qa", "IMAGE": "ghcr.io/acme/app:v1.0.0-rc.1", "REGISTRY_TOKEN": "s3cr3t"}


def make_client(exit_code=0, output=b"ok\n", error=b""):
    """Mock SSHClient whose commands all return the given result"""
    client = MagicMock()
    stdout = MagicMock()
    stdout.read.return_value = output
    stdout.channel.recv_exit_status.return_value = exit_code
    stderr = MagicMock()
    stderr.read.return_value = error
    client.exec_command.return_value = (MagicMock(), stdout, stderr)
    return client


@pytest.fixture
def executor(tmp_path):
    executor = RemoteExecutor(ExecutorConfig(known_hosts_path=str(tmp_path / "known_hosts")))
    with patch.object(RemoteExecutor, "_register_host_key"):
        yield executor


class TestRenderRoutine:
    def test_exports_are_quoted_and_command_is_exec(self):
        routine = render_routine({"IMAGE": "ghcr.io/acme/app:latest", "REGISTRY_TOKEN": "to'ken"})

        assert routine.startswith("#!/bin/sh\n")
        assert "export IMAGE=ghcr.io/acme/app:latest" in routine
        assert "export REGISTRY_TOKEN='to'\"'\"'ken'" in routine
        assert routine.rstrip().endswith('exec /bin/sh -c "$1"')


class TestRemoteExecutor:
    """Idle -> CredentialStaged -> Connected -> Executed -> CredentialCleared"""

    @pytest.mark.asyncio
    async def test_successful_session_walks_every_state(self, executor, deployment_request):
        client = make_client()
        with patch("deployment.remote.paramiko.SSHClient", return_value=client):
            async with executor.session(deployment_request, ROUTINE_ENV) as session:
                key_path = executor.key_path
                assert key_path.exists()
                assert stat.S_IMODE(key_path.stat().st_mode) == 0o600
                assert executor.state == ExecutorState.CONNECTED
                await session.run("docker ps", step="ps")

        assert executor.history == [
            ExecutorState.IDLE,
            ExecutorState.CREDENTIAL_STAGED,
            ExecutorState.CONNECTED,
            ExecutorState.EXECUTED,
            ExecutorState.CREDENTIAL_CLEARED,
        ]
        assert not key_path.exists()
        assert not key_path.parent.exists()
        client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_credential_removed_when_step_raises(self, executor, deployment_request):
        client = make_client(exit_code=1, error=b"boom")
        with patch("deployment.remote.paramiko.SSHClient", return_value=client):
            with pytest.raises(RemoteDeploymentFailed) as exc_info:
                async with executor.session(deployment_request, ROUTINE_ENV) as session:
                    key_path = executor.key_path
                    await session.run("docker run broken", step="start")

        assert exc_info.value.exit_code == 1
        assert "boom" in exc_info.value.diagnostics
        assert not key_path.exists()
        assert executor.state == ExecutorState.CREDENTIAL_CLEARED
        assert ExecutorState.EXECUTED not in executor.history

    @pytest.mark.asyncio
    async def test_credential_removed_when_connect_fails(self, executor, deployment_request):
        client = make_client()
        client.connect.side_effect = paramiko.SSHException("auth failed")
        staged = []
        original = RemoteExecutor._stage_credential

        def track(self, staging_dir, key_material):
            path = original(self, staging_dir, key_material)
            staged.append(path)
            return path

        with patch("deployment.remote.paramiko.SSHClient", return_value=client):
            with patch.object(RemoteExecutor, "_stage_credential", track):
                with pytest.raises(RemoteConnectionError, match="auth failed"):
                    async with executor.session(deployment_request, ROUTINE_ENV):
                        pass

        assert len(staged) == 1
        assert not staged[0].exists()
        assert executor.history[-1] == ExecutorState.CREDENTIAL_CLEARED
        assert ExecutorState.CONNECTED not in executor.history

    @pytest.mark.asyncio
    async def test_routine_uploaded_and_removed(self, executor, deployment_request):
        client = make_client()
        sftp = client.open_sftp.return_value
        with patch("deployment.remote.paramiko.SSHClient", return_value=client):
            async with executor.session(deployment_request, ROUTINE_ENV) as session:
                routine_path = session.routine_path

        assert routine_path.startswith("/tmp/deploy-qa-")
        uploaded = sftp.putfo.call_args[0][0].getvalue().decode()
        assert "export REGISTRY_TOKEN=s3cr3t" in uploaded
        sftp.chmod.assert_called_once_with(routine_path, 0o700)
        sftp.remove.assert_called_once_with(routine_path)

    @pytest.mark.asyncio
    async def test_secrets_never_on_command_line(self, executor, deployment_request):
        client = make_client()
        with patch("deployment.remote.paramiko.SSHClient", return_value=client):
            async with executor.session(deployment_request, ROUTINE_ENV) as session:
                await session.run('docker login ghcr.io -u "$REGISTRY_USER" --password-stdin', step="login")

        command = client.exec_command.call_args[0][0]
        assert command.startswith(f"/bin/sh {session.routine_path} ")
        assert "s3cr3t" not in command

    @pytest.mark.asyncio
    async def test_dropped_connection_becomes_connection_error(self, executor, deployment_request):
        client = make_client()
        client.exec_command.side_effect = paramiko.SSHException("channel closed")
        with patch("deployment.remote.paramiko.SSHClient", return_value=client):
            with pytest.raises(RemoteConnectionError, match="lost connection during 'pull'"):
                async with executor.session(deployment_request, ROUTINE_ENV) as session:
                    await session.run('docker pull "$IMAGE"', step="pull")

        assert executor.state == ExecutorState.CREDENTIAL_CLEARED

    @pytest.mark.asyncio
    async def test_unchecked_failure_is_returned(self, executor, deployment_request):
        client = make_client(exit_code=1, output=b"", error=b"No such container: monolith")
        with patch("deployment.remote.paramiko.SSHClient", return_value=client):
            async with executor.session(deployment_request, ROUTINE_ENV) as session:
                result = await session.run("docker stop monolith", step="stop", check=False)

        assert result.success is False
        assert "No such container" in session.transcript


class TestHostKeyRegistration:
    def test_unreachable_host_is_not_fatal(self, tmp_path):
        executor = RemoteExecutor(ExecutorConfig(known_hosts_path=str(tmp_path / "known_hosts")))
        with patch("deployment.remote.paramiko.Transport", side_effect=OSError("unreachable")):
            executor._register_host_key("qa.example.com", 22)

        assert not (tmp_path / "known_hosts").exists()


class TestCancellation:
    """A cancelled deployment still clears the credential and closes the connection"""

    @pytest.mark.asyncio
    async def test_cancelled_during_connect(self, executor, deployment_request):
        client = make_client()
        entered, release = threading.Event(), threading.Event()

        def slow_connect(**kwargs):
            entered.set()
            release.wait(5)

        client.connect.side_effect = slow_connect

        async def deploy():
            async with executor.session(deployment_request, ROUTINE_ENV):
                pass

        with patch("deployment.remote.paramiko.SSHClient", return_value=client):
            task = asyncio.create_task(deploy())
            assert await asyncio.to_thread(entered.wait, 5)
            key_path = executor.key_path
            task.cancel()
            await asyncio.sleep(0)
            release.set()
            with pytest.raises(asyncio.CancelledError):
                await task

        client.close.assert_called_once()
        client.open_sftp.assert_not_called()
        assert not key_path.parent.exists()
        assert executor.state == ExecutorState.CREDENTIAL_CLEARED
        assert ExecutorState.CONNECTED not in executor.history

    @pytest.mark.asyncio
    async def test_cancelled_during_step(self, executor, deployment_request):
        client = make_client()
        sftp = client.open_sftp.return_value
        entered, release = threading.Event(), threading.Event()

        def slow_pull(*args, **kwargs):
            entered.set()
            release.wait(5)
            return client.exec_command.return_value

        client.exec_command.side_effect = slow_pull
        routine = {}

        async def deploy():
            async with executor.session(deployment_request, ROUTINE_ENV) as session:
                routine["path"] = session.routine_path
                routine["key"] = executor.key_path
                await session.run('docker pull "$IMAGE"', step="pull")

        with patch("deployment.remote.paramiko.SSHClient", return_value=client):
            task = asyncio.create_task(deploy())
            try:
                assert await asyncio.to_thread(entered.wait, 5)
                task.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await task
            finally:
                release.set()

        sftp.remove.assert_called_once_with(routine["path"])
        client.close.assert_called_once()
        assert not routine["key"].parent.exists()
        assert executor.state == ExecutorState.CREDENTIAL_CLEARED
        assert ExecutorState.EXECUTED not in executor.history
