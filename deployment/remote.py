"""
Transient SSH sessions to deployment targets.

A session owns the SSH credential for exactly one deployment request:
the key is written to a private temp file, used to connect, and deleted
together with the uploaded routine on every exit path.
"""

import asyncio
import io
import logging
import os
import secrets
import shlex
import shutil
import tempfile
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

import paramiko
from pydantic import BaseModel, Field

from core.exceptions import RemoteConnectionError, RemoteDeploymentFailed
from deployment.models import DeploymentRequest

logger = logging.getLogger(__name__)


class ExecutorState(str, Enum):
    IDLE = "idle"
    CREDENTIAL_STAGED = "credential_staged"
    CONNECTED = "connected"
    EXECUTED = "executed"
    CREDENTIAL_CLEARED = "credential_cleared"


class CommandResult(BaseModel):
    """Result of one remote step."""

    step: str
    command: str
    exit_code: int
    output: str = ""
    error: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def combined_output(self) -> str:
        return "\n".join(part for part in (self.output.strip(), self.error.strip()) if part)


class ExecutorConfig(BaseModel):
    """Connection settings shared by all sessions."""

    connect_timeout: float = Field(default=30.0, description="SSH connect timeout in seconds")
    command_timeout: float = Field(default=300.0, description="Per-step timeout in seconds")
    remote_workdir: str = Field(default="/tmp", description="Directory the routine is uploaded to")
    known_hosts_path: str = Field(default="~/.ssh/known_hosts", description="known_hosts file to register into")


def render_routine(environment: Dict[str, str]) -> str:
    """
    Compose the routine uploaded to the host.

    It exports the deployment environment and runs the step passed as its
    first argument, so secrets never appear on a remote command line.
    """
    lines = ["#!/bin/sh", "# generated deployment routine, removed after use"]
    for key, value in environment.items():
        lines.append(f"export {key}={shlex.quote(value)}")
    lines.append('exec /bin/sh -c "$1"')
    return "\n".join(lines) + "\n"


async def _settled(task: asyncio.Future):
    """Wait for a worker-thread task abandoned by a cancelled caller; its result, or None if it failed."""
    await asyncio.wait([task])
    if task.cancelled() or task.exception() is not None:
        return None
    return task.result()


class RemoteSession:
    """Runs deployment steps on a connected host through the uploaded routine."""

    def __init__(self, client: paramiko.SSHClient, routine_path: str, host: str, command_timeout: float):
        self.client = client
        self.routine_path = routine_path
        self.host = host
        self.command_timeout = command_timeout
        self.results: List[CommandResult] = []

    async def run(self, command: str, step: Optional[str] = None, check: bool = True) -> CommandResult:
        """
        Execute one step on the host.

        Raises:
            RemoteDeploymentFailed: the step exited non-zero and check is set
            RemoteConnectionError: the transport dropped mid-command
        """
        step = step or command.split()[0]
        wrapped = f"/bin/sh {shlex.quote(self.routine_path)} {shlex.quote(command)}"
        logger.info(f"[{self.host}] {step}: {command}")

        try:
            exit_code, output, error = await asyncio.to_thread(self._exec, wrapped)
        except (paramiko.SSHException, OSError) as e:
            raise RemoteConnectionError(self.host, f"lost connection during '{step}': {e}") from e

        result = CommandResult(step=step, command=command, exit_code=exit_code, output=output, error=error)
        self.results.append(result)

        if result.success:
            logger.info(f"[{self.host}] {step} completed")
        else:
            logger.error(f"[{self.host}] {step} failed with exit code {exit_code}")
            if check:
                raise RemoteDeploymentFailed(step, exit_code, diagnostics=result.combined_output)
        return result

    def _exec(self, command: str):
        _stdin, stdout, stderr = self.client.exec_command(command, timeout=self.command_timeout)
        output = stdout.read().decode("utf-8", errors="replace")
        error = stderr.read().decode("utf-8", errors="replace")
        exit_code = stdout.channel.recv_exit_status()
        return exit_code, output, error

    @property
    def transcript(self) -> str:
        """All step output so far, for diagnostics."""
        return "\n".join(f"$ {r.step}\n{r.combined_output}" for r in self.results)


class RemoteExecutor:
    """
    Owns the credential lifecycle for one deployment request.

    State machine: idle -> credential_staged -> connected -> executed ->
    credential_cleared. Cleanup always ends in credential_cleared.
    """

    def __init__(self, config: Optional[ExecutorConfig] = None):
        self.config = config or ExecutorConfig()
        self.state = ExecutorState.IDLE
        self.history: List[ExecutorState] = [ExecutorState.IDLE]
        self.key_path: Optional[Path] = None

    def _advance(self, state: ExecutorState) -> None:
        self.state = state
        self.history.append(state)

    @asynccontextmanager
    async def session(self, request: DeploymentRequest, environment: Dict[str, str]) -> AsyncIterator[RemoteSession]:
        """Stage the credential, connect, upload the routine and yield a session."""
        host = request.host
        staging_dir = Path(tempfile.mkdtemp(prefix="deploy-"))
        client: Optional[paramiko.SSHClient] = None
        routine_path: Optional[str] = None

        try:
            self.key_path = self._stage_credential(staging_dir, request.host.ssh_key.get_secret_value())
            self._advance(ExecutorState.CREDENTIAL_STAGED)

            await asyncio.to_thread(self._register_host_key, host.address, host.port)

            connecting = asyncio.ensure_future(
                asyncio.to_thread(self._connect, host.address, host.port, host.user, str(self.key_path))
            )
            try:
                client = await asyncio.shield(connecting)
            except asyncio.CancelledError:
                # The worker thread may still open the connection; keep it so it gets closed
                client = await _settled(connecting)
                raise
            self._advance(ExecutorState.CONNECTED)

            routine_name = f"deploy-{request.environment.value}-{secrets.token_hex(6)}.sh"
            routine_path = f"{self.config.remote_workdir.rstrip('/')}/{routine_name}"
            uploading = asyncio.ensure_future(
                asyncio.to_thread(self._upload, client, render_routine(environment), routine_path, host.address)
            )
            try:
                await asyncio.shield(uploading)
            except asyncio.CancelledError:
                await _settled(uploading)
                raise

            yield RemoteSession(client, routine_path, host.address, self.config.command_timeout)
            self._advance(ExecutorState.EXECUTED)
        finally:
            # Local key first: no awaits between here and deletion
            shutil.rmtree(staging_dir, ignore_errors=True)
            self.key_path = None
            if client is not None:
                if routine_path:
                    await asyncio.to_thread(self._remove_remote, client, routine_path, host.address)
                client.close()
                logger.info(f"SSH connection to {host.address} closed")
            self._advance(ExecutorState.CREDENTIAL_CLEARED)

    def _stage_credential(self, staging_dir: Path, key_material: str) -> Path:
        os.chmod(staging_dir, 0o700)
        key_path = staging_dir / "id_deploy"
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as fh:
            fh.write(key_material.strip() + "\n")
        return key_path

    def _register_host_key(self, address: str, port: int) -> None:
        """Add the host's public key to known_hosts; failures are not fatal."""
        known_hosts = Path(os.path.expanduser(self.config.known_hosts_path))
        entry = address if port == 22 else f"[{address}]:{port}"
        try:
            host_keys = paramiko.HostKeys()
            if known_hosts.exists():
                host_keys.load(str(known_hosts))
            if host_keys.lookup(entry):
                logger.debug(f"Host key for {entry} already known")
                return

            transport = paramiko.Transport((address, port))
            try:
                transport.start_client(timeout=self.config.connect_timeout)
                key = transport.get_remote_server_key()
            finally:
                transport.close()

            known_hosts.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            host_keys.add(entry, key.get_name(), key)
            host_keys.save(str(known_hosts))
            logger.info(f"Registered host key for {entry}")
        except (paramiko.SSHException, OSError) as e:
            logger.warning(f"Could not register host key for {entry}: {e}")

    def _connect(self, address: str, port: int, user: str, key_path: str) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        known_hosts = os.path.expanduser(self.config.known_hosts_path)
        try:
            if os.path.exists(known_hosts):
                client.load_host_keys(known_hosts)
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

            logger.info(f"Connecting to {user}@{address}:{port}")
            client.connect(
                hostname=address,
                port=port,
                username=user,
                key_filename=key_path,
                timeout=self.config.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteConnectionError(address, str(e)) from e

        logger.info("SSH connection established successfully")
        return client

    def _upload(self, client: paramiko.SSHClient, routine: str, remote_path: str, address: str) -> None:
        try:
            sftp = client.open_sftp()
            try:
                sftp.putfo(io.BytesIO(routine.encode("utf-8")), remote_path)
                sftp.chmod(remote_path, 0o700)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise RemoteConnectionError(address, f"could not upload deployment routine: {e}") from e

    def _remove_remote(self, client: paramiko.SSHClient, remote_path: str, address: str) -> None:
        try:
            sftp = client.open_sftp()
            try:
                sftp.remove(remote_path)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            logger.error(f"Could not remove deployment routine {remote_path} from {address}: {e}")
