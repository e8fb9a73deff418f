"""
Replacement of the single named workload on a host.

Steps run strictly in order and each one can be repeated safely:
pull, stop, remove, start, settle, poll, prune. Only the container
carrying the workload name is ever touched.
"""

import asyncio
import logging
import shlex
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import BaseModel, Field

from core.exceptions import ArtifactPullError, HealthCheckTimeout, RemoteConnectionError
from deployment.health_checker import HealthPoller, HealthPollResult
from deployment.remote import RemoteSession

logger = logging.getLogger(__name__)


class WorkloadSpec(BaseModel):
    """How the workload container is run."""

    name: str = Field(default="monolith", description="Container name; the only container touched")
    host_port: int = Field(default=3000, description="Published port on the host")
    container_port: int = Field(default=3000, description="Port inside the container")
    restart_policy: str = Field(default="unless-stopped")
    mode_variable: str = Field(default="NODE_ENV")
    mode: str = Field(default="production")
    settle_delay: float = Field(default=10.0, ge=0, description="Seconds to wait before the first probe")
    prune_retention_hours: int = Field(default=24, description="Images older than this are pruned")
    diagnostic_log_lines: int = Field(default=50)


class ReplacementReport(BaseModel):
    reference: str
    version_label: str
    container_id: str = ""
    replaced_existing: bool = False
    health: Optional[HealthPollResult] = None
    prune_started: bool = False
    steps: List[str] = Field(default_factory=list)


class WorkloadReplacer:
    """Swaps the running workload for a new artifact and waits until it serves."""

    def __init__(
        self,
        session: RemoteSession,
        spec: WorkloadSpec,
        poller: HealthPoller,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session = session
        self.spec = spec
        self.poller = poller
        self._sleep = sleep

    async def replace(self, reference: str, version_label: str, health_url: str) -> ReplacementReport:
        """
        Roll reference onto the host and confirm it is healthy.

        Raises:
            ArtifactPullError: the image could not be pulled
            RemoteDeploymentFailed: the new instance could not be started
            HealthCheckTimeout: the new instance never became healthy; it is
                left running so it can be inspected
        """
        report = ReplacementReport(reference=reference, version_label=version_label)
        name = shlex.quote(self.spec.name)

        pulled = await self.session.run('docker pull "$IMAGE"', step="pull", check=False)
        if not pulled.success:
            raise ArtifactPullError(reference, diagnostics=pulled.combined_output)
        report.steps.append("pull")

        stopped = await self.session.run(f"docker stop {name}", step="stop", check=False)
        report.replaced_existing = stopped.success
        if not stopped.success:
            # First deployment on this host
            logger.info(f"No running instance of {self.spec.name} to stop")
        report.steps.append("stop")

        await self.session.run(f"docker rm {name}", step="remove", check=False)
        report.steps.append("remove")

        started = await self.session.run(self.start_command(), step="start")
        report.container_id = started.output.strip()[:64]
        report.steps.append("start")

        logger.info(f"Waiting {self.spec.settle_delay}s for {self.spec.name} to settle")
        await self._sleep(self.spec.settle_delay)

        report.health = await self.poller.poll(health_url)
        report.steps.append("health_check")
        if not report.health.healthy:
            logs = await self.collect_diagnostics()
            raise HealthCheckTimeout(health_url, report.health.attempts, diagnostics=logs)

        report.prune_started = await self.prune()
        if report.prune_started:
            report.steps.append("prune")
        return report

    def start_command(self) -> str:
        return " ".join(
            [
                "docker run -d",
                f"--name {shlex.quote(self.spec.name)}",
                f"--restart {shlex.quote(self.spec.restart_policy)}",
                f"-p {self.spec.host_port}:{self.spec.container_port}",
                f"-e {shlex.quote(self.spec.mode_variable + '=' + self.spec.mode)}",
                '-e APP_VERSION="$APP_VERSION"',
                '"$IMAGE"',
            ]
        )

    async def collect_diagnostics(self) -> str:
        """Recent output of the workload, captured before a health failure is reported."""
        command = f"docker logs --tail {self.spec.diagnostic_log_lines} {shlex.quote(self.spec.name)}"
        try:
            result = await self.session.run(command, step="logs", check=False)
        except RemoteConnectionError as e:
            return e.message
        return result.combined_output

    async def prune(self) -> bool:
        """Start pruning old images in the background; failures are logged only."""
        command = (
            f"nohup docker image prune -af --filter until={self.spec.prune_retention_hours}h "
            ">/dev/null 2>&1 &"
        )
        try:
            result = await self.session.run(command, step="prune", check=False)
        except RemoteConnectionError as e:
            logger.warning(f"Image prune could not be started: {e.message}")
            return False
        if not result.success:
            logger.warning(f"Image prune could not be started: {result.combined_output}")
        return result.success
