"""
Single-host deployment over SSH.

Resolves the artifact, opens a transient session to the target host,
logs the host into the registry, replaces the workload and waits for it
to report healthy. Failures come back as a DeploymentOutcome carrying the
remote diagnostics; nothing here retries.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional

from core.config import Settings, get_settings
from core.exceptions import PromotionEngineError
from core.logging import get_logger
from deployment.artifact import resolve_artifact_reference
from deployment.health_checker import HealthCheckConfig, HealthPoller
from deployment.models import DeploymentOutcome, DeploymentRequest, FailureStage
from deployment.registry import RegistryAuthenticator
from deployment.remote import ExecutorConfig, RemoteExecutor
from deployment.workload import WorkloadReplacer, WorkloadSpec

logger = get_logger(__name__, domain="deployment")


class SSHDeployer:
    """Rolls one artifact onto one host and verifies it before reporting success."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        executor_factory: Optional[Callable[[], RemoteExecutor]] = None,
        poller_factory: Optional[Callable[[HealthCheckConfig], HealthPoller]] = None,
        authenticator: Optional[RegistryAuthenticator] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.executor_factory = executor_factory or self._default_executor
        self.poller_factory = poller_factory or (lambda config: HealthPoller(config, sleep=sleep))
        self.authenticator = authenticator or RegistryAuthenticator()
        self._sleep = sleep

    def _default_executor(self) -> RemoteExecutor:
        return RemoteExecutor(
            ExecutorConfig(
                connect_timeout=self.settings.ssh_connect_timeout,
                command_timeout=self.settings.remote_command_timeout,
                remote_workdir=self.settings.remote_workdir,
                known_hosts_path=self.settings.known_hosts_path,
            )
        )

    def workload_spec(self, environment: str) -> WorkloadSpec:
        budget = self.settings.health_budget(environment)
        return WorkloadSpec(
            name=self.settings.workload_name,
            host_port=self.settings.workload_port,
            container_port=self.settings.container_port,
            restart_policy=self.settings.restart_policy,
            mode_variable=self.settings.runtime_mode_variable,
            mode=self.settings.runtime_mode,
            settle_delay=budget.settle_delay,
            prune_retention_hours=self.settings.prune_retention_hours,
            diagnostic_log_lines=self.settings.diagnostic_log_lines,
        )

    def health_config(self, environment: str) -> HealthCheckConfig:
        budget = self.settings.health_budget(environment)
        return HealthCheckConfig(
            max_attempts=budget.max_attempts,
            retry_delay=budget.retry_delay,
            timeout_seconds=self.settings.health_request_timeout,
        )

    async def deploy(self, request: DeploymentRequest) -> DeploymentOutcome:
        """Execute one deployment request."""
        environment = request.environment.value
        log = logger.with_context(target_environment=environment, host=request.host.address)
        log.info(f"Starting deployment of {request.artifact_reference!r} as {request.version_label}")

        start_time = datetime.now(timezone.utc)
        started = time.monotonic()
        steps: List[str] = []
        reference: Optional[str] = None
        transcript = ""
        health_attempts = 0
        reported_version = None

        try:
            # Fails before anything touches the host
            reference = resolve_artifact_reference(request.artifact_reference)
            steps.append("resolve")

            executor = self.executor_factory()
            routine_env = {
                "DEPLOY_ENVIRONMENT": environment,
                "IMAGE": reference,
                "APP_VERSION": request.version_label,
                "REGISTRY_HOST": request.registry.registry,
                "REGISTRY_USER": request.registry.principal,
                "REGISTRY_TOKEN": request.registry.token.get_secret_value(),
            }
            async with executor.session(request, routine_env) as session:
                try:
                    await self.authenticator.login(session, request.registry.registry)
                    replacer = WorkloadReplacer(
                        session,
                        self.workload_spec(environment),
                        self.poller_factory(self.health_config(environment)),
                        sleep=self._sleep,
                    )
                    report = await replacer.replace(
                        reference, request.version_label, self.settings.health_url(request.host.address)
                    )
                finally:
                    transcript = session.transcript
                    steps.extend(result.step for result in session.results)

            health_attempts = report.health.attempts if report.health else 0
            reported_version = report.health.reported_version if report.health else None

        except PromotionEngineError as e:
            stage = _failure_stage(e)
            log.error(f"Deployment failed at {stage.value}: {e.message}")
            if e.diagnostics:
                log.error(f"Remote diagnostics: {e.diagnostics[-2000:]}")
            return DeploymentOutcome(
                environment=request.environment,
                success=False,
                failure_stage=stage,
                error_code=e.error_code,
                error=e.message,
                artifact_reference=reference,
                version_label=request.version_label,
                diagnostics=e.diagnostics or transcript or e.message,
                log=steps,
                health_attempts=e.details.get("attempts", 0),
                start_time=start_time,
                end_time=datetime.now(timezone.utc),
                duration_seconds=round(time.monotonic() - started, 2),
            )

        log.info(f"Deployment of {reference} completed successfully")
        return DeploymentOutcome(
            environment=request.environment,
            success=True,
            artifact_reference=reference,
            version_label=request.version_label,
            log=steps,
            health_attempts=health_attempts,
            reported_version=reported_version,
            start_time=start_time,
            end_time=datetime.now(timezone.utc),
            duration_seconds=round(time.monotonic() - started, 2),
        )


def _failure_stage(error: PromotionEngineError) -> FailureStage:
    try:
        return FailureStage(error.failure_stage)
    except ValueError:
        return FailureStage.REMOTE
