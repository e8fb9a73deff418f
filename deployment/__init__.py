"""
Single-host deployment of container artifacts.

Resolves artifact references, runs the workload replacement on the
target host over SSH and verifies it with a bounded liveness probe.
"""

from .artifact import ArtifactReference, parse_artifact_reference, resolve_artifact_reference
from .health_checker import HealthCheckConfig, HealthCheckResult, HealthPoller, HealthPollResult
from .models import (
    DeploymentOutcome,
    DeploymentRequest,
    Environment,
    FailureStage,
    HostDescriptor,
    RegistryCredential,
)
from .registry import RegistryAuthenticator
from .remote import ExecutorState, RemoteExecutor, RemoteSession
from .ssh_deployer import SSHDeployer
from .workload import WorkloadReplacer, WorkloadSpec

__all__ = [
    "ArtifactReference",
    "parse_artifact_reference",
    "resolve_artifact_reference",
    "HealthCheckConfig",
    "HealthCheckResult",
    "HealthPoller",
    "HealthPollResult",
    "DeploymentOutcome",
    "DeploymentRequest",
    "Environment",
    "FailureStage",
    "HostDescriptor",
    "RegistryCredential",
    "RegistryAuthenticator",
    "ExecutorState",
    "RemoteExecutor",
    "RemoteSession",
    "SSHDeployer",
    "WorkloadReplacer",
    "WorkloadSpec",
]
