"""
Data model for single-host deployments.

Requests are built per invocation and consumed once; outcomes are
produced once per request and never mutated.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class Environment(str, Enum):
    """Deployment targets, in promotion order."""

    ACCEPTANCE = "acceptance"
    QA = "qa"
    PRODUCTION = "production"


class FailureStage(str, Enum):
    """Pipeline step at which a deployment stopped."""

    RESOLVE = "resolve"
    CONNECT = "connect"
    AUTHENTICATE = "authenticate"
    PULL = "pull"
    REMOTE = "remote"
    HEALTH_CHECK = "health_check"


class HostDescriptor(BaseModel):
    """SSH target for one environment."""

    model_config = ConfigDict(frozen=True)

    address: str = Field(..., description="Hostname or IP of the target host")
    user: str = Field(..., description="SSH login principal")
    ssh_key: SecretStr = Field(..., description="Private key material for the login principal")
    port: int = Field(default=22, description="SSH port")


class RegistryCredential(BaseModel):
    """Credential the target host uses to pull from the registry."""

    model_config = ConfigDict(frozen=True)

    registry: str = Field(..., description="Registry host, e.g. ghcr.io")
    principal: str = Field(..., description="Registry user name")
    token: SecretStr = Field(..., description="Registry access token")


class DeploymentRequest(BaseModel):
    """One deployment of one artifact to one environment."""

    model_config = ConfigDict(frozen=True)

    environment: Environment
    artifact_reference: str = Field(..., description="Raw artifact payload, resolved before any remote step")
    version_label: str = Field(..., description="Version injected into the workload as APP_VERSION")
    host: HostDescriptor
    registry: RegistryCredential


class DeploymentOutcome(BaseModel):
    """Result of a deployment request."""

    model_config = ConfigDict(frozen=True)

    environment: Environment
    success: bool
    failure_stage: Optional[FailureStage] = None
    error_code: Optional[str] = None
    error: str = ""
    artifact_reference: Optional[str] = Field(None, description="Resolved reference, if resolution succeeded")
    version_label: str = ""
    diagnostics: str = Field(default="", description="Captured remote output for failed deployments")
    log: List[str] = Field(default_factory=list, description="Step log of the deployment")
    health_attempts: int = 0
    reported_version: Optional[str] = None
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    duration_seconds: float = 0.0
