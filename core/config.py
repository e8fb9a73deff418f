"""
Configuration management using Pydantic Settings
Handles environment variables, target hosts and health-check budgets
"""
import re
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings

from core.exceptions import ConfigurationError

TARGET_ENVIRONMENTS = ("acceptance", "qa", "production")


class HealthBudget(BaseModel):
    """Effective retry budget for one environment"""

    model_config = ConfigDict(frozen=True)

    max_attempts: int
    retry_delay: float
    settle_delay: float


class Settings(BaseSettings):
    """Engine settings with environment variable support"""

    # Environment
    environment: str = Field(default="development")

    # Application
    app_name: str = "promotion-engine"
    app_version: str = "0.1.0"

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    # Registry
    registry_host: str = Field(default="ghcr.io")
    registry_namespace: str = Field(default="")
    registry_repository: str = Field(default="monolith")
    registry_user: str = Field(default="")
    registry_token: Optional[SecretStr] = Field(default=None)
    registry_timeout: float = Field(default=30.0)

    # Workload
    workload_name: str = Field(default="monolith")
    workload_port: int = Field(default=3000, description="Published port on the host")
    container_port: int = Field(default=3000, description="Port the service listens on inside the container")
    runtime_mode_variable: str = Field(default="NODE_ENV")
    runtime_mode: str = Field(default="production")
    restart_policy: str = Field(default="unless-stopped")
    prune_retention_hours: int = Field(default=24)
    diagnostic_log_lines: int = Field(default=50)

    # Health checks
    health_scheme: str = Field(default="http")
    health_path: str = Field(default="/health")
    health_max_attempts: int = Field(default=30, ge=1)
    health_retry_delay: float = Field(default=2.0, ge=0)
    health_request_timeout: float = Field(default=5.0, gt=0)
    settle_delay: float = Field(default=10.0, ge=0)
    health_overrides: Dict[str, Dict[str, float]] = Field(
        default_factory=dict,
        description="Per-environment overrides, e.g. {\"production\": {\"max_attempts\": 60}}",
    )

    # Target hosts
    acceptance_host: Optional[str] = Field(default=None)
    acceptance_user: Optional[str] = Field(default=None)
    acceptance_ssh_key: Optional[SecretStr] = Field(default=None)
    acceptance_ssh_port: int = Field(default=22)
    qa_host: Optional[str] = Field(default=None)
    qa_user: Optional[str] = Field(default=None)
    qa_ssh_key: Optional[SecretStr] = Field(default=None)
    qa_ssh_port: int = Field(default=22)
    production_host: Optional[str] = Field(default=None)
    production_user: Optional[str] = Field(default=None)
    production_ssh_key: Optional[SecretStr] = Field(default=None)
    production_ssh_port: int = Field(default=22)

    # SSH
    ssh_connect_timeout: float = Field(default=30.0)
    remote_command_timeout: float = Field(default=300.0)
    remote_workdir: str = Field(default="/tmp")
    known_hosts_path: str = Field(default="~/.ssh/known_hosts")

    # Promotion
    release_version: str = Field(default="1.0.0")
    discovery_strategy: str = Field(default="digest")
    acceptance_interval_seconds: float = Field(default=3600.0, gt=0, description="Scheduled acceptance cadence")
    acceptance_command: Optional[str] = Field(default=None, description="External acceptance suite command")
    acceptance_timeout: float = Field(default=600.0)
    smoke_paths: List[str] = Field(default_factory=lambda: ["/", "/api/users"])
    signoff_requires_qa_check: bool = Field(default=True)

    # Locking
    lock_redis_url: Optional[str] = Field(default=None)
    lock_ttl_seconds: int = Field(default=1800)
    lock_dir: str = Field(default="~/.cache/promotion-engine/locks", description="Lock files shared by local processes")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v

    @field_validator("discovery_strategy")
    @classmethod
    def validate_discovery_strategy(cls, v):
        if v not in ("digest", "always"):
            raise ValueError("discovery_strategy must be 'digest' or 'always'")
        return v

    @field_validator("release_version")
    @classmethod
    def validate_release_version(cls, v):
        if not re.fullmatch(r"\d+\.\d+\.\d+", v.lstrip("v")):
            raise ValueError("release_version must look like X.Y.Z")
        return v.lstrip("v")

    @field_validator("health_overrides")
    @classmethod
    def validate_health_overrides(cls, v):
        unknown = set(v) - set(TARGET_ENVIRONMENTS)
        if unknown:
            raise ValueError(f"health_overrides has unknown environments: {sorted(unknown)}")
        return v

    @property
    def repository_path(self) -> str:
        """Repository path inside the registry, e.g. acme/app"""
        if self.registry_namespace:
            return f"{self.registry_namespace}/{self.registry_repository}"
        return self.registry_repository

    @property
    def repository_reference(self) -> str:
        """Registry reference without tag, e.g. ghcr.io/acme/app"""
        return f"{self.registry_host}/{self.repository_path}"

    def registry_token_value(self) -> str:
        if not self.registry_token:
            raise ConfigurationError("Registry token is not configured", setting="registry_token")
        return self.registry_token.get_secret_value()

    def host_for(self, environment: str):
        """Build the host descriptor for one target environment"""
        from deployment.models import HostDescriptor

        if environment not in TARGET_ENVIRONMENTS:
            raise ConfigurationError(f"Unknown target environment: {environment}", setting="environment")

        address = getattr(self, f"{environment}_host")
        user = getattr(self, f"{environment}_user")
        key = getattr(self, f"{environment}_ssh_key")
        for setting, value in (("host", address), ("user", user), ("ssh_key", key)):
            if not value:
                raise ConfigurationError(
                    f"{environment} {setting.replace('_', ' ')} is not configured",
                    setting=f"{environment}_{setting}",
                )

        return HostDescriptor(
            address=address,
            user=user,
            ssh_key=key,
            port=getattr(self, f"{environment}_ssh_port"),
        )

    def health_budget(self, environment: str) -> HealthBudget:
        overrides = self.health_overrides.get(environment, {})
        return HealthBudget(
            max_attempts=int(overrides.get("max_attempts", self.health_max_attempts)),
            retry_delay=float(overrides.get("retry_delay", self.health_retry_delay)),
            settle_delay=float(overrides.get("settle_delay", self.settle_delay)),
        )

    def health_url(self, address: str) -> str:
        return f"{self.health_scheme}://{address}:{self.workload_port}{self.health_path}"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra environment variables
    )

    def model_dump(self, **kwargs):
        """Override to mask sensitive fields when serializing"""
        data = super().model_dump(**kwargs)

        sensitive_fields = [
            "registry_token",
            "acceptance_ssh_key",
            "qa_ssh_key",
            "production_ssh_key",
        ]

        for field in sensitive_fields:
            if field in data and data[field]:
                if hasattr(data[field], "get_secret_value"):
                    value = data[field].get_secret_value()
                else:
                    value = str(data[field])

                # Keep first 4 chars for identification
                if len(value) > 4:
                    data[field] = value[:4] + "*" * (len(value) - 4)
                else:
                    data[field] = "*" * len(value)

        return data


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Global settings instance
settings = get_settings()
