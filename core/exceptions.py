"""
Custom exceptions for the promotion engine
Provides structured error handling across deployment and promotion stages
"""
from typing import Any, Dict, Optional


class PromotionEngineError(Exception):
    """Base exception for all promotion engine errors"""

    failure_stage: Optional[str] = None

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        diagnostics: str = "",
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.diagnostics = diagnostics

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for CLI and log output"""
        return {
            "error": self.error_code,
            "message": self.message,
            "failure_stage": self.failure_stage,
            "details": self.details,
            "diagnostics": self.diagnostics,
        }


class ValidationError(PromotionEngineError):
    """Raised when input validation fails"""

    def __init__(self, message: str, field: Optional[str] = None, **details):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            details={"field": field, **details} if field else details,
        )


class ConfigurationError(PromotionEngineError):
    """Raised when configuration is invalid or missing"""

    def __init__(self, message: str, setting: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            details={"setting": setting} if setting else {},
        )


class InvalidArtifactReference(PromotionEngineError):
    """Raised when an artifact payload cannot be resolved to a registry reference"""

    failure_stage = "resolve"

    def __init__(self, message: str, payload: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="INVALID_ARTIFACT_REFERENCE",
            details={"payload": payload},
        )


class InvalidVersionTag(PromotionEngineError):
    """Raised when a version tag is malformed or not valid for the requested stage"""

    def __init__(self, message: str, tag: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="INVALID_VERSION_TAG",
            details={"tag": tag},
        )


class RegistryAuthError(PromotionEngineError):
    """Raised when the registry rejects a login"""

    failure_stage = "authenticate"

    def __init__(self, registry: str, message: str, diagnostics: str = ""):
        super().__init__(
            message=f"Registry login to {registry} failed: {message}",
            error_code="REGISTRY_AUTH_ERROR",
            details={"registry": registry},
            diagnostics=diagnostics,
        )


class RegistryError(PromotionEngineError):
    """Raised when the registry API answers a tag or manifest request with an error"""

    failure_stage = "registry"

    def __init__(
        self,
        registry: str,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        super().__init__(
            message=f"{registry} registry error: {message}",
            error_code="REGISTRY_ERROR",
            details={
                "registry": registry,
                "api_status_code": status_code,
                "response_body": response_body,
            },
        )


class TagConflictError(RegistryError):
    """Raised when a version tag already points at a different manifest"""

    def __init__(self, registry: str, tag: str, existing: str, requested: str):
        super().__init__(registry, f"{tag} already points at {existing}, refusing to move it to {requested}")
        self.error_code = "TAG_CONFLICT"
        self.details.update({"tag": tag, "existing_digest": existing, "requested_digest": requested})


class ArtifactPullError(PromotionEngineError):
    """Raised when the target host cannot pull the artifact"""

    failure_stage = "pull"

    def __init__(self, reference: str, diagnostics: str = ""):
        super().__init__(
            message=f"Failed to pull artifact {reference}",
            error_code="ARTIFACT_PULL_ERROR",
            details={"reference": reference},
            diagnostics=diagnostics,
        )


class RemoteConnectionError(PromotionEngineError):
    """Raised when the SSH session to a host cannot be established or drops"""

    failure_stage = "connect"

    def __init__(self, host: str, message: str):
        super().__init__(
            message=f"Connection to {host} failed: {message}",
            error_code="REMOTE_CONNECTION_ERROR",
            details={"host": host},
        )


class RemoteDeploymentFailed(PromotionEngineError):
    """Raised when a remote deployment step exits non-zero"""

    failure_stage = "remote"

    def __init__(self, step: str, exit_code: int, diagnostics: str = ""):
        super().__init__(
            message=f"Remote step '{step}' failed with exit code {exit_code}",
            error_code="REMOTE_DEPLOYMENT_FAILED",
            details={"step": step, "exit_code": exit_code},
            diagnostics=diagnostics,
        )
        self.exit_code = exit_code


class HealthCheckTimeout(PromotionEngineError):
    """Raised when a freshly started workload never reports healthy"""

    failure_stage = "health_check"

    def __init__(self, url: str, attempts: int, diagnostics: str = ""):
        super().__init__(
            message=f"{url} did not report healthy after {attempts} attempts",
            error_code="HEALTH_CHECK_TIMEOUT",
            details={"url": url, "attempts": attempts},
            diagnostics=diagnostics,
        )


class SignoffDenied(PromotionEngineError):
    """Raised when production promotion is requested for a version that QA rejected"""

    failure_stage = "signoff"

    def __init__(self, version: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"QA sign-off for {version} was denied",
            error_code="SIGNOFF_DENIED",
            details={"version": version},
        )


class InvalidTransitionError(PromotionEngineError):
    """Raised when a stage is triggered from a state that does not allow it"""

    failure_stage = "precondition"

    def __init__(self, state: str, event: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"Cannot apply '{event}' in state '{state}'",
            error_code="INVALID_TRANSITION",
            details={"state": state, "event": event},
        )


class DeploymentInProgressError(PromotionEngineError):
    """Raised when a deployment for the same environment is already running"""

    failure_stage = "lock"

    def __init__(self, environment: str):
        super().__init__(
            message=f"A deployment to {environment} is already in progress",
            error_code="DEPLOYMENT_IN_PROGRESS",
            details={"environment": environment},
        )
