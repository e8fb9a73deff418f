"""
Liveness polling for freshly deployed workloads.

A bounded-retry probe: the workload counts as up as soon as one probe
answers healthy, and as down only after every attempt has failed.
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class HealthCheckConfig(BaseModel):
    """Configuration for liveness polling."""

    max_attempts: int = Field(default=30, ge=1, description="Maximum number of probes")
    retry_delay: float = Field(default=2.0, ge=0, description="Fixed delay between probes in seconds")
    timeout_seconds: float = Field(default=5.0, gt=0, description="Per-request timeout")
    expected_status_codes: List[int] = Field(default=[200], description="Status codes that count as healthy")


class HealthCheckResult(BaseModel):
    """Result of a single probe."""

    attempt: int = Field(..., description="1-based attempt number")
    status: str = Field(..., description="Probe status: healthy, unhealthy, error")
    response_time_ms: float = Field(default=0.0, description="Response time in milliseconds")
    status_code: Optional[int] = Field(None, description="HTTP status code")
    response_body: str = Field(default="", description="Response body (truncated)")
    reported_version: Optional[str] = Field(None, description="Version parsed from the full health document")
    error: str = Field(default="", description="Error message if the probe failed")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class HealthPollResult(BaseModel):
    """Outcome of a polling run."""

    url: str
    healthy: bool
    attempts: int = 0
    elapsed_seconds: float = 0.0
    reported_version: Optional[str] = Field(None, description="Version from the health document, if any")
    checks: List[HealthCheckResult] = Field(default_factory=list)

    @property
    def last_error(self) -> str:
        if not self.checks:
            return ""
        last = self.checks[-1]
        return last.error or f"HTTP {last.status_code}"


class HealthPoller:
    """Polls a liveness endpoint with bounded retries and a fixed delay."""

    def __init__(
        self,
        config: Optional[HealthCheckConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or HealthCheckConfig()
        self._client = client
        self._sleep = sleep

    async def poll(self, url: str) -> HealthPollResult:
        """Probe url until it answers healthy or the attempt budget runs out."""
        logger.info(
            f"Polling {url} (max {self.config.max_attempts} attempts, {self.config.retry_delay}s apart)"
        )
        result = HealthPollResult(url=url, healthy=False)
        start_time = time.monotonic()

        client = self._client or httpx.AsyncClient(timeout=self.config.timeout_seconds)
        try:
            for attempt in range(1, self.config.max_attempts + 1):
                check = await self._probe(client, url, attempt)
                result.checks.append(check)
                result.attempts = attempt

                if check.status == "healthy":
                    result.healthy = True
                    result.reported_version = check.reported_version
                    logger.info(f"{url} healthy after {attempt} attempt(s)")
                    break

                logger.warning(
                    f"Health probe {attempt}/{self.config.max_attempts} failed: "
                    f"{check.error or check.status_code}"
                )
                if attempt < self.config.max_attempts:
                    await self._sleep(self.config.retry_delay)
        finally:
            if self._client is None:
                await client.aclose()

        result.elapsed_seconds = round(time.monotonic() - start_time, 3)
        if not result.healthy:
            logger.error(f"{url} never reported healthy after {result.attempts} attempts")
        return result

    async def _probe(self, client: httpx.AsyncClient, url: str, attempt: int) -> HealthCheckResult:
        start_time = time.monotonic()
        try:
            response = await client.get(url, timeout=self.config.timeout_seconds)
        except httpx.HTTPError as e:
            return HealthCheckResult(
                attempt=attempt,
                status="error",
                error=str(e) or e.__class__.__name__,
                response_time_ms=(time.monotonic() - start_time) * 1000,
            )

        healthy = response.status_code in self.config.expected_status_codes
        return HealthCheckResult(
            attempt=attempt,
            status="healthy" if healthy else "unhealthy",
            status_code=response.status_code,
            response_body=response.text[:500],  # Truncate
            reported_version=_reported_version(response.text) if healthy else None,
            response_time_ms=(time.monotonic() - start_time) * 1000,
        )


def _reported_version(body: str) -> Optional[str]:
    """Pull the version field out of a {status, timestamp, version} document."""
    try:
        document = json.loads(body)
    except ValueError:
        return None
    if isinstance(document, dict) and document.get("version") is not None:
        return str(document["version"])
    return None
