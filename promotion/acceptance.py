"""
Acceptance support: deciding whether there is anything new to accept,
and running the black-box suite against the acceptance host.
"""

import asyncio
import logging
import os
import shlex
import time
from typing import List, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from core.config import Settings
from promotion.versioning import LATEST, latest_candidate

logger = logging.getLogger(__name__)


class TagSource(Protocol):
    async def digest(self, tag: str) -> Optional[str]: ...


class DiscoveryResult(BaseModel):
    has_new_artifact: bool
    digest: Optional[str] = Field(None, description="Digest currently behind latest")
    reason: str = ""


class DigestDiscovery:
    """latest is new when its digest differs from the newest candidate's."""

    name = "digest"

    async def discover(self, store: TagSource, tags: List[str]) -> DiscoveryResult:
        digest = await store.digest(LATEST)
        if digest is None:
            return DiscoveryResult(has_new_artifact=False, reason=f"no '{LATEST}' tag in the registry")

        newest = latest_candidate(tags)
        if newest is None:
            return DiscoveryResult(has_new_artifact=True, digest=digest, reason="no candidate minted yet")

        candidate_digest = await store.digest(str(newest))
        if candidate_digest == digest:
            return DiscoveryResult(
                has_new_artifact=False, digest=digest, reason=f"'{LATEST}' is already accepted as {newest}"
            )
        return DiscoveryResult(has_new_artifact=True, digest=digest, reason=f"'{LATEST}' differs from {newest}")


class AlwaysDiscovery:
    """Every run qualifies as long as latest exists."""

    name = "always"

    async def discover(self, store: TagSource, tags: List[str]) -> DiscoveryResult:
        digest = await store.digest(LATEST)
        if digest is None:
            return DiscoveryResult(has_new_artifact=False, reason=f"no '{LATEST}' tag in the registry")
        return DiscoveryResult(has_new_artifact=True, digest=digest, reason="discovery disabled")


def build_discovery(strategy: str):
    strategies = {"digest": DigestDiscovery, "always": AlwaysDiscovery}
    if strategy not in strategies:
        raise ValueError(f"Unknown discovery strategy: {strategy}")
    return strategies[strategy]()


class SuiteResult(BaseModel):
    passed: bool
    suite: str
    exit_code: Optional[int] = None
    duration_seconds: float = 0.0
    output: str = ""
    failures: List[str] = Field(default_factory=list)


class CommandAcceptanceSuite:
    """Runs an external test command with BASE_URL pointing at the acceptance host."""

    def __init__(self, command: str, timeout: float = 600.0):
        self.command = shlex.split(command)
        self.timeout = timeout

    async def run(self, base_url: str) -> SuiteResult:
        logger.info(f"Executing acceptance suite: {' '.join(self.command)}")
        start_time = time.monotonic()
        env = {**os.environ, "BASE_URL": base_url}

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.STDOUT, env=env
            )
        except OSError as e:
            return SuiteResult(passed=False, suite="command", failures=[f"could not start suite: {e}"])

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return SuiteResult(
                passed=False,
                suite="command",
                duration_seconds=round(time.monotonic() - start_time, 2),
                failures=[f"suite timed out after {self.timeout} seconds"],
            )

        output = stdout.decode("utf-8", errors="replace")
        passed = process.returncode == 0
        if passed:
            logger.info("Acceptance suite PASSED")
        else:
            logger.error(f"Acceptance suite FAILED (exit code: {process.returncode})")
        return SuiteResult(
            passed=passed,
            suite="command",
            exit_code=process.returncode,
            duration_seconds=round(time.monotonic() - start_time, 2),
            output=output[-10000:],
            failures=[] if passed else [f"exit code {process.returncode}"],
        )


class HttpSmokeSuite:
    """
    Built-in black-box checks against the deployed service.

    /health must answer 200 with status "healthy" and a timestamp; every
    other configured path must answer 200 with a JSON body.
    """

    def __init__(self, health_path: str = "/health", paths: Optional[List[str]] = None,
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.health_path = health_path
        self.paths = paths if paths is not None else ["/", "/api/users"]
        self._client = client
        self.timeout = timeout

    async def run(self, base_url: str) -> SuiteResult:
        start_time = time.monotonic()
        failures: List[str] = []
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            failures.extend(await self._check_health(client, base_url))
            for path in self.paths:
                failures.extend(await self._check_path(client, base_url, path))
        finally:
            if self._client is None:
                await client.aclose()

        for failure in failures:
            logger.error(f"Smoke check failed: {failure}")
        return SuiteResult(
            passed=not failures,
            suite="smoke",
            duration_seconds=round(time.monotonic() - start_time, 2),
            failures=failures,
        )

    async def _get_json(self, client: httpx.AsyncClient, url: str):
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            return None, f"GET {url}: {e}"
        if response.status_code != 200:
            return None, f"GET {url}: HTTP {response.status_code}"
        try:
            return response.json(), None
        except ValueError:
            return None, f"GET {url}: body is not JSON"

    async def _check_health(self, client: httpx.AsyncClient, base_url: str) -> List[str]:
        url = base_url.rstrip("/") + self.health_path
        body, error = await self._get_json(client, url)
        if error:
            return [error]
        if not isinstance(body, dict) or body.get("status") != "healthy":
            return [f"GET {url}: status is not 'healthy'"]
        if not body.get("timestamp"):
            return [f"GET {url}: no timestamp"]
        return []

    async def _check_path(self, client: httpx.AsyncClient, base_url: str, path: str) -> List[str]:
        url = base_url.rstrip("/") + path
        body, error = await self._get_json(client, url)
        if error:
            return [error]
        if body in (None, [], {}):
            return [f"GET {url}: empty body"]
        return []


def build_acceptance_suite(settings: Settings):
    if settings.acceptance_command:
        return CommandAcceptanceSuite(settings.acceptance_command, timeout=settings.acceptance_timeout)
    return HttpSmokeSuite(health_path=settings.health_path, paths=list(settings.smoke_paths))
