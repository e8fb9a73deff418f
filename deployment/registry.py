"""
Registry login on the target host.
"""

import logging
import re
import shlex
from typing import List

from pydantic import BaseModel, Field

from core.exceptions import RegistryAuthError
from deployment.remote import RemoteSession

logger = logging.getLogger(__name__)

# docker prints these on a successful login; none of them mean failure
ADVISORY_PATTERNS = [
    re.compile(r"^WARNING!", re.IGNORECASE),
    re.compile(r"password will be stored unencrypted", re.IGNORECASE),
    re.compile(r"configure a credential helper", re.IGNORECASE),
    re.compile(r"docs\.docker\.com", re.IGNORECASE),
    re.compile(r"deprecat", re.IGNORECASE),
    re.compile(r"--password-stdin", re.IGNORECASE),
]


class LoginResult(BaseModel):
    registry: str
    message: str = ""
    advisories: List[str] = Field(default_factory=list)


def split_advisories(output: str):
    """Separate advisory lines from the rest of a docker login transcript."""
    advisories, remainder = [], []
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if any(pattern.search(stripped) for pattern in ADVISORY_PATTERNS):
            advisories.append(stripped)
        else:
            remainder.append(stripped)
    return advisories, remainder


class RegistryAuthenticator:
    """Logs the target host into the registry; re-running it is harmless."""

    def login_command(self, registry: str) -> str:
        # REGISTRY_TOKEN and REGISTRY_USER come from the routine's environment
        return (
            'printf "%s" "$REGISTRY_TOKEN" | '
            f'docker login {shlex.quote(registry)} -u "$REGISTRY_USER" --password-stdin'
        )

    async def login(self, session: RemoteSession, registry: str) -> LoginResult:
        """
        Authenticate the host's container runtime against the registry.

        Raises:
            RegistryAuthError: the registry rejected the credential
        """
        result = await session.run(self.login_command(registry), step="registry-login", check=False)
        advisories, remainder = split_advisories(result.combined_output)
        for advisory in advisories:
            logger.info(f"docker login advisory: {advisory}")

        if not result.success:
            raise RegistryAuthError(
                registry,
                remainder[-1] if remainder else f"exit code {result.exit_code}",
                diagnostics="\n".join(remainder),
            )

        logger.info(f"Host {session.host} logged in to {registry}")
        return LoginResult(registry=registry, message="\n".join(remainder), advisories=advisories)
