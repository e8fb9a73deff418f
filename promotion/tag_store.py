"""
Registry tag history, read and written through the OCI distribution API.

The tag set is the only persisted promotion state: candidates, sign-offs
and releases are all tags on the same repository. New tags are minted by
copying an existing manifest under a new name, so every tag of a version
points at the exact bytes acceptance tested.
"""

import hashlib
import logging
import re
from typing import Dict, List, Optional

import httpx

from core.exceptions import RegistryAuthError, RegistryError, TagConflictError

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPES = [
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
]

# Tags the build pipeline moves; every other tag is written once
MOVABLE_TAGS = ("latest",)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')
_NEXT_LINK = re.compile(r'<([^>]+)>;\s*rel="?next"?')


class RegistryTagStore:
    """Tags of one repository in one registry."""

    def __init__(
        self,
        registry: str,
        repository: str,
        principal: str = "",
        token: str = "",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        scheme: str = "https",
    ):
        self.registry = registry
        self.repository = repository
        self.principal = principal
        self.token = token
        self.base_url = f"{scheme}://{registry}/v2/{repository}"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._bearer: Optional[str] = None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def reference(self, tag: Optional[str] = None, digest: Optional[str] = None) -> str:
        """Full pull reference for a tag or digest of this repository."""
        if digest:
            return f"{self.registry}/{self.repository}@{digest}"
        return f"{self.registry}/{self.repository}:{tag}"

    async def list_tags(self) -> List[str]:
        """All tags of the repository, following pagination."""
        tags: List[str] = []
        url: Optional[str] = f"{self.base_url}/tags/list"
        params: Optional[Dict[str, str]] = {"n": "1000"}
        while url:
            response = await self._request("GET", url, params=params)
            if response.status_code == 404:
                # Repository not pushed yet
                return []
            self._raise_for_status(response, "list tags")
            tags.extend(response.json().get("tags") or [])
            url, params = self._next_page(response), None
        return tags

    async def digest(self, tag: str) -> Optional[str]:
        """Manifest digest a tag points at, or None if the tag does not exist."""
        response = await self._request(
            "HEAD", f"{self.base_url}/manifests/{tag}", headers={"Accept": ", ".join(MANIFEST_MEDIA_TYPES)}
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"resolve {tag}")
        return response.headers.get("Docker-Content-Digest")

    async def add_tag(self, source: str, target: str) -> str:
        """
        Point target at the manifest source refers to (a tag or a digest).

        Returns the digest both now share. An existing version tag is never
        moved: pointing it at the same manifest again is a no-op, pointing it
        at a different one raises TagConflictError.
        """
        response = await self._request(
            "GET", f"{self.base_url}/manifests/{source}", headers={"Accept": ", ".join(MANIFEST_MEDIA_TYPES)}
        )
        self._raise_for_status(response, f"fetch manifest {source}")
        media_type = response.headers.get("Content-Type", MANIFEST_MEDIA_TYPES[-1]).split(";")[0]
        manifest = response.content
        source_digest = response.headers.get("Docker-Content-Digest")
        source_digest = source_digest or "sha256:" + hashlib.sha256(manifest).hexdigest()

        if target not in MOVABLE_TAGS:
            existing = await self.digest(target)
            if existing == source_digest:
                logger.info(f"{self.registry}/{self.repository}:{target} already points at {source_digest}")
                return existing
            if existing is not None:
                raise TagConflictError(self.registry, target, existing, source_digest)

        put = await self._request(
            "PUT",
            f"{self.base_url}/manifests/{target}",
            headers={"Content-Type": media_type},
            content=manifest,
            push=True,
        )
        self._raise_for_status(put, f"tag {target}")
        digest = put.headers.get("Docker-Content-Digest") or source_digest
        logger.info(f"Tagged {self.registry}/{self.repository}:{target} from {source} ({digest})")
        return digest

    async def _request(self, method: str, url: str, push: bool = False, **kwargs) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if self._bearer:
            headers["Authorization"] = f"Bearer {self._bearer}"
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
            if response.status_code == 401 and "WWW-Authenticate" in response.headers:
                self._bearer = await self._fetch_token(response.headers["WWW-Authenticate"], push)
                headers["Authorization"] = f"Bearer {self._bearer}"
                response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise RegistryError(self.registry, f"{method} {url} failed: {e}") from e

        if response.status_code == 401:
            raise RegistryAuthError(self.registry, "credential rejected", diagnostics=response.text[:500])
        return response

    async def _fetch_token(self, challenge: str, push: bool) -> str:
        scheme, _, params = challenge.partition(" ")
        if scheme.lower() != "bearer":
            raise RegistryAuthError(self.registry, f"unsupported auth scheme {scheme}")
        fields = dict(_CHALLENGE_PARAM.findall(params))
        realm = fields.pop("realm", None)
        if not realm:
            raise RegistryAuthError(self.registry, "auth challenge without realm")

        scope = f"repository:{self.repository}:pull,push" if push else fields.get("scope") or (
            f"repository:{self.repository}:pull"
        )
        query = {"scope": scope}
        if "service" in fields:
            query["service"] = fields["service"]
        auth = (self.principal, self.token) if self.token else None

        try:
            response = await self._client.get(realm, params=query, auth=auth)
        except httpx.HTTPError as e:
            raise RegistryAuthError(self.registry, f"token request failed: {e}") from e
        if response.status_code != 200:
            raise RegistryAuthError(
                self.registry, f"token request returned {response.status_code}", diagnostics=response.text[:500]
            )
        body = response.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise RegistryAuthError(self.registry, "token response without a token")
        return token

    def _next_page(self, response: httpx.Response) -> Optional[str]:
        link = response.headers.get("Link")
        if not link:
            return None
        match = _NEXT_LINK.search(link)
        if not match:
            return None
        return str(response.url.join(match.group(1)))

    def _raise_for_status(self, response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            raise RegistryError(
                self.registry,
                f"could not {action}",
                status_code=response.status_code,
                response_body=response.text[:500],
            )
