"""
Unit tests for the registry tag store against a mocked distribution API
"""

import json

import httpx
import pytest

from core.exceptions import RegistryAuthError, RegistryError, TagConflictError
from promotion.tag_store import RegistryTagStore

pytestmark = pytest.mark.unit

LATEST_DIGEST = "sha256:" + "1" * 64
OTHER_DIGEST = "sha256:" + "2" * 64
MANIFEST = json.dumps({"schemaVersion": 2, "mediaType": "application/vnd.oci.image.manifest.v1+json"}).encode()
CHALLENGE = 'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:acme/app:pull"'


class FakeRegistry:
    """Minimal distribution API with bearer-token auth"""

    def __init__(self, tags=None, accept_tokens=("pull-token", "push-token")):
        self.tags = dict(tags or {"latest": LATEST_DIGEST})
        self.accept_tokens = accept_tokens
        self.token_requests = []
        self.pushed = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            self.token_requests.append(request)
            scope = request.url.params["scope"]
            return httpx.Response(200, json={"token": "push-token" if "push" in scope else "pull-token"})

        auth = request.headers.get("Authorization", "")
        token = auth.removeprefix("Bearer ")
        allowed = self.accept_tokens if request.method != "PUT" else ("push-token",)
        if token not in allowed:
            return httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE})

        path = request.url.path
        if path == "/v2/acme/app/tags/list":
            names = sorted(self.tags)
            if "last" not in request.url.params:
                return httpx.Response(
                    200,
                    json={"name": "acme/app", "tags": names[:1]},
                    headers={"Link": f'</v2/acme/app/tags/list?n=1&last={names[0]}>; rel="next"'},
                )
            return httpx.Response(200, json={"name": "acme/app", "tags": names[1:]})

        if path.startswith("/v2/acme/app/manifests/"):
            reference = path.rsplit("/", 1)[-1]
            if request.method == "PUT":
                self.pushed[reference] = (request.headers["Content-Type"], request.content)
                self.tags[reference] = LATEST_DIGEST
                return httpx.Response(201, headers={"Docker-Content-Digest": LATEST_DIGEST})
            if reference not in self.tags and reference != LATEST_DIGEST:
                return httpx.Response(404, json={"errors": [{"code": "MANIFEST_UNKNOWN"}]})
            headers = {
                "Docker-Content-Digest": self.tags.get(reference, reference),
                "Content-Type": "application/vnd.oci.image.manifest.v1+json",
            }
            if request.method == "HEAD":
                return httpx.Response(200, headers=headers)
            return httpx.Response(200, headers=headers, content=MANIFEST)

        return httpx.Response(404)


def make_store(registry):
    client = httpx.AsyncClient(transport=httpx.MockTransport(registry.handler))
    return RegistryTagStore("ghcr.io", "acme/app", principal="deployer", token="ghp_token", client=client)


class TestRegistryTagStore:
    @pytest.mark.asyncio
    async def test_list_tags_follows_pagination(self):
        registry = FakeRegistry(tags={"latest": LATEST_DIGEST, "v1.0.0-rc.1": LATEST_DIGEST})
        store = make_store(registry)

        tags = await store.list_tags()

        assert tags == ["latest", "v1.0.0-rc.1"]
        # One token exchange, reused for the second page
        assert len(registry.token_requests) == 1

    @pytest.mark.asyncio
    async def test_token_request_uses_basic_auth_and_challenge_scope(self):
        registry = FakeRegistry()
        store = make_store(registry)

        await store.digest("latest")

        token_request = registry.token_requests[0]
        assert token_request.headers["Authorization"].startswith("Basic ")
        assert token_request.url.params["service"] == "ghcr.io"
        assert token_request.url.params["scope"] == "repository:acme/app:pull"

    @pytest.mark.asyncio
    async def test_digest(self):
        store = make_store(FakeRegistry())

        assert await store.digest("latest") == LATEST_DIGEST
        assert await store.digest("v9.9.9") is None

    @pytest.mark.asyncio
    async def test_add_tag_copies_manifest(self):
        registry = FakeRegistry()
        store = make_store(registry)

        digest = await store.add_tag(LATEST_DIGEST, "v1.0.0-rc.1")

        assert digest == LATEST_DIGEST
        assert registry.pushed["v1.0.0-rc.1"] == ("application/vnd.oci.image.manifest.v1+json", MANIFEST)
        scopes = [request.url.params["scope"] for request in registry.token_requests]
        assert scopes[-1] == "repository:acme/app:pull,push"

    @pytest.mark.asyncio
    async def test_version_tag_is_never_moved(self):
        registry = FakeRegistry(tags={"latest": LATEST_DIGEST, "v1.0.0-rc.1": OTHER_DIGEST})
        store = make_store(registry)

        with pytest.raises(TagConflictError) as exc_info:
            await store.add_tag(LATEST_DIGEST, "v1.0.0-rc.1")

        assert exc_info.value.error_code == "TAG_CONFLICT"
        assert exc_info.value.details["existing_digest"] == OTHER_DIGEST
        assert registry.pushed == {}
        assert registry.tags["v1.0.0-rc.1"] == OTHER_DIGEST

    @pytest.mark.asyncio
    async def test_retagging_same_manifest_is_a_no_op(self):
        registry = FakeRegistry(tags={"latest": LATEST_DIGEST, "v1.0.0-rc.1": LATEST_DIGEST})
        store = make_store(registry)

        assert await store.add_tag("v1.0.0-rc.1", "v1.0.0") == LATEST_DIGEST
        assert await store.add_tag("v1.0.0-rc.1", "v1.0.0") == LATEST_DIGEST

        assert list(registry.pushed) == ["v1.0.0"]

    @pytest.mark.asyncio
    async def test_latest_can_be_moved(self):
        registry = FakeRegistry(tags={"latest": OTHER_DIGEST, "v1.0.0-rc.1": LATEST_DIGEST})
        store = make_store(registry)

        await store.add_tag("v1.0.0-rc.1", "latest")

        assert "latest" in registry.pushed

    @pytest.mark.asyncio
    async def test_add_tag_from_missing_source(self):
        store = make_store(FakeRegistry())

        with pytest.raises(RegistryError) as exc_info:
            await store.add_tag("v9.9.9-rc.1", "v9.9.9")

        assert exc_info.value.details["api_status_code"] == 404

    @pytest.mark.asyncio
    async def test_rejected_credential(self):
        store = make_store(FakeRegistry(accept_tokens=()))

        with pytest.raises(RegistryAuthError, match="credential rejected"):
            await store.list_tags()

    @pytest.mark.asyncio
    async def test_unpushed_repository_has_no_tags(self):
        def handler(request):
            return httpx.Response(404, json={"errors": [{"code": "NAME_UNKNOWN"}]})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = RegistryTagStore("ghcr.io", "acme/app", client=client)

        assert await store.list_tags() == []

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("name resolution failed", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = RegistryTagStore("ghcr.io", "acme/app", client=client)

        with pytest.raises(RegistryError, match="name resolution failed"):
            await store.list_tags()

    def test_reference(self):
        store = RegistryTagStore("ghcr.io", "acme/app", client=httpx.AsyncClient())

        assert store.reference(tag="v1.0.0") == "ghcr.io/acme/app:v1.0.0"
        assert store.reference(digest=LATEST_DIGEST) == f"ghcr.io/acme/app@{LATEST_DIGEST}"
