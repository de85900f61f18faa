"""Unit tests for the container registry client."""

from __future__ import annotations

import base64
import os
from unittest.mock import patch

import httpx
import pytest

from containers_up.errors import RegistryError
from containers_up.remote.docker import Platform
from containers_up.updates.registry import (
    ImageReference,
    RegistryClient,
    RemoteDigest,
    parse_challenge,
    parse_image_reference,
    platform_manifest,
)

INDEX_TYPE = "application/vnd.oci.image.index.v1+json"
MANIFEST_TYPE = "application/vnd.docker.distribution.manifest.v2+json"


class TestParseImageReference:
    """Tests for parse_image_reference()."""

    @pytest.mark.parametrize(
        ("ref", "expected"),
        [
            ("nginx", ("index.docker.io", "library/nginx", "latest")),
            ("nginx:alpine", ("index.docker.io", "library/nginx", "alpine")),
            ("grafana/grafana:11.0.0", ("index.docker.io", "grafana/grafana", "11.0.0")),
            ("docker.io/library/redis:7", ("index.docker.io", "library/redis", "7")),
            ("docker.io/redis", ("index.docker.io", "library/redis", "latest")),
            ("ghcr.io/acme/api:v2", ("ghcr.io", "acme/api", "v2")),
            ("myregistry.com/myimage:tag", ("myregistry.com", "myimage", "tag")),
            ("localhost:5000/team/app", ("localhost:5000", "team/app", "latest")),
            ("localhost/app:1", ("localhost", "app", "1")),
            ("nginx@sha256:abcd", ("index.docker.io", "library/nginx", "latest")),
            ("nginx:1.27@sha256:abcd", ("index.docker.io", "library/nginx", "1.27")),
        ],
    )
    def test_cases(self, ref, expected):
        parsed = parse_image_reference(ref)
        assert (parsed.registry, parsed.repository, parsed.tag) == expected

    def test_api_base(self):
        assert parse_image_reference("nginx").api_base == "https://registry-1.docker.io"
        assert parse_image_reference("ghcr.io/a/b").api_base == "https://ghcr.io"

    def test_scope(self):
        assert ImageReference("ghcr.io", "a/b").scope == "repository:a/b:pull"


class TestChallengeAndIndex:
    """Header and index parsing helpers."""

    def test_parse_bearer_challenge(self):
        header = (
            'Bearer realm="https://auth.example.com/token",'
            'service="registry.example.com",scope="repository:a/b:pull"'
        )
        assert parse_challenge(header) == {
            "realm": "https://auth.example.com/token",
            "service": "registry.example.com",
            "scope": "repository:a/b:pull",
        }

    def test_basic_challenge_is_ignored(self):
        assert parse_challenge('Basic realm="x"') is None

    def test_platform_manifest(self):
        index = {
            "manifests": [
                {"digest": "sha256:amd", "platform": {"os": "linux", "architecture": "amd64"}},
                {"digest": "sha256:arm", "platform": {"os": "linux", "architecture": "arm64"}},
            ]
        }
        assert platform_manifest(index, Platform("linux", "arm64")) == "sha256:arm"
        assert platform_manifest(index, Platform("windows", "amd64")) is None

    def test_remote_digest_matches(self):
        remote = RemoteDigest(digest="sha256:index", platform_digest="sha256:arm")
        assert remote.matches("sha256:index")
        assert remote.matches("sha256:arm")
        assert not remote.matches("sha256:old")


# ---------------------------------------------------------------------------
# HTTP behaviour
# ---------------------------------------------------------------------------


def _client(make_settings, handler, **overrides) -> RegistryClient:
    with patch.dict(os.environ, {}, clear=True):
        settings = make_settings(**overrides)
    return RegistryClient(settings, transport=httpx.MockTransport(handler))


class TestDigest:
    """Tests for RegistryClient.digest()."""

    async def test_docker_hub_flow(self, make_settings):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.host == "auth.docker.io":
                return httpx.Response(200, json={"token": "hub-token"})
            return httpx.Response(
                200,
                headers={"docker-content-digest": "sha256:new", "content-type": MANIFEST_TYPE},
            )

        client = _client(make_settings, handler)
        try:
            remote = await client.digest("nginx:1.27")
        finally:
            await client.aclose()

        assert remote == RemoteDigest(digest="sha256:new")
        token_request, manifest_request = seen
        assert token_request.url.params["service"] == "registry.docker.io"
        assert token_request.url.params["scope"] == "repository:library/nginx:pull"
        assert "authorization" not in token_request.headers
        assert manifest_request.method == "HEAD"
        assert str(manifest_request.url) == (
            "https://registry-1.docker.io/v2/library/nginx/manifests/1.27"
        )
        assert manifest_request.headers["authorization"] == "Bearer hub-token"
        assert INDEX_TYPE in manifest_request.headers["accept"]

    async def test_credentials_are_sent_to_token_endpoint(self, make_settings):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path == "/token":
                return httpx.Response(200, json={"access_token": "gh-token"})
            return httpx.Response(200, headers={"docker-content-digest": "sha256:x"})

        client = _client(make_settings, handler, ghcr_username="me", ghcr_token="pat")
        try:
            await client.digest("ghcr.io/acme/api:v2")
        finally:
            await client.aclose()

        token_request = seen[0]
        assert str(token_request.url).startswith("https://ghcr.io/token?")
        expected = base64.b64encode(b"me:pat").decode()
        assert token_request.headers["authorization"] == f"Basic {expected}"
        assert seen[1].headers["authorization"] == "Bearer gh-token"

    async def test_challenge_retry(self, make_settings):
        calls = {"manifest": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "quay.io" and request.url.path == "/token":
                return httpx.Response(404)
            if request.url.host == "auth.quay.io":
                return httpx.Response(200, json={"token": "challenge-token"})
            calls["manifest"] += 1
            if request.headers.get("authorization") != "Bearer challenge-token":
                return httpx.Response(
                    401,
                    headers={
                        "www-authenticate": (
                            'Bearer realm="https://auth.quay.io/auth",'
                            'service="quay.io",scope="repository:org/app:pull"'
                        )
                    },
                )
            return httpx.Response(200, headers={"docker-content-digest": "sha256:q"})

        client = _client(make_settings, handler)
        try:
            remote = await client.digest("quay.io/org/app:1")
        finally:
            await client.aclose()

        assert remote.digest == "sha256:q"
        assert calls["manifest"] == 2

    async def test_multi_platform_index(self, make_settings):
        index = {
            "manifests": [
                {"digest": "sha256:amd", "platform": {"os": "linux", "architecture": "amd64"}},
                {"digest": "sha256:arm", "platform": {"os": "linux", "architecture": "arm64"}},
            ]
        }

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "auth.docker.io":
                return httpx.Response(200, json={"token": "t"})
            headers = {"docker-content-digest": "sha256:index", "content-type": INDEX_TYPE}
            if request.method == "HEAD":
                return httpx.Response(200, headers=headers)
            return httpx.Response(200, headers=headers, json=index)

        client = _client(make_settings, handler)
        try:
            remote = await client.digest("nginx", Platform("linux", "arm64"))
        finally:
            await client.aclose()

        assert remote == RemoteDigest(digest="sha256:index", platform_digest="sha256:arm")

    @pytest.mark.parametrize(
        ("status", "headers", "match"),
        [
            (404, {}, "Image not found"),
            (500, {}, "Failed to fetch manifest: 500"),
            (200, {}, "No Docker-Content-Digest"),
        ],
    )
    async def test_failures_raise_registry_error(self, make_settings, status, headers, match):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "auth.docker.io":
                return httpx.Response(200, json={"token": "t"})
            return httpx.Response(status, headers=headers)

        client = _client(make_settings, handler)
        try:
            with pytest.raises(RegistryError, match=match):
                await client.digest("nginx")
        finally:
            await client.aclose()

    async def test_challenge_token_failure_raises(self, make_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "auth.docker.io":
                return httpx.Response(503)
            return httpx.Response(
                401, headers={"www-authenticate": 'Bearer realm="https://auth.docker.io/token"'}
            )

        client = _client(make_settings, handler)
        try:
            with pytest.raises(RegistryError, match="Failed to get auth token"):
                await client.digest("nginx")
        finally:
            await client.aclose()

    async def test_transport_error_raises_registry_error(self, make_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(make_settings, handler)
        try:
            with pytest.raises(RegistryError):
                await client.digest("ghcr.io/acme/api")
        finally:
            await client.aclose()
