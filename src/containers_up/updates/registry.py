"""Container registry client for manifest digests.

Implements the subset of the distribution API the scanner needs: a bearer
token from the registry's token service, then ``HEAD /v2/<repo>/manifests/<tag>``
for the ``docker-content-digest`` header. Multi-platform indexes are
expanded so the digest for the host's platform can be compared too.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from containers_up.errors import RegistryError
from containers_up.logging import get_logger

if TYPE_CHECKING:
    from containers_up.config import Settings
    from containers_up.remote.docker import Platform

log = get_logger("containers_up.updates.registry")

DEFAULT_REGISTRY = "index.docker.io"
DOCKER_HUB_API = "https://registry-1.docker.io"
DOCKER_HUB_AUTH = "https://auth.docker.io/token"
DOCKER_HUB_SERVICE = "registry.docker.io"

MANIFEST_MEDIA_TYPES = (
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
)
INDEX_MEDIA_TYPES = (
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
)

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference."""

    registry: str
    repository: str
    tag: str = "latest"

    @property
    def is_docker_hub(self) -> bool:
        return "docker.io" in self.registry

    @property
    def api_base(self) -> str:
        return DOCKER_HUB_API if self.is_docker_hub else f"https://{self.registry}"

    @property
    def scope(self) -> str:
        return f"repository:{self.repository}:pull"

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"


def parse_image_reference(ref: str) -> ImageReference:
    """Split an image reference into registry, repository and tag.

    >>> parse_image_reference("nginx")
    ImageReference(registry='index.docker.io', repository='library/nginx', tag='latest')
    >>> parse_image_reference("localhost:5000/team/app:1.2")
    ImageReference(registry='localhost:5000', repository='team/app', tag='1.2')
    """
    name = ref.split("@", 1)[0]
    tag = "latest"

    # A colon after the last slash is a tag; before it, a registry port
    colon = name.rfind(":")
    if colon != -1 and colon > name.rfind("/"):
        name, tag = name[:colon], name[colon + 1 :]

    registry = DEFAULT_REGISTRY
    parts = name.split("/")
    first = parts[0]
    if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
        registry = first
        parts = parts[1:]

    if registry == "docker.io":
        registry = DEFAULT_REGISTRY

    repository = "/".join(parts)
    if registry == DEFAULT_REGISTRY and "/" not in repository:
        repository = f"library/{repository}"

    return ImageReference(registry=registry, repository=repository, tag=tag)


def parse_challenge(header: str) -> dict[str, str] | None:
    """Parse a ``WWW-Authenticate: Bearer realm=..,service=..,scope=..`` header."""
    scheme, _, params = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    parsed = dict(_CHALLENGE_PARAM_RE.findall(params))
    return parsed if "realm" in parsed else None


@dataclass(frozen=True)
class RemoteDigest:
    """Digest of a tag, plus the digest of the host platform's image for indexes."""

    digest: str
    platform_digest: str | None = None

    def matches(self, local_digest: str) -> bool:
        """True if *local_digest* is the tag's current image."""
        if local_digest.endswith(self.digest):
            return True
        return self.platform_digest is not None and local_digest.endswith(self.platform_digest)


class RegistryClient:
    """Resolves tags to manifest digests."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            timeout=settings.registry_timeout_seconds,
            transport=transport,
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _basic_auth(self, image: ImageReference) -> httpx.BasicAuth | None:
        credentials = self._settings.registry_credentials(image.registry)
        if credentials is None:
            return None
        return httpx.BasicAuth(*credentials)

    async def _fetch_token(
        self, realm: str, service: str, scope: str, image: ImageReference
    ) -> str:
        try:
            resp = await self._client.get(
                realm,
                params={"service": service, "scope": scope},
                auth=self._basic_auth(image),
            )
        except httpx.HTTPError as exc:
            raise RegistryError(f"Failed to get auth token: {exc}") from exc

        if not resp.is_success:
            raise RegistryError(f"Failed to get auth token: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise RegistryError("Failed to get auth token: invalid JSON") from exc

        token = data.get("token") or data.get("access_token")
        if not token:
            raise RegistryError("Failed to get auth token: no token in response")
        return str(token)

    async def token(self, image: ImageReference) -> str:
        """Token from the registry's well-known token service."""
        if image.is_docker_hub:
            return await self._fetch_token(DOCKER_HUB_AUTH, DOCKER_HUB_SERVICE, image.scope, image)
        return await self._fetch_token(
            f"https://{image.registry}/token", image.registry, image.scope, image
        )

    # ------------------------------------------------------------------
    # Manifests
    # ------------------------------------------------------------------

    async def _request_manifest(
        self, method: str, url: str, token: str | None
    ) -> httpx.Response:
        headers = {"Accept": ", ".join(MANIFEST_MEDIA_TYPES)}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            return await self._client.request(method, url, headers=headers)
        except httpx.HTTPError as exc:
            raise RegistryError(f"Manifest request failed: {exc}") from exc

    async def _authorized_manifest(self, method: str, image: ImageReference) -> httpx.Response:
        url = f"{image.api_base}/v2/{image.repository}/manifests/{image.tag}"

        try:
            token: str | None = await self.token(image)
        except RegistryError as exc:
            # Not every registry serves /token; the challenge below covers them
            log.debug("registry_token_unavailable", image=str(image), error=str(exc))
            token = None

        resp = await self._request_manifest(method, url, token)

        if resp.status_code == 401:
            challenge = parse_challenge(resp.headers.get("www-authenticate", ""))
            if challenge is not None:
                token = await self._fetch_token(
                    challenge["realm"],
                    challenge.get("service", image.registry),
                    challenge.get("scope", image.scope),
                    image,
                )
                resp = await self._request_manifest(method, url, token)

        if resp.status_code == 404:
            raise RegistryError(f"Image not found: {image.repository}:{image.tag}")
        if not resp.is_success:
            raise RegistryError(
                f"Failed to fetch manifest: {resp.status_code} {resp.reason_phrase}"
            )
        return resp

    async def digest(self, ref: str, platform: Platform | None = None) -> RemoteDigest:
        """Resolve *ref* to its current manifest digest.

        When the tag is a multi-platform index and *platform* is given, the
        digest of the matching platform manifest is resolved as well.
        """
        image = parse_image_reference(ref)
        resp = await self._authorized_manifest("HEAD", image)

        digest = resp.headers.get("docker-content-digest")
        if not digest:
            raise RegistryError("No Docker-Content-Digest header found in response")

        media_type = resp.headers.get("content-type", "").split(";", 1)[0].strip()
        if platform is None or media_type not in INDEX_MEDIA_TYPES:
            return RemoteDigest(digest=digest)

        index = await self._authorized_manifest("GET", image)
        try:
            body = index.json()
        except ValueError:
            log.warning("registry_index_unparseable", image=ref)
            return RemoteDigest(digest=digest)
        return RemoteDigest(digest=digest, platform_digest=platform_manifest(body, platform))


def platform_manifest(index: dict[str, Any], platform: Platform) -> str | None:
    """Digest of the *platform* entry in a manifest index, if present."""
    for manifest in index.get("manifests") or []:
        spec = manifest.get("platform") or {}
        if spec.get("os") == platform.os and spec.get("architecture") == platform.arch:
            digest = manifest.get("digest")
            return str(digest) if digest else None
    return None
