# Copyright 2025 The Sigstore Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""OCI registry client using oras-py for authentication.

This is the transport used by the referrer discovery engine. It only reads
from registries: manifests, image indexes, referrers, blobs and tags.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
import hashlib
import json
import re
import threading
from typing import Any

import oras.provider
import requests
from requests.adapters import HTTPAdapter


# OCI Distribution Spec media types
OCI_MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX_MEDIA_TYPE = "application/vnd.oci.image.index.v1+json"

# Docker v2 schema 2 media types, still served by most registries
DOCKER_MANIFEST_MEDIA_TYPE = (
    "application/vnd.docker.distribution.manifest.v2+json"
)
DOCKER_MANIFEST_LIST_MEDIA_TYPE = (
    "application/vnd.docker.distribution.manifest.list.v2+json"
)

INDEX_MEDIA_TYPES = frozenset(
    [OCI_INDEX_MEDIA_TYPE, DOCKER_MANIFEST_LIST_MEDIA_TYPE]
)

_MANIFEST_ACCEPT = ", ".join(
    [
        OCI_INDEX_MEDIA_TYPE,
        OCI_MANIFEST_MEDIA_TYPE,
        DOCKER_MANIFEST_LIST_MEDIA_TYPE,
        DOCKER_MANIFEST_MEDIA_TYPE,
    ]
)

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"
DEFAULT_TIMEOUT = 30.0

_DIGEST_RE = re.compile(r"^(sha256:[a-f0-9]{64}|sha512:[a-f0-9]{128})$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_PATH_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_REPOSITORY_RE = re.compile(rf"^{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*$")


def truncate_digest(digest: str) -> str:
    """Shorten a digest for log lines (`sha256:0123456789ab...`)."""
    algorithm, sep, hex_part = digest.partition(":")
    if sep and len(hex_part) > 12:
        return f"{algorithm}:{hex_part[:12]}..."
    return digest


def _sha256_digest(content: bytes) -> str:
    return f"sha256:{hashlib.sha256(content).hexdigest()}"


@dataclass(frozen=True)
class Platform:
    """Platform of a manifest listed in an image index."""

    os: str
    architecture: str
    variant: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Platform:
        return cls(
            os=data.get("os", ""),
            architecture=data.get("architecture", ""),
            variant=data.get("variant", ""),
        )

    @property
    def is_unknown(self) -> bool:
        """BuildKit lists attestation manifests as `unknown/unknown`."""
        return self.os == "unknown" and self.architecture == "unknown"

    def __str__(self) -> str:
        result = f"{self.os}/{self.architecture}"
        if self.variant:
            result += f"/{self.variant}"
        return result


@dataclass
class Descriptor:
    """OCI content descriptor.

    See: https://github.com/opencontainers/image-spec/blob/main/descriptor.md

    Attributes:
        media_type: The media type of the referenced content.
        digest: The digest of the referenced content.
        size: The size in bytes of the referenced content.
        annotations: Optional arbitrary metadata.
        artifact_type: Optional artifact type for OCI 1.1 artifacts.
        platform: Optional platform, only set on image index entries.
    """

    media_type: str
    digest: str
    size: int
    annotations: dict[str, str] | None = None
    artifact_type: str | None = None
    platform: Platform | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Descriptor:
        """Build a descriptor from its JSON form."""
        if not isinstance(data, dict):
            raise ValueError(f"Invalid descriptor: {data!r}")
        platform = data.get("platform")
        return cls(
            media_type=data.get("mediaType", ""),
            digest=data.get("digest", ""),
            size=int(data.get("size", 0)),
            annotations=data.get("annotations") or None,
            artifact_type=data.get("artifactType") or None,
            platform=Platform.from_dict(platform) if platform else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        result: dict[str, Any] = {
            "mediaType": self.media_type,
            "digest": self.digest,
            "size": self.size,
        }
        if self.artifact_type:
            result["artifactType"] = self.artifact_type
        if self.platform:
            result["platform"] = {
                "os": self.platform.os,
                "architecture": self.platform.architecture,
            }
            if self.platform.variant:
                result["platform"]["variant"] = self.platform.variant
        if self.annotations:
            result["annotations"] = self.annotations
        return result


@dataclass
class OCIManifest:
    """OCI image manifest.

    See: https://github.com/opencontainers/image-spec/blob/main/manifest.md

    Attributes:
        media_type: The manifest media type.
        config: The config descriptor, if any.
        layers: List of layer descriptors.
        artifact_type: Optional artifact type for OCI 1.1 artifacts.
        subject: Optional subject descriptor for OCI 1.1 referrers.
        annotations: Optional arbitrary metadata.
    """

    media_type: str
    config: Descriptor | None = None
    layers: list[Descriptor] = field(default_factory=list)
    artifact_type: str | None = None
    subject: Descriptor | None = None
    annotations: dict[str, str] | None = None

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], media_type: str = ""
    ) -> OCIManifest:
        """Build a manifest from its JSON form.

        Args:
            data: The decoded manifest.
            media_type: Media type reported by the registry, used when the
              manifest does not carry its own `mediaType` field.
        """
        layers = data.get("layers") or []
        if not isinstance(layers, list):
            raise ValueError("Invalid manifest: layers is not a list")
        config = data.get("config")
        subject = data.get("subject")
        return cls(
            media_type=data.get("mediaType") or media_type,
            config=Descriptor.from_dict(config) if config else None,
            layers=[Descriptor.from_dict(layer) for layer in layers],
            artifact_type=data.get("artifactType") or None,
            subject=Descriptor.from_dict(subject) if subject else None,
            annotations=data.get("annotations") or None,
        )


@dataclass
class ImageIndex:
    """OCI image index (or Docker manifest list).

    See: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    media_type: str
    manifests: list[Descriptor] = field(default_factory=list)
    annotations: dict[str, str] | None = None

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], media_type: str = ""
    ) -> ImageIndex:
        manifests = data.get("manifests")
        if not isinstance(manifests, list):
            raise ValueError("Invalid image index: missing manifests list")
        return cls(
            media_type=data.get("mediaType") or media_type,
            manifests=[Descriptor.from_dict(m) for m in manifests],
            annotations=data.get("annotations") or None,
        )


@dataclass(frozen=True)
class FetchedManifest:
    """Raw manifest bytes together with what the registry said about them."""

    content: bytes
    digest: str
    media_type: str

    @property
    def size(self) -> int:
        return len(self.content)

    def json(self) -> dict[str, Any]:
        """Decode the manifest, which must be a JSON object."""
        try:
            data = json.loads(self.content)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValueError(f"Manifest {self.digest} is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Manifest {self.digest} is not a JSON object")
        return data


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


@dataclass
class ImageReference:
    """Parsed OCI image reference.

    Format: [registry/]repository[:tag][@sha256:digest]

    The registry defaults to Docker Hub, where single-component names live
    under `library/`. A reference without tag or digest means `:latest`.
    """

    registry: str
    repository: str
    tag: str | None
    digest: str | None

    @classmethod
    def parse(cls, reference: str) -> ImageReference:
        """Parse an image reference string."""
        if not reference or reference != reference.strip():
            raise ValueError(f"Invalid reference '{reference}'")

        remainder = reference
        digest = None
        if "@" in remainder:
            remainder, digest = remainder.rsplit("@", 1)
            if not _DIGEST_RE.match(digest):
                raise ValueError(f"Invalid digest format: {digest}")

        tag = None
        if ":" in remainder.rsplit("/", 1)[-1]:
            remainder, tag = remainder.rsplit(":", 1)
            if not _TAG_RE.match(tag):
                raise ValueError(f"Invalid tag '{tag}' in '{reference}'")

        parts = remainder.split("/", 1)
        if len(parts) == 2 and _looks_like_registry(parts[0]):
            registry, repository = parts
        else:
            registry, repository = DEFAULT_REGISTRY, remainder

        if registry == DEFAULT_REGISTRY and "/" not in repository:
            repository = f"library/{repository}"

        if not _REPOSITORY_RE.match(repository):
            raise ValueError(
                f"Invalid image reference '{reference}': "
                f"bad repository '{repository}'"
            )

        if not tag and not digest:
            tag = DEFAULT_TAG

        return cls(registry, repository, tag, digest)

    def __str__(self) -> str:
        result = self.name
        if self.tag:
            result += f":{self.tag}"
        if self.digest:
            result += f"@{self.digest}"
        return result

    @property
    def name(self) -> str:
        """Registry and repository, without tag or digest."""
        return f"{self.registry}/{self.repository}"

    @property
    def reference(self) -> str:
        if self.digest:
            return self.digest
        return self.tag or DEFAULT_TAG

    def with_digest(self, digest: str) -> ImageReference:
        return replace(self, tag=None, digest=digest)

    def with_tag(self, tag: str) -> ImageReference:
        return replace(self, tag=tag, digest=None)


class _TimeoutAdapter(HTTPAdapter):
    """Applies a default timeout to every request sent through a session."""

    def __init__(self, timeout: float, **kwargs):
        self._timeout = timeout
        super().__init__(**kwargs)

    def send(self, request, **kwargs):
        if kwargs.get("timeout") is None:
            kwargs["timeout"] = self._timeout
        return super().send(request, **kwargs)


class OrasClient:
    """OCI registry client using oras-py for authentication."""

    def __init__(
        self,
        *,
        insecure: bool = False,
        tls_verify: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._insecure = insecure
        self._tls_verify = tls_verify
        self._timeout = timeout
        self._registry_cache: dict[str, oras.provider.Registry] = {}
        self._registry_lock = threading.Lock()

    def _registry_host(self, image_ref: ImageReference) -> str:
        registry = image_ref.registry
        if registry in ("docker.io", "index.docker.io"):
            registry = "registry-1.docker.io"
        return registry

    def _auth_registry(
        self, image_ref: ImageReference
    ) -> oras.provider.Registry:
        """Get an authenticated oras Registry instance.

        Caches authenticated registries by hostname to avoid repeated
        authentication overhead when performing multiple operations.
        """
        hostname = self._registry_host(image_ref)
        with self._registry_lock:
            if hostname not in self._registry_cache:
                self._registry_cache[hostname] = self._new_registry(image_ref)
            return self._registry_cache[hostname]

    def _new_registry(
        self, image_ref: ImageReference
    ) -> oras.provider.Registry:
        hostname = self._registry_host(image_ref)
        reg = oras.provider.Registry(
            hostname=hostname,
            insecure=self._insecure,
            tls_verify=self._tls_verify,
        )
        adapter = _TimeoutAdapter(self._timeout)
        reg.session.mount("https://", adapter)
        reg.session.mount("http://", adapter)
        reg.auth.load_configs(reg.get_container(self._container(image_ref)))
        return reg

    def _base_url(self, image_ref: ImageReference) -> str:
        """Get the base URL for a registry."""
        registry = self._registry_host(image_ref)
        return f"{'http' if self._insecure else 'https'}://{registry}"

    def _container(self, image_ref: ImageReference) -> str:
        """Reference string in the form oras-py expects."""
        container = f"{self._registry_host(image_ref)}/{image_ref.repository}"
        if image_ref.digest:
            return f"{container}@{image_ref.digest}"
        return f"{container}:{image_ref.tag or DEFAULT_TAG}"

    def fetch_manifest(self, image_ref: ImageReference) -> FetchedManifest:
        """Fetch a manifest or index by tag or digest, keeping its raw bytes.

        Raises:
            requests.HTTPError: The registry answered with an error status.
        """
        base = self._base_url(image_ref)
        repo = image_ref.repository
        url = f"{base}/v2/{repo}/manifests/{image_ref.reference}"
        response = self._auth_registry(image_ref).do_request(
            url, "GET", headers={"Accept": _MANIFEST_ACCEPT}
        )
        response.raise_for_status()

        content = response.content
        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            digest = _sha256_digest(content)
        media_type = response.headers.get("Content-Type", "")
        media_type = media_type.split(";", 1)[0].strip()
        fetched = FetchedManifest(content, digest, media_type)
        if not media_type or media_type == "application/json":
            fetched = replace(
                fetched, media_type=fetched.json().get("mediaType", "")
            )
        return fetched

    def get_manifest(
        self, image_ref: ImageReference
    ) -> tuple[dict[str, Any], str]:
        """Get a manifest from the registry."""
        fetched = self.fetch_manifest(image_ref)
        return fetched.json(), fetched.digest

    def resolve(self, image_ref: ImageReference) -> tuple[str, str]:
        """Resolve an image reference to its digest and media type."""
        fetched = self.fetch_manifest(image_ref)
        return fetched.digest, fetched.media_type

    def get_image_index(self, image_ref: ImageReference) -> ImageIndex:
        """Get an image index (or Docker manifest list) from the registry."""
        fetched = self.fetch_manifest(image_ref)
        return ImageIndex.from_dict(fetched.json(), fetched.media_type)

    def get_referrers(self, image_ref: ImageReference) -> list[dict[str, Any]]:
        """Get referrers for an image (OCI 1.1)."""
        digest = image_ref.digest or self.resolve(image_ref)[0]
        base = self._base_url(image_ref)
        url = f"{base}/v2/{image_ref.repository}/referrers/{digest}"
        try:
            response = self._auth_registry(image_ref).do_request(
                url, "GET", headers={"Accept": OCI_INDEX_MEDIA_TYPE}
            )
            if response.status_code != 200:
                return []
            manifests = response.json().get("manifests") or []
            return [m for m in manifests if isinstance(m, dict)]
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                return []
            raise

    def pull_blob(self, image_ref: ImageReference, digest: str) -> bytes:
        """Pull a blob from the registry."""
        reg = self._auth_registry(image_ref)
        response = reg.get_blob(self._container(image_ref), digest)
        response.raise_for_status()
        return response.content

    def list_tags(self, image_ref: ImageReference) -> list[str]:
        """List the tags of the repository an image reference points into."""
        reg = self._auth_registry(image_ref)
        return list(reg.get_tags(self._container(image_ref)))
