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


"""High level API for inspecting images and their supply-chain artifacts.

The configuration is set up once, and can then be used to inspect any number
of images:

```python
result = image_inspector.inspecting.Config().set_verbose(True).inspect(
    "ghcr.io/org/app:v1.2.0"
)
for referrer in result.referrers:
    print(referrer.category.value, referrer.digest)
```

Signatures, SBOMs, attestations and VEX documents are discovered through the
OCI 1.1 Referrers API, the referrers tag schema, the cosign tag scheme and the
attestation manifests Docker BuildKit embeds into image indexes.

Documents can then be fetched by the digest a referrer reported:

```python
config = image_inspector.inspecting.Config()
sbom = config.fetch_sbom("ghcr.io/org/app", "sha256:...")
vex = config.fetch_vex("ghcr.io/org/app", "sha256:...")
```

Registry authentication uses existing Docker/Podman credentials from
`~/.docker/config.json` or `${XDG_RUNTIME_DIR}/containers/auth.json`.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
import logging
import sys
from typing import Any

import requests

from image_inspector import referrers as referrers_lib
from image_inspector import vex
from image_inspector._attestation import classify
from image_inspector._attestation import envelope
from image_inspector._attestation import extract
from image_inspector._oci import discovery
from image_inspector._oci import registry as oci_registry


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


logger = logging.getLogger(__name__)


class NotFoundError(LookupError):
    """The image, manifest or document does not exist in the registry."""


@dataclass
class InspectionResult:
    """What was learned about an image.

    Attributes:
        repository: Registry and repository of the image.
        tag: The tag that was inspected, if any.
        digest: Digest of the top-level manifest or index.
        media_type: Media type of the top-level manifest or index.
        platforms: Platform manifests, for multi-platform images.
        referrers: Discovered supply-chain artifacts.
    """

    repository: str
    tag: str | None
    digest: str
    media_type: str
    platforms: list[oci_registry.Descriptor] = field(default_factory=list)
    referrers: list[referrers_lib.Referrer] = field(default_factory=list)

    def referrers_of(
        self, category: referrers_lib.Category
    ) -> list[referrers_lib.Referrer]:
        return [r for r in self.referrers if r.category == category]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "repository": self.repository,
            "tag": self.tag or "",
            "digest": self.digest,
            "mediaType": self.media_type,
            "platforms": [p.to_dict() for p in self.platforms],
            "referrers": [r.to_dict() for r in self.referrers],
        }


def inspect(image: str) -> InspectionResult:
    """Inspects an image using the default configuration.

    Args:
        image: The image reference, `[registry/]repository[:tag][@digest]`.
    """
    return Config().inspect(image)


def _parse_reference(image: str) -> oci_registry.ImageReference:
    try:
        return oci_registry.ImageReference.parse(image)
    except ValueError as e:
        raise ValueError(f"Invalid image reference '{image}': {e}") from e


def _registry_error(e: requests.HTTPError, what: str) -> Exception:
    """Maps a registry error status to the exception callers should see."""
    status = e.response.status_code if e.response is not None else None
    if status == 401:
        return ValueError(
            f"Authentication failed for '{what}'. "
            "Check your registry credentials in ~/.docker/config.json "
            "or ${XDG_RUNTIME_DIR}/containers/auth.json."
        )
    if status == 404:
        return NotFoundError(
            f"Not found: '{what}'. Verify it exists and you have access."
        )
    return ValueError(f"Failed to fetch '{what}': {e}")


class Config:
    """Configuration to use when inspecting images.

    By default, registries are accessed over TLS with certificate
    verification, trace messages are logged at DEBUG and up to eight
    discovery probes run at once.
    """

    def __init__(self):
        """Initializes the default configuration for inspecting."""
        self._verbose = False
        self._insecure = False
        self._tls_verify = True
        self._timeout = oci_registry.DEFAULT_TIMEOUT
        self._max_workers = discovery.DEFAULT_MAX_WORKERS

    def set_verbose(self, verbose: bool = True) -> Self:
        """Sets whether discovery traces are logged at INFO instead of DEBUG.

        Args:
            verbose: Whether to log discovery traces at INFO.

        Returns:
            The new inspecting configuration.
        """
        self._verbose = verbose
        return self

    def set_registry_options(
        self,
        *,
        insecure: bool = False,
        tls_verify: bool = True,
        timeout: float = oci_registry.DEFAULT_TIMEOUT,
    ) -> Self:
        """Configures how registries are accessed.

        Args:
            insecure: Use plain HTTP instead of HTTPS.
            tls_verify: Verify the registry's TLS certificate.
            timeout: Timeout in seconds for every registry request.

        Returns:
            The new inspecting configuration.
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._insecure = insecure
        self._tls_verify = tls_verify
        self._timeout = timeout
        return self

    def set_max_workers(self, max_workers: int) -> Self:
        """Sets how many discovery probes may run at the same time."""
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._max_workers = max_workers
        return self

    def _client(self) -> oci_registry.OrasClient:
        return oci_registry.OrasClient(
            insecure=self._insecure,
            tls_verify=self._tls_verify,
            timeout=self._timeout,
        )

    def _discovery(
        self, client: oci_registry.OrasClient
    ) -> discovery.ReferrerDiscovery:
        return discovery.ReferrerDiscovery(
            client, verbose=self._verbose, max_workers=self._max_workers
        )

    def _resolve(
        self,
        engine: discovery.ReferrerDiscovery,
        image_ref: oci_registry.ImageReference,
    ) -> discovery.ResolvedImage:
        try:
            return engine.resolve(image_ref)
        except requests.HTTPError as e:
            raise _registry_error(e, str(image_ref)) from e
        except requests.RequestException as e:
            raise ValueError(f"Failed to fetch '{image_ref}': {e}") from e

    def inspect(self, image: str) -> InspectionResult:
        """Inspects an image and discovers its referrers.

        Args:
            image: The image reference, `[registry/]repository[:tag][@digest]`.

        Returns:
            The resolved image with its platforms and referrers.

        Raises:
            ValueError: The reference is malformed, or the registry rejected
              the credentials or returned an invalid manifest.
            NotFoundError: The image does not exist.
        """
        image_ref = _parse_reference(image)
        engine = self._discovery(self._client())
        resolved = self._resolve(engine, image_ref)
        found = engine.discover_resolved(image_ref, resolved)
        return InspectionResult(
            repository=image_ref.name,
            tag=image_ref.tag,
            digest=resolved.digest,
            media_type=resolved.media_type,
            platforms=resolved.platform_manifests,
            referrers=found,
        )

    def discover(self, image: str) -> list[referrers_lib.Referrer]:
        """Discovers the referrers of an image.

        Only failing to resolve the image itself is an error. Discovery
        mechanisms that fail are logged and skipped.
        """
        return self.inspect(image).referrers

    def _fetch_document(
        self,
        repository: str,
        digest: str,
        category: referrers_lib.Category,
    ) -> bytes:
        """Fetches the first layer of a category, or the blob at `digest`.

        The digest reported for an attestation manifest names the manifest,
        while the digest of an extracted layer names a blob. Both are
        accepted.
        """
        image_ref = _parse_reference(f"{repository}@{digest}")
        client = self._client()

        try:
            fetched = client.fetch_manifest(image_ref)
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 401:
                raise _registry_error(e, str(image_ref)) from e
            logger.debug("%s is not a manifest, fetching it as a blob", digest)
            blob_digest = digest
        else:
            manifest = oci_registry.OCIManifest.from_dict(
                fetched.json(), fetched.media_type
            )
            layers = [
                layer
                for layer in manifest.layers
                if extract.classify_layer(layer) == category
            ]
            # OCI 1.1 artifacts declare their kind on the manifest instead.
            if (
                not layers
                and manifest.artifact_type
                and classify.classify(manifest.artifact_type) == category
            ):
                layers = [layer for layer in manifest.layers if layer.digest]
            if not layers:
                raise NotFoundError(
                    f"No {category.value} layer in manifest {digest}"
                )
            blob_digest = layers[0].digest

        try:
            return client.pull_blob(image_ref, blob_digest)
        except requests.HTTPError as e:
            raise _registry_error(e, f"{image_ref.name}@{blob_digest}") from e

    def fetch_sbom(self, repository: str, digest: str) -> bytes:
        """Fetches an SBOM document.

        Args:
            repository: The repository, `[registry/]repository`.
            digest: Digest of an attestation manifest or of an SBOM layer.

        Returns:
            The SBOM, unwrapped from any in-toto statement, DSSE envelope or
            Sigstore bundle, as indented JSON when it is JSON.

        Raises:
            NotFoundError: There is no SBOM at that digest.
        """
        content = self._fetch_document(
            repository, digest, referrers_lib.Category.SBOM
        )
        predicate, predicate_type = envelope.unwrap(content)
        if predicate_type:
            logger.debug("Unwrapped SBOM with predicate %s", predicate_type)
        return envelope.indent_json(predicate)

    def fetch_vex(self, repository: str, digest: str) -> vex.VEXDocument:
        """Fetches and parses an OpenVEX document.

        Raises:
            NotFoundError: There is no VEX document at that digest.
            ValueError: The document is not an OpenVEX document.
        """
        content = self._fetch_document(
            repository, digest, referrers_lib.Category.VEX
        )
        predicate, _ = envelope.unwrap(content)
        return vex.parse_vex(predicate)

    def list_tags(self, repository: str) -> list[str]:
        """Lists the tags of a repository."""
        image_ref = _parse_reference(repository)
        try:
            return self._client().list_tags(image_ref)
        except requests.HTTPError as e:
            raise _registry_error(e, image_ref.name) from e
