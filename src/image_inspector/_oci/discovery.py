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


"""Referrer discovery across the mechanisms registries and tools use.

Artifacts attached to an image can be found in four ways, none of which works
everywhere:

1. OCI 1.1 Referrers API (`GET /v2/<name>/referrers/<digest>`);
2. the referrers tag schema fallback, an index tagged `sha256-<hex>`;
3. the cosign tag scheme, manifests tagged `sha256-<hex>.sig` and `.att`;
4. BuildKit attestation manifests listed inside the image index itself.

All of them run concurrently, against the top-level digest and against every
platform manifest of a multi-platform image. Results are merged by digest.
"""

from __future__ import annotations

from collections.abc import Callable
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import wait
from dataclasses import dataclass
import functools
import logging
import threading

import requests

from image_inspector._attestation import classify
from image_inspector._attestation import extract
from image_inspector._attestation import signature
from image_inspector._oci import registry as oci_registry
from image_inspector.referrers import ATTESTATION_MANIFEST_REFERENCE_TYPE
from image_inspector.referrers import COSIGN_SIMPLE_SIGNING_ARTIFACT_TYPE
from image_inspector.referrers import REFERENCE_DIGEST_ANNOTATION
from image_inspector.referrers import REFERENCE_TYPE_ANNOTATION
from image_inspector.referrers import ArtifactDescriptor
from image_inspector.referrers import Category
from image_inspector.referrers import DiscoveryMechanism
from image_inspector.referrers import Referrer


logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8

_Probe = Callable[[], Iterable[Referrer]]


def digest_to_tag(digest: str, suffix: str = "") -> str | None:
    """Tag derived from a digest: `sha256:abc` becomes `sha256-abc<suffix>`.

    Returns:
        The tag, or None if `digest` is not of the form `<algorithm>:<hex>`.
    """
    algorithm, sep, hex_part = digest.partition(":")
    if not sep or not algorithm or not hex_part or ":" in hex_part:
        return None
    return f"{algorithm}-{hex_part}{suffix}"


@dataclass(frozen=True)
class ResolvedImage:
    """The top-level manifest an image reference points at."""

    digest: str
    media_type: str
    index: oci_registry.ImageIndex | None = None

    @property
    def platform_manifests(self) -> list[oci_registry.Descriptor]:
        """Real platform manifests of a multi-platform image."""
        if self.index is None:
            return []
        return [
            m
            for m in self.index.manifests
            if m.platform is not None
            and not m.platform.is_unknown
            and not (m.annotations or {}).get(REFERENCE_TYPE_ANNOTATION)
            and m.digest
            and m.digest != self.digest
        ]

    @property
    def attestation_manifests(self) -> list[oci_registry.Descriptor]:
        """BuildKit attestation manifests embedded in the index."""
        if self.index is None:
            return []
        return [
            m
            for m in self.index.manifests
            if (m.annotations or {}).get(REFERENCE_TYPE_ANNOTATION)
            == ATTESTATION_MANIFEST_REFERENCE_TYPE
            and m.digest
        ]

    @property
    def index_artifacts(self) -> list[oci_registry.Descriptor]:
        """Artifact manifests listed in the index without a platform."""
        if self.index is None:
            return []
        return [
            m
            for m in self.index.manifests
            if m.artifact_type and m.platform is None and m.digest
        ]


class _ReferrerAccumulator:
    """Digest-keyed referrer set shared by all discovery tasks.

    The first referrer seen for a digest is kept. A later one only contributes
    its reference digest, if the kept one has none.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._referrers: dict[str, Referrer] = {}

    def add(self, referrer: Referrer) -> bool:
        """Adds a referrer; returns whether its digest was new."""
        if not referrer.digest:
            return False
        with self._lock:
            existing = self._referrers.get(referrer.digest)
            if existing is None:
                self._referrers[referrer.digest] = referrer
                return True
            if existing.reference_digest is None and referrer.reference_digest:
                self._referrers[referrer.digest] = (
                    existing.with_reference_digest(referrer.reference_digest)
                )
            return False

    def update(self, referrer: Referrer) -> None:
        with self._lock:
            if referrer.digest in self._referrers:
                self._referrers[referrer.digest] = referrer

    def referrers(self) -> list[Referrer]:
        with self._lock:
            return list(self._referrers.values())


class ReferrerDiscovery:
    """Finds, classifies and deduplicates the referrers of an image.

    Each call is an independent pass over the registry; nothing is cached
    between calls.
    """

    def __init__(
        self,
        client: oci_registry.OrasClient,
        *,
        verbose: bool = False,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._client = client
        self._verbose = verbose
        self._max_workers = max_workers
        self._log_level = logging.INFO if verbose else logging.DEBUG

    def _log(self, message: str, *args) -> None:
        logger.log(self._log_level, message, *args)

    def resolve(self, image_ref: oci_registry.ImageReference) -> ResolvedImage:
        """Resolves an image reference to its digest and, if any, its index.

        Raises:
            requests.RequestException: The image could not be fetched.
            ValueError: The registry returned an invalid manifest.
        """
        fetched = self._client.fetch_manifest(image_ref)
        self._log(
            "Resolved %s to %s (%s)",
            image_ref,
            oci_registry.truncate_digest(fetched.digest),
            fetched.media_type,
        )
        if fetched.media_type not in oci_registry.INDEX_MEDIA_TYPES:
            return ResolvedImage(fetched.digest, fetched.media_type)

        index = oci_registry.ImageIndex.from_dict(
            fetched.json(), fetched.media_type
        )
        self._log("Image index lists %d manifests", len(index.manifests))
        return ResolvedImage(fetched.digest, fetched.media_type, index)

    def discover(
        self, image_ref: oci_registry.ImageReference
    ) -> list[Referrer]:
        """Discovers the referrers of an image.

        Only resolving the image itself can fail. Every discovery probe that
        fails is logged and contributes nothing.

        Returns:
            The referrers, one per digest, in no particular order.
        """
        return self.discover_resolved(image_ref, self.resolve(image_ref))

    def discover_resolved(
        self,
        image_ref: oci_registry.ImageReference,
        image: ResolvedImage,
    ) -> list[Referrer]:
        """Discovers the referrers of an already resolved image."""
        accumulator = _ReferrerAccumulator()
        extractor = extract.AttestationExtractor(
            self._client, image_ref, verbose=self._verbose
        )

        for entry in image.index_artifacts:
            descriptor = ArtifactDescriptor.from_dict(entry.to_dict())
            category = classify.classify(
                descriptor.artifact_type, descriptor.annotations
            )
            accumulator.add(
                Referrer.from_descriptor(
                    descriptor,
                    category,
                    DiscoveryMechanism.IMAGE_INDEX_ARTIFACT,
                )
            )
            self._log(
                "  Found artifact in index: type=%s, artifactType=%s, "
                "digest=%s",
                category.value,
                descriptor.artifact_type,
                oci_registry.truncate_digest(descriptor.digest),
            )

        tasks: list[tuple[str, _Probe]] = []
        short_top = oci_registry.truncate_digest(image.digest)
        tasks.append(
            (
                f"referrers of {short_top}",
                functools.partial(
                    self._probe_referrers, image_ref, image.digest
                ),
            )
        )

        platform_digests = [m.digest for m in image.platform_manifests]
        for platform_digest in platform_digests:
            tasks.append(
                (
                    "referrers of platform "
                    f"{oci_registry.truncate_digest(platform_digest)}",
                    functools.partial(
                        self._probe_referrers,
                        image_ref,
                        platform_digest,
                        platform_digest=platform_digest,
                    ),
                )
            )

        for entry in image.attestation_manifests:
            annotations = entry.annotations or {}
            if not annotations.get(REFERENCE_DIGEST_ANNOTATION):
                self._log(
                    "Attestation manifest %s missing %s annotation",
                    oci_registry.truncate_digest(entry.digest),
                    REFERENCE_DIGEST_ANNOTATION,
                )
            tasks.append(
                (
                    "attestation manifest "
                    f"{oci_registry.truncate_digest(entry.digest)}",
                    functools.partial(
                        extractor.extract, entry.digest, entry.size, annotations
                    ),
                )
            )

        for digest in [image.digest, *platform_digests]:
            short = oci_registry.truncate_digest(digest)
            tasks.append(
                (
                    f"cosign signature tag of {short}",
                    functools.partial(
                        self._probe_cosign_signature, image_ref, digest
                    ),
                )
            )
            tasks.append(
                (
                    f"cosign attestation tag of {short}",
                    functools.partial(
                        self._probe_cosign_attestation,
                        extractor,
                        image_ref,
                        digest,
                    ),
                )
            )

        self._run(tasks, accumulator)
        self._enrich_signatures(image_ref, accumulator)

        referrers = accumulator.referrers()
        self._log("Total referrers found: %d", len(referrers))
        return referrers

    def _run(
        self,
        tasks: list[tuple[str, _Probe]],
        accumulator: _ReferrerAccumulator,
    ) -> None:
        """Runs all probes in parallel and waits for every one of them."""
        workers = min(len(tasks), self._max_workers)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(self._run_probe, name, probe, accumulator)
                for name, probe in tasks
            ]
            wait(futures)

    def _run_probe(
        self,
        name: str,
        probe: _Probe,
        accumulator: _ReferrerAccumulator,
    ) -> None:
        try:
            referrers = list(probe())
        except Exception as e:
            self._log("Discovery of %s failed: %s", name, e)
            return

        for referrer in referrers:
            if accumulator.add(referrer):
                self._log(
                    "  Found referrer via %s: type=%s, digest=%s, linked to %s",
                    referrer.mechanism.value if referrer.mechanism else name,
                    referrer.category.value,
                    oci_registry.truncate_digest(referrer.digest),
                    oci_registry.truncate_digest(
                        referrer.reference_digest or "image"
                    ),
                )

    def _query_referrers_api(
        self, image_ref: oci_registry.ImageReference, digest: str
    ) -> list[Referrer]:
        self._log(
            "Trying OCI 1.1 Referrers API: /v2/%s/referrers/%s",
            image_ref.repository,
            digest,
        )
        entries = self._client.get_referrers(image_ref.with_digest(digest))
        return _referrers_from_entries(
            entries, DiscoveryMechanism.OCI_REFERRERS_API
        )

    def _query_referrers_tag(
        self, image_ref: oci_registry.ImageReference, digest: str
    ) -> list[Referrer]:
        tag = digest_to_tag(digest)
        if tag is None:
            self._log("Invalid digest for referrers lookup: %s", digest)
            return []

        self._log("Falling back to referrers tag schema: %s", tag)
        try:
            index = self._client.get_image_index(image_ref.with_tag(tag))
        except requests.RequestException as e:
            self._log("No referrers index at tag %s: %s", tag, e)
            return []

        self._log(
            "Referrers index at %s lists %d artifacts",
            tag,
            len(index.manifests),
        )
        return _referrers_from_entries(
            [m.to_dict() for m in index.manifests],
            DiscoveryMechanism.REFERRERS_TAG_FALLBACK,
        )

    def _probe_referrers(
        self,
        image_ref: oci_registry.ImageReference,
        digest: str,
        platform_digest: str | None = None,
    ) -> list[Referrer]:
        """Referrers API with the tag schema as fallback.

        An empty answer from the API cannot be told apart from an API the
        registry does not implement, so the fallback tag is probed whenever
        the API returned nothing.
        """
        try:
            referrers = self._query_referrers_api(image_ref, digest)
        except (requests.RequestException, ValueError) as e:
            self._log("Referrers API not available or failed: %s", e)
            referrers = []

        if not referrers:
            referrers = self._query_referrers_tag(image_ref, digest)

        if platform_digest is not None:
            referrers = [
                r.with_reference_digest(platform_digest) for r in referrers
            ]
        return referrers

    def _probe_cosign_signature(
        self, image_ref: oci_registry.ImageReference, digest: str
    ) -> list[Referrer]:
        tag = digest_to_tag(digest, ".sig")
        if tag is None:
            return []
        try:
            fetched = self._client.fetch_manifest(image_ref.with_tag(tag))
        except requests.RequestException:
            self._log("No cosign signature tag %s", tag)
            return []

        self._log("Found cosign signature manifest at tag %s", tag)
        return [
            Referrer(
                category=Category.SIGNATURE,
                digest=fetched.digest,
                media_type=fetched.media_type,
                artifact_type=COSIGN_SIMPLE_SIGNING_ARTIFACT_TYPE,
                size=fetched.size,
                annotations={REFERENCE_DIGEST_ANNOTATION: digest},
                mechanism=DiscoveryMechanism.COSIGN_TAG_SCHEME,
            )
        ]

    def _probe_cosign_attestation(
        self,
        extractor: extract.AttestationExtractor,
        image_ref: oci_registry.ImageReference,
        digest: str,
    ) -> list[Referrer]:
        tag = digest_to_tag(digest, ".att")
        if tag is None:
            return []
        try:
            fetched = self._client.fetch_manifest(image_ref.with_tag(tag))
        except requests.RequestException:
            self._log("No cosign attestation tag %s", tag)
            return []

        self._log("Found cosign attestation manifest at tag %s", tag)
        return extractor.extract(
            fetched.digest,
            fetched.size,
            {REFERENCE_DIGEST_ANNOTATION: digest},
            mechanism=DiscoveryMechanism.COSIGN_TAG_SCHEME,
        )

    def _enrich_signatures(
        self,
        image_ref: oci_registry.ImageReference,
        accumulator: _ReferrerAccumulator,
    ) -> None:
        signatures = [
            r
            for r in accumulator.referrers()
            if r.category == Category.SIGNATURE
        ]
        if not signatures:
            return

        enricher = signature.SignatureEnricher(
            self._client, image_ref, verbose=self._verbose
        )
        workers = min(len(signatures), self._max_workers)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            infos = list(
                executor.map(lambda r: enricher.enrich(r.digest), signatures)
            )

        for referrer, info in zip(signatures, infos):
            if info is not None:
                accumulator.update(referrer.with_signature_info(info))


def _referrers_from_entries(
    entries: Iterable[dict], mechanism: DiscoveryMechanism
) -> list[Referrer]:
    referrers = []
    for entry in entries:
        descriptor = ArtifactDescriptor.from_dict(entry)
        if not descriptor.digest:
            continue
        category = classify.classify(
            descriptor.artifact_type, descriptor.annotations
        )
        referrers.append(
            Referrer.from_descriptor(descriptor, category, mechanism)
        )
    return referrers
