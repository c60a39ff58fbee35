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


"""Extraction of referrers from attestation manifests.

BuildKit attestation manifests and cosign `.att` manifests bundle several
in-toto predicates as layers of one manifest, typically an SBOM next to a SLSA
provenance statement. Each interesting layer becomes its own referrer, keyed
by the layer digest, so that the predicates do not collapse into a single
entry and each one reports its own size.
"""

from __future__ import annotations

from collections.abc import Mapping
import logging

from image_inspector._attestation import classify
from image_inspector._oci import registry as oci_registry
from image_inspector.referrers import COSIGN_PREDICATE_TYPE_ANNOTATION
from image_inspector.referrers import IN_TOTO_PREDICATE_TYPE_ANNOTATION
from image_inspector.referrers import Category
from image_inspector.referrers import DiscoveryMechanism
from image_inspector.referrers import Referrer


logger = logging.getLogger(__name__)

_EXTRACTED_CATEGORIES = frozenset(
    [Category.SBOM, Category.VEX, Category.ATTESTATION]
)

GENERIC_ATTESTATION_ARTIFACT_TYPE = "attestation"

_SYFT_MARKER = "syft"


def layer_predicate_type(layer: oci_registry.Descriptor) -> str:
    """Predicate type of an attestation layer, from in-toto or cosign keys."""
    annotations = layer.annotations or {}
    return (
        annotations.get(IN_TOTO_PREDICATE_TYPE_ANNOTATION)
        or annotations.get(COSIGN_PREDICATE_TYPE_ANNOTATION)
        or ""
    )


def classify_layer(layer: oci_registry.Descriptor) -> Category:
    """Classifies an attestation layer by its predicate type alone.

    Syft's own predicate types are SBOMs here, although they carry none of
    the markers the general classifier knows.
    """
    predicate_type = layer_predicate_type(layer)
    category = classify.classify(
        "", {IN_TOTO_PREDICATE_TYPE_ANNOTATION: predicate_type}
    )
    if category == Category.ARTIFACT and _SYFT_MARKER in predicate_type.lower():
        return Category.SBOM
    return category


class AttestationExtractor:
    """Turns attestation manifests into one referrer per predicate layer."""

    def __init__(
        self,
        client: oci_registry.OrasClient,
        image_ref: oci_registry.ImageReference,
        *,
        verbose: bool = False,
    ):
        self._client = client
        self._image_ref = image_ref
        self._log_level = logging.INFO if verbose else logging.DEBUG

    def extract(
        self,
        manifest_digest: str,
        declared_size: int,
        carried_annotations: Mapping[str, str] | None = None,
        mechanism: DiscoveryMechanism = (
            DiscoveryMechanism.BUILDKIT_ATTESTATION_MANIFEST
        ),
    ) -> list[Referrer]:
        """Extracts referrers from the attestation manifest at a digest.

        Args:
            manifest_digest: Digest of the attestation manifest.
            declared_size: Size of the manifest as declared by whoever listed
              it; only used for the generic fallback referrer.
            carried_annotations: Annotations to copy onto every referrer, such
              as the reference digest of the platform being described.
            mechanism: How the attestation manifest was found.

        Returns:
            One referrer per SBOM, VEX or provenance layer. When there is none,
            a single generic attestation referrer for the manifest itself.

        Raises:
            requests.RequestException: The manifest could not be fetched.
            ValueError: The registry returned something that is not a
              manifest.
        """
        carried = dict(carried_annotations or {})
        logger.log(
            self._log_level,
            "Fetching attestation manifest %s",
            oci_registry.truncate_digest(manifest_digest),
        )
        fetched = self._client.fetch_manifest(
            self._image_ref.with_digest(manifest_digest)
        )
        manifest = oci_registry.OCIManifest.from_dict(
            fetched.json(), fetched.media_type
        )
        logger.log(
            self._log_level,
            "Attestation manifest has %d layers",
            len(manifest.layers),
        )

        referrers = []
        for layer in manifest.layers:
            predicate_type = layer_predicate_type(layer)
            if not predicate_type or not layer.digest:
                continue

            category = classify_layer(layer)
            if category not in _EXTRACTED_CATEGORIES:
                continue

            annotations = dict(carried)
            annotations[IN_TOTO_PREDICATE_TYPE_ANNOTATION] = predicate_type
            referrers.append(
                Referrer(
                    category=category,
                    digest=layer.digest,
                    media_type=layer.media_type,
                    artifact_type=predicate_type,
                    size=layer.size,
                    annotations=annotations,
                    mechanism=mechanism,
                )
            )
            logger.log(
                self._log_level,
                "  Found %s layer: predicate=%s, digest=%s, size=%d",
                category.value,
                predicate_type,
                oci_registry.truncate_digest(layer.digest),
                layer.size,
            )

        if not referrers:
            logger.log(
                self._log_level,
                "No SBOM, VEX or provenance layer in %s, "
                "adding it as a generic attestation",
                oci_registry.truncate_digest(manifest_digest),
            )
            referrers.append(
                Referrer(
                    category=Category.ATTESTATION,
                    digest=manifest_digest,
                    media_type=manifest.media_type,
                    artifact_type=GENERIC_ATTESTATION_ARTIFACT_TYPE,
                    size=declared_size,
                    annotations=carried,
                    mechanism=mechanism,
                )
            )

        return referrers
