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


"""Referrer data model shared by discovery, classification and extraction.

A referrer is an artifact (signature, SBOM, attestation, VEX document,
vulnerability scan) attached to an image or to one of its platform manifests
by digest, rather than being part of the image's own layers.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
import enum
from typing import Any


# Docker BuildKit attestation manifests, listed inside the image index.
REFERENCE_TYPE_ANNOTATION = "vnd.docker.reference.type"
REFERENCE_DIGEST_ANNOTATION = "vnd.docker.reference.digest"
ATTESTATION_MANIFEST_REFERENCE_TYPE = "attestation-manifest"

# Predicate type hints, in lookup precedence order.
IN_TOTO_PREDICATE_TYPE_ANNOTATION = "in-toto.io/predicate-type"
SIGSTORE_BUNDLE_PREDICATE_TYPE_ANNOTATION = "dev.sigstore.bundle.predicateType"
COSIGN_PREDICATE_TYPE_ANNOTATION = "predicateType"

SIGSTORE_BUNDLE_CONTENT_ANNOTATION = "dev.sigstore.bundle.content"
SIGSTORE_MESSAGE_SIGNATURE_CONTENT = "message-signature"

COSIGN_CERTIFICATE_ANNOTATION = "dev.sigstore.cosign/certificate"
COSIGN_SIMPLE_SIGNING_ARTIFACT_TYPE = (
    "application/vnd.dev.cosign.simplesigning.v1+json"
)


class Category(enum.Enum):
    """Semantic category of a referrer."""

    SIGNATURE = "signature"
    SBOM = "sbom"
    ATTESTATION = "attestation"
    VEX = "vex"
    VULNERABILITY_SCAN = "vulnerability-scan"
    ARTIFACT = "artifact"


class DiscoveryMechanism(enum.Enum):
    """How a referrer was found. Only used for logging and tests."""

    OCI_REFERRERS_API = "oci-referrers-api"
    REFERRERS_TAG_FALLBACK = "referrers-tag-fallback"
    COSIGN_TAG_SCHEME = "cosign-tag-scheme"
    BUILDKIT_ATTESTATION_MANIFEST = "buildkit-attestation-manifest"
    IMAGE_INDEX_ARTIFACT = "image-index-artifact"


@dataclass(frozen=True)
class ArtifactDescriptor:
    """An artifact as declared by the registry. Identity is the digest."""

    digest: str
    media_type: str = ""
    artifact_type: str = ""
    size: int = 0
    annotations: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ArtifactDescriptor:
        """Build a descriptor from a referrers or image index JSON entry."""
        return cls(
            digest=data.get("digest", ""),
            media_type=data.get("mediaType", ""),
            artifact_type=data.get("artifactType") or "",
            size=int(data.get("size", 0)),
            annotations=dict(data.get("annotations") or {}),
        )


@dataclass(frozen=True)
class SignatureInfo:
    """Signer details read from a cosign signing certificate."""

    identity: str = ""
    issuer: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"identity": self.identity, "issuer": self.issuer}


@dataclass(frozen=True)
class Referrer:
    """A discovered and classified supply-chain artifact.

    Attributes:
        category: What the artifact is.
        digest: Digest of the artifact. For attestation manifests split into
          layers, this is the layer digest.
        media_type: Declared media type.
        artifact_type: Declared artifact type, or the predicate type for
          referrers extracted from attestation layers.
        size: Size in bytes of the content named by `digest`.
        annotations: Annotations, including the reference digest once the
          owning platform manifest is known.
        mechanism: How the artifact was discovered.
        signature_info: Signer identity, only for enriched signatures.
    """

    category: Category
    digest: str
    media_type: str = ""
    artifact_type: str = ""
    size: int = 0
    annotations: Mapping[str, str] = field(default_factory=dict)
    mechanism: DiscoveryMechanism | None = None
    signature_info: SignatureInfo | None = None

    @classmethod
    def from_descriptor(
        cls,
        descriptor: ArtifactDescriptor,
        category: Category,
        mechanism: DiscoveryMechanism | None = None,
    ) -> Referrer:
        return cls(
            category=category,
            digest=descriptor.digest,
            media_type=descriptor.media_type,
            artifact_type=descriptor.artifact_type,
            size=descriptor.size,
            annotations=dict(descriptor.annotations),
            mechanism=mechanism,
        )

    @property
    def reference_digest(self) -> str | None:
        """Digest of the manifest this referrer is linked to, if known."""
        return self.annotations.get(REFERENCE_DIGEST_ANNOTATION) or None

    def with_reference_digest(self, digest: str) -> Referrer:
        annotations = dict(self.annotations)
        annotations[REFERENCE_DIGEST_ANNOTATION] = digest
        return replace(self, annotations=annotations)

    def with_signature_info(self, info: SignatureInfo | None) -> Referrer:
        return replace(self, signature_info=info)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        result: dict[str, Any] = {
            "type": self.category.value,
            "mediaType": self.media_type,
            "digest": self.digest,
            "size": self.size,
            "artifactType": self.artifact_type,
        }
        if self.annotations:
            result["annotations"] = dict(self.annotations)
        if self.signature_info is not None:
            result["signatureInfo"] = self.signature_info.to_dict()
        return result
