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


"""Tests for the referrer data model."""

from image_inspector import referrers
from image_inspector.referrers import Category
from image_inspector.referrers import DiscoveryMechanism
from image_inspector.referrers import Referrer
from image_inspector.referrers import SignatureInfo


DIGEST = "sha256:" + "a" * 64
PLATFORM = "sha256:" + "b" * 64


class TestArtifactDescriptor:
    def test_from_dict(self):
        descriptor = referrers.ArtifactDescriptor.from_dict(
            {
                "mediaType": "application/vnd.oci.image.manifest.v1+json",
                "digest": DIGEST,
                "size": 42,
                "artifactType": "application/spdx+json",
                "annotations": {"org.opencontainers.image.created": "now"},
            }
        )
        assert descriptor.digest == DIGEST
        assert descriptor.size == 42
        assert descriptor.artifact_type == "application/spdx+json"
        assert descriptor.annotations == {
            "org.opencontainers.image.created": "now"
        }

    def test_from_dict_defaults(self):
        descriptor = referrers.ArtifactDescriptor.from_dict(
            {"digest": DIGEST, "artifactType": None, "annotations": None}
        )
        assert descriptor.media_type == ""
        assert descriptor.artifact_type == ""
        assert descriptor.size == 0
        assert descriptor.annotations == {}


class TestReferrer:
    def test_from_descriptor(self):
        descriptor = referrers.ArtifactDescriptor(
            DIGEST, "application/vnd.oci.image.manifest.v1+json", "x", 7
        )
        referrer = Referrer.from_descriptor(
            descriptor, Category.SBOM, DiscoveryMechanism.OCI_REFERRERS_API
        )
        assert referrer.digest == DIGEST
        assert referrer.category == Category.SBOM
        assert referrer.size == 7
        assert referrer.mechanism == DiscoveryMechanism.OCI_REFERRERS_API

    def test_reference_digest(self):
        referrer = Referrer(Category.SBOM, DIGEST)
        assert referrer.reference_digest is None

        linked = referrer.with_reference_digest(PLATFORM)
        assert linked.reference_digest == PLATFORM
        assert linked.annotations == {
            referrers.REFERENCE_DIGEST_ANNOTATION: PLATFORM
        }
        assert referrer.annotations == {}

    def test_to_dict_minimal(self):
        referrer = Referrer(
            Category.ATTESTATION,
            DIGEST,
            media_type="application/vnd.oci.image.manifest.v1+json",
            artifact_type="attestation",
            size=100,
            mechanism=DiscoveryMechanism.BUILDKIT_ATTESTATION_MANIFEST,
        )
        assert referrer.to_dict() == {
            "type": "attestation",
            "mediaType": "application/vnd.oci.image.manifest.v1+json",
            "digest": DIGEST,
            "size": 100,
            "artifactType": "attestation",
        }

    def test_to_dict_with_signature_info(self):
        referrer = Referrer(Category.SIGNATURE, DIGEST).with_signature_info(
            SignatureInfo("dev@example.com", "https://accounts.example.com")
        )
        assert referrer.to_dict()["signatureInfo"] == {
            "identity": "dev@example.com",
            "issuer": "https://accounts.example.com",
        }
