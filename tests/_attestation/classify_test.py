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


"""Tests for referrer classification."""

import pytest

from image_inspector._attestation import classify
from image_inspector.referrers import COSIGN_PREDICATE_TYPE_ANNOTATION
from image_inspector.referrers import IN_TOTO_PREDICATE_TYPE_ANNOTATION
from image_inspector.referrers import SIGSTORE_BUNDLE_CONTENT_ANNOTATION
from image_inspector.referrers import (
    SIGSTORE_BUNDLE_PREDICATE_TYPE_ANNOTATION,
)
from image_inspector.referrers import Category


SIGSTORE_BUNDLE = "application/vnd.dev.sigstore.bundle.v0.3+json"
DSSE = "application/vnd.dsse.envelope.v1+json"


class TestArtifactType:
    @pytest.mark.parametrize(
        ("artifact_type", "expected"),
        [
            (
                "application/vnd.dev.cosign.artifact.sig.v1+json",
                Category.SIGNATURE,
            ),
            ("application/vnd.cncf.notary.signature", Category.SIGNATURE),
            ("application/vnd.cyclonedx+json", Category.SBOM),
            ("application/spdx+json", Category.SBOM),
            ("application/vnd.syft+json+sbom", Category.SBOM),
            ("application/openvex+json", Category.VEX),
            ("application/vnd.trivy.vuln+json", Category.VULNERABILITY_SCAN),
            (
                "application/vnd.example.scan.report",
                Category.VULNERABILITY_SCAN,
            ),
            ("application/vnd.in-toto+json", Category.ATTESTATION),
            ("application/vnd.example.provenance", Category.ATTESTATION),
            ("application/vnd.example.unknown", Category.ARTIFACT),
            ("", Category.ARTIFACT),
        ],
    )
    def test_artifact_type(self, artifact_type, expected):
        assert classify.classify(artifact_type) == expected

    def test_case_insensitive(self):
        assert classify.classify("APPLICATION/SPDX+JSON") == Category.SBOM

    def test_sbom_before_vex(self):
        assert classify.classify("application/sbom-vex+json") == Category.SBOM

    def test_signature_before_sbom(self):
        artifact_type = "application/vnd.cosign.sbom"
        assert classify.classify(artifact_type) == Category.SIGNATURE

    def test_artifact_type_before_annotations(self):
        annotations = {
            IN_TOTO_PREDICATE_TYPE_ANNOTATION: "https://openvex.dev/ns"
        }
        assert (
            classify.classify("application/spdx+json", annotations)
            == Category.SBOM
        )


class TestPredicateType:
    def test_dsse_with_slsa_predicate(self):
        annotations = {
            IN_TOTO_PREDICATE_TYPE_ANNOTATION: "https://slsa.dev/provenance/v1"
        }
        assert classify.classify(DSSE, annotations) == Category.ATTESTATION

    def test_empty_type_with_openvex_predicate(self):
        annotations = {
            COSIGN_PREDICATE_TYPE_ANNOTATION: "https://openvex.dev/ns"
        }
        assert classify.classify("", annotations) == Category.VEX

    def test_vex_predicate_inside_attestation_envelope(self):
        annotations = {
            IN_TOTO_PREDICATE_TYPE_ANNOTATION: "https://openvex.dev/ns/v0.2.0"
        }
        assert (
            classify.classify("application/vnd.in-toto+json", annotations)
            == Category.VEX
        )

    @pytest.mark.parametrize(
        ("predicate_type", "expected"),
        [
            ("https://spdx.dev/Document", Category.SBOM),
            ("https://cyclonedx.org/bom", Category.SBOM),
            ("https://slsa.dev/provenance/v0.2", Category.ATTESTATION),
            (
                "https://cosign.sigstore.dev/attestation/vuln/v1",
                Category.VULNERABILITY_SCAN,
            ),
        ],
    )
    def test_predicate_rules(self, predicate_type, expected):
        annotations = {IN_TOTO_PREDICATE_TYPE_ANNOTATION: predicate_type}
        assert classify.classify("", annotations) == expected

    def test_syft_predicate_is_not_an_sbom_marker(self):
        annotations = {
            IN_TOTO_PREDICATE_TYPE_ANNOTATION: "https://syft.dev/bom"
        }
        assert classify.classify("", annotations) == Category.ARTIFACT

    def test_in_toto_key_takes_precedence(self):
        annotations = {
            COSIGN_PREDICATE_TYPE_ANNOTATION: "https://openvex.dev/ns",
            SIGSTORE_BUNDLE_PREDICATE_TYPE_ANNOTATION: "https://slsa.dev/x",
            IN_TOTO_PREDICATE_TYPE_ANNOTATION: "https://spdx.dev/Document",
        }
        assert classify.predicate_type_hint(annotations) == (
            "https://spdx.dev/Document"
        )
        assert classify.classify("", annotations) == Category.SBOM

    def test_bundle_key_before_cosign_key(self):
        annotations = {
            COSIGN_PREDICATE_TYPE_ANNOTATION: "https://openvex.dev/ns",
            SIGSTORE_BUNDLE_PREDICATE_TYPE_ANNOTATION: "https://slsa.dev/x",
        }
        assert classify.classify("", annotations) == Category.ATTESTATION

    def test_empty_hint_is_skipped(self):
        annotations = {
            IN_TOTO_PREDICATE_TYPE_ANNOTATION: "",
            COSIGN_PREDICATE_TYPE_ANNOTATION: "https://openvex.dev/ns",
        }
        assert classify.classify("", annotations) == Category.VEX

    def test_unknown_predicate_falls_through(self):
        annotations = {
            IN_TOTO_PREDICATE_TYPE_ANNOTATION: "https://example.com/custom"
        }
        assert classify.classify("", annotations) == Category.ARTIFACT
        assert classify.classify(DSSE, annotations) == Category.ARTIFACT
        assert classify.classify_predicate_type("https://example.com") is None


class TestSigstoreBundle:
    def test_message_signature(self):
        annotations = {SIGSTORE_BUNDLE_CONTENT_ANNOTATION: "message-signature"}
        assert (
            classify.classify(SIGSTORE_BUNDLE, annotations)
            == Category.SIGNATURE
        )

    def test_dsse_content(self):
        annotations = {SIGSTORE_BUNDLE_CONTENT_ANNOTATION: "dsse-envelope"}
        assert (
            classify.classify(SIGSTORE_BUNDLE, annotations)
            == Category.ATTESTATION
        )

    def test_without_content_annotation(self):
        assert classify.classify(SIGSTORE_BUNDLE) == Category.ATTESTATION

    def test_bundle_predicate_type_wins(self):
        annotations = {
            SIGSTORE_BUNDLE_CONTENT_ANNOTATION: "dsse-envelope",
            SIGSTORE_BUNDLE_PREDICATE_TYPE_ANNOTATION: "https://openvex.dev/ns",
        }
        assert classify.classify(SIGSTORE_BUNDLE, annotations) == Category.VEX


class TestDeterminism:
    @pytest.mark.parametrize(
        ("artifact_type", "annotations"),
        [
            ("", None),
            ("", {}),
            (DSSE, {IN_TOTO_PREDICATE_TYPE_ANNOTATION: "https://openvex.dev"}),
            (SIGSTORE_BUNDLE, {"unrelated": "value"}),
            ("\x00weird￿", {"predicateType": "\x00"}),
        ],
    )
    def test_repeatable(self, artifact_type, annotations):
        first = classify.classify(artifact_type, annotations)
        for _ in range(10):
            assert classify.classify(artifact_type, annotations) == first

    def test_none_artifact_type(self):
        assert classify.classify(None) == Category.ARTIFACT
