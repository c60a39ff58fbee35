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


"""Classification of referrers into semantic categories.

Registries and signing tools describe the same kind of artifact in many
different ways: some set a precise `artifactType`, some only a generic
envelope type with the real content announced in an annotation, and some
nothing at all. Classification is a fixed precedence over substring rules:

1. explicit artifact types (signature, SBOM, VEX, vulnerability scan);
2. predicate type annotations (VEX, SBOM, provenance, vulnerability);
3. Sigstore bundles, split on their content annotation;
4. generic attestation envelope types;
5. anything else is a plain artifact.

Predicate annotations must be inspected before the generic attestation
fallback because VEX and SBOM attestations are usually wrapped in DSSE or
in-toto envelope types.
"""

from __future__ import annotations

from collections.abc import Mapping
import logging

from image_inspector.referrers import COSIGN_PREDICATE_TYPE_ANNOTATION
from image_inspector.referrers import IN_TOTO_PREDICATE_TYPE_ANNOTATION
from image_inspector.referrers import SIGSTORE_BUNDLE_CONTENT_ANNOTATION
from image_inspector.referrers import (
    SIGSTORE_BUNDLE_PREDICATE_TYPE_ANNOTATION,
)
from image_inspector.referrers import SIGSTORE_MESSAGE_SIGNATURE_CONTENT
from image_inspector.referrers import Category


logger = logging.getLogger(__name__)

_Rule = tuple[tuple[str, ...], Category]

ARTIFACT_TYPE_RULES: tuple[_Rule, ...] = (
    (("signature", "notary", "cosign"), Category.SIGNATURE),
    (("sbom", "cyclonedx", "spdx"), Category.SBOM),
    (("vex", "openvex"), Category.VEX),
    (("vuln", "scan"), Category.VULNERABILITY_SCAN),
)

PREDICATE_TYPE_KEYS: tuple[str, ...] = (
    IN_TOTO_PREDICATE_TYPE_ANNOTATION,
    SIGSTORE_BUNDLE_PREDICATE_TYPE_ANNOTATION,
    COSIGN_PREDICATE_TYPE_ANNOTATION,
)

PREDICATE_TYPE_RULES: tuple[_Rule, ...] = (
    (("vex", "openvex"), Category.VEX),
    (("sbom", "cyclonedx", "spdx"), Category.SBOM),
    (("provenance", "slsa"), Category.ATTESTATION),
    (("vuln",), Category.VULNERABILITY_SCAN),
)

SIGSTORE_BUNDLE_MARKER = "sigstore.bundle"

ATTESTATION_TYPE_MARKERS: tuple[str, ...] = (
    "attestation",
    "in-toto",
    "provenance",
)


def _match(value: str, rules: tuple[_Rule, ...]) -> Category | None:
    lowered = value.lower()
    for markers, category in rules:
        if any(marker in lowered for marker in markers):
            return category
    return None


def predicate_type_hint(annotations: Mapping[str, str] | None) -> str:
    """Returns the first non-empty predicate type annotation, or `""`."""
    if not annotations:
        return ""
    for key in PREDICATE_TYPE_KEYS:
        value = annotations.get(key)
        if value:
            return value
    return ""


def classify_predicate_type(predicate_type: str) -> Category | None:
    """Classifies a predicate type URI on its own.

    Returns:
        The matching category, or None when the predicate type says nothing
        about the kind of content.
    """
    if not predicate_type:
        return None
    return _match(predicate_type, PREDICATE_TYPE_RULES)


def classify(
    artifact_type: str, annotations: Mapping[str, str] | None = None
) -> Category:
    """Maps an artifact type and its annotations to a category.

    Matching is case-insensitive substring matching. This never fails: input
    that matches no rule is `Category.ARTIFACT`.

    Args:
        artifact_type: The declared artifact type, possibly empty.
        annotations: The artifact's annotations, possibly None.

    Returns:
        The category of the artifact.
    """
    artifact_type = artifact_type or ""
    annotations = annotations or {}

    category = _match(artifact_type, ARTIFACT_TYPE_RULES)
    if category is not None:
        logger.debug(
            "Classified %r as %s by artifact type",
            artifact_type,
            category.value,
        )
        return category

    predicate_type = predicate_type_hint(annotations)
    category = classify_predicate_type(predicate_type)
    if category is not None:
        logger.debug(
            "Classified %r as %s by predicate type %r",
            artifact_type,
            category.value,
            predicate_type,
        )
        return category

    lowered = artifact_type.lower()
    if SIGSTORE_BUNDLE_MARKER in lowered:
        content = annotations.get(SIGSTORE_BUNDLE_CONTENT_ANNOTATION, "")
        if SIGSTORE_MESSAGE_SIGNATURE_CONTENT in content.lower():
            return Category.SIGNATURE
        return Category.ATTESTATION

    if any(marker in lowered for marker in ATTESTATION_TYPE_MARKERS):
        return Category.ATTESTATION

    logger.debug("Could not classify %r, defaulting to artifact", artifact_type)
    return Category.ARTIFACT
