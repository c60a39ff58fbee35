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


"""Signer identity extraction for cosign signatures.

Keyless cosign signatures carry the Fulcio signing certificate as a PEM
annotation on the signature layer. The certificate names the signer in its
subject alternative name and the OIDC issuer that vouched for the signer in a
Sigstore-specific extension. Nothing here verifies the certificate.
"""

from __future__ import annotations

import logging

from cryptography import x509

from image_inspector._oci import registry as oci_registry
from image_inspector.referrers import COSIGN_CERTIFICATE_ANNOTATION
from image_inspector.referrers import SignatureInfo


logger = logging.getLogger(__name__)

# The issuer extension was first a raw string (1.1), then a DER-encoded
# UTF8String (1.8).
OIDC_ISSUER_OIDS = (
    x509.ObjectIdentifier("1.3.6.1.4.1.57264.1.1"),
    x509.ObjectIdentifier("1.3.6.1.4.1.57264.1.8"),
)

# UTF8String, PrintableString, IA5String
_DER_STRING_TAGS = frozenset([0x0C, 0x13, 0x16])


def _decode_der_string(der: bytes) -> str:
    """Decodes a single DER-encoded ASN.1 character string."""
    if len(der) < 2 or der[0] not in _DER_STRING_TAGS:
        raise ValueError("Not a DER character string")

    length = der[1]
    offset = 2
    if length & 0x80:
        num_octets = length & 0x7F
        if num_octets == 0 or num_octets > 4 or len(der) < 2 + num_octets:
            raise ValueError("Invalid DER length")
        length = int.from_bytes(der[2 : 2 + num_octets], "big")
        offset += num_octets

    if len(der) != offset + length:
        raise ValueError("DER length does not match content")
    return der[offset:].decode("utf-8")


def _extension_value(ext_value: x509.ExtensionType) -> bytes:
    if isinstance(ext_value, x509.UnrecognizedExtension):
        return ext_value.value
    return ext_value.public_bytes()


def _issuer(certificate: x509.Certificate) -> str:
    for oid in OIDC_ISSUER_OIDS:
        try:
            extension = certificate.extensions.get_extension_for_oid(oid)
        except x509.ExtensionNotFound:
            continue
        raw = _extension_value(extension.value)
        try:
            return _decode_der_string(raw)
        except (ValueError, UnicodeDecodeError):
            return raw.decode("utf-8", errors="replace")
    return ""


def _identity(certificate: x509.Certificate) -> str:
    try:
        san = certificate.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        ).value
    except x509.ExtensionNotFound:
        return ""

    emails = san.get_values_for_type(x509.RFC822Name)
    if emails:
        return emails[0]
    uris = san.get_values_for_type(x509.UniformResourceIdentifier)
    if uris:
        return uris[0]
    return ""


def signature_info_from_pem(pem: str | bytes) -> SignatureInfo | None:
    """Reads signer identity and OIDC issuer from a PEM certificate.

    Args:
        pem: The PEM-encoded signing certificate.

    Returns:
        The signer details, or None if the certificate names neither an
        identity nor an issuer.

    Raises:
        ValueError: The input is not a PEM-encoded X.509 certificate.
    """
    if isinstance(pem, str):
        pem = pem.encode()
    certificate = x509.load_pem_x509_certificate(pem)

    identity = _identity(certificate)
    issuer = _issuer(certificate)
    if not identity and not issuer:
        return None
    return SignatureInfo(identity=identity, issuer=issuer)


class SignatureEnricher:
    """Looks up the signer of cosign signature manifests."""

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

    def _certificate(self, digest: str) -> str | None:
        manifest, _ = self._client.get_manifest(
            self._image_ref.with_digest(digest)
        )
        for layer in manifest.get("layers") or []:
            annotations = layer.get("annotations") or {}
            certificate = annotations.get(COSIGN_CERTIFICATE_ANNOTATION)
            if certificate:
                return certificate
        return None

    def enrich(self, digest: str) -> SignatureInfo | None:
        """Returns the signer of the signature manifest at a digest.

        This never raises: fetch and parse failures are logged and reported as
        None, as is a signature without an embedded certificate.
        """
        short_digest = oci_registry.truncate_digest(digest)
        try:
            certificate = self._certificate(digest)
            if certificate is None:
                logger.log(
                    self._log_level,
                    "No cosign certificate in signature manifest %s",
                    short_digest,
                )
                return None
            info = signature_info_from_pem(certificate)
        except Exception as e:
            logger.log(
                self._log_level,
                "Failed to extract signature info for %s: %s",
                short_digest,
                e,
            )
            return None

        if info is not None:
            logger.log(
                self._log_level,
                "Extracted signature info: identity=%s, issuer=%s",
                info.identity,
                info.issuer,
            )
        return info
