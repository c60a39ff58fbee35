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


"""Tests for attestation envelope unwrapping."""

import base64
import json

import pytest

from image_inspector import vex
from image_inspector._attestation import envelope


OPENVEX = "https://openvex.dev/ns/v0.2.0"

VEX_DOCUMENT = {
    "@context": OPENVEX,
    "@id": "https://example.com/vex/2024-001",
    "author": "Example Security",
    "timestamp": "2024-01-01T00:00:00Z",
    "version": 1,
    "statements": [
        {
            "vulnerability": {"name": "CVE-2024-0001"},
            "products": [{"@id": "pkg:oci/app@sha256:abc"}],
            "status": "not_affected",
            "justification": "vulnerable_code_not_present",
        }
    ],
}


def _compact(value) -> bytes:
    return json.dumps(
        value, separators=(",", ":"), ensure_ascii=False
    ).encode()


def _statement(predicate, predicate_type=OPENVEX) -> dict:
    return {
        "_type": "https://in-toto.io/Statement/v1",
        "subject": [{"name": "app", "digest": {"sha256": "abc"}}],
        "predicateType": predicate_type,
        "predicate": predicate,
    }


def _dsse(statement) -> dict:
    return {
        "payloadType": "application/vnd.in-toto+json",
        "payload": base64.b64encode(_compact(statement)).decode(),
        "signatures": [{"keyid": "", "sig": "MEUCIQ=="}],
    }


class TestUnwrap:
    def test_raw_document_is_returned_unchanged(self):
        raw = json.dumps(VEX_DOCUMENT, indent=4).encode()
        assert envelope.unwrap(raw) == (raw, "")

    def test_in_toto_statement(self):
        data = _compact(_statement(VEX_DOCUMENT))
        predicate, predicate_type = envelope.unwrap(data)
        assert predicate == _compact(VEX_DOCUMENT)
        assert predicate_type == OPENVEX

    def test_dsse_envelope(self):
        data = _compact(_dsse(_statement(VEX_DOCUMENT)))
        predicate, predicate_type = envelope.unwrap(data)
        assert predicate == _compact(VEX_DOCUMENT)
        assert predicate_type == OPENVEX

    def test_sigstore_bundle(self):
        bundle = {
            "mediaType": "application/vnd.dev.sigstore.bundle.v0.3+json",
            "verificationMaterial": {},
            "dsseEnvelope": _dsse(_statement(VEX_DOCUMENT)),
        }
        predicate, predicate_type = envelope.unwrap(_compact(bundle))
        assert predicate == _compact(VEX_DOCUMENT)
        assert predicate_type == OPENVEX

    @pytest.mark.parametrize(
        "document",
        [VEX_DOCUMENT, {**VEX_DOCUMENT, "author": "Jürgen Müller"}],
    )
    def test_all_forms_unwrap_identically(self, document):
        forms = [
            _compact(document),
            _compact(_statement(document)),
            _compact(_dsse(_statement(document))),
        ]
        predicates = [envelope.unwrap(form)[0] for form in forms]
        assert predicates[0] == predicates[1] == predicates[2]

        documents = [vex.parse_vex(p) for p in predicates]
        assert documents[0] == documents[1] == documents[2]

    def test_dsse_payload_that_is_not_a_statement(self):
        raw_payload = b"just some signed bytes"
        data = _compact(
            {
                "payloadType": "text/plain",
                "payload": base64.b64encode(raw_payload).decode(),
            }
        )
        assert envelope.unwrap(data) == (raw_payload, "")

    def test_dsse_statement_without_predicate(self):
        statement = {"_type": "https://in-toto.io/Statement/v1"}
        data = _compact(_dsse(statement))
        assert envelope.unwrap(data) == (_compact(statement), "")

    @pytest.mark.parametrize("payload", ["not base64!!", "", 42])
    def test_invalid_dsse_payload(self, payload):
        data = _compact({"payloadType": "x", "payload": payload})
        assert envelope.unwrap(data) == (data, "")

    @pytest.mark.parametrize(
        "data", [b"", b"not json", b"\xff\xfe\x00", b"[1, 2, 3]", b'"text"']
    )
    def test_non_envelope_input(self, data):
        assert envelope.unwrap(data) == (data, "")

    def test_predicate_type_must_be_a_string(self):
        data = _compact({"predicateType": 7, "predicate": {"a": 1}})
        assert envelope.unwrap(data) == (b'{"a":1}', "")

    def test_null_predicate_is_not_unwrapped(self):
        data = _compact({"predicateType": OPENVEX, "predicate": None})
        assert envelope.unwrap(data) == (data, "")


class TestIndentJson:
    def test_indents_json(self):
        assert envelope.indent_json(b'{"a":{"b":1}}') == (
            b'{\n  "a": {\n    "b": 1\n  }\n}'
        )

    def test_keeps_non_ascii_text(self):
        data = '{"author":"Jürgen"}'.encode()
        assert envelope.indent_json(data) == (
            '{\n  "author": "Jürgen"\n}'.encode()
        )

    def test_leaves_other_input_alone(self):
        assert envelope.indent_json(b"SPDXVersion: SPDX-2.3") == (
            b"SPDXVersion: SPDX-2.3"
        )
