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


"""Unwrapping of attestation envelopes.

An SBOM or VEX document attached to an image can arrive in several shapes:

- the raw document;
- an in-toto statement, `{"_type", "predicateType", "predicate"}`;
- a DSSE envelope, `{"payloadType", "payload"}`, whose base64 payload is an
  in-toto statement;
- a Sigstore bundle, whose `dsseEnvelope` field is such an envelope.

`unwrap` peels these layers off and returns the innermost predicate.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any


def _load_object(data: bytes) -> dict[str, Any] | None:
    try:
        value = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return value if isinstance(value, dict) else None


def _dump(value: Any) -> bytes:
    return json.dumps(
        value, separators=(",", ":"), ensure_ascii=False
    ).encode()


def _unwrap_statement(
    statement: dict[str, Any],
) -> tuple[bytes, str] | None:
    predicate = statement.get("predicate")
    if predicate is None:
        return None
    predicate_type = statement.get("predicateType")
    if not isinstance(predicate_type, str):
        predicate_type = ""
    return _dump(predicate), predicate_type


def _unwrap_dsse(envelope: dict[str, Any]) -> tuple[bytes, str] | None:
    payload = envelope.get("payload")
    if not isinstance(payload, str) or not payload:
        return None
    try:
        decoded = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None

    statement = _load_object(decoded)
    if statement is not None:
        unwrapped = _unwrap_statement(statement)
        if unwrapped is not None:
            return unwrapped
    return decoded, ""


def unwrap(data: bytes) -> tuple[bytes, str]:
    """Extracts the innermost predicate from an attestation blob.

    Predicates found inside a statement are returned as compact JSON, so the
    same document yields the same bytes whichever envelope carried it.

    Args:
        data: The raw blob of an attestation layer.

    Returns:
        A `(predicate, predicate_type)` pair. When `data` is not a recognized
        envelope (including when it cannot be parsed at all), this is `data`
        unchanged and an empty predicate type.
    """
    document = _load_object(data)
    if document is None:
        return data, ""

    bundle_envelope = document.get("dsseEnvelope")
    if isinstance(bundle_envelope, dict):
        document = bundle_envelope

    if "payload" in document:
        unwrapped = _unwrap_dsse(document)
        if unwrapped is not None:
            return unwrapped
        return data, ""

    unwrapped = _unwrap_statement(document)
    if unwrapped is not None:
        return unwrapped
    return data, ""


def indent_json(data: bytes) -> bytes:
    """Pretty-prints JSON for presentation; other input is returned as is."""
    try:
        value = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return data
    return json.dumps(value, indent=2, ensure_ascii=False).encode()
