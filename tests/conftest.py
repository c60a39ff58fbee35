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


"""In-memory registry shared by the tests."""

import hashlib
import json
import threading

import pytest
import requests

from image_inspector._oci import registry


IMAGE = "registry.example.com/org/app:v1"


def http_error(status: int) -> requests.HTTPError:
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f"{status} Client Error", response=response)


class FakeOrasClient(registry.OrasClient):
    """Registry contents keyed by digest, with tags pointing at digests."""

    def __init__(self):
        super().__init__()
        self.manifests: dict[str, bytes] = {}
        self.media_types: dict[str, str] = {}
        self.tags: dict[str, str] = {}
        self.referrers: dict[str, list[dict]] = {}
        self.blobs: dict[str, bytes] = {}
        # References (tag or digest) that answer with a server error.
        self.broken: set[str] = set()
        self.referrers_api_error: Exception | None = None
        self.requested: list[str] = []
        self._lock = threading.Lock()

    def _record(self, what: str) -> None:
        with self._lock:
            self.requested.append(what)

    def add_manifest(
        self,
        manifest: dict,
        *,
        tag: str | None = None,
        media_type: str | None = None,
    ) -> str:
        content = json.dumps(manifest, separators=(",", ":")).encode()
        digest = f"sha256:{hashlib.sha256(content).hexdigest()}"
        self.manifests[digest] = content
        self.media_types[digest] = (
            media_type
            or manifest.get("mediaType")
            or registry.OCI_MANIFEST_MEDIA_TYPE
        )
        if tag is not None:
            self.tags[tag] = digest
        return digest

    def add_blob(self, content: bytes) -> str:
        digest = f"sha256:{hashlib.sha256(content).hexdigest()}"
        self.blobs[digest] = content
        return digest

    def descriptor(self, digest: str, **extra) -> dict:
        """Index or referrers entry for a stored manifest."""
        entry = {
            "mediaType": self.media_types[digest],
            "digest": digest,
            "size": len(self.manifests[digest]),
        }
        entry.update(extra)
        return entry

    def fetch_manifest(
        self, image_ref: registry.ImageReference
    ) -> registry.FetchedManifest:
        key = image_ref.reference
        self._record(f"manifests/{key}")
        if key in self.broken:
            raise http_error(500)
        digest = self.tags.get(key, key)
        if digest not in self.manifests:
            raise http_error(404)
        return registry.FetchedManifest(
            self.manifests[digest], digest, self.media_types[digest]
        )

    def get_referrers(self, image_ref: registry.ImageReference) -> list[dict]:
        self._record(f"referrers/{image_ref.digest}")
        if self.referrers_api_error is not None:
            raise self.referrers_api_error
        return [dict(r) for r in self.referrers.get(image_ref.digest, [])]

    def pull_blob(
        self, image_ref: registry.ImageReference, digest: str
    ) -> bytes:
        self._record(f"blobs/{digest}")
        if digest not in self.blobs:
            raise http_error(404)
        return self.blobs[digest]

    def list_tags(self, image_ref: registry.ImageReference) -> list[str]:
        return sorted(self.tags)


@pytest.fixture
def fake_registry() -> FakeOrasClient:
    return FakeOrasClient()


@pytest.fixture
def image_ref() -> registry.ImageReference:
    return registry.ImageReference.parse(IMAGE)
