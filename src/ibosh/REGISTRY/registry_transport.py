# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""
OCI distribution transport.
Thin layer over oras-py that exposes manifests, tags and blob streams for
the image resolver. Authentication and token refresh are handled by oras.
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, List, Optional

import requests
from oras.client import OrasClient
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import NotFoundError, RegistryError
from .image_reference import ImageReference

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPES = [
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
]

INDEX_MEDIA_TYPES = (
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
)


@dataclass
class ManifestResponse:
    """A manifest as returned by the registry, with its content digest."""

    digest: str
    media_type: str
    content: Dict[str, Any]

    @property
    def is_index(self) -> bool:
        """True for multi-platform manifest lists."""
        return self.media_type in INDEX_MEDIA_TYPES

    @property
    def layers(self) -> List[Dict[str, Any]]:
        return list(self.content.get("layers", []))


class RegistryTransport(ABC):
    """Registry operations needed to resolve images and read their layers."""

    @abstractmethod
    def fetch_manifest(self, ref: ImageReference) -> ManifestResponse:
        """Fetch the manifest for a tag or digest."""

    @abstractmethod
    def list_tags(self, ref: ImageReference) -> List[str]:
        """List all tags in the repository of ``ref``."""

    @abstractmethod
    def open_blob(self, ref: ImageReference, digest: str) -> BinaryIO:
        """
        Open a streaming reader for a blob. The caller must close it.
        """


class OrasTransport(RegistryTransport):
    """
    Registry transport backed by oras-py.
    Supports ghcr.io, Docker Hub and other OCI-compatible registries.
    """

    def __init__(self, client: Optional[OrasClient] = None, timeout: float = 60.0):
        self._client = client or OrasClient()
        self.timeout = timeout

    def _container(self, ref: ImageReference):
        return self._client.get_container(f"{ref.registry_host}/{ref.repository}")

    @retry(
        retry=retry_if_exception_type(requests.ConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    def _get_manifest_response(self, ref: ImageReference) -> requests.Response:
        container = self._container(ref)
        reference = ref.digest or ref.tag or ImageReference.DEFAULT_TAG
        url = f"{self._client.prefix}://{container.manifest_url(reference)}"
        headers = {"Accept": ", ".join(MANIFEST_MEDIA_TYPES)}
        return self._client.do_request(url, "GET", headers=headers)

    def fetch_manifest(self, ref: ImageReference) -> ManifestResponse:
        logger.debug(f"Fetching manifest for {ref.full_name}")
        try:
            response = self._get_manifest_response(ref)
        except requests.RequestException as e:
            raise RegistryError(f"fetching manifest for {ref.full_name}: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(f"manifest not found: {ref.full_name}")
        if response.status_code != 200:
            raise RegistryError(
                f"fetching manifest for {ref.full_name}: "
                f"HTTP {response.status_code} {response.text[:200]}"
            )

        body = response.content
        try:
            content = json.loads(body.decode())
        except ValueError as e:
            raise RegistryError(f"decoding manifest for {ref.full_name}: {e}") from e

        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            digest = f"sha256:{hashlib.sha256(body).hexdigest()}"

        media_type = content.get("mediaType") or response.headers.get("Content-Type", "")
        media_type = media_type.split(";")[0].strip()

        logger.debug(f"Manifest for {ref.full_name} has digest {digest}")
        return ManifestResponse(digest=digest, media_type=media_type, content=content)

    def list_tags(self, ref: ImageReference) -> List[str]:
        name = f"{ref.registry_host}/{ref.repository}"
        try:
            tags = self._client.get_tags(name)
        except (requests.RequestException, ValueError) as e:
            raise RegistryError(f"listing tags for {ref.name}: {e}") from e
        return list(tags or [])

    def open_blob(self, ref: ImageReference, digest: str) -> BinaryIO:
        name = f"{ref.registry_host}/{ref.repository}"
        try:
            response = self._client.get_blob(name, digest, stream=True)
        except requests.RequestException as e:
            raise RegistryError(f"fetching blob {digest}: {e}") from e

        if response.status_code == 404:
            response.close()
            raise NotFoundError(f"blob not found: {digest}")
        if response.status_code != 200:
            response.close()
            raise RegistryError(f"fetching blob {digest}: HTTP {response.status_code}")

        # Layer blobs are consumed as raw bytes; compression is detected by the reader.
        response.raw.decode_content = False
        return response.raw
