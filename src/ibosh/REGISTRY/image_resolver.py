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
Registry-direct image resolution.
Resolves tags to digests, finds tags sharing a digest and extracts single
files from an image by streaming its layers, without pulling the image.
"""

import gzip
import io
import logging
import platform
import posixpath
import tarfile
import zlib
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests
import yaml
from urllib3.exceptions import HTTPError as URLLibHTTPError

from ..errors import ExtractionNotFoundError, IBoshError, NotFoundError, RegistryError
from ..MODELS.image import ImageInfo, ImageMetadata
from ..UTILS.cancel import CancelToken
from .image_reference import ImageReference, is_version_tag, sort_tags
from .manifest_diff import compare_documents, render_report
from .registry_transport import ManifestResponse, OrasTransport, RegistryTransport

logger = logging.getLogger(__name__)

# Location of the director manifest inside the instant-bosh image
MANIFEST_PATH = "/var/vcap/bosh/manifest.yml"

GZIP_MAGIC = b"\x1f\x8b"

DEFAULT_MAX_TAGS = 200


def normalize_entry_name(name: str) -> str:
    """
    Normalize a tar entry or target path to a clean absolute path.
    './var/x' and 'var/x' and '/var/x' all become '/var/x'.
    """
    if name.startswith("./"):
        name = name[2:]
    name = "/" + name.lstrip("/")
    return posixpath.normpath(name)


def _current_platform() -> Tuple[str, str]:
    arch_map = {
        "x86_64": "amd64",
        "amd64": "amd64",
        "aarch64": "arm64",
        "arm64": "arm64",
        "armv7l": "arm",
        "i386": "386",
        "i686": "386",
    }
    arch = platform.machine().lower()
    return "linux", arch_map.get(arch, arch)


class ImageResolver:
    """
    Resolves image references against their registry and reads files out of
    image layers one blob at a time.
    """

    def __init__(self,
                 transport: Optional[RegistryTransport] = None,
                 max_tags: int = DEFAULT_MAX_TAGS):
        """
        Initialize the resolver.

        Args:
            transport: Registry transport. Defaults to an oras-backed transport.
            max_tags: Upper bound on tags inspected by find_tags_for_digest.
        """
        self.transport = transport or OrasTransport()
        self.max_tags = max_tags

    @staticmethod
    def _parse(image_ref: str) -> ImageReference:
        try:
            return ImageReference.parse(image_ref)
        except ValueError as e:
            raise RegistryError(f"parsing image reference: {e}") from e

    def resolve_image_ref(self, image_ref: str) -> Tuple[str, str]:
        """
        Resolve a tag-based reference to a digest-pinned one.

        A reference that already carries a digest is returned unchanged
        without contacting the registry.

        Returns:
            Tuple of (pinned reference, digest)
        """
        ref = self._parse(image_ref)
        if ref.pinned:
            logger.debug(f"Image reference {image_ref} already has digest {ref.digest}")
            return image_ref, ref.digest

        digest = self._fetch_manifest(ref).digest
        pinned = f"{ref.name}@{digest}"
        logger.debug(f"Resolved {image_ref} to {pinned}")
        return pinned, digest

    def get_image_digest(self, image_ref: str) -> str:
        """Digest of the image as currently published in the registry."""
        return self._fetch_manifest(self._parse(image_ref)).digest

    def find_tags_for_digest(self,
                             image_ref: str,
                             digest: str,
                             token: Optional[CancelToken] = None) -> List[str]:
        """
        Find all tags in the repository that point at ``digest``.

        Tags whose manifest cannot be fetched are skipped. The result lists
        version-like tags first, each group sorted lexicographically.

        Raises:
            RegistryError: if tags cannot be listed or the repository has
                more than ``max_tags`` tags.
        """
        ref = self._parse(image_ref)
        try:
            tags = self.transport.list_tags(ref)
        except IBoshError as e:
            raise RegistryError(f"listing tags: {e}") from e

        if len(tags) > self.max_tags:
            raise RegistryError(
                f"repository {ref.name} has {len(tags)} tags, "
                f"more than the limit of {self.max_tags}"
            )

        matching = []
        for tag in tags:
            if token is not None:
                token.raise_if_cancelled()
            try:
                manifest = self.transport.fetch_manifest(ref.with_tag(tag))
            except IBoshError as e:
                logger.debug(f"Failed to get manifest for tag {tag}: {e}")
                continue
            if manifest.digest == digest:
                matching.append(tag)

        result = sort_tags(matching)
        logger.debug(f"Found {len(result)} tags for digest {digest}: {result}")
        return result

    def get_image_metadata(self, image_ref: str) -> ImageMetadata:
        """
        Resolve an image to its concrete metadata.

        When the tag is 'latest' it is replaced by the first version-like tag
        sharing the same digest, if any.
        """
        ref = self._parse(image_ref)
        digest = ref.digest or self._fetch_manifest(ref).digest
        tag = ref.tag or ImageReference.DEFAULT_TAG

        if tag == ImageReference.DEFAULT_TAG:
            try:
                tags = self.find_tags_for_digest(image_ref, digest)
            except RegistryError as e:
                logger.debug(f"Could not list tags for {ref.name}, keeping latest: {e}")
                tags = []
            version_tags = [t for t in tags if is_version_tag(t)]
            if version_tags:
                tag = version_tags[0]

        return ImageMetadata(
            registry=ref.registry,
            repository=ref.repository,
            tag=tag,
            digest=digest,
            full_reference=f"{ref.name}:{tag}",
        )

    def _fetch_manifest(self, ref: ImageReference) -> ManifestResponse:
        try:
            return self.transport.fetch_manifest(ref)
        except NotFoundError:
            raise
        except IBoshError as e:
            raise RegistryError(f"getting manifest: {e}") from e

    def _image_manifest(self, ref: ImageReference) -> ManifestResponse:
        """Fetch the single-platform manifest for ``ref``, resolving indexes."""
        manifest = self._fetch_manifest(ref)
        if manifest.is_index:
            manifest = self._select_platform_manifest(ref, manifest.content)
        return manifest

    def _select_platform_manifest(self,
                                  ref: ImageReference,
                                  index: Dict[str, Any]) -> ManifestResponse:
        """Select the manifest for the current platform from an index."""
        entries = index.get("manifests", [])
        if not entries:
            raise RegistryError(f"no manifests in index for {ref.full_name}")

        os_name, arch = _current_platform()
        for entry in entries:
            platform_info = entry.get("platform", {})
            if (platform_info.get("os") == os_name
                    and platform_info.get("architecture") == arch):
                return self._fetch_manifest(ref.with_digest(entry["digest"]))

        # Fall back to first manifest
        return self._fetch_manifest(ref.with_digest(entries[0]["digest"]))

    def extract_file_from_image(self,
                                image_ref: str,
                                file_path: str,
                                token: Optional[CancelToken] = None) -> bytes:
        """
        Extract a single file from an image without pulling it.

        Layers are scanned from the top of the image down, one blob at a
        time, so the first match is the version visible in the image
        filesystem.

        Args:
            image_ref: Image reference
            file_path: Absolute path of the file inside the image
            token: Optional cancellation token, checked between layers

        Returns:
            File content

        Raises:
            ExtractionNotFoundError: if no layer contains the file.
        """
        ref = self._parse(image_ref)
        target = normalize_entry_name(file_path)
        manifest = self._image_manifest(ref)
        layers = manifest.layers
        logger.debug(f"Scanning {len(layers)} layers of {image_ref} for {target}")

        for index in range(len(layers) - 1, -1, -1):
            if token is not None:
                token.raise_if_cancelled()
            digest = layers[index].get("digest", "")
            try:
                blob = self.transport.open_blob(ref, digest)
            except IBoshError as e:
                logger.debug(f"Skipping layer {index} ({digest}): {e}")
                continue

            with blob:
                content = self._scan_layer(blob, target, digest)
            if content is not None:
                logger.info(f"Found {target} in layer {index} of {image_ref}")
                return content

        raise ExtractionNotFoundError(file_path, image_ref)

    def _scan_layer(self, blob, target: str, digest: str) -> Optional[bytes]:
        """
        Scan one layer blob for ``target``. Gzip is detected from the magic
        bytes; anything else is read as a plain tar stream.
        """
        stream = io.BufferedReader(blob)
        try:
            if stream.peek(2)[:2] == GZIP_MAGIC:
                with gzip.GzipFile(fileobj=stream, mode="rb") as decompressed:
                    return self._scan_tar(decompressed, target)
            return self._scan_tar(stream, target)
        except (tarfile.TarError, gzip.BadGzipFile, zlib.error, EOFError) as e:
            logger.debug(f"Stopped scanning layer {digest}: {e}")
            return None
        except (URLLibHTTPError, requests.RequestException, OSError) as e:
            raise RegistryError(f"reading blob {digest}: {e}") from e
        finally:
            stream.close()

    @staticmethod
    def _scan_tar(fileobj, target: str) -> Optional[bytes]:
        with tarfile.open(fileobj=fileobj, mode="r|") as tar:
            for member in tar:
                if not member.isfile():
                    continue
                if normalize_entry_name(member.name) != target:
                    continue
                extracted = tar.extractfile(member)
                if extracted is None:
                    continue
                return extracted.read()
        return None

    def write_file_from_image(self,
                              image_ref: str,
                              file_path: str,
                              output_path: str,
                              token: Optional[CancelToken] = None) -> Path:
        """Extract a file from an image and write it to ``output_path``."""
        content = self.extract_file_from_image(image_ref, file_path, token=token)
        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(content)
        return output

    def get_manifest_diff(self,
                          current: ImageInfo,
                          new: ImageInfo,
                          token: Optional[CancelToken] = None) -> str:
        """
        Compare the director manifests of two images.

        The image ref and digest are prepended to each manifest so identity
        changes show up in the report.

        Returns:
            Human-readable report, or an empty string if nothing differs.
        """
        logger.info(f"Comparing manifests between {current.ref} and {new.ref}")
        try:
            current_manifest = self.extract_file_from_image(current.ref, MANIFEST_PATH, token)
        except IBoshError as e:
            raise RegistryError(f"failed to extract manifest from current image: {e}") from e
        try:
            new_manifest = self.extract_file_from_image(new.ref, MANIFEST_PATH, token)
        except IBoshError as e:
            raise RegistryError(f"failed to extract manifest from new image: {e}") from e

        current_docs = self._load_documents(_with_image_header(current_manifest, current), "current")
        new_docs = self._load_documents(_with_image_header(new_manifest, new), "new")

        differences = compare_documents(current_docs, new_docs)
        if not differences:
            logger.debug("No differences found in manifests")
            return ""
        return render_report(differences)

    @staticmethod
    def _load_documents(content: bytes, label: str) -> List[Any]:
        try:
            return list(yaml.safe_load_all(content))
        except yaml.YAMLError as e:
            raise RegistryError(f"failed to parse {label} manifest: {e}") from e


def _with_image_header(manifest: bytes, image: ImageInfo) -> bytes:
    header = f"image:\n  ref: {image.ref}\n  digest: {image.digest}\n"
    return header.encode() + manifest
