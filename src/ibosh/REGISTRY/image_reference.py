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
Image reference parsing and handling.
Parses OCI image references like 'ghcr.io/rkoster/instant-bosh:latest' or
'ghcr.io/rkoster/instant-bosh@sha256:...'.
"""

import re
from typing import Iterable, List, Optional
from dataclasses import dataclass, replace

VERSION_TAG_PATTERN = re.compile(r"^v?\d+(\.\d+)*(-[A-Za-z0-9.]+)?$")


def is_version_tag(tag: str) -> bool:
    """
    Check whether a tag looks like a version number.
    Matches: 1.165, 1.165.0, v1.165, 1.165-alpha, 1.0.0-rc1
    """
    return bool(VERSION_TAG_PATTERN.match(tag))


def sort_tags(tags: Iterable[str]) -> List[str]:
    """Sort tags with version-like tags first, each group lexicographically."""
    return sorted(tags, key=lambda tag: (not is_version_tag(tag), tag))


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed OCI image reference.

    A reference with a digest is pinned: it names immutable content and is
    never re-resolved against the registry.

    Examples:
        - nginx -> docker.io/library/nginx:latest
        - ghcr.io/rkoster/instant-bosh -> ghcr.io/rkoster/instant-bosh:latest
        - ghcr.io/rkoster/instant-bosh@sha256:abc... -> pinned
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Image reference string (e.g., 'ghcr.io/org/image:1.0')

        Returns:
            Parsed ImageReference object.
        """
        if not reference or not reference.strip():
            raise ValueError("Empty image reference")
        reference = reference.strip()

        # Handle digest format (image@sha256:...)
        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)
            if ":" not in digest:
                raise ValueError(f"Invalid digest in image reference: {digest}")

        # Handle tag format (image:tag); a colon followed by a slash is a registry port
        tag = None
        last_colon = reference.rfind(":")
        if last_colon != -1 and "/" not in reference[last_colon + 1:]:
            tag = reference[last_colon + 1:]
            reference = reference[:last_colon]
            if not tag:
                raise ValueError("Empty tag in image reference")

        parts = reference.split("/")
        if not all(parts):
            raise ValueError(f"Invalid image reference: {reference}")

        if len(parts) == 1:
            registry = cls.DEFAULT_REGISTRY
            repository = f"library/{parts[0]}"
        else:
            first_part = parts[0]
            if "." in first_part or ":" in first_part or first_part == "localhost":
                registry = first_part
                repository = "/".join(parts[1:])
            else:
                registry = cls.DEFAULT_REGISTRY
                repository = reference

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    @property
    def pinned(self) -> bool:
        """True when the reference carries a digest."""
        return bool(self.digest)

    @property
    def name(self) -> str:
        """Registry and repository without tag or digest."""
        return f"{self.registry}/{self.repository}"

    @property
    def full_name(self) -> str:
        """Get full image name with registry."""
        if self.digest:
            return f"{self.name}@{self.digest}"
        if self.tag:
            return f"{self.name}:{self.tag}"
        return self.name

    @property
    def short_name(self) -> str:
        """Get short image name (without registry if default)."""
        if self.registry == self.DEFAULT_REGISTRY:
            repo = self.repository
            if repo.startswith("library/"):
                repo = repo[8:]
            if self.digest:
                return f"{repo}@{self.digest}"
            if self.tag:
                return f"{repo}:{self.tag}"
            return repo
        return self.full_name

    @property
    def registry_host(self) -> str:
        """Host name to use for registry API calls."""
        if self.registry == self.DEFAULT_REGISTRY:
            return "registry-1.docker.io"
        return self.registry

    def with_tag(self, tag: str) -> "ImageReference":
        """A copy pointing at another tag, without digest."""
        return replace(self, tag=tag, digest=None)

    def with_digest(self, digest: str) -> "ImageReference":
        """A pinned copy of this reference."""
        return replace(self, digest=digest)

    def __str__(self) -> str:
        return self.full_name

    def __repr__(self) -> str:
        return f"ImageReference({self.full_name})"
