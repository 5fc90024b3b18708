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
Container Provider Interface.
One lifecycle contract for the director container, implemented by the
Docker and Incus backends.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Union

from ..MODELS.container import ContainerInfo, ContainerState
from ..MODELS.image import ImageInfo
from ..MODELS.settings import DEFAULT_IMAGE
from ..UTILS.cancel import CancelToken

CONTAINER_NAME = "instant-bosh"
DIRECTOR_PORT = 25555
SSH_PORT = 2222

LogTail = Union[str, int]


class CPI(ABC):
    """
    Lifecycle contract for the director container.

    Idempotency of ``start``, ``stop`` and ``destroy`` is the backend's
    responsibility. Every method that talks to the runtime accepts an
    optional cancellation token.
    """

    container_name: str = CONTAINER_NAME
    container_ip: str = ""
    director_port: int = DIRECTOR_PORT
    ssh_port: int = SSH_PORT
    print_env_prefix: str = "ibosh"

    def __init__(self, image: str = DEFAULT_IMAGE):
        self._image = image
        self._resolved_image: Optional[str] = None
        self._resolved_digest: str = ""

    # Lifecycle
    @abstractmethod
    def start(self, token: Optional[CancelToken] = None) -> None:
        """Create and start the container."""

    @abstractmethod
    def stop(self, token: Optional[CancelToken] = None) -> None:
        """Stop the container."""

    @abstractmethod
    def destroy(self, token: Optional[CancelToken] = None) -> None:
        """Remove the container, its volumes and its network."""

    @abstractmethod
    def remove_container(self, token: Optional[CancelToken] = None) -> None:
        """Remove the container only, keeping volumes."""

    # Status
    @abstractmethod
    def is_running(self, token: Optional[CancelToken] = None) -> bool:
        pass

    @abstractmethod
    def exists(self, token: Optional[CancelToken] = None) -> bool:
        """True for running and stopped-but-present containers."""

    @abstractmethod
    def resources_exist(self, token: Optional[CancelToken] = None) -> bool:
        """True if any volume or network of the environment is present."""

    def observe_state(self, token: Optional[CancelToken] = None) -> ContainerState:
        if self.is_running(token):
            return ContainerState.RUNNING
        if self.exists(token):
            return ContainerState.STOPPED
        return ContainerState.ABSENT

    # Commands
    @abstractmethod
    def exec_command(self,
                     container: str,
                     command: Sequence[str],
                     token: Optional[CancelToken] = None) -> str:
        """
        Run a command inside a running container and return its stdout.

        Raises:
            ExecError: if the command exits non-zero, with exit code and stderr.
        """

    # Logs
    @abstractmethod
    def get_logs(self, tail: LogTail = "all", token: Optional[CancelToken] = None) -> str:
        pass

    @abstractmethod
    def follow_logs(self,
                    stdout,
                    stderr,
                    token: Optional[CancelToken] = None,
                    follow: bool = True,
                    tail: LogTail = "all") -> None:
        """
        Write container logs to ``stdout``/``stderr``.

        With ``follow`` the call blocks, writing new output until the token
        is cancelled or the container exits.
        """

    # Readiness
    @abstractmethod
    def wait_for_ready(self, max_wait: float, token: Optional[CancelToken] = None) -> None:
        """
        Wait for the director API to answer.

        Raises:
            ContainerExitedError: if the container stops first.
            ReadinessTimeoutError: if ``max_wait`` seconds elapse.
        """

    # Resources
    @abstractmethod
    def ensure_prerequisites(self, token: Optional[CancelToken] = None) -> None:
        """Create volumes and network if missing."""

    @abstractmethod
    def get_containers_on_network(self, token: Optional[CancelToken] = None) -> List[ContainerInfo]:
        pass

    def close(self) -> None:
        pass

    # Images
    @abstractmethod
    def get_current_image_info(self, token: Optional[CancelToken] = None) -> ImageInfo:
        """Image the existing container was created from."""

    @property
    def target_image_ref(self) -> str:
        return self._image

    def set_resolved_image(self, pinned_ref: str, digest: str) -> None:
        """Create new containers from a digest-pinned reference."""
        self._resolved_image = pinned_ref
        self._resolved_digest = digest

    @property
    def image_for_create(self) -> str:
        return self._resolved_image or self._image

    # Configuration
    @property
    @abstractmethod
    def host_address(self) -> str:
        pass

    @abstractmethod
    def cloud_config_bytes(self) -> bytes:
        pass

    @abstractmethod
    def has_direct_network_access(self) -> bool:
        """
        True if the container IP is routable from the host. Otherwise the
        director is reached through the jumpbox SSH tunnel.
        """

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ImageManaged(ABC):
    """
    Optional capability for backends that keep a local image store.
    """

    @abstractmethod
    def image_exists(self, token: Optional[CancelToken] = None) -> bool:
        pass

    @abstractmethod
    def pull_image(self, token: Optional[CancelToken] = None) -> None:
        pass

    @abstractmethod
    def check_for_image_update(self, token: Optional[CancelToken] = None) -> bool:
        """
        True if the local image is missing, has no registry digest, or its
        digest differs from the registry's.
        """
