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
Docker backend.
Runs the director in a privileged container on a dedicated bridge network,
talking to the engine through the docker SDK.
"""

import ipaddress
import logging
import shutil
import subprocess
import threading
from typing import List, Optional, Sequence

import docker
import requests
from docker.errors import DockerException, NotFound

from ..errors import BackendError, ExecError, OperationCancelled
from ..LOGS.parser import parse_timestamp
from ..MODELS.container import ContainerInfo
from ..MODELS.image import ImageInfo
from ..MODELS.settings import DEFAULT_IMAGE
from ..REGISTRY.image_reference import ImageReference
from ..REGISTRY.image_resolver import ImageResolver
from ..UTILS.cancel import CancelToken
from .base import CPI, ImageManaged, LogTail
from .readiness import director_info_url, wait_for_director
from .templates import DOCKER_CLOUD_CONFIG, render_cloud_config

logger = logging.getLogger(__name__)

NETWORK_NAME = "instant-bosh"
VOLUME_STORE = "instant-bosh-store"
VOLUME_DATA = "instant-bosh-data"
NETWORK_SUBNET = ipaddress.ip_network("10.245.0.0/16")
NETWORK_GATEWAY = NETWORK_SUBNET[1]
CONTAINER_IP = NETWORK_SUBNET[10]
DOCKER_SOCKET = "/var/run/docker.sock"
STOP_TIMEOUT = 10

# The SDK raises its own errors for API responses and lets requests errors
# through when the daemon socket is unreachable.
DOCKER_ERRORS = (DockerException, requests.RequestException)


def discover_docker_host() -> Optional[str]:
    """
    Docker host of the current docker CLI context, if the CLI is installed.
    """
    docker_path = shutil.which("docker")
    if not docker_path:
        return None
    try:
        result = subprocess.run(
            [docker_path, "context", "inspect", "-f", "{{.Endpoints.docker.Host}}"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug(f"docker context inspect failed: {e}")
        return None
    return result.stdout.strip() or None


def create_docker_client() -> docker.DockerClient:
    host = discover_docker_host()
    try:
        if host:
            logger.debug(f"Using docker host {host} from current context")
            return docker.DockerClient(base_url=host)
        return docker.from_env()
    except DockerException as e:
        raise BackendError(f"creating docker client: {e}") from e


def _digest_from_repo_digests(repo_digests: Sequence[str], repository: str) -> str:
    """Pick the digest recorded for ``repository``, else the first one."""
    for entry in repo_digests:
        name, _, digest = entry.partition("@")
        if name == repository and digest:
            return digest
    for entry in repo_digests:
        _, _, digest = entry.partition("@")
        if digest:
            return digest
    return ""


class DockerCPI(CPI, ImageManaged):
    """
    CPI backend for a local or remote Docker engine.

    The director port and jumpbox SSH are published on the engine host, so
    the director is reached through 127.0.0.1 and an SSH tunnel.
    """

    container_ip = str(CONTAINER_IP)
    print_env_prefix = "ibosh --cpi docker"

    def __init__(self,
                 image: str = DEFAULT_IMAGE,
                 client: Optional[docker.DockerClient] = None,
                 resolver: Optional[ImageResolver] = None):
        """
        Args:
            image: Image reference for new containers.
            client: Docker SDK client. Discovered from the docker context when omitted.
            resolver: ImageResolver used for registry digest checks.
        """
        super().__init__(image)
        self._client = client
        self._resolver = resolver

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = create_docker_client()
        return self._client

    @property
    def resolver(self) -> ImageResolver:
        if self._resolver is None:
            self._resolver = ImageResolver()
        return self._resolver

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _get_container(self):
        try:
            return self.client.containers.get(self.container_name)
        except NotFound:
            return None
        except DOCKER_ERRORS as e:
            raise BackendError(f"inspecting container: {e}") from e

    # Lifecycle

    def start(self, token: Optional[CancelToken] = None) -> None:
        api = self.client.api
        image = self.image_for_create
        logger.debug(f"Creating container {self.container_name} from {image}")

        host_config = api.create_host_config(
            privileged=True,
            auto_remove=True,
            network_mode=NETWORK_NAME,
            port_bindings={
                25555: ("0.0.0.0", self.director_port),
                22: ("0.0.0.0", self.ssh_port),
            },
            binds=[
                f"{DOCKER_SOCKET}:{DOCKER_SOCKET}",
                f"{VOLUME_STORE}:/var/vcap/store",
                f"{VOLUME_DATA}:/var/vcap/data",
            ],
        )
        networking_config = api.create_networking_config({
            NETWORK_NAME: api.create_endpoint_config(ipv4_address=self.container_ip),
        })
        command = [
            "-v", f"internal_ip={self.container_ip}",
            "-v", f"internal_cidr={NETWORK_SUBNET}",
            "-v", f"internal_gw={NETWORK_GATEWAY}",
            "-v", "director_name=instant-bosh",
            "-v", f"network={NETWORK_NAME}",
        ]

        try:
            created = api.create_container(
                image,
                command=command,
                name=self.container_name,
                ports=[25555, 22],
                host_config=host_config,
                networking_config=networking_config,
            )
        except DOCKER_ERRORS as e:
            raise BackendError(f"creating container: {e}") from e

        logger.debug(f"Starting container {created['Id']}")
        try:
            api.start(created["Id"])
        except DOCKER_ERRORS as e:
            raise BackendError(f"starting container: {e}") from e

    def stop(self, token: Optional[CancelToken] = None) -> None:
        container = self._get_container()
        if container is None:
            return
        logger.debug(f"Stopping container {self.container_name}")
        try:
            container.stop(timeout=STOP_TIMEOUT)
        except NotFound:
            return
        except DOCKER_ERRORS as e:
            raise BackendError(f"stopping container: {e}") from e

    def remove_container(self, token: Optional[CancelToken] = None) -> None:
        container = self._get_container()
        if container is None:
            return
        logger.debug(f"Removing container {self.container_name}")
        try:
            container.remove(force=True)
        except NotFound:
            return
        except DOCKER_ERRORS as e:
            raise BackendError(f"removing container: {e}") from e

    def destroy(self, token: Optional[CancelToken] = None) -> None:
        self.remove_container(token)
        for name in (VOLUME_STORE, VOLUME_DATA):
            self._remove_volume(name)
        self._remove_network()

    def _remove_volume(self, name: str) -> None:
        logger.debug(f"Removing volume {name}")
        try:
            self.client.volumes.get(name).remove(force=True)
        except NotFound:
            return
        except DOCKER_ERRORS as e:
            raise BackendError(f"removing volume {name}: {e}") from e

    def _remove_network(self) -> None:
        logger.debug(f"Removing network {NETWORK_NAME}")
        try:
            self.client.networks.get(NETWORK_NAME).remove()
        except NotFound:
            return
        except DOCKER_ERRORS as e:
            raise BackendError(f"removing network: {e}") from e

    # Status

    def is_running(self, token: Optional[CancelToken] = None) -> bool:
        container = self._get_container()
        return container is not None and container.status == "running"

    def exists(self, token: Optional[CancelToken] = None) -> bool:
        return self._get_container() is not None

    def _volume_exists(self, name: str) -> bool:
        try:
            self.client.volumes.get(name)
            return True
        except NotFound:
            return False
        except DOCKER_ERRORS as e:
            raise BackendError(f"checking volume {name}: {e}") from e

    def _network_exists(self) -> bool:
        try:
            self.client.networks.get(NETWORK_NAME)
            return True
        except NotFound:
            return False
        except DOCKER_ERRORS as e:
            raise BackendError(f"checking network: {e}") from e

    def resources_exist(self, token: Optional[CancelToken] = None) -> bool:
        return (self._volume_exists(VOLUME_STORE)
                or self._volume_exists(VOLUME_DATA)
                or self._network_exists())

    # Commands

    def exec_command(self,
                     container: str,
                     command: Sequence[str],
                     token: Optional[CancelToken] = None) -> str:
        logger.debug(f"Executing command in container {container}: {list(command)}")
        try:
            target = self.client.containers.get(container)
            result = target.exec_run(list(command), demux=True)
        except NotFound as e:
            raise BackendError(f"container {container} not found") from e
        except DOCKER_ERRORS as e:
            raise BackendError(f"executing command: {e}") from e

        stdout, stderr = result.output or (None, None)
        stdout = (stdout or b"").decode("utf-8", errors="replace")
        stderr = (stderr or b"").decode("utf-8", errors="replace")
        if stderr:
            logger.debug(f"Exec stderr: {stderr}")
        if result.exit_code:
            raise ExecError(
                f"command {list(command)} failed in {container}",
                exit_code=result.exit_code,
                stdout=stdout,
                stderr=stderr,
            )
        return stdout

    # Logs

    def get_logs(self, tail: LogTail = "all", token: Optional[CancelToken] = None) -> str:
        container = self._get_container()
        if container is None:
            raise BackendError(f"getting container logs: container {self.container_name} not found")
        try:
            output = container.logs(stdout=True, stderr=True, tail=_tail_arg(tail))
        except DOCKER_ERRORS as e:
            raise BackendError(f"getting container logs: {e}") from e
        return output.decode("utf-8", errors="replace")

    def follow_logs(self,
                    stdout,
                    stderr,
                    token: Optional[CancelToken] = None,
                    follow: bool = True,
                    tail: LogTail = "all") -> None:
        token = token or CancelToken()
        container = self._get_container()
        if container is None:
            raise BackendError(f"getting container logs: container {self.container_name} not found")

        try:
            stream = container.logs(stdout=True, stderr=True, stream=True,
                                    follow=follow, tail=_tail_arg(tail))
        except DOCKER_ERRORS as e:
            raise BackendError(f"getting container logs: {e}") from e

        finished = threading.Event()

        def close_on_cancel():
            while not finished.is_set():
                if token.wait(0.2):
                    stream.close()
                    return

        watcher = threading.Thread(target=close_on_cancel, daemon=True)
        watcher.start()
        try:
            for chunk in stream:
                if token.cancelled:
                    break
                stdout.write(chunk)
        except (OSError, ValueError, AttributeError,
                requests.RequestException, DockerException) as e:
            if not token.cancelled:
                raise BackendError(f"streaming logs: {e}") from e
        finally:
            finished.set()
            stream.close()

        if token.cancelled:
            raise OperationCancelled("log streaming cancelled")

    # Readiness

    def wait_for_ready(self, max_wait: float, token: Optional[CancelToken] = None) -> None:
        wait_for_director(
            director_info_url("localhost", self.director_port),
            is_running=lambda: self.is_running(token),
            max_wait=max_wait,
            token=token,
            get_logs=self._last_logs,
        )

    def _last_logs(self) -> str:
        try:
            return self.get_logs(tail=100)
        except BackendError as e:
            logger.debug(f"Could not read container logs: {e}")
            return ""

    # Resources

    def ensure_prerequisites(self, token: Optional[CancelToken] = None) -> None:
        for name in (VOLUME_STORE, VOLUME_DATA):
            if not self._volume_exists(name):
                logger.debug(f"Creating volume {name}")
                try:
                    self.client.volumes.create(name=name)
                except DOCKER_ERRORS as e:
                    raise BackendError(f"creating volume {name}: {e}") from e

        if not self._network_exists():
            logger.debug(f"Creating network {NETWORK_NAME}")
            ipam = docker.types.IPAMConfig(pool_configs=[
                docker.types.IPAMPool(subnet=str(NETWORK_SUBNET), gateway=str(NETWORK_GATEWAY)),
            ])
            try:
                self.client.networks.create(NETWORK_NAME, driver="bridge", ipam=ipam)
            except DOCKER_ERRORS as e:
                raise BackendError(f"creating network: {e}") from e

    def get_containers_on_network(self, token: Optional[CancelToken] = None) -> List[ContainerInfo]:
        try:
            network = self.client.networks.get(NETWORK_NAME)
            containers = network.containers
        except NotFound:
            return []
        except DOCKER_ERRORS as e:
            raise BackendError(f"inspecting network: {e}") from e

        return [
            ContainerInfo(
                name=container.name,
                created=parse_timestamp(container.attrs.get("Created", "")),
                network=NETWORK_NAME,
            )
            for container in containers
        ]

    # Images

    def get_current_image_info(self, token: Optional[CancelToken] = None) -> ImageInfo:
        container = self._get_container()
        if container is None:
            raise BackendError(f"container {self.container_name} not found")

        ref = container.attrs.get("Config", {}).get("Image", "")
        try:
            image = self.client.images.get(container.attrs.get("Image", ref))
        except NotFound:
            return ImageInfo(ref=ref)
        except DOCKER_ERRORS as e:
            raise BackendError(f"inspecting image: {e}") from e

        repository = ImageReference.parse(ref).name if ref else ""
        digest = _digest_from_repo_digests(image.attrs.get("RepoDigests", []), repository)
        return ImageInfo(ref=ref, digest=digest)

    def image_exists(self, token: Optional[CancelToken] = None) -> bool:
        try:
            self.client.images.get(self.image_for_create)
            return True
        except NotFound:
            return False
        except DOCKER_ERRORS as e:
            raise BackendError(f"inspecting image: {e}") from e

    def pull_image(self, token: Optional[CancelToken] = None) -> None:
        # Pull by tag so the local tag moves too; the pinned digest resolves from it
        ref = ImageReference.parse(self.target_image_ref)
        logger.info(f"Pulling image {ref.full_name}...")
        try:
            last_status = None
            for progress in self.client.api.pull(ref.name, tag=ref.digest or ref.tag,
                                                 stream=True, decode=True):
                if token is not None:
                    token.raise_if_cancelled()
                if "error" in progress:
                    raise BackendError(f"pulling image: {progress['error']}")
                status = progress.get("status")
                if status != last_status and not progress.get("id"):
                    logger.info(status)
                    last_status = status
        except DOCKER_ERRORS as e:
            raise BackendError(f"pulling image: {e}") from e
        logger.info("Image pulled successfully")

    def check_for_image_update(self, token: Optional[CancelToken] = None) -> bool:
        image_ref = self.target_image_ref
        logger.debug(f"Checking for image updates for {image_ref}")
        try:
            local = self.client.images.get(image_ref)
        except NotFound:
            return True
        except DOCKER_ERRORS as e:
            raise BackendError(f"inspecting local image: {e}") from e

        ref = ImageReference.parse(image_ref)
        local_digest = _digest_from_repo_digests(local.attrs.get("RepoDigests", []), ref.name)
        if not local_digest:
            logger.debug("Local image has no repo digest, needs update check via pull")
            return True

        remote_digest = self.resolver.get_image_digest(image_ref)
        if local_digest != remote_digest:
            logger.info(f"New image version available (local: {local_digest[:19]}, "
                        f"remote: {remote_digest[:19]})")
            return True
        logger.debug(f"Image is up to date (digest: {local_digest[:19]})")
        return False

    # Configuration

    @property
    def host_address(self) -> str:
        return "127.0.0.1"

    def cloud_config_bytes(self) -> bytes:
        return render_cloud_config(
            DOCKER_CLOUD_CONFIG,
            subnet=NETWORK_SUBNET,
            gateway=NETWORK_GATEWAY,
            reserved=f"{NETWORK_SUBNET[2]}-{CONTAINER_IP}",
            static=NETWORK_SUBNET[34],
            network_name=NETWORK_NAME,
            workers=5,
        )

    def has_direct_network_access(self) -> bool:
        return False


def _tail_arg(tail: LogTail):
    if isinstance(tail, int):
        return tail
    if tail in ("", "all"):
        return "all"
    return int(tail)
