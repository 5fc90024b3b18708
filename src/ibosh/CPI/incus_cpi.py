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
Incus backend.
Runs the director as a system container created straight from the OCI
image, driving the incus CLI so existing remotes and certificates are reused.
"""

import ipaddress
import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from ..errors import BackendError, ConfigError, ExecError
from ..LOGS.parser import parse_timestamp
from ..MODELS.container import ContainerInfo
from ..MODELS.image import ImageInfo
from ..MODELS.settings import DEFAULT_IMAGE
from ..REGISTRY.image_reference import ImageReference
from ..UTILS.cancel import CancelToken
from .base import CPI, LogTail
from .readiness import director_info_url, wait_for_director
from .templates import INCUS_CLOUD_CONFIG, render_cloud_config

logger = logging.getLogger(__name__)

NETWORK_NAME = "ibosh-net"
NETWORK_SUBNET = ipaddress.ip_network("10.246.0.0/16")
NETWORK_GATEWAY = NETWORK_SUBNET[1]
CONTAINER_IP = NETWORK_SUBNET[10]
VOLUME_STORE = "instant-bosh-store"
VOLUME_DATA = "instant-bosh-data"
DEFAULT_PROJECT = "default"
DEFAULT_PROFILE = "default"
DEFAULT_STORAGE_POOL = "default"
LOG_POLL_INTERVAL = 1.0
STOP_TIMEOUT = 30

IMAGE_REF_KEY = "user.ibosh.image"
IMAGE_DIGEST_KEY = "user.ibosh.digest"


def incus_config_dir() -> Path:
    """Directory holding the incus CLI config and client certificate."""
    configured = os.environ.get("INCUS_CONF")
    if configured:
        return Path(configured)
    return Path.home() / ".config" / "incus"


class IncusCPI(CPI):
    """
    CPI backend for a local or remote Incus server.

    The container sits on a routed bridge network, so its IP is reachable
    directly and no jumpbox tunnel is needed.
    """

    container_ip = str(CONTAINER_IP)
    print_env_prefix = "ibosh --cpi incus"

    def __init__(self,
                 image: str = DEFAULT_IMAGE,
                 remote: Optional[str] = None,
                 project: str = DEFAULT_PROJECT,
                 network: str = NETWORK_NAME,
                 storage_pool: str = DEFAULT_STORAGE_POOL,
                 binary: str = "incus"):
        """
        Args:
            image: OCI image reference for new containers.
            remote: Incus remote name or URL. Defaults to the CLI default remote.
            project: Incus project.
            network: Bridge network name.
            storage_pool: Storage pool for the root disk and volumes.
            binary: incus CLI executable.
        """
        super().__init__(image)
        self._remote = remote
        self.project = project or DEFAULT_PROJECT
        self.network_name = network or NETWORK_NAME
        self.storage_pool = storage_pool or DEFAULT_STORAGE_POOL
        self.binary = binary
        self._remotes: Optional[Dict[str, Dict[str, Any]]] = None

    # CLI plumbing

    def _run(self,
             args: Sequence[str],
             check: bool = True,
             project: bool = True) -> subprocess.CompletedProcess:
        cmd = [self.binary]
        if project:
            cmd += ["--project", self.project]
        cmd += list(args)
        logger.debug(f"Running {' '.join(cmd[:6])}...")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise BackendError(f"running incus: {e}") from e
        if check and result.returncode != 0:
            raise BackendError(
                f"incus {' '.join(args[:3])} failed: {result.stderr.strip() or result.stdout.strip()}"
            )
        return result

    def _json(self, args: Sequence[str], project: bool = True) -> Any:
        output = self._run(list(args) + ["--format", "json"], project=project).stdout
        try:
            return json.loads(output or "null")
        except ValueError as e:
            raise BackendError(f"parsing incus output: {e}") from e

    def remotes(self) -> Dict[str, Dict[str, Any]]:
        if self._remotes is None:
            self._remotes = self._json(["remote", "list"], project=False) or {}
        return self._remotes

    @property
    def remote(self) -> str:
        """Name of the remote in use. URLs are mapped to their remote name."""
        if self._remote is None:
            default = self._run(["remote", "get-default"], project=False).stdout.strip()
            self._remote = default or "local"
        elif self._remote.startswith(("https://", "http://")):
            for name, remote in self.remotes().items():
                if _remote_field(remote, "addr") == self._remote:
                    self._remote = name
                    break
            else:
                raise ConfigError(
                    f"no configured remote found for URL {self._remote}. "
                    f"Please add it first using 'incus remote add <name> {self._remote}'"
                )
        return self._remote

    def _target(self, name: str) -> str:
        return f"{self.remote}:{name}"

    @property
    def instance(self) -> str:
        return self._target(self.container_name)

    def _instances(self) -> List[Dict[str, Any]]:
        return self._json(["list", f"{self.remote}:"]) or []

    def _instance(self) -> Optional[Dict[str, Any]]:
        for entry in self._instances():
            if entry.get("name") == self.container_name:
                return entry
        return None

    # Lifecycle

    def start(self, token: Optional[CancelToken] = None) -> None:
        source = self._image_source()
        cert, key = self._read_client_credentials()
        logger.debug(f"Creating container {self.container_name} from {source}")

        args = ["create", source, self.instance,
                "--network", self.network_name,
                "--storage", self.storage_pool]
        for config_key, value in self._instance_config(cert, key).items():
            args += ["-c", f"{config_key}={value}"]
        self._run(args)

        for device, settings in self._devices().items():
            self._run(["config", "device", "add", self.instance, device]
                      + [f"{k}={v}" for k, v in settings.items()])

        # OCI images ship /run and a resolv.conf symlink that block container setup
        for path in ("/run", "/etc/resolv.conf"):
            result = self._run(["file", "delete", "--force", f"{self.instance}{path}"], check=False)
            if result.returncode != 0:
                logger.debug(f"Could not remove {path} (may not exist): {result.stderr.strip()}")

        logger.debug(f"Starting container {self.container_name}")
        self._run(["start", self.instance])

    def _instance_config(self, cert: str, key: str) -> Dict[str, str]:
        config = {
            "security.privileged": "true",
            "raw.lxc": "lxc.mount.auto = proc:rw sys:rw cgroup:rw\nlxc.apparmor.profile = unconfined",
            "environment.BOB_VARS_ENV": "IBOSH_",
            "environment.BOB_OPS_FILES": "lxd-cpi.yml,director-alternative-names.yml",
            "environment.IBOSH_internal_ip": self.container_ip,
            "environment.IBOSH_internal_cidr": str(NETWORK_SUBNET),
            "environment.IBOSH_internal_gw": str(NETWORK_GATEWAY),
            "environment.IBOSH_director_name": "instant-bosh",
            "environment.IBOSH_network": self.network_name,
            "environment.IBOSH_lxd_server_url": f"https://{NETWORK_GATEWAY}:8443",
            "environment.IBOSH_lxd_server_type": "lxd",
            "environment.IBOSH_lxd_server_insecure": "true",
            "environment.IBOSH_lxd_network_name": self.network_name,
            "environment.IBOSH_lxd_profile_name": DEFAULT_PROFILE,
            "environment.IBOSH_lxd_project_name": self.project,
            "environment.IBOSH_lxd_storage_pool_name": self.storage_pool,
            "environment.IBOSH_lxd_client_cert": cert,
            "environment.IBOSH_lxd_client_key": key,
            "environment.IBOSH_director_alternative_names": json.dumps(
                [self.container_ip, "127.0.0.1", self.host_address], separators=(",", ":")
            ),
            IMAGE_REF_KEY: self.target_image_ref,
        }
        if self._resolved_digest:
            config[IMAGE_DIGEST_KEY] = self._resolved_digest
        return config

    def _devices(self) -> Dict[str, Dict[str, str]]:
        return {
            "bosh-director": {
                "type": "proxy",
                "listen": f"tcp:0.0.0.0:{self.director_port}",
                "connect": "tcp:127.0.0.1:25555",
            },
            "bosh-jumpbox": {
                "type": "proxy",
                "listen": f"tcp:0.0.0.0:{self.ssh_port}",
                "connect": "tcp:127.0.0.1:22",
            },
            "store": {
                "type": "disk",
                "pool": self.storage_pool,
                "source": VOLUME_STORE,
                "path": "/var/vcap/store",
            },
            "data": {
                "type": "disk",
                "pool": self.storage_pool,
                "source": VOLUME_DATA,
                "path": "/var/vcap/data",
            },
        }

    def _image_source(self) -> str:
        """
        Image argument for ``incus create``: ``<oci-remote>:<repository>@<digest>``
        or ``:<tag>``. An OCI remote for the registry is added when missing.
        """
        ref = ImageReference.parse(self.image_for_create)
        registry_url = f"https://{ref.registry_host}"

        oci_remote = None
        for name, remote in self.remotes().items():
            if (_remote_field(remote, "protocol") == "oci"
                    and _remote_field(remote, "addr") == registry_url):
                oci_remote = name
                logger.debug(f"Found OCI remote '{name}' for registry {ref.registry}")
                break

        if oci_remote is None:
            oci_remote = "oci-" + ref.registry.replace(".", "-")
            logger.info(f"Adding OCI remote '{oci_remote}' for registry {ref.registry}")
            self._run(["remote", "add", oci_remote, registry_url, "--protocol=oci", "--public"],
                      project=False)
            self._remotes = None

        if ref.digest:
            return f"{oci_remote}:{ref.repository}@{ref.digest}"
        return f"{oci_remote}:{ref.repository}:{ref.tag}"

    def _read_client_credentials(self):
        config_dir = incus_config_dir()
        cert_path = config_dir / "client.crt"
        key_path = config_dir / "client.key"
        try:
            return cert_path.read_text(), key_path.read_text()
        except OSError as e:
            raise ConfigError(f"reading client credentials from {config_dir}: {e}") from e

    def stop(self, token: Optional[CancelToken] = None) -> None:
        if not self.is_running(token):
            return
        logger.debug(f"Stopping container {self.container_name}")
        self._run(["stop", self.instance, "--timeout", str(STOP_TIMEOUT)])

    def remove_container(self, token: Optional[CancelToken] = None) -> None:
        if not self.exists(token):
            return
        logger.debug(f"Removing container {self.container_name}")
        self._run(["delete", self.instance, "--force"])

    def destroy(self, token: Optional[CancelToken] = None) -> None:
        self.remove_container(token)
        for name in (VOLUME_STORE, VOLUME_DATA):
            if self._volume_exists(name):
                logger.debug(f"Removing volume {name}")
                self._run(["storage", "volume", "delete", self._target(self.storage_pool), name])
        if self._network_exists():
            logger.debug(f"Removing network {self.network_name}")
            self._run(["network", "delete", self._target(self.network_name)])

    # Status

    def is_running(self, token: Optional[CancelToken] = None) -> bool:
        instance = self._instance()
        return instance is not None and instance.get("status") == "Running"

    def exists(self, token: Optional[CancelToken] = None) -> bool:
        return self._instance() is not None

    def _volume_exists(self, name: str) -> bool:
        volumes = self._json(["storage", "volume", "list", self._target(self.storage_pool)]) or []
        return any(v.get("name") == name and v.get("type") == "custom" for v in volumes)

    def _network_exists(self) -> bool:
        networks = self._json(["network", "list", f"{self.remote}:"]) or []
        return any(n.get("name") == self.network_name for n in networks)

    def resources_exist(self, token: Optional[CancelToken] = None) -> bool:
        return self._network_exists()

    # Commands

    def exec_command(self,
                     container: str,
                     command: Sequence[str],
                     token: Optional[CancelToken] = None) -> str:
        logger.debug(f"Executing command in container {container}: {list(command)}")
        result = self._run(["exec", self._target(container), "--"] + list(command), check=False)
        if result.returncode != 0:
            raise ExecError(
                f"command {list(command)} failed in {container}",
                exit_code=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result.stdout

    # Logs

    def _console_log(self) -> str:
        return self._run(["console", self.instance, "--show-log"]).stdout

    def get_logs(self, tail: LogTail = "all", token: Optional[CancelToken] = None) -> str:
        return _tail_lines(self._console_log(), tail)

    def follow_logs(self,
                    stdout,
                    stderr,
                    token: Optional[CancelToken] = None,
                    follow: bool = True,
                    tail: LogTail = "all") -> None:
        token = token or CancelToken()
        output = self._console_log()
        if not follow:
            stdout.write(_tail_lines(output, tail))
            return

        # The console log cannot be streamed; poll it and write what is new
        if str(tail) != "0":
            stdout.write(_tail_lines(output, tail))
        offset = len(output)

        while True:
            token.sleep(LOG_POLL_INTERVAL)
            output = self._console_log()
            if len(output) < offset:
                # Console log was truncated by a restart
                offset = 0
            if len(output) > offset:
                stdout.write(output[offset:])
                offset = len(output)

    # Readiness

    def wait_for_ready(self, max_wait: float, token: Optional[CancelToken] = None) -> None:
        wait_for_director(
            director_info_url(self.container_ip, self.director_port),
            is_running=lambda: self.is_running(token),
            max_wait=max_wait,
            token=token,
        )

    # Resources

    def ensure_prerequisites(self, token: Optional[CancelToken] = None) -> None:
        for name in (VOLUME_STORE, VOLUME_DATA):
            if not self._volume_exists(name):
                logger.debug(f"Creating volume {name}")
                self._run(["storage", "volume", "create", self._target(self.storage_pool), name])

        if not self._network_exists():
            logger.debug(f"Creating network {self.network_name}")
            self._run([
                "network", "create", self._target(self.network_name),
                f"ipv4.address={NETWORK_GATEWAY}/{NETWORK_SUBNET.prefixlen}",
                "ipv4.nat=true",
                "ipv6.address=none",
                "--type", "bridge",
            ])

    def get_containers_on_network(self, token: Optional[CancelToken] = None) -> List[ContainerInfo]:
        containers = []
        for entry in self._instances():
            devices = entry.get("expanded_devices") or entry.get("devices") or {}
            on_network = any(
                d.get("type") == "nic" and d.get("network") == self.network_name
                for d in devices.values()
            )
            if on_network:
                containers.append(ContainerInfo(
                    name=entry.get("name", ""),
                    created=parse_timestamp(entry.get("created_at", "")),
                    network=self.network_name,
                ))
        return containers

    # Images

    def get_current_image_info(self, token: Optional[CancelToken] = None) -> ImageInfo:
        instance = self._instance()
        if instance is None:
            raise BackendError(f"container {self.container_name} not found")
        config = instance.get("config") or {}
        return ImageInfo(ref=config.get(IMAGE_REF_KEY, ""), digest=config.get(IMAGE_DIGEST_KEY, ""))

    # Configuration

    @property
    def host_address(self) -> str:
        """Address of the Incus host where the proxy devices listen."""
        if self.remote == "local":
            return "127.0.0.1"
        remote = self.remotes().get(self.remote)
        if not remote:
            return "127.0.0.1"
        host = urlparse(_remote_field(remote, "addr")).hostname
        return host or "127.0.0.1"

    def cloud_config_bytes(self) -> bytes:
        return render_cloud_config(
            INCUS_CLOUD_CONFIG,
            subnet=NETWORK_SUBNET,
            gateway=NETWORK_GATEWAY,
            reserved=f"{NETWORK_SUBNET[1]}-{NETWORK_SUBNET[20]}",
            static=f"{NETWORK_SUBNET[21]}-{NETWORK_SUBNET[100]}",
            network_name=self.network_name,
            instance_type="c2-m4",
            disk_size=10240,
            workers=4,
        )

    def has_direct_network_access(self) -> bool:
        return True


def _remote_field(remote: Dict[str, Any], field: str) -> str:
    return remote.get(field) or remote.get(field.capitalize()) or ""


def _tail_lines(output: str, tail: LogTail) -> str:
    """Last ``tail`` lines of ``output``; everything for 'all' or invalid values."""
    if str(tail) in ("", "all"):
        return output
    try:
        count = int(tail)
    except ValueError:
        return output
    if count <= 0:
        return ""
    lines = output.splitlines(keepends=True)
    return "".join(lines[-count:])
