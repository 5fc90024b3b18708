"""
Connection details for the director and a client built on the bosh CLI.

The connection is passed explicitly to every ``bosh`` invocation; the
process environment is never modified.
"""
import logging
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Protocol

import yaml

from ..CPI.base import CPI
from ..errors import DirectorError, IBoshError

logger = logging.getLogger(__name__)

VARS_STORE_PATH = "/var/vcap/store/vars-store.yml"
DIRECTOR_CLIENT = "admin"
STEMCELL_OS_PATTERN = re.compile(r"^ubuntu-[a-z]+$")


@dataclass
class Stemcell:
    name: str
    version: str
    os: str = ""


@dataclass
class DirectorConnection:
    """
    Everything needed to talk to the director for one command.

    ``direct`` connections skip the jumpbox proxy even when ``all_proxy``
    is set.
    """
    environment: str
    client: str
    client_secret: str
    ca_cert: str
    all_proxy: str = ""
    jumpbox_key_path: str = ""
    direct: bool = False

    def env(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Environment for a single bosh subprocess."""
        env = dict(os.environ if base is None else base)
        env.pop("BOSH_ALL_PROXY", None)
        env.update({
            "BOSH_ENVIRONMENT": self.environment,
            "BOSH_CLIENT": self.client,
            "BOSH_CLIENT_SECRET": self.client_secret,
            "BOSH_CA_CERT": self.ca_cert,
        })
        if self.all_proxy and not self.direct:
            env["BOSH_ALL_PROXY"] = self.all_proxy
        return env

    def export_lines(self) -> List[str]:
        """Shell export statements, as printed by ``print-env``."""
        lines = [
            f"export BOSH_CLIENT={self.client}",
            f"export BOSH_CLIENT_SECRET={self.client_secret}",
            f"export BOSH_ENVIRONMENT={self.environment}",
            f"export BOSH_CA_CERT='{self.ca_cert}'",
        ]
        if self.all_proxy:
            lines.append(f"export BOSH_ALL_PROXY={self.all_proxy}")
        else:
            lines.append("unset BOSH_ALL_PROXY")
        return lines

    def cleanup(self) -> None:
        """Remove the temporary jumpbox key file."""
        if self.jumpbox_key_path:
            try:
                os.remove(self.jumpbox_key_path)
            except FileNotFoundError:
                pass
            self.jumpbox_key_path = ""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()


def _require(data: dict, *path: str):
    value = data
    walked = []
    for key in path:
        walked.append(key)
        if not isinstance(value, dict) or key not in value:
            raise DirectorError(f"key {'.'.join(walked)} not found in vars-store.yml")
        value = value[key]
    if not isinstance(value, str):
        raise DirectorError(f"{'.'.join(path)} is not a string")
    return value


def load_director_connection(cpi: CPI, keep_key: bool = False) -> DirectorConnection:
    """
    Read the director credentials from the running container.

    The jumpbox private key is written to a 0600 temp file referenced by
    the proxy URL. The caller owns the file: call ``cleanup()`` or use the
    connection as a context manager, unless ``keep_key`` asks for a file
    that outlives the process (``print-env``).
    """
    try:
        vars_store = cpi.exec_command(cpi.container_name, ["cat", VARS_STORE_PATH])
    except IBoshError as e:
        raise DirectorError(f"failed to read vars-store.yml: {e}") from e

    try:
        data = yaml.safe_load(vars_store) or {}
    except yaml.YAMLError as e:
        raise DirectorError(f"failed to parse vars-store.yml: {e}") from e

    password = _require(data, "admin_password")
    ca_cert = _require(data, "director_ssl", "ca")
    jumpbox_key = _require(data, "jumpbox_ssh", "private_key")

    if cpi.has_direct_network_access():
        environment = f"https://{cpi.container_ip}:{cpi.director_port}"
        return DirectorConnection(
            environment=environment,
            client=DIRECTOR_CLIENT,
            client_secret=password,
            ca_cert=ca_cert,
            direct=True,
        )

    fd, key_path = tempfile.mkstemp(prefix="jumpbox-key-")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(jumpbox_key)
        os.chmod(key_path, 0o600)
    except OSError as e:
        os.remove(key_path)
        raise DirectorError(f"failed to write jumpbox key: {e}") from e

    return DirectorConnection(
        environment=f"https://127.0.0.1:{cpi.director_port}",
        client=DIRECTOR_CLIENT,
        client_secret=password,
        ca_cert=ca_cert,
        all_proxy=f"ssh+socks5://jumpbox@{cpi.host_address}:{cpi.ssh_port}?private-key={key_path}",
        jumpbox_key_path="" if keep_key else key_path,
        direct=True,
    )


class Director(Protocol):
    def update_cloud_config(self, name: str, content: bytes) -> None: ...

    def stemcells(self) -> List[Stemcell]: ...

    def upload_stemcell(self, location: str, name: str, version: str) -> None: ...


class BoshCliDirector:
    """
    Director client that shells out to the ``bosh`` CLI.

    Calls from this process reach the director through the published
    port, so the connection is used in direct mode.
    """

    def __init__(self, connection: DirectorConnection, binary: str = "bosh"):
        self.connection = connection
        self.binary = binary

    def _run(self, args: List[str], input_data: Optional[bytes] = None) -> str:
        cmd = [self.binary, "--non-interactive"] + args
        logger.debug(f"Running {' '.join(cmd[:4])}")
        try:
            result = subprocess.run(
                cmd,
                input=input_data,
                capture_output=True,
                env=self.connection.env(),
            )
        except OSError as e:
            raise DirectorError(f"running bosh: {e}") from e
        stdout = result.stdout.decode("utf-8", errors="replace")
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise DirectorError(f"bosh {args[0]} failed: {stderr or stdout.strip()}")
        return stdout

    def update_cloud_config(self, name: str, content: bytes) -> None:
        with tempfile.NamedTemporaryFile(suffix=".yml") as f:
            f.write(content)
            f.flush()
            self._run(["update-config", "--type", "cloud", "--name", name, f.name])
        logger.debug("Cloud-config applied successfully")

    def stemcells(self) -> List[Stemcell]:
        output = self._run(["stemcells", "--json"])
        try:
            tables = yaml.safe_load(output).get("Tables") or []
        except (yaml.YAMLError, AttributeError) as e:
            raise DirectorError(f"parsing bosh stemcells output: {e}") from e

        stemcells = []
        for table in tables:
            for row in table.get("Rows") or []:
                stemcells.append(Stemcell(
                    name=row.get("name", ""),
                    version=row.get("version", "").rstrip("*"),
                    os=row.get("os", ""),
                ))
        return stemcells

    def upload_stemcell(self, location: str, name: str, version: str) -> None:
        self._run(["upload-stemcell", location, "--name", name, "--version", version])


def parse_os_from_repository(repository: str) -> str:
    """
    OS name from a stemcell image repository.
    'cloudfoundry/ubuntu-noble-stemcell' -> 'ubuntu-noble'
    """
    last = repository.split("/")[-1]
    if not last.endswith("-stemcell"):
        raise DirectorError(f"repository does not match expected format '*-stemcell': {repository}")
    os_name = last[:-len("-stemcell")]
    if not STEMCELL_OS_PATTERN.match(os_name):
        raise DirectorError(f"OS name does not match expected pattern 'ubuntu-{{series}}': {os_name}")
    return os_name


def build_stemcell_name(os_name: str) -> str:
    return f"bosh-docker-{os_name}"
