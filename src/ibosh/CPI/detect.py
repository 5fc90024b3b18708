"""
Detect which CPI a running director was deployed with.
"""
import json
import subprocess
from enum import Enum
from typing import Mapping, Optional, Union

from ..errors import DirectorError


class CPIType(str, Enum):
    DOCKER = "docker"
    INCUS = "incus"
    UNKNOWN = "unknown"


_CPI_NAMES = {
    "docker_cpi": CPIType.DOCKER,
    "lxd_cpi": CPIType.INCUS,
}


def parse_cpi_type(output: Union[str, bytes]) -> CPIType:
    """
    Parse the CPI type from ``bosh env --json`` output.

    Raises:
        DirectorError: if the output is not JSON, has no CPI row, or names
            an unknown CPI.
    """
    try:
        response = json.loads(output)
    except ValueError as e:
        raise DirectorError(f"parsing bosh env output: {e}") from e

    tables = response.get("Tables") or []
    rows = tables[0].get("Rows") if tables else None
    if not rows:
        raise DirectorError("no CPI information in bosh env output")

    cpi_name = rows[0].get("cpi", "")
    if cpi_name not in _CPI_NAMES:
        raise DirectorError(f"unknown CPI type: {cpi_name}")
    return _CPI_NAMES[cpi_name]


def detect_cpi_type(env: Optional[Mapping[str, str]] = None, timeout: float = 10.0) -> CPIType:
    """Run ``bosh env --json`` against the targeted director and parse it."""
    try:
        result = subprocess.run(
            ["bosh", "env", "--json"],
            capture_output=True,
            text=True,
            env=dict(env) if env is not None else None,
            check=True,
            timeout=timeout,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise DirectorError(f"running bosh env: {e}") from e
    return parse_cpi_type(result.stdout)
