"""
Director readiness probe shared by the backends.
"""
import logging
import time
from typing import Callable, Optional

import requests
import urllib3

from ..errors import ContainerExitedError, ReadinessTimeoutError
from ..UTILS.cancel import CancelToken

logger = logging.getLogger(__name__)

POLL_INTERVAL = 2.0
REQUEST_TIMEOUT = 5.0


def director_info_url(host: str, port: int) -> str:
    return f"https://{host}:{port}/info"


def wait_for_director(url: str,
                      is_running: Callable[[], bool],
                      max_wait: float,
                      token: Optional[CancelToken] = None,
                      get_logs: Optional[Callable[[], str]] = None,
                      interval: float = POLL_INTERVAL,
                      session: Optional[requests.Session] = None) -> None:
    """
    Poll the director ``/info`` endpoint until it answers 200.

    The director uses a self-signed certificate, so TLS verification is off.

    Args:
        url: Full URL of the /info endpoint.
        is_running: Returns False once the container has stopped.
        max_wait: Seconds to wait before giving up.
        token: Cancellation token; cancellation interrupts the poll sleep.
        get_logs: Returns recent container logs, attached to exit errors.
        interval: Seconds between polls.
        session: HTTP session, mainly for tests.

    Raises:
        ContainerExitedError: as soon as the container is no longer running.
        ReadinessTimeoutError: after ``max_wait`` seconds without success.
        OperationCancelled: if the token is cancelled.
    """
    token = token or CancelToken()
    http = session or requests.Session()
    deadline = time.monotonic() + max_wait
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    logger.info(f"Waiting for BOSH to be ready at {url}")
    while time.monotonic() < deadline:
        token.raise_if_cancelled()

        if not is_running():
            logs = ""
            if get_logs is not None:
                logs = get_logs()
            raise ContainerExitedError(logs)

        try:
            response = http.get(url, verify=False, timeout=REQUEST_TIMEOUT)
            response.close()
            if response.status_code == 200:
                logger.info("BOSH director is ready")
                return
            logger.debug(f"Director answered {response.status_code}")
        except requests.RequestException as e:
            logger.debug(f"Director not reachable yet: {e}")

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        token.sleep(min(interval, remaining))

    raise ReadinessTimeoutError(max_wait)
