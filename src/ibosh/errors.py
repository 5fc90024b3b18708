"""
Error classes for ibosh.

Backend, registry and director failures are wrapped in one of these types with
the failing operation named in the message; the original exception stays on
``__cause__``.

OperationCancelled is not an IBoshError on purpose: callers branch on
cancellation separately from genuine failures.
"""
from typing import Optional


class IBoshError(Exception):
    """Base exception for ibosh."""
    pass


class ConfigError(IBoshError):
    """Invalid or incomplete configuration."""
    pass


class NotFoundError(IBoshError):
    """A container, image, network or volume does not exist."""
    pass


class RegistryError(IBoshError):
    """Registry unreachable, unauthorized or returned something unusable."""
    pass


class ExtractionNotFoundError(NotFoundError):
    """
    The requested file is absent from every layer of an image.
    """

    def __init__(self, path: str, image: str):
        super().__init__(f"file {path} not found in any layer of image {image}")
        self.path = path
        self.image = image


class BackendError(IBoshError):
    """A container runtime call failed."""
    pass


class ExecError(BackendError):
    """
    A command executed inside the container failed.
    """

    def __init__(self, message: str, exit_code: Optional[int] = None, stdout: str = "", stderr: str = ""):
        if exit_code is not None:
            message = f"{message} (exit code {exit_code})"
        if stderr:
            message = f"{message}\nstderr: {stderr.strip()}"
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class ReadinessError(BackendError):
    """The director did not become ready."""
    pass


class ReadinessTimeoutError(ReadinessError):
    """The full wait budget elapsed without a successful probe."""

    def __init__(self, max_wait: float):
        super().__init__(f"timeout waiting for BOSH to start after {max_wait:g}s")
        self.max_wait = max_wait


class ContainerExitedError(ReadinessError):
    """The container stopped before the readiness probe succeeded."""

    def __init__(self, logs: str = ""):
        message = "container stopped unexpectedly"
        if logs:
            message = f"{message}. Last logs:\n{logs}"
        super().__init__(message)
        self.logs = logs


class DirectorError(IBoshError):
    """Talking to the BOSH director failed."""
    pass


class UpgradeCancelled(IBoshError):
    """The user declined a confirmation prompt."""
    pass


class OperationCancelled(Exception):
    """A blocking operation observed cancellation of its CancelToken."""
    pass
