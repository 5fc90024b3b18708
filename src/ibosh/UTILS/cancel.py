"""
Cancellation tokens shared between the reconciler and its log follower thread.
"""
import threading
from typing import List, Optional

from ..errors import OperationCancelled


class CancelToken:
    """
    A cancellable signal, optionally derived from a parent token.

    Cancelling a token cancels every token derived from it; cancelling a
    child leaves the parent untouched.
    """

    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self._children: List["CancelToken"] = []
        self._lock = threading.Lock()
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "CancelToken") -> None:
        with self._lock:
            self._children.append(child)
            cancelled = self._event.is_set()
        if cancelled:
            child.cancel()

    def child(self) -> "CancelToken":
        """Derive a token that is cancelled together with this one."""
        return CancelToken(parent=self)

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout; returns True if cancelled."""
        return self._event.wait(timeout)

    def sleep(self, seconds: float) -> None:
        """
        Sleep for ``seconds`` unless cancelled first.

        Raises:
            OperationCancelled: if the token is cancelled before or during the sleep.
        """
        if self._event.wait(seconds):
            raise OperationCancelled("operation cancelled")
