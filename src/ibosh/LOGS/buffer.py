"""
Bounded, thread-safe buffer of raw log lines used for diagnostics.
"""
import threading
from collections import deque
from typing import List, Union

from .parser import format_log_line, parse_log_line
from .writer import LineSplitter


class LogBuffer:
    """
    Keeps the last ``capacity`` complete lines written to it.

    Only raw text is stored; formatting happens when lines are read back.
    All access goes through a lock since the log follower writes while the
    main thread reads.
    """

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._lines = deque(maxlen=capacity)
        self._splitter = LineSplitter()
        self._lock = threading.Lock()

    def write(self, data: Union[str, bytes]) -> int:
        with self._lock:
            self._lines.extend(self._splitter.feed(data))
        return len(data)

    def flush(self) -> None:
        pass

    def lines(self) -> List[str]:
        """Copy of the buffered raw lines, oldest first."""
        with self._lock:
            return list(self._lines)

    def formatted_lines(self, colorize: bool = False) -> List[str]:
        with self._lock:
            raw = list(self._lines)
        return [format_log_line(parse_log_line(line), colorize) for line in raw]

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()
            self._splitter.reset()

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)
