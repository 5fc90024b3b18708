"""
Line-oriented log writers.
"""
import codecs
from typing import Iterable, Optional, Union

from .parser import format_log_line, parse_log_line


class LineSplitter:
    """
    Accumulates written chunks and yields complete lines.
    A trailing partial line is carried over to the next write.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""

    def feed(self, data: Union[str, bytes]):
        if isinstance(data, bytes):
            data = self._decoder.decode(data)
        self._partial += data
        *lines, self._partial = self._partial.split("\n")
        return lines

    def reset(self) -> None:
        self._decoder.reset()
        self._partial = ""

    @property
    def pending(self) -> str:
        return self._partial


class LogWriter:
    """
    Writer that parses, filters and formats log lines before passing them on.

    Args:
        out: Anything with a ``write(str)`` method.
        colorize: Emit ANSI colors in formatted lines.
        message_only: Emit only the message body; lines without one are skipped.
        components: Allow-list of components. Lines without a component are
            never filtered.
    """

    def __init__(self,
                 out,
                 colorize: bool = False,
                 message_only: bool = False,
                 components: Optional[Iterable[str]] = None):
        self.out = out
        self.colorize = colorize
        self.message_only = message_only
        self.components = set(components) if components else None
        self._splitter = LineSplitter()

    def write(self, data: Union[str, bytes]) -> int:
        for raw in self._splitter.feed(data):
            line = parse_log_line(raw)

            if self.components is not None and line.component:
                if line.component not in self.components:
                    continue

            if self.message_only:
                if not line.message:
                    continue
                self.out.write(line.message + "\n")
            else:
                self.out.write(format_log_line(line, self.colorize) + "\n")
        return len(data)

    def flush(self) -> None:
        flush = getattr(self.out, "flush", None)
        if flush is not None:
            flush()


class MultiWriter:
    """Duplicate every write to several writers."""

    def __init__(self, *writers):
        self.writers = list(writers)

    def write(self, data: Union[str, bytes]) -> int:
        for writer in self.writers:
            writer.write(data)
        return len(data)

    def flush(self) -> None:
        for writer in self.writers:
            flush = getattr(writer, "flush", None)
            if flush is not None:
                flush()
