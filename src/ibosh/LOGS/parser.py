"""
Parsing and formatting of instant-bosh log lines.

Lines have the shape ``[component] timestamp level - message``, e.g.::

    [director/access] 2025-11-10T14:35:24.468092247Z INFO - 127.0.0.1 - "GET /info" 200

Anything else is kept verbatim and passed through unformatted.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

LOG_LINE_PATTERN = re.compile(r"^\[([^\]]+)\]\s+(\S+)\s+(\S+)\s+-\s+(.*)$")

RFC3339_PATTERN = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,9}))?([Zz]|[+-]\d{2}:\d{2})$"
)

RESET = "\033[0m"
CYAN = "\033[36m"
GRAY = "\033[90m"

LEVEL_COLORS = {
    "ERROR": ("\033[31m", "ERROR"),
    "WARN": ("\033[33m", "WARN"),
    "WARNING": ("\033[33m", "WARN"),
    "INFO": ("\033[32m", "INFO"),
    "DEBUG": ("\033[34m", "DEBUG"),
}


@dataclass
class LogLine:
    """
    A single log line. Unparsed lines only have ``raw`` set.
    """
    raw: str
    component: str = ""
    timestamp: Optional[datetime] = None
    level: str = ""
    message: str = ""

    @property
    def parsed(self) -> bool:
        return bool(self.component or self.level)


def parse_timestamp(value: str) -> Optional[datetime]:
    """
    Parse an RFC3339 timestamp with up to nanosecond precision.
    Digits beyond microseconds are truncated. Returns None if invalid.
    """
    match = RFC3339_PATTERN.match(value)
    if not match:
        return None
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    micros = int((fraction or "0")[:6].ljust(6, "0"))

    if offset in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if offset[0] == "-" else 1
        delta = timedelta(hours=int(offset[1:3]), minutes=int(offset[4:6]))
        tz = timezone(sign * delta)

    try:
        return datetime(int(year), int(month), int(day), int(hour), int(minute),
                        int(second), micros, tzinfo=tz)
    except ValueError:
        return None


def parse_log_line(line: str) -> LogLine:
    match = LOG_LINE_PATTERN.match(line)
    if not match:
        return LogLine(raw=line)
    component, timestamp, level, message = match.groups()
    return LogLine(
        raw=line,
        component=component,
        timestamp=parse_timestamp(timestamp),
        level=level,
        message=message,
    )


def _format_time(timestamp: datetime) -> str:
    return timestamp.strftime("%H:%M:%S") + f".{timestamp.microsecond // 1000:03d}"


def format_log_line(line: LogLine, colorize: bool = False) -> str:
    """
    Render a log line as ``[component] HH:MM:SS.mmm LEVEL - message``.
    Unparsed lines are returned as-is.
    """
    if not line.parsed:
        return line.raw

    parts = []
    if colorize:
        parts.append(f"{CYAN}[{line.component}]{RESET}")
        if line.timestamp is not None:
            parts.append(f"{GRAY}{_format_time(line.timestamp)}{RESET}")
        if line.level in LEVEL_COLORS:
            color, label = LEVEL_COLORS[line.level]
            parts.append(f"{color}{label}{RESET}")
        else:
            parts.append(line.level)
    else:
        parts.append(f"[{line.component}]")
        if line.timestamp is not None:
            parts.append(_format_time(line.timestamp))
        parts.append(line.level)

    return " ".join(parts) + f" - {line.message}"


def extract_components(content: str) -> List[str]:
    """Sorted unique component names found in log content."""
    components = set()
    for raw in content.split("\n"):
        if not raw:
            continue
        line = parse_log_line(raw)
        if line.component:
            components.add(line.component)
    return sorted(components)
