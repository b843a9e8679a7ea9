"""Parser for MakeMKV robot-mode output.

MakeMKV run with ``-r --progress=-same`` writes one record per line:

    PRGV:current,total,max            progress values (max is usually 65536)
    PRGT:code,id,"name"               title of the current task
    PRGC:code,id,"name"               title of the current sub-item
    MSG:code,flags,count,"text",...   informational and error messages

Parsing is pure: the same line always yields the same event.
"""

import re
from dataclasses import dataclass

DEFAULT_PROGRESS_MAX = 65536

MSG_PATTERN = re.compile(r'^(\d+),(\d+),(\d+),"([^"]+)"')


@dataclass(frozen=True)
class ProgressValue:
    """PRGV record."""

    current: int
    total: int
    maximum: int

    @property
    def ratio(self) -> float:
        """Overall progress as a 0-1 ratio."""
        if self.maximum <= 0:
            return 0.0
        return min(self.total / self.maximum, 1.0)


@dataclass(frozen=True)
class ProgressTitle:
    """PRGT record announcing the current task."""

    code: int
    item_id: int
    text: str


@dataclass(frozen=True)
class ProgressItem:
    """PRGC record announcing the current sub-item."""

    code: int
    item_id: int
    text: str


@dataclass(frozen=True)
class Message:
    """MSG record."""

    code: int
    flags: int
    text: str
    params: tuple[str, ...] = ()


ProtocolEvent = ProgressValue | ProgressTitle | ProgressItem | Message


def split_robot_line(payload: str) -> list[str]:
    """Split a comma separated payload, keeping quoted commas intact.

    Quotes are preserved in the returned fields; use ``unquote`` to strip them.
    """
    parts = []
    current = []
    in_quotes = False

    for char in payload:
        if char == '"':
            in_quotes = not in_quotes
            current.append(char)
        elif char == "," and not in_quotes:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)

    if current:
        parts.append("".join(current))

    return parts


def unquote(value: str | None) -> str:
    """Strip one pair of surrounding double quotes."""
    if not value:
        return ""
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


def _to_int(value: str, default: int = 0) -> int:
    try:
        return int(value.strip())
    except (ValueError, AttributeError):
        return default


def _parse_progress_value(payload: str) -> ProgressValue:
    parts = payload.split(",")
    current = _to_int(parts[0]) if len(parts) > 0 else 0
    total = _to_int(parts[1]) if len(parts) > 1 else 0
    maximum = _to_int(parts[2], DEFAULT_PROGRESS_MAX) if len(parts) > 2 else 0
    return ProgressValue(
        current=current,
        total=total,
        maximum=maximum or DEFAULT_PROGRESS_MAX,
    )


def _parse_titled(payload: str) -> tuple[int, int, str]:
    parts = split_robot_line(payload)
    code = _to_int(parts[0]) if len(parts) > 0 else 0
    item_id = _to_int(parts[1]) if len(parts) > 1 else 0
    text = unquote(parts[2]) if len(parts) > 2 else ""
    return code, item_id, text


def _parse_message(payload: str) -> Message:
    match = MSG_PATTERN.match(payload)
    if not match:
        return Message(code=0, flags=0, text=payload)

    code, flags, _count, text = match.groups()
    extra = split_robot_line(payload[match.end() :].lstrip(","))
    params = tuple(unquote(p) for p in extra if p)
    return Message(code=int(code), flags=int(flags), text=text, params=params)


def parse_line(line: str) -> ProtocolEvent | None:
    """Parse one line of robot output. Unknown lines return None."""
    line = line.strip()
    if not line:
        return None

    if line.startswith("PRGV:"):
        return _parse_progress_value(line[5:])
    if line.startswith("PRGT:"):
        return ProgressTitle(*_parse_titled(line[5:]))
    if line.startswith("PRGC:"):
        return ProgressItem(*_parse_titled(line[5:]))
    if line.startswith("MSG:"):
        return _parse_message(line[4:])

    return None
