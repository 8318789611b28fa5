"""
Allocation Trace Log Parser

Parses the event lines written by the firmware's malloc tracing hooks.
Every event line starts with '#' and encodes its fields with a mix of
':', ';' and '-' delimiters:

    #m:<ptr>:<callsite>:<size>
    #c:<ptr>:<callsite>:<size>-<itemcount>
    #f:<retval>:<callsite>:<ptr>
    #r:<newptr>:<callsite>:<oldptr>:<newsize>

Any other line (program output interleaved in the trace) is ignored.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

EVENT_MARKER = '#'
NULL_POINTER = '0x0'

_DELIMITERS = re.compile(r'[:;-]')
EVENT_PREFIXES = ('#m:', '#c:', '#f:', '#r:')


@dataclass
class MallocEvent:
    """Represents a malloc() call"""
    pointer: str
    call_site: str
    size: Optional[int]
    raw_size: str
    line_number: int


@dataclass
class CallocEvent:
    """Represents a calloc() call"""
    pointer: str
    call_site: str
    item_size: Optional[int]
    item_count: Optional[int]
    raw_size: str
    line_number: int

    @property
    def size(self) -> Optional[int]:
        if self.item_size is None or self.item_count is None:
            return None
        return self.item_size * self.item_count


@dataclass
class FreeEvent:
    """Represents a free() call"""
    return_value: str
    call_site: str
    pointer: str
    line_number: int


@dataclass
class ReallocEvent:
    """Represents a realloc() call"""
    new_pointer: str
    call_site: str
    old_pointer: str
    new_size: Optional[int]
    raw_size: str
    line_number: int

    @property
    def size(self) -> Optional[int]:
        return self.new_size


AllocationEvent = Union[MallocEvent, CallocEvent, FreeEvent, ReallocEvent]


class MalformedEventError(ValueError):
    """Raised when an event line lacks a pointer or call-site field"""

    def __init__(self, line_number: int, line: str, reason: str):
        super().__init__(f"line {line_number}: {reason}: {line!r}")
        self.line_number = line_number
        self.line = line
        self.reason = reason


def tokenize(line: str) -> List[str]:
    """Split an event line on any of ':', ';' or '-'"""
    return [token.strip() for token in _DELIMITERS.split(line)]


def parse_number(token: Optional[str]) -> Optional[int]:
    """Parse a decimal or 0x-prefixed size field, None if it is not a number"""
    if token is None:
        return None
    token = token.strip()
    try:
        if token[:2].lower() == '0x':
            return int(token, 16)
        return int(token)
    except ValueError:
        return None


def _field(tokens: List[str], index: int) -> Optional[str]:
    if index < len(tokens) and tokens[index]:
        return tokens[index]
    return None


def _required(tokens: List[str], index: int, name: str, line_number: int, line: str) -> str:
    value = _field(tokens, index)
    if value is None:
        raise MalformedEventError(line_number, line, f"missing {name}")
    return value


def parse_event_line(line: str, line_number: int = 0) -> Optional[AllocationEvent]:
    """Parse one event line.

    Returns None for lines that are not allocation events. Raises
    MalformedEventError when an event is missing a pointer or call site;
    a missing or non-numeric size only makes the size indeterminate.
    """
    if not line or line[0] != EVENT_MARKER:
        return None
    if line[:3] not in EVENT_PREFIXES:
        logger.debug("line %d: ignoring unknown event prefix %r", line_number, line[:3])
        return None

    tokens = tokenize(line)
    marker = tokens[0]

    if marker == '#m':
        raw_size = _field(tokens, 3) or ''
        return MallocEvent(
            pointer=_required(tokens, 1, 'pointer', line_number, line),
            call_site=_required(tokens, 2, 'call site', line_number, line),
            size=parse_number(raw_size),
            raw_size=raw_size,
            line_number=line_number,
        )

    if marker == '#c':
        item_size = _field(tokens, 3) or ''
        item_count = _field(tokens, 4) or ''
        return CallocEvent(
            pointer=_required(tokens, 1, 'pointer', line_number, line),
            call_site=_required(tokens, 2, 'call site', line_number, line),
            item_size=parse_number(item_size),
            item_count=parse_number(item_count),
            raw_size=f"{item_size}*{item_count}",
            line_number=line_number,
        )

    if marker == '#f':
        return FreeEvent(
            return_value=_field(tokens, 1) or '',
            call_site=_required(tokens, 2, 'call site', line_number, line),
            pointer=_required(tokens, 3, 'pointer', line_number, line),
            line_number=line_number,
        )

    if marker == '#r':
        raw_size = _field(tokens, 4) or ''
        return ReallocEvent(
            new_pointer=_required(tokens, 1, 'new pointer', line_number, line),
            call_site=_required(tokens, 2, 'call site', line_number, line),
            old_pointer=_required(tokens, 3, 'old pointer', line_number, line),
            new_size=parse_number(raw_size),
            raw_size=raw_size,
            line_number=line_number,
        )

    return None


def iter_event_lines(log_text: str) -> Iterator[Tuple[int, str]]:
    """Yield (line_number, line) for every non-blank line starting with '#'"""
    for line_number, line in enumerate(log_text.splitlines(), 1):
        if line and line[0] == EVENT_MARKER:
            yield line_number, line
