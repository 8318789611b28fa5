"""
Dangling Pointer Analyzer

Replays a malloc/calloc/free/realloc trace log to find the allocations
still live when the traced program stopped, then groups those dangling
pointers by the call site that allocated them.

The analyzer does no I/O: it takes the log text and returns a LeakReport.
Untracked free/realloc targets are recorded as warnings and logged, never
raised.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from alloc_log import (
    NULL_POINTER,
    AllocationEvent,
    CallocEvent,
    FreeEvent,
    MallocEvent,
    MalformedEventError,
    ReallocEvent,
    iter_event_lines,
    parse_event_line,
)
from disasm_context import ContextWindow, find_line_in_code

logger = logging.getLogger(__name__)


@dataclass
class LiveAllocation:
    """A block that has been allocated and not yet freed"""
    call_site: str
    size: Optional[int]  # None when the logged size was not a number
    raw_size: str
    line_number: int

    @property
    def display_size(self) -> str:
        return str(self.size) if self.size is not None else self.raw_size


@dataclass
class ReplayWarning:
    """A non-fatal problem found while replaying the log"""
    line_number: int
    kind: str  # 'untracked_free', 'untracked_realloc' or 'malformed_line'
    pointer: Optional[str]
    message: str


@dataclass
class LeakEntry:
    pointer: str
    size: Optional[int]
    raw_size: str

    @property
    def display_size(self) -> str:
        return str(self.size) if self.size is not None else self.raw_size


@dataclass
class LeakGroup:
    """All dangling pointers allocated from one call site"""
    call_site: str
    entries: List[LeakEntry] = field(default_factory=list)
    context: Optional[ContextWindow] = None

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self.entries if entry.size is not None)


@dataclass
class LeakReport:
    leak_count: int
    total_size: int
    groups: List[LeakGroup]
    warnings: List[ReplayWarning]


class DanglingPtrAnalyzer:
    """Replays allocation events and tracks the live-allocation ledger"""

    def __init__(self):
        self.ledger: Dict[str, LiveAllocation] = {}  # pointer -> live allocation
        self.warnings: List[ReplayWarning] = []
        self.events_processed = 0

    def parse_log_text(self, log_text: str) -> None:
        """Replay every event line of a trace log, in order"""
        for line_number, line in iter_event_lines(log_text):
            try:
                event = parse_event_line(line, line_number)
            except MalformedEventError as e:
                self._warn(line_number, 'malformed_line', None, f"Malformed event line: {e.reason}: {line}")
                continue
            if event is not None:
                self.process_event(event)

    def process_event(self, event: AllocationEvent) -> None:
        """Apply a single event to the ledger"""
        self.events_processed += 1
        if isinstance(event, (MallocEvent, CallocEvent)):
            self._process_allocation(event)
        elif isinstance(event, FreeEvent):
            self._process_free(event)
        elif isinstance(event, ReallocEvent):
            self._process_realloc(event)
        else:
            raise TypeError(f"unknown allocation event {event!r}")

    def _process_allocation(self, event) -> None:
        self.ledger[event.pointer] = LiveAllocation(
            call_site=event.call_site,
            size=event.size,
            raw_size=event.raw_size,
            line_number=event.line_number,
        )

    def _process_free(self, event: FreeEvent) -> None:
        if event.pointer in self.ledger:
            del self.ledger[event.pointer]
        elif event.pointer != NULL_POINTER:
            self._warn(event.line_number, 'untracked_free', event.pointer,
                       f"Free for untracked pointer {event.pointer}")

    def _process_realloc(self, event: ReallocEvent) -> None:
        if event.old_pointer in self.ledger:
            del self.ledger[event.old_pointer]
        elif event.old_pointer != NULL_POINTER:
            self._warn(event.line_number, 'untracked_realloc', event.old_pointer,
                       f"Realloc for untracked pointer {event.old_pointer}")

        # realloc always hands back a live block, tracked or not
        self.ledger[event.new_pointer] = LiveAllocation(
            call_site=event.call_site,
            size=event.new_size,
            raw_size=event.raw_size,
            line_number=event.line_number,
        )

    def _warn(self, line_number: int, kind: str, pointer: Optional[str], message: str) -> None:
        self.warnings.append(ReplayWarning(line_number, kind, pointer, message))
        logger.warning("line %d: %s", line_number, message)

    def aggregate(self) -> LeakReport:
        """Group the dangling pointers by allocating call site"""
        groups: Dict[str, LeakGroup] = {}
        for pointer, alloc in self.ledger.items():
            group = groups.get(alloc.call_site)
            if group is None:
                group = groups[alloc.call_site] = LeakGroup(alloc.call_site)
            group.entries.append(LeakEntry(pointer, alloc.size, alloc.raw_size))

        return LeakReport(
            leak_count=len(self.ledger),
            total_size=sum(group.total_size for group in groups.values()),
            groups=list(groups.values()),
            warnings=list(self.warnings),
        )


def analyze(log_text: str, disasm_text: Optional[str] = None) -> LeakReport:
    """Replay a trace log and, given a disassembly listing, attach context windows"""
    analyzer = DanglingPtrAnalyzer()
    analyzer.parse_log_text(log_text)
    report = analyzer.aggregate()

    if disasm_text is not None:
        symbol_lines = disasm_text.splitlines()
        for group in report.groups:
            group.context = find_line_in_code(group.call_site, symbol_lines)

    logger.info("replayed %d events: %d dangling pointers in %d call sites",
                analyzer.events_processed, report.leak_count, len(report.groups))
    return report
