"""
Disassembly context lookup.

Maps a call-site address from the trace to the matching instruction in an
`objdump -S` listing and returns the interleaved source lines around it.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

CONTEXT_LINES = 10
MARK_PREFIX = '>>> '
LINE_PREFIX = '    '

# Instruction lines in the listing: leading whitespace, address, colon
_ADDRESS_LABEL = re.compile(r'^\s+[0-9a-f]{4,6}:')
_HEX_DIGITS = re.compile(r'[0-9a-fA-F]+')


@dataclass
class ContextWindow:
    """Source lines surrounding a resolved call site"""
    address: str
    lines: List[str] = field(default_factory=list)
    marked_index: Optional[int] = None
    found: bool = True

    def render(self) -> List[str]:
        if not self.found:
            return [f"{LINE_PREFIX}<no disassembly found for {self.address}>"]
        return [
            (MARK_PREFIX if ix == self.marked_index else LINE_PREFIX) + line
            for ix, line in enumerate(self.lines)
        ]


def is_address_label(line: str) -> bool:
    return _ADDRESS_LABEL.match(line) is not None


def instruction_address(call_site: str) -> Optional[int]:
    """Address of the calling instruction: the logged return address minus one"""
    digits = call_site[2:] if call_site[:2].lower() == '0x' else call_site
    if not _HEX_DIGITS.fullmatch(digits):
        return None
    return int(digits, 16) - 1


def find_address_line(address: int, symbol_lines: Sequence[str]) -> Optional[int]:
    """Index of the listing line labelled with address, or None"""
    label = re.compile(r'^\s+0*' + format(address, 'x') + ':')
    for ix, line in enumerate(symbol_lines):
        if label.match(line):
            return ix
    return None


def _collect(symbol_lines: Sequence[str], start: int, step: int) -> List[str]:
    collected = []
    ix = start + step
    while 0 <= ix < len(symbol_lines) and len(collected) < CONTEXT_LINES:
        if not is_address_label(symbol_lines[ix]):
            collected.append(symbol_lines[ix])
        ix += step
    return collected


def find_line_in_code(call_site: str, symbol_lines: Sequence[str]) -> ContextWindow:
    """Resolve a call site to a window of up to 10 lines either side of it.

    The line nearest before the instruction is marked; when nothing
    precedes it, the first line after it is marked instead. An address
    that does not appear in the listing yields an empty window with
    found=False.
    """
    address = instruction_address(call_site)
    if address is None or address < 0:
        logger.warning("call site %r is not a valid address", call_site)
        return ContextWindow(call_site, found=False)

    line_ix = find_address_line(address, symbol_lines)
    if line_ix is None:
        logger.warning("no disassembly found for %s (looked up 0x%x)", call_site, address)
        return ContextWindow(call_site, found=False)

    before = _collect(symbol_lines, line_ix, -1)
    before.reverse()
    after = _collect(symbol_lines, line_ix, 1)

    if before:
        marked_index = len(before) - 1
    elif after:
        marked_index = 0
    else:
        marked_index = None

    return ContextWindow(call_site, before + after, marked_index)
