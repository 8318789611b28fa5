#!/usr/bin/env python3
"""
Find dangling pointers in an embedded allocation trace.

Replays the malloc/calloc/free/realloc events logged by the firmware,
reports every allocation that was never freed, grouped by call site, and
shows the source around each call site using `objdump -S` of the ELF.

Usage:
    find_dangling_ptrs.py [logfile] <elffile> [options]

The log file may be omitted, in which case the log is read from stdin.

Options:
    --objdump PATH          Disassembler to use (default: arm-none-eabi-objdump,
                            or $FIND_DANGLING_PTRS_OBJDUMP)
    --report FILE           Also save the report to FILE
    -v, --verbose           Verbose output (repeat for debug)
"""

import argparse
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

from dangling_ptr_analyzer import LeakReport, analyze

logger = logging.getLogger(__name__)

DEFAULT_OBJDUMP = 'arm-none-eabi-objdump'
OBJDUMP_ENV = 'FIND_DANGLING_PTRS_OBJDUMP'
OBJDUMP_TIMEOUT = 300


class ToolError(Exception):
    """A failure in one of the collaborators (files, objdump); fatal to the run"""

    def __init__(self, message: str, details: Optional[List[str]] = None):
        super().__init__(message)
        self.details = details or []


_log_handler: Optional[logging.Handler] = None


def configure_logging(verbosity: int) -> None:
    """0 -> WARNING, 1 -> INFO, 2+ -> DEBUG, all to stderr"""
    global _log_handler

    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    root = logging.getLogger()
    if _log_handler is not None:
        root.removeHandler(_log_handler)
    _log_handler = logging.StreamHandler(sys.stderr)
    _log_handler.setFormatter(logging.Formatter('%(levelname)s: %(name)s: %(message)s'))
    root.setLevel(level)
    root.addHandler(_log_handler)


def extract_symbols(objdump: str, elf_file: str) -> str:
    """Run `objdump -S` on the ELF and return the listing"""
    logger.info("running %s -S %s", objdump, elf_file)
    try:
        result = subprocess.run(
            [objdump, '-S', elf_file],
            capture_output=True,
            timeout=OBJDUMP_TIMEOUT,
        )
    except subprocess.TimeoutExpired:
        raise ToolError(f"`{objdump}` timed out after {OBJDUMP_TIMEOUT}s")
    except OSError as e:
        raise ToolError(f"Failed to launch `{objdump}`, is it in your PATH?", [str(e)])

    if result.returncode != 0:
        raise ToolError(
            f"Failed to execute `{objdump}` properly (returned {result.returncode})",
            [result.stdout.decode('utf-8', errors='replace'),
             result.stderr.decode('utf-8', errors='replace')],
        )

    return result.stdout.decode('utf-8', errors='replace')


def read_log(log_file: Optional[str]) -> str:
    """Read the whole trace log from a file, or from stdin when no file is given"""
    if log_file is None:
        return sys.stdin.buffer.read().decode('utf-8', errors='replace')
    try:
        return Path(log_file).read_text(encoding='utf-8', errors='replace')
    except OSError as e:
        raise ToolError(f"Error reading log file '{log_file}': {e}")


def format_report(report: LeakReport) -> List[str]:
    """Render a LeakReport as console lines"""
    pointer = 'pointer' if report.leak_count == 1 else 'pointers'
    lines = ['', f"Found {report.leak_count} dangling {pointer} ({report.total_size} bytes)"]

    for group in report.groups:
        ptrs = ', '.join(f"{entry.pointer} ({entry.display_size})" for entry in group.entries)
        lines.append('')
        lines.append('-' * 50 + ' ' + group.call_site)
        lines.append(f"{len(group.entries)} dangling pointers (total: {group.total_size} bytes): [ {ptrs} ]")
        if group.context is not None:
            lines.extend(group.context.render())

    return lines


def resolve_inputs(log_file: Optional[str], elf_file: Optional[str]):
    """A lone .elf argument is the ELF file; the log then comes from stdin"""
    if not elf_file and log_file and Path(log_file).suffix.lower() == '.elf':
        return None, log_file
    return log_file, elf_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='find-dangling-ptrs',
        description='Find unfreed allocations in an embedded malloc trace log')
    parser.add_argument('logfile', nargs='?', help='trace log (read from stdin if omitted)')
    parser.add_argument('elffile', nargs='?', help='ELF file of the traced firmware')
    parser.add_argument('--objdump', default=os.environ.get(OBJDUMP_ENV, DEFAULT_OBJDUMP),
                        help=f'disassembler to run (default: {DEFAULT_OBJDUMP})')
    parser.add_argument('--report', metavar='FILE', help='also save the report to FILE')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='verbose output (repeat for debug)')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    log_file, elf_file = resolve_inputs(args.logfile, args.elffile)

    if not elf_file:
        print('ELF file not provided, syntax `find-dangling-ptrs [logfile] [elffile]`')
        print('Log file may be omitted, then reading from stdin')
        return 1

    if not os.path.exists(elf_file):
        print(f"Error: {elf_file} not found", file=sys.stderr)
        return 1

    try:
        print('Extracting symbols from', elf_file)
        symbols = extract_symbols(args.objdump, elf_file)
        print('Extracting symbols OK')

        if log_file is None:
            print('Waiting for input from stdin...')
        log_text = read_log(log_file)
    except ToolError as e:
        print(f"Error: {e}", file=sys.stderr)
        for detail in e.details:
            if detail:
                print(detail, file=sys.stderr)
        return 1

    report = analyze(log_text, symbols)
    lines = format_report(report)
    print('\n'.join(lines))

    if args.report:
        with open(args.report, 'w') as f:
            f.write('\n'.join(lines) + '\n')
        print(f"\nReport saved to: {args.report}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
