"""Folding of DTrace ``ustack()`` aggregation output into folded stack lines."""

from __future__ import annotations

import dataclasses
import io
import logging
from collections import deque
from typing import BinaryIO

from stackfold.collapse import (
    DEFAULT_NTHREADS,
    InvalidDataError,
    Occurrences,
    ParallelCollapser,
)
from stackfold.demangle import fix_partially_demangled_rust_symbol

_log = logging.getLogger(__name__)

_USIZE_MAX = 2**64 - 1
_DIGITS = frozenset("0123456789")
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
# Bytes that count as whitespace when a byte is read as a Latin-1 character.
_WHITESPACE_BYTES = frozenset(b"\t\n\x0b\x0c\r \x85\xa0")
_DIGIT_BYTES = frozenset(b"0123456789")


def _parse_unsigned(text: str, digits: frozenset[str], base: int) -> int | None:
    """Parse an unsigned machine-sized integer the strict way, or return ``None``."""
    if text.startswith("+"):
        text = text[1:]
    if not text or not all(c in digits for c in text):
        return None
    value = int(text, base)
    return value if value <= _USIZE_MAX else None


def _parse_count(text: str) -> int | None:
    return _parse_unsigned(text, _DIGITS, 10)


@dataclasses.dataclass
class DtraceOptions:
    """Settings for :class:`DtraceFolder`."""

    includeoffset: bool = False
    """Keep function offsets on every frame except the leaf."""

    nthreads: int = DEFAULT_NTHREADS
    """Number of worker threads to use."""


class DtraceFolder(ParallelCollapser):
    """Collapses the output of DTrace ``ustack()`` aggregations."""

    def __init__(self, options: DtraceOptions | None = None) -> None:
        opts = dataclasses.replace(options) if options is not None else DtraceOptions()
        if opts.nthreads == 0:
            opts.nthreads = 1
        super().__init__(opts.nthreads)
        self.options = opts
        self._stack: deque[str] = deque()
        self._stack_str_size = 0

    @property
    def nthreads(self) -> int:
        return self._nthreads

    @nthreads.setter
    def nthreads(self, value: int) -> None:
        self._nthreads = value
        if hasattr(self, "options"):
            self.options.nthreads = value

    def pre_process(self, reader: BinaryIO, occurrences: Occurrences) -> None:
        """Skip the header, which ends at the first blank line."""
        for raw in iter(reader.readline, b""):
            if not raw.decode("utf-8", errors="replace").strip():
                return
        _log.warning("File ended while skipping headers")

    def collapse_single_threaded(self, reader: BinaryIO, occurrences: Occurrences) -> None:
        for raw in iter(reader.readline, b""):
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            count = _parse_count(line)
            if count is not None:
                self._on_stack_end(count, occurrences)
            else:
                self._on_stack_line(line)
        if self._stack or self._stack_str_size != 0:
            self._stack.clear()
            self._stack_str_size = 0
            raise InvalidDataError("Input data ends in the middle of a stack.")

    def is_applicable(self, input: str) -> bool | None:
        found_empty_line = False
        found_stack_line = False
        for raw in io.StringIO(input):
            line = raw.strip()
            if not line:
                found_empty_line = True
            elif found_empty_line:
                if _parse_count(line) is not None:
                    return found_stack_line
                if "`" in line or (
                    line.startswith("0x")
                    and _parse_unsigned(line[2:], _HEX_DIGITS, 16) is not None
                ):
                    found_stack_line = True
                else:
                    return False
        return None

    def would_end_stack(self, line: bytes) -> bool:
        """Return whether *line* is a count line: digits surrounded by whitespace."""
        stripped_left = line.lstrip(bytes(_WHITESPACE_BYTES))
        digits_end = 0
        for b in stripped_left:
            if b not in _DIGIT_BYTES:
                break
            digits_end += 1
        if digits_end == 0:
            return False
        trailer = stripped_left[digits_end:]
        return bool(trailer) and all(b in _WHITESPACE_BYTES for b in trailer)

    def clone_and_reset_stack_context(self) -> DtraceFolder:
        clone = DtraceFolder(self.options)
        clone.nstacks_per_job = self.nstacks_per_job
        return clone

    @staticmethod
    def uncpp(probe: str) -> str:
        """Cut a C++ probe name at the last ``(`` or ``<`` following its first ``::``."""
        scope = probe.find("::")
        if scope < 0:
            return probe
        tail = probe[scope + 2:]
        open_at = max(tail.rfind("("), tail.rfind("<"))
        if open_at < 0:
            return probe
        return probe[: scope + 2 + open_at]

    @staticmethod
    def remove_offset(line: str) -> tuple[bool, bool, bool, str]:
        """Strip the ``+offset`` suffix from a frame.

        Returns whether the frame has inlines, could be C++, has a semicolon,
        and the frame without its offset.
        """
        has_inlines = False
        could_be_cpp = False
        has_semicolon = False
        last_offset = len(line)
        previous = ""
        for offset, c in enumerate(line):
            if c == ">" and previous == "-":
                has_inlines = True
            elif c == ":" and previous == ":":
                could_be_cpp = True
            elif c == ";":
                has_semicolon = True
            elif c == "+":
                last_offset = offset
            previous = c
        return has_inlines, could_be_cpp, has_semicolon, line[:last_offset]

    def _fix_rust_symbol(self, frame: str) -> str:
        pname, sep, func = frame.partition("`")
        if not sep:
            return frame
        if self.options.includeoffset and "+" in func:
            name, _, offset = func.rpartition("+")
            trimmed = name.rstrip()
            fixed = fix_partially_demangled_rust_symbol(trimmed)
            if fixed != trimmed:
                return f"{pname}`{fixed}+{offset}"
            return frame
        trimmed = func.rstrip()
        fixed = fix_partially_demangled_rust_symbol(trimmed)
        if fixed != trimmed:
            return f"{pname}`{fixed}"
        return frame

    def _on_stack_line(self, line: str) -> None:
        if self.options.includeoffset:
            has_inlines, could_be_cpp, has_semicolon, frame = True, True, True, line
        else:
            has_inlines, could_be_cpp, has_semicolon, frame = self.remove_offset(line)

        if could_be_cpp:
            frame = self.uncpp(frame)

        frame = "-" if not frame else self._fix_rust_symbol(frame)

        if has_inlines:
            funcs = []
            for position, func in enumerate(frame.split("->")):
                func = func.lstrip("L")
                if has_semicolon:
                    func = func.replace(";", ":")
                if position > 0:
                    func += "_[i]"
                self._stack_str_size += len(func) + 1
                funcs.append(func)
            self._stack.extendleft(reversed(funcs))
        elif has_semicolon:
            self._stack.appendleft(frame.replace(";", ":"))
        else:
            self._stack.appendleft(frame)

    def _on_stack_end(self, count: int, occurrences: Occurrences) -> None:
        frames = list(self._stack)
        if self.options.includeoffset and frames:
            frames[-1] = self.remove_offset(frames[-1])[3]
        occurrences.insert_or_add(";".join(frames), count)
        self._stack_str_size = 0
        self._stack.clear()