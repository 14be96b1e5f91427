"""Folding of GHC ``.prof`` call-graph output into folded stack lines."""

from __future__ import annotations

import dataclasses
import enum
import io
import logging
import math
from typing import BinaryIO, TextIO

from stackfold.collapse import Collapser, InvalidDataError, Occurrences

_log = logging.getLogger(__name__)

# Identifying words of the call-graph table header; the ticks and bytes
# columns are optional and may follow these.
_START_LINE = [
    "COST", "CENTRE", "MODULE", "SRC", "no.", "entries", "%time", "%alloc", "%time", "%alloc",
]

_USIZE_MAX = 2**64 - 1


class Source(enum.Enum):
    """Which ``.prof`` column supplies the cost of each stack."""

    PERCENT_TIME = "time"
    """Individual %time, recorded in tenths of a percent."""

    TICKS = "ticks"
    """Individual runtime ticks."""

    BYTES = "bytes"
    """Individual bytes allocated."""


@dataclasses.dataclass
class GhcprofOptions:
    """Settings for :class:`GhcprofFolder`."""

    source: Source = Source.PERCENT_TIME
    """Column the cost of each stack is read from."""


@dataclasses.dataclass(frozen=True)
class _Columns:
    cost_centre: int
    module: int
    source: int


def _is_start_line(line: str) -> bool:
    return line.split()[: len(_START_LINE)] == _START_LINE


def _one_off_end_of_col_before(line: str, col: str) -> int:
    col_start = line.find(col)
    if col_start < 0:
        raise InvalidDataError(f"Expected '{col}' column but it was not present")
    before = line[:col_start].rstrip()
    if not before:
        raise InvalidDataError(f"Expected a column before '{col}' but there was none")
    return len(before)


def _field(line: str, start: int) -> str:
    """Return the first whitespace-free token at or after character *start*."""
    parts = line[start:].split(maxsplit=1)
    return parts[0] if parts else ""


def _parse_cost(text: str) -> float | None:
    text = text.strip()
    if not text or "_" in text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _to_count(value: float) -> int:
    """Convert to an unsigned count, truncating and saturating at the bounds."""
    if math.isnan(value) or value <= 0:
        return 0
    if value >= _USIZE_MAX:
        return _USIZE_MAX
    return int(value)


class GhcprofFolder(Collapser):
    """Collapses the call graph of a GHC ``.prof`` file."""

    def __init__(self, options: GhcprofOptions | None = None) -> None:
        self.options = dataclasses.replace(options) if options is not None else GhcprofOptions()
        self._stack: list[str] = []
        self._current_cost = 0

    def collapse(self, reader: BinaryIO, writer: TextIO) -> None:
        lines = iter(reader.readline, b"")
        columns = None
        for raw in lines:
            text = raw.decode("utf-8", errors="replace")
            if _is_start_line(text):
                columns = self._columns(text)
                break
        if columns is None:
            _log.warning("File ended before start of call graph")
            return
        # The line after the header is a separator.
        next(lines, None)

        occurrences = Occurrences(1)
        try:
            for raw in lines:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    break
                self._on_line(line, occurrences, columns)
            occurrences.write_and_clear(writer)
        finally:
            self._current_cost = 0
            self._stack.clear()

    def is_applicable(self, input: str) -> bool | None:
        """Return ``True`` once the call-graph header is seen, else ``None``."""
        if any(_is_start_line(line) for line in io.StringIO(input)):
            return True
        return None

    def _columns(self, header: str) -> _Columns:
        module = max(header.find("MODULE"), 0)
        source = self.options.source
        if source is Source.PERCENT_TIME:
            start = header.find("%time")
        elif source is Source.TICKS:
            start = _one_off_end_of_col_before(header, "ticks")
        else:
            start = _one_off_end_of_col_before(header, "bytes")
        return _Columns(cost_centre=0, module=module, source=start)

    def _on_line(self, line: str, occurrences: Occurrences, columns: _Columns) -> None:
        depth = len(line) - len(line.lstrip(" "))
        if depth == len(line):
            return
        if depth < len(self._stack):
            del self._stack[depth:]
        elif depth != len(self._stack):
            raise InvalidDataError(f"Skipped indentation level at line:\n{line}")

        cost_text = _field(line, columns.source)
        cost = _parse_cost(cost_text)
        if cost is None:
            raise InvalidDataError(f'Invalid cost field: "{cost_text}"')

        func = _field(line, columns.cost_centre)
        module = _field(line, columns.module)
        if self.options.source is Source.PERCENT_TIME:
            cost *= 10.0
        self._current_cost = _to_count(cost)
        self._stack.append(f"{module.strip()}.{func.strip()}")
        occurrences.insert_or_add(";".join(self._stack), self._current_cost)