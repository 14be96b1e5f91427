"""Shared machinery for turning profiler output into folded stack lines."""

from __future__ import annotations

import abc
import os
import queue
import sys
import threading
from os import PathLike
from typing import BinaryIO, TextIO, Union

DEFAULT_NTHREADS: int = os.cpu_count() or 1
"""Number of worker threads used unless told otherwise."""

DEFAULT_NSTACKS_PER_JOB: int = 100
"""How many complete stacks make up one chunk of work for a worker thread."""

_PathArg = Union[str, "PathLike[str]"]


class InvalidDataError(ValueError):
    """Raised when profiler output cannot be parsed."""


class Occurrences:
    """Counts of folded stacks, safe to share between worker threads.

    With more than one thread the map is concurrent: copies of a collapser
    running in different threads all add to the same instance.
    """

    def __init__(self, nthreads: int) -> None:
        if nthreads == 0:
            raise ValueError("nthreads must not be zero")
        self._concurrent = nthreads > 1
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def insert(self, key: str, count: int) -> int | None:
        """Set the count for *key*, returning the previous count if there was one."""
        with self._lock:
            previous = self._counts.get(key)
            self._counts[key] = count
            return previous

    def insert_or_add(self, key: str, count: int) -> None:
        """Add *count* to the count for *key*, starting from zero."""
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + count

    def is_concurrent(self) -> bool:
        """Return whether this map is meant to be shared between threads."""
        return self._concurrent

    def write_and_clear(self, writer: TextIO) -> None:
        """Write every ``stack count`` line in sorted order, then empty the map."""
        with self._lock:
            contents = sorted(self._counts.items())
            self._counts = {}
        for key, value in contents:
            writer.write(f"{key} {value}\n")
        writer.flush()


class Collapser(abc.ABC):
    """Turns one profiler's stack traces into folded stack lines."""

    @abc.abstractmethod
    def collapse(self, reader: BinaryIO, writer: TextIO) -> None:
        """Read profiler output from *reader* and write folded lines to *writer*."""

    def collapse_file(self, infile: _PathArg | None, writer: TextIO) -> None:
        """Collapse the file at *infile*, or standard input if it is ``None``."""
        if infile is None:
            self.collapse(sys.stdin.buffer, writer)
            return
        with open(infile, "rb") as reader:
            self.collapse(reader, writer)

    def collapse_file_to_stdout(self, infile: _PathArg | None) -> None:
        """Collapse *infile* (or standard input) and write the result to standard output."""
        self.collapse_file(infile, sys.stdout)

    @abc.abstractmethod
    def is_applicable(self, input: str) -> bool | None:
        """Say whether this collapser suits *input*.

        ``None`` means more input is needed to decide.
        """


class ParallelCollapser(Collapser):
    """A collapser whose input can be split into whole stacks and folded in parallel."""

    def __init__(self, nthreads: int = DEFAULT_NTHREADS) -> None:
        self.nthreads = nthreads
        self.nstacks_per_job = DEFAULT_NSTACKS_PER_JOB

    def pre_process(self, reader: BinaryIO, occurrences: Occurrences) -> None:
        """Consume any header that precedes the stacks; does nothing by default."""

    @abc.abstractmethod
    def collapse_single_threaded(self, reader: BinaryIO, occurrences: Occurrences) -> None:
        """Fold every stack in *reader* into *occurrences*.

        On return the collapser must be back outside any stack.
        """

    @abc.abstractmethod
    def would_end_stack(self, line: bytes) -> bool:
        """Return whether *line* is the last line of a stack."""

    @abc.abstractmethod
    def clone_and_reset_stack_context(self) -> ParallelCollapser:
        """Return a copy with the same options and caches but no stack in progress."""

    def collapse(self, reader: BinaryIO, writer: TextIO) -> None:
        occurrences = Occurrences(self.nthreads)
        self.pre_process(reader, occurrences)
        if occurrences.is_concurrent():
            self._collapse_multi_threaded(reader, occurrences)
        else:
            self.collapse_single_threaded(reader, occurrences)
        occurrences.write_and_clear(writer)

    def _collapse_multi_threaded(self, reader: BinaryIO, occurrences: Occurrences) -> None:
        import io

        nstacks_per_job = self.nstacks_per_job
        nthreads = self.nthreads
        if nstacks_per_job == 0:
            raise ValueError("nstacks_per_job must not be zero")
        if nthreads <= 1 or not occurrences.is_concurrent():
            raise ValueError("multi-threaded collapsing needs more than one thread")

        chunks: queue.Queue[bytes | None] = queue.Queue(maxsize=2 * nthreads)
        stop = threading.Event()
        errors: list[BaseException] = []
        errors_lock = threading.Lock()

        def work(folder: ParallelCollapser) -> None:
            while True:
                chunk = chunks.get()
                if chunk is None:
                    return
                if stop.is_set():
                    continue
                try:
                    folder.collapse_single_threaded(io.BytesIO(chunk), occurrences)
                except BaseException as exc:  # handed to the main thread below
                    with errors_lock:
                        errors.append(exc)
                    stop.set()

        workers = [
            threading.Thread(target=work, args=(self.clone_and_reset_stack_context(),), daemon=True)
            for _ in range(nthreads)
        ]
        for worker in workers:
            worker.start()

        try:
            chunk = bytearray()
            nstacks = 0
            for line in iter(reader.readline, b""):
                chunk += line
                if self.would_end_stack(line):
                    nstacks += 1
                    if nstacks == nstacks_per_job:
                        if stop.is_set():
                            break
                        chunks.put(bytes(chunk))
                        chunk = bytearray()
                        nstacks = 0
            else:
                chunks.put(bytes(chunk))
        finally:
            for _ in workers:
                chunks.put(None)
            for worker in workers:
                worker.join()

        if errors:
            raise errors[0]