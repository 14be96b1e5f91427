import io
import sys

import pytest

from stackfold.collapse import (
    Collapser,
    InvalidDataError,
    Occurrences,
    ParallelCollapser,
)


class _LineFolder(ParallelCollapser):
    """Frames one per line, a count line ends the stack, 'bad' is an error."""

    def __init__(self, nthreads=1):
        super().__init__(nthreads)
        self.stack = []

    def collapse_single_threaded(self, reader, occurrences):
        for raw in iter(reader.readline, b""):
            line = raw.decode("utf-8", "replace").strip()
            if not line:
                continue
            if line == "bad":
                self.stack.clear()
                raise InvalidDataError("bad line")
            if line.isdigit():
                occurrences.insert_or_add(";".join(self.stack), int(line))
                self.stack.clear()
            else:
                self.stack.append(line)
        if self.stack:
            self.stack.clear()
            raise InvalidDataError("Input data ends in the middle of a stack.")

    def would_end_stack(self, line):
        return line.strip().isdigit()

    def clone_and_reset_stack_context(self):
        clone = _LineFolder(self.nthreads)
        clone.nstacks_per_job = self.nstacks_per_job
        return clone

    def is_applicable(self, input):
        return None


def _sample_input(nstacks=300):
    parts = []
    for i in range(nstacks):
        parts.append(f"main\nfunc{i % 7}\nleaf{i % 3}\n{i % 5 + 1}\n\n")
    return "".join(parts).encode()


def _collapse_with(nthreads, data, per_job=None):
    folder = _LineFolder(nthreads)
    if per_job is not None:
        folder.nstacks_per_job = per_job
    out = io.StringIO()
    ParallelCollapser.collapse(folder, io.BytesIO(data), out)
    return out.getvalue()


def test_occurrences_rejects_zero_threads():
    with pytest.raises(ValueError):
        Occurrences(0)


def test_occurrences_concurrency_follows_thread_count():
    assert Occurrences(1).is_concurrent() is False
    assert Occurrences(4).is_concurrent() is True


def test_insert_returns_previous_value():
    occ = Occurrences(1)
    assert occ.insert("a;b", 5) is None
    assert occ.insert("a;b", 7) == 5
    out = io.StringIO()
    occ.write_and_clear(out)
    assert out.getvalue() == "a;b 7\n"


def test_insert_or_add_accumulates_and_sorts():
    occ = Occurrences(2)
    occ.insert_or_add("b", 1)
    occ.insert_or_add("a", 2)
    occ.insert_or_add("a", 1)
    out = io.StringIO()
    occ.write_and_clear(out)
    assert out.getvalue() == "a 3\nb 1\n"


def test_write_and_clear_empties_map():
    occ = Occurrences(1)
    occ.insert_or_add("x", 1)
    occ.write_and_clear(io.StringIO())
    second = io.StringIO()
    occ.write_and_clear(second)
    assert second.getvalue() == ""


def test_single_threaded_collapse_counts_stacks():
    data = b"main\nfoo\n2\n\nmain\nfoo\n3\n\nmain\nbar\n1\n"
    folder = _LineFolder(1)
    out = io.StringIO()
    ParallelCollapser.collapse(folder, io.BytesIO(data), out)
    assert out.getvalue() == "main;bar 1\nmain;foo 5\n"


@pytest.mark.parametrize("nthreads", [2, 3, 8, 16])
@pytest.mark.parametrize("per_job", [1, 7, 100])
def test_multi_threaded_matches_single_threaded(nthreads, per_job):
    data = _sample_input()
    expected_out = io.StringIO()
    ParallelCollapser.collapse(_LineFolder(1), io.BytesIO(data), expected_out)
    folder = _LineFolder(nthreads)
    folder.nstacks_per_job = per_job
    actual_out = io.StringIO()
    ParallelCollapser.collapse(folder, io.BytesIO(data), actual_out)
    assert actual_out.getvalue() == expected_out.getvalue()


def test_output_total_matches_input_total():
    data = _sample_input(50)
    out = io.StringIO()
    ParallelCollapser.collapse(_LineFolder(4), io.BytesIO(data), out)
    total = sum(int(line.rsplit(" ", 1)[1]) for line in out.getvalue().splitlines())
    assert total == sum(i % 5 + 1 for i in range(50))


@pytest.mark.parametrize("nthreads", [1, 4])
def test_unterminated_stack_is_an_error(nthreads):
    data = _sample_input(20) + b"main\nhalf\n"
    folder = _LineFolder(nthreads)
    folder.nstacks_per_job = 3
    with pytest.raises(InvalidDataError, match="middle of a stack"):
        ParallelCollapser.collapse(folder, io.BytesIO(data), io.StringIO())


def test_worker_error_propagates():
    data = _sample_input(100) + b"bad\n1\n\n" + _sample_input(100)
    folder = _LineFolder(6)
    folder.nstacks_per_job = 1
    with pytest.raises(InvalidDataError, match="bad line"):
        ParallelCollapser.collapse(folder, io.BytesIO(data), io.StringIO())


def test_zero_stacks_per_job_rejected_when_parallel():
    folder = _LineFolder(2)
    folder.nstacks_per_job = 0
    with pytest.raises(ValueError):
        ParallelCollapser.collapse(folder, io.BytesIO(_sample_input(5)), io.StringIO())


def test_collapse_file_reads_path(tmp_path):
    path = tmp_path / "stacks.txt"
    data = _sample_input(30)
    path.write_bytes(data)
    out = io.StringIO()
    ParallelCollapser.collapse_file(_LineFolder(2), path, out)
    assert out.getvalue() == _collapse_with(1, data)
    assert out.getvalue().startswith("main;func0;leaf0 ")


def test_collapse_file_reads_stdin_when_no_path(monkeypatch):
    data = b"main\nx\n4\n"
    monkeypatch.setattr(sys, "stdin", io.TextIOWrapper(io.BytesIO(data)))
    out = io.StringIO()
    ParallelCollapser.collapse_file(_LineFolder(1), None, out)
    assert out.getvalue() == "main;x 4\n"


def test_collapse_file_to_stdout(tmp_path, capsys):
    path = tmp_path / "in.txt"
    path.write_bytes(b"a\nb\n2\n")
    ParallelCollapser.collapse_file_to_stdout(_LineFolder(1), str(path))
    assert capsys.readouterr().out == "a;b 2\n"


def test_collapse_file_missing_path_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        ParallelCollapser.collapse_file(
            _LineFolder(1), tmp_path / "missing.txt", io.StringIO()
        )


def test_collapser_is_abstract():
    with pytest.raises(TypeError):
        Collapser()