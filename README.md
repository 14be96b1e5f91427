# stackfold

Turn the stack-trace output of profilers into *folded stack* lines, the
one-line-per-stack format that flame graph renderers read:

```
main;parse;read_token 42
```

Each line is a semicolon-separated call stack, root first, followed by a
space and the number of samples (or cost) attributed to it. Identical
stacks are merged and the lines are written in sorted order.

## Supported inputs

- **DTrace** — the output of an aggregation over `ustack()`, for example

  ```
  dtrace -x ustackframes=100 -n 'profile-97 /pid == 12345 && arg1/ { @[ustack()] = count(); } tick-60s { exit(0); }'
  ```

  The header up to the first blank line is skipped. Function offsets
  (`+0x1a`) are dropped unless `includeoffset` is set (the leaf frame's
  offset is always dropped), C++ argument lists are trimmed, inlined
  frames (`a->b`) are split with the inlined ones marked `_[i]`, and Rust
  symbols left half-demangled are cleaned up. Input that ends in the
  middle of a stack raises `stackfold.collapse.InvalidDataError`.

- **GHC `.prof` files** — the cost-centre call tree written by a Haskell
  program built with profiling. Each frame is written as
  `Module.function`. The cost of each stack is taken from the individual
  `%time` column (in tenths of a percent), or from the `ticks` or `bytes`
  column. A missing column, a skipped indentation level or an unreadable
  cost raises `InvalidDataError`.

## Installation

```
pip install .
```

## Command line

```
stackfold-collapse-dtrace [--includeoffset] [-n UINT] [-q] [-v...] [PATH]
stackfold-collapse-ghcprof [--time | --bytes | --ticks] [-q] [-v...] [PATH]
```

With no `PATH`, input is read from standard input. The folded lines are
written to standard output:

```
stackfold-collapse-dtrace out.stacks > out.folded
stackfold-collapse-ghcprof --ticks prog.prof > prog.folded
```

`-n` sets the number of worker threads used by the DTrace collapser (the
default is the number of CPUs); the output is the same whatever the
thread count. `-q` silences log output and `-v`, `-vv`, `-vvv` make it
more verbose. On an unreadable file or invalid input the commands print
an error to standard error and exit with status 1.

## Library use

```python
import io

from stackfold.dtrace import DtraceFolder, DtraceOptions
from stackfold.ghcprof import GhcprofFolder, GhcprofOptions, Source

folder = DtraceFolder(DtraceOptions(includeoffset=False, nthreads=1))
out = io.StringIO()
with open("out.stacks", "rb") as stacks:
    folder.collapse(stacks, out)
print(out.getvalue())

ghc = GhcprofFolder(GhcprofOptions(source=Source.TICKS))
ghc.collapse_file("prog.prof", out)
```

`collapse` reads bytes from a binary reader and writes text to a writer.
Every collapser also offers `collapse_file(path_or_none, writer)`,
`collapse_file_to_stdout(path_or_none)` and `is_applicable(text)`, which
answers `True`, `False` or `None` ("not sure yet") for a sample of input;
the GHC collapser answers only `True` or `None`.

The shared pieces live in `stackfold.collapse`: the `Collapser` and
`ParallelCollapser` base classes, the thread-safe `Occurrences` counter
and `InvalidDataError`. The command-line functions are in `stackfold.cli`
(`collapse_dtrace_main`, `collapse_ghcprof_main`, `parse_dtrace_args`,
`parse_ghcprof_args`).

Smaller helpers:

- `stackfold.demangle.fix_partially_demangled_rust_symbol` repairs Rust
  symbols such as
  `_$LT$std..fs..ReadDir$u20$as$u20$core..iter..Iterator$GT$::next::hc14f1750ca79129b`
  into `<std::fs::ReadDir as core::iter::Iterator>::next`.
- `stackfold.matcher.is_kernel` and `stackfold.matcher.is_vmlinux` tell
  whether a module name refers to kernel code.

## What it does not do

stackfold only produces folded stack lines. It does not draw flame
graphs, compare two folded profiles, or guess the input format; and it
reads only DTrace `ustack()` output and GHC `.prof` files, not the output
of other profilers such as `perf`.

## Running the tests

```
pip install .[test]
pytest
```