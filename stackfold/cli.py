"""Command-line entry points for the DTrace and GHC profile collapsers."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from stackfold.collapse import DEFAULT_NTHREADS, Collapser, InvalidDataError
from stackfold.dtrace import DtraceFolder, DtraceOptions
from stackfold.ghcprof import GhcprofFolder, GhcprofOptions, Source

_TRACE = logging.DEBUG - 5

_DTRACE_EPILOG = """\
[1] This processes the result of the dtrace ustack() as run with:
        dtrace -x ustackframes=100 -n 'profile-97 /pid == 12345 && arg1/ { @[ustack()] = count(); } tick-60s { exit(0); }'
    or including kernel time:
        dtrace -x ustackframes=100 -n 'profile-97 /pid == 12345/ { @[ustack()] = count(); } tick-60s { exit(0); }'
"""

_GHCPROF_EPILOG = """\
[1] This processes the .prof output of GHC (Glasgow Haskell Compiler)
"""


def _uint(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid unsigned integer: {value!r}") from None
    if number < 0:
        raise argparse.ArgumentTypeError(f"invalid unsigned integer: {value!r}")
    return number


def _add_logging_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-q", "--quiet", action="store_true", help="Silence all log output")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Verbose logging mode (-v, -vv, -vvv)",
    )


def _log_level(quiet: bool, verbose: int) -> int | None:
    if quiet:
        return None
    if verbose == 0:
        return logging.WARNING
    if verbose == 1:
        return logging.INFO
    if verbose == 2:
        return logging.DEBUG
    return _TRACE


def _init_logging(level: int | None) -> None:
    logger = logging.getLogger("stackfold")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = False
    if level is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname)s %(name)s] %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level)


def _dtrace_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="collapse-dtrace",
        description="Collapse DTrace ustack() output into folded stack lines.",
        epilog=_DTRACE_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--includeoffset", action="store_true", help="Include offsets")
    _add_logging_flags(parser)
    parser.add_argument(
        "-n",
        "--nthreads",
        type=_uint,
        default=DEFAULT_NTHREADS,
        metavar="UINT",
        help=f"Number of threads to use. [default: {DEFAULT_NTHREADS}]",
    )
    parser.add_argument(
        "infile",
        nargs="?",
        type=Path,
        metavar="PATH",
        help="Dtrace script output file, or STDIN if not specified",
    )
    return parser


def _ghcprof_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="collapse-ghcprof",
        description="Collapse GHC .prof call graphs into folded stack lines.",
        epilog=_GHCPROF_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--time",
        action="store_true",
        help="Source stack cost centre from the %%time column "
        "(individual total %% of runtime; the default)",
    )
    source.add_argument(
        "--bytes",
        action="store_true",
        help="Source stack cost centre from the bytes column (bytes allocated)",
    )
    source.add_argument(
        "--ticks",
        action="store_true",
        help="Source stack cost centre from the ticks column (runtime ticks)",
    )
    _add_logging_flags(parser)
    parser.add_argument(
        "infile",
        nargs="?",
        type=Path,
        metavar="PATH",
        help="ghc .prof output file, or STDIN if not specified",
    )
    return parser


def parse_dtrace_args(
    argv: Sequence[str] | None = None,
) -> tuple[Path | None, DtraceOptions, int | None]:
    """Parse arguments into the input path, folder options and log level (``None`` if quiet)."""
    args = _dtrace_parser().parse_args(argv)
    options = DtraceOptions(includeoffset=args.includeoffset, nthreads=args.nthreads)
    return args.infile, options, _log_level(args.quiet, args.verbose)


def parse_ghcprof_args(
    argv: Sequence[str] | None = None,
) -> tuple[Path | None, GhcprofOptions, int | None]:
    """Parse arguments into the input path, folder options and log level (``None`` if quiet)."""
    args = _ghcprof_parser().parse_args(argv)
    if args.ticks:
        source = Source.TICKS
    elif args.bytes:
        source = Source.BYTES
    else:
        source = Source.PERCENT_TIME
    return args.infile, GhcprofOptions(source=source), _log_level(args.quiet, args.verbose)


def _run(folder: Collapser, infile: Path | None) -> int:
    try:
        folder.collapse_file_to_stdout(infile)
    except (OSError, InvalidDataError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


def collapse_dtrace_main(argv: Sequence[str] | None = None) -> int:
    """Run the DTrace collapser; returns the process exit status."""
    infile, options, level = parse_dtrace_args(argv)
    _init_logging(level)
    return _run(DtraceFolder(options), infile)


def collapse_ghcprof_main(argv: Sequence[str] | None = None) -> int:
    """Run the GHC profile collapser; returns the process exit status."""
    infile, options, level = parse_ghcprof_args(argv)
    _init_logging(level)
    return _run(GhcprofFolder(options), infile)