"""Collapse DTrace and GHC profiler stack traces into folded stack lines."""

__version__ = "0.1.0"