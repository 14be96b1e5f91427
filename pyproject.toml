[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "stackfold"
version = "0.1.0"
description = "Collapse DTrace ustack() output and GHC .prof call graphs into folded stack lines for flame graphs"
requires-python = ">=3.10"
dependencies = []
keywords = ["profiling", "flamegraph", "dtrace", "ghc", "stack", "folded"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Debuggers",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
stackfold-collapse-dtrace = "stackfold.cli:collapse_dtrace_main"
stackfold-collapse-ghcprof = "stackfold.cli:collapse_ghcprof_main"

[tool.hatch.build.targets.wheel]
packages = ["stackfold"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
