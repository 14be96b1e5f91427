"""Repair of Rust symbols that profilers demangled only partially."""

_RUST_HASH_LENGTH = 17
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")

_ESCAPES = (
    ("$SP$", "@"),
    ("$BP$", "*"),
    ("$RF$", "&"),
    ("$LT$", "<"),
    ("$GT$", ">"),
    ("$LP$", "("),
    ("$RP$", ")"),
    ("$C$", ","),
    ("$u7e$", "~"),
    ("$u20$", " "),
    ("$u27$", "'"),
    ("$u3d$", "="),
    ("$u5b$", "["),
    ("$u5d$", "]"),
    ("$u7b$", "{"),
    ("$u7d$", "}"),
    ("$u3b$", ";"),
    ("$u2b$", "+"),
    ("$u21$", "!"),
    ("$u22$", '"'),
)


def _is_rust_hash(s: str) -> bool:
    return s.startswith("h") and all(c in _HEX_DIGITS for c in s[1:])


def _next_special(rest: str) -> int:
    positions = [i for i in (rest.find("$"), rest.find(".")) if i >= 0]
    return min(positions) if positions else len(rest)


def fix_partially_demangled_rust_symbol(symbol: str) -> str:
    """Finish demangling a Rust symbol that a profiler left half-mangled.

    Symbols without a trailing Rust hash are returned unchanged.
    """
    if len(symbol) < _RUST_HASH_LENGTH or not _is_rust_hash(symbol[-_RUST_HASH_LENGTH:]):
        return symbol

    rest = symbol[:-_RUST_HASH_LENGTH]
    if rest.endswith("::"):
        rest = rest[:-2]
    if rest.startswith("_$"):
        rest = rest[1:]

    parts: list[str] = []
    while rest:
        if rest.startswith("."):
            if rest[1:2] == ".":
                parts.append("::")
                rest = rest[2:]
            else:
                parts.append(".")
                rest = rest[1:]
        elif rest.startswith("$"):
            for pattern, replacement in _ESCAPES:
                if rest.startswith(pattern):
                    parts.append(replacement)
                    rest = rest[len(pattern):]
                    break
            else:
                parts.append(rest)
                break
        else:
            idx = _next_special(rest)
            parts.append(rest[:idx])
            rest = rest[idx:]

    return "".join(parts)