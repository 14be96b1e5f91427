"""Helpers that recognise kernel frames in stack traces."""

_VMLINUX_EXTRA = frozenset("-._")


def is_vmlinux(s: str) -> bool:
    """Return whether *s* names a vmlinux image, with or without a version."""
    vm = s.rfind("vmlinux")
    if vm < 0:
        return False
    return all(
        (c.isascii() and c.isalnum()) or c in _VMLINUX_EXTRA for c in s[vm:]
    )


def is_kernel(s: str) -> bool:
    """Return whether *s* is a kernel module name, module file or vmlinux image."""
    return (s.startswith("[") or s.endswith(".ko") or is_vmlinux(s)) and s != "[unknown]"