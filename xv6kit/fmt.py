"""Minimal printf-style formatting: %d, %x, %p, %s (and %c for user code)."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

_UPPER = "0123456789ABCDEF"
_LOWER = "0123456789abcdef"


def format_int(value: int, base: int, signed: bool = True, upper: bool = False) -> str:
    """Render value as a 32-bit integer in the given base."""
    if not 2 <= base <= 16:
        raise ValueError("base must be between 2 and 16")
    digits = _UPPER if upper else _LOWER
    x = value & 0xFFFFFFFF
    negative = bool(signed and x & 0x80000000)
    if negative:
        x = -x & 0xFFFFFFFF
    out = []
    while True:
        x, r = divmod(x, base)
        out.append(digits[r])
        if x == 0:
            break
    if negative:
        out.append("-")
    return "".join(reversed(out))


def _next(args: Iterator[Any]) -> Any:
    try:
        return next(args)
    except StopIteration:
        raise TypeError("not enough arguments for format string") from None


def _string(arg: Any) -> str:
    if arg is None:
        return "(null)"
    if isinstance(arg, (bytes, bytearray)):
        return bytes(arg).decode("latin-1")
    return str(arg)


def format(fmt: str, *args: Any) -> str:
    """Format as user-level printf does: upper-case hex, %c supported."""
    it = iter(args)
    out = []
    pending = False
    for c in fmt:
        if not pending:
            if c == "%":
                pending = True
            else:
                out.append(c)
            continue
        pending = False
        if c == "d":
            out.append(format_int(_next(it), 10, True, True))
        elif c in "xp":
            out.append(format_int(_next(it), 16, False, True))
        elif c == "s":
            out.append(_string(_next(it)))
        elif c == "c":
            arg = _next(it)
            out.append(chr(arg & 0xFF) if isinstance(arg, int) else str(arg))
        elif c == "%":
            out.append("%")
        else:
            out.append("%" + c)
    return "".join(out)


def kernel_format(fmt: str, *args: Any) -> str:
    """Format as the kernel console does: lower-case hex, no %c."""
    it = iter(args)
    out = []
    chars = iter(fmt)
    for c in chars:
        if c != "%":
            out.append(c)
            continue
        c = next(chars, "")
        if not c:
            break
        if c == "d":
            out.append(format_int(_next(it), 10, True, False))
        elif c in "xp":
            out.append(format_int(_next(it), 16, False, False))
        elif c == "s":
            out.append(_string(_next(it)))
        elif c == "%":
            out.append("%")
        else:
            out.append("%" + c)
    return "".join(out)