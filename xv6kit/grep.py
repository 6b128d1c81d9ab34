"""Simple grep supporting only the ^ . * $ operators."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from typing import BinaryIO

_BUFSIZE = 1024


def match(regex: str, text: str) -> bool:
    """Search for regex anywhere in text."""
    if regex.startswith("^"):
        return _match_here(regex[1:], text)
    return any(_match_here(regex, text[i:]) for i in range(len(text) + 1))


def _match_here(regex: str, text: str) -> bool:
    if not regex:
        return True
    if len(regex) > 1 and regex[1] == "*":
        return _match_star(regex[0], regex[2:], text)
    if regex == "$":
        return text == ""
    if text and (regex[0] == "." or regex[0] == text[0]):
        return _match_here(regex[1:], text[1:])
    return False


def _match_star(c: str, regex: str, text: str) -> bool:
    while True:
        if _match_here(regex, text):
            return True
        if text and (text[0] == c or c == "."):
            text = text[1:]
        else:
            return False


def grep(pattern: str, stream: BinaryIO) -> Iterator[bytes]:
    """Yield each newline-terminated line of stream that matches pattern.

    Lines are read through a fixed buffer; a line too long to fit in it is
    dropped, as is a final line with no newline.
    """
    pending = b""
    while chunk := stream.read(_BUFSIZE - len(pending) - 1):
        pending += chunk
        *lines, rest = pending.split(b"\n")
        for line in lines:
            if match(pattern, line.decode("latin-1")):
                yield line + b"\n"
        pending = rest if lines else b""


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if not args:
        sys.stderr.write("usage: grep pattern [file ...]\n")
        return 1
    pattern, *paths = args
    if not paths:
        for line in grep(pattern, sys.stdin.buffer):
            sys.stdout.write(line.decode("latin-1"))
        return 0
    for path in paths:
        try:
            fh = open(path, "rb")
        except OSError:
            sys.stdout.write(f"grep: cannot open {path}\n")
            return 1
        with fh:
            for line in grep(pattern, fh):
                sys.stdout.write(line.decode("latin-1"))
    return 0