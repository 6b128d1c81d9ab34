"""Console: line-edited keyboard input, output to a serial stream and a CGA screen."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable

from .disk import KernelPanic

INPUT_BUF = 128
BACKSPACE = 0x100
COLS = 80
ROWS = 25


def _ctrl(ch: str) -> int:
    return ord(ch) - ord("@")


_NEWLINE = ord("\n")


class CgaScreen:
    """An 80x25 text-mode screen; the last row is never written to."""

    def __init__(self) -> None:
        self.cells = [0] * (COLS * ROWS)
        self.cursor = 0

    def put(self, c: int) -> None:
        """Draw one character, handling newline, backspace and scrolling."""
        pos = self.cursor
        if c == _NEWLINE:
            pos += COLS - pos % COLS
        elif c == BACKSPACE:
            if pos > 0:
                pos -= 1
        else:
            self.cells[pos] = (c & 0xFF) | 0x0700
            pos += 1

        if pos < 0 or pos > ROWS * COLS:
            raise KernelPanic("pos under/overflow")

        if pos // COLS >= ROWS - 1:
            self.cells[: 23 * COLS] = self.cells[COLS : 24 * COLS]
            pos -= COLS
            self.cells[pos : 24 * COLS] = [0] * (24 * COLS - pos)

        self.cursor = pos
        self.cells[pos] = ord(" ") | 0x0700

    def text(self) -> str:
        """Screen contents as lines, trailing blanks removed."""
        rows = (
            "".join(chr(cell & 0xFF) if cell & 0xFF else " " for cell in self.cells[i : i + COLS]).rstrip()
            for i in range(0, ROWS * COLS, COLS)
        )
        return "\n".join(rows).rstrip("\n")


class Console:
    """Keyboard input buffer with line editing, plus serial and screen output."""

    def __init__(
        self,
        *,
        screen: CgaScreen | None = None,
        procdump: Callable[[], None] | None = None,
        killed: Callable[[], bool] | None = None,
    ) -> None:
        self.screen = screen if screen is not None else CgaScreen()
        self.output = bytearray()
        self._procdump = procdump
        self._killed = killed if killed is not None else (lambda: False)
        self._cond = threading.Condition()
        self._buf = [0] * INPUT_BUF
        self._r = 0  # read index
        self._w = 0  # write index
        self._e = 0  # edit index

    def put(self, c: int) -> None:
        """Emit one character to the serial output and the screen."""
        if c == BACKSPACE:
            self.output += b"\b \b"
        else:
            self.output.append(c & 0xFF)
        self.screen.put(c)

    def interrupt(self, chars: Iterable[int] | str) -> None:
        """Handle typed characters: ^P process listing, ^U kill line, backspace."""
        codes = (ord(ch) for ch in chars) if isinstance(chars, str) else chars
        doprocdump = False
        with self._cond:
            for c in codes:
                if c == _ctrl("P"):
                    doprocdump = True
                elif c == _ctrl("U"):
                    while self._e != self._w and self._buf[(self._e - 1) % INPUT_BUF] != _NEWLINE:
                        self._e -= 1
                        self.put(BACKSPACE)
                elif c in (_ctrl("H"), 0x7F):
                    if self._e != self._w:
                        self._e -= 1
                        self.put(BACKSPACE)
                elif c != 0 and self._e - self._r < INPUT_BUF:
                    if c == ord("\r"):
                        c = _NEWLINE
                    self._buf[self._e % INPUT_BUF] = c & 0xFF
                    self._e += 1
                    self.put(c)
                    if c == _NEWLINE or c == _ctrl("D") or self._e == self._r + INPUT_BUF:
                        self._w = self._e
                        self._cond.notify_all()
        if doprocdump and self._procdump is not None:
            self._procdump()

    def read(self, n: int) -> bytes:
        """Read up to n bytes, stopping after a newline; ^D marks end of file."""
        target = n
        out = bytearray()
        with self._cond:
            while n > 0:
                while self._r == self._w:
                    if self._killed():
                        raise InterruptedError("console read interrupted")
                    self._cond.wait(timeout=0.1)
                c = self._buf[self._r % INPUT_BUF]
                self._r += 1
                if c == _ctrl("D"):
                    if n < target:
                        # Keep ^D so the next read returns nothing.
                        self._r -= 1
                    break
                out.append(c)
                n -= 1
                if c == _NEWLINE:
                    break
        return bytes(out)

    def write(self, data: bytes) -> int:
        """Write bytes to the console; returns the count written."""
        with self._cond:
            for b in data:
                self.put(b & 0xFF)
        return len(data)