"""Buffer cache: cached copies of disk blocks, one user at a time."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

from .disk import KernelPanic, MemoryDisk
from .layout import BSIZE


@dataclass(eq=False)
class Buffer:
    """A cached disk block. Only the holder of its lock may use it."""

    dev: int | None = None
    blockno: int = 0
    data: bytearray = field(default_factory=lambda: bytearray(BSIZE))
    valid: bool = False
    dirty: bool = False
    refcnt: int = 0
    _cache: Any = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _holder: int | None = field(default=None, repr=False)

    @property
    def holding(self) -> bool:
        return self._holder == threading.get_ident()

    def _acquire(self) -> None:
        self._lock.acquire()
        self._holder = threading.get_ident()

    def _release(self) -> None:
        self._holder = None
        self._lock.release()

    def __enter__(self) -> Buffer:
        return self

    def __exit__(self, *exc: object) -> None:
        self._cache.release(self)


class BufferCache:
    """A fixed pool of buffers kept in most-recently-used order."""

    def __init__(self, disk: MemoryDisk, nbuf: int = 30) -> None:
        if nbuf < 1:
            raise ValueError("the cache needs at least one buffer")
        self.disk = disk
        self._lock = threading.Lock()
        # Index 0 is the most recently used buffer.
        self._order = [Buffer(_cache=self) for _ in range(nbuf)]

    def _get(self, dev: int, blockno: int) -> Buffer:
        with self._lock:
            for buf in self._order:
                if buf.dev == dev and buf.blockno == blockno:
                    buf.refcnt += 1
                    break
            else:
                # A dirty buffer is pinned by the log even with no references.
                for buf in reversed(self._order):
                    if buf.refcnt == 0 and not buf.dirty:
                        buf.dev = dev
                        buf.blockno = blockno
                        buf.valid = False
                        buf.dirty = False
                        buf.refcnt = 1
                        break
                else:
                    raise KernelPanic("bget: no buffers")
        buf._acquire()
        return buf

    def _sync(self, buf: Buffer) -> None:
        if not buf.holding:
            raise KernelPanic("iderw: buf not locked")
        if buf.valid and not buf.dirty:
            raise KernelPanic("iderw: nothing to do")
        if buf.dev != self.disk.dev:
            raise KernelPanic(f"iderw: request not for disk {self.disk.dev}")
        if buf.dirty:
            self.disk.write_block(buf.blockno, bytes(buf.data))
            buf.dirty = False
        else:
            buf.data[:] = self.disk.read_block(buf.blockno)
        buf.valid = True

    def read(self, dev: int, blockno: int) -> Buffer:
        """Return a locked buffer holding the block's contents."""
        buf = self._get(dev, blockno)
        if not buf.valid:
            self._sync(buf)
        return buf

    def write(self, buf: Buffer) -> None:
        """Write a locked buffer's contents to disk."""
        if not buf.holding:
            raise KernelPanic("bwrite")
        buf.dirty = True
        self._sync(buf)

    def release(self, buf: Buffer) -> None:
        """Unlock a buffer; with no references left it becomes most recent."""
        if not buf.holding:
            raise KernelPanic("brelse")
        buf._release()
        with self._lock:
            buf.refcnt -= 1
            if buf.refcnt == 0:
                self._order.remove(buf)
                self._order.insert(0, buf)