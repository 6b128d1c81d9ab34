"""Write-ahead redo log that makes multi-block file system updates atomic."""

from __future__ import annotations

import struct
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from .bufcache import Buffer, BufferCache
from .disk import KernelPanic
from .layout import BSIZE, Superblock

LOGSIZE = 30
MAXOPBLOCKS = 10

_INT = struct.Struct("<i")


class Log:
    """A physical redo log living in the blocks the superblock reserves.

    On disk the log is a header block (count, then block numbers) followed by
    copies of the logged blocks. A transaction may span several operations;
    it commits when the last outstanding operation ends.
    """

    def __init__(
        self,
        cache: BufferCache,
        dev: int,
        *,
        logsize: int = LOGSIZE,
        maxopblocks: int = MAXOPBLOCKS,
    ) -> None:
        if _INT.size * (1 + logsize) >= BSIZE:
            raise KernelPanic("initlog: too big logheader")
        self.cache = cache
        self.dev = dev
        self.logsize = logsize
        self.maxopblocks = maxopblocks
        self.outstanding = 0
        self.committing = False
        self.blocks: list[int] = []
        self._cond = threading.Condition()
        with cache.read(dev, 1) as bp:
            sb = Superblock.from_bytes(bytes(bp.data))
        self.start = sb.logstart
        self.size = sb.nlog
        self.recover()

    def _read_head(self) -> None:
        with self.cache.read(self.dev, self.start) as buf:
            (n,) = _INT.unpack_from(buf.data)
            if not 0 <= n <= self.logsize:
                raise KernelPanic("log header corrupt")
            self.blocks = list(struct.unpack_from(f"<{n}i", buf.data, _INT.size))

    def _write_head(self) -> None:
        with self.cache.read(self.dev, self.start) as buf:
            n = len(self.blocks)
            struct.pack_into(f"<i{n}i", buf.data, 0, n, *self.blocks)
            self.cache.write(buf)

    def _install(self) -> None:
        for tail, blockno in enumerate(self.blocks):
            with self.cache.read(self.dev, self.start + tail + 1) as lbuf:
                with self.cache.read(self.dev, blockno) as dbuf:
                    dbuf.data[:] = lbuf.data
                    self.cache.write(dbuf)

    def _write_log(self) -> None:
        for tail, blockno in enumerate(self.blocks):
            with self.cache.read(self.dev, self.start + tail + 1) as to:
                with self.cache.read(self.dev, blockno) as frm:
                    to.data[:] = frm.data
                self.cache.write(to)

    def _commit(self) -> None:
        if self.blocks:
            self._write_log()
            self._write_head()
            self._install()
            self.blocks = []
            self._write_head()

    def recover(self) -> None:
        """Install any committed transaction found on disk, then clear the log."""
        self._read_head()
        self._install()
        self.blocks = []
        self._write_head()

    def begin_op(self) -> None:
        """Start a file system operation, waiting while log space is short."""
        with self._cond:
            while True:
                if self.committing:
                    self._cond.wait()
                elif len(self.blocks) + (self.outstanding + 1) * self.maxopblocks > self.logsize:
                    self._cond.wait()
                else:
                    self.outstanding += 1
                    return

    def end_op(self) -> None:
        """Finish an operation; the last one out commits the transaction."""
        do_commit = False
        with self._cond:
            if self.outstanding < 1:
                raise KernelPanic("end_op outside of trans")
            self.outstanding -= 1
            if self.committing:
                raise KernelPanic("log.committing")
            if self.outstanding == 0:
                do_commit = True
                self.committing = True
            else:
                self._cond.notify_all()
        if do_commit:
            try:
                self._commit()
            finally:
                with self._cond:
                    self.committing = False
                    self._cond.notify_all()

    def write(self, buf: Buffer) -> None:
        """Record a modified buffer in the current transaction and pin it."""
        if len(self.blocks) >= self.logsize or len(self.blocks) >= self.size - 1:
            raise KernelPanic("too big a transaction")
        if self.outstanding < 1:
            raise KernelPanic("log_write outside of trans")
        with self._cond:
            if buf.blockno not in self.blocks:
                self.blocks.append(buf.blockno)
            buf.dirty = True

    @contextmanager
    def transaction(self) -> Iterator[Log]:
        """Run the enclosed block as one file system operation."""
        self.begin_op()
        try:
            yield self
        finally:
            self.end_op()