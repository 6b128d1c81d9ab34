"""Open files: a shared table of file structures over inodes and pipes."""

from __future__ import annotations

import enum
import errno
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .disk import KernelPanic
from .fs import FileSystem, Inode, Stat
from .layout import BSIZE

PIPESIZE = 512
NFILE = 100

Killed = Callable[[], bool]


class FileKind(enum.Enum):
    """What an open file refers to."""

    NONE = 0
    PIPE = 1
    INODE = 2


def _never() -> bool:
    return False


class Pipe:
    """A bounded byte channel with separately closable read and write ends."""

    def __init__(self, *, killed: Killed | None = None) -> None:
        self._data = bytearray(PIPESIZE)
        self.nread = 0
        self.nwrite = 0
        self.readopen = True
        self.writeopen = True
        self._killed = killed if killed is not None else _never
        self._cond = threading.Condition()

    def write(self, data: bytes) -> int:
        """Write all of data, waiting while the pipe is full."""
        payload = bytes(data)
        with self._cond:
            for b in payload:
                while self.nwrite == self.nread + PIPESIZE:
                    if not self.readopen:
                        raise BrokenPipeError(errno.EPIPE, "pipe has no reader")
                    if self._killed():
                        raise InterruptedError("pipe write interrupted")
                    self._cond.notify_all()
                    self._cond.wait(timeout=0.1)
                self._data[self.nwrite % PIPESIZE] = b
                self.nwrite += 1
            self._cond.notify_all()
        return len(payload)

    def read(self, n: int) -> bytes:
        """Read up to n bytes, waiting while the pipe is empty and a writer remains."""
        with self._cond:
            while self.nread == self.nwrite and self.writeopen:
                if self._killed():
                    raise InterruptedError("pipe read interrupted")
                self._cond.wait(timeout=0.1)
            count = min(max(n, 0), self.nwrite - self.nread)
            start = self.nread % PIPESIZE
            out = bytes(self._data[start : start + count])
            if len(out) < count:
                out += bytes(self._data[: count - len(out)])
            self.nread += count
            self._cond.notify_all()
        return out

    def close(self, writable: bool) -> None:
        """Close the write end if writable, else the read end."""
        with self._cond:
            if writable:
                self.writeopen = False
            else:
                self.readopen = False
            self._cond.notify_all()


@dataclass(eq=False)
class File:
    """An entry of the file table: a reference-counted view of a pipe or inode."""

    kind: FileKind = FileKind.NONE
    ref: int = 0
    readable: bool = False
    writable: bool = False
    pipe: Pipe | None = None
    ip: Inode | None = None
    off: int = 0
    _table: Any = field(default=None, repr=False)

    @property
    def _fs(self) -> FileSystem:
        fs = self._table.fs
        if fs is None:
            raise KernelPanic("file table has no file system")
        return fs

    def read(self, n: int) -> bytes:
        """Read up to n bytes from the current offset."""
        if not self.readable:
            raise OSError(errno.EBADF, "file not open for reading")
        if self.kind is FileKind.PIPE:
            return self.pipe.read(n)
        if self.kind is FileKind.INODE:
            fs = self._fs
            fs.ilock(self.ip)
            try:
                data = fs.readi(self.ip, self.off, n)
                self.off += len(data)
            finally:
                fs.iunlock(self.ip)
            return data
        raise KernelPanic("fileread")

    def write(self, data: bytes) -> int:
        """Write all of data at the current offset; returns its length."""
        if not self.writable:
            raise OSError(errno.EBADF, "file not open for writing")
        payload = bytes(data)
        if self.kind is FileKind.PIPE:
            return self.pipe.write(payload)
        if self.kind is FileKind.INODE:
            fs = self._fs
            # A few blocks per transaction: inode, indirect block, bitmap
            # and two blocks of slop for unaligned writes.
            limit = ((fs.log.maxopblocks - 1 - 1 - 2) // 2) * BSIZE
            done = 0
            while done < len(payload):
                chunk = payload[done : done + limit]
                with fs.log.transaction():
                    fs.ilock(self.ip)
                    try:
                        r = fs.writei(self.ip, self.off, chunk)
                        if r > 0:
                            self.off += r
                    finally:
                        fs.iunlock(self.ip)
                if r != len(chunk):
                    raise KernelPanic("short filewrite")
                done += r
            return len(payload)
        raise KernelPanic("filewrite")

    def stat(self) -> Stat:
        """Metadata of the underlying inode."""
        if self.kind is not FileKind.INODE:
            raise OSError(errno.EINVAL, "only inode files have metadata")
        fs = self._fs
        fs.ilock(self.ip)
        try:
            return fs.stat(self.ip)
        finally:
            fs.iunlock(self.ip)

    def dup(self) -> File:
        """Add a reference to this file and return it."""
        with self._table._lock:
            if self.ref < 1:
                raise KernelPanic("filedup")
            self.ref += 1
        return self

    def close(self) -> None:
        """Drop a reference; the last one closes the pipe end or releases the inode."""
        with self._table._lock:
            if self.ref < 1:
                raise KernelPanic("fileclose")
            self.ref -= 1
            if self.ref > 0:
                return
            kind, pipe, ip, writable = self.kind, self.pipe, self.ip, self.writable
            self.kind = FileKind.NONE
            self.pipe = None
            self.ip = None
        if kind is FileKind.PIPE:
            pipe.close(writable)
        elif kind is FileKind.INODE:
            fs = self._fs
            with fs.log.transaction():
                fs.iput(ip)


class FileTable:
    """A fixed pool of file structures shared by the whole system."""

    def __init__(
        self,
        fs: FileSystem | None = None,
        nfile: int = NFILE,
        *,
        killed: Killed | None = None,
    ) -> None:
        if nfile < 1:
            raise ValueError("the file table needs at least one entry")
        self.fs = fs
        self._killed = killed
        self._lock = threading.Lock()
        self.files = [File(_table=self) for _ in range(nfile)]

    def alloc(self) -> File:
        """Take a free file structure with one reference."""
        with self._lock:
            for f in self.files:
                if f.ref == 0:
                    f.ref = 1
                    f.kind = FileKind.NONE
                    f.readable = False
                    f.writable = False
                    f.pipe = None
                    f.ip = None
                    f.off = 0
                    return f
        raise OSError(errno.ENFILE, "file table full")

    def open_inode(self, ip: Inode, readable: bool, writable: bool) -> File:
        """Open a file over ip; the file takes over the caller's reference."""
        if self.fs is None:
            raise ValueError("inode files need a file system")
        f = self.alloc()
        f.kind = FileKind.INODE
        f.ip = ip
        f.off = 0
        f.readable = bool(readable)
        f.writable = bool(writable)
        return f

    def open_pipe(self) -> tuple[File, File]:
        """Create a pipe; return its read end and its write end."""
        reader = self.alloc()
        try:
            writer = self.alloc()
        except OSError:
            reader.close()
            raise
        pipe = Pipe(killed=self._killed)
        reader.kind = FileKind.PIPE
        reader.readable = True
        reader.writable = False
        reader.pipe = pipe
        writer.kind = FileKind.PIPE
        writer.readable = False
        writer.writable = True
        writer.pipe = pipe
        return reader, writer