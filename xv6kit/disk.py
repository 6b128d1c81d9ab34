"""A block device kept in memory."""

from __future__ import annotations

import os

from .layout import BSIZE


class KernelPanic(RuntimeError):
    """An unrecoverable inconsistency inside the file system machinery."""


class MemoryDisk:
    """A disk whose blocks live in a bytearray."""

    def __init__(self, data: bytes | None = None, *, nblocks: int = 0, dev: int = 1) -> None:
        if data is None:
            if nblocks < 0:
                raise ValueError("nblocks must not be negative")
            self._data = bytearray(nblocks * BSIZE)
        else:
            self._data = bytearray(data)
        self.dev = dev
        self.nblocks = len(self._data) // BSIZE

    def __len__(self) -> int:
        return self.nblocks

    def _offset(self, blockno: int) -> int:
        if not 0 <= blockno < self.nblocks:
            raise KernelPanic("iderw: block out of range")
        return blockno * BSIZE

    def read_block(self, blockno: int) -> bytes:
        """Return the contents of one block."""
        off = self._offset(blockno)
        return bytes(self._data[off : off + BSIZE])

    def write_block(self, blockno: int, data: bytes) -> None:
        """Overwrite one block; data must be exactly one block long."""
        if len(data) != BSIZE:
            raise ValueError(f"a block is {BSIZE} bytes, got {len(data)}")
        off = self._offset(blockno)
        self._data[off : off + BSIZE] = data

    def to_bytes(self) -> bytes:
        return bytes(self._data)

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> MemoryDisk:
        """Load a disk image from a file, as device 1."""
        with open(path, "rb") as fh:
            return cls(fh.read())