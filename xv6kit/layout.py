"""On-disk file system format: superblock, inodes and directory entries."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field

ROOTINO = 1
BSIZE = 512

NDIRECT = 12
NINDIRECT = BSIZE // 4
NDINDIRECT = NINDIRECT * NINDIRECT
MAXFILE = NDIRECT + NINDIRECT + NDINDIRECT

DIRSIZ = 14

# Major device number of the console.
CONSOLE = 1

_SUPERBLOCK = struct.Struct("<7I")
_DINODE = struct.Struct(f"<4hI{NDIRECT + 2}I")
_DINODE_PAD = 60
_DIRENT = struct.Struct(f"<H{DIRSIZ}s")

DINODE_SIZE = _DINODE.size + _DINODE_PAD
DIRENT_SIZE = _DIRENT.size

# Inodes per block.
IPB = BSIZE // DINODE_SIZE
# Bitmap bits per block.
BPB = BSIZE * 8


class InodeType(enum.IntEnum):
    """Kind of object an inode describes; 0 on disk means a free inode."""

    DIR = 1
    FILE = 2
    DEV = 3
    SYMLINK = 4


def _require(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise ValueError(f"{what} needs {size} bytes, got {len(data)}")


@dataclass
class Superblock:
    """Describes the disk layout."""

    size: int = 0
    nblocks: int = 0
    ninodes: int = 0
    nlog: int = 0
    logstart: int = 0
    inodestart: int = 0
    bmapstart: int = 0

    def to_bytes(self) -> bytes:
        return _SUPERBLOCK.pack(
            self.size,
            self.nblocks,
            self.ninodes,
            self.nlog,
            self.logstart,
            self.inodestart,
            self.bmapstart,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> Superblock:
        _require(data, _SUPERBLOCK.size, "superblock")
        return cls(*_SUPERBLOCK.unpack_from(data))


@dataclass
class DiskInode:
    """On-disk inode structure."""

    type: int = 0
    major: int = 0
    minor: int = 0
    nlink: int = 0
    size: int = 0
    addrs: list[int] = field(default_factory=lambda: [0] * (NDIRECT + 2))

    def to_bytes(self) -> bytes:
        if len(self.addrs) != NDIRECT + 2:
            raise ValueError(f"an inode holds {NDIRECT + 2} addresses, got {len(self.addrs)}")
        packed = _DINODE.pack(self.type, self.major, self.minor, self.nlink, self.size, *self.addrs)
        return packed + bytes(_DINODE_PAD)

    @classmethod
    def from_bytes(cls, data: bytes) -> DiskInode:
        _require(data, DINODE_SIZE, "inode")
        itype, major, minor, nlink, size, *addrs = _DINODE.unpack_from(data)
        return cls(itype, major, minor, nlink, size, list(addrs))


@dataclass
class DirEntry:
    """A directory entry: inode number and a name of at most DIRSIZ bytes."""

    inum: int = 0
    name: str = ""

    def to_bytes(self) -> bytes:
        return _DIRENT.pack(self.inum, self.name.encode("latin-1")[:DIRSIZ])

    @classmethod
    def from_bytes(cls, data: bytes) -> DirEntry:
        _require(data, DIRENT_SIZE, "directory entry")
        inum, raw = _DIRENT.unpack_from(data)
        return cls(inum, raw.split(b"\0", 1)[0].decode("latin-1"))


def inode_block(inum: int, sb: Superblock) -> int:
    """Block holding inode number inum."""
    return inum // IPB + sb.inodestart


def bitmap_block(b: int, sb: Superblock) -> int:
    """Block of the free map holding the bit for block b."""
    return b // BPB + sb.bmapstart