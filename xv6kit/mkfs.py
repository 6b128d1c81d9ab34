"""Build a file system image holding a root directory and some files."""

from __future__ import annotations

import os
import struct
import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from .journal import LOGSIZE
from .layout import (
    BPB,
    BSIZE,
    DINODE_SIZE,
    DIRSIZ,
    IPB,
    NDIRECT,
    NINDIRECT,
    ROOTINO,
    DirEntry,
    DiskInode,
    InodeType,
    Superblock,
    inode_block,
)

FSSIZE = 1000
NINODES = 200

_ADDR = struct.Struct("<I")


@dataclass(frozen=True)
class _Layout:
    fssize: int
    ninodes: int
    nlog: int

    @property
    def nbitmap(self) -> int:
        return self.fssize // BPB + 1

    @property
    def ninodeblocks(self) -> int:
        return self.ninodes // IPB + 1

    @property
    def nmeta(self) -> int:
        return 2 + self.nlog + self.ninodeblocks + self.nbitmap

    @property
    def nblocks(self) -> int:
        return self.fssize - self.nmeta

    def superblock(self) -> Superblock:
        return Superblock(
            size=self.fssize,
            nblocks=self.nblocks,
            ninodes=self.ninodes,
            nlog=self.nlog,
            logstart=2,
            inodestart=2 + self.nlog,
            bmapstart=2 + self.nlog + self.ninodeblocks,
        )


def _layout(fssize: int, ninodes: int, logsize: int) -> _Layout:
    if fssize < 1 or ninodes < 2 or logsize < 1:
        raise ValueError("sizes must be positive and leave room for the root inode")
    layout = _Layout(fssize, ninodes, logsize)
    if layout.nblocks <= 0:
        raise ValueError("image too small for its metadata")
    return layout


class _Image:
    def __init__(self, layout: _Layout) -> None:
        self.layout = layout
        self.sb = layout.superblock()
        self.data = bytearray(layout.fssize * BSIZE)
        raw = self.sb.to_bytes()
        self.data[BSIZE : BSIZE + len(raw)] = raw
        self.freeinode = 1
        self.freeblock = layout.nmeta

    def _slot(self, inum: int) -> int:
        return inode_block(inum, self.sb) * BSIZE + (inum % IPB) * DINODE_SIZE

    def rinode(self, inum: int) -> DiskInode:
        off = self._slot(inum)
        return DiskInode.from_bytes(bytes(self.data[off : off + DINODE_SIZE]))

    def winode(self, inum: int, din: DiskInode) -> None:
        off = self._slot(inum)
        self.data[off : off + DINODE_SIZE] = din.to_bytes()

    def ialloc(self, itype: int) -> int:
        inum = self.freeinode
        if inum >= self.layout.ninodes:
            raise ValueError("out of inodes")
        self.freeinode += 1
        self.winode(inum, DiskInode(type=int(itype), nlink=1, size=0))
        return inum

    def _alloc_block(self) -> int:
        if self.freeblock >= self.layout.fssize:
            raise ValueError("file system image is full")
        b = self.freeblock
        self.freeblock += 1
        return b

    def iappend(self, inum: int, content: bytes) -> None:
        din = self.rinode(inum)
        off = din.size
        pos = 0
        while pos < len(content):
            fbn = off // BSIZE
            if fbn < NDIRECT:
                if not din.addrs[fbn]:
                    din.addrs[fbn] = self._alloc_block()
                x = din.addrs[fbn]
            elif fbn < NDIRECT + NINDIRECT:
                if not din.addrs[NDIRECT]:
                    din.addrs[NDIRECT] = self._alloc_block()
                entry = din.addrs[NDIRECT] * BSIZE + (fbn - NDIRECT) * _ADDR.size
                (x,) = _ADDR.unpack_from(self.data, entry)
                if not x:
                    x = self._alloc_block()
                    _ADDR.pack_into(self.data, entry, x)
            else:
                raise ValueError("file too large for the image builder")
            n1 = min(len(content) - pos, (fbn + 1) * BSIZE - off)
            start = x * BSIZE + off % BSIZE
            self.data[start : start + n1] = content[pos : pos + n1]
            pos += n1
            off += n1
        din.size = off
        self.winode(inum, din)

    def mark_used(self, used: int) -> None:
        if used >= BPB:
            raise ValueError("too many blocks in use for one bitmap block")
        bitmap = bytearray(BSIZE)
        full, rest = divmod(used, 8)
        bitmap[:full] = b"\xff" * full
        if rest:
            bitmap[full] = (1 << rest) - 1
        start = self.sb.bmapstart * BSIZE
        self.data[start : start + BSIZE] = bitmap


def _build(files: Iterable[tuple[str, bytes]], layout: _Layout) -> tuple[bytes, int]:
    image = _Image(layout)
    rootino = image.ialloc(InodeType.DIR)
    if rootino != ROOTINO:
        raise ValueError("root inode was not the first inode")
    image.iappend(rootino, DirEntry(rootino, ".").to_bytes())
    image.iappend(rootino, DirEntry(rootino, "..").to_bytes())

    for name, content in files:
        if "/" in name:
            raise ValueError(f"file name may not contain '/': {name!r}")
        # Host binaries are named with a leading underscore.
        if name.startswith("_"):
            name = name[1:]
        inum = image.ialloc(InodeType.FILE)
        image.iappend(rootino, DirEntry(inum, name[:DIRSIZ]).to_bytes())
        image.iappend(inum, bytes(content))

    din = image.rinode(rootino)
    din.size = (din.size // BSIZE + 1) * BSIZE
    image.winode(rootino, din)

    used = image.freeblock
    image.mark_used(used)
    return bytes(image.data), used


def build_image(
    files: Mapping[str, bytes] | Iterable[tuple[str, bytes]],
    fssize: int = FSSIZE,
    ninodes: int = NINODES,
    logsize: int = LOGSIZE,
) -> bytes:
    """Return a whole file system image with files in its root directory."""
    items = files.items() if isinstance(files, Mapping) else files
    image, _ = _build(items, _layout(fssize, ninodes, logsize))
    return image


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        sys.stderr.write("Usage: mkfs fs.img files...\n")
        return 1
    image_path, *paths = args
    try:
        files = []
        for path in paths:
            with open(path, "rb") as fh:
                files.append((os.path.basename(path), fh.read()))
    except OSError as exc:
        sys.stderr.write(f"{exc.filename}: {exc.strerror}\n")
        return 1

    layout = _layout(FSSIZE, NINODES, LOGSIZE)
    print(
        f"nmeta {layout.nmeta} (boot, super, log blocks {layout.nlog} "
        f"inode blocks {layout.ninodeblocks}, bitmap blocks {layout.nbitmap}) "
        f"blocks {layout.nblocks} total {layout.fssize}"
    )
    try:
        image, used = _build(files, layout)
    except ValueError as exc:
        sys.stderr.write(f"mkfs: {exc}\n")
        return 1
    print(f"balloc: first {used} blocks have been allocated")
    print(f"balloc: write bitmap block at sector {layout.superblock().bmapstart}")
    try:
        with open(image_path, "wb") as fh:
            fh.write(image)
    except OSError as exc:
        sys.stderr.write(f"{image_path}: {exc.strerror}\n")
        return 1
    return 0