"""File system layers above the log: blocks, inodes, directories and path names."""

from __future__ import annotations

import errno
import struct
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from .bufcache import BufferCache
from .disk import KernelPanic
from .journal import Log
from .layout import (
    BPB,
    BSIZE,
    DINODE_SIZE,
    DIRENT_SIZE,
    DIRSIZ,
    IPB,
    MAXFILE,
    NDINDIRECT,
    NDIRECT,
    NINDIRECT,
    ROOTINO,
    DirEntry,
    DiskInode,
    InodeType,
    Superblock,
    bitmap_block,
    inode_block,
)

NINODE = 50
MAX_DEREFERENCE = 10
# A symbolic link target must be shorter than this.
_SYMLINK_MAX = 128

_ADDR = struct.Struct("<I")
_ADDRS = struct.Struct(f"<{NINDIRECT}I")

DeviceRead = Callable[["Inode", int], bytes]
DeviceWrite = Callable[["Inode", bytes], int]


@dataclass(frozen=True)
class Stat:
    """Metadata about an inode."""

    dev: int
    ino: int
    type: int
    nlink: int
    size: int


@dataclass(eq=False)
class Inode:
    """In-memory copy of an inode; fields below ref are guarded by its lock."""

    dev: int = 0
    inum: int = 0
    ref: int = 0
    valid: bool = False
    type: int = 0
    major: int = 0
    minor: int = 0
    nlink: int = 0
    size: int = 0
    addrs: list[int] = field(default_factory=lambda: [0] * (NDIRECT + 2))
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


def _namecmp(s: str, t: str) -> bool:
    return s[:DIRSIZ] == t[:DIRSIZ]


def skipelem(path: str) -> tuple[str, str] | None:
    """Split off the first path element: (name, rest without leading slashes).

    Returns None when the path holds no element. Names are cut to DIRSIZ.
    """
    path = path.lstrip("/")
    if not path:
        return None
    name, _, rest = path.partition("/")
    return name[:DIRSIZ], rest.lstrip("/")


class FileSystem:
    """Block allocation, the inode cache, inode contents, directories and paths."""

    def __init__(
        self,
        cache: BufferCache,
        log: Log,
        dev: int = 1,
        *,
        ninode: int = NINODE,
        max_dereference: int = MAX_DEREFERENCE,
    ) -> None:
        if ninode < 1:
            raise ValueError("the inode cache needs at least one entry")
        self.cache = cache
        self.log = log
        self.dev = dev
        self.max_dereference = max_dereference
        with cache.read(dev, 1) as bp:
            self.sb = Superblock.from_bytes(bytes(bp.data))
        self._icache_lock = threading.Lock()
        self._inodes = [Inode() for _ in range(ninode)]
        self._devsw: dict[int, tuple[DeviceRead | None, DeviceWrite | None]] = {}
        self.cwd: Inode | None = None

    def register_device(self, major: int, read: DeviceRead | None, write: DeviceWrite | None) -> None:
        """Install the read and write functions for a major device number."""
        self._devsw[major] = (read, write)

    # Blocks.

    def _bzero(self, dev: int, bno: int) -> None:
        with self.cache.read(dev, bno) as bp:
            bp.data[:] = bytes(BSIZE)
            self.log.write(bp)

    def _balloc(self, dev: int) -> int:
        size = self.sb.size
        for b in range(0, size, BPB):
            with self.cache.read(dev, bitmap_block(b, self.sb)) as bp:
                free = next(
                    (bi for bi in range(min(BPB, size - b)) if not bp.data[bi // 8] & (1 << (bi % 8))),
                    None,
                )
                if free is not None:
                    bp.data[free // 8] |= 1 << (free % 8)
                    self.log.write(bp)
            if free is not None:
                self._bzero(dev, b + free)
                return b + free
        raise KernelPanic("balloc: out of blocks")

    def _bfree(self, dev: int, b: int) -> None:
        with self.cache.read(dev, bitmap_block(b, self.sb)) as bp:
            bi = b % BPB
            m = 1 << (bi % 8)
            if not bp.data[bi // 8] & m:
                raise KernelPanic("freeing free block")
            bp.data[bi // 8] &= ~m & 0xFF
            self.log.write(bp)

    # Inodes.

    @staticmethod
    def _slot(inum: int) -> slice:
        off = (inum % IPB) * DINODE_SIZE
        return slice(off, off + DINODE_SIZE)

    def ialloc(self, itype: int) -> Inode:
        """Allocate an on-disk inode of the given type; return it unlocked and referenced."""
        for inum in range(1, self.sb.ninodes):
            slot = self._slot(inum)
            with self.cache.read(self.dev, inode_block(inum, self.sb)) as bp:
                free = DiskInode.from_bytes(bytes(bp.data[slot])).type == 0
                if free:
                    bp.data[slot] = DiskInode(type=int(itype)).to_bytes()
                    self.log.write(bp)
            if free:
                return self._iget(self.dev, inum)
        raise KernelPanic("ialloc: no inodes")

    def iupdate(self, ip: Inode) -> None:
        """Copy a modified in-memory inode to disk. Caller holds ip's lock."""
        with self.cache.read(ip.dev, inode_block(ip.inum, self.sb)) as bp:
            bp.data[self._slot(ip.inum)] = DiskInode(
                ip.type, ip.major, ip.minor, ip.nlink, ip.size, list(ip.addrs)
            ).to_bytes()
            self.log.write(bp)

    def _iget(self, dev: int, inum: int) -> Inode:
        with self._icache_lock:
            empty = None
            for ip in self._inodes:
                if ip.ref > 0 and ip.dev == dev and ip.inum == inum:
                    ip.ref += 1
                    return ip
                if empty is None and ip.ref == 0:
                    empty = ip
            if empty is None:
                raise KernelPanic("iget: no inodes")
            empty.dev = dev
            empty.inum = inum
            empty.ref = 1
            empty.valid = False
            return empty

    def idup(self, ip: Inode) -> Inode:
        """Add a reference to ip and return it."""
        with self._icache_lock:
            ip.ref += 1
        return ip

    def ilock(self, ip: Inode | None) -> None:
        """Lock ip, reading it from disk if necessary."""
        if ip is None or ip.ref < 1:
            raise KernelPanic("ilock")
        ip._acquire()
        if not ip.valid:
            with self.cache.read(ip.dev, inode_block(ip.inum, self.sb)) as bp:
                dip = DiskInode.from_bytes(bytes(bp.data[self._slot(ip.inum)]))
            ip.type = dip.type
            ip.major = dip.major
            ip.minor = dip.minor
            ip.nlink = dip.nlink
            ip.size = dip.size
            ip.addrs = list(dip.addrs)
            ip.valid = True
            if ip.type == 0:
                raise KernelPanic("ilock: no type")

    def iunlock(self, ip: Inode | None) -> None:
        if ip is None or not ip.holding or ip.ref < 1:
            raise KernelPanic("iunlock")
        ip._release()

    def iput(self, ip: Inode) -> None:
        """Drop a reference; the last one to an unlinked inode frees it on disk.

        Must run inside a transaction in case the inode is freed.
        """
        ip._acquire()
        try:
            if ip.valid and ip.nlink == 0:
                with self._icache_lock:
                    r = ip.ref
                if r == 1:
                    self._itrunc(ip)
                    ip.type = 0
                    self.iupdate(ip)
                    ip.valid = False
        finally:
            ip._release()
        with self._icache_lock:
            ip.ref -= 1

    def _iunlockput(self, ip: Inode) -> None:
        self.iunlock(ip)
        self.iput(ip)

    # Inode content.

    def _indirect(self, dev: int, block: int, index: int) -> int:
        """Entry index of an indirect block, allocating a block if it is empty."""
        with self.cache.read(dev, block) as bp:
            (addr,) = _ADDR.unpack_from(bp.data, index * _ADDR.size)
            if addr == 0:
                addr = self._balloc(dev)
                _ADDR.pack_into(bp.data, index * _ADDR.size, addr)
                self.log.write(bp)
        return addr

    def _entries(self, dev: int, block: int) -> tuple[int, ...]:
        with self.cache.read(dev, block) as bp:
            return _ADDRS.unpack_from(bp.data)

    def _bmap(self, ip: Inode, bn: int) -> int:
        if bn < NDIRECT:
            if not ip.addrs[bn]:
                ip.addrs[bn] = self._balloc(ip.dev)
            return ip.addrs[bn]
        bn -= NDIRECT

        if bn < NINDIRECT:
            if not ip.addrs[NDIRECT]:
                ip.addrs[NDIRECT] = self._balloc(ip.dev)
            return self._indirect(ip.dev, ip.addrs[NDIRECT], bn)
        bn -= NINDIRECT

        if bn < NDINDIRECT:
            if not ip.addrs[NDIRECT + 1]:
                ip.addrs[NDIRECT + 1] = self._balloc(ip.dev)
            inner = self._indirect(ip.dev, ip.addrs[NDIRECT + 1], bn // NINDIRECT)
            return self._indirect(ip.dev, inner, bn % NINDIRECT)

        raise KernelPanic("bmap: out of range")

    def _itrunc(self, ip: Inode) -> None:
        for i in range(NDIRECT):
            if ip.addrs[i]:
                self._bfree(ip.dev, ip.addrs[i])
                ip.addrs[i] = 0

        if ip.addrs[NDIRECT]:
            for a in self._entries(ip.dev, ip.addrs[NDIRECT]):
                if a:
                    self._bfree(ip.dev, a)
            self._bfree(ip.dev, ip.addrs[NDIRECT])
            ip.addrs[NDIRECT] = 0

        if ip.addrs[NDIRECT + 1]:
            for a in self._entries(ip.dev, ip.addrs[NDIRECT + 1]):
                if a:
                    for b in self._entries(ip.dev, a):
                        if b:
                            self._bfree(ip.dev, b)
                    self._bfree(ip.dev, a)
            self._bfree(ip.dev, ip.addrs[NDIRECT + 1])
            ip.addrs[NDIRECT + 1] = 0

        ip.size = 0
        self.iupdate(ip)

    def stat(self, ip: Inode) -> Stat:
        """Metadata of ip. Caller holds ip's lock."""
        return Stat(dev=ip.dev, ino=ip.inum, type=ip.type, nlink=ip.nlink, size=ip.size)

    def _device(self, ip: Inode, which: int) -> Callable:
        entry = self._devsw.get(ip.major)
        fn = entry[which] if entry is not None else None
        if fn is None:
            raise OSError(errno.ENXIO, f"no device with major number {ip.major}")
        return fn

    def readi(self, ip: Inode, off: int, n: int) -> bytes:
        """Read up to n bytes at off; fewer at end of file. Caller holds ip's lock."""
        if ip.type == InodeType.DEV:
            return self._device(ip, 0)(ip, n)
        if n < 0 or off < 0 or off > ip.size:
            raise ValueError(f"cannot read {n} bytes at offset {off} of a {ip.size}-byte file")
        n = min(n, ip.size - off)
        out = bytearray()
        while len(out) < n:
            pos = off + len(out)
            start = pos % BSIZE
            m = min(n - len(out), BSIZE - start)
            with self.cache.read(ip.dev, self._bmap(ip, pos // BSIZE)) as bp:
                out += bp.data[start : start + m]
        return bytes(out)

    def writei(self, ip: Inode, off: int, data: bytes) -> int:
        """Write data at off, growing the file if needed. Caller holds ip's lock."""
        if ip.type == InodeType.DEV:
            return self._device(ip, 1)(ip, bytes(data))
        n = len(data)
        if off < 0 or off > ip.size:
            raise ValueError(f"cannot write at offset {off} of a {ip.size}-byte file")
        if off + n > MAXFILE * BSIZE:
            raise ValueError("write would exceed the maximum file size")
        tot = 0
        while tot < n:
            pos = off + tot
            start = pos % BSIZE
            m = min(n - tot, BSIZE - start)
            with self.cache.read(ip.dev, self._bmap(ip, pos // BSIZE)) as bp:
                bp.data[start : start + m] = data[tot : tot + m]
                self.log.write(bp)
            tot += m
        end = off + n
        if n > 0 and end > ip.size:
            ip.size = end
            self.iupdate(ip)
        return n

    # Directories.

    def _dirents(self, dp: Inode, panic: str) -> Iterator[tuple[int, DirEntry]]:
        for off in range(0, dp.size, DIRENT_SIZE):
            raw = self.readi(dp, off, DIRENT_SIZE)
            if len(raw) != DIRENT_SIZE:
                raise KernelPanic(panic)
            yield off, DirEntry.from_bytes(raw)

    def dirlookup(self, dp: Inode, name: str) -> tuple[Inode, int] | None:
        """Find name in directory dp: the referenced inode and the entry's offset."""
        if dp.type != InodeType.DIR:
            raise KernelPanic("dirlookup not DIR")
        for off, de in self._dirents(dp, "dirlookup read"):
            if de.inum and _namecmp(name, de.name):
                return self._iget(dp.dev, de.inum), off
        return None

    def dirlink(self, dp: Inode, name: str, inum: int) -> None:
        """Add the entry (name, inum) to directory dp; the name must be new."""
        found = self.dirlookup(dp, name)
        if found is not None:
            self.iput(found[0])
            raise FileExistsError(errno.EEXIST, "directory entry exists", name)
        off = next((o for o, de in self._dirents(dp, "dirlink read") if de.inum == 0), dp.size)
        if self.writei(dp, off, DirEntry(inum, name).to_bytes()) != DIRENT_SIZE:
            raise KernelPanic("dirlink")

    # Paths.

    def _readlink(self, ip: Inode) -> str | None:
        if ip.size >= _SYMLINK_MAX:
            return None
        data = self.readi(ip, 0, ip.size)
        if len(data) != ip.size:
            return None
        return data.decode("latin-1")

    def _namex(
        self, root: Inode | None, path: str, parent: bool, depth: int, follow: bool
    ) -> tuple[Inode, str] | None:
        if depth > self.max_dereference:
            return None
        if path.startswith("/"):
            ip = self._iget(self.dev, ROOTINO)
        elif root is not None:
            ip = self.idup(root)
        elif self.cwd is not None:
            ip = self.idup(self.cwd)
        else:
            ip = self._iget(self.dev, ROOTINO)

        name = ""
        while (elem := skipelem(path)) is not None:
            name, path = elem
            self.ilock(ip)
            if ip.type != InodeType.DIR:
                self._iunlockput(ip)
                return None
            if parent and not path:
                # Stop one level early.
                self.iunlock(ip)
                return ip, name
            found = self.dirlookup(ip, name)
            if found is None:
                self._iunlockput(ip)
                return None
            nxt: Inode | None = found[0]
            self.iunlock(ip)
            self.ilock(nxt)
            if nxt.type == InodeType.SYMLINK and follow:
                target = self._readlink(nxt)
                self._iunlockput(nxt)
                if target is None:
                    self.iput(ip)
                    return None
                resolved = self._namex(ip, target, False, depth + 1, follow)
                nxt = resolved[0] if resolved is not None else None
            else:
                self.iunlock(nxt)
            self.iput(ip)
            if nxt is None:
                return None
            ip = nxt

        if parent:
            self.iput(ip)
            return None
        return ip, name

    def namei(self, path: str, follow: bool = True) -> Inode | None:
        """The referenced, unlocked inode for path, or None; symlinks followed if asked."""
        found = self._namex(None, path, False, 0, follow)
        return found[0] if found is not None else None

    def nameiparent(self, path: str) -> tuple[Inode, str] | None:
        """The parent directory of path and the final element's name, or None."""
        return self._namex(None, path, True, 0, True)