import pytest

from xv6kit.bufcache import BufferCache
from xv6kit.disk import KernelPanic, MemoryDisk
from xv6kit.fs import FileSystem, Inode, Stat, skipelem
from xv6kit.journal import Log
from xv6kit.layout import (
    BPB,
    BSIZE,
    CONSOLE,
    DIRENT_SIZE,
    DIRSIZ,
    IPB,
    MAXFILE,
    NDIRECT,
    NINDIRECT,
    ROOTINO,
    InodeType,
    Superblock,
)

FSSIZE = 1000
NINODES = 200
NLOG = 30
CHUNK = 1536


def _format_disk():
    ninodeblocks = NINODES // IPB + 1
    nbitmap = FSSIZE // BPB + 1
    nmeta = 2 + NLOG + ninodeblocks + nbitmap
    sb = Superblock(
        size=FSSIZE,
        nblocks=FSSIZE - nmeta,
        ninodes=NINODES,
        nlog=NLOG,
        logstart=2,
        inodestart=2 + NLOG,
        bmapstart=2 + NLOG + ninodeblocks,
    )
    disk = MemoryDisk(nblocks=FSSIZE)
    disk.write_block(1, sb.to_bytes().ljust(BSIZE, b"\0"))
    bitmap = bytearray(BSIZE)
    for i in range(nmeta):
        bitmap[i // 8] |= 1 << (i % 8)
    disk.write_block(sb.bmapstart, bytes(bitmap))
    return disk


def _mount(disk):
    cache = BufferCache(disk)
    log = Log(cache, disk.dev)
    return FileSystem(cache, log, disk.dev)


@pytest.fixture
def fs():
    filesystem = _mount(_format_disk())
    with filesystem.log.transaction():
        root = filesystem.ialloc(InodeType.DIR)
        filesystem.ilock(root)
        root.nlink = 1
        filesystem.iupdate(root)
        filesystem.dirlink(root, ".", root.inum)
        filesystem.dirlink(root, "..", root.inum)
        filesystem.iunlock(root)
        filesystem.iput(root)
    return filesystem


def _create(fs, path, itype, major=0):
    with fs.log.transaction():
        dp, name = fs.nameiparent(path)
        ip = fs.ialloc(itype)
        fs.ilock(ip)
        ip.nlink = 1
        ip.major = major
        fs.iupdate(ip)
        if itype == InodeType.DIR:
            fs.dirlink(ip, ".", ip.inum)
            fs.dirlink(ip, "..", dp.inum)
        fs.iunlock(ip)
        fs.ilock(dp)
        fs.dirlink(dp, name, ip.inum)
        fs.iunlock(dp)
        fs.iput(dp)
    return ip


def _write(fs, ip, data, off=0):
    for start in range(0, len(data), CHUNK):
        with fs.log.transaction():
            fs.ilock(ip)
            try:
                fs.writei(ip, off + start, data[start : start + CHUNK])
            finally:
                fs.iunlock(ip)


def _read(fs, ip, off, n):
    fs.ilock(ip)
    try:
        return fs.readi(ip, off, n)
    finally:
        fs.iunlock(ip)


def _symlink(fs, path, target):
    ip = _create(fs, path, InodeType.SYMLINK)
    _write(fs, ip, target.encode())
    return ip


def _used_blocks(fs):
    bitmap = fs.cache.disk.read_block(fs.sb.bmapstart)
    return sum(bin(b).count("1") for b in bitmap)


@pytest.mark.parametrize(
    "path, expected",
    [
        ("a/bb/c", ("a", "bb/c")),
        ("///a//bb", ("a", "bb")),
        ("a", ("a", "")),
        ("", None),
        ("////", None),
    ],
)
def test_skipelem_examples(path, expected):
    assert skipelem(path) == expected


def test_skipelem_truncates_long_names():
    long = "abcdefghijklmnopqrstuvwxyz"
    assert skipelem(long + "/x") == (long[:DIRSIZ], "x")


def test_root_is_a_directory(fs):
    root = fs.namei("/")
    assert root.inum == ROOTINO
    fs.ilock(root)
    st = fs.stat(root)
    fs.iunlock(root)
    assert st.type == InodeType.DIR
    assert st.size == 2 * DIRENT_SIZE


def test_dirlookup_reports_entry_offsets(fs):
    f = _create(fs, "/file", InodeType.FILE)
    root = fs.namei("/")
    fs.ilock(root)
    dot = fs.dirlookup(root, ".")
    dotdot = fs.dirlookup(root, "..")
    entry = fs.dirlookup(root, "file")
    missing = fs.dirlookup(root, "nothing")
    fs.iunlock(root)
    assert dot[0].inum == ROOTINO and dot[1] == 0
    assert dotdot[0].inum == ROOTINO and dotdot[1] == DIRENT_SIZE
    assert entry[0] is f and entry[1] == 2 * DIRENT_SIZE
    assert missing is None


def test_dirlink_rejects_existing_name(fs):
    _create(fs, "/file", InodeType.FILE)
    root = fs.namei("/")
    fs.ilock(root)
    try:
        with fs.log.transaction():
            with pytest.raises(FileExistsError):
                fs.dirlink(root, "file", 5)
    finally:
        fs.iunlock(root)


def test_dirlookup_on_file_panics(fs):
    f = _create(fs, "/file", InodeType.FILE)
    fs.ilock(f)
    try:
        with pytest.raises(KernelPanic):
            fs.dirlookup(f, "x")
    finally:
        fs.iunlock(f)


def test_small_write_read_round_trip(fs):
    f = _create(fs, "/file", InodeType.FILE)
    _write(fs, f, b"abc")
    _write(fs, f, b"def", off=3)
    _write(fs, f, b"XY", off=1)
    assert _read(fs, f, 0, 100) == b"aXYdef"
    fs.ilock(f)
    st = fs.stat(f)
    fs.iunlock(f)
    assert st == Stat(dev=fs.dev, ino=f.inum, type=InodeType.FILE, nlink=1, size=6)


def test_read_is_clipped_at_end_of_file(fs):
    f = _create(fs, "/file", InodeType.FILE)
    _write(fs, f, b"hello world")
    assert _read(fs, f, 6, 100) == b"world"
    assert _read(fs, f, 11, 5) == b""
    with pytest.raises(ValueError):
        _read(fs, f, 12, 1)


def test_write_past_end_or_limit_is_rejected(fs):
    f = _create(fs, "/file", InodeType.FILE)
    _write(fs, f, b"abc")
    fs.ilock(f)
    try:
        with pytest.raises(ValueError):
            fs.writei(f, 4, b"x")
        with pytest.raises(ValueError):
            fs.writei(f, 0, bytes(MAXFILE * BSIZE + 1))
    finally:
        fs.iunlock(f)


def test_large_file_survives_remount_and_is_freed(fs):
    before = _used_blocks(fs)
    f = _create(fs, "/big", InodeType.FILE)
    data = bytes(range(256)) * ((NDIRECT + NINDIRECT + 10) * BSIZE // 256)
    _write(fs, f, data)
    assert _used_blocks(fs) > before + NDIRECT + NINDIRECT

    again = _mount(fs.cache.disk)
    ip = again.namei("/big")
    assert _read(again, ip, 0, len(data) + 1) == data

    with fs.log.transaction():
        fs.ilock(f)
        f.nlink = 0
        fs.iupdate(f)
        fs.iunlock(f)
        fs.iput(f)
    assert _used_blocks(fs) == before
    with fs.log.transaction():
        reused = fs.ialloc(InodeType.FILE)
    assert reused.inum == f.inum


def test_namei_failures(fs):
    _create(fs, "/file", InodeType.FILE)
    assert fs.namei("/missing") is None
    assert fs.namei("/file/x") is None


def test_namei_nested_and_relative(fs):
    d = _create(fs, "/d", InodeType.DIR)
    f = _create(fs, "/d/f", InodeType.FILE)
    assert fs.namei("/d/f") is f
    assert fs.namei("/d/./f") is f
    assert fs.namei("/d/../d/f") is f
    fs.cwd = d
    assert fs.namei("f") is f


def test_nameiparent(fs):
    d = _create(fs, "/d", InodeType.DIR)
    parent, name = fs.nameiparent("/d/x")
    assert parent is d
    assert name == "x"
    assert fs.nameiparent("/") is None
    assert fs.nameiparent("/missing/x") is None


def test_symlink_followed_only_when_asked(fs):
    target = _create(fs, "/myfile", InodeType.FILE)
    link = _symlink(fs, "/link", "/myfile")
    assert fs.namei("/link", True) is target
    assert fs.namei("/link", False) is link


def test_symlink_chain(fs):
    target = _create(fs, "/myfile", InodeType.FILE)
    _symlink(fs, "/link", "/myfile")
    _symlink(fs, "/link2Link", "/link")
    _symlink(fs, "/link2Link2Link", "/link2Link")
    assert fs.namei("/link2Link2Link") is target


def test_symlink_to_directory_in_path(fs):
    _create(fs, "/d", InodeType.DIR)
    f = _create(fs, "/d/f", InodeType.FILE)
    _symlink(fs, "/dl", "/d")
    assert fs.namei("/dl/f") is f


def test_relative_symlink_resolves_in_its_directory(fs):
    target = _create(fs, "/myfile", InodeType.FILE)
    _symlink(fs, "/rel", "myfile")
    assert fs.namei("/rel") is target


def test_broken_symlinks_resolve_to_nothing(fs):
    _symlink(fs, "/loop", "/loop")
    _symlink(fs, "/dangling", "/nowhere")
    _symlink(fs, "/long", "/" + "a" * 200)
    assert fs.namei("/loop") is None
    assert fs.namei("/dangling") is None
    assert fs.namei("/dangling/x") is None
    assert fs.namei("/long") is None


def test_device_inode_dispatches_to_driver(fs):
    written = []

    def dev_write(ip, data):
        written.append(data)
        return len(data)

    fs.register_device(CONSOLE, lambda ip, n: b"k" * n, dev_write)
    dev = _create(fs, "/console", InodeType.DEV, major=CONSOLE)
    fs.ilock(dev)
    try:
        assert fs.readi(dev, 0, 3) == b"kkk"
        assert fs.writei(dev, 0, b"hi") == 2
    finally:
        fs.iunlock(dev)
    assert written == [b"hi"]


def test_unregistered_device_is_an_error(fs):
    dev = _create(fs, "/nodev", InodeType.DEV, major=7)
    fs.ilock(dev)
    try:
        with pytest.raises(OSError):
            fs.readi(dev, 0, 1)
    finally:
        fs.iunlock(dev)


def test_idup_adds_reference(fs):
    f = _create(fs, "/file", InodeType.FILE)
    before = f.ref
    assert fs.idup(f) is f
    assert f.ref == before + 1


def test_lock_misuse_panics(fs):
    with pytest.raises(KernelPanic):
        fs.ilock(Inode())
    f = _create(fs, "/file", InodeType.FILE)
    with pytest.raises(KernelPanic):
        fs.iunlock(f)