import pytest

from xv6kit.bufcache import BufferCache
from xv6kit.disk import MemoryDisk
from xv6kit.fs import FileSystem
from xv6kit.journal import Log
from xv6kit.layout import (
    BPB,
    BSIZE,
    DIRENT_SIZE,
    IPB,
    NDIRECT,
    NINDIRECT,
    ROOTINO,
    DirEntry,
    InodeType,
    Superblock,
)
from xv6kit.mkfs import build_image, main


def mount(image):
    disk = MemoryDisk(image)
    cache = BufferCache(disk)
    log = Log(cache, disk.dev)
    return FileSystem(cache, log, disk.dev)


def read_all(fs, ip):
    fs.ilock(ip)
    try:
        return fs.readi(ip, 0, ip.size)
    finally:
        fs.iunlock(ip)


def test_superblock_layout():
    image = build_image({}, fssize=1000, ninodes=200, logsize=30)
    assert len(image) == 1000 * BSIZE
    sb = Superblock.from_bytes(image[BSIZE : 2 * BSIZE])
    assert sb.size == 1000
    assert sb.ninodes == 200
    assert sb.nlog == 30
    assert sb.logstart == 2
    assert sb.inodestart == sb.logstart + sb.nlog
    assert sb.bmapstart == sb.inodestart + 200 // IPB + 1
    assert sb.size - sb.nblocks == sb.bmapstart + sb.size // BPB + 1


def test_file_contents_round_trip():
    fs = mount(build_image({"README": b"hello\n"}))
    ip = fs.namei("/README")
    assert read_all(fs, ip) == b"hello\n"


def test_leading_underscore_stripped():
    fs = mount(build_image({"_cat": b"x"}))
    assert fs.namei("/_cat") is None
    assert read_all(fs, fs.namei("/cat")) == b"x"


def test_indirect_blocks_round_trip():
    content = bytes(range(256)) * 2 * (NDIRECT + 8)
    fs = mount(build_image([("big", content)]))
    assert read_all(fs, fs.namei("/big")) == content


def test_root_directory_entries():
    fs = mount(build_image({"README": b"a", "wc": b"b"}))
    root = fs.namei("/")
    raw = read_all(fs, root)
    assert root.size % BSIZE == 0
    assert root.inum == ROOTINO
    entries = [DirEntry.from_bytes(raw[o : o + DIRENT_SIZE]) for o in range(0, len(raw), DIRENT_SIZE)]
    named = [e for e in entries if e.inum]
    assert [e.name for e in named] == [".", "..", "README", "wc"]
    assert named[0].inum == ROOTINO
    assert named[1].inum == ROOTINO
    fs.ilock(root)
    assert root.type == InodeType.DIR
    fs.iunlock(root)


def test_bitmap_marks_contiguous_low_blocks():
    image = build_image({"README": b"x" * 3000})
    sb = Superblock.from_bytes(image[BSIZE : 2 * BSIZE])
    bitmap = int.from_bytes(image[sb.bmapstart * BSIZE : (sb.bmapstart + 1) * BSIZE], "little")
    assert bitmap & (bitmap + 1) == 0
    assert bitmap.bit_length() > sb.bmapstart
    assert bitmap.bit_length() < sb.size


def test_new_block_allocated_after_used_region():
    fs = mount(build_image({"README": b"x"}))
    with fs.log.transaction():
        ip = fs.ialloc(InodeType.FILE)
        fs.ilock(ip)
        ip.nlink = 1
        fs.writei(ip, 0, b"data")
        fs.iunlock(ip)
    sb = fs.sb
    assert ip.addrs[0] >= sb.size - sb.nblocks


def test_name_with_slash_rejected():
    with pytest.raises(ValueError):
        build_image({"a/b": b""})


def test_file_too_large_rejected():
    with pytest.raises(ValueError):
        build_image({"huge": b"x" * ((NDIRECT + NINDIRECT) * BSIZE + 1)})


def test_out_of_inodes():
    with pytest.raises(ValueError):
        build_image({"a": b"", "b": b""}, ninodes=3)


def test_main_writes_image(tmp_path, capsys):
    src = tmp_path / "notes"
    src.write_bytes(b"some notes\n")
    img = tmp_path / "fs.img"
    assert main([str(img), str(src)]) == 0
    assert "balloc: first" in capsys.readouterr().out
    fs = mount(img.read_bytes())
    assert read_all(fs, fs.namei("/notes")) == b"some notes\n"


def test_main_usage(capsys):
    assert main([]) == 1
    assert "Usage: mkfs" in capsys.readouterr().err


def test_main_missing_input(tmp_path):
    assert main([str(tmp_path / "fs.img"), str(tmp_path / "absent")]) == 1