# xv6kit

A small, self-contained model of a teaching Unix file system in plain
Python, with no dependencies outside the standard library. It covers the
on-disk layout and the layers built on top of it.

## Modules

- `xv6kit.layout`: on-disk structures `Superblock`, `DiskInode` and
  `DirEntry` (each with `to_bytes()` / `from_bytes()`), the `InodeType`
  enum, and the block arithmetic `inode_block()` and `bitmap_block()`.
- `xv6kit.disk`: `MemoryDisk`, a block device held in a bytearray, with
  `read_block()`, `write_block()`, `to_bytes()` and `MemoryDisk.from_file()`.
  Out-of-range blocks raise `KernelPanic`.
- `xv6kit.bufcache`: `BufferCache` with `read()`, `write()` and `release()`.
  Buffers are recycled least-recently-used first; a `Buffer` is also a
  context manager that releases itself.
- `xv6kit.journal`: `Log`, a redo log with `begin_op()`, `end_op()`,
  `write()`, `recover()` and the `transaction()` context manager. Pending
  committed blocks are installed when a `Log` is created.
- `xv6kit.fs`: `FileSystem` with an inode cache (`ialloc`, `iupdate`,
  `idup`, `ilock`, `iunlock`, `iput`), content access through direct,
  indirect and double-indirect blocks (`readi`, `writei`), `stat`,
  directories (`dirlookup`, `dirlink`) and path lookup (`namei`,
  `nameiparent`) that follows symbolic links when asked. Device inodes are
  served by functions given to `register_device()`. `skipelem()` splits a
  path element.
- `xv6kit.file`: `FileTable` (`alloc`, `open_inode`, `open_pipe`), `File`
  (`read`, `write`, `stat`, `dup`, `close`), `Pipe` and `FileKind`.
- `xv6kit.console`: `Console`, a line-editing input buffer (backspace, ^U,
  ^D, ^P) with output to a byte stream and a `CgaScreen` 80x25 text screen.
- `xv6kit.kbd`: `Keyboard` scan-code state machine and `decode()`.
- `xv6kit.fmt`: `format()` (upper-case hex, `%c`), `kernel_format()`
  (lower-case hex) and `format_int()`.
- `xv6kit.grep`: `match()` for `^ . * $` patterns, `grep()` over a binary
  stream and the `main()` command.
- `xv6kit.mp`: `checksum()`, `search()` and `parse()` for multiprocessor
  configuration tables in a memory image, giving an `MpConfig`.
- `xv6kit.mkfs`: `build_image()` and the `main()` command.

## Installing

    pip install .

## Building an image

    xv6-mkfs fs.img README _cat _echo

Each host file is copied into the root directory under its base name; a
leading underscore is dropped. `.` and `..` entries are created too. The
image is 1000 blocks with 200 inodes.

From Python, build an image and read a file back:

```python
from xv6kit.mkfs import build_image
from xv6kit.disk import MemoryDisk
from xv6kit.bufcache import BufferCache
from xv6kit.journal import Log
from xv6kit.fs import FileSystem

disk = MemoryDisk(build_image([("README", b"hello\n")]))
cache = BufferCache(disk)
log = Log(cache, 1)
fs = FileSystem(cache, log)

ip = fs.namei("/README")
fs.ilock(ip)
print(fs.readi(ip, 0, 100))   # b'hello\n'
fs.iunlock(ip)
with log.transaction():
    fs.iput(ip)
```

## Searching text

    xv6-grep '^ab*c$' notes.txt

With no file argument, standard input is read. Matching lines are printed
unchanged. A final line without a newline, or a line longer than the
1024-byte read buffer, is not reported.

## What it does not do

The package provides the file system layers, not a system around them.
There are no processes, scheduler or system calls: nothing here creates
directories, unlinks files or makes symbolic links by path; those are built
from `ialloc`, `dirlink` and `writei` by the caller. Console and pipe reads
wait on other threads rather than on a process table. The image builder
places file contents in direct and single-indirect blocks only, and a file
too large for that is rejected.

## Running the tests

    pip install .[test]
    pytest