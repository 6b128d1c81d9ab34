"""A model of a small Unix-like file system: disk, buffer cache, log, inodes, files, console and image builder."""

__version__ = "0.1.0"