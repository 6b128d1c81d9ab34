[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "xv6kit"
version = "0.1.0"
description = "A model of a small Unix-like file system: disk images, buffer cache, journal, inodes, pipes, console and image builder"
requires-python = ">=3.10"
dependencies = []
keywords = ["filesystem", "unix", "inode", "journal", "disk-image", "teaching"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Education",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
    "Topic :: Education",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
xv6-mkfs = "xv6kit.mkfs:main"
xv6-grep = "xv6kit.grep:main"

[tool.hatch.build.targets.wheel]
packages = ["xv6kit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
