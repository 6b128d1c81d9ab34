"""MultiProcessor specification tables: locating and parsing them in memory."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from .disk import KernelPanic

NCPU = 8

MPPROC = 0x00
MPBUS = 0x01
MPIOAPIC = 0x02
MPIOINTR = 0x03
MPLINTR = 0x04

MPBOOT = 0x02

# Floating pointer: signature, physaddr, length, specrev, checksum, type, imcrp, reserved.
_MP = struct.Struct("<4sIBBBBB3s")
# Configuration table header.
_CONF = struct.Struct("<4sHBB20sIHHIHBB")
_PROC_SIZE = 20
_IOAPIC_SIZE = 8
_OTHER_SIZE = 8


@dataclass
class MpConfig:
    """What the MP configuration table says about the machine."""

    lapic_addr: int
    apic_ids: list[int] = field(default_factory=list)
    ioapic_id: int = 0
    imcr: bool = False
    version: int = 0


def checksum(data: bytes) -> int:
    """Byte sum modulo 256; a valid structure sums to 0."""
    return sum(data) & 0xFF


def search(memory: bytes, base: int, length: int) -> int | None:
    """Find a floating pointer structure in memory[base:base+length]."""
    if base < 0:
        return None
    end = min(base + length, len(memory))
    for p in range(base, end - _MP.size + 1, _MP.size):
        if memory[p : p + 4] == b"_MP_" and checksum(memory[p : p + _MP.size]) == 0:
            return p
    return None


def _locate(memory: bytes) -> int | None:
    """Look in the EBDA, the top of base memory, then the BIOS ROM."""
    if len(memory) > 0x414:
        bda = memory[0x400:]
        p = ((bda[0x0F] << 8) | bda[0x0E]) << 4
        if p:
            found = search(memory, p, 1024)
        else:
            p = ((bda[0x14] << 8) | bda[0x13]) * 1024
            found = search(memory, p - 1024, 1024)
        if found is not None:
            return found
    return search(memory, 0xF0000, 0x10000)


def _config(memory: bytes, offset: int | None) -> tuple[tuple, int] | None:
    if offset is None:
        offset = _locate(memory)
        if offset is None:
            return None
    if offset < 0 or offset + _MP.size > len(memory):
        return None
    mp = _MP.unpack_from(memory, offset)
    if mp[0] != b"_MP_" or checksum(memory[offset : offset + _MP.size]) != 0:
        return None
    physaddr = mp[1]
    if physaddr == 0 or physaddr + _CONF.size > len(memory):
        return None
    conf = _CONF.unpack_from(memory, physaddr)
    signature, length, version = conf[0], conf[1], conf[2]
    if signature != b"PCMP":
        return None
    if version not in (1, 4):
        return None
    if physaddr + length > len(memory) or checksum(memory[physaddr : physaddr + length]) != 0:
        return None
    return mp, physaddr


def parse(memory: bytes, offset: int | None = None) -> MpConfig:
    """Parse the MP tables; offset names the floating pointer, else it is searched for."""
    found = _config(memory, offset)
    if found is None:
        raise KernelPanic("Expect to run on an SMP")
    mp, physaddr = found
    conf = _CONF.unpack_from(memory, physaddr)
    length, version, lapic_addr = conf[1], conf[2], conf[8]
    result = MpConfig(lapic_addr=lapic_addr, version=version, imcr=bool(mp[6]))

    p = physaddr + _CONF.size
    end = physaddr + length
    while p < end:
        kind = memory[p]
        if kind == MPPROC:
            if len(result.apic_ids) < NCPU:
                result.apic_ids.append(memory[p + 1])
            p += _PROC_SIZE
        elif kind == MPIOAPIC:
            result.ioapic_id = memory[p + 1]
            p += _IOAPIC_SIZE
        elif kind in (MPBUS, MPIOINTR, MPLINTR):
            p += _OTHER_SIZE
        else:
            raise KernelPanic("Didn't find a suitable machine")
    return result