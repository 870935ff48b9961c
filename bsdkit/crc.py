"""CRC-16 (XMODEM) and CRC-32 (ANSI X3.66) checksums, plus a file checksum tool."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Iterable

CPMEOF = 0o32
"""Byte used to pad files out to a whole number of blocks."""


def _make_crc16_table() -> tuple[int, ...]:
    table = []
    for i in range(256):
        c = i << 8
        for _ in range(8):
            c = ((c << 1) ^ 0x1021) if c & 0x8000 else (c << 1)
        table.append(c & 0xFFFF)
    return tuple(table)


def _make_crc32_table() -> tuple[int, ...]:
    table = []
    for i in range(256):
        c = i
        for _ in range(8):
            c = (c >> 1) ^ 0xEDB88320 if c & 1 else c >> 1
        table.append(c)
    return tuple(table)


CRC16_TABLE = _make_crc16_table()
CRC32_TABLE = _make_crc32_table()


def updcrc16(octet: int, crc: int) -> int:
    """Feed one byte into a 16-bit CRC register (CRC-CCITT, polynomial 0x1021)."""
    return (CRC16_TABLE[(crc >> 8) & 0xFF] ^ (crc << 8) ^ octet) & 0xFFFF


def crc16(data: Iterable[int], crc: int = 0) -> int:
    """Run bytes through the 16-bit CRC register starting from ``crc``.

    Feeding a block followed by its two CRC bytes (high byte first) leaves
    the register at zero.
    """
    for octet in data:
        crc = updcrc16(octet, crc)
    return crc


def updc32(octet: int, crc: int) -> int:
    """Feed one byte into a 32-bit CRC register (polynomial 0xEDB88320)."""
    return CRC32_TABLE[(crc ^ octet) & 0xFF] ^ ((crc >> 8) & 0x00FFFFFF)


def crc32(data: Iterable[int], crc: int = 0xFFFFFFFF) -> int:
    """Run bytes through the 32-bit CRC register starting from ``crc``.

    The register is returned as is; the transmitted check value is its
    ones' complement.
    """
    for octet in data:
        crc = updc32(octet, crc)
    return crc


@dataclass(frozen=True)
class FileChecksum:
    """CRC-32 and length of one file, optionally padded to a block size."""

    name: str
    crc: int
    length: int
    block: int = 0

    def format(self) -> str:
        """Render the report line for this file."""
        text = f"{self.crc:08X} {self.length:7d} "
        if self.block == 128:
            text += f"{self.length // 128:5d}+{self.length % 128:3d} "
        elif self.block == 1024:
            text += f"{self.length // 1024:5d}+{self.length % 1024:4d} "
        return f"{text} {self.name}"


def checksum_file(path: str, block: int = 0) -> FileChecksum:
    """Compute the CRC-32 of a file, padding with ^Z to a multiple of ``block``.

    Raises OSError if the file cannot be read.
    """
    reg = 0xFFFFFFFF
    count = 0
    with open(path, "rb") as fin:
        while chunk := fin.read(65536):
            count += len(chunk)
            reg = crc32(chunk, reg)
    if block and count % block:
        reg = crc32(bytes([CPMEOF]) * (block - count % block), reg)
    return FileChecksum(str(path), ~reg & 0xFFFFFFFF, count, block)


def main(argv: list[str] | None = None) -> int:
    """Print CRC-32 lines for the named files; ``-x`` pads to 128, ``-k`` to 1024."""
    args = list(sys.argv[1:] if argv is None else argv)
    block = 0
    if args and args[0] == "-x":
        block = 128
        args.pop(0)
    if args and args[0] == "-k":
        block = 1024
        args.pop(0)
    failed = False
    for name in args:
        try:
            result = checksum_file(name, block)
        except OSError as exc:
            print(f"{name}: {exc.strerror or exc}", file=sys.stderr)
            failed = True
            continue
        print(result.format())
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())