"""ZMODEM/YMODEM constants, file header parsing and the receiving side's file handling."""

from __future__ import annotations

import contextlib
import os
import re
import stat
import sys
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import BinaryIO

# Framing characters
ZPAD = ord("*")
ZDLE = 0o30
ZDLEE = ZDLE ^ 0o100
ZBIN = ord("A")
ZHEX = ord("B")
ZBIN32 = ord("C")
ZBINR32 = ord("D")
ZVBIN = ord("a")
ZVHEX = ord("b")
ZVBIN32 = ord("c")
ZVBINR32 = ord("d")
ZRESC = 0o176
ZMAXHLEN = 16
ZMAXSPLEN = 1024

# ZDLE sequences
ZCRCE = ord("h")
ZCRCG = ord("i")
ZCRCQ = ord("j")
ZCRCW = ord("k")
ZRUB0 = ord("l")
ZRUB1 = ord("m")

GOTOR = 0o400
GOTCRCE = ZCRCE | GOTOR
GOTCRCG = ZCRCG | GOTOR
GOTCRCQ = ZCRCQ | GOTOR
GOTCRCW = ZCRCW | GOTOR
GOTCAN = GOTOR | 0o30

# Byte positions within a header
ZF0, ZF1, ZF2, ZF3 = 3, 2, 1, 0
ZP0, ZP1, ZP2, ZP3 = 0, 1, 2, 3

# ZRINIT parameters and capability bits
ZRPXWN = 8
ZRPXQQ = 9
CANFDX = 0o1
CANOVIO = 0o2
CANBRK = 0o4
CANRLE = 0o10
CANLZW = 0o20
CANFC32 = 0o40
ESCCTL = 0o100
ESC8 = 0o200
CANVHDR = 0o1
ZRRQWN = 8
ZRRQQQ = 16
ZRQNVH = ZRRQWN | ZRRQQQ

# ZSINIT parameters
ZATTNLEN = 32
ALTCOFF = ZF1
TESCCTL = 0o100
TESC8 = 0o200

# ZFILE management bits
ZMSKNOLOC = 0o200
ZMMASK = 0o37
ZTLZW = 1
ZTRLE = 3
ZXSPARS = 64
ZCANVHDR = 0o1
ZRWOVR = 4
ZCACK1 = 1

DEFBYTL = 2_000_000_000
"""File size assumed when the sender gives none."""

UNIXFILE = 0xF000
"""File-type bits of a mode; any set means the sender is a Unix system."""

PUBDIR = "/usr/spool/uucppublic"
"""The one absolute directory a restricted receiver may write under."""

CPMEOF = 0o32


class FrameType(IntEnum):
    """ZMODEM header types."""

    ZRQINIT = 0
    ZRINIT = 1
    ZSINIT = 2
    ZACK = 3
    ZFILE = 4
    ZSKIP = 5
    ZNAK = 6
    ZABORT = 7
    ZFIN = 8
    ZRPOS = 9
    ZDATA = 10
    ZEOF = 11
    ZFERR = 12
    ZCRC = 13
    ZCHALLENGE = 14
    ZCOMPL = 15
    ZCAN = 16
    ZFREECNT = 17
    ZCOMMAND = 18
    ZSTDERR = 19


class Conversion(IntEnum):
    """File conversion requests carried in ZF0 of a ZFILE header."""

    NONE = 0
    BIN = 1
    NL = 2
    RESUM = 3


class Management(IntEnum):
    """File management requests carried in ZF1 of a ZFILE header."""

    NONE = 0
    NEWL = 1
    CRC = 2
    APND = 3
    CLOB = 4
    NEW = 5
    DIFF = 6
    PROT = 7
    CHNG = 8


class SecurityViolation(Exception):
    """A restricted receiver was asked to write where it may not."""


class SkipFile(Exception):
    """The incoming file is to be skipped under the management rules."""


@dataclass(frozen=True)
class FileHeader:
    """The name and attributes a sender announces for one file."""

    name: str
    size: int = DEFBYTL
    modtime: int = 0
    mode: int = 0
    files_left: int = 0
    total_left: int = 0
    info: str = ""


@dataclass
class ReceiverSettings:
    """Local options and the conversion/management requests in force."""

    rxascii: bool = False
    rxbinary: bool = False
    lzconv: int = 0
    lzmanag: int = 0
    zconv: int = 0
    zmanag: int = 0
    restricted: bool = False
    verbose: int = 0


@dataclass(frozen=True)
class Invocation:
    """What the name a receiver was started under asks for."""

    progname: str
    batch: bool = False
    nozmodem: bool = False
    crcflg: bool = False
    verbose: int = 0


@dataclass
class OutputFile:
    """A file being received; text mode drops CRs and stops at ^Z."""

    path: str
    stream: BinaryIO
    binary: bool = True
    modtime: int = 0
    mode: int = 0
    offset: int = 0
    owned: bool = True
    eofseen: bool = field(default=False)

    def write(self, data: bytes) -> None:
        """Write one received block."""
        if not data:
            return
        if self.binary:
            self.stream.write(data)
            return
        if self.eofseen:
            return
        end = data.find(bytes([CPMEOF]))
        if end >= 0:
            data = data[:end]
            self.eofseen = True
        self.stream.write(data.replace(b"\r", b""))

    def close(self) -> None:
        """Close the file, then set its modification time and permissions."""
        if not self.owned:
            self.stream.flush()
            return
        self.stream.close()
        if self.modtime:
            with contextlib.suppress(OSError):
                os.utime(self.path, (time.time(), self.modtime))
        if stat.S_ISREG(self.mode):
            with contextlib.suppress(OSError):
                os.chmod(self.path, self.mode & 0o7777)


_NUMBER = {
    10: re.compile(r"\s*([+-]?[0-9]+)"),
    8: re.compile(r"\s*([+-]?[0-7]+)"),
}
# size, modtime, mode, serial, files left, total left
_INFO_BASES = (10, 8, 8, 8, 10, 10)


def _scan(text: str, bases: tuple[int, ...]) -> list[int]:
    values: list[int] = []
    pos = 0
    for base in bases:
        match = _NUMBER[base].match(text, pos)
        if not match:
            break
        values.append(int(match.group(1), base))
        pos = match.end()
    return values


def parse_header(block: bytes) -> FileHeader | None:
    """Parse a YMODEM block 0: NUL-ended name, then optional attributes.

    Returns None for an empty name, which ends a batch. A name with no
    attributes comes from a CP/M system: slashes become underscores and a
    trailing period is dropped.
    """
    raw_name, _, rest = bytes(block).partition(b"\0")
    if not raw_name:
        return None
    name = os.fsdecode(raw_name)
    info = rest.split(b"\0", 1)[0].decode("latin-1")
    if not info:
        name = name.replace("/", "_")
        if name.endswith("."):
            name = name[:-1]
        return FileHeader(name)
    values = _scan(info, _INFO_BASES)
    defaults = [DEFBYTL, 0, 0, 0, 0, 0]
    values += defaults[len(values):]
    size, modtime, mode, _serial, files_left, total_left = values
    return FileHeader(name, size, modtime, mode, files_left, total_left, info)


def checkpath(name: str, restricted: bool) -> str:
    """Return ``name`` if a receiver may write it.

    A restricted receiver may not touch an existing file, climb with
    ``../``, or write to an absolute path outside PUBDIR; those raise
    SecurityViolation.
    """
    if restricted:
        if os.access(name, os.R_OK):
            raise SecurityViolation(f"{name} exists")
        if "../" in name or (name.startswith("/") and not name.startswith(PUBDIR)):
            raise SecurityViolation("Security Violation")
    return name


def chkinvok(progname: str) -> Invocation:
    """Work out the protocol from the program name: rz, rb or rc, with a leading v for verbose."""
    s = progname.lstrip("-").rsplit("/", 1)[-1]
    verbose = 0
    if s.startswith("v"):
        verbose = 1
        s = s[1:]
    return Invocation(
        progname=s,
        batch=s.startswith("rz") or s.startswith("rb"),
        nozmodem=s.startswith("rb"),
        crcflg=s.startswith("rc"),
        verbose=verbose,
    )


def _vfile(settings: ReceiverSettings, message: str) -> None:
    if settings.verbose > 2:
        print(message, file=sys.stderr)


def _open_output(name: str, openmode: str, binary: bool, header: FileHeader) -> OutputFile:
    if name != "-":
        stream = open(name, openmode + "b")
        return OutputFile(name, stream, binary, header.modtime, header.mode)
    if os.isatty(1):
        stream = open("stdout", "ab")
        return OutputFile(name, stream, binary, header.modtime, header.mode)
    return OutputFile(name, sys.stdout.buffer, binary, header.modtime, header.mode, owned=False)


def open_for_header(header: FileHeader, settings: ReceiverSettings) -> OutputFile:
    """Open the output file a header announces, applying conversion and management rules.

    Raises SkipFile when the file is to be skipped, SecurityViolation when a
    restricted receiver may not write it, and OSError when it cannot be opened.
    """
    openmode = "w"
    binary = (not settings.rxascii) or settings.rxbinary
    if settings.zconv == Conversion.BIN and settings.lzconv != Conversion.RESUM:
        settings.lzconv = settings.zconv
    if settings.lzconv:
        settings.zconv = settings.lzconv
    if settings.lzmanag:
        settings.zmanag = settings.lzmanag

    if not settings.rxbinary and settings.zconv == Conversion.NL:
        binary = False
    if settings.zconv == Conversion.BIN:
        binary = True
    elif settings.zmanag == Management.APND:
        openmode = "a"

    if header.info:
        if header.mode & UNIXFILE:
            binary = True
        if settings.verbose:
            print(f"Incoming: {header.name} {header.size} {header.modtime:o} {header.mode:o}",
                  file=sys.stderr)
            print(f"YMODEM header: {header.info}", file=sys.stderr)

    name = checkpath(header.name, settings.restricted)
    try:
        st = os.stat(name) if name else None
    except OSError:
        st = None

    if st is not None:
        zmanag = settings.zmanag & ZMMASK
        if zmanag == Management.PROT:
            _vfile(settings, f"Skipping {name}")
            raise SkipFile(name)
        _vfile(settings, f"Current {name} is {st.st_size} {int(st.st_mtime):o}")
        if binary and settings.zconv == Conversion.RESUM:
            offset = st.st_size & ~511
            if header.size >= offset:
                stream = open(name, "r+b")
                try:
                    stream.seek(offset)
                except OSError:
                    stream.close()
                    raise
                _vfile(settings, f"Crash recovery at {offset}")
                return OutputFile(name, stream, binary, header.modtime, header.mode, offset)
        else:
            skip = True
            if zmanag == Management.NEWL and header.size > st.st_size:
                skip = False
            elif zmanag in (Management.NEWL, Management.NEW):
                skip = int(st.st_mtime) + 1 >= header.modtime
            elif zmanag in (Management.CLOB, Management.APND):
                skip = False
            if skip:
                _vfile(settings, f"Skipping {name}")
                raise SkipFile(name)
    elif settings.zmanag & ZMSKNOLOC:
        _vfile(settings, f"Skipping {name}")
        raise SkipFile(name)

    return _open_output(name, openmode, binary, header)