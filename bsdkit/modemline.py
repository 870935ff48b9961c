"""Serial line handling for modem file transfers: raw modes, buffered reads, cancel strings."""

from __future__ import annotations

import contextlib
import os
import select
import sys
import termios
import time
from typing import BinaryIO, TextIO

HOWMANY = 96
"""Bytes asked for per read, and VMIN in raw mode."""

TIMEOUT = -2
"""Returned by :meth:`ModemLine.readline` when nothing arrived in time."""

CAN = 0o30
BS = 0o10
CANCEL_STRING = bytes([CAN] * 10 + [BS] * 10)

SLEEP_CHAR = 0o336
BREAK_CHAR = 0o335

_SPEED_NAMES = (
    (110, "B110"),
    (150, "B150"),
    (300, "B300"),
    (600, "B600"),
    (1200, "B1200"),
    (2400, "B2400"),
    (4800, "B4800"),
    (9600, "B9600"),
    (19200, "B19200"),
    (19200, "EXTA"),
    (38400, "B38400"),
    (38400, "EXTB"),
)

SPEEDS: tuple[tuple[int, int], ...] = tuple(
    (baud, getattr(termios, name)) for baud, name in _SPEED_NAMES if hasattr(termios, name)
)

_IFLAG, _OFLAG, _CFLAG, _LFLAG, _ISPEED, _OSPEED, _CC = range(7)

# Terminal attributes saved per descriptor before the first mode change.
_saved: dict[int, list] = {}


def get_speed(code: int) -> int:
    """Translate a termios speed code into a baud rate.

    Codes above 49 that are not in the table are taken to be the rate
    itself; anything else unknown gives 1.
    """
    for baud, speedcode in SPEEDS:
        if speedcode == code:
            return baud
    if code > 49:
        return code
    return 1


def _copy(attrs: list) -> list:
    return attrs[:_CC] + [list(attrs[_CC])]


def tty_mode(fd: int, n: int) -> int | None:
    """Set the terminal on ``fd`` to a transfer mode.

    * 3: raw mode with XON/XOFF flow control both ways; returns the baud rate
    * 2: 8-bit mode keeping XON/XOFF and signals, for streaming senders
    * 1: raw mode; returns the baud rate
    * 0: restore the attributes saved by the first mode change

    Raises RuntimeError for mode 0 when nothing was saved and ValueError for
    an unknown mode.
    """
    if n == 0:
        old = _saved.pop(fd, None)
        if old is None:
            raise RuntimeError(f"terminal mode of descriptor {fd} was never saved")
        termios.tcdrain(fd)
        termios.tcflush(fd, termios.TCIFLUSH)
        termios.tcsetattr(fd, termios.TCSADRAIN, old)
        termios.tcflow(fd, termios.TCOON)
        return None
    if n not in (1, 2, 3):
        raise ValueError(f"unknown terminal mode: {n}")

    if fd not in _saved:
        _saved[fd] = termios.tcgetattr(fd)
    tty = _copy(_saved[fd])
    cc = tty[_CC]
    tty[_OFLAG] = 0
    tty[_CFLAG] &= ~(termios.PARENB | termios.CSIZE)

    if n == 2:
        tty[_IFLAG] = termios.BRKINT | termios.IXON
        tty[_CFLAG] |= termios.CREAD | termios.CS8
        tty[_LFLAG] = termios.ISIG
        cc[termios.VINTR] = 0o30
        cc[termios.VQUIT] = 0xFF
        cc[termios.VMIN] = 3
        cc[termios.VTIME] = 1
        termios.tcsetattr(fd, termios.TCSADRAIN, tty)
        return None

    tty[_IFLAG] = termios.IXON | termios.IXOFF if n == 3 else termios.IXOFF
    tty[_LFLAG] = 0
    tty[_CFLAG] |= termios.CS8
    cc[termios.VMIN] = HOWMANY
    cc[termios.VTIME] = 1
    termios.tcsetattr(fd, termios.TCSADRAIN, tty)
    return get_speed(tty[_OSPEED])


class ModemLine:
    """A modem line: buffered byte reads with timeouts and buffered writes."""

    def __init__(
        self,
        fd: int,
        out: BinaryIO,
        *,
        readnum: int = HOWMANY,
        verbose: int = 0,
        log: TextIO | None = None,
    ):
        self.fd = fd
        self.readnum = readnum
        self.verbose = verbose
        self._out = out
        self._log = log
        self._buf = b""
        self._pos = 0

    @classmethod
    def open_terminal(cls, **kwargs) -> ModemLine:
        """Open the terminal behind standard error, or /dev/tty, for reading and writing."""
        try:
            name = os.ttyname(2)
        except OSError:
            name = ""
        if not name:
            name = "/dev/tty"
        fd = os.open(name, os.O_RDWR)
        line = cls(fd, os.fdopen(os.dup(fd), "wb"), **kwargs)
        line.name = name
        return line

    @property
    def log(self) -> TextIO:
        return self._log if self._log is not None else sys.stderr

    @property
    def pending(self) -> int:
        """Number of bytes already read from the line but not yet returned."""
        return len(self._buf) - self._pos

    def discard_pending(self) -> None:
        """Forget buffered input so that the next read goes to the line."""
        self._buf = b""
        self._pos = 0

    def _next(self) -> int:
        c = self._buf[self._pos]
        self._pos += 1
        return c

    def readline(self, timeout: int) -> int:
        """Return the next byte from the line, or TIMEOUT.

        ``timeout`` is in tenths of a second; at least two seconds are
        allowed whenever the line has to be read.
        """
        if self.pending:
            if self.verbose > 8:
                self.log.write(f"{self._buf[self._pos]:02x} ")
            return self._next()
        wait = max(timeout // 10, 2)
        if self.verbose > 5:
            self.log.write(f"Calling read: alarm={wait}  Readnum={self.readnum} ")
        try:
            ready, _, _ = select.select([self.fd], [], [], wait)
            data = os.read(self.fd, self.readnum) if ready else None
        except OSError as exc:
            data = b""
            if self.verbose > 5:
                self.log.write(f"Read failed errno={exc.errno}\n")
        if data is None:
            self.discard_pending()
            if self.verbose > 1:
                self.log.write("Readline:TIMEOUT\n")
            return TIMEOUT
        if self.verbose > 5:
            self.log.write(f"Read returned {len(data)} bytes\n")
        self._buf, self._pos = data, 0
        if not data:
            return TIMEOUT
        if self.verbose > 8:
            self.log.write(" ".join(f"{c:02x}" for c in data) + " \n")
        return self._next()

    def purge(self) -> None:
        """Drop all input waiting, both buffered here and queued in the terminal."""
        self.discard_pending()
        if os.isatty(self.fd):
            with contextlib.suppress(termios.error):
                termios.tcflush(self.fd, termios.TCIFLUSH)

    def sendline(self, c: int) -> None:
        """Queue one byte (the low eight bits of ``c``) for output."""
        self._out.write(bytes([c & 0xFF]))

    def flush(self) -> None:
        """Push queued output to the line."""
        self._out.flush()

    def canit(self) -> None:
        """Send the cancel string to make the other end stop."""
        self.zmputs(CANCEL_STRING)
        self.discard_pending()

    def zmputs(self, data: bytes) -> None:
        """Send bytes up to the first NUL; 0o336 pauses a second, 0o335 sends a break."""
        for c in data:
            if c == 0:
                break
            if c == SLEEP_CHAR:
                time.sleep(1)
            elif c == BREAK_CHAR:
                self.sendbrk()
            else:
                self.sendline(c)
        self.flush()

    def sendbrk(self) -> None:
        """Send a break signal on the line, if the line is a terminal."""
        self.flush()
        with contextlib.suppress(termios.error, OSError):
            termios.tcsendbreak(self.fd, 200)