"""XMODEM and YMODEM batch file receivers for a modem line."""

from __future__ import annotations

import contextlib
import os
import re
import signal
import subprocess
import sys
import termios
from dataclasses import dataclass, field
from typing import Callable, Iterable, Protocol, TextIO

from bsdkit.crc import crc16
from bsdkit.fileheader import (
    DEFBYTL,
    FileHeader,
    Management,
    OutputFile,
    ReceiverSettings,
    SecurityViolation,
    SkipFile,
    checkpath,
    chkinvok,
    open_for_header,
    parse_header,
)
from bsdkit.modemline import TIMEOUT, ModemLine, tty_mode

VERSION = "3.48 01-27-98"
MINIRB_VERSION = "minirb 3.02 12-21-94"
LOGFILES = ("/tmp/rzlog", "rzlog")

SOH = 1
STX = 2
EOT = 4
ACK = 6
NAK = 0o25
CAN = 0o30
WANTCRC = 0o103
"""Sent instead of NAK to ask for CRC-16 blocks rather than checksums."""

RETRYMAX = 5
WCEOT = -10
"""Sector number reported by :meth:`XmodemReceiver.get_sector` for end of file."""


class TransferError(Exception):
    """The transfer failed or was cancelled."""


class _Line(Protocol):
    pending: int

    def readline(self, timeout: int) -> int: ...
    def sendline(self, c: int) -> None: ...
    def flush(self) -> None: ...
    def discard_pending(self) -> None: ...
    def purge(self) -> None: ...
    def canit(self) -> None: ...


class XmodemReceiver:
    """Receives files sent with XMODEM (checksum or CRC) or YMODEM batch.

    ``line`` supplies the byte-level operations of a :class:`ModemLine`.
    ``opener`` turns a YMODEM file header into an :class:`OutputFile`; by
    default the management rules of :func:`open_for_header` apply.
    """

    def __init__(
        self,
        line: _Line,
        settings: ReceiverSettings | None = None,
        *,
        crcflg: bool = False,
        batch: bool = False,
        batch_crc: bool = True,
        retries: int = RETRYMAX,
        opener: Callable[[FileHeader], OutputFile] | None = None,
        log: TextIO | None = None,
    ):
        self.line = line
        self.settings = settings if settings is not None else ReceiverSettings()
        self.crcflg = crcflg
        self.batch = batch
        self.batch_crc = batch_crc
        self.retries = retries
        self._opener = opener
        self._log = log
        self.firstsec = True
        self.bytesleft = DEFBYTL
        self.blklen = 128
        self.errors = 0

    @property
    def log(self) -> TextIO:
        return self._log if self._log is not None else sys.stderr

    def _zperr(self, message: str) -> None:
        if self.settings.verbose > 0:
            print(f"Retry {self.errors}: {message}", file=self.log)

    def _send(self, c: int) -> None:
        self.line.sendline(c)
        self.line.flush()
        self.line.discard_pending()

    def _nak(self) -> int:
        return WANTCRC if self.crcflg else NAK

    def _binary(self) -> bool:
        return self.settings.rxbinary or not self.settings.rxascii

    def receive(self, paths: Iterable[str] = ()) -> None:
        """Receive a YMODEM batch, or one XMODEM file into the single path given.

        Raises TransferError when the transfer fails and SecurityViolation
        when a restricted receiver is asked to write where it may not.
        """
        paths = list(paths)
        if self.batch or not paths:
            if self.batch_crc:
                self.crcflg = True
            self._receive_batch()
        else:
            self._receive_single(paths[0])

    def _check(self, name: str) -> str:
        try:
            return checkpath(name, self.settings.restricted)
        except SecurityViolation:
            self.line.canit()
            raise

    def _receive_single(self, path: str) -> None:
        self.bytesleft = DEFBYTL
        pathname = self._check(path)
        print(f"\nrz: ready to receive {pathname}\r", file=self.log)
        try:
            stream = open(pathname, "wb")
        except OSError as exc:
            raise TransferError(f"cannot open {pathname}: {exc.strerror or exc}") from exc
        output = OutputFile(pathname, stream, self._binary())
        try:
            self.receive_file(output)
        except TransferError:
            self._abort(output, pathname)
            raise

    def _open(self, header: FileHeader) -> OutputFile:
        if self._opener is not None:
            try:
                return self._opener(header)
            except OSError as exc:
                raise TransferError(f"cannot open {header.name}: {exc.strerror or exc}") from exc
        try:
            return open_for_header(header, self.settings)
        except SecurityViolation:
            self.line.canit()
            raise
        except SkipFile as exc:
            raise TransferError(f"Skipping {exc}") from exc
        except OSError as exc:
            raise TransferError(f"cannot open {header.name}: {exc.strerror or exc}") from exc

    def _receive_batch(self) -> None:
        output: OutputFile | None = None
        pathname = ""
        try:
            while True:
                header = parse_header(self.receive_pathname())
                if header is None:
                    return
                pathname = header.name
                output = self._open(header)
                self.bytesleft = header.size
                self.receive_file(output)
                output = None
        except TransferError:
            self._abort(output, pathname)
            raise

    def _abort(self, output: OutputFile | None, pathname: str) -> None:
        self.line.canit()
        if output is not None and output.owned and not output.stream.closed:
            with contextlib.suppress(OSError):
                output.stream.close()
        if self.settings.restricted and pathname:
            with contextlib.suppress(OSError):
                os.unlink(pathname)
            print(f"\r\nrz: {pathname} removed.\r", file=self.log)

    def receive_pathname(self) -> bytes:
        """Fetch YMODEM block 0 and return its contents (name and attributes)."""
        self.line.purge()
        while True:
            self.firstsec = True
            self._send(self._nak())
            number, data = self.get_sector(100)
            if number == WCEOT:
                self._zperr(f"Pathname fetch returned {number}")
                self._send(ACK)
                self.line.readline(1)
                continue
            if number == 0:
                self.line.sendline(ACK)
                self.line.flush()
                return data
            raise TransferError(f"expected pathname block, got sector {number}")

    def receive_file(self, output: OutputFile) -> None:
        """Receive data blocks into ``output`` until end of file, then close it.

        At most ``self.bytesleft`` bytes are written.
        """
        self.firstsec = True
        sectnum = 0
        sendchar = self._nak()
        while True:
            self._send(sendchar)
            number, data = self.get_sector(50 if sectnum & 0o177 else 130)
            if number == (sectnum + 1) & 0o377:
                sectnum += 1
                count = min(self.bytesleft, len(data))
                output.write(data[:count])
                self.bytesleft = max(self.bytesleft - count, 0)
                sendchar = ACK
            elif number == sectnum & 0o377:
                self._zperr("Received dup Sector")
                sendchar = ACK
            elif number == WCEOT:
                try:
                    output.close()
                except OSError as exc:
                    raise TransferError("File close ERROR") from exc
                self._send(ACK)
                return
            else:
                self._zperr("Sync Error")
                raise TransferError("Sync Error")

    def _read_block(self, blklen: int) -> tuple[int, bytes] | str:
        readline = self.line.readline
        sectcurr = readline(1)
        if sectcurr + readline(1) != 0o377:
            return "Sector number garbled"
        data = bytearray()
        for _ in range(blklen):
            c = readline(1)
            if c < 0:
                return "TIMEOUT"
            data.append(c)
        check = readline(1)
        if check < 0:
            return "TIMEOUT"
        if self.crcflg:
            low = readline(1)
            if low < 0:
                return "TIMEOUT"
            if crc16(data + bytes([check, low])):
                return "CRC"
        elif (sum(data) - check) & 0o377:
            return "Checksum"
        self.firstsec = False
        self.blklen = blklen
        return sectcurr, bytes(data)

    def get_sector(self, maxtime: int) -> tuple[int, bytes]:
        """Read one block; return its sector number and data.

        End of file gives ``(WCEOT, b"")``. No ACK is sent for a good block.
        ``maxtime`` is the wait for the first byte in tenths of a second.
        Raises TransferError when the sender cancels or retries run out.
        """
        lastrx = 0
        for errors in range(self.retries):
            self.errors = errors
            firstch = self.line.readline(maxtime)
            message: str | None
            if firstch in (SOH, STX):
                result = self._read_block(1024 if firstch == STX else 128)
                if isinstance(result, tuple):
                    return result
                message = result
            elif firstch == EOT and self.line.pending == 0:
                return WCEOT, b""
            elif firstch == CAN:
                if lastrx == CAN:
                    self._zperr("Sender CANcelled")
                    raise TransferError("Sender CANcelled")
                lastrx = CAN
                continue
            elif firstch == TIMEOUT:
                message = None if self.firstsec else "TIMEOUT"
            else:
                message = f"Got 0{firstch:o} sector header"
            if message:
                self._zperr(message)
            lastrx = 0
            while self.line.readline(1) != TIMEOUT:
                pass
            if self.firstsec:
                self._send(self._nak())
            else:
                maxtime = 40
                self._send(NAK)
        self.line.canit()
        raise TransferError("too many errors")


class _Interrupted(Exception):
    def __init__(self, signum: int):
        super().__init__(signum)
        self.signum = signum


def _on_signal(signum, frame) -> None:
    raise _Interrupted(signum)


class _UsageError(Exception):
    pass


@dataclass
class _Options:
    rxascii: bool = False
    rxtimeout: int = 100
    window: int = 1400
    verbose: int = 0
    clobber: bool = False
    patterns: list[str] = field(default_factory=list)


def _atoi(text: str) -> int:
    match = re.match(r"\s*([+-]?[0-9]+)", text)
    return int(match.group(1)) if match else 0


def _parse_options(args: list[str], batch: bool, nozmodem: bool, verbose: int) -> _Options:
    opts = _Options(verbose=verbose)
    i = 0
    while i < len(args):
        arg = args[i]
        i += 1
        if arg.startswith("-"):
            chars = list(arg[1:])
            j = 0
            while j < len(chars):
                ch = chars[j]
                j += 1
                if ch.isdigit():
                    continue
                if ch == "\\":
                    if j < len(chars):
                        chars[j] = chars[j].upper()
                    continue
                if ch == "a":
                    if batch and not nozmodem:
                        raise _UsageError
                    opts.rxascii = True
                elif ch in ("t", "w"):
                    rest = "".join(chars[j:])
                    if rest[:1].isdigit():
                        value = _atoi(rest)
                    else:
                        if i >= len(args):
                            raise _UsageError
                        value = _atoi(args[i])
                        i += 1
                    if ch == "t":
                        if not 1 <= value <= 1000:
                            raise _UsageError
                        opts.rxtimeout = value
                    else:
                        opts.window = value
                elif ch == "v":
                    opts.verbose += 1
                elif ch == "y":
                    opts.clobber = True
                else:
                    raise _UsageError
        elif not opts.patterns and arg:
            opts.patterns = args[i - 1:]
    if len(opts.patterns) > 1 or (batch and opts.patterns):
        raise _UsageError
    return opts


def _usage(progname: str) -> str:
    return (
        "Receive Files with YMODEM/XMODEM Protocol\n\n"
        "Usage:\trb [-avy] [-tT]\t\t(YMODEM)\n"
        "or\trc [-avy] [-tT] file\t(XMODEM-CRC)\n"
        "or\trx [-avy] [-tT] file\t(XMODEM)\n\n"
        f"{progname} {VERSION}\n"
        "This program is designed to talk to terminal programs,\n"
        "not to be called by one.\n"
    )


def _restricted() -> bool:
    if os.environ.get("RESTRICTED", "").startswith("1"):
        return True
    shell = os.environ.get("SHELL", "")
    return "rsh" in shell or "rksh" in shell


def _open_log(stack: contextlib.ExitStack) -> TextIO | None:
    for name in LOGFILES:
        try:
            return stack.enter_context(open(name, "a"))
        except OSError:
            continue
    return None


def main(argv: list[str] | None = None) -> int:
    """Receive files on the controlling terminal; the program name picks the protocol."""
    argv0 = sys.argv[0] if sys.argv and sys.argv[0] else "rb"
    args = list(sys.argv[1:] if argv is None else argv)
    invocation = chkinvok(argv0)
    try:
        opts = _parse_options(args, invocation.batch, invocation.nozmodem, invocation.verbose)
    except _UsageError:
        print(_usage(invocation.progname), file=sys.stderr)
        return 2

    settings = ReceiverSettings(
        rxascii=opts.rxascii,
        lzmanag=Management.CLOB if opts.clobber else 0,
        restricted=_restricted(),
        verbose=opts.verbose,
    )
    with contextlib.ExitStack() as stack:
        log: TextIO = sys.stderr
        if opts.verbose:
            opened = _open_log(stack)
            if opened is None:
                print("Can't open log file!", file=sys.stderr)
                return 2
            log = opened
            print(f"argv[0]={argv0} Progname={invocation.progname}", file=log, flush=True)
        try:
            line = ModemLine.open_terminal(verbose=opts.verbose, log=log)
        except OSError as exc:
            print(f"/dev/tty: {exc.strerror or exc}", file=sys.stderr)
            return 2
        stack.callback(os.close, line.fd)
        with contextlib.suppress(termios.error, OSError):
            tty_mode(line.fd, 1)

        def restore() -> None:
            with contextlib.suppress(termios.error, OSError, RuntimeError):
                tty_mode(line.fd, 0)

        stack.callback(restore)
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous = signal.getsignal(signum)
            if previous is signal.SIG_IGN:
                continue
            signal.signal(signum, _on_signal)
            stack.callback(signal.signal, signum, previous)

        progname = invocation.progname
        if invocation.batch or not opts.patterns:
            other = "sb" if invocation.nozmodem else "sz"
            print(f'{progname} ready. Type "{other} file ..." to your modem program\n\r',
                  file=log, end="", flush=True)
        receiver = XmodemReceiver(
            line, settings, crcflg=invocation.crcflg, batch=invocation.batch, log=log
        )
        exitcode = 0
        try:
            receiver.receive(opts.patterns)
        except TransferError as exc:
            exitcode = 1
            print(f"  {progname}: {exc}\r", file=log)
            line.canit()
        except SecurityViolation as exc:
            print(f"\r\nrz: {exc}\r", file=log)
            return 3
        except _Interrupted as exc:
            line.canit()
            print(f"rz: caught signal {exc.signum}; exiting", file=log)
            return 3
        if exitcode:
            line.canit()
        print(f"{progname} {VERSION} finished.\r", file=log, flush=True)
        return exitcode


def _stty(raw: bool) -> None:
    command = ["stty", "raw", "-echo"] if raw else ["stty", "echo", "-raw"]
    with contextlib.suppress(OSError):
        subprocess.run(command, check=False)


def _plain_open(header: FileHeader) -> OutputFile:
    return OutputFile(header.name, open(header.name, "wb"))


def minirb(argv: list[str] | None = None) -> int:
    """Bare-bones YMODEM batch receiver on standard input and output."""
    _stty(True)
    previous = signal.getsignal(signal.SIGINT)
    if previous is not signal.SIG_IGN:
        signal.signal(signal.SIGINT, _on_signal)
    try:
        out = sys.stdout.buffer
        out.write(f"{MINIRB_VERSION}\r\n\n\n".encode("ascii"))
        out.write(b'Send your files with a YAM/ZCOMM "sb file ..." command\r\n')
        out.flush()
        line = ModemLine(0, out, readnum=1024)
        receiver = XmodemReceiver(
            line, batch=True, batch_crc=False, retries=15, opener=_plain_open
        )
        with contextlib.suppress(TransferError, OSError):
            receiver.receive()
    except _Interrupted as exc:
        _stty(False)
        print(f"minirb: signal {exc.signum}; exiting", file=sys.stderr)
        return 128 + exc.signum
    finally:
        if previous is not signal.SIG_IGN:
            signal.signal(signal.SIGINT, previous)
    _stty(False)
    return 0


if __name__ == "__main__":
    sys.exit(main())