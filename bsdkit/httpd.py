"""A one-shot HTTP server meant to be started per connection by inetd.

The request is read from standard input, the response written to standard
output, and one line per request appended to a log file.
"""

from __future__ import annotations

import errno
import os
import shutil
import signal
import socket
import stat
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import BinaryIO, TextIO

BUF_SIZE = 256
PATH_LEN = 512
WWW_ROOT = "/var/www/"
LOGFILE = "/usr/adm/httpd.log"
REQUEST_TIMEOUT = 60

HTTP_200 = "HTTP/1.1 200 OK"
HTTP_403 = "HTTP/1.1 403 Forbidden"
HTTP_404 = "HTTP/1.1 404 Not Found"
HTTP_500 = "HTTP/1.1 500 Internal Server Error"

_NOT_FOUND_ERRNOS = {errno.ENOENT, errno.ENOTDIR, errno.EINVAL, errno.ENAMETOOLONG}


class HttpError(Exception):
    """A request that ends with an error status.

    ``code`` is the number written to the log, ``status`` the status line
    sent to the client and ``reason`` the text logged after the code.
    """

    def __init__(self, code: int, status: str, reason: str):
        super().__init__(f"{code} {reason}")
        self.code = code
        self.status = status
        self.reason = reason


@dataclass(frozen=True)
class Request:
    """The filesystem path a request asks for and the request lines seen."""

    path: str
    lines: tuple[str, ...] = ()


def read_request(stream: BinaryIO, root: str = WWW_ROOT) -> Request:
    """Read request headers up to the blank line and build the target path.

    Every ``GET`` or ``POST`` line appends its target to ``root``; the
    path is limited to ``PATH_LEN - 1`` characters.
    """
    path = root[: PATH_LEN - 1]
    lines: list[str] = []
    for raw in stream:
        line = raw.decode("latin-1")
        for stop in ("\r", "\n"):
            line = line.split(stop, 1)[0]
        if not line:
            break
        if line.startswith(("GET ", "POST ")):
            lines.append(line)
            tokens = [token for token in line.split(" ") if token]
            if len(tokens) > 1:
                path = (path + tokens[1])[: PATH_LEN - 1]
    return Request(path, tuple(lines))


def _stat(path: str) -> os.stat_result:
    try:
        return os.stat(path)
    except OSError as exc:
        reason = exc.strerror or str(exc)
        if exc.errno in _NOT_FOUND_ERRNOS:
            raise HttpError(404, HTTP_403, reason) from exc
        if exc.errno == errno.EACCES:
            raise HttpError(403, HTTP_403, reason) from exc
        raise HttpError(500, HTTP_500, reason) from exc


def locate(path: str) -> tuple[str, os.stat_result]:
    """Resolve a request path to a regular file, using index.html for directories.

    Raises HttpError when the path climbs with ``..``, cannot be found or
    read, or is not a regular file.
    """
    if "/.." in path:
        raise HttpError(403, HTTP_403, 'Request contains ".."')
    st = _stat(path)
    if stat.S_ISDIR(st.st_mode):
        path = (path + "index.html")[: PATH_LEN - 1]
        st = _stat(path)
    if not stat.S_ISREG(st.st_mode):
        raise HttpError(403, HTTP_403, "Not a regular file")
    return path, st


def content_type(path: str) -> str:
    """Return the Content-Type for a path, judged by its last dot."""
    dot = path.rfind(".")
    ext = path[dot:] if dot >= 0 else ""
    return {
        ".html": "text/html",
        ".jpg": "image/jpeg",
        ".ico": "image/x-icon",
    }.get(ext, "text/plain")


def _stdin_for(stream: BinaryIO) -> int:
    try:
        return stream.fileno()
    except (AttributeError, OSError, ValueError):
        return subprocess.DEVNULL


def _run_cgi(path: str, st: os.stat_result, instream: BinaryIO, outstream: BinaryIO,
             log: TextIO) -> int:
    if not st.st_mode & stat.S_IXUSR or st.st_mode & (stat.S_ISUID | stat.S_ISGID):
        raise HttpError(403, HTTP_403, "File not executable and/or is setuid/setgid")
    outstream.flush()
    try:
        result = subprocess.run(
            [path], env={}, stdin=_stdin_for(instream), stdout=subprocess.PIPE
        )
    except OSError as exc:
        raise HttpError(500, HTTP_500, exc.strerror or str(exc)) from exc
    outstream.write(result.stdout)
    if result.returncode >= 0:
        log.write(f"Exited with status {result.returncode}\n")
    else:
        log.write(f"Terminated with signal {-result.returncode}\n")
    return 0


def _send_file(path: str, st: os.stat_result, outstream: BinaryIO, log: TextIO) -> int:
    try:
        fin = open(path, "rb")
    except OSError as exc:
        raise HttpError(500, HTTP_500, exc.strerror or str(exc)) from exc
    with fin:
        outstream.write(f"{HTTP_200}\r\n".encode("ascii"))
        log.write(f"200 {st.st_size}\n")
        outstream.write(f"Content-Type: {content_type(path)}\r\n".encode("ascii"))
        outstream.write(f"Content-Length: {st.st_size}\r\n\r\n".encode("ascii"))
        shutil.copyfileobj(fin, outstream, BUF_SIZE)
    return 0


def _respond(request: Request, instream: BinaryIO, outstream: BinaryIO, log: TextIO) -> int:
    try:
        path, st = locate(request.path)
        if "/cgi-bin/" in path:
            return _run_cgi(path, st, instream, outstream, log)
        return _send_file(path, st, outstream, log)
    except HttpError as exc:
        outstream.write(f"{exc.status}\r\n".encode("ascii"))
        log.write(f"{exc.code} {exc.reason}\n")
        return 1
    finally:
        outstream.flush()


def _log_request(request: Request, log: TextIO) -> None:
    for line in request.lines:
        log.write(f'"{line}" ')


def serve(instream: BinaryIO, outstream: BinaryIO, log: TextIO, root: str = WWW_ROOT) -> int:
    """Answer one request; return 0 on success and 1 when an error was sent."""
    request = read_request(instream, root)
    _log_request(request, log)
    return _respond(request, instream, outstream, log)


def _peer_host() -> str:
    try:
        fd = os.dup(0)
    except OSError as exc:
        return exc.strerror or str(exc)
    try:
        sock = socket.socket(fileno=fd)
    except OSError as exc:
        os.close(fd)
        return exc.strerror or str(exc)
    with sock:
        try:
            address = sock.getpeername()[0]
        except OSError as exc:
            return exc.strerror or str(exc)
    try:
        return socket.gethostbyaddr(address)[0]
    except OSError:
        return address


def _set_timer(seconds: float) -> None:
    if hasattr(signal, "setitimer"):
        signal.setitimer(signal.ITIMER_REAL, seconds)


def main(argv: list[str] | None = None) -> int:
    """Serve the request on standard input; no options are taken."""
    outstream = sys.stdout.buffer
    try:
        log = open(LOGFILE, "a")
    except OSError:
        outstream.write(f"{HTTP_500}\r\n".encode("ascii"))
        outstream.flush()
        return 1
    with log:
        log.write(f"{_peer_host()} ")
        log.write(f"[{time.ctime()}] ")
        instream = sys.stdin.buffer
        # An unfinished request must not hold the process forever.
        _set_timer(REQUEST_TIMEOUT)
        try:
            request = read_request(instream, WWW_ROOT)
        finally:
            _set_timer(0)
        _log_request(request, log)
        return _respond(request, instream, outstream, log)


if __name__ == "__main__":
    sys.exit(main())