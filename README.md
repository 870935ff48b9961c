# bsdkit

A handful of small Unix tools and the library code behind them. Everything
uses the standard library only.

| Module | What it holds |
| --- | --- |
| `bsdkit.crc` | 16-bit CRC (CRC-CCITT, as used by XMODEM) and 32-bit CRC (ANSI X3.66), and a file checksum command |
| `bsdkit.mqtt` | MQTT 3.1.1 packet builders, a CONNACK parser, `MqttClient`, and a one-shot publish command |
| `bsdkit.httpd` | a one-request-per-process HTTP server for inetd |
| `bsdkit.modemline` | serial line handling: `ModemLine`, `tty_mode`, `get_speed` |
| `bsdkit.fileheader` | protocol constants, YMODEM file header parsing and the receiver's file handling |
| `bsdkit.receiver` | `XmodemReceiver` and the XMODEM/YMODEM receive commands |

## Installation

```
pip install .
```

## Commands

### bsdkit-crc

```
bsdkit-crc FILE...
bsdkit-crc -x FILE...     # pad with ^Z to a multiple of 128 bytes before summing
bsdkit-crc -k FILE...     # pad with ^Z to a multiple of 1024 bytes before summing
```

Each line shows the CRC-32 in upper-case hex, the byte count, with `-x` or
`-k` the count as whole blocks plus remainder, and the file name. Files that
cannot be read are reported on standard error and make the exit status 1.

### bsdkit-mqtt

```
bsdkit-mqtt -h 127.0.0.1 -u user -p password -t pdp11/cpu_usage -v 42.5%
```

Connects to the broker on port 1883, sends CONNECT (client id `pdp11`, clean
session, keep-alive 60 seconds) with the user name and password, waits for an
accepting CONNACK, publishes the value at QoS 0 and disconnects. `-u` and `-p`
are required; the host must be given as a dotted IPv4 address (default
`localhost` is not accepted as an address). The topic defaults to
`pdp11/cpu_usage` and the value to `42.5%`. Run with no arguments, it prints
usage and exits with status 1.

### bsdkit-httpd

```
bsdkit-httpd
```

Reads one request from standard input and writes the response to standard
output, so it is meant to be run from inetd with the connected socket as both.
It appends one line per request to `/usr/adm/httpd.log` (host, time, request
line, status); if that log cannot be opened it answers `500` and stops. Files
are served from `/var/www/`:

- the target of every `GET` or `POST` line is appended to the web root;
  reading the request is given 60 seconds;
- paths containing `/..` are refused with 403;
- a directory is served as its `index.html`; anything not a regular file is
  refused with 403;
- missing paths are logged as 404 but answered with a 403 status line;
- the Content-Type is `text/html`, `image/jpeg` or `image/x-icon` for
  `.html`, `.jpg` and `.ico`, and `text/plain` otherwise;
- a file whose path contains `/cgi-bin/` is run as a program, with an empty
  environment, when it is executable and neither setuid nor setgid; its
  output is passed to the client as it is, with no status line added.

`serve(instream, outstream, log, root)` does the same work on any binary
streams and a text log, which makes it usable without inetd.

### bsdkit-rz

```
bsdkit-rz [-avy] [-tT] [-wN]          # YMODEM batch receive
bsdkit-rz [-avy] [-tT] FILE           # XMODEM receive into FILE
```

Receives over the controlling terminal, which is put into raw mode for the
transfer and restored afterwards. With no file name it takes a YMODEM batch
(CRC-16 blocks), naming files from the sender's headers; with one file name it
takes a single XMODEM file. The protocol also follows the name the program is
started under: a name starting with `rb` or `rz` always receives a batch, and
`rc` asks for CRC blocks in single-file mode.

- `-a` strips carriage returns and stops at ^Z (text mode);
- `-y` replaces existing files;
- `-v` raises verbosity and logs to `/tmp/rzlog`, or `./rzlog` if that fails;
- `-t T` sets the receive timeout in tenths of a second (1 to 1000);
- `-w N` is accepted and sets a window size.

When `RESTRICTED=1` is set, or `SHELL` names `rsh` or `rksh`, existing files,
`../` in names and absolute paths outside `/usr/spool/uucppublic` are refused,
and a failed file is removed. Exit status: 0 on success, 1 when the transfer
failed, 2 for a usage error, 3 on a security violation or an interrupt.

### bsdkit-minirb

```
bsdkit-minirb
```

A bare YMODEM batch receiver on standard input and output using checksum
blocks. It runs `stty raw -echo` for the transfer and `stty echo -raw`
afterwards, and writes each file under the name the sender gives.

## Library use

```python
from bsdkit.crc import crc16, crc32, checksum_file
from bsdkit.mqtt import MqttClient, publish_packet, encode_remaining_length

reg = crc32(b"123456789")          # raw register; the check value is ~reg & 0xFFFFFFFF
crc16(b"123456789", 0)

packet = publish_packet("pdp11/cpu_usage", "42.5%")
encode_remaining_length(321)       # b'\xc1\x02'

print(checksum_file("some.bin", 128).format())

password = "password"
with MqttClient("127.0.0.1") as client:
    client.connect("user", password)
    client.publish("pdp11/cpu_usage", "42.5%")
    client.disconnect()
```

`bsdkit.fileheader.parse_header` turns a YMODEM block 0 into a `FileHeader`,
`open_for_header` applies the conversion and management rules to open an
`OutputFile`, and `XmodemReceiver` drives a transfer over any object with
`ModemLine`'s byte operations. Errors are raised as exceptions: `MqttError`,
`HttpError`, `TransferError`, `SecurityViolation` and `SkipFile`.

## What this package does not do

- It does not receive ZMODEM transfers. The ZMODEM frame types, flags and
  constants are defined in `bsdkit.fileheader`, but no ZMODEM header or data
  subpacket handling is implemented; `bsdkit-rz` speaks XMODEM and YMODEM only,
  and does not run commands sent by the other end.
- It has no sending side: there is no XMODEM/YMODEM sender.
- The MQTT client only publishes at QoS 0; it does not subscribe.

## Running the tests

```
pip install .[test]
pytest
```