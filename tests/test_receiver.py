import pytest

from bsdkit.crc import crc16
from bsdkit.fileheader import OutputFile, ReceiverSettings, SecurityViolation
from bsdkit.modemline import CANCEL_STRING, TIMEOUT
from bsdkit.receiver import (
    ACK,
    CAN,
    EOT,
    NAK,
    RETRYMAX,
    SOH,
    STX,
    WANTCRC,
    WCEOT,
    TransferError,
    XmodemReceiver,
    main,
)


class FakeLine:
    """A modem line whose far end answers each flush with the next scripted chunk."""

    def __init__(self, script=(), ready=b""):
        self.script = list(script)
        self.queue = bytearray(ready)
        self.buf = bytearray()
        self.sent = bytearray()
        self.cancels = 0

    @property
    def pending(self):
        return len(self.buf)

    def discard_pending(self):
        self.buf.clear()

    def readline(self, timeout):
        if not self.buf:
            if not self.queue:
                return TIMEOUT
            self.buf = bytearray(self.queue)
            self.queue.clear()
        return self.buf.pop(0)

    def sendline(self, c):
        self.sent.append(c & 0xFF)

    def flush(self):
        if self.script:
            self.queue += self.script.pop(0)

    def purge(self):
        self.buf.clear()
        self.queue.clear()

    def canit(self):
        self.cancels += 1
        self.sent += CANCEL_STRING
        self.buf.clear()


def make_block(number, payload, *, crc=False, size=128):
    data = payload.ljust(size, b"\x1a")
    lead = STX if size == 1024 else SOH
    if crc:
        tail = crc16(data + b"\0\0").to_bytes(2, "big")
    else:
        tail = bytes([sum(data) & 0xFF])
    num = number & 0xFF
    return bytes([lead, num, 0xFF - num]) + data + tail


def test_get_sector_checksum_block():
    line = FakeLine(ready=make_block(1, b"hello"))
    receiver = XmodemReceiver(line)
    number, data = receiver.get_sector(10)
    assert number == 1
    assert data == b"hello".ljust(128, b"\x1a")
    assert receiver.firstsec is False


def test_get_sector_crc_block():
    line = FakeLine(ready=make_block(3, b"crc data", crc=True))
    receiver = XmodemReceiver(line, crcflg=True)
    number, data = receiver.get_sector(10)
    assert number == 3
    assert data.startswith(b"crc data")


def test_get_sector_one_k_block():
    line = FakeLine(ready=make_block(1, b"big", crc=True, size=1024))
    receiver = XmodemReceiver(line, crcflg=True)
    number, data = receiver.get_sector(10)
    assert number == 1
    assert len(data) == 1024
    assert receiver.blklen == 1024


def test_get_sector_eot():
    line = FakeLine(ready=bytes([EOT]))
    assert XmodemReceiver(line).get_sector(10) == (WCEOT, b"")


def test_get_sector_double_cancel():
    line = FakeLine(ready=bytes([CAN, CAN]))
    with pytest.raises(TransferError):
        XmodemReceiver(line).get_sector(10)


def test_get_sector_retries_exhausted():
    line = FakeLine()
    receiver = XmodemReceiver(line)
    with pytest.raises(TransferError):
        receiver.get_sector(10)
    assert line.cancels == 1
    assert line.sent.count(NAK) == RETRYMAX


def test_get_sector_bad_checksum_then_good():
    bad = bytearray(make_block(1, b"x"))
    bad[-1] ^= 0xFF
    good = make_block(1, b"x")
    line = FakeLine(script=[good], ready=bytes(bad))
    number, data = XmodemReceiver(line).get_sector(10)
    assert number == 1
    assert data.startswith(b"x")
    assert bytes(line.sent) == bytes([NAK])


def test_get_sector_bad_crc_is_rejected():
    bad = bytearray(make_block(1, b"x", crc=True))
    bad[5] ^= 0x01
    line = FakeLine(ready=bytes(bad))
    with pytest.raises(TransferError):
        XmodemReceiver(line, crcflg=True).get_sector(10)


def test_receive_single_xmodem_file(tmp_path):
    one = make_block(1, b"first")
    two = make_block(2, b"second")
    line = FakeLine(script=[one, two, bytes([EOT])])
    target = tmp_path / "out.bin"
    XmodemReceiver(line).receive([str(target)])
    assert target.read_bytes() == one[3:131] + two[3:131]
    assert line.sent[0] == NAK
    assert line.sent[-1] == ACK


def test_receive_text_mode_strips_cr_and_stops_at_eof(tmp_path):
    line = FakeLine(script=[make_block(1, b"a\r\nb\x1azzz"), bytes([EOT])])
    target = tmp_path / "out.txt"
    XmodemReceiver(line, ReceiverSettings(rxascii=True)).receive([str(target)])
    assert target.read_bytes() == b"a\nb"


def test_receive_duplicate_sector_written_once(tmp_path):
    block = make_block(1, b"dup")
    line = FakeLine(script=[block, block, bytes([EOT])])
    target = tmp_path / "out.bin"
    XmodemReceiver(line).receive([str(target)])
    assert target.read_bytes() == block[3:131]


def test_receive_file_sync_error(tmp_path):
    line = FakeLine(script=[make_block(2, b"skip")])
    stream = open(tmp_path / "x.bin", "wb")
    output = OutputFile(str(tmp_path / "x.bin"), stream)
    with pytest.raises(TransferError, match="Sync Error"):
        XmodemReceiver(line).receive_file(output)
    stream.close()


def test_receive_file_limits_to_bytes_left(tmp_path):
    line = FakeLine(script=[make_block(1, b"abcdefgh"), bytes([EOT])])
    path = tmp_path / "x.bin"
    output = OutputFile(str(path), open(path, "wb"))
    receiver = XmodemReceiver(line)
    receiver.bytesleft = 3
    receiver.receive_file(output)
    assert path.read_bytes() == b"abc"
    assert receiver.bytesleft == 0


def test_restricted_failure_removes_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    line = FakeLine()
    receiver = XmodemReceiver(line, ReceiverSettings(restricted=True))
    with pytest.raises(TransferError):
        receiver.receive(["new.bin"])
    assert not (tmp_path / "new.bin").exists()
    assert line.cancels >= 1


def test_restricted_rejects_parent_path(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    line = FakeLine()
    receiver = XmodemReceiver(line, ReceiverSettings(restricted=True))
    with pytest.raises(SecurityViolation):
        receiver.receive(["../evil"])
    assert line.cancels == 1


def test_receive_ymodem_batch(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    header = b"hello.txt\x005\x00".ljust(128, b"\0")
    script = [
        make_block(0, header, crc=True),
        b"",
        make_block(1, b"hello", crc=True),
        bytes([EOT]),
        b"",
        make_block(0, b"\0" * 128, crc=True),
    ]
    line = FakeLine(script=script)
    XmodemReceiver(line, batch=True).receive()
    assert (tmp_path / "hello.txt").read_bytes() == b"hello"
    assert line.sent[0] == WANTCRC
    assert line.cancels == 0


def test_receive_batch_skips_existing_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "keep.txt").write_bytes(b"original")
    header = b"keep.txt\x003\x00".ljust(128, b"\0")
    line = FakeLine(script=[make_block(0, header, crc=True), b""])
    with pytest.raises(TransferError):
        XmodemReceiver(line, batch=True).receive()
    assert (tmp_path / "keep.txt").read_bytes() == b"original"
    assert line.cancels == 1


def test_receive_pathname_after_stray_eot():
    block0 = make_block(0, b"name.bin\0", crc=True)
    line = FakeLine(script=[bytes([EOT]), b"", block0])
    receiver = XmodemReceiver(line, crcflg=True)
    data = receiver.receive_pathname()
    assert data.startswith(b"name.bin\0")
    assert line.sent[-1] == ACK


@pytest.mark.parametrize("args", [["-t", "0"], ["-Q"], ["-t"], ["one", "two"]])
def test_main_usage_errors(args, capsys):
    assert main(args) == 2
    assert "Usage" in capsys.readouterr().err