import socket

import pytest

from bsdkit.mqtt import (
    DEFAULT_HOSTNAME,
    DEFAULT_TOPIC,
    DEFAULT_VALUE,
    MqttClient,
    MqttError,
    Options,
    connect_packet,
    disconnect_packet,
    encode_remaining_length,
    get_cpu_usage,
    main,
    parse_args,
    parse_connack,
    publish_packet,
)


def _decode_remaining_length(data):
    value = 0
    for shift, byte in enumerate(data):
        value |= (byte & 0x7F) << (7 * shift)
        if not byte & 0x80:
            return value, shift + 1
    raise AssertionError("unterminated length")


@pytest.mark.parametrize(
    "length, expected",
    [(0, b"\x00"), (127, b"\x7f"), (128, b"\x80\x01"), (16383, b"\xff\x7f")],
)
def test_encode_remaining_length_known_values(length, expected):
    assert encode_remaining_length(length) == expected


@pytest.mark.parametrize("length", [1, 200, 16384, 2097151, 2097152, 268435455])
def test_encode_remaining_length_round_trip(length):
    encoded = encode_remaining_length(length)
    assert _decode_remaining_length(encoded) == (length, len(encoded))
    assert len(encoded) <= 4


@pytest.mark.parametrize("length", [-1, 268435456])
def test_encode_remaining_length_out_of_range(length):
    with pytest.raises(MqttError):
        encode_remaining_length(length)


def test_connect_packet_layout():
    password = "password"
    packet = connect_packet("user", password)
    assert packet[0] == 0x10
    assert packet[1] == len(packet) - 2
    assert packet[2:8] == b"\x00\x04MQTT"
    assert packet[8] == 0x04
    assert packet[9] == 0x02 | 0x80 | 0x40
    assert packet[10:12] == b"\x00\x3c"
    assert packet[12:19] == b"\x00\x05pdp11"
    assert packet[19:25] == b"\x00\x04user"
    assert packet.endswith(b"\x00\x08password")


def test_connect_packet_without_credentials():
    packet = connect_packet("", "")
    assert packet[9] == 0x02
    assert packet.endswith(b"\x00\x05pdp11")


def test_publish_packet_layout():
    packet = publish_packet("a/b", "hi")
    assert packet[0] == 0x30
    length, used = _decode_remaining_length(packet[1:])
    assert length == len(packet) - 1 - used
    assert packet[1 + used:] == b"\x00\x03a/bhi"


def test_publish_packet_long_payload_uses_multibyte_length():
    message = "x" * 300
    packet = publish_packet("t", message)
    length, used = _decode_remaining_length(packet[1:])
    assert used == 2
    assert length == len(packet) - 3
    assert packet.endswith(message.encode())


def test_disconnect_packet():
    assert disconnect_packet() == b"\xe0\x00"


def test_parse_connack_accepts_and_reports_session():
    assert parse_connack(b"\x20\x02\x00\x00") is False
    assert parse_connack(b"\x20\x02\x01\x00") is True


@pytest.mark.parametrize(
    "data",
    [b"\x30\x02\x00\x00", b"\x20\x03\x00\x00", b"\x20\x02\x00\x05", b"\x20\x02"],
)
def test_parse_connack_rejects(data):
    with pytest.raises(MqttError):
        parse_connack(data)


def test_get_cpu_usage():
    assert get_cpu_usage() == 42.5


def test_parse_args_defaults():
    password = "password"
    options = parse_args(["-u", "user", "-p", password])
    assert options == Options(DEFAULT_HOSTNAME, "user", password, DEFAULT_TOPIC, DEFAULT_VALUE)


def test_parse_args_all_options():
    options = parse_args(["-h", "10.0.0.1", "-u", "user", "-p", "password", "-t", "x/y", "-v", "7"])
    assert options.hostname == "10.0.0.1"
    assert options.topic == "x/y"
    assert options.value == "7"


@pytest.mark.parametrize(
    "argv",
    [[], ["-u", "user"], ["-p", "password"], ["-z", "1", "-u", "user", "-p", "password"]],
)
def test_parse_args_errors(argv):
    with pytest.raises(MqttError):
        parse_args(argv)


@pytest.fixture
def pair():
    client_side, broker_side = socket.socketpair()
    broker_side.settimeout(5)
    yield client_side, broker_side
    broker_side.close()
    client_side.close()


def _read(sock, size):
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        assert chunk
        data += chunk
    return data


def test_client_session(pair):
    client_side, broker_side = pair
    broker_side.sendall(b"\x20\x02\x00\x00")
    password = "password"
    with MqttClient("127.0.0.1", sock=client_side) as client:
        assert client.connect("user", password) is False
        expected = connect_packet("user", password)
        assert _read(broker_side, len(expected)) == expected
        client.publish("a/b", "42.5%")
        expected = publish_packet("a/b", "42.5%")
        assert _read(broker_side, len(expected)) == expected
        client.disconnect()
        assert _read(broker_side, 2) == b"\xe0\x00"


def test_client_refused(pair):
    client_side, broker_side = pair
    broker_side.sendall(b"\x20\x02\x00\x05")
    client = MqttClient("127.0.0.1", sock=client_side)
    password = "password"
    with pytest.raises(MqttError, match="return code: 5"):
        client.connect("user", password)


def test_client_connack_truncated(pair):
    client_side, broker_side = pair
    broker_side.sendall(b"\x20\x02")
    broker_side.shutdown(socket.SHUT_WR)
    client = MqttClient("127.0.0.1", sock=client_side)
    password = "password"
    with pytest.raises(MqttError, match="CONNACK byte 3"):
        client.connect("user", password)


def test_client_rejects_hostname():
    with pytest.raises(MqttError, match="invalid IP address"):
        MqttClient("localhost")


def test_main_without_arguments(capsys):
    assert main([]) == 1
    assert "Usage:" in capsys.readouterr().err


def test_main_missing_credentials(capsys):
    assert main(["-u", "user"]) == 1
    assert "Username and password are required." in capsys.readouterr().err


def test_main_invalid_address(capsys):
    assert main(["-u", "user", "-p", "password"]) == 1
    err = capsys.readouterr().err
    assert "invalid IP address: localhost" in err
    assert "Failed to connect to MQTT broker." in err