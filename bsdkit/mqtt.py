"""Minimal MQTT 3.1.1 publisher: connect with credentials, publish one value, disconnect."""

from __future__ import annotations

import getopt
import socket
import sys
from dataclasses import dataclass

DEFAULT_HOSTNAME = "localhost"
DEFAULT_PORT = 1883
DEFAULT_TOPIC = "pdp11/cpu_usage"
DEFAULT_VALUE = "42.5%"
CLIENT_ID = "pdp11"
KEEP_ALIVE = 60

CONNECT = 0x10
CONNACK = 0x20
PUBLISH = 0x30
DISCONNECT = 0xE0

_MAX_REMAINING_LENGTH = 268_435_455
_USAGE = "Usage: {prog} [-h hostname] [-u username] [-p password] [-t topic] [-v value]"


class MqttError(Exception):
    """Raised when a packet cannot be built, sent, received or accepted."""


@dataclass
class Options:
    """Command-line settings for one publish."""

    hostname: str = DEFAULT_HOSTNAME
    username: str = ""
    password: str = ""
    topic: str = DEFAULT_TOPIC
    value: str = DEFAULT_VALUE


def encode_remaining_length(length: int) -> bytes:
    """Encode an MQTT "Remaining Length" as 1 to 4 variable-length bytes."""
    if length < 0 or length > _MAX_REMAINING_LENGTH:
        raise MqttError(f"remaining length out of range: {length}")
    out = bytearray()
    while True:
        length, digit = divmod(length, 128)
        if length:
            digit |= 0x80
        out.append(digit)
        if not length:
            return bytes(out)


def _field(text: str | bytes) -> bytes:
    data = text.encode("utf-8") if isinstance(text, str) else text
    if len(data) > 0xFFFF:
        raise MqttError("string field longer than 65535 bytes")
    return len(data).to_bytes(2, "big") + data


def _packet(first_byte: int, body: bytes) -> bytes:
    return bytes([first_byte]) + encode_remaining_length(len(body)) + body


def connect_packet(
    username: str,
    password: str,
    client_id: str = CLIENT_ID,
    keep_alive: int = KEEP_ALIVE,
) -> bytes:
    """Build a CONNECT packet with clean session and optional credentials."""
    flags = 0x02
    if username:
        flags |= 0x80
    if password:
        flags |= 0x40
    body = bytearray(_field("MQTT"))
    body.append(0x04)
    body.append(flags)
    body += (keep_alive & 0xFFFF).to_bytes(2, "big")
    body += _field(client_id)
    if username:
        body += _field(username)
    if password:
        body += _field(password)
    return _packet(CONNECT, bytes(body))


def publish_packet(topic: str, message: str) -> bytes:
    """Build a QoS 0 PUBLISH packet."""
    return _packet(PUBLISH, _field(topic) + message.encode("utf-8"))


def disconnect_packet() -> bytes:
    """Build a DISCONNECT packet."""
    return bytes([DISCONNECT, 0x00])


def parse_connack(data: bytes) -> bool:
    """Validate a 4-byte CONNACK; return the session-present flag."""
    if len(data) != 4:
        raise MqttError(f"CONNACK must be 4 bytes, got {len(data)}")
    if data[0] != CONNACK:
        raise MqttError(f"Invalid CONNACK packet type: 0x{data[0]:02X}")
    if data[1] != 0x02:
        raise MqttError(f"Invalid CONNACK remaining length: {data[1]}")
    if data[3] != 0x00:
        raise MqttError(f"Connection refused, return code: {data[3]}")
    return bool(data[2] & 0x01)


def get_cpu_usage() -> float:
    """Return the CPU usage figure to report (a fixed value)."""
    return 42.5


def parse_args(argv: list[str]) -> Options:
    """Parse ``-h -u -p -t -v`` options; username and password are required."""
    if not argv:
        raise MqttError("no arguments given")
    try:
        pairs, _ = getopt.getopt(argv, "h:u:p:t:v:")
    except getopt.GetoptError as exc:
        raise MqttError(str(exc)) from exc
    options = Options()
    names = {"-h": "hostname", "-u": "username", "-p": "password", "-t": "topic", "-v": "value"}
    for flag, value in pairs:
        setattr(options, names[flag], value)
    if not options.username or not options.password:
        raise MqttError("Username and password are required.")
    return options


def _check_address(host: str) -> None:
    try:
        packed = socket.inet_aton(host)
    except OSError:
        packed = b"\xff\xff\xff\xff"
    if packed == b"\xff\xff\xff\xff":
        raise MqttError(f"ERROR, invalid IP address: {host}")


class MqttClient:
    """A TCP connection to an MQTT broker."""

    def __init__(self, host: str, port: int = DEFAULT_PORT, sock: socket.socket | None = None):
        self.host = host
        self.port = port
        if sock is None:
            _check_address(host)
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                sock.connect((host, port))
            except OSError as exc:
                sock.close()
                raise MqttError(f"ERROR connecting: {exc}") from exc
        self._sock = sock

    def _send(self, data: bytes, what: str) -> None:
        try:
            self._sock.sendall(data)
        except OSError as exc:
            raise MqttError(f"Failed to send MQTT {what} packet: {exc}") from exc

    def _receive_connack(self) -> bool:
        data = bytearray()
        while len(data) < 4:
            try:
                chunk = self._sock.recv(4 - len(data))
            except OSError as exc:
                raise MqttError(f"Failed to receive CONNACK byte {len(data) + 1}.") from exc
            if not chunk:
                raise MqttError(f"Failed to receive CONNACK byte {len(data) + 1}.")
            data += chunk
        return parse_connack(bytes(data))

    def connect(self, username: str, password: str) -> bool:
        """Send CONNECT and wait for an accepting CONNACK; return session-present."""
        self._send(connect_packet(username, password), "CONNECT")
        return self._receive_connack()

    def publish(self, topic: str, message: str) -> None:
        """Publish ``message`` to ``topic`` at QoS 0."""
        self._send(publish_packet(topic, message), "PUBLISH")

    def disconnect(self) -> None:
        """Send DISCONNECT."""
        self._send(disconnect_packet(), "DISCONNECT")

    def close(self) -> None:
        """Close the socket."""
        self._sock.close()

    def __enter__(self) -> MqttClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()


def main(argv: list[str] | None = None) -> int:
    """Publish one value to a broker as given on the command line."""
    prog = sys.argv[0] if sys.argv and sys.argv[0] else "mqtt"
    args = list(sys.argv[1:] if argv is None else argv)
    usage = _USAGE.format(prog=prog)
    try:
        options = parse_args(args)
    except MqttError as exc:
        if args:
            print(f"Error: {exc}", file=sys.stderr)
        print(usage, file=sys.stderr)
        return 1

    try:
        client = MqttClient(options.hostname, DEFAULT_PORT)
    except MqttError as exc:
        print(exc, file=sys.stderr)
        print("Failed to connect to MQTT broker.", file=sys.stderr)
        return 1
    print(f"Connected to MQTT broker at {options.hostname}:{DEFAULT_PORT}")

    with client:
        try:
            client.connect(options.username, options.password)
            print("Sent MQTT CONNECT packet.")
            print("Received CONNACK, connection successful.")
            client.publish(options.topic, options.value)
            print("Sent MQTT PUBLISH packet.")
        except MqttError as exc:
            print(exc, file=sys.stderr)
            return 1
        print(f"Published: {options.value}")
        try:
            client.disconnect()
            print("Sent MQTT DISCONNECT packet.")
        except MqttError as exc:
            print(exc, file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())