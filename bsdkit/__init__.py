"""Small Unix utilities: CRC checksums, an MQTT publisher, an inetd HTTP server and an XMODEM/YMODEM receiver."""

__version__ = "0.1.0"