[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bsdkit"
version = "0.1.0"
description = "Small classic Unix utilities: CRC checksums, a minimal MQTT publisher, a one-shot inetd-style HTTP server and an XMODEM/YMODEM file receiver"
requires-python = ">=3.10"
dependencies = []
keywords = ["crc32", "crc16", "mqtt", "httpd", "inetd", "xmodem", "ymodem", "serial"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Utilities",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
bsdkit-crc = "bsdkit.crc:main"
bsdkit-mqtt = "bsdkit.mqtt:main"
bsdkit-httpd = "bsdkit.httpd:main"
bsdkit-rz = "bsdkit.receiver:main"
bsdkit-minirb = "bsdkit.receiver:minirb"

[tool.hatch.build.targets.wheel]
packages = ["bsdkit"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"
