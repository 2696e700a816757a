"""Frames exchanged by the connection multiplexer and their binary encoding."""

from __future__ import annotations

import enum
import ipaddress
import logging
import struct
from dataclasses import dataclass
from typing import BinaryIO, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class _LoggerHolder:
    """Holds the logger shared by the package's modules."""

    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger


_holder = _LoggerHolder(logging.getLogger("vpnmux"))


def set_logger(logger: logging.Logger) -> None:
    """Replace the logger used by the package."""
    if not isinstance(logger, logging.Logger):
        raise TypeError(f"expected a logging.Logger, got {type(logger).__name__}")
    _holder.logger = logger


def get_logger() -> logging.Logger:
    """Return the logger used by the package."""
    return _holder.logger


class FrameError(ValueError):
    """A frame is malformed or was asked for a payload it does not carry."""


class Proto(enum.IntEnum):
    """Protocol of a forwarded flow."""

    TCP = 1
    UDP = 2
    UNIX = 3


class Connection(enum.IntEnum):
    """Whether an opened connection is dedicated or multiplexed."""

    DEDICATED = 1
    MULTIPLEXED = 2

    def __str__(self) -> str:
        return self.name.capitalize()


class Command(enum.IntEnum):
    """The action requested by a frame."""

    OPEN = 1
    CLOSE = 2
    SHUTDOWN = 3
    DATA = 4
    WINDOW = 5


def _coerce(enum_cls, value: int):
    """Return the enum member for value, or the raw value if it has none."""
    try:
        return enum_cls(value)
    except ValueError:
        return value


def read_exact(r: BinaryIO, n: int) -> bytes:
    """Read exactly n bytes from r, raising EOFError if the stream ends first."""
    chunks = []
    remaining = n
    while remaining > 0:
        chunk = r.read(remaining)
        if not chunk:
            raise EOFError("unexpected EOF" if chunks else "EOF")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _read_struct(r: BinaryIO, fmt: str) -> tuple:
    return struct.unpack(fmt, read_exact(r, struct.calcsize(fmt)))


def _parse_ip(raw: bytes) -> Optional[IPAddress]:
    if not raw:
        return None
    if len(raw) == 4:
        return ipaddress.IPv4Address(raw)
    if len(raw) == 16:
        return ipaddress.IPv6Address(raw)
    raise FrameError(f"invalid IP address length {len(raw)}")


def _ip_text(ip: Optional[IPAddress]) -> str:
    if ip is None:
        return "<nil>"
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


@dataclass(frozen=True)
class Destination:
    """A listening TCP, UDP or Unix domain socket service."""

    proto: Proto
    ip: Optional[IPAddress] = None
    port: int = 0
    path: str = ""

    def __str__(self) -> str:
        if self.proto == Proto.TCP:
            return f"TCP:{_ip_text(self.ip)}:{self.port}"
        if self.proto == Proto.UDP:
            return f"UDP:{_ip_text(self.ip)}:{self.port}"
        if self.proto == Proto.UNIX:
            return f"Unix:{self.path}"
        return "Unknown"

    def __bytes__(self) -> bytes:
        head = struct.pack("<B", int(self.proto))
        if self.proto in (Proto.TCP, Proto.UDP):
            ip = self.ip.packed if self.ip is not None else b""
            return head + struct.pack("<H", len(ip)) + ip + struct.pack("<H", self.port)
        if self.proto == Proto.UNIX:
            path = self.path.encode("utf-8", errors="surrogateescape")
            return head + struct.pack("<H", len(path)) + path
        return head

    def write(self, w: BinaryIO) -> None:
        w.write(bytes(self))

    def size(self) -> int:
        """Size in bytes of the encoded destination."""
        if self.proto in (Proto.TCP, Proto.UDP):
            ip_len = len(self.ip.packed) if self.ip is not None else 0
            return 1 + 2 + ip_len + 2
        if self.proto == Proto.UNIX:
            return 1 + 2 + len(self.path.encode("utf-8", errors="surrogateescape"))
        return 0


def read_destination(r: BinaryIO) -> Destination:
    """Read a destination header describing the protocol and address."""
    (raw_proto,) = _read_struct(r, "<B")
    proto = _coerce(Proto, raw_proto)
    if proto in (Proto.TCP, Proto.UDP):
        (length,) = _read_struct(r, "<H")
        ip = _parse_ip(read_exact(r, length))
        (port,) = _read_struct(r, "<H")
        return Destination(proto, ip, port)
    if proto == Proto.UNIX:
        (length,) = _read_struct(r, "<H")
        path = read_exact(r, length).decode("utf-8", errors="surrogateescape")
        return Destination(proto, path=path)
    return Destination(proto)


@dataclass
class OpenFrame:
    """Request to connect to a proxy backend."""

    connection: Connection
    destination: Destination

    def __bytes__(self) -> bytes:
        return struct.pack("<b", int(self.connection)) + bytes(self.destination)

    def write(self, w: BinaryIO) -> None:
        w.write(bytes(self))

    def size(self) -> int:
        return 1 + self.destination.size()


def read_open(r: BinaryIO) -> OpenFrame:
    (raw,) = _read_struct(r, "<b")
    return OpenFrame(_coerce(Connection, raw), read_destination(r))


@dataclass
class CloseFrame:
    """Request, and acknowledgement, to disconnect a sub-connection."""


@dataclass
class ShutdownFrame:
    """No more data will be written in this direction."""


@dataclass
class DataFrame:
    """Header of a frame carrying user data."""

    payload_len: int

    def __bytes__(self) -> bytes:
        return struct.pack("<I", self.payload_len)

    def write(self, w: BinaryIO) -> None:
        w.write(bytes(self))

    def size(self) -> int:
        return 4


def read_data(r: BinaryIO) -> DataFrame:
    (payload_len,) = _read_struct(r, "<I")
    return DataFrame(payload_len)


@dataclass
class WindowFrame:
    """Window advertisement."""

    seq: int

    def __bytes__(self) -> bytes:
        return struct.pack("<Q", self.seq)

    def write(self, w: BinaryIO) -> None:
        w.write(bytes(self))

    def size(self) -> int:
        return 8


def read_window(r: BinaryIO) -> WindowFrame:
    (seq,) = _read_struct(r, "<Q")
    return WindowFrame(seq)


_HEADER = "<HbI"
_HEADER_SIZE = struct.calcsize(_HEADER)
_WITH_BODY = (Command.OPEN, Command.WINDOW, Command.DATA)


def _connection_name(value) -> str:
    return str(value) if isinstance(value, Connection) else "Unknown"


@dataclass
class Frame:
    """Low-level message sent to the multiplexer."""

    command: Command
    channel_id: int
    body: Union[OpenFrame, CloseFrame, ShutdownFrame, DataFrame, WindowFrame, None] = None

    def __bytes__(self) -> bytes:
        header = struct.pack(_HEADER, self.size(), int(self.command), self.channel_id)
        if self.command in _WITH_BODY:
            return header + bytes(self.body)
        return header

    def write(self, w: BinaryIO) -> None:
        w.write(bytes(self))

    def size(self) -> int:
        """Encoded size, including the leading length field."""
        if self.command in _WITH_BODY:
            return _HEADER_SIZE + self.body.size()
        return _HEADER_SIZE

    def __str__(self) -> str:
        if self.command == Command.OPEN:
            return (
                f"{self.channel_id} Open {_connection_name(self.body.connection)} "
                f"{self.body.destination}"
            )
        if self.command == Command.CLOSE:
            return f"{self.channel_id} Close"
        if self.command == Command.SHUTDOWN:
            return f"{self.channel_id} Shutdown"
        if self.command == Command.WINDOW:
            return f"{self.channel_id} Window {self.body.seq}"
        if self.command == Command.DATA:
            return f"{self.channel_id} Data length {self.body.payload_len}"
        return "unknown"

    def window(self) -> WindowFrame:
        if self.command != Command.WINDOW:
            raise FrameError("Frame is not a Window()")
        return self.body

    def open(self) -> OpenFrame:
        if self.command != Command.OPEN:
            raise FrameError("Frame is not an Open()")
        return self.body

    def data(self) -> DataFrame:
        if self.command != Command.DATA:
            raise FrameError("Frame is not Data()")
        return self.body

    def payload(self):
        """The payload object matching the command, or None for unknown commands."""
        return self.body


def read_frame(r: BinaryIO) -> Frame:
    """Read one frame header and its command-specific payload."""
    _total_len, raw_command, channel_id = _read_struct(r, _HEADER)
    command = _coerce(Command, raw_command)
    if command == Command.OPEN:
        body = read_open(r)
    elif command == Command.CLOSE:
        body = CloseFrame()
    elif command == Command.SHUTDOWN:
        body = ShutdownFrame()
    elif command == Command.WINDOW:
        body = read_window(r)
    elif command == Command.DATA:
        body = read_data(r)
    else:
        body = None
    return Frame(command, channel_id, body)


def new_window(channel_id: int, seq: int) -> Frame:
    return Frame(Command.WINDOW, channel_id, WindowFrame(seq))


def new_open(channel_id: int, destination: Destination) -> Frame:
    return Frame(Command.OPEN, channel_id, OpenFrame(Connection.MULTIPLEXED, destination))


def new_data(channel_id: int, payload_len: int) -> Frame:
    return Frame(Command.DATA, channel_id, DataFrame(payload_len))


def new_shutdown(channel_id: int) -> Frame:
    return Frame(Command.SHUTDOWN, channel_id, ShutdownFrame())


def new_close(channel_id: int) -> Frame:
    return Frame(Command.CLOSE, channel_id, CloseFrame())