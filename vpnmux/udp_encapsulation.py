"""UDP datagrams framed inside a stream connection."""

from __future__ import annotations

import io
import ipaddress
import struct
import threading
from dataclasses import dataclass
from typing import BinaryIO, Optional, Tuple, Union

from vpnmux.frame import read_exact

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
Address = Tuple[str, int]

_U16_MAX = 0xFFFF


def _read_u16(r: BinaryIO) -> int:
    (value,) = struct.unpack("<H", read_exact(r, 2))
    return value


def _parse_ip(raw: bytes) -> Optional[IPAddress]:
    if not raw:
        return None
    if len(raw) == 4:
        return ipaddress.IPv4Address(raw)
    if len(raw) == 16:
        return ipaddress.IPv6Address(raw)
    raise ValueError(f"invalid IP address length {len(raw)}")


def _host_text(ip: Optional[IPAddress], zone: str) -> str:
    if ip is None:
        text = ""
    elif isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        text = str(ip.ipv4_mapped)
    else:
        text = str(ip)
    return f"{text}%{zone}" if zone else text


@dataclass
class UDPDatagram:
    """A datagram together with the address it came from or goes to."""

    payload: bytes = b""
    ip: Optional[IPAddress] = None
    port: int = 0
    zone: str = ""

    @classmethod
    def for_address(cls, payload: bytes, addr: Address) -> "UDPDatagram":
        """Build a datagram for a (host, port) address; host may carry a %zone."""
        host, port = addr[0], addr[1]
        address, _, zone = host.partition("%")
        ip = ipaddress.ip_address(address) if address else None
        return cls(bytes(payload), ip, port, zone)

    @property
    def addr(self) -> Address:
        """The (host, port) address of the datagram."""
        return _host_text(self.ip, self.zone), self.port

    def marshal(self, w: BinaryIO) -> None:
        """Write the length-prefixed datagram to w in a single write."""
        ip = self.ip.packed if self.ip is not None else b""
        zone = self.zone.encode("utf-8")
        payload = bytes(self.payload)
        if len(zone) > _U16_MAX or len(payload) > _U16_MAX:
            raise ValueError("datagram field too long")
        header = b"".join(
            (
                struct.pack("<H", len(ip)),
                ip,
                struct.pack("<H", self.port),
                struct.pack("<H", len(zone)),
                zone,
                struct.pack("<H", len(payload)),
            )
        )
        total = 2 + len(header) + len(payload)
        if total > _U16_MAX:
            raise ValueError(f"datagram too large: {total} bytes")
        w.write(struct.pack("<H", total) + header + payload)


def read_datagram(r: BinaryIO) -> UDPDatagram:
    """Read one framed datagram from r."""
    _read_u16(r)  # total frame length
    ip = _parse_ip(read_exact(r, _read_u16(r)))
    port = _read_u16(r)
    zone = read_exact(r, _read_u16(r)).decode("utf-8")
    payload = read_exact(r, _read_u16(r))
    return UDPDatagram(payload, ip, port, zone)


def _unsupported(operation: str, size: int) -> io.UnsupportedOperation:
    return io.UnsupportedOperation(
        f"UDPEncapsulator.{operation} not supported (requested {size} bytes)"
    )


class UDPEncapsulator:
    """A connection that carries UDP datagrams framed within a stream."""

    def __init__(self, conn) -> None:
        self._conn = conn
        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self.addr: Optional[Address] = None
        self.write_shutdown_requested = False

    def read_from_udp(self, size: int) -> Tuple[bytes, Address]:
        """Read one datagram, returning at most size bytes and its source address."""
        with self._read_lock:
            datagram = read_datagram(self._conn)
        return datagram.payload[:size], datagram.addr

    def write_to_udp(self, data: bytes, addr: Address) -> int:
        """Send one datagram to addr and return the number of payload bytes."""
        datagram = UDPDatagram.for_address(data, addr)
        with self._write_lock:
            datagram.marshal(self._conn)
        return len(datagram.payload)

    def read(self, size: int) -> bytes:
        data, _ = self.read_from_udp(size)
        return data

    def write(self, data: bytes) -> int:
        return self.write_to_udp(data, ("", 0))

    def close(self) -> None:
        self._conn.close()

    def close_write(self) -> None:
        """Datagram connections have no half-close; the request is only recorded."""
        self.write_shutdown_requested = True

    def local_addr(self):
        return self._conn.local_addr()

    def remote_addr(self):
        return self._conn.remote_addr()

    def set_deadline(self, deadline: Optional[float]) -> None:
        self._conn.set_deadline(deadline)

    def set_read_deadline(self, deadline: Optional[float]) -> None:
        self._conn.set_read_deadline(deadline)

    def set_write_deadline(self, deadline: Optional[float]) -> None:
        self._conn.set_write_deadline(deadline)

    def set_read_buffer(self, size: int) -> None:
        error = _unsupported("set_read_buffer", size)
        raise error

    def set_write_buffer(self, size: int) -> None:
        error = _unsupported("set_write_buffer", size)
        raise error

    def connect(self, addr: Address) -> None:
        self.addr = addr