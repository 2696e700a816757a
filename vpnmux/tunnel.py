"""Requests and responses for opening tunnels, and forward specifications."""

from __future__ import annotations

import enum
import ipaddress
import json
import struct
from dataclasses import dataclass
from typing import Any, BinaryIO, List, Optional, Union

from vpnmux.frame import read_exact

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

EVERY_PORT = 0  # a Forward with this port sends every port through the tunnel


class TunnelError(ValueError):
    """A tunnel message or forward specification could not be read."""


class Protocol(str, enum.Enum):
    """Protocol carried by a tunnel."""

    TCP = "tcp"
    UDP = "udp"


def _read_protocol(value: Any) -> Protocol:
    if value == "tcp":
        return Protocol.TCP
    if value == "udp":
        return Protocol.UDP
    raise TunnelError(f"unknown protocol: {value}")


def _write_protocol(protocol: Any) -> str:
    return protocol.value if isinstance(protocol, Protocol) else "unknown"


def _ip_text(ip: Optional[IPAddress]) -> str:
    if ip is None:
        return "<nil>"
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def _parse_ip(text: Any) -> Optional[IPAddress]:
    if not isinstance(text, str):
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _field(obj: dict, key: str, kind: type, default: Any) -> Any:
    value = obj.get(key, default)
    if value is None:
        return default
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise TunnelError(f"field {key!r} has the wrong type: {value!r}")
    return value


def _encode(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":")).encode("utf-8")


def _write_message(w: BinaryIO, body: bytes) -> None:
    if len(body) > 0xFFFF:
        raise TunnelError("message too long")
    w.write(struct.pack("<H", len(body)) + body)


def _read_message(r: BinaryIO, what: str) -> Any:
    try:
        (length,) = struct.unpack("<H", read_exact(r, 2))
    except EOFError as exc:
        raise TunnelError(f"reading {what} length: {exc}") from exc
    try:
        body = read_exact(r, length)
    except EOFError as exc:
        raise TunnelError(f"reading {what}: {exc}") from exc
    try:
        message = json.loads(body)
    except ValueError as exc:
        raise TunnelError(f"parsing {what} json: {exc}") from exc
    if not isinstance(message, dict):
        raise TunnelError(f"parsing {what} json: expected an object")
    return message


@dataclass
class Request:
    """Request to open a tunnel to a remote service."""

    protocol: Protocol
    dst_ip: Optional[IPAddress]
    dst_port: int
    src_ip: Optional[IPAddress]
    src_port: int

    def write(self, w: BinaryIO) -> None:
        _write_message(
            w,
            _encode(
                {
                    "protocol": _write_protocol(self.protocol),
                    "dst_ip": _ip_text(self.dst_ip),
                    "dst_port": self.dst_port,
                    "src_ip": _ip_text(self.src_ip),
                    "src_port": self.src_port,
                }
            ),
        )


def read_request(r: BinaryIO) -> Request:
    """Read a length-prefixed JSON tunnel request."""
    message = _read_message(r, "request")
    protocol = _read_protocol(message.get("protocol"))
    dst_text = _field(message, "dst_ip", str, "")
    dst_ip = _parse_ip(dst_text)
    if dst_ip is None:
        raise TunnelError(f"invalid DstIP {dst_text}")
    dst_port = _field(message, "dst_port", int, 0)
    src_text = _field(message, "src_ip", str, "")
    src_ip = _parse_ip(src_text)
    if src_ip is None:
        raise TunnelError(f"invalid SrcIP {src_text}")
    src_port = _field(message, "src_port", int, 0)
    return Request(protocol, dst_ip, dst_port, src_ip, src_port)


@dataclass
class Response:
    """Answer to a tunnel request."""

    accepted: bool = False

    def write(self, w: BinaryIO) -> None:
        _write_message(w, _encode({"accepted": bool(self.accepted)}))


def read_response(r: BinaryIO) -> Response:
    """Read a length-prefixed JSON tunnel response."""
    message = _read_message(r, "response")
    return Response(_field(message, "accepted", bool, False))


@dataclass
class Forward:
    """Traffic for a destination prefix and port is sent to the tunnel server at path."""

    protocol: Protocol
    dst_prefix: IPNetwork
    dst_port: int
    path: str


def _parse_cidr(text: Any) -> IPNetwork:
    if not isinstance(text, str) or "/" not in text:
        raise TunnelError(f"parsing IP network {text}: invalid CIDR address")
    try:
        return ipaddress.ip_network(text, strict=False)
    except ValueError as exc:
        raise TunnelError(f"parsing IP network {text}: {exc}") from exc


def unmarshal_forwards(data: Union[bytes, str]) -> List[Forward]:
    """Parse a JSON forwards specification."""
    try:
        raw = json.loads(data)
    except ValueError as exc:
        raise TunnelError(f"unmarshalling forwards: {exc}") from exc
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise TunnelError("unmarshalling forwards: expected a list")
    results = []
    for item in raw:
        if not isinstance(item, dict):
            raise TunnelError("unmarshalling forwards: expected an object")
        protocol = _read_protocol(item.get("protocol", ""))
        prefix = _parse_cidr(item.get("dst_prefix", ""))
        results.append(
            Forward(
                protocol=protocol,
                dst_prefix=prefix,
                dst_port=_field(item, "dst_port", int, 0),
                path=_field(item, "path", str, ""),
            )
        )
    return results


def marshal_forwards(forwards: List[Forward]) -> bytes:
    """Serialise forwards as JSON; an empty list is written as null."""
    if not forwards:
        return b"null"
    return _encode(
        [
            {
                "protocol": f.protocol.value if isinstance(f.protocol, Protocol) else str(f.protocol),
                "dst_prefix": str(f.dst_prefix),
                "dst_port": f.dst_port,
                "path": f.path,
            }
            for f in forwards
        ]
    )