"""Handshake exchanged when a multiplexed connection is established."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import BinaryIO

from vpnmux.frame import read_exact

MAGIC = b"vpnmux multiplexer protocol\n"


class HandshakeError(ValueError):
    """The peer did not speak the multiplexer protocol."""


@dataclass
class Handshake:
    """Handshake message; the payload is reserved for feature negotiation."""

    payload: bytes = b""

    def write(self, w: BinaryIO) -> None:
        if len(self.payload) > 0xFFFF:
            raise HandshakeError("handshake payload must be shorter than 64k")
        w.write(MAGIC + struct.pack("<H", len(self.payload)) + self.payload)


def read_handshake(r: BinaryIO) -> Handshake:
    """Read and validate a handshake from r."""
    magic = read_exact(r, len(MAGIC))
    if magic != MAGIC:
        raise HandshakeError(
            f"not a connection to a multiplexer; received bad magic string {magic!r}"
        )
    (length,) = struct.unpack("<H", read_exact(r, 2))
    return Handshake(read_exact(r, length))