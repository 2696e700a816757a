import io

import pytest

from vpnmux.handshake import MAGIC, Handshake, HandshakeError, read_handshake


def test_handshake_print_parse():
    w = io.BytesIO()
    h = Handshake(b"this is some payload")
    h.write(w)
    w.seek(0)
    h2 = read_handshake(w)
    assert h2.payload == b"this is some payload"


def test_empty_payload_round_trip():
    w = io.BytesIO()
    Handshake().write(w)
    assert len(w.getvalue()) == len(MAGIC) + 2
    w.seek(0)
    assert read_handshake(w).payload == b""


def test_bad_magic():
    data = b"x" * len(MAGIC) + b"\x00\x00"
    with pytest.raises(HandshakeError):
        read_handshake(io.BytesIO(data))


def test_eof_after_magic():
    with pytest.raises(EOFError):
        read_handshake(io.BytesIO(MAGIC))


def test_eof_on_empty_stream():
    with pytest.raises(EOFError):
        read_handshake(io.BytesIO(b""))


def test_oversized_payload_rejected():
    with pytest.raises(HandshakeError):
        Handshake(b"a" * 70000).write(io.BytesIO())