import io
import ipaddress

import pytest

from vpnmux.loopback import Loopback
from vpnmux.udp_encapsulation import UDPDatagram, UDPEncapsulator, read_datagram


def test_datagram_wire_format():
    buf = io.BytesIO()
    UDPDatagram(b"hi", ipaddress.ip_address("127.0.0.1"), 53).marshal(buf)
    assert buf.getvalue() == (
        b"\x10\x00" b"\x04\x00\x7f\x00\x00\x01" b"\x35\x00" b"\x00\x00" b"\x02\x00" b"hi"
    )


@pytest.mark.parametrize(
    "datagram",
    [
        UDPDatagram(b"hello world", ipaddress.ip_address("10.0.0.1"), 8080),
        UDPDatagram(b"", ipaddress.ip_address("::1"), 1),
        UDPDatagram(b"x" * 1000, ipaddress.ip_address("fe80::1"), 9, "eth0"),
        UDPDatagram(b"no address"),
    ],
)
def test_datagram_round_trip(datagram):
    buf = io.BytesIO()
    datagram.marshal(buf)
    buf.seek(0)
    assert read_datagram(buf) == datagram
    assert buf.read() == b""


def test_truncated_datagram_raises_eof():
    buf = io.BytesIO()
    UDPDatagram(b"payload", ipaddress.ip_address("10.0.0.1"), 80).marshal(buf)
    with pytest.raises(EOFError):
        read_datagram(io.BytesIO(buf.getvalue()[:-2]))


def test_oversized_payload_rejected():
    with pytest.raises(ValueError):
        UDPDatagram(b"x" * 70000).marshal(io.BytesIO())


def _pair():
    local = Loopback()
    return UDPEncapsulator(local), UDPEncapsulator(local.other_end())


def test_write_to_and_read_from_udp_preserve_address():
    a, b = _pair()
    assert a.write_to_udp(b"hello world", ("127.0.0.1", 8080)) == len(b"hello world")
    data, addr = b.read_from_udp(1024)
    assert data == b"hello world"
    assert addr == ("127.0.0.1", 8080)


def test_scoped_ipv6_address_round_trip():
    a, b = _pair()
    a.write_to_udp(b"ping", ("fe80::1%eth0", 5353))
    assert b.read_from_udp(100) == (b"ping", ("fe80::1%eth0", 5353))


def test_write_and_read_are_transparent():
    a, b = _pair()
    message = b"hello world"
    assert a.write(message) == len(message)
    assert b.read(1024) == message
    assert b.write(b"reply") == 5
    assert a.read_from_udp(1024) == (b"reply", ("", 0))


def test_short_read_keeps_stream_in_sync():
    a, b = _pair()
    a.write(b"abcdef")
    a.write(b"second")
    assert b.read(3) == b"abc"
    assert b.read(100) == b"second"


def test_close_write_does_not_stop_writes():
    a, b = _pair()
    a.close_write()
    a.write(b"still here")
    assert b.read(100) == b"still here"


def test_close_gives_eof_to_peer():
    a, b = _pair()
    a.close()
    with pytest.raises(EOFError):
        b.read(10)


def test_buffer_sizes_unsupported():
    a, _ = _pair()
    with pytest.raises(io.UnsupportedOperation):
        a.set_read_buffer(10)
    with pytest.raises(io.UnsupportedOperation):
        a.set_write_buffer(10)


def test_connect_records_address():
    a, _ = _pair()
    a.connect(("10.0.0.2", 53))
    assert a.addr == ("10.0.0.2", 53)