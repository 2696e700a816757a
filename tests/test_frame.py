import io
import ipaddress
import logging
import struct

import pytest

from vpnmux.frame import (
    CloseFrame,
    Command,
    Connection,
    DataFrame,
    Destination,
    FrameError,
    OpenFrame,
    Proto,
    ShutdownFrame,
    WindowFrame,
    get_logger,
    new_close,
    new_data,
    new_open,
    new_shutdown,
    new_window,
    read_destination,
    read_exact,
    read_frame,
    set_logger,
)

OPEN_DEDICATED = struct.pack(
    "<HbIbBH4sH", 17, 1, 4, 1, 1, 4, bytes([127, 0, 0, 1]), 8080
)
OPEN_MULTIPLEXED = struct.pack(
    "<HbIbBH16sH", 29, 1, 5, 2, 2, 16, ipaddress.IPv6Address("::1").packed, 8080
)
OPEN_MULTIPLEXED_UNIX = struct.pack("<HbIbBH8s", 19, 1, 5, 2, 3, 8, b"/tmp/foo")
CLOSE = struct.pack("<HbI", 7, 2, 6)
SHUTDOWN = struct.pack("<HbI", 7, 3, 7)
DATA = struct.pack("<HbII", 11, 4, 8, 128)
WINDOW = struct.pack("<HbIQ", 15, 5, 9, 8888888)


def parse(b):
    return read_frame(io.BytesIO(b))


def assert_parse_print(b):
    f = parse(b)
    w = io.BytesIO()
    f.write(w)
    assert w.getvalue() == b
    assert f.size() == len(b)


def test_parse_open_dedicated():
    f = parse(OPEN_DEDICATED)
    assert f.command == Command.OPEN
    assert f.channel_id == 4
    o = f.open()
    assert isinstance(f.payload(), OpenFrame)
    assert o.connection == Connection.DEDICATED
    assert o.destination.proto == Proto.TCP
    assert str(o.destination.ip) == "127.0.0.1"
    assert o.destination.port == 8080
    assert_parse_print(OPEN_DEDICATED)


def test_parse_open_multiplexed():
    f = parse(OPEN_MULTIPLEXED)
    assert f.command == Command.OPEN
    assert f.channel_id == 5
    o = f.open()
    assert isinstance(f.payload(), OpenFrame)
    assert o.destination.proto == Proto.UDP
    assert str(o.destination.ip) == "::1"
    assert o.destination.port == 8080
    assert_parse_print(OPEN_MULTIPLEXED)


def test_parse_open_multiplexed_unix():
    f = parse(OPEN_MULTIPLEXED_UNIX)
    assert f.command == Command.OPEN
    assert f.channel_id == 5
    o = f.open()
    assert isinstance(f.payload(), OpenFrame)
    assert o.destination.proto == Proto.UNIX
    assert o.destination.path == "/tmp/foo"
    assert_parse_print(OPEN_MULTIPLEXED_UNIX)


def test_parse_close():
    f = parse(CLOSE)
    assert f.command == Command.CLOSE
    assert f.channel_id == 6
    assert isinstance(f.payload(), CloseFrame)
    assert_parse_print(CLOSE)


def test_parse_shutdown():
    f = parse(SHUTDOWN)
    assert f.command == Command.SHUTDOWN
    assert f.channel_id == 7
    assert isinstance(f.payload(), ShutdownFrame)
    assert_parse_print(SHUTDOWN)


def test_parse_data():
    f = parse(DATA)
    assert f.command == Command.DATA
    assert f.channel_id == 8
    assert f.data().payload_len == 128
    assert isinstance(f.payload(), DataFrame)
    assert_parse_print(DATA)


def test_parse_window():
    f = parse(WINDOW)
    assert f.command == Command.WINDOW
    assert f.channel_id == 9
    assert f.window().seq == 8888888
    assert isinstance(f.payload(), WindowFrame)
    assert_parse_print(WINDOW)


@pytest.mark.parametrize(
    "raw, text",
    [
        (OPEN_DEDICATED, "4 Open Dedicated TCP:127.0.0.1:8080"),
        (OPEN_MULTIPLEXED, "5 Open Multiplexed UDP:::1:8080"),
        (OPEN_MULTIPLEXED_UNIX, "5 Open Multiplexed Unix:/tmp/foo"),
        (CLOSE, "6 Close"),
        (SHUTDOWN, "7 Shutdown"),
        (DATA, "8 Data length 128"),
        (WINDOW, "9 Window 8888888"),
    ],
)
def test_frame_str(raw, text):
    assert str(parse(raw)) == text


def test_wrong_accessor_raises():
    f = parse(CLOSE)
    with pytest.raises(FrameError):
        f.window()
    with pytest.raises(FrameError):
        f.open()
    with pytest.raises(FrameError):
        f.data()


def test_new_frames_round_trip():
    dest = Destination(Proto.TCP, ipaddress.IPv4Address("10.0.0.1"), 443)
    frames = [
        new_open(3, dest),
        new_window(3, 65536),
        new_data(3, 10),
        new_shutdown(3),
        new_close(3),
    ]
    stream = io.BytesIO()
    for f in frames:
        f.write(stream)
    stream.seek(0)
    parsed = [read_frame(stream) for _ in frames]
    assert parsed == frames
    assert parsed[0].open().connection == Connection.MULTIPLEXED


def test_ipv4_mapped_address_prints_as_ipv4():
    dest = Destination(Proto.TCP, ipaddress.IPv6Address("::ffff:127.0.0.1"), 80)
    assert str(dest) == "TCP:127.0.0.1:80"
    assert dest.size() == 1 + 2 + 16 + 2


def test_destination_unknown_proto():
    dest = read_destination(io.BytesIO(b"\x09"))
    assert dest.proto == 9
    assert str(dest) == "Unknown"
    assert dest.size() == 0


def test_truncated_frame_raises_eof():
    with pytest.raises(EOFError):
        parse(DATA[:-1])


def test_read_exact_empty_stream():
    with pytest.raises(EOFError):
        read_exact(io.BytesIO(b""), 1)


def test_set_logger():
    original = get_logger()
    custom = logging.getLogger("vpnmux.test")
    try:
        set_logger(custom)
        assert get_logger() is custom
    finally:
        set_logger(original)