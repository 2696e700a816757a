"""Multiplexing of many sub-connections over one stream connection."""

from __future__ import annotations

import enum
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Tuple, Union

from vpnmux.frame import (
    CloseFrame,
    Connection,
    DataFrame,
    Destination,
    Frame,
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
    read_exact,
    read_frame,
)
from vpnmux.handshake import Handshake, read_handshake
from vpnmux.loopback import BufferedPipe, IOTimeout
from vpnmux.udp_encapsulation import UDPEncapsulator

DEFAULT_WINDOW_SIZE = 65536
_EVENT_LOG_SIZE = 500
_READ_CHUNK = 65536
_ID_MASK = 0xFFFFFFFF


class MultiplexerNotRunning(ConnectionError):
    """The multiplexer is not running, so no connection can be accepted."""

    def __init__(self, message: str = "multiplexer is not running") -> None:
        super().__init__(message)


@dataclass
class WindowState:
    """Flow-control window of one direction of a channel."""

    current: int = 0
    allowed: int = 0
    max: int = DEFAULT_WINDOW_SIZE

    def __str__(self) -> str:
        return f"current {self.current}, allowed {self.allowed}, max {self.max}"

    def size(self) -> int:
        """Bytes that may still be sent or received before an update."""
        return self.allowed - self.current

    def is_almost_closed(self) -> bool:
        return self.size() < self.max // 2

    def advance(self) -> None:
        self.allowed = self.current + self.max


class Channel:
    """A sub-connection within a multiplexed connection."""

    network = "channel"

    def __init__(self, multiplexer: "Multiplexer", channel_id: int, destination: Destination) -> None:
        self.multiplexer = multiplexer
        self.destination = destination
        self.channel_id = channel_id
        self.read_window = WindowState()
        self.write_window = WindowState()
        self.read_pipe = BufferedPipe()
        self.close_received = False
        self.close_sent = False
        self.shutdown_sent = False
        self.ref_count = 2  # sender and receiver; guarded by the multiplexer
        self.write_deadline: Optional[float] = None
        self.allow_data_after_close_write = False
        self._cond = threading.Condition()

    def __str__(self) -> str:
        with self._cond:
            flags = "".join(
                label
                for label, on in (
                    ("closeReceived ", self.close_received),
                    ("closeSent ", self.close_sent),
                    ("shutdownSent ", self.shutdown_sent),
                )
                if on
            )
            return f"ID {self.channel_id} -> {self.destination} {flags}"

    def _send_window_update(self) -> None:
        with self._cond:
            self.read_window.advance()
            seq = self.read_window.allowed
        self.multiplexer._send(new_window(self.channel_id, seq))

    def _recv_window_update(self, seq: int) -> None:
        with self._cond:
            self.write_window.allowed = seq
            self._cond.notify_all()

    def _recv_close(self) -> None:
        with self._cond:
            self.close_received = True
            self._cond.notify_all()

    def read(self, size: int) -> bytes:
        """Read up to size bytes; b"" means the peer has shut down."""
        data = self.read_pipe.read(size)
        with self._cond:
            self.read_window.current += len(data)
            need_update = self.read_window.is_almost_closed()
        if need_update:
            try:
                self._send_window_update()
            except (OSError, EOFError, ValueError) as exc:
                get_logger().debug("window update for channel %d failed: %s", self.channel_id, exc)
        return data

    def write(self, data: bytes) -> int:
        """Write all of data, blocking while the peer's window is closed."""
        view = memoryview(bytes(data))
        written = 0
        with self._cond:
            while True:
                if not view:
                    return written
                if self.close_received or self.close_sent or (
                    self.shutdown_sent and not self.allow_data_after_close_write
                ):
                    raise EOFError("write on closed channel")
                available = self.write_window.size()
                if available > 0:
                    n = min(available, len(view))
                    # Claim the space before dropping the lock so concurrent writers see it taken.
                    self.write_window.current += n
                    self._cond.release()
                    try:
                        self.multiplexer._send(new_data(self.channel_id, n), view[:n])
                    finally:
                        self._cond.acquire()
                    view = view[n:]
                    written += n
                    continue
                deadline = self.write_deadline
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise IOTimeout()
                self._cond.wait(remaining)

    def close(self) -> None:
        with self._cond:
            already_closed = self.close_sent
            self.close_sent = True
        if already_closed:
            return
        self.multiplexer._send(new_close(self.channel_id))
        with self._cond:
            self._cond.notify_all()
        self.multiplexer._decr_channel_ref(self.channel_id)

    def close_read(self) -> None:
        self.read_pipe.close_write()

    def close_write(self) -> None:
        with self._cond:
            already = self.shutdown_sent or self.close_sent
            self.shutdown_sent = True
        if already:
            return
        self.multiplexer._send(new_shutdown(self.channel_id))
        with self._cond:
            self._cond.notify_all()

    def set_read_buffer(self, size: int) -> None:
        """Set the read window size; takes effect on the next window update."""
        with self._cond:
            self.read_window.max = size

    def set_write_buffer(self, size: int) -> None:
        with self._cond:
            self.write_window.max = size

    def set_read_deadline(self, deadline: Optional[float]) -> None:
        self.read_pipe.set_read_deadline(deadline)

    def set_write_deadline(self, deadline: Optional[float]) -> None:
        with self._cond:
            self.write_deadline = deadline
            self._cond.notify_all()

    def set_deadline(self, deadline: Optional[float]) -> None:
        self.set_read_deadline(deadline)
        self.set_write_deadline(deadline)

    def local_addr(self) -> "Channel":
        return self.remote_addr()  # there is no local address

    def remote_addr(self) -> "Channel":
        return self


class EventType(enum.Enum):
    SEND = "send"
    RECV = "recv"
    OPEN = "open"
    CLOSE = "close"


@dataclass
class Event:
    """An entry in the multiplexer's trace log."""

    event_type: EventType
    frame: Optional[Frame] = None
    channel_id: int = 0
    destination: Optional[Destination] = None

    def __str__(self) -> str:
        if self.event_type == EventType.SEND:
            return f"send  {self.frame}"
        if self.event_type == EventType.RECV:
            return f"recv  {self.frame}"
        if self.event_type == EventType.OPEN:
            return f"open  {self.channel_id} -> {self.destination}"
        if self.event_type == EventType.CLOSE:
            return f"close {self.channel_id} -> {self.destination}"
        return "unknown trace event"


class _Reader:
    """Buffers reads from the underlying connection."""

    def __init__(self, conn) -> None:
        self._conn = conn
        self._buf = b""
        self._pos = 0

    def read(self, size: int) -> bytes:
        if self._pos >= len(self._buf):
            self._buf = bytes(self._conn.read(max(size, _READ_CHUNK)))
            self._pos = 0
        chunk = self._buf[self._pos : self._pos + size]
        self._pos += len(chunk)
        return chunk


Conn = Union[Channel, UDPEncapsulator]


class Multiplexer:
    """Muxes and demuxes sub-connections over a single connection.

    Constructing one performs the handshake; call run() before dial or accept.
    """

    def __init__(self, label: str, conn, allocate_backwards: bool = False) -> None:
        self.label = label
        self._conn = conn
        self._reader = _Reader(conn)
        self._write_lock = threading.Lock()
        self._meta = threading.Lock()
        self._accept_cond = threading.Condition(self._meta)
        self._channels: Dict[int, Channel] = {}
        self._pending_accept: Deque[Channel] = deque()
        self._running = False
        self._events: Deque[Event] = deque(maxlen=_EVENT_LOG_SIZE)
        self._events_lock = threading.Lock()
        self._allocate_backwards = allocate_backwards
        self._next_channel_id = _ID_MASK if allocate_backwards else 0
        self._handshake()

    def _handshake(self) -> None:
        write_errors: List[BaseException] = []

        def write_local() -> None:
            try:
                self._write_all(self._conn, _handshake_bytes())
            except BaseException as exc:  # reported by the constructor
                write_errors.append(exc)

        writer = threading.Thread(target=write_local, daemon=True)
        writer.start()
        read_error: Optional[BaseException] = None
        try:
            read_handshake(self._reader)
        except BaseException as exc:
            read_error = exc
        writer.join()
        if read_error is not None:
            raise read_error
        if write_errors:
            raise write_errors[0]

    @staticmethod
    def _write_all(conn, data: bytes) -> None:
        view = memoryview(data)
        while view:
            n = conn.write(view)
            if n is None:
                return
            view = view[n:]

    def _append_event(self, event: Event) -> None:
        with self._events_lock:
            self._events.append(event)

    def _send(self, frame: Frame, payload=b"") -> None:
        """Send a frame header plus optional payload as one write."""
        with self._write_lock:
            self._append_event(Event(EventType.SEND, frame=frame))
            self._write_all(self._conn, bytes(frame) + bytes(payload))

    def _find_free_channel_id(self) -> int:
        step = -1 if self._allocate_backwards else 1
        channel_id = self._next_channel_id
        while channel_id in self._channels:
            channel_id = (channel_id + step) & _ID_MASK
        self._next_channel_id = (channel_id + step) & _ID_MASK
        return channel_id

    def _decr_channel_ref(self, channel_id: int) -> None:
        with self._meta:
            channel = self._channels.get(channel_id)
            if channel is None:
                return
            if channel.ref_count == 1:
                self._append_event(
                    Event(EventType.CLOSE, channel_id=channel_id, destination=channel.destination)
                )
                del self._channels[channel_id]
                return
            channel.ref_count -= 1

    def _wrap(self, channel: Channel) -> Conn:
        if channel.destination.proto == Proto.UDP:
            return UDPEncapsulator(channel)
        return channel

    def dial(self, destination: Destination) -> Conn:
        """Open a sub-connection to the given destination."""
        with self._meta:
            if not self._running:
                raise ConnectionRefusedError("connection refused")
            channel_id = self._find_free_channel_id()
            channel = Channel(self, channel_id, destination)
            self._channels[channel_id] = channel
        self._send(new_open(channel_id, destination))
        channel._send_window_update()
        return self._wrap(channel)

    def accept(self) -> Tuple[Conn, Destination]:
        """Wait for the next sub-connection opened by the peer."""
        with self._accept_cond:
            while True:
                if not self._running:
                    raise MultiplexerNotRunning()
                if self._pending_accept:
                    channel = self._pending_accept.popleft()
                    break
                self._accept_cond.wait()
        channel._send_window_update()
        return self._wrap(channel), channel.destination

    def close(self) -> None:
        """Close the underlying transport."""
        with self._meta:
            self._running = False
        self._conn.close()

    def is_running(self) -> bool:
        with self._meta:
            return self._running

    def run(self) -> None:
        """Start handling frames from the peer in a background thread."""
        with self._meta:
            self._running = True
        threading.Thread(target=self._main, name=f"multiplexer-{self.label}", daemon=True).start()

    def _main(self) -> None:
        error: Optional[BaseException] = None
        try:
            self._serve()
        except Exception as exc:
            error = exc
        with self._meta:
            expected = isinstance(error, EOFError) or not self._running
        log = get_logger()
        if expected:
            log.info("disconnected data connection: multiplexer is offline")
        elif error is not None:
            log.error("Multiplexer main loop failed with %s", error)
            dump = _LogWriter()
            self.dump_state(dump)
            log.error("%s", dump.text())
        with self._accept_cond:
            self._running = False
            self._accept_cond.notify_all()
            channels = list(self._channels.values())
        for channel in channels:
            channel.read_pipe.close_write()  # unblock readers
            channel._recv_close()  # unblock writers
            self._decr_channel_ref(channel.channel_id)

    def _lookup(self, channel_id: int) -> Optional[Channel]:
        with self._meta:
            return self._channels.get(channel_id)

    def _serve(self) -> None:
        log = get_logger()
        while True:
            frame = read_frame(self._reader)
            self._append_event(Event(EventType.RECV, frame=frame))
            body = frame.payload()
            if isinstance(body, OpenFrame):
                if body.connection == Connection.DEDICATED:
                    raise FrameError("Dedicated connections are not implemented yet")
                if body.connection == Connection.MULTIPLEXED:
                    with self._accept_cond:
                        channel = Channel(self, frame.channel_id, body.destination)
                        self._channels[frame.channel_id] = channel
                        self._pending_accept.append(channel)
                        self._accept_cond.notify()
                    self._append_event(
                        Event(EventType.OPEN, channel_id=frame.channel_id, destination=body.destination)
                    )
            elif isinstance(body, WindowFrame):
                channel = self._lookup(frame.channel_id)
                if channel is None:
                    # Close and Window can arrive out of order as senders race for the write lock.
                    log.info("dropping packet with unknown channel id %s", frame)
                    continue
                channel._recv_window_update(body.seq)
            elif isinstance(body, DataFrame):
                channel = self._lookup(frame.channel_id)
                if channel is None:
                    log.info("dropping packet with unknown channel id %s", frame)
                    continue
                try:
                    payload = read_exact(self._reader, body.payload_len)
                except EOFError as exc:
                    raise EOFError(
                        f"Failed to read payload of {body.payload_len} bytes: {frame}"
                    ) from exc
                if payload:
                    try:
                        channel.read_pipe.write(payload)
                    except EOFError:
                        # Data after Shutdown or Close: the stream is still in sync.
                        log.info("Discarded %d bytes from %s", len(payload), frame)
            elif isinstance(body, ShutdownFrame):
                channel = self._lookup(frame.channel_id)
                if channel is None:
                    log.info("dropping packet with unknown channel id %s", frame)
                    continue
                channel.read_pipe.close_write()
            elif isinstance(body, CloseFrame):
                channel = self._lookup(frame.channel_id)
                if channel is None:
                    raise FrameError(f"Unknown channel id: {frame}")
                channel.read_pipe.close_write()
                channel._recv_close()
                self._decr_channel_ref(channel.channel_id)
            else:
                raise FrameError(f"Unknown command type: {frame.command}")

    def dump_state(self, w) -> None:
        """Write the event trace and the active channels to the text stream w."""
        with self._events_lock:
            events = list(self._events)
        w.write("Event trace:\n")
        for event in events:
            w.write(f"{event}\n")
        with self._meta:
            channels = list(self._channels.values())
        w.write("Active channels:\n")
        for channel in channels:
            w.write(f"{channel}\n")
        w.write("End of state dump\n")


def _handshake_bytes() -> bytes:
    class _Collect:
        def __init__(self) -> None:
            self.data = b""

        def write(self, chunk: bytes) -> None:
            self.data += bytes(chunk)

    sink = _Collect()
    Handshake().write(sink)
    return sink.data


class _LogWriter:
    def __init__(self) -> None:
        self._parts: List[str] = []

    def write(self, text: str) -> None:
        self._parts.append(text)

    def text(self) -> str:
        return "".join(self._parts)