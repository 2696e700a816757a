"""In-memory bidirectional buffered connection, used for testing."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Optional


class IOTimeout(TimeoutError):
    """A read deadline passed before data arrived."""

    timeout = True
    temporary = True

    def __init__(self, message: str = "i/o timeout") -> None:
        super().__init__(message)


class BufferedPipe:
    """One direction of a loopback connection.

    Writes never block. After close_write, further writes raise EOFError and
    reads return b"" once the buffer is drained. Deadlines are absolute
    time.monotonic() values, or None for no deadline.
    """

    def __init__(self) -> None:
        self._bufs: deque[bytes] = deque()
        self._eof = False
        self._cond = threading.Condition()
        self._read_deadline: Optional[float] = None

    def read(self, size: int) -> bytes:
        with self._cond:
            while True:
                if self._bufs:
                    if size > 0:
                        first = self._bufs[0]
                        chunk = first[:size]
                        if len(chunk) == len(first):
                            self._bufs.popleft()
                        else:
                            self._bufs[0] = first[size:]
                        return chunk
                elif self._eof:
                    return b""
                deadline = self._read_deadline
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise IOTimeout()
                self._cond.wait(remaining)

    def write(self, data: bytes) -> int:
        buf = bytes(data)
        with self._cond:
            if self._eof:
                raise EOFError("write on closed pipe")
            if not buf:
                return 0
            self._bufs.append(buf)
            self._cond.notify_all()
            return len(buf)

    def set_read_deadline(self, deadline: Optional[float]) -> None:
        with self._cond:
            self._read_deadline = deadline
            self._cond.notify_all()

    def close_write(self) -> None:
        with self._cond:
            self._eof = True
            self._cond.notify_all()


@dataclass(frozen=True)
class LoopbackAddr:
    """Address of either end of a loopback connection."""

    network: str = "loopback"

    def __str__(self) -> str:
        return ""


class Loopback:
    """A bidirectional buffered connection made of two pipes."""

    def __init__(
        self,
        write_pipe: Optional[BufferedPipe] = None,
        read_pipe: Optional[BufferedPipe] = None,
    ) -> None:
        self._write = write_pipe if write_pipe is not None else BufferedPipe()
        self._read = read_pipe if read_pipe is not None else BufferedPipe()
        self.simulate_latency = 0.0
        self.write_deadline: Optional[float] = None

    def other_end(self) -> "Loopback":
        """The peer connection, reading what this end writes and vice versa."""
        return Loopback(write_pipe=self._read, read_pipe=self._write)

    def read(self, size: int) -> bytes:
        return self._read.read(size)

    def write(self, data: bytes) -> int:
        try:
            return self._write.write(data)
        finally:
            if self.simulate_latency > 0:
                time.sleep(self.simulate_latency)

    def close_read(self) -> None:
        self._read.close_write()

    def close_write(self) -> None:
        self._write.close_write()

    def close(self) -> None:
        self.close_read()
        self.close_write()

    def set_read_deadline(self, deadline: Optional[float]) -> None:
        self._read.set_read_deadline(deadline)

    def set_write_deadline(self, deadline: Optional[float]) -> None:
        """Record the deadline; writes never block, so it never fires."""
        self.write_deadline = deadline

    def set_deadline(self, deadline: Optional[float]) -> None:
        self.set_read_deadline(deadline)
        self.set_write_deadline(deadline)

    def local_addr(self) -> LoopbackAddr:
        return LoopbackAddr()

    def remote_addr(self) -> LoopbackAddr:
        return LoopbackAddr()