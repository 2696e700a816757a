"""Copy data both ways between two stream connections."""

from __future__ import annotations

import errno
import queue
import threading
from typing import Optional

from vpnmux.frame import get_logger

_CHUNK = 65536
_POLL_INTERVAL = 0.05


def is_not_connected(err: BaseException) -> bool:
    """True if err reports that a socket is not connected."""
    if isinstance(err, OSError) and err.errno == errno.ENOTCONN:
        return True
    return str(err).endswith("is not connected")


def is_connection_refused(err: BaseException) -> bool:
    """True if err reports a refused connection."""
    if isinstance(err, ConnectionRefusedError):
        return True
    return str(err).lower().endswith("connection refused")


def is_being_closed(err: BaseException) -> bool:
    """True if err reports that the connection is being closed."""
    return str(err).endswith("is being closed.")


def _copy(to, source) -> int:
    written = 0
    while True:
        try:
            data = source.read(_CHUNK)
        except EOFError:
            return written
        except OSError as exc:
            if not is_being_closed(exc):
                get_logger().info("error copying: %s", exc)
            return written
        if not data:
            return written
        view = memoryview(data)
        try:
            while view:
                n = to.write(view)
                view = view[n:]
                written += n
        except EOFError:
            return written
        except OSError as exc:
            if not is_being_closed(exc):
                get_logger().info("error copying: %s", exc)
            return written


def _broker(to, source, events: "queue.Queue[int]") -> None:
    written = 0
    try:
        written = _copy(to, source)
        try:
            to.close_write()
        except EOFError:
            pass
        except OSError as exc:
            if not is_not_connected(exc) and not is_being_closed(exc):
                get_logger().info("error CloseWrite to: %s", exc)
    finally:
        events.put(written)


def proxy_stream(client, backend, quit: Optional[threading.Event] = None) -> int:
    """Proxy data between client and backend until both reach EOF or quit is set.

    The backend is closed afterwards. Returns the number of bytes transferred.
    """
    events: "queue.Queue[int]" = queue.Queue()
    for to, source in ((client, backend), (backend, client)):
        threading.Thread(target=_broker, args=(to, source, events), daemon=True).start()

    transferred = 0
    finished = 0
    while finished < 2:
        if quit is not None and quit.is_set():
            # Interrupt the two brokers and join them.
            backend.close()
            while finished < 2:
                transferred += events.get()
                finished += 1
            return transferred
        try:
            transferred += events.get(timeout=_POLL_INTERVAL if quit is not None else None)
        except queue.Empty:
            continue
        finished += 1
    backend.close()
    return transferred