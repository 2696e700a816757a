"""Proxies that forward TCP, UDP and Unix domain socket traffic between two addresses."""

from __future__ import annotations

import abc
import errno
import ipaddress
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

from vpnmux.frame import get_logger
from vpnmux.loopback import IOTimeout
from vpnmux.stream_proxy import is_connection_refused, proxy_stream

UDP_CONN_TRACK_TIMEOUT = 90.0
UDP_BUF_SIZE = 65507
UNIX_CONNECT_TIMEOUT = 120.0
UNIX_RETRY_INTERVAL = 5.0

_POLL_INTERVAL = 0.2
_CLOSED_MESSAGE = "use of closed network connection"
_U64_MASK = 0xFFFFFFFFFFFFFFFF


def _host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _family(host: str) -> int:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


@dataclass(frozen=True)
class TCPAddr:
    """A TCP endpoint."""

    host: str
    port: int

    def __str__(self) -> str:
        return _host_port(self.host, self.port)


@dataclass(frozen=True)
class UDPAddr:
    """A UDP endpoint."""

    host: str
    port: int

    def __str__(self) -> str:
        return _host_port(self.host, self.port)


@dataclass(frozen=True)
class UnixAddr:
    """A Unix domain socket path."""

    path: str

    def __str__(self) -> str:
        return self.path


Address = Union[TCPAddr, UDPAddr, UnixAddr]


class SocketConn:
    """A socket presented as a connection with read, write and half-close.

    Deadlines are absolute time.monotonic() values, or None for no deadline.
    """

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self._read_deadline: Optional[float] = None
        self._write_deadline: Optional[float] = None
        self._timed = False

    def _apply(self, deadline: Optional[float]) -> None:
        if deadline is None:
            if self._timed:
                self.sock.settimeout(None)
            return
        self._timed = True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise IOTimeout()
        self.sock.settimeout(remaining)

    def read(self, size: int) -> bytes:
        self._apply(self._read_deadline)
        try:
            return self.sock.recv(size)
        except TimeoutError as exc:
            raise IOTimeout() from exc

    def write(self, data) -> int:
        self._apply(self._write_deadline)
        try:
            self.sock.sendall(data)
        except TimeoutError as exc:
            raise IOTimeout() from exc
        return len(data)

    def close_write(self) -> None:
        self.sock.shutdown(socket.SHUT_WR)

    def close(self) -> None:
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()

    def set_read_deadline(self, deadline: Optional[float]) -> None:
        self._read_deadline = deadline

    def set_write_deadline(self, deadline: Optional[float]) -> None:
        self._write_deadline = deadline

    def set_deadline(self, deadline: Optional[float]) -> None:
        self.set_read_deadline(deadline)
        self.set_write_deadline(deadline)

    def local_addr(self):
        return self.sock.getsockname()

    def remote_addr(self):
        return self.sock.getpeername()


def dial_udp(addr: UDPAddr) -> SocketConn:
    """Open a connected UDP socket to addr."""
    sock = socket.socket(_family(addr.host), socket.SOCK_DGRAM)
    try:
        sock.connect((addr.host, addr.port))
    except OSError:
        sock.close()
        raise
    return SocketConn(sock)


class Proxy(abc.ABC):
    """Forwards traffic back and forth between a frontend and a backend address."""

    frontend_addr: Any
    backend_addr: Any

    @abc.abstractmethod
    def run(self) -> None:
        """Forward traffic until the proxy is closed."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop forwarding and close both ends."""


class StubProxy(Proxy):
    """A proxy that does nothing."""

    def __init__(self, frontend_addr, backend_addr) -> None:
        self.frontend_addr = frontend_addr
        self.backend_addr = backend_addr

    def run(self) -> None:
        """Does nothing."""

    def close(self) -> None:
        """Does nothing."""


def handle_tcp_connection(client, backend_addr: TCPAddr, quit: Optional[threading.Event] = None) -> int:
    """Forward a client connection to a TCP backend; returns bytes transferred."""
    try:
        backend = socket.create_connection((backend_addr.host, backend_addr.port))
    except OSError as exc:
        if is_connection_refused(exc):
            raise
        raise ConnectionError(f"can't forward traffic to backend tcp/{backend_addr}: {exc}") from exc
    return proxy_stream(client, SocketConn(backend), quit)


def handle_unix_connection(client, backend_addr: UnixAddr, quit: Optional[threading.Event] = None) -> int:
    """Forward a client connection to a Unix socket, retrying while it refuses."""
    log = get_logger()
    start = time.monotonic()
    while True:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(backend_addr.path)
        except OSError as exc:
            sock.close()
            if is_connection_refused(exc):
                if time.monotonic() - start > UNIX_CONNECT_TIMEOUT:
                    log.error(
                        "failed to connect to %s after %ds. The server appears to be down.",
                        backend_addr,
                        int(UNIX_CONNECT_TIMEOUT),
                    )
                    raise
                log.info(
                    "%s appears to not be started yet: will retry in %ds",
                    backend_addr,
                    int(UNIX_RETRY_INTERVAL),
                )
                time.sleep(UNIX_RETRY_INTERVAL)
                continue
            raise ConnectionError(
                f"can't forward traffic to backend unix/{backend_addr}: {exc}"
            ) from exc
        return proxy_stream(client, SocketConn(sock), quit)


class _StreamProxy(Proxy):
    _kind = "tcp"

    def __init__(self, listener: socket.socket, backend_addr) -> None:
        self._listener = listener
        self._closed = threading.Event()
        self.frontend_addr = self._address(listener.getsockname())
        self.backend_addr = backend_addr
        listener.settimeout(_POLL_INTERVAL)

    @staticmethod
    @abc.abstractmethod
    def _address(name):
        """Convert a socket name into an address object."""

    @abc.abstractmethod
    def _handle(self, client, quit: threading.Event) -> None:
        """Forward one accepted client connection to the backend."""

    def _serve(self, client: SocketConn, quit: threading.Event) -> None:
        try:
            self._handle(client, quit)
        except (OSError, EOFError) as exc:
            get_logger().info("%s proxy connection ended: %s", self._kind, exc)
        finally:
            client.close()

    def _stopping(self, reason) -> None:
        get_logger().info(
            "Stopping proxy on %s/%s for %s/%s (%s)",
            self._kind,
            self.frontend_addr,
            self._kind,
            self.backend_addr,
            reason,
        )

    def _accept_loop(self) -> None:
        quit = threading.Event()
        try:
            while True:
                try:
                    client, _ = self._listener.accept()
                except TimeoutError:
                    if self._closed.is_set():
                        self._stopping(_CLOSED_MESSAGE)
                        return
                    continue
                except OSError as exc:
                    self._stopping(exc)
                    return
                client.settimeout(None)
                threading.Thread(
                    target=self._serve, args=(SocketConn(client), quit), daemon=True
                ).start()
        finally:
            quit.set()

    def _shutdown(self) -> None:
        self._closed.set()
        self._listener.close()


class TCPProxy(_StreamProxy):
    """Forwards TCP connections accepted on a listener to a backend address."""

    _kind = "tcp"

    @staticmethod
    def _address(name) -> TCPAddr:
        return TCPAddr(name[0], name[1])

    def _handle(self, client, quit: threading.Event) -> None:
        handle_tcp_connection(client, self.backend_addr, quit)

    def run(self) -> None:
        """Accept and forward connections until the proxy is closed."""
        self._accept_loop()

    def close(self) -> None:
        """Stop accepting connections."""
        self._shutdown()


class UnixProxy(_StreamProxy):
    """Forwards Unix socket connections accepted on a listener to a backend path."""

    _kind = "unix"

    def __init__(self, listener: socket.socket, backend_addr: UnixAddr) -> None:
        super().__init__(listener, backend_addr)
        get_logger().info("NewUnixProxy from %s -> %s", self.frontend_addr, backend_addr)

    @staticmethod
    def _address(name) -> UnixAddr:
        return UnixAddr(name.decode() if isinstance(name, bytes) else name)

    def _handle(self, client, quit: threading.Event) -> None:
        handle_unix_connection(client, self.backend_addr, quit)

    def run(self) -> None:
        """Accept and forward connections until the proxy is closed."""
        self._accept_loop()

    def close(self) -> None:
        """Stop accepting connections."""
        self._shutdown()


def _split_addr(addr) -> Tuple[str, int]:
    if isinstance(addr, (UDPAddr, TCPAddr)):
        return addr.host, addr.port
    return addr[0], addr[1]


def conn_track_key(addr) -> Tuple[int, int, int]:
    """A hashable (ip_high, ip_low, port) key for a UDP source address."""
    host, port = _split_addr(addr)
    ip = ipaddress.ip_address(host.partition("%")[0])
    value = int(ip)
    if ip.version == 4:
        return 0, value, port
    return value >> 64, value & _U64_MASK, port


def _is_closed_error(exc: BaseException) -> bool:
    if isinstance(exc, OSError) and exc.errno == errno.EBADF:
        return True
    return str(exc).endswith(_CLOSED_MESSAGE)


class _UDPSocketListener:
    """A bound UDP socket with a close that wakes a blocked reader."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._closed = threading.Event()
        sock.settimeout(_POLL_INTERVAL)

    def read_from_udp(self, size: int):
        while True:
            if self._closed.is_set():
                raise OSError(_CLOSED_MESSAGE)
            try:
                data, addr = self._sock.recvfrom(size)
            except TimeoutError:
                continue
            except OSError:
                if self._closed.is_set():
                    raise OSError(_CLOSED_MESSAGE) from None
                raise
            return data, (addr[0], addr[1])

    def write_to_udp(self, data, addr) -> int:
        host, port = _split_addr(addr)
        return self._sock.sendto(bytes(data), (host, port))

    def close(self) -> None:
        self._closed.set()
        self._sock.close()

    def local_addr(self) -> UDPAddr:
        name = self._sock.getsockname()
        return UDPAddr(name[0], name[1])


class UDPProxy(Proxy):
    """Forwards UDP datagrams, keeping one backend connection per client address.

    The listener offers read_from_udp, write_to_udp and close; the dialer is a
    callable taking the backend address and returning a connection.
    """

    def __init__(
        self,
        frontend_addr,
        listener,
        backend_addr: UDPAddr,
        dialer: Optional[Callable[[UDPAddr], Any]] = None,
    ) -> None:
        self._listener = listener
        self.frontend_addr = frontend_addr
        self.backend_addr = backend_addr
        self._dialer = dialer if dialer is not None else dial_udp
        self._table: Dict[Tuple[int, int, int], Any] = {}
        self._lock = threading.Lock()

    def _reply_loop(self, proxy_conn, client_addr, key) -> None:
        try:
            while True:
                proxy_conn.set_read_deadline(time.monotonic() + UDP_CONN_TRACK_TIMEOUT)
                while True:
                    try:
                        data = proxy_conn.read(UDP_BUF_SIZE)
                        break
                    except ConnectionRefusedError:
                        # The last write found nothing listening; keep waiting.
                        continue
                    except (OSError, EOFError):
                        return
                sent = 0
                while sent < len(data):
                    try:
                        sent += self._listener.write_to_udp(data[sent:], client_addr)
                    except OSError:
                        return
        finally:
            with self._lock:
                if self._table.get(key) is proxy_conn:
                    del self._table[key]
            proxy_conn.close()

    def run(self) -> None:
        log = get_logger()
        while True:
            try:
                data, source = self._listener.read_from_udp(UDP_BUF_SIZE)
            except (OSError, EOFError) as exc:
                if not _is_closed_error(exc):
                    log.info(
                        "Stopping proxy on %s for udp/%s (%s)", self.frontend_addr, self.backend_addr, exc
                    )
                break
            key = conn_track_key(source)
            with self._lock:
                proxy_conn = self._table.get(key)
                if proxy_conn is None:
                    try:
                        proxy_conn = self._dialer(self.backend_addr)
                    except OSError as exc:
                        log.info("Can't proxy a datagram to udp/%s: %s", self.backend_addr, exc)
                        continue
                    self._table[key] = proxy_conn
                    threading.Thread(
                        target=self._reply_loop, args=(proxy_conn, source, key), daemon=True
                    ).start()
            sent = 0
            while sent < len(data):
                try:
                    sent += proxy_conn.write(data[sent:])
                except (OSError, EOFError) as exc:
                    log.info("Can't proxy a datagram to udp/%s: %s", self.backend_addr, exc)
                    break

    def close(self) -> None:
        self._listener.close()
        with self._lock:
            conns = list(self._table.values())
        for conn in conns:
            conn.close()


def new_ip_proxy(frontend_addr: Address, backend_addr: Address) -> Proxy:
    """Listen on frontend_addr and return a proxy to backend_addr of the same kind."""
    if isinstance(frontend_addr, UDPAddr):
        sock = socket.socket(_family(frontend_addr.host), socket.SOCK_DGRAM)
        try:
            sock.bind((frontend_addr.host, frontend_addr.port))
        except OSError:
            sock.close()
            raise
        listener = _UDPSocketListener(sock)
        return UDPProxy(listener.local_addr(), listener, backend_addr)
    if isinstance(frontend_addr, TCPAddr):
        listener = socket.create_server(
            (frontend_addr.host, frontend_addr.port), family=_family(frontend_addr.host)
        )
        return TCPProxy(listener, backend_addr)
    if isinstance(frontend_addr, UnixAddr):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(frontend_addr.path)
            sock.listen()
        except OSError:
            sock.close()
            raise
        return UnixProxy(sock, backend_addr)
    raise TypeError("Unsupported protocol")


def new_best_effort_ip_proxy(host: Address, container: Address) -> Optional[Proxy]:
    """Like new_ip_proxy, but return None if host's address does not exist locally."""
    try:
        return new_ip_proxy(host, container)
    except OSError as exc:
        if exc.errno == errno.EADDRNOTAVAIL:
            get_logger().info("Address %s doesn't exist in the VM: only binding on the host", host)
            return None
        raise