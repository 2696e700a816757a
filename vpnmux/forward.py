"""Forward an accepted connection to its destination."""

from __future__ import annotations

import ipaddress
import threading
from typing import Optional

from vpnmux.frame import Destination, Proto, get_logger
from vpnmux.proxy import (
    UDP_BUF_SIZE,
    TCPAddr,
    UDPAddr,
    UnixAddr,
    dial_udp,
    handle_tcp_connection,
    handle_unix_connection,
)

_POLL_INTERVAL = 0.05


def _host(ip) -> str:
    if ip is None:
        return ""
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def copy_udp(description: str, left, right) -> None:
    """Copy datagrams from left to right until a read or write fails."""
    log = get_logger()
    while True:
        try:
            packet = left.read(UDP_BUF_SIZE)
        except (OSError, EOFError) as exc:
            log.info("%s: unable to read UDP: %s", description, exc)
            return
        if not packet:
            log.info("%s: unable to read UDP: EOF", description)
            return
        try:
            right.write(packet)
        except (OSError, EOFError) as exc:
            log.info("%s: unable to write UDP: %s", description, exc)
            return


def _forward_udp(conn, destination: Destination, quit: Optional[threading.Event]) -> None:
    log = get_logger()
    backend = UDPAddr(_host(destination.ip), destination.port)
    try:
        inside = dial_udp(backend)
    except OSError as exc:
        log.info("Failed to Dial UDP backend for %s: %s", backend, exc)
        return
    log.info("accepted UDP connection to %s", backend)
    done = threading.Event()

    def pump(description: str, left, right) -> None:
        try:
            copy_udp(description, left, right)
        finally:
            done.set()

    threading.Thread(target=pump, args=(f"from {backend} to host", inside, conn), daemon=True).start()
    threading.Thread(target=pump, args=(f"from host to {backend}", conn, inside), daemon=True).start()
    while not done.is_set() and not (quit is not None and quit.is_set()):
        done.wait(_POLL_INTERVAL)
    log.info("closing UDP connection to %s", backend)
    inside.close()


def forward(conn, destination: Destination, quit: Optional[threading.Event] = None) -> None:
    """Forward conn to destination until either side finishes; conn is closed afterwards."""
    log = get_logger()
    try:
        if destination.proto == Proto.TCP:
            backend = TCPAddr(_host(destination.ip), destination.port)
            try:
                handle_tcp_connection(conn, backend, quit)
            except (OSError, EOFError) as exc:
                log.info("closing TCP proxy because %s", exc)
        elif destination.proto == Proto.UNIX:
            try:
                handle_unix_connection(conn, UnixAddr(destination.path), quit)
            except (OSError, EOFError) as exc:
                log.info("closing Unix proxy because %s", exc)
        elif destination.proto == Proto.UDP:
            _forward_udp(conn, destination, quit)
        else:
            log.info("Unknown protocol: %s", destination.proto)
    finally:
        conn.close()