"""Expose a port through a 9P control filesystem."""

from __future__ import annotations

import os
from typing import BinaryIO

from vpnmux.frame import get_logger
from vpnmux.proxy import TCPAddr, UDPAddr, UnixAddr

PORT_ROOT = "/port"
_RESPONSE_SIZE = 100
_ERROR_PREFIX = "ERROR "


class ExposePortError(RuntimeError):
    """The host refused to expose the port."""


def _network(addr) -> str:
    network = getattr(addr, "network", None)
    if isinstance(network, str):
        return network
    if isinstance(addr, TCPAddr):
        return "tcp"
    if isinstance(addr, UDPAddr):
        return "udp"
    if isinstance(addr, UnixAddr):
        return "unix"
    raise TypeError(f"unsupported address {addr!r}")


def expose_port(host, container, root: str = PORT_ROOT) -> BinaryIO:
    """Ask the host to forward host to container and return the open control file.

    The control file must stay open: closing it tells the host to stop forwarding.
    """
    log = get_logger()
    name = f"{_network(host)}:{host}:{_network(container)}:{container}"
    log.info("exposePort %s", name)
    directory = os.path.join(root, name)
    try:
        os.mkdir(directory, 0)
    except OSError as exc:
        log.error("Failed to mkdir %s: %r", directory, exc)
        raise
    ctl_path = os.path.join(directory, "ctl")
    try:
        ctl = open(ctl_path, "r+b", buffering=0)
    except OSError as exc:
        log.error("Failed to open %s: %r", ctl_path, exc)
        raise
    try:
        ctl.write(name.encode("utf-8"))
        ctl.seek(0)
        results = ctl.read(_RESPONSE_SIZE)
    except OSError as exc:
        log.error("Failed to use %s: %r", ctl_path, exc)
        ctl.close()
        raise
    if not results:
        ctl.close()
        raise EOFError(f"Failed to read from {ctl_path}: EOF")

    response = results.decode("utf-8", errors="replace")
    if response.startswith(_ERROR_PREFIX):
        try:
            os.remove(ctl_path)
        except OSError:
            pass
        ctl.close()
        raise ExposePortError(response[len(_ERROR_PREFIX):].strip(" \t\r\n"))
    return ctl