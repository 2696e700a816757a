"""Wrap iptables and start port forwarders for swarm ingress rules.

Calls of the form

  --wait -t nat -I DOCKER-INGRESS -p tcp --dport 80 -j DNAT --to-destination 172.18.0.2:80
  --wait -t nat -D DOCKER-INGRESS -p tcp --dport 80 -j DNAT --to-destination 172.18.0.2:80

start or stop a port forwarder before the arguments are passed on to iptables.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import Any, Optional, Sequence

IPTABLES_PATH = "/sbin/iptables"
CONFIG_KEY = "/var/config/vpnkit/native-port-forwarding"
VPNKIT_EXPOSE_PORT = "vpnkit-expose-port"  # must be in PATH
PID_DIR = "/var/run/service-port-opener"

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExposedPort:
    """A forwarded port: host port dport to container ip:port."""

    proto: str
    dport: str
    ip: str
    port: str


class PatternMismatch(ValueError):
    """The arguments do not match the pattern."""


class Capture:
    """A pattern slot that captures the argument in its position."""

    def __init__(self) -> None:
        self.value = ""

    def set(self, value: str) -> None:
        self.value = value

    def __str__(self) -> str:
        return self.value


class IPPortCapture:
    """A pattern slot that captures an ip:port argument."""

    def __init__(self) -> None:
        self.ip = ""
        self.port = ""

    def set(self, value: str) -> None:
        ip, sep, port = value.partition(":")
        if not sep:
            raise PatternMismatch("invalid ip:port pair")
        self.ip = ip
        self.port = port

    def __str__(self) -> str:
        return f"{self.ip}:{self.port}"


def pid_file_name(port: ExposedPort, pid_dir: str = PID_DIR) -> str:
    """Path of the pid file for the forwarder of port."""
    return os.path.join(pid_dir, f"{port.proto}.{port.dport}.{port.ip}.{port.port}.pid")


def insert(expose_command: str, port: ExposedPort, pid_dir: str = PID_DIR) -> subprocess.Popen:
    """Start a forwarder for port and record its pid."""
    # Descriptors inherited from the parent are not passed on (close_fds).
    process = subprocess.Popen(
        [
            expose_command,
            "-proto", port.proto,
            "-container-ip", port.ip,
            "-container-port", port.port,
            "-host-ip", "0.0.0.0",
            "-host-port", port.dport,
            "-i",
            "-no-local-ip",
        ],
        close_fds=True,
    )
    with open(pid_file_name(port, pid_dir), "w") as f:
        f.write(str(process.pid))
    return process


def remove(port: ExposedPort, pid_dir: str = PID_DIR) -> None:
    """Stop the forwarder recorded for port and delete its pid file."""
    pid_file = pid_file_name(port, pid_dir)
    with open(pid_file) as f:
        pid = int(f.read())
    os.kill(pid, signal.SIGTERM)
    os.remove(pid_file)


def use_native_port_forwarding(config_key: str = CONFIG_KEY) -> bool:
    """True if the first line of the config file is "1" or "true"."""
    try:
        with open(config_key) as f:
            line = f.readline()
    except FileNotFoundError:
        return False
    except OSError as exc:
        log.error("Error opening %s : %s", config_key, exc)
        return False
    if not line:
        return False
    return line.rstrip("\n").removesuffix("\r").strip(" \n").lower() in ("1", "true")


def match_pattern(args: Sequence[str], pattern: Sequence[Any]) -> None:
    """Match args against a pattern of literal strings and capture slots.

    Capture slots are set as they are reached, so a failed match may leave some
    filled. Raises PatternMismatch unless the whole pattern matches.
    """
    if len(args) < len(pattern):
        raise PatternMismatch("input shorter than pattern")
    for arg, expected in zip(args, pattern):
        if isinstance(expected, str):
            if expected != arg:
                raise PatternMismatch("input doesn't match pattern")
        elif callable(getattr(expected, "set", None)):
            expected.set(arg)
        else:
            raise TypeError("unknown type in pattern")


def _expose(args: Sequence[str]) -> Optional[int]:
    expose_path = shutil.which(VPNKIT_EXPOSE_PORT)
    if expose_path is None:
        log.error("%s: executable file not found in $PATH", VPNKIT_EXPOSE_PORT)
        return 1
    try:
        os.makedirs(PID_DIR, 0o755, exist_ok=True)
    except OSError as exc:
        log.error("%s", exc)
        return 1

    action, proto, dport = Capture(), Capture(), Capture()
    ip_port = IPPortCapture()
    try:
        match_pattern(
            args,
            [
                "--wait", "-t", "nat", action, "DOCKER-INGRESS", "-p", proto,
                "--dport", dport, "-j", "DNAT", "--to-destination", ip_port,
            ],
        )
    except PatternMismatch:
        return None  # not ours: just pass to iptables

    port = ExposedPort(str(proto), str(dport), ip_port.ip, ip_port.port)
    try:
        if str(action) == "-D":
            remove(port, PID_DIR)
        elif str(action) == "-I":
            insert(expose_path, port, PID_DIR)
    except (OSError, ValueError) as exc:
        log.info("could not update forward for %s: %s", port, exc)
    return None


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run iptables with argv, starting or stopping forwarders for ingress rules."""
    args = list(sys.argv[1:] if argv is None else argv)

    iptables = shutil.which(IPTABLES_PATH)
    if iptables is None:
        log.error("%s: executable file not found", IPTABLES_PATH)
        return 1

    if not use_native_port_forwarding(CONFIG_KEY):
        failure = _expose(args)
        if failure is not None:
            return failure

    try:
        completed = subprocess.run([iptables, *args])
    except OSError as exc:
        print(exc)
        return 1
    code = completed.returncode
    return code if code >= 0 else 255


if __name__ == "__main__":
    sys.exit(main())