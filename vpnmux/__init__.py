"""Host/VM networking pieces: multiplexer frames and handshake, the multiplexer,
loopback connections, UDP encapsulation, port proxies, tunnel messages, port
exposure and an iptables wrapper."""

__version__ = "0.1.0"