# vpnmux

Building blocks for carrying network traffic between a host and a virtual
machine over a single stream connection.

## Modules

- **`vpnmux.frame`** – the binary frames of the multiplexer protocol:
  `Frame`, `Destination`, `Proto`, `Connection`, `Command`, the payload classes
  `OpenFrame`, `CloseFrame`, `ShutdownFrame`, `DataFrame`, `WindowFrame`, the
  readers `read_frame`, `read_destination`, `read_exact`, and the constructors
  `new_open`, `new_data`, `new_window`, `new_shutdown`, `new_close`. It also
  holds the package logger (`get_logger`, `set_logger`).
- **`vpnmux.handshake`** – the magic-string handshake exchanged when a
  multiplexed connection starts (`Handshake`, `read_handshake`,
  `HandshakeError`).
- **`vpnmux.multiplexer`** – `Multiplexer` runs many sub-connections
  (`Channel`) over one stream. Constructing it performs the handshake; after
  `run()` you can `dial(destination)` and `accept()`. Each channel has
  flow-control windows (`WindowState`), half-close (`close_write`),
  `set_read_buffer`/`set_write_buffer`, and read/write deadlines. Sub-connections
  to UDP destinations are returned wrapped in a `UDPEncapsulator`.
  `dump_state(w)` writes the recent event trace and the active channels to a
  text stream. `accept()` on a stopped multiplexer raises
  `MultiplexerNotRunning`.
- **`vpnmux.loopback`** – `Loopback`, an in-memory buffered bidirectional
  connection whose writes never block; `other_end()` gives the peer. Reads past
  a read deadline raise `IOTimeout`.
- **`vpnmux.udp_encapsulation`** – UDP datagrams framed inside a stream
  (`UDPDatagram`, `read_datagram`, `UDPEncapsulator`).
- **`vpnmux.stream_proxy`** – `proxy_stream(client, backend, quit)` copies data
  both ways until both directions reach end of stream or the `quit` event is
  set, then closes the backend and returns the number of bytes transferred.
- **`vpnmux.proxy`** – TCP, Unix-socket and UDP port proxies:
  `new_ip_proxy(frontend_addr, backend_addr)` takes `TCPAddr`, `UDPAddr` or
  `UnixAddr` and returns a `TCPProxy`, `UDPProxy` or `UnixProxy`;
  `new_best_effort_ip_proxy` returns `None` instead of failing when the address
  does not exist locally. `StubProxy` does nothing.
- **`vpnmux.forward`** – `forward(conn, destination, quit)` connects an
  accepted sub-connection to its TCP, UDP or Unix destination and closes it
  afterwards.
- **`vpnmux.tunnel`** – length-prefixed JSON tunnel requests and responses
  (`Request`, `Response`, `read_request`, `read_response`) and forward
  specifications (`Forward`, `unmarshal_forwards`, `marshal_forwards`).
  Malformed input raises `TunnelError`.
- **`vpnmux.expose_port`** – `expose_port(host, container, root)` asks a 9P
  control filesystem (by default under `/port`) to expose a port and returns
  the open control file; keep it open for as long as the port should stay
  exposed. A refusal raises `ExposePortError`.
- **`vpnmux.iptables_wrapper`** – the `vpnmux-iptables-wrapper` command.

Deadlines throughout are absolute `time.monotonic()` values, or `None`.

## Installing

```
pip install .
```

Run the tests with:

```
pip install ".[test]"
pytest
```

## Frames

Frames are written to and read from any binary file-like object:

```python
import io
from vpnmux.frame import new_window, read_frame

buf = io.BytesIO()
new_window(9, 8888888).write(buf)
buf.seek(0)

frame = read_frame(buf)
print(frame.window())   # WindowFrame(seq=8888888)
```

Asking a frame for the wrong payload (for example `frame.open()` on a window
frame) raises `FrameError`.

## A multiplexer over a loopback connection

```python
import ipaddress
import threading
from vpnmux.frame import Destination, Proto
from vpnmux.loopback import Loopback
from vpnmux.multiplexer import Multiplexer

loop = Loopback()
result = {}
t = threading.Thread(
    target=lambda: result.setdefault("remote", Multiplexer("remote", loop.other_end(), True))
)
t.start()
local = Multiplexer("local", loop)
t.join()
remote = result["remote"]
local.run()
remote.run()

client = local.dial(Destination(Proto.TCP, ipaddress.ip_address("127.0.0.1"), 8080))
server, destination = remote.accept()
client.write(b"hello")
print(server.read(5))   # b'hello'
```

## Tunnel messages

```python
import io
from vpnmux.tunnel import Response, read_response

buf = io.BytesIO()
Response(accepted=True).write(buf)
buf.seek(0)
print(read_response(buf).accepted)   # True
```

## iptables wrapper

`vpnmux-iptables-wrapper` stands in for `iptables`. When it sees a Docker
ingress rule being inserted or deleted, such as

```
vpnmux-iptables-wrapper --wait -t nat -I DOCKER-INGRESS -p tcp --dport 80 -j DNAT --to-destination 172.18.0.2:80
```

it starts (`-I`) or stops (`-D`) a port-exposing helper for that port, keeping
its pid in a file under `PID_DIR` (`/var/run/service-port-opener`), and then
runs `/sbin/iptables` with the same arguments, exiting with its status. Any
other arguments are passed straight through. If the first line of the file
`CONFIG_KEY` (`/var/config/vpnkit/native-port-forwarding`) is `1` or `true`,
native port forwarding is in use and no helper is started.

## What the package does not do

The port-exposing helper started by the iptables wrapper (the executable named
by `VPNKIT_EXPOSE_PORT`, looked up on `PATH`) is not part of this package and
must be installed separately. The package also has no control server or client
for listing or exposing ports on the host; it provides the protocol pieces,
proxies and the multiplexer that such programs would be built from.