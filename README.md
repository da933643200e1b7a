# ssrrelay

Building blocks for a ShadowsocksR-style proxy server, in plain Python with
no third-party dependencies (Python 3.10 or later).

| Module | What it provides |
| --- | --- |
| `ssrrelay.udprelay` | `UdpRelayServer`, an asyncio UDP relay |
| `ssrrelay.conncache` | `ConnectionCache` and `RemoteContext`: per-client associations with LRU eviction and idle expiry |
| `ssrrelay.udpheader` | `parse_header`, `build_header`, `format_address`, `hash_key`, `packet_size_for_mtu`, `UdpHeader`, `HeaderError` |
| `ssrrelay.udpsocket` | `create_server_socket`, `create_remote_socket` |
| `ssrrelay.verify` | the `verify_simple` protocol: `VerifySimple`, `pack_data`, `ProtocolError` |
| `ssrrelay.tls12_ticket` | `tls1.2_ticket_auth` shared pieces and client side: `TlsTicketAuthClient`, `ServerInfo`, `TicketAuthGlobal`, `pack_auth_data`, `frame_application_data`, `ObfsError` |
| `ssrrelay.tls12_server` | `tls1.2_ticket_auth` server side: `TlsTicketAuthServer` |
| `ssrrelay.utils` | `run_as`, `daemonize`, `set_nofile`, `usage`, `is_numeric`, `fatal`, `FatalError` |
| `ssrrelay.log` | `configure_logging`, `ColorFormatter` |

The `test` extra installs pytest and pytest-asyncio.

## UDP relay

Clients send datagrams of the form `ATYP | DST.ADDR | DST.PORT | DATA`.
`UdpRelayServer` forwards `DATA` to the destination from an outgoing socket
kept per client source address. Host names are resolved first. Replies are
sent back to the client with the responder's address header in front.

```python
import asyncio
from ssrrelay.udprelay import UdpRelayServer

async def main():
    relay = UdpRelayServer("127.0.0.1", 0, timeout=60, verbose=True)
    address = await relay.start()
    print("listening on", address)
    try:
        await asyncio.sleep(3600)
    finally:
        relay.close()

asyncio.run(main())
```

Options of `UdpRelayServer`:

- `mtu`: when positive, sets `packet_size` to `mtu - 95`; the default is 1397 bytes. Larger packets are dropped.
- `timeout`: idle time before an association is freed. It is never less than 10 seconds.
- `iface`: network interface that outgoing sockets are bound to, where the platform allows it.
- `protocol`: the value `"verify_sha1"` turns on `auth` and clears `protocol`.
- `decrypt` and `encrypt`: callables applied to whole packets. Either may raise `ValueError` to drop a packet. By default they pass data through unchanged.
- `resolver`: an async callable `(host, port) -> (family, sockaddr)`. The default uses the event loop's `getaddrinfo`.

`handle_client_packet` and `handle_remote_packet` can also be called directly.
They return the association used, or the packet sent back to the client, or
`None` when a packet was dropped. `tx` and `rx` count the bytes received from
clients and from remotes.

## Address headers

```python
from ssrrelay.udpheader import build_header, parse_header, packet_size_for_mtu

header = build_header(("192.0.2.10", 53))         # type 1, IPv4
parsed = parse_header(header + b"payload")
print(parsed.host, parsed.port, parsed.length)   # 192.0.2.10 53 7

print(build_header(("example.com", 80))[:2])     # b'\x03\x0b' (type 3, name length)
print(packet_size_for_mtu(1492))                 # 1397
```

`parse_header` raises `HeaderError` when the address type is unknown or the
buffer is too short.

## `verify_simple`

Each frame carries a length, random padding and a CRC32 check. Data longer
than 2000 bytes is split over several frames.

```python
from ssrrelay.verify import VerifySimple, ProtocolError

sender, receiver = VerifySimple(), VerifySimple()
wire = sender.client_pre_encrypt(b"hello world")
assert receiver.server_post_decrypt(wire) == b"hello world"

try:
    receiver.server_post_decrypt(b"\x00\x03garbage")
except ProtocolError as exc:
    print("rejected:", exc)
```

A partial frame stays buffered until the rest of it arrives. The receive
buffer is limited to 16384 bytes.

## `tls1.2_ticket_auth`

The stream is made to look like a TLS 1.2 session. The handshake is
authenticated with HMAC-SHA1. The server remembers the 22 most recent
client hellos and rejects a replayed one.

```python
from ssrrelay.tls12_ticket import ServerInfo, TlsTicketAuthClient
from ssrrelay.tls12_server import TlsTicketAuthServer

client = TlsTicketAuthClient(ServerInfo(host="example.com", key=b"secret"))
server = TlsTicketAuthServer(ServerInfo(key=b"secret"))

hello = client.encode(b"hello")            # ClientHello; b"hello" is queued
_, send_back = server.decode(hello)        # (b"", True)
reply = server.encode(b"")                 # ServerHello + Finished
_, send_back = client.decode(reply)        # (b"", True)
finished = client.encode(b"")              # Finished + queued data
payload, _ = server.decode(finished)       # b"hello"

payload, _ = server.decode(client.encode(b"more"))   # b"more"
```

On the server, a `ServerInfo.param` holding a number limits how far the
client's clock may drift, in seconds. On the client, `param` holds a
comma-separated list of host names, one of which is picked at random for the
SNI. Failures raise `ObfsError`.

## Process helpers and logging

- `run_as(user)`: switches to a user name or numeric uid, changing the group first.
- `daemonize(pid_path)`: writes the pid file, starts a new session, moves to `/` and points the standard streams at the null device.
- `set_nofile(n)`: sets the open-file limit.
- `usage(program)`: prints help text.
- `fatal(msg)`: logs `msg` and raises `FatalError`, whose `exit_code` is 255.

```python
from ssrrelay.log import configure_logging

log = configure_logging(use_syslog=False, ident="ssrrelay", use_tty=True)
log.info("started")
```

## Errors

Failures are raised as exceptions:

- `ProtocolError` for a malformed `verify_simple` frame.
- `ObfsError` for a failed TLS-ticket handshake or record.
- `HeaderError` for a bad address header.
- `FatalError` when the server cannot continue.

## What this package does not do

- There is no command to run. No entry point parses options or a
  configuration file; `usage()` only prints help text.
- There are no stream ciphers. The relay takes `encrypt` and `decrypt`
  callables from the caller.
- There is no TCP relay and no access-control list.
- The obfuscation and protocol classes are not wired into `UdpRelayServer`.
  They are separate objects for the caller to apply to a stream.