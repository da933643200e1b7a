"""Address headers of relayed UDP packets and related helpers.

A header is ``ATYP | DST.ADDR | DST.PORT``: type 1 carries a 4-byte IPv4
address, type 3 a length-prefixed host name and type 4 a 16-byte IPv6
address; the port is two bytes in network order.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import struct
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

ADDRTYPE_IPV4 = 1
ADDRTYPE_DOMAIN = 3
ADDRTYPE_IPV6 = 4
ADDRTYPE_MASK = 0xEF
ONETIMEAUTH_FLAG = 0x10

MAX_UDP_PACKET_SIZE = 65507
DEFAULT_PACKET_SIZE = 1397
MAX_UDP_CONN_NUM = 512

_log = logging.getLogger("ssrrelay")


class HeaderError(ValueError):
    """Raised when an address header cannot be parsed or built."""


@dataclass(frozen=True)
class UdpHeader:
    """A parsed address header.

    ``address`` is an IP socket address ``(ip, port)`` when the destination
    is an IP literal (also when sent as a domain), otherwise ``None``.
    """

    atyp: int
    host: str
    port: int
    length: int
    family: int
    address: Optional[Tuple[str, int]]


def _ip_literal(text: str):
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def parse_header(buf: bytes) -> UdpHeader:
    """Parse the address header at the start of ``buf``."""
    if not buf:
        _log.error("[udp] invalid header with addr type %d", 0)
        raise HeaderError("empty packet")
    atyp = buf[0]
    kind = atyp & ADDRTYPE_MASK
    size = len(buf)

    if kind == ADDRTYPE_IPV4 and size >= 4 + 3:
        ip = socket.inet_ntop(socket.AF_INET, bytes(buf[1:5]))
        (port,) = struct.unpack(">H", buf[5:7])
        return UdpHeader(kind, ip, port, 7, socket.AF_INET, (ip, port))

    if kind == ADDRTYPE_DOMAIN and size >= 2 and buf[1] + 4 <= size:
        name_len = buf[1]
        host = bytes(buf[2:2 + name_len]).decode("latin-1")
        (port,) = struct.unpack(">H", buf[2 + name_len:4 + name_len])
        literal = _ip_literal(host)
        if literal is None:
            family, address = socket.AF_UNSPEC, None
        else:
            family = socket.AF_INET if literal.version == 4 else socket.AF_INET6
            address = (str(literal), port)
        return UdpHeader(kind, host, port, 4 + name_len, family, address)

    if kind == ADDRTYPE_IPV6 and size >= 16 + 3:
        ip = socket.inet_ntop(socket.AF_INET6, bytes(buf[1:17]))
        (port,) = struct.unpack(">H", buf[17:19])
        return UdpHeader(kind, ip, port, 19, socket.AF_INET6, (ip, port))

    _log.error("[udp] invalid header with addr type %d", atyp)
    raise HeaderError(f"invalid header with addr type {atyp}")


def build_header(address: Sequence) -> bytes:
    """Build the header for ``(host, port)``.

    IP literals become type 1 or 4 headers; any other host becomes a type 3
    header carrying the name.
    """
    host, port = address[0], address[1]
    if not 0 <= int(port) <= 0xFFFF:
        raise HeaderError(f"port out of range: {port}")
    port_bytes = struct.pack(">H", int(port))
    literal = _ip_literal(host)
    if literal is not None:
        atyp = ADDRTYPE_IPV4 if literal.version == 4 else ADDRTYPE_IPV6
        return bytes([atyp]) + literal.packed + port_bytes
    name = host.encode("latin-1") if isinstance(host, str) else bytes(host)
    if not name or len(name) > 255:
        raise HeaderError(f"host name length out of range: {len(name)}")
    return bytes([ADDRTYPE_DOMAIN, len(name)]) + name + port_bytes


def format_address(address: Sequence) -> str:
    """Render a socket address as ``host:port``."""
    host, port = address[0], address[1]
    if _ip_literal(str(host)) is None:
        return "Unknown AF"
    return f"{host}:{int(port)}"


def hash_key(family: int, address: Sequence) -> tuple:
    """Return the connection-cache key for a source address and family."""
    return (int(family), tuple(address))


def packet_size_for_mtu(mtu: int) -> int:
    """Return the largest relayed packet for ``mtu`` (the default when ``mtu`` <= 0)."""
    if mtu > 0:
        return mtu - 1 - 28 - 2 - 64
    return DEFAULT_PACKET_SIZE