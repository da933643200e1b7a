"""Server side of the UDP relay.

Clients send packets of the form ``ATYP | DST.ADDR | DST.PORT | DATA``,
which arrive encrypted. The server forwards ``DATA`` to the destination
from a socket kept per client source address. Replies are sent back with
the responder's address header prepended, then encrypted.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple

from .conncache import ConnectionCache, RemoteContext
from .udpheader import (
    MAX_UDP_CONN_NUM,
    HeaderError,
    UdpHeader,
    build_header,
    format_address,
    hash_key,
    packet_size_for_mtu,
    parse_header,
)
from .udpsocket import QOS_TOS, create_remote_socket, create_server_socket
from .utils import fatal

_log = logging.getLogger("ssrrelay")

MIN_UDP_TIMEOUT = 10
_EXPIRE_INTERVAL = 1.0

Transform = Callable[[bytes], bytes]
Resolver = Callable[[str, int], Awaitable[Tuple[int, Tuple]]]


def _identity(data: bytes) -> bytes:
    return data


async def _default_resolver(host: str, port: int) -> Tuple[int, Tuple]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(
        host, port, type=socket.SOCK_DGRAM, proto=socket.IPPROTO_UDP
    )
    if not infos:
        raise OSError(f"no address for {host}")
    family, _type, _proto, _canon, sockaddr = infos[0]
    return family, sockaddr


def _family_of(address: Tuple) -> int:
    try:
        version = ipaddress.ip_address(str(address[0]).split("%", 1)[0]).version
    except ValueError:
        return socket.AF_UNSPEC
    return socket.AF_INET6 if version == 6 else socket.AF_INET


class UdpRelayServer:
    """UDP relay listening on ``host:port``.

    ``decrypt`` and ``encrypt`` transform whole packets; either may raise
    ``ValueError`` to drop a packet. ``resolver`` maps a host name and port
    to ``(family, sockaddr)``.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: int = 0,
        *,
        mtu: int = 0,
        timeout: float = 60,
        iface: Optional[str] = None,
        protocol: Optional[str] = None,
        auth: bool = False,
        decrypt: Optional[Transform] = None,
        encrypt: Optional[Transform] = None,
        resolver: Optional[Resolver] = None,
        verbose: bool = False,
    ) -> None:
        self.host = host
        self.port = port
        self.packet_size = packet_size_for_mtu(mtu)
        self.buf_size = self.packet_size * 2
        if protocol == "verify_sha1":
            auth = True
            protocol = None
        self.auth = auth
        self.protocol = protocol
        self.timeout = max(timeout, MIN_UDP_TIMEOUT)
        self.iface = iface
        self.verbose = verbose
        self._decrypt = decrypt or _identity
        self._encrypt = encrypt or _identity
        self._resolver = resolver or _default_resolver
        self.cache = ConnectionCache(MAX_UDP_CONN_NUM, on_free=self._free_remote, verbose=verbose)
        self.tx = 0
        self.rx = 0
        self.sock: Optional[socket.socket] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()
        self._expiry: Optional[asyncio.Task] = None
        self._watched: Dict[int, int] = {}

    async def start(self) -> Tuple:
        """Bind the listening socket, start serving and return its address."""
        if self.sock is not None:
            raise RuntimeError("relay already started")
        self._loop = asyncio.get_running_loop()
        try:
            sock = create_server_socket(self.host, self.port)
        except OSError:
            fatal("[udp] bind() error")
        sock.setblocking(False)
        self.sock = sock
        self._loop.add_reader(sock.fileno(), self._on_server_readable)
        self._expiry = self._loop.create_task(self._expire_loop())
        return sock.getsockname()

    def close(self) -> None:
        """Stop serving and free every association."""
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        if self.sock is not None:
            if self._loop is not None and not self._loop.is_closed():
                self._loop.remove_reader(self.sock.fileno())
            self.sock.close()
            self.sock = None
        self.cache.clear()

    async def _expire_loop(self) -> None:
        while True:
            await asyncio.sleep(_EXPIRE_INTERVAL)
            self.cache.expire()

    def _on_server_readable(self) -> None:
        if self.sock is None or self._loop is None:
            return
        try:
            data, src = self.sock.recvfrom(self.buf_size)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            _log.error("[udp] server_recv_recvfrom: %s", exc)
            return
        task = self._loop.create_task(self.handle_client_packet(data, src))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_remote_readable(self, remote: RemoteContext) -> None:
        try:
            data, src = remote.sock.recvfrom(self.buf_size)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            _log.error("[udp] remote_recv_recvfrom: %s", exc)
            return
        self.handle_remote_packet(remote, data, src)

    def _watch(self, remote: RemoteContext) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        fd = remote.sock.fileno()
        self._watched[id(remote)] = fd
        self._loop.add_reader(fd, self._on_remote_readable, remote)

    def _free_remote(self, remote: RemoteContext) -> None:
        fd = self._watched.pop(id(remote), None)
        if fd is not None and self._loop is not None and not self._loop.is_closed():
            self._loop.remove_reader(fd)
        remote.close()

    def _new_remote(self, ipv6: bool, src: Tuple, addr_header: bytes) -> Optional[RemoteContext]:
        try:
            sock = create_remote_socket(ipv6)
        except OSError as exc:
            _log.error("[udp] bind() error: %s", exc)
            return None
        sock.setblocking(False)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        except OSError:
            pass
        tos = getattr(socket, "IP_TOS", None)
        if tos is not None:
            try:
                sock.setsockopt(socket.IPPROTO_IP, tos, QOS_TOS)
            except OSError:
                pass
        if self.iface:
            bind_device = getattr(socket, "SO_BINDTODEVICE", None)
            try:
                if bind_device is None:
                    raise OSError("binding to an interface is not supported")
                sock.setsockopt(socket.SOL_SOCKET, bind_device, self.iface.encode())
            except OSError as exc:
                _log.error("setinterface: %s", exc)
        return RemoteContext(
            sock=sock,
            src_addr=tuple(src),
            addr_header=bytes(addr_header),
            timeout=self.timeout,
        )

    def _send_to_target(
        self, remote: RemoteContext, payload: bytes, dst: Tuple, cache_hit: bool, af: int
    ) -> Optional[RemoteContext]:
        try:
            remote.sock.sendto(payload, dst)
        except OSError as exc:
            _log.error("[udp] sendto_remote: %s", exc)
            if not cache_hit:
                remote.close()
            return None
        if not cache_hit:
            remote.af = af
            self.cache.insert(hash_key(af, remote.src_addr), remote)
            self._watch(remote)
        return remote

    async def handle_client_packet(self, data: bytes, src: Tuple) -> Optional[RemoteContext]:
        """Relay one packet received from a client at ``src``.

        Returns the association used, or ``None`` when the packet was dropped.
        """
        data = bytes(data)
        if len(data) > self.packet_size:
            _log.error("[udp] server_recv_recvfrom fragmentation")
            return None
        self.tx += len(data)
        try:
            data = self._decrypt(data)
        except ValueError:
            return None
        try:
            header = parse_header(data)
        except HeaderError:
            return None
        addr_header = data[:header.length]
        payload = data[header.length:]
        src = tuple(src)

        remote = self.cache.lookup(hash_key(header.family, src))
        if remote is not None and tuple(remote.src_addr) != src:
            remote = None
        if remote is not None:
            remote.touch()
        if self.verbose:
            _log.info(
                "[udp] cache %s: %s:%s <-> %s",
                "hit" if remote is not None else "miss",
                header.host, header.port, format_address(src),
            )

        if len(payload) > self.packet_size:
            _log.error("[udp] server_recv_sendto fragmentation")
            return None

        dst = header.address
        cache_hit = False
        need_query = False
        if remote is not None:
            cache_hit = True
            if remote.addr_header != addr_header:
                if header.address is None:
                    need_query = True
            else:
                dst = remote.dst_addr
        elif dst is not None:
            remote = self._new_remote(header.family == socket.AF_INET6, src, addr_header)
            if remote is None:
                return None
            remote.dst_addr = dst

        if remote is not None and not need_query:
            return self._send_to_target(remote, payload, dst, cache_hit, header.family)
        return await self._resolve_and_send(
            header, payload, src, addr_header, remote if need_query else None
        )

    async def _resolve_and_send(
        self,
        header: UdpHeader,
        payload: bytes,
        src: Tuple,
        addr_header: bytes,
        remote: Optional[RemoteContext],
    ) -> Optional[RemoteContext]:
        try:
            family, sockaddr = await self._resolver(header.host, header.port)
        except (OSError, ValueError) as exc:
            _log.error("[udp] udns returned an error: %s", exc)
            return None
        if self.verbose:
            _log.info("[udp] udns resolved")

        if remote is None:
            remote = self.cache.lookup(hash_key(socket.AF_UNSPEC, src))
        cache_hit = remote is not None
        if remote is None:
            if family not in (socket.AF_INET, socket.AF_INET6):
                family = _family_of(sockaddr)
            remote = self._new_remote(family == socket.AF_INET6, src, addr_header)
            if remote is None:
                return None
        remote.dst_addr = tuple(sockaddr)
        return self._send_to_target(remote, payload, remote.dst_addr, cache_hit, socket.AF_UNSPEC)

    def handle_remote_packet(
        self, remote: RemoteContext, data: bytes, src: Tuple
    ) -> Optional[bytes]:
        """Send a reply received by ``remote`` from ``src`` back to its client.

        Returns the packet sent to the client, or ``None`` when it was dropped.
        """
        if self.sock is None:
            _log.error("[udp] invalid server")
            self._free_remote(remote)
            return None
        data = bytes(data)
        if len(data) > self.packet_size:
            _log.error("[udp] remote_recv_recvfrom fragmentation")
            return None
        self.rx += len(data)

        if remote.af in (socket.AF_INET, socket.AF_INET6):
            try:
                addr_header = build_header(src)
            except HeaderError:
                return None
        else:
            addr_header = remote.addr_header

        try:
            packet = self._encrypt(addr_header + data)
        except ValueError:
            return None
        if len(packet) > self.packet_size:
            _log.error("[udp] remote_recv_sendto fragmentation")
            return None
        try:
            self.sock.sendto(packet, remote.src_addr)
        except OSError as exc:
            _log.error("[udp] remote_recv_sendto: %s", exc)
            return None
        remote.touch()
        return packet