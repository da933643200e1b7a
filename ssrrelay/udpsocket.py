"""Creation of the listening and outgoing UDP sockets of the relay."""

from __future__ import annotations

import logging
import socket
from typing import Optional, Union

from .utils import fatal

_log = logging.getLogger("ssrrelay")

QOS_TOS = 46


def create_remote_socket(ipv6: bool) -> socket.socket:
    """Create a UDP socket bound to the wildcard address on any port.

    Raises ``OSError`` when the socket cannot be created and
    :class:`~ssrrelay.utils.FatalError` when it cannot be bound.
    """
    family = socket.AF_INET6 if ipv6 else socket.AF_INET
    try:
        sock = socket.socket(family, socket.SOCK_DGRAM)
    except OSError as exc:
        _log.error("[udp] cannot create socket: %s", exc)
        raise
    try:
        sock.bind(("::", 0) if ipv6 else ("0.0.0.0", 0))
    except OSError:
        sock.close()
        fatal("[udp] cannot bind remote")
    return sock


def _resolve(host: Optional[str], port: Optional[str]):
    base = socket.AI_PASSIVE
    addrconfig = getattr(socket, "AI_ADDRCONFIG", 0)
    try:
        return socket.getaddrinfo(
            host, port, socket.AF_UNSPEC, socket.SOCK_DGRAM, socket.IPPROTO_UDP, base | addrconfig
        )
    except socket.gaierror:
        if not addrconfig:
            raise
    return socket.getaddrinfo(
        host, port, socket.AF_UNSPEC, socket.SOCK_DGRAM, socket.IPPROTO_UDP, base
    )


def _configure(sock: socket.socket, family: int, host: Optional[str]) -> None:
    if family == socket.AF_INET6:
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1 if host else 0)
        except OSError:
            pass
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    reuseport = getattr(socket, "SO_REUSEPORT", None)
    if reuseport is not None:
        try:
            sock.setsockopt(socket.SOL_SOCKET, reuseport, 1)
            _log.info("udp port reuse enabled")
        except OSError:
            pass
    tos = getattr(socket, "IP_TOS", None)
    if tos is not None:
        try:
            sock.setsockopt(socket.IPPROTO_IP, tos, QOS_TOS)
        except OSError:
            pass


def create_server_socket(host: Optional[str], port: Union[int, str, None]) -> socket.socket:
    """Create and bind the UDP socket the relay listens on.

    Without ``host`` the first IPv6 wildcard address is preferred and bound
    in dual-stack mode. Raises ``OSError`` when the address cannot be
    resolved or no candidate can be bound.
    """
    service = None if port is None else str(port)
    try:
        candidates = _resolve(host, service)
    except socket.gaierror as exc:
        _log.error("[udp] getaddrinfo: %s", exc)
        raise

    if not host:
        for index, info in enumerate(candidates):
            if info[0] == socket.AF_INET6:
                candidates = candidates[index:]
                break

    last_error: Optional[OSError] = None
    for family, socktype, proto, _canon, sockaddr in candidates:
        try:
            sock = socket.socket(family, socktype, proto)
        except OSError as exc:
            last_error = exc
            continue
        try:
            _configure(sock, family, host)
            sock.bind(sockaddr)
        except OSError as exc:
            _log.error("[udp] bind: %s", exc)
            last_error = exc
            sock.close()
            continue
        return sock

    _log.error("[udp] cannot bind")
    raise OSError("[udp] cannot bind") from last_error