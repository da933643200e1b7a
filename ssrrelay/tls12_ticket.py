"""The ``tls1.2_ticket_auth`` obfuscation: shared pieces and the client side.

The client disguises its first packet as a TLS 1.2 ClientHello carrying a
session ticket. It then sends a ChangeCipherSpec/Finished pair authenticated
with HMAC-SHA1, and after that wraps all data in TLS application-data
records.
"""

from __future__ import annotations

import hashlib
import hmac
import os
import random
import struct
import time
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Deque, Optional, Tuple

HMAC_LEN = 10
CLIENT_ID_LEN = 32
AUTH_DATA_LEN = 32
RECENT_CLIENTS = 22
SMALL_PACKET = 1024
SPLIT_THRESHOLD = 2048

RECORD_APPLICATION_DATA = 0x17
RECORD_HANDSHAKE = 0x16
TLS12_VERSION = b"\x03\x03"
APPDATA_HEADER = bytes([RECORD_APPLICATION_DATA]) + TLS12_VERSION
CHANGE_CIPHER_SPEC = b"\x14\x03\x03\x00\x01\x01"
FINISHED_HEADER = b"\x16\x03\x03\x00\x20"

_TLS_DATA0 = bytes.fromhex(
    "00 1c c0 2b c0 2f cc a9 cc a8 cc 14 cc 13 c0 0a c0 14 c0 09 c0 13"
    " 00 9c 00 35 00 2f 00 0a 01 00"
)
_TLS_DATA1 = bytes.fromhex("ff 01 00 01 00")
_TLS_DATA2 = bytes.fromhex("00 17 00 00 00 23 00 d0")
_TLS_DATA3 = bytes.fromhex(
    "00 0d 00 16 00 14 06 01 06 03 05 01 05 03 04 01 04 03 03 01 03 03"
    " 02 01 02 03 00 05 00 05 01 00 00 00 00 00 12 00 00 75 50 00 00"
    " 00 0b 00 02 01 00 00 0a 00 06 00 04 00 17 00 18"
)
_TICKET_LEN = 208
_SERVER_HELLO_MIN = 11 + 32 + 1 + 32

_rng = random.Random()


class ObfsError(ValueError):
    """Raised when obfuscated data fails validation."""


def _hmac(key: bytes, client_id: bytes, data: bytes) -> bytes:
    return hmac.new(bytes(key) + bytes(client_id), bytes(data), hashlib.sha1).digest()[:HMAC_LEN]


def pack_auth_data(key: bytes, client_id: bytes, timestamp: Optional[int] = None) -> bytes:
    """Return the 32-byte authenticated random field of a hello message.

    Layout: 4-byte big-endian UNIX time, 18 random bytes, then the first
    10 bytes of HMAC-SHA1 over those 22 bytes keyed with ``key + client_id``.
    """
    if timestamp is None:
        timestamp = int(time.time())
    head = struct.pack(">I", int(timestamp) & 0xFFFFFFFF) + os.urandom(18)
    return head + _hmac(key, client_id, head)


def _record(data: bytes) -> bytes:
    return APPDATA_HEADER + struct.pack(">H", len(data) & 0xFFFF) + data


def frame_application_data(data: bytes) -> bytes:
    """Wrap ``data`` in TLS application-data records.

    Short data becomes one record; longer data is cut into records of a
    random length between 100 and 4195 bytes while more than 2048 bytes
    remain, the rest going into a final record.
    """
    data = bytes(data)
    if len(data) < SMALL_PACKET:
        return _record(data)
    parts = []
    start = 0
    while len(data) - start > SPLIT_THRESHOLD:
        size = min(_rng.randrange(4096) + 100, len(data) - start)
        parts.append(_record(data[start:start + size]))
        start += size
    if len(data) - start > 0:
        parts.append(_record(data[start:]))
    return b"".join(parts)


@dataclass
class TicketAuthGlobal:
    """State shared by all connections of one server entry."""

    client_id: bytes = field(default_factory=lambda: os.urandom(CLIENT_ID_LEN))
    startup_time: float = field(default_factory=time.time)
    recent: Deque[bytes] = field(default_factory=lambda: deque(maxlen=RECENT_CLIENTS))

    def seen(self, verify_id: bytes) -> bool:
        """Return true if ``verify_id`` was remembered recently (a replay)."""
        return bytes(verify_id) in self.recent

    def remember(self, verify_id: bytes) -> None:
        """Record ``verify_id``; only the most recent ones are kept."""
        self.recent.append(bytes(verify_id))


@dataclass
class ServerInfo:
    """What an obfuscation instance knows about its server."""

    host: str = ""
    port: int = 0
    param: Optional[str] = None
    key: bytes = b""
    global_data: TicketAuthGlobal = field(default_factory=TicketAuthGlobal)


class _State(IntEnum):
    START = 0
    HELLO_SENT = 1
    ESTABLISHED = 8


class TlsTicketAuthClient:
    """Client side of one ``tls1.2_ticket_auth`` connection."""

    def __init__(self, server: ServerInfo) -> None:
        self.server = server
        self._state = _State.START
        self._send_buffer = bytearray()
        self._recv_buffer = bytearray()

    @property
    def _global(self) -> TicketAuthGlobal:
        return self.server.global_data

    def _sni(self) -> bytes:
        hosts = self.server.param or self.server.host or ""
        name = _rng.choice(hosts.split(",")).encode("utf-8")[:255]
        if name and name[-1:].isdigit():
            return b""
        return name

    def _client_hello(self) -> bytes:
        sni = self._sni()
        n = len(sni)
        extension = struct.pack(">HHHBH", 0, n + 5, n + 3, 0, n) + sni
        tls_data = (
            _TLS_DATA1 + extension + _TLS_DATA2 + os.urandom(_TICKET_LEN) + _TLS_DATA3
        )
        body = (
            TLS12_VERSION
            + pack_auth_data(self.server.key, self._global.client_id)
            + bytes([CLIENT_ID_LEN])
            + self._global.client_id
            + _TLS_DATA0
            + struct.pack(">H", len(tls_data) & 0xFFFF)
            + tls_data
        )
        handshake = b"\x01\x00" + struct.pack(">H", len(body) & 0xFFFF) + body
        return (
            bytes([RECORD_HANDSHAKE]) + b"\x03\x01"
            + struct.pack(">H", len(handshake) & 0xFFFF) + handshake
        )

    def _finished(self) -> bytes:
        head = CHANGE_CIPHER_SPEC + FINISHED_HEADER + os.urandom(22)
        tag = _hmac(self.server.key, self._global.client_id, head)
        out = head + tag + bytes(self._send_buffer)
        self._send_buffer.clear()
        return out

    def encode(self, data: bytes) -> bytes:
        """Obfuscate outgoing ``data``.

        Before the handshake is finished, data is queued: the first call
        returns the ClientHello, a later call with empty ``data`` returns the
        Finished messages followed by everything queued, and other calls
        return nothing.
        """
        data = bytes(data)
        if self._state == _State.ESTABLISHED:
            return frame_application_data(data)

        self._send_buffer += _record(data)
        if self._state == _State.START:
            self._state = _State.HELLO_SENT
            return self._client_hello()
        if not data:
            out = self._finished()
            self._state = _State.ESTABLISHED
            return out
        return b""

    def decode(self, data: bytes) -> Tuple[bytes, bool]:
        """Process incoming bytes.

        Returns ``(payload, send_back)``. During the handshake the payload is
        empty and ``send_back`` is true once the ServerHello is verified; the
        caller should then call :meth:`encode` with empty data.
        """
        data = bytes(data)
        if self._state == _State.ESTABLISHED:
            self._recv_buffer += data
            out = bytearray()
            while len(self._recv_buffer) > 5:
                if self._recv_buffer[0] != RECORD_APPLICATION_DATA:
                    raise ObfsError("unexpected TLS record type")
                size = (self._recv_buffer[3] << 8) | self._recv_buffer[4]
                if size + 5 > len(self._recv_buffer):
                    break
                out += self._recv_buffer[5:5 + size]
                del self._recv_buffer[:5 + size]
            return bytes(out), False

        if len(data) < _SERVER_HELLO_MIN:
            raise ObfsError("server hello too short")
        expected = _hmac(self.server.key, self._global.client_id, data[11:33])
        if not hmac.compare_digest(expected, data[33:33 + HMAC_LEN]):
            raise ObfsError("server hello authentication failed")
        return b"", True