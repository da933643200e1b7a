"""Server side of the ``tls1.2_ticket_auth`` obfuscation.

The server accepts a disguised ClientHello and answers with a ServerHello
and a ChangeCipherSpec/Finished pair. It then checks the client's Finished
messages, and after that unwraps TLS application-data records.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import re
import struct
import time
from enum import IntEnum
from typing import Tuple

from .tls12_ticket import (
    CHANGE_CIPHER_SPEC,
    CLIENT_ID_LEN,
    FINISHED_HEADER,
    HMAC_LEN,
    RECORD_APPLICATION_DATA,
    RECORD_HANDSHAKE,
    TLS12_VERSION,
    ObfsError,
    ServerInfo,
    frame_application_data,
    pack_auth_data,
)

_log = logging.getLogger("ssrrelay")

SERVER_HELLO_TAIL = b"\xc0\x2f\x00\x00\x05\xff\x01\x00\x01\x00"
FINISHED_LEN = 43
_CLIENT_HELLO_HEAD = bytes([RECORD_HANDSHAKE]) + b"\x03\x01"
_VERIFY_ID_OFFSET = 11
_VERIFY_ID_LEN = 32
_INT_PREFIX = re.compile(r"\s*([+-]?\d+)")


def _tag(key: bytes, client_id: bytes, data: bytes) -> bytes:
    return hmac.new(bytes(key) + bytes(client_id), bytes(data), hashlib.sha1).digest()[:HMAC_LEN]


def _leading_int(text: str) -> int:
    match = _INT_PREFIX.match(text)
    return int(match.group(1)) if match else 0


class _State(IntEnum):
    START = 0
    HELLO_RECEIVED = 2
    HELLO_SENT = 3
    ESTABLISHED = 8


class TlsTicketAuthServer:
    """Server side of one ``tls1.2_ticket_auth`` connection."""

    def __init__(self, server: ServerInfo) -> None:
        self.server = server
        self._state = _State.START
        self._recv_buffer = bytearray()

    @property
    def established(self) -> bool:
        """True once the client's Finished messages have been verified."""
        return self._state == _State.ESTABLISHED

    def encode(self, data: bytes) -> bytes:
        """Obfuscate outgoing ``data``.

        Once established, data is wrapped in application-data records.
        Before that, ``data`` is ignored and the ServerHello followed by
        authenticated ChangeCipherSpec/Finished messages is returned.
        """
        if self._state == _State.ESTABLISHED:
            return frame_application_data(bytes(data))

        self._state = _State.HELLO_SENT
        key = self.server.key
        client_id = self.server.global_data.client_id
        body = (
            TLS12_VERSION
            + pack_auth_data(key, client_id)
            + bytes([CLIENT_ID_LEN])
            + bytes(client_id)
            + SERVER_HELLO_TAIL
        )
        handshake = b"\x02\x00" + struct.pack(">H", len(body)) + body
        record = (
            bytes([RECORD_HANDSHAKE]) + TLS12_VERSION
            + struct.pack(">H", len(handshake)) + handshake
        )
        head = record + CHANGE_CIPHER_SPEC + FINISHED_HEADER + os.urandom(22)
        return head + _tag(key, client_id, head)

    def decode(self, data: bytes) -> Tuple[bytes, bool]:
        """Process incoming bytes.

        Returns ``(payload, send_back)``. ``send_back`` is true after a valid
        ClientHello; the caller should then send :meth:`encode` output.
        Raises :class:`ObfsError` on malformed, unauthenticated or replayed
        data.
        """
        data = bytes(data)
        if self._state == _State.ESTABLISHED:
            return self._unwrap(data), False
        if self._state == _State.HELLO_SENT:
            return self._client_finished(data)
        return self._client_hello(data)

    def _unwrap(self, data: bytes) -> bytes:
        self._recv_buffer += data
        out = bytearray()
        while len(self._recv_buffer) > 5:
            if (self._recv_buffer[0] != RECORD_APPLICATION_DATA
                    or bytes(self._recv_buffer[1:3]) != TLS12_VERSION):
                _log.error("server_decode data error, wrong tls version 3")
                raise ObfsError("wrong tls record header")
            size = (self._recv_buffer[3] << 8) | self._recv_buffer[4]
            if size + 5 > len(self._recv_buffer):
                break
            out += self._recv_buffer[5:5 + size]
            del self._recv_buffer[:5 + size]
        return bytes(out)

    def _client_finished(self, data: bytes) -> Tuple[bytes, bool]:
        if len(data) < FINISHED_LEN:
            _log.error("server_decode data error, too short:%d", len(data))
            raise ObfsError("finished messages too short")
        if data[:6] != CHANGE_CIPHER_SPEC:
            _log.error("server_decode data error, wrong tls version")
            raise ObfsError("wrong change cipher spec")
        if data[6:11] != FINISHED_HEADER:
            _log.error("server_decode data error, wrong tls version 2")
            raise ObfsError("wrong finished header")
        expected = _tag(self.server.key, self.server.global_data.client_id, data[:33])
        if not hmac.compare_digest(expected, data[33:FINISHED_LEN]):
            _log.error("server_decode data error, hash Mismatch")
            raise ObfsError("finished authentication failed")
        self._recv_buffer = bytearray(data[FINISHED_LEN:])
        self._state = _State.ESTABLISHED
        return self._unwrap(b""), False

    def _client_hello(self, data: bytes) -> Tuple[bytes, bool]:
        self._state = _State.HELLO_RECEIVED
        size = len(data)
        if size < _VERIFY_ID_OFFSET + _VERIFY_ID_LEN + 1 or data[:3] != _CLIENT_HELLO_HEAD:
            raise ObfsError("not a tls handshake record")
        if (data[3] << 8) + data[4] != size - 5:
            _log.error("tls_auth wrong tls head size")
            raise ObfsError("wrong tls head size")
        if data[5:7] != b"\x01\x00":
            _log.error("tls_auth not client hello message")
            raise ObfsError("not a client hello message")
        if (data[7] << 8) + data[8] != size - 9:
            _log.error("tls_auth wrong message size")
            raise ObfsError("wrong message size")
        if data[9:11] != TLS12_VERSION:
            _log.error("tls_auth wrong tls version")
            raise ObfsError("wrong tls version")

        verify_id = data[_VERIFY_ID_OFFSET:_VERIFY_ID_OFFSET + _VERIFY_ID_LEN]
        pos = _VERIFY_ID_OFFSET + _VERIFY_ID_LEN
        session_len = data[pos]
        if session_len < CLIENT_ID_LEN or pos + 1 + session_len > size:
            _log.error("tls_auth wrong sessionid_len")
            raise ObfsError("wrong session id length")
        session_id = data[pos + 1:pos + 1 + session_len]

        glob = self.server.global_data
        glob.client_id = session_id
        expected = _tag(self.server.key, session_id, verify_id[:22])

        (utc_time,) = struct.unpack(">I", verify_id[:4])
        if self.server.param == "":
            self.server.param = None
        max_time_dif = _leading_int(self.server.param) if self.server.param else 0
        time_dif = utc_time - int(time.time())
        if max_time_dif > 0 and (
            time_dif < -max_time_dif
            or time_dif > max_time_dif
            or utc_time - glob.startup_time < -(max_time_dif // 2)
        ):
            _log.error("tls_auth wrong time")
            raise ObfsError("client time out of range")

        if not hmac.compare_digest(expected, verify_id[22:22 + HMAC_LEN]):
            _log.error("tls_auth wrong sha1")
            raise ObfsError("client hello authentication failed")

        if glob.seen(verify_id):
            _log.error("replay attack detect!")
            raise ObfsError("replayed client hello")
        glob.remember(verify_id)
        return b"", True