"""The ``verify_simple`` protocol: CRC32-checked, randomly padded frames."""

from __future__ import annotations

import logging
import os
import random
import struct
import zlib

PACK_UNIT_SIZE = 2000
RECV_BUFFER_LIMIT = 16384
MAX_FRAME_LENGTH = 8192
MIN_FRAME_LENGTH = 7

_log = logging.getLogger("ssrrelay")
_rng = random.Random()


class ProtocolError(ValueError):
    """Raised when received protocol data is malformed."""


def pack_data(data: bytes) -> bytes:
    """Wrap ``data`` in one frame.

    Layout: 2-byte big-endian total length, 1 byte padding length ``n``
    (1..16), ``n - 1`` random bytes, the payload, then a little-endian
    CRC32 trailer chosen so that the CRC32 of the whole frame is 0xFFFFFFFF.
    """
    rand_len = _rng.randrange(1, 17)
    out_size = rand_len + len(data) + 6
    body = struct.pack(">HB", out_size & 0xFFFF, rand_len) + os.urandom(rand_len - 1) + data
    crc = (zlib.crc32(body) & 0xFFFFFFFF) ^ 0xFFFFFFFF
    return body + struct.pack("<I", crc)


class VerifySimple:
    """Per-connection state of the ``verify_simple`` protocol."""

    def __init__(self) -> None:
        self._recv = bytearray()

    @staticmethod
    def _pack(data: bytes) -> bytes:
        return b"".join(
            pack_data(data[start:start + PACK_UNIT_SIZE])
            for start in range(0, len(data), PACK_UNIT_SIZE)
        )

    def _unpack(self, data: bytes, log_errors: bool) -> bytes:
        if len(self._recv) + len(data) > RECV_BUFFER_LIMIT:
            if log_errors:
                _log.error("verify_simple: wrong buf length %d", len(self._recv) + len(data))
            raise ProtocolError("receive buffer overflow")
        self._recv += data

        out = bytearray()
        while len(self._recv) > 2:
            length = (self._recv[0] << 8) | self._recv[1]
            if length >= MAX_FRAME_LENGTH or length < MIN_FRAME_LENGTH:
                self._recv.clear()
                if log_errors:
                    _log.error("verify_simple: wrong length %d", length)
                raise ProtocolError(f"wrong frame length {length}")
            if length > len(self._recv):
                break
            frame = bytes(self._recv[:length])
            if zlib.crc32(frame) & 0xFFFFFFFF != 0xFFFFFFFF:
                self._recv.clear()
                if log_errors:
                    _log.error("verify_simple: wrong crc")
                raise ProtocolError("wrong crc")
            pad = frame[2]
            data_size = length - pad - 6
            if data_size < 0:
                self._recv.clear()
                raise ProtocolError("padding longer than frame")
            out += frame[2 + pad:2 + pad + data_size]
            del self._recv[:length]
        return bytes(out)

    def client_pre_encrypt(self, data: bytes) -> bytes:
        """Frame outgoing client data."""
        return self._pack(data)

    def client_post_decrypt(self, data: bytes) -> bytes:
        """Consume incoming bytes and return the payload of complete frames."""
        return self._unpack(data, log_errors=False)

    def server_pre_encrypt(self, data: bytes) -> bytes:
        """Frame outgoing server data."""
        return self._pack(data)

    def server_post_decrypt(self, data: bytes) -> bytes:
        """Consume incoming bytes and return the payload of complete frames."""
        return self._unpack(data, log_errors=True)