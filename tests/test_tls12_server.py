import os

import pytest

from ssrrelay.tls12_server import SERVER_HELLO_TAIL, TlsTicketAuthServer
from ssrrelay.tls12_ticket import (
    CHANGE_CIPHER_SPEC,
    FINISHED_HEADER,
    ObfsError,
    ServerInfo,
    TicketAuthGlobal,
    TlsTicketAuthClient,
    frame_application_data,
    pack_auth_data,
)

KEY = b"secret"


def _pair(server_param=None):
    client = TlsTicketAuthClient(ServerInfo(host="example.com", key=KEY))
    server = TlsTicketAuthServer(ServerInfo(key=KEY, param=server_param))
    return client, server


def _handshake(client, server, first=b"hello"):
    hello = client.encode(first)
    assert server.decode(hello) == (b"", True)
    reply = server.encode(b"")
    assert client.decode(reply) == (b"", True)
    finished = client.encode(b"")
    return server.decode(finished)


def test_full_handshake_delivers_queued_data():
    client, server = _pair()
    payload, send_back = _handshake(client, server, b"hello")
    assert payload == b"hello"
    assert send_back is False
    assert server.established


def test_established_round_trip_both_directions():
    client, server = _pair()
    _handshake(client, server)
    data = os.urandom(5000)
    assert server.decode(client.encode(data)) == (data, False)
    assert client.decode(server.encode(data)) == (data, False)


def test_server_hello_layout():
    _, server = _pair()
    out = server.encode(b"ignored")
    assert len(out) == 43 + 86
    assert out[76:86] == SERVER_HELLO_TAIL
    assert out[86:97] == CHANGE_CIPHER_SPEC + FINISHED_HEADER
    assert out[44:76] == server.server.global_data.client_id


def test_partial_record_is_buffered():
    client, server = _pair()
    _handshake(client, server)
    record = frame_application_data(b"abcdef")
    assert server.decode(record[:4]) == (b"", False)
    assert server.decode(record[4:]) == (b"abcdef", False)


def test_bad_record_header_when_established():
    client, server = _pair()
    _handshake(client, server)
    with pytest.raises(ObfsError):
        server.decode(b"\x16\x03\x03\x00\x01\x00")


def test_corrupted_hello_hmac_rejected():
    client, server = _pair()
    hello = bytearray(client.encode(b"x"))
    hello[35] ^= 0xFF
    with pytest.raises(ObfsError):
        server.decode(bytes(hello))


def test_wrong_record_type_rejected():
    client, server = _pair()
    hello = bytearray(client.encode(b"x"))
    hello[0] = 0x17
    with pytest.raises(ObfsError):
        server.decode(bytes(hello))


def test_truncated_hello_rejected():
    client, server = _pair()
    hello = client.encode(b"x")
    with pytest.raises(ObfsError):
        server.decode(hello[:-1])


def test_replay_detected():
    glob = TicketAuthGlobal()
    client = TlsTicketAuthClient(ServerInfo(host="example.com", key=KEY))
    hello = client.encode(b"x")
    first = TlsTicketAuthServer(ServerInfo(key=KEY, global_data=glob))
    assert first.decode(hello) == (b"", True)
    second = TlsTicketAuthServer(ServerInfo(key=KEY, global_data=glob))
    with pytest.raises(ObfsError):
        second.decode(hello)


def _rewrite_time(hello, timestamp):
    client_id = hello[44:76]
    return hello[:11] + pack_auth_data(KEY, client_id, timestamp) + hello[43:]


def test_old_timestamp_rejected_with_time_limit():
    client, server = _pair(server_param="60")
    import time

    hello = _rewrite_time(client.encode(b"x"), int(time.time()) - 3600)
    with pytest.raises(ObfsError):
        server.decode(hello)


def test_old_timestamp_accepted_without_time_limit():
    client, server = _pair()
    import time

    hello = _rewrite_time(client.encode(b"x"), int(time.time()) - 3600)
    assert server.decode(hello) == (b"", True)


def test_bad_finished_rejected():
    client, server = _pair()
    server.decode(client.encode(b"x"))
    client.decode(server.encode(b""))
    finished = bytearray(client.encode(b""))
    finished[40] ^= 0xFF
    with pytest.raises(ObfsError):
        server.decode(bytes(finished))


def test_short_finished_rejected():
    client, server = _pair()
    server.decode(client.encode(b"x"))
    server.encode(b"")
    with pytest.raises(ObfsError):
        server.decode(CHANGE_CIPHER_SPEC)