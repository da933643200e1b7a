import socket

import pytest

from ssrrelay.udpheader import (
    DEFAULT_PACKET_SIZE,
    HeaderError,
    build_header,
    format_address,
    hash_key,
    packet_size_for_mtu,
    parse_header,
)


def test_build_ipv4_header_wire_bytes():
    assert build_header(("127.0.0.1", 53)) == b"\x01\x7f\x00\x00\x01\x00\x35"


@pytest.mark.parametrize(
    "address,family",
    [(("10.1.2.3", 8388), socket.AF_INET), (("2001:db8::1", 443), socket.AF_INET6)],
)
def test_ip_round_trip(address, family):
    header = build_header(address)
    parsed = parse_header(header + b"payload")
    assert (parsed.host, parsed.port) == address
    assert parsed.address == address
    assert parsed.family == family
    assert parsed.length == len(header)


def test_domain_round_trip():
    header = build_header(("example.com", 80))
    assert header[0] == 3
    assert header[1] == len("example.com")
    parsed = parse_header(header + b"data")
    assert parsed.host == "example.com"
    assert parsed.port == 80
    assert parsed.address is None
    assert parsed.family == socket.AF_UNSPEC
    assert parsed.length == len(header)


def test_domain_holding_ip_literal_resolves_address():
    packet = bytes([3, 7]) + b"1.2.3.4" + b"\x00\x50"
    parsed = parse_header(packet)
    assert parsed.address == ("1.2.3.4", 80)
    assert parsed.family == socket.AF_INET


def test_payload_follows_header():
    header = build_header(("192.0.2.5", 1000))
    packet = header + b"hello"
    parsed = parse_header(packet)
    assert packet[parsed.length:] == b"hello"


@pytest.mark.parametrize(
    "packet",
    [b"", b"\x01\x7f\x00\x00", b"\x04" + b"\x00" * 10, b"\x03\x10abc", b"\x03", b"\x05\x00\x00\x00\x00\x00\x00"],
)
def test_invalid_headers_raise(packet):
    with pytest.raises(HeaderError):
        parse_header(packet)


def test_build_rejects_bad_port_and_long_name():
    with pytest.raises(HeaderError):
        build_header(("1.2.3.4", 70000))
    with pytest.raises(HeaderError):
        build_header(("a" * 256, 80))


def test_format_address():
    assert format_address(("127.0.0.1", 8080)) == "127.0.0.1:8080"
    assert format_address(("::1", 53, 0, 0)) == "::1:53"
    assert format_address(("not-an-ip", 1)) == "Unknown AF"


def test_hash_key_distinguishes_family_and_address():
    a = hash_key(socket.AF_INET, ("10.0.0.1", 1000))
    assert a == hash_key(socket.AF_INET, ("10.0.0.1", 1000))
    assert a != hash_key(socket.AF_INET6, ("10.0.0.1", 1000))
    assert a != hash_key(socket.AF_INET, ("10.0.0.1", 1001))
    cache = {a: "remote"}
    assert cache[hash_key(socket.AF_INET, ["10.0.0.1", 1000])] == "remote"


def test_packet_size_for_mtu():
    assert packet_size_for_mtu(0) == DEFAULT_PACKET_SIZE
    assert packet_size_for_mtu(-5) == DEFAULT_PACKET_SIZE
    assert packet_size_for_mtu(1492) == 1397
    assert packet_size_for_mtu(1500) > packet_size_for_mtu(1492)