"""UDP relay, address headers, verify_simple and tls1.2_ticket_auth protocols, and process helpers."""

__version__ = "0.1.0"

__all__ = [
    "conncache",
    "log",
    "tls12_server",
    "tls12_ticket",
    "udpheader",
    "udprelay",
    "udpsocket",
    "utils",
    "verify",
]