"""Relay server connection and wire format."""

from termcast.net.connection import Connection, ConnectionManager, open_tcp
from termcast.net.protocol import (
    MetadataFramer,
    encode_handshake,
    encode_metadata,
    expected_ack,
)

__all__ = [
    "Connection",
    "ConnectionManager",
    "MetadataFramer",
    "encode_handshake",
    "encode_metadata",
    "expected_ack",
    "open_tcp",
]
