"""Shared fixtures: configs and socket-pair connectors standing in for the relay."""

from __future__ import annotations

import socket
from typing import Any, Callable

import pytest

from termcast.config import TermcastConfig


class PairConnector:
    """Connector that hands out the client ends of fresh socket pairs.

    With ``ack`` set, the server end greets every new connection with it.
    With ``hangup`` set, the server end then stops sending (the client reads EOF).
    """

    def __init__(self, ack: bytes | None = None, hangup: bool = False) -> None:
        self.ack = ack
        self.hangup = hangup
        self.servers: list[socket.socket] = []
        self.clients: list[socket.socket] = []

    def __call__(self, host: str, port: int, timeout: float) -> socket.socket:
        client, server = socket.socketpair()
        client.settimeout(timeout)
        self.clients.append(client)
        self.servers.append(server)
        if self.ack is not None:
            server.sendall(self.ack)
        if self.hangup:
            server.shutdown(socket.SHUT_WR)
        return client

    def close(self) -> None:
        for s in self.servers + self.clients:
            s.close()


@pytest.fixture
def connector():
    c = PairConnector()
    yield c
    c.close()


@pytest.fixture
def make_config() -> Callable[..., TermcastConfig]:
    def _make(**overrides: Any) -> TermcastConfig:
        values: dict[str, Any] = dict(
            host="relay.test",
            port=31337,
            user="test",
            password="tset",
            timeout=1.0,
            retry_delay=0,
            command=["/bin/sh"],
        )
        values.update(overrides)
        return TermcastConfig(**values)

    return _make
