"""Connection to the termcast relay server.

``ConnectionManager`` owns the link: it opens sockets (retrying until one
succeeds), performs the handshake, writes broadcast chunks with a bounded
wait, drains inbound traffic and replaces a broken connection wholesale.
"""

from __future__ import annotations

import logging
import select
import socket
import time
from dataclasses import dataclass
from typing import Callable

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_never,
    wait_fixed,
)

from termcast.config import TermcastConfig
from termcast.errors import AuthError, ConnectError, ReadError, WriteError
from termcast.net.protocol import GeometrySource, encode_handshake, expected_ack

logger = logging.getLogger(__name__)

READ_SIZE = 4096

# (host, port, timeout) -> connected socket
Connector = Callable[[str, int, float], socket.socket]


def open_tcp(host: str, port: int, timeout: float) -> socket.socket:
    """Default connector: a plain TCP connection."""
    return socket.create_connection((host, port), timeout=timeout)


@dataclass
class Connection:
    """One live link to the relay server.

    Never patched up in place: when it breaks, the manager closes it and
    builds a new one.
    """

    sock: socket.socket
    host: str
    port: int
    user: str
    password: str
    timeout: float
    established: bool = False

    def fileno(self) -> int:
        return self.sock.fileno()

    def close(self) -> None:
        self.established = False
        try:
            self.sock.close()
        except OSError as e:
            logger.debug("Error closing connection to %s: %s", self.host, e)


class ConnectionManager:
    """Connects, authenticates, reads and writes on behalf of the event loop.

    Args:
        config: Session configuration (server address, credentials, timeouts).
        connector: Opens a socket to ``(host, port)``; ``open_tcp`` by default.
        geometry_source: Returns the local terminal geometry, sent along with
            the handshake when known.
        sleep: Sleep function used between connection attempts.
    """

    def __init__(
        self,
        config: TermcastConfig,
        connector: Connector = open_tcp,
        geometry_source: GeometrySource | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._connector = connector
        self._geometry_source = geometry_source or (lambda: None)
        self._sleep = sleep

    def connect(self) -> Connection:
        """Open a connection, retrying every ``retry_delay`` seconds until one succeeds."""
        retrying = Retrying(
            retry=retry_if_exception_type(ConnectError),
            wait=wait_fixed(self._config.retry_delay),
            stop=stop_never,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._open)

    def _open(self) -> Connection:
        config = self._config
        logger.debug("Connecting to %s:%d", config.host, config.port)
        try:
            sock = self._connector(config.host, config.port, config.timeout)
        except OSError as e:
            raise ConnectError(
                f"Couldn't connect to {config.host}:{config.port}: {e}"
            ) from e
        return Connection(
            sock=sock,
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password,
            timeout=config.timeout,
        )

    def handshake(self, connection: Connection) -> None:
        """Send credentials (plus geometry) and wait for the server's greeting.

        An unrecognised greeting is only logged. An exceptional condition, a
        timeout, or a closed/failed read raises ``AuthError``.
        """
        message = encode_handshake(
            connection.user, connection.password, self._geometry_source()
        )
        try:
            connection.sock.sendall(message)
        except OSError as e:
            raise AuthError(f"Connection dropped during handshake: {e}") from e

        response = self._read_greeting(connection)
        if response != expected_ack(connection.user):
            logger.warning("Unexpected handshake response from server: %r", response)

        connection.established = True
        logger.info(
            "Connected to %s:%d as %s", connection.host, connection.port, connection.user
        )

    def _read_greeting(self, connection: Connection) -> bytes:
        """Consume the server's greeting line and nothing after it.

        Bytes following the newline stay queued on the socket for the
        event loop. A greeting that stops short of a newline is returned as
        received once ``timeout`` runs out or ``READ_SIZE`` bytes arrived.
        """
        sock = connection.sock
        deadline = time.monotonic() + connection.timeout
        line = b""
        while not line.endswith(b"\n") and len(line) < READ_SIZE:
            remaining = max(deadline - time.monotonic(), 0)
            try:
                readable, _, exceptional = select.select([sock], [], [sock], remaining)
            except OSError as e:
                raise AuthError(f"Connection dropped during handshake: {e}") from e
            if exceptional:
                raise AuthError("Invalid password")
            if not readable:
                if line:
                    break
                raise AuthError(
                    f"No handshake response from {connection.host} "
                    f"within {connection.timeout:g}s"
                )

            try:
                peeked = sock.recv(READ_SIZE - len(line), socket.MSG_PEEK)
                if not peeked:
                    raise AuthError("Server closed the connection during handshake")
                end = peeked.find(b"\n")
                line += sock.recv(end + 1 if end >= 0 else len(peeked))
            except OSError as e:
                raise AuthError(f"Connection dropped during handshake: {e}") from e
        return line

    def establish(self) -> Connection:
        """Connect and handshake. ``AuthError`` is never retried."""
        connection = self.connect()
        try:
            self.handshake(connection)
        except AuthError:
            connection.close()
            raise
        return connection

    def write(self, connection: Connection, data: bytes) -> None:
        """Send ``data``, waiting at most ``timeout`` seconds for the link.

        Raises ``WriteError`` on timeout, on an exceptional condition, or when
        the send itself fails. The caller reconnects and retries the same
        bytes.
        """
        try:
            _, writable, exceptional = select.select(
                [], [connection.sock], [connection.sock], connection.timeout
            )
        except (OSError, ValueError) as e:
            raise WriteError(f"Server connection unusable: {e}") from e
        if exceptional:
            raise WriteError("Exceptional condition on server connection")
        if not writable:
            raise WriteError(
                f"Server connection not writable within {connection.timeout:g}s"
            )
        try:
            connection.sock.sendall(data)
        except OSError as e:
            raise WriteError(f"Write to server failed: {e}") from e
        logger.debug("Sent %d bytes to server", len(data))

    def read(self, connection: Connection) -> bytes:
        """Drain inbound traffic. Returns ``b""`` when the server closed the link."""
        try:
            return connection.sock.recv(READ_SIZE)
        except OSError as e:
            raise ReadError(f"Read from server failed: {e}") from e

    def reconnect(self, stale: Connection | None, reason: str = "") -> Connection:
        """Close ``stale`` and establish a fresh connection in its place."""
        logger.warning(
            "Lost connection to server (%s), reconnecting...", reason or "unknown error"
        )
        if stale is not None:
            stale.close()
        return self.establish()
