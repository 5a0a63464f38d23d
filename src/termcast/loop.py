"""The broadcast event loop at the heart of termcast.

One thread, one readiness wait. Each iteration blocks on local stdin, the
pty master and the relay connection, then routes whatever is ready:

* stdin  -> child (verbatim)
* child  -> local display, then -> server (geometry-prefixed after a resize)
* server -> discarded, optionally ringing the bell for watcher activity

A broken server link is replaced synchronously before any further
forwarding; the child and its pty are never touched by a reconnect.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import os
import select
import signal
import sys
from collections.abc import Iterator
from typing import Any

from termcast.config import TermcastConfig
from termcast.errors import AuthError, LocalIOError, ReadError, WriteError
from termcast.net.connection import Connection, ConnectionManager
from termcast.net.protocol import GeometrySource, MetadataFramer
from termcast.pty.session import PtyEvent, PtySession
from termcast.terminal import TerminalModeGuard, get_geometry

logger = logging.getLogger(__name__)

READ_SIZE = 4096
BELL = b"\a"


class LoopState(enum.Enum):
    """Where the event loop is in its lifecycle."""

    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    RUNNING = "running"
    RECONNECTING = "reconnecting"
    TERMINATING = "terminating"


class EventLoop:
    """Runs one broadcast session from first connect to child exit.

    The loop owns its collaborators outright. All of them can be injected,
    which is how the tests drive it with pipes and socket pairs.

    Args:
        config: Session configuration.
        pty: The child's pty session; built from ``config.command`` if omitted.
        connections: Relay connection manager; built from ``config`` if omitted.
        stdin_fd: Local keyboard input (defaults to the process's stdin).
        stdout_fd: Local display (defaults to the process's stdout).
        geometry_source: Samples the local terminal size; defaults to
            querying ``stdin_fd``.
        handle_signals: Install the SIGWINCH handler while running. Must be
            False when not running in the main thread.
    """

    def __init__(
        self,
        config: TermcastConfig,
        *,
        pty: PtySession | None = None,
        connections: ConnectionManager | None = None,
        stdin_fd: int | None = None,
        stdout_fd: int | None = None,
        geometry_source: GeometrySource | None = None,
        handle_signals: bool = True,
    ) -> None:
        self._config = config
        self._stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self._stdout_fd = sys.stdout.fileno() if stdout_fd is None else stdout_fd
        self._geometry_source = geometry_source or (
            lambda: get_geometry(self._stdin_fd)
        )
        self._pty = pty or PtySession(command=list(config.command))
        self._connections = connections or ConnectionManager(
            config, geometry_source=self._geometry_source
        )
        self._framer = MetadataFramer(self._geometry_source)
        self._guard = TerminalModeGuard(self._stdin_fd)
        self._handle_signals = handle_signals

        self._state = LoopState.CONNECTING
        self._connection: Connection | None = None
        self._resize_pending = False
        self._wakeup_fd = -1

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def raw_mode(self) -> bool:
        return self._guard.active

    def notify_resize(self) -> None:
        """Record a window-size change; handled at the top of the next iteration."""
        self._resize_pending = True

    def run(self) -> int | None:
        """Broadcast until local input ends or the child exits.

        Returns the child's exit status. ``AuthError``, ``SpawnError`` and
        ``LocalIOError`` propagate; the terminal mode is restored first.
        """
        self._state = LoopState.CONNECTING
        connection = self._connections.connect()

        self._state = LoopState.HANDSHAKING
        try:
            self._connections.handshake(connection)
        except AuthError:
            self._state = LoopState.TERMINATING
            connection.close()
            raise
        self._connection = connection
        self._state = LoopState.RUNNING

        try:
            self._dispatch(PtyEvent.SETUP)
            with self._guard, self._window_change_signal():
                while self._state is LoopState.RUNNING:
                    self._iterate()
        finally:
            self._state = LoopState.TERMINATING
            if self._connection is not None:
                self._connection.close()
            code = self._pty.close()
        return code

    # ------------------------------------------------------------------
    # Main loop body
    # ------------------------------------------------------------------

    def _iterate(self) -> None:
        if self._resize_pending:
            self._resize_pending = False
            geometry = self._geometry_source()
            if geometry is not None:
                self._dispatch(PtyEvent.RESIZED, geometry)

        connection = self._connection
        sock_fd = connection.fileno()
        pty_fd = self._pty.fileno()
        rlist = [self._stdin_fd, pty_fd, sock_fd]
        if self._wakeup_fd >= 0:
            rlist.append(self._wakeup_fd)

        try:
            readable, _, exceptional = select.select(rlist, [], [sock_fd])
        except OSError as e:
            raise LocalIOError(f"Error waiting for input: {e}") from e

        if self._wakeup_fd in readable:
            self._drain_wakeup()

        if sock_fd in exceptional:
            self._reconnect("exceptional condition on server connection")

        if self._stdin_fd in readable:
            self._on_stdin()
            if self._state is not LoopState.RUNNING:
                return

        if pty_fd in readable:
            data = self._pty.read(READ_SIZE)
            if data:
                self._dispatch(PtyEvent.READABLE, data)
            else:
                self._dispatch(PtyEvent.READ_ERROR)
            if self._state is not LoopState.RUNNING:
                return

        # Readiness reported for a connection that has since been replaced is stale
        if sock_fd in readable and self._connection is connection:
            self._on_server_data(connection)

    def _dispatch(self, event: PtyEvent, payload: Any = None) -> None:
        """Single handler for everything that happens to the pty session."""
        if event is PtyEvent.SETUP:
            self._pty.spawn(self._geometry_source())
        elif event is PtyEvent.READABLE:
            self._display(payload)
            self._broadcast(self._framer.consume_if_dirty(payload))
        elif event is PtyEvent.RESIZED:
            geometry = payload
            logger.debug("Window resized to %dx%d", geometry.columns, geometry.rows)
            self._pty.resize(geometry)
            self._framer.mark_dirty()
        elif event is PtyEvent.READ_ERROR:
            logger.info("Child closed the pty, ending session")
            self._state = LoopState.TERMINATING

    def _on_stdin(self) -> None:
        try:
            data = os.read(self._stdin_fd, READ_SIZE)
        except OSError as e:
            raise LocalIOError(f"Error reading from stdin: {e}") from e
        if not data:
            logger.info("End of local input, ending session")
            self._state = LoopState.TERMINATING
            return
        self._pty.write(data)

    def _on_server_data(self, connection: Connection) -> None:
        try:
            data = self._connections.read(connection)
        except ReadError as e:
            self._reconnect(str(e))
            return
        if not data:
            self._reconnect("server closed the connection")
            return
        logger.debug("Server sent %d bytes", len(data))
        if self._config.bell_on_watcher:
            self._display(BELL)

    # ------------------------------------------------------------------
    # Output paths
    # ------------------------------------------------------------------

    def _display(self, data: bytes) -> None:
        view = memoryview(data)
        try:
            while view:
                written = os.write(self._stdout_fd, view)
                view = view[written:]
        except OSError as e:
            raise LocalIOError(f"Error writing to stdout: {e}") from e

    def _broadcast(self, chunk: bytes) -> None:
        """Send ``chunk`` to the server, reconnecting until it is delivered."""
        while True:
            try:
                self._connections.write(self._connection, chunk)
                return
            except WriteError as e:
                self._reconnect(str(e))

    def _reconnect(self, reason: str) -> None:
        self._state = LoopState.RECONNECTING
        stale, self._connection = self._connection, None
        try:
            self._connection = self._connections.reconnect(stale, reason)
        except AuthError:
            self._state = LoopState.TERMINATING
            raise
        self._state = LoopState.RUNNING

    # ------------------------------------------------------------------
    # Window-change signal
    # ------------------------------------------------------------------

    def _on_window_change(self, signum: int, frame: Any) -> None:
        self._resize_pending = True

    @contextlib.contextmanager
    def _window_change_signal(self) -> Iterator[None]:
        """Route SIGWINCH into the loop for the duration of the block.

        The handler only sets a flag; ``signal.set_wakeup_fd`` makes the
        blocked ``select`` return so the flag is seen straight away.
        """
        if not self._handle_signals:
            yield
            return

        read_fd, write_fd = os.pipe()
        os.set_blocking(read_fd, False)
        os.set_blocking(write_fd, False)
        previous_handler = signal.signal(signal.SIGWINCH, self._on_window_change)
        previous_wakeup = signal.set_wakeup_fd(write_fd)
        self._wakeup_fd = read_fd
        try:
            yield
        finally:
            signal.set_wakeup_fd(previous_wakeup)
            if previous_handler is None:
                previous_handler = signal.SIG_DFL
            signal.signal(signal.SIGWINCH, previous_handler)
            self._wakeup_fd = -1
            os.close(read_fd)
            os.close(write_fd)

    def _drain_wakeup(self) -> None:
        try:
            while os.read(self._wakeup_fd, 512):
                pass
        except BlockingIOError:
            pass
