"""PTY session: the broadcast child attached to a pseudo-terminal."""

from __future__ import annotations

import enum
import errno
import fcntl
import logging
import os
import signal
import struct
import subprocess
import termios
from dataclasses import dataclass, field

from termcast.errors import LocalIOError, SpawnError
from termcast.terminal import TerminalGeometry

logger = logging.getLogger(__name__)

READ_SIZE = 4096


class PtyEvent(enum.Enum):
    """Things that happen to a PTY session, dispatched by the event loop."""

    SETUP = "setup"  # Start the child on a pty sized to the local terminal
    READABLE = "readable"  # Output arrived from the child
    RESIZED = "resized"  # Local terminal geometry changed
    READ_ERROR = "read_error"  # Child exited or the master side failed


class PtyStatus(enum.Enum):
    """Lifecycle states for a PTY session."""

    NEW = "new"
    RUNNING = "running"
    EXITED = "exited"  # Process exited on its own
    KILLED = "killed"  # Killed by us (SIGKILL)


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(): make the pty slave (fd 0) its
    # controlling terminal so job control and SIGWINCH reach it.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _set_window_size(fd: int, geometry: TerminalGeometry) -> None:
    winsize = struct.pack("HHHH", geometry.rows, geometry.columns, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


@dataclass
class PtySession:
    """A child process running on the slave side of a fresh pty.

    The session is created once per broadcast and survives reconnects to
    the relay server. The event loop only sees ``fileno()``, ``read()``,
    ``write()`` and ``resize()``.
    """

    command: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    _master_fd: int = field(default=-1, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _pgid: int = field(default=0, init=False)
    _status: PtyStatus = field(default=PtyStatus.NEW, init=False)

    def spawn(self, geometry: TerminalGeometry | None = None) -> None:
        """Allocate the pty and start the child in its own session.

        ``geometry``, when known, is applied before the child starts so it
        never sees an empty window. Raises ``SpawnError`` if either step fails.
        """
        try:
            master_fd, slave_fd = os.openpty()
        except OSError as e:
            raise SpawnError(f"Couldn't allocate a pty: {e}") from e

        try:
            if geometry is not None:
                _set_window_size(master_fd, geometry)
            self._proc = subprocess.Popen(
                self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
                env={**os.environ, **self.env},
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise SpawnError(f"Couldn't run {' '.join(self.command)}: {e}") from e
        finally:
            # The child holds its own copy; ours would keep the pty open after it exits
            os.close(slave_fd)

        self._master_fd = master_fd
        self._pgid = os.getpgid(self._proc.pid)
        self._status = PtyStatus.RUNNING
        logger.info(
            "Spawned %s (pid=%d pgid=%d)",
            " ".join(self.command),
            self._proc.pid,
            self._pgid,
        )

    def fileno(self) -> int:
        return self._master_fd

    def read(self, size: int = READ_SIZE) -> bytes:
        """Read child output. Returns ``b""`` once the child has gone away."""
        try:
            return os.read(self._master_fd, size)
        except OSError as e:
            # Linux reports a closed slave side as EIO rather than EOF
            if e.errno == errno.EIO:
                return b""
            raise LocalIOError(f"Error reading from pty: {e}") from e

    def write(self, data: bytes) -> None:
        """Feed ``data`` to the child's input, all of it."""
        view = memoryview(data)
        try:
            while view:
                written = os.write(self._master_fd, view)
                view = view[written:]
        except OSError as e:
            raise LocalIOError(f"Error writing to pty: {e}") from e

    def resize(self, geometry: TerminalGeometry) -> None:
        """Apply ``geometry`` to the pty.

        The kernel delivers SIGWINCH to the pty's foreground job itself.
        """
        try:
            _set_window_size(self._master_fd, geometry)
        except OSError as e:
            raise LocalIOError(f"Error resizing pty: {e}") from e

    def close(self, timeout: float = 2.0) -> int | None:
        """Release the pty and reap the child, killing it if it lingers.

        Returns the child's exit status, or None if it never started.
        """
        if self._master_fd >= 0:
            try:
                os.close(self._master_fd)
            except OSError:
                logger.debug("pty master already closed")
            self._master_fd = -1

        if self._proc is None:
            return None

        try:
            code = self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(self._pgid, signal.SIGKILL)
                logger.info("Killed child process group %d", self._pgid)
            except ProcessLookupError:
                logger.debug("Process group already gone: %d", self._pgid)
            code = self._proc.wait()
            self._status = PtyStatus.KILLED
        else:
            if self._status is PtyStatus.RUNNING:
                self._status = PtyStatus.EXITED
        logger.info("Child exited (code=%s)", code)
        return code

    @property
    def status(self) -> PtyStatus:
        return self._status
