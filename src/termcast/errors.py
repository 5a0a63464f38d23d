"""Exception taxonomy for the broadcast client.

Fatal errors (``SpawnError``, ``AuthError``, ``LocalIOError``) propagate out
of the event loop to the CLI. Connection-layer errors (``ConnectError``,
``WriteError``, ``ReadError``) are absorbed by the retry policy and the
reconnect transition.
"""

from __future__ import annotations


class TermcastError(Exception):
    """Base class for all termcast errors."""


class SpawnError(TermcastError):
    """The pty or the child process could not be created."""


class ConnectError(TermcastError):
    """The relay server could not be reached."""


class AuthError(TermcastError):
    """The handshake was rejected or the link dropped while handshaking."""


class WriteError(TermcastError):
    """A broadcast write timed out or hit an exceptional condition."""


class ReadError(TermcastError):
    """Reading from the relay connection failed."""


class LocalIOError(TermcastError):
    """Reading local stdin or the pty failed for a reason other than EOF."""
