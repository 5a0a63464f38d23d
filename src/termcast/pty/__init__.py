"""PTY handling: the broadcast child runs on a managed pseudo-terminal."""

from termcast.pty.session import PtyEvent, PtySession, PtyStatus

__all__ = [
    "PtyEvent",
    "PtySession",
    "PtyStatus",
]
