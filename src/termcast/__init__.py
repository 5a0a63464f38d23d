"""termcast: broadcast a terminal session to a termcast relay server."""

__version__ = "0.1.0"
