"""Wire format spoken with the termcast relay server.

Everything is plaintext. The client opens with a handshake line, the
server answers with a greeting, and from then on the client streams raw
terminal output. Geometry changes travel in-band as a metadata frame::

    ESC[H  0x00  {"geometry":[cols,rows]}  0xFF  ESC[H  ESC[2J

The server strips and interprets the part between the null and 0xFF
bytes; a viewer that receives the frame verbatim just sees a cleared
screen.
"""

from __future__ import annotations

import json
import logging
from typing import Callable

from termcast.terminal import TerminalGeometry

logger = logging.getLogger(__name__)

CURSOR_HOME = b"\x1b[H"
CLEAR_SCREEN = b"\x1b[2J"
METADATA_START = b"\x00"
METADATA_END = b"\xff"

GeometrySource = Callable[[], TerminalGeometry | None]


def encode_handshake(
    user: str, password: str, geometry: TerminalGeometry | None = None
) -> bytes:
    """Build the opening message: credentials, then geometry if known."""
    message = f"hello {user} {password}\n".encode()
    if geometry is not None:
        message += encode_metadata(geometry)
    return message


def expected_ack(user: str) -> bytes:
    """The greeting a server sends back after accepting ``user``."""
    return f"hello, {user}\n".encode()


def encode_metadata(geometry: TerminalGeometry) -> bytes:
    """Wrap ``geometry`` in a metadata frame."""
    payload = json.dumps(
        {"geometry": [geometry.columns, geometry.rows]}, separators=(",", ":")
    ).encode()
    return (
        CURSOR_HOME
        + METADATA_START
        + payload
        + METADATA_END
        + CURSOR_HOME
        + CLEAR_SCREEN
    )


class MetadataFramer:
    """Prefixes outbound chunks with a geometry frame after a resize.

    ``mark_dirty()`` records that the geometry changed; the next call to
    ``consume_if_dirty()`` samples the current geometry, prepends one frame
    and clears the flag. A single resize therefore produces exactly one
    frame, however many chunks follow it.
    """

    def __init__(self, geometry_source: GeometrySource) -> None:
        self._geometry_source = geometry_source
        self._dirty = False

    @property
    def dirty(self) -> bool:
        return self._dirty

    def mark_dirty(self) -> None:
        self._dirty = True

    def consume_if_dirty(self, chunk: bytes) -> bytes:
        if not self._dirty:
            return chunk
        self._dirty = False
        geometry = self._geometry_source()
        if geometry is None:
            logger.debug("Geometry changed but is unavailable, sending chunk bare")
            return chunk
        logger.debug("Sending geometry %dx%d", geometry.columns, geometry.rows)
        return encode_metadata(geometry) + chunk
