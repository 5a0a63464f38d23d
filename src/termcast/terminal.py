"""Local terminal handling: geometry sampling and raw-mode lifecycle."""

from __future__ import annotations

import logging
import os
import termios
import tty
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TerminalGeometry:
    """Size of a terminal in character cells."""

    columns: int
    rows: int


def get_geometry(fd: int) -> TerminalGeometry | None:
    """Sample the geometry of the terminal behind ``fd``.

    Returns None when ``fd`` is not a terminal (e.g. stdin is a pipe).
    """
    try:
        size = os.get_terminal_size(fd)
    except OSError:
        return None
    if size.columns <= 0 or size.lines <= 0:
        return None
    return TerminalGeometry(columns=size.columns, rows=size.lines)


class TerminalModeGuard:
    """Switches a terminal to raw mode and guarantees its restoration.

    Use as a context manager around the running phase of the event loop:
    the saved attributes are put back exactly once, whichever way the
    block exits. Non-terminal descriptors are left alone.
    """

    def __init__(self, fd: int) -> None:
        self._fd = fd
        self._saved: list[Any] | None = None

    @property
    def active(self) -> bool:
        """True while the terminal is held in raw mode."""
        return self._saved is not None

    def enter(self) -> None:
        """Put the terminal in raw mode: no echo, no line buffering, no signal keys."""
        if self.active:
            return
        if not os.isatty(self._fd):
            logger.debug("fd %d is not a terminal, leaving its mode alone", self._fd)
            return
        saved = termios.tcgetattr(self._fd)
        tty.setraw(self._fd)
        self._saved = saved

    def restore(self) -> None:
        """Return the terminal to the mode it had before ``enter()``."""
        if self._saved is None:
            return
        saved, self._saved = self._saved, None
        termios.tcsetattr(self._fd, termios.TCSADRAIN, saved)

    def __enter__(self) -> TerminalModeGuard:
        self.enter()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.restore()
