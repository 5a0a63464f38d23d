"""Tests for termcast.pty.session (PtySession, PtyEvent, PtyStatus)."""

from __future__ import annotations

import errno
import fcntl
import select
import struct
import sys
import termios
from unittest.mock import patch

import pytest

from termcast.errors import LocalIOError, SpawnError
from termcast.pty.session import PtyEvent, PtySession, PtyStatus
from termcast.terminal import TerminalGeometry


def _read_until(session: PtySession, needle: bytes, timeout: float = 5.0) -> bytes:
    out = b""
    while needle not in out:
        ready, _, _ = select.select([session.fileno()], [], [], timeout)
        if not ready:
            break
        data = session.read()
        if not data:
            break
        out += data
    return out


def _read_to_eof(session: PtySession, timeout: float = 5.0) -> bytes:
    out = b""
    while True:
        ready, _, _ = select.select([session.fileno()], [], [], timeout)
        if not ready:
            break
        data = session.read()
        if not data:
            break
        out += data
    return out


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class TestPtyEvent:
    def test_all_variants_exist(self) -> None:
        assert {e.name for e in PtyEvent} == {
            "SETUP",
            "READABLE",
            "RESIZED",
            "READ_ERROR",
        }

    def test_values_are_lowercase(self) -> None:
        for e in PtyEvent:
            assert e.value == e.name.lower()


class TestPtyStatus:
    def test_new_session(self) -> None:
        session = PtySession(command=["true"])
        assert session.status is PtyStatus.NEW
        assert session.fileno() == -1


# ---------------------------------------------------------------------------
# spawn / read / write / close against a real pty
# ---------------------------------------------------------------------------


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="Linux pty semantics")
class TestPtySessionLive:
    def test_output_then_eof(self) -> None:
        session = PtySession(command=["sh", "-c", "printf foo"])
        session.spawn()
        assert session.status is PtyStatus.RUNNING
        assert _read_to_eof(session) == b"foo"
        assert session.close() == 0
        assert session.status is PtyStatus.EXITED
        assert session.fileno() == -1

    def test_write_reaches_child(self) -> None:
        session = PtySession(command=["cat"])
        session.spawn()
        try:
            session.write(b"foo\n")
            # Terminal echo followed by cat's copy
            out = _read_until(session, b"foo\r\nfoo\r\n")
            assert out == b"foo\r\nfoo\r\n"
        finally:
            session.close()

    def test_resize_sets_window_size(self) -> None:
        session = PtySession(command=["sleep", "30"])
        session.spawn()
        try:
            session.resize(TerminalGeometry(columns=100, rows=40))
            raw = fcntl.ioctl(session.fileno(), termios.TIOCGWINSZ, b"\x00" * 8)
            rows, cols, _, _ = struct.unpack("HHHH", raw)
            assert (cols, rows) == (100, 40)
        finally:
            session.close(timeout=0.5)

    def test_child_starts_with_geometry(self) -> None:
        session = PtySession(command=["stty", "size"])
        session.spawn(TerminalGeometry(columns=100, rows=40))
        try:
            assert _read_to_eof(session) == b"40 100\r\n"
        finally:
            session.close()

    def test_resize_error_is_fatal(self) -> None:
        session = PtySession(command=["true"])
        with pytest.raises(LocalIOError, match="resizing pty"):
            session.resize(TerminalGeometry(columns=80, rows=24))

    def test_close_kills_lingering_child(self) -> None:
        # Ignores SIGHUP, so closing the master does not end it
        session = PtySession(command=["sh", "-c", "trap '' HUP; echo ready; sleep 30"])
        session.spawn()
        assert b"ready" in _read_until(session, b"ready")
        code = session.close(timeout=0.5)
        assert code is not None and code != 0
        assert session.status is PtyStatus.KILLED

    def test_env_is_passed(self) -> None:
        session = PtySession(
            command=["sh", "-c", "printf %s \"$TERMCAST_TEST\""],
            env={"TERMCAST_TEST": "marker"},
        )
        session.spawn()
        try:
            assert _read_to_eof(session) == b"marker"
        finally:
            session.close()


class TestSpawnErrors:
    def test_missing_command(self) -> None:
        session = PtySession(command=["/nonexistent/termcast-test-binary"])
        with pytest.raises(SpawnError, match="Couldn't run"):
            session.spawn()
        assert session.fileno() == -1
        assert session.close() is None

    def test_openpty_failure(self) -> None:
        with patch("termcast.pty.session.os.openpty", side_effect=OSError("no ptys")):
            with pytest.raises(SpawnError, match="allocate"):
                PtySession(command=["true"]).spawn()


# ---------------------------------------------------------------------------
# read error mapping
# ---------------------------------------------------------------------------


class TestReadErrors:
    def test_eio_is_eof(self) -> None:
        session = PtySession(command=["true"])
        with patch(
            "termcast.pty.session.os.read", side_effect=OSError(errno.EIO, "I/O error")
        ):
            assert session.read() == b""

    def test_other_errors_are_fatal(self) -> None:
        session = PtySession(command=["true"])
        with patch(
            "termcast.pty.session.os.read", side_effect=OSError(errno.EBADF, "bad fd")
        ):
            with pytest.raises(LocalIOError, match="reading from pty"):
                session.read()

    def test_write_failure_is_fatal(self) -> None:
        session = PtySession(command=["true"])
        with patch(
            "termcast.pty.session.os.write", side_effect=OSError(errno.EBADF, "bad fd")
        ):
            with pytest.raises(LocalIOError, match="writing to pty"):
                session.write(b"x")
