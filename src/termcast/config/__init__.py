"""Configuration: Pydantic model for termcast settings."""

from __future__ import annotations

import getpass
import json
import os
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_HOST = "noway.ratry.ru"
DEFAULT_PORT = 31337
DEFAULT_PASSWORD = "asdf"  # the relay does not treat this as a secret

_ENV_PREFIX = "TERMCAST_"
_ENV_FIELDS = (
    "host",
    "port",
    "user",
    "password",
    "bell_on_watcher",
    "timeout",
    "retry_delay",
)


def _default_user() -> str:
    return os.environ.get("USER") or getpass.getuser()


def _default_command() -> list[str]:
    return [os.environ.get("SHELL") or "/bin/sh"]


class TermcastConfig(BaseModel):
    """Settings for one broadcast session.

    Immutable once built; the event loop and the connection manager only
    read it.
    """

    model_config = ConfigDict(frozen=True)

    host: str = Field(
        default=DEFAULT_HOST, description="Hostname of the termcast server"
    )
    port: int = Field(
        default=DEFAULT_PORT, ge=1, le=65535, description="Port of the termcast server"
    )
    user: str = Field(
        default_factory=_default_user, description="Username for the termcast server"
    )
    password: str = Field(
        default=DEFAULT_PASSWORD,
        description="Password for the termcast server (mostly unimportant)",
    )
    bell_on_watcher: bool = Field(
        default=False,
        description="Ring the terminal bell when a watcher connects or disconnects",
    )
    timeout: float = Field(
        default=5.0,
        gt=0,
        description="Seconds to wait on the server connection before reconnecting",
    )
    retry_delay: float = Field(
        default=5.0, ge=0, description="Seconds between connection attempts"
    )
    command: list[str] = Field(
        default_factory=_default_command, description="Command to run and broadcast"
    )

    @field_validator("user", "password")
    @classmethod
    def _no_whitespace(cls, value: str) -> str:
        # The handshake line is space separated and newline terminated.
        if not value:
            raise ValueError("must not be empty")
        if any(ch.isspace() for ch in value):
            raise ValueError("must not contain whitespace")
        return value

    @field_validator("command")
    @classmethod
    def _non_empty_command(cls, value: list[str]) -> list[str]:
        if not value:
            return _default_command()
        return value

    @classmethod
    def load(
        cls, config_path: str | None = None, **overrides: Any
    ) -> TermcastConfig:
        """Load config from overrides, env vars, a JSON file, or defaults.

        Priority: overrides > env vars > config file > defaults. Overrides
        whose value is ``None`` are ignored, so CLI options that were not
        given fall through to the next source.

        Env vars:
            TERMCAST_HOST             - Relay server hostname
            TERMCAST_PORT             - Relay server port
            TERMCAST_USER             - Username sent in the handshake
            TERMCAST_PASSWORD         - Password sent in the handshake
            TERMCAST_BELL_ON_WATCHER  - "1"/"true" to ring on watcher activity
            TERMCAST_TIMEOUT          - Write/handshake timeout in seconds
            TERMCAST_RETRY_DELAY      - Delay between connection attempts
        """
        load_dotenv(find_dotenv(usecwd=True))

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        for name in _ENV_FIELDS:
            value = os.environ.get(_ENV_PREFIX + name.upper())
            if value:
                config_data[name] = value

        for name, value in overrides.items():
            if value is not None:
                config_data[name] = value

        return cls.model_validate(config_data)
