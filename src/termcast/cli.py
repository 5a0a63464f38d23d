"""CLI entry point for termcast."""

from __future__ import annotations

import logging
import sys

import typer
from pydantic import ValidationError

from termcast.config import TermcastConfig
from termcast.errors import AuthError, LocalIOError, SpawnError

app = typer.Typer(
    name="termcast",
    help="Broadcast your terminal session for remote viewing.",
    add_completion=False,
)


def setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        filename=log_file,
    )
    if log_file is None and sys.stderr.isatty():
        # The terminal sits in raw mode while broadcasting, so a bare
        # newline would not return the cursor to column 0.
        for handler in logging.getLogger().handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.terminator = "\r\n"


@app.command(
    context_settings={"allow_interspersed_args": False, "ignore_unknown_options": True}
)
def cast(
    command: list[str] | None = typer.Argument(
        None, help="Command to run and broadcast (default: your shell)."
    ),
    host: str | None = typer.Option(
        None, "--host", help="Hostname of the termcast server to connect to."
    ),
    port: int | None = typer.Option(
        None, "--port", help="Port to connect to on the termcast server."
    ),
    user: str | None = typer.Option(
        None, "--user", help="Username for the termcast server."
    ),
    password: str | None = typer.Option(
        None, "--password", help="Password for the termcast server (mostly unimportant)."
    ),
    bell_on_watcher: bool = typer.Option(
        False,
        "--bell-on-watcher",
        help="Send a terminal bell when a watcher connects or disconnects.",
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", help="Timeout length for the connection to the termcast server."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path (JSON)."
    ),
    log_file: str | None = typer.Option(
        None, "--log-file", help="Write log messages to this file instead of stderr."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
) -> None:
    """Run a command (or your shell) and broadcast its terminal to a termcast server."""
    setup_logging(verbose, log_file)

    try:
        config = TermcastConfig.load(
            config_file,
            host=host,
            port=port,
            user=user,
            password=password,
            bell_on_watcher=bell_on_watcher or None,
            timeout=timeout,
            command=command or None,
        )
    except ValidationError as e:
        typer.echo(f"Error: invalid configuration:\n{e}", err=True)
        raise typer.Exit(2)

    from termcast.loop import EventLoop

    try:
        code = EventLoop(config).run()
    except AuthError as e:
        typer.echo(f"Error: authentication with {config.host} failed: {e}", err=True)
        raise typer.Exit(1)
    except (SpawnError, LocalIOError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if code:
        raise typer.Exit(code if code > 0 else 128 - code)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
