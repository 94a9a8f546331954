"""CLI entry point for the bridge server.

Usage:
    tavern-bridge serve [OPTIONS]       # run the server in the foreground
    tavern-bridge check-config          # validate config.yaml and list bots
    python -m tavern_bridge.server serve [OPTIONS]
"""

from __future__ import annotations

import logging
import click

from tavern_bridge.config import config_path, load_config
from tavern_bridge.errors import ConfigError
from tavern_bridge.schema import BridgeConfig

_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group("tavern-bridge")
def main() -> None:
    """Relay between Telegram bots and a SillyTavern generation host."""


@main.command()
@click.option("--host", default=None, help="Bind host (default: server.host)")
@click.option("--port", default=None, type=int, help="Bind port (default: server.port)")
@click.option(
    "--config",
    "config_file",
    default=None,
    type=click.Path(dir_okay=False),
    help="Path to config.yaml",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(_LEVELS, case_sensitive=False),
    help="Logging level",
)
def serve(
    host: str | None, port: int | None, config_file: str | None, log_level: str
) -> None:
    """Run the bridge in the foreground."""
    try:
        config = load_config(config_file)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    _run_foreground(
        host or config.server.host,
        port or config.server.port,
        config,
        log_level.upper(),
    )


@main.command("check-config")
@click.option(
    "--config",
    "config_file",
    default=None,
    type=click.Path(dir_okay=False),
    help="Path to config.yaml",
)
def check_config(config_file: str | None) -> None:
    """Validate the configuration and list the configured bots."""
    try:
        config = load_config(config_file)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Config OK: {config_path(config_file)}")
    click.echo(f"  Listen: {config.server.host}:{config.server.port}")
    for bot in config.bots:
        profile = bot.connection_profile
        suffix = f" (profile: {profile})" if profile else ""
        click.echo(f"  Bot {bot.bot_id}: {bot.character_name}{suffix}")
    if config.allowed_user_ids:
        ids = ", ".join(str(uid) for uid in config.allowed_user_ids)
        click.echo(f"  Allowed users: {ids}")
    else:
        click.echo("  Allowed users: everyone")


def _run_foreground(
    host: str, port: int, config: BridgeConfig, log_level: str
) -> None:
    """Run the server in the foreground until interrupted or /exit."""
    import uvicorn

    from tavern_bridge.bridge import Bridge
    from tavern_bridge.server.app import create_server
    from tavern_bridge.server.startup import log_startup_info, setup_logging

    setup_logging(level=getattr(logging, log_level))
    logger = logging.getLogger("tavern_bridge.server")

    log_startup_info(host=host, port=port, config=config, logger=logger)

    server = create_server(Bridge(config))
    uv_server = uvicorn.Server(
        uvicorn.Config(server.app, host=host, port=port, log_level=log_level.lower())
    )

    def _request_exit() -> None:
        logger.info("Shutdown requested from chat")
        uv_server.should_exit = True

    server.bridge.commands.set_shutdown_hook(_request_exit)
    click.echo(f"Generation host endpoint: ws://{host}:{port}/")
    uv_server.run()
