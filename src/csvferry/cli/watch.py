"""
csvferry watch - run the watch/transfer service.
"""

import asyncio
import os
from pathlib import Path

import typer

from csvferry.config import Settings, load_config
from csvferry.config.settings import apply_env_overrides
from csvferry.exceptions import ConfigurationError, WatchError
from csvferry.pipeline import WatchService
from csvferry.utils.logging import get_logger, setup_logging_from_config

logger = get_logger("csvferry.cli.watch")

app = typer.Typer(name="watch", help="Watch a directory and ship matched CSV files", invoke_without_command=True)


@app.callback()
def watch(
    project_dir: Path = typer.Option(Path.cwd(), "--project-dir", "-d", help="Directory holding config.yaml and .env"),
    config_file: Path | None = typer.Option(None, "--config", "-c", help="Explicit config file"),
    env: str | None = typer.Option(None, help="Environment overlay (config.<env>.yaml)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """
    Watch the source directory until interrupted or the watcher fails.
    """
    try:
        config = load_config(project_dir, env=env, config_file=config_file)
        logging_config = dict(apply_env_overrides(config.data, os.environ).get("logging") or {})
        if verbose:
            logging_config["level"] = "DEBUG"
        setup_logging_from_config({"logging": logging_config}, base_dir=project_dir)
        settings = Settings.from_config(config)
        service = WatchService.from_settings(settings)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    try:
        asyncio.run(service.run())
    except WatchError as e:
        logger.error(f"Watch failed: {e}")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
