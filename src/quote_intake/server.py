# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Usage:
    quote-intake --host 0.0.0.0 --port 8000
    uvicorn quote_intake.server:build_app --factory

Environment variables:
    QI_CONFIG: Path to the INI configuration (default: config.ini)
"""

from __future__ import annotations

import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import click
import uvicorn
from fastapi import FastAPI

from .api import create_app
from .config import IntakeConfig, load_config
from .errors import ConfigurationError
from .logger import configure_logging, get_logger
from .metrics import IntakeMetrics
from .pipeline import build_pipeline

logger = get_logger("QuoteIntake")


def build_app(config: IntakeConfig | None = None) -> FastAPI:
    """Build the application from configuration (``QI_CONFIG`` by default)."""
    config = config or load_config()
    configure_logging(config.logging.level, config.logging.file)
    metrics = IntakeMetrics()
    pipeline = build_pipeline(config, metrics=metrics)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Prepare the rate-limit store and upload directory before serving."""
        await pipeline.init()
        logger.info("Quote intake ready, uploads in %s", config.paths.uploads_dir)
        yield

    return create_app(pipeline, metrics=metrics, lifespan=lifespan)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--host", default="127.0.0.1", show_default=True, help="Host to bind to.")
@click.option("--port", "-p", type=int, default=8000, show_default=True, help="Port to listen on.")
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), envvar="QI_CONFIG", default=None,
              help="INI configuration file (default: config.ini).")
def main(host: str, port: int, config_path: str | None) -> None:
    """Serve the quote submission endpoint."""
    try:
        app = build_app(load_config(config_path))
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
