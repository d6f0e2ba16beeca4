"""Entrypoint for the AWS operations gate HTTP server."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # pragma: no cover

from aws_ops_gate import __version__
from aws_ops_gate.config import load_settings
from aws_ops_gate.logging_utils import configure_logging


def run_entrypoint() -> None:
    """Load settings, configure logging and serve the HTTP app with uvicorn."""
    settings = load_settings()
    configure_logging()
    logging.info("Initializing AWS operations gate v%s", __version__)
    logging.info("Log file configured at: %s", settings.logging.file)

    import uvicorn

    from aws_ops_gate.transport.http_server import create_http_app

    app = create_http_app()
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        ws="none",
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
