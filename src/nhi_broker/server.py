"""Entrypoint for the NHI credential broker HTTP server."""

from __future__ import annotations

import logging

import uvicorn

from nhi_broker import __version__
from nhi_broker.config import load_settings
from nhi_broker.logging_utils import configure_logging

logger = logging.getLogger(__name__)


def run_entrypoint() -> None:
    """Configure logging and serve the broker with uvicorn."""
    settings = load_settings()
    configure_logging()
    from nhi_broker.transport.http_server import create_http_app

    logger.info("Initializing NHI credential broker v%s", __version__)
    app = create_http_app()
    # Plain request/response API; no websocket endpoints.
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        ws="none",
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
