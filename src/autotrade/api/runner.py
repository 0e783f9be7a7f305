"""Uvicorn server for the control API, run inside the engine's event loop."""

from __future__ import annotations

import structlog
import uvicorn
from fastapi import FastAPI

logger = structlog.get_logger("api")


async def serve(app: FastAPI, host: str = "127.0.0.1", port: int = 8000) -> None:
    """Run the API until cancelled."""
    logger.info("api_server_starting", host=host, port=port)
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,  # Use our structlog setup
    )
    server = uvicorn.Server(config)
    try:
        await server.serve()
    except Exception as e:
        logger.error("api_server_failed", error=str(e))
        raise
