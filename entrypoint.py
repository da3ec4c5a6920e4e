"""Launcher entrypoint.

Behavior:
 - Reads settings (environment + .env) and configures structured logging.
 - Serves the FastAPI app with uvicorn on APP_HOST / APP_PORT.
 - The app lifespan saves engine state on shutdown.
 - Test shortcut: set ENTRYPOINT_TEST_MODE=1 to skip launching the server (used in unit tests).

Usage (source):
  python entrypoint.py
"""
from __future__ import annotations
import asyncio, os, sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import structlog
import uvicorn

from adder.bootstrap import Settings, configure_logging

logger = structlog.get_logger("entrypoint")


async def _run_server(settings: Settings):
    config = uvicorn.Config(
        'server.main:app',
        host=settings.app_host,
        port=settings.app_port,
        log_level=settings.log_level.lower(),
    )
    server = uvicorn.Server(config)
    await server.serve()


async def main():
    settings = Settings()
    configure_logging(settings.log_level, settings)
    # Test shortcut: bail out quickly (used by unit test)
    if os.environ.get('ENTRYPOINT_TEST_MODE') == '1':
        logger.info("entrypoint_test_mode_skip_launch")
        return
    logger.info("server_starting", host=settings.app_host, port=settings.app_port)
    await _run_server(settings)


def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print('\n[entrypoint] Interrupted')


if __name__ == '__main__':
    cli()
