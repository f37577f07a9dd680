"""Run the orchestrator API server: ``python -m preview_orchestrator``."""

import structlog
import uvicorn

from .api import create_app
from .config import get_settings
from .logging_config import configure_logging

logger = structlog.get_logger(__name__)


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    config = uvicorn.Config(
        create_app(settings=settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=True,
        timeout_graceful_shutdown=30,
        # Single worker: the scheduler must run exactly once
        workers=1,
        log_config=None,
    )
    server = uvicorn.Server(config)

    try:
        logger.info("Starting preview orchestrator", host=settings.host, port=settings.port)
        server.run()
    except KeyboardInterrupt:
        logger.info("Shutdown requested via KeyboardInterrupt")
    finally:
        logger.info("Server shutdown complete")


if __name__ == "__main__":
    main()
