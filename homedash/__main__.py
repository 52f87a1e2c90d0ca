"""
Home dashboard entrypoint.
Starts the FastAPI app, which on startup initializes the DB, loads the
dashboard, connects MQTT and starts the message processor.
"""

import sys

import uvicorn
from loguru import logger

from .config import settings


def configure_logging() -> None:
    logger.remove()
    logger.add(
        sys.stdout,
        level=settings.log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )


def main() -> None:
    configure_logging()
    uvicorn.run(
        "homedash.api:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
