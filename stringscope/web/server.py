"""
Web server bootstrap for the Stringscope API.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load .env so the API token is available when the server is started directly
# (e.g. uvicorn stringscope.web.server:create_server_app).
load_dotenv()
load_dotenv(Path.cwd() / ".env")

import uvicorn
from fastapi import FastAPI
from loguru import logger

from .api import create_app


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8430


class InterceptHandler(logging.Handler):
    """Intercept standard logging messages toward Loguru sinks."""
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(log_file: Path | None = None) -> None:
    """Route loguru to stderr and a rotating file; engine and uvicorn logs included."""
    log_file = log_file or Path.home() / ".stringscope" / "server.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(sys.stderr, level="INFO", colorize=True, format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>")
    logger.add(str(log_file), level="DEBUG", rotation="10 MB", retention="1 week", format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}")

    # stringscope.engine modules log through the standard library
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi"):
        logging_logger = logging.getLogger(logger_name)
        logging_logger.handlers = [InterceptHandler()]
        logging_logger.propagate = False


def create_server_app() -> FastAPI:
    setup_logging()
    logger.info("Starting Stringscope API server...")
    return create_app()


def run_server(host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
    uvicorn.run("stringscope.web.server:create_server_app", host=host, port=port, log_level="info", factory=True)
