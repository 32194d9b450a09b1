import logging
import sys
from pathlib import Path

from loguru import logger

from label_portal.config import Settings


class InterceptHandler(logging.Handler):
    """Forward standard library log records to loguru.

    uvicorn, httpx and paramiko log through the ``logging`` module; routing
    them here keeps one set of sinks and one format for the whole process.
    """

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


def configure_logging(settings: Settings) -> None:
    logger.remove()
    logger.add(
        sys.stdout,
        level=settings.log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {message}",
        colorize=True,
    )

    if settings.log_dir:
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        # daily rotation, JSON lines
        logger.add(
            str(log_dir / "portal-{time:YYYY-MM-DD}.log"),
            level=settings.log_level,
            rotation="00:00",
            retention="14 days",
            serialize=True,
            enqueue=True,
        )

    logging.root.handlers = [InterceptHandler()]
    for name in ("uvicorn.access", "uvicorn.error", "fastapi", "httpx", "paramiko"):
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False
