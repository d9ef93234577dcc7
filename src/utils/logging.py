import logging
import os
import sys
from typing import Optional

from loguru import logger

# Libraries that log through the stdlib; httpx logs full request URLs
# (including the bot token) at INFO, so it is capped at WARNING.
_STDLIB_LEVELS = {
    "httpx": logging.WARNING,
    "telegram": logging.INFO,
    "aiohttp": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller outside the logging module so loguru reports the right origin
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None):
    """
    Configure logging:
    - stdout: for Docker logs
    - file: logs/alerts.log with rotation (10MB, 7 backups)
    - stdlib loggers (telegram, httpx, aiohttp, sqlalchemy) routed into loguru
    """
    logger.remove()

    logger.add(sys.stdout, level=level, backtrace=False, diagnose=False)

    if log_dir is None:
        log_dir = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "logs")
    os.makedirs(log_dir, exist_ok=True)

    log_file = os.path.join(log_dir, "alerts.log")
    logger.add(
        log_file,
        level=level,
        rotation="10 MB",
        retention=7,
        compression="gz",
        backtrace=True,
        diagnose=False,       # variable dumps would include bot token / chat ids
        enqueue=True
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name, lib_level in _STDLIB_LEVELS.items():
        logging.getLogger(name).setLevel(lib_level)

    logger.info(f"Logging configured: console + file ({log_file})")
    return logger
