"""
Logging setup for the service.

Every module asks for its logger through ``get_logger(__name__)``; the app
configures handlers once at startup.
"""

import logging
from typing import Optional


def setup_logging(level: str | int = logging.INFO, log_format: Optional[str] = None) -> logging.Logger:
    """
    Configure the root logger with a console handler.

    Args:
        level: Level name ("INFO") or number.
        log_format: Custom format string. If None, uses the default format.

    Returns:
        Configured root logger.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    if log_format is None:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(level=level, format=log_format, force=True)

    for logger_name in ("httpx", "httpcore", "botocore", "urllib3"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    return logging.getLogger()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
