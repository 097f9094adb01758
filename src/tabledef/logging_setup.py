"""
Logging setup for tabledef.
"""

import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from .config import LoggingConfig


def configure_logging(
    config: Optional[LoggingConfig] = None,
    debug: bool = False,
    console: Optional[Console] = None,
) -> logging.Logger:
    """
    Install console and optional file handlers on the ``tabledef`` logger.

    Calling it again replaces the handlers installed by a previous call.
    """
    config = config or LoggingConfig()
    level = logging.DEBUG if debug else getattr(logging, config.level)

    logger = logging.getLogger("tabledef")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=debug,
        rich_tracebacks=debug,
    )
    console_handler.setLevel(level)
    logger.addHandler(console_handler)

    if config.file:
        file_handler = RotatingFileHandler(
            config.file,
            maxBytes=config.max_size,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(config.format))
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
