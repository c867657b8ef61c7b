"""
Logging configuration for bulkde.

Every service module obtains its logger through ``get_logger(__name__)`` so
that pipeline runs, CLI sessions and tests share one format.
"""

import logging
import sys

LOG_FORMAT = "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Configure a logger with consistent formatting.

    Two situations are handled:
    1. CLI usage: ``setup_logging`` in the console manager has installed a
       RichHandler on the root logger, so records propagate to it.
    2. Library or test usage: no RichHandler on root. A stdout StreamHandler
       is attached and propagation is disabled to avoid duplicate lines.

    Args:
        name: Name of the logger
        level: Logging level (default: INFO)

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(level)

        from rich.logging import RichHandler

        root_logger = logging.getLogger()
        has_rich_handler = any(
            isinstance(handler, RichHandler) for handler in root_logger.handlers
        )

        if not has_rich_handler:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
            logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Name of the logger, usually ``__name__``

    Returns:
        logging.Logger: Logger instance
    """
    return setup_logger(name)


def set_package_level(level: int) -> None:
    """Apply ``level`` to every logger already created under the bulkde namespace."""
    for logger_name, logger in logging.Logger.manager.loggerDict.items():
        if logger_name.startswith("bulkde") and isinstance(logger, logging.Logger):
            logger.setLevel(level)
