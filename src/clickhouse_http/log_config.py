# clickhouse_http/log_config.py
"""Logging configuration for clickhouse_http using Loguru.

Every module logs through the shared ``logger`` re-exported here, so an
application can route the request pipeline's output (lease waits, soft
failures, server errors) with a single ``configure_logging`` call.
"""

import sys

from loguru import logger

__all__ = ["configure_logging", "logger"]

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<magenta>{thread.name}</magenta> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:"
    "<cyan>{line}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", sink=sys.stderr) -> int:
    """
    Configures the Loguru logger for the client.

    Removes existing handlers and adds a single one with the given level and
    sink. The thread name is part of the format because requests complete on
    worker threads.

    Args:
        level: The minimum logging level (e.g., "DEBUG", "TRACE", "WARNING").
        sink: The output sink (e.g., sys.stderr, "client.log", a callable).

    Returns:
        int: The handler id returned by ``logger.add``.
    """
    logger.remove()
    handler_id = logger.add(
        sink,
        level=level.upper(),
        format=LOG_FORMAT,
        colorize=sink is sys.stderr,
        backtrace=True,
        diagnose=False,
        enqueue=False,
    )
    logger.info(f"Loguru logger configured with level={level.upper()} writing to {sink}")
    return handler_id
