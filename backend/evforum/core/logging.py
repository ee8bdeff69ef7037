"""
Logging setup.

All modules log through loguru's global ``logger``; this only configures
the sink once at startup.
"""

import sys

from loguru import logger

from evforum.core.config import settings


def setup_logging(level: str | None = None) -> None:
    """Replace the default loguru sink with one at the configured level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.log_level).upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
        ),
        backtrace=settings.debug,
        diagnose=settings.debug,
    )
