"""
Centralized logging for metacode.

Usage:
    from metacode.logger import get_logger

    logger = get_logger(__name__)
    logger.debug("Expanding %s as %s", identity, name)
"""

import logging
import os
import sys

from .constants import DEFAULT_LOG_LEVEL, LOG_LEVEL_ENV

_configured = False


def setup_logging(level: str | None = None) -> None:
    """Configure root logging for command-line use.

    Call once at startup. Subsequent calls are no-ops.
    """
    global _configured
    if _configured:
        return

    level = level or os.environ.get(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
        force=True,
    )
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger scoped to the metacode namespace.

    Args:
        name: Module name (typically ``__name__``).
    """
    return logging.getLogger(name)


__all__ = ["get_logger", "setup_logging"]
