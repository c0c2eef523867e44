"""Capture computations as quoted code and expand them into standalone scripts."""

from . import constants as _constants
from . import logger as _logger
from . import runtime as _runtime
from .constants import *  # noqa: F401,F403
from .logger import *  # noqa: F401,F403
from .runtime import *  # noqa: F401,F403

__all__ = []
__all__ += getattr(_constants, "__all__", [])
__all__ += getattr(_logger, "__all__", [])
__all__ += getattr(_runtime, "__all__", [])
