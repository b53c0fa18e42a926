import logging
import os
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_LOGGING_CONFIGURED = False


def _resolve_level(level: Optional[Union[int, str]]) -> int:
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def configure_logging(level: Optional[Union[int, str]] = None) -> int:
    """Configure root logging once and return the applied level.

    An explicit ``level`` wins over ``LOG_LEVEL``; calling again only adjusts
    the level of the already-installed handlers.
    """

    global _LOGGING_CONFIGURED
    resolved = _resolve_level(level)
    root = logging.getLogger()
    if not _LOGGING_CONFIGURED and not root.handlers:
        logging.basicConfig(format=LOG_FORMAT, level=resolved)
    root.setLevel(resolved)
    for handler in root.handlers:
        handler.setLevel(resolved)
    _LOGGING_CONFIGURED = True
    return resolved


def get_logger(name: str) -> logging.Logger:
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)
