import logging
import sys
from typing import Optional

LOGGER_NAME = "athena"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_level: Optional[str] = None, verbose: bool = False) -> logging.Logger:
    """
    Attach a stderr handler to the package logger.

    Args:
        log_level: Level name (DEBUG, INFO, WARNING, ERROR). Defaults to WARNING.
        verbose: Force INFO (or DEBUG if log_level already asks for it).

    Returns:
        The configured ``athena`` logger.
    """
    level = getattr(logging, (log_level or "WARNING").upper(), logging.WARNING)
    if verbose:
        level = min(level, logging.INFO)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # The previous handler's stream may already be closed.
    for handler in list(logger.handlers):
        if getattr(handler, "_athena_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler._athena_handler = True
    logger.addHandler(handler)
    return logger
