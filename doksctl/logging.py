"""Logging configuration for the doksctl package."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import Config


def setup_logging(debug: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the ``doksctl`` logger hierarchy.

    Args:
        debug: Lower the level to DEBUG
        log_file: Optional path of a rotating log file (defaults to DOKSCTL_LOG_FILE)

    Returns:
        The root ``doksctl`` logger
    """
    level = logging.DEBUG if debug else getattr(logging, Config.LOG_LEVEL, logging.INFO)
    logger = logging.getLogger("doksctl")
    logger.setLevel(level)

    # Don't add handlers if they're already configured
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(Config.LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(handler)

        log_file = log_file or Config.LOG_FILE
        if log_file:
            path = Path(log_file).expanduser().absolute()
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                filename=path,
                maxBytes=10 * 1024 * 1024,
                backupCount=5
            )
            file_handler.setFormatter(logging.Formatter(Config.LOG_FORMAT))
            logger.addHandler(file_handler)
            logger.debug(f"Logging to file: {path}")

    for handler in logger.handlers:
        handler.setLevel(level)

    # Disable debug logging for noisy libraries
    if not debug:
        logging.getLogger('kubernetes').setLevel(logging.WARNING)
        logging.getLogger('urllib3').setLevel(logging.WARNING)

    return logger
