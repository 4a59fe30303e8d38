"""Logging configuration for the k8zctl package."""
import logging
from typing import Optional

from .config import Config


def setup_logging(debug_mode: bool = False, log_file: Optional[str] = None) -> None:
    """Configure logging based on debug mode.

    Args:
        debug_mode: Log at DEBUG instead of the configured LOG_LEVEL
        log_file: Optional file that receives a copy of every record
    """
    log_level = logging.DEBUG if debug_mode else getattr(logging, Config.LOG_LEVEL, logging.INFO)
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format=Config.LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=handlers,
    )
    logging.getLogger().setLevel(log_level)

    # Disable debug logging for noisy libraries
    if not debug_mode:
        logging.getLogger('urllib3').setLevel(logging.WARNING)
        logging.getLogger('kubernetes').setLevel(logging.WARNING)
