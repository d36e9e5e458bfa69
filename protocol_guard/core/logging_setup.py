"""Logging configuration for processes embedding the protocol subsystem."""

import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """
    Install console (and optional file) handlers on the root logger.

    Library modules only create loggers; call this from the entry point.
    """
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handlers = [console_handler]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
