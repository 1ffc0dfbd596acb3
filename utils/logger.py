"""Logging configuration for ragent."""

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "ragent"

FILE_FORMAT = '%(asctime)s.%(msecs)03d | %(levelname)-8s | %(name)s | %(message)s'


def setup_logger(
    level: int = logging.INFO,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Configure the root logger with a Rich console handler and optional file.

    Modules log through ``logging.getLogger(__name__)``; this only decides
    where records end up. Calling it twice does not stack handlers.
    """
    root = logging.getLogger()
    root.setLevel(level)

    for handler in list(root.handlers):
        if getattr(handler, "_ragent", False):
            root.removeHandler(handler)
            handler.close()

    # Console on stderr so stdout stays clean for command output
    console_handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    console_handler.setLevel(level)
    console_handler._ragent = True
    root.addHandler(console_handler)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, mode='a')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%H:%M:%S'))
        file_handler._ragent = True
        root.addHandler(file_handler)

    return logging.getLogger(LOGGER_NAME)


def log_exception(logger: logging.Logger, msg: str = "Exception occurred") -> None:
    """Log an exception with full traceback."""
    logger.exception(msg)
