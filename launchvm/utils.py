"""Logging and exit helpers shared by the commands."""

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("launchvm")

# Library loggers kept quieter than launchvm itself, unless DEBUG is asked for
LIBRARY_LOG_LEVELS = {
    "boto3": logging.INFO,
    "botocore": logging.WARNING,
    "urllib3": logging.WARNING,
    "paramiko": logging.WARNING,
    "fabric": logging.WARNING,
    "invoke": logging.WARNING,
}


def parse_log_level(level: int | str) -> int:
    """Turn "debug", "INFO", 20 etc. into a logging level.

    :raises ValueError: If level names no logging level
    """
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level '{level}'")
    return value


def setup_logging(level: int | str = logging.INFO) -> None:
    """Route every log record through one RichHandler on stderr.

    stdout stays free for tables and prompts.
    """
    level = parse_log_level(level)
    handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=True,
    )
    handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for old in root_logger.handlers[:]:
        old.close()
        root_logger.removeHandler(old)
    root_logger.addHandler(handler)

    for name, library_level in LIBRARY_LOG_LEVELS.items():
        library_logger = logging.getLogger(name)
        library_logger.handlers.clear()
        library_logger.setLevel(min(level, library_level) if level == logging.DEBUG else library_level)
        library_logger.propagate = True


def log(msg: str) -> None:
    logger.info(msg)


def warn(msg: str) -> None:
    logger.warning(msg)


def error(msg: str, exit_code: int = 1) -> None:
    """Log an error and exit with exit_code."""
    logger.error(msg)
    sys.exit(exit_code)
