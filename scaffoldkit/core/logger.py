"""Logging for generation runs.

Every module logs through ``get_logger(__name__)``, which attaches a Rich
console handler writing to stderr so that rendered listings on stdout stay
clean. A run can additionally be mirrored to a plain-text log file; all
``scaffoldkit.*`` loggers propagate to the single file handler installed on
the package logger.
"""
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

console = Console(stderr=True)

PACKAGE_LOGGER = "scaffoldkit"
DEFAULT_LOG_FILE = Path.home() / ".cache" / "scaffoldkit" / "scaffoldkit.log"
FILE_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

_file_handler: Optional[logging.FileHandler] = None


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False) -> Path:
    """Mirror every scaffoldkit log record to a file.

    Calling it again with the same path only adjusts the level; a different
    path replaces the previous file handler.

    Args:
        log_file: Path to log file (defaults to ~/.cache/scaffoldkit/scaffoldkit.log)
        verbose: Record DEBUG messages (per-file decisions) as well as INFO

    Returns:
        The path actually logged to; the system temp directory is used when
        the requested directory cannot be created
    """
    global _file_handler

    level = logging.DEBUG if verbose else logging.INFO
    target = Path(log_file).expanduser() if log_file else DEFAULT_LOG_FILE
    package_logger = logging.getLogger(PACKAGE_LOGGER)

    if _file_handler is not None and _file_handler.baseFilename == os.path.abspath(target):
        _file_handler.setLevel(level)
        package_logger.setLevel(level)
        return target

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        target = Path(tempfile.gettempdir()) / target.name

    handler = logging.FileHandler(target, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    reset_file_logging()
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    _file_handler = handler

    package_logger.info(f"Logging generation run to {target}")
    return target


def reset_file_logging() -> None:
    """Detach and close the file handler installed by setup_file_logging."""
    global _file_handler
    if _file_handler is None:
        return
    logging.getLogger(PACKAGE_LOGGER).removeHandler(_file_handler)
    _file_handler.close()
    _file_handler = None


def set_verbose(verbose: bool) -> None:
    """Switch every scaffoldkit logger between INFO and DEBUG."""
    level = logging.DEBUG if verbose else logging.INFO
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith(PACKAGE_LOGGER) and isinstance(logger, logging.Logger):
            logger.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with a Rich console handler.

    Args:
        name: Logger name (typically __name__)
    """
    logger = logging.getLogger(name)

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(console=console, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return logger
