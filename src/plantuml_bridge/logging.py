"""
Logging setup for programs that embed the bridge.

The library modules only ever call `logging.getLogger(__name__)`; they
never configure handlers. An application calls `setup_logging()` once,
which installs on the root logger:

-   a `colorlog` console handler on stderr (stdout may be carrying
    rendered images), and
-   a plain-text file handler at DEBUG, one timestamped file per run.

The console level is DEBUG when `PLANTUML_DEBUG` is set, INFO otherwise.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from colorlog import ColoredFormatter

from .config import get_settings

CONSOLE_FORMAT = "%(log_color)s%(levelname)-8s%(reset)s %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold_red",
}


def get_logger(name: str) -> logging.Logger:
    """Shorthand for `logging.getLogger`, so callers import one module."""
    return logging.getLogger(name)


def _console_level(log_level_override: Optional[str]) -> int:
    if log_level_override:
        return getattr(logging, log_level_override.upper(), logging.INFO)
    return logging.DEBUG if get_settings().PLANTUML_DEBUG else logging.INFO


def _log_directory(log_dir: Union[str, Path], root: logging.Logger) -> Path:
    directory = Path(log_dir)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        root.warning(f"Cannot create {directory} ({e}); writing the log to '.'")
        return Path(".")
    return directory


def setup_logging(
    script_name: str = "plantuml_bridge",
    log_dir: Union[str, Path] = "logs/",
    log_level_override: Optional[str] = None,
) -> Path:
    """
    Configure the root logger for console and file output.

    Safe to call again: existing root handlers are replaced, not stacked.

    Args:
        script_name: Prefix of the log file name.
        log_dir: Where log files go. Created if missing.
        log_level_override: A level name such as "WARNING". Takes
            precedence over `PLANTUML_DEBUG`.

    Returns:
        Path: The log file, `<log_dir>/<script_name>_<YYYYmmdd_HHMMSS>.log`.
    """
    level = _console_level(log_level_override)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(ColoredFormatter(CONSOLE_FORMAT, log_colors=LEVEL_COLORS))
    root.addHandler(console)

    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = _log_directory(log_dir, root) / f"{script_name}_{stamp}.log"
    try:
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
    except OSError as e:
        root.warning(f"Cannot open {log_file} ({e}); logging to the console only")
    else:
        # Everything goes to the file, whatever the console shows
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        root.addHandler(file_handler)

    root.info(f"Console log level {logging.getLevelName(level)}, file {log_file}")
    return log_file
