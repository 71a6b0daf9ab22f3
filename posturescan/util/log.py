"""Logging configuration for the engine and the CLI.

One line per event: time, level, logger name, message.
Scan id and domain go into the message itself where it matters.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, TextIO, Union

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

NOISY_LOGGERS = ('aiohttp', 'asyncio')


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(log_file: Optional[Path] = None, level: Union[int, str] = logging.INFO,
                  stream: Optional[TextIO] = None):
    """Replace the root logger's handlers with a console handler and, optionally, a file.

    The console handler writes to stdout unless another stream is given
    (the CLI passes stderr when stdout carries JSON).
    """
    level = _resolve_level(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers = [logging.StreamHandler(stream or sys.stdout)]
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
