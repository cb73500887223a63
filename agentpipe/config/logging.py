"""
Logging setup for the ``agentpipe`` logger tree.

Console output is colored when the stream is a terminal; the optional log file
gets the same records plus function and line numbers. Every record carries a
``turn`` field naming the agent and turn being processed (``-`` outside a
turn), so interleaved concurrent turns can be told apart.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator, TextIO

from agentpipe.config.settings import Settings

ROOT_LOGGER_NAME = "agentpipe"

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
CONSOLE_FORMAT = "%(asctime)s %(levelname)s [%(turn)s] %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)s [%(turn)s] %(name)s %(funcName)s:%(lineno)d: %(message)s"

NO_TURN = "-"

_current_turn: ContextVar[str] = ContextVar("agentpipe_log_turn", default=NO_TURN)


@contextmanager
def turn_logging_context(agent_id: str, turn_id: str) -> Iterator[None]:
    """
    Tag every record logged inside the block with ``agent_id:turn_id``.

    Tasks created inside the block inherit the tag.
    """
    token = _current_turn.set(f"{agent_id}:{turn_id[:8]}")
    try:
        yield
    finally:
        _current_turn.reset(token)


class TurnFilter(logging.Filter):
    """Sets ``record.turn`` from the active turn logging context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.turn = _current_turn.get()
        return True


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno)
        if color is None:
            return super().format(record)
        # Other handlers share the record and must see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def _prepare(handler: logging.Handler, formatter: logging.Formatter, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(TurnFilter())
    return handler


def setup_logging(settings: Settings, stream: TextIO | None = None) -> logging.Logger:
    """
    Configure the ``agentpipe`` logger from settings.

    Replaces any handlers from an earlier call and stops propagation to the
    root logger.

    Args:
        settings: Application settings (``log_level`` and ``log_file``)
        stream: Console stream; stdout if omitted

    Returns:
        The configured ``agentpipe`` logger
    """
    level = getattr(logging, settings.log_level)
    stream = stream or sys.stdout

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_formatter_class = ColoredFormatter if stream.isatty() else logging.Formatter
    logger.addHandler(
        _prepare(logging.StreamHandler(stream), console_formatter_class(CONSOLE_FORMAT, DATE_FORMAT), level)
    )

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.addHandler(
            _prepare(
                logging.FileHandler(log_path, encoding="utf-8"),
                logging.Formatter(FILE_FORMAT, DATE_FORMAT),
                level,
            )
        )

    logger.propagate = False

    logger.info(f"Logging initialized at {settings.log_level}")
    if settings.log_file:
        logger.info(f"Logging to file: {settings.log_file}")
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the ``agentpipe`` tree.

    Args:
        name: Logger name (typically __name__)
    """
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
