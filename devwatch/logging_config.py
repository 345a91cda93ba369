"""Diagnostic logging for the supervisor: colored stderr + optional rotating file.

Call ``setup_logging()`` once at startup.  All modules use ``logging.getLogger(__name__)``.
Watcher output and the ``killing ...`` status lines are written to stdout directly and
never pass through here, so raising the level cannot hide them.
"""

from __future__ import annotations

import atexit
import logging
import queue
import sys
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path

LOG_FILENAME = "devwatch.log"
MAX_BYTES = 2 * 1024 * 1024
BACKUP_COUNT = 2

CONSOLE_FMT = "%(asctime)s devwatch %(levelname)s %(ctx)s%(message)s"
FILE_FMT = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(ctx)s%(message)s"
DATE_FMT = "%H:%M:%S"
FILE_DATE_FMT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger(__name__)

_LEVEL_COLORS = {
    "DEBUG": "\x1b[2m",
    "INFO": "\x1b[32m",
    "WARNING": "\x1b[33m",
    "ERROR": "\x1b[31m",
    "CRITICAL": "\x1b[1;31m",
}
_RESET = "\x1b[0m"

_file_listener: QueueListener | None = None
_atexit_registered: bool = False


def _stop_queue_listener() -> None:
    global _file_listener  # noqa: PLW0603
    if _file_listener is not None:
        _file_listener.stop()
        _file_listener = None


class _ColorFormatter(logging.Formatter):
    """Pads level names and colors them when stderr is a terminal."""

    def __init__(self, fmt: str, datefmt: str | None = None, use_color: bool = True) -> None:
        super().__init__(fmt, datefmt)
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        padded = f"{levelname:<7}"
        if self._use_color:
            padded = f"{_LEVEL_COLORS.get(levelname, '')}{padded}{_RESET}"
        record.levelname = padded
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def _console_handler(level: int, ctx_filter: logging.Filter) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(ctx_filter)
    use_color = hasattr(sys.stderr, "isatty") and sys.stderr.isatty()
    handler.setFormatter(_ColorFormatter(CONSOLE_FMT, datefmt=DATE_FMT, use_color=use_color))
    return handler


def _file_handler(log_dir: Path, ctx_filter: logging.Filter) -> logging.Handler:
    """Queue-backed handler so file writes never block the event loop."""
    global _file_listener, _atexit_registered  # noqa: PLW0603

    log_dir.mkdir(parents=True, exist_ok=True)
    rotating = RotatingFileHandler(
        log_dir / LOG_FILENAME,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    rotating.setLevel(logging.DEBUG)
    rotating.setFormatter(logging.Formatter(FILE_FMT, datefmt=FILE_DATE_FMT))

    records: queue.Queue[logging.LogRecord] = queue.Queue()
    handler = QueueHandler(records)
    handler.setLevel(logging.DEBUG)
    handler.addFilter(ctx_filter)

    _file_listener = QueueListener(records, rotating, respect_handler_level=True)
    _file_listener.start()
    if not _atexit_registered:
        atexit.register(_stop_queue_listener)
        _atexit_registered = True
    return handler


def setup_logging(
    level: int = logging.INFO,
    verbose: bool = False,
    log_dir: Path | None = None,
) -> None:
    """Configure the root logger.

    Args:
        level: Minimum console level. Ignored when *verbose* is set.
        verbose: Log at DEBUG, including per-process spawn and signal details.
        log_dir: Also keep a rotating ``devwatch.log`` there (always at DEBUG).
    """
    if verbose:
        level = logging.DEBUG

    _stop_queue_listener()

    from devwatch.log_context import ContextFilter

    ctx_filter = ContextFilter()

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if log_dir is not None else level)

    if sys.stderr is not None:
        root.addHandler(_console_handler(level, ctx_filter))
    if log_dir is not None:
        root.addHandler(_file_handler(log_dir, ctx_filter))

    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logger.debug("Logging initialized (level=%s)", logging.getLevelName(level))
