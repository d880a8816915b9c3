from __future__ import annotations

import contextvars
import logging
import os
import sys
import threading
import weakref
from typing import Callable

_LEVEL_COLORS = {
    "TRACE": "\033[32m",  # green
    "DEBUG": "\033[36m",  # cyan
    "INFO": "\033[37m",  # light gray
    "WARNING": "\033[33m",  # yellow
    "ERROR": "\033[31m",  # red
    "CRITICAL": "\033[41m",  # red background
}
_RESET = "\033[0m"
_DIM = "\033[2m"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Per-record relay tracing is skipped entirely unless enabled
TRACE_ENABLED = str(os.getenv("SPEEDLIVE_TRACE", "0")).lower() in ("1", "true", "yes", "on")

LEVEL_NAMES = ("TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class AnsiColorFormatter(logging.Formatter):
    """Formatter that adds ANSI colors and a compact timestamp."""

    def __init__(self, colored: bool = True) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"
        )
        self.colored = colored and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.colored:
            return base
        level = record.levelname.upper()
        color = _LEVEL_COLORS.get(level, "")
        ts, _, rest = base.partition(" ")
        if color:
            rest = rest.replace(level, f"{color}{level}{_RESET}", 1)
        return f"{_DIM}{ts}{_RESET} {rest}"


# ---- NiceGUI page log sink ----

# Id of the relay session the running task belongs to; asyncio tasks inherit it
current_session: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "speedlive_session", default=None
)

_ui_log_targets: dict[weakref.ref, Callable[[], str | None] | None] = {}
_ui_lock = threading.Lock()


def record_session(record: logging.LogRecord) -> str | None:
    """Session a record belongs to: explicit ``extra`` first, then the running task's."""
    return getattr(record, "session_id", None) or current_session.get()


class NiceGuiLogHandler(logging.Handler):
    """
    Mirror log records into the ui.log panels of open gauge pages.

    Records tagged with a session only reach widgets scoped to that session
    (or unscoped widgets); untagged records reach every widget.
    """

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S")
        )

    def emit(self, record: logging.LogRecord) -> None:
        if not _ui_log_targets:
            return
        session_id = record_session(record)
        msg = self.format(record)
        with _ui_lock:
            for ref, scope in list(_ui_log_targets.items()):
                widget = ref()
                if widget is None or getattr(widget, "is_deleted", False):
                    _ui_log_targets.pop(ref, None)
                    continue
                if session_id is not None and scope is not None and scope() != session_id:
                    continue
                widget.push(msg)


def attach_ui_log(log_widget, scope: Callable[[], str | None] | None = None) -> None:
    """
    Register a ui.log widget as a sink for log records.

    ``scope`` returns the session id the widget currently follows; without it
    the widget receives records from every session.
    """
    with _ui_lock:
        _ui_log_targets[weakref.ref(log_widget)] = scope


def detach_ui_log(log_widget) -> None:
    """Unregister a ui.log widget."""
    with _ui_lock:
        _ui_log_targets.pop(weakref.ref(log_widget), None)


def resolve_level(
    name: str | None, verbose: int = 0, quiet: bool = False, default: int = logging.WARNING
) -> int:
    """Pick a log level: explicit name > -v/-q counts > default."""
    if name:
        return TRACE if name.upper() == "TRACE" else getattr(logging, name.upper())
    if verbose >= 3:
        return TRACE
    if verbose == 2:
        return logging.DEBUG
    if verbose == 1:
        return logging.INFO
    if quiet:
        return logging.WARNING
    return default


def configure_logging(
    level: int = logging.INFO, use_color: bool = True, add_ui_handler: bool = True
) -> logging.Logger:
    """
    Configure the root logger with a colored stderr handler and, optionally,
    the page log sink. Safe to call more than once.
    """
    logger = logging.getLogger()
    logger.setLevel(level)

    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        console = logging.StreamHandler(stream=sys.stderr)
        console.setLevel(level)
        console.setFormatter(AnsiColorFormatter(colored=use_color))
        logger.addHandler(console)

    if add_ui_handler and not any(isinstance(h, NiceGuiLogHandler) for h in logger.handlers):
        logger.addHandler(NiceGuiLogHandler(level=level))

    return logger
