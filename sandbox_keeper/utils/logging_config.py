# logging_config.py
"""
Process-wide logging for sandbox_keeper.

Module loggers hand records to one queue; a single QueueListener thread writes
them to a rotating per-process file under logs/ and to the console. Console
threshold and per-logger levels can be changed at runtime or through the
environment:

    SANDBOX_KEEPER_CONSOLE_LEVEL=WARNING
    SANDBOX_KEEPER_LOG_OVERRIDES="sandbox_keeper.extension=DEBUG,sandbox_keeper.utils=OFF"
    SANDBOX_KEEPER_LOG_DIR=/var/log/sandbox_keeper
"""

import logging
import os
import queue
import sys
import threading
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler

from colorama import Fore, Style

CONSOLE_LEVEL_ENV = "SANDBOX_KEEPER_CONSOLE_LEVEL"
LOGGER_OVERRIDES_ENV = "SANDBOX_KEEPER_LOG_OVERRIDES"
LOG_DIR_ENV = "SANDBOX_KEEPER_LOG_DIR"

DEFAULT_LOGGER_LEVEL = logging.DEBUG
LOG_FILE_MAX_BYTES = 1024 * 1024
LOG_FILE_BACKUPS = 3

# Session lifecycle transitions (extension granted, warning, expiry) sit between INFO and WARNING.
LIFECYCLE_LEVEL = 25
logging.addLevelName(LIFECYCLE_LEVEL, "LIFECYCLE")


def _logger_lifecycle(self, message, *args, **kwargs):
    if self.isEnabledFor(LIFECYCLE_LEVEL):
        self._log(LIFECYCLE_LEVEL, message, args, **kwargs)


logging.Logger.lifecycle = _logger_lifecycle

_LEVEL_NAMES = {
    "CRITICAL": logging.CRITICAL,
    "FATAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "LIFECYCLE": LIFECYCLE_LEVEL,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}
_OFF_NAMES = {"OFF", "DISABLED", "NONE"}


class SafeFormatter(logging.Formatter):
    """Formatter that tolerates records logged without a session_id."""

    def format(self, record):
        if not hasattr(record, "session_id"):
            record.session_id = "N/A"
        return super().format(record)


LOG_FORMATTER = SafeFormatter("%(asctime)s - %(name)s - %(levelname)s - %(session_id)s - %(message)s")

_log_queue: "queue.Queue[logging.LogRecord]" = queue.Queue()
_state_lock = threading.RLock()
_listener = None
_console_handler = None
_env_controls_applied = False

# logger name -> (level, disabled) captured before the first override
_baseline_levels = {}


def _log_path() -> str:
    logs_dir = os.environ.get(LOG_DIR_ENV) or os.path.join(os.getcwd(), "logs")
    os.makedirs(logs_dir, exist_ok=True)
    # One file per process so concurrent hosts never rotate each other's file
    return os.path.join(logs_dir, f"sandbox_keeper_{os.getpid()}.log")


def _ensure_listener() -> None:
    global _listener, _console_handler
    with _state_lock:
        if _listener is not None:
            return

        file_handler = RotatingFileHandler(
            _log_path(), maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8", delay=True,
        )
        console_handler = logging.StreamHandler(sys.stdout)
        for handler in (file_handler, console_handler):
            handler.setFormatter(LOG_FORMATTER)

        _console_handler = console_handler
        _listener = QueueListener(_log_queue, file_handler, console_handler)
        _listener.start()


def get_logger(name: str) -> logging.Logger:
    """
    Returns a module logger wired to the shared queue.

    The first call in a process starts the listener and applies the
    environment logging controls.
    """
    global _env_controls_applied
    _ensure_listener()

    logger = logging.getLogger(name)
    with _state_lock:
        if not any(isinstance(h, QueueHandler) for h in logger.handlers):
            logger.addHandler(QueueHandler(_log_queue))
            logger.propagate = False
            if name not in _baseline_levels:
                logger.setLevel(DEFAULT_LOGGER_LEVEL)

        if not _env_controls_applied:
            _env_controls_applied = True
            apply_logging_controls_from_env()

    return logger


# ---------------------------------------------------------------------
# Runtime controls
# ---------------------------------------------------------------------

def _normalize_level(level_name):
    """Map a level name (or int) to a logging level; OFF and friends map to None."""
    if level_name is None:
        raise ValueError("level_name cannot be None")
    if isinstance(level_name, int):
        return level_name

    key = str(level_name).strip().upper()
    if key in _OFF_NAMES:
        return None
    if key not in _LEVEL_NAMES:
        raise ValueError(f"Unknown log level: {level_name!r}")
    return _LEVEL_NAMES[key]


def set_console_level(level_name) -> None:
    level = _normalize_level(level_name)
    _ensure_listener()
    with _state_lock:
        _console_handler.setLevel(logging.CRITICAL + 1 if level is None else level)


def apply_logger_overrides(overrides: dict) -> None:
    """
    Apply {"logger.name": "LEVEL" | "OFF"} overrides.

    Loggers overridden earlier but missing from this map get their original
    level and enabled state back.
    """
    overrides = overrides or {}
    with _state_lock:
        for name in [n for n in _baseline_levels if n not in overrides]:
            level, disabled = _baseline_levels.pop(name)
            target = logging.getLogger(name if name != "root" else None)
            target.setLevel(level)
            target.disabled = disabled

        for name, level_name in overrides.items():
            level = _normalize_level(level_name)
            target = logging.getLogger(name if name != "root" else None)
            _baseline_levels.setdefault(name, (target.level, target.disabled))
            target.disabled = level is None
            if level is not None:
                target.setLevel(level)


def parse_override_string(raw: str) -> dict:
    """Parse "name=LEVEL,name2=OFF" into an override map."""
    overrides = {}
    for chunk in (raw or "").split(","):
        name, sep, level_name = chunk.partition("=")
        if sep and name.strip():
            overrides[name.strip()] = level_name.strip()
    return overrides


def apply_logging_controls_from_env() -> None:
    """Invalid values are reported on stderr and otherwise ignored."""
    console_level = os.environ.get(CONSOLE_LEVEL_ENV)
    raw_overrides = os.environ.get(LOGGER_OVERRIDES_ENV)
    try:
        if console_level:
            set_console_level(console_level)
        if raw_overrides:
            apply_logger_overrides(parse_override_string(raw_overrides))
    except ValueError as e:
        print(f"Invalid logging controls in environment: {e}", file=sys.stderr)


# ---------------------------------------------------------------------
# Adapters & helpers
# ---------------------------------------------------------------------

class SessionLoggerAdapter(logging.LoggerAdapter):
    """Stamps every record with the governed session's id and exposes the LIFECYCLE level."""

    def __init__(self, logger, session_id=None):
        super().__init__(logger, {"session_id": session_id or "N/A"})

    def process(self, msg, kwargs):
        extra = kwargs.get("extra")
        kwargs["extra"] = {**(extra if isinstance(extra, dict) else {}), **self.extra}
        return msg, kwargs

    def lifecycle(self, message, *args, **kwargs):
        message, kwargs = self.process(message, kwargs)
        self.logger.lifecycle(message, *args, **kwargs)


def log_standout_text(logger, content, title=None, color=Fore.LIGHTMAGENTA_EX):
    """Logs a coloured banner at the LIFECYCLE level."""
    body = f"{color}{content}{Style.RESET_ALL}"
    if title:
        body = f"{color}{title}{Style.RESET_ALL}\n{body}"
    logger.lifecycle(body)
