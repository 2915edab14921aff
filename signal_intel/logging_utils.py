"""Shared logging setup for the CLI and the API.

SafeStreamHandler keeps a background pipeline run alive when stdout goes away
(e.g. the API server reloads mid-run or the CLI output pipe is closed).
"""
import logging
import logging.handlers
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024  # 10MB
LOG_FILE_BACKUP_COUNT = 3

# Libraries that log every HTTP request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "openai")


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that drops records when its stream is gone."""

    def emit(self, record):
        try:
            super().emit(record)
        except BrokenPipeError:
            pass  # stdout closed
        except ValueError:
            pass  # I/O operation on closed file


def configure_safe_logging(level=logging.INFO, log_file: Optional[str] = None):
    """Configure the root logger for pipeline entry points.

    Installs a SafeStreamHandler (once) and, when log_file is given, a
    RotatingFileHandler (once per path). Safe to call repeatedly.

    Args:
        level: Logging level for the installed handlers (default: INFO)
        log_file: Optional path for a rotating log file
    """
    root = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(isinstance(h, SafeStreamHandler) for h in root.handlers):
        handler = SafeStreamHandler()  # Defaults to sys.stderr
        handler.setFormatter(formatter)
        handler.setLevel(level)
        root.addHandler(handler)

    if log_file and not any(
        isinstance(h, logging.handlers.RotatingFileHandler)
        and getattr(h, "baseFilename", None) == _absolute(log_file)
        for h in root.handlers
    ):
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUP_COUNT,
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        root.addHandler(file_handler)

    # Some libraries lower the root level on import; make sure ours wins
    if root.level == logging.NOTSET or root.level > level:
        root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _absolute(path: str) -> str:
    return os.path.abspath(path)
