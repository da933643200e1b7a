"""Logging setup mirroring the relay's console and syslog output formats."""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import time

LOGGER_NAME = "ssrrelay"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_INFO_COLOR = "\x1b[01;32m"
_ERROR_COLOR = "\x1b[01;35m"
_RESET = "\x1b[0m"


class ColorFormatter(logging.Formatter):
    """Formats records as `` <time> INFO: msg`` or `` <time> ERROR: msg``.

    When ``use_tty`` is true the prefix is wrapped in ANSI colours:
    green for informational records, magenta for errors.
    """

    def __init__(self, use_tty: bool = True) -> None:
        super().__init__()
        self.use_tty = use_tty

    def format(self, record: logging.LogRecord) -> str:
        timestamp = time.strftime(TIME_FORMAT, time.localtime(record.created))
        is_error = record.levelno >= logging.ERROR
        label = "ERROR" if is_error else "INFO"
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        if self.use_tty:
            color = _ERROR_COLOR if is_error else _INFO_COLOR
            return f"{color} {timestamp} {label}: {_RESET}{message}"
        return f" {timestamp} {label}: {message}"


def _syslog_handler() -> logging.Handler:
    if os.path.exists("/dev/log"):
        return logging.handlers.SysLogHandler(address="/dev/log")
    return logging.handlers.SysLogHandler()


def configure_logging(
    use_syslog: bool = False,
    ident: str = LOGGER_NAME,
    use_tty: bool | None = None,
) -> logging.Logger:
    """Configure and return the package logger.

    With ``use_syslog`` records go to the system log tagged with ``ident``
    and the process id; otherwise they go to standard error, coloured when
    ``use_tty`` is true (by default, when standard error is a terminal).
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if use_syslog:
        handler: logging.Handler = _syslog_handler()
        handler.setFormatter(logging.Formatter(f"{ident}[%(process)d]: %(message)s"))
    else:
        stream = sys.stderr
        if use_tty is None:
            use_tty = bool(getattr(stream, "isatty", lambda: False)())
        handler = logging.StreamHandler(stream)
        handler.setFormatter(ColorFormatter(use_tty=use_tty))

    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger