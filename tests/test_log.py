import logging
import os

import pytest

from ssrrelay.log import ColorFormatter, configure_logging

_STAMP_LEN = len(" 2024-01-01 00:00:00")


def _record(level, msg, args=()):
    return logging.LogRecord("ssrrelay", level, __file__, 1, msg, args, None)


@pytest.fixture
def cleanup_logger():
    yield
    logger = logging.getLogger("ssrrelay")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def test_plain_info_format():
    out = ColorFormatter(use_tty=False).format(_record(logging.INFO, "hello %d", (3,)))
    assert out.endswith(" INFO: hello 3")
    assert len(out) == _STAMP_LEN + len(" INFO: hello 3")
    assert out[0] == " "
    assert out[5] == "-" and out[8] == "-" and out[14] == ":" and out[17] == ":"


def test_plain_error_format():
    out = ColorFormatter(use_tty=False).format(_record(logging.ERROR, "broken"))
    assert out.endswith(" ERROR: broken")
    assert len(out) == _STAMP_LEN + len(" ERROR: broken")
    assert out[0] == " "
    assert out[11] == " "


def test_tty_info_is_green():
    out = ColorFormatter(use_tty=True).format(_record(logging.INFO, "hi"))
    assert out.startswith("\x1b[01;32m ")
    assert out.endswith("INFO: \x1b[0mhi")


def test_tty_error_is_magenta():
    out = ColorFormatter(use_tty=True).format(_record(logging.CRITICAL, "bad"))
    assert out.startswith("\x1b[01;35m ")
    assert out.endswith("ERROR: \x1b[0mbad")


def test_warning_is_reported_as_info():
    out = ColorFormatter(use_tty=False).format(_record(logging.WARNING, "careful"))
    assert " INFO: careful" in out


def test_configure_logging_writes_to_stderr(capsys, cleanup_logger):
    logger = configure_logging(use_syslog=False, ident="ssr", use_tty=False)
    logger.info("listening on %s", "port")
    logger.error("failure")
    err = capsys.readouterr().err.splitlines()
    assert len(err) == 2
    assert err[0].endswith("INFO: listening on port")
    assert err[1].endswith("ERROR: failure")


def test_configure_logging_replaces_handlers(cleanup_logger):
    configure_logging(use_syslog=False, ident="ssr", use_tty=False)
    logger = configure_logging(use_syslog=False, ident="ssr", use_tty=False)
    assert len(logger.handlers) == 1
    assert logger.propagate is False


def test_configure_syslog_tags_ident(cleanup_logger):
    logger = configure_logging(use_syslog=True, ident="ss-server", use_tty=False)
    handler = logger.handlers[0]
    text = handler.formatter.format(_record(logging.INFO, "started"))
    assert text == f"ss-server[{os.getpid()}]: started"