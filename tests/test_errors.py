"""Tests for error types, the error log and the operations log."""

import logging

from clipper.errors import (
    ClipperError,
    MenuCreationError,
    MenuEntryExists,
    StoreWriteExhaustion,
    TransientIOError,
    log_exception,
)
from clipper.logging_config import configure_logging, configure_ops_log


def test_hierarchy():
    assert issubclass(StoreWriteExhaustion, TransientIOError)
    assert issubclass(MenuEntryExists, MenuCreationError)
    assert issubclass(MenuCreationError, ClipperError)


def test_exhaustion_message():
    err = StoreWriteExhaustion("clips", 3)
    assert "'clips'" in str(err)
    assert "3" in str(err)


def test_log_exception_appends_traceback(tmp_path, monkeypatch):
    monkeypatch.setenv("CLIPPER_STORE_PATH", str(tmp_path))

    try:
        raise ValueError("first failure")
    except ValueError as e:
        path = log_exception(e, "menu click")
    try:
        raise KeyError("second")
    except KeyError as e:
        log_exception(e)

    assert path == tmp_path / "clipper-errors.log"
    text = path.read_text()
    assert "menu click" in text
    assert "ValueError: first failure" in text
    assert "KeyError" in text
    assert text.count("=" * 60) == 2


def test_ops_log_receives_clipper_records(tmp_path):
    handler = configure_ops_log(tmp_path / "store")
    try:
        logging.getLogger("clipper.capture").info("Captured clip %s", "c1")
        logging.getLogger("clipper.menu").debug("not recorded")
        handler.flush()
    finally:
        logging.getLogger("clipper").removeHandler(handler)
        handler.close()

    text = (tmp_path / "store" / "clipper-ops.log").read_text()
    assert "Captured clip c1" in text
    assert "not recorded" not in text


def test_configure_logging_quiets_libraries(monkeypatch):
    monkeypatch.delenv("CLIPPER_VERBOSE", raising=False)

    assert configure_logging() is None
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("openai").level == logging.WARNING
