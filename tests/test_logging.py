"""Tests for logging configuration."""
from __future__ import annotations

import json
import logging

import pytest

from wallet_rescue.logging_config import (
    AccountContextFilter,
    AccountPrefixFormatter,
    StructuredFormatter,
    clear_context,
    set_account_context,
    set_worker_context,
    setup_logging,
)


def make_record(message: str = "hello", level: int = logging.INFO) -> logging.LogRecord:
    record = logging.LogRecord("wallet_rescue.test", level, __file__, 10, message, None, None)
    AccountContextFilter().filter(record)
    return record


@pytest.fixture(autouse=True)
def reset_context():
    clear_context()
    yield
    clear_context()


class TestFormatters:
    """Account label stamping."""

    def test_json_includes_account_and_worker(self):
        set_account_context("vault-7")
        set_worker_context("2-1")

        data = json.loads(StructuredFormatter().format(make_record()))

        assert data["message"] == "hello"
        assert data["account"] == "vault-7"
        assert data["worker_id"] == "2-1"
        assert data["level"] == "INFO"
        assert "pid" in data

    def test_plain_text_prefix(self):
        set_account_context("0xabc")

        assert AccountPrefixFormatter().format(make_record()).startswith("[0xabc] ")

    def test_plain_text_without_account(self):
        text = AccountPrefixFormatter().format(make_record())

        assert not text.startswith("[")
        assert text.endswith("hello")


class TestSetupLogging:
    """Handler installation."""

    def test_writes_combined_and_error_logs(self, tmp_path):
        root = logging.getLogger()
        saved = root.handlers[:]
        try:
            setup_logging("INFO", log_dir=str(tmp_path))
            log = logging.getLogger("wallet_rescue.test")
            log.info("routine")
            log.error("broken")
            for handler in root.handlers:
                handler.flush()

            combined = (tmp_path / "combined.log").read_text()
            errors = (tmp_path / "error.log").read_text()
            assert "routine" in combined and "broken" in combined
            assert "broken" in errors
            assert "routine" not in errors
        finally:
            for handler in root.handlers[:]:
                root.removeHandler(handler)
                handler.close()
            for handler in saved:
                root.addHandler(handler)
