"""Structured logging with a per-account context label.

Every process (the dispatcher and each worker) calls ``setup_logging`` once.
Records go to the console, to ``combined.log`` and, for errors, to
``error.log``. The account label set with ``set_account_context`` is stamped
on each record so interleaved worker output can be told apart.
"""
from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

account_var: ContextVar[Optional[str]] = ContextVar("account", default=None)
worker_id_var: ContextVar[Optional[str]] = ContextVar("worker_id", default=None)

_RESERVED = frozenset(
    (
        "name", "msg", "args", "created", "filename", "funcName", "levelname",
        "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
        "processName", "relativeCreated", "thread", "threadName", "exc_info",
        "exc_text", "stack_info", "taskName", "account", "worker_id",
    )
)


class AccountContextFilter(logging.Filter):
    """Adds the current account label and worker id to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.account = account_var.get()
        record.worker_id = worker_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "pid": record.process,
        }

        if getattr(record, "account", None):
            log_data["account"] = record.account
        if getattr(record, "worker_id", None):
            log_data["worker_id"] = record.worker_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class AccountPrefixFormatter(logging.Formatter):
    """Plain text formatter that prefixes the account label when present."""

    def __init__(self) -> None:
        super().__init__(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        account = getattr(record, "account", None)
        return f"[{account}] {text}" if account else text


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_dir: Optional[str] = None,
) -> None:
    """
    Configure logging for the current process.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or plain text (False)
        log_dir: Directory for combined.log and error.log; console only if None
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter: logging.Formatter
    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = AccountPrefixFormatter()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_dir:
        path = Path(log_dir)
        os.makedirs(path, exist_ok=True)
        handlers.append(logging.FileHandler(path / "combined.log"))
        error_handler = logging.FileHandler(path / "error.log")
        error_handler.setLevel(logging.ERROR)
        handlers.append(error_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(AccountContextFilter())
        root_logger.addHandler(handler)

    # web3 and httpx are chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)


def set_account_context(label: str) -> None:
    """Set the account label stamped on log records."""
    account_var.set(label)


def set_worker_context(worker_id: str) -> None:
    worker_id_var.set(worker_id)


def clear_context() -> None:
    account_var.set(None)
    worker_id_var.set(None)
